import hmac
import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from app.core.api_docs import error_responses
from app.core.config import settings
from app.core.deps import get_db
from app.core.observability import automation_logger, log_event, mask_tenant
from app.core.security_current import get_current_tenant
from app.models.automation import AutomationRule
from app.schemas.automation import (
    AutomationActionOut,
    AutomationConditionOut,
    AutomationRuleCreateIn,
    AutomationRuleDeleteOut,
    AutomationRuleListOut,
    AutomationRuleOut,
    AutomationRuleUpdateIn,
    AutomationTestTriggerIn,
    AutomationTestTriggerOut,
    DispatchResultOut,
    TriggerWebhookEchoOut,
    TriggerWebhookIn,
    TriggerWebhookManualTestOut,
    TriggerWebhookOut,
    WebhookRuleSummaryOut,
    WebhookStatusOut,
    WebhookTenantSummaryOut,
)
from app.services.automation_errors import RuleNotFound, RuleQuotaExceeded, WebhookValidationError
from app.services.automation_service import (
    AutomationEngine,
    TriggerEvent,
    TriggerOutcome,
    get_automation_engine,
    parse_trigger_event,
    sample_trigger_payload,
)
from app.services.rule_index_service import (
    RuleSnapshot,
    add_rule,
    get_rule,
    list_enabled_rules_for_all_tenants,
    list_rules,
    remove_rule,
    update_rule,
)
from app.services.tenant_service import resolve_messaging_tokens

router = APIRouter(prefix="/automation", tags=["automation"])


def _rule_or_404(db: Session, *, tenant_id: str, rule_id: str) -> AutomationRule:
    try:
        return get_rule(db, tenant_id=tenant_id, rule_id=rule_id)
    except RuleNotFound:
        raise HTTPException(status_code=404, detail="Automation rule not found") from None


def _rule_out(rule: AutomationRule) -> AutomationRuleOut:
    return AutomationRuleOut(
        id=rule.id,
        name=rule.name,
        enabled=rule.enabled,
        owner_tenant=rule.tenant_id,
        scope_spreadsheet_id=rule.scope_spreadsheet_id,
        scope_spreadsheet_name=rule.scope_spreadsheet_name,
        scope_date=rule.scope_date,
        condition=AutomationConditionOut(
            watched_column=rule.watched_column,
            operator=rule.operator,
            trigger_value=rule.trigger_value or "",
        ),
        action=AutomationActionOut(
            channel=rule.channel,
            sender_number=rule.sender_number,
            recipient_column=rule.recipient_column,
            message_template=rule.message_template,
        ),
        created_at=rule.created_at,
        updated_at=rule.updated_at,
    )


def _trigger_out(event: TriggerEvent, outcome: TriggerOutcome) -> TriggerWebhookOut:
    return TriggerWebhookOut(
        processed_rules=outcome.processed_rules,
        results=[
            DispatchResultOut(
                tenant=item.tenant,
                rule_id=item.rule_id,
                rule_name=item.rule_name,
                success=item.success,
                column_name=item.column_name,
                old_value=item.old_value,
                new_value=item.new_value,
                timestamp=item.timestamp,
                error=item.error,
            )
            for item in outcome.results
        ],
        webhook=TriggerWebhookEchoOut(
            sheet_name=event.sheet_name,
            sheet_date=event.date_label or None,
            row_index=event.row_index,
            column_name=event.column_name,
            old_value=event.old_value,
            new_value=event.new_value,
            timestamp=event.timestamp,
        ),
    )


def _verify_webhook_secret(provided: str | None) -> None:
    expected = settings.automation_webhook_secret
    if not expected:
        return
    if not provided or not hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8")):
        log_event(automation_logger, "automation.webhook.rejected", level=logging.WARNING, reason="secret")
        raise HTTPException(status_code=401, detail="Invalid webhook secret")


@router.get(
    "/rules",
    response_model=AutomationRuleListOut,
    summary="List automation rules",
    responses=error_responses(401, 500),
)
def list_automation_rules(
    db: Session = Depends(get_db),
    tenant: str = Depends(get_current_tenant),
):
    items = [_rule_out(row) for row in list_rules(db, tenant_id=tenant)]
    return AutomationRuleListOut(
        items=items,
        count=len(items),
        limit=settings.automation_max_rules_per_tenant,
    )


@router.post(
    "/rules",
    response_model=AutomationRuleOut,
    summary="Create automation rule",
    responses=error_responses(400, 401, 422, 500),
)
def create_automation_rule(
    payload: AutomationRuleCreateIn,
    db: Session = Depends(get_db),
    tenant: str = Depends(get_current_tenant),
):
    try:
        rule = add_rule(db, tenant_id=tenant, payload=payload)
    except RuleQuotaExceeded as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from None
    return _rule_out(rule)


@router.patch(
    "/rules/{rule_id}",
    response_model=AutomationRuleOut,
    summary="Update automation rule",
    responses=error_responses(401, 404, 422, 500),
)
@router.put(
    "/rules/{rule_id}",
    response_model=AutomationRuleOut,
    summary="Update automation rule (console alias)",
    responses=error_responses(401, 404, 422, 500),
)
def update_automation_rule(
    rule_id: str,
    payload: AutomationRuleUpdateIn,
    db: Session = Depends(get_db),
    tenant: str = Depends(get_current_tenant),
):
    try:
        rule = update_rule(db, tenant_id=tenant, rule_id=rule_id, patch=payload)
    except RuleNotFound:
        raise HTTPException(status_code=404, detail="Automation rule not found") from None
    return _rule_out(rule)


@router.delete(
    "/rules/{rule_id}",
    response_model=AutomationRuleDeleteOut,
    summary="Delete automation rule",
    responses=error_responses(401, 500),
)
def delete_automation_rule(
    rule_id: str,
    db: Session = Depends(get_db),
    tenant: str = Depends(get_current_tenant),
):
    deleted = remove_rule(db, tenant_id=tenant, rule_id=rule_id)
    return AutomationRuleDeleteOut(rule_id=rule_id, deleted=deleted)


@router.post(
    "/trigger",
    response_model=TriggerWebhookOut,
    summary="Receive a spreadsheet cell-edit webhook",
    responses=error_responses(400, 401, 500),
    openapi_extra={
        "requestBody": {
            "required": True,
            "content": {"application/json": {"schema": TriggerWebhookIn.model_json_schema()}},
        }
    },
)
async def trigger_webhook(
    request: Request,
    x_webhook_secret: str | None = Header(default=None, alias="X-Webhook-Secret"),
    db: Session = Depends(get_db),
    engine: AutomationEngine = Depends(get_automation_engine),
):
    _verify_webhook_secret(x_webhook_secret)
    try:
        raw = await request.json()
    except ValueError:
        raise HTTPException(
            status_code=400,
            detail={
                "message": "Webhook body must be valid JSON",
                "details": [{"field": "body", "message": "Invalid JSON", "type": "json_invalid"}],
            },
        ) from None

    try:
        event = parse_trigger_event(raw)
    except WebhookValidationError as exc:
        log_event(
            automation_logger,
            "automation.webhook.invalid",
            level=logging.WARNING,
            issues=[item.get("field") for item in exc.details],
        )
        raise HTTPException(status_code=400, detail={"message": str(exc), "details": exc.details}) from None

    log_event(
        automation_logger,
        "automation.webhook.received",
        sheet=event.sheet_name,
        spreadsheet_id=event.spreadsheet_id,
        column=event.column_name,
        row_index=event.row_index,
        date_label=event.date_label,
    )
    outcome = await engine.handle_trigger_event(db, event)
    return _trigger_out(event, outcome)


@router.post(
    "/webhook/test",
    response_model=TriggerWebhookManualTestOut,
    summary="Replay a sample delivery edit through the trigger path",
    responses=error_responses(401, 500),
)
async def manual_webhook_test(
    x_webhook_secret: str | None = Header(default=None, alias="X-Webhook-Secret"),
    db: Session = Depends(get_db),
    engine: AutomationEngine = Depends(get_automation_engine),
):
    _verify_webhook_secret(x_webhook_secret)
    sample = sample_trigger_payload()
    event = parse_trigger_event(sample)
    log_event(automation_logger, "automation.webhook.manual_test", column=event.column_name)
    outcome = await engine.handle_trigger_event(db, event)
    return TriggerWebhookManualTestOut(test_payload=sample, webhook_result=_trigger_out(event, outcome))


@router.post(
    "/test-trigger",
    response_model=AutomationTestTriggerOut,
    summary="Dispatch one rule against sample row data",
    responses=error_responses(400, 401, 404, 422, 500),
)
async def test_trigger(
    payload: AutomationTestTriggerIn,
    db: Session = Depends(get_db),
    tenant: str = Depends(get_current_tenant),
    engine: AutomationEngine = Depends(get_automation_engine),
):
    rule = await run_in_threadpool(_rule_or_404, db, tenant_id=tenant, rule_id=payload.rule_id)
    if not rule.enabled:
        raise HTTPException(status_code=400, detail="Automation rule is disabled")

    snapshot = RuleSnapshot.from_model(rule)
    tokens = await run_in_threadpool(resolve_messaging_tokens, db, [tenant])
    outcome = await engine.execute_guarded(snapshot, payload.test_data, tokens.get(tenant))
    log_event(
        automation_logger,
        "automation.rule.test_triggered",
        tenant=tenant,
        rule_id=snapshot.id,
        success=outcome.success,
    )
    return AutomationTestTriggerOut(
        rule_id=snapshot.id,
        rule_name=snapshot.name,
        success=outcome.success,
        error=outcome.error,
        timestamp=datetime.now(timezone.utc),
    )


@router.get(
    "/webhook/status",
    response_model=WebhookStatusOut,
    summary="Webhook fan-out status",
    responses=error_responses(500),
)
def webhook_status(request: Request, db: Session = Depends(get_db)):
    tenant_sets = list_enabled_rules_for_all_tenants(db)
    tenants = [
        WebhookTenantSummaryOut(
            tenant=mask_tenant(item.tenant_id),
            enabled_rules=len(item.rules),
            rules=[
                WebhookRuleSummaryOut(
                    name=rule.name,
                    scope_date=rule.scope_date,
                    watched_column=rule.condition.watched_column,
                    trigger_value=rule.condition.trigger_value,
                )
                for rule in item.rules
            ],
        )
        for item in tenant_sets
    ]
    return WebhookStatusOut(
        webhook_url=str(request.url_for("trigger_webhook")),
        indexed_tenants=len(tenant_sets),
        total_enabled_rules=sum(item.enabled_rules for item in tenants),
        tenants=tenants,
    )
