import asyncio
import logging
import re
import traceback
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping

from pydantic import ValidationError
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from app.core.config import settings
from app.core.observability import automation_logger, log_event, mask_phone, validation_issues
from app.core.sheet_dates import normalize_sheet_date
from app.schemas.automation import TriggerWebhookIn
from app.services.automation_errors import (
    MessagingAuthUnavailable,
    ProviderFailure,
    WebhookValidationError,
)
from app.services.messaging_provider import MessageSendRequest, MessagingProvider, get_messaging_provider
from app.services.rule_index_service import (
    RuleCondition,
    RuleSnapshot,
    TenantRuleSet,
    list_enabled_rules_for_all_tenants,
)
from app.services.tenant_service import resolve_messaging_tokens


_TEMPLATE_VAR_RE = re.compile(r"#\{([^}]+)\}")
SMS_MAX_BYTES = 90
KAKAO_MESSAGE_TYPE = "ATA"


def evaluate_condition(condition: RuleCondition, old_value: str, new_value: str) -> bool:
    operator = condition.operator
    trigger_value = condition.trigger_value
    if operator == "equals":
        return new_value == trigger_value
    if operator == "contains":
        return trigger_value in new_value
    if operator == "changes_to":
        return old_value != new_value and new_value == trigger_value
    return False


def render_template(template: str, row_data: Mapping[str, Any]) -> str:
    def _replace(match: re.Match[str]) -> str:
        value = row_data.get(match.group(1))
        if value is None:
            return match.group(0)
        return str(value)

    return _TEMPLATE_VAR_RE.sub(_replace, template)


def message_byte_length(text: str) -> int:
    # Provider billing counts every non-ASCII code point as two bytes.
    return sum(2 if ord(char) >= 0x80 else 1 for char in text)


def classify_sms_type(text: str) -> str:
    return "SMS" if message_byte_length(text) <= SMS_MAX_BYTES else "LMS"


def normalize_phone_number(value: Any) -> str:
    return str(value or "").replace("-", "").strip()


@dataclass(frozen=True)
class TriggerEvent:
    sheet_name: str
    column_name: str
    row_data: dict[str, str]
    spreadsheet_id: str | None = None
    spreadsheet_name: str | None = None
    sheet_date: str | None = None
    row_index: int | None = None
    column_index: int | None = None
    old_value: str = ""
    new_value: str = ""
    timestamp: str | None = None

    @property
    def date_label(self) -> str:
        return self.spreadsheet_name or self.sheet_date or ""

    @classmethod
    def from_payload(cls, payload: TriggerWebhookIn) -> "TriggerEvent":
        return cls(
            sheet_name=payload.sheet_name,
            column_name=payload.column_name,
            row_data=dict(payload.row_data),
            spreadsheet_id=payload.spreadsheet_id,
            spreadsheet_name=payload.spreadsheet_name,
            sheet_date=payload.sheet_date,
            row_index=payload.row_index,
            column_index=payload.column_index,
            old_value=payload.old_value,
            new_value=payload.new_value,
            timestamp=payload.timestamp,
        )


def parse_trigger_event(raw: Any) -> TriggerEvent:
    if not isinstance(raw, dict):
        raise WebhookValidationError(
            "Webhook body must be a JSON object",
            details=[{"field": "body", "message": "Expected an object", "type": "dict_type"}],
        )
    try:
        payload = TriggerWebhookIn.model_validate(raw)
    except ValidationError as exc:
        raise WebhookValidationError(
            "Required webhook fields are missing or invalid (sheetName, columnName, rowData)",
            details=validation_issues(list(exc.errors())),
        ) from None
    return TriggerEvent.from_payload(payload)


def sample_trigger_payload(now: datetime | None = None) -> dict[str, Any]:
    """Canned delivery-status edit used to exercise the trigger path by hand."""
    current = now or datetime.now(timezone.utc)
    sheet_date = current.strftime("%Y%m%d")
    return {
        "sheetName": sheet_date,
        "sheetDate": sheet_date,
        "rowIndex": 2,
        "columnName": "배송상태",
        "columnIndex": 5,
        "oldValue": "배송 준비중",
        "newValue": "배송 완료",
        "rowData": {
            "고객명": "테스트 고객",
            "배송지": "서울시 강남구 테스트동 123-45",
            "고객 연락처": "010-0000-0000",
            "배송상태": "배송 완료",
            "배송 담당자": "테스트 담당자",
        },
        "timestamp": current.isoformat(),
    }


@dataclass(frozen=True)
class DispatchOutcome:
    success: bool
    error: str | None = None
    message_types: tuple[str, ...] = ()


@dataclass(frozen=True)
class DispatchResult:
    tenant: str
    rule_id: str
    rule_name: str
    success: bool
    column_name: str
    old_value: str
    new_value: str
    timestamp: datetime
    error: str | None = None


@dataclass(frozen=True)
class TriggerSnapshot:
    tenant_sets: list[TenantRuleSet]
    tokens: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class TriggerOutcome:
    processed_rules: int
    results: list[DispatchResult]


@dataclass(frozen=True)
class _PlannedDispatch:
    tenant_id: str
    rule: RuleSnapshot
    access_token: str | None


class AutomationDispatcher:
    """Sends the message for one matched rule, falling back from KakaoTalk to SMS once."""

    def __init__(self, provider: MessagingProvider):
        self.provider = provider

    async def dispatch(self, rule: RuleSnapshot, row_data: Mapping[str, str], access_token: str | None) -> bool:
        outcome = await self.execute(rule, row_data, access_token)
        return outcome.success

    async def execute(
        self,
        rule: RuleSnapshot,
        row_data: Mapping[str, str],
        access_token: str | None,
    ) -> DispatchOutcome:
        action = rule.action
        recipient = normalize_phone_number(row_data.get(action.recipient_column))
        if not recipient:
            error = f"Recipient column '{action.recipient_column}' is missing or empty"
            log_event(
                automation_logger,
                "automation.dispatch.no_recipient",
                level=logging.WARNING,
                tenant=rule.tenant_id,
                rule_id=rule.id,
                recipient_column=action.recipient_column,
            )
            return DispatchOutcome(success=False, error=error)

        message = render_template(action.message_template, row_data)

        try:
            access_token = _require_token(access_token)
        except MessagingAuthUnavailable as exc:
            log_event(
                automation_logger,
                "automation.dispatch.auth_unavailable",
                level=logging.WARNING,
                tenant=rule.tenant_id,
                rule_id=rule.id,
            )
            return DispatchOutcome(success=False, error=str(exc))

        sender = normalize_phone_number(action.sender_number)
        attempted: list[str] = []

        if action.channel == "kakao":
            attempted.append(KAKAO_MESSAGE_TYPE)
            try:
                await self._send(rule, access_token, KAKAO_MESSAGE_TYPE, sender, recipient, message)
                return DispatchOutcome(success=True, message_types=tuple(attempted))
            except ProviderFailure as exc:
                log_event(
                    automation_logger,
                    "automation.dispatch.kakao_fallback",
                    level=logging.WARNING,
                    tenant=rule.tenant_id,
                    rule_id=rule.id,
                    error=_short_error(exc),
                )
        elif action.channel != "sms":
            return DispatchOutcome(success=False, error=f"Unsupported channel '{action.channel}'")

        message_type = classify_sms_type(message)
        attempted.append(message_type)
        try:
            await self._send(rule, access_token, message_type, sender, recipient, message)
        except ProviderFailure as exc:
            log_event(
                automation_logger,
                "automation.dispatch.failed",
                level=logging.ERROR,
                tenant=rule.tenant_id,
                rule_id=rule.id,
                message_type=message_type,
                error=_short_error(exc),
            )
            return DispatchOutcome(success=False, error=_short_error(exc), message_types=tuple(attempted))
        return DispatchOutcome(success=True, message_types=tuple(attempted))

    async def _send(
        self,
        rule: RuleSnapshot,
        access_token: str,
        message_type: str,
        sender: str,
        recipient: str,
        message: str,
    ) -> None:
        result = await self.provider.send_message(
            MessageSendRequest(
                tenant_id=rule.tenant_id,
                access_token=access_token,
                message_type=message_type,
                sender=sender,
                recipient=recipient,
                text=message,
            )
        )
        log_event(
            automation_logger,
            "automation.dispatch.sent",
            tenant=rule.tenant_id,
            rule_id=rule.id,
            provider=result.provider,
            message_id=result.message_id,
            message_type=message_type,
            message_bytes=message_byte_length(message),
            recipient=mask_phone(recipient),
        )


class AutomationEngine:
    """
    Webhook fan-out: match one edit event against every indexed tenant's
    enabled rules and dispatch the matches concurrently.

    Dispatches run as a task group capped at ``concurrency`` in flight, each
    bounded by ``dispatch_timeout_seconds``. A timeout or an unexpected error
    fails only that rule's result.
    """

    def __init__(
        self,
        *,
        provider: MessagingProvider,
        concurrency: int = 10,
        dispatch_timeout_seconds: float = 5.0,
    ):
        self.dispatcher = AutomationDispatcher(provider)
        self.concurrency = max(int(concurrency), 1)
        self.dispatch_timeout_seconds = dispatch_timeout_seconds

    async def handle_trigger_event(self, db: Session, event: TriggerEvent) -> TriggerOutcome:
        snapshot = await run_in_threadpool(load_trigger_snapshot, db)
        return await self.process_event(event, snapshot)

    async def process_event(self, event: TriggerEvent, snapshot: TriggerSnapshot) -> TriggerOutcome:
        planned, failed = self._match(event, snapshot)
        results = list(failed)
        if planned:
            semaphore = asyncio.Semaphore(self.concurrency)

            async def _run(item: _PlannedDispatch) -> DispatchResult:
                async with semaphore:
                    outcome = await self.execute_guarded(item.rule, event.row_data, item.access_token)
                return _build_result(event, item.tenant_id, item.rule, outcome)

            results.extend(await asyncio.gather(*(_run(item) for item in planned)))

        succeeded = sum(1 for item in results if item.success)
        log_event(
            automation_logger,
            "automation.webhook.processed",
            column=event.column_name,
            processed_rules=len(results),
            succeeded=succeeded,
            failed=len(results) - succeeded,
        )
        return TriggerOutcome(processed_rules=len(results), results=results)

    async def execute_guarded(
        self,
        rule: RuleSnapshot,
        row_data: Mapping[str, str],
        access_token: str | None,
    ) -> DispatchOutcome:
        try:
            return await asyncio.wait_for(
                self.dispatcher.execute(rule, row_data, access_token),
                timeout=self.dispatch_timeout_seconds,
            )
        except asyncio.TimeoutError:
            log_event(
                automation_logger,
                "automation.dispatch.timeout",
                level=logging.ERROR,
                tenant=rule.tenant_id,
                rule_id=rule.id,
                timeout_seconds=self.dispatch_timeout_seconds,
            )
            return DispatchOutcome(
                success=False,
                error=f"Dispatch timed out after {self.dispatch_timeout_seconds:g}s",
            )
        except Exception as exc:  # noqa: BLE001
            log_event(
                automation_logger,
                "automation.dispatch.internal_error",
                level=logging.ERROR,
                tenant=rule.tenant_id,
                rule_id=rule.id,
                error=str(exc),
                traceback=traceback.format_exc(limit=10),
            )
            return DispatchOutcome(success=False, error=f"Internal error: {_short_error(exc)}")

    def _match(
        self,
        event: TriggerEvent,
        snapshot: TriggerSnapshot,
    ) -> tuple[list[_PlannedDispatch], list[DispatchResult]]:
        event_date = normalize_sheet_date(event.date_label)
        planned: list[_PlannedDispatch] = []
        failed: list[DispatchResult] = []

        for tenant_set in snapshot.tenant_sets:
            if not tenant_set.rules:
                continue
            access_token = snapshot.tokens.get(tenant_set.tenant_id)

            for rule in tenant_set.rules:
                try:
                    if not _rule_applies(rule, event, event_date):
                        continue
                    if not evaluate_condition(rule.condition, event.old_value, event.new_value):
                        continue
                except Exception as exc:  # noqa: BLE001
                    log_event(
                        automation_logger,
                        "automation.match.internal_error",
                        level=logging.ERROR,
                        tenant=tenant_set.tenant_id,
                        rule_id=rule.id,
                        error=str(exc),
                    )
                    outcome = DispatchOutcome(success=False, error=f"Internal error: {_short_error(exc)}")
                    failed.append(_build_result(event, tenant_set.tenant_id, rule, outcome))
                    continue

                log_event(
                    automation_logger,
                    "automation.rule.triggered",
                    tenant=tenant_set.tenant_id,
                    rule_id=rule.id,
                    rule_name=rule.name,
                    token_available=access_token is not None,
                )
                planned.append(
                    _PlannedDispatch(tenant_id=tenant_set.tenant_id, rule=rule, access_token=access_token)
                )
        return planned, failed


def load_trigger_snapshot(db: Session) -> TriggerSnapshot:
    tenant_sets = list_enabled_rules_for_all_tenants(db)
    active_tenants = [item.tenant_id for item in tenant_sets if item.rules]
    return TriggerSnapshot(
        tenant_sets=tenant_sets,
        tokens=resolve_messaging_tokens(db, active_tenants),
    )


def _rule_applies(rule: RuleSnapshot, event: TriggerEvent, event_date: str) -> bool:
    if not rule.enabled:
        return False
    if rule.condition.watched_column != event.column_name:
        return False
    if (
        rule.scope_spreadsheet_id
        and event.spreadsheet_id
        and rule.scope_spreadsheet_id != event.spreadsheet_id
    ):
        log_event(
            automation_logger,
            "automation.rule.skipped",
            level=logging.DEBUG,
            rule_id=rule.id,
            reason="spreadsheet_scope",
        )
        return False
    if rule.scope_date and normalize_sheet_date(rule.scope_date) != event_date:
        log_event(
            automation_logger,
            "automation.rule.skipped",
            rule_id=rule.id,
            reason="date_scope",
            rule_date=normalize_sheet_date(rule.scope_date),
            event_date=event_date,
        )
        return False
    return True


def _build_result(
    event: TriggerEvent,
    tenant_id: str,
    rule: RuleSnapshot,
    outcome: DispatchOutcome,
) -> DispatchResult:
    return DispatchResult(
        tenant=tenant_id,
        rule_id=rule.id,
        rule_name=rule.name,
        success=outcome.success,
        column_name=event.column_name,
        old_value=event.old_value,
        new_value=event.new_value,
        timestamp=datetime.now(timezone.utc),
        error=outcome.error,
    )


def _require_token(access_token: str | None) -> str:
    token = (access_token or "").strip()
    if not token:
        raise MessagingAuthUnavailable("Messaging token is unavailable for tenant")
    return token


def _short_error(value: Exception | str) -> str:
    text = str(value).strip() or "Automation dispatch failed"
    return text[:255]


_engine: AutomationEngine | None = None


def get_automation_engine() -> AutomationEngine:
    global _engine
    if _engine is None:
        _engine = AutomationEngine(
            provider=get_messaging_provider(settings.messaging_provider_default),
            concurrency=settings.automation_dispatch_concurrency,
            dispatch_timeout_seconds=settings.automation_dispatch_timeout_seconds,
        )
    return _engine
