import uuid
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.locks import KeyedLock
from app.core.observability import automation_logger, log_event
from app.models.automation import AutomationRule, AutomationTenantIndex
from app.schemas.automation import AutomationRuleCreateIn, AutomationRuleUpdateIn
from app.services.automation_errors import RuleNotFound, RuleQuotaExceeded
from app.services.tenant_service import normalize_tenant_id


@dataclass(frozen=True)
class RuleCondition:
    watched_column: str
    operator: str
    trigger_value: str


@dataclass(frozen=True)
class RuleAction:
    channel: str
    sender_number: str
    recipient_column: str
    message_template: str


@dataclass(frozen=True)
class RuleSnapshot:
    id: str
    tenant_id: str
    name: str
    enabled: bool
    scope_spreadsheet_id: str | None
    scope_date: str | None
    condition: RuleCondition
    action: RuleAction

    @classmethod
    def from_model(cls, rule: AutomationRule) -> "RuleSnapshot":
        return cls(
            id=rule.id,
            tenant_id=rule.tenant_id,
            name=rule.name,
            enabled=bool(rule.enabled),
            scope_spreadsheet_id=rule.scope_spreadsheet_id,
            scope_date=rule.scope_date,
            condition=RuleCondition(
                watched_column=rule.watched_column,
                operator=rule.operator,
                trigger_value=rule.trigger_value or "",
            ),
            action=RuleAction(
                channel=rule.channel,
                sender_number=rule.sender_number,
                recipient_column=rule.recipient_column,
                message_template=rule.message_template,
            ),
        )


@dataclass(frozen=True)
class TenantRuleSet:
    tenant_id: str
    rules: tuple[RuleSnapshot, ...]


_tenant_write_locks = KeyedLock()


def add_rule(
    db: Session,
    *,
    tenant_id: str,
    payload: AutomationRuleCreateIn,
    now: datetime | None = None,
) -> AutomationRule:
    tenant = normalize_tenant_id(tenant_id)
    if not tenant:
        raise ValueError("tenant_id is required")
    limit = settings.automation_max_rules_per_tenant
    created_at = now or datetime.now(timezone.utc)

    with _tenant_write_locks.hold(tenant):
        _lock_tenant_index(db, tenant)
        current = int(
            db.execute(
                select(func.count(AutomationRule.id)).where(AutomationRule.tenant_id == tenant)
            ).scalar_one()
            or 0
        )
        if current >= limit:
            db.rollback()
            log_event(automation_logger, "automation.rule.quota_exceeded", tenant=tenant, limit=limit)
            raise RuleQuotaExceeded(limit)

        rule = AutomationRule(
            id=str(uuid.uuid4()),
            tenant_id=tenant,
            name=payload.name,
            enabled=payload.enabled,
            scope_spreadsheet_id=payload.scope_spreadsheet_id,
            scope_spreadsheet_name=payload.scope_spreadsheet_name,
            scope_date=payload.scope_date,
            watched_column=payload.condition.watched_column,
            operator=payload.condition.operator,
            trigger_value=payload.condition.trigger_value,
            channel=payload.action.channel,
            sender_number=payload.action.sender_number,
            recipient_column=payload.action.recipient_column,
            message_template=payload.action.message_template,
            created_at=created_at,
            updated_at=created_at,
        )
        db.add(rule)
        db.commit()

    db.refresh(rule)
    log_event(
        automation_logger,
        "automation.rule.created",
        tenant=tenant,
        rule_id=rule.id,
        name=rule.name,
        rule_count=current + 1,
    )
    return rule


def update_rule(
    db: Session,
    *,
    tenant_id: str,
    rule_id: str,
    patch: AutomationRuleUpdateIn,
    now: datetime | None = None,
) -> AutomationRule:
    rule = get_rule(db, tenant_id=tenant_id, rule_id=rule_id)
    supplied = patch.model_fields_set

    if patch.name is not None:
        rule.name = patch.name.strip()
    if patch.enabled is not None:
        rule.enabled = patch.enabled
    if patch.condition is not None:
        rule.watched_column = patch.condition.watched_column
        rule.operator = patch.condition.operator
        rule.trigger_value = patch.condition.trigger_value
    if patch.action is not None:
        rule.channel = patch.action.channel
        rule.sender_number = patch.action.sender_number
        rule.recipient_column = patch.action.recipient_column
        rule.message_template = patch.action.message_template
    # Scope fields may be cleared by sending null explicitly.
    if "scope_spreadsheet_id" in supplied:
        rule.scope_spreadsheet_id = patch.scope_spreadsheet_id
    if "scope_spreadsheet_name" in supplied:
        rule.scope_spreadsheet_name = patch.scope_spreadsheet_name
    if "scope_date" in supplied:
        rule.scope_date = patch.scope_date

    rule.updated_at = now or datetime.now(timezone.utc)
    db.commit()
    db.refresh(rule)
    log_event(
        automation_logger,
        "automation.rule.updated",
        tenant=rule.tenant_id,
        rule_id=rule.id,
        fields=sorted(supplied),
    )
    return rule


def remove_rule(db: Session, *, tenant_id: str, rule_id: str) -> bool:
    tenant = normalize_tenant_id(tenant_id)
    with _tenant_write_locks.hold(tenant):
        deleted = db.execute(
            delete(AutomationRule).where(
                AutomationRule.tenant_id == tenant,
                AutomationRule.id == rule_id,
            )
        ).rowcount
        remaining = int(
            db.execute(
                select(func.count(AutomationRule.id)).where(AutomationRule.tenant_id == tenant)
            ).scalar_one()
            or 0
        )
        if remaining == 0:
            db.execute(delete(AutomationTenantIndex).where(AutomationTenantIndex.tenant_id == tenant))
        db.commit()

    if deleted:
        log_event(
            automation_logger,
            "automation.rule.deleted",
            tenant=tenant,
            rule_id=rule_id,
            remaining=remaining,
        )
    return bool(deleted)


def get_rule(db: Session, *, tenant_id: str, rule_id: str) -> AutomationRule:
    rule = db.execute(
        select(AutomationRule).where(
            AutomationRule.tenant_id == normalize_tenant_id(tenant_id),
            AutomationRule.id == rule_id,
        )
    ).scalar_one_or_none()
    if not rule:
        raise RuleNotFound(rule_id)
    return rule


def list_rules(db: Session, *, tenant_id: str) -> list[AutomationRule]:
    return list(
        db.execute(
            select(AutomationRule)
            .where(AutomationRule.tenant_id == normalize_tenant_id(tenant_id))
            .order_by(AutomationRule.created_at.desc(), AutomationRule.id.asc())
        ).scalars().all()
    )


def list_indexed_tenants(db: Session) -> list[str]:
    return list(
        db.execute(
            select(AutomationTenantIndex.tenant_id).order_by(AutomationTenantIndex.tenant_id.asc())
        ).scalars().all()
    )


def list_enabled_rules_for_all_tenants(db: Session) -> list[TenantRuleSet]:
    """
    Enabled rules grouped by tenant, visiting only tenants in the fan-out index.
    Tenants whose rules are all disabled are returned with an empty tuple.
    """
    tenant_ids = list_indexed_tenants(db)
    if not tenant_ids:
        return []

    rows = db.execute(
        select(AutomationRule)
        .where(
            AutomationRule.tenant_id.in_(tenant_ids),
            AutomationRule.enabled.is_(True),
        )
        .order_by(AutomationRule.tenant_id.asc(), AutomationRule.created_at.asc())
    ).scalars().all()

    grouped: dict[str, list[RuleSnapshot]] = {tenant: [] for tenant in tenant_ids}
    for row in rows:
        grouped.setdefault(row.tenant_id, []).append(RuleSnapshot.from_model(row))
    return [TenantRuleSet(tenant_id=tenant, rules=tuple(rules)) for tenant, rules in grouped.items()]


def _lock_tenant_index(db: Session, tenant: str) -> AutomationTenantIndex:
    stmt = (
        select(AutomationTenantIndex)
        .where(AutomationTenantIndex.tenant_id == tenant)
        .with_for_update()
    )
    entry = db.execute(stmt).scalar_one_or_none()
    if entry:
        return entry

    entry = AutomationTenantIndex(tenant_id=tenant)
    db.add(entry)
    try:
        db.flush()
    except IntegrityError:
        # Another process indexed the tenant first; take its row lock instead.
        db.rollback()
        entry = db.execute(stmt).scalar_one()
    return entry
