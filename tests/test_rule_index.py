import threading
import time

from app.core.locks import KeyedLock
from app.models.automation import AutomationRule
from app.schemas.automation import AutomationRuleCreateIn, AutomationRuleUpdateIn
from app.services.rule_index_service import (
    add_rule,
    list_enabled_rules_for_all_tenants,
    list_indexed_tenants,
    remove_rule,
    update_rule,
)


def _payload(name: str, **overrides) -> AutomationRuleCreateIn:
    data = {
        "name": name,
        "condition": {"watchedColumn": "status", "operator": "equals", "triggerValue": "delivered"},
        "action": {
            "channel": "sms",
            "senderNumber": "02-1234-5678",
            "recipientColumn": "phone",
            "messageTemplate": "#{name}님 배송 완료",
        },
    }
    data.update(overrides)
    return AutomationRuleCreateIn.model_validate(data)


def test_fan_out_only_visits_indexed_tenants(test_context):
    _, session_local = test_context
    with session_local() as db:
        kept = add_rule(db, tenant_id="kim@example.com", payload=_payload("Kept"))
        paused = add_rule(db, tenant_id="lee@example.com", payload=_payload("Paused"))
        update_rule(
            db,
            tenant_id="lee@example.com",
            rule_id=paused.id,
            patch=AutomationRuleUpdateIn.model_validate({"enabled": False}),
        )
        # A rule row without an index entry is invisible to the fan-out.
        db.add(
            AutomationRule(
                id="orphan-rule",
                tenant_id="ghost@example.com",
                name="Orphan",
                enabled=True,
                watched_column="status",
                operator="equals",
                trigger_value="delivered",
                channel="sms",
                sender_number="0212345678",
                recipient_column="phone",
                message_template="hi",
            )
        )
        db.commit()

        assert list_indexed_tenants(db) == ["kim@example.com", "lee@example.com"]
        tenant_sets = {item.tenant_id: item.rules for item in list_enabled_rules_for_all_tenants(db)}
        assert set(tenant_sets) == {"kim@example.com", "lee@example.com"}
        assert [rule.id for rule in tenant_sets["kim@example.com"]] == [kept.id]
        assert tenant_sets["lee@example.com"] == ()


def test_update_bumps_timestamp_and_keeps_identity(test_context):
    _, session_local = test_context
    with session_local() as db:
        rule = add_rule(db, tenant_id="kim@example.com", payload=_payload("Original"))
        rule_id = rule.id
        created_at = rule.created_at
        before = rule.updated_at

        time.sleep(0.01)
        updated = update_rule(
            db,
            tenant_id="kim@example.com",
            rule_id=rule_id,
            patch=AutomationRuleUpdateIn.model_validate({"name": "Renamed"}),
        )

        assert updated.id == rule_id
        assert updated.tenant_id == "kim@example.com"
        assert updated.created_at == created_at
        assert updated.updated_at > before
        assert updated.name == "Renamed"


def test_remove_rule_is_idempotent(test_context):
    _, session_local = test_context
    with session_local() as db:
        rule = add_rule(db, tenant_id="kim@example.com", payload=_payload("Only"))

        assert remove_rule(db, tenant_id="kim@example.com", rule_id=rule.id) is True
        assert remove_rule(db, tenant_id="kim@example.com", rule_id=rule.id) is False
        assert list_indexed_tenants(db) == []


def test_keyed_lock_serializes_same_key_only():
    locks = KeyedLock()
    order: list[str] = []
    first_inside = threading.Event()

    def first():
        with locks.hold("kim"):
            first_inside.set()
            time.sleep(0.05)
            order.append("first")

    def second():
        first_inside.wait()
        with locks.hold("kim"):
            order.append("second")

    def other_tenant():
        first_inside.wait()
        with locks.hold("lee"):
            order.append("other")

    threads = [threading.Thread(target=fn) for fn in (first, second, other_tenant)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=2)

    assert order.index("first") < order.index("second")
    assert order.index("other") < order.index("first")
    # Released keys leave no per-key state behind.
    assert locks._states == {}
