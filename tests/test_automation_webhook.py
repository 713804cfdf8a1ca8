from datetime import datetime, timezone

from app.core.config import settings
from app.services.tenant_service import create_session, store_messaging_token


def _onboard(session_local, tenant: str, *, token: str | None = "solapi-token") -> dict[str, str]:
    with session_local() as db:
        row = create_session(db, tenant_id=tenant, now=datetime.now(timezone.utc))
        session_id = row.id
        if token:
            store_messaging_token(db, tenant_id=tenant, access_token=token)
        db.commit()
    return {"X-Session-ID": session_id}


def _create_rule(client, headers: dict[str, str], **overrides) -> dict:
    payload = {
        "name": "Delivered notice",
        "condition": {"watchedColumn": "status", "operator": "changes_to", "triggerValue": "delivered"},
        "action": {
            "channel": "kakao",
            "senderNumber": "02-1234-5678",
            "recipientColumn": "phone",
            "messageTemplate": "#{name}님, 주문하신 상품이 배송 완료되었습니다.",
        },
    }
    payload.update(overrides)
    res = client.post("/automation/rules", json=payload, headers=headers)
    assert res.status_code == 200, res.text
    return res.json()


def _edit_event(**overrides) -> dict:
    payload = {
        "sheetName": "20250825",
        "spreadsheetName": "20250825",
        "spreadsheetId": "sheet-A",
        "columnName": "status",
        "rowIndex": 2,
        "columnIndex": 3,
        "oldValue": "in_transit",
        "newValue": "delivered",
        "rowData": {"name": "Kim", "phone": "010-1111-2222", "status": "delivered"},
        "timestamp": "2025-08-25T09:00:00.000Z",
    }
    payload.update(overrides)
    return payload


def test_delivered_edit_sends_kakao_message(test_context, messaging_provider):
    client, session_local = test_context
    headers = _onboard(session_local, "kim@example.com")
    rule = _create_rule(client, headers, scopeDate="20250825")

    res = client.post("/automation/trigger", json=_edit_event())
    assert res.status_code == 200, res.text
    body = res.json()

    assert body["processedRules"] == 1
    result = body["results"][0]
    assert result["tenant"] == "kim@example.com"
    assert result["ruleId"] == rule["id"]
    assert result["success"] is True
    assert result["oldValue"] == "in_transit"
    assert result["newValue"] == "delivered"
    assert body["webhook"]["sheetName"] == "20250825"
    assert body["webhook"]["rowIndex"] == 2
    assert res.headers.get("X-Request-ID")

    assert len(messaging_provider.calls) == 1
    call = messaging_provider.calls[0]
    assert call.message_type == "ATA"
    assert call.recipient == "01011112222"
    assert call.sender == "0212345678"
    assert call.access_token == "solapi-token"
    assert call.text == "Kim님, 주문하신 상품이 배송 완료되었습니다."


def test_replayed_value_does_not_fire(test_context, messaging_provider):
    client, session_local = test_context
    headers = _onboard(session_local, "kim@example.com")
    _create_rule(client, headers)

    res = client.post("/automation/trigger", json=_edit_event(oldValue="delivered"))
    assert res.status_code == 200, res.text
    assert res.json() == {
        "processedRules": 0,
        "results": [],
        "webhook": res.json()["webhook"],
    }
    assert messaging_provider.calls == []


def test_invalid_payload_is_rejected_with_400(test_context, messaging_provider):
    client, session_local = test_context
    headers = _onboard(session_local, "kim@example.com")
    _create_rule(client, headers)

    missing = _edit_event()
    missing.pop("rowData")
    res = client.post("/automation/trigger", json=missing)
    assert res.status_code == 400, res.text
    error = res.json()["error"]
    assert error["code"] == "bad_request"
    assert "rowData" in [item["field"] for item in error["details"]]

    res = client.post("/automation/trigger", json=_edit_event(columnName=""))
    assert res.status_code == 400, res.text

    res = client.post(
        "/automation/trigger",
        content=b"not json",
        headers={"Content-Type": "application/json"},
    )
    assert res.status_code == 400, res.text

    assert messaging_provider.calls == []


def test_scoping_across_tenants(test_context, messaging_provider):
    client, session_local = test_context
    kim = _onboard(session_local, "kim@example.com")
    lee = _onboard(session_local, "lee@example.com")

    _create_rule(client, kim, name="Sheet A", scopeSpreadsheetId="sheet-A")
    _create_rule(client, kim, name="Sheet B", scopeSpreadsheetId="sheet-B")
    _create_rule(client, lee, name="Other day", scopeDate="2025-08-26")
    _create_rule(client, lee, name="Same day", scopeDate="2025-08-25T00:00:00Z")

    res = client.post("/automation/trigger", json=_edit_event(spreadsheetName="2025-08-25"))
    assert res.status_code == 200, res.text
    body = res.json()

    assert body["processedRules"] == 2
    assert sorted(item["ruleName"] for item in body["results"]) == ["Same day", "Sheet A"]
    assert len(messaging_provider.calls) == 2


def test_disabled_rules_and_missing_tokens(test_context, messaging_provider):
    client, session_local = test_context
    kim = _onboard(session_local, "kim@example.com")
    lee = _onboard(session_local, "lee@example.com", token=None)

    disabled = _create_rule(client, kim, name="Disabled")
    client.patch(f"/automation/rules/{disabled['id']}", json={"enabled": False}, headers=kim)
    _create_rule(client, lee, name="No token")

    res = client.post("/automation/trigger", json=_edit_event())
    assert res.status_code == 200, res.text
    body = res.json()

    assert body["processedRules"] == 1
    result = body["results"][0]
    assert result["ruleName"] == "No token"
    assert result["success"] is False
    assert result["error"]
    assert messaging_provider.calls == []


def test_failed_dispatch_does_not_block_other_rules(test_context, messaging_provider):
    client, session_local = test_context
    headers = _onboard(session_local, "kim@example.com")
    messaging_provider.fail_recipients = {"01099990000"}

    _create_rule(client, headers, name="Broken phone", action={
        "channel": "sms",
        "senderNumber": "02-1234-5678",
        "recipientColumn": "backup_phone",
        "messageTemplate": "#{name}님 배송 완료",
    })
    _create_rule(client, headers, name="Main phone")

    event = _edit_event(rowData={"name": "Kim", "phone": "010-1111-2222", "backup_phone": "010-9999-0000"})
    res = client.post("/automation/trigger", json=event)
    assert res.status_code == 200, res.text

    outcome = {item["ruleName"]: item for item in res.json()["results"]}
    assert outcome["Main phone"]["success"] is True
    assert outcome["Broken phone"]["success"] is False


def test_webhook_secret_is_enforced_when_configured(test_context, messaging_provider):
    client, session_local = test_context
    headers = _onboard(session_local, "kim@example.com")
    _create_rule(client, headers)
    settings.automation_webhook_secret = "a-very-long-shared-secret"

    res = client.post("/automation/trigger", json=_edit_event())
    assert res.status_code == 401, res.text

    res = client.post("/automation/trigger", json=_edit_event(), headers={"X-Webhook-Secret": "wrong"})
    assert res.status_code == 401, res.text

    res = client.post(
        "/automation/trigger",
        json=_edit_event(),
        headers={"X-Webhook-Secret": "a-very-long-shared-secret"},
    )
    assert res.status_code == 200, res.text
    assert res.json()["processedRules"] == 1


def test_test_trigger_dispatches_one_rule(test_context, messaging_provider):
    client, session_local = test_context
    headers = _onboard(session_local, "kim@example.com")
    rule = _create_rule(client, headers)

    res = client.post(
        "/automation/test-trigger",
        json={"ruleId": rule["id"], "testData": {"name": "Tester", "phone": "010-5555-6666"}},
        headers=headers,
    )
    assert res.status_code == 200, res.text
    body = res.json()
    assert body["ruleId"] == rule["id"]
    assert body["success"] is True
    assert messaging_provider.calls[0].text.startswith("Tester님")

    client.patch(f"/automation/rules/{rule['id']}", json={"enabled": False}, headers=headers)
    res = client.post(
        "/automation/test-trigger",
        json={"ruleId": rule["id"], "testData": {"phone": "010-5555-6666"}},
        headers=headers,
    )
    assert res.status_code == 400, res.text

    res = client.post(
        "/automation/test-trigger",
        json={"ruleId": "missing", "testData": {}},
        headers=headers,
    )
    assert res.status_code == 404, res.text


def test_webhook_status_masks_tenants(test_context):
    client, session_local = test_context
    headers = _onboard(session_local, "kim@example.com")
    _create_rule(client, headers, scopeDate="20250825")
    disabled = _create_rule(client, headers, name="Paused")
    client.patch(f"/automation/rules/{disabled['id']}", json={"enabled": False}, headers=headers)

    res = client.get("/automation/webhook/status")
    assert res.status_code == 200, res.text
    body = res.json()

    assert body["webhookUrl"].endswith("/automation/trigger")
    assert body["indexedTenants"] == 1
    assert body["totalEnabledRules"] == 1
    tenant = body["tenants"][0]
    assert tenant["tenant"] == "ki***@example.com"
    assert tenant["rules"][0]["scopeDate"] == "20250825"
    assert tenant["rules"][0]["watchedColumn"] == "status"


def test_spreadsheet_name_wins_over_sheet_date(test_context, messaging_provider):
    client, session_local = test_context
    headers = _onboard(session_local, "kim@example.com")
    _create_rule(client, headers, scopeDate="20250825")

    res = client.post(
        "/automation/trigger",
        json=_edit_event(spreadsheetName="20250825", sheetDate="2025-08-26"),
    )
    assert res.status_code == 200, res.text
    assert res.json()["processedRules"] == 1
    assert res.json()["webhook"]["sheetDate"] == "20250825"


def test_event_without_spreadsheet_id_matches_scoped_rule(test_context, messaging_provider):
    client, session_local = test_context
    headers = _onboard(session_local, "kim@example.com")
    _create_rule(client, headers, scopeSpreadsheetId="sheet-A")

    event = _edit_event()
    event.pop("spreadsheetId")
    res = client.post("/automation/trigger", json=event)
    assert res.status_code == 200, res.text
    assert res.json()["processedRules"] == 1
    assert len(messaging_provider.calls) == 1


def test_manual_webhook_replays_sample_edit(test_context, messaging_provider):
    client, session_local = test_context
    headers = _onboard(session_local, "kim@example.com")
    _create_rule(
        client,
        headers,
        condition={"watchedColumn": "배송상태", "operator": "changes_to", "triggerValue": "배송 완료"},
        action={
            "channel": "sms",
            "senderNumber": "02-1234-5678",
            "recipientColumn": "고객 연락처",
            "messageTemplate": "#{고객명}님, 배송이 완료되었습니다.",
        },
    )

    res = client.post("/automation/webhook/test")
    assert res.status_code == 200, res.text
    body = res.json()

    assert body["testPayload"]["columnName"] == "배송상태"
    assert body["webhookResult"]["processedRules"] == 1
    assert body["webhookResult"]["results"][0]["success"] is True
    assert messaging_provider.calls[0].text == "테스트 고객님, 배송이 완료되었습니다."


def test_manual_webhook_requires_secret_when_configured(test_context):
    client, _ = test_context
    settings.automation_webhook_secret = "a-very-long-shared-secret"

    res = client.post("/automation/webhook/test")
    assert res.status_code == 401, res.text
