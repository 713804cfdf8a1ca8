from datetime import datetime
from typing import Any, Literal

from pydantic import AliasChoices, ConfigDict, Field, field_validator, model_validator

from app.schemas.common import CamelModel


AutomationOperator = Literal["equals", "contains", "changes_to"]
MessageChannel = Literal["sms", "kakao"]

_OPERATOR_ALIASES = {
    "changesto": "changes_to",
    "changes-to": "changes_to",
    "equal": "equals",
    "eq": "equals",
}
_CHANNEL_ALIASES = {
    "chat": "kakao",
    "kakaotalk": "kakao",
    "ata": "kakao",
}


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    return str(value)


def _as_row_data(value: Any) -> dict[str, str]:
    if not isinstance(value, dict):
        raise ValueError("must be an object of column name to cell value")
    return {str(key): _as_text(item) for key, item in value.items() if str(key).strip()}


class AutomationConditionIn(CamelModel):
    watched_column: str = Field(
        min_length=1,
        max_length=120,
        validation_alias=AliasChoices("watchedColumn", "columnName", "watched_column"),
    )
    operator: AutomationOperator = "equals"
    trigger_value: str = Field(default="", max_length=255)

    @field_validator("operator", mode="before")
    @classmethod
    def normalize_operator(cls, value: Any) -> Any:
        if not isinstance(value, str):
            return value
        cleaned = value.strip()
        return _OPERATOR_ALIASES.get(cleaned.lower(), cleaned)


class AutomationActionIn(CamelModel):
    channel: MessageChannel = Field(
        default="sms",
        validation_alias=AliasChoices("channel", "type"),
    )
    sender_number: str = Field(min_length=4, max_length=32, pattern=r"^[0-9\-]+$")
    recipient_column: str = Field(min_length=1, max_length=120)
    message_template: str = Field(min_length=1, max_length=2000)

    @field_validator("channel", mode="before")
    @classmethod
    def normalize_channel(cls, value: Any) -> Any:
        if not isinstance(value, str):
            return value
        cleaned = value.strip().lower()
        return _CHANNEL_ALIASES.get(cleaned, cleaned)

    @field_validator("sender_number", mode="before")
    @classmethod
    def strip_sender(cls, value: Any) -> Any:
        return value.strip() if isinstance(value, str) else value


class AutomationRuleCreateIn(CamelModel):
    name: str = Field(min_length=1, max_length=120)
    enabled: bool = True
    condition: AutomationConditionIn = Field(validation_alias=AliasChoices("condition", "conditions"))
    action: AutomationActionIn = Field(validation_alias=AliasChoices("action", "actions"))
    scope_spreadsheet_id: str | None = Field(
        default=None,
        max_length=128,
        validation_alias=AliasChoices("scopeSpreadsheetId", "spreadsheetId", "scope_spreadsheet_id"),
    )
    scope_spreadsheet_name: str | None = Field(
        default=None,
        max_length=255,
        validation_alias=AliasChoices("scopeSpreadsheetName", "spreadsheetName", "scope_spreadsheet_name"),
    )
    scope_date: str | None = Field(
        default=None,
        max_length=40,
        validation_alias=AliasChoices("scopeDate", "targetDate", "scope_date"),
    )

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "name": "Delivered notice",
                "condition": {"watchedColumn": "status", "operator": "changes_to", "triggerValue": "delivered"},
                "action": {
                    "channel": "kakao",
                    "senderNumber": "02-1234-5678",
                    "recipientColumn": "phone",
                    "messageTemplate": "#{name}님, 주문하신 상품이 배송 완료되었습니다.",
                },
                "scopeDate": "20250825",
            }
        }
    )

    @field_validator("name", mode="before")
    @classmethod
    def strip_name(cls, value: Any) -> Any:
        return value.strip() if isinstance(value, str) else value

    @field_validator("scope_spreadsheet_id", "scope_spreadsheet_name", "scope_date", mode="before")
    @classmethod
    def blank_to_none(cls, value: Any) -> Any:
        if value is None:
            return None
        cleaned = str(value).strip()
        return cleaned or None


class AutomationRuleUpdateIn(CamelModel):
    name: str | None = Field(default=None, min_length=1, max_length=120)
    enabled: bool | None = None
    condition: AutomationConditionIn | None = Field(
        default=None,
        validation_alias=AliasChoices("condition", "conditions"),
    )
    action: AutomationActionIn | None = Field(
        default=None,
        validation_alias=AliasChoices("action", "actions"),
    )
    scope_spreadsheet_id: str | None = Field(
        default=None,
        max_length=128,
        validation_alias=AliasChoices("scopeSpreadsheetId", "spreadsheetId", "scope_spreadsheet_id"),
    )
    scope_spreadsheet_name: str | None = Field(
        default=None,
        max_length=255,
        validation_alias=AliasChoices("scopeSpreadsheetName", "spreadsheetName", "scope_spreadsheet_name"),
    )
    scope_date: str | None = Field(
        default=None,
        max_length=40,
        validation_alias=AliasChoices("scopeDate", "targetDate", "scope_date"),
    )

    @field_validator("scope_spreadsheet_id", "scope_spreadsheet_name", "scope_date", mode="before")
    @classmethod
    def blank_to_none(cls, value: Any) -> Any:
        if value is None:
            return None
        cleaned = str(value).strip()
        return cleaned or None

    @model_validator(mode="after")
    def validate_has_updates(self) -> "AutomationRuleUpdateIn":
        if not self.model_fields_set:
            raise ValueError("At least one field must be provided")
        return self


class AutomationConditionOut(CamelModel):
    watched_column: str
    operator: AutomationOperator
    trigger_value: str


class AutomationActionOut(CamelModel):
    channel: MessageChannel
    sender_number: str
    recipient_column: str
    message_template: str


class AutomationRuleOut(CamelModel):
    id: str
    name: str
    enabled: bool
    owner_tenant: str
    scope_spreadsheet_id: str | None = None
    scope_spreadsheet_name: str | None = None
    scope_date: str | None = None
    condition: AutomationConditionOut
    action: AutomationActionOut
    created_at: datetime
    updated_at: datetime


class AutomationRuleListOut(CamelModel):
    items: list[AutomationRuleOut]
    count: int
    limit: int


class AutomationRuleDeleteOut(CamelModel):
    rule_id: str
    deleted: bool


class TriggerWebhookIn(CamelModel):
    sheet_name: str = Field(min_length=1, max_length=255)
    column_name: str = Field(min_length=1, max_length=255)
    row_data: dict[str, str]
    spreadsheet_name: str | None = Field(default=None, max_length=255)
    spreadsheet_id: str | None = Field(default=None, max_length=128)
    sheet_date: str | None = Field(default=None, max_length=64)
    row_index: int | None = None
    column_index: int | None = None
    old_value: str = ""
    new_value: str = ""
    timestamp: str | None = None

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "sheetName": "20250825",
                "spreadsheetName": "20250825",
                "spreadsheetId": "1AbCdEf",
                "columnName": "status",
                "rowIndex": 2,
                "oldValue": "in_transit",
                "newValue": "delivered",
                "rowData": {"name": "Kim", "phone": "010-1111-2222", "status": "delivered"},
            }
        },
    )

    @field_validator("sheet_name", "column_name", mode="before")
    @classmethod
    def strip_required(cls, value: Any) -> Any:
        return value.strip() if isinstance(value, str) else value

    @field_validator("row_data", mode="before")
    @classmethod
    def coerce_row_data(cls, value: Any) -> dict[str, str]:
        return _as_row_data(value)

    @field_validator("old_value", "new_value", mode="before")
    @classmethod
    def coerce_cell_value(cls, value: Any) -> str:
        return _as_text(value)

    @field_validator("sheet_date", "spreadsheet_name", "spreadsheet_id", "timestamp", mode="before")
    @classmethod
    def coerce_optional_text(cls, value: Any) -> str | None:
        if value is None:
            return None
        return _as_text(value)


class DispatchResultOut(CamelModel):
    tenant: str
    rule_id: str
    rule_name: str
    success: bool
    column_name: str
    old_value: str
    new_value: str
    timestamp: datetime
    error: str | None = None


class TriggerWebhookEchoOut(CamelModel):
    sheet_name: str
    sheet_date: str | None = None
    row_index: int | None = None
    column_name: str
    old_value: str
    new_value: str
    timestamp: str | None = None


class TriggerWebhookOut(CamelModel):
    processed_rules: int
    results: list[DispatchResultOut]
    webhook: TriggerWebhookEchoOut


class TriggerWebhookManualTestOut(CamelModel):
    test_payload: dict[str, Any]
    webhook_result: TriggerWebhookOut


class AutomationTestTriggerIn(CamelModel):
    rule_id: str = Field(min_length=1, max_length=36)
    test_data: dict[str, str]

    @field_validator("test_data", mode="before")
    @classmethod
    def coerce_test_data(cls, value: Any) -> dict[str, str]:
        return _as_row_data(value)


class AutomationTestTriggerOut(CamelModel):
    rule_id: str
    rule_name: str
    success: bool
    error: str | None = None
    timestamp: datetime


class WebhookRuleSummaryOut(CamelModel):
    name: str
    scope_date: str | None = None
    watched_column: str
    trigger_value: str


class WebhookTenantSummaryOut(CamelModel):
    tenant: str
    enabled_rules: int
    rules: list[WebhookRuleSummaryOut]


class WebhookStatusOut(CamelModel):
    webhook_url: str
    indexed_tenants: int
    total_enabled_rules: int
    tenants: list[WebhookTenantSummaryOut]
