class AutomationError(Exception):
    """Base class for automation engine failures."""


class WebhookValidationError(AutomationError, ValueError):
    def __init__(self, message: str, *, details: list[dict] | None = None):
        super().__init__(message)
        self.details = details or []


class RuleQuotaExceeded(AutomationError):
    def __init__(self, limit: int):
        super().__init__(f"A tenant can hold at most {limit} automation rules")
        self.limit = limit


class RuleNotFound(AutomationError, LookupError):
    def __init__(self, rule_id: str):
        super().__init__("Automation rule not found")
        self.rule_id = rule_id


class MessagingAuthUnavailable(AutomationError):
    pass


class ProviderFailure(AutomationError):
    def __init__(self, message: str, *, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code
