"""Exception types for the API layer and the automation engine."""
from typing import Optional


# --- HTTP-facing exceptions (mapped to JSON responses in app.main) ---

class APIException(Exception):
    status_code = 500

    def __init__(self, detail: str = "Internal server error"):
        super().__init__(detail)
        self.detail = detail


class UnauthorizedException(APIException):
    status_code = 401

    def __init__(self, detail: str = "Authentication required"):
        super().__init__(detail)


class ForbiddenException(APIException):
    status_code = 403

    def __init__(self, detail: str = "Forbidden"):
        super().__init__(detail)


class NotFoundException(APIException):
    status_code = 404

    def __init__(self, resource: str, identifier: str):
        super().__init__(f"{resource} not found: {identifier}")


class ValidationException(APIException):
    status_code = 400


# --- Automation engine ---

class AutomationError(Exception):
    """Base class for automation engine failures."""


class RuleStoreUnavailable(AutomationError):
    """The enabled rule set could not be read. Aborts the whole run."""


class RuleConfigError(AutomationError):
    """A rule's stored configuration is malformed; the rule is quarantined."""

    def __init__(self, rule_id: str, detail: str):
        super().__init__(f"rule {rule_id}: {detail}")
        self.rule_id = rule_id
        self.detail = detail


class UnknownTriggerError(RuleConfigError):
    def __init__(self, rule_id: str, trigger_type: str):
        super().__init__(rule_id, f"unknown trigger type {trigger_type!r}")
        self.trigger_type = trigger_type


class AudienceResolutionError(AutomationError):
    """The user directory could not produce a rule's candidates."""

    def __init__(self, trigger_type: str, cause: Optional[BaseException] = None):
        message = f"audience resolution failed for trigger {trigger_type!r}"
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message)
        self.trigger_type = trigger_type


class SignalSourceError(AutomationError):
    def __init__(self, source: str, user_id: str, cause: BaseException):
        super().__init__(f"signal source {source!r} failed for user {user_id}: {cause}")
        self.source = source
        self.user_id = user_id
