"""Exception types raised inside the pipeline."""

from typing import Optional


class CrmPilotError(Exception):
    """Base class for pipeline errors."""

    code = "CRMPILOT_ERROR"


class ValidationError(CrmPilotError):
    """Input or model output failed validation."""

    code = "VALIDATION_ERROR"

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class AuthenticationError(CrmPilotError):
    code = "AUTH_ERROR"

    def __init__(self, message: str = "Authentication required"):
        super().__init__(message)


class AuthorizationError(CrmPilotError):
    code = "AUTH_ERROR"

    def __init__(self, message: str = "Insufficient permission"):
        super().__init__(message)


class NotFoundError(CrmPilotError):
    code = "NOT_FOUND"

    def __init__(self, resource: str):
        super().__init__(f"{resource} not found")
        self.resource = resource


class ClassificationError(CrmPilotError):
    """A classification stage could not produce an intent."""

    code = "CLASSIFICATION_ERROR"

    def __init__(self, message: str, stage: Optional[str] = None):
        super().__init__(message)
        self.stage = stage


class CompletionError(CrmPilotError):
    """The completion model failed or returned nothing usable."""

    code = "AI_MODEL_ERROR"


class RateLimitExceeded(CrmPilotError):
    """A rate-limit window is full."""

    code = "RATE_LIMIT_ERROR"

    def __init__(self, scope: str, window: str, retry_after: float):
        super().__init__("Rate limit exceeded. Please try again later.")
        self.scope = scope
        self.window = window
        self.retry_after = retry_after
