class TrustGateError(Exception):
    """Base class for errors raised by the scoring engines."""


class NotFoundError(TrustGateError):
    """Requested verification, device or user does not exist."""

    def __init__(self, message: str = "Not found"):
        super().__init__(message)
        self.message = message


class ExternalFetchError(TrustGateError):
    """A record store call failed. Callers substitute a neutral value."""

    def __init__(self, operation: str, cause: Exception | None = None):
        detail = f"{operation} failed"
        if cause is not None:
            detail = f"{detail}: {cause}"
        super().__init__(detail)
        self.operation = operation
        self.cause = cause


class ExternalServiceDegraded(TrustGateError):
    """Screening or threat-intel provider unavailable. Treated as no finding."""

    def __init__(self, service: str, cause: Exception | None = None):
        detail = f"{service} unavailable"
        if cause is not None:
            detail = f"{detail}: {cause}"
        super().__init__(detail)
        self.service = service
        self.cause = cause


class ValidationError(TrustGateError):
    """Malformed fingerprint, context or event payload."""

    def __init__(self, message: str, field: str | None = None):
        super().__init__(message)
        self.message = message
        self.field = field


class PolicyEngineInternalError(TrustGateError):
    """Unexpected failure inside MFA policy evaluation."""
