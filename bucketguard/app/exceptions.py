"""Custom exceptions for bucketguard.

Throttling is never an exception: a rejected admission is returned as an
AdmissionDecision with ``allowed=False``.
"""


class AdmissionError(Exception):
    """Base class for bucketguard exceptions."""

    def __init__(self, message: str = "Admission error"):
        self.message = message
        super().__init__(message)


class ConfigurationError(AdmissionError, ValueError):
    """Raised when a RateLimitConfig or a decide() argument is invalid.

    Raised before any store access. Never retried; the caller must fix
    its configuration.
    """

    def __init__(self, detail: str, field: str | None = None):
        self.field = field
        message = f"Invalid rate limit configuration: {detail}"
        super().__init__(message)


class MalformedThrottleStateError(AdmissionError, ValueError):
    """Raised when sync() receives a throttle snapshot that fails validation.

    Nothing is written. Snapshots already in the store that turn out to be
    malformed are not reported this way; decisions just ignore them.
    """

    def __init__(self, detail: str):
        self.detail = detail
        super().__init__(f"Malformed throttle state: {detail}")


class StoreUnavailableError(AdmissionError):
    """Raised when the budget store cannot be reached or replies unexpectedly.

    The outcome of the operation is unknown: callers must not assume an
    admission happened. No retry is attempted here.
    """

    def __init__(self, operation: str, tenant: str | None = None, detail: str | None = None):
        self.operation = operation
        self.tenant = tenant
        message = f"Budget store unavailable during {operation}"
        if tenant is not None:
            message += f" for tenant {tenant!r}"
        if detail:
            message += f": {detail}"
        super().__init__(message)
