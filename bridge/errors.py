"""Error hierarchy for the bridge.

Every error carries the HTTP status and OpenAI error ``type`` it is reported
with, so the FastAPI exception handlers stay a single mapping.
"""

from __future__ import annotations


class BridgeError(Exception):
    """Base exception for all client-visible bridge failures."""

    status_code: int = 500
    error_type: str = "internal_error"

    def __init__(self, message: str, *, param: str | None = None, code: str | None = None):
        super().__init__(message)
        self.message = message
        self.param = param
        self.code = code

    def public_message(self) -> str:
        return self.message


class ValidationError(BridgeError):
    """Malformed request or content matching a known-malicious pattern."""

    status_code = 400
    error_type = "invalid_request_error"


class RequestTooLarge(ValidationError):
    status_code = 413


class AuthError(BridgeError):
    status_code = 401
    error_type = "authentication_error"


class RateLimitExceeded(BridgeError):
    """Client exceeded its request ceiling for the trailing window."""

    status_code = 429
    error_type = "rate_limit_error"

    def __init__(self, message: str, *, retry_after: float, limit: int):
        super().__init__(message, code="rate_limit_exceeded")
        self.retry_after = retry_after
        self.limit = limit


class BackendInvocationError(BridgeError):
    """Backend failed and produced no usable payload.

    ``stdout``/``stderr`` are kept for logging only; the client sees a
    generic message.
    """

    status_code = 502
    error_type = "backend_error"

    def __init__(
        self,
        message: str,
        *,
        strategy: str | None = None,
        stdout: str | None = None,
        stderr: str | None = None,
        exit_code: int | None = None,
    ):
        super().__init__(message)
        self.strategy = strategy
        self.stdout = stdout
        self.stderr = stderr
        self.exit_code = exit_code

    def public_message(self) -> str:
        return "The backend failed to produce a response"


class BackendTimeout(BackendInvocationError):
    status_code = 504
    error_type = "timeout_error"

    def public_message(self) -> str:
        return self.message


class QuotaExhaustedError(BackendInvocationError):
    """Backend account is out of credit. Never retried on the other strategy."""

    status_code = 402
    error_type = "insufficient_quota"

    def public_message(self) -> str:
        return "Backend credit or quota exhausted"


def is_retryable(err: BackendInvocationError) -> bool:
    """Whether a failure may be retried once via the fallback strategy."""
    return not isinstance(err, (QuotaExhaustedError, BackendTimeout))
