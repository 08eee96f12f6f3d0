"""Exception taxonomy for the settlement pipeline.

Four families, each with a fixed handling rule:

* ``ValidationFailure``: malformed input, unknown platform / template. Rejected
  immediately, never retried.
* ``TransientError``: network failures, upstream 5xx, lock contention, rate
  limits. Retried with bounded backoff; exhaustion becomes a recorded terminal
  failure.
* ``AuthorizationError``: expired or revoked credentials. Not retried; the
  credential is invalidated and the user must re-authenticate.
* ``BatchInProgressError``: single-flight contention on a batch run.

Business-rule violations (amount below minimum, invalid rate) are not
exceptions; they travel as ``PayoutValidation`` data on the calculation.

All of them derive from ``SettlementError`` so the HTTP layer can map the whole
tree with one handler.
"""
from __future__ import annotations

from datetime import datetime


class SettlementError(Exception):
    """Base of every settlement-domain error."""
    status_code: int = 500
    message: str = "Settlement pipeline error."

    def __init__(self, message: str | None = None):
        self.message = message or self.__class__.message
        super().__init__(self.message)


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

class ValidationFailure(SettlementError):
    status_code = 422
    message = "Invalid input."


class UnsupportedPlatformError(ValidationFailure):
    message = "Unsupported platform."

    def __init__(self, platform: str):
        self.platform = platform
        super().__init__(f"Unsupported platform: {platform!r}")


class UnknownTemplateError(ValidationFailure):
    message = "Unknown notification template."

    def __init__(self, template_type: str):
        self.template_type = template_type
        super().__init__(f"Unknown notification template: {template_type!r}")


class MissingTemplateVariablesError(ValidationFailure):
    message = "Missing template variables."

    def __init__(self, template_type: str, missing: list[str]):
        self.template_type = template_type
        self.missing = sorted(missing)
        super().__init__(f"Template {template_type!r} missing variables: {', '.join(self.missing)}")


class InvalidStatusTransition(ValidationFailure):
    status_code = 409
    message = "Invalid status transition."

    def __init__(self, current: str, requested: str):
        self.current = current
        self.requested = requested
        super().__init__(f"Cannot move from {current!r} to {requested!r}")


# ---------------------------------------------------------------------------
# Transient
# ---------------------------------------------------------------------------

class TransientError(SettlementError):
    status_code = 503
    message = "Temporary failure, retry later."


class RateLimitExceeded(TransientError):
    status_code = 429
    message = "Rate limit exceeded."

    def __init__(self, platform: str, user_id: str, reset_at: datetime, limit: int):
        self.platform = platform
        self.user_id = user_id
        self.reset_at = reset_at
        self.limit = limit
        super().__init__(
            f"{platform} rate limit of {limit} requests exhausted for user {user_id}; resets at {reset_at.isoformat()}"
        )


class RetryExhaustedError(TransientError):
    message = "Retries exhausted."

    def __init__(self, operation: str, attempts: int, last_error: Exception | None = None):
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error
        detail = f": {last_error}" if last_error else ""
        super().__init__(f"{operation} failed after {attempts} attempts{detail}")


class LockNotAcquired(TransientError):
    status_code = 409
    message = "Lock is held by another worker."

    def __init__(self, key: str):
        self.key = key
        super().__init__(f"Lock {key!r} is held by another worker")


# ---------------------------------------------------------------------------
# Authorization
# ---------------------------------------------------------------------------

class AuthorizationError(SettlementError):
    status_code = 401
    message = "Credential is invalid or revoked; re-authentication required."


# ---------------------------------------------------------------------------
# Upstream classification
# ---------------------------------------------------------------------------

class PlatformAPIError(SettlementError):
    """Social platform API failure with its retry classification."""
    status_code = 502
    message = "Platform API error."

    def __init__(self, platform: str, message: str, *, status_code: int | None = None,
                 retryable: bool = False, retry_after: float | None = None):
        self.platform = platform
        self.upstream_status = status_code
        self.retryable = retryable
        self.retry_after = retry_after
        super().__init__(f"{platform}: {message}")


class PaymentGatewayError(SettlementError):
    """Gateway failure; ``retryable`` marks network / 5xx style errors."""
    status_code = 502
    message = "Payment gateway error."

    def __init__(self, message: str, *, retryable: bool = True, code: str | None = None):
        self.retryable = retryable
        self.code = code
        super().__init__(message)


# ---------------------------------------------------------------------------
# Single-flight
# ---------------------------------------------------------------------------

class BatchInProgressError(SettlementError):
    status_code = 409
    message = "A batch run is already in progress."


__all__ = [
    "SettlementError",
    "ValidationFailure",
    "UnsupportedPlatformError",
    "UnknownTemplateError",
    "MissingTemplateVariablesError",
    "InvalidStatusTransition",
    "TransientError",
    "RateLimitExceeded",
    "RetryExhaustedError",
    "LockNotAcquired",
    "AuthorizationError",
    "PlatformAPIError",
    "PaymentGatewayError",
    "BatchInProgressError",
]
