"""
Error taxonomy shared by the services and the HTTP layer.

Each class carries the HTTP status it maps to; ``code`` is the machine
readable value rendered in the response envelope.
"""

from typing import Optional


class EarnHubError(Exception):
    status_code = 500
    default_code = "INTERNAL_SERVER_ERROR"

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code


class ValidationError(EarnHubError):
    status_code = 400
    default_code = "VALIDATION_ERROR"


class InvalidAmountError(ValidationError):
    default_code = "INVALID_AMOUNT"


class SelfReferralError(ValidationError):
    default_code = "SELF_REFERRAL"


class AuthenticationError(EarnHubError):
    status_code = 401
    default_code = "AUTH_REQUIRED"


class InvalidCredentialsError(AuthenticationError):
    default_code = "INVALID_CREDENTIALS"


class TokenInvalidError(AuthenticationError):
    default_code = "TOKEN_INVALID"


class TokenExpiredError(AuthenticationError):
    default_code = "TOKEN_EXPIRED"


class ForbiddenError(EarnHubError):
    status_code = 403
    default_code = "FORBIDDEN"


class NotFoundError(EarnHubError):
    status_code = 404
    default_code = "NOT_FOUND"


class ConflictError(EarnHubError):
    status_code = 409
    default_code = "CONFLICT"


class DuplicateIdentityError(ConflictError):
    default_code = "DUPLICATE_IDENTITY"


class TaskAlreadyCompletedError(ConflictError):
    default_code = "TASK_ALREADY_COMPLETED"


class InsufficientBalanceError(ConflictError):
    default_code = "INSUFFICIENT_BALANCE"


class AlreadyResolvedError(ConflictError):
    default_code = "ALREADY_RESOLVED"


class AlreadyGrantedError(ConflictError):
    default_code = "ALREADY_GRANTED"


class RateLimitError(EarnHubError):
    status_code = 429
    default_code = "RATE_LIMIT_EXCEEDED"

    def __init__(self, message: str, retry_after: int):
        super().__init__(message)
        self.retry_after = retry_after


class ServiceUnavailableError(EarnHubError):
    """Persistence did not answer in time; the request may be retried."""

    status_code = 503
    default_code = "SERVICE_UNAVAILABLE"
