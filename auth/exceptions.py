"""Auth exceptions."""


class AuthException(Exception):
    """Base auth exception with HTTP status."""

    error_code = "AUTH_ERROR"

    def __init__(self, message: str, status_code: int = 400, data: dict | None = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.data = data or {}


class ValidationError(AuthException):
    """Malformed phone, email, otp or session id. Raised before any lookup."""

    error_code = "VALIDATION_ERROR"

    def __init__(self, message: str, field: str | None = None):
        super().__init__(message, status_code=400, data={"field": field} if field else None)
        self.field = field


class Unauthorized(AuthException):
    error_code = "UNAUTHORIZED"

    def __init__(self, message: str = "Not authenticated"):
        super().__init__(message, status_code=401)


class SessionNotFound(AuthException):
    """Unknown, expired or already consumed session id."""

    error_code = "SESSION_NOT_FOUND"

    def __init__(self, message: str = "Invalid or expired session"):
        super().__init__(message, status_code=404)


class OrderViolation(AuthException):
    """A step was attempted out of its required sequence."""

    error_code = "ORDER_VIOLATION"

    def __init__(self, message: str):
        super().__init__(message, status_code=409)


class AccountConflict(AuthException):
    error_code = "ACCOUNT_CONFLICT"

    def __init__(self, message: str):
        super().__init__(message, status_code=409)


class AttemptsExceeded(AuthException):
    """The attempt cap for a medium was reached; the session is abandoned."""

    error_code = "ATTEMPTS_EXCEEDED"

    def __init__(self, message: str = "Maximum OTP attempts exceeded"):
        super().__init__(message, status_code=429)


class VerificationFailed(AuthException):
    """The provider explicitly rejected the code."""

    error_code = "VERIFICATION_FAILED"

    def __init__(self, message: str = "Invalid OTP", attempts_remaining: int | None = None):
        data = {"attempts_remaining": attempts_remaining} if attempts_remaining is not None else None
        super().__init__(message, status_code=401, data=data)
        self.attempts_remaining = attempts_remaining


class GatewayError(AuthException):
    """Transport or provider failure, distinct from an explicit rejection."""

    error_code = "GATEWAY_ERROR"

    def __init__(self, message: str = "OTP provider unavailable"):
        super().__init__(message, status_code=502)


class RateLimited(AuthException):
    error_code = "RATE_LIMITED"

    def __init__(self, message: str = "Too many requests, please try again later", retry_after: int | None = None):
        super().__init__(message, status_code=429)
        self.retry_after = retry_after


class Blocked(AuthException):
    """Abuse detector veto for the current window."""

    error_code = "BLOCKED"

    def __init__(self, message: str = "Too many failed attempts, please try again later"):
        super().__init__(message, status_code=403)
