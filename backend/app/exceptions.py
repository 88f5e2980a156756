"""Custom exceptions for the backend application."""


class AppException(Exception):
    """Base class for backend exceptions with HTTP status code.

    All custom exceptions should inherit from this class and define
    their specific status_code for consistent HTTP response handling.
    """
    status_code: int = 500

    def __init__(self, message: str = "Internal server error"):
        self.message = message
        super().__init__(message)


class RateLimitExceededError(AppException):
    """Raised by a route-level limiter dependency when a client is over its limit.

    Maps to HTTP 429 Too Many Requests with a Retry-After header.
    """
    status_code = 429

    def __init__(
        self,
        retry_after: int,
        key_prefix: str = "",
        message: str = "Too many requests. Please try again later.",
    ):
        self.retry_after = retry_after
        self.key_prefix = key_prefix
        super().__init__(message)


class AuthenticationError(AppException):
    """Raised when the bearer session token is missing or invalid.

    Maps to HTTP 401 Unauthorized.
    """
    status_code = 401

    def __init__(self, detail: str = "Authentication required"):
        self.detail = detail
        super().__init__(detail)


class InvalidPushTokenError(AppException):
    """Raised when a device push handle is missing or malformed.

    Maps to HTTP 400 Bad Request.
    """
    status_code = 400

    def __init__(self, detail: str = "Invalid push token"):
        self.detail = detail
        super().__init__(detail)
