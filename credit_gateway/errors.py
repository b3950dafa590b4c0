"""Error taxonomy for the request admission pipeline."""
from decimal import Decimal
from typing import Any, Dict, Optional, Union


class GatewayError(Exception):
    """Base class for every error rendered into the OpenAI-style envelope."""

    status_code: int = 500
    error_type: str = "api_error"
    default_code: Union[str, int, None] = None

    def __init__(
        self,
        message: str,
        code: Union[str, int, None] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code if code is not None else self.default_code
        self.headers = headers or {}

    def to_envelope(self) -> Dict[str, Any]:
        code = self.code if self.code is not None else self.status_code
        return {"error": {"message": self.message, "type": self.error_type, "code": code}}


class AuthenticationError(GatewayError):
    """
    Credential rejected.

    Clients always see the same message; `reason` is kept for server logs so
    that the response does not reveal which check failed.
    """

    status_code = 401
    error_type = "authentication_error"
    default_code = "invalid_api_key"
    reason = "invalid"

    def __init__(self):
        super().__init__("Invalid API key", headers={"WWW-Authenticate": "Bearer"})


class MalformedCredential(AuthenticationError):
    reason = "malformed"


class UnknownKey(AuthenticationError):
    reason = "unknown"


class InactiveKey(AuthenticationError):
    reason = "inactive"


class ExpiredKey(AuthenticationError):
    reason = "expired"


class RateLimited(GatewayError):
    """A fixed window has reached its cap."""

    status_code = 429
    error_type = "rate_limit_error"
    default_code = "rate_limit_exceeded"

    def __init__(self, window: str, cap: int, retry_after: int = 1):
        super().__init__(
            f"Rate limit exceeded: {cap} requests per {window}",
            headers={"Retry-After": str(retry_after)},
        )
        self.window = window
        self.cap = cap
        self.retry_after = retry_after


class InsufficientCredits(GatewayError):
    status_code = 402
    error_type = "insufficient_quota"
    default_code = "insufficient_credits"

    def __init__(self, required: Decimal, available: Decimal):
        super().__init__(
            f"Insufficient credits. Required: ${required:.6f}, Available: ${available:.6f}"
        )
        self.required = required
        self.available = available


class InvalidRequest(GatewayError):
    status_code = 400
    error_type = "invalid_request_error"


class NotFound(GatewayError):
    status_code = 404
    error_type = "invalid_request_error"
    default_code = "not_found"

    def __init__(self, message: str = "Not found"):
        super().__init__(message)


class InternalError(GatewayError):
    """Unexpected failure; details stay in server logs."""

    status_code = 500
    error_type = "api_error"
    default_code = "internal_error"

    def __init__(self):
        super().__init__("Internal server error")
