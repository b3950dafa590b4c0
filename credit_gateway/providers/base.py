"""Base provider interface for the upstream model API."""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union

from credit_gateway.billing.pricing import TokenEstimate
from credit_gateway.errors import GatewayError


@dataclass
class UpstreamResponse:
    """Successful upstream reply with the usage used for billing."""

    status_code: int
    body: Dict[str, Any]
    model: Optional[str]
    usage: TokenEstimate
    usage_estimated: bool = False


class UpstreamProvider(ABC):
    """Abstract base class for OpenAI-compatible upstream providers."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the provider name (e.g., 'openrouter')."""
        pass

    @abstractmethod
    async def forward(
        self,
        path: str,
        payload: Dict[str, Any],
        fallback_usage: TokenEstimate,
    ) -> UpstreamResponse:
        """
        Relay a request body verbatim to the provider.

        Args:
            path: Inbound path, e.g. "/v1/chat/completions"
            payload: Caller's JSON body
            fallback_usage: Estimate used when the reply carries no usage

        Returns:
            UpstreamResponse with the unmodified body

        Raises:
            UpstreamError: Provider answered with a non-2xx status
            UpstreamUnavailable: Provider could not be reached
        """
        pass

    @abstractmethod
    async def list_models(self) -> List[Dict[str, Any]]:
        """Return the provider's model list in OpenAI format."""
        pass


class UpstreamError(GatewayError):
    """Error reported by the upstream provider, passed through to the caller."""

    def __init__(
        self,
        status_code: int,
        message: str,
        error_type: str = "api_error",
        code: Union[str, int, None] = None,
        raw: Optional[str] = None,
    ):
        super().__init__(message, code=code if code is not None else status_code)
        self.status_code = clamp_status(status_code)
        self.error_type = error_type
        self.raw = raw if raw is not None else message


class UpstreamUnavailable(UpstreamError):
    """Network-level failure: timeout, DNS, connection reset."""

    def __init__(self, message: str, timeout: bool = False):
        super().__init__(
            504 if timeout else 502,
            message,
            code="upstream_unavailable",
        )
        self.timeout = timeout


def clamp_status(status_code: int) -> int:
    """Keep passthrough statuses inside the 4xx/5xx range."""
    if 400 <= status_code <= 599:
        return status_code
    return 500
