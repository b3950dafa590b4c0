"""OpenRouter provider adapter."""
import json
from typing import Any, Dict, List, Optional, Tuple, Union

import httpx

from credit_gateway.billing.pricing import TokenEstimate
from credit_gateway.config import Settings, settings as default_settings
from credit_gateway.providers.base import (
    UpstreamError,
    UpstreamProvider,
    UpstreamResponse,
    UpstreamUnavailable,
)
from credit_gateway.utils.logging import get_logger

logger = get_logger(__name__)


def create_http_client(settings: Optional[Settings] = None, **kwargs: Any) -> httpx.AsyncClient:
    """Shared pooled client for upstream calls, built once at startup."""
    settings = settings or default_settings
    return httpx.AsyncClient(timeout=settings.provider_timeout, **kwargs)


def parse_error(text: str) -> Tuple[str, str, Union[str, int, None]]:
    """
    Unwrap an upstream error body into (message, type, code).

    Understands `{"error": "..."}` and `{"error": {"message", "type", "code"}}`;
    anything else is returned as raw text.
    """
    message, error_type, code = text or "Upstream request failed", "api_error", None
    try:
        data = json.loads(text)
    except ValueError:
        return message, error_type, code

    error = data.get("error") if isinstance(data, dict) else None
    if isinstance(error, str):
        message = error
    elif isinstance(error, dict) and error.get("message"):
        message = str(error["message"])
        error_type = error.get("type") or error_type
        code = error.get("code") or code
    return message, error_type, code


def parse_usage(body: Dict[str, Any]) -> Optional[TokenEstimate]:
    usage = body.get("usage")
    if not isinstance(usage, dict):
        return None
    try:
        total = usage.get("total_tokens")
        return TokenEstimate(
            prompt_tokens=int(usage.get("prompt_tokens") or 0),
            completion_tokens=int(usage.get("completion_tokens") or 0),
            reported_total=int(total) if total is not None else None,
        )
    except (TypeError, ValueError):
        return None


class OpenRouterProvider(UpstreamProvider):
    """OpenRouter implementation; a single-attempt proxy with no retries."""

    def __init__(self, client: httpx.AsyncClient, settings: Optional[Settings] = None):
        self.client = client
        self.settings = settings or default_settings
        self.base_url = self.settings.upstream_base_url.rstrip("/")

    @property
    def name(self) -> str:
        return "openrouter"

    def _headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.settings.upstream_api_key or ''}",
            "HTTP-Referer": self.settings.http_referer,
            "X-Title": self.settings.app_title,
        }

    def _url(self, path: str) -> str:
        if path.startswith("/v1"):
            path = path[len("/v1"):]
        return f"{self.base_url}{path}"

    async def forward(
        self,
        path: str,
        payload: Dict[str, Any],
        fallback_usage: TokenEstimate,
    ) -> UpstreamResponse:
        """Send the payload to the equivalent upstream path."""
        try:
            response = await self.client.post(
                self._url(path),
                json=payload,
                headers=self._headers(),
            )
        except httpx.TimeoutException:
            raise UpstreamUnavailable(
                f"Upstream request timed out after {self.settings.provider_timeout}s",
                timeout=True,
            )
        except httpx.TransportError as e:
            raise UpstreamUnavailable(f"Upstream request failed: {e}")

        if not response.is_success:
            text = response.text
            logger.warning(
                f"Upstream error: {response.status_code}",
                extra={"status_code": response.status_code, "error": text[:500]},
            )
            message, error_type, code = parse_error(text)
            raise UpstreamError(
                response.status_code, message, error_type=error_type, code=code, raw=text
            )

        try:
            body = response.json()
        except ValueError:
            raise UpstreamError(502, "Upstream returned an invalid JSON body", raw=response.text)
        if not isinstance(body, dict):
            raise UpstreamError(502, "Upstream returned an unexpected body", raw=response.text)

        usage = parse_usage(body)
        return UpstreamResponse(
            status_code=response.status_code,
            body=body,
            model=body.get("model"),
            usage=usage or fallback_usage,
            usage_estimated=usage is None,
        )

    async def list_models(self) -> List[Dict[str, Any]]:
        """Fetch the upstream model list."""
        try:
            response = await self.client.get(self._url("/models"), headers=self._headers())
            response.raise_for_status()
            data = response.json()
        except httpx.TimeoutException:
            raise UpstreamUnavailable("Model list request timed out", timeout=True)
        except httpx.HTTPStatusError as e:
            raise UpstreamError(e.response.status_code, "Failed to fetch model list")
        except (httpx.TransportError, ValueError) as e:
            raise UpstreamUnavailable(f"Model list request failed: {e}")

        models = data.get("data") if isinstance(data, dict) else None
        if not isinstance(models, list):
            raise UpstreamError(502, "Upstream model list has no data")
        return models
