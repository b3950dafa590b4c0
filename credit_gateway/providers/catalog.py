"""Cached model list served on /v1/models."""
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from credit_gateway.errors import GatewayError
from credit_gateway.providers.base import UpstreamProvider
from credit_gateway.utils.logging import get_logger

logger = get_logger(__name__)


def _model(model_id: str) -> Dict[str, Any]:
    return {
        "id": model_id,
        "object": "model",
        "created": 1677610602,
        "owned_by": model_id.split("/", 1)[0],
        "permission": [],
        "root": model_id,
        "parent": None,
    }


# Served when the upstream list cannot be fetched
FALLBACK_MODELS: List[Dict[str, Any]] = [
    _model(model_id)
    for model_id in (
        "meta-llama/llama-3.2-3b-instruct:free",
        "google/gemini-flash-1.5",
        "anthropic/claude-3-haiku",
        "openai/gpt-4o-mini",
        "openai/gpt-4o",
        "openai/gpt-4-turbo",
        "anthropic/claude-3.5-sonnet",
        "anthropic/claude-3-opus",
        "meta-llama/llama-3.1-70b-instruct",
        "meta-llama/llama-3.1-405b-instruct",
        "google/gemini-pro-1.5",
        "mistralai/mistral-large",
        "mistralai/mixtral-8x7b-instruct",
    )
]


@dataclass
class CacheEntry:
    value: List[Dict[str, Any]]
    expires_at: float

    def is_fresh(self, now: float) -> bool:
        return now < self.expires_at


class ModelCatalog:
    """
    Owns the model-list cache.

    The entry is refreshed lazily on the first request after it expires. If
    the refresh fails the stale entry is served, or the static list when
    nothing was ever fetched.
    """

    def __init__(
        self,
        provider: UpstreamProvider,
        ttl: float = 3600,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.provider = provider
        self.ttl = ttl
        self.clock = clock
        self.entry: Optional[CacheEntry] = None

    async def list_models(self) -> List[Dict[str, Any]]:
        now = self.clock()
        if self.entry is not None and self.entry.is_fresh(now):
            return self.entry.value

        try:
            models = await self.provider.list_models()
        except GatewayError as e:
            logger.warning(f"Model list refresh failed: {e.message}")
            return self.entry.value if self.entry is not None else FALLBACK_MODELS

        self.entry = CacheEntry(value=models, expires_at=now + self.ttl)
        return models
