"""Request admission pipeline."""
import json
import time
import uuid
from decimal import Decimal
from typing import Any, Dict, Optional

from credit_gateway.auth.api_key import AuthenticatedKey, KeyAuthenticator
from credit_gateway.auth.rate_limiter import RateLimiter
from credit_gateway.billing.ledger import CreditLedger
from credit_gateway.billing.pricing import CostEstimator
from credit_gateway.billing.usage import STATUS_ERROR, STATUS_SUCCESS, UsageEntry, UsageRecorder
from credit_gateway.errors import (
    AuthenticationError,
    GatewayError,
    InsufficientCredits,
    InternalError,
    InvalidRequest,
    RateLimited,
)
from credit_gateway.metrics.prometheus import (
    record_cost,
    record_debit_failure,
    record_latency,
    record_rejection,
    record_request,
)
from credit_gateway.providers.base import UpstreamError, UpstreamProvider
from credit_gateway.utils.logging import get_logger

logger = get_logger(__name__)


class Gateway:
    """
    Runs one inbound request through the pipeline.

    Received -> Authenticated -> RateChecked -> BalanceChecked -> Forwarded
    -> Settled -> Logged. A failure at any step returns an error with no side
    effects from later steps. Only requests that reach the upstream call get
    a usage record, exactly one each.
    """

    def __init__(
        self,
        authenticator: KeyAuthenticator,
        rate_limiter: RateLimiter,
        estimator: CostEstimator,
        ledger: CreditLedger,
        provider: UpstreamProvider,
        recorder: UsageRecorder,
    ):
        self.authenticator = authenticator
        self.rate_limiter = rate_limiter
        self.estimator = estimator
        self.ledger = ledger
        self.provider = provider
        self.recorder = recorder

    async def handle(
        self,
        path: str,
        credential: Optional[str],
        body: bytes,
    ) -> Dict[str, Any]:
        """
        Admit, forward, bill and log one request.

        Args:
            path: Inbound path, e.g. "/v1/chat/completions"
            credential: Bearer secret, None when the header is missing
            body: Raw JSON request body

        Returns:
            Upstream response body, unchanged

        Raises:
            GatewayError: Any rejection or failure, ready for the error envelope
        """
        request_id = f"req-{uuid.uuid4().hex[:12]}"
        try:
            return await self._handle(request_id, path, credential, body)
        except (AuthenticationError, RateLimited, InsufficientCredits, InvalidRequest) as e:
            record_rejection(type(e).__name__)
            record_request("rejected")
            raise
        except UpstreamError:
            record_request("upstream_error")
            raise
        except GatewayError:
            record_request("error")
            raise
        except Exception as e:
            record_request("internal_error")
            logger.error(
                "Unexpected error",
                extra={"request_id": request_id, "error": str(e)},
                exc_info=True,
            )
            raise InternalError() from e

    async def _handle(
        self,
        request_id: str,
        path: str,
        credential: Optional[str],
        body: bytes,
    ) -> Dict[str, Any]:
        identity = await self.authenticator.authenticate(credential)
        policy = await self.rate_limiter.check_and_consume(identity.account_id)

        payload = self._parse(body)
        model = self._validate(payload, policy.max_tokens_per_request if policy else None)

        rules = await self.estimator.load_rules()
        estimate = self.estimator.estimate(model, payload)
        estimated_cost = self.estimator.price(
            model, estimate.prompt_tokens, estimate.completion_tokens, rules
        )
        try:
            await self.ledger.ensure_funds(identity.account_id, estimated_cost)
        except InsufficientCredits:
            logger.info(
                "Insufficient credits",
                extra={
                    "request_id": request_id,
                    "account_id": str(identity.account_id),
                    "cost_usd": str(estimated_cost),
                },
            )
            raise

        start_time = time.time()
        try:
            upstream = await self.provider.forward(path, payload, fallback_usage=estimate)
        except UpstreamError as e:
            self.recorder.record(
                UsageEntry(
                    request_id=request_id,
                    account_id=identity.account_id,
                    api_key_id=identity.api_key_id,
                    model=model,
                    status=STATUS_ERROR,
                    error_message=e.raw,
                    request_metadata=payload,
                    response_metadata={"error": e.raw, "status_code": e.status_code},
                )
            )
            raise
        latency_seconds = time.time() - start_time

        billed_model = upstream.model or model
        usage = upstream.usage
        actual_cost = self.estimator.price(
            billed_model, usage.prompt_tokens, usage.completion_tokens, rules
        )
        await self._settle(request_id, identity, actual_cost)

        self.recorder.record(
            UsageEntry(
                request_id=request_id,
                account_id=identity.account_id,
                api_key_id=identity.api_key_id,
                model=billed_model,
                status=STATUS_SUCCESS,
                prompt_tokens=usage.prompt_tokens,
                completion_tokens=usage.completion_tokens,
                total_tokens=usage.total_tokens,
                cost_usd=actual_cost,
                credits_deducted=actual_cost,
                request_metadata=payload,
                response_metadata=upstream.body,
            )
        )

        record_request("success")
        record_cost(billed_model, float(actual_cost))
        record_latency(billed_model, latency_seconds)
        logger.info(
            "Request completed",
            extra={
                "request_id": request_id,
                "account_id": str(identity.account_id),
                "api_key_id": str(identity.api_key_id),
                "model": billed_model,
                "latency_ms": int(latency_seconds * 1000),
                "cost_usd": str(actual_cost),
            },
        )
        return upstream.body

    def _parse(self, body: bytes) -> Any:
        try:
            return json.loads(body)
        except ValueError:
            raise InvalidRequest("Request body must be valid JSON", code="invalid_json")

    def _validate(self, payload: Any, max_tokens_cap: Optional[int]) -> str:
        """Return the requested model after basic payload checks."""
        if not isinstance(payload, dict):
            raise InvalidRequest("Request body must be a JSON object", code="invalid_body")

        model = payload.get("model")
        if not model or not isinstance(model, str):
            raise InvalidRequest("Model parameter is required", code=400)

        for field in ("max_tokens", "max_completion_tokens"):
            value = payload.get(field)
            if value is None:
                continue
            if isinstance(value, bool) or not isinstance(value, int) or value < 1:
                raise InvalidRequest(f"{field} must be a positive integer", code="invalid_max_tokens")
            if max_tokens_cap is not None and value > max_tokens_cap:
                raise InvalidRequest(
                    f"{field} exceeds the limit of {max_tokens_cap} tokens per request",
                    code="max_tokens_exceeded",
                )
        return model

    async def _settle(self, request_id: str, identity: AuthenticatedKey, amount: Decimal) -> None:
        """
        Debit the actual cost after a successful upstream call.

        The response is already paid for upstream, so a failed debit is
        reported to operations instead of the caller.
        """
        try:
            await self.ledger.try_debit(identity.account_id, amount)
        except InsufficientCredits as e:
            record_debit_failure("insufficient_credits")
            logger.error(
                f"Debit exceeded balance after upstream success: available ${e.available}",
                extra={
                    "request_id": request_id,
                    "account_id": str(identity.account_id),
                    "cost_usd": str(amount),
                },
            )
        except Exception as e:
            # Driver errors such as ConnectionRefusedError are not wrapped in SQLAlchemyError
            record_debit_failure("storage_error")
            logger.error(
                f"Failed to deduct credits: {e}",
                extra={
                    "request_id": request_id,
                    "account_id": str(identity.account_id),
                    "cost_usd": str(amount),
                },
                exc_info=True,
            )
