"""Append-only usage records for admitted requests."""
import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, Optional

from credit_gateway.billing.database import Database
from credit_gateway.billing.models import UsageRecord
from credit_gateway.metrics.prometheus import record_usage_write_failure
from credit_gateway.utils.logging import get_logger
from credit_gateway.utils.tasks import TaskTracker

logger = get_logger(__name__)

STATUS_SUCCESS = "success"
STATUS_ERROR = "error"


@dataclass
class UsageEntry:
    """One audit entry, success or failure."""

    request_id: str
    account_id: uuid.UUID
    api_key_id: Optional[uuid.UUID]
    model: str
    status: str
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    cost_usd: Decimal = Decimal("0")
    credits_deducted: Decimal = Decimal("0")
    error_message: Optional[str] = None
    request_metadata: Optional[Dict[str, Any]] = None
    response_metadata: Optional[Dict[str, Any]] = field(default_factory=dict)


class UsageRecorder:
    """
    Writes usage records without blocking or failing the response.

    `record()` hands the insert to the task tracker and returns at once.
    Write failures are logged and counted, never raised to the caller.
    """

    def __init__(self, db: Database, tracker: TaskTracker):
        self.db = db
        self.tracker = tracker

    def record(self, entry: UsageEntry) -> None:
        self.tracker.spawn(self.write(entry), name=f"usage-record:{entry.request_id}")

    async def write(self, entry: UsageEntry) -> bool:
        """Insert the record; returns False if the write failed."""
        try:
            async with self.db.session() as session:
                session.add(
                    UsageRecord(
                        request_id=entry.request_id,
                        account_id=entry.account_id,
                        api_key_id=entry.api_key_id,
                        model=entry.model,
                        status=entry.status,
                        prompt_tokens=entry.prompt_tokens,
                        completion_tokens=entry.completion_tokens,
                        total_tokens=entry.total_tokens,
                        cost_usd=entry.cost_usd,
                        credits_deducted=entry.credits_deducted,
                        error_message=entry.error_message,
                        request_metadata=entry.request_metadata,
                        response_metadata=entry.response_metadata,
                    )
                )
                await session.commit()
        except Exception as e:
            record_usage_write_failure()
            logger.error(
                f"Failed to record usage: {e}",
                extra={"request_id": entry.request_id, "account_id": str(entry.account_id)},
                exc_info=True,
            )
            return False
        return True
