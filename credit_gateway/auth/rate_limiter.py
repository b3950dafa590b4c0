"""Rate limiting over fixed, wall-clock aligned windows."""
import uuid
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple

from sqlalchemy import select

from credit_gateway.billing.database import Database
from credit_gateway.billing.models import RateLimitPolicy, RequestCounter, utcnow
from credit_gateway.errors import RateLimited
from credit_gateway.utils.logging import get_logger

logger = get_logger(__name__)

MINUTE = "minute"
HOUR = "hour"
DAY = "day"

# Evaluation order; the first breached window decides the rejection
WINDOWS: Tuple[str, ...] = (MINUTE, HOUR, DAY)

WINDOW_LENGTH: Dict[str, timedelta] = {
    MINUTE: timedelta(minutes=1),
    HOUR: timedelta(hours=1),
    DAY: timedelta(days=1),
}

POLICY_FIELDS: Dict[str, str] = {
    MINUTE: "requests_per_minute",
    HOUR: "requests_per_hour",
    DAY: "requests_per_day",
}


def window_start(kind: str, now: datetime) -> datetime:
    """Truncate `now` to the start of its minute, hour or day."""
    if kind == MINUTE:
        return now.replace(second=0, microsecond=0)
    if kind == HOUR:
        return now.replace(minute=0, second=0, microsecond=0)
    if kind == DAY:
        return now.replace(hour=0, minute=0, second=0, microsecond=0)
    raise ValueError(f"Unknown window: {kind}")


def seconds_until_reset(kind: str, now: datetime) -> int:
    """Whole seconds until the window containing `now` closes (at least 1)."""
    remaining = window_start(kind, now) + WINDOW_LENGTH[kind] - now
    return max(1, int(remaining.total_seconds() + 0.999))


class RateLimiter:
    """
    Fixed-window request quotas per account.

    Counters live in storage keyed by (account, window, window start). This
    is a fixed-window scheme, so a burst straddling a boundary can reach
    twice the nominal cap.
    """

    def __init__(self, db: Database, clock: Callable[[], datetime] = utcnow):
        self.db = db
        self.clock = clock

    async def get_policy(self, account_id: uuid.UUID) -> Optional[RateLimitPolicy]:
        async with self.db.session() as session:
            return await session.get(RateLimitPolicy, account_id)

    async def get_count(self, account_id: uuid.UUID, kind: str, start: datetime) -> int:
        async with self.db.session() as session:
            count = await session.scalar(
                select(RequestCounter.request_count).where(
                    RequestCounter.account_id == account_id,
                    RequestCounter.window_type == kind,
                    RequestCounter.window_start == start,
                )
            )
        return count or 0

    async def check_and_consume(self, account_id: uuid.UUID) -> Optional[RateLimitPolicy]:
        """
        Check all windows and count this request against each of them.

        Args:
            account_id: Account making the request

        Returns:
            The account's policy, or None when it has none (unlimited)

        Raises:
            RateLimited: If a window is at its cap (nothing is incremented)
        """
        now = self.clock()
        starts = {kind: window_start(kind, now) for kind in WINDOWS}
        policy = await self.get_policy(account_id)

        if policy is not None:
            for kind in WINDOWS:
                cap = getattr(policy, POLICY_FIELDS[kind])
                if cap is None:
                    continue
                count = await self.get_count(account_id, kind, starts[kind])
                if count >= cap:
                    logger.info(
                        "Rate limit exceeded",
                        extra={"account_id": str(account_id), "window": kind},
                    )
                    raise RateLimited(
                        window=kind, cap=cap, retry_after=seconds_until_reset(kind, now)
                    )

        await self.increment(account_id, [(kind, starts[kind]) for kind in WINDOWS])
        return policy

    async def increment(self, account_id: uuid.UUID, windows: List[Tuple[str, datetime]]) -> None:
        """Atomically add one to each counter, creating missing rows."""
        async with self.db.session() as session:
            for kind, start in windows:
                stmt = self.db.insert(RequestCounter).values(
                    account_id=account_id,
                    window_type=kind,
                    window_start=start,
                    request_count=1,
                )
                stmt = stmt.on_conflict_do_update(
                    index_elements=["account_id", "window_type", "window_start"],
                    set_={"request_count": RequestCounter.request_count + 1},
                )
                await session.execute(stmt)
            await session.commit()
