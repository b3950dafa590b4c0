"""Atomic credit balance operations."""
import uuid
from decimal import Decimal

from sqlalchemy import select, update

from credit_gateway.billing.database import Database
from credit_gateway.billing.models import Balance, utcnow
from credit_gateway.errors import InsufficientCredits
from credit_gateway.utils.logging import get_logger

logger = get_logger(__name__)


class CreditLedger:
    """
    Reads and mutates account balances.

    Every mutation is a single server-side statement (conditional UPDATE or
    INSERT ... ON CONFLICT DO UPDATE), so concurrent requests for the same
    account cannot lose updates or overdraw.
    """

    def __init__(self, db: Database):
        self.db = db

    async def get_balance(self, account_id: uuid.UUID) -> Decimal:
        """Current credits; an account without a balance row has none."""
        async with self.db.session() as session:
            credits = await session.scalar(
                select(Balance.credits).where(Balance.account_id == account_id)
            )
        return Decimal(credits) if credits is not None else Decimal("0")

    async def ensure_funds(self, account_id: uuid.UUID, required: Decimal) -> Decimal:
        """
        Pre-flight check against an estimated cost.

        Raises:
            InsufficientCredits: If the balance is below `required`
        """
        available = await self.get_balance(account_id)
        if available < required:
            raise InsufficientCredits(required=required, available=available)
        return available

    async def try_debit(self, account_id: uuid.UUID, amount: Decimal) -> None:
        """
        Atomically subtract `amount` if the balance covers it.

        Raises:
            InsufficientCredits: If the balance would go negative; nothing is
                deducted in that case
        """
        async with self.db.session() as session:
            result = await session.execute(
                update(Balance)
                .where(Balance.account_id == account_id, Balance.credits >= amount)
                .values(credits=Balance.credits - amount, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            await session.commit()

        if result.rowcount == 0:
            available = await self.get_balance(account_id)
            raise InsufficientCredits(required=amount, available=available)

    async def add_credits(self, account_id: uuid.UUID, amount: Decimal) -> Decimal:
        """
        Atomically add credits, creating the balance row if needed.

        Top-ups are additive; repeated calls accumulate. Deduplicating a
        payment event is up to the caller.

        Returns:
            Balance after the top-up
        """
        amount = Decimal(amount)
        if amount <= 0:
            raise ValueError("Credit amount must be positive")

        stmt = self.db.insert(Balance).values(
            account_id=account_id, credits=amount, currency="USD", updated_at=utcnow()
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["account_id"],
            set_={"credits": Balance.credits + amount, "updated_at": utcnow()},
        ).returning(Balance.credits)

        async with self.db.session() as session:
            new_balance = (await session.execute(stmt)).scalar_one()
            await session.commit()

        logger.info(
            f"Added ${amount} credits",
            extra={"account_id": str(account_id)},
        )
        return Decimal(new_balance)
