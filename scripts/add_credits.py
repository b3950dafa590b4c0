#!/usr/bin/env python3
"""Top up an account's credit balance."""
import asyncio
import sys
import uuid
from decimal import Decimal, InvalidOperation
from pathlib import Path

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from sqlalchemy import select

from credit_gateway.billing.database import create_database
from credit_gateway.billing.ledger import CreditLedger
from credit_gateway.billing.models import Account


async def resolve_account(db, account: str):
    """Accept an account id or an email address."""
    async with db.session() as session:
        try:
            return await session.get(Account, uuid.UUID(account))
        except ValueError:
            return await session.scalar(select(Account).where(Account.email == account))


async def add_credits(account: str, amount: Decimal):
    db = create_database()
    try:
        record = await resolve_account(db, account)
        if record is None:
            print(f"Account '{account}' not found!")
            return None
        new_balance = await CreditLedger(db).add_credits(record.id, amount)
        print(f"Added ${amount} to {record.email}")
        print(f"New balance: ${new_balance:.6f}")
        return new_balance
    finally:
        await db.dispose()


if __name__ == "__main__":
    if len(sys.argv) < 2:
        print("Usage: python scripts/add_credits.py <account_id_or_email> [amount]")
        print("Example: python scripts/add_credits.py 'user@example.com' 10.00")
        sys.exit(1)

    try:
        amount = Decimal(sys.argv[2]) if len(sys.argv) > 2 else Decimal("10")
    except InvalidOperation:
        print(f"Invalid amount: {sys.argv[2]}")
        sys.exit(1)

    try:
        if asyncio.run(add_credits(sys.argv[1], amount)) is None:
            sys.exit(1)
    except ValueError as e:
        print(f"Error adding credits: {e}")
        sys.exit(1)
