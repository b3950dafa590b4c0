#!/usr/bin/env python3
"""List API keys with their status and last use."""
import asyncio
import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from sqlalchemy import select

from credit_gateway.billing.database import create_database
from credit_gateway.billing.models import Account, ApiKey, Balance, utcnow


async def list_keys():
    db = create_database()
    try:
        async with db.session() as session:
            rows = await session.execute(
                select(ApiKey, Account.email, Balance.credits)
                .join(Account, Account.id == ApiKey.account_id)
                .outerjoin(Balance, Balance.account_id == ApiKey.account_id)
                .order_by(Account.email, ApiKey.created_at)
            )

            print("\n=== API Keys ===\n")
            now = utcnow()
            for api_key, email, credits in rows:
                if not api_key.is_active:
                    status = "inactive"
                elif api_key.expires_at is not None and api_key.expires_at <= now:
                    status = "expired"
                else:
                    status = "active"
                print(f"{api_key.key_prefix}... {api_key.name or '-'}")
                print(f"  Account: {email} (balance ${float(credits or 0):.6f})")
                print(f"  Status: {status}")
                print(f"  Last used: {api_key.last_used_at or 'never'}")
                print()
    finally:
        await db.dispose()


if __name__ == "__main__":
    asyncio.run(list_keys())
