#!/usr/bin/env python3
"""Utility script to mint API keys for an account."""
import argparse
import asyncio
import sys
from pathlib import Path

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from sqlalchemy import select

from credit_gateway.auth.api_key import generate_api_key, hash_api_key, key_prefix
from credit_gateway.billing.database import create_database
from credit_gateway.billing.models import Account, ApiKey, RateLimitPolicy


async def create_api_key(email: str, name: str, rpm=None, rph=None, rpd=None, max_tokens=None):
    """Create the account if needed and mint a new key for it."""
    db = create_database()
    await db.create_all()
    plain_key = generate_api_key()
    try:
        async with db.session() as session:
            account = await session.scalar(select(Account).where(Account.email == email))
            if account is None:
                account = Account(email=email)
                session.add(account)
                await session.flush()
                print(f"Created account {account.id} for {email}")

            api_key = ApiKey(
                account_id=account.id,
                key_hash=hash_api_key(plain_key),
                key_prefix=key_prefix(plain_key),
                name=name,
                is_active=True,
            )
            session.add(api_key)

            limits = {
                "requests_per_minute": rpm,
                "requests_per_hour": rph,
                "requests_per_day": rpd,
                "max_tokens_per_request": max_tokens,
            }
            if any(value is not None for value in limits.values()):
                policy = await session.get(RateLimitPolicy, account.id)
                if policy is None:
                    policy = RateLimitPolicy(account_id=account.id)
                    session.add(policy)
                for field, value in limits.items():
                    if value is not None:
                        setattr(policy, field, value)

            await session.commit()
    finally:
        await db.dispose()

    print(f"API key '{name}' created successfully!")
    print(f"Key ID: {api_key.id}")
    print(f"Account ID: {account.id}")
    print(f"Plain key (shown once, save this securely): {plain_key}")
    return plain_key


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Create an API key")
    parser.add_argument("email", help="Account email; the account is created if missing")
    parser.add_argument("name", nargs="?", default="default", help="Key name")
    parser.add_argument("--rpm", type=int, help="Requests per minute")
    parser.add_argument("--rph", type=int, help="Requests per hour")
    parser.add_argument("--rpd", type=int, help="Requests per day")
    parser.add_argument("--max-tokens", type=int, help="Max tokens per request")
    args = parser.parse_args()

    try:
        asyncio.run(
            create_api_key(args.email, args.name, args.rpm, args.rph, args.rpd, args.max_tokens)
        )
    except Exception as e:
        print(f"Error creating API key: {e}")
        sys.exit(1)
