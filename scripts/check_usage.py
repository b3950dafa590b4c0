#!/usr/bin/env python3
"""Query usage records from database."""
import asyncio
import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from sqlalchemy import func, select

from credit_gateway.billing.database import create_database
from credit_gateway.billing.models import Account, ApiKey, UsageRecord


async def show_usage(email=None):
    db = create_database()
    try:
        async with db.session() as session:
            query = select(UsageRecord).order_by(UsageRecord.created_at.desc()).limit(20)
            if email:
                query = query.join(Account, Account.id == UsageRecord.account_id).where(Account.email == email)
            records = (await session.execute(query)).scalars().all()

            print("\n=== Recent Usage Records ===\n")
            total_cost = 0
            for record in records:
                print(f"Request ID: {record.request_id}")
                print(f"  Model: {record.model}")
                print(f"  Status: {record.status}")
                print(f"  Tokens: {record.prompt_tokens} in + {record.completion_tokens} out = {record.total_tokens} total")
                print(f"  Cost: ${float(record.cost_usd):.6f}")
                if record.error_message:
                    print(f"  Error: {record.error_message[:200]}")
                print(f"  Time: {record.created_at}")
                print()
                total_cost += float(record.cost_usd)

            print(f"Total Cost (last {len(records)} requests): ${total_cost:.6f}\n")

            # Aggregate by model
            print("=== Cost by Model ===\n")
            model_costs = await session.execute(
                select(
                    UsageRecord.model,
                    func.sum(UsageRecord.cost_usd).label("total_cost"),
                    func.count(UsageRecord.id).label("request_count"),
                ).group_by(UsageRecord.model)
            )
            for model, cost, count in model_costs:
                print(f"{model}: ${float(cost):.6f} ({count} requests)")

            # Aggregate by API key
            print("\n=== Cost by API Key ===\n")
            key_costs = await session.execute(
                select(
                    ApiKey.key_prefix,
                    ApiKey.name,
                    func.sum(UsageRecord.cost_usd).label("total_cost"),
                    func.count(UsageRecord.id).label("request_count"),
                )
                .join(UsageRecord, ApiKey.id == UsageRecord.api_key_id)
                .group_by(ApiKey.key_prefix, ApiKey.name)
            )
            for prefix, name, cost, count in key_costs:
                print(f"{prefix}... ({name}): ${float(cost):.6f} ({count} requests)")
    finally:
        await db.dispose()


if __name__ == "__main__":
    asyncio.run(show_usage(sys.argv[1] if len(sys.argv) > 1 else None))
