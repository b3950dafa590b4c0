#!/usr/bin/env python3
"""Initialize database with tables."""
import asyncio
import sys
from pathlib import Path

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from credit_gateway.billing.database import create_database


async def init_db():
    db = create_database()
    try:
        await db.create_all()
    finally:
        await db.dispose()


if __name__ == "__main__":
    print("Initializing database...")
    try:
        asyncio.run(init_db())
        print("Database initialized successfully!")
    except Exception as e:
        print(f"Error initializing database: {e}")
        sys.exit(1)
