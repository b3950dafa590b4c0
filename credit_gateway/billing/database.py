"""Database connection and session management."""
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from credit_gateway.billing.models import Base
from credit_gateway.config import Settings, settings as default_settings


class Database:
    """
    Process-wide storage client.

    Wraps one pooled async engine and its session factory. Built once at
    startup and shared read-only by every request task.
    """

    def __init__(self, engine: AsyncEngine):
        self.engine = engine
        self.sessionmaker = async_sessionmaker(
            engine, class_=AsyncSession, expire_on_commit=False
        )

    @property
    def dialect(self) -> str:
        return self.engine.dialect.name

    def session(self) -> AsyncSession:
        """New session; use as `async with db.session() as session`."""
        return self.sessionmaker()

    def insert(self, table):
        """
        Dialect `INSERT` construct that supports `on_conflict_do_update`.

        Counters and balances are mutated with server-side upserts, so the
        generic insert is not enough.
        """
        if self.dialect == "postgresql":
            from sqlalchemy.dialects.postgresql import insert
        elif self.dialect == "sqlite":
            from sqlalchemy.dialects.sqlite import insert
        else:
            raise NotImplementedError(f"Atomic upsert not supported for {self.dialect}")
        return insert(table)

    async def create_all(self) -> None:
        """Initialize database tables."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def dispose(self) -> None:
        await self.engine.dispose()


def create_database(settings: Optional[Settings] = None, **engine_kwargs: Any) -> Database:
    """Create the shared database client from settings."""
    settings = settings or default_settings
    url = settings.async_database_url
    options: Dict[str, Any] = {"echo": False, "pool_pre_ping": True}
    if not url.startswith("sqlite"):
        options["pool_size"] = settings.db_pool_size
        options["max_overflow"] = settings.db_max_overflow
    options.update(engine_kwargs)
    return Database(create_async_engine(url, **options))
