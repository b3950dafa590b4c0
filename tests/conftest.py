"""Shared fixtures: a throwaway SQLite database, seed helpers and a fake upstream."""
import json
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

import httpx
import pytest
import pytest_asyncio
from sqlalchemy import select
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import NullPool

from credit_gateway.api.dependencies import Services
from credit_gateway.auth.api_key import (
    KeyAuthenticator,
    generate_api_key,
    hash_api_key,
    key_prefix,
)
from credit_gateway.auth.rate_limiter import RateLimiter
from credit_gateway.billing.database import Database
from credit_gateway.billing.ledger import CreditLedger
from credit_gateway.billing.models import (
    Account,
    ApiKey,
    Balance,
    PricingRule,
    RateLimitPolicy,
    UsageRecord,
)
from credit_gateway.billing.pricing import CostEstimator
from credit_gateway.billing.usage import UsageRecorder
from credit_gateway.config import Settings
from credit_gateway.gateway import Gateway
from credit_gateway.main import create_app
from credit_gateway.providers.catalog import ModelCatalog
from credit_gateway.providers.openrouter import OpenRouterProvider
from credit_gateway.utils.tasks import TaskTracker

UPSTREAM_URL = "https://upstream.test/api/v1"


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'gateway.db'}",
        upstream_base_url=UPSTREAM_URL,
        upstream_api_key="upstream-secret",
        markup_percentage=Decimal("20"),
        min_cost_usd=Decimal("0.000001"),
        default_completion_tokens=1000,
    )


@pytest_asyncio.fixture
async def db(settings):
    """File-backed SQLite with one connection per session, so locking is real."""
    engine = create_async_engine(settings.async_database_url, poolclass=NullPool)
    database = Database(engine)
    await database.create_all()
    yield database
    await database.dispose()


@pytest_asyncio.fixture
async def tracker():
    tracker = TaskTracker()
    yield tracker
    await tracker.drain()


class Seeder:
    """Creates accounts, keys, balances, policies and pricing rules."""

    def __init__(self, db: Database):
        self.db = db

    async def account(
        self,
        email: str = "user@example.com",
        credits: Optional[Decimal] = Decimal("10"),
        policy: Optional[Dict[str, Optional[int]]] = None,
        **key_fields: Any,
    ):
        """Create an account with one API key; returns (account, secret, api_key)."""
        secret = generate_api_key()
        async with self.db.session() as session:
            account = Account(email=email)
            session.add(account)
            await session.flush()
            api_key = ApiKey(
                account_id=account.id,
                key_hash=hash_api_key(secret),
                key_prefix=key_prefix(secret),
                name="test",
                is_active=key_fields.pop("is_active", True),
                **key_fields,
            )
            session.add(api_key)
            if credits is not None:
                session.add(Balance(account_id=account.id, credits=credits))
            if policy is not None:
                session.add(RateLimitPolicy(account_id=account.id, **policy))
            await session.commit()
        return account, secret, api_key

    async def rule(self, pattern: str, markup: str, min_cost: str = "0", priority: int = 0, active: bool = True):
        async with self.db.session() as session:
            rule = PricingRule(
                model_pattern=pattern,
                markup_percentage=Decimal(markup),
                min_cost_usd=Decimal(min_cost),
                priority=priority,
                is_active=active,
            )
            session.add(rule)
            await session.commit()
        return rule

    async def usage_records(self, account_id=None) -> List[UsageRecord]:
        async with self.db.session() as session:
            query = select(UsageRecord)
            if account_id is not None:
                query = query.where(UsageRecord.account_id == account_id)
            return list((await session.execute(query)).scalars().all())

    async def api_key(self, api_key_id) -> ApiKey:
        async with self.db.session() as session:
            return await session.get(ApiKey, api_key_id)


@pytest.fixture
def seed(db) -> Seeder:
    return Seeder(db)


def chat_completion(model: str = "openai/gpt-4-turbo", prompt_tokens: int = 1000, completion_tokens: int = 500, usage: bool = True) -> Dict[str, Any]:
    body: Dict[str, Any] = {
        "id": "gen-123",
        "object": "chat.completion",
        "model": model,
        "choices": [
            {
                "index": 0,
                "message": {"role": "assistant", "content": "Hi there!"},
                "finish_reason": "stop",
            }
        ],
    }
    if usage:
        body["usage"] = {
            "prompt_tokens": prompt_tokens,
            "completion_tokens": completion_tokens,
            "total_tokens": prompt_tokens + completion_tokens,
        }
    return body


class FakeUpstream:
    """httpx.MockTransport handler recording every upstream request."""

    def __init__(self):
        self.requests: List[httpx.Request] = []
        self.handler: Callable[[httpx.Request], httpx.Response] = lambda request: httpx.Response(
            200, json=chat_completion()
        )

    def respond(self, status_code: int = 200, json_body: Any = None, text: Optional[str] = None):
        if text is not None:
            self.handler = lambda request: httpx.Response(status_code, text=text)
        else:
            self.handler = lambda request: httpx.Response(status_code, json=json_body)

    def raise_error(self, exc_factory: Callable[[httpx.Request], Exception]):
        def handler(request):
            raise exc_factory(request)

        self.handler = handler

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.handler(request)

    @property
    def payloads(self) -> List[Any]:
        return [json.loads(request.content) for request in self.requests]


@pytest.fixture
def upstream() -> FakeUpstream:
    return FakeUpstream()


@pytest_asyncio.fixture
async def http_client(upstream):
    client = httpx.AsyncClient(transport=httpx.MockTransport(upstream), timeout=5)
    yield client
    await client.aclose()


@pytest.fixture
def provider(http_client, settings) -> OpenRouterProvider:
    return OpenRouterProvider(http_client, settings)


@pytest.fixture
def services(db, http_client, tracker, provider, settings) -> Services:
    gateway = Gateway(
        authenticator=KeyAuthenticator(db, tracker),
        rate_limiter=RateLimiter(db),
        estimator=CostEstimator(db, settings),
        ledger=CreditLedger(db),
        provider=provider,
        recorder=UsageRecorder(db, tracker),
    )
    return Services(
        database=db,
        http_client=http_client,
        tracker=tracker,
        gateway=gateway,
        catalog=ModelCatalog(provider, ttl=settings.models_cache_ttl),
    )


@pytest_asyncio.fixture
async def client(services, settings):
    """HTTP client driving the app in-process with test services installed."""
    app = create_app(settings)
    app.state.services = services
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://gateway.test") as client:
        yield client
