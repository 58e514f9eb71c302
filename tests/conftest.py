"""
Tollgate - Pytest Configuration
===============================

Shared fixtures: a file-backed SQLite store, an in-memory Redis double with a
controllable clock, a mocked upstream provider, and an ASGI test client.
"""

import json
import os
from dataclasses import dataclass
from decimal import Decimal
from typing import AsyncGenerator

# Set test environment BEFORE any tollgate imports
os.environ["TOLLGATE_DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["TOLLGATE_REDIS_URL"] = "redis://localhost:6379/15"
os.environ["TOLLGATE_UPSTREAM_BASE_URL"] = "http://upstream.test"
os.environ["TOLLGATE_UPSTREAM_API_KEY"] = "upstream-secret"

import httpx
import pytest
import redis.exceptions
import sqlalchemy as sa
from httpx import ASGITransport, AsyncClient

from tollgate.config import Settings
from tollgate.context import ServiceContext
from tollgate.db.models import Account, ApiKey, Base, Plan, UnbilledUsage, UsageRecord
from tollgate.db.session import create_engine, create_session_factory
from tollgate.security.api_key import digest_api_key
from tollgate.server.main import create_app

# Start of a rate window: divisible by 60
START_TIME = 60 * 28_333_334.0

TEST_KEY = "sk-test-0123456789"
SECOND_KEY = "sk-test-second-key"


# =============================================================================
# Clock + Redis double
# =============================================================================


class FakeClock:
    """Callable wall clock that only moves when told to."""

    def __init__(self, now: float = START_TIME):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakePipeline:
    """Buffers commands and applies them in one step on execute()."""

    def __init__(self, redis: "FakeRedis"):
        self._redis = redis
        self._ops = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        self._ops = []
        return False

    def incr(self, name):
        self._ops.append(("incr", (name,), {}))
        return self

    def expire(self, name, seconds, nx=False):
        self._ops.append(("expire", (name, seconds), {"nx": nx}))
        return self

    async def execute(self):
        self._redis._check()
        results = []
        for method, args, kwargs in self._ops:
            results.append(await getattr(self._redis, method)(*args, **kwargs))
        self._ops = []
        return results


class FakeRedis:
    """Subset of redis.asyncio.Redis used by Tollgate, with TTLs on a FakeClock."""

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.data = {}
        self.expires_at = {}
        self.fail = False

    def _check(self):
        if self.fail:
            raise redis.exceptions.ConnectionError("redis is down")

    def _purge(self, name):
        deadline = self.expires_at.get(name)
        if deadline is not None and self.clock() >= deadline:
            self.data.pop(name, None)
            self.expires_at.pop(name, None)

    async def get(self, name):
        self._check()
        self._purge(name)
        return self.data.get(name)

    async def set(self, name, value, ex=None):
        self._check()
        self.data[name] = value
        if ex is not None:
            self.expires_at[name] = self.clock() + ex
        else:
            self.expires_at.pop(name, None)
        return True

    async def delete(self, *names):
        self._check()
        removed = 0
        for name in names:
            self._purge(name)
            if name in self.data:
                removed += 1
            self.data.pop(name, None)
            self.expires_at.pop(name, None)
        return removed

    async def incr(self, name):
        self._check()
        self._purge(name)
        value = int(self.data.get(name, 0)) + 1
        self.data[name] = str(value)
        return value

    async def expire(self, name, seconds, nx=False):
        self._check()
        self._purge(name)
        if name not in self.data:
            return False
        if nx and name in self.expires_at:
            return False
        self.expires_at[name] = self.clock() + seconds
        return True

    async def ttl(self, name):
        self._purge(name)
        if name not in self.data:
            return -2
        if name not in self.expires_at:
            return -1
        return int(self.expires_at[name] - self.clock())

    async def ping(self):
        self._check()
        return True

    def pipeline(self, transaction=True):
        return FakePipeline(self)

    async def aclose(self):
        return None


# =============================================================================
# Upstream double
# =============================================================================


def completion_body(total_tokens: int = 5000, model: str = "gpt-3.5-turbo") -> dict:
    return {
        "id": "chatcmpl-123",
        "object": "chat.completion",
        "model": model,
        "choices": [{"index": 0, "message": {"role": "assistant", "content": "hi"}}],
        "usage": {
            "prompt_tokens": total_tokens // 2,
            "completion_tokens": total_tokens - total_tokens // 2,
            "total_tokens": total_tokens,
        },
    }


class FakeUpstream:
    """httpx.MockTransport handler recording every relayed request."""

    def __init__(self):
        self.requests = []
        self.status = 200
        self.error = None
        self.payload = None
        self.total_tokens = 5000

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        if self.status >= 400:
            return httpx.Response(self.status, json={"error": "upstream says no"})
        if self.payload is not None:
            return httpx.Response(self.status, json=self.payload)
        path = request.url.path
        if path.endswith("/chat/completions"):
            body = json.loads(request.content or b"{}")
            return httpx.Response(
                200, json=completion_body(self.total_tokens, body.get("model", "gpt-3.5-turbo"))
            )
        if path.endswith("/embeddings"):
            return httpx.Response(
                200,
                json={
                    "object": "list",
                    "data": [{"object": "embedding", "index": 0, "embedding": [0.1, 0.2]}],
                    "model": "text-embedding-3-small",
                    "usage": {"prompt_tokens": self.total_tokens, "total_tokens": self.total_tokens},
                },
            )
        if path.endswith("/models"):
            return httpx.Response(200, json={"object": "list", "data": [{"id": "gpt-4o"}]})
        return httpx.Response(404, json={"error": "not found"})


# =============================================================================
# Store fixtures
# =============================================================================


@dataclass
class Seed:
    plan_id: int
    account_id: int
    key_id: int
    disabled_key_id: int
    raw_key: str = TEST_KEY


@pytest.fixture
async def engine(tmp_path):
    """Fresh file-backed SQLite database per test."""
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'tollgate.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
async def seed(session_factory) -> Seed:
    """One Basic-plan account with 10.00 balance, one active and one disabled key."""
    async with session_factory() as session:
        plan = Plan(name="Basic", price_per_1k=Decimal("0.0020"), monthly_quota=10000, rate_limit_per_minute=60)
        session.add(plan)
        await session.flush()
        account = Account(name="acme", balance=Decimal("10.00"), plan_id=plan.id)
        session.add(account)
        await session.flush()
        key = ApiKey(account_id=account.id, name="main", key=digest_api_key(TEST_KEY), key_prefix=TEST_KEY[:8])
        disabled = ApiKey(
            account_id=account.id,
            name="old",
            key=digest_api_key("sk-disabled"),
            key_prefix="sk-disab",
            active=False,
        )
        session.add_all([key, disabled])
        await session.commit()
        return Seed(plan_id=plan.id, account_id=account.id, key_id=key.id, disabled_key_id=disabled.id)


# =============================================================================
# Context + HTTP client
# =============================================================================


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_redis(clock) -> FakeRedis:
    return FakeRedis(clock)


@pytest.fixture
def upstream() -> FakeUpstream:
    return FakeUpstream()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        database_url="sqlite+aiosqlite:///:memory:",
        upstream_base_url="http://upstream.test",
        upstream_api_key="upstream-secret",
    )


@pytest.fixture
async def ctx(settings, session_factory, fake_redis, upstream, clock) -> AsyncGenerator[ServiceContext, None]:
    http = httpx.AsyncClient(transport=httpx.MockTransport(upstream))
    yield ServiceContext(
        settings=settings,
        session_factory=session_factory,
        redis=fake_redis,
        http=http,
        clock=clock,
    )
    await http.aclose()


@pytest.fixture
async def client(ctx) -> AsyncGenerator[AsyncClient, None]:
    app = create_app(context=ctx)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


# =============================================================================
# Query helpers
# =============================================================================


async def get_balance(session_factory, account_id: int) -> Decimal:
    async with session_factory() as session:
        return (
            await session.execute(sa.select(Account.balance).where(Account.id == account_id))
        ).scalar_one()


async def set_balance(session_factory, account_id: int, balance: Decimal) -> None:
    async with session_factory() as session:
        await session.execute(sa.update(Account).where(Account.id == account_id).values(balance=balance))
        await session.commit()


async def usage_records(session_factory) -> list:
    async with session_factory() as session:
        return (await session.execute(sa.select(UsageRecord).order_by(UsageRecord.id))).scalars().all()


async def unbilled_entries(session_factory) -> list:
    async with session_factory() as session:
        return (await session.execute(sa.select(UnbilledUsage).order_by(UnbilledUsage.id))).scalars().all()
