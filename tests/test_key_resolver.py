"""
Tests for API key resolution and the key cache.

Covers credential extraction, cache hit/miss/expiry behaviour against the
store, last-used stamping and the balance gate.
"""

from decimal import Decimal

import pytest
import sqlalchemy as sa
from sqlalchemy import event

from conftest import TEST_KEY, set_balance
from tollgate.db.models import ApiKey
from tollgate.errors import (
    InsufficientBalance,
    InternalError,
    InvalidCredential,
    Unauthenticated,
)
from tollgate.security.api_key import cache_key, digest_api_key, generate_api_key
from tollgate.security.key_resolver import (
    KEY_CACHE_TTL_SECONDS,
    KeyContext,
    extract_credential,
    resolve_key,
)


@pytest.fixture
def key_lookups(engine):
    """Count store queries that join api_keys to accounts (cache misses)."""
    calls = []

    def _count(conn, cursor, statement, parameters, context, executemany):
        if "FROM api_keys JOIN accounts" in statement:
            calls.append(statement)

    event.listen(engine.sync_engine, "before_cursor_execute", _count)
    yield calls
    event.remove(engine.sync_engine, "before_cursor_execute", _count)


class TestExtractCredential:
    """Test header parsing."""

    def test_x_api_key(self):
        assert extract_credential({"x-api-key": "sk-abc"}) == "sk-abc"

    def test_bearer(self):
        assert extract_credential({"authorization": "Bearer sk-abc"}) == "sk-abc"

    def test_x_api_key_wins(self):
        headers = {"x-api-key": "sk-one", "authorization": "Bearer sk-two"}
        assert extract_credential(headers) == "sk-one"

    def test_other_scheme_ignored(self):
        assert extract_credential({"authorization": "Basic dXNlcjpwYXNz"}) is None

    def test_missing(self):
        assert extract_credential({}) is None
        assert extract_credential({"authorization": "Bearer "}) is None


class TestGenerateApiKey:
    def test_shape(self):
        raw_key, prefix, digest = generate_api_key()
        assert raw_key.startswith("sk-")
        assert len(raw_key) == 3 + 64
        assert prefix == raw_key[:8]
        assert digest == digest_api_key(raw_key)
        assert raw_key not in digest


class TestResolveKey:
    """Test resolution against store and cache."""

    async def test_missing_credential(self, ctx, seed):
        with pytest.raises(Unauthenticated):
            await resolve_key(ctx, None)
        with pytest.raises(Unauthenticated):
            await resolve_key(ctx, "")

    async def test_unknown_key(self, ctx, seed):
        with pytest.raises(InvalidCredential):
            await resolve_key(ctx, "sk-nope")

    async def test_disabled_key(self, ctx, seed):
        with pytest.raises(InvalidCredential):
            await resolve_key(ctx, "sk-disabled")

    async def test_valid_key(self, ctx, seed):
        entry = await resolve_key(ctx, TEST_KEY)
        assert entry.key_id == seed.key_id
        assert entry.account_id == seed.account_id
        assert entry.plan_id == seed.plan_id
        assert entry.balance == Decimal("10.00")
        assert entry.rate_limit_per_minute == 60

    async def test_populates_cache_with_ttl(self, ctx, seed, fake_redis):
        await resolve_key(ctx, TEST_KEY)
        name = cache_key(digest_api_key(TEST_KEY))
        assert await fake_redis.ttl(name) == KEY_CACHE_TTL_SECONDS
        cached = KeyContext.model_validate_json(await fake_redis.get(name))
        assert cached.account_id == seed.account_id
        assert TEST_KEY not in name

    async def test_second_resolution_within_ttl_skips_store(self, ctx, seed, clock, key_lookups):
        await resolve_key(ctx, TEST_KEY)
        clock.advance(KEY_CACHE_TTL_SECONDS - 1)
        await resolve_key(ctx, TEST_KEY)
        assert len(key_lookups) == 1

    async def test_resolution_after_ttl_hits_store(self, ctx, seed, clock, key_lookups):
        await resolve_key(ctx, TEST_KEY)
        clock.advance(KEY_CACHE_TTL_SECONDS + 1)
        await resolve_key(ctx, TEST_KEY)
        assert len(key_lookups) == 2

    async def test_cached_balance_may_be_stale(self, ctx, seed, session_factory):
        await resolve_key(ctx, TEST_KEY)
        await set_balance(session_factory, seed.account_id, Decimal("0"))
        entry = await resolve_key(ctx, TEST_KEY)
        assert entry.balance == Decimal("10.00")

    async def test_records_last_used(self, ctx, seed, session_factory):
        await resolve_key(ctx, TEST_KEY)
        async with session_factory() as session:
            last_used = (
                await session.execute(sa.select(ApiKey.last_used_at).where(ApiKey.id == seed.key_id))
            ).scalar_one()
        assert last_used is not None

    async def test_zero_balance_rejected_after_last_used(self, ctx, seed, session_factory):
        await set_balance(session_factory, seed.account_id, Decimal("0"))
        with pytest.raises(InsufficientBalance):
            await resolve_key(ctx, TEST_KEY)
        async with session_factory() as session:
            last_used = (
                await session.execute(sa.select(ApiKey.last_used_at).where(ApiKey.id == seed.key_id))
            ).scalar_one()
        assert last_used is not None

    async def test_negative_balance_rejected(self, ctx, seed, session_factory):
        await set_balance(session_factory, seed.account_id, Decimal("-0.50"))
        with pytest.raises(InsufficientBalance):
            await resolve_key(ctx, TEST_KEY)

    async def test_cache_failure_is_internal_error(self, ctx, seed, fake_redis):
        fake_redis.fail = True
        with pytest.raises(InternalError) as excinfo:
            await resolve_key(ctx, TEST_KEY)
        assert excinfo.value.message == "Authentication failed"
        assert "redis" not in excinfo.value.message
