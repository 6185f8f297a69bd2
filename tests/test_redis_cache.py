import json
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from nexora.storage.models import utcnow
from nexora.storage.redis_cache import RedisCache


@pytest.fixture
def client():
    client = MagicMock()
    client.set = AsyncMock()
    client.getdel = AsyncMock()
    return client


@pytest.fixture
def cache(client):
    with patch("nexora.storage.redis_cache.aioredis.from_url", return_value=client):
        return RedisCache("redis://localhost:6379/0")


async def test_stash_sets_ttl(cache, client):
    expires_at = utcnow() + timedelta(hours=1)

    await cache.stash_token("password_reset", "abc", "user-1", expires_at)

    key, value = client.set.await_args[0]
    assert key == "auth:password_reset:abc"
    assert json.loads(value)["user_id"] == "user-1"
    assert 3590 <= client.set.await_args[1]["ex"] <= 3600


async def test_stash_ttl_never_zero(cache, client):
    await cache.stash_token("password_reset", "abc", "user-1", utcnow() - timedelta(seconds=5))

    assert client.set.await_args[1]["ex"] == 1


async def test_pop_uses_getdel(cache, client):
    client.getdel.return_value = json.dumps({"user_id": "user-1"})

    assert await cache.pop_token("email_verification", "abc") == "user-1"
    client.getdel.assert_awaited_once_with("auth:email_verification:abc")


async def test_pop_missing_or_corrupt(cache, client):
    client.getdel.return_value = None
    assert await cache.pop_token("password_reset", "abc") is None

    client.getdel.return_value = "not json"
    assert await cache.pop_token("password_reset", "abc") is None
