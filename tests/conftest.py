"""
Pytest configuration and fixtures for the Redis object store tests.

Provides:
- In-process Redis (fakeredis) clients, sync and async
- Store fixtures
- Spy clients that record the commands of every executed pipeline
- A real Redis client for integration tests (REDIS_URL)
"""

import os

import fakeredis
import pytest
import pytest_asyncio
import redis
from dotenv import load_dotenv

from records import RecordingPipeline, SpyAsyncClient, SpyClient

# Load environment variables for tests
load_dotenv()


# ============================================================================
# Pytest Configuration
# ============================================================================

def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers", "unit: Unit tests (fast, no external dependencies)"
    )
    config.addinivalue_line(
        "markers", "integration: Integration tests (require a Redis server at REDIS_URL)"
    )


# ============================================================================
# Clients
# ============================================================================

@pytest.fixture
def redis_client():
    """Provide an in-process Redis server (fresh per test)."""
    client = fakeredis.FakeRedis()
    client.flushall()
    yield client
    client.flushall()
    client.close()


@pytest_asyncio.fixture
async def async_redis_client():
    """Provide an in-process asyncio Redis server (fresh per test)."""
    client = fakeredis.FakeAsyncRedis()
    await client.flushall()
    yield client
    await client.flushall()
    await client.aclose()


@pytest.fixture
def spy_client(redis_client):
    """Sync client that records the commands of each executed pipeline."""
    return SpyClient(redis_client)


@pytest_asyncio.fixture
async def async_spy_client(async_redis_client):
    """Async client that records the commands of each executed pipeline."""
    return SpyAsyncClient(async_redis_client)


@pytest.fixture
def recording_pipeline():
    """Pipeline stand-in that only records queued commands."""
    return RecordingPipeline()


@pytest.fixture
def real_redis_client():
    """
    Provide a real Redis client for integration tests.

    Skips unless REDIS_URL is set (e.g. redis://localhost:6379/15).
    """
    url = os.getenv("REDIS_URL")
    if not url:
        pytest.skip("REDIS_URL not set")

    client = redis.Redis.from_url(url)
    try:
        client.ping()
    except redis.ConnectionError as e:
        pytest.skip(f"Redis not reachable at {url}: {e}")

    yield client

    for key in client.scan_iter(match="{redisobj_it:*"):
        client.delete(key)
    client.close()


# ============================================================================
# Store Fixtures
# ============================================================================

@pytest.fixture
def store(redis_client):
    """Provide a blocking store over fakeredis."""
    from vertector_redisobj import RedisObjectStore

    return RedisObjectStore(redis_client)


@pytest.fixture
def spy_store(spy_client):
    """Provide a blocking store whose pipelines are recorded."""
    from vertector_redisobj import RedisObjectStore

    return RedisObjectStore(spy_client)


@pytest_asyncio.fixture
async def async_store(async_redis_client):
    """Provide an asyncio store over fakeredis."""
    from vertector_redisobj import AsyncRedisObjectStore

    return AsyncRedisObjectStore(async_redis_client)


@pytest_asyncio.fixture
async def async_spy_store(async_spy_client):
    """Provide an asyncio store whose pipelines are recorded."""
    from vertector_redisobj import AsyncRedisObjectStore

    return AsyncRedisObjectStore(async_spy_client)
