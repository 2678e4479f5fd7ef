"""Redis clients.

The API process shares one pool (pub/sub notifications, ranking bucket
locks, readiness checks). Workers open their own client with
``create_redis`` so their connection count stays independent of the API.
"""

import redis.asyncio as redis

from gamify.config import get_settings

_pool: redis.Redis | None = None


def create_redis(url: str | None = None, *, max_connections: int = 20) -> redis.Redis:
    """New client decoding responses to ``str``; ``url`` defaults to the configured one."""
    return redis.from_url(  # type: ignore[no-untyped-call]
        url or get_settings().redis_url,
        encoding="utf-8",
        decode_responses=True,
        max_connections=max_connections,
    )


async def init_redis(url: str) -> None:
    """Create the shared pool used by the API process."""
    global _pool  # noqa: PLW0603
    _pool = create_redis(url, max_connections=50)


async def close_redis() -> None:
    global _pool  # noqa: PLW0603
    if _pool:
        await _pool.aclose()
        _pool = None


def get_redis() -> redis.Redis:
    """Get the shared client."""
    if _pool is None:
        msg = "Redis not initialized. Call init_redis() first."
        raise RuntimeError(msg)
    return _pool
