"""Temporary storage for in-flight evidence chunks.

Redis is the primary backend so that parallel upload connections landing
on different workers share one buffer; a process-local buffer is used when
Redis is not configured or not reachable at startup.  The backend is
chosen once: chunks are never re-homed mid-upload, so a Redis failure after
selection surfaces as :class:`StorageUnavailableError` instead of a silent
switch.
"""

from __future__ import annotations

import asyncio
import contextlib
from typing import Protocol, runtime_checkable

import structlog

from saferelay.services.errors import StorageUnavailableError

logger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Buffer backend protocol
# ---------------------------------------------------------------------------


@runtime_checkable
class ChunkBufferBackend(Protocol):
    """Async chunk buffer interface."""

    async def put(self, session_id: str, stream: str, index: int, data: bytes, ttl_seconds: int) -> None: ...

    async def fetch(self, session_id: str, stream: str) -> dict[int, bytes]: ...

    async def drop(self, session_id: str, streams: list[str]) -> None: ...


# ---------------------------------------------------------------------------
# Redis backend
# ---------------------------------------------------------------------------


class RedisChunkBuffer:
    """One Redis hash per (session, stream); fields are chunk indexes."""

    __slots__ = ("_namespace", "_pool", "_redis")

    def __init__(
        self,
        url: str = "redis://localhost:6379/0",
        *,
        namespace: str = "saferelay:chunks:",
        max_connections: int = 20,
    ) -> None:
        import redis.asyncio as aioredis

        self._namespace = namespace
        self._pool = aioredis.ConnectionPool.from_url(
            url,
            max_connections=max_connections,
            decode_responses=False,
        )
        self._redis = aioredis.Redis(connection_pool=self._pool)

    def _key(self, session_id: str, stream: str) -> str:
        return f"{self._namespace}{session_id}:{stream}"

    # -- ChunkBufferBackend interface -------------------------------------------

    async def put(self, session_id: str, stream: str, index: int, data: bytes, ttl_seconds: int) -> None:
        import redis.exceptions

        key = self._key(session_id, stream)
        try:
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.hset(key, str(index), data)
                pipe.expire(key, ttl_seconds)
                await pipe.execute()
        except redis.exceptions.RedisError as exc:
            logger.error("chunk_buffer.redis_put_failed", session_id=session_id, stream=stream, index=index)
            raise StorageUnavailableError("chunk buffer unavailable") from exc

    async def fetch(self, session_id: str, stream: str) -> dict[int, bytes]:
        import redis.exceptions

        try:
            raw = await self._redis.hgetall(self._key(session_id, stream))
        except redis.exceptions.RedisError as exc:
            logger.error("chunk_buffer.redis_fetch_failed", session_id=session_id, stream=stream)
            raise StorageUnavailableError("chunk buffer unavailable") from exc
        return {int(k): v for k, v in raw.items()}

    async def drop(self, session_id: str, streams: list[str]) -> None:
        import redis.exceptions

        keys = [self._key(session_id, s) for s in streams]
        if not keys:
            return
        try:
            await self._redis.delete(*keys)
        except redis.exceptions.RedisError:
            # Keys carry a TTL, so a failed delete still expires on its own.
            logger.warning("chunk_buffer.redis_drop_failed", session_id=session_id)

    # -- Lifecycle -------------------------------------------------------------

    async def close(self) -> None:
        await self._redis.aclose()
        await self._pool.aclose()

    async def ping(self) -> bool:
        """Return *True* if the Redis server is reachable."""
        try:
            return bool(await self._redis.ping())
        except Exception:
            return False


# ---------------------------------------------------------------------------
# In-memory backend
# ---------------------------------------------------------------------------


class InMemoryChunkBuffer:
    """Process-local buffer. TTL is enforced by the chunk store's GC."""

    __slots__ = ("_data", "_lock")

    def __init__(self) -> None:
        self._data: dict[tuple[str, str], dict[int, bytes]] = {}
        self._lock = asyncio.Lock()

    async def put(self, session_id: str, stream: str, index: int, data: bytes, ttl_seconds: int) -> None:
        async with self._lock:
            self._data.setdefault((session_id, stream), {})[index] = data

    async def fetch(self, session_id: str, stream: str) -> dict[int, bytes]:
        async with self._lock:
            return dict(self._data.get((session_id, stream), {}))

    async def drop(self, session_id: str, streams: list[str]) -> None:
        async with self._lock:
            for stream in streams:
                self._data.pop((session_id, stream), None)

    @property
    def bytes_buffered(self) -> int:
        return sum(len(chunk) for chunks in self._data.values() for chunk in chunks.values())


# ---------------------------------------------------------------------------
# ChunkBuffer  --  public API
# ---------------------------------------------------------------------------


class ChunkBuffer:
    """Buffer facade that picks Redis or memory on first use.

    Parameters
    ----------
    redis_url:
        Redis connection string.  Pass *None* or ``""`` to skip Redis.
    """

    __slots__ = ("_backend", "_fallback", "_redis", "_select_lock")

    def __init__(self, *, redis_url: str | None = None) -> None:
        self._fallback = InMemoryChunkBuffer()
        self._redis: RedisChunkBuffer | None = None
        self._backend: ChunkBufferBackend | None = None
        self._select_lock = asyncio.Lock()

        if redis_url:
            try:
                self._redis = RedisChunkBuffer(url=redis_url)
            except Exception:
                logger.warning("chunk_buffer.redis_init_failed", redis_url=redis_url)
                self._redis = None

    async def _select(self) -> ChunkBufferBackend:
        if self._backend is not None:
            return self._backend
        async with self._select_lock:
            if self._backend is None:
                if self._redis is not None and await self._redis.ping():
                    logger.info("chunk_buffer.redis_connected")
                    self._backend = self._redis
                else:
                    if self._redis is not None:
                        logger.warning("chunk_buffer.redis_unavailable_using_inmemory")
                    self._backend = self._fallback
        return self._backend

    async def put(self, session_id: str, stream: str, index: int, data: bytes, ttl_seconds: int) -> None:
        backend = await self._select()
        await backend.put(session_id, stream, index, data, ttl_seconds)

    async def fetch(self, session_id: str, stream: str) -> dict[int, bytes]:
        backend = await self._select()
        return await backend.fetch(session_id, stream)

    async def drop(self, session_id: str, streams: list[str]) -> None:
        backend = await self._select()
        await backend.drop(session_id, streams)

    @property
    def uses_redis(self) -> bool:
        return self._backend is not None and self._backend is self._redis

    async def close(self) -> None:
        """Cleanly shut down the Redis connection pool (if any)."""
        if self._redis is not None:
            with contextlib.suppress(Exception):
                await self._redis.close()
