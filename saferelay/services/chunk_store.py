"""Evidence chunk store: resumable, index-addressed multi-stream uploads.

A client declares up front how many chunks each stream (front/back video,
audio, photo) will have, then sends chunks in any order over any number of
connections.  Writes are addressed by ``(session, stream, index)`` so a
retry simply overwrites the same slot.  Finalizing concatenates each stream
in strict index order, hashes it with SHA-256, and deletes the session;
it refuses to run while any declared index is missing.

The bytes are opaque: clients encrypt on the device and the store never
needs the key.

Sessions that are not finalized within the TTL are garbage-collected.
Their ids are remembered for a while so late callers learn the session
*expired* rather than that it never existed.
"""

from __future__ import annotations

import asyncio
import contextlib
import hashlib
from collections import OrderedDict
from collections.abc import Awaitable, Callable, Mapping
from datetime import UTC, datetime, timedelta
from typing import Final, TypeVar

import structlog

from saferelay.models.enums import StreamType, canonical_stream_order
from saferelay.models.evidence import (
    AssembledStream,
    ChunkReceipt,
    ChunkStoreMetrics,
    SessionStatus,
    StreamProgress,
)
from saferelay.services.chunk_buffer import ChunkBuffer
from saferelay.services.errors import (
    DuplicateSessionError,
    IncompleteUploadError,
    IndexOutOfRangeError,
    SessionExpiredError,
    StreamNotDeclaredError,
    UnknownSessionError,
    ValidationError,
)
from saferelay.services.ids import IdGenerator

logger = structlog.get_logger(__name__)

_MAX_TOMBSTONES: Final[int] = 10_000
_MAX_CHUNKS_PER_STREAM: Final[int] = 100_000

_T = TypeVar("_T")


def _utcnow() -> datetime:
    return datetime.now(UTC)


async def _passthrough(assembled: dict[StreamType, AssembledStream]) -> dict[StreamType, AssembledStream]:
    return assembled


class _UploadSession:
    """Mutable bookkeeping for one in-flight upload."""

    __slots__ = (
        "closed",
        "created_at",
        "expected",
        "expires_at",
        "lock",
        "received",
        "recording_id",
        "session_id",
        "sizes",
    )

    def __init__(
        self,
        session_id: str,
        recording_id: str,
        expected: dict[StreamType, int],
        created_at: datetime,
        ttl: timedelta,
    ) -> None:
        self.session_id = session_id
        self.recording_id = recording_id
        self.expected = expected
        self.received: dict[StreamType, set[int]] = {s: set() for s in expected}
        self.sizes: dict[tuple[StreamType, int], int] = {}
        self.created_at = created_at
        self.expires_at = created_at + ttl
        self.lock = asyncio.Lock()
        self.closed = False

    @property
    def bytes_received(self) -> int:
        return sum(self.sizes.values())

    def missing(self) -> dict[StreamType, list[int]]:
        gaps: dict[StreamType, list[int]] = {}
        for stream in canonical_stream_order(self.expected):
            have = self.received[stream]
            absent = [i for i in range(self.expected[stream]) if i not in have]
            if absent:
                gaps[stream] = absent
        return gaps


class EvidenceChunkStore:
    """Chunked evidence ingest with TTL-based garbage collection.

    Parameters
    ----------
    buffer:
        Where chunk bytes are held until finalize.
    ids:
        Session id generator.
    ttl_seconds:
        Lifetime of an unfinalized session.
    max_chunk_bytes:
        Upper bound for a single chunk.
    gc_interval_seconds:
        How often the background collector sweeps expired sessions.
    clock:
        Returns the current UTC time; injectable for tests.
    """

    def __init__(
        self,
        buffer: ChunkBuffer,
        ids: IdGenerator,
        *,
        ttl_seconds: int = 3_600,
        max_chunk_bytes: int = 8 * 1024 * 1024,
        gc_interval_seconds: float = 60.0,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._buffer = buffer
        self._ids = ids
        self._ttl = timedelta(seconds=ttl_seconds)
        self._max_chunk_bytes = max_chunk_bytes
        self._gc_interval = gc_interval_seconds
        self._clock = clock or _utcnow

        self._sessions: dict[str, _UploadSession] = {}
        self._by_recording: dict[str, str] = {}
        self._expired: OrderedDict[str, None] = OrderedDict()
        self._registry_lock = asyncio.Lock()
        self._gc_task: asyncio.Task | None = None  # type: ignore[type-arg]

        self._chunks_received = 0
        self._sessions_finalized = 0
        self._sessions_expired = 0

    # ------------------------------------------------------------------
    # Upload protocol
    # ------------------------------------------------------------------

    async def begin_session(
        self,
        recording_id: str,
        expected_streams: Mapping[str, int],
    ) -> str:
        """Open an upload session for *recording_id*.

        Raises
        ------
        DuplicateSessionError
            If the recording already has a live (unexpired) session.
        ValidationError
            If no streams are declared or a chunk count is not positive.
        """
        if not recording_id:
            raise ValidationError("recording_id is required")
        if not expected_streams:
            raise ValidationError("at least one stream must be declared")

        expected: dict[StreamType, int] = {}
        for raw_stream, total in expected_streams.items():
            try:
                stream = StreamType(raw_stream)
            except ValueError as exc:
                raise ValidationError(f"unknown stream type {raw_stream!r}") from exc
            if not 1 <= int(total) <= _MAX_CHUNKS_PER_STREAM:
                raise ValidationError(
                    f"total chunks for {stream} must be between 1 and {_MAX_CHUNKS_PER_STREAM}"
                )
            expected[stream] = int(total)

        async with self._registry_lock:
            existing_id = self._by_recording.get(recording_id)
            if existing_id is not None:
                existing = self._sessions.get(existing_id)
                if existing is not None and not self._is_expired(existing):
                    raise DuplicateSessionError(
                        f"recording {recording_id} already has a live upload session",
                        session_id=existing_id,
                    )
                if existing is not None:
                    await self._expire(existing)

            session_id = self._ids.new_id("upl")
            session = _UploadSession(session_id, recording_id, expected, self._clock(), self._ttl)
            self._sessions[session_id] = session
            self._by_recording[recording_id] = session_id

        logger.info(
            "chunk_store.session_opened",
            session_id=session_id,
            recording_id=recording_id,
            streams={str(k): v for k, v in expected.items()},
        )
        return session_id

    async def put_chunk(
        self,
        session_id: str,
        stream_type: str,
        chunk_index: int,
        data: bytes,
    ) -> ChunkReceipt:
        """Store one chunk.  Re-sending an index overwrites it in place."""
        session = await self._live_session(session_id)

        try:
            stream = StreamType(stream_type)
        except ValueError as exc:
            raise StreamNotDeclaredError(f"unknown stream type {stream_type!r}") from exc
        if stream not in session.expected:
            raise StreamNotDeclaredError(f"stream {stream} was not declared for this session")

        total = session.expected[stream]
        if chunk_index < 0 or chunk_index >= total:
            raise IndexOutOfRangeError(
                f"chunk index {chunk_index} outside 0..{total - 1} for {stream}",
                stream_type=str(stream),
                total_chunks=total,
            )
        if not data:
            raise ValidationError("chunk is empty")
        if len(data) > self._max_chunk_bytes:
            raise ValidationError(
                f"chunk of {len(data)} bytes exceeds limit of {self._max_chunk_bytes}"
            )

        ttl_left = max(1, int((session.expires_at - self._clock()).total_seconds()))
        await self._buffer.put(session_id, str(stream), chunk_index, bytes(data), ttl_left)

        async with session.lock:
            if session.closed:
                await self._buffer.drop(session_id, [str(stream)])
                raise UnknownSessionError(f"upload session {session_id} is closed")
            is_new = chunk_index not in session.received[stream]
            session.received[stream].add(chunk_index)
            session.sizes[(stream, chunk_index)] = len(data)
            received = len(session.received[stream])
            if is_new:
                self._chunks_received += 1

        logger.debug(
            "chunk_store.chunk_received",
            session_id=session_id,
            stream=str(stream),
            index=chunk_index,
            size=len(data),
            duplicate=not is_new,
        )
        return ChunkReceipt(
            session_id=session_id,
            stream_type=stream,
            chunk_index=chunk_index,
            received=received,
            total_expected=total,
        )

    async def finalize(self, session_id: str) -> dict[StreamType, AssembledStream]:
        """Assemble and hash every declared stream, then delete the session.

        Raises
        ------
        IncompleteUploadError
            If any declared index is missing.  The session stays open so
            the client can resend exactly the listed chunks.
        """
        return await self.finalize_into(session_id, _passthrough)

    async def finalize_into(
        self,
        session_id: str,
        consumer: Callable[[dict[StreamType, AssembledStream]], Awaitable[_T]],
    ) -> _T:
        """Assemble the upload and hand it to *consumer* before deleting it.

        The session is removed only after *consumer* returns.  If it raises,
        the session and its buffered chunks are left exactly as they were
        and the error propagates, so the caller can finalize again.
        """
        session = await self._live_session(session_id)

        async with session.lock:
            if session.closed:
                raise UnknownSessionError(f"upload session {session_id} is closed")

            missing = session.missing()
            if missing:
                logger.info(
                    "chunk_store.finalize_incomplete",
                    session_id=session_id,
                    missing={str(k): len(v) for k, v in missing.items()},
                )
                raise IncompleteUploadError(missing)

            assembled: dict[StreamType, AssembledStream] = {}
            lost: dict[StreamType, list[int]] = {}
            for stream in canonical_stream_order(session.expected):
                chunks = await self._buffer.fetch(session_id, str(stream))
                total = session.expected[stream]
                gone = [i for i in range(total) if i not in chunks]
                if gone:
                    lost[stream] = gone
                    continue
                blob = b"".join(chunks[i] for i in range(total))
                assembled[stream] = AssembledStream(
                    stream_type=stream,
                    data=blob,
                    sha256=hashlib.sha256(blob).hexdigest(),
                    size_bytes=len(blob),
                )

            if lost:
                # The buffer dropped chunks (e.g. Redis eviction); ask for them again.
                for stream, indexes in lost.items():
                    session.received[stream].difference_update(indexes)
                    for index in indexes:
                        session.sizes.pop((stream, index), None)
                logger.warning(
                    "chunk_store.buffer_lost_chunks",
                    session_id=session_id,
                    lost={str(k): len(v) for k, v in lost.items()},
                )
                raise IncompleteUploadError(lost)

            try:
                result = await consumer(assembled)
            except Exception:
                logger.warning("chunk_store.finalize_consumer_failed", session_id=session_id, exc_info=True)
                raise
            session.closed = True

        await self._remove(session)
        self._sessions_finalized += 1
        logger.info(
            "chunk_store.session_finalized",
            session_id=session_id,
            recording_id=session.recording_id,
            streams={str(k): v.sha256 for k, v in assembled.items()},
        )
        return result

    async def session_status(self, session_id: str) -> SessionStatus:
        """Report what has arrived so a client can resume after a drop."""
        session = await self._live_session(session_id)
        async with session.lock:
            streams = {
                stream: StreamProgress(
                    total_chunks=session.expected[stream],
                    received=len(session.received[stream]),
                    missing=[
                        i for i in range(session.expected[stream])
                        if i not in session.received[stream]
                    ],
                )
                for stream in canonical_stream_order(session.expected)
            }
            return SessionStatus(
                session_id=session.session_id,
                recording_id=session.recording_id,
                created_at=session.created_at,
                expires_at=session.expires_at,
                bytes_received=session.bytes_received,
                streams=streams,
            )

    # ------------------------------------------------------------------
    # Expiry and garbage collection
    # ------------------------------------------------------------------

    async def collect_expired(self) -> int:
        """Drop every session past its TTL and release its chunks."""
        expired = [s for s in list(self._sessions.values()) if self._is_expired(s)]
        for session in expired:
            async with self._registry_lock:
                await self._expire(session)
        if expired:
            logger.info("chunk_store.gc_collected", sessions=len(expired))
        return len(expired)

    def start(self) -> None:
        """Start the background garbage collector."""
        if self._gc_task is None or self._gc_task.done():
            self._gc_task = asyncio.create_task(self._gc_loop())
            logger.info("chunk_store.gc_started", interval_seconds=self._gc_interval)

    async def stop(self) -> None:
        """Stop the background garbage collector."""
        if self._gc_task is not None:
            self._gc_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._gc_task
            self._gc_task = None
            logger.info("chunk_store.gc_stopped")

    async def _gc_loop(self) -> None:
        while True:
            await asyncio.sleep(self._gc_interval)
            try:
                await self.collect_expired()
            except Exception:
                logger.error("chunk_store.gc_failed", exc_info=True)

    def metrics(self) -> ChunkStoreMetrics:
        return ChunkStoreMetrics(
            active_sessions=len(self._sessions),
            chunks_received=self._chunks_received,
            bytes_buffered=sum(s.bytes_received for s in self._sessions.values()),
            sessions_finalized=self._sessions_finalized,
            sessions_expired=self._sessions_expired,
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _is_expired(self, session: _UploadSession) -> bool:
        return self._clock() >= session.expires_at

    async def _live_session(self, session_id: str) -> _UploadSession:
        session = self._sessions.get(session_id)
        if session is None:
            if session_id in self._expired:
                raise SessionExpiredError(f"upload session {session_id} has expired")
            raise UnknownSessionError(f"unknown upload session {session_id}")
        if self._is_expired(session):
            async with self._registry_lock:
                await self._expire(session)
            raise SessionExpiredError(f"upload session {session_id} has expired")
        return session

    async def _expire(self, session: _UploadSession) -> None:
        """Caller holds the registry lock."""
        if session.session_id not in self._sessions:
            return
        session.closed = True
        await self._remove(session)
        self._expired[session.session_id] = None
        while len(self._expired) > _MAX_TOMBSTONES:
            self._expired.popitem(last=False)
        self._sessions_expired += 1
        logger.info(
            "chunk_store.session_expired",
            session_id=session.session_id,
            recording_id=session.recording_id,
            bytes_released=session.bytes_received,
        )

    async def _remove(self, session: _UploadSession) -> None:
        self._sessions.pop(session.session_id, None)
        if self._by_recording.get(session.recording_id) == session.session_id:
            del self._by_recording[session.recording_id]
        await self._buffer.drop(session.session_id, [str(s) for s in session.expected])
