"""Responder directory: geospatial, trust-ranked index of guardians and volunteers.

Reads are lock-free.  Every write builds a new immutable snapshot and
swaps it in under a writer lock, so a ``rank_candidates`` call always sees
one consistent view even while heartbeats land concurrently.

Ranking
-------
``score = trust_score × recency_weight``, where ``recency_weight`` falls
linearly from 1.0 at the moment of the last heartbeat to 0.0 at the end of
the recency window (24 h by default).  Responders at or beyond the window,
or with no heartbeat at all, are excluded rather than down-ranked.  Ties on
score are broken by ascending distance, then by responder id so the order
is fully deterministic.
"""

from __future__ import annotations

import math
import threading
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from types import MappingProxyType
from typing import TYPE_CHECKING, Final

import structlog

from saferelay.models.enums import ResponderKind, ResponseAction
from saferelay.models.responder import (
    GeoPoint,
    Heartbeat,
    ResponderCandidate,
    ResponderProfile,
    ResponderStats,
)
from saferelay.services.errors import NotFoundError, ValidationError

if TYPE_CHECKING:
    from saferelay.services.identity import IdentityDirectory

logger = structlog.get_logger(__name__)

_EARTH_RADIUS_METERS: Final[float] = 6_371_000.0


def haversine_meters(a: GeoPoint, b: GeoPoint) -> float:
    """Great-circle distance between two points in metres."""
    phi1 = math.radians(a.latitude)
    phi2 = math.radians(b.latitude)
    d_phi = math.radians(b.latitude - a.latitude)
    d_lambda = math.radians(b.longitude - a.longitude)
    h = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    return 2 * _EARTH_RADIUS_METERS * math.atan2(math.sqrt(h), math.sqrt(1 - h))


def recency_weight(last_active_at: datetime, now: datetime, window: timedelta) -> float:
    """Linear decay from 1.0 (just seen) to 0.0 (``window`` ago or older)."""
    age = (now - last_active_at).total_seconds()
    if age <= 0:
        return 1.0
    return max(0.0, 1.0 - age / window.total_seconds())


@dataclass(frozen=True)
class _Snapshot:
    profiles: Mapping[str, ResponderProfile] = field(default_factory=lambda: MappingProxyType({}))
    positions: Mapping[str, Heartbeat] = field(default_factory=lambda: MappingProxyType({}))


class ResponderDirectory:
    """Index of responders with snapshot-read ranking.

    Parameters
    ----------
    recency_window_hours:
        Heartbeat age at which a responder drops out of ranking.
    offline_after_minutes:
        Heartbeat age after which a candidate is treated as offline and
        reached over the mesh fallback.
    """

    def __init__(
        self,
        *,
        recency_window_hours: float = 24.0,
        offline_after_minutes: float = 10.0,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._window = timedelta(hours=recency_window_hours)
        self._offline_after = timedelta(minutes=offline_after_minutes)
        self._clock = clock or (lambda: datetime.now(UTC))
        self._snapshot = _Snapshot()
        self._write_lock = threading.Lock()
        self._stats: dict[str, ResponderStats] = {}
        self._stats_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def register(self, profile: ResponderProfile) -> ResponderProfile:
        """Add or replace a responder profile.

        Guardian links are merged with any existing entry so that one
        person can guard several users.
        """
        with self._write_lock:
            current = self._snapshot
            existing = current.profiles.get(profile.responder_id)
            if existing is not None and existing.guardian_of:
                profile = profile.model_copy(
                    update={"guardian_of": existing.guardian_of | profile.guardian_of}
                )
            profiles = dict(current.profiles)
            profiles[profile.responder_id] = profile
            self._snapshot = _Snapshot(MappingProxyType(profiles), current.positions)

        logger.info(
            "responder_directory.registered",
            responder_id=profile.responder_id,
            kind=str(profile.kind),
        )
        return profile

    def deactivate(self, responder_id: str) -> None:
        with self._write_lock:
            current = self._snapshot
            profile = current.profiles.get(responder_id)
            if profile is None:
                raise NotFoundError(f"unknown responder {responder_id}")
            profiles = dict(current.profiles)
            profiles[responder_id] = profile.model_copy(update={"is_active": False})
            self._snapshot = _Snapshot(MappingProxyType(profiles), current.positions)
        logger.info("responder_directory.deactivated", responder_id=responder_id)

    def record_heartbeat(
        self,
        responder_id: str,
        location: GeoPoint,
        timestamp: datetime | None = None,
    ) -> Heartbeat:
        """Replace the responder's last known position.

        Only the newest point is kept; a heartbeat older than the stored
        one is ignored and the stored one returned.
        """
        ts = timestamp or self._clock()
        if ts.tzinfo is None:
            ts = ts.replace(tzinfo=UTC)
        with self._write_lock:
            current = self._snapshot
            if responder_id not in current.profiles:
                raise NotFoundError(f"unknown responder {responder_id}")
            previous = current.positions.get(responder_id)
            if previous is not None and previous.timestamp >= ts:
                return previous
            beat = Heartbeat(location=location, timestamp=ts)
            positions = dict(current.positions)
            positions[responder_id] = beat
            self._snapshot = _Snapshot(current.profiles, MappingProxyType(positions))
        return beat

    async def sync_guardians(self, user_id: str, identity: IdentityDirectory) -> int:
        """Pull the user's guardians from the identity collaborator.

        Seeds only add the guardian link and refresh contact details.  An
        existing entry keeps its kind, trust, channels and active flag, so
        a deactivated guardian stays deactivated and a volunteer who also
        guards this user stays in every other user's pool.
        """
        seeds = await identity.resolve_guardians(user_id)
        with self._write_lock:
            current = self._snapshot
            profiles = dict(current.profiles)
            for seed in seeds:
                existing = profiles.get(seed.responder_id)
                if existing is None:
                    profiles[seed.responder_id] = ResponderProfile(
                        responder_id=seed.responder_id,
                        kind=ResponderKind.GUARDIAN,
                        name=seed.name,
                        phone=seed.phone,
                        push_token=seed.push_token,
                        trust_score=seed.trust_score,
                        channels=seed.channels,
                        guardian_of=frozenset({user_id}),
                    )
                    continue
                profiles[seed.responder_id] = existing.model_copy(
                    update={
                        "guardian_of": existing.guardian_of | {user_id},
                        "name": seed.name or existing.name,
                        "phone": seed.phone or existing.phone,
                        "push_token": seed.push_token or existing.push_token,
                    }
                )
            self._snapshot = _Snapshot(MappingProxyType(profiles), current.positions)

        logger.info("responder_directory.guardians_synced", user_id=user_id, guardians=len(seeds))
        return len(seeds)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, responder_id: str) -> ResponderProfile:
        profile = self._snapshot.profiles.get(responder_id)
        if profile is None:
            raise NotFoundError(f"unknown responder {responder_id}")
        return profile

    def last_heartbeat(self, responder_id: str) -> Heartbeat | None:
        return self._snapshot.positions.get(responder_id)

    def rank_candidates(
        self,
        user_id: str,
        origin: GeoPoint,
        radius_meters: float,
        max_count: int,
        *,
        now: datetime | None = None,
    ) -> list[ResponderCandidate]:
        """Return up to *max_count* candidates, best first.

        The pool is the user's guardians plus every active volunteer.  A
        short list is a normal result, never an error.
        """
        if radius_meters <= 0:
            raise ValidationError("radius_meters must be positive")
        if max_count < 1:
            raise ValidationError("max_count must be at least 1")

        snapshot = self._snapshot
        at = now or self._clock()
        ranked: list[ResponderCandidate] = []

        for responder_id, profile in snapshot.profiles.items():
            if not profile.is_active or responder_id == user_id:
                continue
            guards_user = user_id in profile.guardian_of
            if not guards_user and profile.kind != ResponderKind.VOLUNTEER:
                continue
            beat = snapshot.positions.get(responder_id)
            if beat is None:
                continue
            weight = recency_weight(beat.timestamp, at, self._window)
            if weight <= 0.0:
                continue
            distance = haversine_meters(origin, beat.location)
            if distance > radius_meters:
                continue
            ranked.append(
                ResponderCandidate(
                    responder_id=responder_id,
                    kind=ResponderKind.GUARDIAN if guards_user else profile.kind,
                    distance_meters=round(distance, 1),
                    trust_score=profile.trust_score,
                    last_active_at=beat.timestamp,
                    score=profile.trust_score * weight,
                    name=profile.name,
                    phone=profile.phone,
                    push_token=profile.push_token,
                    channels=profile.channels,
                    online=(at - beat.timestamp) < self._offline_after,
                )
            )

        ranked.sort(key=lambda c: (-c.score, c.distance_meters, c.responder_id))
        result = ranked[:max_count]
        logger.info(
            "responder_directory.ranked",
            user_id=user_id,
            pool=len(ranked),
            returned=len(result),
            radius_meters=radius_meters,
        )
        return result

    # ------------------------------------------------------------------
    # Response statistics
    # ------------------------------------------------------------------

    def record_notification(self, responder_id: str) -> None:
        with self._stats_lock:
            stats = self._stats.setdefault(responder_id, ResponderStats())
            stats.total_notifications += 1

    def record_response(self, responder_id: str, action: ResponseAction, latency_ms: int) -> None:
        if action == ResponseAction.TIMEOUT:
            return
        with self._stats_lock:
            stats = self._stats.setdefault(responder_id, ResponderStats())
            stats.total_responses += 1
            stats.total_response_time_ms += max(0, latency_ms)
            if action == ResponseAction.ACCEPTED:
                stats.total_accepted += 1

    def stats(self, responder_id: str) -> ResponderStats:
        self.get(responder_id)
        with self._stats_lock:
            return self._stats.get(responder_id, ResponderStats()).model_copy()

    @property
    def size(self) -> int:
        return len(self._snapshot.profiles)
