"""Tests for the responder directory and its ranking."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from saferelay.models.enums import ChannelType, ResponderKind, ResponseAction
from saferelay.models.responder import GeoPoint, ResponderProfile, ResponderSeed, UserIdentity
from saferelay.services.errors import NotFoundError, ValidationError
from saferelay.services.identity import InMemoryIdentityDirectory
from saferelay.services.responder_directory import (
    ResponderDirectory,
    haversine_meters,
    recency_weight,
)

NOW = datetime(2024, 3, 1, 12, 0, tzinfo=UTC)
ORIGIN = GeoPoint(latitude=12.9716, longitude=77.5946)


def _near(meters_north: float) -> GeoPoint:
    # ~111.2 km per degree of latitude
    return GeoPoint(latitude=ORIGIN.latitude + meters_north / 111_195.0, longitude=ORIGIN.longitude)


def _directory() -> ResponderDirectory:
    return ResponderDirectory(recency_window_hours=24, offline_after_minutes=10, clock=lambda: NOW)


def _volunteer(responder_id: str, trust: float = 0.8, **kwargs) -> ResponderProfile:
    return ResponderProfile(
        responder_id=responder_id,
        kind=ResponderKind.VOLUNTEER,
        name=responder_id.title(),
        trust_score=trust,
        **kwargs,
    )


def _seed(directory: ResponderDirectory, responder_id: str, meters: float, age: timedelta, **kw) -> None:
    directory.register(_volunteer(responder_id, **kw))
    directory.record_heartbeat(responder_id, _near(meters), NOW - age)


# -----------------------------------------------------------------------
# Geometry helpers
# -----------------------------------------------------------------------


class TestHelpers:
    def test_haversine_zero(self) -> None:
        assert haversine_meters(ORIGIN, ORIGIN) == 0.0

    def test_haversine_one_km(self) -> None:
        assert haversine_meters(ORIGIN, _near(1000)) == pytest.approx(1000, rel=0.01)

    def test_recency_weight_linear(self) -> None:
        window = timedelta(hours=24)
        assert recency_weight(NOW, NOW, window) == 1.0
        assert recency_weight(NOW - timedelta(hours=12), NOW, window) == pytest.approx(0.5)
        assert recency_weight(NOW - timedelta(hours=24), NOW, window) == 0.0
        assert recency_weight(NOW - timedelta(hours=30), NOW, window) == 0.0


# -----------------------------------------------------------------------
# Ranking
# -----------------------------------------------------------------------


class TestRankCandidates:
    def test_orders_by_score_then_distance_then_id(self) -> None:
        directory = _directory()
        _seed(directory, "vol_far", 3000, timedelta(0), trust=0.9)
        _seed(directory, "vol_b", 500, timedelta(0), trust=0.7)
        _seed(directory, "vol_a", 500, timedelta(0), trust=0.7)
        _seed(directory, "vol_close", 100, timedelta(0), trust=0.7)

        ranked = directory.rank_candidates("usr_1", ORIGIN, 5000, 10)
        assert [c.responder_id for c in ranked] == ["vol_far", "vol_close", "vol_a", "vol_b"]

    def test_recency_scales_trust(self) -> None:
        directory = _directory()
        _seed(directory, "vol_stale", 100, timedelta(hours=12), trust=1.0)
        _seed(directory, "vol_fresh", 100, timedelta(0), trust=0.6)
        ranked = directory.rank_candidates("usr_1", ORIGIN, 5000, 10)
        assert [c.responder_id for c in ranked] == ["vol_fresh", "vol_stale"]
        assert ranked[1].score == pytest.approx(0.5)

    def test_heartbeat_at_window_edge_excluded(self) -> None:
        directory = _directory()
        _seed(directory, "vol_edge", 100, timedelta(hours=24))
        _seed(directory, "vol_old", 100, timedelta(hours=25))
        assert directory.rank_candidates("usr_1", ORIGIN, 5000, 10) == []

    def test_responder_without_heartbeat_excluded(self) -> None:
        directory = _directory()
        directory.register(_volunteer("vol_silent"))
        assert directory.rank_candidates("usr_1", ORIGIN, 5000, 10) == []

    def test_radius_bounds_pool(self) -> None:
        directory = _directory()
        _seed(directory, "vol_in", 900, timedelta(0))
        _seed(directory, "vol_out", 1500, timedelta(0))
        ranked = directory.rank_candidates("usr_1", ORIGIN, 1000, 10)
        assert [c.responder_id for c in ranked] == ["vol_in"]

    def test_max_count_truncates(self) -> None:
        directory = _directory()
        for i in range(5):
            _seed(directory, f"vol_{i}", 100 * (i + 1), timedelta(0))
        assert len(directory.rank_candidates("usr_1", ORIGIN, 5000, 3)) == 3

    def test_guardians_only_for_their_user(self) -> None:
        directory = _directory()
        directory.register(
            ResponderProfile(
                responder_id="grd_1",
                kind=ResponderKind.GUARDIAN,
                name="Asha",
                guardian_of=frozenset({"usr_1"}),
            )
        )
        directory.record_heartbeat("grd_1", _near(200), NOW)

        assert [c.responder_id for c in directory.rank_candidates("usr_1", ORIGIN, 5000, 5)] == ["grd_1"]
        assert directory.rank_candidates("usr_2", ORIGIN, 5000, 5) == []

    def test_excludes_inactive_and_self(self) -> None:
        directory = _directory()
        _seed(directory, "usr_1", 10, timedelta(0))
        _seed(directory, "vol_gone", 10, timedelta(0))
        directory.deactivate("vol_gone")
        assert directory.rank_candidates("usr_1", ORIGIN, 5000, 5) == []

    def test_online_flag_follows_heartbeat_age(self) -> None:
        directory = _directory()
        _seed(directory, "vol_on", 100, timedelta(minutes=2))
        _seed(directory, "vol_off", 100, timedelta(minutes=30))
        online = {c.responder_id: c.online for c in directory.rank_candidates("usr_1", ORIGIN, 5000, 5)}
        assert online == {"vol_on": True, "vol_off": False}

    @pytest.mark.parametrize(("radius", "count"), [(0, 5), (-10, 5), (100, 0)])
    def test_invalid_arguments(self, radius: float, count: int) -> None:
        with pytest.raises(ValidationError):
            _directory().rank_candidates("usr_1", ORIGIN, radius, count)


# -----------------------------------------------------------------------
# Writes
# -----------------------------------------------------------------------


class TestWrites:
    def test_older_heartbeat_ignored(self) -> None:
        directory = _directory()
        directory.register(_volunteer("vol_1"))
        directory.record_heartbeat("vol_1", _near(100), NOW)
        kept = directory.record_heartbeat("vol_1", _near(900), NOW - timedelta(minutes=5))
        assert kept.location == _near(100)
        assert directory.last_heartbeat("vol_1").timestamp == NOW

    def test_heartbeat_for_unknown_responder(self) -> None:
        with pytest.raises(NotFoundError):
            _directory().record_heartbeat("vol_x", ORIGIN)

    def test_register_merges_guardian_links(self) -> None:
        directory = _directory()
        for user in ("usr_1", "usr_2"):
            directory.register(
                ResponderProfile(
                    responder_id="grd_1",
                    kind=ResponderKind.GUARDIAN,
                    name="Asha",
                    guardian_of=frozenset({user}),
                )
            )
        assert directory.get("grd_1").guardian_of == frozenset({"usr_1", "usr_2"})
        assert directory.size == 1

    async def test_sync_guardians_from_identity(self) -> None:
        identity = InMemoryIdentityDirectory()
        identity.add_user(
            UserIdentity(user_id="usr_1", name="Meera"),
            [ResponderSeed(responder_id="grd_1", name="Ravi", phone="+919800000001")],
        )
        directory = _directory()
        assert await directory.sync_guardians("usr_1", identity) == 1
        profile = directory.get("grd_1")
        assert profile.kind == ResponderKind.GUARDIAN
        assert profile.guardian_of == frozenset({"usr_1"})
        assert ChannelType.SMS in profile.channels

    async def test_sync_keeps_deactivated_guardian_inactive(self) -> None:
        identity = InMemoryIdentityDirectory()
        identity.add_user(
            UserIdentity(user_id="usr_1", name="Meera"),
            [ResponderSeed(responder_id="grd_1", name="Ravi", phone="+919800000001")],
        )
        directory = _directory()
        await directory.sync_guardians("usr_1", identity)
        directory.record_heartbeat("grd_1", _near(100), NOW)
        directory.deactivate("grd_1")

        await directory.sync_guardians("usr_1", identity)

        assert directory.get("grd_1").is_active is False
        assert directory.rank_candidates("usr_1", ORIGIN, 5000, 5) == []

    async def test_sync_keeps_volunteer_in_other_pools(self) -> None:
        identity = InMemoryIdentityDirectory()
        identity.add_user(
            UserIdentity(user_id="usr_1", name="Meera"),
            [ResponderSeed(responder_id="vol_1", name="Ravi", phone="+919800000009")],
        )
        directory = _directory()
        _seed(directory, "vol_1", 100, timedelta(0), trust=0.6)

        await directory.sync_guardians("usr_1", identity)

        profile = directory.get("vol_1")
        assert profile.kind == ResponderKind.VOLUNTEER
        assert profile.trust_score == 0.6
        assert profile.phone == "+919800000009"
        assert profile.guardian_of == frozenset({"usr_1"})
        own = directory.rank_candidates("usr_1", ORIGIN, 5000, 5)
        other = directory.rank_candidates("usr_2", ORIGIN, 5000, 5)
        assert [(c.responder_id, c.kind) for c in own] == [("vol_1", ResponderKind.GUARDIAN)]
        assert [(c.responder_id, c.kind) for c in other] == [("vol_1", ResponderKind.VOLUNTEER)]

    async def test_concurrent_heartbeats_keep_newest(self) -> None:
        directory = _directory()
        directory.register(_volunteer("vol_1"))

        async def beat(minutes: int) -> None:
            await asyncio.sleep(0)
            directory.record_heartbeat("vol_1", _near(minutes * 10), NOW - timedelta(minutes=60 - minutes))

        await asyncio.gather(*(beat(m) for m in (5, 50, 20, 35)))
        assert directory.last_heartbeat("vol_1").timestamp == NOW - timedelta(minutes=10)


# -----------------------------------------------------------------------
# Stats
# -----------------------------------------------------------------------


class TestStats:
    def test_counts_and_averages(self) -> None:
        directory = _directory()
        directory.register(_volunteer("vol_1"))
        for _ in range(3):
            directory.record_notification("vol_1")
        directory.record_response("vol_1", ResponseAction.ACCEPTED, 1_000)
        directory.record_response("vol_1", ResponseAction.DECLINED, 3_000)
        directory.record_response("vol_1", ResponseAction.TIMEOUT, 45_000)

        stats = directory.stats("vol_1")
        assert stats.total_notifications == 3
        assert stats.total_responses == 2
        assert stats.acceptance_rate == 0.5
        assert stats.average_response_time_ms == 2_000

    def test_stats_for_unknown_responder(self) -> None:
        with pytest.raises(NotFoundError):
            _directory().stats("vol_x")
