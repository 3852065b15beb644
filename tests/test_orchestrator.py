"""Tests for the incident orchestrator and the live event hub."""

from __future__ import annotations

import asyncio
from collections.abc import Callable

import pytest

from saferelay.models.enums import (
    DispatchOutcome,
    DistressLevel,
    EmotionLabel,
    IncidentStatus,
    ResponderKind,
    ResponseAction,
    StreamType,
)
from saferelay.models.incident import AudioFeatures
from saferelay.models.responder import GeoPoint, ResponderProfile, ResponderSeed, UserIdentity
from saferelay.services.channels import LoggingMeshChannel, LoggingPushChannel, LoggingSmsChannel
from saferelay.services.chunk_buffer import ChunkBuffer
from saferelay.services.chunk_store import EvidenceChunkStore
from saferelay.services.dispatcher import DispatchPolicy, NotificationDispatcher
from saferelay.services.errors import (
    AlreadySettledError,
    ConflictError,
    NotFoundError,
    StorageUnavailableError,
    ValidationError,
)
from saferelay.services.event_hub import IncidentEventHub
from saferelay.services.evidence_ledger import EvidenceLedger
from saferelay.services.identity import InMemoryIdentityDirectory
from saferelay.services.ids import MonotonicIdGenerator
from saferelay.services.incident_store import IncidentStore
from saferelay.services.object_storage import InMemoryObjectStorage
from saferelay.services.orchestrator import IncidentOrchestrator
from saferelay.services.responder_directory import ResponderDirectory
from saferelay.services.signing import ReferenceSigner

ORIGIN = GeoPoint(latitude=12.9716, longitude=77.5946)
CRITICAL_VOICE = AudioFeatures(pitch=260, prosody_variance=95, speech_rate=230)
CALM_VOICE = AudioFeatures(pitch=140, prosody_variance=20, speech_rate=120)


def _near(meters_north: float) -> GeoPoint:
    return GeoPoint(latitude=ORIGIN.latitude + meters_north / 111_195.0, longitude=ORIGIN.longitude)


class _World:
    """Orchestrator wired to in-memory collaborators."""

    def __init__(self, storage: InMemoryObjectStorage | None = None, **policy) -> None:
        policy.setdefault("tier_deadline_seconds", 5.0)
        policy.setdefault("retry_backoff_seconds", 0.0)
        ids = MonotonicIdGenerator()
        self.sms = LoggingSmsChannel()
        self.directory = ResponderDirectory()
        self.dispatcher = NotificationDispatcher(
            LoggingPushChannel(),
            self.sms,
            LoggingMeshChannel(),
            ids,
            policy=DispatchPolicy(**policy),
            directory=self.directory,
        )
        self.ledger = EvidenceLedger(storage or InMemoryObjectStorage(), ReferenceSigner("test-secret"), ids)
        self.chunk_store = EvidenceChunkStore(ChunkBuffer(), ids)
        self.identity = InMemoryIdentityDirectory()
        self.identity.add_user(
            UserIdentity(user_id="usr_1", name="Meera", phone="+919800000000"),
            [ResponderSeed(responder_id="grd_1", name="Ravi", phone="+919800000001")],
        )
        self.orchestrator = IncidentOrchestrator(
            IncidentStore(),
            self.directory,
            self.dispatcher,
            self.ledger,
            self.chunk_store,
            self.identity,
            self.sms,
            ids,
            authority_phone="100",
        )

    def add_volunteer(self, responder_id: str, meters: float, trust: float = 0.8) -> None:
        self.directory.register(
            ResponderProfile(
                responder_id=responder_id,
                kind=ResponderKind.VOLUNTEER,
                name=responder_id,
                push_token=f"tok-{responder_id}",
                trust_score=trust,
            )
        )
        self.directory.record_heartbeat(responder_id, _near(meters))

    async def raise_default(self, **kwargs):
        return await self.orchestrator.raise_sos("usr_1", "manual", ORIGIN, **kwargs)


class _FlakyStorage(InMemoryObjectStorage):
    """Object storage whose writes fail until ``fail`` is cleared."""

    __slots__ = ("fail",)

    def __init__(self) -> None:
        super().__init__()
        self.fail = True

    async def put(self, data: bytes) -> str:
        if self.fail:
            raise StorageUnavailableError("object storage unreachable")
        return await super().put(data)


async def _eventually(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


# -----------------------------------------------------------------------
# Raising an SOS
# -----------------------------------------------------------------------


class TestRaiseSos:
    async def test_ranks_and_starts_dispatch(self) -> None:
        world = _World()
        world.add_volunteer("vol_a", 300, trust=0.9)
        world.add_volunteer("vol_b", 600, trust=0.7)

        incident = await world.raise_default(description="followed home")
        assert incident.status == IncidentStatus.DISPATCHING
        assert [c.responder_id for c in incident.candidate_queue] == ["vol_a", "vol_b"]
        assert world.dispatcher.state(incident.incident_id).notified == ["vol_a", "vol_b"]
        await world.dispatcher.shutdown()

    async def test_guardian_with_heartbeat_is_ranked(self) -> None:
        world = _World()
        await world.directory.sync_guardians("usr_1", world.identity)
        world.directory.record_heartbeat("grd_1", _near(2000))
        incident = await world.raise_default()
        assert [c.responder_id for c in incident.candidate_queue] == ["grd_1"]
        assert incident.candidate_queue[0].kind == ResponderKind.GUARDIAN
        await world.dispatcher.shutdown()

    async def test_radius_override(self) -> None:
        world = _World()
        world.add_volunteer("vol_a", 750)
        incident = await world.raise_default(radius_meters=100)
        assert incident.candidate_queue == ()

    async def test_no_candidates_closes_unanswered(self) -> None:
        world = _World()
        incident = await world.raise_default()
        assert incident.status == IncidentStatus.CLOSED_UNANSWERED
        assert incident.closed_at is not None

    async def test_unknown_user(self) -> None:
        with pytest.raises(NotFoundError):
            await _World().orchestrator.raise_sos("usr_ghost", "manual", ORIGIN)

    async def test_unknown_incident_type(self) -> None:
        with pytest.raises(ValidationError):
            await _World().orchestrator.raise_sos("usr_1", "alien_abduction", ORIGIN)


# -----------------------------------------------------------------------
# Settlement
# -----------------------------------------------------------------------


class TestSettlement:
    async def test_accept_resolves_to_responder(self) -> None:
        world = _World()
        world.add_volunteer("vol_a", 300)
        world.add_volunteer("vol_b", 600)
        incident = await world.raise_default()

        await world.orchestrator.record_response(incident.incident_id, "vol_b", "declined")
        await world.orchestrator.record_response(incident.incident_id, "vol_a", "accepted")

        resolved = world.orchestrator.get(incident.incident_id)
        assert resolved.status == IncidentStatus.RESOLVED
        assert resolved.resolved_by == "vol_a"
        assert resolved.closed_at is not None
        assert len(resolved.response_ids) == 2
        assert resolved.escalation_tier == 1

    async def test_unanswered_closes(self) -> None:
        world = _World(tier_deadline_seconds=0.05, max_tier=1)
        world.add_volunteer("vol_a", 300)
        incident = await world.raise_default()

        await _eventually(
            lambda: world.orchestrator.get(incident.incident_id).status == IncidentStatus.CLOSED_UNANSWERED
        )
        responses = world.orchestrator.responses(incident.incident_id)
        assert [r.action for r in responses] == [ResponseAction.TIMEOUT]

    async def test_late_answer_recorded_but_terminal_fields_frozen(self) -> None:
        world = _World(tier_deadline_seconds=0.05, max_tier=1)
        world.add_volunteer("vol_a", 300)
        incident = await world.raise_default()
        await world.dispatcher.wait_settled(incident.incident_id, timeout=1)
        await _eventually(lambda: world.orchestrator.get(incident.incident_id).status.is_terminal)
        before = world.orchestrator.get(incident.incident_id)

        late = await world.orchestrator.record_response(incident.incident_id, "vol_a", "accepted")
        assert late.authoritative is False
        after = world.orchestrator.get(incident.incident_id)
        assert after.status == IncidentStatus.CLOSED_UNANSWERED
        assert after.response_ids == before.response_ids
        assert len(world.orchestrator.responses(incident.incident_id)) == 2

    async def test_cancel_resolves_to_user(self) -> None:
        world = _World()
        world.add_volunteer("vol_a", 300)
        incident = await world.raise_default()

        cancelled = await world.orchestrator.cancel(incident.incident_id)
        assert cancelled.status == IncidentStatus.RESOLVED
        assert cancelled.resolved_by == "usr_1"
        assert world.dispatcher.state(incident.incident_id).outcome == DispatchOutcome.CANCELLED

        with pytest.raises(AlreadySettledError):
            await world.orchestrator.cancel(incident.incident_id)

    async def test_cancel_after_accept_settled_dispatch_keeps_winner(self) -> None:
        world = _World()
        world.add_volunteer("vol_a", 300)
        incident = await world.raise_default()
        incident_id = incident.incident_id

        # Hold the incident lock so the accept settles dispatch but cannot
        # update the incident before cancel queues up behind it.
        async with world.orchestrator._lock_for(incident_id):
            accept = asyncio.create_task(
                world.orchestrator.record_response(incident_id, "vol_a", "accepted")
            )
            await _eventually(
                lambda: world.dispatcher.state(incident_id).outcome == DispatchOutcome.ACCEPTED
            )
            for _ in range(5):
                await asyncio.sleep(0)
            cancel = asyncio.create_task(world.orchestrator.cancel(incident_id))
            await asyncio.sleep(0)

        await accept
        cancelled = await cancel
        assert cancelled.status == IncidentStatus.RESOLVED
        assert cancelled.resolved_by == "vol_a"
        assert world.orchestrator.get(incident_id).resolved_by == "vol_a"
        assert world.dispatcher.state(incident_id).outcome == DispatchOutcome.ACCEPTED

    async def test_unknown_incident(self) -> None:
        with pytest.raises(NotFoundError):
            _World().orchestrator.get("inc_missing")


# -----------------------------------------------------------------------
# Distress escalation
# -----------------------------------------------------------------------


class TestEscalation:
    async def test_critical_reading_escalates_and_alerts_authorities(self) -> None:
        world = _World()
        world.add_volunteer("vol_a", 300)
        incident = await world.raise_default()

        reading = await world.orchestrator.record_emotion(incident.incident_id, CRITICAL_VOICE)
        assert reading.distress_level == DistressLevel.CRITICAL
        assert reading.triggered_escalation is True

        escalated = world.orchestrator.get(incident.incident_id)
        assert escalated.status == IncidentStatus.ESCALATED_TO_AUTHORITIES
        assert escalated.escalated_at is not None
        phone, text = world.sms.sent[-1]
        assert phone == "100"
        assert text.startswith("SAFERELAY ESCALATION")
        assert incident.incident_id in text

        # dispatch keeps running; a volunteer can still take it
        await world.orchestrator.record_response(incident.incident_id, "vol_a", "accepted")
        assert world.orchestrator.get(incident.incident_id).resolved_by == "vol_a"

    async def test_calm_reading_does_not_escalate(self) -> None:
        world = _World()
        world.add_volunteer("vol_a", 300)
        incident = await world.raise_default()
        reading = await world.orchestrator.record_emotion(incident.incident_id, CALM_VOICE)
        assert reading.triggered_escalation is False
        assert world.orchestrator.get(incident.incident_id).status == IncidentStatus.DISPATCHING
        await world.dispatcher.shutdown()

    async def test_escalated_incident_survives_unanswered_dispatch(self) -> None:
        world = _World(tier_deadline_seconds=0.05, max_tier=1)
        world.add_volunteer("vol_a", 300)
        incident = await world.raise_default()
        await world.orchestrator.record_emotion(incident.incident_id, CRITICAL_VOICE)
        await world.dispatcher.wait_settled(incident.incident_id, timeout=1)
        await asyncio.sleep(0.01)
        assert world.orchestrator.get(incident.incident_id).status == IncidentStatus.ESCALATED_TO_AUTHORITIES

    async def test_resolve_escalation(self) -> None:
        world = _World()
        world.add_volunteer("vol_a", 300)
        incident = await world.raise_default()

        with pytest.raises(ConflictError):
            await world.orchestrator.resolve_escalation(incident.incident_id, "pcr_van_12")

        await world.orchestrator.record_emotion(incident.incident_id, CRITICAL_VOICE)
        with pytest.raises(ValidationError):
            await world.orchestrator.resolve_escalation(incident.incident_id, "")

        resolved = await world.orchestrator.resolve_escalation(incident.incident_id, "pcr_van_12")
        assert resolved.status == IncidentStatus.RESOLVED
        assert resolved.resolved_by == "pcr_van_12"
        assert world.dispatcher.state(incident.incident_id).outcome == DispatchOutcome.CANCELLED

    async def test_readings_rejected_after_close(self) -> None:
        world = _World()
        incident = await world.raise_default()
        with pytest.raises(AlreadySettledError):
            await world.orchestrator.record_emotion(incident.incident_id, CALM_VOICE)

    async def test_timeline_tracks_peaks(self) -> None:
        world = _World()
        world.add_volunteer("vol_a", 300)
        incident = await world.raise_default()
        await world.orchestrator.record_emotion(incident.incident_id, CALM_VOICE)
        await world.orchestrator.record_emotion(
            incident.incident_id, AudioFeatures(pitch=250, prosody_variance=10, speech_rate=100)
        )

        timeline = world.orchestrator.emotion_timeline(incident.incident_id)
        assert len(timeline.readings) == 2
        assert timeline.peaks[EmotionLabel.FEAR] == 0.7
        assert timeline.peaks[EmotionLabel.CALM] == pytest.approx(0.75)
        assert timeline.max_distress_score == pytest.approx(0.3833, abs=1e-4)
        await world.dispatcher.shutdown()


# -----------------------------------------------------------------------
# Evidence, history and reports
# -----------------------------------------------------------------------


class TestEvidenceAndReports:
    async def _upload(self, world: _World, incident_id: str) -> str:
        session_id = await world.orchestrator.begin_evidence_upload(incident_id, {"audio": 2, "photo": 1})
        await world.chunk_store.put_chunk(session_id, "audio", 1, b"-second")
        await world.chunk_store.put_chunk(session_id, "audio", 0, b"first")
        await world.chunk_store.put_chunk(session_id, "photo", 0, b"jpeg")
        record = await world.orchestrator.finalize_evidence_upload(session_id)
        return record.evidence_id

    async def test_evidence_attaches_even_after_resolution(self) -> None:
        world = _World()
        world.add_volunteer("vol_a", 300)
        incident = await world.raise_default()
        await world.orchestrator.cancel(incident.incident_id)

        evidence_id = await self._upload(world, incident.incident_id)
        refreshed = world.orchestrator.get(incident.incident_id)
        assert refreshed.evidence_refs == [evidence_id]
        assert refreshed.status == IncidentStatus.RESOLVED

    async def test_failed_commit_keeps_upload_resumable(self) -> None:
        storage = _FlakyStorage()
        world = _World(storage)
        incident = await world.raise_default()
        session_id = await world.orchestrator.begin_evidence_upload(incident.incident_id, {"audio": 1})
        await world.chunk_store.put_chunk(session_id, "audio", 0, b"voice")

        with pytest.raises(StorageUnavailableError):
            await world.orchestrator.finalize_evidence_upload(session_id)

        status = await world.chunk_store.session_status(session_id)
        assert status.streams[StreamType.AUDIO].missing == []
        assert world.orchestrator.get(incident.incident_id).evidence_refs == []

        storage.fail = False
        record = await world.orchestrator.finalize_evidence_upload(session_id)
        assert world.orchestrator.get(incident.incident_id).evidence_refs == [record.evidence_id]

    async def test_upload_for_unknown_incident(self) -> None:
        with pytest.raises(NotFoundError):
            await _World().orchestrator.begin_evidence_upload("inc_missing", {"audio": 1})

    async def test_history_is_newest_first_and_paged(self) -> None:
        world = _World()
        opened = [(await world.raise_default()).incident_id for _ in range(3)]

        page, total = world.orchestrator.history("usr_1", page=1, limit=2)
        assert total == 3
        assert [i.incident_id for i in page] == [opened[2], opened[1]]
        page, _ = world.orchestrator.history("usr_1", page=2, limit=2)
        assert [i.incident_id for i in page] == [opened[0]]

    async def test_report_summarises_incident(self) -> None:
        world = _World()
        world.add_volunteer("vol_a", 300)
        incident = await world.raise_default(description="car crash on ring road")
        await world.orchestrator.record_emotion(incident.incident_id, CALM_VOICE)
        await world.orchestrator.record_response(incident.incident_id, "vol_a", "accepted")
        evidence_id = await self._upload(world, incident.incident_id)

        report = world.orchestrator.generate_report(incident.incident_id)
        assert report.startswith("SAFERELAY INCIDENT REPORT\n" + "=" * 48)
        assert f"Incident: {incident.incident_id}" in report
        assert "Status: Resolved" in report
        assert "Resolved by: vol_a" in report
        assert "Description: car crash on ring road" in report
        assert "vol_a: accepted" in report
        assert evidence_id in report
        assert "1 reading(s)" in report


# -----------------------------------------------------------------------
# Live events
# -----------------------------------------------------------------------


class TestEventHub:
    async def test_only_dispatched_responders_may_subscribe(self) -> None:
        world = _World()
        world.add_volunteer("vol_a", 300)
        incident = await world.raise_default()
        hub = world.orchestrator.hub

        with pytest.raises(NotFoundError):
            hub.subscribe(incident.incident_id, "vol_stranger")

        subscription = hub.subscribe(incident.incident_id, "vol_a")
        await world.orchestrator.record_response(incident.incident_id, "vol_a", "accepted")

        first = await asyncio.wait_for(subscription.next_event(), 1)
        second = await asyncio.wait_for(subscription.next_event(), 1)
        assert first.event == "response"
        assert first.data["responder_id"] == "vol_a"
        assert second.event == "dispatch_settled"
        assert second.data["status"] == "resolved"

        hub.unsubscribe(subscription)
        assert hub.subscriber_count(incident.incident_id) == 0

    async def test_full_queue_drops_oldest(self) -> None:
        hub = IncidentEventHub(lambda incident_id, responder_id: True)
        subscription = hub.subscribe("inc_1", "vol_a")
        for i in range(105):
            hub.publish("inc_1", "tick", n=i)
        assert subscription.queue.qsize() == 100
        assert (await subscription.next_event()).data["n"] == 5

    async def test_publish_without_subscribers(self) -> None:
        hub = IncidentEventHub(lambda incident_id, responder_id: True)
        assert hub.publish("inc_1", "tick") == 0
