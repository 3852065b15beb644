"""Incident orchestrator: owns the SOS lifecycle.

::

    OPEN -> DISPATCHING -> RESOLVED(responder)
                        -> ESCALATED_TO_AUTHORITIES -> RESOLVED
                        -> CLOSED_UNANSWERED

``RESOLVED`` and ``CLOSED_UNANSWERED`` are terminal: once reached, the
incident's status and resolution fields never change again.  Evidence
references are the one exception and attach in any state, because evidence
often finishes uploading after help has arrived.

The orchestrator wires the other services together:

* it ranks candidates through the :class:`ResponderDirectory` and hands the
  frozen queue to the :class:`NotificationDispatcher`;
* it listens for dispatch settlement and responses;
* it listens for ledger commits and attaches evidence references;
* it scores distress readings and escalates to authorities on a critical
  reading while responders are still being sought.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Mapping
from datetime import UTC, datetime
from typing import Final

import structlog
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from saferelay.models.enums import (
    DispatchOutcome,
    DistressLevel,
    EmotionLabel,
    IncidentStatus,
    IncidentType,
    ResponseAction,
    StreamType,
)
from saferelay.models.evidence import AssembledStream, EvidenceRecord
from saferelay.models.incident import (
    AudioFeatures,
    EmotionReading,
    EmotionTimeline,
    Incident,
    Response,
)
from saferelay.models.responder import GeoPoint
from saferelay.services.channels import SmsChannel
from saferelay.services.chunk_store import EvidenceChunkStore
from saferelay.services.dispatcher import AlertContext, NotificationDispatcher
from saferelay.services.distress import DistressAnalyzer
from saferelay.services.errors import (
    AlreadySettledError,
    ChannelUnavailableError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from saferelay.services.event_hub import IncidentEventHub
from saferelay.services.evidence_ledger import EvidenceLedger
from saferelay.services.identity import IdentityDirectory
from saferelay.services.ids import IdGenerator
from saferelay.services.incident_store import IncidentStore
from saferelay.services.responder_directory import ResponderDirectory

logger = structlog.get_logger(__name__)

_REPORT_RULE: Final[str] = "=" * 48


class IncidentOrchestrator:
    """Coordinates incidents, dispatch, evidence and distress escalation.

    Parameters
    ----------
    store:
        Incident, response and reading collections.
    directory:
        Responder ranking.
    dispatcher:
        Tiered fan-out engine.  The orchestrator registers itself as a
        settle and response listener.
    ledger:
        Evidence ledger.  The orchestrator registers a commit listener.
    chunk_store:
        Upload sessions whose recording id is the incident id.
    identity:
        Read-only user and guardian lookup.
    sms:
        Channel used to alert authorities on escalation.
    hub:
        Per-incident event topics for dispatched responders.
    """

    def __init__(
        self,
        store: IncidentStore,
        directory: ResponderDirectory,
        dispatcher: NotificationDispatcher,
        ledger: EvidenceLedger,
        chunk_store: EvidenceChunkStore,
        identity: IdentityDirectory,
        sms: SmsChannel,
        ids: IdGenerator,
        *,
        hub: IncidentEventHub | None = None,
        analyzer: DistressAnalyzer | None = None,
        search_radius_meters: float = 5_000.0,
        max_candidates: int = 20,
        authority_phone: str = "112",
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._directory = directory
        self._dispatcher = dispatcher
        self._ledger = ledger
        self._chunk_store = chunk_store
        self._identity = identity
        self._sms = sms
        self._ids = ids
        self._hub = hub or IncidentEventHub(dispatcher.is_dispatched)
        self._analyzer = analyzer or DistressAnalyzer()
        self._search_radius = search_radius_meters
        self._max_candidates = max_candidates
        self._authority_phone = authority_phone
        self._clock = clock or (lambda: datetime.now(UTC))
        self._locks: dict[str, asyncio.Lock] = {}

        dispatcher.add_settle_listener(self._on_dispatch_settled)
        dispatcher.add_response_listener(self._on_response)
        ledger.add_listener(self._on_evidence_committed)

    @property
    def hub(self) -> IncidentEventHub:
        return self._hub

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def raise_sos(
        self,
        user_id: str,
        incident_type: IncidentType | str,
        origin: GeoPoint,
        *,
        silent: bool = False,
        description: str = "",
        radius_meters: float | None = None,
    ) -> Incident:
        """Open an incident, rank responders and start tier-1 dispatch."""
        try:
            kind = IncidentType(incident_type)
        except ValueError as exc:
            raise ValidationError(f"unknown incident type {incident_type!r}") from exc

        user = await self._identity.resolve_user(user_id)
        await self._directory.sync_guardians(user_id, self._identity)
        candidates = self._directory.rank_candidates(
            user_id,
            origin,
            radius_meters or self._search_radius,
            self._max_candidates,
        )

        incident = Incident(
            incident_id=self._ids.new_id("inc"),
            user_id=user_id,
            incident_type=kind,
            opened_at=self._clock(),
            origin=origin,
            candidate_queue=tuple(candidates),
            silent=silent,
            description=description,
        )
        await self._store.insert(incident)
        logger.info(
            "orchestrator.incident_opened",
            incident_id=incident.incident_id,
            user_id=user_id,
            incident_type=str(kind),
            candidates=len(candidates),
        )

        async with self._lock_for(incident.incident_id):
            incident.status = IncidentStatus.DISPATCHING
            await self._store.replace(incident)

        await self._dispatcher.start(
            incident.incident_id,
            candidates,
            AlertContext(
                user_id=user_id,
                user_name=user.name,
                incident_type=kind,
                location=origin,
                silent=silent,
            ),
        )
        return self._store.get(incident.incident_id)

    def get(self, incident_id: str) -> Incident:
        return self._store.get(incident_id)

    def history(self, user_id: str, *, page: int = 1, limit: int = 20) -> tuple[list[Incident], int]:
        return self._store.history(user_id, page=page, limit=limit)

    def responses(self, incident_id: str) -> list[Response]:
        self._store.get(incident_id)
        return self._store.responses(incident_id)

    async def record_response(
        self,
        incident_id: str,
        responder_id: str,
        action: ResponseAction | str,
    ) -> Response:
        self._store.get(incident_id)
        return await self._dispatcher.respond(incident_id, responder_id, action)

    async def cancel(self, incident_id: str) -> Incident:
        """The user marks themselves safe.  Resolves the incident to the user.

        The dispatch run is settled while the incident lock is held.  If a
        responder's accept already settled it, the incident resolves to
        that responder instead so incident and dispatch never disagree.
        """
        async with self._lock_for(incident_id):
            incident = self._store.get(incident_id)
            if incident.status.is_terminal:
                raise AlreadySettledError(
                    f"incident {incident_id} is already {incident.status}",
                    status=str(incident.status),
                )
            resolved_by = await self._settle_dispatch(incident_id) or incident.user_id
            incident.status = IncidentStatus.RESOLVED
            incident.resolved_by = resolved_by
            incident.closed_at = self._clock()
            await self._store.replace(incident)

        reason = "user_safe" if resolved_by == incident.user_id else "responder_accepted"
        logger.info("orchestrator.cancelled_by_user", incident_id=incident_id, resolved_by=resolved_by)
        self._hub.publish(incident_id, "resolved", resolved_by=resolved_by, reason=reason)
        return self._store.get(incident_id)

    async def resolve_escalation(self, incident_id: str, resolved_by: str) -> Incident:
        """Close an escalated incident once authorities have handled it."""
        if not resolved_by:
            raise ValidationError("resolved_by is required")
        async with self._lock_for(incident_id):
            incident = self._store.get(incident_id)
            if incident.status.is_terminal:
                raise AlreadySettledError(f"incident {incident_id} is already {incident.status}")
            if incident.status != IncidentStatus.ESCALATED_TO_AUTHORITIES:
                raise ConflictError(f"incident {incident_id} is not escalated")
            resolved_by = await self._settle_dispatch(incident_id) or resolved_by
            incident.status = IncidentStatus.RESOLVED
            incident.resolved_by = resolved_by
            incident.closed_at = self._clock()
            await self._store.replace(incident)

        logger.info("orchestrator.escalation_resolved", incident_id=incident_id, resolved_by=resolved_by)
        self._hub.publish(incident_id, "resolved", resolved_by=resolved_by, reason="authorities")
        return self._store.get(incident_id)

    async def _settle_dispatch(self, incident_id: str) -> str | None:
        """Cancel the dispatch run.  Returns the winner if an accept got there first.

        Call with the incident lock held; the cancelled-settle callback
        does not take that lock.
        """
        if not self._dispatcher.has_run(incident_id):
            return None
        if await self._dispatcher.cancel(incident_id):
            return None
        status = self._dispatcher.state(incident_id)
        if status.outcome == DispatchOutcome.ACCEPTED:
            return status.accepted_by
        return None

    # ------------------------------------------------------------------
    # Evidence
    # ------------------------------------------------------------------

    async def begin_evidence_upload(self, incident_id: str, expected_streams: Mapping[str, int]) -> str:
        self._store.get(incident_id)
        return await self._chunk_store.begin_session(incident_id, expected_streams)

    async def finalize_evidence_upload(self, session_id: str) -> EvidenceRecord:
        """Assemble an upload and commit it to the ledger for its incident.

        The upload session survives a failed commit, so the client can
        finalize again without resending chunks.
        """
        status = await self._chunk_store.session_status(session_id)
        incident = self._store.get(status.recording_id)

        async def commit(assembled: dict[StreamType, AssembledStream]) -> EvidenceRecord:
            return await self._ledger.commit(incident.incident_id, incident.user_id, assembled)

        return await self._chunk_store.finalize_into(session_id, commit)

    # ------------------------------------------------------------------
    # Distress readings
    # ------------------------------------------------------------------

    async def record_emotion(self, incident_id: str, features: AudioFeatures) -> EmotionReading:
        """Score a voice sample and escalate on critical distress."""
        assessment = self._analyzer.analyze(features)

        escalate = False
        async with self._lock_for(incident_id):
            incident = self._store.get(incident_id)
            if incident.status.is_terminal:
                raise AlreadySettledError(f"incident {incident_id} is already {incident.status}")
            escalate = assessment.is_critical and incident.status == IncidentStatus.DISPATCHING
            reading = EmotionReading(
                reading_id=self._ids.new_id("emo"),
                incident_id=incident_id,
                recorded_at=self._clock(),
                confidences=assessment.confidences,
                primary_emotion=assessment.primary_emotion,
                distress_score=assessment.distress_score,
                distress_level=assessment.distress_level,
                triggered_escalation=escalate,
            )
            await self._store.add_reading(reading)
            if escalate:
                await self._mark_escalated(incident, reason="critical_distress")

        logger.info(
            "orchestrator.emotion_recorded",
            incident_id=incident_id,
            distress_score=reading.distress_score,
            distress_level=str(reading.distress_level),
            escalated=escalate,
        )
        self._hub.publish(
            incident_id,
            "distress",
            distress_level=str(reading.distress_level),
            distress_score=reading.distress_score,
        )
        if escalate:
            await self._alert_authorities(incident, reason="critical distress detected")
        return reading

    def emotion_timeline(self, incident_id: str) -> EmotionTimeline:
        self._store.get(incident_id)
        readings = sorted(self._store.readings(incident_id), key=lambda r: r.recorded_at)
        peaks = {label: 0.0 for label in EmotionLabel}
        for reading in readings:
            for label, confidence in reading.confidences.items():
                peaks[label] = max(peaks[label], confidence)
        return EmotionTimeline(
            incident_id=incident_id,
            readings=readings,
            peaks=peaks,
            max_distress_score=max((r.distress_score for r in readings), default=0.0),
        )

    # ------------------------------------------------------------------
    # Report
    # ------------------------------------------------------------------

    def generate_report(self, incident_id: str) -> str:
        """Plain-text incident summary suitable for sharing with police or counsel."""
        incident = self._store.get(incident_id)
        responses = sorted(self._store.responses(incident_id), key=lambda r: r.responded_at)
        evidence = self._ledger.list_for_incident(incident_id)
        timeline = self.emotion_timeline(incident_id)

        response_lines = [
            f"  - {r.responded_at.isoformat()} tier {r.tier} {r.responder_id}: "
            f"{r.action}{'' if r.authoritative else ' (after settlement)'}"
            for r in responses
        ] or ["  - none"]

        evidence_lines: list[str] = []
        for record in evidence:
            evidence_lines.append(f"  - {record.evidence_id} (sequence {record.sequence})")
            evidence_lines.append(f"    combined SHA-256: {record.combined_hash}")
            for stream, digest in record.streams.items():
                evidence_lines.append(f"    {stream}: {digest.content_hash} ({digest.size_bytes} bytes)")
            if record.tamper_suspected:
                evidence_lines.append("    WARNING: integrity check failed for this record")
        if not evidence_lines:
            evidence_lines = ["  - none"]

        origin = incident.origin
        closed = incident.closed_at.isoformat() if incident.closed_at else "open"
        report = (
            f"SAFERELAY INCIDENT REPORT\n"
            f"{_REPORT_RULE}\n"
            f"Incident: {incident.incident_id}\n"
            f"Type: {incident.incident_type.value.title()}\n"
            f"Opened: {incident.opened_at.isoformat()}\n"
            f"Closed: {closed}\n"
            f"Status: {incident.status.value.replace('_', ' ').title()}\n"
            f"Resolved by: {incident.resolved_by or '-'}\n"
            f"Location: {origin.latitude:.6f}, {origin.longitude:.6f}\n"
            f"Description: {incident.description or 'Not provided'}\n"
            f"\n"
            f"RESPONDERS ({len(incident.candidate_queue)} ranked, "
            f"{incident.escalation_tier} tier(s) dispatched):\n"
            f"{chr(10).join(response_lines)}\n"
            f"\n"
            f"DISTRESS: peak score {timeline.max_distress_score:.2f} "
            f"over {len(timeline.readings)} reading(s)\n"
            f"\n"
            f"EVIDENCE:\n"
            f"{chr(10).join(evidence_lines)}\n"
            f"\n"
            f"Generated: {self._clock().isoformat()}\n"
            f"{_REPORT_RULE}\n"
        )
        return report

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------

    async def _on_response(self, response: Response) -> None:
        await self._store.add_response(response)
        async with self._lock_for(response.incident_id):
            incident = self._store.get(response.incident_id)
            if not incident.status.is_terminal:
                incident.response_ids.append(response.response_id)
                incident.escalation_tier = max(incident.escalation_tier, response.tier)
                await self._store.replace(incident)
        self._hub.publish(
            response.incident_id,
            "response",
            responder_id=response.responder_id,
            action=str(response.action),
            authoritative=response.authoritative,
        )

    async def _on_dispatch_settled(
        self,
        incident_id: str,
        outcome: DispatchOutcome,
        accepted_by: str | None,
    ) -> None:
        if outcome == DispatchOutcome.CANCELLED:
            return

        escalate_incident: Incident | None = None
        async with self._lock_for(incident_id):
            incident = self._store.get(incident_id)
            if incident.status.is_terminal:
                return
            incident.escalation_tier = max(incident.escalation_tier, self._dispatcher.state(incident_id).tier)

            if outcome == DispatchOutcome.ACCEPTED:
                incident.status = IncidentStatus.RESOLVED
                incident.resolved_by = accepted_by
                incident.closed_at = self._clock()
            elif incident.status == IncidentStatus.ESCALATED_TO_AUTHORITIES:
                pass
            elif self._has_critical_reading(incident_id):
                await self._mark_escalated(incident, reason="unanswered_with_critical_distress")
                escalate_incident = incident
            else:
                incident.status = IncidentStatus.CLOSED_UNANSWERED
                incident.closed_at = self._clock()
            await self._store.replace(incident)

        logger.info(
            "orchestrator.dispatch_settled",
            incident_id=incident_id,
            outcome=str(outcome),
            status=str(incident.status),
            resolved_by=incident.resolved_by,
        )
        self._hub.publish(
            incident_id,
            "dispatch_settled",
            outcome=str(outcome),
            status=str(incident.status),
            resolved_by=incident.resolved_by,
        )
        if escalate_incident is not None:
            await self._alert_authorities(escalate_incident, reason="no responder accepted")

    async def _on_evidence_committed(self, record: EvidenceRecord) -> None:
        async with self._lock_for(record.incident_id):
            try:
                incident = self._store.get(record.incident_id)
            except NotFoundError:
                logger.warning(
                    "orchestrator.evidence_for_unknown_incident",
                    incident_id=record.incident_id,
                    evidence_id=record.evidence_id,
                )
                return
            if record.evidence_id not in incident.evidence_refs:
                incident.evidence_refs.append(record.evidence_id)
                await self._store.replace(incident)
        self._hub.publish(record.incident_id, "evidence_committed", evidence_id=record.evidence_id)

    # ------------------------------------------------------------------
    # Escalation
    # ------------------------------------------------------------------

    async def _mark_escalated(self, incident: Incident, *, reason: str) -> None:
        """Caller holds the incident lock."""
        incident.status = IncidentStatus.ESCALATED_TO_AUTHORITIES
        incident.escalated_at = self._clock()
        await self._store.replace(incident)
        logger.warning(
            "orchestrator.escalated",
            incident_id=incident.incident_id,
            reason=reason,
        )

    async def _alert_authorities(self, incident: Incident, *, reason: str) -> None:
        origin = incident.origin
        text = (
            f"SAFERELAY ESCALATION\n"
            f"Incident {incident.incident_id} ({incident.incident_type}): {reason}.\n"
            f"Location: https://maps.google.com/?q={origin.latitude},{origin.longitude}"
        )
        try:
            await self._send_authority_sms(text)
        except ChannelUnavailableError:
            logger.error(
                "orchestrator.authority_alert_failed",
                incident_id=incident.incident_id,
                exc_info=True,
            )
            return
        self._hub.publish(incident.incident_id, "escalated", reason=reason)

    @retry(
        retry=retry_if_exception_type(ChannelUnavailableError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        reraise=True,
    )
    async def _send_authority_sms(self, text: str) -> None:
        await self._sms.send(self._authority_phone, text)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _has_critical_reading(self, incident_id: str) -> bool:
        return any(r.distress_level == DistressLevel.CRITICAL for r in self._store.readings(incident_id))

    def _lock_for(self, incident_id: str) -> asyncio.Lock:
        lock = self._locks.get(incident_id)
        if lock is None:
            lock = self._locks.setdefault(incident_id, asyncio.Lock())
        return lock
