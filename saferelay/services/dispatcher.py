"""Tiered notification dispatcher.

One dispatch run exists per incident and walks a small state machine::

    PENDING_TIER -> AWAITING_RESPONSE(tier, deadline) -> SETTLED(outcome)

Tier rules:

1. Each tier takes the next ``fanout_size`` candidates from the frozen
   queue that have neither been notified nor declined.
2. The tier timer starts when dispatch is attempted; channel sends run as
   separate tasks and never hold the run lock.
3. The first ``accepted`` response wins by compare-and-set on
   ``AWAITING_RESPONSE`` under the run lock.  Later answers are stored with
   ``authoritative=False``.
4. A decline removes the responder from later tiers but never ends the
   current tier early.
5. On expiry, notified responders that stayed silent get a ``timeout``
   response.  The run then advances while ``tier < max_tier`` and
   candidates remain; otherwise it settles ``unanswered``.  An empty queue
   settles ``unanswered`` immediately.

Each channel send is bounded by ``asyncio.wait_for`` and retried once with
backoff through tenacity.  A send that still fails is logged and recorded
as an undelivered :class:`DeliveryAttempt`; it counts as silence from that
channel, nothing more.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

import structlog
from pydantic import BaseModel
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_fixed

from saferelay.models.enums import (
    ChannelType,
    DispatchOutcome,
    DispatchState,
    IncidentType,
    ResponseAction,
)
from saferelay.models.incident import DeliveryAttempt, Response
from saferelay.models.responder import GeoPoint, ResponderCandidate
from saferelay.services.channels import (
    AlertPayload,
    DeliveryResult,
    MeshChannel,
    PushChannel,
    SmsChannel,
    format_sms_alert,
)
from saferelay.services.errors import (
    ChannelUnavailableError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from saferelay.services.ids import IdGenerator

if TYPE_CHECKING:
    from saferelay.services.responder_directory import ResponderDirectory

logger = structlog.get_logger(__name__)

SettleCallback = Callable[[str, DispatchOutcome, str | None], Awaitable[None]]
ResponseCallback = Callable[[Response], Awaitable[None]]


# ---------------------------------------------------------------------------
# Policy and public snapshots
# ---------------------------------------------------------------------------


class DispatchPolicy(BaseModel):
    fanout_size: int = 5
    tier_deadline_seconds: float = 45.0
    max_tier: int = 3
    send_timeout_seconds: float = 5.0
    retry_backoff_seconds: float = 0.5


class AlertContext(BaseModel):
    """Incident facts copied into every alert sent for a run."""

    user_id: str
    user_name: str = ""
    incident_type: IncidentType
    location: GeoPoint
    silent: bool = False


class DispatchStatus(BaseModel):
    incident_id: str
    state: DispatchState
    tier: int
    outcome: DispatchOutcome | None = None
    accepted_by: str | None = None
    deadline: datetime | None = None
    notified: list[str]
    declined: list[str]
    remaining_candidates: int


# ---------------------------------------------------------------------------
# Per-incident run
# ---------------------------------------------------------------------------


@dataclass
class _DispatchRun:
    incident_id: str
    context: AlertContext
    queue: tuple[ResponderCandidate, ...]
    cursor: int = 0
    tier: int = 0
    state: DispatchState = DispatchState.PENDING_TIER
    outcome: DispatchOutcome | None = None
    accepted_by: str | None = None
    deadline: datetime | None = None
    notified: dict[str, tuple[datetime, int]] = field(default_factory=dict)
    declined: set[str] = field(default_factory=set)
    answered: dict[str, Response] = field(default_factory=dict)
    timeouts: list[Response] = field(default_factory=list)
    deliveries: list[DeliveryAttempt] = field(default_factory=list)
    timer: asyncio.Task[None] | None = None
    sends: set[asyncio.Task[None]] = field(default_factory=set)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    settled: asyncio.Event = field(default_factory=asyncio.Event)

    def remaining(self) -> int:
        return sum(
            1
            for c in self.queue[self.cursor :]
            if c.responder_id not in self.notified and c.responder_id not in self.declined
        )


# ---------------------------------------------------------------------------
# NotificationDispatcher
# ---------------------------------------------------------------------------


class NotificationDispatcher:
    """Runs tiered fan-out for every open incident.

    Parameters
    ----------
    push, sms, mesh:
        Channel collaborators.
    ids:
        Response id generator.
    policy:
        Fan-out size, tier deadline, tier cap and channel timing.
    directory:
        Optional responder directory that receives notification and
        response statistics.

    Settle listeners are awaited once per run with ``(incident_id,
    outcome, accepted_by)``; response listeners for every stored response,
    timeouts included.  Both run outside the run lock.
    """

    def __init__(
        self,
        push: PushChannel,
        sms: SmsChannel,
        mesh: MeshChannel,
        ids: IdGenerator,
        *,
        policy: DispatchPolicy | None = None,
        directory: ResponderDirectory | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._push = push
        self._sms = sms
        self._mesh = mesh
        self._ids = ids
        self._policy = policy or DispatchPolicy()
        self._directory = directory
        self._clock = clock or (lambda: datetime.now(UTC))
        self._runs: dict[str, _DispatchRun] = {}
        self._on_settled: list[SettleCallback] = []
        self._on_response: list[ResponseCallback] = []

    @property
    def policy(self) -> DispatchPolicy:
        return self._policy

    def add_settle_listener(self, callback: SettleCallback) -> None:
        self._on_settled.append(callback)

    def add_response_listener(self, callback: ResponseCallback) -> None:
        self._on_response.append(callback)

    # ------------------------------------------------------------------
    # Run lifecycle
    # ------------------------------------------------------------------

    async def start(
        self,
        incident_id: str,
        candidates: Sequence[ResponderCandidate],
        context: AlertContext,
    ) -> DispatchStatus:
        """Open a run and dispatch tier 1."""
        if incident_id in self._runs:
            raise ConflictError(f"dispatch already started for {incident_id}")

        run = _DispatchRun(incident_id=incident_id, context=context, queue=tuple(candidates))
        self._runs[incident_id] = run

        async with run.lock:
            settled_now = self._advance(run)
            status = self._status(run)

        logger.info(
            "dispatcher.started",
            incident_id=incident_id,
            candidates=len(run.queue),
            fanout_size=self._policy.fanout_size,
        )
        if settled_now:
            await self._announce_settled(run)
        return status

    async def cancel(self, incident_id: str) -> bool:
        """Settle the run as cancelled.

        In-flight sends are left to finish; their results are discarded.
        Returns *False* if the run had already settled.
        """
        run = self._require(incident_id)
        async with run.lock:
            if run.state == DispatchState.SETTLED:
                return False
            self._settle(run, DispatchOutcome.CANCELLED)
        await self._announce_settled(run)
        return True

    async def respond(
        self,
        incident_id: str,
        responder_id: str,
        action: ResponseAction | str,
    ) -> Response:
        """Record a responder's answer.

        Repeating an answer returns the stored response unchanged.
        """
        try:
            response_action = ResponseAction(action)
        except ValueError as exc:
            raise ValidationError(f"unknown response action {action!r}") from exc
        if response_action == ResponseAction.TIMEOUT:
            raise ValidationError("timeout responses are recorded by the dispatcher only")

        run = self._require(incident_id)
        settled_now = False
        async with run.lock:
            existing = run.answered.get(responder_id)
            if existing is not None:
                return existing
            notified = run.notified.get(responder_id)
            if notified is None:
                raise ValidationError(
                    f"responder {responder_id} was not dispatched to {incident_id}",
                    responder_id=responder_id,
                )

            notified_at, tier = notified
            now = self._clock()
            authoritative = run.state == DispatchState.AWAITING_RESPONSE
            response = Response(
                response_id=self._ids.new_id("rsp"),
                responder_id=responder_id,
                incident_id=incident_id,
                action=response_action,
                responded_at=now,
                latency_ms=max(0, int((now - notified_at).total_seconds() * 1000)),
                tier=tier,
                authoritative=authoritative,
            )
            run.answered[responder_id] = response

            if response_action == ResponseAction.DECLINED:
                run.declined.add(responder_id)
            elif authoritative:
                run.accepted_by = responder_id
                self._settle(run, DispatchOutcome.ACCEPTED)
                settled_now = True

        logger.info(
            "dispatcher.response_recorded",
            incident_id=incident_id,
            responder_id=responder_id,
            action=str(response_action),
            authoritative=response.authoritative,
            latency_ms=response.latency_ms,
        )
        if self._directory is not None:
            self._directory.record_response(responder_id, response_action, response.latency_ms)
        await self._emit_responses([response])
        if settled_now:
            await self._announce_settled(run)
        return response

    async def wait_settled(self, incident_id: str, timeout: float | None = None) -> DispatchOutcome:
        run = self._require(incident_id)
        await asyncio.wait_for(run.settled.wait(), timeout)
        return self._outcome(run)

    async def shutdown(self) -> None:
        """Cancel every timer and pending send.  Used on application exit."""
        tasks: list[asyncio.Task[None]] = []
        for run in self._runs.values():
            if run.timer is not None and not run.timer.done():
                tasks.append(run.timer)
            tasks.extend(t for t in run.sends if not t.done())
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        logger.info("dispatcher.shutdown", cancelled_tasks=len(tasks))

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def state(self, incident_id: str) -> DispatchStatus:
        return self._status(self._require(incident_id))

    def deliveries(self, incident_id: str) -> list[DeliveryAttempt]:
        return list(self._require(incident_id).deliveries)

    def responses(self, incident_id: str) -> list[Response]:
        run = self._require(incident_id)
        return sorted([*run.answered.values(), *run.timeouts], key=lambda r: r.responded_at)

    def is_dispatched(self, incident_id: str, responder_id: str) -> bool:
        run = self._runs.get(incident_id)
        return run is not None and responder_id in run.notified

    def has_run(self, incident_id: str) -> bool:
        return incident_id in self._runs

    # ------------------------------------------------------------------
    # State machine (call with run.lock held)
    # ------------------------------------------------------------------

    def _advance(self, run: _DispatchRun) -> bool:
        """Dispatch the next tier or settle.  Returns *True* on settlement."""
        batch: list[ResponderCandidate] = []
        while run.cursor < len(run.queue) and len(batch) < self._policy.fanout_size:
            candidate = run.queue[run.cursor]
            run.cursor += 1
            if candidate.responder_id in run.notified or candidate.responder_id in run.declined:
                continue
            batch.append(candidate)

        if not batch:
            self._settle(run, DispatchOutcome.UNANSWERED)
            return True

        now = self._clock()
        run.tier += 1
        run.state = DispatchState.AWAITING_RESPONSE
        run.deadline = now + timedelta(seconds=self._policy.tier_deadline_seconds)
        for candidate in batch:
            run.notified[candidate.responder_id] = (now, run.tier)
            if self._directory is not None:
                self._directory.record_notification(candidate.responder_id)

        run.timer = asyncio.create_task(self._tier_timer(run, run.tier))
        for candidate in batch:
            task = asyncio.create_task(self._deliver(run, candidate, run.tier))
            run.sends.add(task)
            task.add_done_callback(self._send_finished(run))

        logger.info(
            "dispatcher.tier_dispatched",
            incident_id=run.incident_id,
            tier=run.tier,
            responders=[c.responder_id for c in batch],
            deadline=run.deadline.isoformat(),
        )
        return False

    def _settle(self, run: _DispatchRun, outcome: DispatchOutcome) -> None:
        run.state = DispatchState.SETTLED
        run.outcome = outcome
        run.deadline = None
        timer = run.timer
        if timer is not None and timer is not asyncio.current_task() and not timer.done():
            timer.cancel()
        run.timer = None
        logger.info(
            "dispatcher.settled",
            incident_id=run.incident_id,
            outcome=str(outcome),
            tier=run.tier,
            accepted_by=run.accepted_by,
        )

    def _status(self, run: _DispatchRun) -> DispatchStatus:
        return DispatchStatus(
            incident_id=run.incident_id,
            state=run.state,
            tier=run.tier,
            outcome=run.outcome,
            accepted_by=run.accepted_by,
            deadline=run.deadline,
            notified=list(run.notified),
            declined=sorted(run.declined),
            remaining_candidates=run.remaining(),
        )

    # ------------------------------------------------------------------
    # Timer
    # ------------------------------------------------------------------

    async def _tier_timer(self, run: _DispatchRun, tier: int) -> None:
        await asyncio.sleep(self._policy.tier_deadline_seconds)

        settled_now = False
        async with run.lock:
            if run.state != DispatchState.AWAITING_RESPONSE or run.tier != tier:
                return
            now = self._clock()
            expired: list[Response] = []
            for responder_id, (notified_at, notified_tier) in run.notified.items():
                if notified_tier != tier or responder_id in run.answered:
                    continue
                expired.append(
                    Response(
                        response_id=self._ids.new_id("rsp"),
                        responder_id=responder_id,
                        incident_id=run.incident_id,
                        action=ResponseAction.TIMEOUT,
                        responded_at=now,
                        latency_ms=int((now - notified_at).total_seconds() * 1000),
                        tier=tier,
                        authoritative=True,
                    )
                )
            run.timeouts.extend(expired)
            logger.info(
                "dispatcher.tier_expired",
                incident_id=run.incident_id,
                tier=tier,
                silent=len(expired),
            )

            if tier < self._policy.max_tier and run.remaining() > 0:
                settled_now = self._advance(run)
            else:
                self._settle(run, DispatchOutcome.UNANSWERED)
                settled_now = True

        await self._emit_responses(expired)
        if settled_now:
            await self._announce_settled(run)

    # ------------------------------------------------------------------
    # Channel delivery
    # ------------------------------------------------------------------

    async def _deliver(self, run: _DispatchRun, candidate: ResponderCandidate, tier: int) -> None:
        ctx = run.context
        payload = AlertPayload(
            incident_id=run.incident_id,
            user_id=ctx.user_id,
            user_name=ctx.user_name,
            incident_type=ctx.incident_type,
            location=ctx.location,
            tier=tier,
            distance_meters=candidate.distance_meters,
            silent=ctx.silent,
        )

        sends: list[tuple[ChannelType, Callable[[], Awaitable[DeliveryResult]]]] = []
        if ChannelType.PUSH in candidate.channels and candidate.push_token:
            sends.append((ChannelType.PUSH, lambda: self._push.send(candidate.push_token, payload)))
        if ChannelType.SMS in candidate.channels and candidate.phone:
            text = format_sms_alert(payload)
            sends.append((ChannelType.SMS, lambda: self._sms.send(candidate.phone, text)))
        if not candidate.online:
            sends.append((ChannelType.MESH, lambda: self._mesh.broadcast(payload)))

        if not sends:
            logger.warning(
                "dispatcher.no_channel",
                incident_id=run.incident_id,
                responder_id=candidate.responder_id,
            )
            return

        await asyncio.gather(
            *(self._attempt(run, candidate.responder_id, tier, channel, send) for channel, send in sends)
        )

    async def _attempt(
        self,
        run: _DispatchRun,
        responder_id: str,
        tier: int,
        channel: ChannelType,
        send: Callable[[], Awaitable[DeliveryResult]],
    ) -> None:
        delivered = False
        error = ""
        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception_type(ChannelUnavailableError),
                stop=stop_after_attempt(2),
                wait=wait_fixed(self._policy.retry_backoff_seconds),
                reraise=True,
            ):
                with attempt:
                    result = await self._bounded(send, channel)
            delivered = result.delivered
            error = "" if delivered else result.detail
        except ChannelUnavailableError as exc:
            error = exc.detail
            logger.warning(
                "dispatcher.channel_failed",
                incident_id=run.incident_id,
                responder_id=responder_id,
                channel=str(channel),
                error=error,
            )

        if run.outcome == DispatchOutcome.CANCELLED:
            return
        run.deliveries.append(
            DeliveryAttempt(
                incident_id=run.incident_id,
                responder_id=responder_id,
                channel=channel,
                tier=tier,
                delivered=delivered,
                attempted_at=self._clock(),
                error=error,
            )
        )

    async def _bounded(
        self,
        send: Callable[[], Awaitable[DeliveryResult]],
        channel: ChannelType,
    ) -> DeliveryResult:
        try:
            return await asyncio.wait_for(send(), self._policy.send_timeout_seconds)
        except TimeoutError as exc:
            raise ChannelUnavailableError(f"{channel} send timed out") from exc

    @staticmethod
    def _send_finished(run: _DispatchRun) -> Callable[[asyncio.Task[None]], None]:
        def _done(task: asyncio.Task[None]) -> None:
            run.sends.discard(task)
            if task.cancelled():
                return
            exc = task.exception()
            if exc is not None:
                logger.error(
                    "dispatcher.send_crashed",
                    incident_id=run.incident_id,
                    error=repr(exc),
                )

        return _done

    # ------------------------------------------------------------------
    # Callbacks
    # ------------------------------------------------------------------

    async def _emit_responses(self, responses: Sequence[Response]) -> None:
        for response in responses:
            for callback in self._on_response:
                await callback(response)

    async def _announce_settled(self, run: _DispatchRun) -> None:
        run.settled.set()
        outcome = self._outcome(run)
        for callback in self._on_settled:
            await callback(run.incident_id, outcome, run.accepted_by)

    @staticmethod
    def _outcome(run: _DispatchRun) -> DispatchOutcome:
        if run.outcome is None:
            raise RuntimeError(f"dispatch run {run.incident_id} signalled settlement without an outcome")
        return run.outcome

    def _require(self, incident_id: str) -> _DispatchRun:
        run = self._runs.get(incident_id)
        if run is None:
            raise NotFoundError(f"no dispatch run for {incident_id}")
        return run
