"""In-process collections for incidents, responses and emotion readings.

Responses and readings are kept in their own collections keyed by incident
rather than embedded in the incident document, so a busy incident never
grows one unbounded record.  Callers always get copies.
"""

from __future__ import annotations

import asyncio

import structlog

from saferelay.models.incident import EmotionReading, Incident, Response
from saferelay.services.errors import ConflictError, NotFoundError, ValidationError

logger = structlog.get_logger(__name__)


class IncidentStore:
    __slots__ = ("_by_user", "_incidents", "_lock", "_readings", "_responses")

    def __init__(self) -> None:
        self._incidents: dict[str, Incident] = {}
        self._by_user: dict[str, list[str]] = {}
        self._responses: dict[str, list[Response]] = {}
        self._readings: dict[str, list[EmotionReading]] = {}
        self._lock = asyncio.Lock()

    # -- incidents ---------------------------------------------------------------

    async def insert(self, incident: Incident) -> None:
        async with self._lock:
            if incident.incident_id in self._incidents:
                raise ConflictError(f"incident {incident.incident_id} already exists")
            self._incidents[incident.incident_id] = incident.model_copy(deep=True)
            self._by_user.setdefault(incident.user_id, []).append(incident.incident_id)

    async def replace(self, incident: Incident) -> None:
        async with self._lock:
            if incident.incident_id not in self._incidents:
                raise NotFoundError(f"unknown incident {incident.incident_id}")
            self._incidents[incident.incident_id] = incident.model_copy(deep=True)

    def get(self, incident_id: str) -> Incident:
        incident = self._incidents.get(incident_id)
        if incident is None:
            raise NotFoundError(f"unknown incident {incident_id}")
        return incident.model_copy(deep=True)

    def history(self, user_id: str, *, page: int = 1, limit: int = 20) -> tuple[list[Incident], int]:
        """Newest-first page of a user's incidents plus the total count."""
        if page < 1 or limit < 1:
            raise ValidationError("page and limit must be positive")
        ids = self._by_user.get(user_id, [])
        ordered = sorted(
            (self._incidents[i] for i in ids),
            key=lambda inc: (inc.opened_at, inc.incident_id),
            reverse=True,
        )
        start = (page - 1) * limit
        return [inc.model_copy(deep=True) for inc in ordered[start : start + limit]], len(ordered)

    # -- responses ---------------------------------------------------------------

    async def add_response(self, response: Response) -> None:
        async with self._lock:
            self._responses.setdefault(response.incident_id, []).append(response)

    def responses(self, incident_id: str) -> list[Response]:
        return list(self._responses.get(incident_id, []))

    # -- emotion readings --------------------------------------------------------

    async def add_reading(self, reading: EmotionReading) -> None:
        async with self._lock:
            self._readings.setdefault(reading.incident_id, []).append(reading)

    def readings(self, incident_id: str) -> list[EmotionReading]:
        return list(self._readings.get(incident_id, []))

    @property
    def size(self) -> int:
        return len(self._incidents)
