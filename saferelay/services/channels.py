"""Notification channels used by the dispatcher.

Three transports reach a responder:

1. **Push** -- app push notification through a gateway (FCM-style).
2. **SMS** -- plain-text alert through an SMS gateway; works on any phone.
3. **Mesh** -- peer-to-peer broadcast for responders that have gone
   offline.  Best effort; there is no delivery receipt.

Each transport is a small protocol.  Gateway implementations speak HTTP
through ``httpx`` and convert every transport failure into
:class:`ChannelUnavailableError` so the dispatcher only ever sees the
domain taxonomy.  Logging implementations are used when no gateway is
configured; they record what they were asked to send, which makes them
handy in tests.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Final, Protocol, runtime_checkable
from uuid import uuid4

import structlog
from pydantic import BaseModel, Field

from saferelay.models.enums import IncidentType
from saferelay.models.responder import GeoPoint
from saferelay.services.errors import ChannelUnavailableError

if TYPE_CHECKING:
    import httpx

logger = structlog.get_logger(__name__)

_SMS_MAX_CHARS: Final[int] = 480  # three concatenated GSM-7 segments
_DEFAULT_HTTP_TIMEOUT: Final[float] = 10.0


# ---------------------------------------------------------------------------
# Payload and result models
# ---------------------------------------------------------------------------


class AlertPayload(BaseModel):
    """Everything a responder needs to act on an SOS."""

    incident_id: str
    user_id: str
    user_name: str = ""
    incident_type: IncidentType
    location: GeoPoint
    tier: int
    distance_meters: float | None = None
    silent: bool = False

    @property
    def maps_url(self) -> str:
        return f"https://maps.google.com/?q={self.location.latitude},{self.location.longitude}"


class DeliveryResult(BaseModel):
    delivered: bool
    provider_message_id: str = Field(default_factory=lambda: uuid4().hex)
    detail: str = ""


def format_sms_alert(payload: AlertPayload) -> str:
    """Render the SMS body for an alert, trimmed to three segments."""
    who = payload.user_name or "Someone"
    lines = [
        "EMERGENCY ALERT",
        f"{who} needs help ({payload.incident_type}).",
        f"Location: {payload.maps_url}",
    ]
    if payload.distance_meters is not None:
        lines.append(f"About {payload.distance_meters / 1000:.1f} km from you.")
    lines.append(f"Ref: {payload.incident_id}")
    text = "\n".join(lines)
    return text[:_SMS_MAX_CHARS]


# ---------------------------------------------------------------------------
# Channel protocols
# ---------------------------------------------------------------------------


@runtime_checkable
class PushChannel(Protocol):
    async def send(self, target: str, payload: AlertPayload) -> DeliveryResult: ...


@runtime_checkable
class SmsChannel(Protocol):
    async def send(self, phone: str, text: str) -> DeliveryResult: ...


@runtime_checkable
class MeshChannel(Protocol):
    async def broadcast(self, payload: AlertPayload) -> DeliveryResult: ...


# ---------------------------------------------------------------------------
# Logging implementations
# ---------------------------------------------------------------------------


class LoggingPushChannel:
    """Push channel that only logs.  Keeps the last sends for inspection."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, AlertPayload]] = []

    async def send(self, target: str, payload: AlertPayload) -> DeliveryResult:
        self.sent.append((target, payload))
        logger.info(
            "channel.push_logged",
            incident_id=payload.incident_id,
            target=target[:8],
            tier=payload.tier,
        )
        return DeliveryResult(delivered=True, detail="logged")


class LoggingSmsChannel:
    def __init__(self) -> None:
        self.sent: list[tuple[str, str]] = []

    async def send(self, phone: str, text: str) -> DeliveryResult:
        self.sent.append((phone, text))
        logger.info("channel.sms_logged", phone=_mask_phone(phone), chars=len(text))
        return DeliveryResult(delivered=True, detail="logged")


class LoggingMeshChannel:
    def __init__(self) -> None:
        self.broadcasts: list[AlertPayload] = []

    async def broadcast(self, payload: AlertPayload) -> DeliveryResult:
        self.broadcasts.append(payload)
        logger.info("channel.mesh_logged", incident_id=payload.incident_id, tier=payload.tier)
        return DeliveryResult(delivered=True, detail="logged")


# ---------------------------------------------------------------------------
# HTTP gateway implementations
# ---------------------------------------------------------------------------


class _HttpGateway:
    """Shared plumbing for JSON-over-HTTP gateways."""

    _channel: str = "http"

    def __init__(
        self,
        url: str,
        *,
        headers: dict[str, str] | None = None,
        client: httpx.AsyncClient | None = None,
        timeout: float = _DEFAULT_HTTP_TIMEOUT,
    ) -> None:
        import httpx

        self._url = url
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._headers = headers or {}

    async def _post(self, body: dict[str, Any]) -> DeliveryResult:
        import httpx

        try:
            response = await self._client.post(self._url, json=body, headers=self._headers)
        except httpx.HTTPError as exc:
            logger.warning(f"channel.{self._channel}_transport_error", error=str(exc))
            raise ChannelUnavailableError(f"{self._channel} gateway unreachable") from exc

        if response.status_code >= 500 or response.status_code == 429:
            logger.warning(f"channel.{self._channel}_gateway_error", status=response.status_code)
            raise ChannelUnavailableError(
                f"{self._channel} gateway answered {response.status_code}",
                status=response.status_code,
            )

        data: dict[str, Any] = {}
        if response.content:
            try:
                data = response.json()
            except ValueError:
                data = {}

        if response.status_code >= 400:
            # Rejected by the gateway (bad number, revoked token): not transient.
            logger.warning(
                f"channel.{self._channel}_rejected",
                status=response.status_code,
                body=data,
            )
            return DeliveryResult(delivered=False, detail=str(data.get("error", response.status_code)))

        return DeliveryResult(
            delivered=True,
            provider_message_id=str(data.get("id") or data.get("message_id") or uuid4().hex),
        )

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()


class HttpPushChannel(_HttpGateway):
    _channel = "push"

    def __init__(self, url: str, token: str = "", **kwargs: Any) -> None:
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        super().__init__(url, headers=headers, **kwargs)

    async def send(self, target: str, payload: AlertPayload) -> DeliveryResult:
        body = {
            "to": target,
            "priority": "high",
            "notification": {
                "title": "SOS nearby" if not payload.silent else "Check in",
                "body": format_sms_alert(payload),
            },
            "data": payload.model_dump(mode="json"),
        }
        return await self._post(body)


class HttpSmsChannel(_HttpGateway):
    _channel = "sms"

    def __init__(self, url: str, api_key: str = "", sender_id: str = "SAFRLY", **kwargs: Any) -> None:
        headers = {"authkey": api_key} if api_key else {}
        super().__init__(url, headers=headers, **kwargs)
        self._sender_id = sender_id

    async def send(self, phone: str, text: str) -> DeliveryResult:
        body = {"sender": self._sender_id, "to": phone, "message": text[:_SMS_MAX_CHARS]}
        return await self._post(body)


def _mask_phone(phone: str) -> str:
    if len(phone) <= 4:
        return "****"
    return f"{'*' * (len(phone) - 4)}{phone[-4:]}"
