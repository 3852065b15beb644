"""Identity and contacts collaborator.

Registration, login and contact management live outside the core.  The
core only reads through :class:`IdentityDirectory` and never writes user
profile data.

:class:`HttpIdentityDirectory` talks to the identity service when one is
configured.  :class:`InMemoryIdentityDirectory` backs development runs
and tests.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Final, Protocol, runtime_checkable

import structlog
from pydantic import ValidationError as PydanticValidationError

from saferelay.models.responder import ResponderSeed, UserIdentity
from saferelay.services.errors import NotFoundError, StorageUnavailableError

if TYPE_CHECKING:
    import httpx

logger = structlog.get_logger(__name__)

_DEFAULT_HTTP_TIMEOUT: Final[float] = 5.0


@runtime_checkable
class IdentityDirectory(Protocol):
    async def resolve_user(self, user_id: str) -> UserIdentity: ...

    async def resolve_guardians(self, user_id: str) -> list[ResponderSeed]: ...


class InMemoryIdentityDirectory:
    __slots__ = ("_guardians", "_users")

    def __init__(self) -> None:
        self._users: dict[str, UserIdentity] = {}
        self._guardians: dict[str, list[ResponderSeed]] = {}

    def add_user(self, user: UserIdentity, guardians: list[ResponderSeed] | None = None) -> None:
        self._users[user.user_id] = user
        self._guardians[user.user_id] = list(guardians or [])

    async def resolve_user(self, user_id: str) -> UserIdentity:
        user = self._users.get(user_id)
        if user is None:
            raise NotFoundError(f"unknown user {user_id}")
        return user

    async def resolve_guardians(self, user_id: str) -> list[ResponderSeed]:
        if user_id not in self._users:
            raise NotFoundError(f"unknown user {user_id}")
        return list(self._guardians.get(user_id, []))


class HttpIdentityDirectory:
    """Identity service client.

    Reads ``GET {base_url}/users/{user_id}`` and
    ``GET {base_url}/users/{user_id}/guardians``.  A 404 becomes
    :class:`NotFoundError`; transport failures, 5xx answers and bodies
    that do not parse become :class:`StorageUnavailableError`.

    Parameters
    ----------
    base_url:
        Root URL of the identity service.
    token:
        Optional bearer token sent with every request.
    client:
        Injected ``httpx.AsyncClient``; it is left open by :meth:`close`.
    """

    def __init__(
        self,
        base_url: str,
        token: str = "",
        *,
        client: httpx.AsyncClient | None = None,
        timeout: float = _DEFAULT_HTTP_TIMEOUT,
    ) -> None:
        import httpx

        self._base_url = base_url.rstrip("/")
        self._headers = {"Authorization": f"Bearer {token}"} if token else {}
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def resolve_user(self, user_id: str) -> UserIdentity:
        data = await self._get(f"/users/{user_id}", user_id)
        try:
            return UserIdentity.model_validate(data)
        except PydanticValidationError as exc:
            raise StorageUnavailableError("identity service returned a malformed user") from exc

    async def resolve_guardians(self, user_id: str) -> list[ResponderSeed]:
        data = await self._get(f"/users/{user_id}/guardians", user_id)
        items = data.get("guardians", []) if isinstance(data, dict) else data
        try:
            return [ResponderSeed.model_validate(item) for item in items]
        except (PydanticValidationError, TypeError) as exc:
            raise StorageUnavailableError("identity service returned malformed guardians") from exc

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _get(self, path: str, user_id: str) -> Any:
        import httpx

        try:
            response = await self._client.get(f"{self._base_url}{path}", headers=self._headers)
        except httpx.HTTPError as exc:
            logger.warning("identity.transport_error", path=path, error=str(exc))
            raise StorageUnavailableError("identity service unreachable") from exc

        if response.status_code == 404:
            raise NotFoundError(f"unknown user {user_id}")
        if response.status_code >= 400:
            logger.warning("identity.service_error", path=path, status=response.status_code)
            raise StorageUnavailableError(
                f"identity service answered {response.status_code}",
                status=response.status_code,
            )
        try:
            return response.json()
        except ValueError as exc:
            raise StorageUnavailableError("identity service returned invalid JSON") from exc
