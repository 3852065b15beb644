"""Short-lived signed references for evidence retrieval.

A reference is an HS256 JSON Web Token naming the evidence record
(``sub``) and the stream (``stream``), with an ``exp`` expiry claim and a
random ``jti`` so two references for the same stream never collide.
Permanent URLs are never handed out.
"""

from __future__ import annotations

import secrets
from datetime import UTC, datetime, timedelta
from typing import Final

import jwt
import structlog

from saferelay.models.enums import StreamType
from saferelay.models.evidence import SignedReference
from saferelay.services.errors import ReferenceExpiredError, ValidationError

logger = structlog.get_logger(__name__)

_ALGORITHM: Final[str] = "HS256"
_AUDIENCE: Final[str] = "saferelay-evidence"


class ReferenceSigner:
    """Issues and checks signed evidence references.

    Parameters
    ----------
    secret:
        Signing key.  When empty a random per-process key is generated,
        which invalidates outstanding references on restart.
    ttl_seconds:
        Default lifetime of an issued reference.
    """

    __slots__ = ("_key", "_ttl")

    def __init__(self, secret: str = "", *, ttl_seconds: int = 3_600) -> None:
        if not secret:
            logger.warning("signing.ephemeral_key", note="no signing secret configured")
            secret = secrets.token_hex(32)
        self._key = secret
        self._ttl = ttl_seconds

    def issue(
        self,
        evidence_id: str,
        stream_type: StreamType,
        *,
        ttl_seconds: int | None = None,
        now: datetime | None = None,
    ) -> SignedReference:
        issued = now or datetime.now(UTC)
        expires_at = (issued + timedelta(seconds=ttl_seconds or self._ttl)).replace(microsecond=0)
        token = jwt.encode(
            {
                "sub": evidence_id,
                "stream": str(stream_type),
                "aud": _AUDIENCE,
                "exp": expires_at,
                "jti": secrets.token_hex(16),
            },
            self._key,
            algorithm=_ALGORITHM,
        )
        return SignedReference(
            evidence_id=evidence_id,
            stream_type=stream_type,
            token=token,
            expires_at=expires_at,
        )

    def resolve(self, token: str, *, now: datetime | None = None) -> tuple[str, StreamType]:
        """Return ``(evidence_id, stream_type)`` for a valid, unexpired token.

        *now* pins the expiry check to an injected clock.
        """
        # PyJWT checks ``exp`` against wall time; a leeway of (wall - now)
        # moves that check onto the caller's clock.
        leeway = 0.0
        if now is not None:
            leeway = (datetime.now(UTC) - now).total_seconds()

        try:
            claims = jwt.decode(
                token,
                self._key,
                algorithms=[_ALGORITHM],
                audience=_AUDIENCE,
                leeway=leeway,
                options={"require": ["exp", "sub", "jti"]},
            )
        except jwt.ExpiredSignatureError as exc:
            raise ReferenceExpiredError("access reference has expired") from exc
        except jwt.InvalidTokenError as exc:
            logger.warning("signing.invalid_reference", error=str(exc))
            raise ValidationError("invalid access reference") from exc

        try:
            return str(claims["sub"]), StreamType(claims["stream"])
        except (KeyError, ValueError) as exc:
            raise ValidationError("malformed access reference") from exc
