"""Error taxonomy for the SafeRelay core.

Every service raises one of these; collaborator adapters convert their
transport errors (httpx, OSError, redis) into this taxonomy before the
error crosses into the core.  Each class carries the HTTP status the API
layer answers with.
"""

from __future__ import annotations

from typing import Any


class SafeRelayError(Exception):
    """Base class for all domain errors."""

    status_code: int = 500
    code: str = "internal_error"

    def __init__(self, detail: str = "", **context: Any) -> None:
        super().__init__(detail or self.code)
        self.detail = detail or self.code
        self.context = context

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.code, "detail": self.detail, **self.context}


# ---------------------------------------------------------------------------
# 4xx: caller errors, never retried by the core
# ---------------------------------------------------------------------------


class ValidationError(SafeRelayError):
    status_code = 400
    code = "validation_error"


class IndexOutOfRangeError(ValidationError):
    code = "index_out_of_range"


class StreamNotDeclaredError(ValidationError):
    code = "stream_not_declared"


class NotFoundError(SafeRelayError):
    status_code = 404
    code = "not_found"


class UnknownSessionError(NotFoundError):
    code = "unknown_session"


class ConflictError(SafeRelayError):
    status_code = 409
    code = "conflict"


class DuplicateSessionError(ConflictError):
    code = "duplicate_session"


class AlreadySettledError(ConflictError):
    code = "already_settled"


class EvidenceImmutableError(SafeRelayError):
    """Evidence can never be deleted, revoked or rewritten."""

    status_code = 403
    code = "evidence_immutable"


class IncompleteUploadError(SafeRelayError):
    """Finalize attempted with gaps. ``missing`` maps stream type to indexes."""

    status_code = 409
    code = "incomplete_upload"

    def __init__(self, missing: dict[str, list[int]]) -> None:
        first_stream = next(iter(missing))
        super().__init__(
            f"stream {first_stream!s} is missing {len(missing[first_stream])} chunk(s)",
            missing={str(k): v for k, v in missing.items()},
        )
        self.missing = missing
        self.stream_type = first_stream
        self.missing_indexes = missing[first_stream]


class SessionExpiredError(SafeRelayError):
    status_code = 410
    code = "session_expired"


class ReferenceExpiredError(SafeRelayError):
    status_code = 410
    code = "reference_expired"


# ---------------------------------------------------------------------------
# 5xx: collaborator failures
# ---------------------------------------------------------------------------


class ChannelUnavailableError(SafeRelayError):
    """A notification channel could not deliver. Transient."""

    status_code = 503
    code = "channel_unavailable"


class StorageUnavailableError(SafeRelayError):
    status_code = 503
    code = "storage_unavailable"
