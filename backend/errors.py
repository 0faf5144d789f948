from __future__ import annotations


class MedflowError(Exception):
    """Base for every rejection the lifecycle layer can produce.

    ``kind`` is the stable name used on the wire (``{"error": kind, ...}``) so
    the polling client can rebuild the same exception on its side.
    """

    kind = "MedflowError"
    status_code = 500

    def __init__(self, detail: str = ""):
        super().__init__(detail)
        self.detail = detail

    def to_payload(self) -> dict:
        return {"error": self.kind, "detail": self.detail}


class PermissionDenied(MedflowError):
    kind = "PermissionDenied"
    status_code = 403


class EntityNotFound(MedflowError):
    kind = "EntityNotFound"
    status_code = 404


class StaleState(MedflowError):
    kind = "StaleState"
    status_code = 409

    def __init__(self, detail: str = "", current_status: str | None = None, current_version: int | None = None):
        super().__init__(detail)
        self.current_status = current_status
        self.current_version = current_version

    def to_payload(self) -> dict:
        payload = super().to_payload()
        payload["current_status"] = self.current_status
        payload["current_version"] = self.current_version
        return payload


class IllegalTransition(MedflowError):
    kind = "IllegalTransition"
    status_code = 422


class ValidationFailed(MedflowError):
    kind = "ValidationFailed"
    status_code = 400


class TransientError(MedflowError):
    """Storage or network failure that a caller may retry with backoff."""

    kind = "TransientError"
    status_code = 503


ERROR_KINDS: dict[str, type[MedflowError]] = {
    cls.kind: cls
    for cls in (
        PermissionDenied,
        EntityNotFound,
        StaleState,
        IllegalTransition,
        ValidationFailed,
        TransientError,
    )
}


def error_from_payload(payload: dict, status_code: int) -> MedflowError:
    kind = payload.get("error")
    detail = str(payload.get("detail") or "")
    cls = ERROR_KINDS.get(kind) if isinstance(kind, str) else None
    if cls is StaleState:
        return StaleState(
            detail,
            current_status=payload.get("current_status"),
            current_version=payload.get("current_version"),
        )
    if cls is not None:
        return cls(detail)
    if status_code >= 500:
        return TransientError(detail or f"Server returned {status_code}")
    error = MedflowError(detail or f"Request failed with status {status_code}")
    error.status_code = status_code
    return error
