from __future__ import annotations

from typing import Any


class EventDeskError(Exception):
    """Base error carrying a machine-checkable kind and an HTTP status."""

    kind = "error"
    status_code = 500

    def __init__(self, message: str, original_error: Exception | None = None) -> None:
        self.message = message
        self.original_error = original_error
        super().__init__(message)

    def details(self) -> dict[str, Any]:
        return {}

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"kind": self.kind, "message": self.message}
        payload.update(self.details())
        return payload


class Unauthenticated(EventDeskError):
    kind = "unauthenticated"
    status_code = 401

    def __init__(self, message: str = "Sign in required.", original_error: Exception | None = None) -> None:
        super().__init__(message, original_error)


class ValidationFailed(EventDeskError):
    kind = "validation_failed"
    status_code = 422

    def __init__(self, fields: list[str], message: str | None = None) -> None:
        self.fields = list(fields)
        text = message or f"Please fill in the following required fields: {', '.join(self.fields)}"
        super().__init__(text)

    def details(self) -> dict[str, Any]:
        return {"fields": list(self.fields)}


class MirrorLookupFailed(EventDeskError):
    kind = "mirror_lookup_failed"
    status_code = 502

    def __init__(
        self,
        message: str,
        original_error: Exception | None = None,
        *,
        not_found: bool = False,
    ) -> None:
        self.not_found = not_found
        if not_found:
            self.status_code = 404
        super().__init__(message, original_error)


class MirrorWriteFailed(EventDeskError):
    kind = "mirror_write_failed"
    status_code = 502


class UploadFailed(EventDeskError):
    kind = "upload_failed"
    status_code = 502


class UpstreamRejected(EventDeskError):
    """A collaborator answered with a non-2xx status."""

    kind = "upstream_rejected"
    status_code = 502

    def __init__(self, message: str, *, status: int, body: str) -> None:
        self.status = int(status)
        self.body = body
        super().__init__(message)

    def details(self) -> dict[str, Any]:
        return {"status": self.status, "body": self.body}


class CmsWriteFailed(EventDeskError):
    kind = "cms_write_failed"

    def __init__(self, message: str, *, status: int = 0, body: str = "", original_error: Exception | None = None) -> None:
        self.status = int(status)
        self.body = body
        self.status_code = self.status if 400 <= self.status < 600 else 502
        super().__init__(message, original_error)

    def details(self) -> dict[str, Any]:
        return {"status": self.status, "body": self.body}


class NotPrivileged(EventDeskError):
    kind = "not_privileged"
    status_code = 403


class UpstreamTimeout(EventDeskError):
    kind = "timeout"
    status_code = 504


class NetworkError(EventDeskError):
    kind = "network_error"
    status_code = 502
