from __future__ import annotations

from typing import Any


class TreePushError(Exception):
    """Base error for everything raised while talking to the remote object store."""

    def __init__(
        self,
        message: str,
        *,
        status: int | None = None,
        api_message: str | None = None,
        payload: Any = None,
    ) -> None:
        super().__init__(message)
        self.status = status
        self.api_message = api_message or message
        self.payload = payload


class AuthError(TreePushError):
    """Invalid, expired or under-privileged credential. Never retried."""


class RateLimitError(TreePushError):
    def __init__(
        self,
        message: str,
        *,
        scope: str = "primary",
        retry_after: float | None = None,
        status: int | None = None,
        payload: Any = None,
    ) -> None:
        super().__init__(message, status=status, payload=payload)
        self.scope = scope
        self.retry_after = retry_after


class ValidationError(TreePushError):
    """Malformed request: invalid path, empty commit, bad repo id."""


class ConflictError(TreePushError):
    """Non-fast-forward ref update or concurrent branch creation."""


class PayloadTooLargeError(TreePushError):
    """A blob over the local ceiling, or one the server refused with 413.

    ``size`` and ``limit`` are None when the server did not say.
    """

    def __init__(
        self,
        path: str | None,
        size: int | None = None,
        limit: int | None = None,
        *,
        api_message: str | None = None,
        payload: Any = None,
    ) -> None:
        label = path or "<blob>"
        if limit is not None:
            message = f"{label} is {size} bytes, which exceeds the {limit} byte blob limit"
        elif size is not None:
            message = f"{label} ({size} bytes) was rejected by the server as too large"
        else:
            message = f"{label} was rejected by the server as too large"
        super().__init__(message, status=413, api_message=api_message, payload=payload)
        self.path = path
        self.size = size
        self.limit = limit


class NotFoundError(TreePushError):
    """Missing repository, branch or object."""


class NetworkError(TreePushError):
    """Transient transport failure that outlived its retry budget."""


class RepositoryBusyError(TreePushError):
    """Another actor (a push or a temp-repo deletion) holds the repository."""


class PushInProgressError(TreePushError):
    """A push for the same (owner, repo, branch) is already running."""


class PushCancelledError(TreePushError):
    """The caller cancelled the push between phases."""
