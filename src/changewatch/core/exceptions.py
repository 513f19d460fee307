"""Exception hierarchy for changewatch."""

from __future__ import annotations

from typing import Any


class ChangeWatchError(Exception):
    """Base exception for all changewatch errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} - {self.details}"
        return self.message


# Argument Errors
class InvalidArgument(ChangeWatchError):
    """A caller-supplied option is malformed."""

    def __init__(
        self, message: str, option: str | None = None, value: Any = None
    ) -> None:
        details: dict[str, Any] = {}
        if option:
            details["option"] = option
            details["value"] = repr(value)
        super().__init__(message, details)
        self.option = option


# Resumption Errors
class MissingResumeToken(ChangeWatchError):
    """
    The stream has no safe point to resume from.

    Raised when a reopen has neither a cached resume token nor a usable
    operation time, and when a delivered change document has no ``_id``.
    Never retried.
    """

    def __init__(self, message: str | None = None, details: dict[str, Any] | None = None) -> None:
        super().__init__(
            message
            or "Cannot provide resume functionality when the resume token is missing",
            details,
        )


# Server Errors
class ServerError(ChangeWatchError):
    """Base error for server or network failures raised by collaborators."""

    def __init__(
        self,
        message: str,
        code: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        all_details = details or {}
        if code is not None:
            all_details["code"] = code
        super().__init__(message, all_details)
        self.code = code


class ResumableServerError(ServerError):
    """Transient failure that is safe to recover from by reissuing the query."""

    pass


class NonResumableServerError(ServerError):
    """Failure that must be surfaced to the caller without retrying."""

    pass
