"""Protocols and type definitions for changewatch."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol, runtime_checkable

from bson.timestamp import Timestamp
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from changewatch.core.exceptions import InvalidArgument


class ChangeStreamScope(str, Enum):
    """What a change stream observes."""

    COLLECTION = "collection"
    DATABASE = "database"
    CLUSTER = "cluster"


class FullDocument(str, Enum):
    """Values accepted for the ``fullDocument`` stage option."""

    DEFAULT = "default"
    UPDATE_LOOKUP = "updateLookup"


# Type aliases for common structures
Document = dict[str, Any]
ResumeToken = dict[str, Any]
Pipeline = list[dict[str, Any]]


class ChangeStreamOptions(BaseModel):
    """
    Options captured once when a change stream is created.

    The record is frozen; the stream never mutates it. The
    ``start_at_operation_time`` value is validated when the first
    command is built, not here.
    """

    model_config = ConfigDict(frozen=True, extra="forbid", arbitrary_types_allowed=True)

    full_document: FullDocument = Field(
        default=FullDocument.DEFAULT,
        description="fullDocument mode for the $changeStream stage",
    )
    resume_after: ResumeToken | None = Field(
        default=None,
        description="Resume token to start after",
    )
    max_await_time_ms: int | None = Field(
        default=None,
        ge=0,
        description="Maximum time the server waits for new changes per getMore",
    )
    batch_size: int | None = Field(
        default=None,
        ge=0,
        description="Number of documents per batch",
    )
    collation: dict[str, Any] | None = Field(default=None)
    start_at_operation_time: Any = Field(
        default=None,
        description="Only return changes at or after this time",
    )

    @field_validator("collation", mode="before")
    @classmethod
    def unwrap_collation(cls, v: Any) -> Any:
        """Accept pymongo Collation objects as well as plain documents."""
        document = getattr(v, "document", None)
        if document is not None:
            return dict(document)
        return v

    @classmethod
    def from_kwargs(cls, **kwargs: Any) -> ChangeStreamOptions:
        """Build options from keyword arguments, raising InvalidArgument on bad input."""
        try:
            return cls(**kwargs)
        except ValidationError as e:
            errors = e.errors()
            option = str(errors[0]["loc"][0]) if errors and errors[0]["loc"] else None
            raise InvalidArgument(
                f"Invalid change stream options: {e.error_count()} error(s)",
                option,
                kwargs.get(option) if option else None,
            ) from e

    def to_dict(self) -> dict[str, Any]:
        """Return only the options the caller actually set."""
        return self.model_dump(mode="python", exclude_none=True, exclude_defaults=True)


@runtime_checkable
class BatchCursor(Protocol):
    """A server cursor that yields change documents one at a time."""

    def pull(self) -> Document:
        """Block until the next document arrives; StopIteration when exhausted."""
        ...

    def try_pull(self, timeout_ms: int | None = None) -> Document | None:
        """Return the next document, or None if none arrived within the wait."""
        ...

    def teardown(self) -> None:
        """Release the server-side cursor."""
        ...


@dataclass(frozen=True)
class InitialReply:
    """What the initial aggregate command hands back."""

    operation_time: Timestamp | None
    cursor: BatchCursor


@runtime_checkable
class CommandIssuer(Protocol):
    """Runs the change stream aggregation against a selected server."""

    def issue(
        self,
        server: Any,
        pipeline: Pipeline,
        *,
        scope: ChangeStreamScope,
        session: Any,
        options: ChangeStreamOptions,
        retry_reads: bool,
    ) -> InitialReply:
        ...


@runtime_checkable
class ServerCapabilitySource(Protocol):
    """Selects a server and reports its maximum wire version."""

    def select(self) -> tuple[Any, int]:
        ...


@runtime_checkable
class ErrorClassifier(Protocol):
    """Decides whether a failure can be recovered from by resuming."""

    def is_resumable(self, error: BaseException) -> bool:
        ...
