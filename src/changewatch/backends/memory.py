"""In-memory change feed.

:class:`InMemoryChangeFeed` plays every collaborator a
:class:`~changewatch.stream.change_stream.ChangeStream` needs: it selects
a (fake) server, issues the aggregate, serves cursors and classifies
errors. It honors ``resumeAfter`` and ``startAtOperationTime`` the way a
server does, and can be told to fail upcoming commands or pulls.
"""

from __future__ import annotations

import copy
import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Any

from bson.timestamp import Timestamp

from changewatch.core.exceptions import NonResumableServerError, ResumableServerError
from changewatch.core.types import (
    ChangeStreamOptions,
    ChangeStreamScope,
    Document,
    InitialReply,
    Pipeline,
)
from changewatch.observability.logging import get_logger

logger = get_logger(__name__)

# Server error codes used for injected and cursor failures
CURSOR_NOT_FOUND = 43
HOST_UNREACHABLE = 6
CHANGE_STREAM_FATAL_ERROR = 280
UNRECOGNIZED_STAGE = 40324


@dataclass
class IssuedCommand:
    """An aggregate the feed has received."""

    server: Any
    pipeline: Pipeline
    scope: ChangeStreamScope
    session: Any
    retry_reads: bool
    options: ChangeStreamOptions

    @property
    def stage(self) -> dict[str, Any]:
        """The body of the ``$changeStream`` stage."""
        return self.pipeline[0]["$changeStream"]


@dataclass
class _Failures:
    issue: deque[BaseException] = field(default_factory=deque)
    pull: deque[BaseException] = field(default_factory=deque)


class InMemoryCursor:
    """Cursor over an :class:`InMemoryChangeFeed`, starting at a log position."""

    def __init__(self, feed: InMemoryChangeFeed, position: int, filters: Pipeline) -> None:
        self._feed = feed
        self._position = position
        self._filters = filters
        self.killed = False
        self.exhausted = False

    def pull(self) -> Document:
        while True:
            change = self._next(timeout=None)
            if change is not None:
                return change

    def try_pull(self, timeout_ms: int | None = None) -> Document | None:
        return self._next(timeout=(timeout_ms or 0) / 1000.0)

    def teardown(self) -> None:
        """Kill the cursor, waking any pull blocked on it."""
        feed = self._feed
        with feed.condition:
            feed.teardowns += 1
            self.killed = True
            feed.condition.notify_all()
            error = feed.teardown_error
        if error is not None:
            raise error

    def _next(self, timeout: float | None) -> Document | None:
        feed = self._feed
        with feed.condition:
            feed.raise_pending_pull_failure()

            while True:
                if self.killed:
                    raise ResumableServerError("cursor not found", code=CURSOR_NOT_FOUND)
                change = self._scan()
                if change is not None or self.exhausted:
                    break
                if feed.invalidated:
                    self.exhausted = True
                    break
                if timeout is not None and timeout <= 0:
                    return None
                if not feed.condition.wait(timeout) and timeout is not None:
                    return None

            if change is None:
                raise StopIteration
            return change

    def _scan(self) -> Document | None:
        events = self._feed.events
        while self._position < len(events):
            event = events[self._position]
            self._position += 1
            if event.get("operationType") == "invalidate":
                self.exhausted = True
                return copy.deepcopy(event)
            if _matches(event, self._filters):
                return copy.deepcopy(event)
        return None


class InMemoryChangeFeed:
    """
    Ordered change log that acts as server, command issuer and error classifier.

    Args:
        max_wire_version: Wire version reported by :meth:`select`.
        include_operation_time: Whether replies carry ``operationTime``.
        server: Address reported by :meth:`select`.
    """

    def __init__(
        self,
        max_wire_version: int = 8,
        include_operation_time: bool = True,
        server: str = "memory:27017",
    ) -> None:
        self.max_wire_version = max_wire_version
        self.include_operation_time = include_operation_time
        self.server = server

        self.events: list[Document] = []
        self.issued: list[IssuedCommand] = []
        self.cursors: list[InMemoryCursor] = []
        self.selections = 0
        self.teardowns = 0
        self.teardown_error: Exception | None = None
        self.invalidated = False
        self.condition = threading.Condition()

        self._clock = 0
        self._sequence = 0
        self._failures = _Failures()

    # ServerCapabilitySource

    def select(self) -> tuple[Any, int]:
        self.selections += 1
        return self.server, self.max_wire_version

    # CommandIssuer

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
        with self.condition:
            self.issued.append(
                IssuedCommand(
                    server=server,
                    pipeline=copy.deepcopy(pipeline),
                    scope=scope,
                    session=session,
                    retry_reads=retry_reads,
                    options=options,
                )
            )
            if self._failures.issue:
                raise self._failures.issue.popleft()

            stage = pipeline[0]["$changeStream"]
            position = self._start_position(stage)
            filters = pipeline[1:]
            for stage_doc in filters:
                if set(stage_doc) != {"$match"}:
                    raise NonResumableServerError(
                        f"Unrecognized pipeline stage name: {next(iter(stage_doc), '')!r}",
                        code=UNRECOGNIZED_STAGE,
                    )

            cursor = InMemoryCursor(self, position, filters)
            self.cursors.append(cursor)
            operation_time = self._tick() if self.include_operation_time else None

        logger.debug("Issued in-memory change stream", position=position, stage=stage)
        return InitialReply(operation_time=operation_time, cursor=cursor)

    # ErrorClassifier

    def is_resumable(self, error: BaseException) -> bool:
        return isinstance(error, ResumableServerError)

    # Feed control

    def append(
        self,
        full_document: Document | None = None,
        *,
        operation_type: str = "insert",
        omit_id: bool = False,
    ) -> Document:
        """
        Record a change event and wake any waiting cursor.

        Returns:
            The event as the feed will deliver it.
        """
        with self.condition:
            self._sequence += 1
            event: Document = {
                "operationType": operation_type,
                "clusterTime": self._tick(),
                "fullDocument": copy.deepcopy(full_document or {}),
            }
            if not omit_id:
                event["_id"] = {"_data": f"{self._sequence:016X}"}
            self.events.append(event)
            self.condition.notify_all()
        return copy.deepcopy(event)

    def invalidate(self) -> Document:
        """End the feed: cursors deliver an invalidate event, then stop."""
        event = self.append(operation_type="invalidate")
        with self.condition:
            self.invalidated = True
            self.condition.notify_all()
        return event

    def fail_next_pulls(
        self,
        count: int = 1,
        resumable: bool = True,
        error: BaseException | None = None,
    ) -> None:
        """Make the next ``count`` pulls, on any cursor, raise."""
        with self.condition:
            for _ in range(count):
                self._failures.pull.append(error or _injected(resumable))

    def fail_next_issue(self, error: BaseException | None = None, resumable: bool = True) -> None:
        """Make the next aggregate raise."""
        with self.condition:
            self._failures.issue.append(error or _injected(resumable))

    def raise_pending_pull_failure(self) -> None:
        if self._failures.pull:
            raise self._failures.pull.popleft()

    def _tick(self) -> Timestamp:
        self._clock += 1
        return Timestamp(1_700_000_000, self._clock)

    def _start_position(self, stage: dict[str, Any]) -> int:
        if "resumeAfter" in stage:
            token = stage["resumeAfter"]
            for index, event in enumerate(self.events):
                if event.get("_id") == token:
                    return index + 1
            raise NonResumableServerError(
                "Resume token was not found in the change log",
                code=CHANGE_STREAM_FATAL_ERROR,
            )
        if "startAtOperationTime" in stage:
            start = stage["startAtOperationTime"]
            for index, event in enumerate(self.events):
                if event["clusterTime"] >= start:
                    return index
            return len(self.events)
        return len(self.events)


def _injected(resumable: bool) -> BaseException:
    if resumable:
        return ResumableServerError("injected network error", code=HOST_UNREACHABLE)
    return NonResumableServerError("injected fatal error", code=CHANGE_STREAM_FATAL_ERROR)


def _matches(event: Document, filters: Pipeline) -> bool:
    for stage in filters:
        for path, expected in stage["$match"].items():
            value: Any = event
            for part in path.split("."):
                value = value.get(part) if isinstance(value, dict) else None
            if value != expected:
                return False
    return True
