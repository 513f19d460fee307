"""Resumable change stream cursor.

A :class:`ChangeStream` runs an aggregation whose first stage is
``$changeStream`` and hands back change documents one at a time. When a
pull fails with an error the classifier deems resumable, the stream
reissues the aggregation from the last resume token it delivered (or,
before any token exists, from the operation time of the first reply) so
that no change is lost. Retries are bounded: one reopen per call to
:meth:`ChangeStream.next` or :meth:`ChangeStream.each`, and one
same-cursor retry plus one reopen per call to :meth:`ChangeStream.try_next`.
"""

from __future__ import annotations

import copy
import threading
from collections.abc import Iterator, Mapping
from typing import Any, Callable

from changewatch.core.exceptions import InvalidArgument, MissingResumeToken
from changewatch.core.types import (
    BatchCursor,
    ChangeStreamOptions,
    ChangeStreamScope,
    CommandIssuer,
    Document,
    ErrorClassifier,
    Pipeline,
    ResumeToken,
    ServerCapabilitySource,
)
from changewatch.observability.logging import get_stream_logger
from changewatch.observability.metrics import get_metrics_collector
from changewatch.stream.resume import CapabilityCache, ResumeState


class ChangeStream:
    """
    A change stream cursor that resumes itself after transient failures.

    The stream is open from construction until :meth:`close` is called or
    the server ends the cursor. Construction issues the initial command,
    so a stream that fails to open is never returned.

    Features:
    - Blocking iteration (``for change in stream``, :meth:`each`)
    - Bounded-wait polling (:meth:`try_next`)
    - Resume token caching before each change is handed out
    - Context manager support
    """

    def __init__(
        self,
        scope: ChangeStreamScope | str,
        pipeline: Pipeline | None = None,
        options: ChangeStreamOptions | Mapping[str, Any] | None = None,
        *,
        issuer: CommandIssuer,
        capability_source: ServerCapabilitySource,
        classifier: ErrorClassifier,
        session: Any = None,
        namespace: str | None = None,
    ) -> None:
        """
        Open a change stream.

        Args:
            scope: Whether to watch a collection, a database or the cluster.
            pipeline: Aggregation stages to run after ``$changeStream``.
            options: Change stream options, as a model or a mapping.
            issuer: Runs the aggregate command.
            capability_source: Selects the server to run against.
            classifier: Decides which errors are resumable.
            session: Session passed through to every command.
            namespace: Label used in logs and ``repr``.

        Raises:
            InvalidArgument: If an option is malformed.
            Any error raised by the collaborators while opening.
        """
        if options is None:
            options = ChangeStreamOptions()
        elif not isinstance(options, ChangeStreamOptions):
            options = ChangeStreamOptions.from_kwargs(**options)

        try:
            self._scope = ChangeStreamScope(scope)
        except ValueError as e:
            raise InvalidArgument(f"Unknown change stream scope: {scope!r}", "scope", scope) from e
        self._pipeline: Pipeline = copy.deepcopy(list(pipeline or []))
        self._options = options
        self._issuer = issuer
        self._capability_source = capability_source
        self._classifier = classifier
        self._session = session
        self._namespace = namespace or self._scope.value
        self._logger = get_stream_logger(self._namespace)
        self._metrics = get_metrics_collector()

        self._lock = threading.Lock()
        self._closed = False
        self._cursor: BatchCursor | None = None
        self._state = ResumeState(
            CapabilityCache(capability_source.select),
            resume_after=options.resume_after,
        )

        self._create_cursor()

    @property
    def options(self) -> ChangeStreamOptions:
        return self._options

    @property
    def scope(self) -> ChangeStreamScope:
        return self._scope

    @property
    def pipeline(self) -> Pipeline:
        """The user pipeline, without the ``$changeStream`` stage."""
        return copy.deepcopy(self._pipeline)

    @property
    def resume_token(self) -> ResumeToken | None:
        """The ``_id`` of the last change handed out, or the initial token."""
        return copy.deepcopy(self._state.resume_token)

    @property
    def closed(self) -> bool:
        return self._cursor is None

    def is_closed(self) -> bool:
        """Check if the stream is closed."""
        return self.closed

    def each(
        self, callback: Callable[[Document], Any] | None = None
    ) -> Iterator[Document] | None:
        """
        Iterate over the changes in this stream.

        Without a callback, returns a lazy iterator. With one, calls it for
        every change until the stream ends or an error is raised.

        One resumable error per call is recovered from by reopening the
        stream; a second one is raised. The stream stays open after a raised
        error unless reopening itself failed.

        Raises:
            StopIteration: If the stream is already closed.
        """
        if self.closed:
            raise StopIteration
        changes = self._iterate()
        if callback is None:
            return changes
        for change in changes:
            callback(change)
        return None

    def next(self) -> Document:
        """
        Return the next change, blocking until one arrives.

        Recovers from one resumable error by reopening the stream.

        Raises:
            StopIteration: If the stream is closed or the server ended it.
        """
        if self.closed:
            raise StopIteration
        change, _ = self._advance(retried=False)
        if change is None:
            raise StopIteration
        return change

    __next__ = next

    def __iter__(self) -> ChangeStream:
        return self

    def try_next(self) -> Document | None:
        """
        Return the next change if one arrives within ``max_await_time_ms``.

        The first resumable error retries the pull on the same cursor, the
        second reopens the stream and pulls once more, any later one is
        raised. Non-resumable errors are raised immediately.

        Returns:
            The change document, or None if no change arrived in time.

        Raises:
            StopIteration: If the stream is closed or the server ended it.
        """
        if self.closed:
            raise StopIteration

        failures = 0
        while True:
            cursor = self._cursor
            if cursor is None:
                raise StopIteration
            try:
                change = cursor.try_pull(self._options.max_await_time_ms)
            except StopIteration:
                self._cursor_exhausted(cursor)
                raise
            except Exception as e:
                if self._cursor is not cursor and self._closed:
                    raise StopIteration from None
                resumable = self._is_resumable(e)
                if failures >= 2 or not resumable:
                    raise
                failures += 1
                if failures == 1:
                    self._logger.warning(
                        "Resumable change stream error, retrying getMore",
                        error=str(e),
                        error_type=type(e).__name__,
                    )
                else:
                    self._resume(e)
                continue
            break

        if change is None:
            return None
        if not self._accept(cursor, change):
            raise StopIteration
        return change

    def close(self) -> None:
        """Close the stream. Closing a closed stream does nothing."""
        with self._lock:
            self._closed = True
            cursor, self._cursor = self._cursor, None
        if cursor is not None:
            self._teardown(cursor)
            self._logger.debug("Change stream closed")

    def __enter__(self) -> ChangeStream:
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    def __repr__(self) -> str:
        return (
            f"<ChangeStream {self._namespace} filters={self._pipeline!r} "
            f"options={self._options.to_dict()!r} resume_token={self._state.resume_token!r}>"
        )

    def _iterate(self) -> Iterator[Document]:
        retried = False
        while True:
            change, retried = self._advance(retried)
            if change is None:
                return
            yield change

    def _advance(self, retried: bool) -> tuple[Document | None, bool]:
        """
        Pull one change, reopening at most once on a resumable error.

        Returns:
            The change (None once the stream has ended) and whether the
            retry has been spent.
        """
        while True:
            cursor = self._cursor
            if cursor is None:
                return None, retried
            try:
                change = cursor.pull()
            except StopIteration:
                self._cursor_exhausted(cursor)
                return None, retried
            except Exception as e:
                if self._cursor is not cursor and self._closed:
                    return None, retried
                resumable = self._is_resumable(e)
                if retried or not resumable:
                    raise
                retried = True
                self._resume(e)
                continue
            if not self._accept(cursor, change):
                return None, retried
            return change, retried

    def _is_resumable(self, error: Exception) -> bool:
        if isinstance(error, (MissingResumeToken, InvalidArgument)):
            resumable = False
        else:
            resumable = self._classifier.is_resumable(error)
        self._metrics.record_stream_error(self._namespace, resumable)
        return resumable

    def _accept(self, cursor: BatchCursor, change: Document) -> bool:
        """Cache the change's resume token unless the cursor went stale mid-pull."""
        with self._lock:
            if self._cursor is not cursor:
                return False
            self._state.cache_resume_token(change)
        self._metrics.record_change_event(
            self._namespace, str(change.get("operationType", "unknown"))
        )
        return True

    def _resume(self, error: Exception) -> BatchCursor | None:
        self._logger.warning(
            "Resumable change stream error, reopening",
            error=str(error),
            error_type=type(error).__name__,
            has_resume_token=self._state.resume_token is not None,
        )
        with self._lock:
            cursor, self._cursor = self._cursor, None
        if cursor is not None:
            self._teardown(cursor)
        return self._create_cursor()

    def _create_cursor(self) -> BatchCursor | None:
        """Select a server, issue the aggregate and install the new cursor."""
        if self._closed:
            return None

        capability = self._state.capability
        epoch = capability.invalidate()
        server, max_wire_version = self._capability_source.select()
        capability.record(max_wire_version)

        stage = self._state.change_stream_stage(
            self._options, for_cluster=self._scope is ChangeStreamScope.CLUSTER
        )
        pipeline: Pipeline = [{"$changeStream": stage}, *copy.deepcopy(self._pipeline)]

        reply = self._issuer.issue(
            server,
            pipeline,
            scope=self._scope,
            session=self._session,
            options=self._options,
            retry_reads=False,
        )

        self._metrics.record_cursor_open(
            self._namespace, resumed=not self._state.is_first_open
        )

        with self._lock:
            discarded = self._closed
            if not discarded:
                self._state.record_operation_time(reply.operation_time)
                self._state.mark_opened()
                self._cursor = reply.cursor

        if discarded:
            self._teardown(reply.cursor)
            return None

        self._logger.debug(
            "Change stream cursor opened",
            resume_after="resumeAfter" in stage,
            start_at_operation_time="startAtOperationTime" in stage,
            max_wire_version=max_wire_version,
            selection_epoch=epoch,
        )
        return reply.cursor

    def _cursor_exhausted(self, cursor: BatchCursor) -> None:
        with self._lock:
            if self._cursor is not cursor:
                return
            self._closed = True
            self._cursor = None
        self._logger.debug("Change stream cursor exhausted")

    def _teardown(self, cursor: BatchCursor) -> None:
        try:
            cursor.teardown()
        except Exception as e:
            self._logger.debug("Ignoring error killing cursor", error=str(e))
