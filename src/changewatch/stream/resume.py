"""Resumption state for change streams.

The decision of what to put in the ``$changeStream`` stage lives in
:func:`build_change_stream_stage`, a pure function of the stream's
observed state. :class:`ResumeState` owns that state for one stream and
:class:`CapabilityCache` memoizes the selected server's support for
``startAtOperationTime`` per server selection epoch.
"""

from __future__ import annotations

import copy
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any, Callable

from bson.timestamp import Timestamp

from changewatch.core.exceptions import InvalidArgument, MissingResumeToken
from changewatch.core.types import ChangeStreamOptions, FullDocument, ResumeToken

# Servers below this wire version (MongoDB 4.0) reject startAtOperationTime.
OPERATION_TIME_MIN_WIRE_VERSION = 7

FULL_DOCUMENT_DEFAULT = FullDocument.DEFAULT.value


def to_operation_timestamp(value: Any) -> Timestamp:
    """
    Convert a caller-supplied start time to a BSON timestamp.

    Args:
        value: A :class:`bson.timestamp.Timestamp` or a :class:`datetime`.
            Naive datetimes are taken to be UTC.

    Returns:
        The timestamp to send as ``startAtOperationTime``.

    Raises:
        InvalidArgument: If the value is neither.
    """
    if isinstance(value, Timestamp):
        return value
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return Timestamp(int(value.timestamp()), value.microsecond)
    raise InvalidArgument(
        "Time must be a datetime or a bson Timestamp instance",
        "start_at_operation_time",
        value,
    )


def build_change_stream_stage(
    *,
    is_first_open: bool,
    full_document: FullDocument | str | None,
    for_cluster: bool,
    requested_start_at: Any,
    resume_token: ResumeToken | None,
    operation_time: Timestamp | None,
    supports_operation_time: Callable[[], bool],
) -> dict[str, Any]:
    """
    Build the body of the ``$changeStream`` stage.

    On the first open the caller's options are honored as given: a
    ``resume_after`` token (already seeded into ``resume_token``) and a
    requested start time. On every later open the cached token wins; the
    operation time captured from the first reply is a fallback only while
    no token exists and only if the selected server understands it.

    Args:
        is_first_open: True only for the command issued at construction.
        full_document: The fullDocument mode, defaulted when None.
        for_cluster: Whether the stream watches the whole deployment.
        requested_start_at: The caller's ``start_at_operation_time`` option.
        resume_token: The cached resume token, if any.
        operation_time: The operation time captured from the last reply.
        supports_operation_time: Reports whether the selected server accepts
            ``startAtOperationTime``. Only called when needed.

    Returns:
        The stage document.

    Raises:
        MissingResumeToken: When resuming with nothing to resume from.
        InvalidArgument: When the requested start time is malformed, or
            combined with a resume token on the first open.
    """
    stage: dict[str, Any] = {
        "fullDocument": FullDocument(full_document or FULL_DOCUMENT_DEFAULT).value
    }

    if is_first_open:
        if requested_start_at is not None:
            if resume_token is not None:
                raise InvalidArgument(
                    "resume_after and start_at_operation_time are mutually exclusive",
                    "start_at_operation_time",
                    requested_start_at,
                )
            stage["startAtOperationTime"] = to_operation_timestamp(requested_start_at)
        if resume_token is not None:
            stage["resumeAfter"] = copy.deepcopy(resume_token)
    elif resume_token is not None:
        # A user supplied startAtOperationTime is dropped once a token exists.
        stage["resumeAfter"] = copy.deepcopy(resume_token)
    elif operation_time is not None and supports_operation_time():
        stage["startAtOperationTime"] = operation_time
    else:
        raise MissingResumeToken(
            "Cannot resume: no resume token and no usable operation time",
            {"has_operation_time": operation_time is not None},
        )

    if for_cluster:
        stage["allChangesForCluster"] = True
    return stage


class CapabilityCache:
    """
    Memoized "does the selected server accept startAtOperationTime".

    The answer belongs to one server selection epoch. :meth:`invalidate`
    starts a new epoch whenever the stream reselects a server, since a
    rolling upgrade or downgrade may route it somewhere else.
    """

    def __init__(self, select: Callable[[], tuple[Any, int]]) -> None:
        self._select = select
        self._epoch = 0
        self._computed_epoch: int | None = None
        self._supported = False

    @property
    def epoch(self) -> int:
        return self._epoch

    def invalidate(self) -> int:
        """Start a new selection epoch, discarding the memoized answer."""
        self._epoch += 1
        return self._epoch

    def record(self, max_wire_version: int) -> bool:
        """Store the answer for the current epoch from a server's wire version."""
        self._supported = max_wire_version >= OPERATION_TIME_MIN_WIRE_VERSION
        self._computed_epoch = self._epoch
        return self._supported

    def supports_operation_time(self) -> bool:
        if self._computed_epoch != self._epoch:
            _, max_wire_version = self._select()
            self.record(max_wire_version)
        return self._supported


class ResumeState:
    """Resume token, fallback operation time and open mode for one stream."""

    def __init__(
        self,
        capability: CapabilityCache,
        resume_after: ResumeToken | None = None,
    ) -> None:
        self.capability = capability
        self.resume_token: ResumeToken | None = copy.deepcopy(resume_after)
        self.operation_time: Timestamp | None = None
        self.is_first_open = True

    def cache_resume_token(self, document: Any) -> ResumeToken:
        """
        Record the ``_id`` of a delivered change document.

        Raises:
            MissingResumeToken: If the document has no ``_id``. The cached
                token is left unchanged.
        """
        token = document.get("_id") if isinstance(document, Mapping) else None
        if token is None:
            raise MissingResumeToken(
                "Cannot provide resume functionality when the resume token is missing"
            )
        self.resume_token = copy.deepcopy(token)
        return self.resume_token

    def record_operation_time(self, operation_time: Timestamp | None) -> None:
        # Overwritten on every open, also with None.
        self.operation_time = operation_time

    def change_stream_stage(
        self, options: ChangeStreamOptions, for_cluster: bool
    ) -> dict[str, Any]:
        """Build the ``$changeStream`` stage for the next command."""
        return build_change_stream_stage(
            is_first_open=self.is_first_open,
            full_document=options.full_document,
            for_cluster=for_cluster,
            requested_start_at=options.start_at_operation_time,
            resume_token=self.resume_token,
            operation_time=self.operation_time,
            supports_operation_time=self.capability.supports_operation_time,
        )

    def mark_opened(self) -> None:
        self.is_first_open = False
