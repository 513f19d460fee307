"""Resumable change stream module."""

from changewatch.stream.async_stream import AsyncChangeStream
from changewatch.stream.change_stream import ChangeStream
from changewatch.stream.resume import (
    OPERATION_TIME_MIN_WIRE_VERSION,
    CapabilityCache,
    ResumeState,
    build_change_stream_stage,
    to_operation_timestamp,
)

__all__ = [
    "AsyncChangeStream",
    "ChangeStream",
    "OPERATION_TIME_MIN_WIRE_VERSION",
    "CapabilityCache",
    "ResumeState",
    "build_change_stream_stage",
    "to_operation_timestamp",
]
