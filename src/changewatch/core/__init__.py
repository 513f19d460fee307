"""Core module for changewatch."""

from changewatch.core.config import Settings
from changewatch.core.exceptions import (
    ChangeWatchError,
    InvalidArgument,
    MissingResumeToken,
    NonResumableServerError,
    ResumableServerError,
)
from changewatch.core.types import (
    ChangeStreamOptions,
    ChangeStreamScope,
    FullDocument,
    InitialReply,
)

__all__ = [
    "Settings",
    "ChangeWatchError",
    "InvalidArgument",
    "MissingResumeToken",
    "NonResumableServerError",
    "ResumableServerError",
    "ChangeStreamOptions",
    "ChangeStreamScope",
    "FullDocument",
    "InitialReply",
]
