"""changewatch - Resumable MongoDB change streams."""

from changewatch.core.config import Settings
from changewatch.core.exceptions import ChangeWatchError, MissingResumeToken
from changewatch.core.types import ChangeStreamOptions, ChangeStreamScope, FullDocument
from changewatch.stream.change_stream import ChangeStream

__version__ = "1.0.0"
__all__ = [
    "Settings",
    "ChangeWatchError",
    "MissingResumeToken",
    "ChangeStreamOptions",
    "ChangeStreamScope",
    "FullDocument",
    "ChangeStream",
    "__version__",
]
