"""Collaborator implementations for change streams."""

from changewatch.backends.memory import InMemoryChangeFeed, InMemoryCursor
from changewatch.backends.mongo import (
    PyMongoBatchCursor,
    PyMongoCapabilitySource,
    PyMongoCommandIssuer,
    PyMongoErrorClassifier,
    watch,
)

__all__ = [
    "InMemoryChangeFeed",
    "InMemoryCursor",
    "PyMongoBatchCursor",
    "PyMongoCapabilitySource",
    "PyMongoCommandIssuer",
    "PyMongoErrorClassifier",
    "watch",
]
