"""Pytest configuration and fixtures."""

from __future__ import annotations

import os
from typing import Any, Callable, Generator

import pytest

from changewatch.backends.memory import InMemoryChangeFeed
from changewatch.core.config import configure_settings
from changewatch.stream.change_stream import ChangeStream

# Set test environment
os.environ.setdefault("CHANGEWATCH_MONGODB__URI", "mongodb://localhost:27017/?directConnection=true")
os.environ.setdefault("CHANGEWATCH_OBSERVABILITY__LOG_LEVEL", "DEBUG")


@pytest.fixture(autouse=True)
def reset_settings() -> Generator[None, None, None]:
    """Drop cached settings so each test reads the environment afresh."""
    configure_settings(None)
    yield
    configure_settings(None)


@pytest.fixture
def feed() -> InMemoryChangeFeed:
    """An in-memory change feed on a server that supports operation times."""
    return InMemoryChangeFeed()


@pytest.fixture
def open_stream(
    feed: InMemoryChangeFeed,
) -> Generator[Callable[..., ChangeStream], None, None]:
    """Factory opening change streams against a feed; closes them afterwards."""
    streams: list[ChangeStream] = []

    def _open(
        scope: str = "collection",
        pipeline: list[dict[str, Any]] | None = None,
        options: Any = None,
        *,
        source: InMemoryChangeFeed | None = None,
        **kwargs: Any,
    ) -> ChangeStream:
        target = source or feed
        stream = ChangeStream(
            scope,
            pipeline,
            options,
            issuer=target,
            capability_source=target,
            classifier=target,
            **kwargs,
        )
        streams.append(stream)
        return stream

    yield _open

    for stream in streams:
        stream.close()


@pytest.fixture
def sample_pipeline() -> list[dict[str, Any]]:
    """A user pipeline keeping only inserts."""
    return [{"$match": {"operationType": "insert"}}]
