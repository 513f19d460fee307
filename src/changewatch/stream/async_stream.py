"""asyncio wrapper around :class:`~changewatch.stream.change_stream.ChangeStream`.

Every blocking call runs on a thread executor; the wrapped stream keeps
all resume and retry logic.
"""

from __future__ import annotations

import asyncio
import contextvars
import functools
from concurrent.futures import Executor
from typing import Any, Callable

from changewatch.core.types import Document, ResumeToken
from changewatch.stream.change_stream import ChangeStream

# StopIteration cannot be set on a Future, so the end of the stream
# crosses the thread boundary as this sentinel.
_END_OF_STREAM = object()


def _end_as_sentinel(fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
    try:
        return fn(*args, **kwargs)
    except StopIteration:
        return _END_OF_STREAM


def run_on_executor(
    executor: Executor | None, fn: Callable[..., Any], *args: Any, **kwargs: Any
) -> asyncio.Future[Any]:
    """Run ``fn`` on ``executor``, carrying over the caller's contextvars."""
    loop = asyncio.get_running_loop()
    context = contextvars.copy_context()
    call = functools.partial(context.run, _end_as_sentinel, fn, *args, **kwargs)
    return loop.run_in_executor(executor, call)


class AsyncChangeStream:
    """
    Awaitable change stream.

    Use :meth:`open` to create one::

        async with await AsyncChangeStream.open(scope, pipeline, options, **collaborators) as stream:
            async for change in stream:
                print(change)
    """

    def __init__(self, delegate: ChangeStream, executor: Executor | None = None) -> None:
        self._delegate = delegate
        self._executor = executor

    @classmethod
    async def open(
        cls, *args: Any, executor: Executor | None = None, **kwargs: Any
    ) -> AsyncChangeStream:
        """Open a :class:`ChangeStream` on the executor and wrap it."""
        delegate = await run_on_executor(executor, ChangeStream, *args, **kwargs)
        return cls(delegate, executor)

    @property
    def delegate(self) -> ChangeStream:
        return self._delegate

    @property
    def closed(self) -> bool:
        return self._delegate.closed

    @property
    def resume_token(self) -> ResumeToken | None:
        return self._delegate.resume_token

    async def next(self) -> Document:
        """
        Return the next change, waiting until one arrives.

        Raises :exc:`StopAsyncIteration` if the stream is closed.
        """
        change = await run_on_executor(self._executor, self._delegate.next)
        if change is _END_OF_STREAM:
            raise StopAsyncIteration
        return change

    async def try_next(self) -> Document | None:
        """Return the next change, or None if none arrived within ``max_await_time_ms``."""
        change = await run_on_executor(self._executor, self._delegate.try_next)
        if change is _END_OF_STREAM:
            raise StopAsyncIteration
        return change

    async def close(self) -> None:
        """Close the stream, stopping any ``async for`` loop over it."""
        if not self._delegate.closed:
            await run_on_executor(self._executor, self._delegate.close)

    def __aiter__(self) -> AsyncChangeStream:
        return self

    __anext__ = next

    async def __aenter__(self) -> AsyncChangeStream:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()
