"""Cold, cancellable event streams.

An ``EventStream`` wraps a worker coroutine. Nothing runs until the
consumer starts iterating; the worker then runs as its own task and pushes
events into a bounded channel that the consumer drains. The stream ends
with exactly one terminal outcome: normal exhaustion when the worker
returns, or the worker's exception raised from the consumer's ``async for``.

Closing the stream (``cancel()`` / ``aclose()``) cancels the worker task at
its next suspension point and is idempotent. Events still queued at that
moment are dropped.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from pursinstall.models.events import InstallEvent

logger = logging.getLogger(__name__)

Emit = Callable[[InstallEvent], Awaitable[None]]
Worker = Callable[[Emit], Awaitable[None]]

DEFAULT_CHANNEL_SIZE = 16


class _End:
    pass


class _Failure:
    def __init__(self, error: BaseException) -> None:
        self.error = error


_END = _End()


class EventStream:
    """A cancellable stream of ``InstallEvent`` driven by a worker task.

    Parameters
    ----------
    worker:
        Coroutine function receiving an ``emit`` callable.
    maxsize:
        Channel capacity; a worker that gets ahead of its consumer by more
        than this many events is suspended until the consumer catches up.
    on_cancel:
        Called once when the stream is cancelled before finishing.
    """

    def __init__(
        self,
        worker: Worker,
        *,
        maxsize: int = DEFAULT_CHANNEL_SIZE,
        on_cancel: Callable[[], Any] | None = None,
    ) -> None:
        self._worker = worker
        self._maxsize = maxsize
        self._on_cancel = on_cancel
        self._queue: asyncio.Queue[InstallEvent | _End | _Failure] | None = None
        self._task: asyncio.Task[None] | None = None
        self._cancelled = False
        self._finished = False

    @property
    def closed(self) -> bool:
        """Whether no further events can be delivered."""
        return self._cancelled or self._finished

    # ------------------------------------------------------------------
    # Worker side
    # ------------------------------------------------------------------

    def _start(self) -> None:
        self._queue = asyncio.Queue(maxsize=self._maxsize)
        self._task = asyncio.get_running_loop().create_task(self._drive())

    async def _emit(self, event: InstallEvent) -> None:
        assert self._queue is not None
        await self._queue.put(event)

    async def _drive(self) -> None:
        assert self._queue is not None
        try:
            await self._worker(self._emit)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            await self._queue.put(_Failure(exc))
        else:
            await self._queue.put(_END)

    # ------------------------------------------------------------------
    # Consumer side
    # ------------------------------------------------------------------

    def __aiter__(self) -> EventStream:
        return self

    async def __anext__(self) -> InstallEvent:
        if self.closed:
            raise StopAsyncIteration
        if self._task is None:
            self._start()
        assert self._queue is not None
        item = await self._queue.get()
        if self._cancelled:
            raise StopAsyncIteration
        if isinstance(item, _End):
            self._finished = True
            raise StopAsyncIteration
        if isinstance(item, _Failure):
            self._finished = True
            raise item.error
        return item

    async def collect(self) -> list[InstallEvent]:
        """Drain the stream, returning every event.

        A terminal error is raised after the events before it were consumed;
        use ``async for`` directly to keep those events.
        """
        return [event async for event in self]

    def cancel(self) -> None:
        """Cancel the stream. Safe to call any number of times."""
        if self.closed:
            return
        self._cancelled = True
        if self._on_cancel is not None:
            self._on_cancel()
        if self._task is not None and not self._task.done():
            self._task.cancel()
            logger.debug("Cancelled event stream worker %r", self._worker)
        if self._queue is not None:
            # Wake a consumer blocked on an empty channel.
            try:
                self._queue.put_nowait(_END)
            except asyncio.QueueFull:
                pass

    async def aclose(self) -> None:
        """Cancel the stream and wait for its worker to wind down."""
        self.cancel()
        if self._task is not None and not self._task.done():
            await asyncio.wait([self._task])

    async def __aenter__(self) -> EventStream:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()
