from __future__ import annotations

import abc
import asyncio
import contextlib
import logging
from collections.abc import Callable
from typing import Any, Literal

from .events import ChangeEvent
from .exceptions import TransientChannelError
from .store.base import JobStore, Unsubscribe

logger = logging.getLogger("scantrack.bus")

ChangeHandler = Callable[[ChangeEvent], None]
Emit = Callable[[ChangeEvent], None]


class ChangeSource(abc.ABC):
    """Feeds store mutations into the bus. One concrete source per bus."""

    mode: Literal["push", "poll"]

    @abc.abstractmethod
    async def start(self, emit: Emit) -> None:
        ...

    @abc.abstractmethod
    async def stop(self) -> None:
        ...


class PushSource(ChangeSource):
    """Relays the store's native write channel, one ``changed`` per row."""

    mode = "push"

    def __init__(self, store: JobStore):
        self._store = store
        self._unsubscribe: Unsubscribe | None = None

    async def start(self, emit: Emit) -> None:
        def _on_write(row: dict[str, Any]) -> None:
            emit(ChangeEvent.changed(row))

        self._unsubscribe = await self._store.subscribe_to_writes(_on_write)

    async def stop(self) -> None:
        if self._unsubscribe is not None:
            unsubscribe, self._unsubscribe = self._unsubscribe, None
            await unsubscribe()


class PollSource(ChangeSource):
    """Re-lists the most recent jobs on a fixed interval.

    Every tick emits ``changed_bulk`` whether or not anything changed;
    consumers diff by id.
    """

    mode = "poll"

    def __init__(self, store: JobStore, interval: float = 2.0, limit: int = 50):
        self._store = store
        self._interval = interval
        self._limit = limit
        self._task: asyncio.Task[None] | None = None

    async def start(self, emit: Emit) -> None:
        self._task = asyncio.create_task(self._run(emit), name="change-bus-poll")

    async def _run(self, emit: Emit) -> None:
        while True:
            await asyncio.sleep(self._interval)
            try:
                jobs = await self._store.list(self._limit)
            except Exception as e:
                logger.warning(f"Change bus poll failed: {e}")
                continue
            emit(ChangeEvent.changed_bulk([j.to_dict() for j in jobs]))

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None


class ChangeBus:
    """Fans job-row mutations out to local subscribers.

    Started lazily by the first subscriber. Push is tried once; if the
    store cannot offer a write channel the bus polls for the rest of its
    life.
    """

    def __init__(self, store: JobStore, *, poll_interval: float = 2.0, poll_limit: int = 50):
        self._store = store
        self._poll_interval = poll_interval
        self._poll_limit = poll_limit
        self._handlers: list[ChangeHandler] = []
        self._source: ChangeSource | None = None
        self._start_lock = asyncio.Lock()

    @property
    def mode(self) -> str | None:
        return self._source.mode if self._source else None

    async def start(self) -> None:
        """Choose and start the change source. Safe to call concurrently."""
        async with self._start_lock:
            if self._source is not None:
                return

            push = PushSource(self._store)
            try:
                await push.start(self.emit)
                self._source = push
                logger.info("Change bus started in push mode")
                return
            except TransientChannelError as e:
                logger.warning(f"Push channel unavailable, falling back to polling: {e}")
            except Exception:
                logger.exception("Push channel failed, falling back to polling")

            poll = PollSource(self._store, self._poll_interval, self._poll_limit)
            await poll.start(self.emit)
            self._source = poll
            logger.info(f"Change bus started in poll mode (every {self._poll_interval}s)")

    async def subscribe(self, handler: ChangeHandler) -> Callable[[], None]:
        """Register ``handler``; returns a callable that removes it."""
        await self.start()
        self._handlers.append(handler)

        def _unsubscribe() -> None:
            with contextlib.suppress(ValueError):
                self._handlers.remove(handler)

        return _unsubscribe

    def emit(self, event: ChangeEvent) -> None:
        for handler in list(self._handlers):
            try:
                handler(event)
            except Exception:
                logger.exception("Change bus handler failed")

    def subscriber_count(self) -> int:
        return len(self._handlers)

    async def close(self) -> None:
        async with self._start_lock:
            if self._source is not None:
                await self._source.stop()
            self._handlers.clear()
