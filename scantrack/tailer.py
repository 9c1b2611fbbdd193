from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable

from .models import ProgressRecord
from .progress.base import ProgressLog

logger = logging.getLogger("scantrack.tailer")

RecordHandler = Callable[[ProgressRecord], None]


def _deliver(job_id: str, handler: RecordHandler, record: ProgressRecord) -> None:
    try:
        handler(record)
    except Exception:
        logger.exception(f"Progress handler for {job_id} failed")


class _Tailer:
    """Shared read loop for one job."""

    def __init__(self, registry: TailerRegistry, job_id: str):
        self.registry = registry
        self.job_id = job_id
        self.handlers: list[RecordHandler] = []
        self.cursor: int | None = None
        self.pending = 0
        self.lock = asyncio.Lock()
        self.timer: asyncio.Task[None] | None = None
        self.inflight: asyncio.Task[None] | None = None

    def ensure_timer(self) -> None:
        if self.timer is None:
            self.timer = asyncio.create_task(self._tick_loop(), name=f"tailer-{self.job_id}")

    async def _tick_loop(self) -> None:
        while True:
            await asyncio.sleep(self.registry.interval)
            self.poke()

    def poke(self) -> None:
        """Start a read unless one is already in flight."""
        if self.inflight is not None and not self.inflight.done():
            logger.debug(f"Tailer {self.job_id}: read in flight, skipping tick")
            return
        if self.lock.locked():
            logger.debug(f"Tailer {self.job_id}: subscriber replay in progress, skipping tick")
            return
        self.inflight = asyncio.create_task(self.pump())

    async def pump(self) -> None:
        async with self.lock:
            if self.cursor is None or not self.handlers:
                return
            try:
                records, cursor = await self.registry.log.read_after(
                    self.job_id, self.cursor, self.registry.read_limit
                )
            except Exception as e:
                logger.warning(f"Tailer {self.job_id}: read failed: {e}")
                return
            self.cursor = cursor
            handlers = list(self.handlers)
            for record in records:
                for handler in handlers:
                    _deliver(self.job_id, handler, record)

    def cancel(self) -> list[asyncio.Task[None]]:
        tasks = [t for t in (self.timer, self.inflight) if t is not None]
        self.timer = None
        self.inflight = None
        for task in tasks:
            task.cancel()
        return tasks

    async def stop(self) -> None:
        for task in self.cancel():
            with contextlib.suppress(asyncio.CancelledError):
                await task


class TailerRegistry:
    """Per-job tailers keyed by job id, owned by the tracker.

    Each new subscriber gets its own backlog replay of the last
    ``backlog_limit`` records, then joins the job's shared loop. The shared
    cursor is seeded only by the first subscriber, so a later replay can
    repeat records the loop delivers next; consumers de-duplicate by
    ``ProgressRecord.dedupe_key()``.
    """

    def __init__(
        self,
        log: ProgressLog,
        *,
        interval: float = 1.0,
        backlog_limit: int = 500,
        read_limit: int = 200,
    ):
        self.log = log
        self.interval = interval
        self.backlog_limit = backlog_limit
        self.read_limit = read_limit
        self._tailers: dict[str, _Tailer] = {}

    def active_jobs(self) -> list[str]:
        return list(self._tailers)

    def subscriber_count(self, job_id: str) -> int:
        tailer = self._tailers.get(job_id)
        return len(tailer.handlers) if tailer else 0

    async def subscribe(self, job_id: str, handler: RecordHandler) -> Callable[[], None]:
        """Replay backlog to ``handler``, then deliver new records as they land."""
        tailer = self._tailers.get(job_id)
        if tailer is None:
            tailer = _Tailer(self, job_id)
            self._tailers[job_id] = tailer
            logger.debug(f"Tailer {job_id} created")

        tailer.pending += 1
        joined = False
        try:
            async with tailer.lock:
                try:
                    backlog, end = await self.log.tail(job_id, self.backlog_limit)
                except Exception as e:
                    logger.warning(f"Tailer {job_id}: backlog read failed: {e}")
                    backlog, end = [], 0
                for record in backlog:
                    _deliver(job_id, handler, record)
                if tailer.cursor is None:
                    tailer.cursor = end
                tailer.handlers.append(handler)
                joined = True
        finally:
            tailer.pending -= 1
            if not joined:
                self._maybe_teardown(tailer)

        if self._tailers.get(job_id) is tailer:
            tailer.ensure_timer()
            tailer.poke()

        def _unsubscribe() -> None:
            with contextlib.suppress(ValueError):
                tailer.handlers.remove(handler)
            self._maybe_teardown(tailer)

        return _unsubscribe

    def _maybe_teardown(self, tailer: _Tailer) -> None:
        if tailer.handlers or tailer.pending:
            return
        if self._tailers.get(tailer.job_id) is tailer:
            del self._tailers[tailer.job_id]
        tailer.cancel()
        logger.debug(f"Tailer {tailer.job_id} torn down")

    async def close(self, job_id: str) -> None:
        """Tear down a job's tailer regardless of subscribers."""
        tailer = self._tailers.pop(job_id, None)
        if tailer is None:
            return
        tailer.handlers.clear()
        await tailer.stop()
        logger.debug(f"Tailer {job_id} closed")

    async def close_all(self) -> None:
        for job_id in list(self._tailers):
            await self.close(job_id)
