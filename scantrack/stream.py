"""Server-sent-event streams for progress and job-list views.

Both generators open with a heartbeat so intermediaries flush headers at
once. Periodic heartbeats after that come from the response's ping timer.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from typing import TYPE_CHECKING

from sse_starlette.sse import ServerSentEvent

from .events import ChangeEvent, frame, heartbeat

if TYPE_CHECKING:
    from .tracker import JobTracker


async def progress_stream(tracker: JobTracker, job_id: str) -> AsyncIterator[ServerSentEvent]:
    """Backlog, then live progress records for one job."""
    queue: asyncio.Queue[str] = asyncio.Queue()

    yield heartbeat()
    unsubscribe = await tracker.subscribe_progress(job_id, lambda r: queue.put_nowait(r.to_json()))
    try:
        while True:
            yield frame(await queue.get())
    finally:
        unsubscribe()


async def changes_stream(
    tracker: JobTracker, *, snapshot_limit: int = 100
) -> AsyncIterator[ServerSentEvent]:
    """Snapshot of recent jobs, then every change-bus event."""
    queue: asyncio.Queue[str] = asyncio.Queue()

    yield heartbeat()
    items = await tracker.snapshot(snapshot_limit)
    yield frame(ChangeEvent.snapshot(items).to_json())

    unsubscribe = await tracker.subscribe_changes(lambda e: queue.put_nowait(e.to_json()))
    try:
        while True:
            yield frame(await queue.get())
    finally:
        unsubscribe()
