from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from .bus import ChangeBus, ChangeHandler
from .config import TrackerConfig
from .exceptions import JobNotFoundError
from .models import Job, JobSpec, JobStatus, ProgressRecord
from .progress.base import ProgressLog
from .runner import ScanRunner, SourceResolver
from .store.base import JobStore
from .tailer import RecordHandler, TailerRegistry

logger = logging.getLogger("scantrack.tracker")

_STATUS_RANK = {JobStatus.running: 0, JobStatus.queued: 1}


class JobTracker:
    """Composition root: owns the store, progress log, runner, bus and tailers."""

    def __init__(
        self,
        store: JobStore,
        progress_log: ProgressLog,
        config: TrackerConfig | None = None,
        *,
        runner: ScanRunner | None = None,
        resolve_source: SourceResolver | None = None,
    ):
        self.config = config or TrackerConfig()
        self._store = store
        self._progress_log = progress_log

        self.bus = ChangeBus(
            store,
            poll_interval=self.config.poll_interval,
            poll_limit=self.config.poll_limit,
        )
        self.tailers = TailerRegistry(
            progress_log,
            interval=self.config.tailer_interval,
            backlog_limit=self.config.backlog_limit,
            read_limit=self.config.tail_read_limit,
        )
        self.runner = runner or ScanRunner(
            store,
            progress_log,
            scanner=self.config.scanner,
            resolve_source=resolve_source,
            cancel_grace=self.config.cancel_grace,
            progress_sync_interval=self.config.progress_sync_interval,
            max_concurrent=self.config.max_concurrent,
        )

    @property
    def store(self) -> JobStore:
        return self._store

    @property
    def progress_log(self) -> ProgressLog:
        return self._progress_log

    async def start(self) -> None:
        self.runner.start()

    async def close(self) -> None:
        await self.runner.stop()
        await self.tailers.close_all()
        await self.bus.close()

    async def create_job(self, spec: JobSpec) -> Job:
        """Persist a queued job and hand it to the runner."""
        job = await self._store.create(spec)
        self.runner.enqueue(job.id)
        logger.info(f"Submitted job {job.id}")
        return job

    async def get_job(self, job_id: str) -> Job:
        job = await self._store.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    async def list_jobs(self, limit: int = 100) -> list[Job]:
        return await self._store.list(limit)

    async def snapshot(self, limit: int = 100) -> list[dict[str, Any]]:
        """Recent jobs for a list view: running, then queued, then the rest."""
        jobs = await self._store.list(limit)
        jobs.sort(key=lambda j: (_STATUS_RANK.get(j.status, 2), -j.created_at.timestamp()))
        return [j.to_dict() for j in jobs]

    async def list_progress(self, job_id: str, limit: int = 1000) -> list[ProgressRecord]:
        await self.get_job(job_id)
        return await self._progress_log.list(job_id, limit)

    async def subscribe_progress(self, job_id: str, handler: RecordHandler) -> Callable[[], None]:
        await self.get_job(job_id)
        return await self.tailers.subscribe(job_id, handler)

    async def subscribe_changes(self, handler: ChangeHandler) -> Callable[[], None]:
        return await self.bus.subscribe(handler)

    async def cancel_job(self, job_id: str) -> bool:
        """Cancel a running scan. False means nothing was running."""
        await self.get_job(job_id)
        cancelled = await self.runner.cancel(job_id)
        if not cancelled:
            logger.info(f"Cancel for {job_id}: not running")
        return cancelled

    async def delete_job(self, job_id: str) -> bool:
        """Remove a job, its progress log and any tailer. False if unknown."""
        job = await self._store.get(job_id)
        if job is None:
            return False
        await self.runner.cancel(job_id)
        await self.tailers.close(job_id)
        await self._progress_log.remove(job_id)
        return await self._store.delete(job_id)
