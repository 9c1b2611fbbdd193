from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

from .config import ScannerConfig
from .exceptions import ProcessRuntimeError, ProcessSpawnError, RunnerError
from .models import Job, JobStatus, ProgressRecord
from .progress.base import ProgressLog
from .scanner import build_argv, parse_scan_output
from .store.base import JobStore

logger = logging.getLogger("scantrack.runner")

CANCELLED_MSG = "Cancelled by user"
SUMMARY_STAGE = "scan.summary"

SourceResolver = Callable[[Job], Awaitable[str]]


class ScanRunner:
    """Runs the scanner for queued jobs and drives their lifecycle.

    Each job runs in its own supervised task; the child process handle is
    tracked by job id so ``cancel`` can signal it.
    """

    def __init__(
        self,
        store: JobStore,
        progress_log: ProgressLog,
        *,
        scanner: ScannerConfig | None = None,
        resolve_source: SourceResolver | None = None,
        cancel_grace: float = 1.5,
        progress_sync_interval: float = 1.0,
        max_concurrent: int | None = None,
    ):
        self._store = store
        self._progress_log = progress_log
        self._scanner = scanner or ScannerConfig()
        self._resolve_source = resolve_source or self._default_resolve
        self._cancel_grace = cancel_grace
        self._sync_interval = progress_sync_interval
        self._sem = asyncio.Semaphore(max_concurrent) if max_concurrent else None

        self._queue: asyncio.Queue[str] = asyncio.Queue()
        self._processes: dict[str, asyncio.subprocess.Process] = {}
        self._tasks: dict[str, asyncio.Task[Job | None]] = {}
        self._cancelled: dict[str, asyncio.Event] = {}
        self._reapers: set[asyncio.Task[None]] = set()
        self._sync_tasks: dict[str, asyncio.Task[None]] = {}

        self._dispatcher: asyncio.Task[None] | None = None
        self._stop_event = asyncio.Event()

    def enqueue(self, job_id: str) -> None:
        """Queue a job for the dispatcher."""
        self._queue.put_nowait(job_id)

    def start(self) -> asyncio.Task[None]:
        """Start dispatcher."""
        if self._dispatcher and not self._dispatcher.done():
            return self._dispatcher

        self._stop_event.clear()
        self._dispatcher = asyncio.create_task(self._run(), name="scan-runner")
        logger.info("Scan runner started")
        return self._dispatcher

    async def stop(self) -> None:
        """Stop dispatching and interrupt in-flight scans."""
        self._stop_event.set()
        if self._dispatcher is not None:
            self._dispatcher.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._dispatcher
            self._dispatcher = None

        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        if self._reapers:
            await asyncio.gather(*self._reapers, return_exceptions=True)
        logger.info("Scan runner stopped")

    async def _run(self) -> None:
        """Dispatcher loop."""
        while not self._stop_event.is_set():
            try:
                try:
                    job_id = await asyncio.wait_for(self._queue.get(), timeout=1.0)
                except asyncio.TimeoutError:
                    continue
                self.submit(job_id)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.exception(f"Dispatcher error: {e}")
                await asyncio.sleep(0.1)

    def submit(self, job_id: str) -> asyncio.Task[Job | None]:
        """Run a job in a tracked task and return its handle."""
        existing = self._tasks.get(job_id)
        if existing is not None and not existing.done():
            raise RunnerError(f"Job {job_id} is already being run")

        task = asyncio.create_task(self._supervise(job_id), name=f"scan-{job_id}")
        self._tasks[job_id] = task
        task.add_done_callback(lambda t: self._on_task_done(job_id, t))
        return task

    def _on_task_done(self, job_id: str, task: asyncio.Task[Job | None]) -> None:
        if self._tasks.get(job_id) is task:
            del self._tasks[job_id]
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Scan task for {job_id} crashed: {exc!r}")

    async def wait(self, job_id: str) -> Job | None:
        """Wait for a job's task, then return its final row."""
        task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.wait({task})
        return await self._store.get(job_id)

    def is_running(self, job_id: str) -> bool:
        return job_id in self._processes

    def running_jobs(self) -> list[str]:
        return list(self._processes)

    async def _supervise(self, job_id: str) -> Job | None:
        try:
            if self._sem is None:
                return await self.run_job(job_id)
            async with self._sem:
                return await self.run_job(job_id)
        except RunnerError:
            raise
        except Exception as e:
            logger.exception(f"Scan of {job_id} failed unexpectedly")
            return await self._finish_failed(job_id, f"runner error: {e}")

    async def run_job(self, job_id: str) -> Job | None:
        """Run one queued job to a terminal state."""
        job = await self._store.get(job_id)
        if job is None:
            logger.warning(f"Job not found: {job_id}")
            return None
        if job.status != JobStatus.queued:
            logger.info(f"Skipping job {job_id}: {job.status.value}")
            return job
        if job_id in self._processes:
            raise RunnerError(f"Job {job_id} already has a scanner process")

        try:
            job = await self._store.update(job_id, status=JobStatus.running, progress_msg="starting")
        except asyncio.CancelledError:
            current = await self._store.get(job_id)
            if current is not None and current.status == JobStatus.running:
                await self._finish_failed(job_id, "scan interrupted")
            raise
        except Exception:
            logger.exception(f"Could not mark job {job_id} running")
            return None
        if job is None:
            return None
        logger.info(f"Job {job_id} running")

        progress_file = self._progress_log.path_for(job_id) if self._scanner.use_progress else None
        try:
            input_path = await self._resolve_source(job)
            argv = build_argv(self._scanner, input_path, job, progress_file)
            logger.info(f"Spawning scanner for {job_id}: {argv}")
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except asyncio.CancelledError:
            await self._finish_failed(job_id, "scan interrupted")
            raise
        except Exception as e:
            err = ProcessSpawnError(f"cannot start scanner: {e}")
            return await self._finish_failed(job_id, str(err))

        self._processes[job_id] = proc
        sync_task = asyncio.create_task(self._sync_progress(job_id), name=f"sync-{job_id}")
        self._sync_tasks[job_id] = sync_task
        try:
            stdout, stderr = await proc.communicate()
        except asyncio.CancelledError:
            if self._processes.get(job_id) is proc:
                del self._processes[job_id]
                self._kill(proc)
                await proc.wait()
                await self._finish_failed(job_id, "scan interrupted")
            raise
        finally:
            if self._sync_tasks.get(job_id) is sync_task:
                del self._sync_tasks[job_id]
            sync_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await sync_task
            if self._processes.get(job_id) is proc:
                del self._processes[job_id]

        cancelled = self._cancelled.pop(job_id, None)
        if cancelled is not None:
            await cancelled.wait()
            logger.info(f"Job {job_id} ended by cancellation")
            return await self._store.get(job_id)

        if proc.returncode == 0:
            return await self._finish_done(job, stdout.decode("utf-8", errors="replace"))

        preview = stderr.decode("utf-8", errors="replace").strip()[: self._scanner.stderr_preview]
        return await self._finish_failed(job_id, str(ProcessRuntimeError(proc.returncode, preview)))

    async def cancel(self, job_id: str) -> bool:
        """Signal a job's scanner. Returns False if none is running."""
        proc = self._processes.pop(job_id, None)
        if proc is None:
            return False

        finished = asyncio.Event()
        self._cancelled[job_id] = finished
        logger.info(f"Cancelling scan {job_id} (pid {proc.pid})")
        with contextlib.suppress(ProcessLookupError):
            proc.terminate()
        reaper = asyncio.create_task(self._reap(job_id, proc), name=f"reap-{job_id}")
        self._reapers.add(reaper)
        reaper.add_done_callback(self._reapers.discard)

        sync_task = self._sync_tasks.pop(job_id, None)
        if sync_task is not None:
            sync_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await sync_task

        try:
            await self._store.update(job_id, status=JobStatus.failed, error_msg=CANCELLED_MSG)
        except Exception:
            logger.exception(f"Could not mark cancelled job {job_id} failed")
        finally:
            finished.set()
        await self._append_summary(job_id, {"error": CANCELLED_MSG})
        return True

    async def _reap(self, job_id: str, proc: asyncio.subprocess.Process) -> None:
        try:
            await asyncio.wait_for(proc.wait(), timeout=self._cancel_grace)
        except asyncio.TimeoutError:
            logger.warning(f"Scan {job_id} still alive after {self._cancel_grace}s, killing")
            self._kill(proc)
            await proc.wait()

    def _kill(self, proc: asyncio.subprocess.Process) -> None:
        with contextlib.suppress(ProcessLookupError):
            proc.kill()

    async def _sync_progress(self, job_id: str) -> None:
        """Copy coarse progress from the log onto the job row."""
        cursor = 0
        best = 0.0
        while True:
            await asyncio.sleep(self._sync_interval)
            try:
                records, cursor = await self._progress_log.read_after(job_id, cursor)
                latest = None
                for record in records:
                    if record.percent is not None and record.percent > best:
                        best = record.percent
                        latest = record
                # A cancelled job is already terminal; leave its row alone
                if latest is not None and job_id in self._processes:
                    await self._store.update(
                        job_id, progress_pct=int(best), progress_msg=latest.stage
                    )
            except Exception as e:
                logger.warning(f"Progress sync for {job_id} failed: {e}")

    async def _finish_done(self, job: Job, output: str) -> Job | None:
        report = parse_scan_output(output)
        summary = report.compute_summary()
        try:
            report_location = await self._write_report(job, output)
            done = await self._store.update(
                job.id,
                status=JobStatus.done,
                progress_pct=100,
                progress_msg="done",
                summary=summary,
                report_location=report_location,
            )
        except Exception as e:
            logger.exception(f"Could not record completion of {job.id}")
            return await self._finish_failed(job.id, f"could not record result: {e}")

        await self._append_summary(job.id, summary, percent=100)
        logger.info(f"Job {job.id} completed: {summary}")
        return done

    async def _finish_failed(self, job_id: str, message: str) -> Job | None:
        job = None
        try:
            job = await self._store.update(job_id, status=JobStatus.failed, error_msg=message)
        except Exception:
            logger.exception(f"Could not mark job {job_id} failed")
        await self._append_summary(job_id, {"error": message})
        logger.error(f"Job {job_id} failed: {message}")
        return job

    async def _append_summary(
        self, job_id: str, payload: dict[str, Any], percent: float | None = None
    ) -> None:
        record = ProgressRecord(
            job_id=job_id,
            stage=SUMMARY_STAGE,
            detail=json.dumps(payload),
            percent=percent,
        )
        try:
            await self._progress_log.append(record)
        except Exception as e:
            logger.warning(f"Could not append summary for {job_id}: {e}")

    async def _write_report(self, job: Job, output: str) -> str | None:
        if not self._scanner.report_dir:
            return None
        path = Path(self._scanner.report_dir) / f"{job.id}.{job.format}"

        def _write() -> None:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(output, encoding="utf-8")

        await asyncio.to_thread(_write)
        return str(path)

    async def _default_resolve(self, job: Job) -> str:
        if job.source.path:
            return job.source.path
        if job.source.key:
            return str(Path(self._scanner.uploads_dir) / Path(job.source.key).name)
        raise ValueError(f"Job {job.id} has no usable source")
