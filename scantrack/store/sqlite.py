from __future__ import annotations

import asyncio
import builtins
import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import aiosqlite

from ..exceptions import TransientChannelError
from ..models import Job, JobSource, JobSpec, JobStatus
from ..util.ids import new_job_id
from ..util.time import iso, now_utc, parse_iso
from .base import JobStore, Unsubscribe, WriteHandler
from .channels import WriteChannel

logger = logging.getLogger("scantrack.store.sqlite")


class SqliteJobStore(JobStore):
    """SQLite-based job store with WAL mode for better concurrency.

    When a ``WriteChannel`` is given, every committed create/update/delete
    is published on it and ``subscribe_to_writes`` is available.
    """

    def __init__(
        self,
        db_path: str = "./jobs.db",
        timeout: float = 30.0,
        channel: WriteChannel | None = None,
    ):
        self._db_path = db_path
        self._timeout = timeout
        self._channel = channel
        self._lock = asyncio.Lock()
        self._conn: aiosqlite.Connection | None = None

    async def _ensure(self) -> aiosqlite.Connection:
        """Ensure connection is established."""
        if self._conn is None:
            self._conn = await aiosqlite.connect(
                self._db_path,
                isolation_level=None,
                timeout=self._timeout,
            )
            self._conn.row_factory = aiosqlite.Row
            await self._conn.execute("PRAGMA journal_mode=WAL;")
            await self._conn.execute("PRAGMA synchronous=NORMAL;")
            await self._conn.execute("PRAGMA temp_store=MEMORY;")
            await self._init_schema(self._conn)
        return self._conn

    async def _init_schema(self, cx: aiosqlite.Connection) -> None:
        """Initialize database schema."""
        await cx.execute(
            """
            CREATE TABLE IF NOT EXISTS scan_jobs (
              id TEXT PRIMARY KEY,
              status TEXT NOT NULL CHECK (status IN ('queued','running','done','failed')),
              bucket TEXT,
              object_key TEXT,
              path TEXT,
              mode TEXT NOT NULL DEFAULT 'light',
              format TEXT NOT NULL DEFAULT 'json',
              refs INTEGER NOT NULL DEFAULT 0,

              created_at TEXT NOT NULL,
              started_at TEXT,
              finished_at TEXT,

              progress_pct INTEGER NOT NULL DEFAULT 0 CHECK (progress_pct BETWEEN 0 AND 100),
              progress_msg TEXT,
              report_location TEXT,
              error_msg TEXT,
              summary_json TEXT
            );
            """
        )
        await cx.execute(
            "CREATE INDEX IF NOT EXISTS idx_scan_jobs_status_created ON scan_jobs(status, created_at);"
        )
        await cx.execute("CREATE INDEX IF NOT EXISTS idx_scan_jobs_created ON scan_jobs(created_at);")

    @asynccontextmanager
    async def _tx(self) -> AsyncIterator[aiosqlite.Connection]:
        """Transaction context with lock."""
        async with self._lock:
            conn = await self._ensure()
            try:
                await conn.execute("BEGIN IMMEDIATE;")
                yield conn
                await conn.execute("COMMIT;")
            except BaseException:
                await conn.execute("ROLLBACK;")
                logger.exception("Transaction error")
                raise

    async def close(self) -> None:
        """Close database connection."""
        if self._conn is not None:
            try:
                await self._conn.close()
            finally:
                self._conn = None

    async def create(self, spec: JobSpec) -> Job:
        """Create new queued job."""
        job = Job(
            id=spec.id or new_job_id(),
            source=spec.source,
            mode=spec.mode,
            format=spec.format,
            refs=spec.refs,
        )
        async with self._tx() as cx:
            await cx.execute(
                """
                INSERT INTO scan_jobs
                (id, status, bucket, object_key, path, mode, format, refs,
                 created_at, progress_pct)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    job.id,
                    job.status.value,
                    job.source.bucket,
                    job.source.key,
                    job.source.path,
                    job.mode,
                    job.format,
                    1 if job.refs else 0,
                    iso(job.created_at),
                    job.progress_pct,
                ),
            )
        logger.info(f"Created job {job.id} for {job.source.describe()}")
        await self._publish(job.to_dict())
        return job

    async def get(self, job_id: str) -> Job | None:
        """Get job by ID."""
        async with self._lock:
            cx = await self._ensure()
            return await self._fetch(cx, job_id)

    async def list(self, limit: int = 100) -> builtins.list[Job]:
        """List most recent jobs, newest first."""
        async with self._lock:
            cx = await self._ensure()
            rows = await (
                await cx.execute(
                    "SELECT * FROM scan_jobs ORDER BY created_at DESC, rowid DESC LIMIT ?",
                    (limit,),
                )
            ).fetchall()
        return [self._row_to_job(r) for r in rows]

    async def update(self, job_id: str, **fields: Any) -> Job | None:
        """Apply a partial update inside one transaction."""
        async with self._tx() as cx:
            job = await self._fetch(cx, job_id)
            if job is None:
                return None
            job.apply(fields)
            await self._persist(cx, job)
        await self._publish(job.to_dict())
        return job

    async def delete(self, job_id: str) -> bool:
        """Delete job row."""
        async with self._tx() as cx:
            cur = await cx.execute("DELETE FROM scan_jobs WHERE id = ?", (job_id,))
            deleted = (cur.rowcount or 0) > 0
        if deleted:
            logger.info(f"Deleted job {job_id}")
            await self._publish({"id": job_id, "deleted": True})
        return deleted

    async def subscribe_to_writes(self, handler: WriteHandler) -> Unsubscribe:
        if self._channel is None:
            raise TransientChannelError("SqliteJobStore configured without a write channel")
        return await self._channel.subscribe(handler)

    async def _publish(self, payload: dict[str, Any]) -> None:
        if self._channel is not None:
            await self._channel.publish(payload)

    async def _fetch(self, cx: aiosqlite.Connection, job_id: str) -> Job | None:
        row = await (await cx.execute("SELECT * FROM scan_jobs WHERE id = ?", (job_id,))).fetchone()
        return self._row_to_job(row) if row else None

    async def _persist(self, cx: aiosqlite.Connection, job: Job) -> None:
        """Persist mutable job fields."""
        await cx.execute(
            """
            UPDATE scan_jobs SET
              status=?, started_at=?, finished_at=?,
              progress_pct=?, progress_msg=?, report_location=?, error_msg=?, summary_json=?
            WHERE id=?
            """,
            (
                job.status.value,
                iso(job.started_at),
                iso(job.finished_at),
                job.progress_pct,
                job.progress_msg,
                job.report_location,
                job.error_msg,
                json.dumps(job.summary) if job.summary is not None else None,
                job.id,
            ),
        )

    def _row_to_job(self, row: aiosqlite.Row) -> Job:
        """Convert database row to Job."""
        return Job(
            id=row["id"],
            source=JobSource(bucket=row["bucket"], key=row["object_key"], path=row["path"]),
            mode=row["mode"],
            format=row["format"],
            refs=bool(row["refs"]),
            status=JobStatus(row["status"]),
            created_at=parse_iso(row["created_at"]) or now_utc(),
            started_at=parse_iso(row["started_at"]),
            finished_at=parse_iso(row["finished_at"]),
            progress_pct=row["progress_pct"] or 0,
            progress_msg=row["progress_msg"],
            report_location=row["report_location"],
            error_msg=row["error_msg"],
            summary=json.loads(row["summary_json"]) if row["summary_json"] else None,
        )
