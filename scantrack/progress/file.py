from __future__ import annotations

import asyncio
import builtins
import logging
from pathlib import Path

from ..exceptions import MalformedRecordError
from ..models import ProgressRecord
from ..util.ids import is_valid_job_id
from .base import ProgressLog

logger = logging.getLogger("scantrack.progress.file")


class FileProgressLog(ProgressLog):
    """NDJSON file per job, tailed from a persisted byte offset.

    The cursor is the offset just past the last complete line consumed, so a
    line the scanner is still writing is picked up on the next read rather
    than parsed half-finished.
    """

    def __init__(self, directory: str | Path):
        self._dir = Path(directory)
        self._dir.mkdir(parents=True, exist_ok=True)

    @property
    def directory(self) -> Path:
        return self._dir

    def path_for(self, job_id: str) -> Path:
        if not is_valid_job_id(job_id):
            raise ValueError(f"Invalid job id for progress log: {job_id!r}")
        return self._dir / f"{job_id}.ndjson"

    async def append(self, record: ProgressRecord) -> None:
        path = self.path_for(record.job_id)
        await asyncio.to_thread(self._append_sync, path, record.to_json())

    async def tail(self, job_id: str, limit: int) -> tuple[builtins.list[ProgressRecord], int]:
        path = self.path_for(job_id)
        records, end = await asyncio.to_thread(self._read_sync, path, job_id, 0, None)
        if limit <= 0:
            return [], end
        return records[-limit:], end

    async def read_after(
        self, job_id: str, cursor: int, limit: int | None = None
    ) -> tuple[builtins.list[ProgressRecord], int]:
        path = self.path_for(job_id)
        return await asyncio.to_thread(self._read_sync, path, job_id, cursor, limit)

    async def list(self, job_id: str, limit: int = 1000) -> builtins.list[ProgressRecord]:
        records, _ = await self.read_after(job_id, 0, limit)
        return records

    async def remove(self, job_id: str) -> bool:
        path = self.path_for(job_id)
        try:
            await asyncio.to_thread(path.unlink)
        except FileNotFoundError:
            return False
        logger.info(f"Removed progress log for {job_id}")
        return True

    def _append_sync(self, path: Path, line: str) -> None:
        with path.open("a", encoding="utf-8") as fh:
            fh.write(line + "\n")

    def _read_sync(
        self, path: Path, job_id: str, cursor: int, limit: int | None
    ) -> tuple[builtins.list[ProgressRecord], int]:
        try:
            fh = path.open("rb")
        except FileNotFoundError:
            return [], cursor

        with fh:
            size = fh.seek(0, 2)
            if size < cursor:
                logger.warning(f"Progress log for {job_id} shrank below cursor; rereading")
                cursor = 0
            fh.seek(cursor)
            data = fh.read()

        records: builtins.list[ProgressRecord] = []
        pos = cursor
        start = 0
        while True:
            nl = data.find(b"\n", start)
            if nl < 0:
                break
            raw = data[start:nl]
            line_at = cursor + start
            start = nl + 1
            pos = cursor + start

            text = raw.decode("utf-8", errors="replace").strip()
            if not text:
                continue
            try:
                records.append(ProgressRecord.from_line(job_id, text, offset=line_at))
            except MalformedRecordError as e:
                logger.warning(f"Skipping malformed progress line for {job_id}: {e}")
                continue
            if limit is not None and len(records) >= limit:
                break
        return records, pos
