from __future__ import annotations

import abc
import builtins
from pathlib import Path

from ..models import ProgressRecord


class ProgressLog(abc.ABC):
    """Append-only, per-job sequence of progress records.

    Cursors are opaque integers handed back by the log; callers only pass
    them back in. ``0`` always means "from the beginning".
    """

    @abc.abstractmethod
    def path_for(self, job_id: str) -> Path:
        """Return where a job's records live; the scanner writes there."""
        ...

    @abc.abstractmethod
    async def append(self, record: ProgressRecord) -> None:
        """Append one record to its job's log."""
        ...

    @abc.abstractmethod
    async def tail(self, job_id: str, limit: int) -> tuple[builtins.list[ProgressRecord], int]:
        """Return the last ``limit`` records and the cursor at their end."""
        ...

    @abc.abstractmethod
    async def read_after(
        self, job_id: str, cursor: int, limit: int | None = None
    ) -> tuple[builtins.list[ProgressRecord], int]:
        """Return records past ``cursor`` (ascending) and the advanced cursor."""
        ...

    @abc.abstractmethod
    async def list(self, job_id: str, limit: int = 1000) -> builtins.list[ProgressRecord]:
        """Return the first ``limit`` records, ascending."""
        ...

    @abc.abstractmethod
    async def remove(self, job_id: str) -> bool:
        """Remove a job's log. Returns False if there was none."""
        ...
