from __future__ import annotations

import abc
import builtins
from collections.abc import Awaitable, Callable
from typing import Any

from ..exceptions import TransientChannelError
from ..models import Job, JobSpec

WriteHandler = Callable[[dict[str, Any]], None]
Unsubscribe = Callable[[], Awaitable[None]]


class JobStore(abc.ABC):
    """Abstract base for job persistence."""

    @abc.abstractmethod
    async def create(self, spec: JobSpec) -> Job:
        """Create a new queued job."""
        ...

    @abc.abstractmethod
    async def get(self, job_id: str) -> Job | None:
        """Get job by ID."""
        ...

    @abc.abstractmethod
    async def list(self, limit: int = 100) -> builtins.list[Job]:
        """List most recent jobs, newest first."""
        ...

    @abc.abstractmethod
    async def update(self, job_id: str, **fields: Any) -> Job | None:
        """Apply a partial update and return the new row."""
        ...

    @abc.abstractmethod
    async def delete(self, job_id: str) -> bool:
        """Delete job. Returns False if it did not exist."""
        ...

    async def subscribe_to_writes(self, handler: WriteHandler) -> Unsubscribe:
        """Receive every committed row. Stores without a native channel refuse."""
        raise TransientChannelError(f"{type(self).__name__} has no write channel")

    @abc.abstractmethod
    async def close(self) -> None:
        """Close store connections."""
        ...
