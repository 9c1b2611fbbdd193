from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from .exceptions import InvalidTransitionError, MalformedRecordError
from .util.time import iso, now_utc, parse_iso


class JobStatus(str, Enum):
    """Job lifecycle states."""

    queued = "queued"
    running = "running"
    done = "done"
    failed = "failed"

    def is_terminal(self) -> bool:
        """Check if status is terminal (no further processing)."""
        return self in (JobStatus.done, JobStatus.failed)

    def can_transition_to(self, other: JobStatus) -> bool:
        """Check whether ``self -> other`` is a legal lifecycle step."""
        return other in _TRANSITIONS[self]


_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.queued: frozenset({JobStatus.running}),
    JobStatus.running: frozenset({JobStatus.done, JobStatus.failed}),
    JobStatus.done: frozenset(),
    JobStatus.failed: frozenset(),
}

# Fields a store update may touch. Identity, source and created_at are fixed at
# creation; started_at and finished_at are stamped by status changes only.
MUTABLE_FIELDS = frozenset(
    {
        "status",
        "progress_pct",
        "progress_msg",
        "report_location",
        "error_msg",
        "summary",
    }
)


@dataclass
class JobSource:
    """Where the scan input lives: an object-storage key or a local path."""

    bucket: str | None = None
    key: str | None = None
    path: str | None = None

    def describe(self) -> str:
        if self.path:
            return self.path
        return f"{self.bucket or ''}/{self.key or ''}"


@dataclass
class JobSpec:
    """Request to create a job."""

    source: JobSource
    mode: str = "light"
    format: str = "json"
    refs: bool = False
    id: str | None = None


@dataclass
class Job:
    """Tracked unit of asynchronous scan work."""

    id: str
    source: JobSource = field(default_factory=JobSource)
    mode: str = "light"
    format: str = "json"
    refs: bool = False

    status: JobStatus = JobStatus.queued
    created_at: datetime = field(default_factory=now_utc)
    started_at: datetime | None = None
    finished_at: datetime | None = None

    progress_pct: int = 0
    progress_msg: str | None = None
    report_location: str | None = None
    error_msg: str | None = None
    summary: dict[str, Any] | None = None

    def apply(self, fields: dict[str, Any]) -> None:
        """Apply a partial update, enforcing the lifecycle invariants."""
        unknown = set(fields) - MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown job fields: {sorted(unknown)}")

        status = fields.get("status")
        if status is not None:
            status = JobStatus(status)
            if status != self.status and not self.status.can_transition_to(status):
                raise InvalidTransitionError(
                    f"Job {self.id}: {self.status.value} -> {status.value} not allowed"
                )

        for name, value in fields.items():
            if name in ("status", "progress_pct"):
                continue
            setattr(self, name, value)

        if status is not None:
            self.status = status
            if status != JobStatus.queued and self.started_at is None:
                self.started_at = now_utc()
            if status.is_terminal() and self.finished_at is None:
                self.finished_at = now_utc()

        if fields.get("progress_pct") is not None:
            pct = max(0, min(100, int(fields["progress_pct"])))
            if self.status == JobStatus.running:
                pct = max(pct, self.progress_pct)
            self.progress_pct = pct

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON-safe dict."""
        return {
            "id": self.id,
            "status": self.status.value,
            "bucket": self.source.bucket,
            "object_key": self.source.key,
            "path": self.source.path,
            "mode": self.mode,
            "format": self.format,
            "refs": self.refs,
            "created_at": iso(self.created_at),
            "started_at": iso(self.started_at),
            "finished_at": iso(self.finished_at),
            "progress_pct": self.progress_pct,
            "progress_msg": self.progress_msg,
            "report_location": self.report_location,
            "error_msg": self.error_msg,
            "summary": self.summary,
        }


@dataclass
class ProgressRecord:
    """One timestamped status line emitted while a job runs."""

    job_id: str
    stage: str
    timestamp: datetime | None = field(default_factory=now_utc)
    detail: str | None = None
    percent: float | None = None
    # Byte offset of the source line, when read from a log
    offset: int | None = None

    @classmethod
    def from_line(cls, job_id: str, line: str, offset: int | None = None) -> ProgressRecord:
        """Parse one NDJSON progress line.

        Accepts ``ts``/``timestamp`` and ``pct``/``percent`` spellings. A
        ``detail`` that is not a string is kept as compact JSON text. A line
        without a timestamp keeps ``timestamp=None`` so every read of it
        yields the same record.
        """
        try:
            data = json.loads(line)
        except ValueError as e:
            raise MalformedRecordError(f"not JSON: {line[:120]!r}") from e
        if not isinstance(data, dict):
            raise MalformedRecordError(f"not an object: {line[:120]!r}")

        stage = data.get("stage")
        if not isinstance(stage, str) or not stage:
            raise MalformedRecordError(f"missing stage: {line[:120]!r}")

        raw_ts = data.get("ts", data.get("timestamp"))
        ts = parse_iso(raw_ts) if isinstance(raw_ts, str) else None

        detail = data.get("detail")
        if detail is not None and not isinstance(detail, str):
            detail = json.dumps(detail, separators=(",", ":"))

        pct = data.get("pct", data.get("percent"))
        if pct is not None:
            try:
                pct = float(pct)
            except (TypeError, ValueError) as e:
                raise MalformedRecordError(f"bad percent: {line[:120]!r}") from e

        return cls(
            job_id=job_id,
            stage=stage,
            timestamp=ts,
            detail=detail,
            percent=pct,
            offset=offset,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "ts": iso(self.timestamp),
            "stage": self.stage,
            "detail": self.detail,
            "pct": self.percent,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    def dedupe_key(self) -> tuple[str, str | None, str | None]:
        """Key consumers use to drop replayed duplicates.

        Untimestamped lines fall back to their byte offset in the log.
        """
        if self.timestamp is None and self.offset is not None:
            return (self.stage, self.detail, f"@{self.offset}")
        return (self.stage, self.detail, iso(self.timestamp))
