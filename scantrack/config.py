from __future__ import annotations

import os
import shlex
from dataclasses import dataclass, field


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    return float(raw) if raw else default


def _env_int(name: str, default: int | None) -> int | None:
    raw = os.environ.get(name)
    return int(raw) if raw else default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class ScannerConfig:
    """How the external scanner process is invoked."""

    command: list[str] = field(default_factory=lambda: ["scanner"])
    use_progress: bool = True
    docker_image: str | None = None
    uploads_dir: str = "var/uploads"
    report_dir: str | None = None
    stderr_preview: int = 300

    @classmethod
    def from_env(cls) -> ScannerConfig:
        cmd = os.environ.get("SCANTRACK_SCANNER_CMD")
        return cls(
            command=shlex.split(cmd) if cmd else ["scanner"],
            use_progress=_env_bool("SCANTRACK_SCANNER_USE_PROGRESS", True),
            docker_image=os.environ.get("SCANTRACK_SCANNER_IMAGE") or None,
            uploads_dir=os.environ.get("SCANTRACK_UPLOADS_DIR", "var/uploads"),
            report_dir=os.environ.get("SCANTRACK_REPORT_DIR") or None,
        )


@dataclass
class TrackerConfig:
    """Intervals and limits for the tracker's background machinery."""

    progress_dir: str = "/tmp/scantrack"
    tailer_interval: float = 1.0
    backlog_limit: int = 500
    tail_read_limit: int = 200
    poll_interval: float = 2.0
    poll_limit: int = 50
    heartbeat_interval: float = 15.0
    cancel_grace: float = 1.5
    progress_sync_interval: float = 1.0
    max_concurrent: int | None = None
    scanner: ScannerConfig = field(default_factory=ScannerConfig)

    @classmethod
    def from_env(cls) -> TrackerConfig:
        """Build config from ``SCANTRACK_*`` environment variables."""
        return cls(
            progress_dir=os.environ.get("SCANTRACK_PROGRESS_DIR", "/tmp/scantrack"),
            tailer_interval=_env_float("SCANTRACK_TAILER_INTERVAL", 1.0),
            backlog_limit=_env_int("SCANTRACK_BACKLOG_LIMIT", 500),
            poll_interval=_env_float("SCANTRACK_POLL_INTERVAL", 2.0),
            heartbeat_interval=_env_float("SCANTRACK_HEARTBEAT_INTERVAL", 15.0),
            cancel_grace=_env_float("SCANTRACK_CANCEL_GRACE", 1.5),
            max_concurrent=_env_int("SCANTRACK_MAX_CONCURRENT", None),
            scanner=ScannerConfig.from_env(),
        )


@dataclass
class ClientConfig:
    """Limits for the streaming client."""

    max_streams: int = 5

    @classmethod
    def from_env(cls) -> ClientConfig:
        raw = os.environ.get("SCANTRACK_MAX_STREAMS")
        if not raw:
            return cls()
        try:
            return cls(max_streams=int(raw))
        except ValueError as e:
            raise ValueError(f"SCANTRACK_MAX_STREAMS must be an integer, got {raw!r}") from e
