"""
Scantrack - Scan job lifecycle tracking for FastAPI applications.

Usage:
    from scantrack import setup_scantrack, TrackerConfig, ScannerConfig

    setup_scantrack(
        app,
        db_path="./jobs.db",
        config=TrackerConfig(scanner=ScannerConfig(command=["scanner"])),
    )
"""

from .bus import ChangeBus
from .client.multiplexer import ConnectionMultiplexer, StreamListener
from .config import ClientConfig, ScannerConfig, TrackerConfig
from .events import ChangeEvent
from .exceptions import (
    InvalidTransitionError,
    JobNotFoundError,
    MalformedRecordError,
    ProcessRuntimeError,
    ProcessSpawnError,
    RunnerError,
    ScantrackError,
    TransientChannelError,
)
from .fastapi.lifecycle import setup_scantrack
from .models import Job, JobSource, JobSpec, JobStatus, ProgressRecord
from .progress.base import ProgressLog
from .progress.file import FileProgressLog
from .runner import ScanRunner
from .store.base import JobStore
from .store.channels import LocalWriteChannel, WriteChannel
from .store.sqlite import SqliteJobStore
from .tailer import TailerRegistry
from .tracker import JobTracker
from .version import __version__

# RedisWriteChannel raises ImportError at construction without the redis extra
from .store.channels import REDIS_AVAILABLE, RedisWriteChannel

__all_redis = ["RedisWriteChannel"] if REDIS_AVAILABLE else []

__all__ = [
    # Version
    "__version__",
    # Core
    "Job",
    "JobSource",
    "JobSpec",
    "JobStatus",
    "ProgressRecord",
    "ChangeEvent",
    # Config
    "TrackerConfig",
    "ScannerConfig",
    "ClientConfig",
    # Tracker
    "JobTracker",
    "ScanRunner",
    "ChangeBus",
    "TailerRegistry",
    # Store
    "JobStore",
    "SqliteJobStore",
    "WriteChannel",
    "LocalWriteChannel",
    # Progress
    "ProgressLog",
    "FileProgressLog",
    # Client
    "ConnectionMultiplexer",
    "StreamListener",
    # FastAPI
    "setup_scantrack",
    # Exceptions
    "ScantrackError",
    "JobNotFoundError",
    "InvalidTransitionError",
    "TransientChannelError",
    "ProcessSpawnError",
    "ProcessRuntimeError",
    "MalformedRecordError",
    "RunnerError",
] + __all_redis
