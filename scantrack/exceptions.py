from __future__ import annotations


class ScantrackError(Exception):
    """Base exception for scantrack."""

    pass


class JobNotFoundError(ScantrackError):
    """Raised when a job id is unknown to the store."""

    def __init__(self, job_id: str):
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id


class InvalidTransitionError(ScantrackError):
    """Raised when a status change violates the job lifecycle."""

    pass


class TransientChannelError(ScantrackError):
    """Raised when a push notification channel cannot be established."""

    pass


class ProcessSpawnError(ScantrackError):
    """Raised when the scanner executable is missing or cannot run."""

    pass


class ProcessRuntimeError(ScantrackError):
    """Raised when the scanner exits with a non-zero code."""

    def __init__(self, returncode: int | None, stderr: str = ""):
        msg = f"scanner exited with code {returncode}"
        if stderr:
            msg = f"{msg}: {stderr}"
        super().__init__(msg)
        self.returncode = returncode
        self.stderr = stderr


class MalformedRecordError(ScantrackError):
    """Raised when a progress line cannot be parsed."""

    pass


class RunnerError(ScantrackError):
    """Raised when the runner is misused."""

    pass
