from __future__ import annotations

import re
import uuid

JOB_ID_PATTERN = r"^[A-Za-z0-9][A-Za-z0-9_-]{0,127}$"

_JOB_ID_RE = re.compile(JOB_ID_PATTERN)


def new_job_id() -> str:
    """Generate unique job ID."""
    return str(uuid.uuid4())


def is_valid_job_id(job_id: str) -> bool:
    """Check a job id is safe to use as a file name."""
    return bool(_JOB_ID_RE.match(job_id or ""))
