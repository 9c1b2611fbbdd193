from fastapi import Request

from ..tracker import JobTracker
from .lifecycle import TRACKER_STATE_KEY


def get_tracker(request: Request) -> JobTracker:
    """Dependency to get JobTracker from app state."""
    tracker = getattr(request.app.state, TRACKER_STATE_KEY, None)
    if tracker is None:
        raise RuntimeError("JobTracker not initialized. Did you call setup_scantrack()?")
    return tracker
