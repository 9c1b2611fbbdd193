from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from ..config import TrackerConfig
from ..progress.file import FileProgressLog
from ..runner import SourceResolver
from ..store.base import JobStore
from ..store.channels import LocalWriteChannel, WriteChannel
from ..store.sqlite import SqliteJobStore
from ..tracker import JobTracker

logger = logging.getLogger("scantrack.lifecycle")

TRACKER_STATE_KEY = "scantrack_tracker"


def setup_scantrack(
    app: FastAPI,
    *,
    db_path: str | None = None,
    store: JobStore | None = None,
    config: TrackerConfig | None = None,
    write_channel: WriteChannel | None = None,
    resolve_source: SourceResolver | None = None,
    include_router: bool = True,
    prefix: str = "/api/v1",
) -> JobTracker:
    """Setup scantrack in FastAPI application."""
    config = config or TrackerConfig.from_env()

    # Initialize store
    if store is None:
        if not db_path:
            raise ValueError("Provide `store` or `db_path`")
        store = SqliteJobStore(db_path=db_path, channel=write_channel or LocalWriteChannel())

    tracker = JobTracker(
        store,
        FileProgressLog(config.progress_dir),
        config,
        resolve_source=resolve_source,
    )
    setattr(app.state, TRACKER_STATE_KEY, tracker)

    @asynccontextmanager
    async def _lifespan(app_: FastAPI):
        # Startup
        if hasattr(store, "_ensure"):
            await store._ensure()
        await tracker.start()
        logger.info("Scantrack started")

        try:
            yield
        finally:
            logger.info("Shutting down scantrack...")
            try:
                await tracker.close()
            except Exception:
                logger.exception("Failed to stop tracker")

            try:
                await store.close()
            except Exception:
                logger.exception("Failed to close store")

            if write_channel is not None:
                try:
                    await write_channel.close()
                except Exception:
                    logger.exception("Failed to close write channel")

            logger.info("Scantrack shutdown complete")

    # Compose with existing lifespan
    if app.router.lifespan_context is None:
        app.router.lifespan_context = _lifespan
    else:
        existing = app.router.lifespan_context

        @asynccontextmanager
        async def _composed(app_: FastAPI):
            async with existing(app_):
                async with _lifespan(app_):
                    yield

        app.router.lifespan_context = _composed

    if include_router:
        from .router import get_router

        app.include_router(get_router(), prefix=prefix)

    return tracker
