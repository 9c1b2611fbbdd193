# tests/conftest.py
import asyncio
import sys
import textwrap
import typing as t
from pathlib import Path

import pytest

from scantrack.config import ScannerConfig
from scantrack.models import JobSource, JobSpec
from scantrack.progress.file import FileProgressLog
from scantrack.store.channels import LocalWriteChannel
from scantrack.store.sqlite import SqliteJobStore

# Stand-in scanner. The content of the --file argument picks its behaviour:
# "ok" reports two findings, "fail" exits 3, "hang" sleeps until signalled,
# "slow" lingers after its last progress line, "stubborn" ignores SIGTERM and
# "graceful" answers SIGTERM by reporting and exiting 0.
FAKE_SCANNER = textwrap.dedent(
    """
    import json
    import signal
    import sys
    import time
    from datetime import datetime, timezone

    args = sys.argv[1:]
    progress = args[args.index("--progress-file") + 1] if "--progress-file" in args else None
    src = args[args.index("--file") + 1]
    with open(src, encoding="utf-8") as fh:
        behaviour = fh.read().strip()


    def emit(stage, pct, detail=None):
        if not progress:
            return
        line = {"ts": datetime.now(timezone.utc).isoformat(), "stage": stage, "pct": pct}
        if detail is not None:
            line["detail"] = detail
        with open(progress, "a", encoding="utf-8") as fh:
            fh.write(json.dumps(line) + "\\n")


    def report():
        print(
            json.dumps(
                {
                    "findings": [
                        {"id": "CVE-2024-0001", "severity": "HIGH", "source_ids": ["NVD"]},
                        {"id": "CVE-2024-0002", "severity": "medium"},
                    ]
                }
            ),
            flush=True,
        )


    def on_term(signum, frame):
        report()
        sys.exit(0)


    if behaviour == "stubborn":
        signal.signal(signal.SIGTERM, signal.SIG_IGN)
    if behaviour == "graceful":
        signal.signal(signal.SIGTERM, on_term)

    emit("scan.start", 10, src)
    if behaviour == "fail":
        sys.stderr.write("boom: scanner exploded\\n")
        sys.exit(3)
    if behaviour in ("hang", "stubborn", "graceful"):
        time.sleep(30)
    emit("scan.analyze", 60, {"packages": 12})
    if behaviour == "slow":
        time.sleep(1.5)
    report()
    """
)


@pytest.fixture(scope="session")
def anyio_backend():
    return "asyncio"


@pytest.fixture()
def tmp_db_path(tmp_path: Path) -> str:
    return str(tmp_path / "jobs.db")


@pytest.fixture()
def channel() -> LocalWriteChannel:
    return LocalWriteChannel()


@pytest.fixture()
async def store(tmp_db_path: str, channel: LocalWriteChannel):
    s = SqliteJobStore(db_path=tmp_db_path, channel=channel)
    await s._ensure()  # warm schema
    try:
        yield s
    finally:
        await s.close()


@pytest.fixture()
def progress_log(tmp_path: Path) -> FileProgressLog:
    return FileProgressLog(tmp_path / "progress")


@pytest.fixture()
def scanner_config(tmp_path: Path) -> ScannerConfig:
    script = tmp_path / "fake_scanner.py"
    script.write_text(FAKE_SCANNER, encoding="utf-8")
    return ScannerConfig(
        command=[sys.executable, str(script)],
        uploads_dir=str(tmp_path / "uploads"),
        report_dir=str(tmp_path / "reports"),
    )


@pytest.fixture()
def make_spec(tmp_path: Path):
    """Build a JobSpec whose input file tells the fake scanner what to do."""

    def _mk(behaviour: str = "ok", **kwargs) -> JobSpec:
        src = tmp_path / f"input-{behaviour}.tar"
        src.write_text(behaviour, encoding="utf-8")
        return JobSpec(source=JobSource(path=str(src)), **kwargs)

    return _mk


async def _wait_for(
    predicate: t.Callable[[], t.Awaitable[bool]] | t.Callable[[], bool], timeout=5.0, interval=0.01
):
    end = asyncio.get_event_loop().time() + timeout
    while asyncio.get_event_loop().time() < end:
        res = await predicate() if asyncio.iscoroutinefunction(predicate) else predicate()
        if res:
            return True
        await asyncio.sleep(interval)
    return False


@pytest.fixture()
def wait_for():
    return _wait_for

