import asyncio
from datetime import datetime, timezone

import pytest

from scantrack.exceptions import InvalidTransitionError, TransientChannelError
from scantrack.models import JobSource, JobSpec, JobStatus
from scantrack.store.channels import LocalWriteChannel, RedisWriteChannel
from scantrack.store.sqlite import SqliteJobStore


@pytest.mark.asyncio
async def test_crud_updates_and_ordering(store):
    a = await store.create(JobSpec(source=JobSource(bucket="b", key="one.tar"), id="job-a"))
    b = await store.create(JobSpec(source=JobSource(path="/tmp/two.tar"), mode="full", refs=True))

    got = await store.get("job-a")
    assert got and got.status == JobStatus.queued and got.source.key == "one.tar"
    assert await store.get("missing") is None

    got_b = await store.get(b.id)
    assert got_b.mode == "full" and got_b.refs is True and got_b.source.path == "/tmp/two.tar"

    # newest first, ties broken by insertion order
    items = await store.list()
    assert [j.id for j in items] == [b.id, a.id]
    assert len(await store.list(limit=1)) == 1

    running = await store.update(a.id, status=JobStatus.running, progress_msg="starting")
    assert running.status == JobStatus.running and running.started_at is not None

    await store.update(a.id, progress_pct=55)
    await store.update(a.id, progress_pct=10)
    assert (await store.get(a.id)).progress_pct == 55

    done = await store.update(
        a.id,
        status=JobStatus.done,
        progress_pct=100,
        summary={"total_findings": 1, "high": 1},
        report_location="/reports/job-a.json",
    )
    again = await store.get(a.id)
    assert again.status == JobStatus.done and again.finished_at == done.finished_at
    assert again.summary == {"total_findings": 1, "high": 1}
    assert again.report_location == "/reports/job-a.json"

    assert await store.update("missing", progress_pct=1) is None


@pytest.mark.asyncio
async def test_illegal_transitions_roll_back(store):
    job = await store.create(JobSpec(source=JobSource(path="/x")))

    with pytest.raises(InvalidTransitionError):
        await store.update(job.id, status=JobStatus.done)
    with pytest.raises(ValueError):
        await store.update(job.id, mode="full")

    unchanged = await store.get(job.id)
    assert unchanged.status == JobStatus.queued and unchanged.finished_at is None

    await store.update(job.id, status=JobStatus.running)
    await store.update(job.id, status=JobStatus.failed, error_msg="nope")
    with pytest.raises(InvalidTransitionError):
        await store.update(job.id, status=JobStatus.done)
    final = await store.get(job.id)
    assert final.status == JobStatus.failed and final.error_msg == "nope"


@pytest.mark.asyncio
async def test_lifecycle_timestamps_are_not_writable(store):
    job = await store.create(JobSpec(source=JobSource(path="/x")))
    running = await store.update(job.id, status=JobStatus.running)
    stamped = running.started_at

    with pytest.raises(ValueError):
        await store.update(job.id, started_at=datetime(2000, 1, 1, tzinfo=timezone.utc))
    with pytest.raises(ValueError):
        await store.update(
            job.id, finished_at=datetime(2000, 1, 1, tzinfo=timezone.utc), progress_pct=40
        )

    unchanged = await store.get(job.id)
    assert unchanged.started_at == stamped
    assert unchanged.finished_at is None and unchanged.progress_pct == 0


@pytest.mark.asyncio
async def test_delete_and_write_notifications(store):
    seen = []
    unsubscribe = await store.subscribe_to_writes(seen.append)

    job = await store.create(JobSpec(source=JobSource(path="/x")))
    await store.update(job.id, status=JobStatus.running)
    assert await store.delete(job.id) is True
    assert await store.delete(job.id) is False
    assert await store.get(job.id) is None

    assert [p.get("status") for p in seen[:2]] == ["queued", "running"]
    assert seen[2] == {"id": job.id, "deleted": True}
    assert len(seen) == 3

    await unsubscribe()
    await store.create(JobSpec(source=JobSource(path="/y")))
    assert len(seen) == 3


@pytest.mark.asyncio
async def test_store_without_channel_refuses_push(tmp_db_path):
    s = SqliteJobStore(db_path=tmp_db_path)
    try:
        with pytest.raises(TransientChannelError):
            await s.subscribe_to_writes(lambda row: None)
        # plain writes still work
        job = await s.create(JobSpec(source=JobSource(path="/x")))
        assert (await s.get(job.id)).id == job.id
    finally:
        await s.close()


@pytest.mark.asyncio
async def test_concurrent_updates_are_serialized(store):
    job = await store.create(JobSpec(source=JobSource(path="/x")))
    await store.update(job.id, status=JobStatus.running)

    await asyncio.gather(*(store.update(job.id, progress_pct=p) for p in range(0, 100, 5)))
    assert (await store.get(job.id)).progress_pct == 95


@pytest.mark.asyncio
async def test_local_channel_isolates_handler_failures():
    ch = LocalWriteChannel()
    got = []

    def bad(row):
        raise RuntimeError("boom")

    await ch.subscribe(bad)
    await ch.subscribe(got.append)
    await ch.publish({"id": "x"})
    assert got == [{"id": "x"}]


@pytest.mark.asyncio
async def test_redis_channel_unreachable_is_transient():
    pytest.importorskip("redis")
    ch = RedisWriteChannel("redis://127.0.0.1:1", socket_connect_timeout=0.2)
    try:
        with pytest.raises(TransientChannelError):
            await ch.subscribe(lambda row: None)
    finally:
        await ch.close()
