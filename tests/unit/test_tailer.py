import pytest

from scantrack.models import ProgressRecord
from scantrack.tailer import TailerRegistry


async def _append(log, job_id, *stages):
    for s in stages:
        await log.append(ProgressRecord(job_id=job_id, stage=s))


@pytest.mark.asyncio
async def test_backlog_then_live_without_gaps(progress_log, wait_for):
    reg = TailerRegistry(progress_log, interval=0.02, backlog_limit=3)
    await _append(progress_log, "job1", *(f"b{i}" for i in range(5)))

    got = []
    unsubscribe = await reg.subscribe("job1", lambda r: got.append(r.stage))
    assert got == ["b2", "b3", "b4"]

    await _append(progress_log, "job1", "live1", "live2")
    assert await wait_for(lambda: got[-2:] == ["live1", "live2"])
    assert got == ["b2", "b3", "b4", "live1", "live2"]

    unsubscribe()
    assert reg.active_jobs() == []


@pytest.mark.asyncio
async def test_short_backlog_and_missing_file(progress_log, wait_for):
    reg = TailerRegistry(progress_log, interval=0.02, backlog_limit=10)
    got = []
    unsubscribe = await reg.subscribe("fresh", lambda r: got.append(r.stage))
    assert got == []

    await _append(progress_log, "fresh", "first")
    assert await wait_for(lambda: got == ["first"])
    unsubscribe()


@pytest.mark.asyncio
async def test_subscribers_share_one_loop_and_teardown(progress_log, wait_for):
    reg = TailerRegistry(progress_log, interval=0.02, backlog_limit=2)
    await _append(progress_log, "job2", "a", "b", "c")

    first, second = [], []
    unsub1 = await reg.subscribe("job2", lambda r: first.append(r.stage))
    tailer = reg._tailers["job2"]
    timer = tailer.timer

    unsub2 = await reg.subscribe("job2", lambda r: second.append(r.stage))
    assert reg._tailers["job2"] is tailer and tailer.timer is timer
    assert reg.subscriber_count("job2") == 2
    # each subscriber gets its own replay
    assert first[:2] == ["b", "c"] and second[:2] == ["b", "c"]

    await _append(progress_log, "job2", "d")
    assert await wait_for(lambda: first[-1] == "d" and second[-1] == "d")

    unsub1()
    assert reg.active_jobs() == ["job2"]
    unsub2()
    assert reg.active_jobs() == []
    assert tailer.timer is None
    # second call is harmless
    unsub2()


@pytest.mark.asyncio
async def test_poke_skips_while_read_in_flight(progress_log):
    reg = TailerRegistry(progress_log, interval=60)
    unsubscribe = await reg.subscribe("job3", lambda r: None)
    tailer = reg._tailers["job3"]

    tailer.poke()
    inflight = tailer.inflight
    assert inflight is not None
    tailer.poke()
    tailer.poke()
    assert tailer.inflight is inflight

    await inflight
    tailer.poke()
    assert tailer.inflight is not inflight
    unsubscribe()


@pytest.mark.asyncio
async def test_handler_errors_are_isolated(progress_log, wait_for):
    reg = TailerRegistry(progress_log, interval=0.02)
    good = []

    def bad(record):
        raise RuntimeError("subscriber bug")

    await reg.subscribe("job4", bad)
    await reg.subscribe("job4", lambda r: good.append(r.stage))
    await _append(progress_log, "job4", "x")
    assert await wait_for(lambda: good == ["x"])
    await reg.close_all()
    assert reg.active_jobs() == []


@pytest.mark.asyncio
async def test_close_forces_teardown(progress_log):
    reg = TailerRegistry(progress_log, interval=0.02)
    await reg.subscribe("job5", lambda r: None)
    await reg.close("job5")
    assert reg.active_jobs() == [] and reg.subscriber_count("job5") == 0
    await reg.close("job5")
