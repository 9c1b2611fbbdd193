import asyncio

import httpx
import pytest

from scantrack.client.multiplexer import ConnectionMultiplexer, StreamListener
from scantrack.client.sse import HttpxEventSource, StreamEnded, iter_sse_data


class FakeTransport:
    def __init__(self, target, on_message, on_error):
        self.target = target
        self.on_message = on_message
        self.on_error = on_error
        self.closed = False

    def close(self):
        self.closed = True


class FakeFactory:
    def __init__(self, fail_for: set[str] | None = None):
        self.opened: list[FakeTransport] = []
        self.fail_for = fail_for or set()

    def __call__(self, target, on_message, on_error):
        if target in self.fail_for:
            raise ConnectionRefusedError(target)
        t = FakeTransport(target, on_message, on_error)
        self.opened.append(t)
        return t


@pytest.mark.asyncio
async def test_same_target_shares_one_transport():
    factory = FakeFactory()
    mux = ConnectionMultiplexer(factory, max_open=2)
    a_msgs, b_msgs, opened = [], [], []

    close_a = await mux.open("/jobs/1/events", StreamListener(a_msgs.append, on_open=lambda: opened.append("a")))
    close_b = await mux.open("/jobs/1/events", StreamListener(b_msgs.append, on_open=lambda: opened.append("b")))
    assert len(factory.opened) == 1 and mux.open_count == 1
    assert opened == ["a", "b"]

    transport = factory.opened[0]
    transport.on_message("hello")
    assert a_msgs == ["hello"] and b_msgs == ["hello"]

    close_a()
    assert not transport.closed
    transport.on_message("again")
    assert a_msgs == ["hello"] and b_msgs == ["hello", "again"]

    close_b()
    assert transport.closed and mux.open_count == 0
    assert mux.state() == {"max": 2, "open": 0, "queued": 0, "targets": []}
    # closers are idempotent
    close_b()
    assert mux.open_count == 0


@pytest.mark.asyncio
async def test_bound_and_fifo_promotion():
    factory = FakeFactory()
    mux = ConnectionMultiplexer(factory, max_open=1)

    close_a = await mux.open("a", StreamListener(lambda m: None))
    wait_b = asyncio.ensure_future(mux.open("b", StreamListener(lambda m: None)))
    wait_c = asyncio.ensure_future(mux.open("c", StreamListener(lambda m: None)))
    await asyncio.sleep(0)
    assert not wait_b.done() and not wait_c.done()
    assert mux.state()["queued"] == 2 and mux.open_count == 1

    close_a()
    close_b = await asyncio.wait_for(wait_b, 1)
    assert [t.target for t in factory.opened] == ["a", "b"]
    assert not wait_c.done() and mux.open_count == 1

    close_b()
    close_c = await asyncio.wait_for(wait_c, 1)
    assert [t.target for t in factory.opened] == ["a", "b", "c"]
    close_c()
    assert mux.open_count == 0


@pytest.mark.asyncio
async def test_cancelled_waiter_leaves_queue():
    factory = FakeFactory()
    mux = ConnectionMultiplexer(factory, max_open=1)
    close_a = await mux.open("a", StreamListener(lambda m: None))

    waiting = asyncio.ensure_future(mux.open("b", StreamListener(lambda m: None)))
    await asyncio.sleep(0)
    waiting.cancel()
    with pytest.raises(asyncio.CancelledError):
        await waiting
    assert mux.state()["queued"] == 0 and mux.state()["targets"] == ["a"]

    close_a()
    assert [t.target for t in factory.opened] == ["a"]


@pytest.mark.asyncio
async def test_transport_error_reaches_every_listener_and_frees_slot():
    factory = FakeFactory()
    mux = ConnectionMultiplexer(factory, max_open=1)
    errors = []

    await mux.open("a", StreamListener(lambda m: None, on_error=errors.append))
    await mux.open("a", StreamListener(lambda m: None, on_error=errors.append))
    waiting = asyncio.ensure_future(mux.open("b", StreamListener(lambda m: None)))
    await asyncio.sleep(0)

    boom = ConnectionResetError("gone")
    factory.opened[0].on_error(boom)
    assert errors == [boom, boom]
    assert factory.opened[0].closed

    await asyncio.wait_for(waiting, 1)
    assert mux.state()["targets"] == ["b"] and mux.open_count == 1

    # a late error from the dead transport is ignored
    factory.opened[0].on_error(boom)
    assert len(errors) == 2


@pytest.mark.asyncio
async def test_factory_failure_returns_noop_closer():
    factory = FakeFactory(fail_for={"bad"})
    mux = ConnectionMultiplexer(factory, max_open=1)
    errors = []

    closer = await mux.open("bad", StreamListener(lambda m: None, on_error=errors.append))
    assert len(errors) == 1 and isinstance(errors[0], ConnectionRefusedError)
    assert mux.open_count == 0 and mux.state()["targets"] == []
    closer()

    close_ok = await mux.open("good", StreamListener(lambda m: None))
    assert mux.open_count == 1
    close_ok()


@pytest.mark.asyncio
async def test_listener_exceptions_are_isolated():
    factory = FakeFactory()
    mux = ConnectionMultiplexer(factory)
    good = []

    def bad(msg):
        raise RuntimeError("consumer bug")

    await mux.open("t", StreamListener(bad))
    await mux.open("t", StreamListener(good.append))
    factory.opened[0].on_message("m")
    assert good == ["m"]


def test_max_open_must_be_positive():
    with pytest.raises(ValueError):
        ConnectionMultiplexer(FakeFactory(), max_open=0)


def test_stream_limit_read_from_env_at_construction(monkeypatch):
    monkeypatch.setenv("SCANTRACK_MAX_STREAMS", "3")
    assert ConnectionMultiplexer(FakeFactory()).max_open == 3
    assert ConnectionMultiplexer(FakeFactory(), max_open=7).max_open == 7

    monkeypatch.delenv("SCANTRACK_MAX_STREAMS")
    assert ConnectionMultiplexer(FakeFactory()).max_open == 5

    monkeypatch.setenv("SCANTRACK_MAX_STREAMS", "lots")
    with pytest.raises(ValueError, match="SCANTRACK_MAX_STREAMS"):
        ConnectionMultiplexer(FakeFactory())
    # an explicit limit never consults the environment
    assert ConnectionMultiplexer(FakeFactory(), max_open=2).max_open == 2


@pytest.mark.asyncio
async def test_iter_sse_data_parses_frames():
    async def lines():
        for line in [": ping", "", "data: {\"a\": 1}", "", "data: one", "data:two", "", "data: tail"]:
            yield line

    got = [d async for d in iter_sse_data(lines())]
    assert got == ['{"a": 1}', "one\ntwo", "tail"]


@pytest.mark.asyncio
async def test_httpx_event_source_shares_client(wait_for):
    seen_urls = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen_urls.append(str(request.url))
        assert request.headers["accept"] == "text/event-stream"
        return httpx.Response(200, text=": ping\n\ndata: {\"n\": 1}\n\n")

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://t") as client:
        make = HttpxEventSource.factory(client)
        msgs, errors = [], []
        source = make("http://t/jobs/a/events", msgs.append, errors.append)

        assert await wait_for(lambda: bool(errors))
        assert msgs == ['{"n": 1}']
        assert isinstance(errors[0], StreamEnded)

        other = make("http://t/jobs/b/events", msgs.append, errors.append)
        assert await wait_for(lambda: len(errors) == 2)
        assert seen_urls == ["http://t/jobs/a/events", "http://t/jobs/b/events"]
        source.close()
        other.close()
