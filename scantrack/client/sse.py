from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable

import httpx

logger = logging.getLogger("scantrack.client.sse")


class StreamEnded(Exception):
    """The server closed an event stream."""

    pass


async def iter_sse_data(lines: AsyncIterator[str]) -> AsyncIterator[str]:
    """Yield the ``data`` payload of each event in a text/event-stream."""
    buf: list[str] = []
    async for line in lines:
        line = line.rstrip("\r")
        if not line:
            if buf:
                yield "\n".join(buf)
                buf = []
            continue
        if line.startswith(":"):
            continue
        name, _, value = line.partition(":")
        if name == "data":
            buf.append(value[1:] if value.startswith(" ") else value)
    if buf:
        yield "\n".join(buf)


class HttpxEventSource:
    """Streams one URL in a background task and reports messages/errors."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        url: str,
        on_message: Callable[[str], None],
        on_error: Callable[[BaseException], None],
    ):
        self._client = client
        self._url = url
        self._on_message = on_message
        self._on_error = on_error
        self._closed = False
        self._task = asyncio.create_task(self._run(), name=f"sse-{url}")

    @classmethod
    def factory(
        cls, client: httpx.AsyncClient | None = None
    ) -> Callable[[str, Callable[[str], None], Callable[[BaseException], None]], HttpxEventSource]:
        """Transport factory sharing one client across streams."""
        shared = client

        def _make(
            url: str,
            on_message: Callable[[str], None],
            on_error: Callable[[BaseException], None],
        ) -> HttpxEventSource:
            nonlocal shared
            if shared is None:
                shared = httpx.AsyncClient(timeout=httpx.Timeout(10.0, read=None))
            return cls(shared, url, on_message, on_error)

        return _make

    async def _run(self) -> None:
        try:
            async with self._client.stream(
                "GET", self._url, headers={"Accept": "text/event-stream"}
            ) as response:
                response.raise_for_status()
                async for data in iter_sse_data(response.aiter_lines()):
                    self._on_message(data)
            raise StreamEnded(f"Stream {self._url} ended")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if not self._closed:
                logger.warning(f"Event stream {self._url} failed: {e}")
                self._on_error(e)

    def close(self) -> None:
        self._closed = True
        self._task.cancel()
