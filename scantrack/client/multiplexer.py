from __future__ import annotations

import asyncio
import collections
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Literal, Protocol

from ..config import ClientConfig

logger = logging.getLogger("scantrack.client.multiplexer")

Closer = Callable[[], None]


class Transport(Protocol):
    """An open streaming connection."""

    def close(self) -> None:
        ...


TransportFactory = Callable[
    [str, Callable[[str], None], Callable[[BaseException], None]],
    Transport,
]


@dataclass(eq=False)
class StreamListener:
    """One consumer of a stream target."""

    on_message: Callable[[str], None]
    on_error: Callable[[BaseException], None] | None = None
    on_open: Callable[[], None] | None = None


@dataclass(eq=False)
class _Entry:
    target: str
    state: Literal["queued", "open"] = "queued"
    transport: Transport | None = None
    listeners: list[StreamListener] = field(default_factory=list)
    waiters: list[asyncio.Future[Closer | None]] = field(default_factory=list)


def _noop() -> None:
    pass


class ConnectionMultiplexer:
    """Bounds and de-duplicates outbound streaming connections.

    Consumers of the same target share one transport. At most ``max_open``
    transports are open at once; further targets wait in FIFO order and are
    promoted as open entries lose their last listener. Without an explicit
    ``max_open`` the limit comes from ``SCANTRACK_MAX_STREAMS``.
    """

    def __init__(
        self,
        transport_factory: TransportFactory | None = None,
        *,
        max_open: int | None = None,
    ):
        if max_open is None:
            max_open = ClientConfig.from_env().max_streams
        if max_open < 1:
            raise ValueError("max_open must be at least 1")
        if transport_factory is None:
            from .sse import HttpxEventSource

            transport_factory = HttpxEventSource.factory()
        self._factory = transport_factory
        self.max_open = max_open
        self._entries: dict[str, _Entry] = {}
        self._fifo: collections.deque[str] = collections.deque()
        self._open_count = 0

    @property
    def open_count(self) -> int:
        return self._open_count

    def state(self) -> dict[str, Any]:
        return {
            "max": self.max_open,
            "open": self._open_count,
            "queued": len(self._fifo),
            "targets": list(self._entries),
        }

    async def open(self, target: str, listener: StreamListener) -> Closer:
        """Attach ``listener`` to ``target``; resolves once the transport is open."""
        entry = self._entries.get(target)
        if entry is None:
            entry = _Entry(target=target)
            self._entries[target] = entry
            self._fifo.append(target)
        entry.listeners.append(listener)

        if entry.state == "open":
            return self._attach(entry, listener)

        fut: asyncio.Future[Closer | None] = asyncio.get_running_loop().create_future()
        entry.waiters.append(fut)
        self._pump()
        try:
            await fut
        except asyncio.CancelledError:
            if fut in entry.waiters:
                entry.waiters.remove(fut)
            self._detach(entry, listener)
            raise
        if fut.result() is _noop:
            return _noop
        return self._attach(entry, listener)

    def _attach(self, entry: _Entry, listener: StreamListener) -> Closer:
        if listener.on_open is not None:
            try:
                listener.on_open()
            except Exception:
                logger.exception(f"on_open for {entry.target} failed")

        def _close() -> None:
            self._detach(entry, listener)

        return _close

    def _detach(self, entry: _Entry, listener: StreamListener) -> None:
        if listener in entry.listeners:
            entry.listeners.remove(listener)
        if not entry.listeners and self._entries.get(entry.target) is entry:
            self._close_entry(entry)

    def _close_entry(self, entry: _Entry) -> None:
        if self._entries.get(entry.target) is not entry:
            return
        del self._entries[entry.target]
        if entry.state == "queued" and entry.target in self._fifo:
            self._fifo.remove(entry.target)
        if entry.transport is not None:
            try:
                entry.transport.close()
            except Exception:
                logger.exception(f"Closing transport for {entry.target} failed")
        if entry.state == "open":
            self._open_count = max(0, self._open_count - 1)
        logger.debug(f"Stream {entry.target} closed")
        self._pump()

    def _pump(self) -> None:
        while self._open_count < self.max_open and self._fifo:
            target = self._fifo.popleft()
            entry = self._entries.get(target)
            if entry is None or entry.state != "queued":
                continue

            try:
                transport = self._factory(
                    target,
                    lambda msg, e=entry: self._dispatch_message(e, msg),
                    lambda exc, e=entry: self._on_transport_error(e, exc),
                )
            except Exception as exc:
                logger.warning(f"Opening stream {target} failed: {exc}")
                self._dispatch_error(entry, exc)
                del self._entries[target]
                self._resolve(entry, _noop)
                continue

            entry.transport = transport
            entry.state = "open"
            self._open_count += 1
            logger.debug(f"Stream {target} open ({self._open_count}/{self.max_open})")
            self._resolve(entry, None)

    def _resolve(self, entry: _Entry, closer: Closer | None) -> None:
        waiters, entry.waiters = entry.waiters, []
        for fut in waiters:
            if not fut.done():
                fut.set_result(closer)

    def _dispatch_message(self, entry: _Entry, message: str) -> None:
        for listener in list(entry.listeners):
            try:
                listener.on_message(message)
            except Exception:
                logger.exception(f"Stream listener for {entry.target} failed")

    def _dispatch_error(self, entry: _Entry, exc: BaseException) -> None:
        for listener in list(entry.listeners):
            if listener.on_error is None:
                continue
            try:
                listener.on_error(exc)
            except Exception:
                logger.exception(f"Stream error listener for {entry.target} failed")

    def _on_transport_error(self, entry: _Entry, exc: BaseException) -> None:
        if self._entries.get(entry.target) is not entry:
            return
        self._dispatch_error(entry, exc)
        self._close_entry(entry)
