from __future__ import annotations

import abc
import asyncio
import contextlib
import json
import logging
from typing import Any

from ..exceptions import TransientChannelError
from .base import Unsubscribe, WriteHandler

logger = logging.getLogger("scantrack.store.channels")

try:
    import redis.asyncio as aioredis
    from redis.exceptions import RedisError

    REDIS_AVAILABLE = True
except ImportError:
    REDIS_AVAILABLE = False


class WriteChannel(abc.ABC):
    """Commit-time notification channel a store publishes rows to."""

    @abc.abstractmethod
    async def publish(self, payload: dict[str, Any]) -> None:
        ...

    @abc.abstractmethod
    async def subscribe(self, handler: WriteHandler) -> Unsubscribe:
        ...

    async def close(self) -> None:
        pass


class LocalWriteChannel(WriteChannel):
    """In-process channel: handlers run synchronously inside ``publish``."""

    def __init__(self) -> None:
        self._handlers: list[WriteHandler] = []

    async def publish(self, payload: dict[str, Any]) -> None:
        for handler in list(self._handlers):
            try:
                handler(payload)
            except Exception:
                logger.exception("Write handler failed")

    async def subscribe(self, handler: WriteHandler) -> Unsubscribe:
        self._handlers.append(handler)

        async def _unsubscribe() -> None:
            with contextlib.suppress(ValueError):
                self._handlers.remove(handler)

        return _unsubscribe


class RedisWriteChannel(WriteChannel):
    """Redis pub/sub channel so writers in other processes are seen too."""

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379",
        channel: str = "scantrack:job_events",
        **redis_kwargs: Any,
    ):
        if not REDIS_AVAILABLE:
            raise ImportError("redis package required for RedisWriteChannel")

        self._redis_url = redis_url
        self._channel = channel
        self._redis_kwargs = redis_kwargs
        self._redis: aioredis.Redis | None = None

    async def _ensure_redis(self) -> aioredis.Redis:
        if self._redis is None:
            self._redis = aioredis.from_url(
                self._redis_url,
                decode_responses=True,
                **self._redis_kwargs,
            )
        return self._redis

    async def publish(self, payload: dict[str, Any]) -> None:
        redis = await self._ensure_redis()
        try:
            await redis.publish(self._channel, json.dumps(payload))
        except (RedisError, OSError) as e:
            logger.warning(f"Publish to {self._channel} failed: {e}")

    async def subscribe(self, handler: WriteHandler) -> Unsubscribe:
        redis = await self._ensure_redis()
        pubsub = redis.pubsub(ignore_subscribe_messages=True)
        try:
            await pubsub.subscribe(self._channel)
        except (RedisError, OSError) as e:
            with contextlib.suppress(Exception):
                await pubsub.aclose()
            raise TransientChannelError(f"Cannot subscribe to {self._channel}: {e}") from e

        async def _reader() -> None:
            try:
                async for message in pubsub.listen():
                    if message.get("type") != "message":
                        continue
                    try:
                        payload = json.loads(message["data"])
                    except (TypeError, ValueError):
                        logger.warning(f"Dropping non-JSON notification on {self._channel}")
                        continue
                    try:
                        handler(payload)
                    except Exception:
                        logger.exception("Write handler failed")
            except (RedisError, OSError) as e:
                logger.error(f"Lost subscription to {self._channel}: {e}")

        task = asyncio.create_task(_reader(), name=f"redis-channel-{self._channel}")

        async def _unsubscribe() -> None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError, RedisError, OSError):
                await task
            with contextlib.suppress(RedisError, OSError):
                await pubsub.unsubscribe(self._channel)
                await pubsub.aclose()

        return _unsubscribe

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
