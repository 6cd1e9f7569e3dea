"""
Invalidation Broadcast - Cross-process cache invalidation over Redis pub/sub.

Every local invalidation event is published as JSON on one channel. Each
process listens on the same channel and applies events from other processes
to its own PermissionCache. Messages carry an origin id so a process skips
its own echoes.

Message format:
    {"origin": "<uuid>", "scope": "user|role|all", "target_id": "...",
     "reason": "...", "ts": 1700000000.0}
"""

from __future__ import annotations

import asyncio
import json
import time
import uuid
from typing import Optional, Union

from redis.asyncio import Redis
from redis.exceptions import RedisError

from core.logging_config import get_logger

from .cache import InvalidationEvent, PermissionCache

DEFAULT_CHANNEL = "rbac:invalidate"


class RedisInvalidationBroadcaster:
    """Publishes and consumes cache invalidation events."""

    def __init__(
        self,
        redis_client: Redis,
        cache: PermissionCache,
        channel: str = DEFAULT_CHANNEL,
        origin_id: Optional[str] = None,
        retry_base_delay: float = 0.5,
        retry_max_delay: float = 30.0,
    ):
        self.redis = redis_client
        self.cache = cache
        self.channel = channel
        self.origin_id = origin_id or uuid.uuid4().hex
        self.retry_base_delay = retry_base_delay
        self.retry_max_delay = retry_max_delay
        self._log = get_logger(__name__, channel=channel, origin=self.origin_id)
        self._listener_task: Optional[asyncio.Task] = None

    # -------------------------------------------------------------------------
    # Publishing
    # -------------------------------------------------------------------------

    def encode(self, event: InvalidationEvent) -> str:
        payload = event.to_dict()
        payload["origin"] = self.origin_id
        payload["ts"] = time.time()
        return json.dumps(payload)

    async def publish(self, event: InvalidationEvent) -> bool:
        """Publish an event. Failures are logged and reported as False."""
        try:
            await self.redis.publish(self.channel, self.encode(event))
        except (RedisError, OSError) as e:
            self._log.warning(f"Redis publish error: {e}")
            return False
        return True

    # -------------------------------------------------------------------------
    # Consuming
    # -------------------------------------------------------------------------

    def handle_message(self, data: Union[str, bytes]) -> bool:
        """Apply one raw pub/sub payload. Returns True if the cache was touched."""
        if isinstance(data, bytes):
            data = data.decode("utf-8")
        try:
            payload = json.loads(data)
            if payload.get("origin") == self.origin_id:
                return False
            event = InvalidationEvent.from_dict(payload)
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            self._log.warning(f"Ignoring malformed invalidation message: {e}")
            return False

        self._log.debug(f"Applying remote invalidation {event.scope.value} {event.target_id}")
        self.cache.handle_event(event)
        return True

    async def listen(self) -> None:
        """
        Consume the channel until cancelled or unsubscribed.

        Connection errors are retried with exponential backoff. Events sent
        while disconnected are lost, so every cached set is dropped once the
        subscription is back.
        """
        delay = self.retry_base_delay
        reconnecting = False
        while True:
            pubsub = self.redis.pubsub()
            try:
                await pubsub.subscribe(self.channel)
                if reconnecting:
                    dropped = self.cache.invalidate_all()
                    self._log.info(f"Resubscribed to {self.channel}; dropped {dropped} cached permission sets")
                else:
                    self._log.info(f"Listening for RBAC invalidations on {self.channel}")
                delay = self.retry_base_delay

                async for message in pubsub.listen():
                    if message.get("type") != "message":
                        continue
                    self.handle_message(message["data"])
                return
            except (RedisError, OSError) as e:
                self._log.warning(f"Invalidation listener lost Redis ({e}); retrying in {delay:.1f}s")
            finally:
                await self._close(pubsub)

            await asyncio.sleep(delay)
            delay = min(delay * 2, self.retry_max_delay)
            reconnecting = True

    async def _close(self, pubsub) -> None:
        try:
            await pubsub.unsubscribe(self.channel)
            await pubsub.aclose()
        except (RedisError, OSError) as e:
            self._log.debug(f"Error closing pub/sub connection: {e}")

    def start(self) -> asyncio.Task:
        """Run ``listen`` in a background task."""
        if self._listener_task is None or self._listener_task.done():
            self._listener_task = asyncio.ensure_future(self.listen())
        return self._listener_task

    async def stop(self) -> None:
        task, self._listener_task = self._listener_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

