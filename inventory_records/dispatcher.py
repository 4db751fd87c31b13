"""
Event dispatch over durable Redis Streams.

Each logical queue is a stream with one consumer group. Producers append
with XADD (persistent as long as the Redis server persists, trimmed after
the message TTL); consumers read through the group and acknowledge each
message. A message whose handler raises is negatively acknowledged without
requeue: it is acknowledged, logged, and never redelivered. A message left
unacknowledged by a consumer that died is claimed by the next reader once
it has been idle for `claim_idle_ms`, up to `max_deliveries` deliveries.

Publishing never raises. An unreachable backend yields
PublishOutcome.DEGRADED; the caller's mutation carries on.
"""
import asyncio
import inspect
import json
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Union

import redis.asyncio as aioredis
from pydantic import BaseModel
from redis.exceptions import RedisError, ResponseError

from inventory_records.exceptions import QueueError
from inventory_records.logging_config import get_child_logger

logger = get_child_logger("dispatcher")

CONSUMER_GROUP = "inventory-consumers"


class Queue(str, Enum):
    INVENTORY_UPDATES = "inventory-updates"
    LOW_STOCK_ALERTS = "low-stock-alerts"
    EMAIL_NOTIFICATIONS = "email-notifications"


class PublishOutcome(str, Enum):
    ACKNOWLEDGED = "acknowledged"
    DEGRADED = "degraded"


Handler = Callable[[Dict[str, Any]], Union[None, Awaitable[None]]]


def stream_key(queue: Union[Queue, str]) -> str:
    return f"queue:{Queue(queue).value}"


class EventDispatcher:
    def __init__(
        self,
        redis: aioredis.Redis,
        timeout: float = 2.0,
        message_ttl: int = 86400,
        group: str = CONSUMER_GROUP,
        claim_idle_ms: int = 30000,
        max_deliveries: int = 5,
    ):
        self.redis = redis
        self.timeout = timeout
        self.message_ttl = message_ttl
        self.group = group
        # pending this long without an ack means the reader is gone
        self.claim_idle_ms = claim_idle_ms
        self.max_deliveries = max_deliveries

    async def _guard(self, operation: str, awaitable):
        try:
            return await asyncio.wait_for(awaitable, timeout=self.timeout)
        except (RedisError, OSError, asyncio.TimeoutError) as e:
            raise QueueError(f"Queue {operation} failed: {e!r}", original_exception=e) from e

    async def declare(self) -> bool:
        """Create every stream and its consumer group. Safe to call repeatedly."""
        ok = True
        for queue in Queue:
            try:
                await self._guard(
                    "declare",
                    self.redis.xgroup_create(stream_key(queue), self.group, id="0", mkstream=True),
                )
            except QueueError as e:
                if isinstance(e.original_exception, ResponseError) and "BUSYGROUP" in str(
                    e.original_exception
                ):
                    continue
                logger.error(f"Failed to declare queue {queue.value}: {e}")
                ok = False
        if ok:
            logger.info("Event queues declared")
        return ok

    async def publish(
        self, queue: Union[Queue, str], payload: Union[BaseModel, Dict[str, Any]]
    ) -> PublishOutcome:
        queue = Queue(queue)
        data = payload.model_dump(mode="json", by_alias=True) if isinstance(payload, BaseModel) else payload
        message = {
            "queue": queue.value,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "durable": True,
            "data": data,
        }
        # Entries older than the message TTL are trimmed on the next append
        min_id = max(0, int(time.time() * 1000) - self.message_ttl * 1000)
        try:
            message_id = await self._guard(
                "publish",
                self.redis.xadd(
                    stream_key(queue),
                    {"message": json.dumps(message, default=str)},
                    minid=min_id,
                    approximate=True,
                ),
            )
        except QueueError as e:
            logger.error(
                f"Failed to send message to queue {queue.value}",
                extra={"queue": queue.value, "error": str(e)},
            )
            return PublishOutcome.DEGRADED

        logger.info(
            f"Message sent to queue: {queue.value}",
            extra={"queue": queue.value, "message_id": message_id},
        )
        return PublishOutcome.ACKNOWLEDGED

    async def ack(self, queue: Union[Queue, str], message_id: str) -> None:
        await self._guard("ack", self.redis.xack(stream_key(queue), self.group, message_id))

    async def nack(self, queue: Union[Queue, str], message_id: str) -> None:
        """Reject without requeue: the message is settled and dropped."""
        await self._guard("nack", self.redis.xack(stream_key(queue), self.group, message_id))
        logger.warning(
            f"Dropped message {message_id} from {Queue(queue).value}",
            extra={"queue": Queue(queue).value, "message_id": message_id},
        )

    async def _handle(self, queue: Queue, message_id: str, fields: Dict[str, str], handler: Handler) -> bool:
        try:
            content = json.loads(fields["message"])
            result = handler(content)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception(
                f"Error processing message from {queue.value}",
                extra={"queue": queue.value, "message_id": message_id},
            )
            await self.nack(queue, message_id)
            return False
        await self.ack(queue, message_id)
        return True

    async def _reclaim(self, queue: Queue, consumer: str, count: int):
        """
        Take over messages another consumer read but never settled, e.g.
        because it crashed mid-handler. Messages past max_deliveries are
        dropped instead of handed out again.
        """
        stream = stream_key(queue)
        reply = await self.redis.xautoclaim(
            stream, self.group, consumer, self.claim_idle_ms, start_id="0-0", count=count
        )
        reclaimed = []
        for message_id, fields in reply[1]:
            if fields is None:
                # trimmed from the stream while pending
                await self.ack(queue, message_id)
                continue
            pending = await self.redis.xpending_range(
                stream, self.group, min=message_id, max=message_id, count=1
            )
            deliveries = pending[0]["times_delivered"] if pending else 1
            if deliveries > self.max_deliveries:
                logger.error(
                    f"Giving up on message {message_id} from {queue.value} after {deliveries - 1} deliveries",
                    extra={"queue": queue.value, "message_id": message_id},
                )
                await self.nack(queue, message_id)
                continue
            logger.info(
                f"Reclaimed message {message_id} from {queue.value}",
                extra={"queue": queue.value, "message_id": message_id, "deliveries": deliveries},
            )
            reclaimed.append((message_id, fields))
        return reclaimed

    async def consume_once(
        self,
        queue: Union[Queue, str],
        handler: Handler,
        consumer: str,
        count: int = 10,
        block_ms: Optional[int] = None,
    ) -> int:
        """
        Settle up to `count` messages: first those abandoned by other
        consumers, then new ones. Returns how many were handled successfully.
        """
        queue = Queue(queue)
        try:
            messages = await self._reclaim(queue, consumer, count)
            if not messages:
                entries = await self.redis.xreadgroup(
                    self.group, consumer, {stream_key(queue): ">"}, count=count, block=block_ms
                )
                messages = [message for _stream, batch in entries or [] for message in batch]
        except (RedisError, OSError) as e:
            raise QueueError(f"Queue read failed: {e!r}", original_exception=e) from e

        handled = 0
        for message_id, fields in messages:
            if await self._handle(queue, message_id, fields, handler):
                handled += 1
        return handled

    async def run_consumer(
        self,
        queue: Union[Queue, str],
        handler: Handler,
        shutdown_event: asyncio.Event,
        consumer: str = "worker-1",
        block_ms: int = 1000,
    ) -> None:
        queue = Queue(queue)
        logger.info(f"Started consuming queue: {queue.value}")
        while not shutdown_event.is_set():
            try:
                await self.consume_once(queue, handler, consumer, block_ms=block_ms)
            except QueueError as e:
                logger.error(f"Failed to consume queue {queue.value}: {e}")
                await asyncio.sleep(1.0)
        logger.info(f"Stopped consuming queue: {queue.value}")
