import asyncio

import pytest

from inventory_records.consumers import HANDLERS, handle_inventory_update
from inventory_records.dispatcher import (
    CONSUMER_GROUP,
    EventDispatcher,
    PublishOutcome,
    Queue,
    stream_key,
)
from inventory_records.models.events import Actor, InventoryUpdateEvent, ItemSummary, UpdateType


def _update_event():
    return InventoryUpdateEvent(
        type=UpdateType.UPDATED,
        item=ItemSummary(id="i1", name="Widget", category="Other", quantity=3, old_quantity=8),
        user=Actor(id="user-a", name="Alice"),
    )


async def test_declare_is_idempotent(dispatcher, events_redis):
    assert await dispatcher.declare() is True

    for queue in Queue:
        assert await events_redis.exists(stream_key(queue)) == 1


async def test_publish_wraps_payload_in_durable_envelope(dispatcher, read_queue):
    outcome = await dispatcher.publish(Queue.INVENTORY_UPDATES, _update_event())

    assert outcome is PublishOutcome.ACKNOWLEDGED
    [message] = await read_queue(Queue.INVENTORY_UPDATES)
    assert message["queue"] == "inventory-updates"
    assert message["durable"] is True
    assert message["data"]["item"]["oldQuantity"] == 8
    assert message["data"]["type"] == "updated"


async def test_consume_acknowledges_handled_messages(dispatcher, events_redis):
    await dispatcher.publish(Queue.INVENTORY_UPDATES, _update_event())
    seen = []

    handled = await dispatcher.consume_once(Queue.INVENTORY_UPDATES, seen.append, consumer="c1")

    assert handled == 1
    assert seen[0]["data"]["item"]["id"] == "i1"
    pending = await events_redis.xpending(stream_key(Queue.INVENTORY_UPDATES), CONSUMER_GROUP)
    assert pending["pending"] == 0


async def test_async_handlers_are_awaited(dispatcher):
    await dispatcher.publish(Queue.INVENTORY_UPDATES, _update_event())
    seen = []

    async def handler(message):
        await asyncio.sleep(0)
        seen.append(message)

    assert await dispatcher.consume_once(Queue.INVENTORY_UPDATES, handler, consumer="c1") == 1
    assert len(seen) == 1


async def test_poison_message_is_dropped_not_requeued(dispatcher, events_redis):
    await dispatcher.publish(Queue.LOW_STOCK_ALERTS, {"item": "not an alert"})

    handled = await dispatcher.consume_once(
        Queue.LOW_STOCK_ALERTS, HANDLERS[Queue.LOW_STOCK_ALERTS], consumer="c1"
    )

    assert handled == 0
    pending = await events_redis.xpending(stream_key(Queue.LOW_STOCK_ALERTS), CONSUMER_GROUP)
    assert pending["pending"] == 0
    assert await dispatcher.consume_once(Queue.LOW_STOCK_ALERTS, lambda m: None, consumer="c1") == 0


async def test_default_consumer_accepts_published_events(dispatcher):
    await dispatcher.publish(Queue.INVENTORY_UPDATES, _update_event())

    assert (
        await dispatcher.consume_once(Queue.INVENTORY_UPDATES, handle_inventory_update, consumer="c1")
        == 1
    )


async def test_unreachable_backend_degrades_publish(events_server, events_redis):
    dispatcher = EventDispatcher(events_redis, timeout=1.0)
    events_server.connected = False

    outcome = await dispatcher.publish(Queue.INVENTORY_UPDATES, _update_event())

    assert outcome is PublishOutcome.DEGRADED


async def test_run_consumer_stops_on_shutdown(dispatcher):
    await dispatcher.publish(Queue.EMAIL_NOTIFICATIONS, {
        "type": "welcome",
        "user": {"name": "Alice", "email": "alice@example.com"},
    })
    shutdown_event = asyncio.Event()
    seen = []

    def handler(message):
        seen.append(message)
        shutdown_event.set()

    await asyncio.wait_for(
        dispatcher.run_consumer(Queue.EMAIL_NOTIFICATIONS, handler, shutdown_event, block_ms=10),
        timeout=5,
    )

    assert seen[0]["data"]["user"]["email"] == "alice@example.com"


def test_unknown_queue_is_rejected():
    with pytest.raises(ValueError):
        stream_key("orders")


async def _crash_reading(dispatcher, queue, consumer):
    async def crash(message):
        raise asyncio.CancelledError()

    with pytest.raises(asyncio.CancelledError):
        await dispatcher.consume_once(queue, crash, consumer=consumer)


async def test_message_left_pending_by_dead_consumer_is_redelivered(events_redis):
    dispatcher = EventDispatcher(events_redis, timeout=1.0, claim_idle_ms=0)
    await dispatcher.declare()
    await dispatcher.publish(Queue.INVENTORY_UPDATES, _update_event())
    await _crash_reading(dispatcher, Queue.INVENTORY_UPDATES, "w1")
    seen = []

    handled = await dispatcher.consume_once(Queue.INVENTORY_UPDATES, seen.append, consumer="w2")

    assert handled == 1
    assert seen[0]["data"]["item"]["id"] == "i1"
    pending = await events_redis.xpending(stream_key(Queue.INVENTORY_UPDATES), CONSUMER_GROUP)
    assert pending["pending"] == 0


async def test_pending_message_is_not_claimed_before_idle_timeout(events_redis):
    dispatcher = EventDispatcher(events_redis, timeout=1.0, claim_idle_ms=60000)
    await dispatcher.declare()
    await dispatcher.publish(Queue.INVENTORY_UPDATES, _update_event())
    await _crash_reading(dispatcher, Queue.INVENTORY_UPDATES, "w1")

    assert await dispatcher.consume_once(Queue.INVENTORY_UPDATES, lambda m: None, consumer="w2") == 0
    pending = await events_redis.xpending(stream_key(Queue.INVENTORY_UPDATES), CONSUMER_GROUP)
    assert pending["pending"] == 1


async def test_message_past_delivery_limit_is_dropped(events_redis):
    dispatcher = EventDispatcher(events_redis, timeout=1.0, claim_idle_ms=0, max_deliveries=1)
    await dispatcher.declare()
    await dispatcher.publish(Queue.INVENTORY_UPDATES, _update_event())
    await _crash_reading(dispatcher, Queue.INVENTORY_UPDATES, "w1")
    seen = []

    handled = await dispatcher.consume_once(Queue.INVENTORY_UPDATES, seen.append, consumer="w2")

    assert handled == 0
    assert seen == []
    pending = await events_redis.xpending(stream_key(Queue.INVENTORY_UPDATES), CONSUMER_GROUP)
    assert pending["pending"] == 0
