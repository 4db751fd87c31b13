"""
Default downstream consumers.

These stand in for the alerting and notification services: they validate
each message against its event model and log it. A message that fails
validation raises, which the dispatcher treats as a poison message.
"""
import asyncio
import signal
from typing import Any, Dict

from inventory_records.config import Settings
from inventory_records.db import create_redis
from inventory_records.dispatcher import EventDispatcher, Queue
from inventory_records.logging_config import get_child_logger
from inventory_records.models.events import (
    EmailNotificationEvent,
    InventoryUpdateEvent,
    LowStockAlertEvent,
)

logger = get_child_logger("consumers")


def handle_inventory_update(message: Dict[str, Any]) -> None:
    event = InventoryUpdateEvent.model_validate(message["data"])
    logger.info(
        f"[EVENTS] Item {event.item.id} {event.type.value} by {event.user.id}",
        extra={
            "item_id": event.item.id,
            "update_type": event.type.value,
            "quantity": event.item.quantity,
            "old_quantity": event.item.old_quantity,
        },
    )


def handle_low_stock_alert(message: Dict[str, Any]) -> None:
    event = LowStockAlertEvent.model_validate(message["data"])
    item = event.item
    logger.warning(
        f"[ALERT] {item.name} is {item.stock_status.value}: "
        f"{item.quantity} left (reorder point {item.reorder_point}), "
        f"reorder {item.reorder_quantity}",
        extra={"item_id": item.id, "stock_status": item.stock_status.value},
    )


def handle_email_notification(message: Dict[str, Any]) -> None:
    event = EmailNotificationEvent.model_validate(message["data"])
    logger.info(
        f"[EMAIL] Sending {event.type.value} email to {event.user.email}",
        extra={"notification_type": event.type.value},
    )


HANDLERS = {
    Queue.INVENTORY_UPDATES: handle_inventory_update,
    Queue.LOW_STOCK_ALERTS: handle_low_stock_alert,
    Queue.EMAIL_NOTIFICATIONS: handle_email_notification,
}


async def run_workers(settings: Settings, shutdown_event: asyncio.Event) -> None:
    redis = create_redis(settings.events_redis_url, settings.queue_timeout)
    dispatcher = EventDispatcher(
        redis,
        timeout=settings.queue_timeout,
        message_ttl=settings.queue_message_ttl,
        claim_idle_ms=settings.queue_claim_idle_ms,
        max_deliveries=settings.queue_max_deliveries,
    )
    try:
        await dispatcher.declare()
        await asyncio.gather(
            *(
                dispatcher.run_consumer(queue, handler, shutdown_event, consumer=f"{queue.value}-worker")
                for queue, handler in HANDLERS.items()
            )
        )
    finally:
        await redis.aclose()


def main() -> None:
    shutdown_event = asyncio.Event()

    async def _run():
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, shutdown_event.set)
        await run_workers(Settings.from_env(), shutdown_event)

    asyncio.run(_run())


if __name__ == "__main__":
    main()
