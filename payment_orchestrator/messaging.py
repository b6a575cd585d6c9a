import json
import logging
from datetime import datetime, timezone
from typing import Optional
from uuid import uuid4

import aio_pika

from payment_orchestrator.config import get_settings

logger = logging.getLogger(__name__)

PAYMENT_EXCHANGE = "payment_exchange"

connection = None
channel = None


async def setup_rabbitmq():
    global connection, channel
    try:
        connection = await aio_pika.connect_robust(get_settings().rabbitmq_url)
        channel = await connection.channel()
        await channel.declare_exchange(PAYMENT_EXCHANGE, aio_pika.ExchangeType.TOPIC, durable=True)
        logger.info("RabbitMQ setup complete.")
    except Exception as e:
        # Payments keep working without events; outcomes are still in the database
        logger.error("Error setting up RabbitMQ: %s", e)


async def close_rabbitmq():
    global connection, channel
    if connection is not None:
        await connection.close()
    connection = None
    channel = None


async def publish_event(exchange_name: str, routing_key: str, message_data: dict):
    if not channel:
        logger.warning("RabbitMQ channel not available. Cannot publish %s.", message_data.get("event_type"))
        return

    message = aio_pika.Message(
        json.dumps(message_data).encode("utf-8"),
        content_type="application/json",
        delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
    )
    try:
        exchange = await channel.get_exchange(exchange_name)
        await exchange.publish(message, routing_key=routing_key)
        logger.info("Published event to %s: %s", routing_key, message_data["event_type"])
    except Exception as e:
        logger.error("Error publishing %s for order %s: %s", routing_key, message_data.get("order_id"), e)


def payment_event(event_type: str, order_id: str, method: str, **fields) -> dict:
    event = {
        "event_id": str(uuid4()),
        "event_type": event_type,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "order_id": order_id,
        "method": method,
    }
    event.update({k: v for k, v in fields.items() if v is not None})
    return event


async def publish_payment_processed(order_id: str, method: str, amount: int, reference: Optional[str]):
    await publish_event(
        PAYMENT_EXCHANGE,
        "payment.processed",
        payment_event("PaymentProcessed", order_id, method, amount=amount, reference=reference),
    )


async def publish_payment_failed(order_id: str, method: str, reason: Optional[str]):
    await publish_event(
        PAYMENT_EXCHANGE,
        "payment.failed",
        payment_event("PaymentFailed", order_id, method, reason=reason),
    )
