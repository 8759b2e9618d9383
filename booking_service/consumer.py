import asyncio
import json
import logging

import aio_pika

from .db import SessionLocal
from .errors import AppError
from .event_bus import bus
from .idempotency import mark_processed, release_claim
from .payments import get_payment, react_to_payment_callback
from .rabbitmq import EXCHANGE_NAME, connect

logger = logging.getLogger(__name__)

QUEUE_NAME = "booking_service_payment_events"
ROUTING_KEYS = {
    "gateway.payment.processing": "processing",
    "gateway.payment.completed": "completed",
    "gateway.payment.failed": "failed",
}
RETRY_SECONDS = 5

session_factory = SessionLocal


async def process_payload(payload: dict) -> bool:
    """Apply one gateway event; returns True when it changed a payment."""
    event_id = payload.get("event_id")
    event_type = payload.get("event_type")
    data = payload.get("data") or {}
    payment_id = data.get("payment_id")

    if not event_id or event_type not in ROUTING_KEYS or not payment_id:
        return False

    if not await mark_processed(event_id):
        logger.info("skipping duplicate event %s", event_id)
        return False

    async with session_factory() as db:
        try:
            payment = await get_payment(db, payment_id)
            events = await react_to_payment_callback(
                db, payment, ROUTING_KEYS[event_type], data.get("transaction_id")
            )
        except AppError as e:
            logger.warning("dropping %s for payment %s: %s", event_type, payment_id, e.message)
            return False
        except Exception:
            # unclaim so the redelivered message is applied
            await release_claim(event_id)
            raise

    for event in events:
        await bus.emit(event)
    return True


async def handle_message(message: aio_pika.IncomingMessage):
    async with message.process(requeue=True):
        try:
            payload = json.loads(message.body.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError):
            logger.warning("discarding malformed message on %s", message.routing_key)
            return

        await process_payload(payload)


async def _connect_and_consume():
    connection = await connect()
    if connection is None:
        raise RuntimeError("RABBIT_URL not set; cannot start consumer")

    channel = await connection.channel()
    await channel.set_qos(prefetch_count=50)

    exchange = await channel.declare_exchange(
        EXCHANGE_NAME, aio_pika.ExchangeType.TOPIC, durable=True
    )

    queue = await channel.declare_queue(QUEUE_NAME, durable=True)
    for rk in ROUTING_KEYS:
        await queue.bind(exchange, routing_key=rk)

    await queue.consume(handle_message)
    logger.info("payment event consumer started")
    return connection


async def start_consumer_with_retry(stop_event: asyncio.Event):
    while not stop_event.is_set():
        try:
            return await _connect_and_consume()
        except Exception as e:
            logger.warning("consumer connect failed, retrying in %ss: %s", RETRY_SECONDS, e)
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=RETRY_SECONDS)
            except asyncio.TimeoutError:
                continue

    return None
