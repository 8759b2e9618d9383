import asyncio
import logging

from fastapi import FastAPI

from .config import RABBIT_URL, RATE_LIMIT_PER_MINUTE, SERVICE_NAME, configure_logging
from .consumer import start_consumer_with_retry
from .errors import register_error_handlers
from .event_bus import bus
from .middleware import RateLimitMiddleware, RequestLoggingMiddleware
from .notifications import register_subscribers
from .rabbitmq import publisher
from .routes import router

configure_logging()
logger = logging.getLogger(__name__)

OPENAPI_TAGS = [
    {"name": "System", "description": "Operational endpoints."},
    {"name": "Bookings", "description": "Booking creation and lifecycle transitions."},
    {"name": "Coupons", "description": "Coupon catalogue and discount previews."},
    {"name": "Payments", "description": "Payment status, gateway callbacks and refunds."},
    {"name": "Notifications", "description": "Per-user notification inbox."},
]

app = FastAPI(title="Booking Service", openapi_tags=OPENAPI_TAGS)

register_error_handlers(app)
app.add_middleware(RequestLoggingMiddleware)
if RATE_LIMIT_PER_MINUTE > 0:
    app.add_middleware(RateLimitMiddleware, max_per_minute=RATE_LIMIT_PER_MINUTE)

app.include_router(router)
register_subscribers(bus)

_consumer_conn = None
_consumer_task = None
_stop_event = asyncio.Event()


@app.get("/health", tags=["System"])
async def health():
    return {"status": "ok", "service": SERVICE_NAME, "events_enabled": publisher.enabled}


async def _run_consumer():
    global _consumer_conn
    _consumer_conn = await start_consumer_with_retry(_stop_event)


@app.on_event("startup")
async def startup():
    global _consumer_task
    try:
        await publisher.connect()
    except Exception as e:
        logger.warning("RabbitMQ connect failed at startup; continuing without events: %s", e)

    if RABBIT_URL:
        _consumer_task = asyncio.create_task(_run_consumer())


@app.on_event("shutdown")
async def shutdown():
    _stop_event.set()
    if _consumer_task:
        try:
            await _consumer_task
        except Exception as e:
            logger.warning("consumer task ended with error: %s", e)
    try:
        if _consumer_conn and not _consumer_conn.is_closed:
            await _consumer_conn.close()
    except Exception as e:
        logger.warning("closing consumer connection failed: %s", e)
    try:
        await publisher.close()
    except Exception as e:
        logger.warning("closing publisher failed: %s", e)
