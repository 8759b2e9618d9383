from .redis_client import redis_client

IDEMPOTENCY_TTL_SECONDS = 60 * 60 * 24


def processed_key(event_id: str) -> str:
    return f"booking-service:processed_event:{event_id}"


async def mark_processed(event_id: str) -> bool:
    """Claim an event id; returns False when another consumer already claimed it."""
    claimed = await redis_client.set(processed_key(event_id), "1", ex=IDEMPOTENCY_TTL_SECONDS, nx=True)
    return bool(claimed)


async def release_claim(event_id: str) -> None:
    await redis_client.delete(processed_key(event_id))
