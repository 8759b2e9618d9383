import logging
import os

SERVICE_NAME = "booking-service"

DATABASE_URL = os.getenv("BOOKING_DB")
if not DATABASE_URL:
    raise RuntimeError("BOOKING_DB environment variable is not set")

JWT_SECRET = os.getenv("JWT_SECRET")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM") or "HS256"

if not JWT_SECRET:
    raise RuntimeError("JWT_SECRET environment variable is not set")

REDIS_URL = os.getenv("REDIS_URL")
RABBIT_URL = os.getenv("RABBIT_URL")  # optional in dev, required if you want events

PAYMENT_GATEWAY_URL = os.getenv("PAYMENT_GATEWAY_URL")  # gateway calls are skipped when unset
PAYMENT_GATEWAY_KEY = os.getenv("PAYMENT_GATEWAY_KEY") or ""
PAYMENT_WEBHOOK_SECRET = os.getenv("PAYMENT_WEBHOOK_SECRET") or ""

SERVICE_FEE_RATE = float(os.getenv("SERVICE_FEE_RATE") or "0.15")
CURRENCY = os.getenv("CURRENCY") or "INR"

RATE_LIMIT_PER_MINUTE = int(os.getenv("RATE_LIMIT_PER_MINUTE") or "120")

DEBUG = (os.getenv("DEBUG") or "").strip().lower() in {"1", "true", "yes", "on"}
LOG_LEVEL = os.getenv("LOG_LEVEL") or ("DEBUG" if DEBUG else "INFO")


def configure_logging():
    logging.basicConfig(
        level=LOG_LEVEL,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
