import asyncio
import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import select

from .config import configure_logging
from .constants import CouponType
from .db import SessionLocal
from .models import Coupon

logger = logging.getLogger(__name__)

# (code, type, value, max_discount, min_order_value, days valid, max_usage, per-user cap, description)
DEFAULT_COUPONS = [
    ("WELCOME25", CouponType.PERCENTAGE, 25, 500, 500, 30, 100, 1,
     "Welcome discount for new customers - 25% off up to 500"),
    ("FLAT200", CouponType.FIXED, 200, None, 1000, 60, 50, None,
     "Flat 200 off on orders above 1000"),
    ("SPECIAL15", CouponType.PERCENTAGE, 15, 300, 800, 15, 75, None,
     "15% off up to 300 on orders above 800"),
    ("FLASH50", CouponType.PERCENTAGE, 50, 1000, 2000, 2, 25, None,
     "Flash sale! 50% off up to 1000 on orders above 2000"),
]


async def seed_coupons(db, now: datetime | None = None) -> list[Coupon]:
    """Insert the default coupons that are not present yet; existing codes are left alone."""
    now = now or datetime.now(timezone.utc)
    res = await db.execute(select(Coupon.code))
    existing = set(res.scalars().all())

    created = []
    for code, kind, value, max_discount, min_order, days, max_usage, per_user, description in DEFAULT_COUPONS:
        if code in existing:
            continue
        created.append(Coupon(
            code=code,
            type=kind,
            value=value,
            max_discount=max_discount,
            min_order_value=min_order,
            valid_from=now,
            valid_until=now + timedelta(days=days),
            description=description,
            max_usage=max_usage,
            max_usage_per_user=per_user,
        ))

    db.add_all(created)
    await db.commit()
    return created


async def main():
    async with SessionLocal() as db:
        created = await seed_coupons(db)
    for coupon in created:
        logger.info("seeded coupon %s (%s %s)", coupon.code, coupon.type, coupon.value)
    logger.info("%d coupon(s) seeded", len(created))


if __name__ == "__main__":
    configure_logging()
    asyncio.run(main())
