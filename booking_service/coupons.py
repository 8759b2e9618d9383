import logging
from datetime import datetime, timezone

from sqlalchemy import func, select, update

from .constants import CouponType
from .errors import CouponExhausted, CouponMinOrderNotMet, CouponNotApplicable, CouponNotFound
from .models import Booking, Coupon, Service
from .pricing import Discount, money

logger = logging.getLogger(__name__)


def normalize_code(code: str) -> str:
    return (code or "").strip().upper()


def as_utc(dt: datetime) -> datetime:
    # sqlite hands back naive datetimes; everything is stored in UTC
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


async def get_coupon_by_code(db, code: str) -> Coupon | None:
    res = await db.execute(select(Coupon).where(Coupon.code == normalize_code(code)))
    return res.scalar_one_or_none()


async def list_active_coupons(db, now: datetime | None = None) -> list[Coupon]:
    now = now or datetime.now(timezone.utc)
    res = await db.execute(select(Coupon).where(Coupon.is_active.is_(True)).order_by(Coupon.valid_until))
    return [c for c in res.scalars().all() if as_utc(c.valid_until) >= now]


def is_applicable(coupon: Coupon, service: Service | None) -> bool:
    services = coupon.applicable_services or []
    categories = coupon.applicable_categories or []
    if not services and not categories:
        return True
    if service is None:
        return False
    return service.id in services or (service.category_id is not None and service.category_id in categories)


def compute_discount(coupon: Coupon, sub_total: float) -> Discount:
    if coupon.type == CouponType.PERCENTAGE:
        amount = sub_total * coupon.value / 100
        if coupon.max_discount is not None and amount > coupon.max_discount:
            amount = coupon.max_discount
        percentage = coupon.value
    else:
        amount = coupon.value
        percentage = 0

    return Discount(
        coupon_code=coupon.code,
        percentage=percentage,
        discount_amount=money(min(max(amount, 0), sub_total)),
    )


def evaluate_coupon(
    coupon: Coupon | None,
    sub_total: float,
    service: Service | None,
    now: datetime | None = None,
) -> Discount:
    """Check a coupon against an order and return the discount it grants.

    Raises the CouponError subtype matching the first failed rule.
    """
    now = now or datetime.now(timezone.utc)

    if coupon is None or not coupon.is_active:
        raise CouponNotFound()
    if not (as_utc(coupon.valid_from) <= now <= as_utc(coupon.valid_until)):
        raise CouponNotFound()

    if coupon.max_usage is not None and coupon.usage_count >= coupon.max_usage:
        raise CouponExhausted()

    if sub_total < (coupon.min_order_value or 0):
        raise CouponMinOrderNotMet(
            f"Minimum order value of {coupon.min_order_value:.2f} required for this coupon"
        )

    if not is_applicable(coupon, service):
        raise CouponNotApplicable()

    return compute_discount(coupon, sub_total)


async def customer_redemptions(db, coupon_code: str, customer_id: str) -> int:
    res = await db.execute(
        select(func.count(Booking.id)).where(
            Booking.customer_id == customer_id,
            Booking.coupon_code == coupon_code,
        )
    )
    return int(res.scalar_one())


async def reserve_usage(db, coupon: Coupon) -> None:
    """Atomically take one use of the coupon, guarded by the usage cap."""
    stmt = update(Coupon).where(Coupon.id == coupon.id)
    if coupon.max_usage is not None:
        stmt = stmt.where(Coupon.usage_count < Coupon.max_usage)
    stmt = stmt.values(usage_count=Coupon.usage_count + 1).execution_options(synchronize_session=False)

    res = await db.execute(stmt)
    if res.rowcount != 1:
        await db.rollback()
        raise CouponExhausted()
    await db.commit()
    logger.info("reserved coupon %s", coupon.code)


async def release_usage(db, coupon_id: str) -> None:
    """Give back a reservation whose booking was never created."""
    try:
        await db.execute(
            update(Coupon)
            .where(Coupon.id == coupon_id, Coupon.usage_count > 0)
            .values(usage_count=Coupon.usage_count - 1)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
    except Exception:
        # the caller re-raises the creation error
        logger.exception("failed to release reservation on coupon %s", coupon_id)


async def check_coupon(db, code: str, sub_total: float, service: Service | None, customer_id: str):
    """Run every coupon rule for one customer without reserving; returns (coupon, discount)."""
    coupon = await get_coupon_by_code(db, code)
    discount = evaluate_coupon(coupon, sub_total, service)

    if coupon.max_usage_per_user:
        used = await customer_redemptions(db, coupon.code, customer_id)
        if used >= coupon.max_usage_per_user:
            raise CouponExhausted("You have already used this coupon the maximum number of times")

    return coupon, discount


async def redeem_coupon(db, code: str, sub_total: float, service: Service | None, customer_id: str):
    """Validate and reserve a coupon for a new booking; returns (coupon, discount)."""
    coupon, discount = await check_coupon(db, code, sub_total, service, customer_id)
    await reserve_usage(db, coupon)
    return coupon, discount
