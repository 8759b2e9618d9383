"""Booking lifecycle: creation, status transitions and their side effects.

Allowed moves are a table keyed by actor. Every status write is conditional
on the status the caller read, so two racing requests cannot both apply a
transition; the loser gets ConcurrentModification.
"""
import logging
from datetime import date

from sqlalchemy import select, update

from . import events as ev
from .constants import BookingStatus, CancelledBy, PaymentMethod, Role
from .coupons import redeem_coupon, release_usage
from .errors import (
    ConcurrentModification,
    ForbiddenError,
    InvalidStateTransition,
    NotFoundError,
    ValidationError,
)
from .event_bus import EventBus
from .events import BookingEvent, PaymentEvent, Recipient
from .gateway import PaymentGateway
from .models import Address, Booking, Service, WorkerService, utcnow
from .payments import attach_payment, react_to_cancellation
from .pricing import NO_DISCOUNT, calculate_price, sub_total_for
from .schemas import CreateBookingRequest
from .security import Principal

logger = logging.getLogger(__name__)

PENDING = BookingStatus.PENDING
CONFIRMED = BookingStatus.CONFIRMED
IN_PROGRESS = BookingStatus.IN_PROGRESS
COMPLETED = BookingStatus.COMPLETED
CANCELLED = BookingStatus.CANCELLED

TRANSITIONS = {
    Role.CUSTOMER: frozenset({
        (PENDING, CANCELLED),
        (CONFIRMED, CANCELLED),
    }),
    Role.WORKER: frozenset({
        (PENDING, CONFIRMED),
        (PENDING, CANCELLED),
        (PENDING, IN_PROGRESS),
        (CONFIRMED, IN_PROGRESS),
        (IN_PROGRESS, COMPLETED),
    }),
    Role.ADMIN: frozenset({
        (PENDING, CONFIRMED),
        (PENDING, IN_PROGRESS),
        (CONFIRMED, IN_PROGRESS),
        *((src, dst) for src in (PENDING, CONFIRMED, IN_PROGRESS) for dst in (CANCELLED, COMPLETED)),
    }),
}

DEFAULT_REJECTION_REASON = "Rejected by worker"


def actor_for(booking: Booking, principal: Principal) -> str:
    """Which side of the booking the caller acts as; strangers are refused."""
    if principal.is_admin:
        return Role.ADMIN
    if principal.role == Role.CUSTOMER and principal.id == booking.customer_id:
        return Role.CUSTOMER
    if principal.role == Role.WORKER and principal.id == booking.worker_id:
        return Role.WORKER
    raise ForbiddenError("Not authorized to update this booking")


def check_transition(current: str, target: str, actor: str) -> None:
    if current in BookingStatus.TERMINAL:
        raise InvalidStateTransition(f"Cannot update a {current} booking")

    allowed = TRANSITIONS.get(actor, frozenset())
    if target not in {dst for _, dst in allowed}:
        raise ForbiddenError(f"A {actor} cannot mark a booking as {target}")
    if (current, target) not in allowed:
        raise InvalidStateTransition(f"Cannot move a booking from {current} to {target}")


def _customer(booking: Booking) -> Recipient:
    return Recipient(booking.customer_id, Role.CUSTOMER)


def _worker(booking: Booking) -> Recipient:
    return Recipient(booking.worker_id, Role.WORKER)


def _both(booking: Booking) -> list[Recipient]:
    return [_customer(booking), _worker(booking)]


async def get_booking(db, booking_id: str) -> Booking:
    res = await db.execute(select(Booking).where(Booking.id == booking_id))
    booking = res.scalar_one_or_none()
    if not booking:
        raise NotFoundError("Booking not found")
    return booking


async def get_booking_for(db, booking_id: str, principal: Principal) -> Booking:
    booking = await get_booking(db, booking_id)
    if not principal.is_admin and principal.id not in (booking.customer_id, booking.worker_id):
        raise ForbiddenError("Not authorized to view this booking")
    return booking


async def list_bookings(db, customer_id: str | None = None, worker_id: str | None = None) -> list[Booking]:
    stmt = select(Booking)
    if customer_id:
        stmt = stmt.where(Booking.customer_id == customer_id)
    if worker_id:
        stmt = stmt.where(Booking.worker_id == worker_id)
    res = await db.execute(stmt.order_by(Booking.booking_date.desc(), Booking.created_at.desc()))
    return list(res.scalars().all())


async def apply_transition(db, booking: Booking, target: str, actor: str, **values) -> Booking:
    """Conditionally write the new status; the caller commits."""
    check_transition(booking.status, target, actor)

    expected = booking.status
    res = await db.execute(
        update(Booking)
        .where(Booking.id == booking.id, Booking.status == expected)
        .values(status=target, updated_at=utcnow(), **values)
        .execution_options(synchronize_session=False)
    )
    if res.rowcount != 1:
        await db.rollback()
        raise ConcurrentModification()

    await db.refresh(booking)
    logger.info("booking %s %s -> %s by %s", booking.id, expected, target, actor)
    return booking


# ---- Creation ----

async def _load_offering(db, data: CreateBookingRequest, principal: Principal):
    res = await db.execute(select(WorkerService).where(WorkerService.id == data.worker_service_id))
    worker_service = res.scalar_one_or_none()
    if not worker_service:
        raise NotFoundError("Worker service not found")
    if not worker_service.is_active:
        raise ValidationError("Worker service is not available")
    if worker_service.worker_id != data.worker_id:
        raise ValidationError("Worker ID does not match the service provider")

    res = await db.execute(select(Service).where(Service.id == worker_service.service_id))
    service = res.scalar_one_or_none()

    res = await db.execute(select(Address).where(Address.id == data.address_id))
    address = res.scalar_one_or_none()
    if not address:
        raise NotFoundError("Address not found")
    if address.user_id != principal.id:
        raise ForbiddenError("Address does not belong to this customer")

    return worker_service, service


async def create_booking(db, principal: Principal, data: CreateBookingRequest, bus: EventBus,
                         gateway: PaymentGateway | None = None, request_id: str | None = None):
    """Create a booking and, for online payment, its pending payment.

    Returns (booking, payment or None, price breakdown). The coupon use is
    reserved before the booking is written and released if the write fails.
    """
    if principal.role != Role.CUSTOMER:
        raise ForbiddenError("Only customers can create bookings")
    if data.booking_date < date.today():
        raise ValidationError("Booking date cannot be in the past")

    worker_service, service = await _load_offering(db, data, principal)
    start, end = data.slot

    coupon_id = None
    discount = NO_DISCOUNT
    if data.coupon_code:
        _, sub_total = sub_total_for(worker_service.custom_price)
        coupon, discount = await redeem_coupon(db, data.coupon_code, sub_total, service, principal.id)
        # rollback expires the instance
        coupon_id = coupon.id

    breakdown = calculate_price(worker_service.custom_price, discount)
    online = data.payment_method == PaymentMethod.ONLINE

    try:
        booking = Booking(
            customer_id=principal.id,
            worker_id=data.worker_id,
            worker_service_id=worker_service.id,
            address_id=data.address_id,
            booking_date=data.booking_date,
            slot_start=start,
            slot_end=end,
            sub_total=breakdown.sub_total,
            coupon_code=breakdown.discount.coupon_code,
            discount_percentage=breakdown.discount.percentage,
            discount_amount=breakdown.discount.discount_amount,
            total_amount=breakdown.total_amount,
            status=PENDING if online else CONFIRMED,
            payment_method=data.payment_method,
            notes=data.notes,
            cancelled_by=CancelledBy.NONE,
        )
        db.add(booking)
        await db.flush()

        payment = None
        if online:
            payment = await attach_payment(db, booking, breakdown.total_amount, gateway, request_id)

        await db.commit()
    except Exception:
        await db.rollback()
        if coupon_id is not None:
            await release_usage(db, coupon_id)
        raise

    logger.info("booking %s created (%s, total=%.2f)", booking.id, booking.status, booking.total_amount)
    await bus.emit(BookingEvent.from_booking(ev.BOOKING_CREATED, booking, _both(booking)))
    return booking, payment, breakdown


# ---- Transitions ----

async def accept_booking(db, booking_id: str, principal: Principal, bus: EventBus) -> Booking:
    booking = await get_booking(db, booking_id)
    actor = actor_for(booking, principal)
    if actor not in (Role.WORKER, Role.ADMIN):
        raise ForbiddenError("Not authorized to handle this booking")

    values = {"worker_response_time": utcnow()} if actor == Role.WORKER else {}
    await apply_transition(db, booking, CONFIRMED, actor, **values)
    await db.commit()

    recipients = [_customer(booking)] if actor == Role.WORKER else _both(booking)
    await bus.emit(BookingEvent.from_booking(ev.BOOKING_CONFIRMED, booking, recipients))
    return booking


async def reject_booking(db, booking_id: str, principal: Principal, bus: EventBus,
                         reason: str | None = None) -> Booking:
    booking = await get_booking(db, booking_id)
    actor = actor_for(booking, principal)
    if actor not in (Role.WORKER, Role.ADMIN):
        raise ForbiddenError("Not authorized to handle this booking")
    if booking.status != PENDING:
        raise InvalidStateTransition("Cannot reject booking that is not in pending state")
    return await cancel_booking(db, booking_id, principal, bus, reason, booking=booking)


async def handle_request(db, booking_id: str, principal: Principal, action: str, bus: EventBus,
                         rejection_reason: str | None = None) -> Booking:
    if action == "accept":
        return await accept_booking(db, booking_id, principal, bus)
    if action == "reject":
        return await reject_booking(db, booking_id, principal, bus, rejection_reason)
    raise ValidationError('Invalid action. Must be either "accept" or "reject"')


async def start_booking(db, booking_id: str, principal: Principal) -> Booking:
    booking = await get_booking(db, booking_id)
    actor = actor_for(booking, principal)
    await apply_transition(db, booking, IN_PROGRESS, actor)
    await db.commit()
    return booking


async def complete_booking(db, booking_id: str, principal: Principal, bus: EventBus) -> Booking:
    booking = await get_booking(db, booking_id)
    actor = actor_for(booking, principal)
    await apply_transition(db, booking, COMPLETED, actor, completed_at=utcnow())
    await db.commit()

    recipients = _both(booking) if actor == Role.ADMIN else [_customer(booking)]
    await bus.emit(BookingEvent.from_booking(ev.BOOKING_COMPLETED, booking, recipients))
    return booking


async def cancel_booking(db, booking_id: str, principal: Principal, bus: EventBus,
                         reason: str | None = None, booking: Booking | None = None) -> Booking:
    booking = booking or await get_booking(db, booking_id)
    actor = actor_for(booking, principal)

    values = {"cancelled_by": actor, "cancellation_reason": reason}
    if actor == Role.WORKER:
        values["cancellation_reason"] = reason or DEFAULT_REJECTION_REASON
        values["worker_response_time"] = utcnow()

    await apply_transition(db, booking, CANCELLED, actor, **values)
    refund = await react_to_cancellation(db, booking)
    await db.commit()

    # a worker turning down a request only needs to tell the customer
    recipients = [_customer(booking)] if actor == Role.WORKER else _both(booking)
    await bus.emit(BookingEvent.from_booking(ev.BOOKING_CANCELLED, booking, recipients))
    if refund is not None:
        await bus.emit(PaymentEvent.from_payment(ev.REFUND_INITIATED, refund, [_customer(booking)]))
    return booking


async def update_status(db, booking_id: str, principal: Principal, status: str, bus: EventBus,
                        reason: str | None = None) -> Booking:
    if status == COMPLETED:
        return await complete_booking(db, booking_id, principal, bus)
    if status == CANCELLED:
        return await cancel_booking(db, booking_id, principal, bus, reason)
    raise ValidationError("Invalid status. Must be one of: completed, cancelled")


async def update_notes(db, booking_id: str, principal: Principal, notes: str, bus: EventBus) -> Booking:
    booking = await get_booking_for(db, booking_id, principal)
    if booking.status in BookingStatus.TERMINAL:
        raise InvalidStateTransition(f"Cannot update a {booking.status} booking")

    booking.notes = notes
    booking.updated_at = utcnow()
    await db.commit()

    await bus.emit(BookingEvent.from_booking(ev.BOOKING_UPDATED, booking, _both(booking)))
    return booking
