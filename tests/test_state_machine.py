from datetime import date, timedelta

import pytest
from sqlalchemy import select, update

from booking_service import events as ev
from booking_service import state_machine as sm
from booking_service.constants import BookingStatus, PaymentStatus, Role
from booking_service.errors import (
    ConcurrentModification,
    CouponExhausted,
    ForbiddenError,
    InvalidStateTransition,
    NotFoundError,
    ValidationError,
)
from booking_service.models import Booking, Coupon, Notification, Payment
from booking_service.schemas import CreateBookingRequest


async def _status(session_factory, booking_id):
    async with session_factory() as s:
        res = await s.execute(select(Booking).where(Booking.id == booking_id))
        return res.scalar_one()


async def _payment(session_factory, payment_id):
    async with session_factory() as s:
        res = await s.execute(select(Payment).where(Payment.id == payment_id))
        return res.scalar_one()


async def _settle(session_factory, payment_id):
    async with session_factory() as s:
        await s.execute(
            update(Payment).where(Payment.id == payment_id).values(status=PaymentStatus.COMPLETED)
        )
        await s.commit()


async def _notifications(session_factory, user_id):
    async with session_factory() as s:
        res = await s.execute(select(Notification).where(Notification.user_id == user_id))
        return list(res.scalars().all())


# ---- creation ----

async def test_online_booking_starts_pending_with_payment(make_booking, gateway, bus):
    booking, payment = await make_booking()

    assert booking.status == BookingStatus.PENDING
    assert booking.sub_total == 1150
    assert booking.total_amount == 1150
    assert payment.status == PaymentStatus.PENDING
    assert payment.amount == 1150
    assert booking.payment_id == payment.id
    assert payment.gateway_order_id == "order_1"
    assert bus.types() == [ev.BOOKING_CREATED]


async def test_cash_booking_starts_confirmed_without_payment(make_booking, gateway):
    booking, payment = await make_booking(paymentMethod="cash")

    assert booking.status == BookingStatus.CONFIRMED
    assert payment is None
    assert booking.payment_id is None
    assert gateway.orders == []


async def test_creation_notifies_both_parties(make_booking, session_factory, seeded):
    booking, _ = await make_booking()

    for user_id, role in ((seeded.customer.id, Role.CUSTOMER), (seeded.worker.id, Role.WORKER)):
        [note] = await _notifications(session_factory, user_id)
        assert note.type == ev.BOOKING_CREATED
        assert note.recipient_role == role
        assert note.title == "New Booking"
        assert note.booking_id == booking.id
        assert note.action_url == f"/bookings/{booking.id}"


async def test_booking_with_coupon_stores_discount(make_booking, session_factory):
    booking, payment = await make_booking(couponCode="welcome25")

    assert booking.coupon_code == "WELCOME25"
    assert booking.discount_percentage == 25
    assert booking.discount_amount == 287.5
    assert booking.total_amount == 862.5
    assert payment.amount == 862.5

    async with session_factory() as s:
        res = await s.execute(select(Coupon.usage_count).where(Coupon.code == "WELCOME25"))
        assert res.scalar_one() == 1


async def test_per_customer_coupon_cap(make_booking):
    await make_booking(couponCode="WELCOME25")
    with pytest.raises(CouponExhausted) as exc:
        await make_booking(couponCode="WELCOME25", timeSlot="14:00-15:00")
    assert "maximum number of times" in exc.value.message


async def test_failed_booking_write_releases_coupon(make_booking, gateway, session_factory):
    async def broken_order(amount, receipt=None, request_id=None):
        raise RuntimeError("gateway down")

    gateway.create_order = broken_order

    with pytest.raises(RuntimeError):
        await make_booking(couponCode="FLAT200")

    async with session_factory() as s:
        res = await s.execute(select(Coupon.usage_count).where(Coupon.code == "FLAT200"))
        assert res.scalar_one() == 0
        res = await s.execute(select(Booking))
        assert res.scalars().all() == []


async def test_only_customers_create_bookings(make_booking, seeded):
    with pytest.raises(ForbiddenError):
        await make_booking(principal=seeded.worker)


async def test_worker_mismatch_is_rejected(make_booking):
    with pytest.raises(ValidationError) as exc:
        await make_booking(workerId="worker-2")
    assert exc.value.message == "Worker ID does not match the service provider"


async def test_unknown_worker_service(make_booking):
    with pytest.raises(NotFoundError):
        await make_booking(workerServiceId="missing")


async def test_address_must_belong_to_customer(make_booking, seeded):
    with pytest.raises(ForbiddenError):
        await make_booking(addressId=seeded.other_address.id)


async def test_booking_date_in_past_is_rejected(make_booking):
    with pytest.raises(ValidationError):
        await make_booking(bookingDate=(date.today() - timedelta(days=1)).isoformat())


# ---- transition table ----

@pytest.mark.parametrize("current", sorted(BookingStatus.TERMINAL))
@pytest.mark.parametrize("actor", [Role.CUSTOMER, Role.WORKER, Role.ADMIN])
def test_terminal_states_reject_everything(current, actor):
    for target in BookingStatus.ALL:
        with pytest.raises(InvalidStateTransition):
            sm.check_transition(current, target, actor)


@pytest.mark.parametrize(
    "current,target,actor",
    [
        ("pending", "confirmed", Role.WORKER),
        ("pending", "cancelled", Role.WORKER),
        ("confirmed", "in-progress", Role.WORKER),
        ("in-progress", "completed", Role.WORKER),
        ("pending", "cancelled", Role.CUSTOMER),
        ("confirmed", "cancelled", Role.CUSTOMER),
        ("in-progress", "cancelled", Role.ADMIN),
        ("pending", "completed", Role.ADMIN),
    ],
)
def test_allowed_edges(current, target, actor):
    sm.check_transition(current, target, actor)


def test_customer_can_never_complete_or_confirm():
    with pytest.raises(ForbiddenError):
        sm.check_transition("in-progress", "completed", Role.CUSTOMER)
    with pytest.raises(ForbiddenError):
        sm.check_transition("pending", "confirmed", Role.CUSTOMER)


def test_customer_cannot_cancel_work_in_progress():
    with pytest.raises(InvalidStateTransition):
        sm.check_transition("in-progress", "cancelled", Role.CUSTOMER)


def test_worker_cannot_complete_before_starting():
    with pytest.raises(InvalidStateTransition):
        sm.check_transition("confirmed", "completed", Role.WORKER)


# ---- worker actions ----

async def test_worker_accepts_pending_booking(make_booking, db, bus, seeded, session_factory):
    booking, _ = await make_booking()
    bus.emitted.clear()

    accepted = await sm.handle_request(db, booking.id, seeded.worker, "accept", bus)

    assert accepted.status == BookingStatus.CONFIRMED
    assert accepted.worker_response_time is not None
    [event] = bus.emitted
    assert event.type == ev.BOOKING_CONFIRMED
    assert [r.user_id for r in event.recipients] == [seeded.customer.id]

    notes = await _notifications(session_factory, seeded.customer.id)
    assert {n.type for n in notes} == {ev.BOOKING_CREATED, ev.BOOKING_CONFIRMED}


async def test_worker_rejects_with_reason(make_booking, db, bus, seeded, session_factory):
    booking, _ = await make_booking()
    bus.emitted.clear()

    rejected = await sm.handle_request(db, booking.id, seeded.worker, "reject", bus, rejection_reason="unavailable")

    assert rejected.status == BookingStatus.CANCELLED
    assert rejected.cancelled_by == Role.WORKER
    assert rejected.cancellation_reason == "unavailable"
    [event] = bus.emitted
    assert event.type == ev.BOOKING_CANCELLED
    assert [r.user_id for r in event.recipients] == [seeded.customer.id]

    [note] = [n for n in await _notifications(session_factory, seeded.customer.id) if n.type == ev.BOOKING_CANCELLED]
    assert note.message == "Booking has been cancelled by worker"


async def test_worker_reject_defaults_reason(make_booking, db, bus, seeded):
    booking, _ = await make_booking()
    rejected = await sm.reject_booking(db, booking.id, seeded.worker, bus)
    assert rejected.cancellation_reason == "Rejected by worker"


async def test_only_assigned_worker_handles_request(make_booking, db, bus, seeded):
    booking, _ = await make_booking()
    with pytest.raises(ForbiddenError):
        await sm.accept_booking(db, booking.id, seeded.other_worker, bus)


async def test_admin_accept_notifies_both(make_booking, db, bus, seeded):
    booking, _ = await make_booking()
    bus.emitted.clear()

    accepted = await sm.accept_booking(db, booking.id, seeded.admin, bus)

    assert accepted.status == BookingStatus.CONFIRMED
    assert accepted.worker_response_time is None
    [event] = bus.emitted
    assert {r.user_id for r in event.recipients} == {seeded.customer.id, seeded.worker.id}


async def test_reject_requires_pending(make_booking, db, bus, seeded):
    booking, _ = await make_booking(paymentMethod="cash")
    with pytest.raises(InvalidStateTransition):
        await sm.reject_booking(db, booking.id, seeded.worker, bus)


async def test_accept_twice_is_invalid(make_booking, db, bus, seeded):
    booking, _ = await make_booking()
    await sm.accept_booking(db, booking.id, seeded.worker, bus)
    with pytest.raises(InvalidStateTransition):
        await sm.accept_booking(db, booking.id, seeded.worker, bus)


async def test_full_lifecycle(make_booking, db, bus, seeded, session_factory):
    booking, _ = await make_booking(paymentMethod="cash")
    bus.emitted.clear()

    await sm.start_booking(db, booking.id, seeded.worker)
    assert bus.emitted == []

    completed = await sm.complete_booking(db, booking.id, seeded.worker, bus)
    assert completed.status == BookingStatus.COMPLETED
    assert completed.completed_at is not None
    [event] = bus.emitted
    assert event.type == ev.BOOKING_COMPLETED
    assert [r.user_id for r in event.recipients] == [seeded.customer.id]

    with pytest.raises(InvalidStateTransition):
        await sm.cancel_booking(db, booking.id, seeded.customer, bus)


async def test_admin_completion_notifies_both(make_booking, db, bus, seeded):
    booking, _ = await make_booking()
    bus.emitted.clear()

    await sm.complete_booking(db, booking.id, seeded.admin, bus)

    [event] = bus.emitted
    assert {r.user_id for r in event.recipients} == {seeded.customer.id, seeded.worker.id}


async def test_customer_status_update_to_completed_is_forbidden(make_booking, db, bus, seeded):
    booking, _ = await make_booking(paymentMethod="cash")
    await sm.start_booking(db, booking.id, seeded.worker)
    with pytest.raises(ForbiddenError):
        await sm.update_status(db, booking.id, seeded.customer, "completed", bus)


async def test_strangers_cannot_touch_a_booking(make_booking, db, bus, seeded):
    booking, _ = await make_booking()
    with pytest.raises(ForbiddenError):
        await sm.cancel_booking(db, booking.id, seeded.other_customer, bus)
    with pytest.raises(ForbiddenError):
        await sm.get_booking_for(db, booking.id, seeded.other_worker)


# ---- cancellation and payments ----

async def test_customer_cancel_of_paid_online_booking_flags_refund(make_booking, db, bus, seeded, session_factory):
    booking, payment = await make_booking()
    await sm.accept_booking(db, booking.id, seeded.worker, bus)
    await _settle(session_factory, payment.id)
    bus.emitted.clear()

    cancelled = await sm.cancel_booking(db, booking.id, seeded.customer, bus, reason="plans changed")

    assert cancelled.status == BookingStatus.CANCELLED
    assert cancelled.cancelled_by == Role.CUSTOMER
    assert cancelled.payment_status == "refund_pending"
    assert (await _payment(session_factory, payment.id)).status == PaymentStatus.REFUND_PENDING
    assert bus.types() == [ev.BOOKING_CANCELLED, ev.REFUND_INITIATED]
    assert {r.user_id for r in bus.emitted[0].recipients} == {seeded.customer.id, seeded.worker.id}


async def test_cancel_of_unpaid_online_booking_leaves_payment(make_booking, db, bus, seeded, session_factory):
    booking, payment = await make_booking()
    await sm.cancel_booking(db, booking.id, seeded.customer, bus)

    assert (await _payment(session_factory, payment.id)).status == PaymentStatus.PENDING
    assert bus.types()[-1] == ev.BOOKING_CANCELLED


async def test_cash_cancellation_touches_no_payment(make_booking, db, bus, seeded, session_factory):
    booking, _ = await make_booking(paymentMethod="cash")
    await sm.cancel_booking(db, booking.id, seeded.customer, bus)

    async with session_factory() as s:
        res = await s.execute(select(Payment))
        assert res.scalars().all() == []
    assert (await _status(session_factory, booking.id)).payment_status == "unpaid"


async def test_admin_cancel_records_admin(make_booking, db, bus, seeded):
    booking, _ = await make_booking(paymentMethod="cash")
    await sm.start_booking(db, booking.id, seeded.admin)
    cancelled = await sm.cancel_booking(db, booking.id, seeded.admin, bus)
    assert cancelled.cancelled_by == Role.ADMIN


async def test_cancellation_keeps_coupon_usage(make_booking, db, bus, seeded, session_factory):
    booking, _ = await make_booking(couponCode="FLAT200")
    await sm.cancel_booking(db, booking.id, seeded.customer, bus)

    async with session_factory() as s:
        res = await s.execute(select(Coupon.usage_count).where(Coupon.code == "FLAT200"))
        assert res.scalar_one() == 1


# ---- conditional writes ----

async def test_stale_status_write_raises_concurrent_modification(make_booking, db, seeded, session_factory):
    created, _ = await make_booking()
    booking = await sm.get_booking(db, created.id)

    # another request confirms the booking after we read it
    async with session_factory() as other:
        await other.execute(
            update(Booking).where(Booking.id == created.id).values(status=BookingStatus.CONFIRMED)
        )
        await other.commit()

    assert booking.status == BookingStatus.PENDING
    with pytest.raises(ConcurrentModification):
        await sm.apply_transition(db, booking, BookingStatus.CANCELLED, Role.CUSTOMER)

    assert (await _status(session_factory, created.id)).status == BookingStatus.CONFIRMED


async def test_notes_update_emits_booking_updated(make_booking, db, bus, seeded):
    booking, _ = await make_booking()
    bus.emitted.clear()

    updated = await sm.update_notes(db, booking.id, seeded.customer, "Gate code 4411", bus)

    assert updated.notes == "Gate code 4411"
    [event] = bus.emitted
    assert event.type == ev.BOOKING_UPDATED
    assert {r.user_id for r in event.recipients} == {seeded.customer.id, seeded.worker.id}


async def test_list_bookings_filters_by_party(make_booking, db, seeded):
    await make_booking()
    await make_booking(principal=seeded.other_customer, addressId=seeded.other_address.id)

    assert len(await sm.list_bookings(db)) == 2
    mine = await sm.list_bookings(db, customer_id=seeded.customer.id)
    assert [b.customer_id for b in mine] == [seeded.customer.id]
    assert len(await sm.list_bookings(db, worker_id=seeded.worker.id)) == 2


def test_create_request_parses_time_slot():
    data = CreateBookingRequest.model_validate({
        "workerId": "w",
        "workerServiceId": "ws",
        "address_id": "a",
        "bookingDate": "2030-01-01",
        "timeSlot": "' 09:00 - 11:30 '",
        "paymentMethod": "cash",
    })
    assert data.slot == ("09:00", "11:30")
    assert data.address_id == "a"
