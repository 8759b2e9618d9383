import logging

from sqlalchemy import select

from . import events as ev
from .constants import BookingPaymentStatus, BookingStatus, PaymentMethod, PaymentStatus, Role
from .errors import ExternalServiceError, InvalidStateTransition, NotFoundError, ValidationError
from .events import PaymentEvent, Recipient
from .gateway import PaymentGateway
from .models import Booking, Payment, utcnow

logger = logging.getLogger(__name__)

CALLBACK_STATUSES = (PaymentStatus.PROCESSING, PaymentStatus.COMPLETED, PaymentStatus.FAILED)
OPEN_STATUSES = (PaymentStatus.PENDING, PaymentStatus.PROCESSING)
REFUNDABLE_STATUSES = (PaymentStatus.COMPLETED, PaymentStatus.REFUND_PENDING)


def payment_to_dict(p: Payment) -> dict:
    return {
        "id": p.id,
        "bookingId": p.booking_id,
        "customerId": p.customer_id,
        "workerId": p.worker_id,
        "amount": p.amount,
        "status": p.status,
        "transactionId": p.transaction_id,
        "gatewayOrderId": p.gateway_order_id,
        "refundId": p.refund_id,
        "refundReason": p.refund_reason,
        "createdAt": p.created_at.isoformat() if p.created_at else None,
        "updatedAt": p.updated_at.isoformat() if p.updated_at else None,
    }


async def get_payment(db, payment_id: str) -> Payment:
    res = await db.execute(select(Payment).where(Payment.id == payment_id))
    payment = res.scalar_one_or_none()
    if not payment:
        raise NotFoundError("Payment not found")
    return payment


async def get_booking_payment(db, booking: Booking) -> Payment | None:
    if booking.payment_id:
        res = await db.execute(select(Payment).where(Payment.id == booking.payment_id))
    else:
        res = await db.execute(
            select(Payment).where(Payment.booking_id == booking.id).order_by(Payment.created_at.desc())
        )
    return res.scalars().first()


async def attach_payment(db, booking: Booking, amount: float, gateway: PaymentGateway | None = None,
                         request_id: str | None = None) -> Payment:
    """Create the pending payment for an online booking inside the caller's transaction."""
    payment = Payment(
        booking_id=booking.id,
        customer_id=booking.customer_id,
        worker_id=booking.worker_id,
        amount=amount,
        status=PaymentStatus.PENDING,
    )
    db.add(payment)
    await db.flush()

    if gateway is not None:
        payment.gateway_order_id = await gateway.create_order(amount, receipt=f"bk_{booking.id}", request_id=request_id)

    booking.payment_id = payment.id
    booking.payment_status = BookingPaymentStatus.UNPAID
    return payment


async def react_to_cancellation(db, booking: Booking) -> Payment | None:
    """Flag a settled online payment for refund once its booking is cancelled.

    The refund itself is issued out-of-band through the gateway.
    """
    if booking.payment_method != PaymentMethod.ONLINE:
        return None

    payment = await get_booking_payment(db, booking)
    if payment is None or payment.status != PaymentStatus.COMPLETED:
        return None

    payment.status = PaymentStatus.REFUND_PENDING
    payment.updated_at = utcnow()
    booking.payment_status = BookingPaymentStatus.REFUND_PENDING
    logger.info("payment %s for booking %s marked refund_pending", payment.id, booking.id)
    return payment


def _parties(payment: Payment, *roles: str) -> list[Recipient]:
    recipients = []
    if Role.CUSTOMER in roles:
        recipients.append(Recipient(payment.customer_id, Role.CUSTOMER))
    if Role.WORKER in roles:
        recipients.append(Recipient(payment.worker_id, Role.WORKER))
    return recipients


async def react_to_payment_callback(db, payment: Payment, new_status: str,
                                    transaction_id: str | None = None) -> list[PaymentEvent]:
    """Apply a gateway status report to a payment and its booking.

    Commits the change and returns the events to emit. A repeated report of
    the current status is a no-op.
    """
    if new_status not in CALLBACK_STATUSES:
        raise ValidationError(f"Invalid payment status. Must be one of: {', '.join(CALLBACK_STATUSES)}")

    if payment.status == new_status:
        return []

    if payment.status not in OPEN_STATUSES:
        raise InvalidStateTransition(f"Cannot move payment from {payment.status} to {new_status}")

    payment.status = new_status
    payment.updated_at = utcnow()
    if transaction_id:
        payment.transaction_id = transaction_id

    res = await db.execute(select(Booking).where(Booking.id == payment.booking_id))
    booking = res.scalar_one_or_none()

    events: list[PaymentEvent] = []
    if new_status == PaymentStatus.COMPLETED and booking is not None and booking.status == BookingStatus.CANCELLED:
        # settled after cancellation
        payment.status = PaymentStatus.REFUND_PENDING
        booking.payment_status = BookingPaymentStatus.REFUND_PENDING
        logger.info("payment %s settled on cancelled booking %s, marked refund_pending", payment.id, booking.id)
        events.append(PaymentEvent.from_payment(ev.REFUND_INITIATED, payment, _parties(payment, Role.CUSTOMER)))
    elif new_status == PaymentStatus.COMPLETED:
        if booking is not None:
            booking.payment_status = BookingPaymentStatus.PAID
        events.append(PaymentEvent.from_payment(ev.PAYMENT_COMPLETED, payment, _parties(payment, Role.CUSTOMER, Role.WORKER)))
    elif new_status == PaymentStatus.FAILED:
        # booking status is left alone, the customer can retry payment
        events.append(PaymentEvent.from_payment(ev.PAYMENT_FAILED, payment, _parties(payment, Role.CUSTOMER)))

    await db.commit()
    return events


async def refund_payment(db, payment: Payment, gateway: PaymentGateway, reason: str | None = None,
                         request_id: str | None = None) -> list[PaymentEvent]:
    if payment.status not in REFUNDABLE_STATUSES:
        raise InvalidStateTransition("Only completed payments can be refunded")
    if payment.refund_id:
        raise InvalidStateTransition("Refund already initiated for this payment")

    if not payment.transaction_id:
        raise InvalidStateTransition("Payment has no gateway transaction to refund")

    refund_id = await gateway.refund(payment.transaction_id, payment.amount, request_id=request_id)
    if not refund_id:
        raise ExternalServiceError("Payment gateway did not issue a refund")

    payment.refund_id = refund_id
    payment.status = PaymentStatus.REFUNDED
    payment.refund_reason = reason
    payment.updated_at = utcnow()

    res = await db.execute(select(Booking).where(Booking.id == payment.booking_id))
    booking = res.scalar_one_or_none()
    if booking is not None:
        booking.payment_status = BookingPaymentStatus.REFUNDED

    await db.commit()
    return [PaymentEvent.from_payment(ev.REFUND_COMPLETED, payment, _parties(payment, Role.CUSTOMER, Role.WORKER))]
