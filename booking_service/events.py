import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

# ---- Lifecycle event types ----

BOOKING_CREATED = "booking_created"
BOOKING_CONFIRMED = "booking_confirmed"
BOOKING_UPDATED = "booking_updated"
BOOKING_CANCELLED = "booking_cancelled"
BOOKING_COMPLETED = "booking_completed"

PAYMENT_COMPLETED = "payment_completed"
PAYMENT_FAILED = "payment_failed"
REFUND_INITIATED = "refund_initiated"
REFUND_COMPLETED = "refund_completed"

BOOKING_EVENTS = (BOOKING_CREATED, BOOKING_CONFIRMED, BOOKING_UPDATED, BOOKING_CANCELLED, BOOKING_COMPLETED)
PAYMENT_EVENTS = (PAYMENT_COMPLETED, PAYMENT_FAILED, REFUND_INITIATED, REFUND_COMPLETED)


@dataclass(frozen=True)
class Recipient:
    user_id: str
    role: str


@dataclass(frozen=True)
class BookingEvent:
    type: str
    booking_id: str
    status: str
    customer_id: str
    worker_id: str
    cancelled_by: str
    recipients: tuple[Recipient, ...]
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def from_booking(cls, event_type: str, booking, recipients) -> "BookingEvent":
        return cls(
            type=event_type,
            booking_id=booking.id,
            status=booking.status,
            customer_id=booking.customer_id,
            worker_id=booking.worker_id,
            cancelled_by=booking.cancelled_by,
            recipients=tuple(recipients),
        )

    def payload(self) -> dict[str, Any]:
        return {
            "booking_id": self.booking_id,
            "status": self.status,
            "customer_id": self.customer_id,
            "worker_id": self.worker_id,
            "cancelled_by": self.cancelled_by,
        }


@dataclass(frozen=True)
class PaymentEvent:
    type: str
    payment_id: str
    booking_id: str
    amount: float
    status: str
    recipients: tuple[Recipient, ...]
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def from_payment(cls, event_type: str, payment, recipients) -> "PaymentEvent":
        return cls(
            type=event_type,
            payment_id=payment.id,
            booking_id=payment.booking_id,
            amount=payment.amount,
            status=payment.status,
            recipients=tuple(recipients),
        )

    def payload(self) -> dict[str, Any]:
        return {
            "payment_id": self.payment_id,
            "booking_id": self.booking_id,
            "amount": self.amount,
            "status": self.status,
        }


# ---- Wire envelope ----

def routing_key(event_type: str) -> str:
    # booking_created -> booking.created
    return event_type.replace("_", ".", 1)


def build_event(event_type: str, data: dict) -> dict:
    return {
        "event_id": str(uuid.uuid4()),
        "event_type": event_type,
        "occurred_at": datetime.now(timezone.utc).isoformat(),
        "data": data,
    }


def to_json(event: dict) -> str:
    return json.dumps(event, separators=(",", ":"), ensure_ascii=False, default=str)
