import asyncio
import logging

from sqlalchemy import func, select, update

from . import events as ev
from .db import SessionLocal
from .event_bus import ALL_EVENTS, EventBus
from .events import BookingEvent, PaymentEvent, Recipient, build_event, routing_key, to_json
from .models import Notification, utcnow
from .rabbitmq import RabbitPublisher, publisher

logger = logging.getLogger(__name__)

BOOKING_TITLES = {
    ev.BOOKING_CREATED: "New Booking",
    ev.BOOKING_CONFIRMED: "Booking Confirmed",
    ev.BOOKING_UPDATED: "Booking Updated",
    ev.BOOKING_CANCELLED: "Booking Cancelled",
    ev.BOOKING_COMPLETED: "Booking Completed",
}

PAYMENT_TITLES = {
    ev.PAYMENT_COMPLETED: "Payment Successful",
    ev.PAYMENT_FAILED: "Payment Failed",
    ev.REFUND_INITIATED: "Refund Initiated",
    ev.REFUND_COMPLETED: "Refund Processed",
}


def booking_message(event: BookingEvent) -> str:
    if event.type == ev.BOOKING_CREATED:
        return "A new booking has been created"
    if event.type == ev.BOOKING_CONFIRMED:
        return "Your booking has been accepted by the worker"
    if event.type == ev.BOOKING_UPDATED:
        return f"Booking details have been updated (status: {event.status})"
    if event.type == ev.BOOKING_CANCELLED:
        return f"Booking has been cancelled by {event.cancelled_by}"
    if event.type == ev.BOOKING_COMPLETED:
        return "Booking has been marked as completed"
    raise ValueError(f"Unknown booking event type: {event.type}")


def payment_message(event: PaymentEvent) -> str:
    amount = f"{event.amount:.2f}"
    if event.type == ev.PAYMENT_COMPLETED:
        return f"Payment of {amount} received successfully"
    if event.type == ev.PAYMENT_FAILED:
        return f"Payment of {amount} failed"
    if event.type == ev.REFUND_INITIATED:
        return f"Refund of {amount} initiated"
    if event.type == ev.REFUND_COMPLETED:
        return f"Refund of {amount} processed successfully"
    raise ValueError(f"Unknown payment event type: {event.type}")


def render(event) -> dict:
    """Build the notification fields for an event from the closed message tables."""
    if isinstance(event, BookingEvent):
        return {
            "type": event.type,
            "category": "booking",
            "title": BOOKING_TITLES[event.type],
            "message": booking_message(event),
            "priority": "high",
            "metadata": {
                "bookingId": event.booking_id,
                "status": event.status,
                "timestamp": event.occurred_at.isoformat(),
            },
            "action_url": f"/bookings/{event.booking_id}",
            "booking_id": event.booking_id,
        }
    if isinstance(event, PaymentEvent):
        return {
            "type": event.type,
            "category": "payment",
            "title": PAYMENT_TITLES[event.type],
            "message": payment_message(event),
            "priority": "high",
            "metadata": {
                "bookingId": event.booking_id,
                "paymentId": event.payment_id,
                "amount": event.amount,
                "status": event.status,
                "timestamp": event.occurred_at.isoformat(),
            },
            "action_url": f"/bookings/{event.booking_id}",
            "booking_id": event.booking_id,
        }
    raise TypeError(f"Unsupported event: {event!r}")


def notification_to_dict(n: Notification) -> dict:
    return {
        "id": n.id,
        "userId": n.user_id,
        "type": n.type,
        "category": n.category,
        "recipientRole": n.recipient_role,
        "title": n.title,
        "message": n.message,
        "priority": n.priority,
        "metadata": n.metadata_ or {},
        "isRead": n.is_read,
        "readAt": n.read_at.isoformat() if n.read_at else None,
        "actionUrl": n.action_url,
        "bookingId": n.booking_id,
        "createdAt": n.created_at.isoformat() if n.created_at else None,
    }


class NotificationDispatcher:
    def __init__(self, session_factory=SessionLocal, realtime: RabbitPublisher = publisher):
        self.session_factory = session_factory
        self.realtime = realtime

    def register(self, bus: EventBus) -> None:
        for event_type in (*ev.BOOKING_EVENTS, *ev.PAYMENT_EVENTS):
            bus.subscribe(event_type, self.handle)

    async def handle(self, event) -> None:
        fields = render(event)
        await asyncio.gather(*(self.notify(fields, r) for r in event.recipients))

    async def notify(self, fields: dict, recipient: Recipient) -> Notification | None:
        """Persist and push one notification; failures are logged and swallowed."""
        try:
            async with self.session_factory() as db:
                notification = Notification(
                    user_id=recipient.user_id,
                    recipient_role=recipient.role,
                    type=fields["type"],
                    category=fields["category"],
                    title=fields["title"],
                    message=fields["message"],
                    priority=fields["priority"],
                    metadata_=fields["metadata"],
                    action_url=fields["action_url"],
                    booking_id=fields["booking_id"],
                )
                db.add(notification)
                await db.commit()
        except Exception:
            logger.exception("failed to store %s notification for user %s", fields["type"], recipient.user_id)
            return None

        await self.push_realtime(recipient.user_id, notification_to_dict(notification))
        return notification

    async def push_realtime(self, user_id: str, payload: dict) -> None:
        try:
            await self.realtime.publish(f"notification.user.{user_id}", to_json({**payload, "isRealTime": True}))
        except Exception as e:
            logger.warning("real-time push to user %s failed: %s", user_id, e)


async def publish_domain_event(event) -> None:
    """Mirror lifecycle events onto the domain_events exchange for other services."""
    envelope = build_event(routing_key(event.type), event.payload())
    await publisher.publish(routing_key(event.type), to_json(envelope))


dispatcher = NotificationDispatcher()


def register_subscribers(bus: EventBus) -> None:
    dispatcher.register(bus)
    bus.subscribe(ALL_EVENTS, publish_domain_event)


# ---- Inbox queries ----

async def list_notifications(db, user_id: str, unread_only: bool = False, limit: int = 50, offset: int = 0):
    stmt = select(Notification).where(Notification.user_id == user_id)
    if unread_only:
        stmt = stmt.where(Notification.is_read.is_(False))
    stmt = stmt.order_by(Notification.created_at.desc()).limit(limit).offset(offset)
    res = await db.execute(stmt)
    return list(res.scalars().all())


async def count_unread(db, user_id: str) -> int:
    res = await db.execute(
        select(func.count(Notification.id)).where(
            Notification.user_id == user_id,
            Notification.is_read.is_(False),
        )
    )
    return int(res.scalar_one())


async def mark_read(db, notification_id: str, user_id: str) -> Notification | None:
    res = await db.execute(
        select(Notification).where(Notification.id == notification_id, Notification.user_id == user_id)
    )
    notification = res.scalar_one_or_none()
    if not notification:
        return None
    if not notification.is_read:
        notification.is_read = True
        notification.read_at = utcnow()
        await db.commit()
    return notification


async def mark_all_read(db, user_id: str) -> int:
    res = await db.execute(
        update(Notification)
        .where(Notification.user_id == user_id, Notification.is_read.is_(False))
        .values(is_read=True, read_at=utcnow())
    )
    await db.commit()
    return res.rowcount or 0
