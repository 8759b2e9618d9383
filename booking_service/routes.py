import asyncio
import hashlib
import hmac
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, Query, Request
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from . import notifications as inbox
from . import state_machine as sm
from .config import PAYMENT_WEBHOOK_SECRET
from .constants import Role
from .coupons import (
    check_coupon,
    get_coupon_by_code,
    list_active_coupons,
)
from .db import get_db
from .errors import ForbiddenError, NotFoundError, ValidationError
from .event_bus import EventBus, bus
from .gateway import PaymentGateway, get_payment_gateway
from .models import Coupon, Service, WorkerService
from .payments import (
    get_booking_payment,
    get_payment,
    payment_to_dict,
    react_to_payment_callback,
    refund_payment,
)
from .pricing import calculate_price, sub_total_for
from .rbac import authorize
from .schemas import (
    CancelBookingRequest,
    CreateBookingRequest,
    CreateCouponRequest,
    HandleRequestBody,
    PaymentCallbackRequest,
    RefundRequest,
    UpdateBookingRequest,
    UpdateStatusRequest,
    ValidateCouponRequest,
    booking_to_dict,
    coupon_to_dict,
)
from .security import Principal, get_current_user

logger = logging.getLogger(__name__)

router = APIRouter()

SIGNATURE_HEADER = "X-Signature"


def get_bus() -> EventBus:
    return bus


def _request_id(request: Request) -> Optional[str]:
    return getattr(request.state, "request_id", None)


def ok(message: str, data=None) -> dict:
    body = {"success": True, "message": message}
    if data is not None:
        body["data"] = data
    return body


# ================= BOOKINGS =================

@router.post("/bookings", status_code=201, tags=["Bookings"])
async def create_booking(
    data: CreateBookingRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    events: EventBus = Depends(get_bus),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    user: Principal = Depends(authorize(Role.CUSTOMER)),
):
    booking, payment, breakdown = await sm.create_booking(
        db, user, data, events, gateway=gateway, request_id=_request_id(request)
    )
    payload = {"booking": booking_to_dict(booking), "priceBreakdown": breakdown.to_dict()}
    if payment is not None:
        payload["payment"] = payment_to_dict(payment)
    return ok("Booking created successfully", payload)


@router.get("/bookings", tags=["Bookings"])
async def list_all_bookings(
    db: AsyncSession = Depends(get_db),
    user: Principal = Depends(authorize(Role.ADMIN)),
):
    bookings = await sm.list_bookings(db)
    return ok("Bookings retrieved successfully", [booking_to_dict(b) for b in bookings])


@router.get("/bookings/customer", tags=["Bookings"])
async def list_customer_bookings(
    db: AsyncSession = Depends(get_db),
    user: Principal = Depends(authorize(Role.CUSTOMER)),
):
    bookings = await sm.list_bookings(db, customer_id=user.id)
    return ok("Bookings retrieved successfully", [booking_to_dict(b) for b in bookings])


@router.get("/bookings/worker", tags=["Bookings"])
async def list_worker_bookings(
    db: AsyncSession = Depends(get_db),
    user: Principal = Depends(authorize(Role.WORKER)),
):
    bookings = await sm.list_bookings(db, worker_id=user.id)
    return ok("Bookings retrieved successfully", [booking_to_dict(b) for b in bookings])


@router.get("/bookings/{booking_id}", tags=["Bookings"])
async def get_booking(
    booking_id: str,
    db: AsyncSession = Depends(get_db),
    user: Principal = Depends(get_current_user),
):
    booking = await sm.get_booking_for(db, booking_id, user)
    return ok("Booking retrieved successfully", booking_to_dict(booking))


@router.patch("/bookings/{booking_id}", tags=["Bookings"])
async def update_booking(
    booking_id: str,
    data: UpdateBookingRequest,
    db: AsyncSession = Depends(get_db),
    events: EventBus = Depends(get_bus),
    user: Principal = Depends(get_current_user),
):
    booking = await sm.update_notes(db, booking_id, user, data.notes, events)
    return ok("Booking updated successfully", booking_to_dict(booking))


@router.post("/bookings/{booking_id}/handle-request", tags=["Bookings"])
async def handle_booking_request(
    booking_id: str,
    data: HandleRequestBody,
    db: AsyncSession = Depends(get_db),
    events: EventBus = Depends(get_bus),
    user: Principal = Depends(authorize(Role.WORKER, Role.ADMIN)),
):
    booking = await sm.handle_request(db, booking_id, user, data.action, events, data.rejection_reason)
    verb = "accepted" if data.action == "accept" else "rejected"
    return ok(f"Booking {verb} successfully", booking_to_dict(booking))


@router.post("/bookings/{booking_id}/start", tags=["Bookings"])
async def start_booking(
    booking_id: str,
    db: AsyncSession = Depends(get_db),
    user: Principal = Depends(authorize(Role.WORKER, Role.ADMIN)),
):
    booking = await sm.start_booking(db, booking_id, user)
    return ok("Booking started", booking_to_dict(booking))


@router.post("/bookings/{booking_id}/complete", tags=["Bookings"])
async def complete_booking(
    booking_id: str,
    db: AsyncSession = Depends(get_db),
    events: EventBus = Depends(get_bus),
    user: Principal = Depends(authorize(Role.WORKER, Role.ADMIN)),
):
    booking = await sm.complete_booking(db, booking_id, user, events)
    return ok("Booking completed successfully", booking_to_dict(booking))


@router.patch("/bookings/{booking_id}/status", tags=["Bookings"])
async def update_booking_status(
    booking_id: str,
    data: UpdateStatusRequest,
    db: AsyncSession = Depends(get_db),
    events: EventBus = Depends(get_bus),
    user: Principal = Depends(authorize(Role.CUSTOMER, Role.WORKER, Role.ADMIN)),
):
    booking = await sm.update_status(db, booking_id, user, data.status, events, data.reason)
    return ok(f"Booking status updated to {booking.status}", booking_to_dict(booking))


@router.delete("/bookings/{booking_id}", tags=["Bookings"])
async def cancel_booking(
    booking_id: str,
    data: Optional[CancelBookingRequest] = None,
    db: AsyncSession = Depends(get_db),
    events: EventBus = Depends(get_bus),
    user: Principal = Depends(authorize(Role.CUSTOMER, Role.WORKER, Role.ADMIN)),
):
    reason = data.reason if data else None
    booking = await sm.cancel_booking(db, booking_id, user, events, reason)
    return ok("Booking cancelled successfully", booking_to_dict(booking))


# ================= COUPONS =================

@router.get("/coupons/active", tags=["Coupons"])
async def active_coupons(
    db: AsyncSession = Depends(get_db),
    user: Principal = Depends(get_current_user),
):
    coupons = await list_active_coupons(db)
    return ok("Active coupons retrieved successfully", [coupon_to_dict(c) for c in coupons])


@router.post("/coupons", status_code=201, tags=["Coupons"])
async def create_coupon(
    data: CreateCouponRequest,
    db: AsyncSession = Depends(get_db),
    user: Principal = Depends(authorize(Role.ADMIN)),
):
    if await get_coupon_by_code(db, data.code):
        raise ValidationError("Coupon code already exists")

    coupon = Coupon(
        code=data.code,
        type=data.type,
        value=data.value,
        max_discount=data.max_discount,
        min_order_value=data.min_order_value,
        valid_from=data.valid_from,
        valid_until=data.valid_until,
        description=data.description,
        applicable_services=data.applicable_services,
        applicable_categories=data.applicable_categories,
        terms_and_conditions=data.terms_and_conditions,
        max_usage=data.max_usage,
        max_usage_per_user=data.max_usage_per_user,
    )
    db.add(coupon)
    await db.commit()
    logger.info("coupon %s created by %s", coupon.code, user.id)
    return ok("Coupon created successfully", coupon_to_dict(coupon))


@router.post("/coupons/validate", tags=["Coupons"])
async def validate_coupon(
    data: ValidateCouponRequest,
    db: AsyncSession = Depends(get_db),
    user: Principal = Depends(authorize(Role.CUSTOMER)),
):
    """Preview the discount a coupon would give; nothing is reserved."""
    res = await db.execute(select(WorkerService).where(WorkerService.id == data.worker_service_id))
    worker_service = res.scalar_one_or_none()
    if not worker_service:
        raise NotFoundError("Worker service not found")

    res = await db.execute(select(Service).where(Service.id == worker_service.service_id))
    service = res.scalar_one_or_none()

    _, sub_total = sub_total_for(worker_service.custom_price)
    coupon, discount = await check_coupon(db, data.coupon_code, sub_total, service, user.id)

    breakdown = calculate_price(worker_service.custom_price, discount)
    return ok("Coupon is valid", {"coupon": coupon_to_dict(coupon), "priceBreakdown": breakdown.to_dict()})


# ================= PAYMENTS =================

def verify_signature(body: bytes, signature: Optional[str], secret: str = PAYMENT_WEBHOOK_SECRET) -> bool:
    if not secret or not signature:
        return False
    expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature.strip().lower())


@router.get("/payments/{payment_id}", tags=["Payments"])
async def get_payment_details(
    payment_id: str,
    db: AsyncSession = Depends(get_db),
    user: Principal = Depends(get_current_user),
):
    payment = await get_payment(db, payment_id)
    if not user.is_admin and user.id not in (payment.customer_id, payment.worker_id):
        raise ForbiddenError("Not authorized to view this payment")
    return ok("Payment retrieved successfully", payment_to_dict(payment))


@router.get("/bookings/{booking_id}/payment", tags=["Payments"])
async def get_payment_for_booking(
    booking_id: str,
    db: AsyncSession = Depends(get_db),
    user: Principal = Depends(get_current_user),
):
    booking = await sm.get_booking_for(db, booking_id, user)
    payment = await get_booking_payment(db, booking)
    if payment is None:
        raise NotFoundError("Payment not found")
    return ok("Payment retrieved successfully", payment_to_dict(payment))


@router.post("/payments/{payment_id}/callback", tags=["Payments"])
async def payment_callback(
    payment_id: str,
    data: PaymentCallbackRequest,
    request: Request,
    x_signature: Optional[str] = Header(default=None, alias=SIGNATURE_HEADER),
    db: AsyncSession = Depends(get_db),
    events: EventBus = Depends(get_bus),
):
    if not verify_signature(await request.body(), x_signature):
        raise ForbiddenError("Invalid payment signature")

    payment = await get_payment(db, payment_id)
    emitted = await react_to_payment_callback(db, payment, data.status, data.transaction_id)
    for event in emitted:
        await events.emit(event)
    return ok("Payment status updated", payment_to_dict(payment))


@router.post("/payments/{payment_id}/refund", tags=["Payments"])
async def refund(
    payment_id: str,
    request: Request,
    data: Optional[RefundRequest] = None,
    db: AsyncSession = Depends(get_db),
    events: EventBus = Depends(get_bus),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    user: Principal = Depends(authorize(Role.ADMIN)),
):
    payment = await get_payment(db, payment_id)
    emitted = await refund_payment(
        db, payment, gateway, reason=data.reason if data else None, request_id=_request_id(request)
    )
    for event in emitted:
        await events.emit(event)
    return ok("Refund processed successfully", payment_to_dict(payment))


# ================= NOTIFICATIONS =================

@router.get("/notifications", tags=["Notifications"])
async def list_notifications(
    unread_only: bool = Query(default=False),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: AsyncSession = Depends(get_db),
    user: Principal = Depends(get_current_user),
):
    items = await inbox.list_notifications(db, user.id, unread_only=unread_only, limit=limit, offset=offset)
    unread = await inbox.count_unread(db, user.id)
    return ok(
        "Notifications retrieved successfully",
        {"notifications": [inbox.notification_to_dict(n) for n in items], "unreadCount": unread},
    )


@router.patch("/notifications/read-all", tags=["Notifications"])
async def mark_all_notifications_read(
    db: AsyncSession = Depends(get_db),
    user: Principal = Depends(get_current_user),
):
    updated = await inbox.mark_all_read(db, user.id)
    return ok("All notifications marked as read", {"updated": updated})


@router.patch("/notifications/{notification_id}/read", tags=["Notifications"])
async def mark_notification_read(
    notification_id: str,
    db: AsyncSession = Depends(get_db),
    user: Principal = Depends(get_current_user),
):
    notification = await inbox.mark_read(db, notification_id, user.id)
    if notification is None:
        raise NotFoundError("Notification not found")
    return ok("Notification marked as read", inbox.notification_to_dict(notification))


# ================= SYSTEM =================

def _breaker_registry(gateway: PaymentGateway) -> dict:
    return {gateway.breaker.name: gateway.breaker}


@router.get("/system/breakers", tags=["System"])
async def breakers_status(
    gateway: PaymentGateway = Depends(get_payment_gateway),
    user: Principal = Depends(authorize(Role.ADMIN)),
):
    registry = _breaker_registry(gateway)
    statuses = await asyncio.gather(*[b.status() for b in registry.values()])
    statuses.sort(key=lambda x: x["name"])
    return ok("Circuit breakers retrieved successfully", {"breakers": statuses})


@router.post("/system/breakers/{name}/close", tags=["System"])
async def breaker_close(
    name: str,
    gateway: PaymentGateway = Depends(get_payment_gateway),
    user: Principal = Depends(authorize(Role.ADMIN)),
):
    breaker = _breaker_registry(gateway).get(name)
    if not breaker:
        raise NotFoundError("Breaker not found")
    await breaker.close()
    logger.info("breaker %s closed by %s", name, user.id)
    return ok("Breaker closed", await breaker.status())
