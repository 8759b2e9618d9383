import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, Date, DateTime, Float, Integer, JSON, String, Text

from .constants import BookingPaymentStatus, BookingStatus, CancelledBy, PaymentStatus
from .db import Base


def new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---- Catalog (read-only here) ----

class Service(Base):
    __tablename__ = "services"

    id = Column(String(36), primary_key=True, default=new_id)
    title = Column(String, nullable=False)
    category_id = Column(String(36), nullable=True, index=True)
    base_price = Column(Float, nullable=False, default=0)


class WorkerService(Base):
    __tablename__ = "worker_services"

    id = Column(String(36), primary_key=True, default=new_id)
    worker_id = Column(String(36), nullable=False, index=True)
    service_id = Column(String(36), nullable=False, index=True)
    custom_price = Column(Float, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)


class Address(Base):
    __tablename__ = "addresses"

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(36), nullable=False, index=True)
    label = Column(String, nullable=False, default="Home")
    address_line = Column(String, nullable=False)
    city = Column(String, nullable=False)
    state = Column(String, nullable=False)
    postal_code = Column(String, nullable=False)
    country = Column(String, nullable=False, default="India")


# ---- Booking lifecycle ----

class Booking(Base):
    __tablename__ = "bookings"

    id = Column(String(36), primary_key=True, default=new_id)

    customer_id = Column(String(36), nullable=False, index=True)
    worker_id = Column(String(36), nullable=False, index=True)
    worker_service_id = Column(String(36), nullable=False)
    address_id = Column(String(36), nullable=False)

    booking_date = Column(Date, nullable=False)
    slot_start = Column(String(5), nullable=False)  # HH:MM
    slot_end = Column(String(5), nullable=False)

    # pricing snapshot, never rewritten after creation
    sub_total = Column(Float, nullable=False)
    coupon_code = Column(String, nullable=True)
    discount_percentage = Column(Float, nullable=False, default=0)
    discount_amount = Column(Float, nullable=False, default=0)
    total_amount = Column(Float, nullable=False)

    status = Column(String, nullable=False, index=True, default=BookingStatus.PENDING)

    payment_method = Column(String, nullable=False)
    payment_id = Column(String(36), nullable=True)
    payment_status = Column(String, nullable=False, default=BookingPaymentStatus.UNPAID)

    cancelled_by = Column(String, nullable=False, default=CancelledBy.NONE)
    cancellation_reason = Column(String, nullable=True)
    notes = Column(Text, nullable=True)

    worker_response_time = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)


class Coupon(Base):
    __tablename__ = "coupons"

    id = Column(String(36), primary_key=True, default=new_id)
    code = Column(String, unique=True, nullable=False, index=True)
    type = Column(String, nullable=False)  # percentage/fixed
    value = Column(Float, nullable=False)
    max_discount = Column(Float, nullable=True)
    min_order_value = Column(Float, nullable=False, default=0)

    valid_from = Column(DateTime(timezone=True), nullable=False)
    valid_until = Column(DateTime(timezone=True), nullable=False, index=True)

    description = Column(String, nullable=False, default="")
    applicable_services = Column(JSON, nullable=False, default=list)
    applicable_categories = Column(JSON, nullable=False, default=list)
    terms_and_conditions = Column(JSON, nullable=False, default=list)

    max_usage = Column(Integer, nullable=True)
    usage_count = Column(Integer, nullable=False, default=0)
    max_usage_per_user = Column(Integer, nullable=True, default=1)
    is_active = Column(Boolean, nullable=False, default=True, index=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)


class Payment(Base):
    __tablename__ = "payments"

    id = Column(String(36), primary_key=True, default=new_id)
    booking_id = Column(String(36), nullable=False, index=True)
    customer_id = Column(String(36), nullable=False, index=True)
    worker_id = Column(String(36), nullable=False, index=True)
    amount = Column(Float, nullable=False)

    status = Column(String, nullable=False, index=True, default=PaymentStatus.PENDING)
    transaction_id = Column(String, unique=True, nullable=True)
    gateway_order_id = Column(String, nullable=True)
    refund_id = Column(String, unique=True, nullable=True)
    refund_reason = Column(String, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)


class Notification(Base):
    __tablename__ = "notifications"

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(36), nullable=False, index=True)
    type = Column(String, nullable=False)
    category = Column(String, nullable=False)
    recipient_role = Column(String, nullable=False)
    title = Column(String, nullable=False)
    message = Column(String, nullable=False)
    priority = Column(String, nullable=False, default="low")
    metadata_ = Column("metadata", JSON, nullable=False, default=dict)
    is_read = Column(Boolean, nullable=False, default=False)
    read_at = Column(DateTime(timezone=True), nullable=True)
    action_url = Column(String, nullable=True)
    booking_id = Column(String(36), nullable=True, index=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
