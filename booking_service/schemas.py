import re
from datetime import date, datetime
from typing import List, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator

from .constants import CouponType

TIME_RE = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")


def parse_time_slot(value: str) -> tuple[str, str]:
    """Split "HH:MM-HH:MM" into (start, end); quotes and whitespace are ignored."""
    cleaned = re.sub(r"['\"\s]", "", value or "")
    parts = cleaned.split("-")
    if len(parts) != 2 or not parts[0] or not parts[1]:
        raise ValueError('Invalid time slot format. Should be "HH:MM-HH:MM"')
    start, end = parts
    if not TIME_RE.match(start) or not TIME_RE.match(end):
        raise ValueError("Invalid time format. Use 24-hour format (HH:MM)")
    if start >= end:
        raise ValueError("Time slot start must be before its end")
    return start, end


class _Body(BaseModel):
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)


# ---- Bookings ----

class CreateBookingRequest(_Body):
    worker_id: str = Field(alias="workerId", min_length=1)
    worker_service_id: str = Field(alias="workerServiceId", min_length=1)
    address_id: str = Field(validation_alias=AliasChoices("addressId", "address_id"), min_length=1)
    booking_date: date = Field(alias="bookingDate")
    time_slot: str = Field(alias="timeSlot")
    payment_method: Literal["online", "cash"] = Field(alias="paymentMethod")
    coupon_code: Optional[str] = Field(default=None, alias="couponCode")
    notes: Optional[str] = Field(default=None, max_length=1000)

    @field_validator("time_slot")
    @classmethod
    def _check_slot(cls, v: str) -> str:
        start, end = parse_time_slot(v)
        return f"{start}-{end}"

    @property
    def slot(self) -> tuple[str, str]:
        return parse_time_slot(self.time_slot)


class HandleRequestBody(_Body):
    action: Literal["accept", "reject"]
    rejection_reason: Optional[str] = Field(default=None, alias="rejectionReason", max_length=500)


class UpdateStatusRequest(_Body):
    status: Literal["completed", "cancelled"]
    reason: Optional[str] = Field(default=None, max_length=500)


class CancelBookingRequest(_Body):
    reason: Optional[str] = Field(default=None, max_length=500)


class UpdateBookingRequest(_Body):
    notes: str = Field(max_length=1000)


# ---- Coupons ----

class CreateCouponRequest(_Body):
    code: str = Field(min_length=3, max_length=32)
    type: Literal["percentage", "fixed"]
    value: float = Field(gt=0)
    max_discount: Optional[float] = Field(default=None, alias="maxDiscount", gt=0)
    min_order_value: float = Field(default=0, alias="minOrderValue", ge=0)
    valid_from: datetime = Field(alias="validFrom")
    valid_until: datetime = Field(alias="validUntil")
    description: str = ""
    applicable_services: List[str] = Field(default_factory=list, alias="applicableServices")
    applicable_categories: List[str] = Field(default_factory=list, alias="applicableCategories")
    max_usage: Optional[int] = Field(default=None, alias="maxUsage", ge=1)
    max_usage_per_user: Optional[int] = Field(default=1, alias="maxUsagePerUser", ge=1)
    terms_and_conditions: List[str] = Field(default_factory=list, alias="termsAndConditions")

    @field_validator("code")
    @classmethod
    def _upper(cls, v: str) -> str:
        return v.upper()

    @model_validator(mode="after")
    def _check_rules(self):
        if self.type == CouponType.PERCENTAGE and self.value > 100:
            raise ValueError("Percentage coupons cannot exceed 100")
        if self.type == CouponType.FIXED and self.max_discount is not None:
            raise ValueError("maxDiscount only applies to percentage coupons")
        if self.valid_until <= self.valid_from:
            raise ValueError("validUntil must be after validFrom")
        return self


class ValidateCouponRequest(_Body):
    coupon_code: str = Field(alias="couponCode", min_length=1)
    worker_service_id: str = Field(alias="workerServiceId", min_length=1)


# ---- Payments ----

class PaymentCallbackRequest(_Body):
    status: Literal["processing", "completed", "failed"]
    transaction_id: Optional[str] = Field(default=None, alias="transactionId")


class RefundRequest(_Body):
    reason: Optional[str] = Field(default=None, max_length=500)


# ---- Responses ----

def _iso(value) -> Optional[str]:
    return value.isoformat() if value is not None else None


def booking_to_dict(b) -> dict:
    return {
        "id": b.id,
        "customerId": b.customer_id,
        "workerId": b.worker_id,
        "workerServiceId": b.worker_service_id,
        "addressId": b.address_id,
        "bookingDate": _iso(b.booking_date),
        "scheduledTimeSlot": {"start": b.slot_start, "end": b.slot_end},
        "subTotal": b.sub_total,
        "discount": {
            "couponCode": b.coupon_code,
            "percentage": b.discount_percentage,
            "discountAmount": b.discount_amount,
        },
        "totalAmount": b.total_amount,
        "status": b.status,
        "paymentMethod": b.payment_method,
        "paymentId": b.payment_id,
        "paymentStatus": b.payment_status,
        "cancelledBy": b.cancelled_by,
        "cancellationReason": b.cancellation_reason,
        "notes": b.notes,
        "workerResponseTime": _iso(b.worker_response_time),
        "completedAt": _iso(b.completed_at),
        "createdAt": _iso(b.created_at),
        "updatedAt": _iso(b.updated_at),
    }


def coupon_to_dict(c) -> dict:
    return {
        "id": c.id,
        "code": c.code,
        "type": c.type,
        "value": c.value,
        "maxDiscount": c.max_discount,
        "minOrderValue": c.min_order_value,
        "validFrom": _iso(c.valid_from),
        "validUntil": _iso(c.valid_until),
        "description": c.description,
        "applicableServices": c.applicable_services or [],
        "applicableCategories": c.applicable_categories or [],
        "maxUsage": c.max_usage,
        "usageCount": c.usage_count,
        "maxUsagePerUser": c.max_usage_per_user,
        "isActive": c.is_active,
        "termsAndConditions": c.terms_and_conditions or [],
    }
