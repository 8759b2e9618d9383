"""Status vocabularies shared by models, schemas and the lifecycle code."""


class Role:
    CUSTOMER = "customer"
    WORKER = "worker"
    ADMIN = "admin"

    ALL = (CUSTOMER, WORKER, ADMIN)


class BookingStatus:
    PENDING = "pending"
    CONFIRMED = "confirmed"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    ALL = (PENDING, CONFIRMED, IN_PROGRESS, COMPLETED, CANCELLED)
    TERMINAL = frozenset({COMPLETED, CANCELLED})


class PaymentMethod:
    ONLINE = "online"
    CASH = "cash"

    ALL = (ONLINE, CASH)


class PaymentStatus:
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUND_PENDING = "refund_pending"
    REFUNDED = "refunded"

    ALL = (PENDING, PROCESSING, COMPLETED, FAILED, REFUND_PENDING, REFUNDED)


class BookingPaymentStatus:
    """Payment flag stored on the booking itself."""

    UNPAID = "unpaid"
    PAID = "paid"
    REFUND_PENDING = "refund_pending"
    REFUNDED = "refunded"


class CancelledBy:
    CUSTOMER = "customer"
    WORKER = "worker"
    ADMIN = "admin"
    NONE = "none"


class CouponType:
    PERCENTAGE = "percentage"
    FIXED = "fixed"

    ALL = (PERCENTAGE, FIXED)
