from dataclasses import dataclass

from .config import SERVICE_FEE_RATE


def money(value: float) -> float:
    return round(float(value), 2)


@dataclass(frozen=True)
class Discount:
    coupon_code: str | None = None
    percentage: float = 0
    discount_amount: float = 0

    def to_dict(self) -> dict:
        return {
            "couponCode": self.coupon_code,
            "percentage": self.percentage,
            "discountAmount": self.discount_amount,
        }


NO_DISCOUNT = Discount()


@dataclass(frozen=True)
class PriceBreakdown:
    worker_price: float
    service_fee: float
    sub_total: float
    discount: Discount
    total_amount: float

    def to_dict(self) -> dict:
        return {
            "workerPrice": self.worker_price,
            "serviceFee": self.service_fee,
            "subTotal": self.sub_total,
            "discount": self.discount.to_dict(),
            "totalAmount": self.total_amount,
        }


def sub_total_for(base_amount: float, fee_rate: float = SERVICE_FEE_RATE) -> tuple[float, float]:
    """Return (service_fee, sub_total) for a worker's price."""
    if base_amount < 0:
        raise ValueError("base_amount must be non-negative")
    service_fee = money(base_amount * fee_rate)
    return service_fee, money(base_amount + service_fee)


def calculate_price(
    base_amount: float,
    discount: Discount = NO_DISCOUNT,
    fee_rate: float = SERVICE_FEE_RATE,
) -> PriceBreakdown:
    service_fee, sub_total = sub_total_for(base_amount, fee_rate)

    # a discount larger than the subtotal is clamped so the total bottoms out at zero
    amount = min(max(money(discount.discount_amount), 0.0), sub_total)
    if amount != discount.discount_amount:
        discount = Discount(discount.coupon_code, discount.percentage, amount)

    return PriceBreakdown(
        worker_price=money(base_amount),
        service_fee=service_fee,
        sub_total=sub_total,
        discount=discount,
        total_amount=money(sub_total - amount),
    )
