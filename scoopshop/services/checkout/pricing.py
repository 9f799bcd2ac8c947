"""Order totals: cart subtotal plus the configured shipping price."""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable

from scoopshop.common.logging import logger
from scoopshop.services.checkout.schemas import CartLine


CENT = Decimal("0.01")
ZERO = Decimal("0.00")
SHIPPING_PRODUCT_NAME = "Shipping"


def quantize(amount: Decimal) -> Decimal:
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def from_cents(cents: int) -> Decimal:
    return quantize(Decimal(cents) / 100)


def to_cents(amount: Decimal) -> int:
    return int((quantize(amount) * 100).to_integral_value())


@dataclass(frozen=True)
class OrderQuote:
    subtotal: Decimal
    shipping: Decimal
    shipping_price_id: str | None

    @property
    def total(self) -> Decimal:
        return self.subtotal + self.shipping


class PricingService:
    """Computes the authoritative total; used at initiation and again at materialization."""

    def __init__(self, gateway, shipping_price_id: str | None) -> None:
        self.gateway = gateway
        self.shipping_price_id = shipping_price_id

    @staticmethod
    def subtotal(lines: Iterable[CartLine]) -> Decimal:
        return quantize(sum((line.unit_price * line.quantity for line in lines), ZERO))

    def shipping_cost(self, subtotal: Decimal) -> Decimal:
        """Current shipping price, or zero when nothing is bought or none is configured.

        Raises `UpstreamError` when the configured price cannot be fetched.
        """

        if subtotal <= 0:
            return ZERO
        if not self.shipping_price_id:
            logger.warning("shipping_price_not_configured shipping omitted subtotal=%s", subtotal)
            return ZERO
        price = self.gateway.retrieve_price(self.shipping_price_id)
        if not price.active or not price.unit_amount:
            logger.warning(
                "shipping_price_unusable price_id=%s active=%s unit_amount=%s",
                self.shipping_price_id,
                price.active,
                price.unit_amount,
            )
            return ZERO
        return from_cents(price.unit_amount)

    def quote(self, lines: Iterable[CartLine]) -> OrderQuote:
        subtotal = self.subtotal(lines)
        shipping = self.shipping_cost(subtotal)
        return OrderQuote(
            subtotal=subtotal,
            shipping=shipping,
            shipping_price_id=self.shipping_price_id if shipping > 0 else None,
        )
