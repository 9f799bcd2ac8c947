"""API request/response schemas and the stored checkout context."""

from datetime import datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"


class ContactInfo(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(pattern=EMAIL_PATTERN)
    phone: str | None = None


class ShippingAddress(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    full_name: str = Field(min_length=1)
    address1: str = Field(min_length=1)
    address2: str | None = None
    city: str = Field(min_length=1)
    state: str = Field(min_length=1)
    postal_code: str = Field(min_length=1)
    country: str = Field(min_length=1)


class CartItemRequest(BaseModel):
    """Cart line as sent by the storefront client. Prices are resolved server-side."""

    model_config = ConfigDict(str_strip_whitespace=True)

    price_id: str = Field(min_length=1)
    product_id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    quantity: int = Field(gt=0)
    is_subscription: bool = False
    recurring_interval: str | None = None


class InitiateCheckoutRequest(BaseModel):
    """Payload accepted by `POST /checkout/sessions`."""

    items: list[CartItemRequest] = Field(min_length=1)
    contact_info: ContactInfo
    shipping_address: ShippingAddress
    saved_payment_method_id: str | None = None


class InitiateCheckoutResponse(BaseModel):
    client_secret: str
    mode: str


class CartLine(BaseModel):
    """Cart line frozen into the attempt, priced from the processor catalog."""

    price_id: str
    product_id: str
    product_name: str
    quantity: int
    unit_price: Decimal
    is_subscription: bool = False
    recurring_interval: str | None = None


class CheckoutContext(BaseModel):
    """Everything needed to rebuild an order when the payment event arrives."""

    user_id: str | None = None
    cart_items: list[CartLine]
    contact_info: ContactInfo
    shipping_address: ShippingAddress

    def contains_subscription(self) -> bool:
        return any(line.is_subscription for line in self.cart_items)


class WebhookEventData(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    obj: dict[str, Any] = Field(alias="object")


class WebhookEvent(BaseModel):
    """Verified processor event envelope."""

    model_config = ConfigDict(extra="ignore")

    id: str
    type: str
    created: int | None = None
    data: WebhookEventData


class OrderItemSummary(BaseModel):
    product_id: str
    product_name: str
    quantity: int
    unit_price: Decimal


class OrderSummary(BaseModel):
    """Customer-safe view of a materialized order."""

    id: str
    status: str
    total_amount: Decimal
    created_at: datetime | None = None
    items: list[OrderItemSummary]


class AdminOrderSummary(OrderSummary):
    """Store-wide order view: adds the buyer, contact and shipping destination."""

    user_id: str | None = None
    user_email: str | None = None
    contact_email: str | None = None
    shipping_name: str | None = None
    shipping_address1: str | None = None
    shipping_address2: str | None = None
    shipping_city: str | None = None
    shipping_state: str | None = None
    shipping_postal_code: str | None = None
    shipping_country: str | None = None


class SubscriptionSummary(BaseModel):
    id: str
    stripe_subscription_id: str
    status: str
    interval: str | None = None
    current_period_end: datetime | None = None
    cancel_at_period_end: bool
    collection_paused: bool


class IntentStatusResponse(BaseModel):
    """Payload polled by the order confirmation page."""

    id: str
    status: str
    amount: int | None = None
    currency: str | None = None
    order: OrderSummary | None = None
    subscription: SubscriptionSummary | None = None
