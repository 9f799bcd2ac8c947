"""Stripe access for the checkout service.

`StripeGateway` owns an explicitly constructed `stripe.StripeClient` and turns
the processor's objects into small immutable values, so the rest of the
service never touches Stripe types or the module-level `stripe.api_key`.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import stripe

from scoopshop.common.errors import ProcessorNotFound, UpstreamError
from scoopshop.common.logging import logger
from scoopshop.common.metrics import upstream_errors_total


def stripe_field(obj: Any, name: str, default: Any = None) -> Any:
    """Read a key from a Stripe object or a plain webhook dict; None becomes `default`."""

    if obj is None:
        return default
    try:
        value = obj[name]
    except (KeyError, TypeError, AttributeError):
        return default
    return default if value is None else value


def stripe_id(value: Any) -> str | None:
    """Ids arrive either as strings or as expanded objects."""

    if value is None or isinstance(value, str):
        return value
    return stripe_field(value, "id")


def from_timestamp(value: Any) -> datetime | None:
    if not isinstance(value, (int, float)):
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc)


@dataclass(frozen=True)
class PriceQuote:
    price_id: str
    unit_amount: int | None
    active: bool
    currency: str | None = None
    product_id: str | None = None
    recurring_interval: str | None = None


@dataclass(frozen=True)
class IntentHandle:
    id: str
    client_secret: str | None
    status: str | None = None


@dataclass(frozen=True)
class IntentView:
    id: str
    status: str
    amount: int | None = None
    currency: str | None = None
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class SubscriptionSnapshot:
    """Processor-side state of one subscription; the source of truth."""

    id: str
    status: str
    current_period_end: datetime | None
    cancel_at_period_end: bool
    collection_paused: bool
    customer_id: str | None = None
    price_id: str | None = None
    interval: str | None = None

    @classmethod
    def from_stripe(cls, sub: Any) -> "SubscriptionSnapshot":
        # `items` collides with dict.items on older StripeObject, so use item access.
        items = stripe_field(stripe_field(sub, "items"), "data", [])
        first_item = items[0] if items else None
        price = stripe_field(first_item, "price")
        period_end = stripe_field(sub, "current_period_end")
        if period_end is None:
            period_end = stripe_field(first_item, "current_period_end")
        pause = stripe_field(sub, "pause_collection")
        return cls(
            id=stripe_field(sub, "id"),
            status=stripe_field(sub, "status", "unknown"),
            current_period_end=from_timestamp(period_end),
            cancel_at_period_end=bool(stripe_field(sub, "cancel_at_period_end", False)),
            collection_paused=stripe_field(pause, "behavior") == "void",
            customer_id=stripe_id(stripe_field(sub, "customer")),
            price_id=stripe_field(price, "id"),
            interval=stripe_field(stripe_field(price, "recurring"), "interval"),
        )


def _metadata(obj: Any) -> dict[str, str]:
    metadata = stripe_field(obj, "metadata")
    if metadata is None:
        return {}
    if isinstance(metadata, dict):
        return dict(metadata)
    return dict(metadata.to_dict())


class StripeGateway:
    """Thin, typed facade over the Stripe API calls checkout needs."""

    def __init__(self, client: stripe.StripeClient, currency: str = "usd", service_name: str = "checkout") -> None:
        self.client = client
        self.currency = currency
        self.service_name = service_name

    @classmethod
    def from_secret_key(cls, secret_key: str, currency: str = "usd", service_name: str = "checkout") -> "StripeGateway":
        return cls(stripe.StripeClient(secret_key), currency=currency, service_name=service_name)

    def _call(self, operation: str, fn, *args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except stripe.InvalidRequestError as exc:
            if exc.http_status == 404 or exc.code == "resource_missing":
                raise ProcessorNotFound(f"{operation}: {exc.user_message or 'not found'}") from exc
            upstream_errors_total.labels(service=self.service_name, operation=operation).inc()
            raise UpstreamError(f"{operation} rejected by processor") from exc
        except stripe.StripeError as exc:
            upstream_errors_total.labels(service=self.service_name, operation=operation).inc()
            logger.error("stripe_call_failed operation=%s error=%s", operation, exc)
            raise UpstreamError(f"{operation} failed") from exc

    def retrieve_price(self, price_id: str) -> PriceQuote:
        price = self._call("prices.retrieve", self.client.prices.retrieve, price_id)
        return PriceQuote(
            price_id=stripe_field(price, "id", price_id),
            unit_amount=stripe_field(price, "unit_amount"),
            active=bool(stripe_field(price, "active", False)),
            currency=stripe_field(price, "currency"),
            product_id=stripe_id(stripe_field(price, "product")),
            recurring_interval=stripe_field(stripe_field(price, "recurring"), "interval"),
        )

    def create_payment_intent(
        self,
        amount_cents: int,
        metadata: dict[str, str],
        customer_id: str | None = None,
        payment_method_id: str | None = None,
    ) -> IntentHandle:
        params: dict[str, Any] = {
            "amount": amount_cents,
            "currency": self.currency,
            "automatic_payment_methods": {"enabled": True},
            "metadata": metadata,
        }
        if customer_id:
            params["customer"] = customer_id
        if payment_method_id:
            params["payment_method"] = payment_method_id
        intent = self._call("payment_intents.create", self.client.payment_intents.create, params=params)
        return IntentHandle(
            id=stripe_field(intent, "id"),
            client_secret=stripe_field(intent, "client_secret"),
            status=stripe_field(intent, "status"),
        )

    def create_setup_intent(
        self,
        customer_id: str,
        metadata: dict[str, str],
        payment_method_id: str | None = None,
    ) -> IntentHandle:
        params: dict[str, Any] = {
            "customer": customer_id,
            "usage": "off_session",
            "automatic_payment_methods": {"enabled": True},
            "metadata": metadata,
        }
        if payment_method_id:
            params["payment_method"] = payment_method_id
        intent = self._call("setup_intents.create", self.client.setup_intents.create, params=params)
        return IntentHandle(
            id=stripe_field(intent, "id"),
            client_secret=stripe_field(intent, "client_secret"),
            status=stripe_field(intent, "status"),
        )

    def retrieve_payment_intent(self, intent_id: str) -> IntentView:
        intent = self._call("payment_intents.retrieve", self.client.payment_intents.retrieve, intent_id)
        return IntentView(
            id=stripe_field(intent, "id", intent_id),
            status=stripe_field(intent, "status", "unknown"),
            amount=stripe_field(intent, "amount"),
            currency=stripe_field(intent, "currency"),
            metadata=_metadata(intent),
        )

    def retrieve_setup_intent(self, intent_id: str) -> IntentView:
        intent = self._call("setup_intents.retrieve", self.client.setup_intents.retrieve, intent_id)
        return IntentView(
            id=stripe_field(intent, "id", intent_id),
            status=stripe_field(intent, "status", "unknown"),
            metadata=_metadata(intent),
        )

    def ensure_customer(
        self,
        email: str,
        name: str | None = None,
        phone: str | None = None,
        shipping: dict[str, Any] | None = None,
        user_id: str | None = None,
    ) -> str:
        """Return the processor customer for `email`, creating it when absent."""

        existing = self._call(
            "customers.list", self.client.customers.list, params={"email": email, "limit": 1}
        )
        data = stripe_field(existing, "data", [])
        if data:
            return stripe_field(data[0], "id")
        params: dict[str, Any] = {"email": email}
        if name:
            params["name"] = name
        if phone:
            params["phone"] = phone
        if shipping:
            params["shipping"] = shipping
        if user_id:
            params["metadata"] = {"internal_user_id": user_id}
        customer = self._call("customers.create", self.client.customers.create, params=params)
        return stripe_field(customer, "id")

    def create_subscription(
        self,
        customer_id: str,
        items: list[dict[str, Any]],
        default_payment_method: str,
        add_invoice_items: list[dict[str, Any]],
        metadata: dict[str, str],
        idempotency_key: str,
    ) -> SubscriptionSnapshot:
        params: dict[str, Any] = {
            "customer": customer_id,
            "items": items,
            "default_payment_method": default_payment_method,
            "metadata": metadata,
        }
        if add_invoice_items:
            params["add_invoice_items"] = add_invoice_items
        sub = self._call(
            "subscriptions.create",
            self.client.subscriptions.create,
            params=params,
            options={"idempotency_key": idempotency_key},
        )
        return SubscriptionSnapshot.from_stripe(sub)

    def retrieve_subscription(self, subscription_id: str) -> SubscriptionSnapshot:
        sub = self._call("subscriptions.retrieve", self.client.subscriptions.retrieve, subscription_id)
        return SubscriptionSnapshot.from_stripe(sub)

    def update_subscription(self, subscription_id: str, params: dict[str, Any]) -> SubscriptionSnapshot:
        sub = self._call(
            "subscriptions.update", self.client.subscriptions.update, subscription_id, params=params
        )
        return SubscriptionSnapshot.from_stripe(sub)
