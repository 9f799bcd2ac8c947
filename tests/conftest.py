"""Shared fixtures: SQLite storage, in-memory attempts and a fake processor."""

from dataclasses import replace
from datetime import datetime, timezone
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from scoopshop.common.config import StorefrontSettings
from scoopshop.common.db import Base, build_session_factory
from scoopshop.common.errors import ProcessorNotFound, UpstreamError
from scoopshop.services.checkout import models
from scoopshop.services.checkout.attempt_store import InMemoryCheckoutAttemptStore
from scoopshop.services.checkout.pricing import PricingService
from scoopshop.services.checkout.processor import (
    IntentHandle,
    IntentView,
    PriceQuote,
    SubscriptionSnapshot,
)
from scoopshop.services.checkout.schemas import (
    CartLine,
    CheckoutContext,
    ContactInfo,
    ShippingAddress,
    WebhookEvent,
)


WEBHOOK_SECRET = "whsec_test_secret"
SHIPPING_PRICE_ID = "price_shipping"
PERIOD_END = datetime(2026, 11, 18, tzinfo=timezone.utc)


class FakeGateway:
    """In-process stand-in for `StripeGateway` with call recording and failure switches."""

    def __init__(self) -> None:
        self.prices: dict[str, PriceQuote] = {}
        self.payment_intents: dict[str, IntentView] = {}
        self.setup_intents: dict[str, IntentView] = {}
        self.subscriptions: dict[str, SubscriptionSnapshot] = {}
        self.customers: dict[str, str] = {}
        self.idempotent: dict[str, str] = {}
        self.calls: list[tuple[str, dict]] = []
        self.fail_on: set[str] = set()

    def _record(self, operation: str, **kwargs) -> None:
        self.calls.append((operation, kwargs))
        if operation in self.fail_on:
            raise UpstreamError(f"{operation} failed")

    def calls_to(self, operation: str) -> list[dict]:
        return [kwargs for name, kwargs in self.calls if name == operation]

    def add_price(self, price_id, unit_amount, recurring_interval=None, active=True):
        self.prices[price_id] = PriceQuote(
            price_id=price_id,
            unit_amount=unit_amount,
            active=active,
            currency="usd",
            product_id=f"prod_{price_id}",
            recurring_interval=recurring_interval,
        )

    def add_subscription(self, subscription_id, status="active", current_period_end=PERIOD_END, **fields):
        self.subscriptions[subscription_id] = SubscriptionSnapshot(
            id=subscription_id,
            status=status,
            current_period_end=current_period_end,
            cancel_at_period_end=fields.get("cancel_at_period_end", False),
            collection_paused=fields.get("collection_paused", False),
            customer_id=fields.get("customer_id", "cus_1"),
            price_id=fields.get("price_id", "price_monthly"),
            interval=fields.get("interval", "month"),
        )
        return self.subscriptions[subscription_id]

    def retrieve_price(self, price_id):
        self._record("prices.retrieve", price_id=price_id)
        if price_id not in self.prices:
            raise ProcessorNotFound(f"no such price {price_id}")
        return self.prices[price_id]

    def create_payment_intent(self, amount_cents, metadata, customer_id=None, payment_method_id=None):
        self._record(
            "payment_intents.create",
            amount_cents=amount_cents,
            metadata=metadata,
            customer_id=customer_id,
            payment_method_id=payment_method_id,
        )
        intent_id = f"pi_{len(self.payment_intents) + 1}"
        self.payment_intents[intent_id] = IntentView(
            id=intent_id, status="requires_payment_method", amount=amount_cents, currency="usd", metadata=dict(metadata)
        )
        return IntentHandle(id=intent_id, client_secret=f"{intent_id}_secret_x", status="requires_payment_method")

    def create_setup_intent(self, customer_id, metadata, payment_method_id=None):
        self._record(
            "setup_intents.create", customer_id=customer_id, metadata=metadata, payment_method_id=payment_method_id
        )
        intent_id = f"seti_{len(self.setup_intents) + 1}"
        self.setup_intents[intent_id] = IntentView(
            id=intent_id, status="requires_payment_method", metadata=dict(metadata)
        )
        return IntentHandle(id=intent_id, client_secret=f"{intent_id}_secret_x", status="requires_payment_method")

    def retrieve_payment_intent(self, intent_id):
        self._record("payment_intents.retrieve", intent_id=intent_id)
        if intent_id not in self.payment_intents:
            raise ProcessorNotFound(f"no such payment intent {intent_id}")
        return self.payment_intents[intent_id]

    def retrieve_setup_intent(self, intent_id):
        self._record("setup_intents.retrieve", intent_id=intent_id)
        if intent_id not in self.setup_intents:
            raise ProcessorNotFound(f"no such setup intent {intent_id}")
        return self.setup_intents[intent_id]

    def ensure_customer(self, email, name=None, phone=None, shipping=None, user_id=None):
        self._record("customers.ensure", email=email, name=name, phone=phone, shipping=shipping, user_id=user_id)
        if email not in self.customers:
            self.customers[email] = f"cus_{len(self.customers) + 1}"
        return self.customers[email]

    def create_subscription(
        self, customer_id, items, default_payment_method, add_invoice_items, metadata, idempotency_key
    ):
        self._record(
            "subscriptions.create",
            customer_id=customer_id,
            items=items,
            default_payment_method=default_payment_method,
            add_invoice_items=add_invoice_items,
            metadata=metadata,
            idempotency_key=idempotency_key,
        )
        if idempotency_key in self.idempotent:
            return self.subscriptions[self.idempotent[idempotency_key]]
        subscription_id = f"sub_{len(self.subscriptions) + 1}"
        self.idempotent[idempotency_key] = subscription_id
        return self.add_subscription(subscription_id, customer_id=customer_id, price_id=items[0]["price"])

    def retrieve_subscription(self, subscription_id):
        self._record("subscriptions.retrieve", subscription_id=subscription_id)
        if subscription_id not in self.subscriptions:
            raise ProcessorNotFound(f"no such subscription {subscription_id}")
        return self.subscriptions[subscription_id]

    def update_subscription(self, subscription_id, params):
        self._record("subscriptions.update", subscription_id=subscription_id, params=params)
        current = self.subscriptions[subscription_id]
        changes = {}
        if "cancel_at_period_end" in params:
            changes["cancel_at_period_end"] = params["cancel_at_period_end"]
        if "pause_collection" in params:
            pause = params["pause_collection"]
            changes["collection_paused"] = bool(pause) and pause.get("behavior") == "void"
        self.subscriptions[subscription_id] = replace(current, **changes)
        return self.subscriptions[subscription_id]


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield build_session_factory(engine)
    engine.dispose()


@pytest.fixture
def gateway():
    fake = FakeGateway()
    fake.add_price("price_vanilla", 450)
    fake.add_price("price_sprinkles", 125)
    fake.add_price("price_monthly", 2500, recurring_interval="month")
    fake.add_price(SHIPPING_PRICE_ID, 599)
    return fake


@pytest.fixture
def attempt_store():
    return InMemoryCheckoutAttemptStore()


@pytest.fixture
def pricing(gateway):
    return PricingService(gateway, SHIPPING_PRICE_ID)


@pytest.fixture
def settings():
    return StorefrontSettings(
        postgres_dsn="sqlite://",
        stripe_secret_key="sk_test_dummy",
        stripe_webhook_secret=WEBHOOK_SECRET,
        stripe_shipping_price_id=SHIPPING_PRICE_ID,
        checkout_attempt_backend="memory",
    )


@pytest.fixture
def user(session_factory):
    with session_factory() as db:
        row = models.User(id="user-1", email="fan@example.com", name="Ice Cream Fan")
        db.add(row)
        db.commit()
        return row


def contact() -> ContactInfo:
    return ContactInfo(email="fan@example.com", phone="+15550100")


def address() -> ShippingAddress:
    return ShippingAddress(
        full_name="Ice Cream Fan",
        address1="1 Cone Street",
        city="Portland",
        state="OR",
        postal_code="97201",
        country="US",
    )


def one_time_context(user_id=None) -> CheckoutContext:
    return CheckoutContext(
        user_id=user_id,
        cart_items=[
            CartLine(
                price_id="price_vanilla",
                product_id="prod_vanilla",
                product_name="Vanilla Pint",
                quantity=2,
                unit_price=Decimal("4.50"),
            ),
            CartLine(
                price_id="price_sprinkles",
                product_id="prod_sprinkles",
                product_name="Sprinkles",
                quantity=1,
                unit_price=Decimal("1.25"),
            ),
        ],
        contact_info=contact(),
        shipping_address=address(),
    )


def subscription_context(user_id="user-1", with_one_time=False) -> CheckoutContext:
    lines = [
        CartLine(
            price_id="price_monthly",
            product_id="prod_club",
            product_name="Pint Club",
            quantity=1,
            unit_price=Decimal("25.00"),
            is_subscription=True,
            recurring_interval="month",
        )
    ]
    if with_one_time:
        lines.append(
            CartLine(
                price_id="price_sprinkles",
                product_id="prod_sprinkles",
                product_name="Sprinkles",
                quantity=2,
                unit_price=Decimal("1.25"),
            )
        )
    return CheckoutContext(
        user_id=user_id,
        cart_items=lines,
        contact_info=contact(),
        shipping_address=address(),
    )


def make_event(event_type: str, obj: dict, event_id: str = "evt_1") -> WebhookEvent:
    return WebhookEvent.model_validate(
        {"id": event_id, "type": event_type, "created": 1760000000, "data": {"object": obj}}
    )


def naive(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; compare on the naive UTC form."""

    return None if value is None else value.replace(tzinfo=None)
