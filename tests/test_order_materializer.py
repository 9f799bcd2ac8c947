"""Order materialization from `payment_intent.succeeded`."""

from decimal import Decimal

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from conftest import SHIPPING_PRICE_ID, make_event, one_time_context, subscription_context
from scoopshop.common.errors import CorrelationMissing, OrderPersistenceError
from scoopshop.services.checkout.lifecycle import LifecycleSync
from scoopshop.services.checkout.models import Order
from scoopshop.services.checkout import orders
from scoopshop.services.checkout.orders import OrderMaterializer
from scoopshop.services.checkout.pricing import PricingService
from scoopshop.services.checkout.schemas import CartLine
from scoopshop.services.checkout.subscriptions import SubscriptionMaterializer
from scoopshop.services.checkout.webhooks import WebhookRouter


def payment_event(attempt_id, intent_id="pi_1", event_id="evt_pi_1"):
    obj = {"id": intent_id, "object": "payment_intent", "status": "succeeded", "metadata": {}}
    if attempt_id:
        obj["metadata"]["checkout_attempt_id"] = attempt_id
    return make_event("payment_intent.succeeded", obj, event_id=event_id)


def order_count(session_factory) -> int:
    with session_factory() as db:
        return db.execute(select(func.count()).select_from(Order)).scalar_one()


@pytest.fixture
def materializer(session_factory, attempt_store, pricing):
    return OrderMaterializer(session_factory, attempt_store, pricing)


def test_creates_one_paid_order_with_shipping(materializer, attempt_store, session_factory):
    """Cart lines plus a synthetic shipping line make up the order."""

    attempt_store.put("att-1", one_time_context())

    assert materializer.handle_payment_succeeded(payment_event("att-1")) == "created"

    with session_factory() as db:
        order = db.execute(select(Order)).scalar_one()
        assert order.status == "PAID"
        assert order.checkout_attempt_id == "att-1"
        assert order.stripe_payment_intent_id == "pi_1"
        assert order.total_amount == Decimal("16.24")
        assert [item.product_name for item in order.items] == ["Vanilla Pint", "Sprinkles", "Shipping"]
        shipping = order.items[-1]
        assert shipping.quantity == 1
        assert shipping.unit_price == Decimal("5.99")
        assert shipping.product_id == SHIPPING_PRICE_ID
        assert order.contact_email == "fan@example.com"
        assert order.shipping_city == "Portland"
    assert "att-1" not in attempt_store


def test_redelivered_event_creates_single_order(materializer, attempt_store, session_factory):
    """Replaying the same event yields exactly one order."""

    attempt_store.put("att-1", one_time_context())
    event = payment_event("att-1")

    assert materializer.handle_payment_succeeded(event) == "created"
    assert materializer.handle_payment_succeeded(event) == "duplicate"
    assert order_count(session_factory) == 1


def test_duplicate_detected_while_attempt_still_stored(materializer, attempt_store, session_factory):
    """If the attempt delete was lost, the existing order still blocks a second insert."""

    attempt_store.put("att-1", one_time_context())
    materializer.handle_payment_succeeded(payment_event("att-1"))
    attempt_store.put("att-1", one_time_context())

    assert materializer.handle_payment_succeeded(payment_event("att-1", event_id="evt_again")) == "duplicate"
    assert order_count(session_factory) == 1
    assert "att-1" not in attempt_store


def test_unknown_attempt_creates_nothing_and_is_acknowledged(
    materializer, session_factory, attempt_store, pricing, gateway
):
    """Lost correlation is logged and absorbed by the router."""

    with pytest.raises(CorrelationMissing) as excinfo:
        materializer.handle_payment_succeeded(payment_event("never-stored"))
    assert excinfo.value.context_lost

    router = WebhookRouter(
        materializer,
        SubscriptionMaterializer(session_factory, attempt_store, pricing, gateway),
        LifecycleSync(session_factory, gateway),
    )
    assert router.dispatch(payment_event("never-stored")) == "uncorrelated"
    assert order_count(session_factory) == 0


def test_event_without_metadata_is_uncorrelated(materializer, session_factory):
    with pytest.raises(CorrelationMissing) as excinfo:
        materializer.handle_payment_succeeded(payment_event(None))
    assert not excinfo.value.context_lost
    assert order_count(session_factory) == 0


@pytest.mark.parametrize("with_one_time", [False, True])
def test_subscription_carts_are_never_materialized_here(
    materializer, attempt_store, session_factory, with_one_time
):
    """Any subscription line defers the whole cart to the setup-intent path."""

    attempt_store.put("att-sub", subscription_context(with_one_time=with_one_time))

    assert materializer.handle_payment_succeeded(payment_event("att-sub")) == "skipped"
    assert order_count(session_factory) == 0
    assert "att-sub" in attempt_store


@pytest.mark.parametrize(
    ("unit_prices", "expected_total"),
    [
        ((Decimal("10.00"), Decimal("20.00")), Decimal("35.00")),
        ((Decimal("10.00"), Decimal("15.00")), Decimal("30.00")),
    ],
)
def test_total_is_subtotal_plus_configured_shipping(
    session_factory, attempt_store, gateway, pricing, unit_prices, expected_total
):
    """Subtotal plus one $5.00 shipping line, e.g. $30 + $5 = $35."""

    gateway.add_price(SHIPPING_PRICE_ID, 500)
    context = one_time_context()
    context.cart_items = [
        CartLine(price_id=f"price_{n}", product_id=f"prod_{n}", product_name=f"Flavor {n}", quantity=1, unit_price=price)
        for n, price in enumerate(unit_prices)
    ]
    attempt_store.put("att-2", context)

    OrderMaterializer(session_factory, attempt_store, pricing).handle_payment_succeeded(payment_event("att-2"))

    with session_factory() as db:
        order = db.execute(select(Order)).scalar_one()
        assert order.total_amount == expected_total
        shipping = order.items[-1]
        assert shipping.product_name == "Shipping"
        assert shipping.quantity == 1
        assert shipping.unit_price == Decimal("5.00")
        assert sum(item.unit_price * item.quantity for item in order.items) == expected_total


def test_zero_subtotal_adds_no_shipping(session_factory, attempt_store, gateway):
    context = one_time_context()
    context.cart_items = [
        CartLine(price_id="price_free", product_id="prod_free", product_name="Sample", quantity=1, unit_price=Decimal("0"))
    ]
    attempt_store.put("att-free", context)

    OrderMaterializer(
        session_factory, attempt_store, PricingService(gateway, SHIPPING_PRICE_ID)
    ).handle_payment_succeeded(payment_event("att-free"))

    with session_factory() as db:
        order = db.execute(select(Order)).scalar_one()
        assert order.total_amount == Decimal("0.00")
        assert [item.product_name for item in order.items] == ["Sample"]
    assert not gateway.calls_to("prices.retrieve")


def test_missing_shipping_configuration_charges_no_shipping(session_factory, attempt_store, gateway):
    attempt_store.put("att-3", one_time_context())

    OrderMaterializer(session_factory, attempt_store, PricingService(gateway, None)).handle_payment_succeeded(
        payment_event("att-3")
    )

    with session_factory() as db:
        order = db.execute(select(Order)).scalar_one()
        assert order.total_amount == Decimal("10.25")
        assert len(order.items) == 2


def test_unique_attempt_column_stops_concurrent_second_insert(
    materializer, attempt_store, session_factory, monkeypatch
):
    """Two deliveries that both pass the lookup still produce one order."""

    attempt_store.put("att-1", one_time_context())
    assert materializer.handle_payment_succeeded(payment_event("att-1")) == "created"

    attempt_store.put("att-1", one_time_context())
    monkeypatch.setattr(orders, "find_order_for_attempt", lambda db, attempt_id: None)

    assert materializer.handle_payment_succeeded(payment_event("att-1", event_id="evt_racer")) == "duplicate"
    assert order_count(session_factory) == 1
    assert "att-1" not in attempt_store


def test_storage_outage_before_insert_asks_for_redelivery(
    materializer, session_factory, attempt_store, pricing, gateway, monkeypatch
):
    attempt_store.put("att-1", one_time_context())

    def unreachable(db, attempt_id):
        raise OperationalError("SELECT orders", {}, Exception("connection refused"))

    monkeypatch.setattr(orders, "find_order_for_attempt", unreachable)
    router = WebhookRouter(
        materializer,
        SubscriptionMaterializer(session_factory, attempt_store, pricing, gateway),
        LifecycleSync(session_factory, gateway),
    )

    with pytest.raises(OrderPersistenceError):
        router.dispatch(payment_event("att-1"))
    assert "att-1" in attempt_store
    assert order_count(session_factory) == 0
