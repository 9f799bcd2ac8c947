"""Checkout session initiation: validation, pricing and attempt bookkeeping."""

from decimal import Decimal

import pytest
from sqlalchemy.exc import OperationalError

from conftest import address, contact
from scoopshop.common.errors import LoginRequired, UpstreamError, ValidationError
from scoopshop.services.checkout.models import User
from scoopshop.services.checkout.schemas import CartItemRequest, InitiateCheckoutRequest
from scoopshop.services.checkout.session import CheckoutSessionService


def cart_request(*items, saved_payment_method_id=None) -> InitiateCheckoutRequest:
    return InitiateCheckoutRequest(
        items=list(items),
        contact_info=contact(),
        shipping_address=address(),
        saved_payment_method_id=saved_payment_method_id,
    )


def vanilla(quantity=2) -> CartItemRequest:
    return CartItemRequest(price_id="price_vanilla", product_id="prod_vanilla", name="Vanilla Pint", quantity=quantity)


def pint_club() -> CartItemRequest:
    return CartItemRequest(
        price_id="price_monthly",
        product_id="prod_club",
        name="Pint Club",
        quantity=1,
        is_subscription=True,
        recurring_interval="month",
    )


@pytest.fixture
def service(session_factory, attempt_store, pricing, gateway):
    return CheckoutSessionService(session_factory, attempt_store, pricing, gateway)


def stored_attempt_id(gateway, operation):
    return gateway.calls_to(operation)[0]["metadata"]["checkout_attempt_id"]


def test_one_time_cart_opens_payment_intent(service, gateway, attempt_store):
    """The charged amount comes from catalog prices plus shipping."""

    response = service.initiate(cart_request(vanilla(), CartItemRequest(
        price_id="price_sprinkles", product_id="prod_sprinkles", name="Sprinkles", quantity=1
    )))

    assert response.mode == "payment"
    assert response.client_secret == "pi_1_secret_x"
    create = gateway.calls_to("payment_intents.create")[0]
    assert create["amount_cents"] == 2 * 450 + 125 + 599
    assert create["customer_id"] is None

    context = attempt_store.get(stored_attempt_id(gateway, "payment_intents.create"))
    assert context.user_id is None
    assert [line.unit_price for line in context.cart_items] == [Decimal("4.50"), Decimal("1.25")]
    assert context.shipping_address.city == "Portland"


def test_unknown_price_is_rejected_without_side_effects(service, gateway, attempt_store):
    bogus = CartItemRequest(price_id="price_nope", product_id="prod_x", name="Mystery", quantity=1)

    with pytest.raises(ValidationError):
        service.initiate(cart_request(vanilla(), bogus))

    assert not gateway.calls_to("payment_intents.create")


def test_inactive_price_is_rejected(service, gateway):
    gateway.add_price("price_vanilla", 450, active=False)

    with pytest.raises(ValidationError):
        service.initiate(cart_request(vanilla()))


def test_subscription_requires_login(service, gateway):
    with pytest.raises(LoginRequired):
        service.initiate(cart_request(pint_club()))
    assert not gateway.calls_to("setup_intents.create")


def test_subscription_needs_recurring_price(service, user):
    item = vanilla()
    item.is_subscription = True

    with pytest.raises(ValidationError):
        service.initiate(cart_request(item), user_id=user.id)


def test_subscription_cart_opens_setup_intent(service, gateway, attempt_store, session_factory, user):
    response = service.initiate(cart_request(pint_club(), vanilla()), user_id=user.id)

    assert response.mode == "setup"
    assert response.client_secret == "seti_1_secret_x"
    assert not gateway.calls_to("payment_intents.create")
    setup = gateway.calls_to("setup_intents.create")[0]
    assert setup["customer_id"] == "cus_1"

    context = attempt_store.get(stored_attempt_id(gateway, "setup_intents.create"))
    assert context.user_id == user.id
    assert context.contains_subscription()
    with session_factory() as db:
        assert db.get(User, user.id).stripe_customer_id == "cus_1"


def test_known_customer_is_reused(service, gateway, session_factory, user):
    with session_factory() as db:
        db.get(User, user.id).stripe_customer_id = "cus_existing"
        db.commit()

    service.initiate(cart_request(pint_club()), user_id=user.id)

    assert not gateway.calls_to("customers.ensure")
    assert gateway.calls_to("setup_intents.create")[0]["customer_id"] == "cus_existing"


def test_processor_failure_leaves_no_attempt(service, gateway, attempt_store):
    gateway.fail_on.add("payment_intents.create")

    with pytest.raises(UpstreamError):
        service.initiate(cart_request(vanilla()))

    attempt_id = stored_attempt_id(gateway, "payment_intents.create")
    assert attempt_id not in attempt_store


def test_storage_failure_while_linking_customer_leaves_no_attempt(attempt_store, pricing, gateway, user):
    def unreachable():
        raise OperationalError("SELECT users", {}, Exception("connection refused"))

    service = CheckoutSessionService(unreachable, attempt_store, pricing, gateway)

    with pytest.raises(OperationalError):
        service.initiate(cart_request(pint_club()), user_id=user.id)

    assert not gateway.calls_to("setup_intents.create")
    assert len(attempt_store) == 0


def test_saved_card_requires_login(service, gateway):
    with pytest.raises(LoginRequired):
        service.initiate(cart_request(vanilla(), saved_payment_method_id="pm_saved"))
    assert not gateway.calls_to("payment_intents.create")


def test_saved_card_is_charged_through_customer(service, gateway, user):
    service.initiate(cart_request(vanilla(), saved_payment_method_id="pm_saved"), user_id=user.id)

    create = gateway.calls_to("payment_intents.create")[0]
    assert create["customer_id"] == "cus_1"
    assert create["payment_method_id"] == "pm_saved"
