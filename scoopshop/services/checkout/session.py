"""Checkout session initiation.

Validates the cart against the processor's price catalog, stores the checkout
attempt and opens a processor session tagged with the attempt id: a setup
intent when the cart holds a subscription, a payment intent otherwise.
"""

from scoopshop.common.errors import (
    LoginRequired,
    ProcessorNotFound,
    StorefrontError,
    UpstreamError,
    ValidationError,
)
from scoopshop.common.logging import checkout_attempt_id_ctx, logger
from scoopshop.common.metrics import checkout_session_failures_total, checkout_sessions_total
from scoopshop.services.checkout.attempt_store import new_attempt_id
from scoopshop.services.checkout.models import User
from scoopshop.services.checkout.orders import ATTEMPT_METADATA_KEY
from scoopshop.services.checkout.pricing import from_cents, to_cents
from scoopshop.services.checkout.processor import IntentHandle
from scoopshop.services.checkout.schemas import (
    CartItemRequest,
    CartLine,
    CheckoutContext,
    InitiateCheckoutRequest,
    InitiateCheckoutResponse,
    ShippingAddress,
)


MODE_PAYMENT = "payment"
MODE_SETUP = "setup"


def customer_shipping(address: ShippingAddress) -> dict:
    return {
        "name": address.full_name,
        "address": {
            "line1": address.address1,
            "line2": address.address2,
            "city": address.city,
            "state": address.state,
            "postal_code": address.postal_code,
            "country": address.country,
        },
    }


class CheckoutSessionService:
    """Owns `POST /checkout/sessions`."""

    def __init__(self, session_factory, attempt_store, pricing, gateway, service_name: str = "checkout") -> None:
        self.session_factory = session_factory
        self.attempt_store = attempt_store
        self.pricing = pricing
        self.gateway = gateway
        self.service_name = service_name

    def _price_line(self, item: CartItemRequest, user_id: str | None) -> CartLine:
        """Resolve one client cart item to a catalog-priced line."""

        try:
            price = self.gateway.retrieve_price(item.price_id)
        except ProcessorNotFound as exc:
            raise ValidationError(f"unknown price {item.price_id}") from exc
        if not price.active or not price.unit_amount:
            raise ValidationError(f"price {item.price_id} is inactive or has no amount")
        recurring_interval = None
        if item.is_subscription:
            if not user_id:
                raise LoginRequired("login is required to purchase subscriptions")
            if not price.recurring_interval:
                raise ValidationError(f"price {item.price_id} is not recurring")
            recurring_interval = item.recurring_interval or price.recurring_interval
        return CartLine(
            price_id=item.price_id,
            product_id=item.product_id,
            product_name=item.name,
            quantity=item.quantity,
            unit_price=from_cents(price.unit_amount),
            is_subscription=item.is_subscription,
            recurring_interval=recurring_interval,
        )

    def _customer_for(self, user_id: str, request: InitiateCheckoutRequest) -> str:
        """Processor customer for the shopper, remembered on the user row."""

        with self.session_factory() as db:
            user = db.get(User, user_id)
            if user is None:
                raise LoginRequired("unknown user")
            if user.stripe_customer_id:
                return user.stripe_customer_id
            customer_id = self.gateway.ensure_customer(
                email=user.email,
                name=user.name,
                phone=request.contact_info.phone,
                shipping=customer_shipping(request.shipping_address),
                user_id=user.id,
            )
            user.stripe_customer_id = customer_id
            db.commit()
            logger.info("processor customer linked user_id=%s", user_id)
            return customer_id

    def _open_session(
        self, request: InitiateCheckoutRequest, context: CheckoutContext, total_cents: int, attempt_id: str
    ) -> tuple[str, IntentHandle]:
        metadata = {ATTEMPT_METADATA_KEY: attempt_id}
        if context.contains_subscription():
            customer_id = self._customer_for(context.user_id, request)
            handle = self.gateway.create_setup_intent(
                customer_id=customer_id,
                metadata=metadata,
                payment_method_id=request.saved_payment_method_id,
            )
            return MODE_SETUP, handle

        customer_id = None
        if request.saved_payment_method_id:
            customer_id = self._customer_for(context.user_id, request)
        handle = self.gateway.create_payment_intent(
            amount_cents=total_cents,
            metadata=metadata,
            customer_id=customer_id,
            payment_method_id=request.saved_payment_method_id,
        )
        return MODE_PAYMENT, handle

    def initiate(self, request: InitiateCheckoutRequest, user_id: str | None = None) -> InitiateCheckoutResponse:
        """Validate, price, persist the attempt and open the processor session.

        Raises `ValidationError` (no side effects). Any later failure removes the
        attempt before propagating.
        """

        try:
            lines = [self._price_line(item, user_id) for item in request.items]
            context = CheckoutContext(
                user_id=user_id,
                cart_items=lines,
                contact_info=request.contact_info,
                shipping_address=request.shipping_address,
            )
            quote = self.pricing.quote(lines)
            total_cents = to_cents(quote.total)
            if request.saved_payment_method_id and not user_id:
                # A saved card is only usable together with the customer that owns it.
                raise LoginRequired("login is required to pay with a saved card")
            if not context.contains_subscription() and total_cents <= 0:
                raise ValidationError("total amount must be positive")
        except StorefrontError as exc:
            checkout_session_failures_total.labels(service=self.service_name, reason=type(exc).__name__).inc()
            raise

        attempt_id = new_attempt_id()
        token = checkout_attempt_id_ctx.set(attempt_id)
        try:
            self.attempt_store.put(attempt_id, context)
            try:
                mode, handle = self._open_session(request, context, total_cents, attempt_id)
                if not handle.client_secret:
                    raise UpstreamError("processor session has no client secret")
            except Exception as exc:
                self.attempt_store.delete(attempt_id)
                checkout_session_failures_total.labels(service=self.service_name, reason=type(exc).__name__).inc()
                logger.error("checkout session failed error_type=%s error=%s", type(exc).__name__, exc)
                raise
            checkout_sessions_total.labels(service=self.service_name, mode=mode).inc()
            logger.info(
                "checkout session opened mode=%s intent=%s subtotal=%s shipping=%s",
                mode,
                handle.id,
                quote.subtotal,
                quote.shipping,
            )
            return InitiateCheckoutResponse(client_secret=handle.client_secret, mode=mode)
        finally:
            checkout_attempt_id_ctx.reset(token)
