"""Order materialization for one-time purchases.

Turns `payment_intent.succeeded` plus the correlated checkout attempt into
exactly one `PAID` order. The pre-insert lookup catches ordinary redelivery;
the unique `checkout_attempt_id` column is what actually stops two concurrent
deliveries from both inserting.
"""

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from scoopshop.common.errors import CorrelationMissing, OrderPersistenceError, PersistenceConflict
from scoopshop.common.logging import checkout_attempt_id_ctx, logger
from scoopshop.common.metrics import duplicate_events_skipped_total, orders_materialized_total
from scoopshop.services.checkout.models import Order, OrderItem
from scoopshop.services.checkout.pricing import SHIPPING_PRODUCT_NAME, OrderQuote
from scoopshop.services.checkout.processor import stripe_field
from scoopshop.services.checkout.schemas import CheckoutContext, WebhookEvent


ATTEMPT_METADATA_KEY = "checkout_attempt_id"
ORDER_STATUS_PAID = "PAID"


def attempt_id_from(intent: dict) -> str | None:
    return stripe_field(stripe_field(intent, "metadata", {}), ATTEMPT_METADATA_KEY)


def find_order_for_attempt(db, attempt_id: str) -> Order | None:
    return db.execute(select(Order).where(Order.checkout_attempt_id == attempt_id)).scalar_one_or_none()


def build_order(
    context: CheckoutContext,
    quote: OrderQuote,
    attempt_id: str,
    subscription_id: str | None = None,
    payment_intent_id: str | None = None,
) -> Order:
    """Order + items from an attempt, with a synthetic shipping line when charged."""

    contact = context.contact_info
    address = context.shipping_address
    order = Order(
        user_id=context.user_id,
        subscription_id=subscription_id,
        checkout_attempt_id=attempt_id,
        stripe_payment_intent_id=payment_intent_id,
        total_amount=quote.total,
        status=ORDER_STATUS_PAID,
        contact_email=contact.email,
        contact_phone=contact.phone,
        shipping_name=address.full_name,
        shipping_address1=address.address1,
        shipping_address2=address.address2,
        shipping_city=address.city,
        shipping_state=address.state,
        shipping_postal_code=address.postal_code,
        shipping_country=address.country,
    )
    for position, line in enumerate(context.cart_items):
        order.items.append(
            OrderItem(
                position=position,
                product_id=line.product_id,
                product_name=line.product_name or "Unknown",
                quantity=line.quantity,
                unit_price=line.unit_price,
            )
        )
    if quote.shipping > 0:
        order.items.append(
            OrderItem(
                position=len(context.cart_items),
                product_id=quote.shipping_price_id,
                product_name=SHIPPING_PRODUCT_NAME,
                quantity=1,
                unit_price=quote.shipping,
            )
        )
    return order


def commit_order(db, order: Order) -> None:
    """Flush and commit one order; translate storage errors into the checkout taxonomy."""

    try:
        db.add(order)
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise PersistenceConflict(str(exc.orig)) from exc
    except SQLAlchemyError as exc:
        db.rollback()
        raise OrderPersistenceError(f"order insert failed: {exc.__class__.__name__}") from exc


class OrderMaterializer:
    """Handles `payment_intent.succeeded` for carts without subscription items."""

    def __init__(self, session_factory, attempt_store, pricing, service_name: str = "checkout") -> None:
        self.session_factory = session_factory
        self.attempt_store = attempt_store
        self.pricing = pricing
        self.service_name = service_name

    def _record_duplicate(self, event_type: str) -> None:
        duplicate_events_skipped_total.labels(service=self.service_name, event_type=event_type).inc()

    def handle_payment_succeeded(self, event: WebhookEvent) -> str:
        intent = event.data.obj
        intent_id = stripe_field(intent, "id")
        attempt_id = attempt_id_from(intent)
        if not attempt_id:
            raise CorrelationMissing(f"payment intent {intent_id} has no checkout attempt metadata")
        checkout_attempt_id_ctx.set(attempt_id)

        context = self.attempt_store.get(attempt_id)
        if context is None:
            with self.session_factory() as db:
                if find_order_for_attempt(db, attempt_id) is not None:
                    logger.info("order already materialized payment_intent=%s", intent_id)
                    self._record_duplicate(event.type)
                    return "duplicate"
            raise CorrelationMissing(
                f"checkout context missing for payment intent {intent_id}", context_lost=True
            )

        if context.contains_subscription():
            # Subscription carts are materialized by the setup-intent path only.
            logger.info("subscription cart skipped by payment handler payment_intent=%s", intent_id)
            return "skipped"

        quote = self.pricing.quote(context.cart_items)

        with self.session_factory() as db:
            existing = find_order_for_attempt(db, attempt_id)
            if existing is not None:
                logger.warning("order exists order_id=%s payment_intent=%s", existing.id, intent_id)
                outcome = "duplicate"
            else:
                order = build_order(context, quote, attempt_id, payment_intent_id=intent_id)
                try:
                    commit_order(db, order)
                except PersistenceConflict:
                    logger.warning("concurrent order insert lost race payment_intent=%s", intent_id)
                    outcome = "duplicate"
                else:
                    logger.info(
                        "order created order_id=%s total=%s shipping=%s payment_intent=%s",
                        order.id,
                        quote.total,
                        quote.shipping,
                        intent_id,
                    )
                    orders_materialized_total.labels(service=self.service_name, source="payment_intent").inc()
                    outcome = "created"

        if outcome == "duplicate":
            self._record_duplicate(event.type)
        self.attempt_store.delete(attempt_id)
        return outcome
