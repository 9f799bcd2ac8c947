"""Subscription materialization from `setup_intent.succeeded`.

The setup intent saved the shopper's card; here the processor subscription is
created with that card as default payment method, which charges the first
period immediately. One-time lines and shipping ride along as extra invoice
items on that first invoice. Locally, the subscription row and its first order
are written in one transaction.
"""

from uuid import uuid4

from sqlalchemy import select

from scoopshop.common.errors import CorrelationMissing, PersistenceConflict
from scoopshop.common.logging import checkout_attempt_id_ctx, logger
from scoopshop.common.metrics import duplicate_events_skipped_total, orders_materialized_total
from scoopshop.services.checkout.models import Subscription
from scoopshop.services.checkout.orders import (
    ATTEMPT_METADATA_KEY,
    attempt_id_from,
    build_order,
    commit_order,
    find_order_for_attempt,
)
from scoopshop.services.checkout.processor import stripe_field, stripe_id
from scoopshop.services.checkout.schemas import WebhookEvent


class SubscriptionMaterializer:
    """Creates the processor subscription, the local mirror row and the first order."""

    def __init__(self, session_factory, attempt_store, pricing, gateway, service_name: str = "checkout") -> None:
        self.session_factory = session_factory
        self.attempt_store = attempt_store
        self.pricing = pricing
        self.gateway = gateway
        self.service_name = service_name

    def _record_duplicate(self, event_type: str) -> None:
        duplicate_events_skipped_total.labels(service=self.service_name, event_type=event_type).inc()

    def handle_setup_succeeded(self, event: WebhookEvent) -> str:
        intent = event.data.obj
        intent_id = stripe_field(intent, "id")
        attempt_id = attempt_id_from(intent)
        if not attempt_id:
            raise CorrelationMissing(f"setup intent {intent_id} has no checkout attempt metadata")
        checkout_attempt_id_ctx.set(attempt_id)

        customer_id = stripe_id(stripe_field(intent, "customer"))
        payment_method_id = stripe_id(stripe_field(intent, "payment_method"))
        if not customer_id or not payment_method_id:
            logger.error(
                "setup intent lacks customer or payment method setup_intent=%s customer=%s",
                intent_id,
                customer_id,
            )
            return "invalid"

        context = self.attempt_store.get(attempt_id)
        if context is None:
            with self.session_factory() as db:
                if find_order_for_attempt(db, attempt_id) is not None:
                    logger.info("subscription already materialized setup_intent=%s", intent_id)
                    self._record_duplicate(event.type)
                    return "duplicate"
            raise CorrelationMissing(f"checkout context missing for setup intent {intent_id}", context_lost=True)

        if not context.user_id:
            logger.error("subscription checkout without user setup_intent=%s", intent_id)
            return "invalid"

        subscription_lines = [line for line in context.cart_items if line.is_subscription]
        if not subscription_lines:
            logger.warning("setup intent cart has no subscription items setup_intent=%s", intent_id)
            self.attempt_store.delete(attempt_id)
            return "skipped"

        with self.session_factory() as db:
            existing = find_order_for_attempt(db, attempt_id)
        if existing is not None:
            logger.warning("order exists order_id=%s setup_intent=%s", existing.id, intent_id)
            self._record_duplicate(event.type)
            self.attempt_store.delete(attempt_id)
            return "duplicate"

        quote = self.pricing.quote(context.cart_items)
        invoice_items = [
            {"price": line.price_id, "quantity": line.quantity}
            for line in context.cart_items
            if not line.is_subscription
        ]
        if quote.shipping > 0:
            invoice_items.append({"price": quote.shipping_price_id, "quantity": 1})

        # Idempotency key makes a redelivered event get the same processor subscription back.
        snapshot = self.gateway.create_subscription(
            customer_id=customer_id,
            items=[{"price": line.price_id, "quantity": line.quantity} for line in subscription_lines],
            default_payment_method=payment_method_id,
            add_invoice_items=invoice_items,
            metadata={"user_id": context.user_id, ATTEMPT_METADATA_KEY: attempt_id},
            idempotency_key=f"subscription-create-{attempt_id}",
        )
        logger.info("processor subscription ready stripe_subscription=%s status=%s", snapshot.id, snapshot.status)

        first_line = subscription_lines[0]
        with self.session_factory() as db:
            local = db.execute(
                select(Subscription).where(Subscription.stripe_subscription_id == snapshot.id)
            ).scalar_one_or_none()
            if local is None:
                local = Subscription(
                    id=str(uuid4()),
                    user_id=context.user_id,
                    stripe_subscription_id=snapshot.id,
                    stripe_price_id=first_line.price_id,
                    interval=first_line.recurring_interval or snapshot.interval,
                    status=snapshot.status,
                    current_period_end=snapshot.current_period_end,
                    cancel_at_period_end=snapshot.cancel_at_period_end,
                    collection_paused=snapshot.collection_paused,
                    checkout_attempt_id=attempt_id,
                )
                db.add(local)
            # Subscription row and first order commit together.
            order = build_order(context, quote, attempt_id, subscription_id=local.id)
            try:
                commit_order(db, order)
            except PersistenceConflict:
                logger.warning("concurrent subscription order insert lost race setup_intent=%s", intent_id)
                outcome = "duplicate"
            else:
                logger.info(
                    "subscription materialized subscription_id=%s order_id=%s total=%s",
                    local.id,
                    order.id,
                    quote.total,
                )
                orders_materialized_total.labels(service=self.service_name, source="setup_intent").inc()
                outcome = "created"

        if outcome == "duplicate":
            self._record_duplicate(event.type)
        self.attempt_store.delete(attempt_id)
        return outcome
