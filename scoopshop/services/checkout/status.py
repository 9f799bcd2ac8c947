"""Read-only status lookups for the order confirmation page."""

from sqlalchemy import or_, select

from scoopshop.services.checkout.models import Order, Subscription
from scoopshop.services.checkout.orders import ATTEMPT_METADATA_KEY
from scoopshop.services.checkout.schemas import (
    IntentStatusResponse,
    OrderItemSummary,
    OrderSummary,
    SubscriptionSummary,
)


def order_summary(order: Order | None) -> OrderSummary | None:
    if order is None:
        return None
    return OrderSummary(
        id=order.id,
        status=order.status,
        total_amount=order.total_amount,
        created_at=order.created_at,
        items=[
            OrderItemSummary(
                product_id=item.product_id,
                product_name=item.product_name,
                quantity=item.quantity,
                unit_price=item.unit_price,
            )
            for item in order.items
        ],
    )


def subscription_summary(sub: Subscription | None) -> SubscriptionSummary | None:
    if sub is None:
        return None
    return SubscriptionSummary(
        id=sub.id,
        stripe_subscription_id=sub.stripe_subscription_id,
        status=sub.status,
        interval=sub.interval,
        current_period_end=sub.current_period_end,
        cancel_at_period_end=sub.cancel_at_period_end,
        collection_paused=sub.collection_paused,
    )


class CheckoutStatusService:
    """Combines processor intent status with whatever checkout has materialized so far.

    `ProcessorNotFound` from the gateway propagates and becomes a 404.
    """

    def __init__(self, session_factory, gateway) -> None:
        self.session_factory = session_factory
        self.gateway = gateway

    def payment_intent_status(self, intent_id: str) -> IntentStatusResponse:
        intent = self.gateway.retrieve_payment_intent(intent_id)
        attempt_id = intent.metadata.get(ATTEMPT_METADATA_KEY)
        with self.session_factory() as db:
            clauses = [Order.stripe_payment_intent_id == intent.id]
            if attempt_id:
                clauses.append(Order.checkout_attempt_id == attempt_id)
            order = db.execute(select(Order).where(or_(*clauses))).scalars().first()
            summary = order_summary(order)
        return IntentStatusResponse(
            id=intent.id,
            status=intent.status,
            amount=intent.amount,
            currency=intent.currency,
            order=summary,
        )

    def setup_intent_status(self, intent_id: str) -> IntentStatusResponse:
        intent = self.gateway.retrieve_setup_intent(intent_id)
        attempt_id = intent.metadata.get(ATTEMPT_METADATA_KEY)
        order = sub = None
        with self.session_factory() as db:
            if attempt_id:
                order = db.execute(
                    select(Order).where(Order.checkout_attempt_id == attempt_id)
                ).scalar_one_or_none()
                sub = db.execute(
                    select(Subscription).where(Subscription.checkout_attempt_id == attempt_id)
                ).scalars().first()
            summary = order_summary(order)
        return IntentStatusResponse(
            id=intent.id,
            status=intent.status,
            order=summary,
            subscription=subscription_summary(sub),
        )
