"""Self-service subscription management for logged-in shoppers.

Changes go to the processor first; the returned snapshot is then written
locally with the same keyed update the lifecycle handlers use, so a later
`customer.subscription.updated` event is a no-op.
"""

from sqlalchemy import select

from scoopshop.common.errors import ProcessorNotFound, SubscriptionActionError
from scoopshop.common.logging import logger
from scoopshop.services.checkout.lifecycle import STATUS_CANCELED, apply_snapshot
from scoopshop.services.checkout.models import Subscription
from scoopshop.services.checkout.schemas import SubscriptionSummary
from scoopshop.services.checkout.status import subscription_summary


class SubscriptionManager:
    def __init__(self, session_factory, gateway) -> None:
        self.session_factory = session_factory
        self.gateway = gateway

    def list_for_user(self, user_id: str) -> list[SubscriptionSummary]:
        with self.session_factory() as db:
            rows = db.execute(
                select(Subscription)
                .where(Subscription.user_id == user_id)
                .order_by(Subscription.created_at.desc())
            ).scalars()
            return [subscription_summary(row) for row in rows]

    def _owned(self, db, user_id: str, subscription_id: str) -> Subscription:
        sub = db.get(Subscription, subscription_id)
        if sub is None or sub.user_id != user_id:
            raise ProcessorNotFound(f"subscription {subscription_id} not found")
        return sub

    def _change(self, user_id: str, subscription_id: str, action: str, check, params: dict) -> SubscriptionSummary:
        with self.session_factory() as db:
            sub = self._owned(db, user_id, subscription_id)
            if sub.status == STATUS_CANCELED:
                raise SubscriptionActionError(f"subscription {subscription_id} is canceled")
            problem = check(sub)
            if problem:
                raise SubscriptionActionError(problem)
            snapshot = self.gateway.update_subscription(sub.stripe_subscription_id, params)
            apply_snapshot(db, snapshot)
            db.commit()
            db.refresh(sub)
            logger.info(
                "subscription %s subscription_id=%s status=%s paused=%s cancel_at_period_end=%s",
                action,
                sub.id,
                sub.status,
                sub.collection_paused,
                sub.cancel_at_period_end,
            )
            return subscription_summary(sub)

    def cancel(self, user_id: str, subscription_id: str) -> SubscriptionSummary:
        """Cancel at the end of the current period."""

        return self._change(
            user_id,
            subscription_id,
            "cancel",
            lambda sub: "subscription already set to cancel" if sub.cancel_at_period_end else None,
            {"cancel_at_period_end": True},
        )

    def pause(self, user_id: str, subscription_id: str) -> SubscriptionSummary:
        """Stop collecting payments; invoices are voided while paused."""

        return self._change(
            user_id,
            subscription_id,
            "pause",
            lambda sub: "subscription already paused" if sub.collection_paused else None,
            {"pause_collection": {"behavior": "void"}},
        )

    def resume(self, user_id: str, subscription_id: str) -> SubscriptionSummary:
        """Undo a pause or a pending cancellation."""

        return self._change(
            user_id,
            subscription_id,
            "resume",
            lambda sub: None
            if sub.collection_paused or sub.cancel_at_period_end
            else "subscription is not paused or canceling",
            {"pause_collection": "", "cancel_at_period_end": False},
        )
