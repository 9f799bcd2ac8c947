"""Subscription lifecycle reconciliation.

Events can arrive late, twice or out of order, so handlers never trust
payload fields for status or billing period: they re-fetch the subscription
from the processor and write that state with a single keyed UPDATE. Local
subscription rows are only ever created by the subscription materializer.
"""

from decimal import Decimal

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from scoopshop.common.errors import DataIntegrityWarning, OrderPersistenceError
from scoopshop.common.logging import logger
from scoopshop.common.metrics import duplicate_events_skipped_total, orders_materialized_total
from scoopshop.services.checkout.models import Order, OrderItem, Subscription, User
from scoopshop.services.checkout.orders import ORDER_STATUS_PAID, attempt_id_from
from scoopshop.services.checkout.pricing import from_cents, quantize
from scoopshop.services.checkout.processor import SubscriptionSnapshot, stripe_field, stripe_id
from scoopshop.services.checkout.schemas import WebhookEvent


RENEWAL_BILLING_REASONS = {"subscription_cycle", "subscription_update"}
STATUS_CANCELED = "canceled"
STATUS_PAST_DUE = "past_due"


def snapshot_values(snapshot: SubscriptionSnapshot) -> dict:
    """Column values mirrored from the processor; a missing period end keeps the stored one."""

    values = {
        "status": snapshot.status,
        "cancel_at_period_end": snapshot.cancel_at_period_end,
        "collection_paused": snapshot.collection_paused,
    }
    if snapshot.current_period_end is not None:
        values["current_period_end"] = snapshot.current_period_end
    return values


def apply_snapshot(db, snapshot: SubscriptionSnapshot) -> int:
    """Atomic update-if-exists keyed by the processor id; returns matched rows."""

    result = db.execute(
        update(Subscription)
        .where(Subscription.stripe_subscription_id == snapshot.id)
        .values(**snapshot_values(snapshot))
    )
    return result.rowcount


def find_renewal_order(db, invoice_id: str):
    return db.execute(select(Order.id).where(Order.stripe_invoice_id == invoice_id)).first()


def invoice_subscription_id(invoice: dict) -> str | None:
    """Subscription id from either the classic or the `parent` invoice shape."""

    direct = stripe_id(stripe_field(invoice, "subscription"))
    if direct:
        return direct
    details = stripe_field(stripe_field(invoice, "parent"), "subscription_details")
    return stripe_id(stripe_field(details, "subscription"))


def _line_product_id(line: dict) -> str:
    price = stripe_field(line, "price")
    product = stripe_id(stripe_field(price, "product"))
    if product:
        return product
    price_details = stripe_field(stripe_field(line, "pricing"), "price_details")
    return stripe_field(price_details, "product", "unknown_product")


def renewal_items(invoice: dict) -> list[OrderItem]:
    """One order item per invoice line with a positive amount."""

    items = []
    for line in stripe_field(stripe_field(invoice, "lines"), "data", []):
        quantity = stripe_field(line, "quantity") or 1
        unit_price = quantize(Decimal(stripe_field(line, "amount", 0)) / 100 / quantity)
        if unit_price <= 0:
            continue
        name = stripe_field(line, "description") or stripe_field(stripe_field(line, "price"), "nickname")
        items.append(
            OrderItem(
                position=len(items),
                product_id=_line_product_id(line),
                product_name=name or "Subscription Item",
                quantity=quantity,
                unit_price=unit_price,
            )
        )
    return items


class LifecycleSync:
    """Keeps local subscriptions and renewal orders in step with the processor."""

    def __init__(self, session_factory, gateway, service_name: str = "checkout") -> None:
        self.session_factory = session_factory
        self.gateway = gateway
        self.service_name = service_name

    def handle_subscription_created(self, event: WebhookEvent) -> str:
        sub = event.data.obj
        logger.info(
            "subscription created upstream stripe_subscription=%s status=%s",
            stripe_field(sub, "id"),
            stripe_field(sub, "status"),
        )
        return "logged"

    def handle_subscription_updated(self, event: WebhookEvent) -> str:
        stripe_subscription_id = stripe_field(event.data.obj, "id")
        snapshot = self.gateway.retrieve_subscription(stripe_subscription_id)
        with self.session_factory() as db:
            matched = apply_snapshot(db, snapshot)
            db.commit()
        if matched == 0:
            raise DataIntegrityWarning(
                f"no local subscription for {stripe_subscription_id}; creation event was missed"
            )
        logger.info(
            "subscription synced stripe_subscription=%s status=%s period_end=%s",
            snapshot.id,
            snapshot.status,
            snapshot.current_period_end,
        )
        return "updated"

    def handle_subscription_deleted(self, event: WebhookEvent) -> str:
        stripe_subscription_id = stripe_field(event.data.obj, "id")
        with self.session_factory() as db:
            result = db.execute(
                update(Subscription)
                .where(Subscription.stripe_subscription_id == stripe_subscription_id)
                .values(status=STATUS_CANCELED, cancel_at_period_end=True)
            )
            db.commit()
        if result.rowcount == 0:
            raise DataIntegrityWarning(f"no local subscription for deleted {stripe_subscription_id}")
        logger.info("subscription canceled stripe_subscription=%s", stripe_subscription_id)
        return "canceled"

    def handle_invoice_payment_failed(self, event: WebhookEvent) -> str:
        invoice = event.data.obj
        stripe_subscription_id = invoice_subscription_id(invoice)
        if not stripe_subscription_id:
            logger.info("invoice payment failed without subscription invoice=%s", stripe_field(invoice, "id"))
            return "ignored"
        with self.session_factory() as db:
            result = db.execute(
                update(Subscription)
                .where(
                    Subscription.stripe_subscription_id == stripe_subscription_id,
                    Subscription.status != STATUS_CANCELED,
                )
                .values(status=STATUS_PAST_DUE)
            )
            exists = result.rowcount > 0 or db.execute(
                select(Subscription.id).where(Subscription.stripe_subscription_id == stripe_subscription_id)
            ).first() is not None
            db.commit()
        if not exists:
            raise DataIntegrityWarning(f"no local subscription for failed invoice on {stripe_subscription_id}")
        logger.warning(
            "subscription past due stripe_subscription=%s invoice=%s",
            stripe_subscription_id,
            stripe_field(invoice, "id"),
        )
        return "past_due"

    def handle_payment_failed(self, event: WebhookEvent) -> str:
        intent = event.data.obj
        logger.info(
            "payment failed payment_intent=%s correlated=%s reason=%s",
            stripe_field(intent, "id"),
            attempt_id_from(intent) is not None,
            stripe_field(stripe_field(intent, "last_payment_error"), "code"),
        )
        return "logged"

    def handle_invoice_paid(self, event: WebhookEvent) -> str:
        invoice = event.data.obj
        invoice_id = stripe_field(invoice, "id")
        stripe_subscription_id = invoice_subscription_id(invoice)
        billing_reason = stripe_field(invoice, "billing_reason")
        if (
            stripe_field(invoice, "status") != "paid"
            or not stripe_subscription_id
            or billing_reason not in RENEWAL_BILLING_REASONS
        ):
            logger.info(
                "invoice not a renewal invoice=%s status=%s subscription=%s reason=%s",
                invoice_id,
                stripe_field(invoice, "status"),
                stripe_subscription_id,
                billing_reason,
            )
            return "ignored"
        return self._renew(invoice, invoice_id, stripe_subscription_id, event.type)

    def _renew(self, invoice: dict, invoice_id: str, stripe_subscription_id: str, event_type: str) -> str:
        """Advance the local subscription and record the renewal order in one transaction."""

        snapshot = self.gateway.retrieve_subscription(stripe_subscription_id)
        with self.session_factory() as db:
            local = db.execute(
                select(Subscription).where(Subscription.stripe_subscription_id == stripe_subscription_id)
            ).scalar_one_or_none()
            if local is None:
                raise DataIntegrityWarning(
                    f"no local subscription {stripe_subscription_id} for renewal invoice {invoice_id}"
                )
            if find_renewal_order(db, invoice_id) is not None:
                logger.info("renewal order exists invoice=%s", invoice_id)
                duplicate_events_skipped_total.labels(service=self.service_name, event_type=event_type).inc()
                return "duplicate"

            items = renewal_items(invoice)
            try:
                apply_snapshot(db, snapshot)
                if not items:
                    logger.warning("renewal invoice has no billable lines invoice=%s", invoice_id)
                    db.commit()
                    return "synced"
                order = self._build_renewal_order(db, invoice, invoice_id, local, items)
                db.add(order)
                db.commit()
            except IntegrityError:
                db.rollback()
                logger.warning("concurrent renewal insert lost race invoice=%s", invoice_id)
                duplicate_events_skipped_total.labels(service=self.service_name, event_type=event_type).inc()
                return "duplicate"
            except SQLAlchemyError as exc:
                db.rollback()
                raise OrderPersistenceError(f"renewal for invoice {invoice_id} rolled back") from exc

        orders_materialized_total.labels(service=self.service_name, source="renewal").inc()
        logger.info(
            "renewal order created order_id=%s invoice=%s period_end=%s",
            order.id,
            invoice_id,
            snapshot.current_period_end,
        )
        return "created"

    def _build_renewal_order(self, db, invoice: dict, invoice_id: str, local: Subscription, items) -> Order:
        user = db.get(User, local.user_id)
        shipping = stripe_field(invoice, "customer_shipping")
        address = stripe_field(shipping, "address")
        order = Order(
            user_id=local.user_id,
            subscription_id=local.id,
            stripe_invoice_id=invoice_id,
            total_amount=from_cents(stripe_field(invoice, "amount_paid", 0)),
            status=ORDER_STATUS_PAID,
            contact_email=stripe_field(invoice, "customer_email") or (user.email if user else None),
            contact_phone=stripe_field(invoice, "customer_phone"),
            shipping_name=stripe_field(shipping, "name")
            or stripe_field(invoice, "customer_name")
            or (user.name if user else None),
            shipping_address1=stripe_field(address, "line1"),
            shipping_address2=stripe_field(address, "line2"),
            shipping_city=stripe_field(address, "city"),
            shipping_state=stripe_field(address, "state"),
            shipping_postal_code=stripe_field(address, "postal_code"),
            shipping_country=stripe_field(address, "country"),
        )
        order.items.extend(items)
        return order
