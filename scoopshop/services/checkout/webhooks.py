"""Inbound processor webhooks: signature verification and dispatch."""

import json
from time import perf_counter

import stripe
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import SQLAlchemyError

from scoopshop.common.errors import (
    AuthenticationError,
    CorrelationMissing,
    DataIntegrityWarning,
    OrderPersistenceError,
    StorefrontError,
)
from scoopshop.common.logging import checkout_attempt_id_ctx, event_id_ctx, logger
from scoopshop.common.metrics import webhook_events_total, webhook_processing_seconds
from scoopshop.common.tracing import get_tracer
from scoopshop.services.checkout.schemas import WebhookEvent


tracer = get_tracer("scoopshop.checkout.webhooks")


class WebhookVerifier:
    """Checks the `Stripe-Signature` header before anything reads the body."""

    def __init__(self, signing_secret: str, tolerance_seconds: int = 300) -> None:
        self.signing_secret = signing_secret
        self.tolerance_seconds = tolerance_seconds

    def verify(self, payload: bytes, signature: str | None) -> WebhookEvent:
        if not signature:
            raise AuthenticationError("missing signature header")
        try:
            body = payload.decode("utf-8")
            stripe.WebhookSignature.verify_header(
                body, signature, self.signing_secret, self.tolerance_seconds
            )
        except (UnicodeDecodeError, stripe.SignatureVerificationError) as exc:
            raise AuthenticationError("signature verification failed") from exc
        try:
            return WebhookEvent.model_validate(json.loads(body))
        except (ValueError, PydanticValidationError) as exc:
            raise AuthenticationError("signed payload is not an event envelope") from exc


class WebhookRouter:
    """Routes each verified event type to exactly one handler.

    Non-retryable failures are logged and acknowledged; retryable ones, and any
    storage error, are re-raised so the HTTP layer answers non-2xx and the
    processor redelivers.
    """

    def __init__(self, orders, subscriptions, lifecycle, service_name: str = "checkout") -> None:
        self.service_name = service_name
        self.handlers = {
            "payment_intent.succeeded": orders.handle_payment_succeeded,
            "payment_intent.payment_failed": lifecycle.handle_payment_failed,
            "setup_intent.succeeded": subscriptions.handle_setup_succeeded,
            "customer.subscription.created": lifecycle.handle_subscription_created,
            "customer.subscription.updated": lifecycle.handle_subscription_updated,
            "customer.subscription.deleted": lifecycle.handle_subscription_deleted,
            "invoice.paid": lifecycle.handle_invoice_paid,
            "invoice.payment_failed": lifecycle.handle_invoice_payment_failed,
        }

    def dispatch(self, event: WebhookEvent) -> str:
        event_token = event_id_ctx.set(event.id)
        attempt_token = checkout_attempt_id_ctx.set("")
        start = perf_counter()
        outcome = "failed"
        try:
            logger.info("webhook_received event_type=%s", event.type)
            with tracer.start_as_current_span(
                "webhook.dispatch",
                attributes={"webhook.event_id": event.id, "webhook.event_type": event.type},
            ) as span:
                outcome = self._run(event)
                span.set_attribute("webhook.outcome", outcome)
            return outcome
        finally:
            webhook_processing_seconds.labels(service=self.service_name, event_type=event.type).observe(
                max(0.0, perf_counter() - start)
            )
            webhook_events_total.labels(
                service=self.service_name, event_type=event.type, outcome=outcome
            ).inc()
            checkout_attempt_id_ctx.reset(attempt_token)
            event_id_ctx.reset(event_token)

    def _run(self, event: WebhookEvent) -> str:
        handler = self.handlers.get(event.type)
        if handler is None:
            logger.info("webhook_unhandled event_type=%s", event.type)
            return "unhandled"
        try:
            return handler(event)
        except CorrelationMissing as exc:
            if exc.context_lost:
                logger.error("webhook_context_lost event_type=%s error=%s", event.type, exc)
            else:
                logger.warning("webhook_uncorrelated event_type=%s error=%s", event.type, exc)
            return "uncorrelated"
        except DataIntegrityWarning as exc:
            logger.warning("webhook_integrity_warning event_type=%s error=%s", event.type, exc)
            return "missing_subscription"
        except StorefrontError as exc:
            if exc.retryable:
                logger.error("webhook_retry_requested event_type=%s error=%s", event.type, exc)
                raise
            logger.error("webhook_handler_error event_type=%s error=%s", event.type, exc)
            return "failed"
        except SQLAlchemyError as exc:
            # Storage outages never acknowledge: an order write may still be owed.
            logger.exception("webhook_storage_error event_type=%s", event.type)
            raise OrderPersistenceError(f"storage failure while handling {event.type}") from exc
        except Exception:
            logger.exception("webhook_handler_crashed event_type=%s", event.type)
            return "failed"
