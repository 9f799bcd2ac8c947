"""HTTP surface for storefront checkout.

Run with `uvicorn scoopshop.services.checkout.main:create_app --factory`.
Collaborators are built from settings unless injected, which is how the tests
swap in SQLite, an in-memory attempt store and a fake processor gateway.
"""

from time import perf_counter
from uuid import uuid4

from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from starlette.concurrency import run_in_threadpool

from scoopshop.common.config import StorefrontSettings, load_settings
from scoopshop.common.db import build_engine, build_session_factory
from scoopshop.common.errors import (
    AdminRequired,
    AuthenticationError,
    LoginRequired,
    ProcessorNotFound,
    StorefrontError,
    SubscriptionActionError,
    UpstreamError,
    ValidationError,
)
from scoopshop.common.logging import configure_logging, logger, trace_id_ctx
from scoopshop.common.metrics import (
    http_request_duration_seconds,
    http_requests_total,
    metrics_response,
)
from scoopshop.common.startup import log_startup_config
from scoopshop.common.tracing import instrument_app, setup_tracing
from scoopshop.services.checkout.attempt_store import build_attempt_store
from scoopshop.services.checkout.history import OrderHistory
from scoopshop.services.checkout.lifecycle import LifecycleSync
from scoopshop.services.checkout.management import SubscriptionManager
from scoopshop.services.checkout.orders import OrderMaterializer
from scoopshop.services.checkout.pricing import PricingService
from scoopshop.services.checkout.processor import StripeGateway
from scoopshop.services.checkout.schemas import (
    AdminOrderSummary,
    InitiateCheckoutRequest,
    InitiateCheckoutResponse,
    IntentStatusResponse,
    OrderSummary,
    SubscriptionSummary,
)
from scoopshop.services.checkout.session import CheckoutSessionService
from scoopshop.services.checkout.status import CheckoutStatusService
from scoopshop.services.checkout.subscriptions import SubscriptionMaterializer
from scoopshop.services.checkout.webhooks import WebhookRouter, WebhookVerifier


def error_status(exc: StorefrontError) -> int:
    """HTTP status for a checkout error raised by an API route."""

    if isinstance(exc, LoginRequired):
        return 401
    if isinstance(exc, (ValidationError, AuthenticationError)):
        return 400
    if isinstance(exc, AdminRequired):
        return 403
    if isinstance(exc, ProcessorNotFound):
        return 404
    if isinstance(exc, SubscriptionActionError):
        return 409
    if isinstance(exc, UpstreamError):
        return 502
    return 500


ERROR_DETAILS = {
    400: "invalid checkout request",
    401: "login required",
    403: "admin access required",
    404: "not found",
    409: "subscription change not allowed",
    502: "payment processor unavailable",
    500: "internal error",
}


def require_user(x_user_id: str | None) -> str:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="login required")
    return x_user_id


def create_app(
    settings: StorefrontSettings | None = None,
    *,
    session_factory=None,
    gateway=None,
    attempt_store=None,
) -> FastAPI:
    """Wire settings, storage and the processor gateway into a FastAPI app."""

    settings = settings or load_settings()
    configure_logging(settings)
    setup_tracing(settings.service_name, settings.otel_exporter_otlp_endpoint)
    log_startup_config(settings)

    if session_factory is None:
        session_factory = build_session_factory(build_engine(settings.postgres_dsn))
    if gateway is None:
        gateway = StripeGateway.from_secret_key(
            settings.stripe_secret_key, currency=settings.currency, service_name=settings.service_name
        )
    if attempt_store is None:
        attempt_store = build_attempt_store(settings, session_factory)

    service_name = settings.service_name
    pricing = PricingService(gateway, settings.stripe_shipping_price_id)
    sessions = CheckoutSessionService(session_factory, attempt_store, pricing, gateway, service_name)
    status = CheckoutStatusService(session_factory, gateway)
    manager = SubscriptionManager(session_factory, gateway)
    history = OrderHistory(session_factory)
    verifier = WebhookVerifier(settings.stripe_webhook_secret, settings.stripe_webhook_tolerance_seconds)
    router = WebhookRouter(
        OrderMaterializer(session_factory, attempt_store, pricing, service_name),
        SubscriptionMaterializer(session_factory, attempt_store, pricing, gateway, service_name),
        LifecycleSync(session_factory, gateway, service_name),
        service_name,
    )

    app = FastAPI(title="Scoop Shop Checkout")
    instrument_app(app)

    @app.middleware("http")
    async def metrics_middleware(request: Request, call_next):
        """Record request count and latency for every HTTP call."""

        trace_id_ctx.set(request.headers.get("x-correlation-id") or str(uuid4()))
        start = perf_counter()
        route = request.url.path
        method = request.method
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            route_obj = request.scope.get("route")
            if route_obj is not None and getattr(route_obj, "path", None):
                route = route_obj.path
            return response
        finally:
            elapsed = max(0.0, perf_counter() - start)
            http_request_duration_seconds.labels(service=service_name, route=route, method=method).observe(elapsed)
            http_requests_total.labels(
                service=service_name,
                route=route,
                method=method,
                status_code=str(status_code),
            ).inc()

    @app.exception_handler(StorefrontError)
    async def storefront_error_handler(request: Request, exc: StorefrontError):
        status_code = error_status(exc)
        logger.warning(
            "request_failed path=%s status=%s error_type=%s error=%s",
            request.url.path,
            status_code,
            type(exc).__name__,
            exc,
        )
        return JSONResponse(status_code=status_code, content={"detail": ERROR_DETAILS[status_code]})

    @app.exception_handler(SQLAlchemyError)
    async def storage_error_handler(request: Request, exc: SQLAlchemyError):
        logger.error("request_storage_error path=%s error_type=%s", request.url.path, type(exc).__name__)
        return JSONResponse(status_code=500, content={"detail": ERROR_DETAILS[500]})

    @app.post("/checkout/sessions", response_model=InitiateCheckoutResponse)
    def create_checkout_session(req: InitiateCheckoutRequest, x_user_id: str | None = Header(default=None)):
        """Price the cart and return the client secret for the payment form."""

        return sessions.initiate(req, user_id=x_user_id or None)

    @app.post("/webhooks/stripe")
    async def stripe_webhook(request: Request):
        """Verify and dispatch one processor event.

        2xx acknowledges the event; 5xx asks the processor to redeliver it.
        """

        payload = await request.body()
        try:
            event = verifier.verify(payload, request.headers.get("stripe-signature"))
        except AuthenticationError as exc:
            logger.warning("webhook_rejected error=%s", exc)
            raise HTTPException(status_code=400, detail="invalid signature") from exc
        try:
            outcome = await run_in_threadpool(router.dispatch, event)
        except StorefrontError as exc:
            raise HTTPException(status_code=500, detail="event processing failed, retry") from exc
        return {"received": True, "outcome": outcome}

    @app.get("/checkout/payment-intents/{intent_id}", response_model=IntentStatusResponse)
    def payment_intent_status(intent_id: str):
        """Processor status and materialized order for a one-time checkout."""

        return status.payment_intent_status(intent_id)

    @app.get("/checkout/setup-intents/{intent_id}", response_model=IntentStatusResponse)
    def setup_intent_status(intent_id: str):
        """Processor status, first order and subscription for a subscription checkout."""

        return status.setup_intent_status(intent_id)

    @app.get("/orders/my", response_model=list[OrderSummary])
    def my_orders(limit: int = 50, offset: int = 0, x_user_id: str | None = Header(default=None)):
        """Orders of the logged-in shopper, newest first."""

        return history.for_user(require_user(x_user_id), limit=limit, offset=offset)

    @app.get("/orders/all", response_model=list[AdminOrderSummary])
    def all_orders(limit: int = 50, offset: int = 0, x_user_id: str | None = Header(default=None)):
        return history.all_orders(require_user(x_user_id), limit=limit, offset=offset)

    @app.get("/subscriptions", response_model=list[SubscriptionSummary])
    def list_subscriptions(x_user_id: str | None = Header(default=None)):
        return manager.list_for_user(require_user(x_user_id))

    @app.post("/subscriptions/{subscription_id}/cancel", response_model=SubscriptionSummary)
    def cancel_subscription(subscription_id: str, x_user_id: str | None = Header(default=None)):
        return manager.cancel(require_user(x_user_id), subscription_id)

    @app.post("/subscriptions/{subscription_id}/pause", response_model=SubscriptionSummary)
    def pause_subscription(subscription_id: str, x_user_id: str | None = Header(default=None)):
        return manager.pause(require_user(x_user_id), subscription_id)

    @app.post("/subscriptions/{subscription_id}/resume", response_model=SubscriptionSummary)
    def resume_subscription(subscription_id: str, x_user_id: str | None = Header(default=None)):
        return manager.resume(require_user(x_user_id), subscription_id)

    @app.get("/metrics")
    def metrics():
        """Prometheus scrape endpoint."""

        return metrics_response()

    @app.get("/health")
    def health():
        """Container health probe endpoint."""

        return {"ok": True}

    return app
