"""
Subscription Billing — FastAPI Backend
Trials, Razorpay checkout and mandates, and the subscription gate
"""

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import settings, validate_billing_config
from db.database import async_session, create_schema, engine
from deps import build_billing_services
from middleware import SubscriptionGateMiddleware
from routers import admin, payments, webhooks
from services.exceptions import (
    BillingError, ConfigurationError, CouponError, GatewayError, GatewayNotConfigured,
    ReconciliationError, SignatureError, StoreError, SubscriptionNotFound, TrialError,
)
from services.payments import MandateAlreadyAuthorized, PlanMismatch, WebhookError

logger = logging.getLogger(__name__)


async def run_expiry_sweeper(billing, interval_seconds: int) -> None:
    """Persist lapsed trials and terms periodically."""
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await billing.trials.expire_lapsed()
        except Exception:
            logger.exception("Expiry sweep failed; retrying in %ss", interval_seconds)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    logger.info("Billing API starting (%s)", settings.ENVIRONMENT)
    owned = app.state.billing is None
    if owned:
        validate_billing_config(settings)
        if settings.CREATE_SCHEMA:
            await create_schema()
        app.state.billing = await build_billing_services(settings, async_session)

    sweeper = None
    if settings.EXPIRY_SWEEP_INTERVAL_SECONDS > 0:
        sweeper = asyncio.create_task(
            run_expiry_sweeper(app.state.billing, settings.EXPIRY_SWEEP_INTERVAL_SECONDS)
        )
    yield
    if sweeper is not None:
        sweeper.cancel()
    if owned:
        await app.state.billing.aclose()
        await engine.dispose()
    logger.info("Billing API shut down.")


def _error(status_code: int, message: str, **extra) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": message, **extra})


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(SubscriptionNotFound)
    async def not_found(request: Request, exc: SubscriptionNotFound):
        return _error(404, str(exc))

    @app.exception_handler(CouponError)
    async def coupon_rejected(request: Request, exc: CouponError):
        return _error(400, exc.message, code=exc.code)

    @app.exception_handler(SignatureError)
    async def bad_signature(request: Request, exc: SignatureError):
        return _error(400, str(exc))

    @app.exception_handler(WebhookError)
    async def bad_webhook(request: Request, exc: WebhookError):
        return _error(400, str(exc))

    @app.exception_handler(TrialError)
    async def trial_error(request: Request, exc: TrialError):
        return _error(400, str(exc))

    @app.exception_handler(PlanMismatch)
    async def plan_mismatch(request: Request, exc: PlanMismatch):
        return _error(400, str(exc), code="plan_mismatch")

    @app.exception_handler(MandateAlreadyAuthorized)
    async def mandate_done(request: Request, exc: MandateAlreadyAuthorized):
        return _error(409, str(exc))

    @app.exception_handler(ReconciliationError)
    async def reconciliation_error(request: Request, exc: ReconciliationError):
        return _error(409, str(exc))

    @app.exception_handler(GatewayNotConfigured)
    async def gateway_missing(request: Request, exc: GatewayNotConfigured):
        return _error(503, str(exc), code="gateway_not_configured", retryable=False)

    @app.exception_handler(GatewayError)
    async def gateway_failed(request: Request, exc: GatewayError):
        if exc.retryable:
            return _error(503, str(exc), code="gateway_unavailable", retryable=True)
        return _error(502, str(exc), code="gateway_rejected", retryable=False)

    @app.exception_handler(StoreError)
    async def store_unavailable(request: Request, exc: StoreError):
        logger.error("Store error on %s: %s", request.url.path, exc)
        return _error(503, "Billing store unavailable", retryable=True)

    @app.exception_handler(ConfigurationError)
    async def misconfigured(request: Request, exc: ConfigurationError):
        logger.error("Configuration error: %s", exc)
        return _error(500, "Billing is misconfigured")

    @app.exception_handler(BillingError)
    async def billing_error(request: Request, exc: BillingError):
        logger.error("Unhandled billing error on %s: %s", request.url.path, exc)
        return _error(500, "Billing error")


def create_app(billing=None) -> FastAPI:
    app = FastAPI(
        title="Subscription Billing API",
        description="Trial lifecycle, Razorpay payments and subscription access control",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.billing = billing

    # ── Middleware ─────────────────────────────────────────────
    app.add_middleware(SubscriptionGateMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Restrict in production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Subscription-Status", "X-Trial-Days-Remaining", "X-Billing-Only"],
    )
    register_exception_handlers(app)

    # ── Routers ────────────────────────────────────────────────
    app.include_router(payments.router, prefix="/api/payment", tags=["Billing"])
    app.include_router(webhooks.router, prefix="/api/webhooks", tags=["Webhooks"])
    app.include_router(admin.router, prefix="/api/admin/billing", tags=["Billing Admin"])

    @app.get("/health")
    async def health_check():
        return {"status": "healthy", "service": "Subscription Billing API"}

    @app.get("/health/db")
    async def health_db():
        """Verify the DB connection and that the billing tables are reachable."""
        from sqlalchemy import func, select
        from models.subscription import Subscription
        try:
            async with app.state.billing.sessions() as db:
                count = (await db.execute(select(func.count(Subscription.id)))).scalar() or 0
            return {"status": "ok", "subscriptions_count": count}
        except Exception as e:
            logger.warning("DB health check failed: %s", e)
            return {"status": "error", "detail": str(e)}

    @app.get("/config")
    async def public_config():
        """Values the checkout page needs; no secrets."""
        return {
            "razorpayKeyId": settings.RAZORPAY_KEY_ID,
            "trialDays": settings.TRIAL_DAYS,
            "currency": settings.DEFAULT_CURRENCY,
        }

    return app


app = create_app()
