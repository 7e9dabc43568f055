"""Billing service container and FastAPI dependencies."""

import logging
import secrets
from dataclasses import dataclass

from fastapi import Header, HTTPException, Request

from config import Settings
from services.access_control import AccessController, AccessPolicy
from services.cache import StatusCache, get_redis
from services.coupons import CouponService
from services.identity import FirebaseIdentityProvider
from services.payments import PaymentOrchestrator
from services.razorpay import RazorpayGateway
from services.reconciliation import Reconciler
from services.trials import TrialManager

logger = logging.getLogger(__name__)


@dataclass
class BillingServices:
    settings: Settings
    sessions: object
    cache: StatusCache
    gateway: RazorpayGateway
    identity_provider: FirebaseIdentityProvider | None
    trials: TrialManager
    coupons: CouponService
    payments: PaymentOrchestrator
    reconciler: Reconciler
    access: AccessController

    async def aclose(self) -> None:
        await self.gateway.aclose()
        if self.cache.redis is not None:
            await self.cache.redis.aclose()


async def build_billing_services(
    config: Settings,
    sessions,
    redis=None,
    gateway: RazorpayGateway | None = None,
    identity_provider: FirebaseIdentityProvider | None = None,
    clock=None,
) -> BillingServices:
    """Wire every billing component around one session factory."""
    if redis is None and config.REDIS_URL:
        redis = await get_redis(config.REDIS_URL)
    cache = StatusCache(redis, config.STATUS_CACHE_TTL_SECONDS)

    if gateway is None:
        gateway = RazorpayGateway(
            key_id=config.RAZORPAY_KEY_ID,
            key_secret=config.RAZORPAY_KEY_SECRET,
            webhook_secret=config.RAZORPAY_WEBHOOK_SECRET,
            base_url=config.RAZORPAY_BASE_URL,
            timeout=config.GATEWAY_TIMEOUT_SECONDS,
        )
    if not gateway.configured:
        logger.warning("Razorpay credentials missing: payment endpoints are disabled")

    if identity_provider is None and config.FIREBASE_PROJECT_ID:
        identity_provider = FirebaseIdentityProvider(
            config.FIREBASE_PROJECT_ID, timeout=config.GATEWAY_TIMEOUT_SECONDS
        )

    timing = {"clock": clock} if clock is not None else {}
    trials = TrialManager(sessions, trial_days=config.TRIAL_DAYS, cache=cache, **timing)
    coupons = CouponService(sessions, **timing)
    payments = PaymentOrchestrator(
        sessions,
        gateway,
        trials,
        coupons,
        cache=cache,
        mandate_amount_paise=config.MANDATE_AUTH_AMOUNT_PAISE,
        currency=config.DEFAULT_CURRENCY,
        **timing,
    )
    policy = AccessPolicy(
        allow_prefixes=tuple(config.BILLING_ALLOW_PREFIXES),
        billing_only_prefixes=tuple(config.BILLING_ONLY_PREFIXES),
        status_code=config.PAYMENT_REQUIRED_STATUS_CODE,
        allow_unregistered=config.ALLOW_UNREGISTERED_IDENTITY,
    )
    return BillingServices(
        settings=config,
        sessions=sessions,
        cache=cache,
        gateway=gateway,
        identity_provider=identity_provider,
        trials=trials,
        coupons=coupons,
        payments=payments,
        reconciler=Reconciler(sessions, cache=cache),
        access=AccessController(policy, trials, cache=cache, **timing),
    )


def get_billing(request: Request) -> BillingServices:
    billing = getattr(request.app.state, "billing", None)
    if billing is None:
        raise HTTPException(status_code=503, detail="Billing services are not ready")
    return billing


def require_admin(request: Request, x_admin_token: str | None = Header(None)) -> str:
    billing = get_billing(request)
    expected = billing.settings.ADMIN_API_TOKEN
    if not expected or not x_admin_token or not secrets.compare_digest(x_admin_token, expected):
        raise HTTPException(status_code=403, detail="Admin token required")
    return "admin"
