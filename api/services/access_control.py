"""
Access control — who may reach which route given their subscription.

decide() is the whole policy and is pure:

  route on the allow-list                  → allow, no lookup
  no billing identity in the request       → allow (onboarding)
  identity known, no subscription yet      → allow when ALLOW_UNREGISTERED_IDENTITY
  trial / active within term               → allow
  billing-only and a billing route         → allow
  anything else                            → 402 with redirect to /billing

AccessController adds the lookup and applies FAILURE_POLICY when the
lookup raises: store, cache and network errors fail open and are logged,
configuration errors fail closed.
"""

import logging
import re
from dataclasses import dataclass, field

from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError

from models.subscription import utcnow
from services.cache import candidates_key
from services.evaluator import StatusView, SubscriptionSnapshot, evaluate
from services.exceptions import ConfigurationError, GatewayError, StoreError
from services.identity import BillingIdentity

logger = logging.getLogger(__name__)

FAIL_OPEN = "fail_open"
FAIL_CLOSED = "fail_closed"

# Most specific class first; the first isinstance match decides.
FAILURE_POLICY: list[tuple[type[BaseException], str]] = [
    (ConfigurationError, FAIL_CLOSED),
    (StoreError, FAIL_OPEN),
    (SQLAlchemyError, FAIL_OPEN),
    (RedisError, FAIL_OPEN),
    (GatewayError, FAIL_OPEN),
    (TimeoutError, FAIL_OPEN),
    (OSError, FAIL_OPEN),
]
DEFAULT_FAILURE_POLICY = FAIL_OPEN

ACCOUNT_IN_PATH = re.compile(r"(?:^|/)accounts/([^/?#]+)")


def failure_policy(exc: BaseException) -> str:
    for error_class, policy in FAILURE_POLICY:
        if isinstance(exc, error_class):
            return policy
    return DEFAULT_FAILURE_POLICY


def _under(path: str, prefixes) -> bool:
    for prefix in prefixes:
        prefix = prefix.rstrip("/")
        if path == prefix or path.startswith(prefix + "/"):
            return True
    return False


def account_from_path(path: str) -> str | None:
    match = ACCOUNT_IN_PATH.search(path)
    return match.group(1) if match else None


@dataclass(frozen=True)
class AccessPolicy:
    allow_prefixes: tuple[str, ...] = ()
    billing_only_prefixes: tuple[str, ...] = ()
    status_code: int = 402
    allow_unregistered: bool = True
    redirect_to: str = "/billing"

    def always_allowed(self, path: str) -> bool:
        return _under(path, self.allow_prefixes)

    def billing_route(self, path: str) -> bool:
        return _under(path, self.billing_only_prefixes)


@dataclass
class AccessDecision:
    allowed: bool
    reason: str
    view: StatusView | None = None
    redirect_to: str = "/billing"
    extra: dict = field(default_factory=dict)

    def headers(self) -> dict[str, str]:
        if self.view is None or self.view.status == "none":
            return {}
        headers = {"X-Subscription-Status": self.view.status}
        if self.view.status == "trial" and self.view.days_remaining is not None:
            headers["X-Trial-Days-Remaining"] = str(self.view.days_remaining)
        if self.view.billing_only:
            headers["X-Billing-Only"] = "true"
        return headers

    def body(self) -> dict:
        view = self.view
        return {
            "error": "Payment Required",
            "message": view.message if view else "A subscription is required.",
            "status": view.status if view else "none",
            "billingOnly": bool(view and view.billing_only),
            "requiresPayment": True,
            "redirectTo": self.redirect_to,
        }


def decide(path: str, policy: AccessPolicy, identity: BillingIdentity | None, view: StatusView | None) -> AccessDecision:
    if policy.always_allowed(path):
        return AccessDecision(True, "allow_list", view)
    if identity is None or identity.is_empty:
        return AccessDecision(True, "no_identity", view)
    if view is None or view.status == "none":
        if policy.allow_unregistered:
            return AccessDecision(True, "unregistered", view)
        return AccessDecision(False, "payment_required", view, policy.redirect_to)
    if view.can_use_platform:
        return AccessDecision(True, "entitled", view)
    if view.billing_only and policy.billing_route(path):
        return AccessDecision(True, "billing_only", view)
    return AccessDecision(False, "payment_required", view, policy.redirect_to)


class AccessController:
    def __init__(self, policy: AccessPolicy, trials, cache=None, clock=utcnow):
        self.policy = policy
        self.trials = trials
        self.cache = cache
        self.clock = clock

    async def snapshot_for(self, identity: BillingIdentity) -> SubscriptionSnapshot | None:
        key = candidates_key(identity.email, identity.user_id, identity.account_id)
        if self.cache is not None:
            cached = await self.cache.get(key)
            if cached is not None:
                return cached

        record = await self.trials.resolve_identity(identity)
        if record is None:
            return None
        snapshot = SubscriptionSnapshot.from_record(record)
        if self.cache is not None:
            await self.cache.put(key, snapshot)
        return snapshot

    async def status_for(self, identity: BillingIdentity) -> StatusView:
        return evaluate(await self.snapshot_for(identity), self.clock())

    async def check(self, path: str, identity: BillingIdentity | None) -> AccessDecision:
        """
        Decide for one request. Raises only for errors whose policy is
        fail-closed; everything else is logged and allowed.
        """
        if self.policy.always_allowed(path) or identity is None or identity.is_empty:
            return decide(path, self.policy, identity, None)
        try:
            view = await self.status_for(identity)
        except Exception as exc:
            if failure_policy(exc) == FAIL_CLOSED:
                raise
            logger.exception("Subscription check failed for %s on %s; allowing", identity, path)
            return AccessDecision(True, "fail_open")
        return decide(path, self.policy, identity, view)
