"""Subscription gate: one middleware, parameterized by the allow-lists in config."""

import json
import logging

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from services.access_control import account_from_path, failure_policy, FAIL_CLOSED
from services.exceptions import BillingError
from services.identity import BillingIdentity, bearer_token

logger = logging.getLogger(__name__)

BODY_METHODS = ("POST", "PUT", "PATCH")
MAX_IDENTITY_BODY = 64 * 1024


def identity_from_body(raw: bytes) -> BillingIdentity:
    if not raw or len(raw) > MAX_IDENTITY_BODY:
        return BillingIdentity()
    try:
        data = json.loads(raw)
    except ValueError:
        return BillingIdentity()
    if not isinstance(data, dict):
        return BillingIdentity()
    return BillingIdentity.from_values(
        email=data.get("email"),
        user_id=data.get("userId"),
        account_id=data.get("gbpAccountId") or data.get("accountId"),
    )


async def extract_identity(request: Request, identity_provider=None) -> BillingIdentity:
    """
    Billing identity for a request, each field taken from the first source
    that has it: headers, query string, JSON body, then the path.
    """
    headers = request.headers
    identity = BillingIdentity.from_values(
        email=headers.get("x-billing-email"),
        user_id=headers.get("x-user-id"),
        account_id=headers.get("x-gbp-account-id") or headers.get("x-account-id"),
    )

    query = request.query_params
    identity = identity.merged(BillingIdentity.from_values(
        email=query.get("email"),
        user_id=query.get("userId"),
        account_id=query.get("gbpAccountId") or query.get("accountId"),
    ))

    if request.method in BODY_METHODS and "json" in headers.get("content-type", ""):
        identity = identity.merged(identity_from_body(await request.body()))

    identity = identity.merged(BillingIdentity.from_values(account_id=account_from_path(request.url.path)))

    token = bearer_token(headers.get("authorization"))
    if identity_provider is not None and token:
        identity = identity.with_verified(await identity_provider.resolve(token))
    return identity


class SubscriptionGateMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        billing = getattr(request.app.state, "billing", None)
        if billing is None or request.method == "OPTIONS":
            return await call_next(request)

        access = billing.access
        path = request.url.path
        if access.policy.always_allowed(path):
            return await call_next(request)

        try:
            identity = await extract_identity(request, billing.identity_provider)
        except Exception:
            logger.exception("Could not read billing identity for %s; allowing", path)
            return await call_next(request)

        try:
            decision = await access.check(path, identity)
        except BillingError as exc:
            if failure_policy(exc) != FAIL_CLOSED:
                raise
            logger.error("Billing unavailable for %s: %s", path, exc)
            return JSONResponse(
                status_code=503,
                content={
                    "error": "Service Unavailable",
                    "message": "Billing is temporarily unavailable. Please try again later.",
                    "requiresPayment": False,
                },
            )

        request.state.subscription = decision.view
        request.state.billing_identity = identity

        if not decision.allowed:
            logger.info(
                "Blocked %s %s for %s: %s",
                request.method, path, identity.email or identity.user_id or identity.account_id,
                decision.view.status if decision.view else "none",
            )
            return JSONResponse(
                status_code=access.policy.status_code,
                content=decision.body(),
                headers=decision.headers(),
            )

        response = await call_next(request)
        for name, value in decision.headers().items():
            response.headers[name] = value
        return response
