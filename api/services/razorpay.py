"""
Razorpay gateway client.

Thin async wrapper over the REST API (https://api.razorpay.com/v1) using
basic auth with the key id/secret. Every call has a bounded timeout.
Transport errors, timeouts and 5xx responses raise a retryable
GatewayError; 4xx responses raise a non-retryable one. Nothing here
retries on its own: re-issuing an order is the caller's decision.

Signatures:
  payment       HMAC_SHA256(key_secret, "{order_id}|{payment_id}")
  subscription  HMAC_SHA256(key_secret, "{payment_id}|{subscription_id}")
  webhook       HMAC_SHA256(webhook_secret, raw request body)
"""

import hashlib
import hmac
import logging

import httpx

from services.exceptions import GatewayError, GatewayNotConfigured

logger = logging.getLogger(__name__)


# ── Signatures ─────────────────────────────────────────────

def _hmac_hex(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


def _matches(expected: str, provided: str | None) -> bool:
    if not provided:
        return False
    return hmac.compare_digest(expected.encode(), provided.strip().encode())


def verify_payment_signature(secret: str, order_id: str, payment_id: str, signature: str | None) -> bool:
    if not (secret and order_id and payment_id):
        return False
    expected = _hmac_hex(secret, f"{order_id}|{payment_id}".encode())
    return _matches(expected, signature)


def verify_subscription_signature(
    secret: str, payment_id: str, subscription_id: str, signature: str | None
) -> bool:
    if not (secret and payment_id and subscription_id):
        return False
    expected = _hmac_hex(secret, f"{payment_id}|{subscription_id}".encode())
    return _matches(expected, signature)


def verify_webhook_signature(secret: str, body: bytes, signature: str | None) -> bool:
    if not secret:
        return False
    return _matches(_hmac_hex(secret, body), signature)


def sign_payment(secret: str, order_id: str, payment_id: str) -> str:
    """Signature the checkout widget would return; used by tests and tooling."""
    return _hmac_hex(secret, f"{order_id}|{payment_id}".encode())


def sign_subscription(secret: str, payment_id: str, subscription_id: str) -> str:
    return _hmac_hex(secret, f"{payment_id}|{subscription_id}".encode())


# ── REST client ────────────────────────────────────────────

class RazorpayGateway:
    def __init__(
        self,
        key_id: str | None,
        key_secret: str | None,
        webhook_secret: str | None = None,
        base_url: str = "https://api.razorpay.com/v1",
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.key_id = key_id
        self.key_secret = key_secret
        self.webhook_secret = webhook_secret
        self._client = client
        self._base_url = base_url
        self._timeout = timeout

    @property
    def configured(self) -> bool:
        return bool(self.key_id and self.key_secret)

    def _http(self) -> httpx.AsyncClient:
        if not self.configured:
            raise GatewayNotConfigured()
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                auth=(self.key_id, self.key_secret),
                timeout=self._timeout,
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _request(self, method: str, path: str, json: dict | None = None) -> dict:
        client = self._http()
        try:
            resp = await client.request(method, path, json=json)
        except httpx.TimeoutException as e:
            logger.warning("Razorpay %s %s timed out: %s", method, path, e)
            raise GatewayError("Payment gateway timed out", retryable=True) from e
        except httpx.TransportError as e:
            logger.warning("Razorpay %s %s transport error: %s", method, path, e)
            raise GatewayError("Payment gateway unreachable", retryable=True) from e

        if resp.status_code >= 500:
            logger.warning("Razorpay %s %s failed: %s", method, path, resp.status_code)
            raise GatewayError(
                "Payment gateway error", retryable=True, status_code=resp.status_code
            )
        if resp.status_code >= 400:
            description = _error_description(resp)
            logger.warning("Razorpay %s %s rejected (%s): %s", method, path, resp.status_code, description)
            raise GatewayError(description, retryable=False, status_code=resp.status_code)
        return resp.json()

    # Orders

    async def create_order(
        self,
        amount_paise: int,
        currency: str,
        receipt: str,
        notes: dict | None = None,
        customer_id: str | None = None,
    ) -> dict:
        payload = {
            "amount": amount_paise,
            "currency": currency,
            "receipt": receipt[:40],
            "payment_capture": 1,
            "notes": {k: str(v) for k, v in (notes or {}).items() if v is not None},
        }
        if customer_id:
            payload["customer_id"] = customer_id
        order = await self._request("POST", "/orders", json=payload)
        logger.info("Razorpay order created: %s amount=%s %s", order.get("id"), amount_paise, currency)
        return order

    async def fetch_order(self, order_id: str) -> dict:
        return await self._request("GET", f"/orders/{order_id}")

    async def fetch_payment(self, payment_id: str) -> dict:
        return await self._request("GET", f"/payments/{payment_id}")

    # Customers / mandates

    async def create_customer(self, name: str | None, email: str, contact: str | None = None) -> dict:
        payload = {"name": name or email, "email": email, "fail_existing": "0"}
        if contact:
            payload["contact"] = contact
        customer = await self._request("POST", "/customers", json=payload)
        logger.info("Razorpay customer ready: %s", customer.get("id"))
        return customer

    # Plans / recurring subscriptions

    async def create_plan(
        self,
        name: str,
        amount_paise: int,
        currency: str,
        period: str = "yearly",
        description: str | None = None,
        notes: dict | None = None,
    ) -> dict:
        payload = {
            "period": "monthly" if period == "monthly" else "yearly",
            "interval": 1,
            "item": {
                "name": name,
                "amount": amount_paise,
                "currency": currency,
                "description": description or f"{name} subscription plan",
            },
            "notes": {k: str(v) for k, v in (notes or {}).items() if v is not None},
        }
        plan = await self._request("POST", "/plans", json=payload)
        logger.info("Razorpay plan created: %s %s amount=%s %s", plan.get("id"), period, amount_paise, currency)
        return plan

    async def fetch_plan(self, plan_id: str) -> dict:
        return await self._request("GET", f"/plans/{plan_id}")

    async def create_subscription(
        self,
        plan_id: str,
        customer_id: str,
        quantity: int = 1,
        total_count: int = 12,
        notes: dict | None = None,
    ) -> dict:
        payload = {
            "plan_id": plan_id,
            "customer_id": customer_id,
            "quantity": quantity,
            "total_count": total_count,
            "customer_notify": 1,
            "notes": {k: str(v) for k, v in (notes or {}).items() if v is not None},
        }
        subscription = await self._request("POST", "/subscriptions", json=payload)
        logger.info(
            "Razorpay subscription created: %s plan=%s customer=%s quantity=%s",
            subscription.get("id"), plan_id, customer_id, quantity,
        )
        return subscription

    async def fetch_subscription(self, subscription_id: str) -> dict:
        return await self._request("GET", f"/subscriptions/{subscription_id}")

    async def cancel_subscription(self, subscription_id: str, at_cycle_end: bool = False) -> dict:
        return await self._request(
            "POST",
            f"/subscriptions/{subscription_id}/cancel",
            json={"cancel_at_cycle_end": 1 if at_cycle_end else 0},
        )


def _error_description(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return resp.text[:200] or f"HTTP {resp.status_code}"
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict):
        return error.get("description") or error.get("code") or f"HTTP {resp.status_code}"
    return f"HTTP {resp.status_code}"
