"""Shared fixtures: a throwaway SQLite database, a fake gateway and a fixed clock."""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "api"))

# Must be set before config is imported anywhere.
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("EXPIRY_SWEEP_INTERVAL_SECONDS", "0")

from datetime import datetime, timedelta, timezone

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from config import Settings
from db.database import Base
import models  # noqa: F401
from deps import build_billing_services
from services.razorpay import sign_payment, sign_subscription

KEY_ID = "rzp_test_key"
KEY_SECRET = "test_key_secret"
WEBHOOK_SECRET = "test_webhook_secret"
ADMIN_TOKEN = "admin-token"

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
SUBSCRIPTION_TERM_END = datetime(2027, 3, 1, 12, 0, tzinfo=timezone.utc)


class FrozenClock:
    """Callable clock the tests move by hand."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> datetime:
        self.now = self.now + timedelta(**delta)
        return self.now


class FakeGateway:
    """In-memory stand-in for RazorpayGateway with the same method surface."""

    def __init__(self, key_id=KEY_ID, key_secret=KEY_SECRET, webhook_secret=WEBHOOK_SECRET):
        self.key_id = key_id
        self.key_secret = key_secret
        self.webhook_secret = webhook_secret
        self.orders: dict[str, dict] = {}
        self.payments: dict[str, dict] = {}
        self.customers: list[dict] = []
        self.plans: dict[str, dict] = {}
        self.subscriptions: dict[str, dict] = {}
        self.cancelled: list[str] = []
        self._seq = 0

    @property
    def configured(self) -> bool:
        return bool(self.key_id and self.key_secret)

    def _next(self, prefix: str) -> str:
        self._seq += 1
        return f"{prefix}_{self._seq:04d}"

    async def create_order(self, amount_paise, currency, receipt, notes=None, customer_id=None):
        order = {
            "id": self._next("order"),
            "amount": amount_paise,
            "currency": currency,
            "receipt": receipt,
            "status": "created",
            "notes": {k: str(v) for k, v in (notes or {}).items() if v is not None},
        }
        if customer_id:
            order["customer_id"] = customer_id
        self.orders[order["id"]] = order
        return order

    async def fetch_order(self, order_id):
        return self.orders[order_id]

    async def fetch_payment(self, payment_id):
        return self.payments[payment_id]

    async def create_customer(self, name, email, contact=None):
        customer = {"id": self._next("cust"), "name": name or email, "email": email}
        self.customers.append(customer)
        return customer

    async def create_plan(self, name, amount_paise, currency, period="yearly", description=None, notes=None):
        plan = {
            "id": self._next("plan"),
            "period": period,
            "interval": 1,
            "item": {"name": name, "amount": amount_paise, "currency": currency},
            "notes": {k: str(v) for k, v in (notes or {}).items() if v is not None},
        }
        self.plans[plan["id"]] = plan
        return plan

    async def fetch_plan(self, plan_id):
        return self.plans[plan_id]

    async def create_subscription(self, plan_id, customer_id, quantity=1, total_count=12, notes=None):
        subscription = {
            "id": self._next("sub"),
            "plan_id": plan_id,
            "customer_id": customer_id,
            "quantity": quantity,
            "total_count": total_count,
            "paid_count": 0,
            "remaining_count": total_count,
            "status": "created",
            "short_url": "https://rzp.io/i/test",
            "current_start": None,
            "current_end": None,
            "notes": {k: str(v) for k, v in (notes or {}).items() if v is not None},
        }
        self.subscriptions[subscription["id"]] = subscription
        return subscription

    async def fetch_subscription(self, subscription_id):
        return self.subscriptions[subscription_id]

    async def cancel_subscription(self, subscription_id, at_cycle_end=False):
        self.cancelled.append(subscription_id)
        if subscription_id in self.subscriptions:
            self.subscriptions[subscription_id]["status"] = "cancelled"
        return {"id": subscription_id, "status": "cancelled"}

    async def aclose(self):
        pass

    def pay(self, order_id: str, status: str = "captured", token_id: str | None = None):
        """Simulate the checkout widget: settle a payment and return (payment_id, signature)."""
        order = self.orders[order_id]
        payment = {
            "id": self._next("pay"),
            "order_id": order_id,
            "amount": order["amount"],
            "currency": order["currency"],
            "status": status,
            "created_at": int(NOW.timestamp()),
            "customer_id": order.get("customer_id"),
            "token_id": token_id,
        }
        self.payments[payment["id"]] = payment
        return payment["id"], sign_payment(self.key_secret, order_id, payment["id"])

    def authorize_subscription(self, subscription_id: str, status: str = "captured", token_id: str = "token_1"):
        """Simulate the first charge of a gateway subscription; returns (payment_id, signature)."""
        subscription = self.subscriptions[subscription_id]
        plan = self.plans[subscription["plan_id"]]
        subscription.update(
            status="active",
            paid_count=1,
            remaining_count=subscription["total_count"] - 1,
            current_start=int(NOW.timestamp()),
            current_end=int(SUBSCRIPTION_TERM_END.timestamp()),
        )
        payment = {
            "id": self._next("pay"),
            "order_id": None,
            "amount": plan["item"]["amount"] * subscription["quantity"],
            "currency": plan["item"]["currency"],
            "status": status,
            "created_at": int(NOW.timestamp()),
            "customer_id": subscription["customer_id"],
            "token_id": token_id,
        }
        self.payments[payment["id"]] = payment
        return payment["id"], sign_subscription(self.key_secret, payment["id"], subscription_id)


def make_settings(**overrides) -> Settings:
    values = {
        "RAZORPAY_KEY_ID": KEY_ID,
        "RAZORPAY_KEY_SECRET": KEY_SECRET,
        "RAZORPAY_WEBHOOK_SECRET": WEBHOOK_SECRET,
        "REDIS_URL": None,
        "FIREBASE_PROJECT_ID": None,
        "ADMIN_API_TOKEN": ADMIN_TOKEN,
        "TRIAL_DAYS": 15,
    }
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest_asyncio.fixture
async def sessions(tmp_path):
    """File-backed SQLite so concurrent sessions see each other's commits."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'billing.db'}", poolclass=NullPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


@pytest_asyncio.fixture
async def billing(sessions, gateway, clock):
    services = await build_billing_services(make_settings(), sessions, gateway=gateway, clock=clock)
    yield services
    await services.aclose()


@pytest_asyncio.fixture
async def client(billing):
    from main import create_app

    app = create_app(billing)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
