"""
Bearer-token identity provider.

Verifies Firebase ID tokens (RS256) against Google's published signing
keys and yields the caller's email and user id. Billing trusts this
resolution; it does not authenticate users itself.
"""

import logging
import time
from dataclasses import dataclass

import httpx
from jose import JWTError, jwt

logger = logging.getLogger(__name__)

FIREBASE_JWKS_URL = (
    "https://www.googleapis.com/service_accounts/v1/jwk/securetoken@system.gserviceaccount.com"
)
DEFAULT_JWKS_TTL = 3600


@dataclass(frozen=True)
class Identity:
    email: str | None
    user_id: str


def bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def _max_age(cache_control: str | None) -> int:
    for part in (cache_control or "").split(","):
        name, _, value = part.strip().partition("=")
        if name == "max-age" and value.isdigit():
            return int(value)
    return DEFAULT_JWKS_TTL


class FirebaseIdentityProvider:
    def __init__(self, project_id: str, jwks_url: str = FIREBASE_JWKS_URL, timeout: float = 10.0):
        self.project_id = project_id
        self.jwks_url = jwks_url
        self.timeout = timeout
        self._keys: dict[str, dict] = {}
        self._keys_expire_at = 0.0

    async def _signing_keys(self) -> dict[str, dict]:
        if self._keys and time.monotonic() < self._keys_expire_at:
            return self._keys
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            resp = await client.get(self.jwks_url)
            resp.raise_for_status()
        self._keys = {key["kid"]: key for key in resp.json().get("keys", [])}
        self._keys_expire_at = time.monotonic() + _max_age(resp.headers.get("cache-control"))
        return self._keys

    async def resolve(self, token: str | None) -> Identity | None:
        """Verified identity for a token, or None when it does not check out."""
        if not token:
            return None
        try:
            header = jwt.get_unverified_header(token)
        except JWTError:
            return None

        try:
            keys = await self._signing_keys()
        except httpx.HTTPError as e:
            logger.error("Could not fetch identity signing keys: %s", e)
            return None

        key = keys.get(header.get("kid"))
        if key is None:
            logger.warning("Unknown kid in identity token (rotated key?)")
            return None

        try:
            claims = jwt.decode(
                token,
                key,
                algorithms=["RS256"],
                audience=self.project_id,
                issuer=f"https://securetoken.google.com/{self.project_id}",
            )
        except JWTError as e:
            logger.info("Rejected identity token: %s", e)
            return None

        user_id = claims.get("user_id") or claims.get("sub")
        if not user_id:
            return None
        email = claims.get("email")
        return Identity(email=email.lower() if email else None, user_id=user_id)


# Placeholder values some clients send instead of omitting a field.
_EMPTY_VALUES = {"", "undefined", "null", "none"}


def _clean(value) -> str | None:
    if value is None:
        return None
    value = str(value).strip()
    if value.lower() in _EMPTY_VALUES:
        return None
    return value


@dataclass(frozen=True)
class BillingIdentity:
    """Lookup candidates for a subscription, tried email first."""

    email: str | None = None
    user_id: str | None = None
    account_id: str | None = None

    @classmethod
    def from_values(cls, email=None, user_id=None, account_id=None) -> "BillingIdentity":
        email = _clean(email)
        return cls(
            email=email.lower() if email else None,
            user_id=_clean(user_id),
            account_id=_clean(account_id),
        )

    @property
    def is_empty(self) -> bool:
        return not (self.email or self.user_id or self.account_id)

    def merged(self, other: "BillingIdentity") -> "BillingIdentity":
        """Fill fields this identity lacks from ``other``."""
        return BillingIdentity(
            email=self.email or other.email,
            user_id=self.user_id or other.user_id,
            account_id=self.account_id or other.account_id,
        )

    def with_verified(self, verified: Identity | None) -> "BillingIdentity":
        """A verified token's email and uid win over client-supplied fields."""
        if verified is None:
            return self
        return BillingIdentity(
            email=verified.email or self.email,
            user_id=verified.user_id,
            account_id=self.account_id,
        )
