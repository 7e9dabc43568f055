"""Tests for request identity parsing and Firebase token verification."""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "api"))

import time

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from jose import jwk, jwt

from middleware import identity_from_body
from services.identity import BillingIdentity, FirebaseIdentityProvider, Identity, bearer_token

PROJECT = "billing-test"


def test_bearer_token_parsing():
    assert bearer_token("Bearer abc.def") == "abc.def"
    assert bearer_token("bearer   abc ") == "abc"
    assert bearer_token("Basic abc") is None
    assert bearer_token("Bearer ") is None
    assert bearer_token(None) is None


def test_from_values_cleans_placeholders():
    identity = BillingIdentity.from_values(email=" Owner@Example.COM ", user_id="undefined", account_id="null")
    assert identity == BillingIdentity(email="owner@example.com")
    assert BillingIdentity.from_values(email="", user_id="None").is_empty


def test_merged_keeps_first_source():
    first = BillingIdentity(email="a@example.com")
    second = BillingIdentity(email="b@example.com", user_id="uid-2", account_id="acct-2")
    assert first.merged(second) == BillingIdentity("a@example.com", "uid-2", "acct-2")


def test_verified_identity_overrides_client_fields():
    claimed = BillingIdentity(email="victim@example.com", user_id="uid-victim", account_id="acct-1")
    verified = claimed.with_verified(Identity(email="caller@example.com", user_id="uid-caller"))
    assert verified == BillingIdentity("caller@example.com", "uid-caller", "acct-1")
    assert claimed.with_verified(None) is claimed


def test_identity_from_body():
    assert identity_from_body(b'{"email": "A@x.com", "gbpAccountId": "acct-1"}') == BillingIdentity(
        email="a@x.com", account_id="acct-1"
    )
    assert identity_from_body(b"[1, 2]").is_empty
    assert identity_from_body(b"not json").is_empty
    assert identity_from_body(b"").is_empty


# ── Token verification ─────────────────────────────────────

@pytest.fixture(scope="module")
def signing_key():
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    private_pem = key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode()
    public_pem = key.public_key().public_bytes(
        serialization.Encoding.PEM,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode()
    public_jwk = jwk.construct(public_pem, "RS256").to_dict()
    return private_pem, public_jwk


def _provider(public_jwk) -> FirebaseIdentityProvider:
    provider = FirebaseIdentityProvider(PROJECT)
    provider._keys = {"kid-1": public_jwk}
    provider._keys_expire_at = time.monotonic() + 3600
    return provider


def _token(private_pem, kid="kid-1", **overrides):
    now = int(time.time())
    claims = {
        "iss": f"https://securetoken.google.com/{PROJECT}",
        "aud": PROJECT,
        "sub": "uid-123",
        "user_id": "uid-123",
        "email": "Owner@Example.com",
        "iat": now,
        "exp": now + 3600,
    }
    claims.update(overrides)
    return jwt.encode(claims, private_pem, algorithm="RS256", headers={"kid": kid})


@pytest.mark.asyncio
async def test_valid_token_resolves(signing_key):
    private_pem, public_jwk = signing_key
    identity = await _provider(public_jwk).resolve(_token(private_pem))
    assert identity == Identity(email="owner@example.com", user_id="uid-123")


@pytest.mark.asyncio
async def test_wrong_audience_rejected(signing_key):
    private_pem, public_jwk = signing_key
    assert await _provider(public_jwk).resolve(_token(private_pem, aud="other-project")) is None


@pytest.mark.asyncio
async def test_expired_token_rejected(signing_key):
    private_pem, public_jwk = signing_key
    past = int(time.time()) - 7200
    token = _token(private_pem, iat=past, exp=past + 60)
    assert await _provider(public_jwk).resolve(token) is None


@pytest.mark.asyncio
async def test_unknown_kid_rejected(signing_key):
    private_pem, public_jwk = signing_key
    assert await _provider(public_jwk).resolve(_token(private_pem, kid="rotated")) is None


@pytest.mark.asyncio
async def test_garbage_token_rejected(signing_key):
    _, public_jwk = signing_key
    provider = _provider(public_jwk)
    assert await provider.resolve("not-a-jwt") is None
    assert await provider.resolve(None) is None
