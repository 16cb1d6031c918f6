import sys
import os
import hashlib
import hmac
import json
import time

# Ensure project root is on the path for all tests
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from crypto import (
    generate_ed25519_keypair, ed25519_sign,
)
from server.config import Settings
from server.store import MarketStore


WEBHOOK_SECRET = "whsec_test_secret"
OPERATOR_KEY = "op-test-key"
JWT_SECRET = "jwt-test-secret-0123456789abcdef0123"

# Pre-generated wallet keypair for deterministic tests
WALLET_PRIV, WALLET_PUB = generate_ed25519_keypair()
WALLET_ADDRESS = "0xABCDEF0123456789"


def make_settings(**overrides) -> Settings:
    """In-memory settings with every integration stubbed."""
    values = {
        "jwt_secret": JWT_SECRET,
        "operator_key": OPERATOR_KEY,
        "stripe_webhook_secret": WEBHOOK_SECRET,
    }
    values.update(overrides)
    return Settings(**values)


def seed_market(store: MarketStore, amount="120.00", status="DRAFT", invoice_id="inv-1"):
    """Users u1..u3 plus one invoice. Returns invoice id."""
    for uid in ("u1", "u2", "u3"):
        store.create_user(name=uid, user_id=uid)
    return store.create_invoice(amount, title="Logo design", status=status,
                                client_id="u1", freelancer_id="u2", invoice_id=invoice_id)


def succeeded_event(intent_id: str, event_id: str | None = None) -> bytes:
    event = {
        "id": event_id or f"evt_{intent_id}_{time.monotonic_ns()}",
        "type": "payment_intent.succeeded",
        "data": {"object": {"id": intent_id, "object": "payment_intent"}},
    }
    return json.dumps(event).encode()


def stripe_signature(secret: str, body: bytes, timestamp: int | None = None) -> str:
    """Stripe-Signature header value: t=<unix>,v1=<hmac-sha256 of "<t>.<body>">."""
    ts = int(time.time() if timestamp is None else timestamp)
    mac = hmac.new(secret.encode("utf-8"), f"{ts}.".encode("ascii") + body, hashlib.sha256)
    return f"t={ts},v1={mac.hexdigest()}"


def signed_webhook(body: bytes, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> dict:
    return {"stripe-signature": stripe_signature(secret, body, timestamp)}


def sign_challenge(challenge: str, privkey: bytes = WALLET_PRIV) -> str:
    """Wallet-side signature over a challenge, hex encoded."""
    return ed25519_sign(privkey, challenge.encode("utf-8")).hex()


def login(client, address: str = WALLET_ADDRESS) -> dict:
    """Full challenge-response round trip. Returns bearer headers."""
    resp = client.post("/blockchain/auth/request-challenge", json={"address": address})
    challenge = resp.json()["challenge"]
    resp = client.post("/blockchain/auth/verify", json={
        "address": address,
        "signature": sign_challenge(challenge),
        "publicKey": WALLET_PUB.hex(),
    })
    assert resp.status_code == 200, resp.text
    return {"Authorization": f"Bearer {resp.json()['access_token']}"}
