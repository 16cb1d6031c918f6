"""Wallet challenge-response authentication.

A client asks for a challenge for its wallet address, signs the challenge
text with the wallet key and sends back (address, signature, publicKey).
A valid Ed25519 signature over the exact stored challenge consumes it and
yields a short-lived session token (HS256 JWT).

Challenges are single use and expire. The store is disposable: dropping
it only forces clients to request a new challenge.

Known gap: the supplied publicKey is not checked against the address
(crypto.aptos_account_address). Anyone holding a valid key can sign the
challenge issued for any address and get a session for that address.
Session holders must not be treated as proven owners of the wallet.
"""

import logging
import secrets
import sqlite3
import threading
import time

import jwt

from crypto import ED25519_PUBKEY_LEN, ED25519_SIG_LEN, decode_key_material, ed25519_verify
from protocol import (
    CHALLENGE_NONCE_BYTES, CHALLENGE_PREFIX, DEFAULT_CHALLENGE_TTL, DEFAULT_SESSION_TTL,
    UNVERIFIED_WARNING, BadRequest, Unauthorized,
)


logger = logging.getLogger(__name__)


def normalize_address(address: str) -> str:
    return (address or "").strip().lower()


class ChallengeStore:
    """Pending challenges keyed by normalized wallet address."""

    def __init__(self, db_path: str = ":memory:", ttl: int = DEFAULT_CHALLENGE_TTL):
        self.db = sqlite3.connect(db_path, check_same_thread=False)
        self.db.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self.ttl = ttl
        self.db.execute("""
            CREATE TABLE IF NOT EXISTS challenges (
                address TEXT PRIMARY KEY,
                challenge TEXT NOT NULL,
                created_at REAL NOT NULL,
                expires_at REAL NOT NULL
            )
        """)
        self.db.commit()

    def issue(self, address: str, now: float | None = None) -> str:
        """Create a fresh challenge, replacing any pending one for *address*."""
        now = time.time() if now is None else now
        challenge = CHALLENGE_PREFIX + secrets.token_hex(CHALLENGE_NONCE_BYTES)
        with self._lock:
            self.db.execute(
                "INSERT OR REPLACE INTO challenges (address, challenge, created_at, expires_at) "
                "VALUES (?, ?, ?, ?)",
                (address, challenge, now, now + self.ttl),
            )
            self.db.commit()
        return challenge

    def get(self, address: str, now: float | None = None) -> str | None:
        """Pending challenge for *address*, or None if absent or expired."""
        now = time.time() if now is None else now
        with self._lock:
            row = self.db.execute(
                "SELECT challenge FROM challenges WHERE address = ? AND expires_at > ?",
                (address, now),
            ).fetchone()
        return row["challenge"] if row else None

    def consume(self, address: str, challenge: str) -> bool:
        """Delete the challenge. True for exactly one caller."""
        with self._lock:
            cursor = self.db.execute(
                "DELETE FROM challenges WHERE address = ? AND challenge = ?",
                (address, challenge),
            )
            self.db.commit()
            return cursor.rowcount > 0

    def sweep(self, now: float | None = None) -> int:
        """Drop expired challenges. Returns how many were removed."""
        now = time.time() if now is None else now
        with self._lock:
            cursor = self.db.execute("DELETE FROM challenges WHERE expires_at <= ?", (now,))
            self.db.commit()
            return cursor.rowcount

    def close(self):
        self.db.close()


class SessionTokens:
    """HS256 session tokens for authenticated wallets."""

    ALGORITHM = "HS256"

    def __init__(self, secret: str, ttl: int = DEFAULT_SESSION_TTL):
        if not secret:
            raise ValueError("Session token secret must not be empty")
        self.secret = secret
        self.ttl = ttl

    def issue(self, address: str) -> str:
        now = int(time.time())
        claims = {"sub": address, "wallet": True, "iat": now, "exp": now + self.ttl}
        return jwt.encode(claims, self.secret, algorithm=self.ALGORITHM)

    def decode(self, token: str) -> dict:
        """Validate a token and return its claims. Raises Unauthorized."""
        try:
            return jwt.decode(token, self.secret, algorithms=[self.ALGORITHM])
        except jwt.ExpiredSignatureError:
            raise Unauthorized("Session token expired")
        except jwt.InvalidTokenError as e:
            raise Unauthorized(f"Invalid session token: {e}")


class WalletAuthenticator:
    def __init__(self, challenges: ChallengeStore, tokens: SessionTokens,
                 allow_unverified: bool = False):
        self.challenges = challenges
        self.tokens = tokens
        self.allow_unverified = allow_unverified
        if allow_unverified:
            logger.warning("Wallet auth accepts signatures without a public key (unverified mode)")

    def request_challenge(self, address: str) -> dict:
        address = normalize_address(address)
        if not address:
            raise BadRequest("address is required")
        self.challenges.sweep()
        challenge = self.challenges.issue(address)
        logger.info("Issued wallet challenge for %s", address)
        return {"address": address, "challenge": challenge}

    def verify(self, address: str, signature: str, public_key: str | None = None) -> dict | None:
        """Check a signed challenge.

        Returns {"access_token", ...} on success, None if the signature is
        not acceptable. A failed check leaves the challenge pending.
        """
        address = normalize_address(address)
        if not address or not signature:
            raise BadRequest("address and signature are required")

        challenge = self.challenges.get(address)
        if challenge is None:
            logger.info("No pending challenge for %s", address)
            return None

        if not public_key:
            if not self.allow_unverified:
                raise BadRequest("publicKey is required for verification")
            if not self.challenges.consume(address, challenge):
                return None
            logger.warning("Issued session for %s without signature verification", address)
            return {"access_token": self.tokens.issue(address), "warning": UNVERIFIED_WARNING}

        try:
            pub = decode_key_material(public_key, expected_len=ED25519_PUBKEY_LEN)
            sig = decode_key_material(signature, expected_len=ED25519_SIG_LEN)
        except ValueError:
            logger.info("Undecodable key material from %s", address)
            return None
        if len(pub) != ED25519_PUBKEY_LEN or len(sig) != ED25519_SIG_LEN:
            return None
        if not ed25519_verify(pub, challenge.encode("utf-8"), sig):
            logger.info("Bad wallet signature from %s", address)
            return None

        # Concurrent verify of the same challenge: only one consume succeeds
        if not self.challenges.consume(address, challenge):
            return None
        logger.info("Wallet %s authenticated", address)
        return {"access_token": self.tokens.issue(address)}
