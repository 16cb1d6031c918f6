"""Shared crypto utilities for the escrow core.

Provides:
- Canonical JSON (deterministic serialization)
- Deterministic 48-bit token ids for minted assets
- Ed25519 keys, signing and verification (wallet auth + Aptos signer)
- Key material decoding (0x-hex, base64, raw hex)

Dependencies: hashlib, json, secrets, cryptography
"""

import base64
import binascii
import hashlib
import json
import secrets
import time as _time

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)
from cryptography.hazmat.primitives import serialization

from protocol import TOKEN_ID_BYTES, TOKEN_ID_MAX


ED25519_PUBKEY_LEN = 32
ED25519_SIG_LEN = 64


# ---------------------------------------------------------------------------
# Canonical JSON
# ---------------------------------------------------------------------------

def canonical_json(obj: dict) -> bytes:
    """Canonical JSON: sorted keys, no extra whitespace, UTF-8."""
    return json.dumps(obj, sort_keys=True, separators=(",", ":")).encode("utf-8")


# ---------------------------------------------------------------------------
# Token ids + transaction hashes
# ---------------------------------------------------------------------------

def derive_token_id(subject_id: str) -> int:
    """First 6 bytes of SHA-256(subject_id), big-endian. Stable across retries."""
    digest = hashlib.sha256(subject_id.encode("utf-8")).digest()
    return int.from_bytes(digest[:TOKEN_ID_BYTES], "big")


def time_token_id(now: float | None = None) -> int:
    """Millisecond clock folded into the 48-bit token id range."""
    ms = int((_time.time() if now is None else now) * 1000)
    return ms % TOKEN_ID_MAX


def stub_tx_hash() -> str:
    """Random-looking 32-byte transaction hash for stub mints."""
    return "0x" + secrets.token_hex(32)


# ---------------------------------------------------------------------------
# Key material decoding
# ---------------------------------------------------------------------------

def decode_key_material(value: str, expected_len: int | None = None) -> bytes:
    """Decode a wallet-supplied key or signature.

    0x-prefixed values are hex. Otherwise base64 is tried first, then raw
    hex. When *expected_len* is given, a base64 decode of the wrong length
    falls through to hex (hex strings are valid base64 too).
    Raises ValueError if nothing decodes.
    """
    if not value:
        raise ValueError("empty key material")
    value = value.strip()
    if value[:2].lower() == "0x":
        return bytes.fromhex(value[2:])

    try:
        decoded = base64.b64decode(value, validate=True)
        if expected_len is None or len(decoded) == expected_len:
            return decoded
    except binascii.Error:
        pass
    return bytes.fromhex(value)


# ---------------------------------------------------------------------------
# Ed25519
# ---------------------------------------------------------------------------

def generate_ed25519_keypair() -> tuple[bytes, bytes]:
    """Generate a new Ed25519 keypair. Returns (privkey_bytes, pubkey_bytes).
    Both are 32 bytes raw."""
    privkey = Ed25519PrivateKey.generate()
    priv_bytes = privkey.private_bytes(
        serialization.Encoding.Raw,
        serialization.PrivateFormat.Raw,
        serialization.NoEncryption(),
    )
    pub_bytes = privkey.public_key().public_bytes(
        serialization.Encoding.Raw,
        serialization.PublicFormat.Raw,
    )
    return priv_bytes, pub_bytes


def ed25519_privkey_to_pubkey(privkey_bytes: bytes) -> bytes:
    """Derive the 32-byte public key from a 32-byte private key."""
    privkey = Ed25519PrivateKey.from_private_bytes(privkey_bytes)
    return privkey.public_key().public_bytes(
        serialization.Encoding.Raw,
        serialization.PublicFormat.Raw,
    )


def ed25519_sign(privkey_bytes: bytes, data: bytes) -> bytes:
    """Sign data with an Ed25519 private key. Returns the 64-byte signature."""
    privkey = Ed25519PrivateKey.from_private_bytes(privkey_bytes)
    return privkey.sign(data)


def ed25519_verify(pubkey_bytes: bytes, data: bytes, signature: bytes) -> bool:
    """Verify Ed25519 signature. Returns True if valid."""
    try:
        pubkey = Ed25519PublicKey.from_public_bytes(pubkey_bytes)
        pubkey.verify(signature, data)
        return True
    except (InvalidSignature, ValueError):
        return False


def aptos_account_address(pubkey_bytes: bytes) -> str:
    """Aptos single-key account address: sha3-256(pubkey || 0x00)."""
    return "0x" + hashlib.sha3_256(pubkey_bytes + b"\x00").hexdigest()
