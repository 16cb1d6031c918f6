"""Tests for crypto.py -- token ids, key decoding, Ed25519."""

import sys
import os
import base64
import hashlib

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

import unittest
from crypto import (
    aptos_account_address, canonical_json, decode_key_material, derive_token_id,
    ed25519_privkey_to_pubkey, ed25519_sign, ed25519_verify, generate_ed25519_keypair,
    stub_tx_hash, time_token_id,
)
from protocol import TOKEN_ID_MAX


class TestTokenIds(unittest.TestCase):
    def test_derive_is_deterministic(self):
        self.assertEqual(derive_token_id("inv-1"), derive_token_id("inv-1"))

    def test_derive_uses_first_six_digest_bytes(self):
        digest = hashlib.sha256(b"inv-1").digest()
        self.assertEqual(derive_token_id("inv-1"), int.from_bytes(digest[:6], "big"))

    def test_derive_in_range(self):
        for i in range(50):
            tid = derive_token_id(f"invoice-{i}")
            self.assertGreaterEqual(tid, 0)
            self.assertLess(tid, TOKEN_ID_MAX)

    def test_distinct_ids_differ(self):
        self.assertNotEqual(derive_token_id("inv-1"), derive_token_id("inv-2"))

    def test_time_token_id(self):
        self.assertEqual(time_token_id(now=1.5), 1500)
        self.assertLess(time_token_id(), TOKEN_ID_MAX)

    def test_stub_tx_hash_shape(self):
        h = stub_tx_hash()
        self.assertTrue(h.startswith("0x"))
        self.assertEqual(len(h), 66)
        self.assertNotEqual(h, stub_tx_hash())


class TestCanonicalJson(unittest.TestCase):
    def test_sorted_compact(self):
        self.assertEqual(canonical_json({"b": 1, "a": 2}), b'{"a":2,"b":1}')


class TestDecodeKeyMaterial(unittest.TestCase):
    def setUp(self):
        self.raw = bytes(range(32))

    def test_prefixed_hex(self):
        self.assertEqual(decode_key_material("0x" + self.raw.hex()), self.raw)

    def test_base64(self):
        encoded = base64.b64encode(self.raw).decode()
        self.assertEqual(decode_key_material(encoded, expected_len=32), self.raw)

    def test_bare_hex_with_expected_len(self):
        # 64 hex chars are also valid base64 (48 bytes); length check picks hex
        self.assertEqual(decode_key_material(self.raw.hex(), expected_len=32), self.raw)

    def test_invalid(self):
        with self.assertRaises(ValueError):
            decode_key_material("not key material!")
        with self.assertRaises(ValueError):
            decode_key_material("")


class TestEd25519(unittest.TestCase):
    def test_sign_verify(self):
        priv, pub = generate_ed25519_keypair()
        sig = ed25519_sign(priv, b"challenge")
        self.assertEqual(len(sig), 64)
        self.assertTrue(ed25519_verify(pub, b"challenge", sig))
        self.assertFalse(ed25519_verify(pub, b"challengf", sig))

    def test_wrong_key(self):
        priv, _ = generate_ed25519_keypair()
        _, other_pub = generate_ed25519_keypair()
        sig = ed25519_sign(priv, b"msg")
        self.assertFalse(ed25519_verify(other_pub, b"msg", sig))

    def test_malformed_inputs_are_false(self):
        _, pub = generate_ed25519_keypair()
        self.assertFalse(ed25519_verify(pub, b"msg", b"short"))
        self.assertFalse(ed25519_verify(b"short", b"msg", b"\x00" * 64))

    def test_privkey_to_pubkey(self):
        priv, pub = generate_ed25519_keypair()
        self.assertEqual(ed25519_privkey_to_pubkey(priv), pub)

    def test_aptos_address(self):
        _, pub = generate_ed25519_keypair()
        addr = aptos_account_address(pub)
        self.assertTrue(addr.startswith("0x"))
        self.assertEqual(len(addr), 66)
        self.assertEqual(addr[2:], hashlib.sha3_256(pub + b"\x00").hexdigest())


if __name__ == "__main__":
    unittest.main()
