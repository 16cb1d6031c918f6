"""Tests for server/config.py -- environment settings."""

import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

import pytest
from server.config import Settings


class TestSettingsFromEnv:
    def test_defaults(self):
        s = Settings.from_env({})
        assert s.db_path == ":memory:"
        assert s.stripe_secret == ""
        assert s.currency == "usd"
        assert s.webhook_tolerance == 300
        assert s.allow_unverified_wallet is False
        assert s.chain_configured is False
        assert s.port == 8000

    def test_values(self):
        s = Settings.from_env({
            "ESCROW_DB": "/tmp/escrow.db",
            "STRIPE_SECRET": "sk_test",
            "APTOS_NODE_URL": "http://node",
            "APTOS_PRIVATE_KEY": "00" * 32,
            "ESCROW_EXTERNAL_TIMEOUT": "4",
            "WALLET_ALLOW_UNVERIFIED": "yes",
            "LOG_LEVEL": "debug",
        })
        assert s.db_path == "/tmp/escrow.db"
        assert s.stripe_secret == "sk_test"
        assert s.chain_configured is True
        assert s.external_timeout == 4
        assert s.allow_unverified_wallet is True
        assert s.log_level == "DEBUG"

    def test_chain_needs_both(self):
        assert Settings.from_env({"APTOS_NODE_URL": "http://node"}).chain_configured is False

    def test_bool_parsing(self):
        for raw, expected in (("1", True), ("On", True), ("0", False), ("no", False)):
            assert Settings.from_env({"WALLET_ALLOW_UNVERIFIED": raw}).allow_unverified_wallet is expected

    def test_blank_int_uses_default(self):
        assert Settings.from_env({"SESSION_TTL": "  "}).session_ttl == 3600

    def test_bad_int(self):
        with pytest.raises(ValueError, match="ESCROW_PORT"):
            Settings.from_env({"ESCROW_PORT": "eighty"})
