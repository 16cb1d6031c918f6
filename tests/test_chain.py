"""Tests for server/chain.py -- minting gateway and Aptos backend."""

import sys
import os
import json
import sqlite3
from unittest import mock

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))
sys.path.insert(0, os.path.dirname(__file__))

import pytest
import requests
from crypto import (
    aptos_account_address, derive_token_id, ed25519_verify, generate_ed25519_keypair,
)
from protocol import ChainRecord, InvalidState, NotFound
from server.chain import AptosBackend, ChainBackend, MintingGateway
from server.reputation import ReputationManager
from server.store import MarketStore
from conftest import seed_market


class FakeBackend(ChainBackend):
    def __init__(self, fail: Exception | None = None):
        self.calls = []
        self.fail = fail

    def submit(self, function, arguments):
        self.calls.append((function, arguments))
        if self.fail:
            raise self.fail
        return "0x" + f"{len(self.calls):064x}"


@pytest.fixture
def store():
    s = MarketStore(":memory:")
    seed_market(s, status="PAID")
    return s


class TestMintInvoiceStub:
    def test_stub_when_unconfigured(self, store):
        gw = MintingGateway(store)
        result = gw.mint_invoice("inv-1")
        assert result["invoiceId"] == "inv-1"
        assert result["tokenId"] == derive_token_id("inv-1")
        assert result["txHash"].startswith("0x")
        assert result["stub"] is True
        assert "error" not in result
        chain = store.get_invoice("inv-1")["chain"]
        assert chain == ChainRecord(result["tokenId"], result["txHash"], stub=True)

    def test_second_mint_returns_persisted(self, store):
        gw = MintingGateway(store)
        first = gw.mint_invoice("inv-1")
        second = gw.mint_invoice("inv-1")
        assert second["tokenId"] == first["tokenId"]
        assert second["txHash"] == first["txHash"]
        assert second["alreadyMinted"] is True

    def test_missing_invoice(self, store):
        with pytest.raises(NotFound):
            MintingGateway(store).mint_invoice("nope")

    def test_unpaid_invoice_rejected(self):
        for status in ("DRAFT", "SENT"):
            s = MarketStore(":memory:")
            seed_market(s, status=status)
            backend = mock.Mock()
            with pytest.raises(InvalidState):
                MintingGateway(s, backend).mint_invoice("inv-1")
            backend.submit.assert_not_called()
            assert s.get_invoice("inv-1")["chain"] is None

    def test_released_invoice_mintable(self):
        s = MarketStore(":memory:")
        seed_market(s, status="RELEASED")
        assert MintingGateway(s).mint_invoice("inv-1")["stub"] is True


class TestMintInvoiceBackend:
    def test_real_submit(self, store):
        backend = FakeBackend()
        result = MintingGateway(store, backend).mint_invoice("inv-1")
        assert "stub" not in result
        assert result["txHash"] == "0x" + f"{1:064x}"
        function, args = backend.calls[0]
        assert function == "mint_invoice"
        assert args[0] == str(derive_token_id("inv-1"))
        metadata = json.loads(bytes.fromhex(args[1][2:]))
        assert metadata == {"invoiceId": "inv-1", "title": "Logo design",
                            "amount": "120.00", "status": "PAID"}

    def test_backend_failure_falls_back(self, store):
        backend = FakeBackend(fail=requests.Timeout("node timed out"))
        result = MintingGateway(store, backend).mint_invoice("inv-1")
        assert result["stub"] is True
        assert "node timed out" in result["error"]
        assert result["tokenId"] == derive_token_id("inv-1")
        assert store.get_invoice("inv-1")["chain"].tx_hash == result["txHash"]

    def test_already_minted_skips_chain(self, store):
        store.set_invoice_chain_record("inv-1", ChainRecord(derive_token_id("inv-1"), "0xfeed"))
        backend = FakeBackend()
        result = MintingGateway(store, backend).mint_invoice("inv-1")
        assert result["txHash"] == "0xfeed"
        assert backend.calls == []

    def test_lost_race_returns_winner(self, store):
        gw = MintingGateway(store, FakeBackend())
        winner = ChainRecord(derive_token_id("inv-1"), "0xwinner")
        real_get = store.get_invoice
        calls = {"n": 0}

        def stale_get(invoice_id):
            # First read sees no record; a concurrent mint lands before persist
            calls["n"] += 1
            inv = real_get(invoice_id)
            if calls["n"] == 1:
                store.set_invoice_chain_record(invoice_id, winner)
            return inv

        with mock.patch.object(store, "get_invoice", side_effect=stale_get):
            result = gw.mint_invoice("inv-1")
        assert result["txHash"] == "0xwinner"
        assert result["alreadyMinted"] is True

    def test_persist_failure_swallowed(self, store):
        gw = MintingGateway(store, FakeBackend())
        with mock.patch.object(store, "set_invoice_chain_record",
                               side_effect=sqlite3.OperationalError("disk I/O error")):
            result = gw.mint_invoice("inv-1")
        assert result["tokenId"] == derive_token_id("inv-1")
        assert "stub" not in result


class TestMintSbt:
    def test_stub_sbt(self, store):
        result = MintingGateway(store).mint_sbt("u1")
        assert result["userId"] == "u1"
        assert result["stub"] is True
        assert result["score"] == 1
        assert store.get_user("u1")["chain"].tx_hash == result["txHash"]

    def test_score_from_reputation(self, store):
        rep = ReputationManager(":memory:")
        rep.adjust("u2", 7)
        backend = FakeBackend()
        result = MintingGateway(store, backend, rep).mint_sbt("u2")
        assert result["score"] == 7
        assert backend.calls == [("mint_reputation", ["7"])]

    def test_score_floor(self, store):
        rep = ReputationManager(":memory:")
        rep.adjust("u2", -3)
        backend = FakeBackend()
        MintingGateway(store, backend, rep).mint_sbt("u2")
        assert backend.calls == [("mint_reputation", ["1"])]

    def test_failure_falls_back(self, store):
        result = MintingGateway(store, FakeBackend(fail=RuntimeError("boom"))).mint_sbt("u1")
        assert result["stub"] is True
        assert result["error"] == "boom"

    def test_unknown_user(self, store):
        with pytest.raises(NotFound):
            MintingGateway(store).mint_sbt("ghost")


def _json_response(payload, status_code=200):
    resp = mock.Mock()
    resp.status_code = status_code
    resp.json.return_value = payload
    resp.text = json.dumps(payload)
    return resp


class TestAptosBackend:
    def _backend(self, deployer=""):
        priv, pub = generate_ed25519_keypair()
        backend = AptosBackend("http://node.local/v1/", "0x" + priv.hex(), deployer, timeout=3)
        return backend, pub

    def test_address_derived_from_key(self):
        backend, pub = self._backend()
        assert backend.address == aptos_account_address(pub)
        assert backend.deployer == backend.address

    def test_requires_config(self):
        with pytest.raises(ValueError):
            AptosBackend("", "00" * 32)
        with pytest.raises(ValueError):
            AptosBackend("http://node.local", "")

    def test_submit_flow(self):
        backend, pub = self._backend(deployer="0xdep")
        signing_message = b"aptos signing message"
        responses = [
            _json_response({"sequence_number": "5"}),
            _json_response("0x" + signing_message.hex()),
            _json_response({"hash": "0xtxhash"}),
        ]
        with mock.patch.object(backend.session, "request", side_effect=responses) as req:
            tx = backend.submit("mint_invoice", ["42", "0x00"])

        assert tx == "0xtxhash"
        urls = [c.args[1] for c in req.call_args_list]
        assert urls == [
            f"http://node.local/v1/accounts/{backend.address}",
            "http://node.local/v1/transactions/encode_submission",
            "http://node.local/v1/transactions",
        ]
        assert all(c.kwargs["timeout"] == 3 for c in req.call_args_list)

        submitted = req.call_args_list[2].kwargs["json"]
        assert submitted["sequence_number"] == "5"
        assert submitted["payload"]["function"] == "0xdep::Escrow::mint_invoice"
        assert submitted["payload"]["arguments"] == ["42", "0x00"]
        sig = submitted["signature"]
        assert sig["public_key"] == "0x" + pub.hex()
        assert ed25519_verify(pub, signing_message, bytes.fromhex(sig["signature"][2:]))

    def test_node_error_raises(self):
        backend, _ = self._backend()
        with mock.patch.object(backend.session, "request",
                               return_value=_json_response({"message": "nope"}, status_code=500)):
            with pytest.raises(RuntimeError):
                backend.submit("mint_reputation", ["1"])
