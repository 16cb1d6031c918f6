"""Chain minting for invoices and reputation tokens.

ChainBackend submits entry-function transactions (Aptos REST node or a
test double). MintingGateway derives token ids, calls the backend and
always persists a result: a chain failure degrades to a stub mint with
the error attached, it never reaches the caller as an exception.
"""

import logging
import sqlite3
import time
from abc import ABC, abstractmethod

import requests

from crypto import (
    aptos_account_address, canonical_json, decode_key_material, derive_token_id,
    ed25519_privkey_to_pubkey, ed25519_sign, stub_tx_hash, time_token_id,
)
from protocol import (
    CHAIN_MODULE, DEFAULT_EXTERNAL_TIMEOUT, DEFAULT_SBT_SCORE, MINTABLE_STATUSES,
    MINT_INVOICE_FN, MINT_REPUTATION_FN, ChainRecord, InvalidState, NotFound,
)
from server.store import MarketStore


logger = logging.getLogger(__name__)

_MINTABLE = {s.value for s in MINTABLE_STATUSES}


class ChainBackend(ABC):
    """Abstract chain backend. Platform injects one into MintingGateway."""

    @abstractmethod
    def submit(self, function: str, arguments: list) -> str:
        """Build, sign and submit a call to *function* in the escrow module.

        Returns the transaction hash. Any failure raises.
        """
        ...


class AptosBackend(ChainBackend):
    """Aptos fullnode REST API, Ed25519 single-key sender."""

    MAX_GAS_AMOUNT = 200_000
    GAS_UNIT_PRICE = 100
    EXPIRATION_SECS = 600

    def __init__(self, node_url: str, private_key: str, deployer_address: str = "",
                 timeout: int = DEFAULT_EXTERNAL_TIMEOUT):
        if not node_url or not private_key:
            raise ValueError("Aptos node URL and private key required: set APTOS_NODE_URL and APTOS_PRIVATE_KEY")
        self.node_url = node_url.rstrip("/")
        self._privkey = decode_key_material(private_key, expected_len=32)
        if len(self._privkey) != 32:
            raise ValueError("APTOS_PRIVATE_KEY must be a 32-byte Ed25519 key")
        self.public_key = ed25519_privkey_to_pubkey(self._privkey)
        self.address = aptos_account_address(self.public_key)
        self.deployer = deployer_address or self.address
        self.timeout = timeout
        self.session = requests.Session()

    def _call(self, method: str, path: str, body: dict | None = None):
        resp = self.session.request(
            method, f"{self.node_url}{path}", json=body, timeout=self.timeout,
        )
        if resp.status_code >= 400:
            raise RuntimeError(f"Aptos node error {resp.status_code}: {resp.text[:200]}")
        return resp.json()

    def _sequence_number(self) -> str:
        account = self._call("GET", f"/accounts/{self.address}")
        return str(account["sequence_number"])

    def submit(self, function: str, arguments: list) -> str:
        txn = {
            "sender": self.address,
            "sequence_number": self._sequence_number(),
            "max_gas_amount": str(self.MAX_GAS_AMOUNT),
            "gas_unit_price": str(self.GAS_UNIT_PRICE),
            "expiration_timestamp_secs": str(int(time.time()) + self.EXPIRATION_SECS),
            "payload": {
                "type": "entry_function_payload",
                "function": f"{self.deployer}::{CHAIN_MODULE}::{function}",
                "type_arguments": [],
                "arguments": arguments,
            },
        }
        signing_message = self._call("POST", "/transactions/encode_submission", txn)
        signature = ed25519_sign(self._privkey, bytes.fromhex(signing_message.removeprefix("0x")))
        txn["signature"] = {
            "type": "ed25519_signature",
            "public_key": "0x" + self.public_key.hex(),
            "signature": "0x" + signature.hex(),
        }
        result = self._call("POST", "/transactions", txn)
        return result["hash"]


class MintingGateway:
    """Mints invoice assets and reputation SBTs, always leaving a persisted record."""

    def __init__(self, store: MarketStore, backend: ChainBackend | None = None, reputation=None):
        self.store = store
        self.backend = backend
        self.reputation = reputation
        if backend is None:
            logger.warning("No chain backend configured: mints are stubbed")

    def _submit(self, function: str, arguments: list, token_id: int) -> tuple[ChainRecord, str | None]:
        """Call the backend, falling back to a stub record on any failure."""
        if self.backend is None:
            return ChainRecord(token_id, stub_tx_hash(), stub=True), None
        try:
            tx_hash = self.backend.submit(function, arguments)
            return ChainRecord(token_id, tx_hash), None
        except Exception as e:
            logger.warning("Chain submit of %s failed, using stub mint: %s", function, e)
            return ChainRecord(token_id, stub_tx_hash(), stub=True), str(e)

    def mint_invoice(self, invoice_id: str) -> dict:
        """Mint the asset for a PAID or RELEASED invoice.

        Only settled invoices are mintable: a DRAFT or SENT invoice raises
        InvalidState (409) before the chain is touched, as does an unknown
        id with NotFound. Once past those checks the call never fails on
        chain errors; it returns a stub record carrying "error" instead.
        """
        invoice = self.store.get_invoice(invoice_id)
        if not invoice:
            raise NotFound(f"Invoice {invoice_id} not found")
        if invoice["status"] not in _MINTABLE:
            raise InvalidState(f"Invoice in {invoice['status']} state cannot be minted")

        if invoice["chain"] is not None:
            return _invoice_result(invoice_id, invoice["chain"], already=True)

        token_id = derive_token_id(invoice_id)
        metadata = canonical_json({
            "invoiceId": invoice_id,
            "title": invoice["title"],
            "amount": invoice["amount"],
            "status": invoice["status"],
        })
        record, error = self._submit(MINT_INVOICE_FN, [str(token_id), "0x" + metadata.hex()], token_id)

        try:
            persisted = self.store.set_invoice_chain_record(invoice_id, record)
        except sqlite3.Error:
            logger.exception("Failed to persist mint of invoice %s (tx %s)", invoice_id, record.tx_hash)
            return _invoice_result(invoice_id, record, error=error)

        if not persisted:
            winner = self.store.get_invoice(invoice_id)["chain"]
            logger.warning("Invoice %s was minted concurrently, keeping %s", invoice_id, winner.tx_hash)
            return _invoice_result(invoice_id, winner, already=True)

        logger.info("Minted invoice %s as token %d (tx %s%s)", invoice_id, token_id,
                    record.tx_hash, ", stub" if record.stub else "")
        return _invoice_result(invoice_id, record, error=error)

    def mint_sbt(self, user_id: str) -> dict:
        if not self.store.get_user(user_id):
            raise NotFound(f"User with ID {user_id} not found")

        score = DEFAULT_SBT_SCORE
        if self.reputation is not None:
            score = max(self.reputation.get(user_id)["score"], DEFAULT_SBT_SCORE)

        token_id = time_token_id()
        record, error = self._submit(MINT_REPUTATION_FN, [str(score)], token_id)

        try:
            self.store.set_user_chain_record(user_id, record)
        except sqlite3.Error:
            logger.exception("Failed to persist SBT for user %s (tx %s)", user_id, record.tx_hash)

        logger.info("Minted reputation SBT for user %s, score %d (tx %s%s)", user_id, score,
                    record.tx_hash, ", stub" if record.stub else "")
        result = {"userId": user_id, "tokenId": record.token_id, "txHash": record.tx_hash, "score": score}
        if record.stub:
            result["stub"] = True
        if error:
            result["error"] = error
        return result


def _invoice_result(invoice_id: str, record: ChainRecord, error: str | None = None,
                    already: bool = False) -> dict:
    result = {"invoiceId": invoice_id, "tokenId": record.token_id, "txHash": record.tx_hash}
    if record.stub:
        result["stub"] = True
    if error:
        result["error"] = error
    if already:
        result["alreadyMinted"] = True
    return result
