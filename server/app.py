# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (c) 2026 Karan Sharma
"""HTTP API for the escrow core (FastAPI).

Endpoints for the money-and-trust path of an invoice: payment intents,
processor webhooks, escrow release, disputes and voting, wallet
challenge-response login, and on-chain minting of invoices and
reputation tokens.

Release, simulate-paid and minting require a wallet session
(Authorization: Bearer <token>). Operator endpoints additionally need
the X-Operator-Key header and are disabled when no key is configured.
"""

import sys
import os
import secrets
# Ensure parent directory is importable
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from typing import Optional

from protocol import EscrowError, Unauthorized, NotFound
from server.config import Settings
from server.store import MarketStore
from server.escrow import EscrowManager
from server.payments import PaymentReconciler, StripeProcessor, StubProcessor
from server.disputes import DisputeEngine
from server.chain import AptosBackend, MintingGateway
from server.reputation import ReputationManager
from server.wallet_auth import ChallengeStore, SessionTokens, WalletAuthenticator


# --- Request models ---

class OpenDisputeRequest(BaseModel):
    invoiceId: str = ""
    openerId: str = ""
    reason: str = ""

class VoteRequest(BaseModel):
    userId: str = ""
    vote: str = ""

class ChallengeRequest(BaseModel):
    address: str = ""

class WalletVerifyRequest(BaseModel):
    address: str = ""
    signature: str = ""
    publicKey: Optional[str] = None

class ReputationAdjustRequest(BaseModel):
    delta: int


# --- Wire views ---

def invoice_view(invoice: dict) -> dict:
    chain = invoice["chain"]
    return {
        "id": invoice["id"],
        "title": invoice["title"],
        "amount": invoice["amount"],
        "status": invoice["status"],
        "clientId": invoice["client_id"],
        "freelancerId": invoice["freelancer_id"],
        "paymentIntentId": invoice["payment_intent_id"],
        "tokenId": chain.token_id if chain else None,
        "onchainTxHash": chain.tx_hash if chain else None,
        "mintStub": chain.stub if chain else False,
        "releasedAt": invoice["released_at"],
        "createdAt": invoice["created_at"],
        "updatedAt": invoice["updated_at"],
    }


def dispute_view(dispute: dict) -> dict:
    return {
        "id": dispute["id"],
        "invoiceId": dispute["invoice_id"],
        "openerId": dispute["opener_id"],
        "reason": dispute["reason"],
        "resolved": dispute["resolved"],
        "outcome": dispute["outcome"],
        "votes": [
            {"disputeId": v["dispute_id"], "userId": v["user_id"], "vote": v["vote"]}
            for v in dispute["votes"]
        ],
        "createdAt": dispute["created_at"],
        "resolvedAt": dispute["resolved_at"],
    }


def _bearer_token(request: Request) -> str:
    header = request.headers.get("Authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise Unauthorized("Bearer session token required")
    return token.strip()


def create_app(
    store: MarketStore | None = None,
    escrow_mgr: EscrowManager | None = None,
    reconciler: PaymentReconciler | None = None,
    disputes: DisputeEngine | None = None,
    gateway: MintingGateway | None = None,
    wallet_auth: WalletAuthenticator | None = None,
    reputation_mgr: ReputationManager | None = None,
    settings: Settings | None = None,
) -> FastAPI:
    """Create FastAPI app with injected dependencies.

    Anything not injected is built from *settings* (default: environment).
    Missing integration secrets select the local fallbacks.
    """

    app = FastAPI(title="Escrow Core", version="1.0")

    _settings = settings or Settings.from_env()
    if store is None:
        store = escrow_mgr.store if escrow_mgr is not None else MarketStore(_settings.db_path)
    _store = store

    if escrow_mgr is None:
        if _settings.stripe_secret:
            processor = StripeProcessor(
                _settings.stripe_secret, _settings.stripe_api_base or None, _settings.external_timeout,
            )
        else:
            processor = StubProcessor()
        escrow_mgr = EscrowManager(_store, processor, _settings.currency)
    _escrow = escrow_mgr

    _reconciler = reconciler or PaymentReconciler(
        _escrow, _settings.stripe_webhook_secret, _settings.webhook_tolerance,
    )
    _disputes = disputes or DisputeEngine(_store)
    _reputation = reputation_mgr or ReputationManager(_settings.reputation_db_path)

    if gateway is None:
        backend = None
        if _settings.chain_configured:
            backend = AptosBackend(
                _settings.aptos_node_url, _settings.aptos_private_key,
                _settings.aptos_deployer_address, _settings.external_timeout,
            )
        gateway = MintingGateway(_store, backend, _reputation)
    _gateway = gateway

    if wallet_auth is None:
        wallet_auth = WalletAuthenticator(
            ChallengeStore(_settings.challenge_db_path, _settings.challenge_ttl),
            SessionTokens(_settings.jwt_secret or secrets.token_hex(32), _settings.session_ttl),
            allow_unverified=_settings.allow_unverified_wallet,
        )
    _wallet_auth = wallet_auth

    # Expose for testing
    app.state.settings = _settings
    app.state.store = _store
    app.state.escrow = _escrow
    app.state.reconciler = _reconciler
    app.state.disputes = _disputes
    app.state.gateway = _gateway
    app.state.wallet_auth = _wallet_auth
    app.state.reputation = _reputation

    @app.exception_handler(EscrowError)
    async def escrow_error_handler(request: Request, exc: EscrowError):
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    # --- Helpers ---

    def _require_session(request: Request) -> dict:
        """Decode the caller's wallet session. Raises Unauthorized."""
        return _wallet_auth.tokens.decode(_bearer_token(request))

    def _require_operator(request: Request):
        expected = _settings.operator_key
        if not expected:
            raise Unauthorized("Operator endpoints are disabled")
        supplied = request.headers.get("X-Operator-Key", "")
        if not secrets.compare_digest(supplied.encode(), expected.encode()):
            raise Unauthorized("Invalid operator key")

    # --- Health ---

    @app.get("/health")
    async def health():
        return {
            "status": "ok",
            "processor": "stub" if isinstance(_escrow.processor, StubProcessor) else "live",
            "webhooks": "verified" if _reconciler.webhook_secret else "unverified",
            "chain": "live" if _gateway.backend is not None else "stub",
        }

    # --- Invoices + payments ---

    @app.get("/invoices/{invoice_id}")
    async def get_invoice(invoice_id: str):
        invoice = _store.get_invoice(invoice_id)
        if not invoice:
            raise NotFound(f"Invoice {invoice_id} not found")
        return invoice_view(invoice)

    # Plain def: processor calls block, so these run in the threadpool
    @app.post("/payments/create/{invoice_id}")
    def create_payment_intent(invoice_id: str):
        return _escrow.create_payment_intent(invoice_id)

    @app.post("/payments/{invoice_id}/release")
    async def release_escrow(invoice_id: str, request: Request):
        _require_session(request)
        return invoice_view(_escrow.release_escrow(invoice_id))

    @app.post("/payments/{invoice_id}/simulate-paid")
    async def simulate_paid(invoice_id: str, request: Request):
        _require_session(request)
        _require_operator(request)
        return invoice_view(_escrow.simulate_confirm(invoice_id))

    @app.post("/payments/webhooks/{processor}")
    async def payment_webhook(processor: str, request: Request):
        """Processor callback. Always 200; the body says whether it was applied."""
        raw_body = await request.body()
        signature = request.headers.get("stripe-signature", "")
        return _reconciler.handle_webhook(processor, raw_body, signature)

    # --- Disputes ---

    @app.post("/disputes/open")
    async def open_dispute(req: OpenDisputeRequest):
        return dispute_view(_disputes.open(req.invoiceId, req.openerId, req.reason))

    @app.get("/disputes")
    async def list_disputes(limit: int = 100):
        return [dispute_view(d) for d in _disputes.list_disputes(max(1, min(limit, 500)))]

    @app.get("/disputes/{dispute_id}")
    async def get_dispute(dispute_id: str):
        return dispute_view(_disputes.get(dispute_id))

    @app.post("/disputes/{dispute_id}/vote")
    async def vote_dispute(dispute_id: str, req: VoteRequest):
        return dispute_view(_disputes.vote(dispute_id, req.userId, req.vote))

    @app.post("/disputes/{dispute_id}/resolve")
    async def resolve_dispute(dispute_id: str):
        return dispute_view(_disputes.resolve(dispute_id))

    # --- Wallet auth ---

    @app.post("/blockchain/auth/request-challenge")
    async def request_challenge(req: ChallengeRequest):
        return _wallet_auth.request_challenge(req.address)

    @app.post("/blockchain/auth/verify")
    async def verify_wallet(req: WalletVerifyRequest):
        result = _wallet_auth.verify(req.address, req.signature, req.publicKey)
        if result is None:
            raise Unauthorized("Invalid signature or expired challenge")
        return result

    # --- Minting ---

    @app.post("/blockchain/mint-invoice/{invoice_id}")
    def mint_invoice(invoice_id: str, request: Request):
        _require_session(request)
        return _gateway.mint_invoice(invoice_id)

    @app.post("/blockchain/mint-sbt/{user_id}")
    def mint_sbt(user_id: str, request: Request):
        _require_session(request)
        return _gateway.mint_sbt(user_id)

    # --- Reputation ---

    @app.get("/reputation/{user_id}")
    async def get_reputation(user_id: str):
        return _reputation.get(user_id)

    @app.post("/reputation/{user_id}/adjust")
    async def adjust_reputation(user_id: str, req: ReputationAdjustRequest, request: Request):
        _require_operator(request)
        if not _store.get_user(user_id):
            raise NotFound(f"User with ID {user_id} not found")
        return _reputation.adjust(user_id, req.delta)

    return app
