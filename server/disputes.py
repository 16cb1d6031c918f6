"""Dispute resolution for invoices.

OPEN -> RESOLVED. Any participant may vote once while a dispute is open;
resolution is a plain majority count (no weighting by reputation or
stake) and is terminal. The outcome is an advisory record: it does not
move the invoice's escrow status.
"""

import logging
import sqlite3
import uuid

from protocol import (
    DisputeOutcome, VoteChoice, BadRequest, Conflict, NotFound,
)
from server.store import MarketStore


logger = logging.getLogger(__name__)

# Resolve retries when votes land between tally and close
MAX_RESOLVE_ATTEMPTS = 5


def tally(votes: list[dict]) -> tuple[int, int, DisputeOutcome]:
    """Count FOR/AGAINST votes. Returns (for, against, outcome)."""
    n_for = sum(1 for v in votes if v["vote"] == VoteChoice.FOR.value)
    n_against = sum(1 for v in votes if v["vote"] == VoteChoice.AGAINST.value)
    if n_for > n_against:
        outcome = DisputeOutcome.FOR
    elif n_against > n_for:
        outcome = DisputeOutcome.AGAINST
    else:
        outcome = DisputeOutcome.TIED
    return n_for, n_against, outcome


class DisputeEngine:
    """Open, vote on, and resolve disputes against invoices."""

    def __init__(self, store: MarketStore):
        self.store = store

    def open(self, invoice_id: str, opener_id: str, reason: str, dispute_id: str | None = None) -> dict:
        invoice_id = (invoice_id or "").strip()
        opener_id = (opener_id or "").strip()
        reason = (reason or "").strip()
        if not invoice_id or not opener_id:
            raise BadRequest("Missing required fields: invoiceId, openerId, reason")
        if not reason:
            raise BadRequest("Reason must be a non-empty string")

        if not self.store.get_invoice(invoice_id):
            raise NotFound(f"Invoice with ID {invoice_id} not found")
        if not self.store.get_user(opener_id):
            raise NotFound(f"User with ID {opener_id} not found")
        if self.store.get_open_dispute(invoice_id):
            raise Conflict("An active dispute already exists for this invoice")

        try:
            dispute_id = self.store.create_dispute(
                invoice_id, opener_id, reason, dispute_id or str(uuid.uuid4()),
            )
        except sqlite3.IntegrityError:
            # Concurrent open won the partial unique index
            raise Conflict("An active dispute already exists for this invoice")

        logger.info("Opened dispute %s for invoice %s", dispute_id, invoice_id)
        return self.store.get_dispute(dispute_id)

    def get(self, dispute_id: str) -> dict:
        dispute = self.store.get_dispute(dispute_id)
        if not dispute:
            raise NotFound(f"Dispute with ID {dispute_id} not found")
        return dispute

    def list_disputes(self, limit: int = 100) -> list[dict]:
        return self.store.list_disputes(limit)

    def vote(self, dispute_id: str, user_id: str, choice: VoteChoice | str) -> dict:
        if not isinstance(choice, VoteChoice):
            choice = VoteChoice.from_wire(choice)
        user_id = (user_id or "").strip()
        if not user_id:
            raise BadRequest("Missing required fields: userId, vote")

        dispute = self.get(dispute_id)
        if dispute["resolved"]:
            raise Conflict(f"Cannot vote on resolved dispute {dispute_id}")
        if not self.store.get_user(user_id):
            raise NotFound(f"User with ID {user_id} not found")

        result = self.store.add_vote(dispute_id, user_id, choice)
        if result == "duplicate":
            raise Conflict("User has already voted on this dispute")
        if result == "closed":
            raise Conflict(f"Cannot vote on resolved dispute {dispute_id}")

        logger.info("User %s voted %s on dispute %s", user_id, choice.value, dispute_id)
        return self.get(dispute_id)

    def resolve(self, dispute_id: str) -> dict:
        for _ in range(MAX_RESOLVE_ATTEMPTS):
            dispute = self.get(dispute_id)
            if dispute["resolved"]:
                raise Conflict("Dispute is already resolved")
            votes = dispute["votes"]
            if not votes:
                raise BadRequest("Cannot resolve dispute with no votes")

            n_for, n_against, outcome = tally(votes)
            if self.store.close_dispute(dispute_id, outcome, len(votes)):
                logger.info("Resolved dispute %s with outcome %s (For: %d, Against: %d)",
                            dispute_id, outcome.value, n_for, n_against)
                return self.get(dispute_id)
            logger.warning("Dispute %s changed during resolve, retrying", dispute_id)

        raise Conflict(f"Dispute {dispute_id} is changing too quickly to resolve")
