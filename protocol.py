"""Shared constants and interfaces for the escrow core.

All modules import from here to avoid circular dependencies.
"""

from dataclasses import dataclass
from enum import Enum


# --- Payment constants ---

DEFAULT_CURRENCY = "usd"
MINOR_UNITS_PER_MAJOR = 100

# Processor event that moves an invoice into escrow
PAYMENT_SUCCEEDED_EVENT = "payment_intent.succeeded"
SUPPORTED_PROCESSORS = {"stripe"}

# Signed webhook timestamps older than this are rejected (seconds)
DEFAULT_WEBHOOK_TOLERANCE = 300

# --- Wallet auth ---

CHALLENGE_PREFIX = "Sign this challenge: "
CHALLENGE_NONCE_BYTES = 16
DEFAULT_CHALLENGE_TTL = 300  # 5 minutes
DEFAULT_SESSION_TTL = 3600
UNVERIFIED_WARNING = "publicKey not provided; signature not verified"

# --- Chain ---

# 6 bytes keeps token ids exact in a float64 as well as a u64
TOKEN_ID_BYTES = 6
TOKEN_ID_MAX = 2 ** (8 * TOKEN_ID_BYTES)

CHAIN_MODULE = "Escrow"
MINT_INVOICE_FN = "mint_invoice"
MINT_REPUTATION_FN = "mint_reputation"
DEFAULT_SBT_SCORE = 1

DEFAULT_EXTERNAL_TIMEOUT = 10  # seconds, processor + chain RPC


# --- Invoice state machine ---

class InvoiceStatus(Enum):
    DRAFT = "DRAFT"
    SENT = "SENT"
    PAID = "PAID"        # funds held in escrow
    RELEASED = "RELEASED"


# Valid state transitions: current_state -> set of valid next states.
# DRAFT may go straight to PAID (payment against an unsent invoice).
INVOICE_TRANSITIONS = {
    InvoiceStatus.DRAFT: {InvoiceStatus.SENT, InvoiceStatus.PAID},
    InvoiceStatus.SENT: {InvoiceStatus.PAID},
    InvoiceStatus.PAID: {InvoiceStatus.RELEASED},
    InvoiceStatus.RELEASED: set(),
}

PAYABLE_STATUSES = {InvoiceStatus.DRAFT, InvoiceStatus.SENT}
SETTLED_STATUSES = {InvoiceStatus.PAID, InvoiceStatus.RELEASED}
MINTABLE_STATUSES = SETTLED_STATUSES


# --- Disputes ---

class VoteChoice(Enum):
    FOR = "FOR"
    AGAINST = "AGAINST"

    @classmethod
    def from_wire(cls, value: str) -> "VoteChoice":
        """Map the wire values "for" / "against" onto a choice."""
        v = (value or "").strip().lower()
        if v == "for":
            return cls.FOR
        if v == "against":
            return cls.AGAINST
        raise BadRequest('Vote must be either "for" or "against"')


class DisputeOutcome(Enum):
    FOR = "FOR"
    AGAINST = "AGAINST"
    TIED = "TIED"


# --- Chain records ---

@dataclass(frozen=True)
class ChainRecord:
    """On-chain representation attached to an invoice or user after a mint."""
    token_id: int
    tx_hash: str
    stub: bool = False


# --- Errors ---

class EscrowError(Exception):
    """Base for every error surfaced to callers. `kind` is stable on the wire."""
    kind = "Error"
    status_code = 500

    def __init__(self, message: str = ""):
        super().__init__(message or self.kind)
        self.message = message or self.kind

    def to_dict(self) -> dict:
        return {"error": self.kind, "detail": self.message}


class NotFound(EscrowError):
    kind = "NotFound"
    status_code = 404


class InvalidState(EscrowError):
    kind = "InvalidState"
    status_code = 409


class Conflict(EscrowError):
    kind = "Conflict"
    status_code = 409


class BadRequest(EscrowError):
    kind = "BadRequest"
    status_code = 400


class Unauthorized(EscrowError):
    kind = "Unauthorized"
    status_code = 401


class ExternalFailure(EscrowError):
    kind = "ExternalFailure"
    status_code = 502
