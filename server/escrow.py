"""Invoice escrow state machine.

DRAFT -> SENT -> PAID -> RELEASED. Funds are "in escrow" while an invoice
is PAID. Payment confirmation is keyed by the processor's intent id, never
by a caller-supplied invoice id.
"""

import logging
import time
from decimal import Decimal, InvalidOperation, ROUND_HALF_EVEN

from protocol import (
    DEFAULT_CURRENCY, MINOR_UNITS_PER_MAJOR, PAYABLE_STATUSES, SETTLED_STATUSES,
    InvoiceStatus, BadRequest, InvalidState, NotFound,
)
from server.payments import PaymentProcessor, StubProcessor
from server.store import MarketStore


logger = logging.getLogger(__name__)

_PAYABLE = {s.value for s in PAYABLE_STATUSES}
_SETTLED = {s.value for s in SETTLED_STATUSES}
_CAS_RETRIES = 3


def to_minor_units(amount: str | Decimal) -> int:
    """Decimal major-unit amount -> integer minor units, banker's rounding."""
    try:
        value = Decimal(str(amount))
    except InvalidOperation:
        raise BadRequest(f"Invalid amount: {amount!r}")
    if not value.is_finite() or value < 0:
        raise BadRequest(f"Invalid amount: {amount!r}")
    minor = (value * MINOR_UNITS_PER_MAJOR).quantize(Decimal("1"), rounding=ROUND_HALF_EVEN)
    return int(minor)


class EscrowManager:
    """Owns invoice status transitions. Pluggable payment processor."""

    def __init__(self, store: MarketStore, processor: PaymentProcessor | None = None,
                 currency: str = DEFAULT_CURRENCY):
        self.store = store
        self.processor = processor or StubProcessor()
        self.currency = currency

    def _require_invoice(self, invoice_id: str) -> dict:
        invoice = self.store.get_invoice(invoice_id)
        if not invoice:
            raise NotFound(f"Invoice {invoice_id} not found")
        return invoice

    def create_payment_intent(self, invoice_id: str) -> dict:
        """Create (or reuse) the processor intent for a payable invoice.

        Returns {"client_secret", "id"}. Status is not changed.
        """
        invoice = self._require_invoice(invoice_id)
        if invoice["status"] not in _PAYABLE:
            raise InvalidState("Invoice not payable in current state")

        existing = invoice["payment_intent_id"]
        if existing:
            intent = self.processor.retrieve_intent(existing)
            return {"client_secret": intent["client_secret"], "id": intent["id"]}

        amount = to_minor_units(invoice["amount"])
        intent = self.processor.create_intent(amount, self.currency, {"invoiceId": invoice_id})

        if not self.store.set_payment_intent(invoice_id, intent["id"], _PAYABLE):
            # Lost a race with another create, or the invoice moved on
            current = self._require_invoice(invoice_id)
            if current["payment_intent_id"]:
                logger.warning("Discarding intent %s: invoice %s already has %s",
                               intent["id"], invoice_id, current["payment_intent_id"])
                intent = self.processor.retrieve_intent(current["payment_intent_id"])
                return {"client_secret": intent["client_secret"], "id": intent["id"]}
            raise InvalidState("Invoice not payable in current state")

        logger.info("Created payment intent %s for invoice %s (%d minor units)",
                    intent["id"], invoice_id, amount)
        return {"client_secret": intent["client_secret"], "id": intent["id"]}

    def confirm_payment(self, intent_id: str) -> dict | None:
        """Mark the invoice holding *intent_id* as PAID. Idempotent.

        Returns the invoice, or None when no invoice carries the intent.
        """
        for _ in range(_CAS_RETRIES):
            invoice = self.store.get_invoice_by_intent(intent_id)
            if not invoice:
                logger.info("No invoice for payment intent %s, ignoring", intent_id)
                return None
            if invoice["status"] in _SETTLED:
                return invoice
            if self.store.transition_invoice(invoice["id"], invoice["status"], InvoiceStatus.PAID.value):
                logger.info("Invoice %s PAID via intent %s", invoice["id"], intent_id)
                return self.store.get_invoice(invoice["id"])
        # Status kept moving under us; whatever it is now is settled or payable
        return self.store.get_invoice_by_intent(intent_id)

    def simulate_confirm(self, invoice_id: str) -> dict:
        """Operator escape hatch: mark PAID without the processor."""
        invoice = self._require_invoice(invoice_id)
        if invoice["status"] not in _PAYABLE:
            raise InvalidState("Invoice not payable in current state")
        if not self.store.transition_invoice(invoice_id, invoice["status"], InvoiceStatus.PAID.value):
            raise InvalidState("Invoice not payable in current state")
        logger.warning("Invoice %s marked PAID by simulation", invoice_id)
        return self.store.get_invoice(invoice_id)

    def release_escrow(self, invoice_id: str) -> dict:
        """PAID -> RELEASED. Exactly one concurrent caller wins."""
        invoice = self._require_invoice(invoice_id)
        if invoice["status"] != InvoiceStatus.PAID.value:
            raise InvalidState("Invoice not in PAID state")
        ok = self.store.transition_invoice(
            invoice_id, InvoiceStatus.PAID.value, InvoiceStatus.RELEASED.value,
            released_at=time.time(),
        )
        if not ok:
            raise InvalidState("Invoice not in PAID state")
        logger.info("Escrow released for invoice %s", invoice_id)
        return self.store.get_invoice(invoice_id)
