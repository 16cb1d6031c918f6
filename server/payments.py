"""Payment processor backends and webhook reconciliation.

PaymentProcessor talks to the external processor (Stripe through the
stripe SDK, or a local stub). PaymentReconciler consumes processor events
and feeds confirmed payments into the escrow state machine.

Security model for webhooks:
  - With a webhook secret: stripe.Webhook.construct_event checks the
    signature header against the exact raw bytes received, within a
    time tolerance.
  - Without one: the parsed payload is trusted as-is. This is a reduced
    security development mode and is logged on every delivery.
Verification or parse failures answer {"received": false}; the processor
retries, which is what brings the store to eventual consistency.
"""

import json
import logging
import secrets
import sqlite3
from abc import ABC, abstractmethod

import stripe

from protocol import (
    DEFAULT_EXTERNAL_TIMEOUT, DEFAULT_WEBHOOK_TOLERANCE, PAYMENT_SUCCEEDED_EVENT,
    SUPPORTED_PROCESSORS, ExternalFailure,
)


logger = logging.getLogger(__name__)


class PaymentProcessor(ABC):
    """Abstract payment processor. Platform injects one of these into EscrowManager."""

    @abstractmethod
    def create_intent(self, amount_minor: int, currency: str, metadata: dict) -> dict:
        """Create a payment intent. Returns {"id", "client_secret"}."""
        ...

    @abstractmethod
    def retrieve_intent(self, intent_id: str) -> dict:
        """Fetch an existing intent. Returns {"id", "client_secret"}."""
        ...


class StripeProcessor(PaymentProcessor):
    """Stripe PaymentIntents via the stripe SDK.

    Creates carry the idempotency key "invoice:<id>", so a create retried
    after a timeout gets the intent Stripe already made instead of a
    second live one.
    """

    def __init__(self, secret_key: str, api_base: str | None = None,
                 timeout: int = DEFAULT_EXTERNAL_TIMEOUT):
        if not secret_key:
            raise ValueError("Stripe secret key required: set STRIPE_SECRET")
        self.secret_key = secret_key
        self.timeout = timeout
        # HTTP client and API base are process-wide in the SDK
        stripe.default_http_client = stripe.RequestsClient(timeout=timeout)
        if api_base:
            stripe.api_base = api_base.rstrip("/")

    def create_intent(self, amount_minor: int, currency: str, metadata: dict) -> dict:
        params = {
            "amount": amount_minor,
            "currency": currency,
            "metadata": {key: str(value) for key, value in metadata.items()},
            "api_key": self.secret_key,
        }
        if metadata.get("invoiceId"):
            params["idempotency_key"] = f"invoice:{metadata['invoiceId']}"
        try:
            intent = stripe.PaymentIntent.create(**params)
        except stripe.StripeError as e:
            raise ExternalFailure(f"Payment processor error: {e}")
        return {"id": intent.id, "client_secret": intent.client_secret}

    def retrieve_intent(self, intent_id: str) -> dict:
        try:
            intent = stripe.PaymentIntent.retrieve(intent_id, api_key=self.secret_key)
        except stripe.StripeError as e:
            raise ExternalFailure(f"Payment processor error: {e}")
        return {"id": intent.id, "client_secret": intent.client_secret}


class StubProcessor(PaymentProcessor):
    """Local processor for development and tests. Intents never reach a network."""

    def __init__(self):
        self.intents: dict[str, dict] = {}

    def create_intent(self, amount_minor: int, currency: str, metadata: dict) -> dict:
        intent_id = "pi_stub_" + secrets.token_hex(12)
        intent = {
            "id": intent_id,
            "client_secret": f"{intent_id}_secret_{secrets.token_hex(8)}",
            "amount": amount_minor,
            "currency": currency,
            "metadata": dict(metadata),
        }
        self.intents[intent_id] = intent
        return {"id": intent_id, "client_secret": intent["client_secret"]}

    def retrieve_intent(self, intent_id: str) -> dict:
        intent = self.intents.get(intent_id)
        if intent is None:
            # Unknown after a restart; stub secrets carry no authority anyway
            return {"id": intent_id, "client_secret": f"{intent_id}_secret_stub"}
        return {"id": intent_id, "client_secret": intent["client_secret"]}


class PaymentReconciler:
    """Turns processor events into escrow state changes, at most once per event."""

    def __init__(self, escrow, webhook_secret: str = "",
                 tolerance: int = DEFAULT_WEBHOOK_TOLERANCE):
        self.escrow = escrow
        self.store = escrow.store
        self.webhook_secret = webhook_secret
        self.tolerance = tolerance
        if not webhook_secret:
            logger.warning("No webhook secret configured: processor events are NOT verified")

    def handle_webhook(self, processor: str, raw_body: bytes, signature_header: str = "") -> dict:
        """Process one delivery. Never raises; returns {"received": bool}."""
        if processor not in SUPPORTED_PROCESSORS:
            logger.warning("Webhook for unsupported processor %r", processor)
            return {"received": False}

        if self.webhook_secret:
            try:
                stripe.Webhook.construct_event(
                    raw_body, signature_header or "", self.webhook_secret, tolerance=self.tolerance,
                )
            except (ValueError, stripe.SignatureVerificationError) as e:
                logger.warning("Rejected %s webhook: %s", processor, e)
                return {"received": False}
        else:
            logger.warning("Accepting unverified %s webhook (no webhook secret)", processor)

        try:
            event = json.loads(raw_body)
            event_type = event["type"]
            event_id = event.get("id")
            obj = event.get("data", {}).get("object", {})
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            logger.warning("Unparseable %s webhook: %s", processor, e)
            return {"received": False}

        try:
            return self._apply(event_id, event_type, obj)
        except sqlite3.Error:
            logger.exception("Store failure while reconciling event %s", event_id)
            return {"received": False}

    def _apply(self, event_id: str | None, event_type: str, obj: dict) -> dict:
        if event_id and self.store.has_payment_event(event_id):
            logger.info("Duplicate delivery of event %s, already processed", event_id)
            return {"received": True}

        intent_id = obj.get("id") if isinstance(obj, dict) else None
        if event_type == PAYMENT_SUCCEEDED_EVENT:
            if not intent_id:
                logger.warning("%s event %s carries no intent id", event_type, event_id)
                return {"received": False}
            self.escrow.confirm_payment(intent_id)
        else:
            logger.debug("Ignoring processor event type %s", event_type)

        if event_id:
            self.store.record_payment_event(event_id, intent_id, event_type)
        return {"received": True}
