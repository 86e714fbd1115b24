"""
Gateway Webhook Authentication

Signatures are an HMAC-SHA512 hex digest of the exact raw request body,
keyed with the shared gateway secret. A body is only parsed after its
signature matches. Verified events are advisory: they route into the same
``GatewayReconciliation.verify`` path as polling.
"""

import hashlib
import hmac
import logging
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, Field, ValidationError as PydanticValidationError

from .errors import InvalidSignature, ValidationError, LedgerError
from .payments import GatewayReconciliation, VerificationResult

logger = logging.getLogger("wallet_ledger.webhooks")

# Events that carry a final charge status
CHARGE_EVENTS = {"charge.success", "charge.failed"}


class WebhookEvent(BaseModel):
    """Verified webhook body"""
    event: str
    data: Dict[str, Any] = Field(default_factory=dict)

    @property
    def reference(self) -> Optional[str]:
        return self.data.get("reference")


class WebhookOutcome(BaseModel):
    """What the receiver acknowledges back to the gateway"""
    event: str
    reference: Optional[str] = None
    handled: bool = False
    status: Optional[str] = None
    error: Optional[str] = None


def compute_signature(secret: str, raw_body: bytes) -> str:
    """HMAC-SHA512 hex digest of the raw body"""
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha512).hexdigest()


class WebhookAuthenticator:
    """Checks the signature header before anything else touches the body"""

    def __init__(self, secret: str):
        if not secret:
            raise ValueError("Webhook secret is required")
        self._secret = secret

    def authenticate(self, raw_body: Union[bytes, str], signature: Optional[str]) -> WebhookEvent:
        """
        Raises:
            InvalidSignature: missing or mismatched signature
            ValidationError: signed body is not a webhook event
        """
        if isinstance(raw_body, str):
            raw_body = raw_body.encode("utf-8")
        expected = compute_signature(self._secret, raw_body)
        if not signature or not hmac.compare_digest(
                expected.encode("ascii"), signature.strip().lower().encode("utf-8")):
            logger.warning("Rejected webhook with invalid signature")
            raise InvalidSignature("Invalid webhook signature")

        try:
            return WebhookEvent.model_validate_json(raw_body)
        except PydanticValidationError as e:
            raise ValidationError("Malformed webhook body") from e


class WebhookHandler:
    """Authenticates gateway webhooks and feeds charge events to verify()"""

    def __init__(self, authenticator: WebhookAuthenticator, reconciliation: GatewayReconciliation):
        self.authenticator = authenticator
        self.reconciliation = reconciliation

    def handle(self, raw_body: Union[bytes, str], signature: Optional[str]) -> WebhookOutcome:
        """
        Process one webhook delivery.

        Signature failures propagate as InvalidSignature. Once authenticated,
        ledger outcomes are reported in the acknowledgement rather than raised,
        since the gateway redelivers on non-2xx and verify is idempotent.
        """
        event = self.authenticator.authenticate(raw_body, signature)
        if event.event not in CHARGE_EVENTS or not event.reference:
            logger.info(f"Ignoring webhook event {event.event}")
            return WebhookOutcome(event=event.event, reference=event.reference)

        try:
            result: VerificationResult = self.reconciliation.verify(event.reference)
        except LedgerError as e:
            # GatewayUnavailable is retryable; let the gateway redeliver
            if e.retryable:
                raise
            logger.info(f"Webhook {event.event} for {event.reference} not applied: {e.code}")
            return WebhookOutcome(event=event.event, reference=event.reference,
                                  handled=True, error=e.code)

        return WebhookOutcome(event=event.event, reference=event.reference, handled=True,
                              status=result.payment.status.value)
