"""
Ledger Error Taxonomy

Every failure the engine reports to a caller is one of these. Each error
carries a stable ``code``, the HTTP-equivalent status and whether a client
may retry with the same idempotency token.
"""

from typing import Any, Dict, Optional


class LedgerError(Exception):
    """Base class for all ledger errors"""

    code = "ledger_error"
    http_status = 500
    retryable = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Single actionable error reason for the caller"""
        result = {
            "error": self.code,
            "message": self.message,
            "retryable": self.retryable,
        }
        if self.details:
            result["details"] = self.details
        return result


class ValidationError(LedgerError, ValueError):
    """Bad amount, currency, or missing field. Never retried."""
    code = "validation_error"
    http_status = 400


class AccountNotFound(LedgerError):
    code = "account_not_found"
    http_status = 404


class AccountNotActive(LedgerError):
    code = "account_not_active"
    http_status = 409


class InsufficientFunds(LedgerError):
    code = "insufficient_funds"
    http_status = 422


class TransactionNotFound(LedgerError):
    code = "transaction_not_found"
    http_status = 404


class PaymentNotFound(LedgerError):
    code = "payment_not_found"
    http_status = 404


class DuplicateReference(LedgerError):
    """
    A reference or idempotency key is already taken.

    Resolved internally by replaying the stored outcome; it only reaches a
    caller when the stored outcome cannot be replayed.
    """
    code = "duplicate_reference"
    http_status = 409


class ConcurrencyConflict(LedgerError):
    """A concurrent writer changed the record first; resubmit the same token"""
    code = "concurrency_conflict"
    http_status = 409
    retryable = True


class GatewayUnavailable(LedgerError):
    """The payment gateway errored or timed out; nothing was persisted"""
    code = "gateway_unavailable"
    http_status = 503
    retryable = True


class GatewayVerificationFailed(LedgerError):
    """The gateway reported a non-successful charge"""
    code = "gateway_verification_failed"
    http_status = 402

    def __init__(self, message: str, gateway_status: str,
                 details: Optional[Dict[str, Any]] = None):
        details = dict(details or {})
        details["gateway_status"] = gateway_status
        super().__init__(message, details)
        self.gateway_status = gateway_status


class InvalidSignature(LedgerError):
    """Webhook signature mismatch. The payload is never logged."""
    code = "invalid_signature"
    http_status = 401
