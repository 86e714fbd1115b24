"""
Test suite for gateway payment reconciliation

Tests initialize/verify/cancel against the in-process gateway, including
at-most-once ledger application when verifications race.
"""

import pytest
import threading
from decimal import Decimal
from unittest.mock import patch

from wallet_ledger.currency import Money, Currency
from wallet_ledger.storage import InMemoryStorage
from wallet_ledger.audit import AuditTrail, AuditEventType
from wallet_ledger.events import EventDispatcher, DomainEvent
from wallet_ledger.accounts import AccountStore
from wallet_ledger.transactions import TransactionLog, TransactionKind
from wallet_ledger.idempotency import IdempotencyRegistry
from wallet_ledger.ledger import LedgerEngine
from wallet_ledger.gateway_client import MockGatewayClient
from wallet_ledger.encryption import FieldCipher
from wallet_ledger.payments import (
    GatewayReconciliation, PaymentMethod, PaymentStatus, Direction, Recipient,
    DEFAULT_METHOD_DIRECTIONS, resolve_method_directions, normalize_phone
)
from wallet_ledger.errors import (
    ValidationError, InsufficientFunds, PaymentNotFound, GatewayUnavailable,
    GatewayVerificationFailed, AccountNotActive
)


def ghs(amount: str) -> Money:
    return Money(Decimal(amount), Currency.GHS)


class TestMethodDirections:

    def test_defaults(self):
        assert DEFAULT_METHOD_DIRECTIONS[PaymentMethod.MOBILE_MONEY] == Direction.CREDIT
        for method in (PaymentMethod.CARD, PaymentMethod.WALLET, PaymentMethod.TRANSFER):
            assert DEFAULT_METHOD_DIRECTIONS[method] == Direction.DEBIT

    def test_overrides(self):
        directions = resolve_method_directions({"card": "credit"})
        assert directions[PaymentMethod.CARD] == Direction.CREDIT
        assert directions[PaymentMethod.WALLET] == Direction.DEBIT

    def test_invalid_override(self):
        with pytest.raises(ValidationError):
            resolve_method_directions({"card": "sideways"})
        with pytest.raises(ValidationError):
            resolve_method_directions({"cheque": "debit"})


class TestRecipient:

    @pytest.mark.parametrize("phone,expected", [
        ("0241234567", "0241234567"),
        ("+233 24 123 4567", "+233241234567"),
        ("055-123-4567", "0551234567"),
    ])
    def test_valid_phone(self, phone, expected):
        assert normalize_phone(phone) == expected

    @pytest.mark.parametrize("phone", ["0311234567", "024123456", "+2342412345678", "abc"])
    def test_invalid_phone(self, phone):
        with pytest.raises(ValidationError, match="Ghana phone"):
            normalize_phone(phone)

    def test_network(self):
        assert Recipient(name="Ama", network="mtn").validate().network == "MTN"
        with pytest.raises(ValidationError, match="network"):
            Recipient(name="Ama", network="GLO").validate()

    def test_phone_stored_encrypted(self):
        cipher = FieldCipher("test-key")
        recipient = Recipient(name="Ama", phone="0241234567", network="MTN").validate()
        stored = recipient.to_dict(cipher)
        assert stored["phone"] != "0241234567"
        assert Recipient.from_dict(stored, cipher).phone == "0241234567"


class GatewayFixture:
    """Engine, accounts and reconciliation over an in-process gateway"""

    def build(self, codec=None):
        self.storage = InMemoryStorage()
        self.audit_trail = AuditTrail(self.storage)
        self.dispatcher = EventDispatcher()
        self.published = []
        self.dispatcher.subscribe_all(self.published.append)
        self.accounts = AccountStore(self.storage, self.audit_trail, self.dispatcher)
        self.log = TransactionLog(self.storage, self.audit_trail)
        self.engine = LedgerEngine(self.storage, self.accounts, self.log,
                                   IdempotencyRegistry(self.storage), self.audit_trail,
                                   self.dispatcher)
        self.gateway = MockGatewayClient()
        self.payments = GatewayReconciliation(
            self.storage, self.accounts, self.engine, self.log, self.gateway,
            self.audit_trail, self.dispatcher, codec=codec
        )
        self.account = self.accounts.open_account("owner-1")
        self.accounts.activate(self.account.id)

    def balance(self) -> Money:
        return self.accounts.get(self.account.id).balance

    def fund(self, amount: str):
        self.engine.deposit(self.account.id, ghs(amount))


class TestInitialize(GatewayFixture):
    """initialize() creates a pending intent and never touches the ledger"""

    def setup_method(self):
        self.build(codec=FieldCipher("test-key"))

    def test_initialize_mobile_money(self):
        handle = self.payments.initialize(
            self.account.id, ghs("100.50"), "mobile_money",
            Recipient(name="Kofi", phone="0241234567", network="MTN"),
            "Top up", email="kofi@example.com"
        )

        assert handle.authorization_url.endswith(handle.reference)
        payment = self.payments.get_payment(handle.reference)
        assert payment.status == PaymentStatus.PENDING
        assert payment.direction == Direction.CREDIT
        assert payment.amount == ghs("100.50")
        assert payment.recipient.phone == "0241234567"

        charge = self.gateway.charges[handle.reference]
        assert charge["amount"] == 10050
        assert charge["metadata"]["payment_method"] == "mobile_money"
        assert charge["metadata"]["account_id"] == self.account.id
        assert "0241234567" not in str(charge["metadata"])

        assert self.balance().is_zero()
        assert self.log.list_for_account(self.account.id).total == 0

        stored = self.storage.load("payments", handle.reference)
        assert stored["recipient"]["phone"].startswith("ENC:")

    def test_debit_method_prechecks_balance(self):
        with pytest.raises(InsufficientFunds):
            self.payments.initialize(self.account.id, ghs("10.00"), "card",
                                     email="payer@example.com")
        assert self.gateway.create_calls == 0

    def test_invalid_method(self):
        with pytest.raises(ValidationError, match="Invalid payment method"):
            self.payments.initialize(self.account.id, ghs("10.00"), "cheque",
                                     email="payer@example.com")

    def test_email_required(self):
        with pytest.raises(ValidationError, match="email"):
            self.payments.initialize(self.account.id, ghs("10.00"), "mobile_money")

    def test_inactive_account(self):
        self.accounts.freeze(self.account.id, "review")
        with pytest.raises(AccountNotActive):
            self.payments.initialize(self.account.id, ghs("10.00"), "mobile_money",
                                     email="payer@example.com")

    def test_gateway_down_persists_nothing(self):
        self.gateway.unavailable = True
        with pytest.raises(GatewayUnavailable):
            self.payments.initialize(self.account.id, ghs("10.00"), "mobile_money",
                                     email="payer@example.com")
        assert self.storage.count("payments") == 0


class TestVerify(GatewayFixture):
    """verify() applies a confirmed charge exactly once"""

    def setup_method(self):
        self.build()

    def _init(self, method="mobile_money", amount="50.00"):
        return self.payments.initialize(self.account.id, ghs(amount), method,
                                        Recipient(name="Shop"), "Order 42",
                                        email="payer@example.com").reference

    def test_mobile_money_credits(self):
        reference = self._init("mobile_money", "50.00")
        result = self.payments.verify(reference, account_id=self.account.id)

        assert not result.already_processed
        assert result.balance == ghs("50.00")
        assert result.payment.status == PaymentStatus.COMPLETED
        assert result.payment.linked_transaction_id == result.transaction.id
        assert result.transaction.kind == TransactionKind.DEPOSIT
        assert result.transaction.reference == reference
        assert self.balance() == ghs("50.00")

    def test_card_payment_debits(self):
        self.fund("80.00")
        reference = self._init("card", "30.00")
        result = self.payments.verify(reference)

        assert result.transaction.kind == TransactionKind.PAYMENT
        assert result.balance == ghs("50.00")
        assert self.balance() == ghs("50.00")

    def test_second_verify_is_a_no_op(self):
        """verify twice -> same payment, one ledger mutation, balance unchanged"""
        reference = self._init()
        first = self.payments.verify(reference)
        second = self.payments.verify(reference)

        assert second.already_processed
        assert second.payment.payment_reference == first.payment.payment_reference
        assert second.payment.linked_transaction_id == first.payment.linked_transaction_id
        assert second.transaction.id == first.transaction.id
        assert second.balance == first.balance
        assert self.log.list_for_account(self.account.id).total == 1
        assert self.gateway.status_calls == 1

    def test_concurrent_verifies_apply_once(self):
        """A webhook racing a polling verify must not double-apply"""
        reference = self._init()
        results, errors = [], []

        def verify():
            try:
                results.append(self.payments.verify(reference))
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=verify) for _ in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert len({r.payment.linked_transaction_id for r in results}) == 1
        assert sum(1 for r in results if not r.already_processed) == 1
        assert self.balance() == ghs("50.00")

    def test_failed_charge(self):
        reference = self._init()
        self.gateway.set_status(reference, "failed")

        with pytest.raises(GatewayVerificationFailed) as exc_info:
            self.payments.verify(reference)

        assert exc_info.value.gateway_status == "failed"
        payment = self.payments.get_payment(reference)
        assert payment.status == PaymentStatus.FAILED
        assert payment.gateway_status == "failed"
        assert self.balance().is_zero()
        assert DomainEvent.PAYMENT_FAILED in [e.event_type for e in self.published]

    def test_cancel_during_gateway_query_wins(self):
        """A cancel committed while the gateway is queried is never overwritten"""
        self.fund("100.00")
        reference = self._init("card", "30.00")
        query = self.gateway.get_charge_status

        def cancel_then_query(ref):
            self.payments.cancel(ref, self.account.id)
            return query(ref)

        with patch.object(self.gateway, "get_charge_status", side_effect=cancel_then_query):
            with pytest.raises(GatewayVerificationFailed):
                self.payments.verify(reference)

        payment = self.payments.get_payment(reference)
        assert payment.status == PaymentStatus.FAILED
        assert payment.linked_transaction_id is None
        assert self.balance() == ghs("100.00")
        assert self.log.get_by_reference_and_kind(reference, TransactionKind.PAYMENT) is None

    def test_failed_payment_is_terminal(self):
        reference = self._init()
        self.gateway.set_status(reference, "failed")
        with pytest.raises(GatewayVerificationFailed):
            self.payments.verify(reference)

        self.gateway.set_status(reference, "success")
        with pytest.raises(GatewayVerificationFailed):
            self.payments.verify(reference)
        assert self.balance().is_zero()

    def test_pending_charge_marks_processing(self):
        reference = self._init()
        self.gateway.set_status(reference, "pending")

        with pytest.raises(GatewayVerificationFailed) as exc_info:
            self.payments.verify(reference)
        assert exc_info.value.gateway_status == "pending"
        assert self.payments.get_payment(reference).status == PaymentStatus.PROCESSING

        # Charge settles later; the next verify applies it
        self.gateway.set_status(reference, "success")
        assert self.payments.verify(reference).balance == ghs("50.00")

    def test_amount_mismatch_fails_payment(self):
        reference = self._init(amount="50.00")
        self.gateway.amount_overrides[reference] = 500000

        with pytest.raises(GatewayVerificationFailed, match="does not match"):
            self.payments.verify(reference)
        assert self.payments.get_payment(reference).status == PaymentStatus.FAILED
        assert self.balance().is_zero()

    def test_debit_rechecks_balance(self):
        """Funds spent between initialize and verify fail the payment"""
        self.fund("40.00")
        reference = self._init("card", "30.00")
        self.engine.withdraw(self.account.id, ghs("20.00"))

        with pytest.raises(InsufficientFunds):
            self.payments.verify(reference)

        payment = self.payments.get_payment(reference)
        assert payment.status == PaymentStatus.FAILED
        assert "Insufficient" in payment.failure_reason
        assert self.balance() == ghs("20.00")

    def test_gateway_timeout_is_retryable(self):
        reference = self._init()
        self.gateway.unavailable = True
        with pytest.raises(GatewayUnavailable):
            self.payments.verify(reference)
        assert self.payments.get_payment(reference).status == PaymentStatus.PENDING

        self.gateway.unavailable = False
        assert self.payments.verify(reference).balance == ghs("50.00")

    def test_other_accounts_payment_hidden(self):
        reference = self._init()
        with pytest.raises(PaymentNotFound):
            self.payments.verify(reference, account_id="someone-else")

    def test_stateless_verify_uses_gateway_metadata(self):
        """A charge with no stored intent is rebuilt from the echoed metadata"""
        charge = self.gateway.create_charge(2500, "GHS", "payer@example.com", {
            "account_id": self.account.id, "payment_method": "mobile_money",
            "recipient_name": "Agent", "description": "Cash in",
        })
        result = self.payments.verify(charge.reference)

        assert result.balance == ghs("25.00")
        assert result.payment.method == PaymentMethod.MOBILE_MONEY
        assert result.transaction.description == "Cash in"

    def test_unknown_reference(self):
        """An unknown reference is a final answer, not a retryable outage"""
        with pytest.raises(PaymentNotFound) as exc_info:
            self.payments.verify("never-issued")
        assert not exc_info.value.retryable
        assert self.balance().is_zero()
        assert self.storage.count("payments") == 0

    def test_audit_trail_records_lifecycle(self):
        reference = self._init()
        self.payments.verify(reference)
        types = [e.event_type for e in
                 self.audit_trail.get_events_for_entity("payment", reference)]
        assert types == [AuditEventType.PAYMENT_INITIALIZED, AuditEventType.PAYMENT_COMPLETED]
        assert self.audit_trail.verify_integrity()["valid"]


class TestCancelAndList(GatewayFixture):

    def setup_method(self):
        self.build()

    def _init(self, amount="10.00"):
        return self.payments.initialize(self.account.id, ghs(amount), "mobile_money",
                                        email="payer@example.com").reference

    def test_cancel_pending(self):
        reference = self._init()
        payment = self.payments.cancel(reference, self.account.id)
        assert payment.status == PaymentStatus.FAILED
        assert payment.failure_reason == "Cancelled by owner"
        assert self.balance().is_zero()

    def test_cannot_cancel_completed(self):
        reference = self._init()
        self.payments.verify(reference)
        with pytest.raises(ValidationError, match="cannot be cancelled"):
            self.payments.cancel(reference, self.account.id)

    def test_cannot_cancel_others(self):
        reference = self._init()
        with pytest.raises(PaymentNotFound):
            self.payments.cancel(reference, "someone-else")

    def test_list_payments(self):
        first = self._init("1.00")
        second = self._init("2.00")
        self.payments.verify(first)

        page = self.payments.list_payments(self.account.id)
        assert {p.payment_reference for p in page.items} == {first, second}
        assert page.items[0].created_at >= page.items[1].created_at
        completed = self.payments.list_payments(self.account.id, status=PaymentStatus.COMPLETED)
        assert [p.payment_reference for p in completed.items] == [first]
        assert self.payments.list_payments(self.account.id, limit=1).total_pages == 2
