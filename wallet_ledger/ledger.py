"""
Ledger Engine

Executes every balance-affecting operation as one atomic unit:
balance mutation + transaction-log append + idempotency-key persist.
Transfers compose two mutations and two log entries in a single unit, so a
debit without its matching credit is never observable.

Conservation: deposits and withdrawals change the sum of balances by exactly
their amount; transfers leave it unchanged.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from .currency import Money
from .storage import StorageInterface
from .accounts import AccountStore
from .transactions import (
    TransactionLog, TransactionKind, LedgerTransaction, generate_reference
)
from .idempotency import (
    IdempotencyRegistry, IdempotencyRecord, validate_idempotency_key, request_fingerprint
)
from .audit import AuditTrail, AuditEventType
from .events import (
    EventDispatcher, PostCommitBuffer, DomainEvent, EventPayload, transaction_event
)
from .errors import (
    LedgerError, AccountNotFound, DuplicateReference, ValidationError, InsufficientFunds
)
from .logging_config import get_logger, log_action


@dataclass
class LedgerResult:
    """
    Outcome of a mutating operation.

    A replay returns the same operation, reference, transactions and balance
    as the original. ``replayed`` is delivery metadata telling the caller the
    outcome was served from the stored record; it is not part of the result
    and is left out of ``outcome()``.
    """
    operation: str
    reference: str
    transactions: List[LedgerTransaction]
    balance: Money          # resulting balance of the initiating account
    replayed: bool = False

    @property
    def transaction(self) -> LedgerTransaction:
        """The entry on the initiating account"""
        return self.transactions[0]

    def outcome(self) -> Dict[str, Any]:
        """The result proper, equal for the original call and every replay"""
        return {
            "operation": self.operation,
            "reference": self.reference,
            "transaction_ids": [t.id for t in self.transactions],
            "balance": self.balance.to_dict(),
        }

    def to_dict(self) -> Dict[str, Any]:
        result = self.outcome()
        result["replayed"] = self.replayed
        return result


@dataclass
class ReconciliationReport:
    """Stored balance versus the balance rebuilt from the log"""
    account_id: str
    stored_balance: Money
    replayed_balance: Money
    entries: int
    discontinuities: List[str]

    @property
    def balanced(self) -> bool:
        return self.stored_balance == self.replayed_balance and not self.discontinuities


class LedgerEngine:
    """
    Deposits, withdrawals and transfers with at-most-once application
    """

    def __init__(
        self,
        storage: StorageInterface,
        accounts: AccountStore,
        log: TransactionLog,
        registry: IdempotencyRegistry,
        audit_trail: AuditTrail,
        event_dispatcher: Optional[EventDispatcher] = None,
        max_amount=None
    ):
        self.storage = storage
        self.accounts = accounts
        self.log = log
        self.registry = registry
        self.audit_trail = audit_trail
        self.max_amount = max_amount
        self._post_commit = PostCommitBuffer(event_dispatcher)
        self.logger = get_logger("wallet_ledger.ledger")

    def post(
        self,
        account_id: str,
        kind: TransactionKind,
        amount: Money,
        reference: str,
        description: str,
        metadata: Optional[Dict[str, Any]] = None,
        events: Optional[List[EventPayload]] = None
    ) -> LedgerTransaction:
        """
        Apply one single-account mutation and append its entry.

        Must be called inside ``storage.atomic()``; the caller owns the unit.
        """
        if kind in (TransactionKind.TRANSFER_IN, TransactionKind.TRANSFER_OUT):
            raise ValidationError("Transfer legs are posted by transfer()")
        if kind.sign > 0:
            change = self.accounts.credit(account_id, amount)
        else:
            change = self.accounts.debit(account_id, amount)
        entry = self.log.append(kind, amount, change, reference, description, metadata)
        if events is not None:
            events.append(transaction_event(DomainEvent.TRANSACTION_POSTED, entry))
        return entry

    def apply_gateway_payment(self, payment, direction,
                              events: Optional[List[EventPayload]] = None) -> LedgerTransaction:
        """
        Post the ledger effect of a confirmed gateway payment.

        Credits are recorded as deposits and debits as payments, both under
        the gateway reference, so the unique ``(reference, kind)`` index lets
        a payment reach the ledger at most once. Must be called inside the
        unit that also marks the payment completed.
        """
        kind = TransactionKind.DEPOSIT if direction.value == "credit" else TransactionKind.PAYMENT
        description = payment.description or f"{payment.method.value.replace('_', ' ').title()} payment"
        return self.post(
            payment.account_id, kind, payment.amount, payment.payment_reference, description,
            metadata={"payment_method": payment.method.value, "direction": direction.value},
            events=events
        )

    def deposit(
        self,
        account_id: str,
        amount: Money,
        description: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        reference: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> LedgerResult:
        """Credit an account from outside the ledger"""
        return self._single("deposit", TransactionKind.DEPOSIT, account_id, amount,
                            description or "Deposit", idempotency_key, reference, metadata)

    def withdraw(
        self,
        account_id: str,
        amount: Money,
        description: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        reference: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> LedgerResult:
        """Debit an account to outside the ledger"""
        return self._single("withdrawal", TransactionKind.WITHDRAWAL, account_id, amount,
                            description or "Withdrawal", idempotency_key, reference, metadata)

    def _single(self, operation: str, kind: TransactionKind, account_id: str, amount: Money,
                description: str, idempotency_key: Optional[str], reference: Optional[str],
                metadata: Optional[Dict[str, Any]]) -> LedgerResult:
        self._validate_amount(amount)
        fingerprint = None
        if idempotency_key:
            validate_idempotency_key(idempotency_key)
            fingerprint = request_fingerprint(
                operation, account_id=account_id, amount=str(amount.amount),
                currency=amount.currency.code
            )
            prior = self.registry.check(account_id, idempotency_key, operation, fingerprint)
            if prior:
                return self._replay(prior)

        if reference:
            prior_entry = self.log.get_by_reference_and_kind(reference, kind)
            if prior_entry:
                return self._replay_entry(operation, prior_entry, account_id)
        reference = reference or generate_reference(operation)

        try:
            with self._post_commit.collect() as events:
                with self.storage.atomic():
                    if idempotency_key:
                        prior = self.registry.check(account_id, idempotency_key, operation, fingerprint)
                        if prior:
                            return self._replay(prior)
                    entry = self.post(account_id, kind, amount, reference, description,
                                      metadata, events)
                    if idempotency_key:
                        self.registry.record(
                            account_id, idempotency_key, operation, fingerprint,
                            [entry.id], self._result_payload(reference, entry.balance_after)
                        )
        except DuplicateReference:
            # A concurrent duplicate committed first
            return self._resolve_duplicate(operation, kind, account_id, idempotency_key, reference)
        except LedgerError as e:
            self._log_failure(operation, account_id, e)
            raise

        log_action(
            self.logger, "info", f"{operation.capitalize()} completed",
            action=operation, resource=f"account:{account_id}",
            extra={"transaction_id": entry.id, "amount": amount.to_string(),
                   "balance_after": entry.balance_after.to_string(), "reference": reference}
        )
        return LedgerResult(operation=operation, reference=reference,
                            transactions=[entry], balance=entry.balance_after)

    def transfer(
        self,
        source_account_id: str,
        destination_account_number: str,
        amount: Money,
        description: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        reference: Optional[str] = None
    ) -> LedgerResult:
        """
        Move ``amount`` from the source account to the account with the given number.

        Preconditions, each with a distinct failure and checked in this order
        (again inside the unit): both accounts exist, both are active, they
        differ, the source holds at least ``amount``.
        """
        operation = "transfer"
        self._validate_amount(amount)
        fingerprint = None
        if idempotency_key:
            validate_idempotency_key(idempotency_key)
            fingerprint = request_fingerprint(
                operation, account_id=source_account_id, destination=destination_account_number,
                amount=str(amount.amount), currency=amount.currency.code
            )
            prior = self.registry.check(source_account_id, idempotency_key, operation, fingerprint)
            if prior:
                return self._replay(prior)

        if reference:
            prior_entry = self.log.get_by_reference_and_kind(reference, TransactionKind.TRANSFER_OUT)
            if prior_entry:
                return self._replay_entry(operation, prior_entry, source_account_id)
        reference = reference or generate_reference(operation)

        try:
            # Fail fast before taking the write lock
            self._check_transfer(source_account_id, destination_account_number, amount)

            with self._post_commit.collect() as events:
                with self.storage.atomic():
                    if idempotency_key:
                        prior = self.registry.check(source_account_id, idempotency_key,
                                                    operation, fingerprint)
                        if prior:
                            return self._replay(prior)

                    source, destination = self._check_transfer(
                        source_account_id, destination_account_number, amount
                    )

                    debit = self.accounts.debit(source.id, amount)
                    out_entry = self.log.append(
                        TransactionKind.TRANSFER_OUT, amount, debit, reference,
                        description or f"Transfer to {destination.account_number}",
                        counterparty_account_id=destination.id,
                        counterparty_account_number=destination.account_number
                    )

                    credit = self.accounts.credit(destination.id, amount)
                    in_entry = self.log.append(
                        TransactionKind.TRANSFER_IN, amount, credit, reference,
                        description or f"Transfer from {source.account_number}",
                        counterparty_account_id=source.id,
                        counterparty_account_number=source.account_number
                    )

                    if idempotency_key:
                        self.registry.record(
                            source.id, idempotency_key, operation, fingerprint,
                            [out_entry.id, in_entry.id],
                            self._result_payload(reference, debit.after)
                        )

                    self.audit_trail.log_event(
                        event_type=AuditEventType.TRANSFER_COMPLETED,
                        entity_type="transfer",
                        entity_id=reference,
                        actor_id=source.owner_id,
                        metadata={
                            "source_account_id": source.id,
                            "destination_account_id": destination.id,
                            "amount": amount.amount,
                            "currency": amount.currency.code,
                        }
                    )
                    events.append(transaction_event(DomainEvent.TRANSACTION_POSTED, out_entry))
                    events.append(transaction_event(DomainEvent.TRANSACTION_POSTED, in_entry))
                    events.append(EventPayload(
                        event_type=DomainEvent.TRANSFER_COMPLETED,
                        entity_type="transfer",
                        entity_id=reference,
                        data={"source_account_id": source.id,
                              "destination_account_id": destination.id,
                              "amount": str(amount.amount),
                              "currency": amount.currency.code}
                    ))
        except DuplicateReference:
            return self._resolve_duplicate(operation, TransactionKind.TRANSFER_OUT,
                                           source_account_id, idempotency_key, reference)
        except LedgerError as e:
            self._log_failure(operation, source_account_id, e)
            raise

        log_action(
            self.logger, "info", "Transfer completed",
            owner_id=source.owner_id, action="transfer", resource=f"account:{source.id}",
            extra={"reference": reference, "amount": amount.to_string(),
                   "destination_account_id": destination.id,
                   "balance_after": debit.after.to_string()}
        )
        return LedgerResult(operation=operation, reference=reference,
                            transactions=[out_entry, in_entry], balance=debit.after)

    def _check_transfer(self, source_account_id: str, destination_account_number: str,
                        amount: Money) -> tuple:
        source = self.accounts.require(source_account_id)
        destination = self.accounts.get_by_number(destination_account_number)
        if not destination:
            raise AccountNotFound("Recipient account not found",
                                  details={"account_number": destination_account_number})
        self.accounts.require_active(source)
        self.accounts.require_active(destination)
        if source.id == destination.id:
            raise ValidationError("Cannot transfer to same account")
        if source.currency != destination.currency or amount.currency != source.currency:
            raise ValidationError("Transfers must use the currency of both accounts")
        if source.balance < amount:
            raise InsufficientFunds(
                f"Insufficient funds: available {source.balance.to_string()}, requested {amount.to_string()}",
                details={"available": str(source.balance.amount), "requested": str(amount.amount)}
            )
        return source, destination

    def reconcile(self, account_id: str) -> ReconciliationReport:
        """Replay the account's log from zero and compare with the stored balance"""
        with self.storage.atomic():
            account = self.accounts.require(account_id)
            replay = self.log.replay_balance(account_id, account.currency)
        report = ReconciliationReport(
            account_id=account_id,
            stored_balance=account.balance,
            replayed_balance=replay.balance,
            entries=replay.entries,
            discontinuities=replay.discontinuities,
        )
        if not report.balanced:
            log_action(self.logger, "error", "Ledger does not reconcile",
                       action="reconcile", resource=f"account:{account_id}",
                       extra={"stored": str(account.balance.amount),
                              "replayed": str(replay.balance.amount),
                              "discontinuities": replay.discontinuities})
        return report

    def _validate_amount(self, amount: Money) -> None:
        if not isinstance(amount, Money):
            raise ValidationError("Amount must be Money")
        if not amount.is_positive():
            raise ValidationError("Amount must be positive")
        if self.max_amount is not None and amount.amount > self.max_amount:
            raise ValidationError(f"Amount cannot exceed {self.max_amount}")

    @staticmethod
    def _result_payload(reference: str, balance: Money) -> Dict[str, Any]:
        return {"reference": reference, "balance": balance.to_dict()}

    def _replay(self, record: IdempotencyRecord) -> LedgerResult:
        transactions = [self.log.require(tid) for tid in record.transaction_ids]
        log_action(self.logger, "info", f"Replayed {record.operation}",
                   action="idempotent_replay", resource=f"account:{record.scope}",
                   extra={"idempotency_key": record.key})
        return LedgerResult(
            operation=record.operation,
            reference=record.result["reference"],
            transactions=transactions,
            balance=Money.from_dict(record.result["balance"]),
            replayed=True,
        )

    def _replay_entry(self, operation: str, entry: LedgerTransaction,
                      account_id: str) -> LedgerResult:
        if entry.account_id != account_id:
            raise DuplicateReference(f"Reference {entry.reference} is already in use")
        transactions = self.log.find_by_reference(entry.reference)
        transactions.sort(key=lambda t: 0 if t.account_id == account_id else 1)
        return LedgerResult(operation=operation, reference=entry.reference,
                            transactions=transactions, balance=entry.balance_after,
                            replayed=True)

    def _resolve_duplicate(self, operation: str, kind: TransactionKind, account_id: str,
                           idempotency_key: Optional[str], reference: str) -> LedgerResult:
        if idempotency_key:
            prior = self.registry.lookup(account_id, idempotency_key)
            if prior:
                return self._replay(prior)
        prior_entry = self.log.get_by_reference_and_kind(reference, kind)
        if prior_entry:
            return self._replay_entry(operation, prior_entry, account_id)
        raise DuplicateReference(f"Reference {reference} is already in use")

    def _log_failure(self, operation: str, account_id: str, error: LedgerError) -> None:
        log_action(self.logger, "warning", f"{operation.capitalize()} rejected: {error.message}",
                   action=operation, resource=f"account:{account_id}",
                   extra={"error": error.code})
