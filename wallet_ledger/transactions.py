"""
Transaction Log

Append-only record of every balance mutation. Each entry carries the balance
before and after the mutation and the reference that pairs it with its
counterpart (transfer legs) or with the request that caused it. Entries are
written once, inside the same atomic unit as the balance change, and never
updated again except for cancelling a still-pending entry.
"""

from decimal import Decimal
from datetime import datetime, timezone, timedelta
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any, Tuple
from enum import Enum
import secrets
import time
import uuid

from .currency import Money, Currency
from .storage import StorageInterface
from .accounts import BalanceChange
from .audit import AuditTrail, AuditEventType
from .errors import ValidationError, TransactionNotFound


class TransactionKind(Enum):
    """Kinds of ledger entries"""
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    TRANSFER_OUT = "transfer_out"
    TRANSFER_IN = "transfer_in"
    PAYMENT = "payment"

    @property
    def sign(self) -> int:
        """+1 when the entry adds to the balance, -1 when it removes from it"""
        return 1 if self in (TransactionKind.DEPOSIT, TransactionKind.TRANSFER_IN) else -1


class TransactionStatus(Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


REFERENCE_PREFIXES = {
    "deposit": "DEP",
    "withdrawal": "WDR",
    "transfer": "TRF",
    "payment": "PAY",
}


def generate_reference(operation: str) -> str:
    """Timestamped, random-suffixed reference, e.g. ``TRF1718000000000A1B2C3D4E``"""
    prefix = REFERENCE_PREFIXES.get(operation, "TXN")
    return f"{prefix}{int(time.time() * 1000)}{secrets.token_hex(5).upper()[:9]}"


@dataclass
class LedgerTransaction:
    """
    Immutable ledger entry
    """
    id: str
    account_id: str
    kind: TransactionKind
    amount: Money
    status: TransactionStatus
    balance_before: Money
    balance_after: Money
    reference: str
    description: str
    sequence: int
    created_at: datetime
    completed_at: Optional[datetime] = None
    counterparty_account_id: Optional[str] = None
    counterparty_account_number: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)

    @property
    def currency(self) -> Currency:
        return self.amount.currency

    @property
    def is_completed(self) -> bool:
        return self.status == TransactionStatus.COMPLETED

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'account_id': self.account_id,
            'kind': self.kind.value,
            'amount': str(self.amount.amount),
            'currency': self.currency.code,
            'status': self.status.value,
            'balance_before': str(self.balance_before.amount),
            'balance_after': str(self.balance_after.amount),
            'reference': self.reference,
            'description': self.description,
            'sequence': self.sequence,
            'created_at': self.created_at.isoformat(),
            'completed_at': self.completed_at.isoformat() if self.completed_at else None,
            'counterparty_account_id': self.counterparty_account_id,
            'counterparty_account_number': self.counterparty_account_number,
            'metadata': self.metadata,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LedgerTransaction':
        currency = Currency.from_code(data['currency'])
        return cls(
            id=data['id'],
            account_id=data['account_id'],
            kind=TransactionKind(data['kind']),
            amount=Money(data['amount'], currency),
            status=TransactionStatus(data['status']),
            balance_before=Money(data['balance_before'], currency),
            balance_after=Money(data['balance_after'], currency),
            reference=data['reference'],
            description=data['description'],
            sequence=data['sequence'],
            created_at=datetime.fromisoformat(data['created_at']),
            completed_at=datetime.fromisoformat(data['completed_at']) if data.get('completed_at') else None,
            counterparty_account_id=data.get('counterparty_account_id'),
            counterparty_account_number=data.get('counterparty_account_number'),
            metadata=data.get('metadata') or {},
        )


@dataclass
class TransactionPage:
    """One page of an account's history, newest first"""
    items: List[LedgerTransaction]
    page: int
    limit: int
    total: int

    @property
    def total_pages(self) -> int:
        return (self.total + self.limit - 1) // self.limit if self.total else 0


@dataclass
class ReplayResult:
    """Running balance rebuilt from the log in commit order"""
    balance: Money
    entries: int
    discontinuities: List[str]  # ids of entries whose balance_before broke the chain


def normalize_pagination(page: Any, limit: Any, default_limit: int = 20,
                         max_limit: int = 100) -> Tuple[int, int]:
    """Clamp page to >= 1 and limit to [1, max_limit]"""
    try:
        page = int(page) if page is not None else 1
        limit = int(limit) if limit is not None else default_limit
    except (TypeError, ValueError):
        raise ValidationError("page and limit must be integers")
    return max(page, 1), min(max(limit, 1), max_limit)


class TransactionLog:
    """
    Append-only ledger entry store with a read-only, paginated query surface
    """

    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail,
                 default_page_size: int = 20, max_page_size: int = 100):
        self.storage = storage
        self.audit_trail = audit_trail
        self.default_page_size = default_page_size
        self.max_page_size = max_page_size
        self.table_name = "transactions"
        self.reference_index = "transaction_references"

    def append(
        self,
        kind: TransactionKind,
        amount: Money,
        change: BalanceChange,
        reference: str,
        description: str,
        metadata: Optional[Dict[str, Any]] = None,
        counterparty_account_id: Optional[str] = None,
        counterparty_account_number: Optional[str] = None
    ) -> LedgerTransaction:
        """
        Write a completed entry for a balance change.

        Raises:
            ValidationError: amount not positive, or balance_after does not
                equal balance_before plus/minus amount for this kind
            DuplicateReference: (reference, kind) already recorded
        """
        if not self.storage.in_transaction:
            raise RuntimeError("Ledger entries must be appended inside storage.atomic()")
        if not amount.is_positive():
            raise ValidationError("Transaction amount must be positive")
        if not reference:
            raise ValidationError("Transaction reference is required")

        expected_after = change.before + amount if kind.sign > 0 else change.before - amount
        if change.after != expected_after:
            raise ValidationError(
                f"Inconsistent {kind.value} entry: {change.before.to_string()} "
                f"{'+' if kind.sign > 0 else '-'} {amount.to_string()} != {change.after.to_string()}"
            )

        now = datetime.now(timezone.utc)
        entry = LedgerTransaction(
            id=str(uuid.uuid4()),
            account_id=change.account_id,
            kind=kind,
            amount=amount,
            status=TransactionStatus.COMPLETED,
            balance_before=change.before,
            balance_after=change.after,
            reference=reference,
            description=description,
            sequence=change.sequence,
            created_at=now,
            completed_at=now,
            counterparty_account_id=counterparty_account_id,
            counterparty_account_number=counterparty_account_number,
            metadata={k: str(v) for k, v in (metadata or {}).items()},
        )

        # Same reference may appear once per kind (both legs of a transfer)
        self.storage.insert(self.reference_index, f"{reference}:{kind.value}", {'transaction_id': entry.id})
        self.storage.insert(self.table_name, entry.id, entry.to_dict())

        self.audit_trail.log_event(
            event_type=AuditEventType.TRANSACTION_POSTED,
            entity_type="transaction",
            entity_id=entry.id,
            metadata={
                "account_id": entry.account_id,
                "kind": kind.value,
                "amount": amount.amount,
                "balance_before": change.before.amount,
                "balance_after": change.after.amount,
                "reference": reference,
            }
        )
        return entry

    def get(self, transaction_id: str) -> Optional[LedgerTransaction]:
        data = self.storage.load(self.table_name, transaction_id)
        return LedgerTransaction.from_dict(data) if data else None

    def require(self, transaction_id: str) -> LedgerTransaction:
        entry = self.get(transaction_id)
        if not entry:
            raise TransactionNotFound(f"Transaction {transaction_id} not found")
        return entry

    def find_by_reference(self, reference: str) -> List[LedgerTransaction]:
        """All entries sharing a reference (two for a transfer)"""
        return [LedgerTransaction.from_dict(d)
                for d in self.storage.find(self.table_name, {'reference': reference})]

    def get_by_reference_and_kind(self, reference: str,
                                  kind: TransactionKind) -> Optional[LedgerTransaction]:
        index = self.storage.load(self.reference_index, f"{reference}:{kind.value}")
        return self.get(index['transaction_id']) if index else None

    def _entries_for_account(self, account_id: str) -> List[LedgerTransaction]:
        entries = [LedgerTransaction.from_dict(d)
                   for d in self.storage.find(self.table_name, {'account_id': account_id})]
        entries.sort(key=lambda e: (e.sequence, e.created_at))
        return entries

    def list_for_account(
        self,
        account_id: str,
        page: Any = 1,
        limit: Any = None,
        kind: Optional[TransactionKind] = None,
        status: Optional[TransactionStatus] = None
    ) -> TransactionPage:
        """
        Account history, newest first, with a hard-capped page size

        Args:
            account_id: Account whose entries to list
            page: 1-based page number
            limit: page size, clamped to [1, max_page_size]
            kind: Optional kind filter
            status: Optional status filter
        """
        page, limit = normalize_pagination(page, limit, self.default_page_size, self.max_page_size)

        entries = self._entries_for_account(account_id)
        if kind:
            entries = [e for e in entries if e.kind == kind]
        if status:
            entries = [e for e in entries if e.status == status]
        entries.reverse()

        start = (page - 1) * limit
        return TransactionPage(items=entries[start:start + limit], page=page,
                               limit=limit, total=len(entries))

    def recent(self, account_id: str, limit: int = 10) -> List[LedgerTransaction]:
        return self.list_for_account(account_id, page=1, limit=limit).items

    def replay_balance(self, account_id: str, currency: Currency) -> ReplayResult:
        """Rebuild the balance from zero by applying completed entries in commit order"""
        running = Money.zero(currency)
        discontinuities = []
        count = 0
        for entry in self._entries_for_account(account_id):
            if not entry.is_completed:
                continue
            if entry.balance_before != running:
                discontinuities.append(entry.id)
            if entry.kind.sign > 0:
                running = running + entry.amount
            else:
                running = running - entry.amount
            count += 1
        return ReplayResult(balance=running, entries=count, discontinuities=discontinuities)

    def summarize(self, account_id: str, currency: Currency, days: int = 30) -> Dict[str, Any]:
        """
        Totals and counts of completed entries per kind over the last ``days``
        """
        since = datetime.now(timezone.utc) - timedelta(days=days)
        recent = [e for e in self._entries_for_account(account_id) if e.created_at >= since]

        summary = {}
        for kind in TransactionKind:
            matching = [e for e in recent if e.kind == kind and e.is_completed]
            total = sum((e.amount.amount for e in matching), Decimal(0))
            summary[kind.value] = {
                "total": Money(total, currency),
                "count": len(matching),
            }
        return {
            "since": since,
            "by_kind": summary,
            "total_transactions": len(recent),
        }

    def cancel_pending(self, transaction_id: str, reason: str) -> LedgerTransaction:
        """
        Move a still-pending entry to CANCELLED; the only mutation an entry allows.

        The engine writes every entry COMPLETED inside the unit that moves the
        balance, so in practice this is the immutability guard: any entry it
        produced is rejected with ValidationError. The PENDING branch covers
        records written by other producers sharing the log table.
        """
        with self.storage.atomic():
            entry = self.require(transaction_id)
            if entry.status != TransactionStatus.PENDING:
                raise ValidationError(
                    f"Transaction {transaction_id} is {entry.status.value} and cannot be cancelled"
                )
            entry.status = TransactionStatus.CANCELLED
            entry.completed_at = datetime.now(timezone.utc)
            self.storage.save(self.table_name, entry.id, entry.to_dict())
            self.audit_trail.log_event(
                event_type=AuditEventType.TRANSACTION_CANCELLED,
                entity_type="transaction",
                entity_id=entry.id,
                metadata={"reason": reason}
            )
        return entry
