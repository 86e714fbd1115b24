"""
Account Ledger Store

One mutable balance record per account. ``debit`` and ``credit`` are the
only code paths that write a balance; both must run inside an atomic unit
together with the matching transaction-log entry, and both write through an
optimistic version guard so a lost update is impossible.
"""

from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, Optional
from enum import Enum
import re
import secrets
import uuid

from .currency import Money, Currency
from .storage import StorageInterface
from .audit import AuditTrail, AuditEventType
from .events import EventDispatcher, DomainEvent, account_event
from .errors import AccountNotFound, AccountNotActive, ValidationError
from .logging_config import get_logger, log_action


ACCOUNT_NUMBER_PATTERN = re.compile(r"^\d{10}$")


class AccountStatus(Enum):
    """Account lifecycle states"""
    PENDING = "pending"    # Registered, profile not yet complete
    ACTIVE = "active"      # Normal operation
    FROZEN = "frozen"      # Suspended by an administrator
    CLOSED = "closed"      # Permanently closed


class AccountType(Enum):
    SAVINGS = "savings"
    CHECKING = "checking"
    BUSINESS = "business"


@dataclass
class Account:
    """Customer wallet account"""
    id: str
    owner_id: str
    account_number: str
    currency: Currency
    balance: Money
    status: AccountStatus
    account_type: AccountType
    created_at: datetime
    updated_at: datetime
    version: int = 0
    status_reason: Optional[str] = None

    def __post_init__(self):
        if self.balance.currency != self.currency:
            raise ValidationError("Balance currency must match account currency")
        if self.balance.is_negative():
            raise ValidationError("Account balance cannot be negative")

    @property
    def is_active(self) -> bool:
        return self.status == AccountStatus.ACTIVE

    def to_dict(self) -> Dict:
        return {
            'id': self.id,
            'owner_id': self.owner_id,
            'account_number': self.account_number,
            'currency': self.currency.code,
            'balance': str(self.balance.amount),
            'status': self.status.value,
            'account_type': self.account_type.value,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'version': self.version,
            'status_reason': self.status_reason,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'Account':
        currency = Currency.from_code(data['currency'])
        return cls(
            id=data['id'],
            owner_id=data['owner_id'],
            account_number=data['account_number'],
            currency=currency,
            balance=Money(data['balance'], currency),
            status=AccountStatus(data['status']),
            account_type=AccountType(data['account_type']),
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            version=data.get('version', 0),
            status_reason=data.get('status_reason'),
        )


@dataclass(frozen=True)
class BalanceChange:
    """Balance captured at mutation time"""
    account_id: str
    before: Money
    after: Money
    sequence: int  # account version after the write; orders the account's log


def validate_account_number(account_number: str) -> str:
    """Account numbers are exactly 10 digits"""
    if not isinstance(account_number, str) or not ACCOUNT_NUMBER_PATTERN.match(account_number):
        raise ValidationError("Invalid account number format")
    return account_number


class AccountStore:
    """
    Manages account lifecycle and the balance field
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: AuditTrail,
        event_dispatcher: Optional[EventDispatcher] = None,
        default_currency: Currency = Currency.GHS
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.default_currency = default_currency
        self.accounts_table = "accounts"
        self.owner_index = "account_owners"
        self.number_index = "account_numbers"
        self.logger = get_logger("wallet_ledger.accounts")
        self._event_dispatcher = event_dispatcher

    def _publish(self, event_type: DomainEvent, account: Account) -> None:
        if self._event_dispatcher:
            self._event_dispatcher.publish(account_event(event_type, account))

    def open_account(
        self,
        owner_id: str,
        currency: Optional[Currency] = None,
        account_type: AccountType = AccountType.SAVINGS
    ) -> Account:
        """
        Open the owner's account in PENDING state with a zero balance.

        Owners have exactly one account; opening again returns the existing one.
        """
        if not owner_id:
            raise ValidationError("owner_id is required")

        currency = currency or self.default_currency
        with self.storage.atomic():
            existing = self.get_by_owner(owner_id)
            if existing:
                return existing

            now = datetime.now(timezone.utc)
            account = Account(
                id=str(uuid.uuid4()),
                owner_id=owner_id,
                account_number=self._generate_account_number(),
                currency=currency,
                balance=Money.zero(currency),
                status=AccountStatus.PENDING,
                account_type=account_type,
                created_at=now,
                updated_at=now,
            )
            self.storage.insert(self.accounts_table, account.id, account.to_dict())
            self.storage.insert(self.owner_index, owner_id, {'account_id': account.id})
            self.storage.insert(self.number_index, account.account_number, {'account_id': account.id})

            self.audit_trail.log_event(
                event_type=AuditEventType.ACCOUNT_OPENED,
                entity_type="account",
                entity_id=account.id,
                actor_id=owner_id,
                metadata={
                    "account_number": account.account_number,
                    "currency": currency.code,
                    "account_type": account_type.value,
                }
            )

        log_action(self.logger, "info", "Account opened", owner_id=owner_id,
                   action="open_account", resource=f"account:{account.id}")
        self._publish(DomainEvent.ACCOUNT_OPENED, account)
        return account

    def activate(self, account_id: str) -> Account:
        """Profile completion finished; the account may now transact"""
        return self._change_status(
            account_id, AccountStatus.ACTIVE, {AccountStatus.PENDING},
            AuditEventType.ACCOUNT_ACTIVATED, reason=None
        )

    def freeze(self, account_id: str, reason: str) -> Account:
        """Block all mutation on the account"""
        return self._change_status(
            account_id, AccountStatus.FROZEN, {AccountStatus.PENDING, AccountStatus.ACTIVE},
            AuditEventType.ACCOUNT_FROZEN, reason=reason
        )

    def reactivate(self, account_id: str) -> Account:
        """Lift a freeze"""
        return self._change_status(
            account_id, AccountStatus.ACTIVE, {AccountStatus.FROZEN},
            AuditEventType.ACCOUNT_REACTIVATED, reason=None
        )

    def close(self, account_id: str, reason: str) -> Account:
        """Close an account; only a zero balance may be closed"""
        return self._change_status(
            account_id, AccountStatus.CLOSED,
            {AccountStatus.PENDING, AccountStatus.ACTIVE, AccountStatus.FROZEN},
            AuditEventType.ACCOUNT_CLOSED, reason=reason, require_zero_balance=True
        )

    def _change_status(self, account_id: str, new_status: AccountStatus,
                       allowed_from: set, audit_type: AuditEventType,
                       reason: Optional[str], require_zero_balance: bool = False) -> Account:
        with self.storage.atomic():
            account = self.require(account_id)
            if account.status == new_status:
                return account
            if account.status not in allowed_from:
                raise ValidationError(
                    f"Cannot change account status from {account.status.value} to {new_status.value}"
                )
            if require_zero_balance and not account.balance.is_zero():
                raise ValidationError(
                    f"Cannot close account with balance {account.balance.to_string()}"
                )
            old_status = account.status
            account.status = new_status
            account.status_reason = reason
            account.updated_at = datetime.now(timezone.utc)
            account.version = self.storage.save_if_version(
                self.accounts_table, account.id, account.to_dict(), account.version
            )
            self.audit_trail.log_event(
                event_type=audit_type,
                entity_type="account",
                entity_id=account.id,
                metadata={"from": old_status.value, "to": new_status.value, "reason": reason}
            )

        log_action(self.logger, "info", f"Account status changed to {new_status.value}",
                   owner_id=account.owner_id, action="change_account_status",
                   resource=f"account:{account.id}",
                   extra={"from": old_status.value, "to": new_status.value})
        self._publish(DomainEvent.ACCOUNT_STATUS_CHANGED, account)
        return account

    def get(self, account_id: str) -> Optional[Account]:
        data = self.storage.load(self.accounts_table, account_id)
        return Account.from_dict(data) if data else None

    def require(self, account_id: str) -> Account:
        """Load an account or raise AccountNotFound"""
        account = self.get(account_id)
        if not account:
            raise AccountNotFound(f"Account {account_id} not found",
                                  details={"account_id": account_id})
        return account

    def get_by_owner(self, owner_id: str) -> Optional[Account]:
        index = self.storage.load(self.owner_index, owner_id)
        return self.get(index['account_id']) if index else None

    def get_by_number(self, account_number: str) -> Optional[Account]:
        index = self.storage.load(self.number_index, account_number)
        return self.get(index['account_id']) if index else None

    def require_active(self, account: Account) -> Account:
        if not account.is_active:
            raise AccountNotActive(
                f"Account {account.account_number} is not active",
                details={"account_id": account.id, "status": account.status.value}
            )
        return account

    def debit(self, account_id: str, amount: Money) -> BalanceChange:
        """
        Decrease the balance by exactly ``amount``.

        Raises:
            AccountNotFound, AccountNotActive, InsufficientFunds,
            ConcurrencyConflict
        """
        account = self._load_for_mutation(account_id, amount)
        before = account.balance
        after = before.subtract_from_balance(amount)
        return self._write_balance(account, before, after)

    def credit(self, account_id: str, amount: Money) -> BalanceChange:
        """
        Increase the balance by exactly ``amount``.

        Raises:
            AccountNotFound, AccountNotActive, ConcurrencyConflict
        """
        account = self._load_for_mutation(account_id, amount)
        before = account.balance
        return self._write_balance(account, before, before + amount)

    def _load_for_mutation(self, account_id: str, amount: Money) -> Account:
        if not self.storage.in_transaction:
            raise RuntimeError("Balance mutations must run inside storage.atomic()")
        if not amount.is_positive():
            raise ValidationError("Amount must be positive")
        account = self.require_active(self.require(account_id))
        if amount.currency != account.currency:
            raise ValidationError(
                f"Amount currency {amount.currency.code} does not match account currency {account.currency.code}"
            )
        return account

    def _write_balance(self, account: Account, before: Money, after: Money) -> BalanceChange:
        account.balance = after
        account.updated_at = datetime.now(timezone.utc)
        account.version = self.storage.save_if_version(
            self.accounts_table, account.id, account.to_dict(), account.version
        )
        return BalanceChange(account_id=account.id, before=before, after=after,
                             sequence=account.version)

    def _generate_account_number(self) -> str:
        """Unique 10-digit number; called inside the opening unit"""
        for _ in range(20):
            candidate = str(secrets.randbelow(9 * 10**9) + 10**9)
            if not self.storage.exists(self.number_index, candidate):
                return candidate
        raise RuntimeError("Could not allocate a unique account number")
