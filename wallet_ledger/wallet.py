"""
Wallet Service

Caller-facing operations for an authenticated owner. The surrounding service
authenticates the caller and passes the ``owner_id``; this layer resolves it
to the owner's account, parses caller input, and delegates to the engine and
the gateway workflow.
"""

from decimal import Decimal
from typing import Any, Dict, Optional, Union

from .currency import Money, Currency, DEFAULT_MAX_AMOUNT, DEFAULT_MIN_AMOUNT
from .accounts import Account, AccountStore, AccountType, validate_account_number
from .transactions import (
    TransactionLog, TransactionKind, TransactionStatus, TransactionPage, LedgerTransaction
)
from .ledger import LedgerEngine, LedgerResult
from .payments import (
    GatewayReconciliation, Recipient, PaymentStatus, AuthorizationHandle,
    VerificationResult, PaymentPage, Payment
)
from .errors import AccountNotFound, TransactionNotFound, ValidationError

AmountInput = Union[Money, Decimal, str, int]


def _parse_enum(enum_cls, value, label: str):
    if value is None or isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        raise ValidationError(f"Invalid {label} {value!r}")


class WalletService:
    """One wallet per owner"""

    def __init__(
        self,
        accounts: AccountStore,
        log: TransactionLog,
        ledger: LedgerEngine,
        payments: GatewayReconciliation,
        min_amount: Decimal = DEFAULT_MIN_AMOUNT,
        max_amount: Decimal = DEFAULT_MAX_AMOUNT
    ):
        self.accounts = accounts
        self.log = log
        self.ledger = ledger
        self.payments = payments
        self.min_amount = min_amount
        self.max_amount = max_amount

    def open_wallet(self, owner_id: str, currency: Optional[Union[Currency, str]] = None,
                    account_type: Union[AccountType, str] = AccountType.SAVINGS) -> Account:
        """Create the owner's account on registration (pending until profile completion)"""
        if isinstance(currency, str):
            currency = Currency.from_code(currency)
        account_type = _parse_enum(AccountType, account_type, "account type")
        return self.accounts.open_account(owner_id, currency, account_type)

    def complete_profile(self, owner_id: str) -> Account:
        return self.accounts.activate(self.account_for(owner_id).id)

    def account_for(self, owner_id: str) -> Account:
        account = self.accounts.get_by_owner(owner_id)
        if not account:
            raise AccountNotFound("Account not found", details={"owner_id": owner_id})
        return account

    def _amount(self, value: AmountInput, account: Account) -> Money:
        if isinstance(value, Money):
            if value.currency != account.currency:
                raise ValidationError(
                    f"Amount currency {value.currency.code} does not match account currency {account.currency.code}"
                )
            value = value.amount
        return Money.parse(value, account.currency, max_amount=self.max_amount,
                           min_amount=self.min_amount)

    def deposit(self, owner_id: str, amount: AmountInput, description: Optional[str] = None,
                idempotency_key: Optional[str] = None) -> LedgerResult:
        account = self.account_for(owner_id)
        return self.ledger.deposit(account.id, self._amount(amount, account), description,
                                   idempotency_key=idempotency_key)

    def withdraw(self, owner_id: str, amount: AmountInput, description: Optional[str] = None,
                 idempotency_key: Optional[str] = None) -> LedgerResult:
        account = self.account_for(owner_id)
        return self.ledger.withdraw(account.id, self._amount(amount, account), description,
                                    idempotency_key=idempotency_key)

    def transfer(self, owner_id: str, destination_account_number: str, amount: AmountInput,
                 description: Optional[str] = None,
                 idempotency_key: Optional[str] = None) -> LedgerResult:
        validate_account_number(destination_account_number)
        account = self.account_for(owner_id)
        return self.ledger.transfer(account.id, destination_account_number,
                                    self._amount(amount, account), description,
                                    idempotency_key=idempotency_key)

    def initialize_gateway_payment(
        self,
        owner_id: str,
        amount: AmountInput,
        method: str,
        recipient: Optional[Union[Recipient, Dict[str, Any]]] = None,
        description: Optional[str] = None,
        email: Optional[str] = None
    ) -> AuthorizationHandle:
        account = self.account_for(owner_id)
        if isinstance(recipient, dict):
            recipient = Recipient(**recipient)
        return self.payments.initialize(account.id, self._amount(amount, account), method,
                                        recipient, description, email)

    def verify_gateway_payment(self, owner_id: str, reference: str) -> VerificationResult:
        return self.payments.verify(reference, account_id=self.account_for(owner_id).id)

    def cancel_gateway_payment(self, owner_id: str, reference: str) -> Payment:
        return self.payments.cancel(reference, self.account_for(owner_id).id)

    def list_payments(self, owner_id: str, page: Any = 1, limit: Any = None,
                      status: Optional[str] = None) -> PaymentPage:
        return self.payments.list_payments(
            self.account_for(owner_id).id, page, limit,
            _parse_enum(PaymentStatus, status, "payment status")
        )

    def list_transactions(self, owner_id: str, page: Any = 1, limit: Any = None,
                          kind: Optional[str] = None,
                          status: Optional[str] = None) -> TransactionPage:
        return self.log.list_for_account(
            self.account_for(owner_id).id, page, limit,
            kind=_parse_enum(TransactionKind, kind, "transaction kind"),
            status=_parse_enum(TransactionStatus, status, "transaction status"),
        )

    def get_transaction(self, owner_id: str, id_or_reference: str) -> LedgerTransaction:
        """Look up by transaction id, falling back to the reference"""
        account = self.account_for(owner_id)
        entry = self.log.get(id_or_reference)
        if entry and entry.account_id == account.id:
            return entry
        for entry in self.log.find_by_reference(id_or_reference):
            if entry.account_id == account.id:
                return entry
        raise TransactionNotFound("Transaction not found")

    def recent_transactions(self, owner_id: str, limit: int = 10):
        return self.log.recent(self.account_for(owner_id).id, limit)

    def get_balance(self, owner_id: str) -> Dict[str, Any]:
        account = self.account_for(owner_id)
        return {
            "account_number": account.account_number,
            "balance": account.balance,
            "currency": account.currency.code,
            "status": account.status.value,
        }

    def get_stats(self, owner_id: str, days: int = 30) -> Dict[str, Any]:
        """Balance plus per-kind totals over the window"""
        account = self.account_for(owner_id)
        stats = self.log.summarize(account.id, account.currency, days)
        stats["balance"] = account.balance
        stats["account_number"] = account.account_number
        return stats
