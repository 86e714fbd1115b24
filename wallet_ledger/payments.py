"""
Gateway Reconciliation Workflow

State machine per gateway reference:

    none -> pending -> completed        (ledger applied, terminal)
                    -> processing       (gateway still pending)
                    -> failed           (gateway failure, amount mismatch, cancel)

Gateway calls (initialize, status query) run outside any atomic unit. The
ledger effect of a successful charge is posted in the same unit that marks
the payment completed, and the unique ``(reference, kind)`` ledger index
makes it happen at most once even when a webhook races a polling verify.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
import re

from .currency import Money, Currency
from .storage import StorageInterface
from .accounts import AccountStore
from .transactions import TransactionLog, LedgerTransaction, normalize_pagination
from .ledger import LedgerEngine
from .gateway_client import GatewayClient, GatewayChargeStatus
from .audit import AuditTrail, AuditEventType
from .events import EventDispatcher, PostCommitBuffer, DomainEvent, payment_event
from .encryption import FieldCodec, NoOpFieldCipher
from .errors import (
    ValidationError, PaymentNotFound, InsufficientFunds, AccountNotActive,
    AccountNotFound, DuplicateReference, GatewayVerificationFailed
)
from .logging_config import get_logger, log_action


class PaymentMethod(Enum):
    CARD = "card"
    WALLET = "wallet"
    MOBILE_MONEY = "mobile_money"
    TRANSFER = "transfer"


class PaymentStatus(Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class Direction(Enum):
    """Which way money moves on the owner's account when a charge succeeds"""
    CREDIT = "credit"
    DEBIT = "debit"


# Mobile-money collections fund the wallet; everything else pays out of it
DEFAULT_METHOD_DIRECTIONS = {
    PaymentMethod.MOBILE_MONEY: Direction.CREDIT,
    PaymentMethod.CARD: Direction.DEBIT,
    PaymentMethod.WALLET: Direction.DEBIT,
    PaymentMethod.TRANSFER: Direction.DEBIT,
}

GHANA_PHONE_PATTERN = re.compile(r"^(?:\+233|0)(?:2[0-4]|5[0-9]|9[0-9])\d{7}$")
MOBILE_NETWORKS = {"MTN", "VODAFONE", "TIGO"}


def resolve_method_directions(overrides: Optional[Dict[str, str]] = None) -> Dict[PaymentMethod, Direction]:
    """Merge configured ``{method: "credit"|"debit"}`` overrides over the defaults"""
    directions = dict(DEFAULT_METHOD_DIRECTIONS)
    for method, direction in (overrides or {}).items():
        try:
            directions[PaymentMethod(method)] = Direction(direction)
        except ValueError:
            raise ValidationError(f"Invalid payment direction mapping {method} -> {direction}")
    return directions


def parse_method(method: Any) -> PaymentMethod:
    if isinstance(method, PaymentMethod):
        return method
    try:
        return PaymentMethod(method)
    except ValueError:
        raise ValidationError(
            f"Invalid payment method {method!r}; expected one of "
            f"{', '.join(m.value for m in PaymentMethod)}"
        )


def normalize_phone(phone: str) -> str:
    """Strip spaces and dashes and check the Ghana number format"""
    cleaned = re.sub(r"[\s\-]", "", phone or "")
    if not GHANA_PHONE_PATTERN.match(cleaned):
        raise ValidationError("Invalid Ghana phone number format")
    return cleaned


@dataclass
class Recipient:
    """Who a payment goes to, or who a collection comes from"""
    name: str = "Payment"
    account_number: Optional[str] = None
    bank_name: Optional[str] = None
    phone: Optional[str] = None
    network: Optional[str] = None

    def validate(self) -> 'Recipient':
        if self.phone:
            self.phone = normalize_phone(self.phone)
        if self.network:
            self.network = self.network.upper()
            if self.network not in MOBILE_NETWORKS:
                raise ValidationError(
                    f"Invalid network; expected one of {', '.join(sorted(MOBILE_NETWORKS))}"
                )
        return self

    def to_dict(self, codec: FieldCodec) -> Dict[str, Any]:
        return {
            'name': self.name,
            'account_number': self.account_number,
            'bank_name': self.bank_name,
            'phone': codec.encrypt(self.phone) if self.phone else None,
            'network': self.network,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]], codec: FieldCodec) -> 'Recipient':
        data = data or {}
        return cls(
            name=data.get('name') or "Payment",
            account_number=data.get('account_number'),
            bank_name=data.get('bank_name'),
            phone=codec.decrypt(data['phone']) if data.get('phone') else None,
            network=data.get('network'),
        )


@dataclass
class Payment:
    """Gateway payment intent and its outcome"""
    payment_reference: str
    account_id: str
    method: PaymentMethod
    direction: Direction
    amount: Money
    status: PaymentStatus
    recipient: Recipient
    description: Optional[str]
    created_at: datetime
    updated_at: datetime
    linked_transaction_id: Optional[str] = None
    gateway_status: Optional[str] = None
    failure_reason: Optional[str] = None
    authorization_url: Optional[str] = None
    processed_at: Optional[datetime] = None

    @property
    def currency(self) -> Currency:
        return self.amount.currency

    @property
    def is_open(self) -> bool:
        return self.status in (PaymentStatus.PENDING, PaymentStatus.PROCESSING)

    def to_dict(self, codec: FieldCodec) -> Dict[str, Any]:
        return {
            'id': self.payment_reference,
            'payment_reference': self.payment_reference,
            'account_id': self.account_id,
            'method': self.method.value,
            'direction': self.direction.value,
            'amount': str(self.amount.amount),
            'currency': self.currency.code,
            'status': self.status.value,
            'recipient': self.recipient.to_dict(codec),
            'description': self.description,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'linked_transaction_id': self.linked_transaction_id,
            'gateway_status': self.gateway_status,
            'failure_reason': self.failure_reason,
            'authorization_url': self.authorization_url,
            'processed_at': self.processed_at.isoformat() if self.processed_at else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], codec: FieldCodec) -> 'Payment':
        currency = Currency.from_code(data['currency'])
        return cls(
            payment_reference=data['payment_reference'],
            account_id=data['account_id'],
            method=PaymentMethod(data['method']),
            direction=Direction(data['direction']),
            amount=Money(data['amount'], currency),
            status=PaymentStatus(data['status']),
            recipient=Recipient.from_dict(data.get('recipient'), codec),
            description=data.get('description'),
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            linked_transaction_id=data.get('linked_transaction_id'),
            gateway_status=data.get('gateway_status'),
            failure_reason=data.get('failure_reason'),
            authorization_url=data.get('authorization_url'),
            processed_at=datetime.fromisoformat(data['processed_at']) if data.get('processed_at') else None,
        )


@dataclass
class AuthorizationHandle:
    """What the payer needs to complete a charge"""
    reference: str
    authorization_url: str
    access_code: Optional[str]
    payment: Payment


@dataclass
class VerificationResult:
    payment: Payment
    balance: Money
    transaction: Optional[LedgerTransaction] = None
    already_processed: bool = False


@dataclass
class PaymentPage:
    items: List[Payment]
    page: int
    limit: int
    total: int

    @property
    def total_pages(self) -> int:
        return (self.total + self.limit - 1) // self.limit if self.total else 0


class GatewayReconciliation:
    """
    Initializes gateway charges and applies confirmed ones to the ledger
    """

    def __init__(
        self,
        storage: StorageInterface,
        accounts: AccountStore,
        ledger: LedgerEngine,
        log: TransactionLog,
        gateway: GatewayClient,
        audit_trail: AuditTrail,
        event_dispatcher: Optional[EventDispatcher] = None,
        codec: Optional[FieldCodec] = None,
        method_directions: Optional[Dict[PaymentMethod, Direction]] = None,
        default_page_size: int = 20,
        max_page_size: int = 100
    ):
        self.storage = storage
        self.accounts = accounts
        self.ledger = ledger
        self.log = log
        self.gateway = gateway
        self.audit_trail = audit_trail
        self.codec = codec or NoOpFieldCipher()
        # Resolved once; never re-derived per request
        self.method_directions = dict(method_directions or DEFAULT_METHOD_DIRECTIONS)
        self.default_page_size = default_page_size
        self.max_page_size = max_page_size
        self.table_name = "payments"
        self._post_commit = PostCommitBuffer(event_dispatcher)
        self.logger = get_logger("wallet_ledger.payments")

    def direction_for(self, method: PaymentMethod) -> Direction:
        return self.method_directions[method]

    def initialize(
        self,
        account_id: str,
        amount: Money,
        method: Any,
        recipient: Optional[Recipient] = None,
        description: Optional[str] = None,
        email: Optional[str] = None
    ) -> AuthorizationHandle:
        """
        Create a gateway charge and store the pending payment intent.

        No ledger effect. For debit methods the balance is pre-checked here
        and checked again when the charge is verified.

        Raises:
            ValidationError, AccountNotFound, AccountNotActive,
            InsufficientFunds, GatewayUnavailable
        """
        method = parse_method(method)
        if not isinstance(amount, Money) or not amount.is_positive():
            raise ValidationError("Amount must be a positive Money value")
        if not email:
            raise ValidationError("Payer email is required")
        recipient = (recipient or Recipient()).validate()

        account = self.accounts.require_active(self.accounts.require(account_id))
        if amount.currency != account.currency:
            raise ValidationError(
                f"Amount currency {amount.currency.code} does not match account currency {account.currency.code}"
            )
        direction = self.direction_for(method)
        if direction == Direction.DEBIT and account.balance < amount:
            raise InsufficientFunds(
                f"Insufficient balance. You have {account.balance.to_string()} but need {amount.to_string()}",
                details={"available": str(account.balance.amount), "requested": str(amount.amount)}
            )

        metadata = {
            "account_id": account.id,
            "account_number": account.account_number,
            "payment_method": method.value,
            "direction": direction.value,
            "description": description,
            "recipient_name": recipient.name,
        }
        charge = self.gateway.create_charge(amount.to_minor_units(), amount.currency.code,
                                            email, metadata)

        now = datetime.now(timezone.utc)
        payment = Payment(
            payment_reference=charge.reference,
            account_id=account.id,
            method=method,
            direction=direction,
            amount=amount,
            status=PaymentStatus.PENDING,
            recipient=recipient,
            description=description,
            created_at=now,
            updated_at=now,
            authorization_url=charge.authorization_url,
        )
        with self._post_commit.collect() as events:
            with self.storage.atomic():
                self.storage.insert(self.table_name, payment.payment_reference,
                                    payment.to_dict(self.codec))
                self.audit_trail.log_event(
                    event_type=AuditEventType.PAYMENT_INITIALIZED,
                    entity_type="payment",
                    entity_id=payment.payment_reference,
                    actor_id=account.owner_id,
                    metadata={"account_id": account.id, "method": method.value,
                              "direction": direction.value, "amount": amount.amount,
                              "currency": amount.currency.code}
                )
                events.append(payment_event(DomainEvent.PAYMENT_INITIALIZED, payment))

        log_action(self.logger, "info", "Gateway payment initialized",
                   owner_id=account.owner_id, action="initialize_payment",
                   resource=f"payment:{payment.payment_reference}",
                   extra={"method": method.value, "amount": amount.to_string()})
        return AuthorizationHandle(reference=charge.reference,
                                   authorization_url=charge.authorization_url,
                                   access_code=charge.access_code, payment=payment)

    def verify(self, reference: str, account_id: Optional[str] = None) -> VerificationResult:
        """
        Confirm a charge with the gateway and apply it to the ledger once.

        Args:
            reference: Gateway reference returned by initialize
            account_id: Caller's account; None for webhook-driven verification

        Raises:
            PaymentNotFound: unknown reference, or it belongs to another account
            GatewayUnavailable: gateway errored or timed out; nothing written
            GatewayVerificationFailed: gateway reported a non-successful charge
                or an amount that differs from the intent
            InsufficientFunds, AccountNotActive: debit no longer possible
        """
        payment = self.get_payment(reference)
        if payment and account_id and payment.account_id != account_id:
            raise PaymentNotFound(f"Payment {reference} not found")
        if payment and payment.status == PaymentStatus.COMPLETED:
            return self._already_processed(payment)
        if payment and payment.status == PaymentStatus.FAILED:
            raise GatewayVerificationFailed(
                f"Payment already failed: {payment.failure_reason}",
                payment.gateway_status or "failed", details={"reference": reference}
            )

        charge = self.gateway.get_charge_status(reference)

        if payment is None:
            payment = self._payment_from_charge(charge, account_id)

        if not charge.is_success:
            status = PaymentStatus.PROCESSING if charge.status == "pending" else PaymentStatus.FAILED
            payment = self._record_outcome(payment, status, charge.status,
                                           charge.gateway_response or f"Gateway status {charge.status}")
            if payment.status == PaymentStatus.COMPLETED:
                return self._already_processed(payment)
            raise GatewayVerificationFailed("Payment verification failed", charge.status,
                                            details={"reference": reference})

        confirmed = self._confirmed_amount(charge, payment)
        if confirmed != payment.amount:
            self._record_outcome(payment, PaymentStatus.FAILED, charge.status,
                                 "Gateway amount does not match the payment intent")
            raise GatewayVerificationFailed(
                "Gateway amount does not match the payment intent", charge.status,
                details={"reference": reference, "expected": str(payment.amount.amount),
                         "confirmed": str(confirmed.amount), "currency": confirmed.currency.code}
            )

        try:
            with self._post_commit.collect() as events:
                with self.storage.atomic():
                    current = self.get_payment(reference)
                    if current and current.status == PaymentStatus.COMPLETED:
                        return self._already_processed(current)
                    if current and current.status == PaymentStatus.FAILED:
                        # Cancelled or failed while the gateway was being queried
                        raise GatewayVerificationFailed(
                            f"Payment already failed: {current.failure_reason}",
                            current.gateway_status or "failed", details={"reference": reference}
                        )

                    entry = self.ledger.apply_gateway_payment(payment, payment.direction, events)
                    now = datetime.now(timezone.utc)
                    payment.status = PaymentStatus.COMPLETED
                    payment.linked_transaction_id = entry.id
                    payment.gateway_status = charge.status
                    payment.failure_reason = None
                    payment.processed_at = now
                    payment.updated_at = now
                    self.storage.save(self.table_name, reference, payment.to_dict(self.codec))
                    self.audit_trail.log_event(
                        event_type=AuditEventType.PAYMENT_COMPLETED,
                        entity_type="payment",
                        entity_id=reference,
                        metadata={"transaction_id": entry.id, "direction": payment.direction.value,
                                  "amount": payment.amount.amount}
                    )
                    events.append(payment_event(DomainEvent.PAYMENT_COMPLETED, payment))
        except DuplicateReference:
            # A concurrent verify for the same reference committed first
            current = self.get_payment(reference)
            if current and current.status == PaymentStatus.COMPLETED:
                return self._already_processed(current)
            raise
        except (InsufficientFunds, AccountNotActive, AccountNotFound) as e:
            self._record_outcome(payment, PaymentStatus.FAILED, charge.status, e.message)
            log_action(self.logger, "warning", f"Gateway payment could not be applied: {e.message}",
                       action="verify_payment", resource=f"payment:{reference}",
                       extra={"error": e.code})
            raise

        log_action(self.logger, "info", "Gateway payment completed",
                   action="verify_payment", resource=f"payment:{reference}",
                   extra={"transaction_id": entry.id, "direction": payment.direction.value,
                          "amount": payment.amount.to_string(),
                          "balance_after": entry.balance_after.to_string()})
        return VerificationResult(payment=payment, balance=entry.balance_after, transaction=entry)

    def cancel(self, reference: str, account_id: str, reason: str = "Cancelled by owner") -> Payment:
        """Abandon an open payment; never touches the ledger"""
        with self._post_commit.collect() as events:
            with self.storage.atomic():
                payment = self.require_payment(reference)
                if payment.account_id != account_id:
                    raise PaymentNotFound(f"Payment {reference} not found")
                if not payment.is_open:
                    raise ValidationError(
                        f"Payment {reference} is {payment.status.value} and cannot be cancelled"
                    )
                payment.status = PaymentStatus.FAILED
                payment.failure_reason = reason
                payment.updated_at = datetime.now(timezone.utc)
                self.storage.save(self.table_name, reference, payment.to_dict(self.codec))
                self.audit_trail.log_event(
                    event_type=AuditEventType.PAYMENT_CANCELLED,
                    entity_type="payment",
                    entity_id=reference,
                    metadata={"reason": reason}
                )
                events.append(payment_event(DomainEvent.PAYMENT_CANCELLED, payment))

        log_action(self.logger, "info", "Gateway payment cancelled",
                   action="cancel_payment", resource=f"payment:{reference}")
        return payment

    def get_payment(self, reference: str) -> Optional[Payment]:
        data = self.storage.load(self.table_name, reference)
        return Payment.from_dict(data, self.codec) if data else None

    def require_payment(self, reference: str) -> Payment:
        payment = self.get_payment(reference)
        if not payment:
            raise PaymentNotFound(f"Payment {reference} not found")
        return payment

    def list_payments(self, account_id: str, page: Any = 1, limit: Any = None,
                      status: Optional[PaymentStatus] = None) -> PaymentPage:
        """Account's payments, newest first"""
        page, limit = normalize_pagination(page, limit, self.default_page_size, self.max_page_size)
        payments = [Payment.from_dict(d, self.codec)
                    for d in self.storage.find(self.table_name, {'account_id': account_id})]
        if status:
            payments = [p for p in payments if p.status == status]
        payments.sort(key=lambda p: p.created_at, reverse=True)
        start = (page - 1) * limit
        return PaymentPage(items=payments[start:start + limit], page=page, limit=limit,
                           total=len(payments))

    def _already_processed(self, payment: Payment) -> VerificationResult:
        account = self.accounts.require(payment.account_id)
        transaction = self.log.get(payment.linked_transaction_id) if payment.linked_transaction_id else None
        return VerificationResult(payment=payment, balance=account.balance,
                                  transaction=transaction, already_processed=True)

    def _confirmed_amount(self, charge: GatewayChargeStatus, payment: Payment) -> Money:
        try:
            currency = Currency.from_code(charge.currency)
        except ValidationError:
            currency = payment.currency
        return Money.from_minor_units(charge.amount, currency)

    def _payment_from_charge(self, charge: GatewayChargeStatus,
                             account_id: Optional[str]) -> Payment:
        """Rebuild the intent from gateway-echoed metadata when none was stored"""
        metadata = charge.metadata or {}
        owner_account = metadata.get("account_id")
        if not owner_account and metadata.get("account_number"):
            account = self.accounts.get_by_number(metadata["account_number"])
            owner_account = account.id if account else None
        if not owner_account or (account_id and owner_account != account_id):
            raise PaymentNotFound(f"Payment {charge.reference} not found")

        account = self.accounts.require(owner_account)
        method = parse_method(metadata.get("payment_method"))
        now = datetime.now(timezone.utc)
        amount = Money.from_minor_units(charge.amount, account.currency)
        if not amount.is_positive():
            raise PaymentNotFound(f"Payment {charge.reference} not found")
        payment = Payment(
            payment_reference=charge.reference,
            account_id=account.id,
            method=method,
            direction=self.direction_for(method),
            amount=amount,
            status=PaymentStatus.PENDING,
            recipient=Recipient(name=metadata.get("recipient_name") or "Payment"),
            description=metadata.get("description"),
            created_at=now,
            updated_at=now,
        )
        with self.storage.atomic():
            if not self.storage.exists(self.table_name, payment.payment_reference):
                self.storage.insert(self.table_name, payment.payment_reference,
                                    payment.to_dict(self.codec))
                self.audit_trail.log_event(
                    event_type=AuditEventType.PAYMENT_INITIALIZED,
                    entity_type="payment",
                    entity_id=payment.payment_reference,
                    metadata={"account_id": account.id, "method": method.value,
                              "source": "gateway_metadata"}
                )
        return self.require_payment(charge.reference)

    def _record_outcome(self, payment: Payment, status: PaymentStatus,
                        gateway_status: str, reason: str) -> Payment:
        """Persist a non-completed outcome unless the payment completed meanwhile"""
        with self._post_commit.collect() as events:
            with self.storage.atomic():
                current = self.get_payment(payment.payment_reference) or payment
                if current.status in (PaymentStatus.COMPLETED, status):
                    return current
                current.status = status
                current.gateway_status = gateway_status
                current.failure_reason = reason if status == PaymentStatus.FAILED else None
                current.updated_at = datetime.now(timezone.utc)
                self.storage.save(self.table_name, current.payment_reference,
                                  current.to_dict(self.codec))
                if status == PaymentStatus.FAILED:
                    self.audit_trail.log_event(
                        event_type=AuditEventType.PAYMENT_FAILED,
                        entity_type="payment",
                        entity_id=current.payment_reference,
                        metadata={"gateway_status": gateway_status, "reason": reason}
                    )
                    events.append(payment_event(DomainEvent.PAYMENT_FAILED, current))

        log_action(self.logger, "warning" if status == PaymentStatus.FAILED else "info",
                   f"Gateway payment marked {status.value}",
                   action="verify_payment", resource=f"payment:{current.payment_reference}",
                   extra={"gateway_status": gateway_status})
        return current
