"""
Event System Module

Publish/subscribe dispatcher for domain events. Events describing a ledger
change are buffered while the atomic unit runs and published only after it
commits, so subscribers (notifications, analytics) never see a change that
was rolled back and can never make a ledger operation fail.
"""

from enum import Enum
from typing import Callable, Dict, List, Any, Optional
from dataclasses import dataclass, field
from datetime import datetime, timezone
from contextlib import contextmanager
import uuid
import logging
from threading import RLock


class DomainEvent(Enum):
    """Domain events that can occur in the ledger"""

    # Account events
    ACCOUNT_OPENED = "account.opened"
    ACCOUNT_STATUS_CHANGED = "account.status_changed"

    # Ledger events
    TRANSACTION_POSTED = "transaction.posted"
    TRANSFER_COMPLETED = "transfer.completed"

    # Gateway payment events
    PAYMENT_INITIALIZED = "payment.initialized"
    PAYMENT_COMPLETED = "payment.completed"
    PAYMENT_FAILED = "payment.failed"
    PAYMENT_CANCELLED = "payment.cancelled"


@dataclass
class EventPayload:
    """Payload for domain events"""
    event_type: DomainEvent
    entity_type: str
    entity_id: str
    data: Dict[str, Any]
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'event_type': self.event_type.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'data': self.data,
            'timestamp': self.timestamp.isoformat(),
            'event_id': self.event_id
        }


def _handler_name(handler: Callable) -> str:
    return getattr(handler, "__name__", repr(handler))


class EventDispatcher:
    """Central event dispatcher - publish/subscribe pattern"""

    def __init__(self):
        self._handlers: Dict[DomainEvent, List[Callable]] = {}
        self._global_handlers: List[Callable] = []
        self._lock = RLock()
        self.logger = logging.getLogger("wallet_ledger.events")

    def subscribe(self, event_type: DomainEvent, handler: Callable) -> None:
        """Subscribe to a specific event type"""
        with self._lock:
            self._handlers.setdefault(event_type, []).append(handler)
            self.logger.debug(f"Subscribed handler {_handler_name(handler)} to {event_type.value}")

    def subscribe_all(self, handler: Callable) -> None:
        """Subscribe to ALL events"""
        with self._lock:
            self._global_handlers.append(handler)

    def unsubscribe(self, event_type: DomainEvent, handler: Callable) -> None:
        with self._lock:
            try:
                self._handlers.get(event_type, []).remove(handler)
            except ValueError:
                self.logger.warning(f"Handler {_handler_name(handler)} was not subscribed to {event_type.value}")

    def publish(self, event: EventPayload) -> None:
        """Publish event to all subscribers; handler failures are logged, never raised"""
        with self._lock:
            handlers = list(self._handlers.get(event.event_type, [])) + list(self._global_handlers)

        self.logger.debug(f"Publishing event {event.event_type.value} for {event.entity_type}:{event.entity_id}")
        for handler in handlers:
            try:
                handler(event)
            except Exception as e:
                self.logger.error(
                    f"Error in event handler {_handler_name(handler)} for {event.event_type.value}: {e}"
                )

    def clear(self) -> None:
        with self._lock:
            self._handlers.clear()
            self._global_handlers.clear()

    def get_handler_count(self, event_type: Optional[DomainEvent] = None) -> int:
        with self._lock:
            if event_type:
                return len(self._handlers.get(event_type, []))
            return sum(len(h) for h in self._handlers.values()) + len(self._global_handlers)


class PostCommitBuffer:
    """
    Collects events emitted inside an atomic unit.

    Used as ``with buffer.collect() as events:`` wrapped around the unit; the
    collected events are published when the block exits normally and dropped
    when it raises.
    """

    def __init__(self, dispatcher: Optional[EventDispatcher]):
        self.dispatcher = dispatcher

    @contextmanager
    def collect(self):
        events: List[EventPayload] = []
        yield events
        if self.dispatcher:
            for event in events:
                self.dispatcher.publish(event)


def transaction_event(event_type: DomainEvent, transaction) -> EventPayload:
    """Create a ledger-entry event"""
    return EventPayload(
        event_type=event_type,
        entity_type="transaction",
        entity_id=transaction.id,
        data={
            "account_id": transaction.account_id,
            "kind": transaction.kind.value,
            "amount": str(transaction.amount.amount),
            "currency": transaction.currency.code,
            "balance_after": str(transaction.balance_after.amount),
            "reference": transaction.reference,
        }
    )


def payment_event(event_type: DomainEvent, payment) -> EventPayload:
    """Create a gateway-payment event"""
    return EventPayload(
        event_type=event_type,
        entity_type="payment",
        entity_id=payment.payment_reference,
        data={
            "account_id": payment.account_id,
            "method": payment.method.value,
            "amount": str(payment.amount.amount),
            "currency": payment.currency.code,
            "status": payment.status.value,
            "gateway_status": payment.gateway_status,
        }
    )


def account_event(event_type: DomainEvent, account) -> EventPayload:
    """Create an account lifecycle event"""
    return EventPayload(
        event_type=event_type,
        entity_type="account",
        entity_id=account.id,
        data={
            "owner_id": account.owner_id,
            "account_number": account.account_number,
            "status": account.status.value,
        }
    )
