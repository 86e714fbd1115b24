"""
Reference & Idempotency Registry

Maps caller-supplied idempotency keys to the outcome of the mutation they
first triggered. A key is persisted with a unique-insert inside the same
atomic unit as the mutation itself, so of two concurrent duplicates exactly
one commits; the other rolls back and replays the committed outcome.
"""

import hashlib
import json
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .storage import StorageInterface
from .errors import ValidationError


IDEMPOTENCY_KEY_PATTERN = re.compile(r"^[a-f0-9\-]{36}$|^[a-zA-Z0-9\-_]{20,128}$")


def validate_idempotency_key(key: str) -> str:
    """Keys are UUIDs or at least 20 characters of ``[A-Za-z0-9-_]``"""
    if not isinstance(key, str) or not IDEMPOTENCY_KEY_PATTERN.match(key):
        raise ValidationError("Invalid idempotency key format")
    return key


def request_fingerprint(operation: str, **fields: Any) -> str:
    """Stable hash of the request parameters a key was first used with"""
    payload = json.dumps({"operation": operation, **fields}, sort_keys=True, default=str)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


@dataclass
class IdempotencyRecord:
    """Stored outcome of a completed mutation"""
    key: str
    scope: str
    operation: str
    fingerprint: str
    transaction_ids: List[str]
    result: Dict[str, Any] = field(default_factory=dict)
    status: str = "completed"
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def record_id(self) -> str:
        return f"{self.scope}:{self.key}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.record_id,
            'key': self.key,
            'scope': self.scope,
            'operation': self.operation,
            'fingerprint': self.fingerprint,
            'transaction_ids': list(self.transaction_ids),
            'result': self.result,
            'status': self.status,
            'created_at': self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'IdempotencyRecord':
        return cls(
            key=data['key'],
            scope=data['scope'],
            operation=data['operation'],
            fingerprint=data['fingerprint'],
            transaction_ids=data.get('transaction_ids', []),
            result=data.get('result', {}),
            status=data.get('status', 'completed'),
            created_at=datetime.fromisoformat(data['created_at']),
        )


class IdempotencyRegistry:
    """
    Durable idempotency index keyed by ``(scope, key)``; the scope is the
    account that issued the request so keys of different callers never clash
    """

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.table_name = "idempotency_keys"

    def lookup(self, scope: str, key: str) -> Optional[IdempotencyRecord]:
        data = self.storage.load(self.table_name, f"{scope}:{key}")
        return IdempotencyRecord.from_dict(data) if data else None

    def check(self, scope: str, key: str, operation: str,
              fingerprint: str) -> Optional[IdempotencyRecord]:
        """
        Return the stored outcome for a replayed request, or None if the key is new.

        Raises:
            ValidationError: the key was already used for a different request
        """
        record = self.lookup(scope, key)
        if record is None:
            return None
        if record.operation != operation or record.fingerprint != fingerprint:
            raise ValidationError(
                "Idempotency key was already used with a different request",
                details={"idempotency_key": key, "operation": record.operation}
            )
        return record

    def record(self, scope: str, key: str, operation: str, fingerprint: str,
               transaction_ids: List[str], result: Dict[str, Any]) -> IdempotencyRecord:
        """
        Persist the outcome under the key; must run in the mutation's atomic unit.

        Raises:
            DuplicateReference: a concurrent request committed the key first
        """
        if not self.storage.in_transaction:
            raise RuntimeError("Idempotency keys must be recorded inside storage.atomic()")
        record = IdempotencyRecord(
            key=key, scope=scope, operation=operation, fingerprint=fingerprint,
            transaction_ids=transaction_ids, result=result
        )
        self.storage.insert(self.table_name, record.record_id, record.to_dict())
        return record
