"""
Tests for the idempotency registry
"""

import pytest
import uuid

from wallet_ledger.storage import InMemoryStorage
from wallet_ledger.idempotency import (
    IdempotencyRegistry, IdempotencyRecord, validate_idempotency_key, request_fingerprint
)
from wallet_ledger.errors import ValidationError, DuplicateReference


class TestKeyFormat:

    def test_uuid_accepted(self):
        key = str(uuid.uuid4())
        assert validate_idempotency_key(key) == key

    def test_long_token_accepted(self):
        validate_idempotency_key("client_retry-token_000000001")

    @pytest.mark.parametrize("key", ["short", "has spaces in the key value!", "x" * 129, None, 42])
    def test_invalid_keys(self, key):
        with pytest.raises(ValidationError, match="idempotency key"):
            validate_idempotency_key(key)


class TestFingerprint:

    def test_stable_and_order_independent(self):
        a = request_fingerprint("deposit", account_id="A", amount="10.00")
        b = request_fingerprint("deposit", amount="10.00", account_id="A")
        assert a == b

    def test_differs_by_payload(self):
        assert request_fingerprint("deposit", amount="10.00") != request_fingerprint("deposit", amount="10.01")
        assert request_fingerprint("deposit", amount="10.00") != request_fingerprint("withdrawal", amount="10.00")


class TestIdempotencyRegistry:
    """Test recording and replaying outcomes"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.registry = IdempotencyRegistry(self.storage)
        self.key = str(uuid.uuid4())
        self.fingerprint = request_fingerprint("deposit", amount="10.00")

    def _record(self, scope="acct-1"):
        with self.storage.atomic():
            return self.registry.record(scope, self.key, "deposit", self.fingerprint,
                                        ["txn-1"], {"reference": "DEP1"})

    def test_new_key(self):
        assert self.registry.check("acct-1", self.key, "deposit", self.fingerprint) is None

    def test_replay_returns_record(self):
        self._record()
        record = self.registry.check("acct-1", self.key, "deposit", self.fingerprint)
        assert isinstance(record, IdempotencyRecord)
        assert record.transaction_ids == ["txn-1"]
        assert record.result == {"reference": "DEP1"}

    def test_reuse_with_different_payload(self):
        """A key bound to one request cannot be reused for another"""
        self._record()
        other = request_fingerprint("deposit", amount="99.00")
        with pytest.raises(ValidationError, match="different request"):
            self.registry.check("acct-1", self.key, "deposit", other)
        with pytest.raises(ValidationError):
            self.registry.check("acct-1", self.key, "withdrawal", self.fingerprint)

    def test_keys_are_scoped_per_account(self):
        self._record("acct-1")
        assert self.registry.check("acct-2", self.key, "deposit", self.fingerprint) is None
        self._record("acct-2")

    def test_duplicate_record_rejected(self):
        self._record()
        with pytest.raises(DuplicateReference):
            self._record()

    def test_record_outside_unit_refused(self):
        with pytest.raises(RuntimeError):
            self.registry.record("acct-1", self.key, "deposit", self.fingerprint, [], {})

    def test_record_round_trip(self):
        record = self._record()
        assert IdempotencyRecord.from_dict(record.to_dict()) == record
