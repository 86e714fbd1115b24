"""
Tests for configuration loading and system wiring
"""

import json
import logging
import os
import tempfile

import pytest

from wallet_ledger.config import LedgerConfig, reload_config
from wallet_ledger.system import LedgerSystem
from wallet_ledger.storage import InMemoryStorage, SQLiteStorage
from wallet_ledger.gateway_client import GatewayClient, MockGatewayClient
from wallet_ledger.encryption import FieldCipher, NoOpFieldCipher
from wallet_ledger.payments import PaymentMethod, Direction
from wallet_ledger.logging_config import JSONFormatter, TextFormatter, log_action
from wallet_ledger.errors import ValidationError


class TestLedgerConfig:

    def test_defaults(self):
        config = LedgerConfig()
        assert config.default_currency == "GHS"
        assert config.default_page_size == 20
        assert config.max_page_size == 100
        assert config.gateway_base_url == "https://api.paystack.co"
        assert not config.encryption_enabled

    def test_environment_prefix(self, monkeypatch):
        monkeypatch.setenv("WALLET_LEDGER_DEFAULT_CURRENCY", "NGN")
        monkeypatch.setenv("WALLET_LEDGER_MAX_PAGE_SIZE", "50")
        monkeypatch.setenv("WALLET_LEDGER_PAYMENT_METHOD_DIRECTIONS", '{"card": "credit"}')
        config = reload_config()
        assert config.default_currency == "NGN"
        assert config.max_page_size == 50
        assert config.payment_method_directions == {"card": "credit"}

        monkeypatch.delenv("WALLET_LEDGER_DEFAULT_CURRENCY")
        monkeypatch.delenv("WALLET_LEDGER_MAX_PAGE_SIZE")
        monkeypatch.delenv("WALLET_LEDGER_PAYMENT_METHOD_DIRECTIONS")
        reload_config()

    def test_webhook_secret_falls_back_to_gateway_secret(self):
        assert LedgerConfig(gateway_secret_key="sk").effective_webhook_secret == "sk"
        assert LedgerConfig(gateway_secret_key="sk", webhook_secret="wh").effective_webhook_secret == "wh"


class TestLedgerSystem:

    def test_from_config_in_memory(self):
        config = LedgerConfig(database_url="memory://", log_format="text")
        with LedgerSystem.from_config(config, gateway=MockGatewayClient()) as system:
            assert isinstance(system.storage, InMemoryStorage)
            assert isinstance(system.codec, NoOpFieldCipher)
            assert system.webhooks is None

            system.wallet.open_wallet("owner-1")
            system.wallet.complete_profile("owner-1")
            system.wallet.deposit("owner-1", "10.00")
            assert system.ledger.reconcile(system.wallet.account_for("owner-1").id).balanced

    def test_from_config_builds_clients(self):
        config = LedgerConfig(database_url="sqlite://:memory:", gateway_secret_key="sk_test",
                              encryption_enabled=True, encryption_master_key="master")
        system = LedgerSystem.from_config(config)
        try:
            assert isinstance(system.storage, SQLiteStorage)
            assert type(system.gateway) is GatewayClient
            assert isinstance(system.codec, FieldCipher)
            assert system.webhooks is not None
        finally:
            system.close()

    def test_encryption_requires_key(self):
        config = LedgerConfig(database_url="memory://", encryption_enabled=True)
        with pytest.raises(ValueError):
            LedgerSystem.from_config(config, gateway=MockGatewayClient())

    def test_direction_overrides(self):
        config = LedgerConfig(database_url="memory://",
                              payment_method_directions={"transfer": "credit"})
        system = LedgerSystem(config, InMemoryStorage(), MockGatewayClient(), NoOpFieldCipher())
        assert system.payments.direction_for(PaymentMethod.TRANSFER) == Direction.CREDIT
        assert system.payments.direction_for(PaymentMethod.CARD) == Direction.DEBIT

    def test_bad_direction_override(self):
        config = LedgerConfig(database_url="memory://",
                              payment_method_directions={"card": "both"})
        with pytest.raises(ValidationError):
            LedgerSystem(config, InMemoryStorage(), MockGatewayClient(), NoOpFieldCipher())

    def test_default_currency_applies_to_new_accounts(self):
        config = LedgerConfig(database_url="memory://", default_currency="USD")
        system = LedgerSystem(config, InMemoryStorage(), MockGatewayClient(), NoOpFieldCipher())
        assert system.wallet.open_wallet("owner-1").currency.code == "USD"

    def test_sqlite_file_persists_across_restart(self):
        with tempfile.TemporaryDirectory() as tmp:
            url = "sqlite:///" + os.path.join(tmp, "ledger.db")
            config = LedgerConfig(database_url=url)

            with LedgerSystem.from_config(config, gateway=MockGatewayClient()) as system:
                system.wallet.open_wallet("owner-1")
                system.wallet.complete_profile("owner-1")
                system.wallet.deposit("owner-1", "42.00")

            with LedgerSystem.from_config(config, gateway=MockGatewayClient()) as system:
                assert str(system.wallet.get_balance("owner-1")["balance"].amount) == "42.00"
                assert system.audit_trail.verify_integrity()["valid"]


class TestStructuredLogging:

    def _record(self, **fields):
        record = logging.LogRecord("wallet_ledger.test", logging.INFO, __file__, 1,
                                   "Deposit completed", (), None)
        for name, value in fields.items():
            setattr(record, name, value)
        return record

    def test_json_formatter(self):
        line = JSONFormatter().format(self._record(action="deposit", resource="account:1",
                                                   extra={"amount": "GHS 10.00"}))
        entry = json.loads(line)
        assert entry["message"] == "Deposit completed"
        assert entry["action"] == "deposit"
        assert entry["extra"] == {"amount": "GHS 10.00"}
        assert "owner_id" not in entry

    def test_text_formatter(self):
        line = TextFormatter().format(self._record(action="deposit"))
        assert "Deposit completed" in line
        assert "action=deposit" in line

    def test_log_action_attaches_fields(self):
        captured = []

        class Capture(logging.Handler):
            def emit(self, record):
                captured.append(record)

        logger = logging.getLogger("wallet_ledger.test_capture")
        logger.setLevel(logging.INFO)
        handler = Capture()
        logger.addHandler(handler)
        try:
            log_action(logger, "info", "Transfer completed", owner_id="owner-1",
                       action="transfer", resource="transfer:TRF1")
            log_action(logger, "debug", "skipped")
        finally:
            logger.removeHandler(handler)

        assert len(captured) == 1
        assert captured[0].owner_id == "owner-1"
        assert captured[0].resource == "transfer:TRF1"
