"""
Wallet ledger system with all components wired from configuration.

Clients and storage are constructed here once and passed into the
components; nothing holds a module-level connection.
"""

from decimal import Decimal
from typing import Optional

from .config import LedgerConfig, get_config
from .currency import Currency
from .storage import StorageInterface, create_storage
from .audit import AuditTrail
from .events import EventDispatcher
from .accounts import AccountStore
from .transactions import TransactionLog
from .idempotency import IdempotencyRegistry
from .ledger import LedgerEngine
from .gateway_client import GatewayClient
from .payments import GatewayReconciliation, resolve_method_directions
from .webhooks import WebhookAuthenticator, WebhookHandler
from .wallet import WalletService
from .encryption import FieldCodec, create_field_codec
from .logging_config import setup_logging, get_logger


class LedgerSystem:
    """Wallet ledger with all components initialized"""

    def __init__(
        self,
        config: LedgerConfig,
        storage: StorageInterface,
        gateway: GatewayClient,
        codec: FieldCodec,
        event_dispatcher: Optional[EventDispatcher] = None
    ):
        self.config = config
        self.storage = storage
        self.gateway = gateway
        self.codec = codec
        self.events = event_dispatcher or EventDispatcher()

        min_amount = Decimal(config.min_transaction_amount)
        max_amount = Decimal(config.max_transaction_amount)

        self.audit_trail = AuditTrail(self.storage, enabled=config.enable_audit_logging)
        self.accounts = AccountStore(self.storage, self.audit_trail, self.events,
                                     default_currency=Currency.from_code(config.default_currency))
        self.transactions = TransactionLog(self.storage, self.audit_trail,
                                           default_page_size=config.default_page_size,
                                           max_page_size=config.max_page_size)
        self.idempotency = IdempotencyRegistry(self.storage)
        self.ledger = LedgerEngine(self.storage, self.accounts, self.transactions,
                                   self.idempotency, self.audit_trail, self.events,
                                   max_amount=max_amount)
        self.payments = GatewayReconciliation(
            self.storage, self.accounts, self.ledger, self.transactions, self.gateway,
            self.audit_trail, self.events, codec=self.codec,
            method_directions=resolve_method_directions(config.payment_method_directions),
            default_page_size=config.default_page_size,
            max_page_size=config.max_page_size,
        )
        self.wallet = WalletService(self.accounts, self.transactions, self.ledger, self.payments,
                                    min_amount=min_amount, max_amount=max_amount)

        webhook_secret = config.effective_webhook_secret
        self.webhooks = (
            WebhookHandler(WebhookAuthenticator(webhook_secret), self.payments)
            if webhook_secret else None
        )

    @classmethod
    def from_config(cls, config: Optional[LedgerConfig] = None,
                    gateway: Optional[GatewayClient] = None,
                    storage: Optional[StorageInterface] = None) -> 'LedgerSystem':
        """Build storage, gateway client and PII codec from configuration"""
        config = config or get_config()
        setup_logging(config.log_level, config.log_format)

        storage = storage or create_storage(config.database_url)
        gateway = gateway or GatewayClient(
            base_url=config.gateway_base_url,
            secret_key=config.gateway_secret_key,
            timeout=config.gateway_timeout,
            callback_url=config.gateway_callback_url,
        )
        codec = create_field_codec(config.encryption_enabled, config.encryption_master_key)

        get_logger("wallet_ledger").info(
            f"Wallet ledger started (storage={type(storage).__name__}, "
            f"currency={config.default_currency})"
        )
        return cls(config, storage, gateway, codec)

    def close(self) -> None:
        """Release the gateway HTTP client and the storage connection"""
        self.gateway.close()
        self.storage.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
