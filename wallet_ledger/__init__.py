"""
Wallet Ledger

Mobile-money style ledger backend: customer balances, an immutable
transaction trail, idempotent mutations and reconciliation with an
external card/mobile-money gateway. All money is handled as Decimal.
"""

__version__ = "1.0.0"
