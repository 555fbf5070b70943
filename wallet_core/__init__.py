"""
Wallet Ledger Core

Custody of wallet balances, the transaction ledger, payment and top-up
approval workflows, and fixed-term safe deposits. All money is Decimal,
every multi-record change commits as one atomic unit.
"""

__version__ = "1.0.0"
