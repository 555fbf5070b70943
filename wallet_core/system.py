"""
Wallet system wiring: every component over one shared store.
"""

from typing import Optional

from .allocator import IdentifierAllocator
from .audit import AuditTrail
from .config import WalletCoreConfig, get_config
from .currency import Currency
from .fees import FeeScheduleLookup
from .logging_config import get_logger, log_action, setup_logging
from .payments import PaymentIntake
from .safes import SafeManager
from .storage import StorageInterface, create_storage
from .topups import TopUpManager
from .transactions import TransactionLedger
from .wallets import WalletManager


class WalletSystem:
    """Wallet ledger core with all components initialized"""

    def __init__(
        self,
        config: Optional[WalletCoreConfig] = None,
        storage: Optional[StorageInterface] = None
    ):
        self.config = config or get_config()
        self.storage = storage or create_storage(self.config.database_url)
        self.currency = Currency[self.config.currency]
        setup_logging(
            level=self.config.log_level,
            log_format=self.config.log_format,
            log_file=self.config.log_file
        )
        self.logger = get_logger("wallet_core.system")

        self.audit_trail = AuditTrail(self.storage, enabled=self.config.enable_audit_logging)
        self.allocator = IdentifierAllocator(self.storage, max_attempts=self.config.id_max_attempts)
        self.wallet_manager = WalletManager(
            self.storage, self.allocator, self.audit_trail, self.currency
        )
        self.ledger = TransactionLedger(
            self.storage, self.allocator, self.audit_trail, self.currency,
            min_amount=self.config.min_transaction_amount
        )
        self.fee_lookup = FeeScheduleLookup(
            self.storage, self.allocator, self.audit_trail, self.currency
        )
        self.payment_intake = PaymentIntake(
            self.storage, self.allocator, self.wallet_manager, self.ledger,
            self.fee_lookup, self.audit_trail, self.currency,
            min_amount=self.config.min_payment_amount,
            min_fee=self.config.min_payment_fee
        )
        self.top_up_manager = TopUpManager(
            self.storage, self.allocator, self.wallet_manager, self.ledger,
            self.audit_trail, self.currency,
            min_amount=self.config.min_top_up_amount
        )
        self.safe_manager = SafeManager(
            self.storage, self.allocator, self.wallet_manager, self.ledger,
            self.audit_trail, self.currency,
            min_amount=self.config.min_transaction_amount
        )

        log_action(
            self.logger, "info", "Wallet system initialized",
            action="startup", extra={"storage": type(self.storage).__name__, "currency": self.currency.code}
        )

    def close(self) -> None:
        self.storage.close()
