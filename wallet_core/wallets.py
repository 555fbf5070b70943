"""
Wallet Account Module

A wallet holds a user's primary (spendable) and safe (locked) sub-balances.
Balances change only through ``credit`` and ``debit``: pure functions that
take a wallet value and return an updated one, so the non-negativity rule
has a single enforcement point. ``WalletManager`` loads, applies and saves
inside one storage unit, which serializes concurrent mutations.
"""

from dataclasses import dataclass, replace
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional

from .allocator import IdentifierAllocator, IdentifierKind
from .audit import AuditTrail, AuditEventType
from .currency import Currency, Money, parse_amount
from .errors import InsufficientFunds, InvalidAmount, NotFound
from .logging_config import get_logger, log_action
from .storage import StorageInterface, StorageRecord, parse_datetime


class WalletStatus(Enum):
    """Administrative wallet states"""
    ACTIVE = "ACTIVE"
    BLOCKED = "BLOCKED"
    FROZEN = "FROZEN"


class SubAccount(Enum):
    """The two balances inside a wallet"""
    PRIMARY = "PRIMARY"
    SAFE = "SAFE"


_BALANCE_FIELDS = {
    SubAccount.PRIMARY: "primary_balance",
    SubAccount.SAFE: "safe_balance",
}


@dataclass
class Wallet(StorageRecord):
    """One wallet per user"""
    wallet_id: str
    user_id: str
    currency: Currency
    primary_balance: Money
    safe_balance: Money
    status: WalletStatus = WalletStatus.ACTIVE

    def __post_init__(self):
        for sub_account, field_name in _BALANCE_FIELDS.items():
            balance = getattr(self, field_name)
            if balance.currency != self.currency:
                raise InvalidAmount(f"{sub_account.value} balance currency must match wallet currency")
            if balance.is_negative():
                raise InvalidAmount(f"{sub_account.value} balance cannot be negative")

    def balance(self, sub_account: SubAccount) -> Money:
        return getattr(self, _BALANCE_FIELDS[sub_account])

    @property
    def total_balance(self) -> Money:
        return self.primary_balance + self.safe_balance

    @property
    def is_active(self) -> bool:
        return self.status == WalletStatus.ACTIVE


def _positive_amount(wallet: Wallet, amount) -> Money:
    money = parse_amount(amount, wallet.currency)
    if not money.is_positive():
        raise InvalidAmount(f"Amount must be positive, got {money.to_string()}")
    return money


def credit(wallet: Wallet, sub_account: SubAccount, amount, now: Optional[datetime] = None) -> Wallet:
    """Return ``wallet`` with ``amount`` added to the named sub-balance"""
    money = _positive_amount(wallet, amount)
    field_name = _BALANCE_FIELDS[sub_account]
    return replace(
        wallet,
        updated_at=now or datetime.now(timezone.utc),
        **{field_name: getattr(wallet, field_name) + money}
    )


def debit(wallet: Wallet, sub_account: SubAccount, amount, now: Optional[datetime] = None) -> Wallet:
    """
    Return ``wallet`` with ``amount`` taken from the named sub-balance.

    Raises:
        InvalidAmount: For non-positive or malformed amounts
        InsufficientFunds: If the sub-balance is smaller than amount
    """
    money = _positive_amount(wallet, amount)
    field_name = _BALANCE_FIELDS[sub_account]
    current = getattr(wallet, field_name)
    if current < money:
        raise InsufficientFunds(
            f"Insufficient {sub_account.value} balance: available {current.to_string()}, "
            f"requested {money.to_string()}",
            available=current,
            requested=money
        )
    return replace(
        wallet,
        updated_at=now or datetime.now(timezone.utc),
        **{field_name: current - money}
    )


def total_balance(wallet: Wallet) -> Money:
    return wallet.total_balance


def set_status(wallet: Wallet, status: WalletStatus, now: Optional[datetime] = None) -> Wallet:
    return replace(wallet, status=status, updated_at=now or datetime.now(timezone.utc))


class WalletManager:
    """
    Creates wallets and applies credits, debits and status changes
    """

    def __init__(
        self,
        storage: StorageInterface,
        allocator: IdentifierAllocator,
        audit_trail: AuditTrail,
        currency: Currency = Currency.INR
    ):
        self.storage = storage
        self.allocator = allocator
        self.audit_trail = audit_trail
        self.currency = currency
        self.table_name = "wallets"
        self.logger = get_logger("wallet_core.wallets")

    def create_wallet(self, user_id: str) -> Wallet:
        """
        Open the wallet for ``user_id`` with zero balances.

        Raises:
            DuplicateIdentifier: If the user already owns a wallet
        """
        created = {}

        def write(wallet_id: str) -> None:
            now = datetime.now(timezone.utc)
            wallet = Wallet(
                created_at=now,
                updated_at=now,
                wallet_id=wallet_id,
                user_id=user_id,
                currency=self.currency,
                primary_balance=Money.zero(self.currency),
                safe_balance=Money.zero(self.currency),
            )
            self.storage.insert(
                self.table_name, wallet_id, self._wallet_to_dict(wallet), unique_fields=("user_id",)
            )
            created['wallet'] = wallet

        with self.storage.atomic():
            self.allocator.allocate_and_insert(IdentifierKind.WALLET, write)
            wallet = created['wallet']
            self.audit_trail.log_event(
                event_type=AuditEventType.WALLET_CREATED,
                entity_type="wallet",
                entity_id=wallet.wallet_id,
                user_id=user_id,
                metadata={"currency": self.currency.code}
            )

        log_action(
            self.logger, "info", "Wallet created",
            user_id=user_id, action="create_wallet", resource=f"wallet:{wallet.wallet_id}"
        )
        return wallet

    def get_wallet(self, wallet_id: str) -> Optional[Wallet]:
        data = self.storage.load(self.table_name, wallet_id)
        if data:
            return self._wallet_from_dict(data)
        return None

    def get_wallet_by_user(self, user_id: str) -> Optional[Wallet]:
        found = self.storage.find(self.table_name, {"user_id": user_id})
        if found:
            return self._wallet_from_dict(found[0])
        return None

    def require_wallet(self, wallet_id: str) -> Wallet:
        wallet = self.get_wallet(wallet_id)
        if wallet is None:
            raise NotFound("Wallet", wallet_id)
        return wallet

    def require_wallet_by_user(self, user_id: str) -> Wallet:
        wallet = self.get_wallet_by_user(user_id)
        if wallet is None:
            raise NotFound("Wallet for user", user_id)
        return wallet

    def credit_wallet(self, wallet_id: str, sub_account: SubAccount, amount,
                      reference: Optional[str] = None) -> Wallet:
        """Increase a sub-balance; see ``credit``"""
        with self.storage.atomic():
            wallet = self.require_wallet(wallet_id)
            updated = credit(wallet, sub_account, amount)
            self._save_wallet(updated)
            self._log_balance_change(AuditEventType.WALLET_CREDITED, wallet, updated, sub_account, reference)
        return updated

    def debit_wallet(self, wallet_id: str, sub_account: SubAccount, amount,
                     reference: Optional[str] = None) -> Wallet:
        """Decrease a sub-balance; see ``debit``. Nothing is written on failure."""
        with self.storage.atomic():
            wallet = self.require_wallet(wallet_id)
            updated = debit(wallet, sub_account, amount)
            self._save_wallet(updated)
            self._log_balance_change(AuditEventType.WALLET_DEBITED, wallet, updated, sub_account, reference)
        return updated

    def set_status(self, wallet_id: str, status: WalletStatus, reason: Optional[str] = None) -> Wallet:
        with self.storage.atomic():
            wallet = self.require_wallet(wallet_id)
            updated = set_status(wallet, status)
            self._save_wallet(updated)
            self.audit_trail.log_event(
                event_type=AuditEventType.WALLET_STATUS_CHANGED,
                entity_type="wallet",
                entity_id=wallet_id,
                user_id=wallet.user_id,
                metadata={"old_status": wallet.status.value, "new_status": status.value, "reason": reason}
            )

        log_action(
            self.logger, "info", f"Wallet status set to {status.value}",
            user_id=wallet.user_id, action="set_wallet_status", resource=f"wallet:{wallet_id}",
            extra={"old_status": wallet.status.value, "reason": reason}
        )
        return updated

    def block(self, wallet_id: str, reason: Optional[str] = None) -> Wallet:
        return self.set_status(wallet_id, WalletStatus.BLOCKED, reason)

    def freeze(self, wallet_id: str, reason: Optional[str] = None) -> Wallet:
        return self.set_status(wallet_id, WalletStatus.FROZEN, reason)

    def activate(self, wallet_id: str, reason: Optional[str] = None) -> Wallet:
        return self.set_status(wallet_id, WalletStatus.ACTIVE, reason)

    def find_active_wallets(self) -> List[Wallet]:
        found = self.storage.find(self.table_name, {"status": WalletStatus.ACTIVE.value})
        return [self._wallet_from_dict(data) for data in found]

    def find_wallets_above_balance(self, threshold) -> List[Wallet]:
        """Wallets whose total balance is at least ``threshold``"""
        floor = parse_amount(threshold, self.currency)
        wallets = [self._wallet_from_dict(data) for data in self.storage.load_all(self.table_name)]
        return [w for w in wallets if w.total_balance >= floor]

    def _log_balance_change(self, event_type: AuditEventType, before: Wallet, after: Wallet,
                            sub_account: SubAccount, reference: Optional[str]) -> None:
        delta = after.balance(sub_account) - before.balance(sub_account)
        self.audit_trail.log_event(
            event_type=event_type,
            entity_type="wallet",
            entity_id=after.wallet_id,
            user_id=after.user_id,
            metadata={
                "sub_account": sub_account.value,
                "delta": str(delta.amount),
                "balance": str(after.balance(sub_account).amount),
                "reference": reference
            }
        )
        log_action(
            self.logger, "info", f"Wallet {event_type.value.split('_')[-1]}",
            user_id=after.user_id, action=event_type.value, resource=f"wallet:{after.wallet_id}",
            extra={"sub_account": sub_account.value, "delta": str(delta.amount), "reference": reference}
        )

    def _save_wallet(self, wallet: Wallet) -> None:
        self.storage.save(self.table_name, wallet.wallet_id, self._wallet_to_dict(wallet))

    def _wallet_to_dict(self, wallet: Wallet) -> Dict:
        result = wallet.to_dict()
        result['currency'] = wallet.currency.code
        return result

    def _wallet_from_dict(self, data: Dict) -> Wallet:
        currency = Currency[data['currency']]
        return Wallet(
            created_at=parse_datetime(data['created_at']),
            updated_at=parse_datetime(data['updated_at']),
            wallet_id=data['wallet_id'],
            user_id=data['user_id'],
            currency=currency,
            primary_balance=Money(Decimal(data['primary_balance']), currency),
            safe_balance=Money(Decimal(data['safe_balance']), currency),
            status=WalletStatus(data['status'])
        )
