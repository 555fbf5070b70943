"""
Transaction Ledger Module

Every balance-affecting event is recorded as a ledger entry. Entries start
PENDING and move exactly once to COMPLETED, FAILED or CANCELLED; terminal
entries are immutable. The ledger records intent only: callers move wallet
funds themselves and create/terminate the matching entry in the same unit.
"""

from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional

from .allocator import IdentifierAllocator, IdentifierKind
from .audit import AuditTrail, AuditEventType
from .currency import Currency, Money, require_positive
from .errors import IllegalStateTransition, InvalidAmount, NotFound, ValidationError
from .logging_config import get_logger, log_action
from .storage import StorageInterface, StorageRecord, newest_first, parse_datetime
from .wallets import SubAccount


class TransactionType(Enum):
    """Direction of the balance change"""
    CREDIT = "CREDIT"
    DEBIT = "DEBIT"

    @property
    def id_discriminator(self) -> str:
        return "C" if self is TransactionType.CREDIT else "D"


class TransactionCategory(Enum):
    """What caused the balance change"""
    WALLET_TOP_UP = "WALLET_TOP_UP"
    CARD_PAYMENT = "CARD_PAYMENT"
    BANK_TRANSFER_PAYMENT = "BANK_TRANSFER_PAYMENT"
    ADMIN_DEDUCTION = "ADMIN_DEDUCTION"
    WALLET_TRANSFER = "WALLET_TRANSFER"
    INTEREST_CREDIT = "INTEREST_CREDIT"
    REFUND = "REFUND"
    FEE_CHARGE = "FEE_CHARGE"
    REWARDS = "REWARDS"
    SAFE_WITHDRAW = "SAFE_WITHDRAW"
    SAFE_DEPOSIT = "SAFE_DEPOSIT"


class TransactionStatus(Enum):
    """PENDING -> {COMPLETED, FAILED, CANCELLED}"""
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self is not TransactionStatus.PENDING


@dataclass
class TransactionDetails:
    """Free-form counterparty and routing notes"""
    party: Optional[str] = None
    account: Optional[str] = None
    description: Optional[str] = None
    source_wallet: Optional[str] = None
    destination_wallet: Optional[str] = None
    payment_method: Optional[str] = None
    gateway: Optional[str] = None
    notes: Optional[str] = None

    def merged(self, **changes) -> 'TransactionDetails':
        known = {f.name for f in fields(self)}
        unknown = set(changes) - known
        if unknown:
            raise ValidationError(f"Unknown transaction detail fields: {sorted(unknown)}")
        return replace(self, **changes)

    @classmethod
    def from_dict(cls, data: Optional[Dict]) -> 'TransactionDetails':
        data = data or {}
        return cls(**{f.name: data.get(f.name) for f in fields(cls)})


@dataclass
class Transaction(StorageRecord):
    """Ledger entry"""
    transaction_id: str
    user_id: str
    type: TransactionType
    amount: Money
    currency: Currency
    category: TransactionCategory
    wallet: SubAccount = SubAccount.PRIMARY
    status: TransactionStatus = TransactionStatus.PENDING
    details: TransactionDetails = field(default_factory=TransactionDetails)
    ref_number: Optional[str] = None

    def __post_init__(self):
        if not self.amount.is_positive():
            raise InvalidAmount("Transaction amount must be positive")
        if self.amount.currency != self.currency:
            raise InvalidAmount("Transaction amount currency must match transaction currency")

    @property
    def is_credit(self) -> bool:
        return self.type == TransactionType.CREDIT

    @property
    def is_debit(self) -> bool:
        return self.type == TransactionType.DEBIT

    @property
    def is_pending(self) -> bool:
        return self.status == TransactionStatus.PENDING

    @property
    def is_completed(self) -> bool:
        return self.status == TransactionStatus.COMPLETED


def _terminate(txn: Transaction, target: TransactionStatus, now: Optional[datetime]) -> Transaction:
    if txn.status.is_terminal or not target.is_terminal:
        raise IllegalStateTransition("transaction", txn.transaction_id, txn.status.value, target.value)
    return replace(txn, status=target, updated_at=now or datetime.now(timezone.utc))


def complete_transaction(txn: Transaction, now: Optional[datetime] = None) -> Transaction:
    return _terminate(txn, TransactionStatus.COMPLETED, now)


def fail_transaction(txn: Transaction, now: Optional[datetime] = None) -> Transaction:
    return _terminate(txn, TransactionStatus.FAILED, now)


def cancel_transaction(txn: Transaction, now: Optional[datetime] = None) -> Transaction:
    return _terminate(txn, TransactionStatus.CANCELLED, now)


@dataclass
class TransactionStats:
    """Per-user totals over COMPLETED entries"""
    total_credit: Money
    total_debit: Money
    total_transactions: int = 0
    credit_count: int = 0
    debit_count: int = 0

    @property
    def net(self) -> Money:
        return self.total_credit - self.total_debit


_AUDIT_EVENTS = {
    TransactionStatus.COMPLETED: AuditEventType.TRANSACTION_COMPLETED,
    TransactionStatus.FAILED: AuditEventType.TRANSACTION_FAILED,
    TransactionStatus.CANCELLED: AuditEventType.TRANSACTION_CANCELLED,
}


class TransactionLedger:
    """
    Creates ledger entries and drives their one-way status transitions
    """

    def __init__(
        self,
        storage: StorageInterface,
        allocator: IdentifierAllocator,
        audit_trail: AuditTrail,
        currency: Currency = Currency.INR,
        min_amount: str = "0.01"
    ):
        self.storage = storage
        self.allocator = allocator
        self.audit_trail = audit_trail
        self.currency = currency
        self.min_amount = min_amount
        self.table_name = "transactions"
        self.logger = get_logger("wallet_core.transactions")

    def create(
        self,
        user_id: str,
        type: TransactionType,
        amount,
        category: TransactionCategory,
        wallet: SubAccount = SubAccount.PRIMARY,
        details: Optional[TransactionDetails] = None,
        ref_number: Optional[str] = None
    ) -> Transaction:
        """
        Record a new PENDING entry.

        Args:
            user_id: Wallet owner
            type: CREDIT or DEBIT
            amount: Positive amount (Money, Decimal, int or numeric string)
            category: Cause of the movement
            wallet: Sub-account the entry is tagged with
            details: Counterparty/routing notes
            ref_number: External reference

        Returns:
            The stored Transaction
        """
        money = require_positive(amount, self.currency, self.min_amount)
        created = {}

        def write(transaction_id: str) -> None:
            now = datetime.now(timezone.utc)
            txn = Transaction(
                created_at=now,
                updated_at=now,
                transaction_id=transaction_id,
                user_id=user_id,
                type=type,
                amount=money,
                currency=self.currency,
                category=category,
                wallet=wallet,
                details=details or TransactionDetails(),
                ref_number=ref_number,
            )
            self.storage.insert(self.table_name, transaction_id, self._transaction_to_dict(txn))
            created['txn'] = txn

        with self.storage.atomic():
            self.allocator.allocate_and_insert(
                IdentifierKind.TRANSACTION, write, discriminator=type.id_discriminator
            )
            txn = created['txn']
            self.audit_trail.log_event(
                event_type=AuditEventType.TRANSACTION_CREATED,
                entity_type="transaction",
                entity_id=txn.transaction_id,
                user_id=user_id,
                metadata={
                    "type": type.value,
                    "amount": str(money.amount),
                    "category": category.value,
                    "wallet": wallet.value,
                }
            )

        log_action(
            self.logger, "info", f"Transaction created: {category.value}",
            user_id=user_id, action="create_transaction", resource=f"transaction:{txn.transaction_id}",
            extra={"type": type.value, "amount": money.to_string(), "wallet": wallet.value}
        )
        return txn

    def complete(self, transaction_id: str) -> Transaction:
        return self._transition(transaction_id, complete_transaction)

    def fail(self, transaction_id: str, reason: Optional[str] = None) -> Transaction:
        return self._transition(transaction_id, fail_transaction, reason)

    def cancel(self, transaction_id: str, reason: Optional[str] = None) -> Transaction:
        return self._transition(transaction_id, cancel_transaction, reason)

    def record_completed(
        self,
        user_id: str,
        type: TransactionType,
        amount,
        category: TransactionCategory,
        wallet: SubAccount = SubAccount.PRIMARY,
        details: Optional[TransactionDetails] = None,
        ref_number: Optional[str] = None
    ) -> Transaction:
        """Create an entry and complete it in the same unit of work"""
        with self.storage.atomic():
            txn = self.create(user_id, type, amount, category, wallet, details, ref_number)
            return self.complete(txn.transaction_id)

    def add_details(self, transaction_id: str, **details) -> Transaction:
        """Merge detail fields into a PENDING entry"""
        with self.storage.atomic():
            txn = self.require_transaction(transaction_id)
            if txn.status.is_terminal:
                raise IllegalStateTransition("transaction", transaction_id, txn.status.value, txn.status.value)
            updated = replace(
                txn, details=txn.details.merged(**details), updated_at=datetime.now(timezone.utc)
            )
            self._save_transaction(updated)
        return updated

    def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        data = self.storage.load(self.table_name, transaction_id)
        if data:
            return self._transaction_from_dict(data)
        return None

    def require_transaction(self, transaction_id: str) -> Transaction:
        txn = self.get_transaction(transaction_id)
        if txn is None:
            raise NotFound("Transaction", transaction_id)
        return txn

    def get_user_transactions(
        self,
        user_id: str,
        category: Optional[TransactionCategory] = None,
        status: Optional[TransactionStatus] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        limit: Optional[int] = None
    ) -> List[Transaction]:
        """User's entries, newest first, with optional filters"""
        filters = {"user_id": user_id}
        if category:
            filters["category"] = category.value
        if status:
            filters["status"] = status.value
        transactions = [
            self._transaction_from_dict(data)
            for data in self.storage.find(self.table_name, filters)
        ]
        return newest_first(transactions, start_date, end_date, limit)

    def find_by_category(self, category: TransactionCategory) -> List[Transaction]:
        found = self.storage.find(self.table_name, {"category": category.value})
        return newest_first([self._transaction_from_dict(d) for d in found])

    def find_by_status(self, status: TransactionStatus) -> List[Transaction]:
        found = self.storage.find(self.table_name, {"status": status.value})
        return newest_first([self._transaction_from_dict(d) for d in found])

    def find_by_date_range(self, start_date: datetime, end_date: datetime) -> List[Transaction]:
        everything = [self._transaction_from_dict(d) for d in self.storage.load_all(self.table_name)]
        return newest_first(everything, start_date, end_date)

    def get_user_stats(self, user_id: str) -> TransactionStats:
        """Credited/debited totals and counts over COMPLETED entries only"""
        stats = TransactionStats(
            total_credit=Money.zero(self.currency),
            total_debit=Money.zero(self.currency),
        )
        completed = self.storage.find(
            self.table_name, {"user_id": user_id, "status": TransactionStatus.COMPLETED.value}
        )
        for data in completed:
            txn = self._transaction_from_dict(data)
            stats.total_transactions += 1
            if txn.is_credit:
                stats.total_credit = stats.total_credit + txn.amount
                stats.credit_count += 1
            else:
                stats.total_debit = stats.total_debit + txn.amount
                stats.debit_count += 1
        return stats

    def _transition(self, transaction_id: str, command, reason: Optional[str] = None) -> Transaction:
        with self.storage.atomic():
            txn = self.require_transaction(transaction_id)
            updated = command(txn)
            if reason:
                updated = replace(updated, details=updated.details.merged(notes=reason))
            self._save_transaction(updated)
            self.audit_trail.log_event(
                event_type=_AUDIT_EVENTS[updated.status],
                entity_type="transaction",
                entity_id=transaction_id,
                user_id=txn.user_id,
                metadata={"reason": reason} if reason else {}
            )

        log_action(
            self.logger, "info", f"Transaction {updated.status.value.lower()}",
            user_id=txn.user_id, action=f"{updated.status.value.lower()}_transaction",
            resource=f"transaction:{transaction_id}",
            extra={"reason": reason} if reason else None
        )
        return updated

    def _save_transaction(self, txn: Transaction) -> None:
        self.storage.save(self.table_name, txn.transaction_id, self._transaction_to_dict(txn))

    def _transaction_to_dict(self, txn: Transaction) -> Dict:
        result = txn.to_dict()
        result['currency'] = txn.currency.code
        return result

    def _transaction_from_dict(self, data: Dict) -> Transaction:
        currency = Currency[data['currency']]
        return Transaction(
            created_at=parse_datetime(data['created_at']),
            updated_at=parse_datetime(data['updated_at']),
            transaction_id=data['transaction_id'],
            user_id=data['user_id'],
            type=TransactionType(data['type']),
            amount=Money(Decimal(data['amount']), currency),
            currency=currency,
            category=TransactionCategory(data['category']),
            wallet=SubAccount(data['wallet']),
            status=TransactionStatus(data['status']),
            details=TransactionDetails.from_dict(data.get('details')),
            ref_number=data.get('ref_number'),
        )
