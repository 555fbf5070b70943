"""
Payment Intake Module

Inbound funding attempts by card or bank transfer. A payment is PENDING
until it is completed or failed, exactly once. Completion is one unit of
work: the status change, the primary-balance credit of ``amount - fee``, the
completed CREDIT entry for the gross amount and the FEE_CHARGE entry for the
fee either all land or none do.
"""

from dataclasses import dataclass, fields, replace
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional, Union

from .allocator import IdentifierAllocator, IdentifierKind
from .audit import AuditTrail, AuditEventType
from .currency import Currency, Money, require_positive
from .errors import IllegalStateTransition, InvalidAmount, ValidationError, NotFound
from .fees import FeeScheduleLookup, PaymentType
from .logging_config import get_logger, log_action
from .storage import StorageInterface, StorageRecord, elapsed_display, newest_first, parse_datetime
from .transactions import TransactionCategory, TransactionDetails, TransactionLedger, TransactionType
from .wallets import SubAccount, WalletManager


class PaymentStatus(Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


PAYMENT_CATEGORIES = {
    PaymentType.CARD: TransactionCategory.CARD_PAYMENT,
    PaymentType.BANK_TRANSFER: TransactionCategory.BANK_TRANSFER_PAYMENT,
    PaymentType.OTHERS: TransactionCategory.WALLET_TOP_UP,
}


@dataclass
class PaymentDetail:
    """Bank, holder and instrument metadata of the paying party"""
    name: Optional[str] = None
    account: Optional[str] = None
    mobile: Optional[str] = None
    holder: Optional[str] = None
    type: Optional[str] = None
    ifsc: Optional[str] = None

    def __post_init__(self):
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, str):
                setattr(self, f.name, value.strip() or None)

    def is_empty(self) -> bool:
        return all(getattr(self, f.name) is None for f in fields(self))

    @classmethod
    def from_dict(cls, data: Optional[Dict]) -> 'PaymentDetail':
        data = data or {}
        return cls(**{f.name: data.get(f.name) for f in fields(cls)})


@dataclass
class Payment(StorageRecord):
    """Inbound payment"""
    payment_id: str
    user_id: str
    type: PaymentType
    amount: Money
    fee: Money
    currency: Currency
    detail: PaymentDetail
    status: PaymentStatus = PaymentStatus.PENDING
    description: Optional[str] = None
    reference: Optional[str] = None
    action_time: Optional[datetime] = None
    action_reason: Optional[str] = None
    transaction_id: Optional[str] = None
    fee_transaction_id: Optional[str] = None

    @property
    def net_amount(self) -> Money:
        return self.amount - self.fee

    @property
    def is_pending(self) -> bool:
        return self.status == PaymentStatus.PENDING

    @property
    def is_completed(self) -> bool:
        return self.status == PaymentStatus.COMPLETED

    @property
    def is_failed(self) -> bool:
        return self.status == PaymentStatus.FAILED

    @property
    def processing_time(self) -> Optional[str]:
        """Time from creation to the terminal transition"""
        if self.is_pending:
            return None
        return elapsed_display(self.created_at, self.action_time)


def mark_completed(payment: Payment, now: Optional[datetime] = None) -> Payment:
    if not payment.is_pending:
        raise IllegalStateTransition(
            "payment", payment.payment_id, payment.status.value, PaymentStatus.COMPLETED.value
        )
    now = now or datetime.now(timezone.utc)
    return replace(payment, status=PaymentStatus.COMPLETED, action_time=now, updated_at=now)


def mark_failed(payment: Payment, reason: str, now: Optional[datetime] = None) -> Payment:
    if not payment.is_pending:
        raise IllegalStateTransition(
            "payment", payment.payment_id, payment.status.value, PaymentStatus.FAILED.value
        )
    now = now or datetime.now(timezone.utc)
    return replace(
        payment, status=PaymentStatus.FAILED, action_time=now, action_reason=reason, updated_at=now
    )


@dataclass
class PaymentStats:
    """Per-user payment totals by status"""
    total_amount: Money
    pending_amount: Money
    completed_amount: Money
    failed_amount: Money
    total_payments: int = 0
    pending_count: int = 0
    completed_count: int = 0
    failed_count: int = 0


class PaymentIntake:
    """
    Creates payments and settles them into the payer's wallet
    """

    def __init__(
        self,
        storage: StorageInterface,
        allocator: IdentifierAllocator,
        wallet_manager: WalletManager,
        ledger: TransactionLedger,
        fee_lookup: FeeScheduleLookup,
        audit_trail: AuditTrail,
        currency: Currency = Currency.INR,
        min_amount: str = "10.00",
        min_fee: str = "0.01"
    ):
        self.storage = storage
        self.allocator = allocator
        self.wallet_manager = wallet_manager
        self.ledger = ledger
        self.fee_lookup = fee_lookup
        self.audit_trail = audit_trail
        self.currency = currency
        self.min_amount = min_amount
        self.min_fee = min_fee
        self.table_name = "payments"
        self.logger = get_logger("wallet_core.payments")

    def create_payment(
        self,
        user_id: str,
        payment_type: PaymentType,
        amount,
        detail: Union[PaymentDetail, Dict],
        fee=None,
        description: Optional[str] = None,
        reference: Optional[str] = None
    ) -> Payment:
        """
        Record a PENDING payment.

        Args:
            user_id: Payer; must own a wallet
            payment_type: CARD, BANK_TRANSFER or OTHERS
            amount: Gross amount, at least the configured minimum
            detail: Payer metadata; at least one field must be set
            fee: Explicit fee; resolved from the fee schedule when omitted
            description: Free text
            reference: External reference

        Raises:
            InvalidAmount: Amount below minimum, fee below minimum, or fee >= amount
            ValidationError: Missing payer detail
            NotFound: No wallet for the user, or no fee schedule for the type
        """
        money = require_positive(amount, self.currency, self.min_amount)
        if fee is None:
            fee = self.fee_lookup.resolve(payment_type, money)
        fee_money = require_positive(fee, self.currency, self.min_fee, label="Fee")
        if fee_money >= money:
            raise InvalidAmount(
                f"Fee {fee_money.to_string()} must be less than amount {money.to_string()}"
            )

        if isinstance(detail, dict):
            detail = PaymentDetail.from_dict(detail)
        if detail is None or detail.is_empty():
            raise ValidationError("Payment detail is required")

        self.wallet_manager.require_wallet_by_user(user_id)
        created = {}

        def write(payment_id: str) -> None:
            now = datetime.now(timezone.utc)
            payment = Payment(
                created_at=now,
                updated_at=now,
                payment_id=payment_id,
                user_id=user_id,
                type=payment_type,
                amount=money,
                fee=fee_money,
                currency=self.currency,
                detail=detail,
                description=description,
                reference=reference,
            )
            self.storage.insert(self.table_name, payment_id, self._payment_to_dict(payment))
            created['payment'] = payment

        with self.storage.atomic():
            self.allocator.allocate_and_insert(IdentifierKind.PAYMENT, write)
            payment = created['payment']
            self.audit_trail.log_event(
                event_type=AuditEventType.PAYMENT_CREATED,
                entity_type="payment",
                entity_id=payment.payment_id,
                user_id=user_id,
                metadata={
                    "type": payment_type.value,
                    "amount": str(money.amount),
                    "fee": str(fee_money.amount),
                }
            )

        log_action(
            self.logger, "info", "Payment created",
            user_id=user_id, action="create_payment", resource=f"payment:{payment.payment_id}",
            extra={"type": payment_type.value, "amount": money.to_string(), "fee": fee_money.to_string()}
        )
        return payment

    def complete_payment(self, payment_id: str) -> Payment:
        """
        Settle a PENDING payment into the payer's primary balance.

        Raises:
            IllegalStateTransition: If the payment is already terminal
        """
        with self.storage.atomic():
            payment = self.require_payment(payment_id)
            completed = mark_completed(payment)
            wallet = self.wallet_manager.require_wallet_by_user(payment.user_id)

            credit_entry = self.ledger.record_completed(
                user_id=payment.user_id,
                type=TransactionType.CREDIT,
                amount=payment.amount,
                category=PAYMENT_CATEGORIES[payment.type],
                wallet=SubAccount.PRIMARY,
                details=TransactionDetails(
                    party=payment.detail.holder or payment.detail.name,
                    account=payment.detail.account,
                    description=payment.description,
                    destination_wallet=wallet.wallet_id,
                    payment_method=payment.type.value,
                ),
                ref_number=payment_id,
            )
            fee_entry = self.ledger.record_completed(
                user_id=payment.user_id,
                type=TransactionType.DEBIT,
                amount=payment.fee,
                category=TransactionCategory.FEE_CHARGE,
                wallet=SubAccount.PRIMARY,
                details=TransactionDetails(
                    description=f"{payment.type.display_name} fee",
                    source_wallet=wallet.wallet_id,
                ),
                ref_number=payment_id,
            )
            self.wallet_manager.credit_wallet(
                wallet.wallet_id, SubAccount.PRIMARY, payment.net_amount, reference=payment_id
            )

            completed = replace(
                completed,
                transaction_id=credit_entry.transaction_id,
                fee_transaction_id=fee_entry.transaction_id,
            )
            self._save_payment(completed)
            self.audit_trail.log_event(
                event_type=AuditEventType.PAYMENT_COMPLETED,
                entity_type="payment",
                entity_id=payment_id,
                user_id=payment.user_id,
                metadata={
                    "net_amount": str(completed.net_amount.amount),
                    "transaction_id": credit_entry.transaction_id,
                    "fee_transaction_id": fee_entry.transaction_id,
                }
            )

        log_action(
            self.logger, "info", "Payment completed",
            user_id=payment.user_id, action="complete_payment", resource=f"payment:{payment_id}",
            extra={"credited": completed.net_amount.to_string(), "fee": payment.fee.to_string()}
        )
        return completed

    def fail_payment(self, payment_id: str, reason: str) -> Payment:
        """
        Mark a PENDING payment FAILED. No balance effect.

        Raises:
            IllegalStateTransition: If the payment is already terminal; the
                stored reason is left untouched
        """
        with self.storage.atomic():
            payment = self.require_payment(payment_id)
            failed = mark_failed(payment, reason)
            self._save_payment(failed)
            self.audit_trail.log_event(
                event_type=AuditEventType.PAYMENT_FAILED,
                entity_type="payment",
                entity_id=payment_id,
                user_id=payment.user_id,
                metadata={"reason": reason}
            )

        log_action(
            self.logger, "warning", "Payment failed",
            user_id=payment.user_id, action="fail_payment", resource=f"payment:{payment_id}",
            extra={"reason": reason}
        )
        return failed

    def get_payment(self, payment_id: str) -> Optional[Payment]:
        data = self.storage.load(self.table_name, payment_id)
        if data:
            return self._payment_from_dict(data)
        return None

    def require_payment(self, payment_id: str) -> Payment:
        payment = self.get_payment(payment_id)
        if payment is None:
            raise NotFound("Payment", payment_id)
        return payment

    def get_user_payments(self, user_id: str, status: Optional[PaymentStatus] = None) -> List[Payment]:
        filters = {"user_id": user_id}
        if status:
            filters["status"] = status.value
        return newest_first([self._payment_from_dict(d) for d in self.storage.find(self.table_name, filters)])

    def find_by_status(self, status: PaymentStatus) -> List[Payment]:
        found = self.storage.find(self.table_name, {"status": status.value})
        return newest_first([self._payment_from_dict(d) for d in found])

    def find_by_type(self, payment_type: PaymentType) -> List[Payment]:
        found = self.storage.find(self.table_name, {"type": payment_type.value})
        return newest_first([self._payment_from_dict(d) for d in found])

    def find_by_date_range(self, start_date: datetime, end_date: datetime) -> List[Payment]:
        everything = [self._payment_from_dict(d) for d in self.storage.load_all(self.table_name)]
        return newest_first(everything, start_date, end_date)

    def get_user_stats(self, user_id: str) -> PaymentStats:
        zero = Money.zero(self.currency)
        stats = PaymentStats(
            total_amount=zero, pending_amount=zero, completed_amount=zero, failed_amount=zero
        )
        for data in self.storage.find(self.table_name, {"user_id": user_id}):
            payment = self._payment_from_dict(data)
            stats.total_amount = stats.total_amount + payment.amount
            stats.total_payments += 1
            if payment.is_pending:
                stats.pending_amount = stats.pending_amount + payment.amount
                stats.pending_count += 1
            elif payment.is_completed:
                stats.completed_amount = stats.completed_amount + payment.amount
                stats.completed_count += 1
            else:
                stats.failed_amount = stats.failed_amount + payment.amount
                stats.failed_count += 1
        return stats

    def _save_payment(self, payment: Payment) -> None:
        self.storage.save(self.table_name, payment.payment_id, self._payment_to_dict(payment))

    def _payment_to_dict(self, payment: Payment) -> Dict:
        result = payment.to_dict()
        result['currency'] = payment.currency.code
        return result

    def _payment_from_dict(self, data: Dict) -> Payment:
        currency = Currency[data['currency']]
        return Payment(
            created_at=parse_datetime(data['created_at']),
            updated_at=parse_datetime(data['updated_at']),
            payment_id=data['payment_id'],
            user_id=data['user_id'],
            type=PaymentType(data['type']),
            amount=Money(Decimal(data['amount']), currency),
            fee=Money(Decimal(data['fee']), currency),
            currency=currency,
            detail=PaymentDetail.from_dict(data.get('detail')),
            status=PaymentStatus(data['status']),
            description=data.get('description'),
            reference=data.get('reference'),
            action_time=parse_datetime(data.get('action_time')),
            action_reason=data.get('action_reason'),
            transaction_id=data.get('transaction_id'),
            fee_transaction_id=data.get('fee_transaction_id'),
        )
