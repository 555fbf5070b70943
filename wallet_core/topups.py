"""
Top-Up Request Module

Manually evidenced deposits awaiting human approval. Approval credits the
target sub-account and writes a completed WALLET_TOP_UP entry in the same
unit as the status change; a second approval of the same request fails
instead of crediting twice.
"""

from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional, Union

from .allocator import IdentifierAllocator, IdentifierKind
from .audit import AuditTrail, AuditEventType
from .currency import Currency, Money, require_positive
from .errors import IllegalStateTransition, NotFound
from .logging_config import get_logger, log_action
from .storage import StorageInterface, StorageRecord, elapsed_display, newest_first, parse_datetime
from .transactions import TransactionCategory, TransactionDetails, TransactionLedger, TransactionType
from .wallets import SubAccount, WalletManager


class TopUpMethod(Enum):
    UPI = "UPI"
    CASH_DEPOSIT = "CASH_DEPOSIT"
    NEFT = "NEFT"
    RTGS = "RTGS"
    IMPS = "IMPS"
    OFFICE_DEPOSIT = "OFFICE_DEPOSIT"


class TopUpStatus(Enum):
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    REJECTED = "REJECTED"


@dataclass
class BankDetails:
    name: Optional[str] = None
    account: Optional[str] = None
    ref_number: str = "N/A"

    @classmethod
    def from_dict(cls, data: Optional[Dict]) -> 'BankDetails':
        data = data or {}
        return cls(
            name=data.get('name'),
            account=data.get('account'),
            ref_number=data.get('ref_number') or "N/A",
        )


@dataclass
class DepositEvidence:
    """Slip details submitted with the request"""
    date: str = "1967-Jan-01"
    tx_id: str = "N/A"
    atm_id: str = "N/A"
    location: str = "N/A"
    remarks: str = "N/A"

    @classmethod
    def from_dict(cls, data: Optional[Dict]) -> 'DepositEvidence':
        data = data or {}
        defaults = cls()
        return cls(**{f.name: data.get(f.name) or getattr(defaults, f.name) for f in fields(cls)})


@dataclass
class TopUpRequest(StorageRecord):
    request_id: str
    user_id: str
    amount: Money
    currency: Currency
    method: TopUpMethod
    bank: BankDetails
    wallet: SubAccount = SubAccount.PRIMARY
    file_url: str = "N/A"
    status: TopUpStatus = TopUpStatus.PENDING
    approval_time: Optional[datetime] = None
    rejection_time: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    additional: DepositEvidence = field(default_factory=DepositEvidence)
    transaction_id: Optional[str] = None

    @property
    def is_pending(self) -> bool:
        return self.status == TopUpStatus.PENDING

    @property
    def is_approved(self) -> bool:
        return self.status == TopUpStatus.SUCCESS

    @property
    def is_rejected(self) -> bool:
        return self.status == TopUpStatus.REJECTED

    @property
    def processing_time(self) -> Optional[str]:
        if self.is_pending:
            return None
        end = self.approval_time if self.is_approved else self.rejection_time
        return elapsed_display(self.created_at, end)


def mark_approved(request: TopUpRequest, now: Optional[datetime] = None) -> TopUpRequest:
    if not request.is_pending:
        raise IllegalStateTransition(
            "top-up request", request.request_id, request.status.value, TopUpStatus.SUCCESS.value
        )
    now = now or datetime.now(timezone.utc)
    return replace(request, status=TopUpStatus.SUCCESS, approval_time=now, updated_at=now)


def mark_rejected(request: TopUpRequest, reason: str, now: Optional[datetime] = None) -> TopUpRequest:
    if not request.is_pending:
        raise IllegalStateTransition(
            "top-up request", request.request_id, request.status.value, TopUpStatus.REJECTED.value
        )
    now = now or datetime.now(timezone.utc)
    return replace(
        request, status=TopUpStatus.REJECTED, rejection_time=now, rejection_reason=reason, updated_at=now
    )


@dataclass
class TopUpStats:
    total_amount: Money
    pending_amount: Money
    approved_amount: Money
    rejected_amount: Money
    total_requests: int = 0
    pending_count: int = 0
    approved_count: int = 0
    rejected_count: int = 0


class TopUpManager:
    """Top-up request intake and administrative approval"""

    def __init__(
        self,
        storage: StorageInterface,
        allocator: IdentifierAllocator,
        wallet_manager: WalletManager,
        ledger: TransactionLedger,
        audit_trail: AuditTrail,
        currency: Currency = Currency.INR,
        min_amount: str = "1.00"
    ):
        self.storage = storage
        self.allocator = allocator
        self.wallet_manager = wallet_manager
        self.ledger = ledger
        self.audit_trail = audit_trail
        self.currency = currency
        self.min_amount = min_amount
        self.table_name = "top_up_requests"
        self.logger = get_logger("wallet_core.topups")

    def create_request(
        self,
        user_id: str,
        amount,
        method: TopUpMethod,
        bank: Union[BankDetails, Dict, None] = None,
        wallet: SubAccount = SubAccount.PRIMARY,
        file_url: Optional[str] = None,
        additional: Union[DepositEvidence, Dict, None] = None
    ) -> TopUpRequest:
        """
        Record a PENDING top-up claim.

        Raises:
            InvalidAmount: If amount is below the configured minimum
            NotFound: If the user has no wallet
        """
        money = require_positive(amount, self.currency, self.min_amount)
        if not isinstance(bank, BankDetails):
            bank = BankDetails.from_dict(bank)
        if not isinstance(additional, DepositEvidence):
            additional = DepositEvidence.from_dict(additional)
        self.wallet_manager.require_wallet_by_user(user_id)
        created = {}

        def write(request_id: str) -> None:
            now = datetime.now(timezone.utc)
            request = TopUpRequest(
                created_at=now,
                updated_at=now,
                request_id=request_id,
                user_id=user_id,
                amount=money,
                currency=self.currency,
                method=method,
                bank=bank,
                wallet=wallet,
                file_url=file_url or "N/A",
                additional=additional,
            )
            self.storage.insert(self.table_name, request_id, self._request_to_dict(request))
            created['request'] = request

        with self.storage.atomic():
            self.allocator.allocate_and_insert(IdentifierKind.TOP_UP, write)
            request = created['request']
            self.audit_trail.log_event(
                event_type=AuditEventType.TOP_UP_REQUESTED,
                entity_type="top_up",
                entity_id=request.request_id,
                user_id=user_id,
                metadata={"amount": str(money.amount), "method": method.value, "wallet": wallet.value}
            )

        log_action(
            self.logger, "info", "Top-up requested",
            user_id=user_id, action="create_top_up", resource=f"top_up:{request.request_id}",
            extra={"amount": money.to_string(), "method": method.value}
        )
        return request

    def approve(self, request_id: str) -> TopUpRequest:
        """
        Approve a PENDING request and credit the target sub-account.

        Raises:
            IllegalStateTransition: If the request was already approved or rejected
        """
        with self.storage.atomic():
            request = self.require_request(request_id)
            approved = mark_approved(request)
            wallet = self.wallet_manager.require_wallet_by_user(request.user_id)

            entry = self.ledger.record_completed(
                user_id=request.user_id,
                type=TransactionType.CREDIT,
                amount=request.amount,
                category=TransactionCategory.WALLET_TOP_UP,
                wallet=request.wallet,
                details=TransactionDetails(
                    party=request.bank.name,
                    account=request.bank.account,
                    destination_wallet=wallet.wallet_id,
                    payment_method=request.method.value,
                    notes=request.additional.remarks,
                ),
                ref_number=request.bank.ref_number,
            )
            self.wallet_manager.credit_wallet(
                wallet.wallet_id, request.wallet, request.amount, reference=request_id
            )

            approved = replace(approved, transaction_id=entry.transaction_id)
            self._save_request(approved)
            self.audit_trail.log_event(
                event_type=AuditEventType.TOP_UP_APPROVED,
                entity_type="top_up",
                entity_id=request_id,
                user_id=request.user_id,
                metadata={"transaction_id": entry.transaction_id, "wallet": request.wallet.value}
            )

        log_action(
            self.logger, "info", "Top-up approved",
            user_id=request.user_id, action="approve_top_up", resource=f"top_up:{request_id}",
            extra={"amount": request.amount.to_string(), "wallet": request.wallet.value}
        )
        return approved

    def reject(self, request_id: str, reason: str) -> TopUpRequest:
        with self.storage.atomic():
            request = self.require_request(request_id)
            rejected = mark_rejected(request, reason)
            self._save_request(rejected)
            self.audit_trail.log_event(
                event_type=AuditEventType.TOP_UP_REJECTED,
                entity_type="top_up",
                entity_id=request_id,
                user_id=request.user_id,
                metadata={"reason": reason}
            )

        log_action(
            self.logger, "info", "Top-up rejected",
            user_id=request.user_id, action="reject_top_up", resource=f"top_up:{request_id}",
            extra={"reason": reason}
        )
        return rejected

    def get_request(self, request_id: str) -> Optional[TopUpRequest]:
        data = self.storage.load(self.table_name, request_id)
        if data:
            return self._request_from_dict(data)
        return None

    def require_request(self, request_id: str) -> TopUpRequest:
        request = self.get_request(request_id)
        if request is None:
            raise NotFound("Top-up request", request_id)
        return request

    def get_user_requests(self, user_id: str, status: Optional[TopUpStatus] = None) -> List[TopUpRequest]:
        filters = {"user_id": user_id}
        if status:
            filters["status"] = status.value
        return newest_first([self._request_from_dict(d) for d in self.storage.find(self.table_name, filters)])

    def find_by_status(self, status: TopUpStatus) -> List[TopUpRequest]:
        found = self.storage.find(self.table_name, {"status": status.value})
        return newest_first([self._request_from_dict(d) for d in found])

    def find_by_method(self, method: TopUpMethod) -> List[TopUpRequest]:
        found = self.storage.find(self.table_name, {"method": method.value})
        return newest_first([self._request_from_dict(d) for d in found])

    def find_by_date_range(self, start_date: datetime, end_date: datetime) -> List[TopUpRequest]:
        everything = [self._request_from_dict(d) for d in self.storage.load_all(self.table_name)]
        return newest_first(everything, start_date, end_date)

    def get_user_stats(self, user_id: str) -> TopUpStats:
        zero = Money.zero(self.currency)
        stats = TopUpStats(
            total_amount=zero, pending_amount=zero, approved_amount=zero, rejected_amount=zero
        )
        for data in self.storage.find(self.table_name, {"user_id": user_id}):
            request = self._request_from_dict(data)
            stats.total_amount = stats.total_amount + request.amount
            stats.total_requests += 1
            if request.is_pending:
                stats.pending_amount = stats.pending_amount + request.amount
                stats.pending_count += 1
            elif request.is_approved:
                stats.approved_amount = stats.approved_amount + request.amount
                stats.approved_count += 1
            else:
                stats.rejected_amount = stats.rejected_amount + request.amount
                stats.rejected_count += 1
        return stats

    def _save_request(self, request: TopUpRequest) -> None:
        self.storage.save(self.table_name, request.request_id, self._request_to_dict(request))

    def _request_to_dict(self, request: TopUpRequest) -> Dict:
        result = request.to_dict()
        result['currency'] = request.currency.code
        return result

    def _request_from_dict(self, data: Dict) -> TopUpRequest:
        currency = Currency[data['currency']]
        return TopUpRequest(
            created_at=parse_datetime(data['created_at']),
            updated_at=parse_datetime(data['updated_at']),
            request_id=data['request_id'],
            user_id=data['user_id'],
            amount=Money(Decimal(data['amount']), currency),
            currency=currency,
            method=TopUpMethod(data['method']),
            bank=BankDetails.from_dict(data.get('bank')),
            wallet=SubAccount(data['wallet']),
            file_url=data.get('file_url') or "N/A",
            status=TopUpStatus(data['status']),
            approval_time=parse_datetime(data.get('approval_time')),
            rejection_time=parse_datetime(data.get('rejection_time')),
            rejection_reason=data.get('rejection_reason'),
            additional=DepositEvidence.from_dict(data.get('additional')),
            transaction_id=data.get('transaction_id'),
        )
