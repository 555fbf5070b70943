"""
Safe Deposit Module

Fixed-term allocations locked out of the primary balance into the safe
sub-balance. Identifiers are sequential (SW0001...). Interest is computed by
an external periodic process and posted here; withdrawal returns principal
plus interest to the primary balance once and only once.
"""

from dataclasses import dataclass, replace
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, List, Optional

from .allocator import IdentifierAllocator, IdentifierKind
from .audit import AuditTrail, AuditEventType
from .currency import Currency, Money, parse_amount, require_positive
from .errors import IllegalStateTransition, InvalidAmount, NotFound, ValidationError
from .logging_config import get_logger, log_action
from .storage import StorageInterface, StorageRecord, as_utc, newest_first, parse_datetime
from .transactions import TransactionCategory, TransactionDetails, TransactionLedger, TransactionType
from .wallets import SubAccount, WalletManager


@dataclass
class SafeDeposit(StorageRecord):
    safe_id: str
    user_id: str
    amount: Money
    currency: Currency
    start_date: datetime
    end_date: datetime
    withdraw_date: Optional[datetime] = None
    interest: Optional[Money] = None
    interest_updated: bool = False
    is_withdrawn: bool = False

    def __post_init__(self):
        if self.interest is None:
            self.interest = Money.zero(self.currency)
        self.start_date = as_utc(self.start_date)
        self.end_date = as_utc(self.end_date)
        self.withdraw_date = as_utc(self.withdraw_date)
        if self.end_date <= self.start_date:
            raise ValidationError("Safe deposit end date must be after its start date")

    @property
    def state(self) -> str:
        return "WITHDRAWN" if self.is_withdrawn else "LOCKED"

    @property
    def payout(self) -> Money:
        return self.amount + self.interest

    def is_matured(self, now: Optional[datetime] = None) -> bool:
        return as_utc(now or datetime.now(timezone.utc)) >= self.end_date


def apply_interest(safe: SafeDeposit, interest: Money, now: Optional[datetime] = None) -> SafeDeposit:
    """Set the total accrued interest; it can only grow"""
    if safe.is_withdrawn:
        raise IllegalStateTransition("safe deposit", safe.safe_id, safe.state, "INTEREST_UPDATED")
    if interest.is_negative() or interest < safe.interest:
        raise InvalidAmount(
            f"Interest for {safe.safe_id} cannot go from {safe.interest.to_string()} to {interest.to_string()}"
        )
    return replace(safe, interest=interest, interest_updated=True, updated_at=now or datetime.now(timezone.utc))


def mark_withdrawn(safe: SafeDeposit, now: Optional[datetime] = None) -> SafeDeposit:
    if safe.is_withdrawn:
        raise IllegalStateTransition("safe deposit", safe.safe_id, safe.state, "WITHDRAWN")
    now = now or datetime.now(timezone.utc)
    return replace(safe, is_withdrawn=True, withdraw_date=now, updated_at=now)


class SafeManager:
    """
    Locks funds into safe deposits and releases them
    """

    def __init__(
        self,
        storage: StorageInterface,
        allocator: IdentifierAllocator,
        wallet_manager: WalletManager,
        ledger: TransactionLedger,
        audit_trail: AuditTrail,
        currency: Currency = Currency.INR,
        min_amount: str = "0.01"
    ):
        self.storage = storage
        self.allocator = allocator
        self.wallet_manager = wallet_manager
        self.ledger = ledger
        self.audit_trail = audit_trail
        self.currency = currency
        self.min_amount = min_amount
        self.table_name = allocator.safe_table
        self.logger = get_logger("wallet_core.safes")

    def create_safe(self, user_id: str, amount, start_date: datetime, end_date: datetime) -> SafeDeposit:
        """
        Move ``amount`` from primary to safe and open a deposit for the term.

        Args:
            user_id: Wallet owner
            amount: Principal to lock
            start_date: Start of the locked term
            end_date: Maturity; must be after start_date

        Naive dates are taken as UTC.

        Returns:
            The stored SafeDeposit with its sequential identifier

        Raises:
            InsufficientFunds: If the primary balance is below amount
            ValidationError: If the term is empty or inverted
        """
        money = require_positive(amount, self.currency, self.min_amount)
        start_date = as_utc(start_date)
        end_date = as_utc(end_date)
        if end_date <= start_date:
            raise ValidationError("Safe deposit end date must be after its start date")
        created = {}

        def write(safe_id: str) -> None:
            now = datetime.now(timezone.utc)
            safe = SafeDeposit(
                created_at=now,
                updated_at=now,
                safe_id=safe_id,
                user_id=user_id,
                amount=money,
                currency=self.currency,
                start_date=start_date,
                end_date=end_date,
            )
            self.storage.insert(self.table_name, safe_id, self._safe_to_dict(safe))
            created['safe'] = safe

        with self.storage.atomic():
            wallet = self.wallet_manager.require_wallet_by_user(user_id)
            self.allocator.allocate_and_insert(IdentifierKind.SAFE_DEPOSIT, write)
            safe = created['safe']

            self.wallet_manager.debit_wallet(wallet.wallet_id, SubAccount.PRIMARY, money, reference=safe.safe_id)
            self.wallet_manager.credit_wallet(wallet.wallet_id, SubAccount.SAFE, money, reference=safe.safe_id)
            self._record_transfer(
                user_id, money, TransactionCategory.SAFE_DEPOSIT,
                SubAccount.PRIMARY, SubAccount.SAFE, safe.safe_id, f"Safe deposit {safe.safe_id}"
            )
            self.audit_trail.log_event(
                event_type=AuditEventType.SAFE_CREATED,
                entity_type="safe_deposit",
                entity_id=safe.safe_id,
                user_id=user_id,
                metadata={
                    "amount": str(money.amount),
                    "start_date": start_date.isoformat(),
                    "end_date": end_date.isoformat(),
                }
            )

        log_action(
            self.logger, "info", "Safe deposit created",
            user_id=user_id, action="create_safe", resource=f"safe:{safe.safe_id}",
            extra={"amount": money.to_string(), "end_date": end_date.isoformat()}
        )
        return safe

    def mark_interest_updated(self, safe_id: str, interest) -> SafeDeposit:
        """
        Post the total interest accrued so far. The increase over the
        previously posted total is credited to the safe sub-balance.
        """
        with self.storage.atomic():
            safe = self.require_safe(safe_id)
            total = parse_amount(interest, self.currency)
            updated = apply_interest(safe, total)
            delta = updated.interest - safe.interest

            if delta.is_positive():
                wallet = self.wallet_manager.require_wallet_by_user(safe.user_id)
                self.wallet_manager.credit_wallet(wallet.wallet_id, SubAccount.SAFE, delta, reference=safe_id)
                self.ledger.record_completed(
                    user_id=safe.user_id,
                    type=TransactionType.CREDIT,
                    amount=delta,
                    category=TransactionCategory.INTEREST_CREDIT,
                    wallet=SubAccount.SAFE,
                    details=TransactionDetails(description=f"Interest on {safe_id}"),
                    ref_number=safe_id,
                )

            self._save_safe(updated)
            self.audit_trail.log_event(
                event_type=AuditEventType.SAFE_INTEREST_UPDATED,
                entity_type="safe_deposit",
                entity_id=safe_id,
                user_id=safe.user_id,
                metadata={"interest": str(total.amount), "delta": str(delta.amount)}
            )

        log_action(
            self.logger, "info", "Safe interest updated",
            user_id=safe.user_id, action="update_safe_interest", resource=f"safe:{safe_id}",
            extra={"interest": total.to_string(), "delta": delta.to_string()}
        )
        return updated

    def withdraw(self, safe_id: str) -> SafeDeposit:
        """
        Release principal plus interest back to the primary balance.

        Raises:
            IllegalStateTransition: If the deposit was already withdrawn
        """
        with self.storage.atomic():
            safe = self.require_safe(safe_id)
            withdrawn = mark_withdrawn(safe)
            wallet = self.wallet_manager.require_wallet_by_user(safe.user_id)
            payout = safe.payout

            self.wallet_manager.debit_wallet(wallet.wallet_id, SubAccount.SAFE, payout, reference=safe_id)
            self.wallet_manager.credit_wallet(wallet.wallet_id, SubAccount.PRIMARY, payout, reference=safe_id)
            self._record_transfer(
                safe.user_id, payout, TransactionCategory.SAFE_WITHDRAW,
                SubAccount.SAFE, SubAccount.PRIMARY, safe_id, f"Safe withdrawal {safe_id}"
            )
            self._save_safe(withdrawn)
            self.audit_trail.log_event(
                event_type=AuditEventType.SAFE_WITHDRAWN,
                entity_type="safe_deposit",
                entity_id=safe_id,
                user_id=safe.user_id,
                metadata={"payout": str(payout.amount), "matured": safe.is_matured(withdrawn.withdraw_date)}
            )

        log_action(
            self.logger, "info", "Safe deposit withdrawn",
            user_id=safe.user_id, action="withdraw_safe", resource=f"safe:{safe_id}",
            extra={"payout": payout.to_string()}
        )
        return withdrawn

    def get_safe(self, safe_id: str) -> Optional[SafeDeposit]:
        data = self.storage.load(self.table_name, safe_id)
        if data:
            return self._safe_from_dict(data)
        return None

    def require_safe(self, safe_id: str) -> SafeDeposit:
        safe = self.get_safe(safe_id)
        if safe is None:
            raise NotFound("Safe deposit", safe_id)
        return safe

    def get_user_safes(self, user_id: str, include_withdrawn: bool = True) -> List[SafeDeposit]:
        safes = [self._safe_from_dict(d) for d in self.storage.find(self.table_name, {"user_id": user_id})]
        if not include_withdrawn:
            safes = [s for s in safes if not s.is_withdrawn]
        return newest_first(safes)

    def find_pending_interest_updates(self, as_of: Optional[datetime] = None) -> List[SafeDeposit]:
        """Open deposits whose interest has not been posted, optionally only matured ones"""
        found = self.storage.find(self.table_name, {"interest_updated": False, "is_withdrawn": False})
        safes = [self._safe_from_dict(d) for d in found]
        if as_of is not None:
            safes = [s for s in safes if s.is_matured(as_of)]
        return safes

    def is_matured(self, safe_id: str, now: Optional[datetime] = None) -> bool:
        return self.require_safe(safe_id).is_matured(now)

    def _record_transfer(
        self,
        user_id: str,
        amount: Money,
        category: TransactionCategory,
        source: SubAccount,
        destination: SubAccount,
        safe_id: str,
        description: str
    ) -> None:
        """One completed entry per side: a DEBIT on source and a CREDIT on destination"""
        details = TransactionDetails(
            source_wallet=source.value,
            destination_wallet=destination.value,
            description=description,
        )
        for type, wallet in ((TransactionType.DEBIT, source), (TransactionType.CREDIT, destination)):
            self.ledger.record_completed(
                user_id=user_id,
                type=type,
                amount=amount,
                category=category,
                wallet=wallet,
                details=details,
                ref_number=safe_id,
            )

    def _save_safe(self, safe: SafeDeposit) -> None:
        self.storage.save(self.table_name, safe.safe_id, self._safe_to_dict(safe))

    def _safe_to_dict(self, safe: SafeDeposit) -> Dict:
        result = safe.to_dict()
        result['currency'] = safe.currency.code
        return result

    def _safe_from_dict(self, data: Dict) -> SafeDeposit:
        currency = Currency[data['currency']]
        return SafeDeposit(
            created_at=parse_datetime(data['created_at']),
            updated_at=parse_datetime(data['updated_at']),
            safe_id=data['safe_id'],
            user_id=data['user_id'],
            amount=Money(Decimal(data['amount']), currency),
            currency=currency,
            start_date=parse_datetime(data['start_date']),
            end_date=parse_datetime(data['end_date']),
            withdraw_date=parse_datetime(data.get('withdraw_date')),
            interest=Money(Decimal(data.get('interest') or "0"), currency),
            interest_updated=data.get('interest_updated', False),
            is_withdrawn=data.get('is_withdrawn', False),
        )
