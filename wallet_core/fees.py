"""
Fee Schedule Module

One fee schedule per payment type, either a flat amount or a percentage of
the payment clamped to a floor and (unless any_upper_limit is set) a cap.
Resolution has no persistence side effects.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional

from .allocator import IdentifierAllocator, IdentifierKind
from .audit import AuditTrail, AuditEventType
from .currency import Currency, Money, parse_amount
from .errors import InvalidAmount, NotFound, ValidationError
from .logging_config import get_logger, log_action
from .storage import StorageInterface, StorageRecord, parse_datetime


class PaymentType(Enum):
    CARD = "CARD"
    BANK_TRANSFER = "BANK_TRANSFER"
    OTHERS = "OTHERS"

    @property
    def display_name(self) -> str:
        return self.value.replace("_", " ").title()


class FeeType(Enum):
    FLAT = "FLAT"
    PERCENTAGE = "PERCENTAGE"


@dataclass
class FeeSchedule(StorageRecord):
    """
    Fee configuration for a payment type.

    ``fee`` is a currency amount for FLAT schedules and a percentage for
    PERCENTAGE ones. ``max_amount`` of None means no cap.
    """
    fee_id: str
    payment_type: PaymentType
    fee_type: FeeType
    fee: Decimal
    min_amount: Money
    max_amount: Optional[Money] = None
    any_upper_limit: bool = False

    def __post_init__(self):
        if self.fee < 0:
            raise ValidationError("Fee cannot be negative")
        if self.fee_type == FeeType.PERCENTAGE and self.fee > 100:
            raise ValidationError("Percentage fee cannot exceed 100")
        if self.min_amount.is_negative():
            raise ValidationError("Fee floor cannot be negative")
        if self.max_amount is not None and self.max_amount < self.min_amount:
            raise ValidationError("Fee cap cannot be below the fee floor")


def calculate_fee(schedule: FeeSchedule, amount: Money) -> Money:
    """
    Fee owed on ``amount`` under ``schedule``.

    FLAT returns the configured amount. PERCENTAGE computes amount * fee / 100
    and clamps it to [min_amount, max_amount]; with any_upper_limit only the
    floor applies.
    """
    if amount.is_negative():
        raise InvalidAmount("Cannot calculate a fee on a negative amount")

    if schedule.fee_type == FeeType.FLAT:
        return Money(schedule.fee, amount.currency)

    fee = amount * (schedule.fee / Decimal('100'))
    if fee < schedule.min_amount:
        fee = schedule.min_amount
    if not schedule.any_upper_limit and schedule.max_amount is not None and fee > schedule.max_amount:
        fee = schedule.max_amount
    return fee


class FeeScheduleLookup:
    """Stores fee schedules and resolves fees for payments"""

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
        self.table_name = "fee_schedules"
        self.logger = get_logger("wallet_core.fees")

    def add_schedule(
        self,
        payment_type: PaymentType,
        fee_type: FeeType,
        fee,
        min_amount="0",
        max_amount=None,
        any_upper_limit: bool = False
    ) -> FeeSchedule:
        """
        Seed the schedule for a payment type.

        Raises:
            DuplicateIdentifier: If the payment type already has a schedule
            ValidationError: For negative fees or a cap below the floor
        """
        try:
            fee_value = Decimal(str(fee))
        except ArithmeticError:
            raise InvalidAmount(f"Cannot convert {fee!r} to a fee")
        if not fee_value.is_finite():
            raise InvalidAmount(f"Fee must be finite, got {fee!r}")
        floor = parse_amount(min_amount, self.currency)
        cap = parse_amount(max_amount, self.currency) if max_amount is not None else None
        created = {}

        def write(fee_id: str) -> None:
            now = datetime.now(timezone.utc)
            schedule = FeeSchedule(
                created_at=now,
                updated_at=now,
                fee_id=fee_id,
                payment_type=payment_type,
                fee_type=fee_type,
                fee=fee_value,
                min_amount=floor,
                max_amount=cap,
                any_upper_limit=any_upper_limit,
            )
            self.storage.insert(
                self.table_name, fee_id, schedule.to_dict(), unique_fields=("payment_type",)
            )
            created['schedule'] = schedule

        with self.storage.atomic():
            self.allocator.allocate_and_insert(IdentifierKind.FEE, write)
            schedule = created['schedule']
            self.audit_trail.log_event(
                event_type=AuditEventType.FEE_SCHEDULE_CREATED,
                entity_type="fee_schedule",
                entity_id=schedule.fee_id,
                metadata={
                    "payment_type": payment_type.value,
                    "fee_type": fee_type.value,
                    "fee": str(fee_value),
                }
            )

        log_action(
            self.logger, "info", f"Fee schedule created for {payment_type.value}",
            action="add_fee_schedule", resource=f"fee:{schedule.fee_id}",
            extra={"fee_type": fee_type.value, "fee": str(fee_value)}
        )
        return schedule

    def get_schedule(self, payment_type: PaymentType) -> FeeSchedule:
        found = self.storage.find(self.table_name, {"payment_type": payment_type.value})
        if not found:
            raise NotFound("Fee schedule for", payment_type.value)
        return self._schedule_from_dict(found[0])

    def list_schedules(self) -> List[FeeSchedule]:
        return [self._schedule_from_dict(data) for data in self.storage.load_all(self.table_name)]

    def resolve(self, payment_type: PaymentType, amount) -> Money:
        """Fee owed for a payment of ``amount``"""
        money = parse_amount(amount, self.currency)
        return calculate_fee(self.get_schedule(payment_type), money)

    def _schedule_from_dict(self, data: Dict) -> FeeSchedule:
        max_amount = data.get('max_amount')
        return FeeSchedule(
            created_at=parse_datetime(data['created_at']),
            updated_at=parse_datetime(data['updated_at']),
            fee_id=data['fee_id'],
            payment_type=PaymentType(data['payment_type']),
            fee_type=FeeType(data['fee_type']),
            fee=Decimal(data['fee']),
            min_amount=Money(Decimal(data['min_amount']), self.currency),
            max_amount=Money(Decimal(max_amount), self.currency) if max_amount is not None else None,
            any_upper_limit=data.get('any_upper_limit', False),
        )
