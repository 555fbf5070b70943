"""
Test suite for fee schedules

Flat and percentage fees, floor and cap clamping, and schedule seeding.
"""

import pytest
from datetime import datetime, timezone
from decimal import Decimal

from wallet_core.allocator import IdentifierAllocator
from wallet_core.audit import AuditTrail
from wallet_core.currency import Currency, Money
from wallet_core.errors import DependencyUnavailable, DuplicateIdentifier, NotFound, ValidationError
from wallet_core.fees import FeeSchedule, FeeScheduleLookup, FeeType, PaymentType, calculate_fee
from wallet_core.storage import InMemoryStorage, SQLiteStorage


def inr(value):
    return Money(Decimal(value), Currency.INR)


def make_schedule(fee_type=FeeType.PERCENTAGE, fee="2", min_amount="5", max_amount="50",
                  any_upper_limit=False):
    now = datetime.now(timezone.utc)
    return FeeSchedule(
        created_at=now,
        updated_at=now,
        fee_id="FEE240315ABCD1234",
        payment_type=PaymentType.CARD,
        fee_type=fee_type,
        fee=Decimal(fee),
        min_amount=inr(min_amount),
        max_amount=inr(max_amount) if max_amount is not None else None,
        any_upper_limit=any_upper_limit,
    )


class TestCalculateFee:
    """Test fee arithmetic"""

    def test_percentage_within_bounds(self):
        assert calculate_fee(make_schedule(), inr("1000")) == inr("20")

    def test_percentage_below_floor(self):
        assert calculate_fee(make_schedule(), inr("100")) == inr("5")

    def test_percentage_above_cap(self):
        assert calculate_fee(make_schedule(), inr("10000")) == inr("50")

    def test_any_upper_limit_keeps_only_floor(self):
        schedule = make_schedule(any_upper_limit=True)

        assert calculate_fee(schedule, inr("10000")) == inr("200")
        assert calculate_fee(schedule, inr("100")) == inr("5")

    def test_no_cap(self):
        assert calculate_fee(make_schedule(max_amount=None), inr("10000")) == inr("200")

    def test_flat(self):
        schedule = make_schedule(fee_type=FeeType.FLAT, fee="15")

        assert calculate_fee(schedule, inr("10")) == inr("15")
        assert calculate_fee(schedule, inr("100000")) == inr("15")

    def test_percentage_rounds_to_minor_units(self):
        schedule = make_schedule(fee="1.75", min_amount="0", max_amount=None)
        assert calculate_fee(schedule, inr("33.33")) == inr("0.58")

    def test_invalid_schedules(self):
        with pytest.raises(ValidationError):
            make_schedule(fee="-1")
        with pytest.raises(ValidationError):
            make_schedule(fee="101")
        with pytest.raises(ValidationError):
            make_schedule(min_amount="60", max_amount="50")


class TestFeeScheduleLookup:
    """Test schedule storage and resolution"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.audit_trail = AuditTrail(self.storage)
        self.allocator = IdentifierAllocator(self.storage)
        self.lookup = FeeScheduleLookup(self.storage, self.allocator, self.audit_trail)

    def test_add_and_resolve(self):
        schedule = self.lookup.add_schedule(
            PaymentType.CARD, FeeType.PERCENTAGE, "2", min_amount="5", max_amount="50"
        )

        assert schedule.fee_id.startswith("FEE")
        assert self.lookup.resolve(PaymentType.CARD, "1000") == inr("20")
        assert self.lookup.resolve(PaymentType.CARD, "100") == inr("5")
        assert self.lookup.get_schedule(PaymentType.CARD) == schedule

    def test_one_schedule_per_payment_type(self):
        self.lookup.add_schedule(PaymentType.BANK_TRANSFER, FeeType.FLAT, "10")

        with pytest.raises(DuplicateIdentifier):
            self.lookup.add_schedule(PaymentType.BANK_TRANSFER, FeeType.FLAT, "12")

        assert len(self.lookup.list_schedules()) == 1

    def test_missing_schedule(self):
        with pytest.raises(NotFound):
            self.lookup.resolve(PaymentType.OTHERS, "100")

    def test_resolve_on_closed_storage(self):
        self.lookup.add_schedule(PaymentType.CARD, FeeType.FLAT, "10")
        self.storage.close()

        with pytest.raises(DependencyUnavailable):
            self.lookup.resolve(PaymentType.CARD, "100")

    def test_resolve_on_closed_sqlite_storage(self, tmp_path):
        storage = SQLiteStorage(tmp_path / "fees.db")
        lookup = FeeScheduleLookup(storage, IdentifierAllocator(storage), AuditTrail(storage))
        lookup.add_schedule(PaymentType.CARD, FeeType.FLAT, "10")
        storage.close()

        with pytest.raises(DependencyUnavailable):
            lookup.resolve(PaymentType.CARD, "100")

    def test_cap_survives_storage_round_trip(self):
        self.lookup.add_schedule(PaymentType.OTHERS, FeeType.PERCENTAGE, "1", any_upper_limit=True)

        schedule = self.lookup.get_schedule(PaymentType.OTHERS)
        assert schedule.max_amount is None
        assert schedule.any_upper_limit is True
