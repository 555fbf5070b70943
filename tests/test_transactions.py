"""
Test suite for the transaction ledger

Entry creation, one-way status transitions, detail merging, filtered
lookups and completed-only aggregates.
"""

import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from wallet_core.allocator import IdentifierAllocator
from wallet_core.audit import AuditTrail, AuditEventType
from wallet_core.currency import Currency, Money
from wallet_core.errors import IllegalStateTransition, InvalidAmount, NotFound, ValidationError
from wallet_core.storage import InMemoryStorage
from wallet_core.transactions import (
    Transaction, TransactionCategory, TransactionDetails, TransactionLedger,
    TransactionStatus, TransactionType, cancel_transaction, complete_transaction, fail_transaction
)
from wallet_core.wallets import SubAccount


class TestTransitionFunctions:
    """Test the pure PENDING -> terminal transitions"""

    def make_transaction(self):
        now = datetime.now(timezone.utc)
        return Transaction(
            created_at=now,
            updated_at=now,
            transaction_id="TXN240315CABCD1234",
            user_id="user-1",
            type=TransactionType.CREDIT,
            amount=Money(Decimal('10'), Currency.INR),
            currency=Currency.INR,
            category=TransactionCategory.REFUND,
        )

    @pytest.mark.parametrize("command,status", [
        (complete_transaction, TransactionStatus.COMPLETED),
        (fail_transaction, TransactionStatus.FAILED),
        (cancel_transaction, TransactionStatus.CANCELLED),
    ])
    def test_pending_moves_to_terminal(self, command, status):
        txn = self.make_transaction()
        assert command(txn).status == status
        assert txn.status == TransactionStatus.PENDING

    @pytest.mark.parametrize("first", [complete_transaction, fail_transaction, cancel_transaction])
    @pytest.mark.parametrize("second", [complete_transaction, fail_transaction, cancel_transaction])
    def test_terminal_is_final(self, first, second):
        terminal = first(self.make_transaction())

        with pytest.raises(IllegalStateTransition):
            second(terminal)

    def test_amount_must_be_positive(self):
        now = datetime.now(timezone.utc)
        with pytest.raises(InvalidAmount):
            Transaction(
                created_at=now, updated_at=now, transaction_id="TXN1", user_id="u",
                type=TransactionType.DEBIT, amount=Money.zero(Currency.INR),
                currency=Currency.INR, category=TransactionCategory.FEE_CHARGE,
            )

    def test_details_merge_rejects_unknown_fields(self):
        details = TransactionDetails(party="Acme")

        assert details.merged(notes="hi") == TransactionDetails(party="Acme", notes="hi")
        with pytest.raises(ValidationError):
            details.merged(colour="blue")


class TestTransactionLedger:
    """Test ledger persistence and queries"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.audit_trail = AuditTrail(self.storage)
        self.allocator = IdentifierAllocator(self.storage)
        self.ledger = TransactionLedger(self.storage, self.allocator, self.audit_trail)

    def create(self, **overrides):
        params = dict(
            user_id="user-1",
            type=TransactionType.CREDIT,
            amount="100",
            category=TransactionCategory.WALLET_TOP_UP,
        )
        params.update(overrides)
        return self.ledger.create(**params)

    def test_create_is_pending(self):
        txn = self.create(details=TransactionDetails(party="Bank"), ref_number="UTR1")

        assert txn.status == TransactionStatus.PENDING
        assert txn.wallet == SubAccount.PRIMARY
        assert txn.amount.amount == Decimal('100.00')
        assert self.ledger.get_transaction(txn.transaction_id) == txn

    def test_identifier_encodes_type(self):
        credit_entry = self.create()
        debit_entry = self.create(type=TransactionType.DEBIT, category=TransactionCategory.ADMIN_DEDUCTION)

        assert credit_entry.transaction_id.startswith("TXN")
        assert credit_entry.transaction_id[9] == "C"
        assert debit_entry.transaction_id[9] == "D"

    @pytest.mark.parametrize("amount", ["0", "-1", "abc"])
    def test_create_rejects_bad_amounts(self, amount):
        with pytest.raises(InvalidAmount):
            self.create(amount=amount)
        assert self.storage.count("transactions") == 0

    def test_complete_then_fail_is_rejected(self):
        txn = self.create()
        completed = self.ledger.complete(txn.transaction_id)

        with pytest.raises(IllegalStateTransition):
            self.ledger.fail(txn.transaction_id, reason="late failure")

        stored = self.ledger.require_transaction(txn.transaction_id)
        assert stored.status == TransactionStatus.COMPLETED
        assert stored.details.notes is None
        assert completed == stored

    def test_fail_records_reason(self):
        txn = self.create()
        failed = self.ledger.fail(txn.transaction_id, reason="gateway timeout")

        assert failed.status == TransactionStatus.FAILED
        assert failed.details.notes == "gateway timeout"

    def test_cancel(self):
        txn = self.create()
        assert self.ledger.cancel(txn.transaction_id).status == TransactionStatus.CANCELLED

    def test_record_completed(self):
        txn = self.ledger.record_completed(
            "user-1", TransactionType.DEBIT, "5", TransactionCategory.FEE_CHARGE
        )
        assert txn.status == TransactionStatus.COMPLETED

        events = self.audit_trail.get_events_for_entity("transaction", txn.transaction_id)
        assert [e.event_type for e in events] == [
            AuditEventType.TRANSACTION_CREATED,
            AuditEventType.TRANSACTION_COMPLETED,
        ]

    def test_add_details(self):
        txn = self.create(details=TransactionDetails(party="Bank"))
        updated = self.ledger.add_details(txn.transaction_id, account="XX1234", gateway="razorpay")

        assert updated.details.party == "Bank"
        assert updated.details.account == "XX1234"
        assert self.ledger.require_transaction(txn.transaction_id).details.gateway == "razorpay"

    def test_add_details_on_terminal_entry_is_rejected(self):
        txn = self.create()
        self.ledger.complete(txn.transaction_id)

        with pytest.raises(IllegalStateTransition):
            self.ledger.add_details(txn.transaction_id, notes="too late")

    def test_missing_transaction(self):
        assert self.ledger.get_transaction("TXN000000CNOPE0000") is None
        with pytest.raises(NotFound):
            self.ledger.complete("TXN000000CNOPE0000")

    def test_user_transactions_newest_first_with_filters(self):
        first = self.create()
        second = self.create(category=TransactionCategory.REFUND)
        third = self.create()
        self.create(user_id="someone-else")

        # Spread creation times so ordering is deterministic
        base = datetime(2024, 1, 1, tzinfo=timezone.utc)
        for offset, txn in enumerate([first, second, third]):
            data = self.storage.load("transactions", txn.transaction_id)
            data["created_at"] = (base + timedelta(days=offset)).isoformat()
            self.storage.save("transactions", txn.transaction_id, data)

        ids = [t.transaction_id for t in self.ledger.get_user_transactions("user-1")]
        assert ids == [third.transaction_id, second.transaction_id, first.transaction_id]

        top_ups = self.ledger.get_user_transactions("user-1", category=TransactionCategory.WALLET_TOP_UP)
        assert [t.transaction_id for t in top_ups] == [third.transaction_id, first.transaction_id]

        limited = self.ledger.get_user_transactions("user-1", limit=1)
        assert [t.transaction_id for t in limited] == [third.transaction_id]

        windowed = self.ledger.get_user_transactions(
            "user-1", start_date=base + timedelta(hours=1), end_date=base + timedelta(days=1)
        )
        assert [t.transaction_id for t in windowed] == [second.transaction_id]

        in_range = self.ledger.find_by_date_range(base, base + timedelta(days=1))
        assert {t.transaction_id for t in in_range} == {first.transaction_id, second.transaction_id}

    def test_find_by_category_and_status(self):
        refund = self.create(category=TransactionCategory.REFUND)
        self.create()
        self.ledger.complete(refund.transaction_id)

        assert [t.transaction_id for t in self.ledger.find_by_category(TransactionCategory.REFUND)] == [
            refund.transaction_id
        ]
        assert len(self.ledger.find_by_status(TransactionStatus.PENDING)) == 1
        assert len(self.ledger.find_by_status(TransactionStatus.COMPLETED)) == 1

    def test_user_stats_count_completed_only(self):
        self.ledger.record_completed("user-1", TransactionType.CREDIT, "100", TransactionCategory.WALLET_TOP_UP)
        self.ledger.record_completed("user-1", TransactionType.CREDIT, "50", TransactionCategory.REWARDS)
        self.ledger.record_completed("user-1", TransactionType.DEBIT, "30", TransactionCategory.FEE_CHARGE)
        self.create(amount="999")
        failed = self.create(type=TransactionType.DEBIT, amount="500", category=TransactionCategory.ADMIN_DEDUCTION)
        self.ledger.fail(failed.transaction_id)

        stats = self.ledger.get_user_stats("user-1")

        assert stats.total_credit.amount == Decimal('150.00')
        assert stats.total_debit.amount == Decimal('30.00')
        assert stats.total_transactions == 3
        assert stats.credit_count == 2
        assert stats.debit_count == 1
        assert stats.net.amount == Decimal('120.00')

    def test_user_stats_empty(self):
        stats = self.ledger.get_user_stats("nobody")
        assert stats.total_credit.is_zero()
        assert stats.total_transactions == 0
