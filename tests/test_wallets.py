"""
Test suite for wallet accounts

Covers the pure credit/debit commands, the non-negativity invariant and
the WalletManager persistence layer.
"""

import pytest
from datetime import datetime, timezone
from decimal import Decimal

from hypothesis import given, settings, strategies as st

from wallet_core.allocator import IdentifierAllocator
from wallet_core.audit import AuditTrail, AuditEventType
from wallet_core.currency import Currency, Money
from wallet_core.errors import DuplicateIdentifier, InsufficientFunds, InvalidAmount, NotFound
from wallet_core.storage import InMemoryStorage
from wallet_core.wallets import (
    SubAccount, Wallet, WalletManager, WalletStatus, credit, debit, set_status, total_balance
)


def make_wallet(primary="0", safe="0"):
    now = datetime.now(timezone.utc)
    return Wallet(
        created_at=now,
        updated_at=now,
        wallet_id="W2403TEST0001",
        user_id="user-1",
        currency=Currency.INR,
        primary_balance=Money(Decimal(primary), Currency.INR),
        safe_balance=Money(Decimal(safe), Currency.INR),
    )


class TestWalletCommands:
    """Test the pure balance commands"""

    def test_credit_returns_new_value(self):
        wallet = make_wallet()
        credited = credit(wallet, SubAccount.PRIMARY, "100")

        assert credited.primary_balance.amount == Decimal('100.00')
        assert wallet.primary_balance.amount == Decimal('0.00')

    def test_debit_exact_balance(self):
        wallet = make_wallet(primary="50")
        assert debit(wallet, SubAccount.PRIMARY, "50").primary_balance.is_zero()

    def test_debit_insufficient(self):
        wallet = make_wallet(primary="10", safe="1000")

        with pytest.raises(InsufficientFunds) as exc_info:
            debit(wallet, SubAccount.PRIMARY, "10.01")

        assert exc_info.value.available.amount == Decimal('10.00')
        assert exc_info.value.requested.amount == Decimal('10.01')

    @pytest.mark.parametrize("amount", ["0", "-5", "abc", 0])
    def test_non_positive_or_malformed_amounts(self, amount):
        wallet = make_wallet(primary="10")

        with pytest.raises(InvalidAmount):
            credit(wallet, SubAccount.PRIMARY, amount)
        with pytest.raises(InvalidAmount):
            debit(wallet, SubAccount.PRIMARY, amount)

    @pytest.mark.parametrize("amount", ["10.005", "0.004"])
    def test_sub_unit_amounts_are_rejected(self, amount):
        wallet = make_wallet(primary="1000")

        with pytest.raises(InvalidAmount, match="decimal places"):
            credit(wallet, SubAccount.PRIMARY, amount)
        with pytest.raises(InvalidAmount, match="decimal places"):
            debit(wallet, SubAccount.PRIMARY, amount)

    def test_total_balance(self):
        assert total_balance(make_wallet(primary="10.50", safe="4.50")).amount == Decimal('15.00')

    def test_set_status_leaves_balances(self):
        wallet = make_wallet(primary="10", safe="5")
        frozen = set_status(wallet, WalletStatus.FROZEN)

        assert frozen.status == WalletStatus.FROZEN
        assert frozen.total_balance == wallet.total_balance

    def test_negative_balance_cannot_be_constructed(self):
        with pytest.raises(InvalidAmount):
            make_wallet(primary="-1")

    @settings(max_examples=200)
    @given(st.lists(st.tuples(
        st.sampled_from(["credit", "debit"]),
        st.sampled_from(list(SubAccount)),
        st.decimals(min_value=Decimal('0.01'), max_value=Decimal('5000'), places=2,
                    allow_nan=False, allow_infinity=False),
    ), max_size=40))
    def test_balances_never_go_negative(self, operations):
        wallet = make_wallet()

        for operation, sub_account, amount in operations:
            before = wallet.balance(sub_account)
            other = SubAccount.SAFE if sub_account is SubAccount.PRIMARY else SubAccount.PRIMARY
            other_before = wallet.balance(other)

            if operation == "credit":
                wallet = credit(wallet, sub_account, amount)
                assert wallet.balance(sub_account).amount == before.amount + amount
            else:
                try:
                    wallet = debit(wallet, sub_account, amount)
                    assert wallet.balance(sub_account).amount == before.amount - amount
                except InsufficientFunds:
                    assert before.amount < amount
                    assert wallet.balance(sub_account) == before

            assert wallet.balance(other) == other_before
            assert not wallet.primary_balance.is_negative()
            assert not wallet.safe_balance.is_negative()


class TestWalletManager:
    """Test wallet persistence and lookups"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.audit_trail = AuditTrail(self.storage)
        self.allocator = IdentifierAllocator(self.storage)
        self.manager = WalletManager(self.storage, self.allocator, self.audit_trail)

    def test_create_wallet(self):
        wallet = self.manager.create_wallet("user-1")

        assert wallet.wallet_id.startswith("W")
        assert wallet.status == WalletStatus.ACTIVE
        assert wallet.primary_balance.is_zero()
        assert wallet.safe_balance.is_zero()
        assert self.manager.get_wallet(wallet.wallet_id) == wallet

        events = self.audit_trail.get_events_for_entity("wallet", wallet.wallet_id)
        assert [e.event_type for e in events] == [AuditEventType.WALLET_CREATED]

    def test_one_wallet_per_user(self):
        self.manager.create_wallet("user-1")

        with pytest.raises(DuplicateIdentifier) as exc_info:
            self.manager.create_wallet("user-1")

        assert exc_info.value.field == "user_id"
        assert self.storage.count("wallets") == 1

    def test_credit_then_overdraw(self):
        """Balance 0, credit 100, debit 150 fails and leaves 100"""
        wallet = self.manager.create_wallet("user-1")

        credited = self.manager.credit_wallet(wallet.wallet_id, SubAccount.PRIMARY, "100")
        assert credited.primary_balance.amount == Decimal('100.00')

        with pytest.raises(InsufficientFunds):
            self.manager.debit_wallet(wallet.wallet_id, SubAccount.PRIMARY, "150")

        stored = self.manager.require_wallet(wallet.wallet_id)
        assert stored.primary_balance.amount == Decimal('100.00')
        assert stored.safe_balance.is_zero()

    def test_sub_unit_credit_and_debit_leave_balance_exact(self):
        wallet = self.manager.create_wallet("user-1")
        self.manager.credit_wallet(wallet.wallet_id, SubAccount.PRIMARY, "1000")

        with pytest.raises(InvalidAmount):
            self.manager.credit_wallet(wallet.wallet_id, SubAccount.PRIMARY, "10.005")
        with pytest.raises(InvalidAmount):
            self.manager.debit_wallet(wallet.wallet_id, SubAccount.PRIMARY, "0.004")

        stored = self.manager.require_wallet(wallet.wallet_id)
        assert stored.primary_balance.amount == Decimal('1000.00')

    def test_failed_debit_writes_no_audit_event(self):
        wallet = self.manager.create_wallet("user-1")

        with pytest.raises(InsufficientFunds):
            self.manager.debit_wallet(wallet.wallet_id, SubAccount.SAFE, "1")

        events = self.audit_trail.get_events_for_entity("wallet", wallet.wallet_id)
        assert [e.event_type for e in events] == [AuditEventType.WALLET_CREATED]

    def test_credit_and_debit_are_audited(self):
        wallet = self.manager.create_wallet("user-1")
        self.manager.credit_wallet(wallet.wallet_id, SubAccount.SAFE, "25", reference="REF1")
        self.manager.debit_wallet(wallet.wallet_id, SubAccount.SAFE, "5")

        events = self.audit_trail.get_events_for_entity("wallet", wallet.wallet_id)
        assert [e.event_type for e in events] == [
            AuditEventType.WALLET_CREATED,
            AuditEventType.WALLET_CREDITED,
            AuditEventType.WALLET_DEBITED,
        ]
        assert events[1].metadata["reference"] == "REF1"
        assert events[2].metadata["balance"] == "20.00"

    def test_lookup_by_user(self):
        wallet = self.manager.create_wallet("user-1")

        assert self.manager.get_wallet_by_user("user-1").wallet_id == wallet.wallet_id
        assert self.manager.get_wallet_by_user("nobody") is None
        with pytest.raises(NotFound):
            self.manager.require_wallet_by_user("nobody")
        with pytest.raises(NotFound):
            self.manager.require_wallet("W0000MISSING")

    def test_status_changes(self):
        wallet = self.manager.create_wallet("user-1")
        self.manager.credit_wallet(wallet.wallet_id, SubAccount.PRIMARY, "10")

        blocked = self.manager.block(wallet.wallet_id, reason="chargeback")
        assert blocked.status == WalletStatus.BLOCKED
        assert blocked.primary_balance.amount == Decimal('10.00')
        assert self.manager.find_active_wallets() == []

        assert self.manager.freeze(wallet.wallet_id).status == WalletStatus.FROZEN
        assert self.manager.activate(wallet.wallet_id).status == WalletStatus.ACTIVE
        assert len(self.manager.find_active_wallets()) == 1

    def test_find_wallets_above_balance(self):
        rich = self.manager.create_wallet("rich")
        self.manager.create_wallet("poor")
        self.manager.credit_wallet(rich.wallet_id, SubAccount.PRIMARY, "600")
        self.manager.credit_wallet(rich.wallet_id, SubAccount.SAFE, "400")

        found = self.manager.find_wallets_above_balance("1000")
        assert [w.user_id for w in found] == ["rich"]
