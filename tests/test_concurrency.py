"""
Concurrency tests

Identifier uniqueness under concurrent creation, serialized debits against
one wallet, and duplicate approvals racing each other.
"""

import threading
from decimal import Decimal
from datetime import datetime, timedelta, timezone

import pytest

from wallet_core.allocator import IdentifierAllocator, IdentifierKind, format_safe_id
from wallet_core.config import WalletCoreConfig
from wallet_core.errors import IllegalStateTransition, InsufficientFunds
from wallet_core.storage import InMemoryStorage, SQLiteStorage
from wallet_core.system import WalletSystem
from wallet_core.topups import TopUpMethod
from wallet_core.wallets import SubAccount


START = datetime(2024, 1, 1, tzinfo=timezone.utc)
END = START + timedelta(days=30)


def run_threads(target, count):
    """Start ``count`` threads on target(index); return (results, errors)"""
    results = []
    errors = []
    barrier = threading.Barrier(count)

    def worker(index):
        barrier.wait()
        try:
            results.append(target(index))
        except Exception as e:
            errors.append(e)

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(count)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    return results, errors


class TestConcurrentSafeCreation:
    """N concurrent creations yield N distinct gap-free identifiers"""

    def make_system(self, storage):
        system = WalletSystem(WalletCoreConfig(_env_file=None), storage=storage)
        for i in range(20):
            wallet = system.wallet_manager.create_wallet(f"user-{i}")
            system.wallet_manager.credit_wallet(wallet.wallet_id, SubAccount.PRIMARY, "100")
        return system

    @pytest.mark.parametrize("backend", ["memory", "sqlite"])
    def test_distinct_sequential_ids(self, backend, tmp_path):
        storage = InMemoryStorage() if backend == "memory" else SQLiteStorage(tmp_path / "wallet.db")
        system = self.make_system(storage)
        try:
            results, errors = run_threads(
                lambda i: system.safe_manager.create_safe(f"user-{i}", "10", START, END).safe_id, 20
            )

            assert errors == []
            assert sorted(results) == [format_safe_id(n) for n in range(1, 21)]
        finally:
            system.close()

    def test_rollover_under_concurrency(self):
        storage = InMemoryStorage()
        storage.set_counter(IdentifierAllocator.SAFE_COUNTER, 9990)
        allocator = IdentifierAllocator(storage)

        results, errors = run_threads(lambda i: allocator.allocate(IdentifierKind.SAFE_DEPOSIT), 20)

        assert errors == []
        four_digit = sorted(r for r in results if len(r) == 6)
        eight_digit = sorted(r for r in results if len(r) == 10)
        assert four_digit == [f"SW{n:04d}" for n in range(9991, 10000)]
        assert eight_digit == [f"SW{n:08d}" for n in range(1, 12)]


class TestConcurrentBalanceMutation:

    def setup_method(self):
        self.system = WalletSystem(WalletCoreConfig(_env_file=None), storage=InMemoryStorage())
        self.wallet = self.system.wallet_manager.create_wallet("user-1")
        self.system.wallet_manager.credit_wallet(self.wallet.wallet_id, SubAccount.PRIMARY, "100")

    def teardown_method(self):
        self.system.close()

    def test_debits_never_overdraw(self):
        results, errors = run_threads(
            lambda i: self.system.wallet_manager.debit_wallet(self.wallet.wallet_id, SubAccount.PRIMARY, "10"),
            30
        )

        assert len(results) == 10
        assert len(errors) == 20
        assert all(isinstance(e, InsufficientFunds) for e in errors)

        wallet = self.system.wallet_manager.require_wallet(self.wallet.wallet_id)
        assert wallet.primary_balance.amount == Decimal('0.00')

    def test_duplicate_approvals_credit_once(self):
        request = self.system.top_up_manager.create_request("user-1", "500", TopUpMethod.UPI)

        results, errors = run_threads(
            lambda i: self.system.top_up_manager.approve(request.request_id), 10
        )

        assert len(results) == 1
        assert len(errors) == 9
        assert all(isinstance(e, IllegalStateTransition) for e in errors)

        wallet = self.system.wallet_manager.require_wallet(self.wallet.wallet_id)
        assert wallet.primary_balance.amount == Decimal('600.00')
        assert self.system.audit_trail.verify_integrity()["valid"]
