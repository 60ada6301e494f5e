"""
Test suite for the transfer engine

Covers balance conservation, rejection paths, rollback on storage faults,
the ascending lock order and concurrent transfers over shared accounts.
"""

import threading
import pytest
from contextlib import contextmanager
from datetime import datetime, timezone

from minibank.accounts import AccountManager
from minibank.errors import (
    AccountNotFoundError, InsufficientFundsError, InvalidAmountError,
    InvalidInputError, SelfTransferError, StorageError
)
from minibank.passwords import PasswordHasher
from minibank.storage import InMemoryStorage, SQLiteStorage
from minibank.transfers import TransferEngine, TransferResult, lock_order


FAST_HASHER = PasswordHasher(n=1024)


def insert_account(storage, number, balance):
    return storage.insert_account({
        "first_name": "Test",
        "last_name": str(number),
        "number": number,
        "encrypted_password": "scrypt$1024$8$1$salt$hash",
        "balance": balance,
        "created_at": datetime.now(timezone.utc),
    })


def balance_of(storage, number):
    return storage.find_account_by_number(number)["balance"]


class RecordingAccountManager(AccountManager):
    """Records the account numbers passed to get_for_update"""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.lock_requests = []

    def get_for_update(self, txn, number):
        self.lock_requests.append(number)
        return super().get_for_update(txn, number)


class NoTransactionStorage(InMemoryStorage):
    """Fails the test if a transaction is ever opened"""

    def transaction(self):
        raise AssertionError("transaction opened for a rejected transfer")


class FlakyTransaction:
    """Passes calls through but fails every credit"""

    def __init__(self, txn):
        self._txn = txn

    def get_for_update(self, number):
        return self._txn.get_for_update(number)

    def adjust_balance(self, account_id, delta):
        if delta > 0:
            raise RuntimeError("connection reset by peer")
        self._txn.adjust_balance(account_id, delta)


class FlakyStorage(InMemoryStorage):

    @contextmanager
    def transaction(self):
        with super().transaction() as txn:
            yield FlakyTransaction(txn)


class TestLockOrder:
    """The lock order is independent of transfer direction"""

    def test_ascending_for_both_directions(self):
        assert lock_order(5, 9) == (5, 9)
        assert lock_order(9, 5) == (5, 9)

    def test_equal_numbers(self):
        assert lock_order(7, 7) == (7, 7)

    def test_numeric_not_lexicographic(self):
        assert lock_order(10, 9) == (9, 10)
        assert lock_order(999_999_999_999, 100) == (100, 999_999_999_999)


class TestTransferEngine:
    """Test transfer processing over in-memory storage"""

    def make_storage(self, tmp_path):
        return InMemoryStorage(lock_timeout=5.0)

    @pytest.fixture(autouse=True)
    def setup_engine(self, tmp_path):
        self.storage = self.make_storage(tmp_path)
        self.storage.initialize()
        self.manager = RecordingAccountManager(self.storage, FAST_HASHER)
        self.engine = TransferEngine(self.manager)
        insert_account(self.storage, 5, 100)
        insert_account(self.storage, 9, 40)
        yield
        self.storage.close()

    def test_transfer_moves_money(self):
        result = self.engine.transfer(5, 9, 30)

        assert isinstance(result, TransferResult)
        assert result.from_balance == 70
        assert result.to_balance == 70
        assert balance_of(self.storage, 5) == 70
        assert balance_of(self.storage, 9) == 70

    def test_total_is_conserved(self):
        for from_number, to_number, amount in [(5, 9, 10), (9, 5, 25), (5, 9, 100), (9, 5, 1)]:
            self.engine.transfer(from_number, to_number, amount)
        assert balance_of(self.storage, 5) + balance_of(self.storage, 9) == 140

    def test_transfer_entire_balance(self):
        self.engine.transfer(9, 5, 40)
        assert balance_of(self.storage, 9) == 0
        assert balance_of(self.storage, 5) == 140

    def test_insufficient_funds(self):
        """Amount above the source balance fails and changes nothing"""
        with pytest.raises(InsufficientFundsError):
            self.engine.transfer(9, 5, 41)

        assert balance_of(self.storage, 5) == 100
        assert balance_of(self.storage, 9) == 40

    @pytest.mark.parametrize("amount", [0, -1, -100])
    def test_non_positive_amount(self, amount):
        with pytest.raises(InvalidAmountError):
            self.engine.transfer(5, 9, amount)
        assert balance_of(self.storage, 5) == 100

    @pytest.mark.parametrize("amount", [1.5, "10", True, None])
    def test_non_integer_amount(self, amount):
        with pytest.raises(InvalidAmountError):
            self.engine.transfer(5, 9, amount)

    def test_rejected_amount_never_opens_transaction(self):
        engine = TransferEngine(AccountManager(NoTransactionStorage(), FAST_HASHER))
        with pytest.raises(InvalidAmountError):
            engine.transfer(5, 9, 0)

    def test_self_transfer_rejected(self):
        with pytest.raises(SelfTransferError):
            self.engine.transfer(5, 5, 10)
        assert isinstance(SelfTransferError("x"), InvalidInputError)
        assert balance_of(self.storage, 5) == 100
        assert self.manager.lock_requests == []

    @pytest.mark.parametrize("from_number,to_number", [
        ("5", "9"), ("5", 9), (5, "9"), (5.0, 9), (True, 9), (5, None)
    ])
    def test_non_integer_account_numbers(self, from_number, to_number):
        """Numbers must be ints; nothing is debited or credited otherwise"""
        with pytest.raises(InvalidInputError):
            self.engine.transfer(from_number, to_number, 30)

        assert balance_of(self.storage, 5) == 100
        assert balance_of(self.storage, 9) == 40
        assert self.manager.lock_requests == []

    def test_string_self_transfer_rejected(self):
        with pytest.raises(InvalidInputError):
            self.engine.transfer("5", 5, 10)
        assert balance_of(self.storage, 5) == 100

    def test_unknown_destination(self):
        with pytest.raises(AccountNotFoundError):
            self.engine.transfer(5, 12345, 10)
        assert balance_of(self.storage, 5) == 100

    def test_unknown_source(self):
        with pytest.raises(AccountNotFoundError):
            self.engine.transfer(1, 9, 10)
        assert balance_of(self.storage, 9) == 40

    def test_lock_request_order(self):
        """Rows are locked smaller number first for both directions"""
        self.engine.transfer(5, 9, 10)
        assert self.manager.lock_requests == [5, 9]

        self.manager.lock_requests.clear()
        self.engine.transfer(9, 5, 10)
        assert self.manager.lock_requests == [5, 9]

    def test_lock_order_concurrent_opposite_directions(self):
        barrier = threading.Barrier(2)
        errors = []

        def run(from_number, to_number):
            try:
                barrier.wait()
                self.engine.transfer(from_number, to_number, 10)
            except Exception as e:
                errors.append(e)

        threads = [
            threading.Thread(target=run, args=(5, 9)),
            threading.Thread(target=run, args=(9, 5)),
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(10)

        assert errors == []
        # Each transfer requested 5 then 9; requests may interleave between threads
        assert sorted(self.manager.lock_requests) == [5, 5, 9, 9]
        assert self.manager.lock_requests[0] == 5
        assert balance_of(self.storage, 5) == 100
        assert balance_of(self.storage, 9) == 40

    def test_concurrent_transfers_conserve_total(self):
        """N alternating transfers never deadlock and keep the sum"""
        n = 40
        amount = 30
        barrier = threading.Barrier(n)
        outcomes = []
        outcomes_lock = threading.Lock()

        def run(index):
            from_number, to_number = (5, 9) if index % 2 == 0 else (9, 5)
            barrier.wait()
            try:
                self.engine.transfer(from_number, to_number, amount)
                outcome = ("ok", from_number)
            except InsufficientFundsError:
                outcome = ("insufficient", from_number)
            except Exception as e:
                outcome = ("error", repr(e))
            with outcomes_lock:
                outcomes.append(outcome)

        threads = [threading.Thread(target=run, args=(i,)) for i in range(n)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(30)

        assert not any(thread.is_alive() for thread in threads), "transfers deadlocked"
        assert len(outcomes) == n
        assert [o for o in outcomes if o[0] == "error"] == []

        successes = [o for o in outcomes if o[0] == "ok"]
        insufficient = [o for o in outcomes if o[0] == "insufficient"]
        assert len(successes) == n - len(insufficient)

        from_5 = sum(1 for o in successes if o[1] == 5)
        from_9 = sum(1 for o in successes if o[1] == 9)
        assert balance_of(self.storage, 5) == 100 - amount * from_5 + amount * from_9
        assert balance_of(self.storage, 9) == 40 + amount * from_5 - amount * from_9
        assert balance_of(self.storage, 5) + balance_of(self.storage, 9) == 140
        assert balance_of(self.storage, 5) >= 0
        assert balance_of(self.storage, 9) >= 0


class TestTransferEngineSQLite(TestTransferEngine):
    """Same transfer behaviour over a SQLite file"""

    def make_storage(self, tmp_path):
        return SQLiteStorage(tmp_path / "transfers.db", lock_timeout=10.0)


class TestTransferFailures:
    """Storage faults and lock waits roll the whole transfer back"""

    def test_storage_fault_rolls_back(self):
        storage = FlakyStorage(lock_timeout=1.0)
        insert_account(storage, 5, 100)
        insert_account(storage, 9, 40)
        engine = TransferEngine(AccountManager(storage, FAST_HASHER))

        with pytest.raises(StorageError):
            engine.transfer(5, 9, 30)

        assert balance_of(storage, 5) == 100
        assert balance_of(storage, 9) == 40

        # Row locks were released by the rollback
        with storage.transaction() as txn:
            assert txn.get_for_update(5).balance == 100

    def test_lock_timeout_rolls_back(self):
        storage = InMemoryStorage(lock_timeout=0.2)
        insert_account(storage, 5, 100)
        insert_account(storage, 9, 40)
        engine = TransferEngine(AccountManager(storage, FAST_HASHER))
        errors = []

        def run():
            try:
                engine.transfer(5, 9, 30)
            except StorageError as e:
                errors.append(e)

        with storage.transaction() as txn:
            txn.get_for_update(9)
            thread = threading.Thread(target=run)
            thread.start()
            thread.join(5)

        assert len(errors) == 1
        assert balance_of(storage, 5) == 100
        assert balance_of(storage, 9) == 40

        # Lock on 5 taken by the timed out transfer was released
        engine.transfer(5, 9, 30)
        assert balance_of(storage, 5) == 70

    def test_disjoint_pairs_do_not_block(self):
        """A transfer between other accounts proceeds while a pair is locked"""
        storage = InMemoryStorage(lock_timeout=0.5)
        for number, balance in [(1, 50), (2, 0), (3, 50), (4, 0)]:
            insert_account(storage, number, balance)
        engine = TransferEngine(AccountManager(storage, FAST_HASHER))
        results = []

        with storage.transaction() as txn:
            txn.get_for_update(1)
            txn.get_for_update(2)
            thread = threading.Thread(target=lambda: results.append(engine.transfer(3, 4, 20)))
            thread.start()
            thread.join(5)

        assert len(results) == 1
        assert balance_of(storage, 3) == 30
        assert balance_of(storage, 4) == 20
        assert balance_of(storage, 1) == 50
