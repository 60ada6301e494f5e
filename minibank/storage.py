"""
Storage Backend Module

Provides the abstract account store and implementations for in-memory
(testing), SQLite (single node persistence) and PostgreSQL (production).

Every backend exposes a ``transaction()`` context manager yielding a
StorageTransaction whose ``get_for_update`` takes an exclusive lock on one
account row until the transaction commits or rolls back. The transfer
engine builds its check-then-act sequence on that primitive.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Union
from datetime import datetime, timezone
from dataclasses import dataclass
from pathlib import Path
from contextlib import contextmanager
import sqlite3
import threading

from .errors import (
    ConfigurationError, DuplicateAccountNumberError, StorageError
)


ACCOUNT_TABLE = "account"
ACCOUNT_COLUMNS = (
    "id", "first_name", "last_name", "number",
    "encrypted_password", "balance", "created_at"
)
# Balance is absent: it only changes through StorageTransaction.adjust_balance
PROFILE_COLUMNS = ("first_name", "last_name", "encrypted_password")


@dataclass(frozen=True)
class LockedAccount:
    """Internal id and balance of a row locked inside a transaction"""
    id: int
    balance: int


class StorageTransaction(ABC):
    """A unit of work owned by a single caller for its whole duration"""

    @abstractmethod
    def get_for_update(self, number: int) -> Optional[LockedAccount]:
        """Lock the account row with this number and return its id and balance"""
        pass

    @abstractmethod
    def adjust_balance(self, account_id: int, delta: int) -> None:
        """Add delta (possibly negative) to the balance of a locked row"""
        pass

    @abstractmethod
    def update_account(self, account_id: int, data: Dict[str, Any]) -> None:
        """Overwrite the profile columns of a locked row"""
        pass


class StorageInterface(ABC):
    """Abstract interface for account storage backends"""

    @abstractmethod
    def initialize(self) -> None:
        """Create the account table if it does not exist"""
        pass

    @abstractmethod
    def insert_account(self, data: Dict[str, Any]) -> int:
        """Insert an account row and return its store-assigned id"""
        pass

    @abstractmethod
    def update_account(self, account_id: int, data: Dict[str, Any]) -> bool:
        """Update the profile columns of an account row; the balance is left as stored"""
        pass

    @abstractmethod
    def delete_account(self, account_id: int) -> bool:
        """Delete an account row"""
        pass

    @abstractmethod
    def load_account(self, account_id: int) -> Optional[Dict[str, Any]]:
        """Load an account row by id"""
        pass

    @abstractmethod
    def find_account_by_number(self, number: int) -> Optional[Dict[str, Any]]:
        """Load an account row by account number"""
        pass

    @abstractmethod
    def load_all_accounts(self) -> List[Dict[str, Any]]:
        """Load all account rows ordered by id"""
        pass

    @abstractmethod
    def count_accounts(self) -> int:
        """Count account rows"""
        pass

    @abstractmethod
    def clear_accounts(self) -> None:
        """Delete every account row"""
        pass

    @abstractmethod
    def transaction(self):
        """Context manager yielding a StorageTransaction; commits on success, rolls back on error"""
        pass

    @abstractmethod
    def close(self) -> None:
        """Close storage connection"""
        pass


UPDATE_SQL = f"""
    UPDATE {ACCOUNT_TABLE} SET
        first_name = %s, last_name = %s, encrypted_password = %s
    WHERE id = %s
"""


def _updatable(data: Dict[str, Any]) -> Dict[str, Any]:
    return {key: data[key] for key in PROFILE_COLUMNS}


def _update_params(account_id: int, data: Dict[str, Any]) -> tuple:
    values = _updatable(data)
    return tuple(values[key] for key in PROFILE_COLUMNS) + (account_id,)


def _timestamp(value: Union[str, datetime, None]) -> str:
    if value is None:
        value = datetime.now(timezone.utc)
    if isinstance(value, datetime):
        return value.isoformat()
    return value


class InMemoryTransaction(StorageTransaction):
    """
    Transaction over InMemoryStorage

    Row locks are real blocking locks taken in get_for_update; balance
    changes and profile updates are staged and only applied to the shared
    rows on commit.
    """

    def __init__(self, storage: 'InMemoryStorage'):
        self._storage = storage
        self._held: Dict[int, threading.Lock] = {}
        self._updates: Dict[int, Dict[str, Any]] = {}
        self._deltas: Dict[int, int] = {}

    def _balance(self, account_id: int) -> int:
        return self._storage._accounts[account_id]["balance"] + self._deltas.get(account_id, 0)

    def _require_row(self, account_id: int) -> None:
        with self._storage._lock:
            if account_id not in self._storage._accounts:
                raise StorageError(f"Account row {account_id} does not exist")

    def get_for_update(self, number: int) -> Optional[LockedAccount]:
        if number not in self._held:
            self._held[number] = self._storage._acquire_row(number)

        with self._storage._lock:
            account_id = self._storage._numbers.get(number)
            if account_id is None:
                return None
            return LockedAccount(account_id, self._balance(account_id))

    def adjust_balance(self, account_id: int, delta: int) -> None:
        self._require_row(account_id)
        self._deltas[account_id] = self._deltas.get(account_id, 0) + delta

    def update_account(self, account_id: int, data: Dict[str, Any]) -> None:
        self._require_row(account_id)
        self._updates[account_id] = _updatable(data)

    def commit(self) -> None:
        with self._storage._lock:
            accounts = self._storage._accounts
            touched = set(self._updates) | set(self._deltas)
            for account_id in touched:
                if account_id not in accounts:
                    raise StorageError(f"Account row {account_id} does not exist")
                if self._balance(account_id) < 0:
                    raise StorageError(f"Balance check constraint violated for account row {account_id}")
            for account_id in touched:
                balance = self._balance(account_id)
                accounts[account_id].update(self._updates.get(account_id, {}))
                accounts[account_id]["balance"] = balance
        self.rollback()

    def rollback(self) -> None:
        self._updates.clear()
        self._deltas.clear()

    def release(self) -> None:
        for number in reversed(list(self._held)):
            self._storage._release_row(number)
        self._held.clear()


class InMemoryStorage(StorageInterface):
    """In-memory storage implementation for testing"""

    def __init__(self, lock_timeout: Optional[float] = None):
        self._accounts: Dict[int, Dict[str, Any]] = {}
        self._numbers: Dict[int, int] = {}
        self._next_id = 1
        self._lock = threading.RLock()
        # number -> [lock, holders and waiters]; entries exist only while in use
        self._row_locks: Dict[int, List[Any]] = {}
        self.lock_timeout = lock_timeout

    def _acquire_row(self, number: int) -> threading.Lock:
        """Block until the row lock for ``number`` is held"""
        with self._lock:
            entry = self._row_locks.setdefault(number, [threading.Lock(), 0])
            entry[1] += 1
        lock = entry[0]

        if self.lock_timeout is None:
            acquired = lock.acquire()
        else:
            acquired = lock.acquire(timeout=self.lock_timeout)
        if not acquired:
            self._forget_row(number)
            raise StorageError(f"Timed out waiting for lock on account {number}")
        return lock

    def _release_row(self, number: int) -> None:
        with self._lock:
            lock = self._row_locks[number][0]
        lock.release()
        self._forget_row(number)

    def _forget_row(self, number: int) -> None:
        with self._lock:
            entry = self._row_locks[number]
            entry[1] -= 1
            if entry[1] == 0:
                del self._row_locks[number]

    @contextmanager
    def _locked_row(self, number: int):
        self._acquire_row(number)
        try:
            yield
        finally:
            self._release_row(number)

    def initialize(self) -> None:
        """Nothing to create for in-memory storage"""
        pass

    def insert_account(self, data: Dict[str, Any]) -> int:
        with self._lock:
            number = data["number"]
            if number in self._numbers:
                raise DuplicateAccountNumberError(f"Account number {number} already exists")
            if data.get("balance", 0) < 0:
                raise StorageError("Balance check constraint violated")

            account_id = self._next_id
            self._next_id += 1
            row = {column: data.get(column) for column in ACCOUNT_COLUMNS}
            row["id"] = account_id
            row["balance"] = data.get("balance", 0)
            row["created_at"] = _timestamp(data.get("created_at"))
            self._accounts[account_id] = row
            self._numbers[number] = account_id
            return account_id

    def update_account(self, account_id: int, data: Dict[str, Any]) -> bool:
        with self._lock:
            row = self._accounts.get(account_id)
            if row is None:
                return False
            number = row["number"]

        # Blocks while a transfer holds this row
        with self._locked_row(number):
            with self._lock:
                row = self._accounts.get(account_id)
                if row is None:
                    return False
                row.update(_updatable(data))
                return True

    def delete_account(self, account_id: int) -> bool:
        with self._lock:
            row = self._accounts.get(account_id)
            if row is None:
                return False
            number = row["number"]

        with self._locked_row(number):
            with self._lock:
                if self._accounts.pop(account_id, None) is None:
                    return False
                del self._numbers[number]
                return True

    def load_account(self, account_id: int) -> Optional[Dict[str, Any]]:
        with self._lock:
            row = self._accounts.get(account_id)
            return dict(row) if row else None

    def find_account_by_number(self, number: int) -> Optional[Dict[str, Any]]:
        with self._lock:
            account_id = self._numbers.get(number)
            if account_id is None:
                return None
            return dict(self._accounts[account_id])

    def load_all_accounts(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [dict(self._accounts[key]) for key in sorted(self._accounts)]

    def count_accounts(self) -> int:
        with self._lock:
            return len(self._accounts)

    def clear_accounts(self) -> None:
        with self._lock:
            self._accounts = {}
            self._numbers = {}

    @contextmanager
    def transaction(self):
        txn = InMemoryTransaction(self)
        try:
            try:
                yield txn
                txn.commit()
            except Exception:
                txn.rollback()
                raise
        finally:
            txn.release()

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass


def _translate_sqlite_error(error: sqlite3.Error) -> Exception:
    message = str(error)
    if isinstance(error, sqlite3.IntegrityError) and f"{ACCOUNT_TABLE}.number" in message:
        return DuplicateAccountNumberError("Account number already exists")
    return StorageError(f"SQLite error: {message}")


class SQLiteTransaction(StorageTransaction):
    """Transaction over a SQLite connection opened with BEGIN IMMEDIATE"""

    def __init__(self, connection: sqlite3.Connection):
        self._connection = connection

    def get_for_update(self, number: int) -> Optional[LockedAccount]:
        # BEGIN IMMEDIATE already holds the database write lock
        try:
            row = self._connection.execute(
                f"SELECT id, balance FROM {ACCOUNT_TABLE} WHERE number = ?", (number,)
            ).fetchone()
        except sqlite3.Error as e:
            raise _translate_sqlite_error(e) from e
        if row is None:
            return None
        return LockedAccount(row["id"], row["balance"])

    def adjust_balance(self, account_id: int, delta: int) -> None:
        try:
            self._connection.execute(
                f"UPDATE {ACCOUNT_TABLE} SET balance = balance + ? WHERE id = ?",
                (delta, account_id)
            )
        except sqlite3.Error as e:
            raise _translate_sqlite_error(e) from e

    def update_account(self, account_id: int, data: Dict[str, Any]) -> None:
        try:
            self._connection.execute(UPDATE_SQL.replace("%s", "?"), _update_params(account_id, data))
        except sqlite3.Error as e:
            raise _translate_sqlite_error(e) from e


class SQLiteStorage(StorageInterface):
    """SQLite storage implementation for persistence"""

    def __init__(self, db_path: Union[str, Path] = ":memory:", lock_timeout: Optional[float] = 5.0):
        self.db_path = str(db_path)
        self.lock_timeout = lock_timeout
        # Autocommit mode; transactions are opened explicitly with BEGIN IMMEDIATE
        self._connection = sqlite3.connect(
            self.db_path,
            check_same_thread=False,
            isolation_level=None,
            timeout=lock_timeout if lock_timeout is not None else 5.0
        )
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()

        # Enable WAL mode for better concurrent access
        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")

    def _acquire(self) -> None:
        if self.lock_timeout is None:
            self._lock.acquire()
        elif not self._lock.acquire(timeout=self.lock_timeout):
            raise StorageError("Timed out waiting for the SQLite connection")

    def _execute(self, query: str, params: tuple = ()) -> sqlite3.Cursor:
        self._acquire()
        try:
            return self._connection.execute(query, params)
        except sqlite3.Error as e:
            raise _translate_sqlite_error(e) from e
        finally:
            self._lock.release()

    def initialize(self) -> None:
        self._execute(f"""
            CREATE TABLE IF NOT EXISTS {ACCOUNT_TABLE} (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                first_name TEXT,
                last_name TEXT,
                number INTEGER UNIQUE NOT NULL,
                encrypted_password TEXT,
                balance INTEGER NOT NULL DEFAULT 0 CHECK (balance >= 0),
                created_at TEXT NOT NULL
            )
        """)

    def insert_account(self, data: Dict[str, Any]) -> int:
        cursor = self._execute(f"""
            INSERT INTO {ACCOUNT_TABLE}
                (first_name, last_name, number, encrypted_password, balance, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
        """, (
            data["first_name"], data["last_name"], data["number"],
            data["encrypted_password"], data.get("balance", 0),
            _timestamp(data.get("created_at"))
        ))
        return cursor.lastrowid

    def update_account(self, account_id: int, data: Dict[str, Any]) -> bool:
        cursor = self._execute(UPDATE_SQL.replace("%s", "?"), _update_params(account_id, data))
        return cursor.rowcount > 0

    def delete_account(self, account_id: int) -> bool:
        cursor = self._execute(f"DELETE FROM {ACCOUNT_TABLE} WHERE id = ?", (account_id,))
        return cursor.rowcount > 0

    def _select(self, where: str = "", params: tuple = ()) -> List[Dict[str, Any]]:
        self._acquire()
        try:
            cursor = self._connection.execute(
                f"SELECT {', '.join(ACCOUNT_COLUMNS)} FROM {ACCOUNT_TABLE} {where} ORDER BY id",
                params
            )
            return [dict(row) for row in cursor.fetchall()]
        except sqlite3.Error as e:
            raise _translate_sqlite_error(e) from e
        finally:
            self._lock.release()

    def load_account(self, account_id: int) -> Optional[Dict[str, Any]]:
        rows = self._select("WHERE id = ?", (account_id,))
        return rows[0] if rows else None

    def find_account_by_number(self, number: int) -> Optional[Dict[str, Any]]:
        rows = self._select("WHERE number = ?", (number,))
        return rows[0] if rows else None

    def load_all_accounts(self) -> List[Dict[str, Any]]:
        return self._select()

    def count_accounts(self) -> int:
        self._acquire()
        try:
            row = self._connection.execute(f"SELECT COUNT(*) AS count FROM {ACCOUNT_TABLE}").fetchone()
        except sqlite3.Error as e:
            raise _translate_sqlite_error(e) from e
        finally:
            self._lock.release()
        return row["count"]

    def clear_accounts(self) -> None:
        self._execute(f"DELETE FROM {ACCOUNT_TABLE}")

    @contextmanager
    def transaction(self):
        # The connection is owned by this transaction until it ends
        self._acquire()
        try:
            try:
                self._connection.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as e:
                raise _translate_sqlite_error(e) from e

            try:
                yield SQLiteTransaction(self._connection)
                try:
                    self._connection.execute("COMMIT")
                except sqlite3.Error as e:
                    raise _translate_sqlite_error(e) from e
            except Exception:
                if self._connection.in_transaction:
                    self._connection.rollback()
                raise
        finally:
            self._lock.release()

    def close(self) -> None:
        """Close SQLite connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


class PostgreSQLTransaction(StorageTransaction):
    """Transaction over one pooled PostgreSQL connection"""

    def __init__(self, cursor, storage: 'PostgreSQLStorage'):
        self._cursor = cursor
        self._storage = storage

    def get_for_update(self, number: int) -> Optional[LockedAccount]:
        try:
            self._cursor.execute(
                f"SELECT id, balance FROM {ACCOUNT_TABLE} WHERE number = %s FOR UPDATE",
                (number,)
            )
            row = self._cursor.fetchone()
        except self._storage.psycopg2.Error as e:
            raise self._storage._translate_error(e) from e
        if row is None:
            return None
        return LockedAccount(row["id"], row["balance"])

    def adjust_balance(self, account_id: int, delta: int) -> None:
        try:
            self._cursor.execute(
                f"UPDATE {ACCOUNT_TABLE} SET balance = balance + %s WHERE id = %s",
                (delta, account_id)
            )
        except self._storage.psycopg2.Error as e:
            raise self._storage._translate_error(e) from e

    def update_account(self, account_id: int, data: Dict[str, Any]) -> None:
        try:
            self._cursor.execute(UPDATE_SQL, _update_params(account_id, data))
        except self._storage.psycopg2.Error as e:
            raise self._storage._translate_error(e) from e


class PostgreSQLStorage(StorageInterface):
    """PostgreSQL storage backend with row-level locking"""

    def __init__(self, connection_string: str, pool_size: int = 10,
                 lock_timeout: Optional[float] = 5.0):
        try:
            import psycopg2
            import psycopg2.errors
            import psycopg2.extras
            import psycopg2.pool
            self.psycopg2 = psycopg2
            self.extras = psycopg2.extras
        except ImportError:
            raise ImportError("psycopg2 is required for PostgreSQL storage. Install with: pip install psycopg2-binary")

        self.connection_string = connection_string
        self.lock_timeout = lock_timeout
        self._slots = threading.BoundedSemaphore(pool_size)
        try:
            self._pool = psycopg2.pool.ThreadedConnectionPool(
                1, pool_size, connection_string,
                cursor_factory=self.extras.RealDictCursor
            )
        except psycopg2.Error as e:
            raise StorageError(f"PostgreSQL connection failed: {e}") from e

    def _translate_error(self, error) -> Exception:
        if isinstance(error, self.psycopg2.errors.UniqueViolation):
            return DuplicateAccountNumberError("Account number already exists")
        return StorageError(f"PostgreSQL error: {error}")

    @contextmanager
    def _connection(self):
        """Borrow a pooled connection, waiting while the pool is exhausted"""
        if not self._slots.acquire(timeout=self.lock_timeout):
            raise StorageError("Timed out waiting for a PostgreSQL connection")
        try:
            try:
                conn = self._pool.getconn()
            except self.psycopg2.Error as e:
                raise self._translate_error(e) from e
            try:
                yield conn
            finally:
                self._pool.putconn(conn)
        finally:
            self._slots.release()

    def _execute(self, query: str, params: tuple = (), fetch: bool = False):
        with self._connection() as conn:
            try:
                with conn:
                    with conn.cursor() as cursor:
                        cursor.execute(query, params)
                        if fetch:
                            return [dict(row) for row in cursor.fetchall()]
                        return cursor.rowcount
            except self.psycopg2.Error as e:
                raise self._translate_error(e) from e

    def initialize(self) -> None:
        self._execute(f"""
            CREATE TABLE IF NOT EXISTS {ACCOUNT_TABLE} (
                id SERIAL PRIMARY KEY,
                first_name VARCHAR(100),
                last_name VARCHAR(100),
                number BIGINT UNIQUE NOT NULL,
                encrypted_password TEXT,
                balance BIGINT NOT NULL DEFAULT 0 CHECK (balance >= 0),
                created_at TIMESTAMPTZ NOT NULL DEFAULT now()
            )
        """)

    def insert_account(self, data: Dict[str, Any]) -> int:
        rows = self._execute(f"""
            INSERT INTO {ACCOUNT_TABLE}
                (first_name, last_name, number, encrypted_password, balance, created_at)
            VALUES (%s, %s, %s, %s, %s, %s)
            RETURNING id
        """, (
            data["first_name"], data["last_name"], data["number"],
            data["encrypted_password"], data.get("balance", 0),
            data.get("created_at") or datetime.now(timezone.utc)
        ), fetch=True)
        return rows[0]["id"]

    def update_account(self, account_id: int, data: Dict[str, Any]) -> bool:
        rowcount = self._execute(UPDATE_SQL, _update_params(account_id, data))
        return rowcount > 0

    def delete_account(self, account_id: int) -> bool:
        return self._execute(f"DELETE FROM {ACCOUNT_TABLE} WHERE id = %s", (account_id,)) > 0

    def _select(self, where: str = "", params: tuple = ()) -> List[Dict[str, Any]]:
        return self._execute(
            f"SELECT {', '.join(ACCOUNT_COLUMNS)} FROM {ACCOUNT_TABLE} {where} ORDER BY id",
            params, fetch=True
        )

    def load_account(self, account_id: int) -> Optional[Dict[str, Any]]:
        rows = self._select("WHERE id = %s", (account_id,))
        return rows[0] if rows else None

    def find_account_by_number(self, number: int) -> Optional[Dict[str, Any]]:
        rows = self._select("WHERE number = %s", (number,))
        return rows[0] if rows else None

    def load_all_accounts(self) -> List[Dict[str, Any]]:
        return self._select()

    def count_accounts(self) -> int:
        rows = self._execute(f"SELECT COUNT(*) AS count FROM {ACCOUNT_TABLE}", fetch=True)
        return rows[0]["count"]

    def clear_accounts(self) -> None:
        self._execute(f"DELETE FROM {ACCOUNT_TABLE}")

    @contextmanager
    def transaction(self):
        with self._connection() as conn:
            cursor = conn.cursor()
            try:
                try:
                    if self.lock_timeout is not None:
                        cursor.execute(
                            "SET LOCAL lock_timeout = %s",
                            (f"{int(self.lock_timeout * 1000)}ms",)
                        )
                except self.psycopg2.Error as e:
                    raise self._translate_error(e) from e

                yield PostgreSQLTransaction(cursor, self)
                try:
                    conn.commit()
                except self.psycopg2.Error as e:
                    raise self._translate_error(e) from e
            except Exception:
                conn.rollback()
                raise
            finally:
                cursor.close()

    def close(self) -> None:
        """Close all pooled PostgreSQL connections"""
        if self._pool:
            self._pool.closeall()
            self._pool = None


def create_storage(database_url: str, pool_size: int = 10,
                   lock_timeout: Optional[float] = 5.0) -> StorageInterface:
    """Build a storage backend from a database URL"""
    if database_url in ("memory", "memory://"):
        return InMemoryStorage(lock_timeout=lock_timeout)
    if database_url.startswith("sqlite:///"):
        return SQLiteStorage(database_url[len("sqlite:///"):] or ":memory:", lock_timeout=lock_timeout)
    if database_url.startswith(("postgresql://", "postgres://")):
        return PostgreSQLStorage(database_url, pool_size=pool_size, lock_timeout=lock_timeout)
    raise ConfigurationError(f"Unsupported database URL: {database_url}")
