"""
Account Management Module

Defines the Account record, its public projection, and the AccountManager
repository that persists accounts and hands out locked rows to the
transfer engine.
"""

from datetime import datetime, timezone
from dataclasses import dataclass, asdict
from typing import Any, Dict, List, Optional
import secrets

from .errors import AccountNotFoundError, DuplicateAccountNumberError, StorageError
from .passwords import PasswordHasher
from .storage import LockedAccount, StorageInterface, StorageTransaction
from .logging_config import get_logger, log_action


ACCOUNT_NUMBER_LIMIT = 1_000_000_000_000


def generate_account_number() -> int:
    """Draw a random account number in [1, 10**12)"""
    return secrets.randbelow(ACCOUNT_NUMBER_LIMIT - 1) + 1


def _parse_datetime(value: Any) -> datetime:
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


@dataclass(frozen=True)
class AccountView:
    """Read-only projection of an account without its credential hash"""
    id: Optional[int]
    first_name: str
    last_name: str
    number: int
    balance: int
    created_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        result = asdict(self)
        result['created_at'] = self.created_at.isoformat()
        return result


@dataclass
class Account:
    """
    Bank account

    ``id`` is assigned by the store on insertion; ``number`` is generated
    before insertion and is the externally visible identifier.
    """
    first_name: str
    last_name: str
    number: int
    encrypted_password: str
    balance: int = 0
    created_at: Optional[datetime] = None
    id: Optional[int] = None

    def __post_init__(self):
        if self.created_at is None:
            self.created_at = datetime.now(timezone.utc)
        if self.balance < 0:
            raise ValueError("Account balance cannot be negative")

    def __repr__(self) -> str:
        return (f"Account(id={self.id!r}, number={self.number!r}, "
                f"first_name={self.first_name!r}, last_name={self.last_name!r}, "
                f"balance={self.balance!r})")

    @classmethod
    def create(cls, first_name: str, last_name: str, password: str,
               hasher: Optional[PasswordHasher] = None) -> 'Account':
        """
        Build a new, unsaved account with zero balance

        Raises:
            HashingError: if the password cannot be hashed
        """
        hasher = hasher or PasswordHasher()
        return cls(
            first_name=first_name,
            last_name=last_name,
            number=generate_account_number(),
            encrypted_password=hasher.hash(password),
            balance=0,
            created_at=datetime.now(timezone.utc)
        )

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"

    def verify_password(self, candidate: str, hasher: Optional[PasswordHasher] = None) -> bool:
        """Check a candidate password; a mismatch is False, never an error"""
        hasher = hasher or PasswordHasher()
        return hasher.verify(candidate, self.encrypted_password)

    def view(self) -> AccountView:
        return AccountView(
            id=self.id,
            first_name=self.first_name,
            last_name=self.last_name,
            number=self.number,
            balance=self.balance,
            created_at=self.created_at
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        return {
            'id': self.id,
            'first_name': self.first_name,
            'last_name': self.last_name,
            'number': self.number,
            'encrypted_password': self.encrypted_password,
            'balance': self.balance,
            'created_at': self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Account':
        """Create instance from a storage row"""
        return cls(
            id=data['id'],
            first_name=data['first_name'],
            last_name=data['last_name'],
            number=int(data['number']),
            encrypted_password=data['encrypted_password'],
            balance=int(data['balance']),
            created_at=_parse_datetime(data['created_at'])
        )


class AccountManager:
    """
    Account repository: persistence, lookups and locked reads
    """

    def __init__(self, storage: StorageInterface, hasher: Optional[PasswordHasher] = None,
                 number_retries: int = 5):
        self.storage = storage
        self.hasher = hasher or PasswordHasher()
        self.number_retries = number_retries
        self.logger = get_logger("minibank.accounts")

    def create_account(self, first_name: str, last_name: str, password: str) -> Account:
        """
        Create and persist a new account

        A fresh account number is drawn whenever the store reports a
        collision, up to ``number_retries`` attempts.

        Raises:
            HashingError: if the password cannot be hashed
            StorageError: if no free number was found or the store failed
        """
        account = Account.create(first_name, last_name, password, self.hasher)

        for attempt in range(1, self.number_retries + 1):
            try:
                account.id = self.storage.insert_account(account.to_dict())
                break
            except DuplicateAccountNumberError:
                self.logger.warning(
                    f"Account number collision on attempt {attempt}, drawing a new number"
                )
                account.number = generate_account_number()
        else:
            raise StorageError(
                f"Could not allocate a unique account number after {self.number_retries} attempts"
            )

        log_action(
            self.logger, "info", "Account created",
            account_number=account.number, action="create_account", resource="account",
            extra={"account_id": account.id}
        )
        return account

    def get_account(self, account_id: int) -> Account:
        data = self.storage.load_account(account_id)
        if data is None:
            raise AccountNotFoundError(f"Account {account_id} not found")
        return Account.from_dict(data)

    def get_account_by_number(self, number: int) -> Account:
        data = self.storage.find_account_by_number(number)
        if data is None:
            raise AccountNotFoundError(f"Account with number [{number}] not found")
        return Account.from_dict(data)

    def list_accounts(self) -> List[Account]:
        return [Account.from_dict(data) for data in self.storage.load_all_accounts()]

    def update_account(self, account: Account) -> Account:
        """
        Persist name and credential changes of an existing account

        The balance on ``account`` is ignored; it is refreshed from the store
        so a caller holding a stale copy cannot undo a committed transfer.
        """
        if account.id is None or not self.storage.update_account(account.id, account.to_dict()):
            raise AccountNotFoundError(f"Account {account.id} not found")

        account.balance = self.get_account(account.id).balance
        log_action(
            self.logger, "info", "Account updated",
            account_number=account.number, action="update_account", resource="account"
        )
        return account

    def delete_account(self, account_id: int) -> None:
        if not self.storage.delete_account(account_id):
            raise AccountNotFoundError(f"Account {account_id} not found")

        log_action(
            self.logger, "info", "Account deleted",
            action="delete_account", resource="account",
            extra={"account_id": account_id}
        )

    def update_profile(self, account_id: int, first_name: Optional[str] = None,
                       last_name: Optional[str] = None,
                       password: Optional[str] = None) -> Account:
        """
        Change name or password while holding the row lock

        Profile writes for one account are serialized with its transfers;
        the returned balance is the one read under the lock.
        """
        account = self.get_account(account_id)
        encrypted_password = self.hasher.hash(password) if password is not None else None

        with self.storage.transaction() as txn:
            locked = self.get_for_update(txn, account.number)
            if locked.id != account_id:
                raise AccountNotFoundError(f"Account {account_id} not found")

            account.balance = locked.balance
            if first_name is not None:
                account.first_name = first_name
            if last_name is not None:
                account.last_name = last_name
            if encrypted_password is not None:
                account.encrypted_password = encrypted_password
            txn.update_account(account_id, account.to_dict())

        log_action(
            self.logger, "info", "Account profile updated",
            account_number=account.number, action="update_profile", resource="account",
            extra={"password_changed": password is not None}
        )
        return account

    def verify_password(self, account: Account, candidate: str) -> bool:
        return account.verify_password(candidate, self.hasher)

    def get_for_update(self, txn: StorageTransaction, number: int) -> LockedAccount:
        """
        Lock an account row for the rest of ``txn``

        Raises:
            AccountNotFoundError: if no account has this number
        """
        locked = txn.get_for_update(number)
        if locked is None:
            raise AccountNotFoundError(f"Account with number [{number}] not found")
        return locked
