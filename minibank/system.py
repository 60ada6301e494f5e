"""
Banking System Module

Wires storage, accounts, transfers and sessions together and exposes the
operations the HTTP layer calls. Every account handed back to a caller is
an AccountView.
"""

from datetime import timedelta
from typing import List, Optional

from .accounts import AccountManager, AccountView
from .config import BankConfig, get_config
from .errors import AccountNotFoundError, InvalidCredentialsError, InvalidInputError
from .passwords import PasswordHasher
from .sessions import TokenManager
from .storage import StorageInterface, create_storage
from .transfers import TransferEngine, TransferResult
from .logging_config import get_logger, log_action


class BankingSystem:
    """Core banking system with all components initialized"""

    def __init__(self, storage: StorageInterface, token_manager: TokenManager,
                 hasher: Optional[PasswordHasher] = None, number_retries: int = 5):
        self.storage = storage
        self.token_manager = token_manager
        self.account_manager = AccountManager(storage, hasher, number_retries)
        self.transfer_engine = TransferEngine(self.account_manager)
        self.logger = get_logger("minibank.system")

    @classmethod
    def from_config(cls, config: Optional[BankConfig] = None,
                    storage: Optional[StorageInterface] = None) -> 'BankingSystem':
        """Build a system from configuration, creating the schema if needed"""
        config = config or get_config()
        if storage is None:
            storage = create_storage(
                config.database_url,
                pool_size=config.database_pool_size,
                lock_timeout=config.lock_timeout_seconds
            )
        storage.initialize()

        token_manager = TokenManager(
            config.jwt_secret,
            algorithm=config.jwt_algorithm,
            expiry=timedelta(hours=config.jwt_expiry_hours)
        )
        hasher = PasswordHasher(
            n=config.password_hash_n,
            r=config.password_hash_r,
            p=config.password_hash_p,
            max_length=config.password_max_length
        )
        return cls(storage, token_manager, hasher, config.account_number_retries)

    def create_account(self, first_name: str, last_name: str, password: str) -> AccountView:
        if not first_name or not last_name:
            raise InvalidInputError("first and last name are required")
        return self.account_manager.create_account(first_name, last_name, password).view()

    def get_account(self, account_id: int) -> AccountView:
        return self.account_manager.get_account(account_id).view()

    def list_accounts(self) -> List[AccountView]:
        return [account.view() for account in self.account_manager.list_accounts()]

    def delete_account(self, account_id: int) -> None:
        self.account_manager.delete_account(account_id)

    def update_account(self, account_id: int, first_name: Optional[str] = None,
                       last_name: Optional[str] = None,
                       password: Optional[str] = None) -> AccountView:
        """Change the name or password of an account; balance is left to transfers"""
        if first_name is not None and not first_name:
            raise InvalidInputError("first name must not be empty")
        if last_name is not None and not last_name:
            raise InvalidInputError("last name must not be empty")
        return self.account_manager.update_profile(
            account_id, first_name=first_name, last_name=last_name, password=password
        ).view()

    def authenticate(self, number: int, password: str) -> str:
        """
        Check a number/password pair and issue a bearer token

        Raises:
            InvalidCredentialsError: unknown number or wrong password
        """
        try:
            account = self.account_manager.get_account_by_number(number)
        except AccountNotFoundError:
            log_action(
                self.logger, "warning", "Authentication failed",
                account_number=number, action="login_failed", resource="auth",
                extra={"reason": "account_not_found"}
            )
            raise InvalidCredentialsError("invalid credentials")

        if not self.account_manager.verify_password(account, password):
            log_action(
                self.logger, "warning", "Authentication failed",
                account_number=number, action="login_failed", resource="auth",
                extra={"reason": "invalid_password"}
            )
            raise InvalidCredentialsError("invalid credentials")

        log_action(
            self.logger, "info", "Account authenticated",
            account_number=number, action="login", resource="auth"
        )
        return self.token_manager.issue(account.number)

    def resolve_token(self, token: Optional[str]) -> int:
        """Return the account number a bearer token is bound to"""
        return self.token_manager.verify(token)

    def transfer(self, from_number: int, to_number: int, amount: int) -> TransferResult:
        return self.transfer_engine.transfer(from_number, to_number, amount)

    def close(self) -> None:
        self.storage.close()
