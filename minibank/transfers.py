"""
Transfer Processing Module

Moves money between two accounts inside one storage transaction.

Both rows are locked before the balance check, always in ascending
account-number order whatever the transfer direction. Two transfers over
the same pair therefore request their locks in the same order and cannot
wait on each other in a cycle.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Tuple

from .accounts import AccountManager
from .errors import (
    BankError, InsufficientFundsError, InvalidAmountError, InvalidInputError,
    SelfTransferError, StorageError
)
from .logging_config import get_logger, log_action


def lock_order(from_number: int, to_number: int) -> Tuple[int, int]:
    """Return the two account numbers in the order their rows must be locked"""
    first, second = sorted((from_number, to_number))
    return first, second


@dataclass(frozen=True)
class TransferResult:
    """Outcome of a committed transfer"""
    from_number: int
    to_number: int
    amount: int
    from_balance: int
    to_balance: int
    completed_at: datetime


class TransferEngine:
    """
    Executes transfers with ordered row locking

    The engine holds no in-process locks; mutual exclusion comes entirely
    from the store's row locks taken through the account repository.
    """

    def __init__(self, account_manager: AccountManager):
        self.account_manager = account_manager
        self.storage = account_manager.storage
        self.logger = get_logger("minibank.transfers")

    def _validate(self, from_number: int, to_number: int, amount: int) -> None:
        for number in (from_number, to_number):
            if isinstance(number, bool) or not isinstance(number, int):
                raise InvalidInputError("invalid account number")
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise InvalidAmountError("invalid transfer amount")
        if from_number == to_number:
            raise SelfTransferError("cannot transfer to the same account")

    def transfer(self, from_number: int, to_number: int, amount: int) -> TransferResult:
        """
        Move ``amount`` from one account to another

        Args:
            from_number: Account number to debit
            to_number: Account number to credit
            amount: Positive amount in the smallest currency unit

        Returns:
            TransferResult with both post-transfer balances

        Raises:
            InvalidInputError: an account number is not an integer (no transaction opened)
            InvalidAmountError: amount is not a positive integer (no transaction opened)
            SelfTransferError: both numbers are equal (no transaction opened)
            AccountNotFoundError: either number does not exist
            InsufficientFundsError: source balance is below amount
            StorageError: the store failed; nothing was committed
        """
        self._validate(from_number, to_number, amount)

        try:
            with self.storage.transaction() as txn:
                first, second = lock_order(from_number, to_number)
                first_row = self.account_manager.get_for_update(txn, first)
                second_row = self.account_manager.get_for_update(txn, second)

                if first == from_number:
                    from_row, to_row = first_row, second_row
                else:
                    from_row, to_row = second_row, first_row

                if from_row.balance < amount:
                    raise InsufficientFundsError("insufficient funds")

                txn.adjust_balance(from_row.id, -amount)
                txn.adjust_balance(to_row.id, amount)
        except BankError as e:
            log_action(
                self.logger, "warning", f"Transfer failed: {e}",
                account_number=from_number, action="transfer_failed", resource="transfer",
                extra={"to_number": to_number, "amount": amount, "error": type(e).__name__}
            )
            raise
        except Exception as e:
            self.logger.exception("Transfer aborted by unexpected storage failure")
            raise StorageError(f"Transfer failed: {e}") from e

        result = TransferResult(
            from_number=from_number,
            to_number=to_number,
            amount=amount,
            from_balance=from_row.balance - amount,
            to_balance=to_row.balance + amount,
            completed_at=datetime.now(timezone.utc)
        )

        log_action(
            self.logger, "info", "Transfer completed",
            account_number=from_number, action="transfer", resource="transfer",
            extra={"to_number": to_number, "amount": amount}
        )
        return result
