"""Exception hierarchy for minibank."""


class BankError(Exception):
    """Base exception for all minibank errors."""


class InvalidInputError(BankError):
    """Raised when a request is malformed."""


class InvalidAmountError(InvalidInputError):
    """Raised when a transfer amount is not a positive integer."""


class SelfTransferError(InvalidInputError):
    """Raised when source and destination account are the same."""


class HashingError(BankError):
    """Raised when a password cannot be hashed."""


class NotFoundError(BankError):
    """Raised when a referenced record does not exist."""


class AccountNotFoundError(NotFoundError):
    """Raised when an account id or number is missing from the store."""


class UnauthorizedError(BankError):
    """Raised when a caller cannot be authenticated."""


class InvalidCredentialsError(UnauthorizedError):
    """Raised when a number/password pair does not match."""


class InvalidTokenError(UnauthorizedError):
    """Raised when a bearer token is missing, malformed or badly signed."""


class TokenExpiredError(InvalidTokenError):
    """Raised when a bearer token is past its expiry."""


class PermissionDeniedError(UnauthorizedError):
    """Raised when an authenticated caller acts on another account."""


class ConflictError(BankError):
    """Raised when a request conflicts with the current state."""


class InsufficientFundsError(ConflictError):
    """Raised when a transfer would drop the source balance below zero."""


class DuplicateAccountNumberError(ConflictError):
    """Raised when an account number is already taken."""


class StorageError(BankError):
    """Raised when the underlying store fails."""


class ConfigurationError(BankError):
    """Raised when configuration is invalid or missing."""
