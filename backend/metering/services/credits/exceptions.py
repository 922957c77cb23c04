"""Credit ledger exceptions."""

import uuid


class CreditError(Exception):
    """Base exception for credit ledger operations."""


class InsufficientCreditsError(CreditError):
    """Raised when an account lacks spendable credits for an operation.

    Expected and user-facing: nothing was changed.
    """

    def __init__(self, required: int, available: int) -> None:
        self.required = required
        self.available = available
        self.shortfall = max(required - available, 0)
        super().__init__(
            f"Insufficient credits: required {required}, available {available} "
            f"(short by {self.shortfall})"
        )


class DuplicateOperationError(CreditError):
    """Raised when an idempotency key is re-used for a different operation."""

    def __init__(self, idempotency_key: str, message: str) -> None:
        self.idempotency_key = idempotency_key
        super().__init__(f"Idempotency key '{idempotency_key}' already used: {message}")


class LedgerInvariantViolation(CreditError):
    """Raised when balance fields diverge from the ledger, or a record is missing.

    Fatal for the affected account: debits are halted until an operator
    investigates.
    """

    def __init__(self, account_id: uuid.UUID, message: str) -> None:
        self.account_id = account_id
        super().__init__(f"Ledger invariant violated for account {account_id}: {message}")


class StorageError(CreditError):
    """Raised when the backing data store fails. Usually transient."""


class InvalidAmountError(CreditError, ValueError):
    """Raised when a credit amount is zero, negative, or not an integer."""


class CreditPackNotFoundError(CreditError):
    """Raised when a credit pack does not exist or is not active."""


class LedgerEntryNotFoundError(CreditError):
    """Raised when a ledger entry referenced by id or key does not exist."""


class RefundNotAllowedError(CreditError):
    """Raised when a refund targets a non-debit entry or exceeds what is left."""


class AccountNotFoundError(CreditError):
    """Raised when an account referenced by id does not exist."""
