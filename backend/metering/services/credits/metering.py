"""Helpers for feature adapters: affordability checks, metered runs, retries."""

import logging
import time
import uuid
from collections.abc import Callable
from typing import TypeVar

from sqlalchemy.orm import Session

from metering.core.config import settings
from metering.services.credits.balance import ensure_balance_exists, get_balance
from metering.services.credits.debit import debit, refund_operation, refunded_credits
from metering.services.credits.exceptions import DuplicateOperationError, InsufficientCreditsError, StorageError
from metering.services.credits.models import AffordabilityCheck, DebitResult

logger = logging.getLogger(__name__)

T = TypeVar("T")


def check_affordability(db: Session, account_id: uuid.UUID, cost: int) -> AffordabilityCheck:
    """Dry-run: can the account currently afford ``cost``? Does not debit."""
    ensure_balance_exists(db, account_id)
    balance = get_balance(db, account_id)
    return AffordabilityCheck(
        has_credits=balance.total_credits >= cost,
        required=cost,
        available=balance.total_credits,
        balance=balance,
    )


def with_storage_retry(operation: Callable[..., T], *args, attempts: int | None = None, **kwargs) -> T:
    """Retry ``operation`` on StorageError a bounded number of times.

    Only safe for ledger calls carrying an idempotency key: a retry after an
    unknown outcome either applies the operation or replays it.
    """
    attempts = attempts or settings.LEDGER_STORAGE_MAX_RETRIES
    for attempt in range(1, attempts):
        try:
            return operation(*args, **kwargs)
        except StorageError as exc:
            logger.warning("Ledger storage error (attempt %d/%d): %s", attempt, attempts, exc)
            time.sleep(settings.LEDGER_STORAGE_RETRY_DELAY_SECONDS * attempt)
    return operation(*args, **kwargs)


def run_metered(
    db: Session,
    account_id: uuid.UUID,
    feature: str,
    cost: int,
    idempotency_key: str,
    operation: Callable[[], T],
    *,
    debit_first: bool = False,
    metadata: dict | None = None,
) -> tuple[T, DebitResult]:
    """Run a paid operation and charge for it.

    By default the balance is pre-checked, the operation runs, and the debit
    happens only once it produced a billable result. With ``debit_first`` the
    credits are reserved up front and refunded if the operation raises.

    Raises InsufficientCreditsError before the operation runs when the
    account cannot afford it, and DuplicateOperationError when an earlier run
    under ``idempotency_key`` was refunded. A retry after a refund needs a new
    key.
    """
    if refunded_credits(db, account_id, idempotency_key):
        raise DuplicateOperationError(idempotency_key, "operation was refunded, retry under a new key")

    check = check_affordability(db, account_id, cost)
    if not check.has_credits:
        raise InsufficientCreditsError(required=cost, available=check.available)

    if debit_first:
        charged = with_storage_retry(debit, db, account_id, cost, feature, idempotency_key, metadata=metadata)
        try:
            value = operation()
        except Exception:
            logger.warning("%s failed for account %s, refunding %d credits", feature, account_id, cost)
            with_storage_retry(refund_operation, db, account_id, idempotency_key)
            raise
        return value, charged

    value = operation()
    charged = with_storage_retry(debit, db, account_id, cost, feature, idempotency_key, metadata=metadata)
    return value, charged
