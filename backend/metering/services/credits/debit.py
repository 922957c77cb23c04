"""Debit engine — atomic, idempotent credit debits and refunds.

A debit runs as one transaction holding the account's balance row lock:
re-read the balance, short-circuit on a known idempotency key, refuse if the
spendable balance is short, then consume included credits before purchased
ones and write one ledger row per pool touched.
"""

import logging
import uuid
from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from metering.models.credit_balance import CreditBalance
from metering.models.credit_ledger import CreditLedgerEntry
from metering.services.credits.exceptions import (
    DuplicateOperationError,
    InsufficientCreditsError,
    InvalidAmountError,
    LedgerEntryNotFoundError,
    LedgerInvariantViolation,
    RefundNotAllowedError,
)
from metering.services.credits.models import DebitResult, RefundResult
from metering.services.credits.periods import as_utc, utcnow
from metering.services.credits.store import (
    append_entry,
    find_operation_entries,
    ledger_transaction,
    lock_balance,
    retry_on_key_conflict,
    spendable_included,
)

logger = logging.getLogger(__name__)


def _validate_amount(amount: int) -> None:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise InvalidAmountError(f"Credit amount must be a positive integer, got {amount!r}")


def _validate_key(idempotency_key: str) -> None:
    if not idempotency_key or not idempotency_key.strip():
        raise ValueError("idempotency_key is required")


# ---------------------------------------------------------------------------
# Debit
# ---------------------------------------------------------------------------


def _debit_result(entries: list[CreditLedgerEntry], idempotency_key: str, replayed: bool) -> DebitResult:
    included = -sum(e.amount for e in entries if e.pool == "included")
    purchased = -sum(e.amount for e in entries if e.pool == "purchased")
    return DebitResult(
        account_id=entries[0].account_id,
        feature=entries[0].feature or "",
        idempotency_key=idempotency_key,
        amount=included + purchased,
        included_debited=included,
        purchased_debited=purchased,
        balance_after=entries[-1].balance_after,
        entry_ids=[e.id for e in entries],
        replayed=replayed,
    )


def _replay_debit(
    prior: list[CreditLedgerEntry],
    amount: int,
    feature: str,
    idempotency_key: str,
) -> DebitResult:
    if any(e.type != "debit" for e in prior):
        raise DuplicateOperationError(idempotency_key, f"previously used for a {prior[0].type}")

    result = _debit_result(prior, idempotency_key, replayed=True)
    if result.amount != amount or result.feature != feature:
        raise DuplicateOperationError(
            idempotency_key,
            f"previously debited {result.amount} for {result.feature!r}, now {amount} for {feature!r}",
        )
    logger.info(
        "Debit %s for account %s already applied, returning prior result",
        idempotency_key,
        result.account_id,
    )
    return result


def _debit(
    db: Session,
    account_id: uuid.UUID,
    amount: int,
    feature: str,
    idempotency_key: str,
    metadata: dict | None,
    description: str | None,
    created_by: str | None,
    now: datetime,
) -> DebitResult:
    with ledger_transaction(db):
        balance = lock_balance(db, account_id)

        prior = find_operation_entries(db, account_id, idempotency_key)
        if prior:
            return _replay_debit(prior, amount, feature, idempotency_key)

        if balance.is_frozen:
            raise LedgerInvariantViolation(account_id, f"debits halted: {balance.frozen_reason}")

        included_available = spendable_included(balance, now)
        available = included_available + balance.purchased_credits
        if available < amount:
            logger.warning(
                "Refusing %s debit of %d for account %s: only %d available",
                feature,
                amount,
                account_id,
                available,
            )
            raise InsufficientCreditsError(required=amount, available=available)

        # Included credits expire, so they go first
        from_included = min(included_available, amount)
        from_purchased = amount - from_included
        split = from_included > 0 and from_purchased > 0

        entries: list[CreditLedgerEntry] = []
        for pool, taken in (("included", from_included), ("purchased", from_purchased)):
            if taken == 0:
                continue
            if pool == "included":
                balance.included_credits -= taken
            else:
                balance.purchased_credits -= taken
            entries.append(
                append_entry(
                    db,
                    balance,
                    entry_type="debit",
                    pool=pool,
                    amount=-taken,
                    now=now,
                    idempotency_key=f"{idempotency_key}:{pool}" if split else idempotency_key,
                    operation_key=idempotency_key,
                    feature=feature,
                    feature_metadata=metadata,
                    description=description or f"{feature}: {taken} {pool} credits",
                    created_by=created_by,
                )
            )

        result = _debit_result(entries, idempotency_key, replayed=False)

    logger.info(
        "Debited %d credits (%d included, %d purchased) from account %s for %s",
        amount,
        from_included,
        from_purchased,
        account_id,
        feature,
    )
    return result


def debit(
    db: Session,
    account_id: uuid.UUID,
    amount: int,
    feature: str,
    idempotency_key: str,
    *,
    metadata: dict | None = None,
    description: str | None = None,
    created_by: str | None = None,
    now: datetime | None = None,
) -> DebitResult:
    """Atomically debit ``amount`` credits from an account for ``feature``.

    Calling again with the same ``idempotency_key`` returns the original
    result (``replayed=True``) without debiting twice.

    Raises:
        InvalidAmountError: ``amount`` is not a positive integer.
        InsufficientCreditsError: spendable balance is below ``amount``; nothing changed.
        DuplicateOperationError: the key was already used for a different operation.
        LedgerInvariantViolation: no balance record, or the account is frozen.
        StorageError: the data store failed; safe to retry with the same key.
    """
    _validate_amount(amount)
    _validate_key(idempotency_key)
    now = as_utc(now) or utcnow()
    return retry_on_key_conflict(
        idempotency_key,
        _debit,
        db,
        account_id,
        amount,
        feature,
        idempotency_key,
        metadata,
        description,
        created_by,
        now,
    )


# ---------------------------------------------------------------------------
# Refund
# ---------------------------------------------------------------------------


def _refund_pool(balance: CreditBalance, debit_entry: CreditLedgerEntry, now: datetime) -> str:
    """Pool a refund restores into.

    Included credits go back to the included pool only while the grant they
    were drawn from is still current; otherwise they come back as purchased
    credits so the refund is not lost to expiry.
    """
    if debit_entry.pool != "included":
        return "purchased"
    expire_at = as_utc(balance.included_credits_expire_at)
    granted_at = as_utc(balance.last_monthly_grant_at)
    if expire_at is None or now >= expire_at:
        return "purchased"
    if granted_at is not None and as_utc(debit_entry.created_at) < granted_at:
        return "purchased"
    return "included"


def _refunded_so_far(db: Session, entry_id: uuid.UUID) -> int:
    return int(
        db.execute(
            select(func.coalesce(func.sum(CreditLedgerEntry.amount), 0)).where(
                CreditLedgerEntry.reverses_entry_id == entry_id,
                CreditLedgerEntry.type == "refund",
            )
        ).scalar_one()
    )


def _refund_result(entry: CreditLedgerEntry, replayed: bool) -> RefundResult:
    return RefundResult(
        account_id=entry.account_id,
        refunded_entry_id=entry.reverses_entry_id,
        idempotency_key=entry.operation_key,
        amount=entry.amount,
        pool=entry.pool,
        balance_after=entry.balance_after,
        entry_id=entry.id,
        replayed=replayed,
    )


def _refund(
    db: Session,
    account_id: uuid.UUID,
    entry_id: uuid.UUID,
    amount: int | None,
    idempotency_key: str,
    description: str | None,
    created_by: str | None,
    now: datetime,
) -> RefundResult:
    with ledger_transaction(db):
        balance = lock_balance(db, account_id)

        prior = find_operation_entries(db, account_id, idempotency_key)
        if prior:
            previous = prior[0]
            if previous.type != "refund" or previous.reverses_entry_id != entry_id:
                raise DuplicateOperationError(idempotency_key, f"previously used for a {previous.type}")
            if amount is not None and previous.amount != amount:
                raise DuplicateOperationError(
                    idempotency_key, f"previously refunded {previous.amount}, now {amount}"
                )
            return _refund_result(previous, replayed=True)

        debit_entry = db.get(CreditLedgerEntry, entry_id)
        remaining = -debit_entry.amount - _refunded_so_far(db, entry_id)
        if amount is None:
            amount = remaining
        if remaining <= 0:
            raise RefundNotAllowedError(f"Debit {entry_id} has already been fully refunded")
        _validate_amount(amount)
        if amount > remaining:
            raise RefundNotAllowedError(
                f"Cannot refund {amount} credits of debit {entry_id}: only {remaining} left"
            )

        pool = _refund_pool(balance, debit_entry, now)
        if pool == "included":
            balance.included_credits += amount
        else:
            balance.purchased_credits += amount

        entry = append_entry(
            db,
            balance,
            entry_type="refund",
            pool=pool,
            amount=amount,
            now=now,
            idempotency_key=idempotency_key,
            feature=debit_entry.feature,
            reverses_entry_id=entry_id,
            description=description or f"Refund for failed {debit_entry.feature} operation",
            created_by=created_by,
        )
        result = _refund_result(entry, replayed=False)

    logger.info(
        "Refunded %d credits to %s pool of account %s (debit %s)",
        amount,
        pool,
        account_id,
        entry_id,
    )
    return result


def refund(
    db: Session,
    ledger_entry_id: uuid.UUID,
    *,
    amount: int | None = None,
    idempotency_key: str | None = None,
    description: str | None = None,
    created_by: str | None = None,
    now: datetime | None = None,
) -> RefundResult:
    """Reverse a specific debit entry, in full or in part.

    Defaults to refunding whatever of the debit has not been refunded yet,
    keyed ``refund:<entry id>``. Partial refunds need distinct keys.
    """
    now = as_utc(now) or utcnow()
    entry = db.get(CreditLedgerEntry, ledger_entry_id)
    if entry is None:
        raise LedgerEntryNotFoundError(f"Ledger entry {ledger_entry_id} not found")
    if entry.type != "debit":
        raise RefundNotAllowedError(f"Ledger entry {ledger_entry_id} is a {entry.type}, not a debit")

    key = idempotency_key or f"refund:{entry.id}"
    _validate_key(key)
    return retry_on_key_conflict(
        key, _refund, db, entry.account_id, entry.id, amount, key, description, created_by, now
    )


def refund_operation(
    db: Session,
    account_id: uuid.UUID,
    idempotency_key: str,
    *,
    description: str | None = None,
    created_by: str | None = None,
    now: datetime | None = None,
) -> list[RefundResult]:
    """Reverse every ledger row written by the debit with ``idempotency_key``."""
    debits = [e for e in find_operation_entries(db, account_id, idempotency_key) if e.type == "debit"]
    if not debits:
        raise LedgerEntryNotFoundError(f"No debit with idempotency key '{idempotency_key}' for account {account_id}")

    split = len(debits) > 1
    return [
        refund(
            db,
            entry.id,
            idempotency_key=f"{idempotency_key}:refund:{entry.pool}" if split else f"{idempotency_key}:refund",
            description=description,
            created_by=created_by,
            now=now,
        )
        for entry in debits
    ]


def refunded_credits(db: Session, account_id: uuid.UUID, idempotency_key: str) -> int:
    """Credits already refunded against the debit made under ``idempotency_key``."""
    debits = [e for e in find_operation_entries(db, account_id, idempotency_key) if e.type == "debit"]
    return sum(_refunded_so_far(db, entry.id) for entry in debits)
