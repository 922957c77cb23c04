"""Ledger store — balance row locking, ledger appends, transaction boundaries.

Every mutation of an account's credits goes through ``ledger_transaction`` and
``lock_balance`` so that concurrent writers for the same account serialize on
the balance row while different accounts proceed independently.
"""

import logging
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime

from sqlalchemy import func, or_, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from metering.models.credit_balance import CreditBalance
from metering.models.credit_ledger import CreditLedgerEntry
from metering.services.credits.exceptions import (
    CreditError,
    DuplicateOperationError,
    LedgerInvariantViolation,
    StorageError,
)
from metering.services.credits.periods import as_utc

logger = logging.getLogger(__name__)

_UPSERT_DIALECTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


class IdempotencyKeyConflict(StorageError):
    """A concurrent writer committed the same idempotency key first."""


# ---------------------------------------------------------------------------
# Transactions
# ---------------------------------------------------------------------------


@contextmanager
def ledger_transaction(db: Session) -> Iterator[Session]:
    """Commit on success; roll back and translate store failures otherwise."""
    try:
        yield db
        db.commit()
    except CreditError:
        db.rollback()
        raise
    except IntegrityError as exc:
        db.rollback()
        if "idempotency" in str(exc.orig):
            raise IdempotencyKeyConflict(str(exc.orig)) from exc
        raise StorageError(str(exc.orig)) from exc
    except SQLAlchemyError as exc:
        db.rollback()
        logger.warning("Ledger transaction rolled back: %s", exc)
        raise StorageError(str(exc)) from exc
    except BaseException:
        db.rollback()
        raise


def retry_on_key_conflict(idempotency_key: str, operation, *args, **kwargs):
    """Run ``operation`` once more if a concurrent writer won the key race.

    The second run sees the committed rows and takes the replay path. A
    second conflict means the key is taken by a row no replay can resolve.
    """
    try:
        return operation(*args, **kwargs)
    except IdempotencyKeyConflict:
        logger.info("Idempotency key conflict in %s, retrying as replay", operation.__name__)
    try:
        return operation(*args, **kwargs)
    except IdempotencyKeyConflict as exc:
        raise DuplicateOperationError(idempotency_key, "collides with an existing ledger row") from exc


# ---------------------------------------------------------------------------
# Balance row
# ---------------------------------------------------------------------------


def insert_balance_if_absent(db: Session, account_id: uuid.UUID) -> None:
    """Insert a zero balance row unless one exists. Does not commit."""
    insert = _UPSERT_DIALECTS.get(db.get_bind().dialect.name)
    if insert is None:
        exists = db.execute(
            select(CreditBalance.id).where(CreditBalance.account_id == account_id)
        ).scalar_one_or_none()
        if exists is None:
            db.add(CreditBalance(account_id=account_id, included_credits=0, purchased_credits=0))
            db.flush()
        return

    stmt = (
        insert(CreditBalance)
        .values(
            id=uuid.uuid4(),
            account_id=account_id,
            included_credits=0,
            purchased_credits=0,
            is_frozen=False,
            version=0,
        )
        .on_conflict_do_nothing(index_elements=["account_id"])
    )
    db.execute(stmt)


def lock_balance(db: Session, account_id: uuid.UUID) -> CreditBalance:
    """Fetch the balance row with a row-level lock, bypassing the identity map.

    Raises LedgerInvariantViolation if no row exists.
    """
    balance = db.execute(
        select(CreditBalance)
        .where(CreditBalance.account_id == account_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()

    if balance is None:
        raise LedgerInvariantViolation(account_id, "no balance record; call ensure_balance_exists first")
    return balance


def spendable_included(balance: CreditBalance, now: datetime) -> int:
    """Included credits usable at ``now`` — zero once the expiry has passed."""
    expire_at = as_utc(balance.included_credits_expire_at)
    if expire_at is None or now >= expire_at:
        return 0
    return balance.included_credits


def spendable_total(balance: CreditBalance, now: datetime) -> int:
    return spendable_included(balance, now) + balance.purchased_credits


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------


def append_entry(
    db: Session,
    balance: CreditBalance,
    *,
    entry_type: str,
    pool: str,
    amount: int,
    now: datetime,
    idempotency_key: str,
    operation_key: str | None = None,
    feature: str | None = None,
    feature_metadata: dict | None = None,
    reverses_entry_id: uuid.UUID | None = None,
    external_reference: str | None = None,
    period_start: datetime | None = None,
    description: str | None = None,
    created_by: str | None = None,
) -> CreditLedgerEntry:
    """Append one ledger row. Pool fields must already be updated on ``balance``."""
    balance.version += 1
    entry = CreditLedgerEntry(
        id=uuid.uuid4(),
        account_id=balance.account_id,
        type=entry_type,
        pool=pool,
        amount=amount,
        balance_after=spendable_total(balance, now),
        feature=feature,
        feature_metadata=feature_metadata,
        idempotency_key=idempotency_key,
        operation_key=operation_key or idempotency_key,
        reverses_entry_id=reverses_entry_id,
        external_reference=external_reference,
        period_start=period_start,
        description=description,
        created_by=created_by,
        created_at=now,
    )
    db.add(entry)
    db.flush()
    return entry


def find_operation_entries(
    db: Session,
    account_id: uuid.UUID,
    operation_key: str,
) -> list[CreditLedgerEntry]:
    """All rows written under one logical idempotency key, oldest first.

    Raises DuplicateOperationError when the key is already a row key of a
    different operation, such as one pool row of a split debit.
    """
    entries = list(
        db.execute(
            select(CreditLedgerEntry)
            .where(
                CreditLedgerEntry.account_id == account_id,
                or_(
                    CreditLedgerEntry.operation_key == operation_key,
                    CreditLedgerEntry.idempotency_key == operation_key,
                ),
            )
            .order_by(CreditLedgerEntry.created_at, CreditLedgerEntry.pool)
        )
        .scalars()
        .all()
    )
    for entry in entries:
        if entry.operation_key != operation_key:
            raise DuplicateOperationError(
                operation_key, f"already a ledger row of operation '{entry.operation_key}'"
            )
    return entries


def ledger_pool_sums(db: Session, account_id: uuid.UUID) -> dict[str, int]:
    """Sum of ledger amounts per pool for an account."""
    rows = db.execute(
        select(CreditLedgerEntry.pool, func.coalesce(func.sum(CreditLedgerEntry.amount), 0))
        .where(CreditLedgerEntry.account_id == account_id)
        .group_by(CreditLedgerEntry.pool)
    ).all()
    sums = {"included": 0, "purchased": 0}
    for pool, total in rows:
        sums[pool] = int(total)
    return sums
