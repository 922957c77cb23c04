"""Balance service — balance records, lazy expiration, tier lookups, history."""

import logging
import uuid
from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from metering.core.config import settings
from metering.models.credit_balance import CreditBalance
from metering.models.credit_ledger import CreditLedgerEntry
from metering.models.credit_reference import TierCredit
from metering.services.credits.exceptions import LedgerInvariantViolation, StorageError
from metering.services.credits.models import Balance
from metering.services.credits.periods import as_utc, utcnow
from metering.services.credits.store import (
    insert_balance_if_absent,
    ledger_pool_sums,
    ledger_transaction,
    lock_balance,
    spendable_included,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Balance records
# ---------------------------------------------------------------------------


def ensure_balance_exists(db: Session, account_id: uuid.UUID) -> None:
    """Create a zero balance for the account if it has none. Safe on every request."""
    with ledger_transaction(db):
        insert_balance_if_absent(db, account_id)


def _load_balance(db: Session, account_id: uuid.UUID) -> CreditBalance:
    try:
        balance = db.execute(
            select(CreditBalance)
            .where(CreditBalance.account_id == account_id)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
    except SQLAlchemyError as exc:
        db.rollback()
        raise StorageError(str(exc)) from exc

    if balance is None:
        raise LedgerInvariantViolation(account_id, "no balance record; call ensure_balance_exists first")
    return balance


def to_balance(balance: CreditBalance, now: datetime) -> Balance:
    included = spendable_included(balance, now)
    return Balance(
        account_id=balance.account_id,
        included_credits=balance.included_credits,
        purchased_credits=balance.purchased_credits,
        total_credits=included + balance.purchased_credits,
        spendable_included_credits=included,
        included_credits_expire_at=as_utc(balance.included_credits_expire_at),
        last_monthly_grant_at=as_utc(balance.last_monthly_grant_at),
        is_frozen=balance.is_frozen,
    )


def get_balance(db: Session, account_id: uuid.UUID, now: datetime | None = None) -> Balance:
    """Return the account's current balance with lazy expiration applied.

    ``included_credits`` is the raw pool field; ``total_credits`` only counts
    it while ``now`` is before ``included_credits_expire_at``.
    """
    return to_balance(_load_balance(db, account_id), as_utc(now) or utcnow())


# ---------------------------------------------------------------------------
# Tier credits
# ---------------------------------------------------------------------------


def get_tier_credits(db: Session, plan: str | None) -> int:
    """Monthly included credits for a plan. Free, missing, or unknown plans get 0."""
    if not plan:
        return 0
    monthly = db.execute(
        select(TierCredit.monthly_credits).where(TierCredit.tier == plan)
    ).scalar_one_or_none()
    return monthly or 0


def get_all_tier_credits(db: Session) -> list[TierCredit]:
    return list(
        db.execute(select(TierCredit).order_by(TierCredit.monthly_credits, TierCredit.tier)).scalars().all()
    )


def seed_tier_credits(db: Session, tiers: dict[str, int] | None = None) -> int:
    """Upsert the tier table from settings. Returns the number of tiers written."""
    tiers = settings.TIER_MONTHLY_CREDITS if tiers is None else tiers
    for tier, monthly in tiers.items():
        row = db.get(TierCredit, tier)
        if row is None:
            db.add(TierCredit(tier=tier, monthly_credits=monthly))
        else:
            row.monthly_credits = monthly
    db.commit()
    logger.info("Seeded %d credit tiers", len(tiers))
    return len(tiers)


# ---------------------------------------------------------------------------
# Ledger history
# ---------------------------------------------------------------------------


def get_ledger(
    db: Session,
    account_id: uuid.UUID,
    page: int = 1,
    page_size: int = 20,
    feature: str | None = None,
    entry_type: str | None = None,
) -> tuple[list[CreditLedgerEntry], int]:
    """Return paginated ledger entries for an account, newest first."""
    filters = [CreditLedgerEntry.account_id == account_id]
    if feature:
        filters.append(CreditLedgerEntry.feature == feature)
    if entry_type:
        filters.append(CreditLedgerEntry.type == entry_type)

    total = db.execute(select(func.count()).select_from(CreditLedgerEntry).where(*filters)).scalar_one()
    offset = (page - 1) * page_size
    entries = (
        db.execute(
            select(CreditLedgerEntry)
            .where(*filters)
            .order_by(CreditLedgerEntry.created_at.desc(), CreditLedgerEntry.pool.desc())
            .offset(offset)
            .limit(page_size)
        )
        .scalars()
        .all()
    )
    return list(entries), total


# ---------------------------------------------------------------------------
# Invariant checks
# ---------------------------------------------------------------------------


def verify_ledger(db: Session, account_id: uuid.UUID) -> None:
    """Check that each pool field equals the sum of that pool's ledger entries.

    On divergence the account is frozen (debits refused) and
    LedgerInvariantViolation is raised. Nothing is corrected automatically.
    """
    with ledger_transaction(db):
        balance = lock_balance(db, account_id)
        sums = ledger_pool_sums(db, account_id)
        if sums["included"] == balance.included_credits and sums["purchased"] == balance.purchased_credits:
            return

        reason = (
            f"ledger sums included={sums['included']} purchased={sums['purchased']} "
            f"!= balance included={balance.included_credits} purchased={balance.purchased_credits}"
        )
        balance.is_frozen = True
        balance.frozen_reason = reason[:500]
        logger.error("Freezing credits for account %s: %s", account_id, reason)

    raise LedgerInvariantViolation(account_id, reason)


def unfreeze_account(db: Session, account_id: uuid.UUID) -> None:
    """Operator action: allow debits again after a divergence was resolved."""
    with ledger_transaction(db):
        balance = lock_balance(db, account_id)
        balance.is_frozen = False
        balance.frozen_reason = None
    logger.info("Unfroze credits for account %s", account_id)
