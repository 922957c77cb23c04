"""Grant policy — monthly included-credit grants by subscription tier.

Grants reset the included pool rather than adding to it: leftover included
credits are forfeited with an ``expire`` entry, then the tier amount is granted
with a ``grant`` entry. At most one grant is applied per account per billing
period, however often the scheduler fires.
"""

import logging
import uuid
from collections.abc import Callable
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from metering.core.config import settings
from metering.models.account import Account
from metering.services.credits.balance import ensure_balance_exists, get_tier_credits, verify_ledger
from metering.services.credits.exceptions import AccountNotFoundError, LedgerInvariantViolation
from metering.services.credits.models import GrantResult, GrantRunSummary
from metering.services.credits.periods import as_utc, current_period, fixed_boundary_anchor, utcnow
from metering.services.credits.store import (
    append_entry,
    find_operation_entries,
    insert_balance_if_absent,
    ledger_transaction,
    lock_balance,
    retry_on_key_conflict,
)

logger = logging.getLogger(__name__)


def grant_idempotency_key(account_id: uuid.UUID, period_start: datetime) -> str:
    return f"grant:{account_id}:{period_start:%Y-%m-%d}"


def billing_period_for(account: Account, now: datetime) -> tuple[datetime, datetime]:
    """Current ``(period_start, next_period_start)`` for an account.

    Uses the subscription anchor when known, otherwise the configured fixed
    monthly boundary.
    """
    anchor = account.billing_anchor_at or fixed_boundary_anchor(settings.CREDIT_GRANT_BOUNDARY_DAY)
    return current_period(anchor, now)


def _already_granted(balance, period_start: datetime) -> bool:
    last_period = as_utc(balance.last_grant_period_start)
    if last_period is not None:
        return last_period >= period_start
    last_grant = as_utc(balance.last_monthly_grant_at)
    return last_grant is not None and last_grant >= period_start


def _apply_grant(db: Session, account: Account, now: datetime) -> GrantResult:
    period_start, next_period_start = billing_period_for(account, now)
    key = grant_idempotency_key(account.id, period_start)

    with ledger_transaction(db):
        insert_balance_if_absent(db, account.id)
        balance = lock_balance(db, account.id)

        if _already_granted(balance, period_start) or find_operation_entries(db, account.id, key):
            return GrantResult(
                account_id=account.id,
                plan=account.plan,
                applied=False,
                period_start=period_start,
                expires_at=next_period_start,
            )

        forfeited = balance.included_credits
        if forfeited > 0:
            balance.included_credits = 0
            append_entry(
                db,
                balance,
                entry_type="expire",
                pool="included",
                amount=-forfeited,
                now=now,
                idempotency_key=f"expire:{account.id}:{period_start:%Y-%m-%d}",
                period_start=period_start,
                description=f"Unused included credits forfeited: {forfeited}",
            )

        monthly = get_tier_credits(db, account.plan)
        balance.included_credits = monthly
        balance.included_credits_expire_at = next_period_start
        balance.last_monthly_grant_at = now
        balance.last_grant_period_start = period_start
        entry = append_entry(
            db,
            balance,
            entry_type="grant",
            pool="included",
            amount=monthly,
            now=now,
            idempotency_key=key,
            period_start=period_start,
            description=f"Monthly included credits ({account.plan or 'free'}): {monthly}",
        )

    logger.info(
        "Granted %d included credits to account %s for period %s (plan=%s, forfeited=%d)",
        monthly,
        account.id,
        period_start.date(),
        account.plan,
        forfeited,
    )
    return GrantResult(
        account_id=account.id,
        plan=account.plan,
        applied=True,
        granted=monthly,
        forfeited=forfeited,
        period_start=period_start,
        expires_at=next_period_start,
        entry_id=entry.id,
    )


def apply_monthly_grant(db: Session, account_id: uuid.UUID, now: datetime | None = None) -> GrantResult:
    """Apply this period's included-credit grant to one account, at most once.

    Free and unknown plans are granted 0 credits; the grant is still recorded
    so the period is marked as handled.
    """
    now = as_utc(now) or utcnow()
    account = db.get(Account, account_id)
    if account is None:
        raise AccountNotFoundError(f"Account {account_id} not found")
    period_start, _ = billing_period_for(account, now)
    return retry_on_key_conflict(grant_idempotency_key(account.id, period_start), _apply_grant, db, account, now)


def run_monthly_grants(
    session_factory: Callable[[], Session],
    now: datetime | None = None,
) -> GrantRunSummary:
    """Verify and apply monthly grants to every account, one transaction per account.

    An account whose balance diverges from its ledger is frozen and counted
    as failed without a grant. A failure for one account is logged and
    counted; the rest still run and the failed account is retried on the
    next scheduled run.
    """
    now = as_utc(now) or utcnow()
    summary = GrantRunSummary()

    db = session_factory()
    try:
        account_ids = list(db.execute(select(Account.id).order_by(Account.created_at)).scalars().all())
    finally:
        db.close()

    for account_id in account_ids:
        summary.processed += 1
        db = session_factory()
        try:
            ensure_balance_exists(db, account_id)
            verify_ledger(db, account_id)
            result = apply_monthly_grant(db, account_id, now=now)
            if result.applied:
                summary.granted += 1
            else:
                summary.skipped += 1
        except LedgerInvariantViolation as exc:
            logger.error("Monthly grant skipped for account %s: %s", account_id, exc)
            summary.failed += 1
            summary.failed_account_ids.append(account_id)
        except Exception:
            logger.exception("Monthly grant failed for account %s", account_id)
            summary.failed += 1
            summary.failed_account_ids.append(account_id)
        finally:
            db.close()

    logger.info(
        "Monthly grant run complete: processed=%d granted=%d skipped=%d failed=%d",
        summary.processed,
        summary.granted,
        summary.skipped,
        summary.failed,
    )
    return summary
