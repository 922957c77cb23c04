"""Credit ledger API — balance, packs, ledger history, and tier credits."""

import uuid

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from metering.core.database import get_db
from metering.models.account import Account
from metering.models.credit_ledger import LEDGER_ENTRY_TYPES
from metering.schemas.credits import (
    BalanceSummaryResponse,
    CreditPackListResponse,
    CreditPackResponse,
    LedgerHistoryResponse,
    TierCreditResponse,
)
from metering.services.credits import (
    AccountNotFoundError,
    ensure_balance_exists,
    format_price,
    get_all_tier_credits,
    get_balance,
    get_credit_packs,
    get_ledger,
    get_tier_credits,
)

router = APIRouter()


def _get_account(db: Session, account_id: uuid.UUID) -> Account:
    account = db.get(Account, account_id)
    if account is None:
        raise AccountNotFoundError(f"Account {account_id} not found")
    return account


# ---------------------------------------------------------------------------
# Balance
# ---------------------------------------------------------------------------


@router.get("/balance", response_model=BalanceSummaryResponse)
def get_credit_balance(
    account_id: uuid.UUID = Query(...),
    db: Session = Depends(get_db),
):
    """Get the spendable credit balance for an account."""
    account = _get_account(db, account_id)
    ensure_balance_exists(db, account.id)
    balance = get_balance(db, account.id)
    return BalanceSummaryResponse(
        account_id=account.id,
        included=balance.spendable_included_credits,
        purchased=balance.purchased_credits,
        total=balance.total_credits,
        monthly_credits=get_tier_credits(db, account.plan),
        included_credits_expire_at=balance.included_credits_expire_at,
        last_monthly_grant_at=balance.last_monthly_grant_at,
    )


# ---------------------------------------------------------------------------
# Packs
# ---------------------------------------------------------------------------


@router.get("/packs", response_model=CreditPackListResponse)
def list_credit_packs(db: Session = Depends(get_db)):
    """List active credit packs in display order."""
    packs = get_credit_packs(db)
    return CreditPackListResponse(
        items=[
            CreditPackResponse(
                id=pack.id,
                name=pack.name,
                credits=pack.credits,
                price_cents=pack.price_cents,
                formatted_price=format_price(pack.price_cents),
                external_price_id_one_time=pack.external_price_id_one_time,
                external_price_id_recurring=pack.external_price_id_recurring,
                display_order=pack.display_order,
            )
            for pack in packs
        ]
    )


# ---------------------------------------------------------------------------
# Ledger history
# ---------------------------------------------------------------------------


@router.get("/ledger", response_model=LedgerHistoryResponse)
def get_ledger_history(
    account_id: uuid.UUID = Query(...),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    feature: str | None = Query(None),
    entry_type: str | None = Query(None, alias="type", pattern=f"^({'|'.join(LEDGER_ENTRY_TYPES)})$"),
    db: Session = Depends(get_db),
):
    """Get paginated ledger entries for an account, newest first."""
    _get_account(db, account_id)
    entries, total = get_ledger(db, account_id, page, page_size, feature=feature, entry_type=entry_type)
    return LedgerHistoryResponse(
        items=entries,
        total=total,
        page=page,
        page_size=page_size,
    )


# ---------------------------------------------------------------------------
# Tiers
# ---------------------------------------------------------------------------


@router.get("/tiers", response_model=list[TierCreditResponse])
def list_tier_credits(db: Session = Depends(get_db)):
    """Monthly included credits for every subscription tier."""
    return get_all_tier_credits(db)
