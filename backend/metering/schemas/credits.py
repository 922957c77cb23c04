import uuid
from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict

LedgerEntryType = Literal["grant", "expire", "purchase", "debit", "refund", "reversal"]
CreditPool = Literal["included", "purchased"]


# ---------------------------------------------------------------------------
# Balance
# ---------------------------------------------------------------------------


class BalanceSummaryResponse(BaseModel):
    account_id: uuid.UUID
    included: int
    purchased: int
    total: int
    monthly_credits: int
    included_credits_expire_at: datetime | None
    last_monthly_grant_at: datetime | None


# ---------------------------------------------------------------------------
# Packs
# ---------------------------------------------------------------------------


class CreditPackResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    name: str
    credits: int
    price_cents: int
    formatted_price: str
    external_price_id_one_time: str | None
    external_price_id_recurring: str | None
    display_order: int


class CreditPackListResponse(BaseModel):
    items: list[CreditPackResponse]


# ---------------------------------------------------------------------------
# Ledger history
# ---------------------------------------------------------------------------


class LedgerEntryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    account_id: uuid.UUID
    type: LedgerEntryType
    pool: CreditPool
    amount: int
    balance_after: int
    feature: str | None
    feature_metadata: dict | None
    idempotency_key: str
    reverses_entry_id: uuid.UUID | None
    external_reference: str | None
    description: str | None
    created_by: str | None
    created_at: datetime


class LedgerHistoryResponse(BaseModel):
    items: list[LedgerEntryResponse]
    total: int
    page: int
    page_size: int


# ---------------------------------------------------------------------------
# Tiers
# ---------------------------------------------------------------------------


class TierCreditResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    tier: str
    monthly_credits: int


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class InsufficientCreditsResponse(BaseModel):
    message: str
    required: int
    available: int
    shortfall: int
