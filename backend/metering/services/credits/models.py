"""Credit ledger result models."""

import uuid
from datetime import datetime

from pydantic import BaseModel, Field


class Balance(BaseModel):
    account_id: uuid.UUID
    included_credits: int
    purchased_credits: int
    # Included credits counted only while unexpired
    total_credits: int
    spendable_included_credits: int
    included_credits_expire_at: datetime | None = None
    last_monthly_grant_at: datetime | None = None
    is_frozen: bool = False


class DebitResult(BaseModel):
    account_id: uuid.UUID
    feature: str
    idempotency_key: str
    amount: int
    included_debited: int
    purchased_debited: int
    balance_after: int
    entry_ids: list[uuid.UUID]
    replayed: bool = False


class RefundResult(BaseModel):
    account_id: uuid.UUID
    refunded_entry_id: uuid.UUID
    idempotency_key: str
    amount: int
    pool: str
    balance_after: int
    entry_id: uuid.UUID
    replayed: bool = False


class GrantResult(BaseModel):
    account_id: uuid.UUID
    plan: str | None
    applied: bool
    granted: int = 0
    forfeited: int = 0
    period_start: datetime
    expires_at: datetime
    entry_id: uuid.UUID | None = None


class GrantRunSummary(BaseModel):
    processed: int = 0
    granted: int = 0
    skipped: int = 0
    failed: int = 0
    failed_account_ids: list[uuid.UUID] = Field(default_factory=list)


class PurchaseResult(BaseModel):
    account_id: uuid.UUID
    idempotency_key: str
    pack_id: uuid.UUID | None = None
    credits: int
    purchased_credits_after: int
    balance_after: int
    entry_id: uuid.UUID | None = None
    replayed: bool = False


class AffordabilityCheck(BaseModel):
    has_credits: bool
    required: int
    available: int
    balance: Balance
