"""Credit ledger — balances, monthly grants, debits, refunds, and pack purchases.

Feature adapters and webhook handlers use only the functions exported here;
nothing outside this package writes to the ledger tables.
"""

from metering.services.credits.balance import (
    ensure_balance_exists,
    get_all_tier_credits,
    get_balance,
    get_ledger,
    get_tier_credits,
    seed_tier_credits,
    unfreeze_account,
    verify_ledger,
)
from metering.services.credits.debit import debit, refund, refund_operation, refunded_credits
from metering.services.credits.exceptions import (
    AccountNotFoundError,
    CreditError,
    CreditPackNotFoundError,
    DuplicateOperationError,
    InsufficientCreditsError,
    InvalidAmountError,
    LedgerEntryNotFoundError,
    LedgerInvariantViolation,
    RefundNotAllowedError,
    StorageError,
)
from metering.services.credits.grants import apply_monthly_grant, billing_period_for, run_monthly_grants
from metering.services.credits.metering import check_affordability, run_metered, with_storage_retry
from metering.services.credits.models import (
    AffordabilityCheck,
    Balance,
    DebitResult,
    GrantResult,
    GrantRunSummary,
    PurchaseResult,
    RefundResult,
)
from metering.services.credits.packs import (
    apply_purchase,
    find_pack_by_price_id,
    format_price,
    get_credit_pack,
    get_credit_packs,
    reverse_purchase,
)

__all__ = [
    "AccountNotFoundError",
    "AffordabilityCheck",
    "Balance",
    "CreditError",
    "CreditPackNotFoundError",
    "DebitResult",
    "DuplicateOperationError",
    "GrantResult",
    "GrantRunSummary",
    "InsufficientCreditsError",
    "InvalidAmountError",
    "LedgerEntryNotFoundError",
    "LedgerInvariantViolation",
    "PurchaseResult",
    "RefundNotAllowedError",
    "RefundResult",
    "StorageError",
    "apply_monthly_grant",
    "apply_purchase",
    "billing_period_for",
    "check_affordability",
    "debit",
    "ensure_balance_exists",
    "find_pack_by_price_id",
    "format_price",
    "get_all_tier_credits",
    "get_balance",
    "get_credit_pack",
    "get_credit_packs",
    "get_ledger",
    "get_tier_credits",
    "refund",
    "refund_operation",
    "refunded_credits",
    "reverse_purchase",
    "run_metered",
    "run_monthly_grants",
    "seed_tier_credits",
    "unfreeze_account",
    "verify_ledger",
    "with_storage_retry",
]
