"""Credit pack catalog and the purchase bridge driven by payment confirmations.

The bridge trusts its caller to have verified the payment; it only makes the
ledger mutation exactly-once, keyed by the gateway's transaction id.
"""

import logging
import uuid
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from metering.models.credit_ledger import CreditLedgerEntry
from metering.models.credit_pack import CreditPack
from metering.services.credits.exceptions import (
    CreditPackNotFoundError,
    DuplicateOperationError,
    InvalidAmountError,
)
from metering.services.credits.models import PurchaseResult
from metering.services.credits.periods import as_utc, utcnow
from metering.services.credits.store import (
    append_entry,
    find_operation_entries,
    insert_balance_if_absent,
    ledger_transaction,
    lock_balance,
    retry_on_key_conflict,
    spendable_total,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------


def get_credit_packs(db: Session) -> list[CreditPack]:
    """Active packs in display order."""
    return list(
        db.execute(
            select(CreditPack)
            .where(CreditPack.is_active.is_(True))
            .order_by(CreditPack.display_order, CreditPack.credits)
        )
        .scalars()
        .all()
    )


def get_credit_pack(db: Session, pack_id: uuid.UUID) -> CreditPack:
    pack = db.get(CreditPack, pack_id)
    if pack is None or not pack.is_active:
        raise CreditPackNotFoundError(f"Credit pack {pack_id} not found")
    return pack


def find_pack_by_price_id(db: Session, price_id: str) -> CreditPack | None:
    """Look up a pack by either of its payment-gateway price ids."""
    return db.execute(
        select(CreditPack).where(
            (CreditPack.external_price_id_one_time == price_id)
            | (CreditPack.external_price_id_recurring == price_id)
        )
    ).scalar_one_or_none()


def format_price(price_cents: int) -> str:
    return f"${price_cents / 100:,.2f}"


# ---------------------------------------------------------------------------
# Purchase bridge
# ---------------------------------------------------------------------------


def _purchase_result(
    entry: CreditLedgerEntry,
    purchased_after: int,
    pack_id: uuid.UUID | None,
    replayed: bool,
) -> PurchaseResult:
    return PurchaseResult(
        account_id=entry.account_id,
        idempotency_key=entry.operation_key,
        pack_id=pack_id,
        credits=abs(entry.amount),
        purchased_credits_after=purchased_after,
        balance_after=entry.balance_after,
        entry_id=entry.id,
        replayed=replayed,
    )


def _apply_purchase(
    db: Session,
    account_id: uuid.UUID,
    pack: CreditPack,
    idempotency_key: str,
    recurring: bool,
    external_reference: str | None,
    now: datetime,
) -> PurchaseResult:
    with ledger_transaction(db):
        insert_balance_if_absent(db, account_id)
        balance = lock_balance(db, account_id)

        prior = find_operation_entries(db, account_id, idempotency_key)
        if prior:
            if prior[0].type != "purchase":
                raise DuplicateOperationError(idempotency_key, f"previously used for a {prior[0].type}")
            logger.info("Purchase %s for account %s already applied", idempotency_key, account_id)
            return _purchase_result(prior[0], balance.purchased_credits, pack.id, replayed=True)

        balance.purchased_credits += pack.credits
        kind = "subscription renewal" if recurring else "purchase"
        entry = append_entry(
            db,
            balance,
            entry_type="purchase",
            pool="purchased",
            amount=pack.credits,
            now=now,
            idempotency_key=idempotency_key,
            external_reference=external_reference,
            feature_metadata={"pack_id": str(pack.id), "recurring": recurring},
            description=f"Credit pack {kind}: {pack.name} ({pack.credits} credits)",
        )
        result = _purchase_result(entry, balance.purchased_credits, pack.id, replayed=False)

    logger.info(
        "Added %d purchased credits to account %s (pack=%s, key=%s)",
        pack.credits,
        account_id,
        pack.name,
        idempotency_key,
    )
    return result


def apply_purchase(
    db: Session,
    account_id: uuid.UUID,
    pack_id: uuid.UUID,
    idempotency_key: str,
    *,
    recurring: bool = False,
    external_reference: str | None = None,
    now: datetime | None = None,
) -> PurchaseResult:
    """Credit a confirmed pack purchase to the account's purchased pool.

    ``idempotency_key`` must be derived from the gateway's own transaction id
    so duplicate webhook deliveries are applied once.
    """
    if not idempotency_key:
        raise ValueError("idempotency_key is required")
    now = as_utc(now) or utcnow()
    pack = get_credit_pack(db, pack_id)
    return retry_on_key_conflict(
        idempotency_key,
        _apply_purchase,
        db,
        account_id,
        pack,
        idempotency_key,
        recurring,
        external_reference,
        now,
    )


def _reverse_purchase(
    db: Session,
    account_id: uuid.UUID,
    credits: int,
    idempotency_key: str,
    external_reference: str | None,
    now: datetime,
) -> PurchaseResult:
    with ledger_transaction(db):
        insert_balance_if_absent(db, account_id)
        balance = lock_balance(db, account_id)

        prior = find_operation_entries(db, account_id, idempotency_key)
        if prior:
            if prior[0].type != "reversal":
                raise DuplicateOperationError(idempotency_key, f"previously used for a {prior[0].type}")
            return _purchase_result(prior[0], balance.purchased_credits, None, replayed=True)

        clawed_back = min(credits, balance.purchased_credits)
        if clawed_back == 0:
            logger.warning(
                "No purchased credits left to claw back from account %s (%s)",
                account_id,
                idempotency_key,
            )
            return PurchaseResult(
                account_id=account_id,
                idempotency_key=idempotency_key,
                credits=0,
                purchased_credits_after=balance.purchased_credits,
                balance_after=spendable_total(balance, now),
            )

        balance.purchased_credits -= clawed_back
        entry = append_entry(
            db,
            balance,
            entry_type="reversal",
            pool="purchased",
            amount=-clawed_back,
            now=now,
            idempotency_key=idempotency_key,
            external_reference=external_reference,
            description=f"Payment refunded: {clawed_back} of {credits} purchased credits clawed back",
        )
        result = _purchase_result(entry, balance.purchased_credits, None, replayed=False)

    logger.info("Clawed back %d purchased credits from account %s", clawed_back, account_id)
    return result


def reverse_purchase(
    db: Session,
    account_id: uuid.UUID,
    credits: int,
    idempotency_key: str,
    *,
    external_reference: str | None = None,
    now: datetime | None = None,
) -> PurchaseResult:
    """Claw back purchased credits after the gateway refunded a pack charge.

    Never drives the purchased pool below zero; credits already spent are
    not recovered.
    """
    if isinstance(credits, bool) or not isinstance(credits, int) or credits <= 0:
        raise InvalidAmountError(f"Credit amount must be a positive integer, got {credits!r}")
    if not idempotency_key:
        raise ValueError("idempotency_key is required")
    now = as_utc(now) or utcnow()
    return retry_on_key_conflict(
        idempotency_key, _reverse_purchase, db, account_id, credits, idempotency_key, external_reference, now
    )
