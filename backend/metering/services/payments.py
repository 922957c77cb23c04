"""Stripe event handling — turns verified payment events into ledger mutations.

Signature verification happens in the webhook endpoint; everything here
assumes the event is authentic. Each handler derives its idempotency key from
the Stripe object id so redelivered events are applied once.
"""

import logging
import uuid

from sqlalchemy.orm import Session

from metering.models.account import Account
from metering.services.credits.exceptions import CreditPackNotFoundError, DuplicateOperationError
from metering.services.credits.models import PurchaseResult
from metering.services.credits.packs import apply_purchase, find_pack_by_price_id, reverse_purchase

logger = logging.getLogger(__name__)

CHECKOUT_COMPLETED = "checkout.session.completed"
INVOICE_PAID = "invoice.payment_succeeded"
CHARGE_REFUNDED = "charge.refunded"

HANDLED_EVENTS = (CHECKOUT_COMPLETED, INVOICE_PAID, CHARGE_REFUNDED)


class IgnoredEvent(Exception):
    """The event is authentic but carries nothing the ledger should act on."""


def _metadata_value(metadata: dict | None, *names: str) -> str | None:
    if not metadata:
        return None
    for name in names:
        value = metadata.get(name)
        if value:
            return str(value)
    return None


def _account_id(db: Session, metadata: dict | None) -> uuid.UUID:
    raw = _metadata_value(metadata, "account_id", "accountId")
    if raw is None:
        raise IgnoredEvent("no account id in metadata")
    try:
        account_id = uuid.UUID(raw)
    except ValueError as exc:
        raise IgnoredEvent(f"malformed account id {raw!r}") from exc
    if db.get(Account, account_id) is None:
        raise IgnoredEvent(f"unknown account {account_id}")
    return account_id


def _pack_id(db: Session, metadata: dict | None, price_id: str | None = None) -> uuid.UUID:
    raw = _metadata_value(metadata, "pack_id", "packId")
    if raw is not None:
        try:
            return uuid.UUID(raw)
        except ValueError as exc:
            raise IgnoredEvent(f"malformed pack id {raw!r}") from exc
    if price_id:
        pack = find_pack_by_price_id(db, price_id)
        if pack is not None:
            return pack.id
    raise IgnoredEvent("no credit pack in metadata")


def _invoice_price_id(invoice: dict) -> str | None:
    lines = (invoice.get("lines") or {}).get("data") or []
    for line in lines:
        price = line.get("price") or (line.get("pricing") or {}).get("price_details")
        if isinstance(price, dict) and price.get("id"):
            return price["id"]
        if isinstance(price, str):
            return price
    return None


def handle_checkout_completed(db: Session, session: dict) -> PurchaseResult:
    """One-time pack purchase. Subscription checkouts are credited per invoice."""
    metadata = session.get("metadata")
    if session.get("mode") == "subscription":
        raise IgnoredEvent("subscription checkout; credited on invoice payment")
    if session.get("payment_status") not in (None, "paid", "no_payment_required"):
        raise IgnoredEvent(f"payment status {session.get('payment_status')}")

    return apply_purchase(
        db,
        _account_id(db, metadata),
        _pack_id(db, metadata),
        f"checkout:{session['id']}",
        external_reference=session["id"],
    )


def handle_invoice_paid(db: Session, invoice: dict) -> PurchaseResult:
    """Recurring pack renewal; the subscription's metadata names the account and pack."""
    details = invoice.get("subscription_details") or {}
    metadata = details.get("metadata") or invoice.get("metadata")
    if _metadata_value(metadata, "pack_id", "packId", "credits") is None:
        raise IgnoredEvent("invoice is not for a credit pack subscription")

    return apply_purchase(
        db,
        _account_id(db, metadata),
        _pack_id(db, metadata, _invoice_price_id(invoice)),
        f"invoice:{invoice['id']}",
        recurring=True,
        external_reference=invoice["id"],
    )


def handle_charge_refunded(db: Session, charge: dict) -> PurchaseResult:
    """Claw back the refunded pack's credits from the purchased pool."""
    metadata = charge.get("metadata")
    raw_credits = _metadata_value(metadata, "credits")
    if raw_credits is None:
        raise IgnoredEvent("charge is not for a credit pack")
    try:
        credits = int(raw_credits)
    except ValueError as exc:
        raise IgnoredEvent(f"malformed credits {raw_credits!r}") from exc

    return reverse_purchase(
        db,
        _account_id(db, metadata),
        credits,
        f"refund:{charge['id']}",
        external_reference=charge["id"],
    )


_HANDLERS = {
    CHECKOUT_COMPLETED: handle_checkout_completed,
    INVOICE_PAID: handle_invoice_paid,
    CHARGE_REFUNDED: handle_charge_refunded,
}


def handle_stripe_event(db: Session, event: dict) -> dict:
    """Dispatch a verified Stripe event. Returns a small status payload.

    StorageError propagates so the caller can ask Stripe to redeliver.
    """
    event_type = event.get("type")
    event_id = event.get("id")
    handler = _HANDLERS.get(event_type)
    if handler is None:
        logger.debug("Ignoring unhandled Stripe event %s (%s)", event_type, event_id)
        return {"status": "ignored", "event_id": event_id}

    obj = event["data"]["object"]
    try:
        result = handler(db, obj)
    except IgnoredEvent as exc:
        logger.warning("Stripe event %s (%s) ignored: %s", event_type, event_id, exc)
        return {"status": "ignored", "event_id": event_id}
    except (CreditPackNotFoundError, DuplicateOperationError):
        # Retrying will not help; needs manual reconciliation
        logger.exception("Stripe event %s (%s) could not be applied", event_type, event_id)
        return {"status": "failed", "event_id": event_id}

    logger.info(
        "Stripe event %s (%s) applied: account=%s credits=%d replayed=%s",
        event_type,
        event_id,
        result.account_id,
        result.credits,
        result.replayed,
    )
    return {"status": "replayed" if result.replayed else "applied", "event_id": event_id}
