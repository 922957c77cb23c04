"""Payment gateway webhooks.

Route: /api/v1/webhooks/stripe
"""

import json
import logging

import stripe
from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

from metering.core.config import settings
from metering.core.database import get_db
from metering.services.payments import handle_stripe_event

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/stripe")
async def stripe_webhook(request: Request, db: Session = Depends(get_db)):
    """Verify a Stripe delivery and apply it to the credit ledger.

    Storage failures surface as 503 so Stripe redelivers; every handler is
    idempotent on the Stripe object id.
    """
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")

    if not sig_header:
        raise HTTPException(status_code=400, detail="Missing stripe-signature header")

    if not settings.STRIPE_WEBHOOK_SECRET:
        logger.error("STRIPE_WEBHOOK_SECRET not configured")
        raise HTTPException(status_code=500, detail="Webhook secret not configured")

    try:
        stripe.Webhook.construct_event(
            payload,
            sig_header,
            settings.STRIPE_WEBHOOK_SECRET,
            tolerance=settings.STRIPE_WEBHOOK_TOLERANCE_SECONDS,
        )
    except stripe.SignatureVerificationError as exc:
        logger.warning("Invalid Stripe webhook signature: %s", exc)
        raise HTTPException(status_code=400, detail="Invalid webhook signature")
    except ValueError as exc:
        logger.warning("Invalid Stripe webhook payload: %s", exc)
        raise HTTPException(status_code=400, detail="Invalid payload")

    event = json.loads(payload)
    logger.info("Processing Stripe event %s (%s)", event.get("type"), event.get("id"))
    return await run_in_threadpool(handle_stripe_event, db, event)
