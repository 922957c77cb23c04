"""HTTP mapping for credit ledger exceptions raised out of request handlers."""

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from metering.services.credits.exceptions import (
    AccountNotFoundError,
    CreditError,
    CreditPackNotFoundError,
    InsufficientCreditsError,
    LedgerEntryNotFoundError,
    LedgerInvariantViolation,
)

logger = logging.getLogger(__name__)

NOT_FOUND_ERRORS = (AccountNotFoundError, CreditPackNotFoundError, LedgerEntryNotFoundError)


async def insufficient_credits_handler(request: Request, exc: InsufficientCreditsError) -> JSONResponse:
    return JSONResponse(
        status_code=402,
        content={
            "detail": {
                "message": str(exc),
                "required": exc.required,
                "available": exc.available,
                "shortfall": exc.shortfall,
            }
        },
    )


async def credit_error_handler(request: Request, exc: CreditError) -> JSONResponse:
    if isinstance(exc, NOT_FOUND_ERRORS):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    if isinstance(exc, LedgerInvariantViolation):
        logger.error("%s %s: %s", request.method, request.url.path, exc)
    else:
        logger.warning("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=503,
        content={"detail": "Credit service temporarily unavailable, please try again"},
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(InsufficientCreditsError, insufficient_credits_handler)
    app.add_exception_handler(CreditError, credit_error_handler)
