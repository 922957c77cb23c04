"""Grant scheduler — periodically applies monthly included-credit grants.

Grants are idempotent per billing period, so polling more often than monthly
only costs a table scan. Run once by hand with::

    python -m metering.services.scheduler --once
"""

import argparse
import asyncio
import logging

from metering.core.config import settings
from metering.core.database import SessionLocal
from metering.services.credits.grants import run_monthly_grants

logger = logging.getLogger(__name__)


async def grant_scheduler_loop() -> None:
    """Background loop that runs monthly grants every CREDIT_GRANT_POLL_INTERVAL_SECONDS."""
    interval = settings.CREDIT_GRANT_POLL_INTERVAL_SECONDS
    logger.info("Credit grant scheduler started (poll interval: %ds)", interval)

    while True:
        try:
            summary = await asyncio.to_thread(run_monthly_grants, SessionLocal)
            if summary.granted > 0:
                logger.info("Scheduler granted credits to %d account(s)", summary.granted)
            if summary.failed > 0:
                logger.warning("Scheduler grant run had %d failure(s), retrying next poll", summary.failed)
        except Exception:
            logger.exception("Error in credit grant scheduler loop")

        await asyncio.sleep(interval)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Apply monthly included-credit grants.")
    parser.add_argument("--once", action="store_true", help="run a single grant pass and exit")
    args = parser.parse_args(argv)

    logging.basicConfig(level=settings.LOG_LEVEL)

    if not args.once:
        asyncio.run(grant_scheduler_loop())
        return 0

    summary = run_monthly_grants(SessionLocal)
    print(
        f"processed={summary.processed} granted={summary.granted} "
        f"skipped={summary.skipped} failed={summary.failed}"
    )
    return 1 if summary.failed else 0


if __name__ == "__main__":
    raise SystemExit(main())
