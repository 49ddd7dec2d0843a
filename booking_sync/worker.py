"""
Background worker that reconciles unfinished external sync.

Usage:
    python -m booking_sync.worker

The worker runs a reconciliation pass every WORKER_POLL_INTERVAL seconds.
For production, run this as a separate process next to the API.
"""

import asyncio
import logging

from booking_sync.core.config import settings
from booking_sync.core.structured_logging import configure_logging
from booking_sync.db.session import SessionLocal
from booking_sync.services import reconcile_service
from booking_sync.services.ehr_client import build_ehr_client

configure_logging()
logger = logging.getLogger(__name__)

if settings.SENTRY_DSN and settings.ENV != "dev":
    import sentry_sdk

    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        environment=settings.ENV,
        send_default_pii=False,
    )


async def run_once(ehr=None) -> reconcile_service.ReconcileSummary:
    """One reconciliation pass with a fresh session."""
    ehr = ehr or build_ehr_client()
    with SessionLocal() as db:
        return await reconcile_service.reconcile_pending(db, ehr)


async def worker_loop() -> None:
    """Main worker loop - reconciles, then sleeps."""
    logger.info(
        "Worker starting (poll interval: %ss, batch size: %s)",
        settings.WORKER_POLL_INTERVAL,
        settings.RECONCILE_BATCH_SIZE,
    )
    if not settings.EHR_API_KEY:
        logger.warning("EHR_API_KEY not set - external calls will be rejected")

    ehr = build_ehr_client()
    while True:
        try:
            summary = await run_once(ehr)
            if summary.examined:
                logger.info("Reconciled %s appointments", summary.examined)
        except Exception:
            logger.exception("Error in worker loop")

        await asyncio.sleep(settings.WORKER_POLL_INTERVAL)


def main() -> None:
    """Entry point for the worker."""
    try:
        asyncio.run(worker_loop())
    except KeyboardInterrupt:
        logger.info("Worker shutting down")


if __name__ == "__main__":
    main()
