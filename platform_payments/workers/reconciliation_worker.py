"""
Reconciliation background worker.

Runs daily reconciliation for every tenant at a scheduled UTC hour
(``reconciliation_hour``, 2 AM by default), covering the previous day.
"""
import argparse
import asyncio
import signal
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, Optional

import structlog

from platform_payments.config import get_settings
from platform_payments.core.models import ReconciliationResult
from platform_payments.monitoring.logging import setup_logging
from platform_payments.services import PaymentServices

logger = structlog.get_logger(__name__)


def yesterday() -> date:
    return datetime.now(timezone.utc).date() - timedelta(days=1)


async def run_daily_reconciliation(
    services: PaymentServices, day: Optional[date] = None
) -> Dict[str, ReconciliationResult]:
    """
    Reconcile one day for every tenant known to the store.

    A failing tenant does not stop the others; its failed result is
    returned alongside the rest.

    Args:
        services: Wired payment services
        day: UTC day to reconcile (default: yesterday)

    Returns:
        Dict[str, ReconciliationResult]: Result per tenant id
    """
    day = day or yesterday()
    tenant_ids = await services.store.list_tenant_ids()
    logger.info("daily_reconciliation_started", date=day.isoformat(), tenants=len(tenant_ids))

    results: Dict[str, ReconciliationResult] = {}
    for tenant_id in tenant_ids:
        result = await services.analytics.reconcile_payments(tenant_id, day)
        results[tenant_id] = result

        if not result.success:
            logger.error(
                "tenant_reconciliation_failed",
                tenant_id=tenant_id,
                date=day.isoformat(),
                error=result.error,
            )
        elif result.reconciliation.discrepancies:
            logger.warning(
                "reconciliation_discrepancies_detected",
                tenant_id=tenant_id,
                date=day.isoformat(),
                discrepancy_count=len(result.reconciliation.discrepancies),
            )

    logger.info(
        "daily_reconciliation_completed",
        date=day.isoformat(),
        tenants=len(results),
        failed=sum(1 for r in results.values() if not r.success),
    )
    return results


def calculate_next_run_time(target_hour: int, now: Optional[datetime] = None) -> float:
    """
    Calculate seconds until next scheduled run.

    Args:
        target_hour: UTC hour of day to run (24-hour format)
        now: Current time (default: now in UTC)

    Returns:
        float: Seconds until next run
    """
    now = now or datetime.now(timezone.utc)
    next_run = now.replace(hour=target_hour, minute=0, second=0, microsecond=0)

    # Past today's run time, schedule for tomorrow
    if now >= next_run:
        next_run += timedelta(days=1)

    seconds_until = (next_run - now).total_seconds()

    logger.info(
        "reconciliation_next_run_scheduled",
        next_run=next_run.isoformat(),
        seconds_until=seconds_until,
    )
    return seconds_until


async def start_reconciliation_worker(
    target_hour: Optional[int] = None, services: Optional[PaymentServices] = None
) -> None:
    """
    Start the reconciliation worker.

    Runs daily at the specified UTC hour until SIGINT/SIGTERM.

    Args:
        target_hour: Hour of day to run (default: ``reconciliation_hour``)
        services: Wired payment services (built from settings if not provided)
    """
    settings = get_settings()
    services = services or PaymentServices(settings)
    target_hour = settings.reconciliation_hour if target_hour is None else target_hour

    logger.info("reconciliation_worker_starting", target_hour=target_hour)

    running = True

    def signal_handler(sig: int, frame: Any) -> None:
        nonlocal running
        logger.info("reconciliation_worker_shutdown_signal_received", signal=sig)
        running = False

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        while running:
            seconds_until = calculate_next_run_time(target_hour)

            # Sleep in short slices so a shutdown signal is noticed
            while seconds_until > 0 and running:
                sleep_time = min(seconds_until, 60)
                await asyncio.sleep(sleep_time)
                seconds_until -= sleep_time

            if not running:
                break

            try:
                await run_daily_reconciliation(services)
            except Exception as e:
                # Keep the schedule alive; the next day's run retries
                logger.error("reconciliation_execution_error", error=str(e), exc_info=True)

    finally:
        await services.close()
        logger.info("reconciliation_worker_stopped")


async def _run_once(day: Optional[date]) -> None:
    services = PaymentServices()
    try:
        await run_daily_reconciliation(services, day)
    finally:
        await services.close()


def main() -> None:
    parser = argparse.ArgumentParser(description="Payment reconciliation worker")
    parser.add_argument(
        "--hour", type=int, default=None, help="UTC hour of day to run reconciliation (0-23)"
    )
    parser.add_argument(
        "--once", action="store_true", help="Reconcile a single day and exit"
    )
    parser.add_argument(
        "--date", type=date.fromisoformat, default=None, help="Day to reconcile with --once (YYYY-MM-DD)"
    )
    args = parser.parse_args()

    setup_logging()
    if args.once:
        asyncio.run(_run_once(args.date))
    else:
        asyncio.run(start_reconciliation_worker(target_hour=args.hour))


if __name__ == "__main__":
    main()
