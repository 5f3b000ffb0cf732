import argparse
import asyncio
import datetime as dt
import sys

from loguru import logger

from slotsync.analytics.utilization import UtilizationAggregator
from slotsync.calendar.factory import build_calendar_service
from slotsync.config import AppConfig
from slotsync.scheduling.adapters.sql import SqlSchedulingRepository
from slotsync.scheduling.clock import ClinicClock
from slotsync.scheduling.slot_grid import SlotGridStore

JOBS = ("sweep", "utilization", "all")


def _positive_int(value: str) -> int:
    days = int(value)
    if days < 1:
        raise argparse.ArgumentTypeError(f"expected at least 1 day, got {value}")
    return days


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run slot grid batch jobs.")
    parser.add_argument("job", choices=JOBS, help="which job to run")
    parser.add_argument(
        "--days",
        type=_positive_int,
        default=None,
        help="days to sweep, today included (defaults to SCHEDULING_SYNC_LOOKAHEAD_DAYS)",
    )
    return parser.parse_args(argv)


async def run_jobs(job: str, days: int | None, config: AppConfig) -> int:
    """Run the requested job(s). Returns the number of providers that failed."""
    clock = ClinicClock(config.clinic_timezone)
    repository = SqlSchedulingRepository(config.database.url, echo=config.database.echo)
    slot_grid = SlotGridStore(
        repository,
        workday_start=config.scheduling.workday_start,
        workday_end=config.scheduling.workday_end,
        working_days=frozenset(config.scheduling.working_days),
        break_start=config.scheduling.break_start,
        break_end=config.scheduling.break_end,
        window_days=config.scheduling.grid_window_days,
    )
    calendar = build_calendar_service(config, repository, slot_grid, clock)
    failures = 0

    try:
        today = clock.today()
        if job in ("sweep", "all"):
            for provider in await repository.list_providers():
                await slot_grid.ensure_window(provider.provider_id, today)
            lookahead = days if days is not None else config.scheduling.sync_lookahead_days
            reports = await calendar.sweep_all(today, today + dt.timedelta(days=lookahead - 1))
            swept = [r for r in reports.values() if r is not None]
            logger.info(
                "Sweep job done: {} provider(s) swept, {} skipped or failed",
                len(swept),
                len(reports) - len(swept),
            )

        if job in ("utilization", "all"):
            aggregator = UtilizationAggregator(
                repository,
                clock,
                window_days=config.scheduling.utilization_window_days,
                underutilized_threshold=config.scheduling.underutilized_threshold,
                overutilized_threshold=config.scheduling.overutilized_threshold,
            )
            results = await aggregator.recompute_all(today)
            failures += sum(1 for r in results.values() if r is None)
            for provider_id, records in results.items():
                if records is None:
                    continue
                summary = aggregator.summarize(records)
                logger.info(
                    "Utilization {}: buckets={}, under={}, over={}, balance={}",
                    provider_id,
                    summary.total_slots,
                    summary.underutilized_slots,
                    summary.overutilized_slots,
                    summary.balance_score,
                )
    finally:
        await calendar.close()
        await repository.close()

    return failures


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    config = AppConfig()
    logger.info("Starting {} job(s) for clinic timezone {}", args.job, config.clinic_timezone)
    failures = asyncio.run(run_jobs(args.job, args.days, config))
    return 1 if failures else 0


if __name__ == "__main__":
    sys.exit(main())
