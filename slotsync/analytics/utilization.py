import datetime as dt
import math
from collections import Counter

from loguru import logger

from slotsync.domain.exceptions import ProviderNotFoundError
from slotsync.domain.models import BOOKED_STATUSES, UtilizationRecord, UtilizationSummary
from slotsync.scheduling.clock import ClinicClock
from slotsync.scheduling.ports import SchedulingRepository, SlotKey
from slotsync.scheduling.slot_grid import align_range

Bucket = tuple[int, dt.time]


class UtilizationAggregator:
    """Batch job rolling booking history into per-slot booking rates.

    For each (weekday, time) bucket the rate is the share of grid slots in
    the trailing window that ended up held by a confirmed or completed
    appointment. Run it on a schedule, never inline with a booking.
    """

    def __init__(
        self,
        repository: SchedulingRepository,
        clock: ClinicClock,
        *,
        window_days: int = 90,
        underutilized_threshold: float = 50.0,
        overutilized_threshold: float = 80.0,
    ) -> None:
        self._repo = repository
        self._clock = clock
        self._window_days = window_days
        self.underutilized_threshold = underutilized_threshold
        self.overutilized_threshold = overutilized_threshold

    async def recompute(
        self, provider_id: str, as_of: dt.date | None = None
    ) -> list[UtilizationRecord]:
        """Recompute and store the provider's records for the window ending before ``as_of``."""
        if await self._repo.get_provider(provider_id) is None:
            raise ProviderNotFoundError(provider_id)

        as_of = as_of or self._clock.today()
        first_day = as_of - dt.timedelta(days=self._window_days)
        last_day = as_of - dt.timedelta(days=1)

        rows = await self._repo.list_slots(provider_id, first_day, last_day)
        grid: set[SlotKey] = {(row.date, row.time) for row in rows}
        offered: Counter[Bucket] = Counter((day.weekday(), time) for day, time in grid)

        window_start, window_end = self._clock.day_bounds(first_day, last_day)
        appointments = await self._repo.list_appointments(provider_id, window_start, window_end)

        held: set[SlotKey] = set()
        for appointment in appointments:
            if appointment.status not in BOOKED_STATUSES:
                continue
            for day, time_range in self._clock.local_span(appointment.start, appointment.end):
                held.update((day, t) for t in align_range(time_range) if (day, t) in grid)
        booked: Counter[Bucket] = Counter((day.weekday(), time) for day, time in held)

        computed_at = self._clock.now_utc()
        records = [
            UtilizationRecord(
                provider_id=provider_id,
                weekday=weekday,
                time_of_day=time,
                offered_slots=count,
                booked_slots=booked[(weekday, time)],
                recent_booking_rate=round(min(100.0, booked[(weekday, time)] / count * 100), 2),
                computed_at=computed_at,
            )
            for (weekday, time), count in sorted(offered.items())
        ]
        await self._repo.replace_utilization(provider_id, records)

        logger.info(
            "Utilization recomputed: provider={}, window={}..{}, buckets={}, booked_slots={}",
            provider_id,
            first_day,
            last_day,
            len(records),
            len(held),
        )
        return records

    async def recompute_all(
        self, as_of: dt.date | None = None
    ) -> dict[str, list[UtilizationRecord] | None]:
        results: dict[str, list[UtilizationRecord] | None] = {}
        for provider in await self._repo.list_providers():
            try:
                results[provider.provider_id] = await self.recompute(provider.provider_id, as_of)
            except Exception:
                logger.exception("Utilization recompute failed for provider {}", provider.provider_id)
                results[provider.provider_id] = None
        return results

    async def records_for(self, provider_id: str, weekday: int) -> list[UtilizationRecord]:
        return await self._repo.list_utilization(provider_id, weekday)

    def is_underutilized(self, record: UtilizationRecord) -> bool:
        return record.recent_booking_rate < self.underutilized_threshold

    def summarize(self, records: list[UtilizationRecord]) -> UtilizationSummary:
        """Overall balance of a provider's schedule; 100 means perfectly even."""
        if not records:
            return UtilizationSummary()

        rates = [r.recent_booking_rate for r in records]
        average = sum(rates) / len(rates)
        variance = sum((rate - average) ** 2 for rate in rates) / len(rates)

        return UtilizationSummary(
            total_slots=len(records),
            underutilized_slots=sum(1 for r in records if self.is_underutilized(r)),
            overutilized_slots=sum(
                1 for r in records if r.recent_booking_rate > self.overutilized_threshold
            ),
            average_booking_rate=round(average, 2),
            balance_score=round(max(0.0, 100 - math.sqrt(variance))),
        )
