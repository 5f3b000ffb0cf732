import datetime as dt

from loguru import logger
from pydantic import ValidationError

from slotsync.domain.exceptions import InvalidTimeError, SlotUnavailableError
from slotsync.domain.models import (
    SLOT_MINUTES,
    ProviderAvailability,
    SlotAvailability,
    SlotSource,
    TimeRange,
)
from slotsync.scheduling.ports import SchedulingRepository, SlotKey

_MINUTES_PER_DAY = 24 * 60

# Monday to Friday.
DEFAULT_WORKING_DAYS = frozenset(range(5))


def _minutes(time: dt.time) -> int:
    return time.hour * 60 + time.minute


def _from_minutes(minutes: int) -> dt.time:
    return dt.time(minutes // 60, minutes % 60)


def make_range(start: dt.time, end: dt.time | None = None) -> TimeRange:
    """Build a TimeRange, translating validation failures to InvalidTimeError."""
    try:
        return TimeRange(start=start, end=end)
    except ValidationError as exc:
        raise InvalidTimeError("range end must be after start", f"{start} - {end}") from exc


def align_range(time_range: TimeRange) -> list[dt.time]:
    """Every grid time covered by ``time_range``.

    Unaligned bounds are widened: start rounds down and end rounds up to the
    30-minute grid, so ``14:10-14:40`` covers ``14:00`` and ``14:30``.
    """
    start = _minutes(time_range.start) // SLOT_MINUTES * SLOT_MINUTES
    if time_range.end is None:
        end = _MINUTES_PER_DAY
    else:
        end_exact = _minutes(time_range.end) + (
            1 if time_range.end.second or time_range.end.microsecond else 0
        )
        end = min(-(-end_exact // SLOT_MINUTES) * SLOT_MINUTES, _MINUTES_PER_DAY)
    return [_from_minutes(m) for m in range(start, end, SLOT_MINUTES)]


def grid_times(workday_start: dt.time, workday_end: dt.time) -> list[dt.time]:
    """Grid times offered in a working day ``[workday_start, workday_end)``."""
    return align_range(make_range(workday_start, workday_end))


def open_times(hours: ProviderAvailability) -> list[dt.time]:
    """Grid times offered under ``hours``; slots overlapping the break are left out."""
    if not hours.is_available:
        return []
    times = grid_times(hours.start_time, hours.end_time)
    if hours.break_start is None or hours.break_end is None:
        return times
    on_break = set(align_range(make_range(hours.break_start, hours.break_end)))
    return [t for t in times if t not in on_break]


class SlotGridStore:
    """Canonical (provider, date, time) -> availability grid.

    Booking and external-calendar reconciliation both go through
    ``set_availability``; a slot is open only when neither side claims it.

    Rows are generated from each provider's weekly hours. A provider with no
    stored hours works ``workday_start``-``workday_end`` on ``working_days``.
    """

    def __init__(
        self,
        repository: SchedulingRepository,
        *,
        workday_start: dt.time = dt.time(9, 0),
        workday_end: dt.time = dt.time(17, 0),
        working_days: frozenset[int] = DEFAULT_WORKING_DAYS,
        break_start: dt.time | None = None,
        break_end: dt.time | None = None,
        window_days: int = 30,
    ) -> None:
        self._repo = repository
        self._workday_start = workday_start
        self._workday_end = workday_end
        self._working_days = working_days
        self._break_start = break_start
        self._break_end = break_end
        self._window_days = window_days

    def default_hours(self, provider_id: str) -> list[ProviderAvailability]:
        return [
            ProviderAvailability(
                provider_id=provider_id,
                weekday=weekday,
                is_available=weekday in self._working_days,
                start_time=self._workday_start,
                end_time=self._workday_end,
                break_start=self._break_start,
                break_end=self._break_end,
            )
            for weekday in range(7)
        ]

    async def weekly_hours(self, provider_id: str) -> list[ProviderAvailability]:
        """Effective hours for all seven weekdays.

        Once a provider has stored hours, weekdays missing from them are closed.
        """
        stored = await self._repo.list_availability(provider_id)
        if not stored:
            return self.default_hours(provider_id)
        by_weekday = {h.weekday: h for h in stored}
        return [
            by_weekday.get(weekday)
            or ProviderAvailability(provider_id=provider_id, weekday=weekday, is_available=False)
            for weekday in range(7)
        ]

    async def set_weekly_hours(
        self, provider_id: str, hours: list[ProviderAvailability]
    ) -> list[ProviderAvailability]:
        """Store the provider's weekly hours.

        Only rows generated afterwards follow the new hours; existing slot
        rows and the holds on them are kept.
        """
        if any(h.provider_id != provider_id for h in hours):
            raise ValueError(f"weekly hours must all belong to provider {provider_id}")
        weekdays = [h.weekday for h in hours]
        if len(set(weekdays)) != len(weekdays):
            raise InvalidTimeError("weekly hours list a weekday more than once", weekdays)

        saved = await self._repo.replace_availability(provider_id, hours)
        logger.info(
            "Weekly hours saved: provider={}, working_days={}",
            provider_id,
            [h.weekday for h in saved if h.is_available],
        )
        return saved

    async def generate(
        self,
        provider_id: str,
        start_date: dt.date,
        days: int,
        *,
        workday_start: dt.time | None = None,
        workday_end: dt.time | None = None,
    ) -> int:
        """Create any missing rows for ``days`` consecutive days. Idempotent.

        Closed weekdays get no rows. ``workday_start``/``workday_end`` replace
        the hours, break included, of every open day in the range.
        """
        schedule = {h.weekday: h for h in await self.weekly_hours(provider_id)}
        keys: list[SlotKey] = []
        for offset in range(days):
            day = start_date + dt.timedelta(days=offset)
            hours = schedule[day.weekday()]
            if not hours.is_available:
                continue
            if workday_start or workday_end:
                times = grid_times(workday_start or hours.start_time, workday_end or hours.end_time)
            else:
                times = open_times(hours)
            keys.extend((day, time) for time in times)

        created = await self._repo.insert_slots(provider_id, keys)
        logger.info(
            "Slot grid generated: provider={}, from={}, days={}, new_rows={}",
            provider_id,
            start_date,
            days,
            created,
        )
        return created

    async def ensure_window(self, provider_id: str, today: dt.date) -> int:
        """Keep the rolling future window generated."""
        return await self.generate(provider_id, today, self._window_days)

    async def get_availability(
        self, provider_id: str, start_date: dt.date, end_date: dt.date
    ) -> list[SlotAvailability]:
        """Read-only projection. Ungenerated dates yield no rows, not closed rows."""
        rows = await self._repo.list_slots(provider_id, start_date, end_date)
        return [row.to_availability() for row in rows]

    async def available_times(self, provider_id: str, date: dt.date) -> list[dt.time]:
        slots = await self.get_availability(provider_id, date, date)
        return [s.time for s in slots if s.is_available]

    async def set_availability(
        self,
        provider_id: str,
        date: dt.date,
        time_range: TimeRange,
        available: bool,
        *,
        source: SlotSource = SlotSource.EXTERNAL,
        appointment_id: str | None = None,
    ) -> list[SlotAvailability]:
        """Change availability of every grid slot overlapping ``time_range``.

        Args:
            provider_id: Provider owning the grid.
            date: Clinic-local date.
            time_range: Clinic-local span; widened to the 30-minute grid.
            available: Target state requested by ``source``.
            source: ``EXTERNAL`` toggles the calendar block on existing rows;
                ``BOOKING`` claims (``available=False``) or releases
                (``available=True``) the range for ``appointment_id``.
            appointment_id: Required for ``BOOKING``.

        Returns:
            The resulting availability of the affected slots that exist.

        Raises:
            SlotUnavailableError: A booking claim found a slot missing, taken
                by another appointment, or externally blocked. Nothing is
                changed in that case.
        """
        keys: list[SlotKey] = [(date, t) for t in align_range(time_range)]

        if source == SlotSource.EXTERNAL:
            changed = await self._repo.mark_external_block(provider_id, keys, not available)
            if changed:
                logger.debug(
                    "External {} applied: provider={}, date={}, slots_changed={}",
                    "unblock" if available else "block",
                    provider_id,
                    date,
                    changed,
                )
        else:
            if not appointment_id:
                raise ValueError("appointment_id is required for booking changes")
            if available:
                await self._repo.release_slots(provider_id, keys, appointment_id)
            elif not await self._repo.claim_slots(provider_id, keys, appointment_id):
                labels = [f"{date.isoformat()} {t.strftime('%H:%M')}" for _, t in keys]
                raise SlotUnavailableError(provider_id, labels)

        rows = await self._repo.get_slots(provider_id, keys)
        return [row.to_availability() for row in rows]
