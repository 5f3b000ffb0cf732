import datetime as dt
from collections.abc import Callable
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from slotsync.domain.exceptions import InvalidTimeError
from slotsync.domain.models import TimeRange

_UTC = dt.timezone.utc


def resolve_timezone(name: str) -> ZoneInfo:
    """Resolve the clinic's IANA timezone name.

    Unlike a caller's local environment, the clinic zone is configuration:
    an unknown name is an error, never a silent fallback to UTC.
    """
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise InvalidTimeError("unknown clinic timezone", name) from exc


def _utc_now() -> dt.datetime:
    return dt.datetime.now(_UTC)


class ClinicClock:
    """Converts between clinic wall clock and UTC instants.

    Every other component works with aware UTC instants; wall-clock values
    (naive ``datetime`` in clinic time) only exist on this side of the
    boundary and in the slot grid keys.
    """

    def __init__(
        self,
        timezone_name: str = "America/New_York",
        *,
        now: Callable[[], dt.datetime] = _utc_now,
    ) -> None:
        self.timezone_name = timezone_name
        self._tz = resolve_timezone(timezone_name)
        self._now = now

    @property
    def tz(self) -> ZoneInfo:
        return self._tz

    def now_utc(self) -> dt.datetime:
        return self._now().astimezone(_UTC)

    def today(self) -> dt.date:
        """Today's date in the clinic, not in the host environment."""
        return self.now_utc().astimezone(self._tz).date()

    def to_utc(self, wall_clock: dt.datetime) -> dt.datetime:
        """Convert a naive clinic-local wall clock to an aware UTC instant.

        Raises:
            InvalidTimeError: If the input is aware, falls in a DST gap, or is
                ambiguous because it occurs twice at a DST fall-back.
        """
        if not isinstance(wall_clock, dt.datetime):
            raise InvalidTimeError("expected a datetime", wall_clock)
        if wall_clock.tzinfo is not None:
            raise InvalidTimeError("wall-clock time must be naive clinic-local time", wall_clock)

        first = wall_clock.replace(tzinfo=self._tz, fold=0)
        second = wall_clock.replace(tzinfo=self._tz, fold=1)

        # A gap time does not survive a round trip through UTC.
        if first.astimezone(_UTC).astimezone(self._tz).replace(tzinfo=None) != wall_clock:
            raise InvalidTimeError("time does not exist in clinic timezone (DST gap)", wall_clock)
        if first.utcoffset() != second.utcoffset():
            raise InvalidTimeError("time is ambiguous in clinic timezone (DST overlap)", wall_clock)

        return first.astimezone(_UTC)

    def to_clinic_local(self, instant: dt.datetime) -> dt.datetime:
        """Convert an aware instant to a naive clinic-local wall clock."""
        if not isinstance(instant, dt.datetime):
            raise InvalidTimeError("expected a datetime", instant)
        if instant.tzinfo is None or instant.utcoffset() is None:
            raise InvalidTimeError("instant must be timezone-aware", instant)
        return instant.astimezone(self._tz).replace(tzinfo=None)

    def parse_wall_clock(self, date_str: str, time_str: str) -> dt.datetime:
        """Parse ``YYYY-MM-DD`` + ``HH:MM`` into a naive clinic wall clock."""
        try:
            date_val = dt.date.fromisoformat(date_str)
            time_val = dt.time.fromisoformat(time_str)
        except (TypeError, ValueError) as exc:
            raise InvalidTimeError("expected YYYY-MM-DD and HH:MM", f"{date_str} {time_str}") from exc
        if time_val.tzinfo is not None:
            raise InvalidTimeError("time must not carry an offset", time_str)
        return dt.datetime.combine(date_val, time_val)

    def parse_instant(self, value: str) -> dt.datetime:
        """Parse an RFC 3339 timestamp with offset (or ``Z``) into aware UTC."""
        if not isinstance(value, str) or not value:
            raise InvalidTimeError("expected an RFC 3339 timestamp", value)
        text = value[:-1] + "+00:00" if value.endswith(("Z", "z")) else value
        try:
            parsed = dt.datetime.fromisoformat(text)
        except ValueError as exc:
            raise InvalidTimeError("malformed RFC 3339 timestamp", value) from exc
        if parsed.tzinfo is None:
            raise InvalidTimeError("timestamp has no UTC offset", value)
        return parsed.astimezone(_UTC)

    def day_bounds(self, start_date: dt.date, end_date: dt.date) -> tuple[dt.datetime, dt.datetime]:
        """UTC instants spanning clinic days ``start_date`` through ``end_date``."""
        first = dt.datetime.combine(start_date, dt.time(0, 0), tzinfo=self._tz)
        after_last = dt.datetime.combine(end_date + dt.timedelta(days=1), dt.time(0, 0), tzinfo=self._tz)
        return first.astimezone(_UTC), after_last.astimezone(_UTC)

    def local_span(self, start: dt.datetime, end: dt.datetime) -> list[tuple[dt.date, TimeRange]]:
        """Clinic-local day pieces covered by the UTC span ``[start, end)``."""
        return split_by_day(self.to_clinic_local(start), self.to_clinic_local(end))


def split_by_day(start_local: dt.datetime, end_local: dt.datetime) -> list[tuple[dt.date, TimeRange]]:
    """Cut a naive local span at midnights into per-day time ranges."""
    if end_local <= start_local:
        raise InvalidTimeError("span end must be after start", f"{start_local} - {end_local}")

    pieces: list[tuple[dt.date, TimeRange]] = []
    cursor = start_local
    while cursor < end_local:
        next_midnight = dt.datetime.combine(cursor.date() + dt.timedelta(days=1), dt.time(0, 0))
        piece_end = min(end_local, next_midnight)
        end_time = None if piece_end == next_midnight else piece_end.time()
        pieces.append((cursor.date(), TimeRange(start=cursor.time(), end=end_time)))
        cursor = piece_end
    return pieces
