import datetime as dt

import pytest

from slotsync.domain.exceptions import InvalidTimeError
from slotsync.domain.models import TimeRange
from slotsync.scheduling.clock import ClinicClock, resolve_timezone, split_by_day

UTC = dt.timezone.utc


class TestResolveTimezone:
    def test_known_zone(self) -> None:
        assert resolve_timezone("Europe/Madrid").key == "Europe/Madrid"

    def test_unknown_zone_is_an_error_not_utc(self) -> None:
        with pytest.raises(InvalidTimeError, match="unknown clinic timezone"):
            resolve_timezone("Mars/Olympus_Mons")


class TestToUtc:
    def test_round_trips_through_clinic_local(self, clock: ClinicClock) -> None:
        wall_clock = dt.datetime(2024, 6, 10, 9, 0)

        instant = clock.to_utc(wall_clock)

        assert instant == dt.datetime(2024, 6, 10, 13, 0, tzinfo=UTC)
        assert clock.to_clinic_local(instant) == wall_clock

    def test_winter_offset(self, clock: ClinicClock) -> None:
        assert clock.to_utc(dt.datetime(2024, 1, 15, 9, 0)) == dt.datetime(
            2024, 1, 15, 14, 0, tzinfo=UTC
        )

    def test_rejects_dst_gap(self, clock: ClinicClock) -> None:
        with pytest.raises(InvalidTimeError, match="DST gap"):
            clock.to_utc(dt.datetime(2024, 3, 10, 2, 30))

    def test_rejects_ambiguous_fall_back_time(self, clock: ClinicClock) -> None:
        with pytest.raises(InvalidTimeError, match="ambiguous"):
            clock.to_utc(dt.datetime(2024, 11, 3, 1, 30))

    def test_rejects_aware_input(self, clock: ClinicClock) -> None:
        with pytest.raises(InvalidTimeError, match="must be naive"):
            clock.to_utc(dt.datetime(2024, 6, 10, 9, 0, tzinfo=UTC))


class TestToClinicLocal:
    def test_rejects_naive_input(self, clock: ClinicClock) -> None:
        with pytest.raises(InvalidTimeError, match="timezone-aware"):
            clock.to_clinic_local(dt.datetime(2024, 6, 10, 13, 0))

    def test_converts_other_offsets(self, clock: ClinicClock) -> None:
        madrid = dt.timezone(dt.timedelta(hours=2))

        local = clock.to_clinic_local(dt.datetime(2024, 6, 10, 20, 0, tzinfo=madrid))

        assert local == dt.datetime(2024, 6, 10, 14, 0)


class TestToday:
    def test_uses_clinic_date_not_utc_date(self) -> None:
        late_evening = dt.datetime(2024, 6, 3, 2, 0, tzinfo=UTC)
        clock = ClinicClock("America/New_York", now=lambda: late_evening)

        assert clock.today() == dt.date(2024, 6, 2)


class TestParsing:
    def test_parse_wall_clock(self, clock: ClinicClock) -> None:
        assert clock.parse_wall_clock("2024-06-10", "09:30") == dt.datetime(2024, 6, 10, 9, 30)

    @pytest.mark.parametrize(
        ("date_str", "time_str"),
        [("2024-13-01", "09:00"), ("2024-06-10", "25:00"), ("next monday", "09:00")],
        ids=["bad-month", "bad-hour", "free-text"],
    )
    def test_parse_wall_clock_rejects_malformed(
        self, clock: ClinicClock, date_str: str, time_str: str
    ) -> None:
        with pytest.raises(InvalidTimeError):
            clock.parse_wall_clock(date_str, time_str)

    @pytest.mark.parametrize(
        "value",
        ["2024-06-10T18:00:00Z", "2024-06-10T14:00:00-04:00", "2024-06-10T20:00:00+02:00"],
        ids=["zulu", "negative-offset", "positive-offset"],
    )
    def test_parse_instant(self, clock: ClinicClock, value: str) -> None:
        assert clock.parse_instant(value) == dt.datetime(2024, 6, 10, 18, 0, tzinfo=UTC)

    def test_parse_instant_requires_offset(self, clock: ClinicClock) -> None:
        with pytest.raises(InvalidTimeError, match="no UTC offset"):
            clock.parse_instant("2024-06-10T18:00:00")


class TestDayBounds:
    def test_single_summer_day(self, clock: ClinicClock) -> None:
        start, end = clock.day_bounds(dt.date(2024, 6, 10), dt.date(2024, 6, 10))

        assert start == dt.datetime(2024, 6, 10, 4, 0, tzinfo=UTC)
        assert end == dt.datetime(2024, 6, 11, 4, 0, tzinfo=UTC)

    def test_spring_forward_day_is_23_hours(self, clock: ClinicClock) -> None:
        start, end = clock.day_bounds(dt.date(2024, 3, 10), dt.date(2024, 3, 10))

        assert end - start == dt.timedelta(hours=23)


class TestSplitByDay:
    def test_single_day_span(self) -> None:
        pieces = split_by_day(dt.datetime(2024, 6, 10, 14, 0), dt.datetime(2024, 6, 10, 15, 0))

        assert pieces == [(dt.date(2024, 6, 10), TimeRange(start=dt.time(14), end=dt.time(15)))]

    def test_span_crossing_midnight(self) -> None:
        pieces = split_by_day(dt.datetime(2024, 6, 10, 22, 0), dt.datetime(2024, 6, 11, 1, 0))

        assert pieces == [
            (dt.date(2024, 6, 10), TimeRange(start=dt.time(22), end=None)),
            (dt.date(2024, 6, 11), TimeRange(start=dt.time(0), end=dt.time(1))),
        ]

    def test_rejects_empty_span(self) -> None:
        with pytest.raises(InvalidTimeError):
            split_by_day(dt.datetime(2024, 6, 10, 9, 0), dt.datetime(2024, 6, 10, 9, 0))

    def test_local_span_converts_from_utc(self, clock: ClinicClock) -> None:
        pieces = clock.local_span(
            dt.datetime(2024, 6, 10, 18, 0, tzinfo=UTC),
            dt.datetime(2024, 6, 10, 19, 0, tzinfo=UTC),
        )

        assert pieces == [(dt.date(2024, 6, 10), TimeRange(start=dt.time(14), end=dt.time(15)))]
