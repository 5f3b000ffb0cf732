import asyncio
import datetime as dt
from typing import Any

import pytest
import pytest_asyncio

from slotsync.calendar.adapters.fake import FakeCalendarClient
from slotsync.calendar.ports import SyncAction
from slotsync.calendar.service import CalendarSyncService
from slotsync.domain.exceptions import (
    CalendarNotConnectedError,
    CalendarSyncTransientError,
    ProviderNotFoundError,
)
from slotsync.domain.models import (
    Appointment,
    AppointmentStatus,
    ConnectionState,
    ExternalEvent,
    Provider,
)
from slotsync.scheduling.adapters.memory import InMemorySchedulingRepository
from slotsync.scheduling.clock import ClinicClock
from slotsync.scheduling.slot_grid import SlotGridStore

# Fixtures (repository, provider, slot_grid, fake_calendar, calendar_service) in tests/conftest.py

PROVIDER_ID = "dr-1"
DAY = dt.date(2024, 6, 10)
NEXT_DAY = DAY + dt.timedelta(days=1)
UTC = dt.timezone.utc


def timed_event(event_id: str, start_utc: dt.datetime, end_utc: dt.datetime) -> ExternalEvent:
    return ExternalEvent(event_id=event_id, start=start_utc, end=end_utc)


def all_day_event(event_id: str, start: dt.date, end: dt.date) -> ExternalEvent:
    return ExternalEvent(event_id=event_id, is_all_day=True, start_date=start, end_date=end)


async def _open_times(slot_grid: SlotGridStore, day: dt.date) -> list[dt.time]:
    return await slot_grid.available_times(PROVIDER_ID, day)


class TestSweep:
    @pytest_asyncio.fixture(autouse=True)
    async def _grid(self, provider: Provider, slot_grid: SlotGridStore) -> None:
        await slot_grid.generate(PROVIDER_ID, DAY, 2)

    @pytest.mark.asyncio
    async def test_all_day_event_closes_only_its_day(
        self,
        calendar_service: CalendarSyncService,
        fake_calendar: FakeCalendarClient,
        slot_grid: SlotGridStore,
    ) -> None:
        fake_calendar.events = [all_day_event("vacation", DAY, NEXT_DAY)]

        report = await calendar_service.sweep(PROVIDER_ID, DAY, NEXT_DAY)

        assert await _open_times(slot_grid, DAY) == []
        assert len(await _open_times(slot_grid, NEXT_DAY)) == 16
        assert report.events_seen == 1
        assert report.slots_blocked == 16
        assert report.failed_events == 0

    @pytest.mark.asyncio
    async def test_timed_event_blocks_overlapping_slots(
        self,
        calendar_service: CalendarSyncService,
        fake_calendar: FakeCalendarClient,
        slot_grid: SlotGridStore,
    ) -> None:
        # 14:00-15:00 clinic time (EDT).
        fake_calendar.events = [
            timed_event(
                "dentist",
                dt.datetime(2024, 6, 10, 18, 0, tzinfo=UTC),
                dt.datetime(2024, 6, 10, 19, 0, tzinfo=UTC),
            )
        ]

        await calendar_service.sweep(PROVIDER_ID, DAY, DAY)

        open_times = await _open_times(slot_grid, DAY)
        assert dt.time(14, 0) not in open_times
        assert dt.time(14, 30) not in open_times
        assert dt.time(13, 30) in open_times
        assert dt.time(15, 0) in open_times

    @pytest.mark.asyncio
    async def test_unaligned_event_widens_to_grid(
        self,
        calendar_service: CalendarSyncService,
        fake_calendar: FakeCalendarClient,
        slot_grid: SlotGridStore,
    ) -> None:
        fake_calendar.events = [
            timed_event(
                "call",
                dt.datetime(2024, 6, 10, 18, 10, tzinfo=UTC),
                dt.datetime(2024, 6, 10, 18, 40, tzinfo=UTC),
            )
        ]

        await calendar_service.sweep(PROVIDER_ID, DAY, DAY)

        open_times = await _open_times(slot_grid, DAY)
        assert dt.time(14, 0) not in open_times
        assert dt.time(14, 30) not in open_times
        assert dt.time(15, 0) in open_times

    @pytest.mark.asyncio
    async def test_sweep_is_idempotent(
        self,
        calendar_service: CalendarSyncService,
        fake_calendar: FakeCalendarClient,
        slot_grid: SlotGridStore,
    ) -> None:
        fake_calendar.events = [
            timed_event(
                "dentist",
                dt.datetime(2024, 6, 10, 18, 0, tzinfo=UTC),
                dt.datetime(2024, 6, 10, 19, 0, tzinfo=UTC),
            )
        ]

        await calendar_service.sweep(PROVIDER_ID, DAY, DAY)
        after_first = await _open_times(slot_grid, DAY)
        await calendar_service.sweep(PROVIDER_ID, DAY, DAY)

        assert await _open_times(slot_grid, DAY) == after_first

    @pytest.mark.asyncio
    async def test_vanished_event_does_not_unblock(
        self,
        calendar_service: CalendarSyncService,
        fake_calendar: FakeCalendarClient,
        slot_grid: SlotGridStore,
    ) -> None:
        fake_calendar.events = [all_day_event("vacation", DAY, NEXT_DAY)]
        await calendar_service.sweep(PROVIDER_ID, DAY, DAY)

        fake_calendar.events = []
        await calendar_service.sweep(PROVIDER_ID, DAY, DAY)

        assert await _open_times(slot_grid, DAY) == []

    @pytest.mark.asyncio
    async def test_ignores_days_outside_window(
        self,
        calendar_service: CalendarSyncService,
        fake_calendar: FakeCalendarClient,
        slot_grid: SlotGridStore,
    ) -> None:
        fake_calendar.events = [all_day_event("trip", DAY, NEXT_DAY + dt.timedelta(days=1))]

        await calendar_service.sweep(PROVIDER_ID, DAY, DAY)

        assert await _open_times(slot_grid, DAY) == []
        assert len(await _open_times(slot_grid, NEXT_DAY)) == 16

    @pytest.mark.asyncio
    async def test_queries_clinic_day_bounds(
        self,
        calendar_service: CalendarSyncService,
        fake_calendar: FakeCalendarClient,
    ) -> None:
        await calendar_service.sweep(PROVIDER_ID, DAY, DAY)

        assert fake_calendar.list_calls == [
            (dt.datetime(2024, 6, 10, 4, 0, tzinfo=UTC), dt.datetime(2024, 6, 11, 4, 0, tzinfo=UTC))
        ]

    @pytest.mark.asyncio
    async def test_failed_event_is_counted_and_skipped(
        self,
        calendar_service: CalendarSyncService,
        fake_calendar: FakeCalendarClient,
        slot_grid: SlotGridStore,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        fake_calendar.events = [
            all_day_event("bad", DAY, NEXT_DAY),
            all_day_event("good", NEXT_DAY, NEXT_DAY + dt.timedelta(days=1)),
        ]
        original = slot_grid.set_availability

        async def flaky(provider_id: str, date: dt.date, *args: Any, **kwargs: Any) -> Any:
            if date == DAY:
                raise RuntimeError("database hiccup")
            return await original(provider_id, date, *args, **kwargs)

        monkeypatch.setattr(slot_grid, "set_availability", flaky)

        report = await calendar_service.sweep(PROVIDER_ID, DAY, NEXT_DAY)

        assert report.failed_events == 1
        assert report.slots_blocked == 16
        assert len(await _open_times(slot_grid, DAY)) == 16
        assert await _open_times(slot_grid, NEXT_DAY) == []

    @pytest.mark.asyncio
    async def test_records_last_synced_at(
        self,
        calendar_service: CalendarSyncService,
        repository: InMemorySchedulingRepository,
        clock: ClinicClock,
    ) -> None:
        report = await calendar_service.sweep(PROVIDER_ID, DAY, DAY)

        assert report.synced_at == clock.now_utc()
        assert repository.providers[PROVIDER_ID].last_synced_at == clock.now_utc()

    @pytest.mark.asyncio
    async def test_rejected_token_marks_not_connected(
        self,
        calendar_service: CalendarSyncService,
        repository: InMemorySchedulingRepository,
        fake_calendar: FakeCalendarClient,
    ) -> None:
        fake_calendar.valid_refresh_tokens = set()

        with pytest.raises(CalendarNotConnectedError, match="dr-1"):
            await calendar_service.sweep(PROVIDER_ID, DAY, DAY)

        stored = repository.providers[PROVIDER_ID]
        assert stored.connection == ConnectionState.NOT_CONNECTED
        assert stored.refresh_token is None
        assert fake_calendar.list_calls == []

    @pytest.mark.asyncio
    async def test_transient_token_failure_keeps_connection(
        self,
        calendar_service: CalendarSyncService,
        repository: InMemorySchedulingRepository,
        fake_calendar: FakeCalendarClient,
    ) -> None:
        fake_calendar.token_error = CalendarSyncTransientError("token endpoint timed out")

        with pytest.raises(CalendarSyncTransientError) as exc_info:
            await calendar_service.sweep(PROVIDER_ID, DAY, DAY)

        assert exc_info.value.provider_id == PROVIDER_ID
        assert repository.providers[PROVIDER_ID].connection == ConnectionState.CONNECTED

    @pytest.mark.asyncio
    async def test_list_failure_is_transient(
        self,
        calendar_service: CalendarSyncService,
        fake_calendar: FakeCalendarClient,
    ) -> None:
        fake_calendar.list_error = RuntimeError("connection reset")

        with pytest.raises(CalendarSyncTransientError, match="listing events failed"):
            await calendar_service.sweep(PROVIDER_ID, DAY, DAY)

    @pytest.mark.asyncio
    async def test_persists_rotated_refresh_token(
        self,
        calendar_service: CalendarSyncService,
        repository: InMemorySchedulingRepository,
        fake_calendar: FakeCalendarClient,
    ) -> None:
        fake_calendar.rotate_to = "refresh-rotated"

        await calendar_service.sweep(PROVIDER_ID, DAY, DAY)

        stored = repository.providers[PROVIDER_ID]
        assert stored.refresh_token == "refresh-rotated"
        assert stored.last_synced_at is not None

    @pytest.mark.asyncio
    async def test_unconnected_provider(
        self,
        calendar_service: CalendarSyncService,
        repository: InMemorySchedulingRepository,
        fake_calendar: FakeCalendarClient,
    ) -> None:
        repository.providers[PROVIDER_ID] = Provider(provider_id=PROVIDER_ID)

        with pytest.raises(CalendarNotConnectedError):
            await calendar_service.sweep(PROVIDER_ID, DAY, DAY)

        assert fake_calendar.list_calls == []

    @pytest.mark.asyncio
    async def test_unknown_provider(self, calendar_service: CalendarSyncService) -> None:
        with pytest.raises(ProviderNotFoundError):
            await calendar_service.sweep("dr-unknown", DAY, DAY)


class TestSweepAll:
    @pytest.mark.asyncio
    async def test_one_failing_provider_does_not_stop_others(
        self,
        calendar_service: CalendarSyncService,
        repository: InMemorySchedulingRepository,
        slot_grid: SlotGridStore,
        provider: Provider,
    ) -> None:
        repository.providers["dr-2"] = Provider(
            provider_id="dr-2", connection=ConnectionState.CONNECTED, refresh_token="revoked"
        )
        repository.providers["dr-3"] = Provider(provider_id="dr-3")

        reports = await calendar_service.sweep_all(DAY, DAY)

        assert set(reports) == {"dr-1", "dr-2", "dr-3"}
        assert reports["dr-1"] is not None
        assert reports["dr-2"] is None
        assert reports["dr-3"] is None
        assert repository.providers["dr-2"].connection == ConnectionState.NOT_CONNECTED

    @pytest.mark.asyncio
    async def test_defaults_to_lookahead_days_including_today(
        self,
        calendar_service: CalendarSyncService,
        fake_calendar: FakeCalendarClient,
        clock: ClinicClock,
        provider: Provider,
    ) -> None:
        await calendar_service.sweep_all()

        today = clock.today()
        assert fake_calendar.list_calls == [
            clock.day_bounds(today, today + dt.timedelta(days=29))
        ]


class TestPush:
    @pytest.fixture
    def appointment(
        self, repository: InMemorySchedulingRepository, provider: Provider
    ) -> Appointment:
        appt = Appointment(
            appointment_id="apt-1",
            patient_id="pat-1",
            provider_id=PROVIDER_ID,
            start=dt.datetime(2024, 6, 10, 13, 0, tzinfo=UTC),
            status=AppointmentStatus.CONFIRMED,
            reason="Cleaning",
        )
        repository.appointments[appt.appointment_id] = appt
        return appt

    @pytest.mark.asyncio
    async def test_create_links_event(
        self,
        calendar_service: CalendarSyncService,
        fake_calendar: FakeCalendarClient,
        repository: InMemorySchedulingRepository,
        appointment: Appointment,
    ) -> None:
        pushed = await calendar_service.push(appointment, SyncAction.CREATE)

        assert pushed.external_event_id == "evt-1"
        assert repository.appointments["apt-1"].external_event_id == "evt-1"
        assert fake_calendar.remote["evt-1"]["summary"] == "Patient pat-1 - Cleaning"

    @pytest.mark.asyncio
    async def test_repeated_create_updates_instead_of_duplicating(
        self,
        calendar_service: CalendarSyncService,
        fake_calendar: FakeCalendarClient,
        appointment: Appointment,
    ) -> None:
        await calendar_service.push(appointment, SyncAction.CREATE)

        # The caller's copy is stale; the stored linkage decides.
        again = await calendar_service.push(appointment, SyncAction.CREATE)

        assert again.external_event_id == "evt-1"
        assert len(fake_calendar.created) == 1
        assert [event_id for event_id, _ in fake_calendar.updated] == ["evt-1"]

    @pytest.mark.asyncio
    async def test_delete_clears_link(
        self,
        calendar_service: CalendarSyncService,
        fake_calendar: FakeCalendarClient,
        repository: InMemorySchedulingRepository,
        appointment: Appointment,
    ) -> None:
        await calendar_service.push(appointment, SyncAction.CREATE)

        deleted = await calendar_service.push(appointment, SyncAction.DELETE)

        assert deleted.external_event_id is None
        assert repository.appointments["apt-1"].external_event_id is None
        assert fake_calendar.deleted == ["evt-1"]

    @pytest.mark.asyncio
    async def test_delete_without_event_is_a_no_op(
        self,
        calendar_service: CalendarSyncService,
        fake_calendar: FakeCalendarClient,
        appointment: Appointment,
    ) -> None:
        fake_calendar.token_error = RuntimeError("should not be called")

        result = await calendar_service.push(appointment, SyncAction.DELETE)

        assert result.external_event_id is None
        assert fake_calendar.deleted == []

    @pytest.mark.asyncio
    async def test_concurrent_creates_make_one_event(
        self,
        calendar_service: CalendarSyncService,
        fake_calendar: FakeCalendarClient,
        repository: InMemorySchedulingRepository,
        appointment: Appointment,
    ) -> None:
        results = await asyncio.gather(
            calendar_service.push(appointment, SyncAction.CREATE),
            calendar_service.push(appointment, SyncAction.CREATE),
        )

        assert [r.external_event_id for r in results] == ["evt-1", "evt-1"]
        assert len(fake_calendar.created) == 1
        assert list(fake_calendar.remote) == ["evt-1"]
        assert repository.appointments["apt-1"].external_event_id == "evt-1"

    @pytest.mark.asyncio
    async def test_event_losing_link_race_is_deleted(
        self,
        calendar_service: CalendarSyncService,
        fake_calendar: FakeCalendarClient,
        repository: InMemorySchedulingRepository,
        appointment: Appointment,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        create_event = fake_calendar.create_event

        async def linked_elsewhere_meanwhile(access_token: str, payload: dict[str, Any]) -> str:
            # Another process links its own event while this create is in flight.
            await repository.update_external_event_id("apt-1", "evt-other", expected=None)
            return await create_event(access_token, payload)

        monkeypatch.setattr(fake_calendar, "create_event", linked_elsewhere_meanwhile)

        result = await calendar_service.push(appointment, SyncAction.CREATE)

        assert result.external_event_id == "evt-other"
        assert fake_calendar.deleted == ["evt-1"]
        assert fake_calendar.remote == {}

    @pytest.mark.asyncio
    async def test_cancellation_during_create_removes_event(
        self,
        calendar_service: CalendarSyncService,
        fake_calendar: FakeCalendarClient,
        repository: InMemorySchedulingRepository,
        appointment: Appointment,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        create_event = fake_calendar.create_event

        async def cancelled_meanwhile(access_token: str, payload: dict[str, Any]) -> str:
            await repository.transition_status(
                "apt-1", AppointmentStatus.CONFIRMED, AppointmentStatus.CANCELLED
            )
            return await create_event(access_token, payload)

        monkeypatch.setattr(fake_calendar, "create_event", cancelled_meanwhile)

        result = await calendar_service.push(appointment, SyncAction.CREATE)

        assert result.external_event_id is None
        assert fake_calendar.deleted == ["evt-1"]
        assert fake_calendar.remote == {}

    @pytest.mark.asyncio
    async def test_update_of_cancelled_appointment_deletes(
        self,
        calendar_service: CalendarSyncService,
        fake_calendar: FakeCalendarClient,
        repository: InMemorySchedulingRepository,
        appointment: Appointment,
    ) -> None:
        await calendar_service.push(appointment, SyncAction.CREATE)
        await repository.transition_status(
            "apt-1", AppointmentStatus.CONFIRMED, AppointmentStatus.CANCELLED
        )

        result = await calendar_service.push(appointment, SyncAction.UPDATE)

        assert result.external_event_id is None
        assert fake_calendar.updated == []
        assert fake_calendar.deleted == ["evt-1"]

    @pytest.mark.asyncio
    async def test_wraps_unexpected_client_error(
        self,
        calendar_service: CalendarSyncService,
        fake_calendar: FakeCalendarClient,
        appointment: Appointment,
    ) -> None:
        fake_calendar.create_error = RuntimeError("boom")

        with pytest.raises(CalendarSyncTransientError, match="boom"):
            await calendar_service.push(appointment, SyncAction.CREATE)

    @pytest.mark.asyncio
    async def test_requires_connection(
        self,
        calendar_service: CalendarSyncService,
        repository: InMemorySchedulingRepository,
        appointment: Appointment,
    ) -> None:
        repository.providers[PROVIDER_ID] = Provider(provider_id=PROVIDER_ID)

        with pytest.raises(CalendarNotConnectedError):
            await calendar_service.push(appointment, SyncAction.CREATE)


class TestConnection:
    @pytest.mark.asyncio
    async def test_connect_then_disconnect(
        self,
        calendar_service: CalendarSyncService,
        repository: InMemorySchedulingRepository,
    ) -> None:
        repository.providers[PROVIDER_ID] = Provider(provider_id=PROVIDER_ID)

        connected = await calendar_service.connect(PROVIDER_ID, "refresh-ok")
        assert connected.can_sync

        disconnected = await calendar_service.disconnect(PROVIDER_ID)
        assert disconnected.connection == ConnectionState.NOT_CONNECTED
        assert repository.providers[PROVIDER_ID].refresh_token is None

    @pytest.mark.asyncio
    async def test_close_closes_client(
        self, calendar_service: CalendarSyncService, fake_calendar: FakeCalendarClient
    ) -> None:
        await calendar_service.close()

        assert fake_calendar.closed is True
