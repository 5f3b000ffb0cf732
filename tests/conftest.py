import datetime as dt
import itertools

import pytest

from slotsync.calendar.adapters.fake import FakeCalendarClient
from slotsync.calendar.service import CalendarSyncService
from slotsync.domain.models import ConnectionState, Provider
from slotsync.recommendation.adapters.fake import FakeScoringClient
from slotsync.scheduling.adapters.memory import InMemorySchedulingRepository
from slotsync.scheduling.adapters.notifier import RecordingNotifier
from slotsync.scheduling.clock import ClinicClock
from slotsync.scheduling.lifecycle import AppointmentLifecycle
from slotsync.scheduling.slot_grid import SlotGridStore

PROVIDER_ID = "dr-1"
# Monday; America/New_York is on EDT (UTC-4).
DAY = dt.date(2024, 6, 10)
NOW = dt.datetime(2024, 6, 3, 12, 0, tzinfo=dt.timezone.utc)


@pytest.fixture
def clock() -> ClinicClock:
    return ClinicClock("America/New_York", now=lambda: NOW)


@pytest.fixture
def repository() -> InMemorySchedulingRepository:
    return InMemorySchedulingRepository()


@pytest.fixture
def provider(repository: InMemorySchedulingRepository) -> Provider:
    """A provider with a working calendar connection."""
    provider = Provider(
        provider_id=PROVIDER_ID,
        display_name="Dr. One",
        connection=ConnectionState.CONNECTED,
        refresh_token="refresh-ok",
    )
    repository.providers[PROVIDER_ID] = provider
    return provider


@pytest.fixture
def slot_grid(repository: InMemorySchedulingRepository) -> SlotGridStore:
    return SlotGridStore(repository)


@pytest.fixture
def fake_calendar() -> FakeCalendarClient:
    return FakeCalendarClient()


@pytest.fixture
def calendar_service(
    fake_calendar: FakeCalendarClient,
    repository: InMemorySchedulingRepository,
    slot_grid: SlotGridStore,
    clock: ClinicClock,
) -> CalendarSyncService:
    return CalendarSyncService(fake_calendar, repository, slot_grid, clock)


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def lifecycle(
    repository: InMemorySchedulingRepository,
    slot_grid: SlotGridStore,
    clock: ClinicClock,
    calendar_service: CalendarSyncService,
    notifier: RecordingNotifier,
) -> AppointmentLifecycle:
    ids = itertools.count(1)
    return AppointmentLifecycle(
        repository,
        slot_grid,
        clock,
        calendar=calendar_service,
        notifier=notifier,
        id_factory=lambda: f"apt-{next(ids)}",
    )


@pytest.fixture
def fake_scorer() -> FakeScoringClient:
    return FakeScoringClient()
