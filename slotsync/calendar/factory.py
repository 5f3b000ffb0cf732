from loguru import logger

from slotsync.calendar.adapters.google import GoogleCalendarClient
from slotsync.calendar.service import CalendarSyncService
from slotsync.config import AppConfig
from slotsync.scheduling.clock import ClinicClock
from slotsync.scheduling.ports import SchedulingRepository
from slotsync.scheduling.slot_grid import SlotGridStore


def build_calendar_service(
    config: AppConfig,
    repository: SchedulingRepository,
    slot_grid: SlotGridStore,
    clock: ClinicClock,
) -> CalendarSyncService:
    """Build the calendar sync service backed by Google Calendar."""
    google = config.google
    if not google.client_id or not google.client_secret:
        logger.warning("Google OAuth client not configured; calendar sync calls will fail")
    client = GoogleCalendarClient(
        client_id=google.client_id,
        client_secret=google.client_secret,
        clock=clock,
        token_url=google.token_url,
        api_url=google.api_url,
        calendar_id=google.calendar_id,
        timeout=google.timeout,
    )
    logger.info("Building calendar sync service for calendar: {}", google.calendar_id)
    return CalendarSyncService(
        client,
        repository,
        slot_grid,
        clock,
        lookahead_days=config.scheduling.sync_lookahead_days,
    )
