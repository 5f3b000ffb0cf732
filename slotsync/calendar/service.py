import asyncio
import datetime as dt
import weakref
from collections.abc import Awaitable
from typing import TypeVar

from loguru import logger

from slotsync.calendar.adapters.parsing_helpers import build_event_payload
from slotsync.calendar.ports import AbstractCalendarSync, CalendarClientProtocol, SyncAction
from slotsync.domain.exceptions import (
    CalendarError,
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
    SlotSource,
    SyncReport,
    TimeRange,
)
from slotsync.scheduling.clock import ClinicClock
from slotsync.scheduling.ports import SchedulingRepository
from slotsync.scheduling.slot_grid import SlotGridStore

T = TypeVar("T")


class CalendarSyncService(AbstractCalendarSync):
    """Calendar sync that delegates HTTP to a CalendarClientProtocol.

    Credentials come from the Provider row on every call; nothing about a
    provider's connection is held in this object.
    """

    def __init__(
        self,
        client: CalendarClientProtocol,
        repository: SchedulingRepository,
        slot_grid: SlotGridStore,
        clock: ClinicClock,
        *,
        lookahead_days: int = 30,
    ) -> None:
        self._client = client
        self._repo = repository
        self._grid = slot_grid
        self._clock = clock
        self._lookahead_days = lookahead_days
        # Entries vanish once no push holds or awaits the lock.
        self._push_locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    async def connect(self, provider_id: str, refresh_token: str) -> Provider:
        provider = await self._provider(provider_id)
        connected = provider.model_copy(
            update={"connection": ConnectionState.CONNECTED, "refresh_token": refresh_token}
        )
        logger.info("Calendar connected for provider {}", provider_id)
        return await self._repo.save_provider(connected)

    async def disconnect(self, provider_id: str) -> Provider:
        provider = await self._provider(provider_id)
        logger.info("Calendar disconnected for provider {}", provider_id)
        return await self._revoke(provider)

    async def push(self, appointment: Appointment, action: SyncAction) -> Appointment:
        """Mirror the stored appointment onto the provider's calendar.

        The stored row decides, not the caller's copy: a CREATE for an
        appointment that already has an event becomes an update, and any
        push for a cancelled appointment becomes a delete. Pushes for one
        appointment run one at a time in this process; the linkage write is
        a compare-and-set, so an event that loses a race with another writer
        is deleted again instead of being left in the calendar.
        """
        provider = await self._provider(appointment.provider_id)
        self._require_connected(provider)

        async with self._push_lock(appointment.appointment_id):
            return await self._push_stored(provider, appointment, action)

    async def _push_stored(
        self, provider: Provider, appointment: Appointment, action: SyncAction
    ) -> Appointment:
        stored = await self._repo.get_appointment(appointment.appointment_id) or appointment
        if action != SyncAction.DELETE and stored.status == AppointmentStatus.CANCELLED:
            logger.info(
                "Appointment {} is cancelled, deleting its event instead of {}",
                stored.appointment_id,
                action.value,
            )
            action = SyncAction.DELETE
        event_id = stored.external_event_id

        if action == SyncAction.DELETE and not event_id:
            logger.debug("No external event linked to {}, nothing to delete", stored.appointment_id)
            return stored

        token = await self._access_token(provider)
        what = f"{action.value} event"
        new_event_id: str | None = None
        if action == SyncAction.DELETE and event_id:
            await self._call(provider.provider_id, what, self._client.delete_event(token, event_id))
        elif event_id:
            new_event_id = await self._call(
                provider.provider_id,
                what,
                self._client.update_event(token, event_id, build_event_payload(stored)),
            )
        else:
            new_event_id = await self._call(
                provider.provider_id,
                what,
                self._client.create_event(token, build_event_payload(stored)),
            )

        logger.info(
            "Calendar {} synced: appointment={}, event={}",
            action.value,
            stored.appointment_id,
            new_event_id or event_id,
        )
        if new_event_id == event_id:
            return stored

        linked = await self._repo.update_external_event_id(
            stored.appointment_id, new_event_id, expected=event_id
        )
        if linked is None:
            logger.warning(
                "Event link of appointment {} changed concurrently, discarding event {}",
                stored.appointment_id,
                new_event_id,
            )
            if new_event_id:
                await self._call(
                    provider.provider_id,
                    "discard event",
                    self._client.delete_event(token, new_event_id),
                )
            return await self._repo.get_appointment(stored.appointment_id) or stored

        if new_event_id and linked.status == AppointmentStatus.CANCELLED:
            # Cancelled while the event was being written.
            logger.info(
                "Appointment {} was cancelled during {}, deleting event {}",
                stored.appointment_id,
                action.value,
                new_event_id,
            )
            await self._call(
                provider.provider_id,
                "delete event",
                self._client.delete_event(token, new_event_id),
            )
            cleared = await self._repo.update_external_event_id(
                stored.appointment_id, None, expected=new_event_id
            )
            return cleared or await self._repo.get_appointment(stored.appointment_id) or linked
        return linked

    async def sweep(self, provider_id: str, start_date: dt.date, end_date: dt.date) -> SyncReport:
        provider = await self._provider(provider_id)
        self._require_connected(provider)
        token = await self._access_token(provider)

        time_min, time_max = self._clock.day_bounds(start_date, end_date)
        events = await self._call(
            provider_id, "listing events", self._client.list_events(token, time_min, time_max)
        )

        blocked = 0
        failed = 0
        for event in events:
            try:
                blocked += await self._block_event(provider_id, event, start_date, end_date)
            except Exception as exc:
                # Next sweep retries it.
                failed += 1
                logger.warning(
                    "Skipping external event {} for provider {}: {}",
                    event.event_id or "<no id>",
                    provider_id,
                    exc,
                )

        synced_at = self._clock.now_utc()
        latest = await self._repo.get_provider(provider_id) or provider
        await self._repo.save_provider(latest.model_copy(update={"last_synced_at": synced_at}))

        report = SyncReport(
            provider_id=provider_id,
            events_seen=len(events),
            slots_blocked=blocked,
            failed_events=failed,
            synced_at=synced_at,
        )
        logger.info(
            "Sweep finished: provider={}, events={}, slots_blocked={}, failed={}",
            provider_id,
            report.events_seen,
            report.slots_blocked,
            report.failed_events,
        )
        return report

    async def sweep_all(
        self, start_date: dt.date | None = None, end_date: dt.date | None = None
    ) -> dict[str, SyncReport | None]:
        start = start_date or self._clock.today()
        # Both ends inclusive: the default window is ``lookahead_days`` long.
        end = end_date or start + dt.timedelta(days=self._lookahead_days - 1)

        reports: dict[str, SyncReport | None] = {}
        for provider in await self._repo.list_providers():
            if not provider.can_sync:
                logger.debug("Provider {} has no calendar connection, skipping", provider.provider_id)
                reports[provider.provider_id] = None
                continue
            try:
                reports[provider.provider_id] = await self.sweep(provider.provider_id, start, end)
            except CalendarNotConnectedError as exc:
                logger.warning("Sweep skipped, calendar not connected: {}", exc)
                reports[provider.provider_id] = None
            except CalendarSyncTransientError as exc:
                logger.warning("Sweep aborted for provider {}: {}", provider.provider_id, exc)
                reports[provider.provider_id] = None
            except Exception:
                logger.exception("Unexpected error sweeping provider {}", provider.provider_id)
                reports[provider.provider_id] = None
        return reports

    async def close(self) -> None:
        await self._client.close()

    async def _block_event(
        self, provider_id: str, event: ExternalEvent, start_date: dt.date, end_date: dt.date
    ) -> int:
        blocked = 0
        for day, time_range in self._event_spans(event):
            if day < start_date or day > end_date:
                continue
            slots = await self._grid.set_availability(
                provider_id, day, time_range, False, source=SlotSource.EXTERNAL
            )
            blocked += len(slots)
        return blocked

    def _event_spans(self, event: ExternalEvent) -> list[tuple[dt.date, TimeRange]]:
        if event.is_all_day and event.start_date and event.end_date:
            span_days = (event.end_date - event.start_date).days
            # End date is exclusive: a one-day event has end_date = start_date + 1.
            return [
                (event.start_date + dt.timedelta(days=offset), TimeRange.whole_day())
                for offset in range(span_days)
            ]
        if event.start is None or event.end is None:
            raise ValueError(f"event {event.event_id!r} has no bounds")
        return self._clock.local_span(event.start, event.end)

    def _push_lock(self, appointment_id: str) -> asyncio.Lock:
        lock = self._push_locks.get(appointment_id)
        if lock is None:
            lock = asyncio.Lock()
            self._push_locks[appointment_id] = lock
        return lock

    async def _call(self, provider_id: str, what: str, call: Awaitable[T]) -> T:
        try:
            return await call
        except CalendarSyncTransientError as exc:
            raise CalendarSyncTransientError(exc.reason, provider_id) from exc
        except CalendarError:
            raise
        except Exception as exc:
            raise CalendarSyncTransientError(f"{what} failed: {exc}", provider_id) from exc

    async def _provider(self, provider_id: str) -> Provider:
        provider = await self._repo.get_provider(provider_id)
        if provider is None:
            raise ProviderNotFoundError(provider_id)
        return provider

    def _require_connected(self, provider: Provider) -> None:
        if provider.connection != ConnectionState.CONNECTED:
            raise CalendarNotConnectedError(provider.provider_id, "calendar not connected")
        if not provider.refresh_token:
            raise CalendarNotConnectedError(provider.provider_id, "no stored refresh token")

    async def _access_token(self, provider: Provider) -> str:
        try:
            grant = await self._client.refresh_access_token(provider.refresh_token or "")
        except CalendarNotConnectedError as exc:
            logger.warning(
                "Token exchange rejected for provider {}; marking calendar not connected",
                provider.provider_id,
            )
            await self._revoke(provider)
            raise CalendarNotConnectedError(provider.provider_id, exc.reason) from exc
        except CalendarSyncTransientError as exc:
            raise CalendarSyncTransientError(exc.reason, provider.provider_id) from exc
        except Exception as exc:
            raise CalendarSyncTransientError(
                f"token exchange failed: {exc}", provider.provider_id
            ) from exc

        if grant.refresh_token and grant.refresh_token != provider.refresh_token:
            await self._repo.save_provider(
                provider.model_copy(update={"refresh_token": grant.refresh_token})
            )
            logger.info("Refresh token rotated for provider {}", provider.provider_id)
        return grant.access_token

    async def _revoke(self, provider: Provider) -> Provider:
        revoked = provider.model_copy(
            update={"connection": ConnectionState.NOT_CONNECTED, "refresh_token": None}
        )
        return await self._repo.save_provider(revoked)
