import datetime as dt
import uuid
from collections.abc import Callable

from loguru import logger

from slotsync.calendar.ports import AbstractCalendarSync, SyncAction
from slotsync.domain.exceptions import (
    AppointmentNotFoundError,
    CalendarError,
    CalendarNotConnectedError,
    InvalidTimeError,
    InvalidTransitionError,
    ProviderNotFoundError,
    SlotUnavailableError,
)
from slotsync.domain.models import (
    SLOT_MINUTES,
    Appointment,
    AppointmentStatus,
    SlotSource,
    TimeRange,
)
from slotsync.scheduling.clock import ClinicClock
from slotsync.scheduling.ports import NotifierProtocol, SchedulingRepository
from slotsync.scheduling.slot_grid import SlotGridStore

_MAX_DURATION_MINUTES = 24 * 60


def new_appointment_id() -> str:
    return f"apt_{uuid.uuid4().hex[:12]}"


class AppointmentLifecycle:
    """State machine for appointments and the slots they hold.

    ``requested -> confirmed -> {completed, cancelled, no_show}``, plus
    ``requested -> cancelled``. Local slot and status writes always land
    before the external calendar is touched; calendar and notification
    failures are logged and never undo a transition.
    """

    def __init__(
        self,
        repository: SchedulingRepository,
        slot_grid: SlotGridStore,
        clock: ClinicClock,
        *,
        calendar: AbstractCalendarSync | None = None,
        notifier: NotifierProtocol | None = None,
        id_factory: Callable[[], str] = new_appointment_id,
    ) -> None:
        self._repo = repository
        self._grid = slot_grid
        self._clock = clock
        self._calendar = calendar
        self._notifier = notifier
        self._new_id = id_factory

    async def get(self, appointment_id: str) -> Appointment:
        appointment = await self._repo.get_appointment(appointment_id)
        if appointment is None:
            raise AppointmentNotFoundError(appointment_id)
        return appointment

    async def request(
        self,
        patient_id: str,
        provider_id: str,
        start: dt.datetime,
        duration_minutes: int = SLOT_MINUTES,
        *,
        reason: str = "",
        patient_name: str | None = None,
        notes: str | None = None,
    ) -> Appointment:
        """Record a booking request. Slots are untouched until confirmation."""
        if duration_minutes <= 0 or duration_minutes > _MAX_DURATION_MINUTES:
            raise InvalidTimeError("duration must be between 1 minute and 24 hours", duration_minutes)
        if await self._repo.get_provider(provider_id) is None:
            raise ProviderNotFoundError(provider_id)

        # Rejects naive datetimes before anything is stored.
        self._clock.to_clinic_local(start)
        now = self._clock.now_utc()
        appointment = Appointment(
            appointment_id=self._new_id(),
            patient_id=patient_id,
            provider_id=provider_id,
            start=start.astimezone(dt.timezone.utc),
            duration_minutes=duration_minutes,
            reason=reason,
            patient_name=patient_name,
            notes=notes,
            created_at=now,
            updated_at=now,
        )
        self._slot_range(appointment)

        await self._repo.add_appointment(appointment)
        logger.info(
            "Appointment requested: id={}, provider={}, start={}",
            appointment.appointment_id,
            provider_id,
            appointment.start.isoformat(),
        )
        return appointment

    async def request_local(
        self,
        patient_id: str,
        provider_id: str,
        date_str: str,
        time_str: str,
        duration_minutes: int = SLOT_MINUTES,
        *,
        reason: str = "",
        patient_name: str | None = None,
        notes: str | None = None,
    ) -> Appointment:
        """Same as ``request`` for clinic-local ``YYYY-MM-DD`` / ``HH:MM`` input."""
        start = self._clock.to_utc(self._clock.parse_wall_clock(date_str, time_str))
        return await self.request(
            patient_id,
            provider_id,
            start,
            duration_minutes,
            reason=reason,
            patient_name=patient_name,
            notes=notes,
        )

    async def confirm(self, appointment_id: str) -> Appointment:
        """Claim the slot range and confirm.

        Raises:
            SlotUnavailableError: Another writer holds or blocks part of the
                range. The appointment stays ``requested``.
            InvalidTransitionError: The appointment is past ``requested``,
                possibly cancelled while this call ran. Nothing stays claimed.
        """
        appointment = await self.get(appointment_id)
        if appointment.status == AppointmentStatus.CONFIRMED:
            return appointment
        self._check_transition(appointment, AppointmentStatus.CONFIRMED)

        day, time_range = self._slot_range(appointment)
        try:
            await self._grid.set_availability(
                appointment.provider_id,
                day,
                time_range,
                False,
                source=SlotSource.BOOKING,
                appointment_id=appointment.appointment_id,
            )
        except SlotUnavailableError:
            logger.info("Confirmation lost slot race: id={}", appointment.appointment_id)
            raise

        try:
            confirmed, moved = await self._advance(appointment, AppointmentStatus.CONFIRMED)
        except InvalidTransitionError:
            # Cancelled concurrently; give back what this call claimed.
            await self._release(appointment)
            raise
        if not moved:
            return confirmed

        confirmed = await self._push(confirmed, SyncAction.CREATE)
        await self._notify(confirmed, "confirmed")
        return confirmed

    async def cancel(self, appointment_id: str) -> Appointment:
        """Soft-cancel and give the slots back. Repeating it is a no-op."""
        appointment = await self.get(appointment_id)
        cancelled, moved = await self._advance(appointment, AppointmentStatus.CANCELLED)
        if not moved:
            logger.info("Appointment already cancelled: id={}", appointment_id)
            return cancelled

        # A confirmation racing this call fails its transition and releases its own claim.
        await self._release(cancelled)
        cancelled = await self._push(cancelled, SyncAction.DELETE)
        await self._notify(cancelled, "cancelled")
        return cancelled

    async def complete(self, appointment_id: str) -> Appointment:
        return await self._close_out(appointment_id, AppointmentStatus.COMPLETED)

    async def mark_no_show(self, appointment_id: str) -> Appointment:
        return await self._close_out(appointment_id, AppointmentStatus.NO_SHOW)

    async def reschedule(
        self,
        appointment_id: str,
        new_start: dt.datetime,
        duration_minutes: int | None = None,
    ) -> Appointment:
        """Cancel the appointment and book a new one at ``new_start``.

        The original is never moved in place. If the new slot cannot be
        claimed, the original stays cancelled, the new request is cancelled
        too, and ``SlotUnavailableError`` propagates.
        """
        original = await self.get(appointment_id)
        if original.status not in (AppointmentStatus.REQUESTED, AppointmentStatus.CONFIRMED):
            raise InvalidTransitionError(appointment_id, original.status.value, "rescheduled")

        replacement = await self.request(
            original.patient_id,
            original.provider_id,
            new_start,
            duration_minutes or original.duration_minutes,
            reason=original.reason,
            patient_name=original.patient_name,
            notes=f"Rescheduled from {original.appointment_id}",
        )
        await self.cancel(original.appointment_id)

        try:
            confirmed = await self.confirm(replacement.appointment_id)
        except SlotUnavailableError:
            await self.cancel(replacement.appointment_id)
            raise

        logger.info(
            "Appointment rescheduled: old={}, new={}",
            original.appointment_id,
            confirmed.appointment_id,
        )
        return confirmed

    async def _close_out(self, appointment_id: str, target: AppointmentStatus) -> Appointment:
        appointment = await self.get(appointment_id)
        # The slot stays held: the visit happened (or was missed) in that time.
        closed, moved = await self._advance(appointment, target)
        if not moved:
            return closed
        return await self._push(closed, SyncAction.UPDATE)

    async def _advance(
        self, appointment: Appointment, target: AppointmentStatus
    ) -> tuple[Appointment, bool]:
        """Move ``appointment`` to ``target`` with a compare-and-set on its status.

        Returns the stored appointment and whether this call made the move.
        When another writer changes the status first, the transition is
        re-checked against the fresh row; statuses only move forward, so
        this settles after a few rounds.

        Raises:
            InvalidTransitionError: ``target`` is not reachable from the
                stored status.
        """
        while True:
            if appointment.status == target:
                return appointment, False
            self._check_transition(appointment, target)
            moved = await self._repo.transition_status(
                appointment.appointment_id, appointment.status, target, self._clock.now_utc()
            )
            if moved is not None:
                logger.info(
                    "Appointment {}: id={}, provider={}",
                    target.value,
                    moved.appointment_id,
                    moved.provider_id,
                )
                return moved, True
            logger.debug(
                "Status of {} changed concurrently, re-reading", appointment.appointment_id
            )
            appointment = await self.get(appointment.appointment_id)

    async def _release(self, appointment: Appointment) -> None:
        day, time_range = self._slot_range(appointment)
        # Release only this appointment's hold; an external block on the same slot stays.
        await self._grid.set_availability(
            appointment.provider_id,
            day,
            time_range,
            True,
            source=SlotSource.BOOKING,
            appointment_id=appointment.appointment_id,
        )

    def _check_transition(self, appointment: Appointment, target: AppointmentStatus) -> None:
        allowed = _TRANSITIONS.get(appointment.status, frozenset())
        if target not in allowed:
            raise InvalidTransitionError(
                appointment.appointment_id, appointment.status.value, target.value
            )

    def _slot_range(self, appointment: Appointment) -> tuple[dt.date, TimeRange]:
        pieces = self._clock.local_span(appointment.start, appointment.end)
        if len(pieces) != 1:
            raise InvalidTimeError(
                "appointment must start and end on the same clinic day",
                appointment.start.isoformat(),
            )
        return pieces[0]

    async def _push(self, appointment: Appointment, action: SyncAction) -> Appointment:
        if self._calendar is None:
            return appointment
        try:
            return await self._calendar.push(appointment, action)
        except CalendarNotConnectedError as exc:
            logger.info("Calendar {} skipped: {}", action.value, exc)
        except CalendarError as exc:
            logger.warning(
                "Calendar {} failed for appointment {}: {}",
                action.value,
                appointment.appointment_id,
                exc,
            )
        except Exception:
            logger.exception(
                "Unexpected error during calendar {} for appointment {}",
                action.value,
                appointment.appointment_id,
            )
        return appointment

    async def _notify(self, appointment: Appointment, event: str) -> None:
        if self._notifier is None:
            return
        try:
            await self._notifier.notify(appointment, event)
        except Exception as exc:
            logger.warning(
                "Notification '{}' failed for appointment {}: {}",
                event,
                appointment.appointment_id,
                exc,
            )


_TRANSITIONS: dict[AppointmentStatus, frozenset[AppointmentStatus]] = {
    AppointmentStatus.REQUESTED: frozenset(
        {AppointmentStatus.CONFIRMED, AppointmentStatus.CANCELLED}
    ),
    AppointmentStatus.CONFIRMED: frozenset(
        {AppointmentStatus.COMPLETED, AppointmentStatus.CANCELLED, AppointmentStatus.NO_SHOW}
    ),
}
