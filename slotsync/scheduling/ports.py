import datetime as dt
from typing import Protocol

from slotsync.domain.models import (
    Appointment,
    AppointmentStatus,
    PatientPreference,
    Provider,
    ProviderAvailability,
    SlotRow,
    UtilizationRecord,
)

SlotKey = tuple[dt.date, dt.time]


class SchedulingRepository(Protocol):
    """Relational state behind the scheduling core.

    Implementations must make ``claim_slots``, ``transition_status`` and
    ``update_external_event_id`` atomic: concurrent writers racing on the same
    rows must leave exactly one winner.
    """

    async def get_provider(self, provider_id: str) -> Provider | None:
        """Return the provider, or None if unknown."""
        ...

    async def list_providers(self) -> list[Provider]:
        """Return every provider, ordered by id."""
        ...

    async def save_provider(self, provider: Provider) -> Provider:
        """Insert or replace a provider row, including its refresh token."""
        ...

    async def list_availability(self, provider_id: str) -> list[ProviderAvailability]:
        """Return the provider's stored weekly hours, ordered by weekday."""
        ...

    async def replace_availability(
        self, provider_id: str, hours: list[ProviderAvailability]
    ) -> list[ProviderAvailability]:
        """Swap the provider's weekly hours for ``hours``."""
        ...

    async def insert_slots(self, provider_id: str, keys: list[SlotKey]) -> int:
        """Create missing slot rows as available.

        Returns:
            Number of rows actually created. Existing rows are untouched.
        """
        ...

    async def list_slots(
        self, provider_id: str, start_date: dt.date, end_date: dt.date
    ) -> list[SlotRow]:
        """Return slot rows with ``start_date <= date <= end_date``, ordered."""
        ...

    async def get_slots(self, provider_id: str, keys: list[SlotKey]) -> list[SlotRow]:
        """Return the existing rows among ``keys``, ordered."""
        ...

    async def mark_external_block(
        self, provider_id: str, keys: list[SlotKey], blocked: bool
    ) -> int:
        """Set the external-calendar flag on existing rows; returns rows changed."""
        ...

    async def claim_slots(self, provider_id: str, keys: list[SlotKey], appointment_id: str) -> bool:
        """Compare-and-set: hold every key for ``appointment_id``.

        Succeeds only if every key exists and is either available or already
        held by the same appointment. On failure nothing is changed.
        """
        ...

    async def release_slots(self, provider_id: str, keys: list[SlotKey], appointment_id: str) -> int:
        """Clear the hold on keys held by ``appointment_id``; returns rows changed."""
        ...

    async def add_appointment(self, appointment: Appointment) -> Appointment:
        """Insert a new appointment row."""
        ...

    async def get_appointment(self, appointment_id: str) -> Appointment | None:
        """Return the appointment, or None if unknown."""
        ...

    async def transition_status(
        self,
        appointment_id: str,
        expected: AppointmentStatus,
        target: AppointmentStatus,
        updated_at: dt.datetime | None = None,
    ) -> Appointment | None:
        """Compare-and-set on the status column.

        Returns:
            The updated appointment, or None when the stored status is no
            longer ``expected`` (another writer moved it first).
        """
        ...

    async def update_external_event_id(
        self, appointment_id: str, event_id: str | None, *, expected: str | None
    ) -> Appointment | None:
        """Compare-and-set on the external event linkage.

        Writes ``event_id`` only while the stored linkage equals ``expected``;
        other columns are left as stored.

        Returns:
            The updated appointment, or None if the linkage had changed.
        """
        ...

    async def list_appointments(
        self, provider_id: str, start: dt.datetime, end: dt.datetime
    ) -> list[Appointment]:
        """Return appointments with ``start <= appointment.start < end``."""
        ...

    async def replace_utilization(
        self, provider_id: str, records: list[UtilizationRecord]
    ) -> None:
        """Swap the provider's utilization records for ``records``."""
        ...

    async def list_utilization(
        self, provider_id: str, weekday: int | None = None
    ) -> list[UtilizationRecord]:
        """Return stored utilization records, ascending by booking rate."""
        ...

    async def get_preference(self, patient_id: str) -> PatientPreference | None:
        """Return the patient's scheduling preference, if any."""
        ...

    async def save_preference(self, preference: PatientPreference) -> PatientPreference:
        """Insert or replace a patient preference."""
        ...

    async def close(self) -> None:
        """Release resources."""
        ...


class NotifierProtocol(Protocol):
    """Fire-and-forget notification of appointment transitions."""

    async def notify(self, appointment: Appointment, event: str) -> None:
        """Tell the patient and provider about ``event`` on ``appointment``."""
        ...
