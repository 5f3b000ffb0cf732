import asyncio
import datetime as dt

from slotsync.domain.models import (
    Appointment,
    AppointmentStatus,
    PatientPreference,
    Provider,
    ProviderAvailability,
    SlotRow,
    UtilizationRecord,
)
from slotsync.scheduling.ports import SlotKey


class InMemorySchedulingRepository:
    """Dict-backed implementation of the SchedulingRepository protocol.

    A single ``asyncio.Lock`` serialises writers, which makes
    ``claim_slots`` a true compare-and-set for coroutines sharing one event
    loop. Inspect ``slots``, ``appointments`` and ``providers`` directly in
    tests.
    """

    def __init__(self) -> None:
        self.providers: dict[str, Provider] = {}
        self.availability: dict[str, list[ProviderAvailability]] = {}
        self.slots: dict[tuple[str, dt.date, dt.time], SlotRow] = {}
        self.appointments: dict[str, Appointment] = {}
        self.utilization: dict[str, list[UtilizationRecord]] = {}
        self.preferences: dict[str, PatientPreference] = {}
        self.closed: bool = False
        self._lock = asyncio.Lock()

    async def get_provider(self, provider_id: str) -> Provider | None:
        return self.providers.get(provider_id)

    async def list_providers(self) -> list[Provider]:
        return [self.providers[k] for k in sorted(self.providers)]

    async def save_provider(self, provider: Provider) -> Provider:
        async with self._lock:
            self.providers[provider.provider_id] = provider
        return provider

    async def list_availability(self, provider_id: str) -> list[ProviderAvailability]:
        return sorted(self.availability.get(provider_id, []), key=lambda h: h.weekday)

    async def replace_availability(
        self, provider_id: str, hours: list[ProviderAvailability]
    ) -> list[ProviderAvailability]:
        async with self._lock:
            self.availability[provider_id] = list(hours)
        return sorted(hours, key=lambda h: h.weekday)

    async def insert_slots(self, provider_id: str, keys: list[SlotKey]) -> int:
        created = 0
        async with self._lock:
            for day, time in keys:
                if (provider_id, day, time) not in self.slots:
                    self.slots[(provider_id, day, time)] = SlotRow(
                        provider_id=provider_id, date=day, time=time
                    )
                    created += 1
        return created

    async def list_slots(
        self, provider_id: str, start_date: dt.date, end_date: dt.date
    ) -> list[SlotRow]:
        rows = [
            row
            for (pid, day, _), row in self.slots.items()
            if pid == provider_id and start_date <= day <= end_date
        ]
        return sorted(rows, key=lambda r: (r.date, r.time))

    async def get_slots(self, provider_id: str, keys: list[SlotKey]) -> list[SlotRow]:
        rows = [self.slots[(provider_id, d, t)] for d, t in keys if (provider_id, d, t) in self.slots]
        return sorted(rows, key=lambda r: (r.date, r.time))

    async def mark_external_block(
        self, provider_id: str, keys: list[SlotKey], blocked: bool
    ) -> int:
        changed = 0
        async with self._lock:
            for day, time in keys:
                row = self.slots.get((provider_id, day, time))
                if row is None or row.external_block == blocked:
                    continue
                self.slots[(provider_id, day, time)] = row.model_copy(
                    update={"external_block": blocked}
                )
                changed += 1
        return changed

    async def claim_slots(self, provider_id: str, keys: list[SlotKey], appointment_id: str) -> bool:
        async with self._lock:
            rows: list[SlotRow] = []
            for day, time in keys:
                row = self.slots.get((provider_id, day, time))
                if row is None:
                    return False
                if row.appointment_id == appointment_id:
                    continue
                if not row.is_available:
                    return False
                rows.append(row)
            for row in rows:
                self.slots[(provider_id, row.date, row.time)] = row.model_copy(
                    update={"appointment_id": appointment_id}
                )
        return True

    async def release_slots(self, provider_id: str, keys: list[SlotKey], appointment_id: str) -> int:
        changed = 0
        async with self._lock:
            for day, time in keys:
                row = self.slots.get((provider_id, day, time))
                if row is None or row.appointment_id != appointment_id:
                    continue
                self.slots[(provider_id, day, time)] = row.model_copy(
                    update={"appointment_id": None}
                )
                changed += 1
        return changed

    async def add_appointment(self, appointment: Appointment) -> Appointment:
        async with self._lock:
            if appointment.appointment_id in self.appointments:
                raise ValueError(f"Duplicate appointment id: {appointment.appointment_id}")
            self.appointments[appointment.appointment_id] = appointment
        return appointment

    async def get_appointment(self, appointment_id: str) -> Appointment | None:
        return self.appointments.get(appointment_id)

    async def transition_status(
        self,
        appointment_id: str,
        expected: AppointmentStatus,
        target: AppointmentStatus,
        updated_at: dt.datetime | None = None,
    ) -> Appointment | None:
        async with self._lock:
            current = self.appointments.get(appointment_id)
            if current is None or current.status != expected:
                return None
            updated = current.model_copy(
                update={"status": target, "updated_at": updated_at or current.updated_at}
            )
            self.appointments[appointment_id] = updated
        return updated

    async def update_external_event_id(
        self, appointment_id: str, event_id: str | None, *, expected: str | None
    ) -> Appointment | None:
        async with self._lock:
            current = self.appointments.get(appointment_id)
            if current is None or current.external_event_id != expected:
                return None
            updated = current.model_copy(update={"external_event_id": event_id})
            self.appointments[appointment_id] = updated
        return updated

    async def list_appointments(
        self, provider_id: str, start: dt.datetime, end: dt.datetime
    ) -> list[Appointment]:
        found = [
            a
            for a in self.appointments.values()
            if a.provider_id == provider_id and start <= a.start < end
        ]
        return sorted(found, key=lambda a: a.start)

    async def replace_utilization(
        self, provider_id: str, records: list[UtilizationRecord]
    ) -> None:
        async with self._lock:
            self.utilization[provider_id] = list(records)

    async def list_utilization(
        self, provider_id: str, weekday: int | None = None
    ) -> list[UtilizationRecord]:
        records = self.utilization.get(provider_id, [])
        if weekday is not None:
            records = [r for r in records if r.weekday == weekday]
        return sorted(records, key=lambda r: (r.recent_booking_rate, r.weekday, r.time_of_day))

    async def get_preference(self, patient_id: str) -> PatientPreference | None:
        return self.preferences.get(patient_id)

    async def save_preference(self, preference: PatientPreference) -> PatientPreference:
        self.preferences[preference.patient_id] = preference
        return preference

    async def close(self) -> None:
        self.closed = True
