import asyncio
import datetime as dt
import threading
from collections import defaultdict
from collections.abc import Callable
from typing import Any, TypeVar

from loguru import logger
from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    Text,
    Time,
    UniqueConstraint,
    and_,
    create_engine,
    delete,
    or_,
    select,
    update,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

from slotsync.domain.models import (
    Appointment,
    AppointmentStatus,
    ConnectionState,
    PatientPreference,
    Provider,
    ProviderAvailability,
    SlotRow,
    TimeOfDay,
    UtilizationRecord,
)
from slotsync.scheduling.ports import SlotKey

T = TypeVar("T")

_UTC = dt.timezone.utc


class Base(DeclarativeBase):
    pass


class ProviderModel(Base):
    __tablename__ = "providers"

    provider_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    display_name: Mapped[str] = mapped_column(String(200), nullable=False, default="")
    connection: Mapped[str] = mapped_column(String(32), nullable=False)
    refresh_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_synced_at: Mapped[dt.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class AvailabilityModel(Base):
    __tablename__ = "provider_availability"
    __table_args__ = (
        UniqueConstraint("provider_id", "weekday", name="uq_provider_availability_weekday"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    provider_id: Mapped[str] = mapped_column(String(64), nullable=False)
    weekday: Mapped[int] = mapped_column(Integer, nullable=False)
    is_available: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    start_time: Mapped[dt.time] = mapped_column(Time, nullable=False)
    end_time: Mapped[dt.time] = mapped_column(Time, nullable=False)
    break_start: Mapped[dt.time | None] = mapped_column(Time, nullable=True)
    break_end: Mapped[dt.time | None] = mapped_column(Time, nullable=True)


class SlotModel(Base):
    __tablename__ = "slots"
    __table_args__ = (
        UniqueConstraint("provider_id", "date", "time", name="uq_slots_provider_date_time"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    provider_id: Mapped[str] = mapped_column(String(64), nullable=False)
    date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    time: Mapped[dt.time] = mapped_column(Time, nullable=False)
    appointment_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    external_block: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)


class AppointmentModel(Base):
    __tablename__ = "appointments"
    __table_args__ = (Index("ix_appointments_provider_start", "provider_id", "start"),)

    appointment_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    patient_id: Mapped[str] = mapped_column(String(64), nullable=False)
    provider_id: Mapped[str] = mapped_column(String(64), nullable=False)
    start: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    duration_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False, default="")
    patient_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    external_event_id: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    created_at: Mapped[dt.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[dt.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class UtilizationModel(Base):
    __tablename__ = "slot_utilization"
    __table_args__ = (
        UniqueConstraint(
            "provider_id", "weekday", "time_of_day", name="uq_slot_utilization_bucket"
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    provider_id: Mapped[str] = mapped_column(String(64), nullable=False)
    weekday: Mapped[int] = mapped_column(Integer, nullable=False)
    time_of_day: Mapped[dt.time] = mapped_column(Time, nullable=False)
    offered_slots: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    booked_slots: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    recent_booking_rate: Mapped[float] = mapped_column(Float, nullable=False)
    computed_at: Mapped[dt.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class PreferenceModel(Base):
    __tablename__ = "patient_preferences"

    patient_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    preferred_times_of_day: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)


class _ClaimConflict(Exception):
    """Raised inside a claim transaction to roll it back."""


def _utc(value: dt.datetime) -> dt.datetime:
    # SQLite drops the offset; everything is stored as UTC.
    return value.replace(tzinfo=_UTC) if value.tzinfo is None else value.astimezone(_UTC)


def _to_db(value: dt.datetime | None) -> dt.datetime | None:
    return value.astimezone(_UTC) if value is not None else None


def _from_db(value: dt.datetime | None) -> dt.datetime | None:
    return _utc(value) if value is not None else None


def _provider(row: ProviderModel) -> Provider:
    return Provider(
        provider_id=row.provider_id,
        display_name=row.display_name,
        connection=ConnectionState(row.connection),
        refresh_token=row.refresh_token,
        last_synced_at=_from_db(row.last_synced_at),
    )


def _hours(row: AvailabilityModel) -> ProviderAvailability:
    return ProviderAvailability(
        provider_id=row.provider_id,
        weekday=row.weekday,
        is_available=row.is_available,
        start_time=row.start_time,
        end_time=row.end_time,
        break_start=row.break_start,
        break_end=row.break_end,
    )


def _slot(row: SlotModel) -> SlotRow:
    return SlotRow(
        provider_id=row.provider_id,
        date=row.date,
        time=row.time,
        appointment_id=row.appointment_id,
        external_block=row.external_block,
    )


def _appointment(row: AppointmentModel) -> Appointment:
    return Appointment(
        appointment_id=row.appointment_id,
        patient_id=row.patient_id,
        provider_id=row.provider_id,
        start=_utc(row.start),
        duration_minutes=row.duration_minutes,
        status=AppointmentStatus(row.status),
        reason=row.reason,
        patient_name=row.patient_name,
        notes=row.notes,
        external_event_id=row.external_event_id,
        created_at=_from_db(row.created_at),
        updated_at=_from_db(row.updated_at),
    )


def _copy_appointment(target: AppointmentModel, appointment: Appointment) -> None:
    target.patient_id = appointment.patient_id
    target.provider_id = appointment.provider_id
    target.start = _utc(appointment.start)
    target.duration_minutes = appointment.duration_minutes
    target.status = appointment.status.value
    target.reason = appointment.reason
    target.patient_name = appointment.patient_name
    target.notes = appointment.notes
    target.external_event_id = appointment.external_event_id
    target.created_at = _to_db(appointment.created_at)
    target.updated_at = _to_db(appointment.updated_at)


def _utilization(row: UtilizationModel) -> UtilizationRecord:
    return UtilizationRecord(
        provider_id=row.provider_id,
        weekday=row.weekday,
        time_of_day=row.time_of_day,
        offered_slots=row.offered_slots,
        booked_slots=row.booked_slots,
        recent_booking_rate=row.recent_booking_rate,
        computed_at=_from_db(row.computed_at),
    )


def _by_date(keys: list[SlotKey]) -> dict[dt.date, set[dt.time]]:
    grouped: dict[dt.date, set[dt.time]] = defaultdict(set)
    for day, time in keys:
        grouped[day].add(time)
    return grouped


class SqlSchedulingRepository:
    """SchedulingRepository backed by SQLAlchemy.

    Uses a synchronous engine; every call runs its session in a worker thread
    via ``asyncio.to_thread``. The slot claim is a single conditional UPDATE
    whose row count is checked inside the same transaction, so the database
    enforces the compare-and-set across processes.
    """

    def __init__(self, url: str, *, echo: bool = False) -> None:
        engine_kwargs: dict[str, Any] = {"echo": echo}
        if url.startswith("sqlite"):
            engine_kwargs["connect_args"] = {"check_same_thread": False}
            if url in ("sqlite://", "sqlite:///:memory:"):
                engine_kwargs["poolclass"] = StaticPool
        else:
            engine_kwargs["pool_pre_ping"] = True

        self._engine = create_engine(url, **engine_kwargs)
        self._sessions = sessionmaker(bind=self._engine, expire_on_commit=False)
        # SQLite allows a single writer; serialise worker threads in-process.
        self._sqlite_lock = threading.Lock() if self._engine.dialect.name == "sqlite" else None
        Base.metadata.create_all(self._engine)
        logger.info("Scheduling database ready: {}", self._engine.url.render_as_string(hide_password=True))

    async def _run(self, work: Callable[[Session], T]) -> T:
        return await asyncio.to_thread(self._in_session, work)

    def _in_session(self, work: Callable[[Session], T]) -> T:
        if self._sqlite_lock is None:
            return self._transaction(work)
        with self._sqlite_lock:
            return self._transaction(work)

    def _transaction(self, work: Callable[[Session], T]) -> T:
        with self._sessions() as session, session.begin():
            return work(session)

    async def get_provider(self, provider_id: str) -> Provider | None:
        def work(session: Session) -> Provider | None:
            row = session.get(ProviderModel, provider_id)
            return _provider(row) if row else None

        return await self._run(work)

    async def list_providers(self) -> list[Provider]:
        def work(session: Session) -> list[Provider]:
            rows = session.scalars(select(ProviderModel).order_by(ProviderModel.provider_id))
            return [_provider(row) for row in rows]

        return await self._run(work)

    async def save_provider(self, provider: Provider) -> Provider:
        def work(session: Session) -> Provider:
            row = session.get(ProviderModel, provider.provider_id)
            if row is None:
                row = ProviderModel(provider_id=provider.provider_id)
                session.add(row)
            row.display_name = provider.display_name
            row.connection = provider.connection.value
            row.refresh_token = provider.refresh_token
            row.last_synced_at = _to_db(provider.last_synced_at)
            return provider

        return await self._run(work)

    async def list_availability(self, provider_id: str) -> list[ProviderAvailability]:
        def work(session: Session) -> list[ProviderAvailability]:
            rows = session.scalars(
                select(AvailabilityModel)
                .where(AvailabilityModel.provider_id == provider_id)
                .order_by(AvailabilityModel.weekday)
            )
            return [_hours(row) for row in rows]

        return await self._run(work)

    async def replace_availability(
        self, provider_id: str, hours: list[ProviderAvailability]
    ) -> list[ProviderAvailability]:
        def work(session: Session) -> list[ProviderAvailability]:
            session.execute(
                delete(AvailabilityModel).where(AvailabilityModel.provider_id == provider_id)
            )
            session.add_all(
                AvailabilityModel(
                    provider_id=provider_id,
                    weekday=h.weekday,
                    is_available=h.is_available,
                    start_time=h.start_time,
                    end_time=h.end_time,
                    break_start=h.break_start,
                    break_end=h.break_end,
                )
                for h in hours
            )
            return sorted(hours, key=lambda h: h.weekday)

        return await self._run(work)

    async def insert_slots(self, provider_id: str, keys: list[SlotKey]) -> int:
        def work(session: Session) -> int:
            wanted = _by_date(keys)
            existing = {
                (day, time)
                for day, time in session.execute(
                    select(SlotModel.date, SlotModel.time).where(
                        SlotModel.provider_id == provider_id,
                        SlotModel.date.in_(list(wanted)),
                    )
                )
            }
            missing = [
                SlotModel(provider_id=provider_id, date=day, time=time)
                for day, times in sorted(wanted.items())
                for time in sorted(times)
                if (day, time) not in existing
            ]
            session.add_all(missing)
            return len(missing)

        try:
            return await self._run(work)
        except IntegrityError:
            # Another writer generated part of the range first; the retry skips those rows.
            logger.debug("Slot rows for provider {} created concurrently, retrying", provider_id)
            return await self._run(work)

    async def list_slots(
        self, provider_id: str, start_date: dt.date, end_date: dt.date
    ) -> list[SlotRow]:
        def work(session: Session) -> list[SlotRow]:
            rows = session.scalars(
                select(SlotModel)
                .where(
                    SlotModel.provider_id == provider_id,
                    SlotModel.date >= start_date,
                    SlotModel.date <= end_date,
                )
                .order_by(SlotModel.date, SlotModel.time)
            )
            return [_slot(row) for row in rows]

        return await self._run(work)

    async def get_slots(self, provider_id: str, keys: list[SlotKey]) -> list[SlotRow]:
        def work(session: Session) -> list[SlotRow]:
            found: list[SlotRow] = []
            for day, times in _by_date(keys).items():
                rows = session.scalars(
                    select(SlotModel).where(
                        SlotModel.provider_id == provider_id,
                        SlotModel.date == day,
                        SlotModel.time.in_(sorted(times)),
                    )
                )
                found.extend(_slot(row) for row in rows)
            return sorted(found, key=lambda r: (r.date, r.time))

        return await self._run(work)

    async def mark_external_block(
        self, provider_id: str, keys: list[SlotKey], blocked: bool
    ) -> int:
        def work(session: Session) -> int:
            changed = 0
            for day, times in _by_date(keys).items():
                result = session.execute(
                    update(SlotModel)
                    .where(
                        SlotModel.provider_id == provider_id,
                        SlotModel.date == day,
                        SlotModel.time.in_(sorted(times)),
                        SlotModel.external_block != blocked,
                    )
                    .values(external_block=blocked)
                )
                changed += result.rowcount
            return changed

        return await self._run(work)

    async def claim_slots(self, provider_id: str, keys: list[SlotKey], appointment_id: str) -> bool:
        def work(session: Session) -> bool:
            expected = 0
            claimed = 0
            for day, times in _by_date(keys).items():
                expected += len(times)
                result = session.execute(
                    update(SlotModel)
                    .where(
                        SlotModel.provider_id == provider_id,
                        SlotModel.date == day,
                        SlotModel.time.in_(sorted(times)),
                        or_(
                            SlotModel.appointment_id == appointment_id,
                            and_(
                                SlotModel.appointment_id.is_(None),
                                SlotModel.external_block.is_(False),
                            ),
                        ),
                    )
                    .values(appointment_id=appointment_id)
                )
                claimed += result.rowcount
            if claimed != expected:
                raise _ClaimConflict
            return True

        try:
            return await self._run(work)
        except _ClaimConflict:
            return False

    async def release_slots(self, provider_id: str, keys: list[SlotKey], appointment_id: str) -> int:
        def work(session: Session) -> int:
            changed = 0
            for day, times in _by_date(keys).items():
                result = session.execute(
                    update(SlotModel)
                    .where(
                        SlotModel.provider_id == provider_id,
                        SlotModel.date == day,
                        SlotModel.time.in_(sorted(times)),
                        SlotModel.appointment_id == appointment_id,
                    )
                    .values(appointment_id=None)
                )
                changed += result.rowcount
            return changed

        return await self._run(work)

    async def add_appointment(self, appointment: Appointment) -> Appointment:
        def work(session: Session) -> Appointment:
            if session.get(AppointmentModel, appointment.appointment_id) is not None:
                raise ValueError(f"Duplicate appointment id: {appointment.appointment_id}")
            row = AppointmentModel(appointment_id=appointment.appointment_id)
            _copy_appointment(row, appointment)
            session.add(row)
            return appointment

        return await self._run(work)

    async def get_appointment(self, appointment_id: str) -> Appointment | None:
        def work(session: Session) -> Appointment | None:
            row = session.get(AppointmentModel, appointment_id)
            return _appointment(row) if row else None

        return await self._run(work)

    async def transition_status(
        self,
        appointment_id: str,
        expected: AppointmentStatus,
        target: AppointmentStatus,
        updated_at: dt.datetime | None = None,
    ) -> Appointment | None:
        values: dict[str, Any] = {"status": target.value}
        if updated_at is not None:
            values["updated_at"] = _to_db(updated_at)

        def work(session: Session) -> Appointment | None:
            result = session.execute(
                update(AppointmentModel)
                .where(
                    AppointmentModel.appointment_id == appointment_id,
                    AppointmentModel.status == expected.value,
                )
                .values(**values)
            )
            if result.rowcount != 1:
                return None
            row = session.get(AppointmentModel, appointment_id, populate_existing=True)
            return _appointment(row) if row else None

        return await self._run(work)

    async def update_external_event_id(
        self, appointment_id: str, event_id: str | None, *, expected: str | None
    ) -> Appointment | None:
        linked = (
            AppointmentModel.external_event_id.is_(None)
            if expected is None
            else AppointmentModel.external_event_id == expected
        )

        def work(session: Session) -> Appointment | None:
            result = session.execute(
                update(AppointmentModel)
                .where(AppointmentModel.appointment_id == appointment_id, linked)
                .values(external_event_id=event_id)
            )
            if result.rowcount != 1:
                return None
            row = session.get(AppointmentModel, appointment_id, populate_existing=True)
            return _appointment(row) if row else None

        return await self._run(work)

    async def list_appointments(
        self, provider_id: str, start: dt.datetime, end: dt.datetime
    ) -> list[Appointment]:
        def work(session: Session) -> list[Appointment]:
            rows = session.scalars(
                select(AppointmentModel)
                .where(
                    AppointmentModel.provider_id == provider_id,
                    AppointmentModel.start >= _to_db(start),
                    AppointmentModel.start < _to_db(end),
                )
                .order_by(AppointmentModel.start)
            )
            return [_appointment(row) for row in rows]

        return await self._run(work)

    async def replace_utilization(
        self, provider_id: str, records: list[UtilizationRecord]
    ) -> None:
        def work(session: Session) -> None:
            session.execute(delete(UtilizationModel).where(UtilizationModel.provider_id == provider_id))
            session.add_all(
                UtilizationModel(
                    provider_id=provider_id,
                    weekday=r.weekday,
                    time_of_day=r.time_of_day,
                    offered_slots=r.offered_slots,
                    booked_slots=r.booked_slots,
                    recent_booking_rate=r.recent_booking_rate,
                    computed_at=_to_db(r.computed_at),
                )
                for r in records
            )

        await self._run(work)

    async def list_utilization(
        self, provider_id: str, weekday: int | None = None
    ) -> list[UtilizationRecord]:
        def work(session: Session) -> list[UtilizationRecord]:
            query = select(UtilizationModel).where(UtilizationModel.provider_id == provider_id)
            if weekday is not None:
                query = query.where(UtilizationModel.weekday == weekday)
            query = query.order_by(
                UtilizationModel.recent_booking_rate,
                UtilizationModel.weekday,
                UtilizationModel.time_of_day,
            )
            return [_utilization(row) for row in session.scalars(query)]

        return await self._run(work)

    async def get_preference(self, patient_id: str) -> PatientPreference | None:
        def work(session: Session) -> PatientPreference | None:
            row = session.get(PreferenceModel, patient_id)
            if row is None:
                return None
            return PatientPreference(
                patient_id=row.patient_id,
                preferred_times_of_day=[TimeOfDay(v) for v in row.preferred_times_of_day],
            )

        return await self._run(work)

    async def save_preference(self, preference: PatientPreference) -> PatientPreference:
        def work(session: Session) -> PatientPreference:
            row = session.get(PreferenceModel, preference.patient_id)
            if row is None:
                row = PreferenceModel(patient_id=preference.patient_id)
                session.add(row)
            row.preferred_times_of_day = [p.value for p in preference.preferred_times_of_day]
            return preference

        return await self._run(work)

    async def close(self) -> None:
        await asyncio.to_thread(self._engine.dispose)
