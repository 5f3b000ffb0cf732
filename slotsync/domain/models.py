import datetime as dt
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, model_validator

SLOT_MINUTES = 30


class AppointmentStatus(str, Enum):
    """Lifecycle states of an appointment."""

    REQUESTED = "requested"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"


# Statuses that count as a booked slot for utilization statistics.
BOOKED_STATUSES = frozenset({AppointmentStatus.CONFIRMED, AppointmentStatus.COMPLETED})


class ConnectionState(str, Enum):
    NOT_CONNECTED = "not_connected"
    CONNECTED = "connected"


class SlotSource(str, Enum):
    """Which side of the system is asking to change a slot."""

    BOOKING = "booking"
    EXTERNAL = "external"


class TimeOfDay(str, Enum):
    MORNING = "morning"
    AFTERNOON = "afternoon"
    EVENING = "evening"

    @classmethod
    def of(cls, time: dt.time) -> "TimeOfDay":
        if time.hour < 12:
            return cls.MORNING
        if time.hour < 17:
            return cls.AFTERNOON
        return cls.EVENING


class Provider(BaseModel):
    """A bookable professional and their external-calendar connection."""

    model_config = ConfigDict(frozen=True)

    provider_id: str
    display_name: str = ""
    connection: ConnectionState = ConnectionState.NOT_CONNECTED
    refresh_token: str | None = Field(default=None, repr=False, exclude=True)
    last_synced_at: dt.datetime | None = None

    @property
    def can_sync(self) -> bool:
        return self.connection == ConnectionState.CONNECTED and bool(self.refresh_token)


class ProviderAvailability(BaseModel):
    """A provider's working hours on one weekday (Monday = 0).

    Grid times inside ``[break_start, break_end)`` are not offered.
    """

    model_config = ConfigDict(frozen=True)

    provider_id: str
    weekday: int = Field(ge=0, le=6)
    is_available: bool = True
    start_time: dt.time = dt.time(9, 0)
    end_time: dt.time = dt.time(17, 0)
    break_start: dt.time | None = None
    break_end: dt.time | None = None

    @model_validator(mode="after")
    def _check_hours(self) -> "ProviderAvailability":
        if self.end_time <= self.start_time:
            raise ValueError(f"end_time {self.end_time} must be after start_time {self.start_time}")
        if (self.break_start is None) != (self.break_end is None):
            raise ValueError("break_start and break_end must be set together")
        if self.break_start is not None and self.break_end is not None:
            if not self.start_time <= self.break_start < self.break_end <= self.end_time:
                raise ValueError(
                    f"break {self.break_start}-{self.break_end} must fall inside working hours"
                )
        return self


class TimeRange(BaseModel):
    """A clinic-local span within one day. ``end=None`` means midnight."""

    model_config = ConfigDict(frozen=True)

    start: dt.time
    end: dt.time | None = None

    @model_validator(mode="after")
    def _check_order(self) -> "TimeRange":
        if self.end is not None and self.end <= self.start:
            raise ValueError(f"range end {self.end} must be after start {self.start}")
        return self

    @classmethod
    def whole_day(cls) -> "TimeRange":
        return cls(start=dt.time(0, 0))


class SlotAvailability(BaseModel):
    """One 30-minute slot of a provider's grid, in clinic-local wall clock."""

    model_config = ConfigDict(frozen=True)

    provider_id: str
    date: dt.date
    time: dt.time
    is_available: bool

    @property
    def label(self) -> str:
        return f"{self.date.isoformat()} {self.time.strftime('%H:%M')}"


class SlotRow(BaseModel):
    """Stored slot state. Availability is derived from both claimants."""

    model_config = ConfigDict(frozen=True)

    provider_id: str
    date: dt.date
    time: dt.time
    appointment_id: str | None = None
    external_block: bool = False

    @property
    def is_available(self) -> bool:
        return self.appointment_id is None and not self.external_block

    def to_availability(self) -> SlotAvailability:
        return SlotAvailability(
            provider_id=self.provider_id,
            date=self.date,
            time=self.time,
            is_available=self.is_available,
        )


class Appointment(BaseModel):
    """A booking. Never deleted; cancellation is a status."""

    model_config = ConfigDict(frozen=True)

    appointment_id: str
    patient_id: str
    provider_id: str
    start: dt.datetime
    duration_minutes: int = SLOT_MINUTES
    status: AppointmentStatus = AppointmentStatus.REQUESTED
    reason: str = ""
    patient_name: str | None = None
    notes: str | None = None
    external_event_id: str | None = None
    created_at: dt.datetime | None = None
    updated_at: dt.datetime | None = None

    @property
    def end(self) -> dt.datetime:
        return self.start + dt.timedelta(minutes=self.duration_minutes)


class ExternalEvent(BaseModel):
    """A busy entry read from the external calendar.

    Timed events carry aware ``start``/``end``; all-day events carry
    ``start_date``/``end_date`` with an exclusive end date.
    """

    model_config = ConfigDict(frozen=True)

    event_id: str = ""
    summary: str = ""
    is_all_day: bool = False
    start: dt.datetime | None = None
    end: dt.datetime | None = None
    start_date: dt.date | None = None
    end_date: dt.date | None = None

    @model_validator(mode="after")
    def _check_bounds(self) -> "ExternalEvent":
        if self.is_all_day:
            if self.start_date is None or self.end_date is None:
                raise ValueError("all-day event needs start_date and end_date")
            if self.end_date <= self.start_date:
                raise ValueError("all-day event end_date must be after start_date")
        else:
            if self.start is None or self.end is None:
                raise ValueError("timed event needs start and end")
            if self.start.tzinfo is None or self.end.tzinfo is None:
                raise ValueError("timed event bounds must be timezone-aware")
            if self.end <= self.start:
                raise ValueError("timed event end must be after start")
        return self


class TokenGrant(BaseModel):
    """Short-lived access token from a refresh-token exchange. Never persisted."""

    model_config = ConfigDict(frozen=True)

    access_token: str = Field(repr=False)
    expires_in: int | None = None
    refresh_token: str | None = Field(default=None, repr=False)


class UtilizationRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    provider_id: str
    weekday: int = Field(ge=0, le=6)
    time_of_day: dt.time
    offered_slots: int = 0
    booked_slots: int = 0
    recent_booking_rate: float = Field(ge=0, le=100)
    computed_at: dt.datetime | None = None


class UtilizationSummary(BaseModel):
    model_config = ConfigDict(frozen=True)

    total_slots: int = 0
    underutilized_slots: int = 0
    overutilized_slots: int = 0
    average_booking_rate: float = 0.0
    balance_score: int = 0


class PatientPreference(BaseModel):
    model_config = ConfigDict(frozen=True)

    patient_id: str
    preferred_times_of_day: list[TimeOfDay] = Field(default_factory=list)


class RecommendationCandidate(BaseModel):
    """One ranked time suggested by the scoring service."""

    model_config = ConfigDict(frozen=True)

    time: dt.time
    score: int = Field(ge=0, le=100)
    reasons: list[str] = Field(default_factory=list)
    rationale: str = ""


class Recommendation(RecommendationCandidate):
    is_underutilized: bool = False
    booking_rate: float = 0.0


class RecommendationResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    provider_id: str
    patient_id: str
    date: dt.date
    recommendations: list[Recommendation] = Field(default_factory=list)
    available_times: list[dt.time] = Field(default_factory=list)
    summary: str = ""
    degraded: bool = False


class SyncReport(BaseModel):
    model_config = ConfigDict(frozen=True)

    provider_id: str
    events_seen: int = 0
    slots_blocked: int = 0
    failed_events: int = 0
    synced_at: dt.datetime
