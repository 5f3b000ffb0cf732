import datetime as dt
from typing import Any

from pydantic import ValidationError

from slotsync.domain.exceptions import CalendarSyncTransientError, InvalidTimeError
from slotsync.domain.models import Appointment, AppointmentStatus, ExternalEvent
from slotsync.scheduling.clock import ClinicClock

# Google Calendar colour ids: blueberry, basil, tomato.
_STATUS_COLORS: dict[AppointmentStatus, str] = {
    AppointmentStatus.CONFIRMED: "9",
    AppointmentStatus.COMPLETED: "10",
}
_DEFAULT_COLOR = "11"


def parse_event(raw: dict[str, Any], clock: ClinicClock) -> ExternalEvent:
    """Turn one raw ``events.list`` item into an ExternalEvent.

    An event whose ``start`` has a ``date`` but no ``dateTime`` is all-day;
    its ``end.date`` is exclusive.

    Raises:
        CalendarSyncTransientError: If the payload does not have the expected shape.
    """
    if not isinstance(raw, dict):
        raise CalendarSyncTransientError(f"event payload is not an object: {raw!r}")

    start: Any = raw.get("start")
    end: Any = raw.get("end")
    if not isinstance(start, dict) or not isinstance(end, dict):
        raise CalendarSyncTransientError(f"event {raw.get('id')!r} has no start/end")

    event_id = str(raw.get("id") or "")
    summary = str(raw.get("summary") or "")

    try:
        if "dateTime" not in start and "date" in start:
            return ExternalEvent(
                event_id=event_id,
                summary=summary,
                is_all_day=True,
                start_date=dt.date.fromisoformat(start["date"]),
                end_date=dt.date.fromisoformat(end["date"]),
            )
        return ExternalEvent(
            event_id=event_id,
            summary=summary,
            start=_parse_timed(start, clock),
            end=_parse_timed(end, clock),
        )
    except (KeyError, TypeError, ValueError, InvalidTimeError, ValidationError) as exc:
        raise CalendarSyncTransientError(f"malformed event {event_id!r}: {exc}") from exc


def _parse_timed(bound: dict[str, Any], clock: ClinicClock) -> dt.datetime:
    value = bound["dateTime"]
    try:
        return clock.parse_instant(value)
    except InvalidTimeError:
        # Offset-less dateTime: interpret in the event's own zone if given.
        tz_name = bound.get("timeZone")
        if not tz_name:
            raise
        zone_clock = ClinicClock(tz_name)
        return zone_clock.to_utc(dt.datetime.fromisoformat(value))


def build_event_payload(appointment: Appointment) -> dict[str, Any]:
    """Build the external event body for an appointment."""
    who = appointment.patient_name or f"Patient {appointment.patient_id}"
    title = f"{who} - {appointment.reason}" if appointment.reason else who

    lines = [
        f"Patient: {who}",
        f"Reason: {appointment.reason or 'n/a'}",
        f"Status: {appointment.status.value}",
    ]
    if appointment.notes:
        lines.append(f"Notes: {appointment.notes}")

    return {
        "summary": title,
        "description": "\n".join(lines),
        "start": {"dateTime": to_rfc3339(appointment.start), "timeZone": "UTC"},
        "end": {"dateTime": to_rfc3339(appointment.end), "timeZone": "UTC"},
        "colorId": _STATUS_COLORS.get(appointment.status, _DEFAULT_COLOR),
    }


def to_rfc3339(instant: dt.datetime) -> str:
    return instant.astimezone(dt.timezone.utc).isoformat().replace("+00:00", "Z")
