from loguru import logger

from slotsync.domain.models import Appointment


class LoggingNotifier:
    """Notifier that only records transitions in the log.

    Stands in for the email service in deployments without one.
    """

    async def notify(self, appointment: Appointment, event: str) -> None:
        logger.info(
            "Notification queued: event={}, appointment={}, provider={}",
            event,
            appointment.appointment_id,
            appointment.provider_id,
        )


class RecordingNotifier:
    """In-memory notifier for tests. Set ``error`` to make ``notify`` raise."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str]] = []
        self.error: Exception | None = None

    async def notify(self, appointment: Appointment, event: str) -> None:
        if self.error:
            raise self.error
        self.sent.append((appointment.appointment_id, event))
