class SchedulingError(Exception):
    """Base exception for all scheduling-related errors."""


class InvalidTimeError(SchedulingError):
    """Raised for malformed, naive, ambiguous or non-existent local times."""

    def __init__(self, reason: str, value: object | None = None) -> None:
        self.reason = reason
        self.value = value
        detail = f" ({value!r})" if value is not None else ""
        super().__init__(f"Invalid time: {reason}{detail}")


class SlotUnavailableError(SchedulingError):
    """Raised when a slot is no longer open at the moment it is claimed.

    The caller must re-fetch availability and let the user pick again.
    """

    def __init__(self, provider_id: str, slots: list[str] | None = None) -> None:
        self.provider_id = provider_id
        self.slots = slots or []
        listed = ", ".join(self.slots) if self.slots else "requested range"
        super().__init__(f"Slot unavailable for provider {provider_id}: {listed}")


class AppointmentNotFoundError(SchedulingError):
    def __init__(self, appointment_id: str) -> None:
        self.appointment_id = appointment_id
        super().__init__(f"Appointment not found: {appointment_id}")


class ProviderNotFoundError(SchedulingError):
    def __init__(self, provider_id: str) -> None:
        self.provider_id = provider_id
        super().__init__(f"Provider not found: {provider_id}")


class InvalidTransitionError(SchedulingError):
    """Raised when the appointment state machine forbids a transition."""

    def __init__(self, appointment_id: str, current: str, target: str) -> None:
        self.appointment_id = appointment_id
        self.current = current
        self.target = target
        super().__init__(
            f"Appointment {appointment_id} cannot move from '{current}' to '{target}'"
        )


class CalendarError(SchedulingError):
    """Base exception for external calendar integration errors."""


class CalendarNotConnectedError(CalendarError):
    """Raised when a provider has no usable external-calendar credential."""

    def __init__(self, provider_id: str | None, reason: str = "not connected") -> None:
        self.provider_id = provider_id
        self.reason = reason
        target = f" for provider {provider_id}" if provider_id else ""
        super().__init__(f"Calendar not connected{target}: {reason}")


class CalendarSyncTransientError(CalendarError):
    """Raised on network or API failures talking to the calendar provider."""

    def __init__(self, reason: str, provider_id: str | None = None) -> None:
        self.reason = reason
        self.provider_id = provider_id
        super().__init__(f"Calendar sync failed: {reason}")


class RecommendationUnavailableError(SchedulingError):
    """Raised when the scoring service fails or returns unusable output."""

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(f"Recommendations unavailable: {reason}")
