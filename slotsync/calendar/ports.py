import datetime as dt
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Protocol

from slotsync.domain.models import Appointment, ExternalEvent, SyncReport, TokenGrant


class SyncAction(Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class AbstractCalendarSync(ABC):
    """Two-way synchronisation between the slot grid and an external calendar."""

    @abstractmethod
    async def push(self, appointment: Appointment, action: SyncAction) -> Appointment:
        """Mirror an appointment change onto the provider's external calendar.

        Args:
            appointment: The appointment as already committed locally.
            action: What happened to it.

        Returns:
            The appointment, with ``external_event_id`` updated when the
            external mapping changed.

        Raises:
            CalendarNotConnectedError: If the provider has no usable credential.
            CalendarSyncTransientError: If the calendar provider is unreachable.
        """

    @abstractmethod
    async def sweep(self, provider_id: str, start_date: dt.date, end_date: dt.date) -> SyncReport:
        """Pull external busy time for ``[start_date, end_date]`` and block slots.

        Only ever removes availability.

        Raises:
            CalendarNotConnectedError: If the token exchange fails.
            CalendarSyncTransientError: If listing events fails.
        """

    @abstractmethod
    async def sweep_all(
        self, start_date: dt.date | None = None, end_date: dt.date | None = None
    ) -> dict[str, SyncReport | None]:
        """Sweep every connected provider, isolating per-provider failures.

        Returns:
            Report per provider id; None for providers that were skipped or failed.
        """

    @abstractmethod
    async def close(self) -> None:
        """Release resources held by this service."""


class CalendarClientProtocol(Protocol):
    """Low-level interface for the external calendar's REST API."""

    async def refresh_access_token(self, refresh_token: str) -> TokenGrant:
        """Exchange a refresh token for a short-lived access token."""
        ...

    async def list_events(
        self, access_token: str, time_min: dt.datetime, time_max: dt.datetime
    ) -> list[ExternalEvent]:
        """List busy events overlapping ``[time_min, time_max)``."""
        ...

    async def create_event(self, access_token: str, payload: dict[str, Any]) -> str:
        """Create an event and return its id."""
        ...

    async def update_event(self, access_token: str, event_id: str, payload: dict[str, Any]) -> str:
        """Replace an event and return its id."""
        ...

    async def delete_event(self, access_token: str, event_id: str) -> None:
        """Delete an event. Deleting a missing event is not an error."""
        ...

    async def close(self) -> None:
        """Release resources."""
        ...
