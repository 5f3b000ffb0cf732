import asyncio
import datetime as dt
from typing import Any

from slotsync.domain.exceptions import CalendarNotConnectedError
from slotsync.domain.models import ExternalEvent, TokenGrant


class FakeCalendarClient:
    """In-memory test double for the CalendarClientProtocol protocol.

    Pre-load ``events`` to control what ``list_events`` returns and
    ``valid_refresh_tokens`` to control which credentials exchange
    successfully.  Set ``token_error``, ``list_error``, etc. to make the
    corresponding method raise. Every call yields to the event loop
    (``latency`` seconds, default 0) so concurrent callers interleave.

    After calls, inspect ``created``, ``updated`` and ``deleted``; the live
    external calendar is ``remote`` (event id -> payload).
    """

    def __init__(self) -> None:
        self.events: list[ExternalEvent] = []
        self.valid_refresh_tokens: set[str] = {"refresh-ok"}
        self.rotate_to: str | None = None
        self.remote: dict[str, dict[str, Any]] = {}
        self.created: list[dict[str, Any]] = []
        self.updated: list[tuple[str, dict[str, Any]]] = []
        self.deleted: list[str] = []
        self.list_calls: list[tuple[dt.datetime, dt.datetime]] = []
        self.closed: bool = False
        self.latency: float = 0.0

        self.token_error: Exception | None = None
        self.list_error: Exception | None = None
        self.create_error: Exception | None = None
        self.update_error: Exception | None = None
        self.delete_error: Exception | None = None
        self._next_id = 1

    async def refresh_access_token(self, refresh_token: str) -> TokenGrant:
        await asyncio.sleep(self.latency)
        if self.token_error:
            raise self.token_error
        if refresh_token not in self.valid_refresh_tokens:
            raise CalendarNotConnectedError(None, "token exchange rejected: invalid_grant")
        return TokenGrant(
            access_token=f"access-for-{refresh_token}",
            expires_in=3600,
            refresh_token=self.rotate_to,
        )

    async def list_events(
        self, access_token: str, time_min: dt.datetime, time_max: dt.datetime
    ) -> list[ExternalEvent]:
        await asyncio.sleep(self.latency)
        if self.list_error:
            raise self.list_error
        self.list_calls.append((time_min, time_max))
        return list(self.events)

    async def create_event(self, access_token: str, payload: dict[str, Any]) -> str:
        await asyncio.sleep(self.latency)
        if self.create_error:
            raise self.create_error
        event_id = f"evt-{self._next_id}"
        self._next_id += 1
        self.created.append(payload)
        self.remote[event_id] = payload
        return event_id

    async def update_event(self, access_token: str, event_id: str, payload: dict[str, Any]) -> str:
        await asyncio.sleep(self.latency)
        if self.update_error:
            raise self.update_error
        self.updated.append((event_id, payload))
        self.remote[event_id] = payload
        return event_id

    async def delete_event(self, access_token: str, event_id: str) -> None:
        await asyncio.sleep(self.latency)
        if self.delete_error:
            raise self.delete_error
        self.deleted.append(event_id)
        self.remote.pop(event_id, None)

    async def close(self) -> None:
        self.closed = True
