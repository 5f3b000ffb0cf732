import datetime as dt
from typing import Any
from urllib.parse import quote

import httpx
from loguru import logger

from slotsync.calendar.adapters.parsing_helpers import parse_event, to_rfc3339
from slotsync.domain.exceptions import (
    CalendarNotConnectedError,
    CalendarSyncTransientError,
)
from slotsync.domain.models import ExternalEvent, TokenGrant
from slotsync.scheduling.clock import ClinicClock

# Token endpoint answers that mean the refresh token itself is no good.
_REJECTED_TOKEN_STATUSES = {400, 401, 403}
_GONE_STATUSES = {404, 410}


class GoogleCalendarClient:
    """Google Calendar client via the v3 REST API.

    Access tokens are obtained per operation from the provider's refresh
    token and never cached beyond the caller's use.
    """

    def __init__(
        self,
        *,
        client_id: str,
        client_secret: str,
        clock: ClinicClock,
        token_url: str = "https://oauth2.googleapis.com/token",
        api_url: str = "https://www.googleapis.com/calendar/v3",
        calendar_id: str = "primary",
        timeout: float = 30.0,
    ) -> None:
        self._client_id = client_id
        self._client_secret = client_secret
        self._clock = clock
        self._token_url = token_url
        self._events_url = f"{api_url.rstrip('/')}/calendars/{quote(calendar_id, safe='')}/events"
        self._client = httpx.AsyncClient(timeout=timeout)

    async def refresh_access_token(self, refresh_token: str) -> TokenGrant:
        if not self._client_id or not self._client_secret:
            raise CalendarSyncTransientError("no OAuth client credentials configured")

        try:
            resp = await self._client.post(
                self._token_url,
                data={
                    "refresh_token": refresh_token,
                    "client_id": self._client_id,
                    "client_secret": self._client_secret,
                    "grant_type": "refresh_token",
                },
            )
        except httpx.HTTPError as exc:
            raise CalendarSyncTransientError(f"token exchange request failed: {exc}") from exc

        if resp.status_code in _REJECTED_TOKEN_STATUSES:
            error = _error_text(resp)
            raise CalendarNotConnectedError(None, f"token exchange rejected: {error}")
        if resp.status_code >= 400:
            raise CalendarSyncTransientError(f"token endpoint returned {resp.status_code}")

        data = _json_object(resp)
        access_token = data.get("access_token")
        if not isinstance(access_token, str) or not access_token:
            raise CalendarNotConnectedError(None, "token exchange returned no access_token")

        expires_in = data.get("expires_in")
        rotated = data.get("refresh_token")
        return TokenGrant(
            access_token=access_token,
            expires_in=expires_in if isinstance(expires_in, int) else None,
            refresh_token=rotated if isinstance(rotated, str) and rotated else None,
        )

    async def list_events(
        self, access_token: str, time_min: dt.datetime, time_max: dt.datetime
    ) -> list[ExternalEvent]:
        params: dict[str, str] = {
            "timeMin": to_rfc3339(time_min),
            "timeMax": to_rfc3339(time_max),
            "singleEvents": "true",
            "orderBy": "startTime",
            "maxResults": "250",
        }
        events: list[ExternalEvent] = []
        page_token: str | None = None

        while True:
            if page_token:
                params["pageToken"] = page_token
            data = await self._request("GET", self._events_url, access_token, params=params)

            items: Any = data.get("items") or []
            if not isinstance(items, list):
                raise CalendarSyncTransientError("events.list returned non-list items")
            for raw in items:
                if isinstance(raw, dict) and raw.get("status") == "cancelled":
                    continue
                if isinstance(raw, dict) and raw.get("transparency") == "transparent":
                    # Marked "free" in the calendar; does not occupy time.
                    continue
                try:
                    events.append(parse_event(raw, self._clock))
                except CalendarSyncTransientError as exc:
                    logger.warning("Skipping unreadable external event: {}", exc)

            next_token = data.get("nextPageToken")
            if not isinstance(next_token, str) or not next_token:
                break
            page_token = next_token

        logger.debug("Fetched {} external event(s)", len(events))
        return events

    async def create_event(self, access_token: str, payload: dict[str, Any]) -> str:
        data = await self._request("POST", self._events_url, access_token, json=payload)
        return _event_id(data)

    async def update_event(self, access_token: str, event_id: str, payload: dict[str, Any]) -> str:
        url = f"{self._events_url}/{quote(event_id, safe='')}"
        data = await self._request("PUT", url, access_token, json=payload)
        return _event_id(data)

    async def delete_event(self, access_token: str, event_id: str) -> None:
        url = f"{self._events_url}/{quote(event_id, safe='')}"
        await self._request("DELETE", url, access_token, allow_gone=True)

    async def close(self) -> None:
        await self._client.aclose()
        logger.info("Google Calendar client closed")

    async def _request(
        self,
        method: str,
        url: str,
        access_token: str,
        *,
        params: dict[str, str] | None = None,
        json: dict[str, Any] | None = None,
        allow_gone: bool = False,
    ) -> dict[str, Any]:
        """Execute an authenticated calendar API call."""
        try:
            resp = await self._client.request(
                method,
                url,
                headers={"Authorization": f"Bearer {access_token}"},
                params=params,
                json=json,
            )
        except httpx.HTTPError as exc:
            raise CalendarSyncTransientError(f"{method} {url} failed: {exc}") from exc

        if allow_gone and resp.status_code in _GONE_STATUSES:
            logger.info("External event already gone ({}), nothing to delete", resp.status_code)
            return {}
        if resp.status_code >= 400:
            raise CalendarSyncTransientError(
                f"{method} returned {resp.status_code}: {_error_text(resp)}"
            )
        if resp.status_code == 204 or not resp.content:
            return {}
        return _json_object(resp)


def _json_object(resp: httpx.Response) -> dict[str, Any]:
    try:
        data: Any = resp.json()
    except ValueError as exc:
        raise CalendarSyncTransientError("calendar API returned invalid JSON") from exc
    if not isinstance(data, dict):
        raise CalendarSyncTransientError("calendar API returned a non-object body")
    return data


def _error_text(resp: httpx.Response) -> str:
    try:
        data: Any = resp.json()
    except ValueError:
        return resp.text[:200]
    if isinstance(data, dict):
        error = data.get("error")
        if isinstance(error, dict):
            return str(error.get("message") or error.get("status") or error)
        if error:
            description = data.get("error_description")
            return f"{error}: {description}" if description else str(error)
    return str(data)[:200]


def _event_id(data: dict[str, Any]) -> str:
    event_id = data.get("id")
    if not isinstance(event_id, str) or not event_id:
        raise CalendarSyncTransientError("calendar API response has no event id")
    return event_id
