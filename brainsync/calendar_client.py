"""
External calendar integration for task due dates.

Events are all-day and keyed by the opaque id the calendar returns at
creation. Every call is best-effort from the notebook's point of view:
the caller logs and swallows CalendarError.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timedelta
from typing import Optional, Protocol, Union, runtime_checkable

import httpx

logger = logging.getLogger(__name__)

GOOGLE_CALENDAR_API = "https://www.googleapis.com/calendar/v3"
DEFAULT_TIMEOUT = 15.0

DateLike = Union[date, datetime]


class CalendarError(Exception):
    """Error communicating with the calendar service."""


@runtime_checkable
class CalendarProtocol(Protocol):
    """Calendar used for task due-date events."""

    @property
    def authorized(self) -> bool: ...

    async def create_event(self, title: str, when: DateLike) -> str: ...

    async def update_event(self, ref: str, title: str, when: DateLike) -> None: ...

    async def delete_event(self, ref: str) -> None: ...

    async def close(self) -> None: ...


def all_day_event(title: str, when: DateLike) -> dict:
    """Event resource for an all-day event on the given date.

    The end date is exclusive, so a single-day event ends the next day.
    """
    day = when.date() if isinstance(when, datetime) else when
    return {
        "summary": title,
        "start": {"date": day.isoformat()},
        "end": {"date": (day + timedelta(days=1)).isoformat()},
    }


class GoogleCalendarClient:
    """Google Calendar API v3 client using an OAuth access token."""

    def __init__(
        self,
        access_token: Optional[str],
        *,
        calendar_id: str = "primary",
        timeout: float = DEFAULT_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._token = access_token
        self._calendar_id = calendar_id
        self._client = httpx.AsyncClient(
            base_url=GOOGLE_CALENDAR_API,
            headers={"Authorization": f"Bearer {access_token or ''}"},
            timeout=timeout,
            transport=transport,
        )

    @property
    def authorized(self) -> bool:
        """True if an access token is configured."""
        return bool(self._token)

    def _events_path(self, ref: Optional[str] = None) -> str:
        path = f"/calendars/{self._calendar_id}/events"
        return f"{path}/{ref}" if ref else path

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        if not self.authorized:
            raise CalendarError("Calendar access is not authorized")
        try:
            resp = await self._client.request(method, path, **kwargs)
            resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise CalendarError(
                f"{method} {path} rejected: {e.response.status_code} {e.response.text}"
            ) from e
        except httpx.HTTPError as e:
            raise CalendarError(f"{method} {path} failed: {e}") from e
        return resp

    async def create_event(self, title: str, when: DateLike) -> str:
        resp = await self._request("POST", self._events_path(), json=all_day_event(title, when))
        try:
            return resp.json()["id"]
        except (KeyError, TypeError, ValueError) as e:
            raise CalendarError(f"Calendar returned no event id: {resp.text}") from e

    async def update_event(self, ref: str, title: str, when: DateLike) -> None:
        await self._request("PUT", self._events_path(ref), json=all_day_event(title, when))

    async def delete_event(self, ref: str) -> None:
        try:
            await self._request("DELETE", self._events_path(ref))
        except CalendarError as e:
            # 410 Gone: already deleted
            cause = e.__cause__
            if isinstance(cause, httpx.HTTPStatusError) and cause.response.status_code in (404, 410):
                logger.debug("Calendar event %s already gone", ref)
                return
            raise

    async def close(self) -> None:
        await self._client.aclose()


class NullCalendar:
    """Calendar stand-in used when the integration is disabled."""

    @property
    def authorized(self) -> bool:
        return False

    async def create_event(self, title: str, when: DateLike) -> str:
        raise CalendarError("Calendar integration is disabled")

    async def update_event(self, ref: str, title: str, when: DateLike) -> None:
        raise CalendarError("Calendar integration is disabled")

    async def delete_event(self, ref: str) -> None:
        raise CalendarError("Calendar integration is disabled")

    async def close(self) -> None:
        pass
