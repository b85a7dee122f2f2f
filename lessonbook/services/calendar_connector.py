"""
External calendar connector - admin-blocked busy intervals.

Read-only client for the admin's calendar (Google Calendar v3 events API).
The OAuth handshake happens elsewhere; this module only needs a bearer token.
"""

import asyncio
import logging
from datetime import date, datetime, time
from typing import Any, Dict, List, Optional
from zoneinfo import ZoneInfo

import httpx

from lessonbook.config import LessonbookConfig, get_config
from lessonbook.errors import CalendarUnavailableError
from lessonbook.models import BusyInterval, BusySource

logger = logging.getLogger(__name__)


def _parse_event_time(value: Dict[str, str], tz: ZoneInfo) -> datetime:
    """Event start/end: dateTime for timed events, date for all-day events"""
    if "dateTime" in value:
        parsed = datetime.fromisoformat(value["dateTime"].replace("Z", "+00:00"))
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=tz)
        return parsed.astimezone(tz)
    return datetime.combine(date.fromisoformat(value["date"]), time.min, tzinfo=tz)


def event_to_interval(event: Dict[str, Any], tz: ZoneInfo) -> Optional[BusyInterval]:
    """Convert a calendar event to a busy interval; cancelled events give None"""
    if event.get("status") == "cancelled":
        return None
    if "start" not in event or "end" not in event:
        return None
    return BusyInterval(
        start=_parse_event_time(event["start"], tz),
        end=_parse_event_time(event["end"], tz),
        source=BusySource.ADMIN_EVENT,
        label=event.get("summary") or "Unavailable",
    )


class CalendarConnector:
    """HTTP client for the admin calendar"""

    def __init__(
        self,
        config: Optional[LessonbookConfig] = None,
        client: Optional[httpx.Client] = None,
        async_client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Initialize connector.

        Args:
            config: Configuration (defaults to the global one)
            client: Sync HTTP client, injectable for tests
            async_client: Async HTTP client, injectable for tests
        """
        self.config = config or get_config()
        self.client = client
        self.async_client = async_client

    @property
    def configured(self) -> bool:
        return bool(self.config.calendar_access_token)

    def _get_headers(self) -> Dict[str, str]:
        return {
            "Accept": "application/json",
            "Authorization": f"Bearer {self.config.calendar_access_token}",
        }

    def _get_client(self) -> httpx.Client:
        if self.client is None:
            self.client = httpx.Client(timeout=self.config.calendar_timeout)
        return self.client

    def get_busy_intervals(self, start: datetime, end: datetime, tz: ZoneInfo) -> List[BusyInterval]:
        """
        Admin events between start and end as busy intervals

        Returns an empty list when no calendar is configured.

        Raises:
            CalendarUnavailableError: The calendar API failed or timed out
        """
        if not self.configured:
            logger.debug("No calendar access token configured, skipping admin events")
            return []

        url = self.config.get_events_url()
        params = {
            "timeMin": start.isoformat(),
            "timeMax": end.isoformat(),
            "singleEvents": "true",
            "orderBy": "startTime",
        }
        intervals: List[BusyInterval] = []
        client = self._get_client()

        while True:
            try:
                response = client.get(url, params=params, headers=self._get_headers())
                response.raise_for_status()
                data = response.json()
            except httpx.TimeoutException as e:
                logger.warning(f"Calendar request timed out: {e}")
                raise CalendarUnavailableError("Calendar request timed out") from e
            except httpx.HTTPStatusError as e:
                logger.warning(f"Calendar API returned HTTP {e.response.status_code}")
                raise CalendarUnavailableError(
                    f"Calendar API returned HTTP {e.response.status_code}"
                ) from e
            except (httpx.HTTPError, ValueError) as e:
                logger.warning(f"Calendar request failed: {e}")
                raise CalendarUnavailableError(f"Calendar request failed: {e}") from e

            for event in data.get("items", []):
                interval = event_to_interval(event, tz)
                if interval is not None:
                    intervals.append(interval)

            page_token = data.get("nextPageToken")
            if not page_token:
                break
            params["pageToken"] = page_token

        logger.debug(f"Loaded {len(intervals)} admin event(s) between {start} and {end}")
        return intervals

    async def is_calendar_connected(self) -> bool:
        """Check the calendar once; any failure counts as not connected"""
        if not self.configured:
            return False

        if self.async_client is None:
            self.async_client = httpx.AsyncClient(timeout=self.config.calendar_timeout)

        try:
            response = await self.async_client.get(
                self.config.get_calendar_url(), headers=self._get_headers()
            )
        except httpx.HTTPError as e:
            logger.info(f"Calendar not reachable: {e}")
            return False
        return response.status_code == 200

    async def wait_until_connected(self, interval: float = 2.0, timeout: float = 60.0) -> bool:
        """
        Poll is_calendar_connected until it succeeds or timeout elapses

        Args:
            interval: Seconds between checks
            timeout: Give up after this many seconds

        Returns:
            True once connected, False on timeout
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            if await self.is_calendar_connected():
                return True
            if loop.time() + interval > deadline:
                return False
            await asyncio.sleep(interval)

    def close(self) -> None:
        """Close the sync HTTP client"""
        if self.client:
            self.client.close()

    async def aclose(self) -> None:
        """Close the async HTTP client"""
        if self.async_client:
            await self.async_client.aclose()
