"""
Last.fm API client for weekly listening charts and artwork lookups.
Low-level HTTP client; per-member caching lives in the listening history service.
"""

import asyncio
from typing import Any

import httpx

from app.config import settings
from app.features.group_charts.domain import ChartType, ListeningItem, WeeklyListening, WeekWindow
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

# Request timeouts and retry configuration
REQUEST_TIMEOUT = 20  # seconds
MAX_RETRIES = 3
BACKOFF_FACTOR = 2
RETRY_STATUS_CODES = {429, 500, 502, 503, 504}

WEEKLY_CHART_METHODS = {
    ChartType.ARTISTS: ("user.getWeeklyArtistChart", "weeklyartistchart", "artist"),
    ChartType.TRACKS: ("user.getWeeklyTrackChart", "weeklytrackchart", "track"),
    ChartType.ALBUMS: ("user.getWeeklyAlbumChart", "weeklyalbumchart", "album"),
}

INFO_METHODS = {
    ChartType.ARTISTS: ("artist.getInfo", "artist"),
    ChartType.TRACKS: ("track.getInfo", "track"),
    ChartType.ALBUMS: ("album.getInfo", "album"),
}


class LastfmError(Exception):
    """Custom exception for Last.fm API errors."""

    def __init__(
        self,
        message: str,
        error_code: int | None = None,
        status_code: int | None = None,
        response_data: dict | None = None,
    ):
        super().__init__(message)
        self.error_code = error_code
        self.status_code = status_code
        self.response_data = response_data or {}


def _as_list(value: Any) -> list:
    # Last.fm collapses single-item arrays into a bare object
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


def _artist_name(raw: Any) -> str | None:
    if isinstance(raw, dict):
        return raw.get("#text") or raw.get("name") or None
    if isinstance(raw, str):
        return raw or None
    return None


class LastfmClient:
    """Async Last.fm client with retry and backoff."""

    def __init__(self, api_key: str | None = None, transport: httpx.AsyncBaseTransport | None = None):
        self._api_key = api_key or settings.LASTFM_API_KEY
        self._base_url = settings.LASTFM_API_BASE_URL
        self._client = self._create_client(transport)

    def _create_client(self, transport: httpx.AsyncBaseTransport | None) -> httpx.AsyncClient:
        timeout = httpx.Timeout(REQUEST_TIMEOUT)
        limits = httpx.Limits(max_keepalive_connections=10, max_connections=20)
        return httpx.AsyncClient(timeout=timeout, limits=limits, transport=transport)

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    async def _request_with_retry(self, params: dict[str, str]) -> httpx.Response:
        """Execute a GET with retry and backoff on throttling and transport errors."""
        for attempt in range(1, MAX_RETRIES + 1):
            try:
                response = await self._client.get(self._base_url, params=params)
                if response.status_code in RETRY_STATUS_CODES and attempt < MAX_RETRIES:
                    backoff = BACKOFF_FACTOR * (2 ** (attempt - 1))
                    logger.debug(
                        "Last.fm retrying request",
                        method=params.get("method"),
                        attempt=attempt,
                        status_code=response.status_code,
                        backoff_seconds=backoff,
                    )
                    await asyncio.sleep(backoff)
                    continue
                return response
            except httpx.RequestError as e:
                if attempt >= MAX_RETRIES:
                    raise LastfmError(f"Last.fm request failed: {e}") from e
                backoff = BACKOFF_FACTOR * (2 ** (attempt - 1))
                logger.debug(
                    "Last.fm request error, retrying",
                    method=params.get("method"),
                    attempt=attempt,
                    error=str(e),
                    backoff_seconds=backoff,
                )
                await asyncio.sleep(backoff)
        raise RuntimeError("Last.fm retry loop exhausted")

    def _handle_api_response(self, response: httpx.Response, method: str) -> dict:
        """
        Parse a Last.fm response.

        Last.fm reports failures either through the HTTP status or through an
        `error` field in a 200 body; both raise LastfmError.
        """
        try:
            data = response.json() if response.text else {}
        except ValueError as e:
            logger.error(
                "Last.fm returned non-JSON response",
                method=method,
                status_code=response.status_code,
                response_text=response.text[:200] if response.text else "",
            )
            raise LastfmError(
                f"Last.fm error (HTTP {response.status_code})", status_code=response.status_code
            ) from e

        if isinstance(data, dict) and data.get("error"):
            error_code = data.get("error")
            message = data.get("message") or f"Last.fm error {error_code}"
            logger.warning(
                "Last.fm API call failed",
                method=method,
                status_code=response.status_code,
                error_code=error_code,
                error_message=message,
            )
            raise LastfmError(
                message,
                error_code=int(error_code) if str(error_code).isdigit() else None,
                status_code=response.status_code,
                response_data=data,
            )

        if not response.is_success:
            raise LastfmError(
                f"Last.fm error (HTTP {response.status_code})",
                status_code=response.status_code,
                response_data=data if isinstance(data, dict) else {},
            )

        return data

    async def _call(self, method: str, **params: str) -> dict:
        query = {"method": method, "api_key": self._api_key, "format": "json", **params}
        response = await self._request_with_retry(query)
        return self._handle_api_response(response, method)

    async def get_weekly_chart(
        self, username: str, chart_type: ChartType, week: WeekWindow
    ) -> list[ListeningItem]:
        """
        Fetch one of a user's weekly charts.

        Args:
            username: Last.fm username
            chart_type: artists, tracks or albums
            week: Window whose start/end become the from/to unix timestamps

        Returns:
            List of ListeningItem in provider order
        """
        method, root_key, item_key = WEEKLY_CHART_METHODS[chart_type]
        data = await self._call(
            method,
            user=username,
            **{"from": str(int(week.start.timestamp())), "to": str(int(week.end.timestamp()))},
        )

        items = []
        for raw in _as_list((data.get(root_key) or {}).get(item_key)):
            name = raw.get("name")
            if not name:
                continue
            artist = None if chart_type == ChartType.ARTISTS else _artist_name(raw.get("artist"))
            items.append(
                ListeningItem(name=name, artist=artist, playcount=int(raw.get("playcount") or 0))
            )
        return items

    async def get_weekly_listening(self, username: str, week: WeekWindow) -> WeeklyListening:
        """Fetch all three weekly charts for one user, sequentially to respect rate limits."""
        listening = WeeklyListening()
        listening.artists = await self.get_weekly_chart(username, ChartType.ARTISTS, week)
        listening.tracks = await self.get_weekly_chart(username, ChartType.TRACKS, week)
        listening.albums = await self.get_weekly_chart(username, ChartType.ALBUMS, week)

        logger.debug(
            "Weekly listening fetched",
            username=username,
            week_start=week.start.isoformat(),
            artists=len(listening.artists),
            tracks=len(listening.tracks),
            albums=len(listening.albums),
        )
        return listening

    async def get_image_url(
        self, chart_type: ChartType, name: str, artist: str | None = None
    ) -> str | None:
        """Largest artwork URL Last.fm has for an entry, if any."""
        method, root_key = INFO_METHODS[chart_type]
        params = {"artist": name} if chart_type == ChartType.ARTISTS else {
            "artist": artist or "",
            root_key: name,
        }
        data = await self._call(method, **params)

        info = data.get(root_key) or {}
        images = info.get("image")
        if chart_type == ChartType.TRACKS:
            images = (info.get("album") or {}).get("image")

        for image in reversed(_as_list(images)):
            url = image.get("#text") if isinstance(image, dict) else None
            if url:
                return url
        return None


lastfm_client = LastfmClient()
