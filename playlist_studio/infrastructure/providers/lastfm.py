import time
import logging
from typing import Any, Callable, Dict, List, Optional

import requests

from playlist_studio.domain.entities import ImportedTrack, ImportPagination, ImportResponse
from playlist_studio.domain.errors import (
    InvalidRequest,
    NotFound,
    RateLimited,
    RemoteRejection,
    TemporaryFailure,
)

logger = logging.getLogger(__name__)

LASTFM_API_URL = "https://ws.audioscrobbler.com/2.0/"
DEFAULT_USER_AGENT = "SpotifyPlaylistStudio/1.0"

TOP_PERIODS = ("overall", "7day", "1month", "3month", "6month", "12month")

# Last.fm API error codes
ERROR_INVALID_API_KEY = (10, 26)
ERROR_NOT_FOUND = 6
ERROR_RATE_LIMIT = 29


def _as_list(value: Any) -> List[Dict[str, Any]]:
    # A single result comes back as an object instead of a one-element list
    if value is None:
        return []
    if isinstance(value, dict):
        return [value]
    return list(value)


def _text(value: Any) -> Optional[str]:
    if isinstance(value, dict):
        value = value.get('#text') or value.get('name')
    value = (value or "").strip() if isinstance(value, str) else None
    return value or None


def _int(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class LastfmImporter:
    """Read listening history from the Last.fm API as ImportedTrack pages.

    Requests are spaced at least ``min_interval`` seconds apart, and rate-limit
    responses (HTTP 429 or API error 29) are retried with exponential backoff.
    """

    def __init__(self, api_key: str,
                 user_agent: str = DEFAULT_USER_AGENT,
                 session: Optional[requests.Session] = None,
                 min_interval: float = 0.5,
                 max_retries: int = 3,
                 timeout: float = 15,
                 sleep: Callable[[float], None] = time.sleep,
                 clock: Callable[[], float] = time.monotonic):
        if not api_key:
            raise InvalidRequest("Last.fm API key is required")
        self.api_key = api_key
        self.session = session or requests.Session()
        self.session.headers.update({'User-Agent': user_agent})
        self.min_interval = min_interval
        self.max_retries = max_retries
        self.timeout = timeout
        self._sleep = sleep
        self._clock = clock
        self._last_request_at: Optional[float] = None

    def _throttle(self) -> None:
        if self._last_request_at is not None:
            wait = self.min_interval - (self._clock() - self._last_request_at)
            if wait > 0:
                self._sleep(wait)
        self._last_request_at = self._clock()

    def _request(self, method: str, params: Dict[str, Any]) -> Dict[str, Any]:
        """Call one API method, retrying on rate limits."""
        query = {k: v for k, v in params.items() if v is not None}
        query.update({'method': method, 'api_key': self.api_key, 'format': 'json'})

        for attempt in range(self.max_retries + 1):
            self._throttle()
            try:
                response = self.session.get(LASTFM_API_URL, params=query, timeout=self.timeout)
            except requests.RequestException as e:
                raise TemporaryFailure(f"Last.fm request failed: {e}") from e

            try:
                data = response.json()
            except ValueError:
                data = {}

            rate_limited = response.status_code == 429 or data.get('error') == ERROR_RATE_LIMIT
            if rate_limited:
                backoff_ms = 1000 * 2 ** attempt
                retry_after = _int(response.headers.get('Retry-After'))
                if retry_after is not None:
                    backoff_ms = max(backoff_ms, retry_after * 1000)
                if attempt < self.max_retries:
                    logger.warning(f"Last.fm rate limited {method}, retrying in {backoff_ms}ms")
                    self._sleep(backoff_ms / 1000)
                    continue
                raise RateLimited(retry_after_ms=backoff_ms, message="Last.fm rate limit exceeded")

            if 'error' in data:
                self._raise_api_error(data)
            if not response.ok:
                if response.status_code >= 500:
                    raise TemporaryFailure(f"Last.fm returned {response.status_code}")
                raise RemoteRejection(response.status_code, f"Last.fm returned {response.status_code}")
            return data
        raise RateLimited(retry_after_ms=1000, message="Last.fm rate limit exceeded")

    @staticmethod
    def _raise_api_error(data: Dict[str, Any]) -> None:
        code = data.get('error')
        message = data.get('message') or "Last.fm error"
        if code == ERROR_NOT_FOUND:
            raise NotFound(message=f"Last.fm user not found: {message}")
        if code in ERROR_INVALID_API_KEY:
            raise RemoteRejection(403, "Invalid Last.fm API key", details=message)
        raise RemoteRejection(502, f"Last.fm error {code}: {message}")

    @staticmethod
    def _pagination(attr: Dict[str, Any], page: int, limit: int) -> ImportPagination:
        return ImportPagination(
            page=_int(attr.get('page')) or page,
            per_page=_int(attr.get('perPage')) or limit,
            total_pages=_int(attr.get('totalPages')),
            total_items=_int(attr.get('total')),
        )

    @staticmethod
    def _to_imported(item: Dict[str, Any]) -> Optional[ImportedTrack]:
        artist = _text(item.get('artist'))
        name = _text(item.get('name'))
        if not artist or not name:
            return None
        date = item.get('date') or {}
        return ImportedTrack(
            artist_name=artist,
            track_name=name,
            album_name=_text(item.get('album')),
            mbid=item.get('mbid') or None,
            played_at=_int(date.get('uts')) if isinstance(date, dict) else None,
            playcount=_int(item.get('playcount')),
            source_url=item.get('url') or None,
            now_playing=(item.get('@attr') or {}).get('nowplaying') == 'true',
        )

    def _response(self, container: Dict[str, Any], source: str, page: int, limit: int,
                  skip_now_playing: bool = False) -> ImportResponse:
        tracks = []
        for item in _as_list(container.get('track')):
            track = self._to_imported(item)
            if track is None:
                continue
            if skip_now_playing and track.now_playing:
                continue
            tracks.append(track)
        attr = container.get('@attr') or {}
        return ImportResponse(tracks=tracks, pagination=self._pagination(attr, page, limit),
                              source=source, extra={k: v for k, v in attr.items()
                                                    if k not in ('page', 'perPage', 'totalPages', 'total')})

    def get_recent_tracks(self, user: str, page: int = 1, limit: int = 50,
                          from_ts: Optional[int] = None, to_ts: Optional[int] = None,
                          include_now_playing: bool = False) -> ImportResponse:
        data = self._request('user.getrecenttracks', {
            'user': user, 'page': page, 'limit': limit, 'from': from_ts, 'to': to_ts,
        })
        return self._response(data.get('recenttracks') or {}, 'recent', page, limit,
                              skip_now_playing=not include_now_playing)

    def get_loved_tracks(self, user: str, page: int = 1, limit: int = 50) -> ImportResponse:
        data = self._request('user.getlovedtracks', {'user': user, 'page': page, 'limit': limit})
        return self._response(data.get('lovedtracks') or {}, 'loved', page, limit)

    def get_top_tracks(self, user: str, period: str = 'overall', page: int = 1,
                       limit: int = 50) -> ImportResponse:
        if period not in TOP_PERIODS:
            raise InvalidRequest(f"Invalid period '{period}'. Expected one of: {', '.join(TOP_PERIODS)}")
        data = self._request('user.gettoptracks', {
            'user': user, 'period': period, 'page': page, 'limit': limit,
        })
        return self._response(data.get('toptracks') or {}, 'top', page, limit)

    def get_weekly_chart(self, user: str, from_ts: Optional[int] = None,
                         to_ts: Optional[int] = None) -> ImportResponse:
        data = self._request('user.getweeklytrackchart', {'user': user, 'from': from_ts, 'to': to_ts})
        chart = data.get('weeklytrackchart') or {}
        response = self._response(chart, 'weekly', 1, len(_as_list(chart.get('track'))))
        response.pagination.total_pages = 1
        response.pagination.total_items = len(response.tracks)
        return response

    def fetch(self, source: str, user: str, page: int = 1, limit: int = 50,
              period: str = 'overall', from_ts: Optional[int] = None,
              to_ts: Optional[int] = None) -> ImportResponse:
        """Dispatch by source name: recent, loved, top or weekly."""
        if not user:
            raise InvalidRequest("Last.fm username is required")
        if source == 'recent':
            return self.get_recent_tracks(user, page, limit, from_ts, to_ts)
        if source == 'loved':
            return self.get_loved_tracks(user, page, limit)
        if source == 'top':
            return self.get_top_tracks(user, period, page, limit)
        if source == 'weekly':
            return self.get_weekly_chart(user, from_ts, to_ts)
        raise InvalidRequest(f"Unknown Last.fm source: {source}")
