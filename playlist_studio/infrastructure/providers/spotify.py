import time
import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence

from requests.exceptions import RequestException
from urllib3.exceptions import ReadTimeoutError

import spotipy
from spotipy.oauth2 import SpotifyOAuth

from playlist_studio.crosscutting.config import ConfigError, SecretManager
from playlist_studio.domain.entities import AlbumRef, CatalogTrack, PlaylistPage, PlaylistTrackEntry
from playlist_studio.domain.errors import (
    NotFound,
    RateLimited,
    RemoteRejection,
    TemporaryFailure,
    TokenExpired,
)

logger = logging.getLogger(__name__)

PAGE_LIMIT = 100
PAGE_FIELDS = (
    'items(track(id,uri,name,artists(name),duration_ms,popularity,album(id,name)),'
    'added_at,added_by(id)),next,total,offset'
)

REJECTION_MESSAGES = {
    400: "Invalid request. Check that all track URIs are valid.",
    403: "You don't have permission to modify this playlist.",
    404: "Playlist not found.",
}


class SpotifyCatalog:
    """Spotify Web API implementation of the CatalogService port (via spotipy)."""

    def __init__(self,
                 access_token: str,
                 refresh_token: Optional[str] = None,
                 expires_at: Optional[datetime] = None,
                 market: Optional[str] = None,
                 requests_timeout: float = 15,
                 secret_manager: Optional[SecretManager] = None):
        """Initialize the catalog.

        Args:
            access_token: Spotify access token (the caller's bearer token)
            refresh_token: Spotify refresh token; without it a 401 is final
            expires_at: Token expiration time
            market: Market passed to search and listing calls
            requests_timeout: Per-request timeout in seconds
            secret_manager: Source of the OAuth client config; refreshed tokens are saved here
        """
        self.access_token = access_token
        self.refresh_token = refresh_token
        self.expires_at = expires_at
        self.market = market
        self.requests_timeout = requests_timeout
        self.secret_manager = secret_manager

        self._client = spotipy.Spotify(auth=self.access_token, requests_timeout=requests_timeout)

        # Token refresh tracking
        self._last_refresh_attempt = 0.0
        self._refresh_cooldown = 5  # seconds between refresh attempts

    @property
    def can_refresh(self) -> bool:
        return bool(self.refresh_token and self.secret_manager is not None)

    def _refresh_access_token(self) -> bool:
        """Refresh the Spotify access token.

        Returns:
            True if token was refreshed successfully, False otherwise
        """
        current_time = time.time()
        if current_time - self._last_refresh_attempt < self._refresh_cooldown:
            return False
        self._last_refresh_attempt = current_time

        if not self.can_refresh:
            return False

        try:
            client_config = self.secret_manager.get_spotify_client_config()
        except ConfigError as e:
            logger.error(f"Cannot refresh Spotify token: {e}")
            return False

        try:
            logger.info("Refreshing Spotify access token...")
            oauth_manager = SpotifyOAuth(
                client_id=client_config['client_id'],
                client_secret=client_config['client_secret'],
                redirect_uri=client_config['redirect_uri'],
                scope=self.secret_manager.get_spotify_scope_string(),
            )
            token_info = oauth_manager.refresh_access_token(self.refresh_token)
        except Exception as e:
            logger.error(f"Failed to refresh Spotify token: {e}")
            return False

        if not token_info or 'access_token' not in token_info:
            logger.error("Failed to refresh token: invalid response")
            return False

        self.access_token = token_info['access_token']
        if token_info.get('refresh_token'):
            self.refresh_token = token_info['refresh_token']
        if 'expires_at' in token_info:
            self.expires_at = datetime.fromtimestamp(token_info['expires_at'])
        self._client = spotipy.Spotify(auth=self.access_token, requests_timeout=self.requests_timeout)

        self.secret_manager.save_spotify_tokens(self.access_token, self.refresh_token)
        logger.info("Spotify access token refreshed successfully")
        return True

    def _map_error(self, error: Exception, operation: str) -> Exception:
        """Translate spotipy/transport errors into domain errors."""
        if isinstance(error, spotipy.SpotifyException):
            status = error.http_status
            if status == 401:
                return TokenExpired()
            if status == 429:
                headers = error.headers or {}
                retry_after = int(headers.get('Retry-After', 1) or 1)
                return RateLimited(retry_after_ms=retry_after * 1000)
            if status == 404:
                return NotFound(details=error.msg)
            if status is not None and 400 <= status < 500:
                message = REJECTION_MESSAGES.get(status, f"Spotify rejected {operation} ({status}).")
                return RemoteRejection(status, message, details=error.msg)
            return TemporaryFailure(f"Spotify error during {operation}: {error.msg}")
        if isinstance(error, (ReadTimeoutError, RequestException)):
            return TemporaryFailure(f"Network error during {operation}: {error}")
        return error

    def _call(self, operation: str, fn: Callable[..., Any], *args, **kwargs) -> Any:
        """Run a spotipy call, refreshing the token once on 401."""
        for attempt in range(2):
            try:
                return fn(self._client)(*args, **kwargs)
            except (spotipy.SpotifyException, ReadTimeoutError, RequestException) as e:
                if (attempt == 0 and isinstance(e, spotipy.SpotifyException)
                        and e.http_status == 401 and self._refresh_access_token()):
                    logger.warning(f"Spotify token expired during {operation}, retrying with refreshed token")
                    continue
                mapped = self._map_error(e, operation)
                logger.warning(f"Spotify {operation} failed: {mapped}")
                raise mapped from e
        raise TokenExpired()

    @staticmethod
    def _track_to_catalog(data: Dict[str, Any]) -> Optional[CatalogTrack]:
        if not data or not data.get('id'):
            return None
        album = data.get('album') or None
        return CatalogTrack(
            id=data['id'],
            uri=data.get('uri') or f"spotify:track:{data['id']}",
            name=data.get('name', ''),
            artists=tuple(a.get('name', '') for a in data.get('artists') or [] if a.get('name')),
            album=AlbumRef(id=album.get('id'), name=album.get('name')) if album else None,
            duration_ms=data.get('duration_ms') or 0,
            popularity=data.get('popularity'),
        )

    def _page_to_domain(self, payload: Dict[str, Any], snapshot_id: Optional[str]) -> PlaylistPage:
        offset = payload.get('offset') or 0
        entries = []
        unavailable = []
        for index, item in enumerate(payload.get('items') or []):
            raw_track = item.get('track') or {}
            track = self._track_to_catalog(raw_track)
            if track is None:
                # Unavailable or local item; it still occupies its position
                unavailable.append((offset + index, raw_track.get('uri') or None))
                continue
            entries.append(PlaylistTrackEntry.from_catalog_track(
                track,
                position=offset + index,
                added_at=item.get('added_at'),
                added_by=(item.get('added_by') or {}).get('id'),
            ))
        total = payload.get('total')
        return PlaylistPage(
            tracks=tuple(entries),
            snapshot_id=snapshot_id,
            total=total if isinstance(total, int) else len(entries),
            next_cursor=payload.get('next'),
            unavailable=tuple(unavailable),
        )

    def get_tracks_page(self, playlist_id: str, cursor: Optional[str] = None) -> PlaylistPage:
        """Fetch one page of playlist items.

        Args:
            playlist_id: Playlist ID
            cursor: The previous page's ``next`` URL, or None for the first page

        Returns:
            PlaylistPage; the snapshot id is only read with the first page
        """
        snapshot_id = None
        if cursor:
            payload = self._call('list tracks', lambda c: c.next, {'next': cursor})
        else:
            meta = self._call('read playlist', lambda c: c.playlist, playlist_id, fields='snapshot_id')
            snapshot_id = (meta or {}).get('snapshot_id')
            payload = self._call('list tracks', lambda c: c.playlist_items, playlist_id,
                                 fields=PAGE_FIELDS, limit=PAGE_LIMIT, offset=0,
                                 market=self.market, additional_types=('track',))
        return self._page_to_domain(payload or {}, snapshot_id)

    def replace_tracks(self, playlist_id: str, track_uris: Sequence[str]) -> Optional[str]:
        result = self._call('replace tracks', lambda c: c.playlist_replace_items,
                            playlist_id, list(track_uris))
        return (result or {}).get('snapshot_id')

    def add_tracks(self, playlist_id: str, track_uris: Sequence[str],
                   position: Optional[int] = None) -> Optional[str]:
        result = self._call('add tracks', lambda c: c.playlist_add_items,
                            playlist_id, list(track_uris), position=position)
        return (result or {}).get('snapshot_id')

    def remove_tracks(self, playlist_id: str, track_uris: Sequence[str],
                      snapshot_id: Optional[str] = None) -> Optional[str]:
        result = self._call('remove tracks', lambda c: c.playlist_remove_all_occurrences_of_items,
                            playlist_id, list(track_uris), snapshot_id=snapshot_id)
        return (result or {}).get('snapshot_id')

    def reorder_tracks(self, playlist_id: str, range_start: int, insert_before: int,
                       range_length: int = 1, snapshot_id: Optional[str] = None) -> Optional[str]:
        try:
            result = self._call('reorder tracks', lambda c: c.playlist_reorder_items,
                                playlist_id, range_start=range_start, insert_before=insert_before,
                                range_length=range_length, snapshot_id=snapshot_id)
        except RemoteRejection as e:
            if e.status == 400:
                raise RemoteRejection(
                    400,
                    "Invalid reorder request. The playlist may have been modified by another client.",
                    details=e.details,
                ) from e
            raise
        return (result or {}).get('snapshot_id')

    def search_tracks(self, query: str, limit: int = 5) -> List[CatalogTrack]:
        result = self._call('search', lambda c: c.search, q=query, type='track',
                            limit=max(1, min(limit, 50)), market=self.market)
        items = ((result or {}).get('tracks') or {}).get('items') or []
        tracks = [self._track_to_catalog(item) for item in items]
        return [t for t in tracks if t is not None]
