import logging
from typing import Any, Dict, List, Optional, Sequence

import requests

from playlist_studio.domain.entities import (
    ImportedTrack,
    MatchResult,
    PlaylistPage,
    TrackToRemove,
)
from playlist_studio.domain.errors import (
    InvalidRequest,
    NotFound,
    PartialBatchFailure,
    RateLimited,
    RemoteRejection,
    TemporaryFailure,
    TokenExpired,
)

logger = logging.getLogger(__name__)


class ApiClient:
    """requests-based client for the playlist studio HTTP routes.

    Every 401 response, and any body carrying ``{"error": "token_expired"}``,
    becomes ``TokenExpired`` regardless of which route produced it.
    """

    def __init__(self, base_url: str, access_token: str,
                 session: Optional[requests.Session] = None, timeout: float = 15):
        self.base_url = base_url.rstrip('/')
        self.access_token = access_token
        self.session = session or requests.Session()
        self.timeout = timeout

    def _headers(self) -> Dict[str, str]:
        return {
            'Authorization': f'Bearer {self.access_token}',
            'Content-Type': 'application/json',
        }

    def request(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None,
                params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            response = self.session.request(method, url, json=payload, params=params,
                                            headers=self._headers(), timeout=self.timeout)
        except requests.RequestException as e:
            raise TemporaryFailure(f"Request to {path} failed: {e}") from e

        try:
            data = response.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {'data': data}

        if response.status_code == 401 or data.get('error') == TokenExpired.code:
            raise TokenExpired()
        if not response.ok:
            raise self._error_from_response(response.status_code, data)
        return data

    @staticmethod
    def _error_from_response(status: int, data: Dict[str, Any]) -> Exception:
        message = data.get('error') or data.get('message') or f"HTTP {status}"
        details = data.get('details') or ''
        if data.get('partial'):
            return PartialBatchFailure(
                message,
                completed=data.get('completedBatches', 0),
                total=data.get('totalBatches', 0),
                snapshot_id=data.get('snapshotId'),
                failed_batches=data.get('failedBatches') or [],
            )
        if status == 400 and data.get('validation'):
            return InvalidRequest(message)
        if status == 404:
            return NotFound(message, details)
        if status == 429:
            return RateLimited(retry_after_ms=data.get('retryAfterMs', 1000), message=message)
        if status >= 500:
            return TemporaryFailure(message)
        return RemoteRejection(status, message, details)

    def get_tracks_page(self, playlist_id: str, cursor: Optional[str] = None) -> PlaylistPage:
        params = {'nextCursor': cursor} if cursor else None
        data = self.request('GET', f'/api/playlists/{playlist_id}/tracks', params=params)
        return PlaylistPage.from_json(data)

    def add_tracks(self, playlist_id: str, track_uris: Sequence[str],
                   position: Optional[int] = None) -> Optional[str]:
        payload: Dict[str, Any] = {'trackUris': list(track_uris)}
        if position is not None:
            payload['position'] = position
        data = self.request('POST', f'/api/playlists/{playlist_id}/tracks/add', payload)
        return data.get('snapshotId')

    def remove_tracks(self, playlist_id: str, tracks: Sequence[TrackToRemove]) -> Optional[str]:
        payload = {'tracks': [t.to_json() for t in tracks]}
        data = self.request('DELETE', f'/api/playlists/{playlist_id}/tracks/remove', payload)
        return data.get('snapshotId')

    def reorder(self, playlist_id: str, from_index: int, to_index: int,
                range_length: int = 1, snapshot_id: Optional[str] = None) -> Optional[str]:
        payload: Dict[str, Any] = {
            'fromIndex': from_index,
            'toIndex': to_index,
            'rangeLength': range_length,
        }
        if snapshot_id:
            payload['snapshotId'] = snapshot_id
        data = self.request('PUT', f'/api/playlists/{playlist_id}/reorder', payload)
        return data.get('snapshotId')

    def match_tracks(self, tracks: Sequence[ImportedTrack], limit: int = 5) -> List[MatchResult]:
        payload = {'tracks': [t.to_json() for t in tracks], 'limit': limit}
        data = self.request('POST', '/api/lastfm/match', payload)
        return [MatchResult.from_json(r) for r in data.get('results') or []]
