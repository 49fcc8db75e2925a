import os
import uuid
import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from flask import Flask, Response, g, jsonify, request
from werkzeug.exceptions import HTTPException

from playlist_studio.application.editor import PlaylistEditor
from playlist_studio.application.matching import TrackMatcher
from playlist_studio.crosscutting.config import StudioSettings
from playlist_studio.crosscutting.logging import request_id_var
from playlist_studio.crosscutting.metrics import MetricsCollector
from playlist_studio.domain.entities import ImportedTrack, TrackToRemove
from playlist_studio.domain.errors import (
    InvalidRequest,
    PartialBatchFailure,
    RateLimited,
    RemoteRejection,
    TemporaryFailure,
    TokenExpired,
)
from playlist_studio.domain.ports import CatalogService
from playlist_studio.infrastructure.providers.lastfm import LastfmImporter
from playlist_studio.infrastructure.providers.spotify import SpotifyCatalog

MAX_MATCH_TRACKS = 20
LASTFM_SOURCES = ('recent', 'loved', 'top', 'weekly')

CatalogFactory = Callable[[str], CatalogService]


def _int_arg(value: Any, name: str, default: Optional[int] = None) -> Optional[int]:
    if value is None or value == '':
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        raise InvalidRequest(f"{name} must be an integer.")


def _parse_removals(body: Dict[str, Any]) -> List[TrackToRemove]:
    """Accept ``{"tracks": [{"uri", "positions"?}]}`` or the legacy ``{"trackUris": [...]}``."""
    if 'tracks' in body:
        tracks = body.get('tracks')
        if not isinstance(tracks, list):
            raise InvalidRequest("tracks must be an array.")
        parsed = []
        for item in tracks:
            if not isinstance(item, dict):
                raise InvalidRequest("Each track must be an object with a uri.")
            positions = item.get('positions')
            if positions is not None and not isinstance(positions, list):
                raise InvalidRequest("positions must be an array of integers.")
            parsed.append(TrackToRemove(uri=item.get('uri'), positions=tuple(positions) if positions else None))
        return parsed
    uris = body.get('trackUris')
    if not isinstance(uris, list):
        raise InvalidRequest("trackUris must be an array.")
    return [TrackToRemove(uri=u) for u in uris]


class HTTPServer:
    """HTTP interface for playlist studio: track listing, edits and Last.fm matching.

    Requests authenticate with the caller's Spotify bearer token; the server
    keeps no session state. An expired token always answers
    ``401 {"error": "token_expired"}``.
    """

    def __init__(self, host: str = '127.0.0.1', port: int = 8080, debug: bool = False,
                 catalog_factory: Optional[CatalogFactory] = None,
                 lastfm: Optional[LastfmImporter] = None,
                 metrics: Optional[MetricsCollector] = None,
                 settings: Optional[StudioSettings] = None):
        self.host = host
        self.port = port
        self.debug = debug
        self.settings = settings or StudioSettings.from_env()
        self.metrics = metrics or MetricsCollector()
        self.catalog_factory = catalog_factory or self._default_catalog
        self.lastfm = lastfm
        if self.lastfm is None and self.settings.lastfm_available:
            self.lastfm = LastfmImporter(self.settings.lastfm_api_key,
                                         user_agent=self.settings.lastfm_user_agent,
                                         timeout=self.settings.request_timeout)

        self.app = Flask(__name__)
        self.logger = logging.getLogger(__name__)

        self.version = "0.1.0"
        self.commit = os.getenv('GIT_COMMIT', 'unknown')

        self._setup_hooks()
        self._setup_routes()

    def _default_catalog(self, token: str) -> CatalogService:
        return SpotifyCatalog(token, market=self.settings.market,
                              requests_timeout=self.settings.request_timeout)

    def _setup_hooks(self) -> None:
        @self.app.before_request
        def bind_request_id():
            g.request_id_token = request_id_var.set(request.headers.get('X-Request-Id') or uuid.uuid4().hex[:12])

        @self.app.teardown_request
        def unbind_request_id(_exc):
            token = g.pop('request_id_token', None)
            if token is not None:
                request_id_var.reset(token)

        self.app.register_error_handler(Exception, self._error_response)

    def _error_response(self, error: Exception) -> Tuple[Response, int]:
        """Map domain errors onto JSON responses."""
        if isinstance(error, HTTPException):
            return jsonify({'error': error.description}), error.code
        if isinstance(error, TokenExpired):
            return jsonify({'error': TokenExpired.code}), 401
        if isinstance(error, InvalidRequest):
            return jsonify({'error': str(error), 'validation': True}), 400
        if isinstance(error, PartialBatchFailure):
            cause = error.cause
            status = cause.status if isinstance(cause, RemoteRejection) else 502
            base = str(cause) if isinstance(cause, RemoteRejection) else 'Failed to update playlist'
            batch = error.failed_batches[0] if error.failed_batches else error.completed + 1
            self.logger.error(f"Partial batch failure: {error}")
            return jsonify({
                'error': f"{base} (batch {batch}/{error.total})",
                'partial': True,
                'snapshotId': error.snapshot_id,
                'completedBatches': error.completed,
                'totalBatches': error.total,
                'failedBatches': error.failed_batches,
            }), status
        if isinstance(error, RateLimited):
            return jsonify({'error': str(error), 'retryAfterMs': error.retry_after_ms}), 429
        if isinstance(error, RemoteRejection):
            return jsonify({'error': str(error), 'details': error.details}), error.status
        if isinstance(error, TemporaryFailure):
            self.logger.warning(f"Upstream failure: {error}")
            return jsonify({'error': 'Upstream service unavailable', 'details': str(error)}), 502
        self.logger.exception("Unhandled error")
        return jsonify({'error': 'Internal server error'}), 500

    @staticmethod
    def _bearer_token() -> str:
        header = request.headers.get('Authorization', '')
        if not header.lower().startswith('bearer ') or not header[7:].strip():
            raise TokenExpired("Missing bearer token")
        return header[7:].strip()

    def _editor(self) -> PlaylistEditor:
        catalog = self.catalog_factory(self._bearer_token())
        return PlaylistEditor(catalog, batch_size=self.settings.write_batch_size, metrics=self.metrics)

    @staticmethod
    def _body() -> Dict[str, Any]:
        body = request.get_json(silent=True)
        if not isinstance(body, dict):
            raise InvalidRequest("Request body must be a JSON object.")
        return body

    def _setup_routes(self) -> None:
        """Setup Flask routes."""

        @self.app.route('/health', methods=['GET'])
        def health_check():
            return jsonify({
                'status': 'healthy',
                'version': self.version,
                'commit': self.commit,
                'lastfm': self.lastfm is not None,
                'timestamp': datetime.now().isoformat(),
            }), 200

        @self.app.route('/', methods=['GET'])
        def root():
            return jsonify({
                'service': 'Playlist Studio HTTP Interface',
                'version': self.version,
                'endpoints': {
                    'health': '/health',
                    'tracks': '/api/playlists/<id>/tracks',
                    'add': '/api/playlists/<id>/tracks/add',
                    'remove': '/api/playlists/<id>/tracks/remove',
                    'reorder': '/api/playlists/<id>/reorder',
                    'match': '/api/lastfm/match',
                    'import': '/api/lastfm/<recent|loved|top|weekly>',
                    'stats': '/api/stats/edits',
                },
            }), 200

        @self.app.route('/api/playlists/<playlist_id>/tracks', methods=['GET'])
        def get_tracks(playlist_id: str):
            page = self._editor().get_tracks_page(playlist_id, request.args.get('nextCursor') or None)
            return jsonify(page.to_json()), 200

        @self.app.route('/api/playlists/<playlist_id>/tracks/add', methods=['POST'])
        def add_tracks(playlist_id: str):
            editor = self._editor()
            body = self._body()
            uris = body.get('trackUris')
            if not isinstance(uris, list):
                raise InvalidRequest("trackUris must be an array.")
            snapshot_id = editor.add_tracks(playlist_id, uris, body.get('position'))
            return jsonify({'snapshotId': snapshot_id}), 200

        @self.app.route('/api/playlists/<playlist_id>/tracks/remove', methods=['DELETE'])
        def remove_tracks(playlist_id: str):
            editor = self._editor()
            tracks = _parse_removals(self._body())
            snapshot_id = editor.remove_tracks(playlist_id, tracks)
            return jsonify({'snapshotId': snapshot_id}), 200

        @self.app.route('/api/playlists/<playlist_id>/reorder', methods=['PUT'])
        def reorder_tracks(playlist_id: str):
            editor = self._editor()
            body = self._body()
            snapshot_id = editor.reorder_tracks(
                playlist_id,
                body.get('fromIndex'),
                body.get('toIndex'),
                body.get('rangeLength', 1),
                body.get('snapshotId') or None,
            )
            return jsonify({'snapshotId': snapshot_id}), 200

        @self.app.route('/api/lastfm/match', methods=['POST'])
        def match_tracks():
            catalog = self.catalog_factory(self._bearer_token())
            body = self._body()
            raw_tracks = body.get('tracks')
            if not isinstance(raw_tracks, list) or not raw_tracks:
                raise InvalidRequest("tracks must be a non-empty array.")
            if len(raw_tracks) > MAX_MATCH_TRACKS:
                raise InvalidRequest(f"At most {MAX_MATCH_TRACKS} tracks can be matched per request.")
            limit = max(1, min(_int_arg(body.get('limit'), 'limit', self.settings.search_limit), 10))
            if not all(isinstance(t, dict) for t in raw_tracks):
                raise InvalidRequest("Each track must be an object with artist and name.")
            tracks = [ImportedTrack.from_json(t) for t in raw_tracks]
            results = TrackMatcher(catalog, search_limit=limit).match_many(tracks, limit)
            return jsonify({
                'results': [r.to_json() for r in results],
                'matched': sum(1 for r in results if r.is_matched),
                'total': len(results),
            }), 200

        @self.app.route('/api/lastfm/<source>', methods=['GET'])
        def lastfm_import(source: str):
            if source not in LASTFM_SOURCES:
                raise InvalidRequest(f"Unknown source '{source}'. Expected one of: {', '.join(LASTFM_SOURCES)}")
            if self.lastfm is None:
                return jsonify({'error': 'Last.fm import is not enabled'}), 503
            args = request.args
            response = self.lastfm.fetch(
                source,
                args.get('user', ''),
                page=max(1, _int_arg(args.get('page'), 'page', 1)),
                limit=max(1, min(_int_arg(args.get('limit'), 'limit', 50), 200)),
                period=args.get('period', 'overall'),
                from_ts=_int_arg(args.get('from'), 'from'),
                to_ts=_int_arg(args.get('to'), 'to'),
            )
            return jsonify(response.to_json()), 200

        @self.app.route('/api/stats/edits', methods=['GET'])
        def edit_stats():
            return jsonify(self.metrics.summary()), 200

    def run(self) -> None:
        """Run the HTTP server."""
        self.logger.info(f"Starting Playlist Studio HTTP server on {self.host}:{self.port}")
        self.app.run(host=self.host, port=self.port, debug=self.debug)


def create_app(**kwargs) -> Flask:
    """Create the Flask app (used by tests and WSGI servers)."""
    return HTTPServer(**kwargs).app
