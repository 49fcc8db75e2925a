from unittest.mock import Mock

import pytest
import requests

from playlist_studio.domain.entities import ImportedTrack, TrackToRemove
from playlist_studio.domain.errors import (
    InvalidRequest,
    NotFound,
    PartialBatchFailure,
    RateLimited,
    RemoteRejection,
    TemporaryFailure,
    TokenExpired,
)
from playlist_studio.infrastructure.api_client import ApiClient


def _response(data, status=200):
    response = Mock()
    response.status_code = status
    response.ok = status < 400
    response.json.return_value = data
    return response


class TestApiClient:
    """Tests for the HTTP client of the studio routes."""

    def setup_method(self):
        """Set up test fixtures."""
        self.session = Mock()
        self.client = ApiClient("http://studio.test/", "token123", session=self.session)

    def _call(self):
        return self.session.request.call_args

    def test_get_tracks_page_sends_cursor_and_bearer(self):
        """Test the tracks route, its cursor parameter and auth header."""
        self.session.request.return_value = _response({
            'tracks': [{'id': 'a', 'uri': 'spotify:track:a', 'position': 0}],
            'snapshotId': 's1', 'total': 1, 'nextCursor': None,
        })

        page = self.client.get_tracks_page('pl1', 'cursor-2')

        call = self._call()
        assert call.args == ('GET', 'http://studio.test/api/playlists/pl1/tracks')
        assert call.kwargs['params'] == {'nextCursor': 'cursor-2'}
        assert call.kwargs['headers']['Authorization'] == 'Bearer token123'
        assert page.snapshot_id == 's1'
        assert page.tracks[0].uri == 'spotify:track:a'

    def test_mutation_payloads(self):
        """Test request bodies for add, remove and reorder."""
        self.session.request.return_value = _response({'snapshotId': 's2'})

        assert self.client.add_tracks('pl1', ['spotify:track:a'], 0) == 's2'
        assert self._call().kwargs['json'] == {'trackUris': ['spotify:track:a'], 'position': 0}

        self.client.remove_tracks('pl1', [TrackToRemove('spotify:track:a', (1,))])
        assert self._call().args[0] == 'DELETE'
        assert self._call().kwargs['json'] == {'tracks': [{'uri': 'spotify:track:a', 'positions': [1]}]}

        self.client.reorder('pl1', 3, 0, 2, 's1')
        assert self._call().args[0] == 'PUT'
        assert self._call().kwargs['json'] == {
            'fromIndex': 3, 'toIndex': 0, 'rangeLength': 2, 'snapshotId': 's1',
        }

    def test_match_tracks_parses_results(self):
        """Test the match route round trip."""
        self.session.request.return_value = _response({'results': [{
            'imported': {'artistName': 'Queen', 'trackName': 'Bohemian Rhapsody'},
            'confidence': 'high',
            'score': 97,
            'spotifyTrack': {'id': 'q', 'uri': 'spotify:track:q', 'name': 'Bohemian Rhapsody',
                             'artists': ['Queen']},
        }]})

        results = self.client.match_tracks([ImportedTrack('Queen', 'Bohemian Rhapsody')], limit=3)

        assert self._call().kwargs['json']['limit'] == 3
        assert results[0].track.uri == 'spotify:track:q'
        assert results[0].score == 97

    @pytest.mark.parametrize("status,body", [
        (401, {'error': 'token_expired'}),
        (401, {}),
        (500, {'error': 'token_expired'}),
    ])
    def test_token_expired_from_any_route(self, status, body):
        """Test that 401s and token_expired bodies become TokenExpired."""
        self.session.request.return_value = _response(body, status)

        with pytest.raises(TokenExpired):
            self.client.reorder('pl1', 0, 2)

    @pytest.mark.parametrize("status,body,expected", [
        (400, {'error': 'bad', 'validation': True}, InvalidRequest),
        (400, {'error': 'bad'}, RemoteRejection),
        (403, {'error': 'forbidden'}, RemoteRejection),
        (404, {'error': 'Playlist not found.'}, NotFound),
        (429, {'error': 'slow down', 'retryAfterMs': 2000}, RateLimited),
        (502, {'error': 'Upstream service unavailable'}, TemporaryFailure),
    ])
    def test_error_mapping(self, status, body, expected):
        """Test status and body to domain error mapping."""
        self.session.request.return_value = _response(body, status)

        with pytest.raises(expected):
            self.client.add_tracks('pl1', ['spotify:track:a'])

    def test_partial_failure_body(self):
        """Test that partial-failure details survive the round trip."""
        self.session.request.return_value = _response({
            'error': 'Failed to update playlist (batch 2/3)', 'partial': True, 'snapshotId': 's5',
            'completedBatches': 1, 'totalBatches': 3, 'failedBatches': [2],
        }, 502)

        with pytest.raises(PartialBatchFailure) as exc_info:
            self.client.add_tracks('pl1', ['spotify:track:a'])

        error = exc_info.value
        assert (error.completed, error.total, error.snapshot_id, error.failed_batches) == (1, 3, 's5', [2])

    def test_transport_error_is_temporary(self):
        """Test that connection failures are temporary."""
        self.session.request.side_effect = requests.ConnectionError("refused")

        with pytest.raises(TemporaryFailure):
            self.client.get_tracks_page('pl1')

    def test_non_json_body(self):
        """Test that an empty body on success yields no snapshot id."""
        response = _response(None)
        response.json.side_effect = ValueError("no json")
        self.session.request.return_value = response

        assert self.client.add_tracks('pl1', ['spotify:track:a']) is None
