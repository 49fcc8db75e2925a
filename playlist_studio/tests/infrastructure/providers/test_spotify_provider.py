from unittest.mock import Mock, patch

import pytest
import spotipy
from requests.exceptions import ConnectionError as RequestsConnectionError

from playlist_studio.crosscutting.config import ConfigError
from playlist_studio.domain.errors import (
    NotFound,
    RateLimited,
    RemoteRejection,
    TemporaryFailure,
    TokenExpired,
)
from playlist_studio.infrastructure.providers.spotify import PAGE_LIMIT, SpotifyCatalog


def _item(track_id, name="Song", artists=("Artist",)):
    return {
        'track': {
            'id': track_id,
            'uri': f'spotify:track:{track_id}',
            'name': name,
            'artists': [{'name': a} for a in artists],
            'duration_ms': 200000,
            'popularity': 50,
            'album': {'id': 'al1', 'name': 'Album'},
        },
        'added_at': '2024-01-01T00:00:00Z',
        'added_by': {'id': 'user1'},
    }


def _spotify_error(status, headers=None):
    return spotipy.SpotifyException(status, -1, f"HTTP {status}", headers=headers)


class TestSpotifyCatalog:
    """Tests for the spotipy-backed catalog adapter."""

    def setup_method(self):
        """Set up test fixtures."""
        self.patcher = patch('playlist_studio.infrastructure.providers.spotify.spotipy.Spotify')
        spotify_cls = self.patcher.start()
        self.client = Mock()
        spotify_cls.return_value = self.client
        self.catalog = SpotifyCatalog(access_token="test_access_token", market="US")

    def teardown_method(self):
        """Stop patches."""
        self.patcher.stop()

    def test_first_page_reads_snapshot_and_keeps_positions(self):
        """Test that unavailable items are skipped but still occupy their position."""
        self.client.playlist.return_value = {'snapshot_id': 's1'}
        self.client.playlist_items.return_value = {
            'items': [_item('a'), {'track': None}, _item('c')],
            'offset': 0,
            'total': 3,
            'next': 'https://api.spotify.com/v1/playlists/pl1/tracks?offset=100',
        }

        page = self.catalog.get_tracks_page('pl1')

        assert page.snapshot_id == 's1'
        assert page.total == 3
        assert [(t.uri, t.position) for t in page.tracks] == [
            ('spotify:track:a', 0),
            ('spotify:track:c', 2),
        ]
        assert page.tracks[0].added_by == 'user1'
        assert page.next_cursor.endswith('offset=100')
        self.client.playlist.assert_called_once_with('pl1', fields='snapshot_id')
        assert self.client.playlist_items.call_args.kwargs['limit'] == PAGE_LIMIT

    def test_local_items_are_reported_as_unavailable(self):
        """Test that id-less rows keep their position and URI on the page."""
        self.client.playlist.return_value = {'snapshot_id': 's1'}
        self.client.playlist_items.return_value = {
            'items': [
                _item('a'),
                {'track': {'id': None, 'uri': 'spotify:local:Artist:Album:Song:180', 'name': 'Song'}},
                {'track': None},
            ],
            'offset': 0,
            'total': 3,
            'next': None,
        }

        page = self.catalog.get_tracks_page('pl1')

        assert [t.position for t in page.tracks] == [0]
        assert page.unavailable == ((1, 'spotify:local:Artist:Album:Song:180'), (2, None))

    def test_next_page_follows_cursor(self):
        """Test that later pages follow the next URL and carry no snapshot id."""
        cursor = 'https://api.spotify.com/v1/playlists/pl1/tracks?offset=100'
        self.client.next.return_value = {'items': [_item('z')], 'offset': 100, 'total': 101, 'next': None}

        page = self.catalog.get_tracks_page('pl1', cursor)

        self.client.next.assert_called_once_with({'next': cursor})
        self.client.playlist.assert_not_called()
        assert page.snapshot_id is None
        assert page.tracks[0].position == 100
        assert page.next_cursor is None

    def test_add_tracks_passes_position(self):
        """Test that add forwards URIs and position and returns the snapshot id."""
        self.client.playlist_add_items.return_value = {'snapshot_id': 's2'}

        snapshot_id = self.catalog.add_tracks('pl1', ['spotify:track:a'], position=3)

        assert snapshot_id == 's2'
        self.client.playlist_add_items.assert_called_once_with('pl1', ['spotify:track:a'], position=3)

    def test_remove_tracks_sends_snapshot(self):
        """Test that removal uses the all-occurrences call with the snapshot id."""
        self.client.playlist_remove_all_occurrences_of_items.return_value = {'snapshot_id': 's3'}

        assert self.catalog.remove_tracks('pl1', ['spotify:track:a'], 's2') == 's3'
        self.client.playlist_remove_all_occurrences_of_items.assert_called_once_with(
            'pl1', ['spotify:track:a'], snapshot_id='s2'
        )

    def test_unauthorized_without_refresh_token_is_token_expired(self):
        """Test that a 401 becomes TokenExpired when no refresh is possible."""
        self.client.playlist_replace_items.side_effect = _spotify_error(401)

        with pytest.raises(TokenExpired):
            self.catalog.replace_tracks('pl1', [])

    def test_unauthorized_with_refresh_token_retries_once(self):
        """Test that the refresh uses the stored client config and scopes, then retries."""
        secrets = Mock()
        secrets.get_spotify_client_config.return_value = {
            'client_id': 'id', 'client_secret': 'secret', 'redirect_uri': 'http://localhost/cb',
        }
        secrets.get_spotify_scope_string.return_value = 'playlist-read-private playlist-modify-public'
        catalog = SpotifyCatalog(access_token="old", refresh_token="refresh", secret_manager=secrets)
        self.client.playlist_add_items.side_effect = [_spotify_error(401), {'snapshot_id': 's2'}]

        with patch('playlist_studio.infrastructure.providers.spotify.SpotifyOAuth') as oauth_cls:
            oauth_cls.return_value.refresh_access_token.return_value = {'access_token': 'new'}
            snapshot_id = catalog.add_tracks('pl1', ['spotify:track:a'])

        assert snapshot_id == 's2'
        assert catalog.access_token == 'new'
        oauth_cls.assert_called_once_with(
            client_id='id',
            client_secret='secret',
            redirect_uri='http://localhost/cb',
            scope='playlist-read-private playlist-modify-public',
        )
        oauth_cls.return_value.refresh_access_token.assert_called_once_with('refresh')
        secrets.save_spotify_tokens.assert_called_once_with('new', 'refresh')

    def test_refresh_without_client_config_is_token_expired(self):
        """Test that a 401 stays final when the client credentials are missing."""
        secrets = Mock()
        secrets.get_spotify_client_config.side_effect = ConfigError("SPOTIFY_CLIENT_ID not found in environment")
        catalog = SpotifyCatalog(access_token="old", refresh_token="refresh", secret_manager=secrets)
        self.client.playlist_add_items.side_effect = _spotify_error(401)

        with patch('playlist_studio.infrastructure.providers.spotify.SpotifyOAuth') as oauth_cls:
            with pytest.raises(TokenExpired):
                catalog.add_tracks('pl1', ['spotify:track:a'])

        oauth_cls.assert_not_called()
        secrets.save_spotify_tokens.assert_not_called()

    @pytest.mark.parametrize("status,expected", [
        (403, RemoteRejection),
        (404, NotFound),
        (500, TemporaryFailure),
        (503, TemporaryFailure),
    ])
    def test_status_codes_map_to_domain_errors(self, status, expected):
        """Test HTTP status to domain error mapping."""
        self.client.playlist_add_items.side_effect = _spotify_error(status)

        with pytest.raises(expected):
            self.catalog.add_tracks('pl1', ['spotify:track:a'])

    def test_forbidden_has_permission_message(self):
        """Test the user-facing message for a 403."""
        self.client.playlist_add_items.side_effect = _spotify_error(403)

        with pytest.raises(RemoteRejection) as exc_info:
            self.catalog.add_tracks('pl1', ['spotify:track:a'])

        assert exc_info.value.status == 403
        assert "permission" in str(exc_info.value)

    def test_rate_limit_uses_retry_after(self):
        """Test that Retry-After seconds become milliseconds."""
        self.client.search.side_effect = _spotify_error(429, headers={'Retry-After': '3'})

        with pytest.raises(RateLimited) as exc_info:
            self.catalog.search_tracks('q')

        assert exc_info.value.retry_after_ms == 3000

    def test_network_error_is_temporary(self):
        """Test that transport errors are reported as temporary failures."""
        self.client.playlist.side_effect = RequestsConnectionError("connection reset")

        with pytest.raises(TemporaryFailure):
            self.catalog.get_tracks_page('pl1')

    def test_reorder_conflict_message(self):
        """Test that a rejected reorder explains the likely concurrent edit."""
        self.client.playlist_reorder_items.side_effect = _spotify_error(400)

        with pytest.raises(RemoteRejection) as exc_info:
            self.catalog.reorder_tracks('pl1', 0, 3, 1, 's1')

        assert "modified by another client" in str(exc_info.value)

    def test_search_maps_items_and_clamps_limit(self):
        """Test search result mapping and request parameters."""
        self.client.search.return_value = {'tracks': {'items': [_item('a')['track'], None]}}

        tracks = self.catalog.search_tracks('track:"song"', limit=80)

        assert [t.uri for t in tracks] == ['spotify:track:a']
        assert tracks[0].album.name == 'Album'
        self.client.search.assert_called_once_with(q='track:"song"', type='track', limit=50, market='US')
