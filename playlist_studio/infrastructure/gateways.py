"""Async adapters exposing the synchronous editor, matcher and HTTP client
to the client-side cache, reconciler and match cache.

Blocking calls run in worker threads via ``asyncio.to_thread`` so the event
loop stays free while a request is in flight.
"""
import asyncio
from typing import List, Optional, Sequence

from playlist_studio.application.editor import PlaylistEditor
from playlist_studio.application.matching import TrackMatcher
from playlist_studio.domain.entities import ImportedTrack, MatchResult, PlaylistPage, TrackToRemove
from playlist_studio.infrastructure.api_client import ApiClient


class EditorGateway:
    """In-process PlaylistGateway and MatchService backed by the editor and matcher."""

    def __init__(self, editor: PlaylistEditor, matcher: Optional[TrackMatcher] = None):
        self.editor = editor
        self.matcher = matcher or TrackMatcher(editor.catalog)

    async def fetch_page(self, playlist_id: str, cursor: Optional[str] = None) -> PlaylistPage:
        return await asyncio.to_thread(self.editor.get_tracks_page, playlist_id, cursor)

    async def add_tracks(self, playlist_id: str, track_uris: Sequence[str],
                         position: Optional[int] = None) -> Optional[str]:
        return await asyncio.to_thread(self.editor.add_tracks, playlist_id, list(track_uris), position)

    async def remove_tracks(self, playlist_id: str, tracks: Sequence[TrackToRemove]) -> Optional[str]:
        return await asyncio.to_thread(self.editor.remove_tracks, playlist_id, list(tracks))

    async def reorder(self, playlist_id: str, from_index: int, to_index: int,
                      range_length: int = 1, snapshot_id: Optional[str] = None) -> Optional[str]:
        return await asyncio.to_thread(self.editor.reorder_tracks, playlist_id, from_index,
                                       to_index, range_length, snapshot_id)

    async def match_tracks(self, tracks: Sequence[ImportedTrack], limit: int = 5) -> List[MatchResult]:
        return await asyncio.to_thread(self.matcher.match_many, list(tracks), limit)


class HttpGateway:
    """PlaylistGateway and MatchService that talk to a running studio server."""

    def __init__(self, client: ApiClient):
        self.client = client

    async def fetch_page(self, playlist_id: str, cursor: Optional[str] = None) -> PlaylistPage:
        return await asyncio.to_thread(self.client.get_tracks_page, playlist_id, cursor)

    async def add_tracks(self, playlist_id: str, track_uris: Sequence[str],
                         position: Optional[int] = None) -> Optional[str]:
        return await asyncio.to_thread(self.client.add_tracks, playlist_id, list(track_uris), position)

    async def remove_tracks(self, playlist_id: str, tracks: Sequence[TrackToRemove]) -> Optional[str]:
        return await asyncio.to_thread(self.client.remove_tracks, playlist_id, list(tracks))

    async def reorder(self, playlist_id: str, from_index: int, to_index: int,
                      range_length: int = 1, snapshot_id: Optional[str] = None) -> Optional[str]:
        return await asyncio.to_thread(self.client.reorder, playlist_id, from_index,
                                       to_index, range_length, snapshot_id)

    async def match_tracks(self, tracks: Sequence[ImportedTrack], limit: int = 5) -> List[MatchResult]:
        return await asyncio.to_thread(self.client.match_tracks, list(tracks), limit)
