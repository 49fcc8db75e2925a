from __future__ import annotations

from typing import List, Optional, Protocol, Sequence

from .entities import CatalogTrack, ImportedTrack, MatchResult, PlaylistPage, TrackToRemove


class CatalogService(Protocol):
    """Port for the remote music catalog (the authoritative playlist store).

    Implementations map provider-specific payloads and errors into domain entities
    and domain exceptions. Every write returns the new snapshot id.
    """

    def get_tracks_page(self, playlist_id: str, cursor: Optional[str] = None) -> PlaylistPage:
        """Return one page of the playlist; `cursor` is the previous page's next_cursor."""

    def replace_tracks(self, playlist_id: str, track_uris: Sequence[str]) -> Optional[str]:
        """Replace the whole playlist with up to 100 URIs; an empty list clears it."""

    def add_tracks(self, playlist_id: str, track_uris: Sequence[str],
                   position: Optional[int] = None) -> Optional[str]:
        """Insert up to 100 URIs before `position` (append when None)."""

    def remove_tracks(self, playlist_id: str, track_uris: Sequence[str],
                      snapshot_id: Optional[str] = None) -> Optional[str]:
        """Remove every occurrence of up to 100 URIs."""

    def reorder_tracks(self, playlist_id: str, range_start: int, insert_before: int,
                       range_length: int = 1, snapshot_id: Optional[str] = None) -> Optional[str]:
        """Move `range_length` tracks starting at `range_start` before `insert_before`."""

    def search_tracks(self, query: str, limit: int = 5) -> List[CatalogTrack]:
        """Return ranked catalog candidates for a search query."""


class PlaylistGateway(Protocol):
    """Async client-side view of the playlist read/write routes."""

    async def fetch_page(self, playlist_id: str, cursor: Optional[str] = None) -> PlaylistPage:
        ...

    async def add_tracks(self, playlist_id: str, track_uris: Sequence[str],
                         position: Optional[int] = None) -> Optional[str]:
        ...

    async def remove_tracks(self, playlist_id: str,
                            tracks: Sequence[TrackToRemove]) -> Optional[str]:
        ...

    async def reorder(self, playlist_id: str, from_index: int, to_index: int,
                      range_length: int = 1, snapshot_id: Optional[str] = None) -> Optional[str]:
        ...


class MatchService(Protocol):
    """Async batch matcher used by the client-side match cache."""

    async def match_tracks(self, tracks: Sequence[ImportedTrack], limit: int = 5) -> List[MatchResult]:
        ...
