import logging
import time
import uuid
from typing import Dict, List, Optional, Sequence, Tuple

from playlist_studio.application.reconciler import MutationReconciler, MutationState
from playlist_studio.domain.entities import CatalogTrack, InsertionMarker
from playlist_studio.domain.errors import InvalidRequest, TokenExpired


logger = logging.getLogger(__name__)


def compute_insertion_positions(markers: Sequence[InsertionMarker],
                                track_count: int) -> List[Tuple[InsertionMarker, int]]:
    """Pair each marker with the index to insert at when every marker receives `track_count` tracks.

    Markers are processed in ascending order, so each one is pushed down by the
    tracks already inserted at the markers before it.

    Example:
        Markers at 0 and 2, one track each, insert at 0 and 3.
    """
    result = []
    cumulative = 0
    for marker in sorted(markers, key=lambda m: m.index):
        result.append((marker, marker.index + cumulative))
        cumulative += track_count
    return result


class InsertionMarkerStore:
    """Insertion markers per playlist, kept sorted with at most one marker per index."""

    def __init__(self):
        self._markers: Dict[str, List[InsertionMarker]] = {}

    def get_markers(self, playlist_id: str) -> List[InsertionMarker]:
        return list(self._markers.get(playlist_id, []))

    def has_markers(self, playlist_id: str) -> bool:
        return bool(self._markers.get(playlist_id))

    def playlists_with_markers(self) -> List[str]:
        return [pid for pid, markers in self._markers.items() if markers]

    def add_marker(self, playlist_id: str, index: int) -> InsertionMarker:
        if isinstance(index, bool) or not isinstance(index, int) or index < 0:
            raise InvalidRequest("Marker index must be a non-negative integer.")
        markers = self._markers.setdefault(playlist_id, [])
        for marker in markers:
            if marker.index == index:
                return marker
        marker = InsertionMarker(marker_id=uuid.uuid4().hex[:8], index=index, created_at=time.time())
        markers.append(marker)
        markers.sort(key=lambda m: m.index)
        return marker

    def remove_marker(self, playlist_id: str, marker_id: str) -> None:
        markers = self._markers.get(playlist_id, [])
        self._markers[playlist_id] = [m for m in markers if m.marker_id != marker_id]

    def toggle_marker(self, playlist_id: str, index: int) -> Optional[InsertionMarker]:
        """Remove the marker at `index` if present, otherwise add one."""
        for marker in self._markers.get(playlist_id, []):
            if marker.index == index:
                self.remove_marker(playlist_id, marker.marker_id)
                return None
        return self.add_marker(playlist_id, index)

    def clear(self, playlist_id: str) -> None:
        self._markers.pop(playlist_id, None)

    def clear_all(self) -> None:
        self._markers.clear()

    def shift_markers(self, playlist_id: str, inserted_per_marker: Sequence[int]) -> None:
        """Move each marker below the tracks inserted at it and at every marker before it."""
        markers = self._markers.get(playlist_id, [])
        shifted = []
        cumulative = 0
        for i, marker in enumerate(markers):
            if i < len(inserted_per_marker):
                cumulative += inserted_per_marker[i]
            shifted.append(InsertionMarker(marker.marker_id, marker.index + cumulative, marker.created_at))
        self._markers[playlist_id] = shifted

    def shift_after_multi_insert(self, playlist_id: str, inserted_count: int) -> None:
        """Marker i moves down by (i + 1) * inserted_count."""
        count = len(self._markers.get(playlist_id, []))
        self.shift_markers(playlist_id, [inserted_count] * count)


async def add_to_markers(reconciler: MutationReconciler, marker_store: InsertionMarkerStore,
                         tracks: Sequence[CatalogTrack],
                         source_playlist_id: Optional[str] = None) -> Dict[str, Dict[str, int]]:
    """Insert `tracks` at every marker of every playlist that has markers.

    The playlist the tracks were dragged from is skipped. Inserts go through the
    reconciler one marker at a time so each gets its own optimistic write.

    Returns:
        Per playlist: {"succeeded": markers filled, "failed": markers that failed}
    """
    outcome: Dict[str, Dict[str, int]] = {}
    if not tracks:
        return outcome
    for playlist_id in marker_store.playlists_with_markers():
        if playlist_id == source_playlist_id:
            continue
        markers = marker_store.get_markers(playlist_id)
        inserted: List[int] = []
        counts = {"succeeded": 0, "failed": 0}
        cumulative = 0
        for marker in markers:
            try:
                mutation = await reconciler.add_tracks(playlist_id, tracks, position=marker.index + cumulative)
            except TokenExpired:
                marker_store.shift_markers(playlist_id, inserted)
                raise
            if mutation.state == MutationState.CONFIRMED:
                cumulative += len(tracks)
                inserted.append(len(tracks))
                counts["succeeded"] += 1
            else:
                inserted.append(0)
                counts["failed"] += 1
        marker_store.shift_markers(playlist_id, inserted)
        outcome[playlist_id] = counts
        logger.info(f"Inserted {len(tracks)} track(s) at {counts['succeeded']}/{len(markers)} markers "
                    f"in playlist {playlist_id}")
    return outcome
