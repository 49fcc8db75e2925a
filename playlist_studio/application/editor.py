import logging
from typing import List, Optional, Sequence

from playlist_studio.application.rebuild import MAX_BATCH_SIZE, fetch_all_entries, rebuild_playlist
from playlist_studio.crosscutting.metrics import MetricsCollector
from playlist_studio.domain.entities import PlaylistPage, PlaylistTrackEntry, TrackToRemove
from playlist_studio.domain.errors import PartialBatchFailure, TokenExpired
from playlist_studio.domain.ports import CatalogService
from playlist_studio.domain.validation import (
    validate_playlist_id,
    validate_position,
    validate_removals,
    validate_reorder,
    validate_track_uris,
)


logger = logging.getLogger(__name__)


def _chunks(items: Sequence[str], size: int) -> List[List[str]]:
    return [list(items[i:i + size]) for i in range(0, len(items), size)]


class PlaylistEditor:
    """Validated, batched playlist edits against the catalog service.

    This is the server side of the playlist routes: it splits writes into
    catalog-sized batches and picks the removal strategy. Removal that names
    positions goes through the rebuild fallback because the catalog's delete
    call ignores positions.
    """

    def __init__(self, catalog: CatalogService, batch_size: int = MAX_BATCH_SIZE,
                 metrics: Optional[MetricsCollector] = None):
        self.catalog = catalog
        self.batch_size = max(1, min(batch_size, MAX_BATCH_SIZE))
        self.metrics = metrics or MetricsCollector()

    def get_tracks_page(self, playlist_id: str, cursor: Optional[str] = None) -> PlaylistPage:
        validate_playlist_id(playlist_id)
        return self.catalog.get_tracks_page(playlist_id, cursor)

    def get_all_tracks(self, playlist_id: str) -> List[PlaylistTrackEntry]:
        validate_playlist_id(playlist_id)
        return fetch_all_entries(self.catalog, playlist_id)

    def _run_batches(self, playlist_id: str, batches: List[List[str]], write, label: str) -> Optional[str]:
        snapshot_id = None
        completed = 0
        for number, batch in enumerate(batches, 1):
            try:
                snapshot_id = write(number, batch, snapshot_id)
            except TokenExpired:
                raise
            except Exception as e:
                self.metrics.record_failed_batch(number)
                if completed == 0:
                    raise
                logger.error(f"{label} batch {number}/{len(batches)} for playlist {playlist_id} failed: {e}")
                raise PartialBatchFailure(
                    f"{label} failed at batch {number}/{len(batches)}",
                    completed=completed,
                    total=len(batches),
                    snapshot_id=snapshot_id,
                    failed_batches=[number],
                    cause=e,
                ) from e
            completed += 1
            self.metrics.record_batch()
        return snapshot_id

    def add_tracks(self, playlist_id: str, track_uris: Sequence[str],
                   position: Optional[int] = None) -> Optional[str]:
        """Insert tracks before `position`, or append when it is None.

        Args:
            playlist_id: Target playlist
            track_uris: ``spotify:track:`` URIs in insertion order
            position: Zero-based insert-before index

        Returns:
            Snapshot id after the last batch

        Raises:
            InvalidRequest: Bad playlist id, URIs or position
            PartialBatchFailure: A batch after the first one failed
        """
        validate_playlist_id(playlist_id)
        uris = validate_track_uris(track_uris)
        position = validate_position(position)
        batches = _chunks(uris, self.batch_size)

        def write(number, batch, _snapshot):
            batch_position = None if position is None else position + (number - 1) * self.batch_size
            return self.catalog.add_tracks(playlist_id, batch, batch_position)

        with self.metrics.edit_context('add', playlist_id, len(uris)):
            snapshot_id = self._run_batches(playlist_id, batches, write, "Add")
        logger.info(f"Added {len(uris)} tracks to playlist {playlist_id} in {len(batches)} batch(es)")
        return snapshot_id

    def remove_tracks(self, playlist_id: str, tracks: Sequence[TrackToRemove]) -> Optional[str]:
        """Remove tracks, choosing direct deletion or the rebuild fallback.

        Entries with positions remove only those occurrences; entries without
        positions remove every occurrence of the URI.
        """
        validate_playlist_id(playlist_id)
        tracks = validate_removals(tracks)

        if any(t.is_positional for t in tracks):
            positions = {p for t in tracks for p in (t.positions or ())}
            whole_uris = {t.uri for t in tracks if not t.is_positional}
            with self.metrics.edit_context('rebuild', playlist_id, len(positions) + len(whole_uris)):
                return rebuild_playlist(self.catalog, playlist_id, positions, whole_uris,
                                        batch_size=self.batch_size, metrics=self.metrics)

        # Duplicate URIs are redundant: deletion already removes every occurrence
        uris = list(dict.fromkeys(t.uri for t in tracks))
        batches = _chunks(uris, self.batch_size)

        def write(_number, batch, snapshot_id):
            return self.catalog.remove_tracks(playlist_id, batch, snapshot_id)

        with self.metrics.edit_context('remove', playlist_id, len(uris)):
            snapshot_id = self._run_batches(playlist_id, batches, write, "Remove")
        logger.info(f"Removed {len(uris)} tracks from playlist {playlist_id}")
        return snapshot_id

    def reorder_tracks(self, playlist_id: str, range_start: int, insert_before: int,
                       range_length: int = 1, snapshot_id: Optional[str] = None) -> Optional[str]:
        validate_playlist_id(playlist_id)
        validate_reorder(range_start, insert_before, range_length)
        with self.metrics.edit_context('reorder', playlist_id, range_length):
            new_snapshot = self.catalog.reorder_tracks(
                playlist_id, range_start, insert_before, range_length, snapshot_id
            )
            self.metrics.record_batch()
        return new_snapshot
