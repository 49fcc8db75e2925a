import logging
from typing import Collection, List, Optional, Sequence, Tuple

from playlist_studio.crosscutting.metrics import MetricsCollector
from playlist_studio.domain.entities import PlaylistTrackEntry
from playlist_studio.domain.errors import InvalidRequest, PartialBatchFailure, TokenExpired
from playlist_studio.domain.ports import CatalogService


logger = logging.getLogger(__name__)

MAX_BATCH_SIZE = 100
# URI kinds the catalog accepts on add/replace; local files are not among them
WRITABLE_URI_PREFIXES = ('spotify:track:', 'spotify:episode:')


def read_playlist(catalog: CatalogService, playlist_id: str
                  ) -> Tuple[List[PlaylistTrackEntry], List[Tuple[int, Optional[str]]]]:
    """Read every page in cursor order, returning playable entries and unavailable rows."""
    entries: List[PlaylistTrackEntry] = []
    unavailable: List[Tuple[int, Optional[str]]] = []
    cursor: Optional[str] = None
    while True:
        page = catalog.get_tracks_page(playlist_id, cursor)
        entries.extend(page.tracks)
        unavailable.extend(page.unavailable)
        cursor = page.next_cursor
        if not cursor:
            return entries, unavailable


def fetch_all_entries(catalog: CatalogService, playlist_id: str) -> List[PlaylistTrackEntry]:
    """Read every page in cursor order. Any page error propagates."""
    return read_playlist(catalog, playlist_id)[0]


def filter_entries(entries: Sequence[PlaylistTrackEntry],
                   positions: Collection[int],
                   uris: Collection[str] = ()) -> List[PlaylistTrackEntry]:
    """Keep entries whose position is not targeted and whose URI is not removed wholesale."""
    positions = set(positions)
    uris = set(uris)
    return [e for e in entries if e.position not in positions and e.uri not in uris]


def rebuild_playlist(catalog: CatalogService, playlist_id: str,
                     positions: Collection[int],
                     uris: Collection[str] = (),
                     batch_size: int = MAX_BATCH_SIZE,
                     metrics: Optional[MetricsCollector] = None) -> Optional[str]:
    """Remove tracks by position by rewriting the whole playlist.

    The catalog's delete call removes every occurrence of a URI and ignores
    positions, so position-specific removal reads the full list, filters it
    locally and writes the survivors back.

    Args:
        catalog: Catalog service
        playlist_id: Playlist to rebuild
        positions: Positions to drop
        uris: URIs to drop at every position
        batch_size: URIs per write call (at most 100)
        metrics: Optional collector for batch counts

    Returns:
        Snapshot id of the last successful write

    Raises:
        InvalidRequest: A surviving row (such as a local file) cannot be written back
        PartialBatchFailure: One or more append batches failed after the playlist was cleared
    """
    batch_size = max(1, min(batch_size, MAX_BATCH_SIZE))

    # All reads happen before the first write
    entries, unavailable = read_playlist(catalog, playlist_id)
    positions = set(positions)
    uris = set(uris)
    rows = sorted([(e.position, e.uri) for e in filter_entries(entries, positions, uris)]
                  + [(p, u) for p, u in unavailable if p not in positions and u not in uris],
                  key=lambda row: row[0])
    known_positions = {e.position for e in entries} | {p for p, _ in unavailable}
    missing = sorted(positions - known_positions)
    if missing:
        logger.warning(f"Positions {missing} not present in playlist {playlist_id}")

    unwritable = [p for p, u in rows if not u or not u.startswith(WRITABLE_URI_PREFIXES)]
    if unwritable:
        raise InvalidRequest(
            f"Playlist {playlist_id} has items that cannot be written back at positions "
            f"{unwritable}; remove them first or remove tracks by URI instead."
        )

    kept_uris = [u for _, u in rows]
    logger.info(f"Rebuilding playlist {playlist_id}: {len(entries) + len(unavailable)} -> "
                f"{len(kept_uris)} tracks")

    if len(kept_uris) <= batch_size:
        snapshot_id = catalog.replace_tracks(playlist_id, kept_uris)
        if metrics:
            metrics.record_batch()
        return snapshot_id

    snapshot_id = catalog.replace_tracks(playlist_id, [])
    if metrics:
        metrics.record_batch()

    batches = [kept_uris[i:i + batch_size] for i in range(0, len(kept_uris), batch_size)]
    failed: List[int] = []
    last_error: Optional[Exception] = None
    for number, batch in enumerate(batches, 1):
        try:
            snapshot_id = catalog.add_tracks(playlist_id, batch)
        except TokenExpired:
            raise
        except Exception as e:
            logger.error(f"Rebuild batch {number}/{len(batches)} for playlist {playlist_id} failed: {e}")
            failed.append(number)
            last_error = e
            if metrics:
                metrics.record_failed_batch(number)
            continue
        if metrics:
            metrics.record_batch()

    if failed:
        raise PartialBatchFailure(
            f"Failed to restore {len(failed)} of {len(batches)} batches "
            f"(batch {failed[0]}/{len(batches)})",
            completed=len(batches) - len(failed),
            total=len(batches),
            snapshot_id=snapshot_id,
            failed_batches=failed,
            cause=last_error,
        )
    return snapshot_id
