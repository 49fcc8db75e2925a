from __future__ import annotations

from typing import Iterable, List, Optional, Sequence

from .entities import TrackToRemove
from .errors import InvalidRequest
from .normalization import is_valid_track_uri


def validate_playlist_id(playlist_id: object) -> str:
    if not isinstance(playlist_id, str) or not playlist_id.strip():
        raise InvalidRequest("Playlist ID is required.")
    return playlist_id


def validate_track_uris(track_uris: Iterable[object]) -> List[str]:
    uris = list(track_uris or [])
    if not uris:
        raise InvalidRequest("At least one track URI is required.")
    invalid = [u for u in uris if not is_valid_track_uri(u)]
    if invalid:
        raise InvalidRequest(f"Invalid track URIs: {', '.join(map(str, invalid[:5]))}")
    return uris


def validate_position(position: Optional[object]) -> Optional[int]:
    if position is None:
        return None
    if isinstance(position, bool) or not isinstance(position, int) or position < 0:
        raise InvalidRequest("Position must be a non-negative integer.")
    return position


def validate_removals(tracks: Sequence[TrackToRemove]) -> List[TrackToRemove]:
    tracks = list(tracks or [])
    if not tracks:
        raise InvalidRequest("At least one track is required.")
    validate_track_uris(t.uri for t in tracks)
    for track in tracks:
        for position in track.positions or ():
            validate_position(position)
    return tracks


def validate_reorder(from_index: object, to_index: object, range_length: object = 1) -> None:
    """Reject moves the catalog would refuse or misinterpret.

    `to_index` is an insert-before index; one that falls strictly inside the moved
    range has no meaning.
    """
    for name, value in (("fromIndex", from_index), ("toIndex", to_index)):
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            raise InvalidRequest(f"{name} must be a non-negative integer.")
    if isinstance(range_length, bool) or not isinstance(range_length, int) or range_length < 1:
        raise InvalidRequest("rangeLength must be a positive integer.")
    if from_index < to_index < from_index + range_length:
        raise InvalidRequest("Cannot move a range to a position inside itself.")
