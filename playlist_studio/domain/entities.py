from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


@dataclass(frozen=True)
class ImportedTrack:
    """Track descriptor coming from an external listening-history source."""

    artist_name: str
    track_name: str
    album_name: Optional[str] = None
    mbid: Optional[str] = None
    played_at: Optional[int] = None
    playcount: Optional[int] = None
    source_url: Optional[str] = None
    now_playing: bool = False

    def to_json(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "artistName": self.artist_name,
            "trackName": self.track_name,
        }
        optionals = {
            "albumName": self.album_name,
            "mbid": self.mbid,
            "playedAt": self.played_at,
            "playcount": self.playcount,
            "sourceUrl": self.source_url,
        }
        data.update({k: v for k, v in optionals.items() if v is not None})
        if self.now_playing:
            data["nowPlaying"] = True
        return data

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "ImportedTrack":
        return cls(
            artist_name=str(data.get("artistName") or ""),
            track_name=str(data.get("trackName") or ""),
            album_name=data.get("albumName") or None,
            mbid=data.get("mbid") or None,
            played_at=data.get("playedAt"),
            playcount=data.get("playcount"),
            source_url=data.get("sourceUrl") or None,
            now_playing=bool(data.get("nowPlaying", False)),
        )


@dataclass(frozen=True)
class AlbumRef:
    id: Optional[str] = None
    name: Optional[str] = None


@dataclass(frozen=True)
class CatalogTrack:
    """Canonical track as known to the catalog service."""

    id: str
    uri: str
    name: str
    artists: Tuple[str, ...] = ()
    album: Optional[AlbumRef] = None
    duration_ms: int = 0
    popularity: Optional[int] = None

    def __post_init__(self):
        # Accept lists from callers but keep the entity hashable
        if not isinstance(self.artists, tuple):
            object.__setattr__(self, 'artists', tuple(self.artists or ()))

    def to_json(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.id,
            "uri": self.uri,
            "name": self.name,
            "artists": list(self.artists),
            "durationMs": self.duration_ms,
        }
        if self.album is not None:
            data["album"] = {"id": self.album.id, "name": self.album.name}
        if self.popularity is not None:
            data["popularity"] = self.popularity
        return data

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "CatalogTrack":
        album = data.get("album")
        return cls(
            id=str(data.get("id") or ""),
            uri=str(data.get("uri") or ""),
            name=str(data.get("name") or ""),
            artists=tuple(data.get("artists") or ()),
            album=AlbumRef(id=album.get("id"), name=album.get("name")) if album else None,
            duration_ms=int(data.get("durationMs") or 0),
            popularity=data.get("popularity"),
        )


class MatchConfidence(str, Enum):
    """Confidence tier of a match; thresholds live in application.matching."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    NONE = "none"


@dataclass(frozen=True)
class MatchResult:
    """Best catalog match for one imported track plus ranked alternatives."""

    imported: ImportedTrack
    track: Optional[CatalogTrack] = None
    confidence: MatchConfidence = MatchConfidence.NONE
    score: int = 0
    candidates: Tuple[CatalogTrack, ...] = ()

    @property
    def is_matched(self) -> bool:
        return self.track is not None

    def to_json(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "imported": self.imported.to_json(),
            "confidence": self.confidence.value,
            "score": self.score,
        }
        if self.track is not None:
            data["spotifyTrack"] = self.track.to_json()
            data["candidates"] = [c.to_json() for c in self.candidates]
        return data

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "MatchResult":
        track = data.get("spotifyTrack")
        return cls(
            imported=ImportedTrack.from_json(data.get("imported") or {}),
            track=CatalogTrack.from_json(track) if track else None,
            confidence=MatchConfidence(data.get("confidence", "none")),
            score=int(data.get("score") or 0),
            candidates=tuple(CatalogTrack.from_json(c) for c in data.get("candidates") or ()),
        )


@dataclass(frozen=True)
class PlaylistTrackEntry:
    """One row of a playlist. `position` is the authoritative ordering key."""

    id: Optional[str]
    uri: str
    name: str = ""
    artists: Tuple[str, ...] = ()
    album: Optional[AlbumRef] = None
    duration_ms: int = 0
    popularity: Optional[int] = None
    position: int = 0
    added_at: Optional[str] = None
    added_by: Optional[str] = None

    def __post_init__(self):
        if not isinstance(self.artists, tuple):
            object.__setattr__(self, 'artists', tuple(self.artists or ()))

    @classmethod
    def from_catalog_track(cls, track: CatalogTrack, position: int = 0,
                           added_at: Optional[str] = None,
                           added_by: Optional[str] = None) -> "PlaylistTrackEntry":
        return cls(
            id=track.id,
            uri=track.uri,
            name=track.name,
            artists=track.artists,
            album=track.album,
            duration_ms=track.duration_ms,
            popularity=track.popularity,
            position=position,
            added_at=added_at,
            added_by=added_by,
        )

    def to_json(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.id,
            "uri": self.uri,
            "name": self.name,
            "artists": list(self.artists),
            "durationMs": self.duration_ms,
            "position": self.position,
            "addedAt": self.added_at,
            "addedBy": self.added_by,
        }
        if self.album is not None:
            data["album"] = {"id": self.album.id, "name": self.album.name}
        if self.popularity is not None:
            data["popularity"] = self.popularity
        return data

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "PlaylistTrackEntry":
        album = data.get("album")
        return cls(
            id=data.get("id"),
            uri=str(data.get("uri") or ""),
            name=str(data.get("name") or ""),
            artists=tuple(data.get("artists") or ()),
            album=AlbumRef(id=album.get("id"), name=album.get("name")) if album else None,
            duration_ms=int(data.get("durationMs") or 0),
            popularity=data.get("popularity"),
            position=int(data.get("position") or 0),
            added_at=data.get("addedAt"),
            added_by=data.get("addedBy"),
        )


@dataclass(frozen=True)
class PlaylistPage:
    """One page of a playlist's track listing as returned by the remote."""

    tracks: Tuple[PlaylistTrackEntry, ...]
    snapshot_id: Optional[str]
    total: int
    next_cursor: Optional[str] = None
    # Rows with no playable track (local files, removed items) as (position, uri)
    unavailable: Tuple[Tuple[int, Optional[str]], ...] = ()

    def __post_init__(self):
        if not isinstance(self.tracks, tuple):
            object.__setattr__(self, 'tracks', tuple(self.tracks))
        if not isinstance(self.unavailable, tuple):
            object.__setattr__(self, 'unavailable', tuple(self.unavailable))

    def to_json(self) -> Dict[str, Any]:
        return {
            "tracks": [t.to_json() for t in self.tracks],
            "snapshotId": self.snapshot_id,
            "total": self.total,
            "nextCursor": self.next_cursor,
        }

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "PlaylistPage":
        tracks = tuple(PlaylistTrackEntry.from_json(t) for t in data.get("tracks") or ())
        total = data.get("total")
        return cls(
            tracks=tracks,
            snapshot_id=data.get("snapshotId"),
            total=total if isinstance(total, int) else len(tracks),
            next_cursor=data.get("nextCursor"),
        )


@dataclass(frozen=True)
class TrackToRemove:
    """Removal request for one URI; `positions` limits it to specific occurrences."""

    uri: str
    positions: Optional[Tuple[int, ...]] = None

    def __post_init__(self):
        if self.positions is not None and not isinstance(self.positions, tuple):
            object.__setattr__(self, 'positions', tuple(self.positions))

    @property
    def is_positional(self) -> bool:
        return bool(self.positions)

    def to_json(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"uri": self.uri}
        if self.positions:
            data["positions"] = list(self.positions)
        return data

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "TrackToRemove":
        positions = data.get("positions")
        return cls(uri=data.get("uri"), positions=tuple(positions) if positions else None)


@dataclass(frozen=True)
class InsertionMarker:
    """User-designated insert-before point inside a playlist."""

    marker_id: str
    index: int
    created_at: float = 0.0


@dataclass
class ImportPagination:
    page: int
    per_page: int
    total_pages: Optional[int] = None
    total_items: Optional[int] = None

    def to_json(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"page": self.page, "perPage": self.per_page}
        if self.total_pages is not None:
            data["totalPages"] = self.total_pages
        if self.total_items is not None:
            data["totalItems"] = self.total_items
        return data


@dataclass
class ImportResponse:
    """A page of imported tracks from a listening-history source."""

    tracks: List[ImportedTrack]
    pagination: ImportPagination
    source: str
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_json(self) -> Dict[str, Any]:
        return {
            "tracks": [t.to_json() for t in self.tracks],
            "pagination": self.pagination.to_json(),
            "source": self.source,
        }
