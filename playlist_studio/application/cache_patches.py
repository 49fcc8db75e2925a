"""Pure transforms over a playlist's cached pages.

Every function returns a new ``PagedTracks``; inputs are never modified, which is
what lets the reconciler roll back by simply restoring the object it captured.
"""
from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Iterable, List, Optional, Sequence, Tuple

from playlist_studio.domain.entities import PlaylistPage, PlaylistTrackEntry, TrackToRemove


@dataclass(frozen=True)
class PagedTracks:
    """Pages fetched so far for one playlist, with the cursor used for each page."""

    pages: Tuple[PlaylistPage, ...] = ()
    page_params: Tuple[Optional[str], ...] = ()

    def __post_init__(self):
        if not isinstance(self.pages, tuple):
            object.__setattr__(self, 'pages', tuple(self.pages))
        if not isinstance(self.page_params, tuple):
            object.__setattr__(self, 'page_params', tuple(self.page_params))

    @property
    def snapshot_id(self) -> Optional[str]:
        """Latest snapshot id; pages after the first may not carry one."""
        for page in reversed(self.pages):
            if page.snapshot_id is not None:
                return page.snapshot_id
        return None

    @property
    def total(self) -> int:
        return self.pages[0].total if self.pages else 0

    @property
    def next_cursor(self) -> Optional[str]:
        return self.pages[-1].next_cursor if self.pages else None

    def append_page(self, page: PlaylistPage, cursor: Optional[str]) -> "PagedTracks":
        return PagedTracks(self.pages + (page,), self.page_params + (cursor,))


def raw_entries(data: PagedTracks) -> List[PlaylistTrackEntry]:
    return [entry for page in data.pages for entry in page.tracks]


def flatten_tracks(pages: Iterable[PlaylistPage]) -> List[PlaylistTrackEntry]:
    """Concatenate page tracks, keeping only the first occurrence of each URI."""
    seen = set()
    flat: List[PlaylistTrackEntry] = []
    for page in pages:
        for entry in page.tracks:
            if entry.uri in seen:
                continue
            seen.add(entry.uri)
            flat.append(entry)
    return flat


def renumber(entries: Iterable[PlaylistTrackEntry]) -> List[PlaylistTrackEntry]:
    return [e if e.position == i else replace(e, position=i) for i, e in enumerate(entries)]


def _rechunk(data: PagedTracks, entries: Sequence[PlaylistTrackEntry], total: int) -> PagedTracks:
    # Earlier pages keep their size, the last page absorbs the difference
    pages: List[PlaylistPage] = []
    offset = 0
    for index, page in enumerate(data.pages):
        if index == len(data.pages) - 1:
            chunk = entries[offset:]
        else:
            chunk = entries[offset:offset + len(page.tracks)]
        offset += len(chunk)
        pages.append(replace(page, tracks=tuple(chunk), total=total))
    return PagedTracks(tuple(pages), data.page_params)


def apply_add(data: PagedTracks, new_entries: Sequence[PlaylistTrackEntry],
              position: Optional[int] = None) -> PagedTracks:
    """Insert entries before `position` (append when None or past the end)."""
    if not data.pages:
        return data
    entries = raw_entries(data)
    index = len(entries) if position is None else max(0, min(position, len(entries)))
    entries[index:index] = list(new_entries)
    return _rechunk(data, renumber(entries), data.total + len(new_entries))


def _is_removed(entry: PlaylistTrackEntry, targets: Sequence[TrackToRemove]) -> bool:
    for target in targets:
        if target.uri != entry.uri:
            continue
        if not target.positions or entry.position in target.positions:
            return True
    return False


def apply_remove(data: PagedTracks, targets: Sequence[TrackToRemove]) -> PagedTracks:
    """Remove the targeted entries and renumber the survivors from 0.

    A target with positions removes only the entries at those positions; a
    target without positions removes every occurrence of its URI.
    """
    if not data.pages:
        return data
    entries = raw_entries(data)
    kept = [e for e in entries if not _is_removed(e, targets)]
    removed = len(entries) - len(kept)
    return _rechunk(data, renumber(kept), max(0, data.total - removed))


def reorder_insert_index(from_index: int, to_index: int, range_length: int = 1) -> int:
    """Index at which the moved range lands once it has been taken out of the list.

    `to_index` is an insert-before index in the original ordering, so a forward
    move must discount the slots vacated by the range itself.
    """
    if to_index > from_index:
        return to_index - range_length
    return to_index


def reorder_list(items: Sequence, from_index: int, to_index: int, range_length: int = 1) -> list:
    items = list(items)
    moved = items[from_index:from_index + range_length]
    del items[from_index:from_index + range_length]
    insert_at = reorder_insert_index(from_index, to_index, range_length)
    items[insert_at:insert_at] = moved
    return items


def apply_reorder(data: PagedTracks, from_index: int, to_index: int,
                  range_length: int = 1) -> PagedTracks:
    """Move a contiguous range. Moves touching unloaded rows leave the data unchanged."""
    entries = raw_entries(data)
    if from_index + range_length > len(entries) or to_index > len(entries):
        return data
    moved = reorder_list(entries, from_index, to_index, range_length)
    return _rechunk(data, renumber(moved), data.total)


def with_snapshot_id(data: PagedTracks, snapshot_id: Optional[str]) -> PagedTracks:
    """Stamp every cached page with a confirmed snapshot id."""
    pages = tuple(replace(page, snapshot_id=snapshot_id) for page in data.pages)
    return PagedTracks(pages, data.page_params)
