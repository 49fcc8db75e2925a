from playlist_studio.application.cache_patches import (
    PagedTracks,
    apply_add,
    apply_remove,
    apply_reorder,
    flatten_tracks,
    raw_entries,
    reorder_list,
    with_snapshot_id,
)
from playlist_studio.domain.entities import PlaylistPage, PlaylistTrackEntry, TrackToRemove


def _entry(name, position):
    return PlaylistTrackEntry(id=name, uri=f"spotify:track:{name}", name=name, position=position)


def _paged(*pages, total=None, next_cursor=None, snapshot_id="s1"):
    """Build cached pages from lists of track names, numbering positions across pages."""
    built = []
    position = 0
    count = sum(len(p) for p in pages)
    for index, names in enumerate(pages):
        entries = []
        for name in names:
            entries.append(_entry(name, position))
            position += 1
        last = index == len(pages) - 1
        built.append(PlaylistPage(
            tracks=tuple(entries),
            snapshot_id=snapshot_id if index == 0 else None,
            total=total if total is not None else count,
            next_cursor=next_cursor if last else f"cursor{index + 1}",
        ))
    params = (None,) + tuple(f"cursor{i}" for i in range(1, len(pages)))
    return PagedTracks(tuple(built), params)


def _names(data):
    return [e.name for e in raw_entries(data)]


def _positions(data):
    return [e.position for e in raw_entries(data)]


class TestPagedTracks:
    """Tests for the cached page container."""

    def test_properties_come_from_first_and_last_pages(self):
        """Test total from the first page and cursor from the last page."""
        data = _paged(["A", "B"], ["C"], total=10, next_cursor="cursor2")

        assert data.total == 10
        assert data.next_cursor == "cursor2"
        assert data.snapshot_id == "s1"

    def test_snapshot_id_prefers_latest_page_that_has_one(self):
        """Test that a later page's snapshot id wins over the first page's."""
        data = _paged(["A"], ["B"])
        later = PlaylistPage(tracks=(), snapshot_id="s2", total=2)

        assert data.append_page(later, "cursor2").snapshot_id == "s2"

    def test_with_snapshot_id_stamps_every_page(self):
        """Test stamping a confirmed snapshot id."""
        data = with_snapshot_id(_paged(["A"], ["B"]), "s9")

        assert [p.snapshot_id for p in data.pages] == ["s9", "s9"]


class TestFlatten:
    """Tests for flattening pages into a view list."""

    def test_duplicate_uri_across_page_boundary_keeps_first(self):
        """Test that a URI repeated on the next page is shown once, at its first position."""
        data = _paged(["A", "B"], ["B", "C"])

        flat = flatten_tracks(data.pages)

        assert [e.name for e in flat] == ["A", "B", "C"]
        assert flat[1].position == 1


class TestReorder:
    """Tests for moving ranges within the cached pages."""

    def test_reorder_list_forward_and_backward(self):
        """Test insert-before semantics in both directions."""
        items = ["A", "B", "C", "D", "E"]

        assert reorder_list(items, 0, 3) == ["B", "C", "A", "D", "E"]
        assert reorder_list(items, 3, 0) == ["D", "A", "B", "C", "E"]
        assert reorder_list(items, 0, 5, 2) == ["C", "D", "E", "A", "B"]
        assert reorder_list(items, 1, 1) == items

    def test_reorder_list_matches_insert_before_for_every_move(self):
        """Test every valid (from, to, length) on six items, then move the range back."""
        items = ["A", "B", "C", "D", "E", "F"]
        n = len(items)
        for from_index in range(n):
            for length in range(1, n - from_index + 1):
                for to_index in range(n + 1):
                    if from_index < to_index < from_index + length:
                        continue
                    moved = items[from_index:from_index + length]
                    rest = [x for x in items if x not in moved]
                    anchor = rest.index(items[to_index]) if to_index < n and items[to_index] in rest else None
                    if anchor is None:
                        anchor = len(rest) if to_index >= from_index + length else from_index
                    expected = rest[:anchor] + moved + rest[anchor:]

                    result = reorder_list(items, from_index, to_index, length)

                    assert result == expected, (from_index, to_index, length)
                    start = result.index(moved[0])
                    back_to = from_index if from_index < start else from_index + length
                    assert reorder_list(result, start, back_to, length) == items, (from_index, to_index, length)

    def test_apply_reorder_agrees_with_reorder_list_across_pages(self):
        """Test that every move inside the loaded rows renumbers and keeps page sizes."""
        data = _paged(["A", "B"], ["C", "D"], ["E"])
        names = ["A", "B", "C", "D", "E"]
        for from_index in range(5):
            for length in range(1, 6 - from_index):
                for to_index in range(6):
                    if from_index < to_index < from_index + length:
                        continue
                    moved = apply_reorder(data, from_index, to_index, length)

                    assert _names(moved) == reorder_list(names, from_index, to_index, length)
                    assert _positions(moved) == [0, 1, 2, 3, 4]
                    assert [len(p.tracks) for p in moved.pages] == [2, 2, 1]

    def test_apply_reorder_keeps_page_sizes_and_renumbers(self):
        """Test moving a track from the second page to the first."""
        data = _paged(["A", "B"], ["C", "D"])

        moved = apply_reorder(data, 3, 0)

        assert _names(moved) == ["D", "A", "B", "C"]
        assert _positions(moved) == [0, 1, 2, 3]
        assert [len(p.tracks) for p in moved.pages] == [2, 2]
        assert moved.total == 4
        assert _names(data) == ["A", "B", "C", "D"]

    def test_apply_reorder_outside_loaded_rows_is_a_no_op(self):
        """Test that moves touching unloaded rows return the data untouched."""
        data = _paged(["A", "B"], total=50, next_cursor="cursor1")

        assert apply_reorder(data, 0, 10) is data
        assert apply_reorder(data, 1, 0, 5) is data


class TestRemove:
    """Tests for optimistic removal."""

    def test_positional_removal_only_drops_those_occurrences(self):
        """Test that positions select specific occurrences of a repeated URI."""
        data = _paged(["A", "B"], ["A", "C"])

        result = apply_remove(data, [TrackToRemove("spotify:track:A", (2,))])

        assert _names(result) == ["A", "B", "C"]
        assert _positions(result) == [0, 1, 2]
        assert result.total == 3

    def test_removal_without_positions_drops_every_occurrence(self):
        """Test that a URI-only target removes all copies."""
        data = _paged(["A", "B"], ["A", "C"], total=10, next_cursor="cursor2")

        result = apply_remove(data, [TrackToRemove("spotify:track:A")])

        assert _names(result) == ["B", "C"]
        assert result.total == 8
        assert result.next_cursor == "cursor2"

    def test_removing_from_empty_cache_returns_it(self):
        """Test that an empty cache is left alone."""
        empty = PagedTracks()

        assert apply_remove(empty, [TrackToRemove("spotify:track:A")]) is empty


class TestAdd:
    """Tests for optimistic insertion."""

    def test_insert_at_position_shifts_following_rows(self):
        """Test inserting before index 1 across two pages."""
        data = _paged(["A", "B"], ["C"])

        result = apply_add(data, [_entry("X", 0), _entry("Y", 0)], 1)

        assert _names(result) == ["A", "X", "Y", "B", "C"]
        assert _positions(result) == [0, 1, 2, 3, 4]
        assert [len(p.tracks) for p in result.pages] == [2, 3]
        assert all(p.total == 5 for p in result.pages)

    def test_append_when_position_is_none(self):
        """Test appending to the end."""
        result = apply_add(_paged(["A"]), [_entry("X", 0)])

        assert _names(result) == ["A", "X"]
