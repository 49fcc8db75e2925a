from unittest.mock import Mock

import pytest

from playlist_studio.application.rebuild import fetch_all_entries, filter_entries, rebuild_playlist
from playlist_studio.crosscutting.metrics import MetricsCollector
from playlist_studio.domain.entities import PlaylistPage, PlaylistTrackEntry
from playlist_studio.domain.errors import InvalidRequest, PartialBatchFailure, TemporaryFailure, TokenExpired


def _entry(name, position):
    return PlaylistTrackEntry(id=name, uri=f"spotify:track:{name}", name=name, position=position)


def _catalog_with(names, page_size=100):
    """Mock catalog serving `names` in pages of `page_size`."""
    pages = []
    for start in range(0, len(names), page_size):
        chunk = names[start:start + page_size]
        more = start + page_size < len(names)
        pages.append(PlaylistPage(
            tracks=tuple(_entry(n, start + i) for i, n in enumerate(chunk)),
            snapshot_id="s0",
            total=len(names),
            next_cursor=f"c{start + page_size}" if more else None,
        ))
    catalog = Mock()
    catalog.get_tracks_page.side_effect = pages
    catalog.replace_tracks.return_value = "s1"
    return catalog


def _uris(*names):
    return [f"spotify:track:{n}" for n in names]


class TestRebuildPlaylist:
    """Tests for position-specific removal by rewriting the playlist."""

    def test_small_playlist_is_rewritten_in_one_call(self):
        """Test that removing positions 1 and 3 of [A, B, C, D] replaces with [A, C]."""
        catalog = _catalog_with(["A", "B", "C", "D"])

        snapshot_id = rebuild_playlist(catalog, "pl1", {1, 3})

        assert snapshot_id == "s1"
        catalog.replace_tracks.assert_called_once_with("pl1", _uris("A", "C"))
        catalog.add_tracks.assert_not_called()

    def test_duplicates_keep_the_untargeted_occurrence(self):
        """Test that only the targeted copy of a repeated URI is dropped."""
        catalog = _catalog_with(["A", "B", "A"])

        rebuild_playlist(catalog, "pl1", {2})

        catalog.replace_tracks.assert_called_once_with("pl1", _uris("A", "B"))

    def test_reads_every_page_before_writing(self):
        """Test that all pages are read and uri-wide removals are applied too."""
        catalog = _catalog_with(["A", "B", "C", "D", "E"], page_size=2)

        rebuild_playlist(catalog, "pl1", {0}, uris={"spotify:track:D"})

        assert catalog.get_tracks_page.call_count == 3
        catalog.replace_tracks.assert_called_once_with("pl1", _uris("B", "C", "E"))

    def test_large_playlist_is_cleared_then_appended_in_batches(self):
        """Test the clear-then-append path when survivors exceed one batch."""
        catalog = _catalog_with(["A", "B", "C", "D", "E"])
        catalog.add_tracks.side_effect = ["s2", "s3"]
        metrics = MetricsCollector()

        with metrics.edit_context('rebuild', 'pl1', 1):
            snapshot_id = rebuild_playlist(catalog, "pl1", {0}, batch_size=2, metrics=metrics)

        assert snapshot_id == "s3"
        catalog.replace_tracks.assert_called_once_with("pl1", [])
        assert [c.args for c in catalog.add_tracks.call_args_list] == [
            ("pl1", _uris("B", "C")),
            ("pl1", _uris("D", "E")),
        ]
        assert metrics.records[0].batch_count == 3

    def test_failed_batch_continues_then_reports_partial(self):
        """Test that later batches still run and the failure is reported afterwards."""
        catalog = _catalog_with(["A", "B", "C", "D", "E", "F", "G"])
        catalog.add_tracks.side_effect = ["s2", TemporaryFailure("upstream"), "s4"]

        with pytest.raises(PartialBatchFailure) as exc_info:
            rebuild_playlist(catalog, "pl1", {0}, batch_size=2)

        error = exc_info.value
        assert catalog.add_tracks.call_count == 3
        assert error.failed_batches == [2]
        assert error.completed == 2
        assert error.total == 3
        assert error.snapshot_id == "s4"
        assert isinstance(error.cause, TemporaryFailure)

    def test_token_expired_stops_immediately(self):
        """Test that an expired token aborts the remaining batches."""
        catalog = _catalog_with(["A", "B", "C", "D", "E"])
        catalog.add_tracks.side_effect = TokenExpired()

        with pytest.raises(TokenExpired):
            rebuild_playlist(catalog, "pl1", {0}, batch_size=2)

        assert catalog.add_tracks.call_count == 1

    def test_read_failure_writes_nothing(self):
        """Test that a failed read leaves the playlist untouched."""
        catalog = Mock()
        catalog.get_tracks_page.side_effect = TemporaryFailure("down")

        with pytest.raises(TemporaryFailure):
            rebuild_playlist(catalog, "pl1", {0})

        catalog.replace_tracks.assert_not_called()

    def test_unavailable_rows_keep_their_place(self):
        """Test that an unplayable row with a track URI is written back in order."""
        catalog = Mock()
        catalog.get_tracks_page.return_value = PlaylistPage(
            tracks=(_entry("A", 0), _entry("C", 2)),
            snapshot_id="s0",
            total=3,
            unavailable=((1, "spotify:track:B"),),
        )
        catalog.replace_tracks.return_value = "s1"

        rebuild_playlist(catalog, "pl1", {0})

        catalog.replace_tracks.assert_called_once_with("pl1", _uris("B", "C"))

    def test_local_file_that_survives_blocks_the_rewrite(self):
        """Test that a kept local file raises before any write instead of being dropped."""
        catalog = Mock()
        catalog.get_tracks_page.return_value = PlaylistPage(
            tracks=(_entry("A", 0), _entry("C", 2)),
            snapshot_id="s0",
            total=3,
            unavailable=((1, "spotify:local:Artist:Album:Song:180"),),
        )

        with pytest.raises(InvalidRequest, match=r"\[1\]"):
            rebuild_playlist(catalog, "pl1", {0})

        catalog.replace_tracks.assert_not_called()
        catalog.add_tracks.assert_not_called()

    def test_local_file_can_itself_be_removed(self):
        """Test that targeting the local file position rewrites the remaining tracks."""
        catalog = Mock()
        catalog.get_tracks_page.return_value = PlaylistPage(
            tracks=(_entry("A", 0), _entry("C", 2)),
            snapshot_id="s0",
            total=3,
            unavailable=((1, "spotify:local:Artist:Album:Song:180"),),
        )
        catalog.replace_tracks.return_value = "s1"

        assert rebuild_playlist(catalog, "pl1", {1}) == "s1"
        catalog.replace_tracks.assert_called_once_with("pl1", _uris("A", "C"))


def test_filter_entries_and_fetch_all():
    catalog = _catalog_with(["A", "B", "C"], page_size=2)

    entries = fetch_all_entries(catalog, "pl1")

    assert [e.name for e in entries] == ["A", "B", "C"]
    assert [e.name for e in filter_entries(entries, {1})] == ["A", "C"]
    assert [e.name for e in filter_entries(entries, set(), {"spotify:track:A"})] == ["B", "C"]
