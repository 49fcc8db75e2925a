import asyncio
from unittest.mock import Mock

import pytest

from playlist_studio.application.events import PLAYLIST_RELOAD, EventBus
from playlist_studio.application.track_cache import PlaylistTracksQuery, TrackCacheStore
from playlist_studio.domain.entities import PlaylistPage, PlaylistTrackEntry
from playlist_studio.domain.errors import FetchCancelled, TemporaryFailure, TokenExpired


def _pages(playlist_id, *names_per_page, snapshot_id="s1"):
    """Map each cursor to the page it returns; cursors chain c1, c2, ..."""
    total = sum(len(names) for names in names_per_page)
    pages = {}
    position = 0
    for index, names in enumerate(names_per_page):
        entries = []
        for name in names:
            entries.append(PlaylistTrackEntry(id=name, uri=f"spotify:track:{name}",
                                              name=name, position=position))
            position += 1
        cursor = None if index == 0 else f"{playlist_id}-c{index}"
        last = index == len(names_per_page) - 1
        pages[cursor] = PlaylistPage(
            tracks=tuple(entries),
            snapshot_id=snapshot_id if index == 0 else None,
            total=total,
            next_cursor=None if last else f"{playlist_id}-c{index + 1}",
        )
    return pages


class FakeGateway:
    """In-memory playlist reads; individual pages can be held until released."""

    def __init__(self, playlists):
        self.playlists = playlists
        self.calls = []
        self.gates = {}
        self.started = {}

    def hold(self, playlist_id, cursor):
        self.gates[(playlist_id, cursor)] = asyncio.Event()
        self.started[(playlist_id, cursor)] = asyncio.Event()

    async def fetch_page(self, playlist_id, cursor=None):
        key = (playlist_id, cursor)
        self.calls.append(key)
        if key in self.started:
            self.started[key].set()
        if key in self.gates:
            await self.gates[key].wait()
        result = self.playlists[playlist_id][cursor]
        if isinstance(result, Exception):
            raise result
        return result


def _names(state):
    return [t.name for t in state.all_tracks]


class TestPlaylistTracksQuery:
    """Tests for loading and prefetching playlist pages."""

    def setup_method(self):
        """Set up test fixtures."""
        self.gateway = FakeGateway({
            "A": _pages("A", ["a1", "a2"], ["a3", "a4"], ["a5"]),
            "B": _pages("B", ["b1"], ["b2"]),
        })
        self.store = TrackCacheStore(self.gateway)

    @pytest.mark.asyncio
    async def test_load_prefetches_every_page_in_order(self):
        """Test that loading walks the cursor chain sequentially."""
        query = PlaylistTracksQuery(self.store)

        state = await query.switch("A")

        assert _names(state) == ["a1", "a2", "a3", "a4", "a5"]
        assert state.total == 5
        assert state.snapshot_id == "s1"
        assert state.has_loaded_all
        assert self.gateway.calls == [("A", None), ("A", "A-c1"), ("A", "A-c2")]

    @pytest.mark.asyncio
    async def test_load_reuses_cached_pages(self):
        """Test that a second view of a fully loaded playlist fetches nothing."""
        await PlaylistTracksQuery(self.store).switch("B")
        self.gateway.calls.clear()

        state = await PlaylistTracksQuery(self.store).switch("B")

        assert _names(state) == ["b1", "b2"]
        assert self.gateway.calls == []

    @pytest.mark.asyncio
    async def test_switching_playlist_stops_previous_prefetch(self):
        """Test that a prefetch loop stops once the view shows another playlist."""
        self.gateway.hold("A", "A-c1")
        query = PlaylistTracksQuery(self.store)

        loading_a = asyncio.create_task(query.switch("A"))
        await self.gateway.started[("A", "A-c1")].wait()
        state_b = await query.switch("B")
        self.gateway.gates[("A", "A-c1")].set()
        await loading_a

        assert _names(state_b) == ["b1", "b2"]
        assert ("A", "A-c2") not in self.gateway.calls
        assert query.playlist_id == "B"

    @pytest.mark.asyncio
    async def test_first_page_error_is_exposed_in_state(self):
        """Test that a failed first page leaves an error and no tracks."""
        self.gateway.playlists["C"] = {None: TemporaryFailure("upstream down")}

        state = await PlaylistTracksQuery(self.store).switch("C")

        assert state.all_tracks == []
        assert isinstance(state.error, TemporaryFailure)

    @pytest.mark.asyncio
    async def test_token_expired_propagates(self):
        """Test that an expired token is raised to the caller."""
        self.gateway.playlists["C"] = {None: TokenExpired()}

        with pytest.raises(TokenExpired):
            await PlaylistTracksQuery(self.store).switch("C")

    @pytest.mark.asyncio
    async def test_close_discards_unobserved_playlist(self):
        """Test that closing the last view drops the cache entry."""
        first = PlaylistTracksQuery(self.store)
        second = PlaylistTracksQuery(self.store)
        await first.switch("B")
        await second.switch("B")
        first.watch(Mock())
        second.watch(Mock())

        first.close()
        assert self.store.get_data("B") is not None

        second.close()
        assert self.store.get_data("B") is None


class TestTrackCacheStore:
    """Tests for fetch cancellation and invalidation."""

    def setup_method(self):
        """Set up test fixtures."""
        self.gateway = FakeGateway({"A": _pages("A", ["a1"], ["a2"])})
        self.store = TrackCacheStore(self.gateway)

    @pytest.mark.asyncio
    async def test_cancelled_fetch_does_not_commit(self):
        """Test that cancelling in-flight reads keeps their page out of the cache."""
        await self.store.fetch_first_page("A")
        self.gateway.hold("A", "A-c1")

        pending = asyncio.create_task(self.store.fetch_next_page("A"))
        await self.gateway.started[("A", "A-c1")].wait()
        await self.store.cancel_fetches("A")

        with pytest.raises(FetchCancelled):
            await pending
        assert [t.name for t in self.store.view("A").all_tracks] == ["a1"]
        assert not self.store.is_fetching("A")

    @pytest.mark.asyncio
    async def test_invalidate_ignores_unknown_playlists(self):
        """Test that nothing is fetched for a playlist nobody has loaded."""
        assert self.store.invalidate("unknown") is None
        assert self.gateway.calls == []

    @pytest.mark.asyncio
    async def test_reload_event_refetches_and_notifies(self):
        """Test that playlist:reload triggers a full refetch for observers."""
        bus = EventBus()
        unbind = self.store.bind(bus)
        await self.store.fetch_first_page("A")
        listener = Mock()
        self.store.subscribe("A", listener)
        self.gateway.playlists["A"] = _pages("A", ["x1"], ["x2"], snapshot_id="s2")

        bus.emit(PLAYLIST_RELOAD, {"playlist_id": "A"})
        task = next(iter(self.store._tasks["A"]))
        await task

        state = self.store.view("A")
        assert [t.name for t in state.all_tracks] == ["x1", "x2"]
        assert state.snapshot_id == "s2"
        listener.assert_called_with("A")
        unbind()

    @pytest.mark.asyncio
    async def test_restore_returns_exact_snapshot(self):
        """Test that a captured snapshot restores the identical cached object."""
        await self.store.fetch_first_page("A")
        captured = self.store.snapshot("A")

        self.store.update_snapshot_id("A", "s9")
        assert self.store.view("A").snapshot_id == "s9"

        self.store.restore("A", captured)
        assert self.store.get_data("A") is captured
