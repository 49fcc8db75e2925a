from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional, Set

from playlist_studio.application.cache_patches import PagedTracks, flatten_tracks, with_snapshot_id
from playlist_studio.application.events import PLAYLIST_RELOAD, PLAYLIST_UPDATE, EventBus
from playlist_studio.domain.entities import PlaylistPage, PlaylistTrackEntry
from playlist_studio.domain.errors import FetchCancelled, TokenExpired
from playlist_studio.domain.ports import PlaylistGateway


logger = logging.getLogger(__name__)

Listener = Callable[[str], None]


@dataclass(frozen=True)
class TrackListState:
    """What a view renders for one playlist."""

    all_tracks: List[PlaylistTrackEntry] = field(default_factory=list)
    snapshot_id: Optional[str] = None
    total: int = 0
    is_loading: bool = False
    is_fetching_next_page: bool = False
    has_loaded_all: bool = False
    error: Optional[BaseException] = None


class TrackCacheStore:
    """Per-playlist cache of fetched pages shared by every view of that playlist.

    Only the store's own fetch path and the mutation reconciler write to it. Views
    read through ``view`` and re-render when a subscribed listener is called.
    Fetches are tracked per playlist so an optimistic write can cancel them first;
    a generation counter stops a fetch that completed just before cancellation
    from committing over the write.
    """

    def __init__(self, gateway: PlaylistGateway):
        self.gateway = gateway
        self._data: Dict[str, PagedTracks] = {}
        self._tasks: Dict[str, Set[asyncio.Task]] = defaultdict(set)
        self._generation: Dict[str, int] = defaultdict(int)
        self._listeners: Dict[str, List[Listener]] = defaultdict(list)
        self._loading: Set[str] = set()
        self._fetching_next: Set[str] = set()
        self._errors: Dict[str, BaseException] = {}

    # Reads

    def get_data(self, playlist_id: str) -> Optional[PagedTracks]:
        return self._data.get(playlist_id)

    def snapshot(self, playlist_id: str) -> Optional[PagedTracks]:
        """Capture the current pages for rollback. PagedTracks is immutable, so the
        reference itself is an exact snapshot."""
        return self._data.get(playlist_id)

    def view(self, playlist_id: str) -> TrackListState:
        data = self._data.get(playlist_id)
        fetching_next = playlist_id in self._fetching_next
        loading = playlist_id in self._loading
        if data is None:
            return TrackListState(is_loading=loading, error=self._errors.get(playlist_id))
        return TrackListState(
            all_tracks=flatten_tracks(data.pages),
            snapshot_id=data.snapshot_id,
            total=data.total,
            is_loading=loading,
            is_fetching_next_page=fetching_next,
            has_loaded_all=data.next_cursor is None and not fetching_next and not loading,
            error=self._errors.get(playlist_id),
        )

    def is_fetching(self, playlist_id: str) -> bool:
        return any(not t.done() for t in self._tasks.get(playlist_id, ()))

    # Subscriptions

    def subscribe(self, playlist_id: str, listener: Listener) -> Callable[[], None]:
        self._listeners[playlist_id].append(listener)

        def unsubscribe():
            listeners = self._listeners.get(playlist_id)
            if listeners and listener in listeners:
                listeners.remove(listener)

        return unsubscribe

    def has_listeners(self, playlist_id: str) -> bool:
        return bool(self._listeners.get(playlist_id))

    def _notify(self, playlist_id: str) -> None:
        for listener in list(self._listeners.get(playlist_id, ())):
            try:
                listener(playlist_id)
            except Exception:
                logger.exception(f"Track cache listener failed for playlist {playlist_id}")

    def bind(self, bus: EventBus) -> Callable[[], None]:
        """Refetch on external reload notifications and re-render on confirmed edits."""
        off_reload = bus.on(PLAYLIST_RELOAD, lambda payload: self.invalidate(payload["playlist_id"]))
        off_update = bus.on(PLAYLIST_UPDATE, lambda payload: self._notify(payload["playlist_id"]))

        def unbind():
            off_reload()
            off_update()

        return unbind

    # Writers

    def set_data(self, playlist_id: str, data: Optional[PagedTracks]) -> None:
        if data is None:
            self._data.pop(playlist_id, None)
        else:
            self._data[playlist_id] = data
        self._notify(playlist_id)

    def restore(self, playlist_id: str, snapshot: Optional[PagedTracks]) -> None:
        self.set_data(playlist_id, snapshot)

    def update_snapshot_id(self, playlist_id: str, snapshot_id: Optional[str]) -> None:
        data = self._data.get(playlist_id)
        if data is None or snapshot_id is None:
            return
        self.set_data(playlist_id, with_snapshot_id(data, snapshot_id))

    def discard(self, playlist_id: str) -> None:
        """Forget a playlist when its last view closes."""
        self._generation[playlist_id] += 1
        for task in self._tasks.pop(playlist_id, set()):
            task.cancel()
        self._data.pop(playlist_id, None)
        self._errors.pop(playlist_id, None)
        self._loading.discard(playlist_id)
        self._fetching_next.discard(playlist_id)
        self._listeners.pop(playlist_id, None)

    # Fetching

    async def _run_fetch(self, playlist_id: str, fetch: Awaitable[PlaylistPage]) -> PlaylistPage:
        task = asyncio.ensure_future(fetch)
        self._tasks[playlist_id].add(task)
        try:
            return await task
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if task.cancelled() and not (current is not None and current.cancelling()):
                raise FetchCancelled(playlist_id) from None
            raise
        finally:
            self._tasks[playlist_id].discard(task)

    def _check_generation(self, playlist_id: str, generation: int) -> None:
        if self._generation[playlist_id] != generation:
            raise FetchCancelled(playlist_id)

    def _record_error(self, playlist_id: str, error: BaseException) -> None:
        self._errors[playlist_id] = error
        logger.warning(f"Fetching tracks for playlist {playlist_id} failed: {error}")

    async def fetch_first_page(self, playlist_id: str) -> PlaylistPage:
        generation = self._generation[playlist_id]
        self._loading.add(playlist_id)
        self._notify(playlist_id)
        try:
            page = await self._run_fetch(playlist_id, self.gateway.fetch_page(playlist_id, None))
            self._check_generation(playlist_id, generation)
        except (FetchCancelled, asyncio.CancelledError):
            raise
        except Exception as e:
            self._record_error(playlist_id, e)
            raise
        finally:
            self._loading.discard(playlist_id)
        self._errors.pop(playlist_id, None)
        self.set_data(playlist_id, PagedTracks((page,), (None,)))
        return page

    async def fetch_next_page(self, playlist_id: str) -> bool:
        """Fetch the page after the last cached one.

        Returns:
            True when the remote reports further pages
        """
        data = self._data.get(playlist_id)
        if data is None or not data.next_cursor:
            return False
        cursor = data.next_cursor
        generation = self._generation[playlist_id]
        self._fetching_next.add(playlist_id)
        self._notify(playlist_id)
        try:
            page = await self._run_fetch(playlist_id, self.gateway.fetch_page(playlist_id, cursor))
            self._check_generation(playlist_id, generation)
        except (FetchCancelled, asyncio.CancelledError):
            raise
        except Exception as e:
            self._record_error(playlist_id, e)
            raise
        finally:
            self._fetching_next.discard(playlist_id)

        current = self._data.get(playlist_id)
        if current is None or current.next_cursor != cursor:
            # Cache was replaced underneath us; this page no longer continues it
            raise FetchCancelled(playlist_id)
        self.set_data(playlist_id, current.append_page(page, cursor))
        return page.next_cursor is not None

    async def refetch(self, playlist_id: str) -> PagedTracks:
        """Re-read every page from the start and commit them in one step."""
        generation = self._generation[playlist_id]
        pages: List[PlaylistPage] = []
        params: List[Optional[str]] = []
        cursor: Optional[str] = None
        while True:
            page = await self._run_fetch(playlist_id, self.gateway.fetch_page(playlist_id, cursor))
            self._check_generation(playlist_id, generation)
            pages.append(page)
            params.append(cursor)
            cursor = page.next_cursor
            if not cursor:
                break
        data = PagedTracks(tuple(pages), tuple(params))
        self._errors.pop(playlist_id, None)
        self.set_data(playlist_id, data)
        logger.debug(f"Refetched {len(pages)} page(s) for playlist {playlist_id}")
        return data

    async def _background_refetch(self, playlist_id: str) -> None:
        try:
            await self.refetch(playlist_id)
        except FetchCancelled:
            logger.debug(f"Background refetch for playlist {playlist_id} was cancelled")
        except Exception as e:
            self._record_error(playlist_id, e)
            self._notify(playlist_id)

    def invalidate(self, playlist_id: str) -> Optional[asyncio.Task]:
        """Schedule a background refetch of a playlist that is cached or observed."""
        if playlist_id not in self._data and not self._listeners.get(playlist_id):
            return None
        task = asyncio.ensure_future(self._background_refetch(playlist_id))
        self._tasks[playlist_id].add(task)
        task.add_done_callback(self._tasks[playlist_id].discard)
        return task

    async def cancel_fetches(self, playlist_id: str) -> int:
        """Cancel in-flight reads so they cannot overwrite an optimistic write.

        Returns:
            Number of reads that were still running
        """
        self._generation[playlist_id] += 1
        tasks = [t for t in self._tasks.pop(playlist_id, set()) if not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.debug(f"Cancelled {len(tasks)} fetch(es) for playlist {playlist_id}")
        return len(tasks)


class PlaylistTracksQuery:
    """One view's handle on a playlist: loads page 1, then prefetches the rest in order."""

    def __init__(self, store: TrackCacheStore, playlist_id: Optional[str] = None):
        self.store = store
        self._playlist_id = playlist_id
        self._unsubscribe: Optional[Callable[[], None]] = None

    @property
    def playlist_id(self) -> Optional[str]:
        return self._playlist_id

    @property
    def state(self) -> TrackListState:
        if self._playlist_id is None:
            return TrackListState()
        return self.store.view(self._playlist_id)

    async def switch(self, playlist_id: str) -> TrackListState:
        # Any loop still running for the previous playlist sees the new id and stops
        self._unwatch()
        self._playlist_id = playlist_id
        return await self.load()

    async def load(self) -> TrackListState:
        playlist_id = self._playlist_id
        if playlist_id is None:
            return TrackListState()
        try:
            if self.store.get_data(playlist_id) is None:
                await self.store.fetch_first_page(playlist_id)
            # Sequential: each page's cursor comes from the previous page
            while self._playlist_id == playlist_id:
                if not await self.store.fetch_next_page(playlist_id):
                    break
        except TokenExpired:
            raise
        except FetchCancelled:
            logger.debug(f"Loading playlist {playlist_id} was interrupted by a local edit")
        except Exception as e:
            logger.info(f"Stopped loading playlist {playlist_id}: {e}")
        return self.store.view(playlist_id)

    def watch(self, listener: Listener) -> None:
        """Call `listener` whenever the current playlist's cached state changes."""
        self._unwatch()
        if self._playlist_id is not None:
            self._unsubscribe = self.store.subscribe(self._playlist_id, listener)

    def _unwatch(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def close(self) -> None:
        """Stop observing; the cache entry is dropped once no view observes it."""
        self._unwatch()
        playlist_id, self._playlist_id = self._playlist_id, None
        if playlist_id is not None and not self.store.has_listeners(playlist_id):
            self.store.discard(playlist_id)
