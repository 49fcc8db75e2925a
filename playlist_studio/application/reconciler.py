from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Awaitable, Callable, List, Optional, Sequence

from playlist_studio.application.cache_patches import (
    PagedTracks,
    apply_add,
    apply_remove,
    apply_reorder,
    raw_entries,
)
from playlist_studio.application.events import PLAYLIST_UPDATE, EventBus
from playlist_studio.application.track_cache import TrackCacheStore
from playlist_studio.crosscutting.logging import (
    CorrelationContext,
    log_error,
    log_mutation_finished,
    log_mutation_started,
)
from playlist_studio.domain.entities import CatalogTrack, PlaylistTrackEntry, TrackToRemove
from playlist_studio.domain.errors import (
    FetchCancelled,
    PartialBatchFailure,
    RemoteRejection,
    TokenExpired,
)
from playlist_studio.domain.ports import PlaylistGateway
from playlist_studio.domain.validation import (
    validate_playlist_id,
    validate_position,
    validate_removals,
    validate_reorder,
    validate_track_uris,
)


logger = logging.getLogger(__name__)

SESSION_EXPIRED_MESSAGE = "Your session has expired. Please sign in again."
GENERIC_FAILURE_MESSAGE = "Something went wrong while updating the playlist."


class MutationState(str, Enum):
    PENDING_OPTIMISTIC = "pending_optimistic"
    IN_FLIGHT = "in_flight"
    CONFIRMED = "confirmed"
    ROLLED_BACK = "rolled_back"
    # Some batches of a multi-batch write landed; nothing is undone
    PARTIALLY_APPLIED = "partially_applied"


TERMINAL_STATES = {MutationState.CONFIRMED, MutationState.ROLLED_BACK, MutationState.PARTIALLY_APPLIED}


@dataclass
class Mutation:
    """One add/remove/reorder attempt and where it is in its lifecycle."""

    kind: str
    playlist_id: str
    mutation_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    state: MutationState = MutationState.PENDING_OPTIMISTIC
    previous: Optional[PagedTracks] = None
    patched: bool = False
    # Reads cancelled to make room for the optimistic write
    interrupted_fetches: int = 0
    snapshot_id: Optional[str] = None
    error: Optional[BaseException] = None
    history: List[MutationState] = field(default_factory=lambda: [MutationState.PENDING_OPTIMISTIC])

    def transition(self, state: MutationState) -> None:
        if self.state in TERMINAL_STATES:
            raise RuntimeError(f"Mutation {self.mutation_id} already {self.state.value}")
        self.state = state
        self.history.append(state)

    @property
    def is_done(self) -> bool:
        return self.state in TERMINAL_STATES


def describe_error(error: BaseException) -> str:
    """User-facing text for a failed mutation."""
    if isinstance(error, TokenExpired):
        return SESSION_EXPIRED_MESSAGE
    if isinstance(error, (RemoteRejection, PartialBatchFailure)) and str(error):
        return str(error)
    return GENERIC_FAILURE_MESSAGE


class MutationReconciler:
    """Optimistic add/remove/reorder against the shared track cache.

    Every mutation goes through the same steps:
    1. pending_optimistic: cancel in-flight reads, capture the cached pages, write the patched pages
    2. in_flight: await the remote write
    3. confirmed: stamp the new snapshot id and announce ``playlist:update``
    4. rolled_back: restore the captured pages and notify the user

    Multi-batch writes that fail part-way end in ``partially_applied`` instead of
    rolling back, and the cache is refetched to show what actually landed.
    """

    def __init__(self, store: TrackCacheStore, gateway: PlaylistGateway,
                 bus: Optional[EventBus] = None,
                 notify: Optional[Callable[[str], None]] = None):
        self.store = store
        self.gateway = gateway
        self.bus = bus
        self.notify = notify or (lambda message: logger.warning(f"User notification: {message}"))

    def rollback(self, mutation: Mutation, error: Optional[BaseException] = None) -> None:
        """Restore the pages captured before the optimistic write.

        A prefetch interrupted by the write does not resume on its own, so a
        restored cache that is still partial is reloaded in the background.
        """
        if mutation.patched:
            self.store.restore(mutation.playlist_id, mutation.previous)
        data = self.store.get_data(mutation.playlist_id)
        if mutation.interrupted_fetches or (data is not None and data.next_cursor):
            self.store.invalidate(mutation.playlist_id)
        mutation.error = error
        mutation.transition(MutationState.ROLLED_BACK)

    async def _execute(self, mutation: Mutation,
                       patch: Callable[[PagedTracks], PagedTracks],
                       write: Callable[[Optional[str]], Awaitable[Optional[str]]],
                       on_confirmed: Callable[[Optional[str]], Awaitable[None]]) -> Mutation:
        playlist_id = mutation.playlist_id
        log_mutation_started(logger, mutation.mutation_id, playlist_id, mutation.kind)

        mutation.interrupted_fetches = await self.store.cancel_fetches(playlist_id)
        mutation.previous = self.store.snapshot(playlist_id)
        if mutation.previous is not None:
            patched = patch(mutation.previous)
            if patched is not mutation.previous:
                self.store.set_data(playlist_id, patched)
                mutation.patched = True

        mutation.transition(MutationState.IN_FLIGHT)
        base_snapshot = mutation.previous.snapshot_id if mutation.previous else None
        with CorrelationContext(playlist_id=playlist_id, mutation_id=mutation.mutation_id, stage='in_flight'):
            try:
                snapshot_id = await write(base_snapshot)
            except TokenExpired as e:
                self.rollback(mutation, e)
                self.notify(SESSION_EXPIRED_MESSAGE)
                log_mutation_finished(logger, mutation.mutation_id, playlist_id, mutation.kind,
                                      mutation.state.value, error='token_expired')
                raise
            except PartialBatchFailure as e:
                mutation.error = e
                mutation.snapshot_id = e.snapshot_id
                mutation.transition(MutationState.PARTIALLY_APPLIED)
                self.store.invalidate(playlist_id)
                self.notify(describe_error(e))
                log_mutation_finished(logger, mutation.mutation_id, playlist_id, mutation.kind,
                                      mutation.state.value, completed=e.completed, total=e.total)
                return mutation
            except asyncio.CancelledError:
                self.rollback(mutation)
                raise
            except Exception as e:
                self.rollback(mutation, e)
                self.notify(describe_error(e))
                log_error(logger, f"{mutation.kind.capitalize()} mutation rolled back", e,
                          playlist_id=playlist_id, mutation_id=mutation.mutation_id)
                return mutation

        mutation.snapshot_id = snapshot_id
        await on_confirmed(snapshot_id)
        mutation.transition(MutationState.CONFIRMED)
        log_mutation_finished(logger, mutation.mutation_id, playlist_id, mutation.kind,
                              mutation.state.value, snapshot_id=snapshot_id)
        if self.bus is not None:
            self.bus.emit(PLAYLIST_UPDATE, {"playlist_id": playlist_id, "cause": mutation.kind})
        return mutation

    async def _confirm_snapshot(self, playlist_id: str, snapshot_id: Optional[str]) -> None:
        self.store.update_snapshot_id(playlist_id, snapshot_id)
        data = self.store.get_data(playlist_id)
        if data is None or data.next_cursor:
            # Nothing cached yet, or cursors of unloaded pages now point at shifted offsets
            self.store.invalidate(playlist_id)

    async def add_tracks(self, playlist_id: str, tracks: Sequence[CatalogTrack],
                         position: Optional[int] = None) -> Mutation:
        """Insert catalog tracks before `position` (append when None)."""
        validate_playlist_id(playlist_id)
        uris = validate_track_uris(t.uri for t in tracks)
        position = validate_position(position)
        added_at = datetime.now(timezone.utc).isoformat()

        def patch(data: PagedTracks) -> PagedTracks:
            loaded = len(raw_entries(data))
            if data.next_cursor and (position is None or position > loaded):
                # The insertion point is beyond what is cached
                return data
            entries = [PlaylistTrackEntry.from_catalog_track(t, added_at=added_at) for t in tracks]
            return apply_add(data, entries, position)

        async def write(_base_snapshot):
            return await self.gateway.add_tracks(playlist_id, uris, position)

        async def confirmed(snapshot_id):
            await self._confirm_snapshot(playlist_id, snapshot_id)

        mutation = Mutation(kind="add", playlist_id=playlist_id)
        return await self._execute(mutation, patch, write, confirmed)

    async def remove_tracks(self, playlist_id: str, tracks: Sequence[TrackToRemove]) -> Mutation:
        """Remove tracks; entries with positions target only those occurrences."""
        validate_playlist_id(playlist_id)
        tracks = validate_removals(tracks)

        def patch(data: PagedTracks) -> PagedTracks:
            return apply_remove(data, tracks)

        async def write(_base_snapshot):
            return await self.gateway.remove_tracks(playlist_id, tracks)

        async def confirmed(snapshot_id):
            await self._confirm_snapshot(playlist_id, snapshot_id)

        mutation = Mutation(kind="remove", playlist_id=playlist_id)
        return await self._execute(mutation, patch, write, confirmed)

    async def reorder(self, playlist_id: str, from_index: int, to_index: int,
                      range_length: int = 1) -> Mutation:
        """Move `range_length` tracks starting at `from_index` before `to_index`."""
        validate_playlist_id(playlist_id)
        validate_reorder(from_index, to_index, range_length)

        def patch(data: PagedTracks) -> PagedTracks:
            return apply_reorder(data, from_index, to_index, range_length)

        async def write(base_snapshot):
            return await self.gateway.reorder(playlist_id, from_index, to_index, range_length, base_snapshot)

        async def confirmed(snapshot_id):
            self.store.update_snapshot_id(playlist_id, snapshot_id)
            # Take the remote's own ordering rather than trusting local arithmetic
            try:
                await self.store.refetch(playlist_id)
            except FetchCancelled:
                logger.debug(f"Post-reorder refetch for playlist {playlist_id} was superseded")
            except Exception as e:
                logger.warning(f"Post-reorder refetch for playlist {playlist_id} failed: {e}")

        mutation = Mutation(kind="reorder", playlist_id=playlist_id)
        return await self._execute(mutation, patch, write, confirmed)
