import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, List, Optional, Sequence

from playlist_studio.domain.entities import ImportedTrack, MatchResult
from playlist_studio.domain.errors import TokenExpired
from playlist_studio.domain.normalization import make_match_key
from playlist_studio.domain.ports import MatchService


logger = logging.getLogger(__name__)

DEFAULT_MATCH_BATCH_SIZE = 20


class MatchStatus(str, Enum):
    IDLE = "idle"
    PENDING = "pending"
    MATCHED = "matched"
    FAILED = "failed"


@dataclass(frozen=True)
class MatchCacheEntry:
    status: MatchStatus = MatchStatus.IDLE
    result: Optional[MatchResult] = None
    error: Optional[str] = None


_IDLE = MatchCacheEntry()


def track_key(track: ImportedTrack) -> str:
    return make_match_key(track.artist_name, track.track_name)


class MatchCache:
    """Process-local cache of match results keyed by normalized ``artist::track``.

    Only keys that are neither matched nor failed are sent to the match service,
    in batches. A failed batch marks its own keys failed and the remaining
    batches still run. Failed keys are not retried until ``forget`` or ``clear``.
    """

    def __init__(self, service: MatchService, batch_size: int = DEFAULT_MATCH_BATCH_SIZE,
                 limit: int = 5):
        self.service = service
        self.batch_size = max(1, batch_size)
        self.limit = limit
        self._entries: Dict[str, MatchCacheEntry] = {}

    def get(self, track: ImportedTrack) -> MatchCacheEntry:
        return self._entries.get(track_key(track), _IDLE)

    def get_result(self, track: ImportedTrack) -> Optional[MatchResult]:
        return self.get(track).result

    def set_pending(self, keys: Iterable[str]) -> None:
        for key in keys:
            self._entries[key] = MatchCacheEntry(status=MatchStatus.PENDING)

    def clear_pending(self, keys: Iterable[str]) -> None:
        """Drop keys still pending back to idle."""
        for key in keys:
            entry = self._entries.get(key)
            if entry is not None and entry.status == MatchStatus.PENDING:
                del self._entries[key]

    def set_results(self, results: Iterable[MatchResult]) -> None:
        for result in results:
            self._entries[track_key(result.imported)] = MatchCacheEntry(
                status=MatchStatus.MATCHED, result=result
            )

    def set_failed(self, keys: Iterable[str], error: str) -> None:
        for key in keys:
            self._entries[key] = MatchCacheEntry(status=MatchStatus.FAILED, error=error)

    def forget(self, track: ImportedTrack) -> None:
        self._entries.pop(track_key(track), None)

    def clear(self) -> None:
        self._entries.clear()

    def _uncached(self, tracks: Sequence[ImportedTrack]) -> List[ImportedTrack]:
        seen = set()
        pending: List[ImportedTrack] = []
        for track in tracks:
            key = track_key(track)
            if key in seen:
                continue
            seen.add(key)
            status = self._entries.get(key, _IDLE).status
            if status in (MatchStatus.MATCHED, MatchStatus.FAILED, MatchStatus.PENDING):
                continue
            pending.append(track)
        return pending

    async def _match_batch(self, batch: List[ImportedTrack]) -> None:
        keys = [track_key(t) for t in batch]
        try:
            results = await self.service.match_tracks(batch, limit=self.limit)
        except TokenExpired:
            self.set_failed(keys, "token_expired")
            raise
        except Exception as e:
            logger.warning(f"Match batch of {len(batch)} tracks failed: {e}")
            self.set_failed(keys, str(e) or type(e).__name__)
            return
        self.set_results(results)
        returned = {track_key(r.imported) for r in results}
        missing = [k for k in keys if k not in returned]
        if missing:
            self.set_failed(missing, "No result returned")

    async def match_tracks(self, tracks: Sequence[ImportedTrack]) -> List[MatchCacheEntry]:
        """Match tracks, reusing cached entries.

        Returns:
            One entry per input track, in input order
        """
        uncached = self._uncached(tracks)
        keys = [track_key(t) for t in uncached]
        if uncached:
            logger.info(f"Matching {len(uncached)} of {len(tracks)} tracks "
                        f"({len(tracks) - len(uncached)} cached)")
        self.set_pending(keys)
        try:
            for start in range(0, len(uncached), self.batch_size):
                await self._match_batch(uncached[start:start + self.batch_size])
        finally:
            self.clear_pending(keys)
        return [self.get(t) for t in tracks]

    def stats(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in MatchStatus}
        for entry in self._entries.values():
            counts[entry.status.value] += 1
        return counts
