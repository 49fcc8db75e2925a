import logging
from typing import Dict, Iterable, List, Optional, Sequence

from playlist_studio.domain.entities import CatalogTrack, ImportedTrack, MatchConfidence, MatchResult
from playlist_studio.domain.errors import TokenExpired
from playlist_studio.domain.normalization import normalize_text, sanitize_name
from playlist_studio.domain.ports import CatalogService


logger = logging.getLogger(__name__)

MAX_CANDIDATES = 5

_CONFIDENCE_RANK = {
    MatchConfidence.NONE: 0,
    MatchConfidence.LOW: 1,
    MatchConfidence.MEDIUM: 2,
    MatchConfidence.HIGH: 3,
}


def _quote(value: str) -> str:
    return value.replace('"', "")


def build_search_query(track: ImportedTrack, include_album: bool = False) -> str:
    """Build a field-qualified catalog query from sanitized track fields.

    Args:
        track: Imported track to search for
        include_album: Whether to add an ``album:`` qualifier when the track has one

    Returns:
        Query such as ``track:"bohemian rhapsody" artist:"queen"``
    """
    parts = [
        f'track:"{_quote(sanitize_name(track.track_name))}"',
        f'artist:"{_quote(sanitize_name(track.artist_name))}"',
    ]
    if include_album and track.album_name:
        album = sanitize_name(track.album_name)
        if album:
            parts.append(f'album:"{_quote(album)}"')
    return " ".join(parts)


def build_fallback_query(track: ImportedTrack) -> str:
    """Plain-text query used when field-qualified searches return nothing."""
    return f"{sanitize_name(track.track_name)} {sanitize_name(track.artist_name)}".strip()


def _jaccard(a: str, b: str) -> float:
    tokens_a = set(normalize_text(a).split())
    tokens_b = set(normalize_text(b).split())
    if not tokens_a or not tokens_b:
        return 0.0
    return len(tokens_a & tokens_b) / len(tokens_a | tokens_b)


def _positional_similarity(a: str, b: str) -> float:
    a, b = normalize_text(a), normalize_text(b)
    if a == b:
        return 1.0
    if not a or not b:
        return 0.0
    same = sum(1 for x, y in zip(a, b) if x == y)
    return same / max(len(a), len(b))


def string_similarity(a: str, b: str) -> float:
    """Blend of token Jaccard (60%) and same-index character overlap (40%), in [0, 1]."""
    return 0.6 * _jaccard(a, b) + 0.4 * _positional_similarity(a, b)


def is_effectively_equal(a: str, b: str) -> bool:
    return sanitize_name(a) == sanitize_name(b)


def score_match(imported: ImportedTrack, candidate: CatalogTrack) -> int:
    """Score a catalog candidate against an imported track.

    Weights: track name up to 40, artist up to 40, album up to 10 (only when both
    sides carry an album), popularity up to 10.

    Args:
        imported: Imported track reference
        candidate: Catalog track returned by search

    Returns:
        Integer score clamped to [0, 100]
    """
    score = 0.0

    imported_name = sanitize_name(imported.track_name)
    candidate_name = sanitize_name(candidate.name)
    if imported_name == candidate_name:
        score += 40
    else:
        score += string_similarity(imported_name, candidate_name) * 35

    imported_artist = sanitize_name(imported.artist_name)
    candidate_artists = [sanitize_name(a) for a in candidate.artists]
    if imported_artist in candidate_artists:
        score += 40
    elif candidate_artists:
        score += max(string_similarity(imported_artist, a) for a in candidate_artists) * 35

    candidate_album = candidate.album.name if candidate.album else None
    if imported.album_name and candidate_album:
        if is_effectively_equal(imported.album_name, candidate_album):
            score += 10
        else:
            score += string_similarity(sanitize_name(imported.album_name), sanitize_name(candidate_album)) * 8

    if candidate.popularity:
        score += max(0, min(candidate.popularity, 100)) / 100 * 10

    return max(0, min(100, round(score)))


def get_confidence(score: float) -> MatchConfidence:
    if score >= 80:
        return MatchConfidence.HIGH
    if score >= 60:
        return MatchConfidence.MEDIUM
    if score >= 40:
        return MatchConfidence.LOW
    return MatchConfidence.NONE


def confidence_rank(confidence: MatchConfidence) -> int:
    return _CONFIDENCE_RANK[MatchConfidence(confidence)]


def create_match_result(imported: ImportedTrack, candidates: Sequence[CatalogTrack]) -> MatchResult:
    """Score every candidate and keep the best one plus the top alternatives."""
    if not candidates:
        return MatchResult(imported=imported, confidence=MatchConfidence.NONE, score=0)

    # sorted() is stable, so equal scores keep the catalog's ranking
    scored = sorted(
        ((score_match(imported, c), c) for c in candidates),
        key=lambda pair: pair[0],
        reverse=True,
    )
    best_score, best = scored[0]
    return MatchResult(
        imported=imported,
        track=best,
        confidence=get_confidence(best_score),
        score=best_score,
        candidates=tuple(c for _, c in scored[:MAX_CANDIDATES]),
    )


def deduplicate_matches(results: Iterable[MatchResult]) -> List[MatchResult]:
    """Drop later results pointing at an already-seen catalog URI; unmatched results are kept."""
    seen = set()
    unique: List[MatchResult] = []
    for result in results:
        if result.track is None:
            unique.append(result)
            continue
        if result.track.uri in seen:
            continue
        seen.add(result.track.uri)
        unique.append(result)
    return unique


def filter_by_confidence(results: Iterable[MatchResult], minimum: MatchConfidence) -> List[MatchResult]:
    floor = confidence_rank(minimum)
    return [r for r in results if r.track is not None and confidence_rank(r.confidence) >= floor]


def get_match_statistics(results: Sequence[MatchResult]) -> Dict[str, object]:
    """Summarize a batch of match results.

    Args:
        results: Match results to summarize

    Returns:
        Dictionary with totals, match rate and a per-confidence breakdown
    """
    total = len(results)
    by_confidence = {c.value: 0 for c in MatchConfidence}
    for result in results:
        by_confidence[result.confidence.value] += 1
    matched = sum(1 for r in results if r.track is not None)
    return {
        "total": total,
        "matched": matched,
        "unmatched": total - matched,
        "match_rate": matched / total if total else 0.0,
        "by_confidence": by_confidence,
    }


class TrackMatcher:
    """Resolve imported tracks to catalog tracks through catalog search.

    Each track is searched with up to three queries, most specific first:
    1. Field-qualified track/artist/album query
    2. The same query without the album
    3. Plain-text "<track> <artist>" fallback

    The first query returning candidates wins; its candidates are scored with
    ``create_match_result``.
    """

    def __init__(self, catalog: CatalogService, search_limit: int = MAX_CANDIDATES):
        """Initialize the matcher.

        Args:
            catalog: Catalog service used for searching
            search_limit: Default number of candidates requested per query
        """
        self.catalog = catalog
        self.search_limit = search_limit

    def _queries(self, track: ImportedTrack) -> List[str]:
        queries = []
        if track.album_name:
            queries.append(build_search_query(track, include_album=True))
        queries.append(build_search_query(track, include_album=False))
        queries.append(build_fallback_query(track))
        return queries

    def find_candidates(self, track: ImportedTrack, limit: Optional[int] = None) -> List[CatalogTrack]:
        limit = limit or self.search_limit
        for query in self._queries(track):
            candidates = self.catalog.search_tracks(query, limit=limit)
            if candidates:
                logger.debug(f"Query '{query}' returned {len(candidates)} candidates")
                return candidates
        return []

    def match(self, track: ImportedTrack, limit: Optional[int] = None) -> MatchResult:
        """Match one imported track.

        Search failures other than an expired token are reported as a ``none`` result
        so one bad track never fails a whole batch.

        Args:
            track: Imported track to resolve
            limit: Candidates requested per search query

        Returns:
            MatchResult for the track
        """
        if not track.track_name or not track.artist_name:
            return MatchResult(imported=track, confidence=MatchConfidence.NONE, score=0)
        try:
            candidates = self.find_candidates(track, limit)
        except TokenExpired:
            raise
        except Exception as e:
            logger.warning(f"Search failed for '{track.artist_name} - {track.track_name}': {e}")
            return MatchResult(imported=track, confidence=MatchConfidence.NONE, score=0)
        return create_match_result(track, candidates)

    def match_many(self, tracks: Sequence[ImportedTrack], limit: Optional[int] = None) -> List[MatchResult]:
        results = [self.match(t, limit) for t in tracks]
        stats = get_match_statistics(results)
        logger.info(f"Matched {stats['matched']}/{stats['total']} tracks")
        return results
