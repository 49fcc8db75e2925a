import argparse
import asyncio
import logging
import sys
import time
from typing import Callable, List, Optional, Sequence

from dotenv import load_dotenv

from playlist_studio.application.cache_patches import raw_entries
from playlist_studio.application.editor import PlaylistEditor
from playlist_studio.application.events import EventBus
from playlist_studio.application.match_cache import MatchCache, MatchStatus
from playlist_studio.application.markers import InsertionMarkerStore, add_to_markers
from playlist_studio.application.matching import deduplicate_matches, filter_by_confidence
from playlist_studio.application.reconciler import Mutation, MutationReconciler, MutationState
from playlist_studio.application.track_cache import PlaylistTracksQuery, TrackCacheStore
from playlist_studio.crosscutting.config import ConfigError, StudioSettings, get_secret_manager
from playlist_studio.crosscutting.logging import setup_logging
from playlist_studio.crosscutting.metrics import MetricsCollector
from playlist_studio.domain.entities import CatalogTrack, MatchConfidence, TrackToRemove
from playlist_studio.domain.errors import InvalidRequest, TokenExpired
from playlist_studio.domain.ports import CatalogService
from playlist_studio.infrastructure.gateways import EditorGateway
from playlist_studio.infrastructure.providers.lastfm import LastfmImporter, TOP_PERIODS
from playlist_studio.infrastructure.providers.spotify import SpotifyCatalog

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_TOKEN_EXPIRED = 2
EXIT_INTERRUPTED = 130

logger = logging.getLogger(__name__)


class StudioSession:
    """Wires the client-side cache, reconciler and match cache to an in-process gateway."""

    def __init__(self, catalog: CatalogService, settings: StudioSettings,
                 notify: Optional[Callable[[str], None]] = None):
        self.editor = PlaylistEditor(catalog, batch_size=settings.write_batch_size,
                                     metrics=MetricsCollector())
        self.gateway = EditorGateway(self.editor)
        self.bus = EventBus()
        self.store = TrackCacheStore(self.gateway)
        self.unbind = self.store.bind(self.bus)
        self.reconciler = MutationReconciler(self.store, self.gateway, bus=self.bus, notify=notify)
        self.match_cache = MatchCache(self.gateway, batch_size=settings.match_batch_size,
                                      limit=settings.search_limit)
        self.markers = InsertionMarkerStore()

    async def load(self, playlist_id: str) -> PlaylistTracksQuery:
        query = PlaylistTracksQuery(self.store)
        await query.switch(playlist_id)
        return query


class CLI:
    """Command Line Interface for Playlist Studio."""

    def __init__(self, catalog_factory: Optional[Callable[[StudioSettings], CatalogService]] = None,
                 lastfm_factory: Optional[Callable[[StudioSettings], LastfmImporter]] = None):
        self.parser = self._create_parser()
        self.catalog_factory = catalog_factory or self._create_catalog
        self.lastfm_factory = lastfm_factory or self._create_lastfm
        self._start_time = None

    def _create_parser(self) -> argparse.ArgumentParser:
        """Create argument parser."""
        common = argparse.ArgumentParser(add_help=False)
        common.add_argument('--log-level', choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
                            default='WARNING', help='Set logging level')
        common.add_argument('--json-logs', action='store_true', help='Emit structured JSON logs')
        common.add_argument('--log-file', default=None, help='Also write JSON logs to a rotating file')

        parser = argparse.ArgumentParser(
            prog='playlist-studio',
            description='Edit Spotify playlists and match Last.fm listening history'
        )
        subparsers = parser.add_subparsers(dest='command', help='Available commands')

        tracks_parser = subparsers.add_parser('tracks', parents=[common], help='List playlist tracks')
        tracks_parser.add_argument('--playlist', required=True, help='Playlist ID')

        match_parser = subparsers.add_parser('match', parents=[common],
                                             help='Match Last.fm tracks to Spotify')
        match_parser.add_argument('--user', required=True, help='Last.fm username')
        match_parser.add_argument('--source', choices=['recent', 'loved', 'top', 'weekly'],
                                  default='recent', help='Listening history source')
        match_parser.add_argument('--period', choices=TOP_PERIODS, default='overall',
                                  help='Period for the top source')
        match_parser.add_argument('--limit', type=int, default=20, help='Tracks to import')
        match_parser.add_argument('--add-to', default=None, help='Append matches to this playlist')
        match_parser.add_argument('--min-confidence', choices=['high', 'medium', 'low'],
                                  default='high', help='Lowest confidence added with --add-to')

        add_parser = subparsers.add_parser('add', parents=[common], help='Add tracks')
        add_parser.add_argument('--playlist', required=True, help='Playlist ID')
        add_parser.add_argument('--uris', nargs='+', required=True, help='spotify:track: URIs')
        where = add_parser.add_mutually_exclusive_group()
        where.add_argument('--position', type=int, default=None, help='Insert before this index')
        where.add_argument('--markers', nargs='+', type=int, default=None,
                           help='Insert the tracks at each of these marker indexes')

        remove_parser = subparsers.add_parser('remove', parents=[common], help='Remove tracks')
        remove_parser.add_argument('--playlist', required=True, help='Playlist ID')
        target = remove_parser.add_mutually_exclusive_group(required=True)
        target.add_argument('--positions', nargs='+', type=int, help='Positions to remove')
        target.add_argument('--uris', nargs='+', help='Remove every occurrence of these URIs')

        reorder_parser = subparsers.add_parser('reorder', parents=[common], help='Move a range of tracks')
        reorder_parser.add_argument('--playlist', required=True, help='Playlist ID')
        reorder_parser.add_argument('--from', dest='from_index', type=int, required=True,
                                    help='First index of the range')
        reorder_parser.add_argument('--to', dest='to_index', type=int, required=True,
                                    help='Insert-before index')
        reorder_parser.add_argument('--length', type=int, default=1, help='Range length')

        serve_parser = subparsers.add_parser('serve', parents=[common], help='Run the HTTP server')
        serve_parser.add_argument('--host', default='127.0.0.1')
        serve_parser.add_argument('--port', type=int, default=8080)

        return parser

    def _create_catalog(self, settings: StudioSettings) -> CatalogService:
        secrets = get_secret_manager()
        access_token = secrets.get_spotify_access_token()
        if not access_token:
            raise ConfigError("SPOTIFY_ACCESS_TOKEN is required (environment or tokens.json)")
        return SpotifyCatalog(
            access_token,
            refresh_token=secrets.get_spotify_refresh_token(),
            market=settings.market,
            requests_timeout=settings.request_timeout,
            secret_manager=secrets,
        )

    def _create_lastfm(self, settings: StudioSettings) -> LastfmImporter:
        if not settings.lastfm_api_key:
            raise ConfigError("LASTFM_API_KEY environment variable is required")
        return LastfmImporter(settings.lastfm_api_key, user_agent=settings.lastfm_user_agent,
                              timeout=settings.request_timeout)

    def _cleanup_resources(self) -> None:
        if self._start_time:
            duration = time.time() - self._start_time
            logger.info(f"CLI execution time: {duration:.2f}s")

    @staticmethod
    def _print_notification(message: str) -> None:
        print(f"! {message}", file=sys.stderr)

    @staticmethod
    def _report(mutation: Mutation) -> int:
        if mutation.state == MutationState.CONFIRMED:
            print(f"{mutation.kind} confirmed (snapshot {mutation.snapshot_id})")
            return EXIT_OK
        print(f"{mutation.kind} {mutation.state.value}: {mutation.error}", file=sys.stderr)
        return EXIT_ERROR

    async def _tracks(self, session: StudioSession, args: argparse.Namespace) -> int:
        query = await session.load(args.playlist)
        state = query.state
        if state.error is not None:
            raise state.error
        for entry in state.all_tracks:
            print(f"{entry.position:>4}. {', '.join(entry.artists)} - {entry.name} ({entry.uri})")
        print(f"{len(state.all_tracks)} of {state.total} tracks (snapshot {state.snapshot_id})")
        return EXIT_OK

    async def _match(self, session: StudioSession, args: argparse.Namespace,
                     settings: StudioSettings) -> int:
        importer = self.lastfm_factory(settings)
        imported = importer.fetch(args.source, args.user, limit=max(1, args.limit), period=args.period)
        entries = await session.match_cache.match_tracks(imported.tracks)

        results = []
        for track, entry in zip(imported.tracks, entries):
            if entry.status == MatchStatus.MATCHED and entry.result is not None:
                result = entry.result
                results.append(result)
                label = f"{', '.join(result.track.artists)} - {result.track.name}" if result.track else "-"
                print(f"[{result.confidence.value:>6} {result.score:>3}] "
                      f"{track.artist_name} - {track.track_name} => {label}")
            else:
                print(f"[failed    ] {track.artist_name} - {track.track_name}: {entry.error}")

        if not args.add_to:
            return EXIT_OK
        selected = deduplicate_matches(filter_by_confidence(results, MatchConfidence(args.min_confidence)))
        if not selected:
            print("No matches meet the confidence threshold")
            return EXIT_OK
        await session.load(args.add_to)
        mutation = await session.reconciler.add_tracks(args.add_to, [r.track for r in selected])
        return self._report(mutation)

    async def _add(self, session: StudioSession, args: argparse.Namespace) -> int:
        await session.load(args.playlist)
        tracks = [CatalogTrack(id=uri.rsplit(':', 1)[-1], uri=uri, name='') for uri in args.uris]
        if args.markers:
            return await self._add_at_markers(session, args.playlist, tracks, args.markers)
        mutation = await session.reconciler.add_tracks(args.playlist, tracks, args.position)
        return self._report(mutation)

    async def _add_at_markers(self, session: StudioSession, playlist_id: str,
                              tracks: List[CatalogTrack], indexes: Sequence[int]) -> int:
        for index in indexes:
            session.markers.add_marker(playlist_id, index)
        marker_count = len(session.markers.get_markers(playlist_id))
        outcome = await add_to_markers(session.reconciler, session.markers, tracks)
        counts = outcome.get(playlist_id, {"succeeded": 0, "failed": marker_count})
        shifted = [m.index for m in session.markers.get_markers(playlist_id)]
        print(f"Inserted {len(tracks)} track(s) at {counts['succeeded']} of {marker_count} markers "
              f"(markers now at {shifted})")
        return EXIT_OK if counts["failed"] == 0 else EXIT_ERROR

    async def _remove(self, session: StudioSession, args: argparse.Namespace) -> int:
        await session.load(args.playlist)
        if args.uris:
            targets = [TrackToRemove(uri=uri) for uri in args.uris]
        else:
            data = session.store.get_data(args.playlist)
            by_position = {e.position: e.uri for e in raw_entries(data)} if data else {}
            missing = [p for p in args.positions if p not in by_position]
            if missing:
                raise InvalidRequest(f"Positions not in playlist: {missing}")
            grouped = {}
            for position in args.positions:
                grouped.setdefault(by_position[position], []).append(position)
            targets = [TrackToRemove(uri=uri, positions=tuple(p)) for uri, p in grouped.items()]
        mutation = await session.reconciler.remove_tracks(args.playlist, targets)
        return self._report(mutation)

    async def _reorder(self, session: StudioSession, args: argparse.Namespace) -> int:
        await session.load(args.playlist)
        mutation = await session.reconciler.reorder(args.playlist, args.from_index,
                                                    args.to_index, args.length)
        return self._report(mutation)

    def _serve(self, args: argparse.Namespace, settings: StudioSettings) -> int:
        from playlist_studio.interfaces.http import HTTPServer

        HTTPServer(host=args.host, port=args.port, settings=settings).run()
        return EXIT_OK

    async def _dispatch(self, args: argparse.Namespace, settings: StudioSettings) -> int:
        session = StudioSession(self.catalog_factory(settings), settings, notify=self._print_notification)
        handlers = {
            'tracks': lambda: self._tracks(session, args),
            'match': lambda: self._match(session, args, settings),
            'add': lambda: self._add(session, args),
            'remove': lambda: self._remove(session, args),
            'reorder': lambda: self._reorder(session, args),
        }
        try:
            return await handlers[args.command]()
        finally:
            session.unbind()

    def run(self, argv: Optional[Sequence[str]] = None) -> int:
        """Run the CLI and return the process exit code."""
        self._start_time = time.time()
        args = self.parser.parse_args(argv)
        if not args.command:
            self.parser.print_help()
            return EXIT_ERROR

        setup_logging(args.log_level, log_file=args.log_file, json_logs=args.json_logs)
        try:
            settings = StudioSettings.from_env()
            if args.command == 'serve':
                return self._serve(args, settings)
            return asyncio.run(self._dispatch(args, settings))
        except TokenExpired:
            print("Spotify session expired. Refresh your access token and try again.", file=sys.stderr)
            return EXIT_TOKEN_EXPIRED
        except KeyboardInterrupt:
            logger.warning("Operation cancelled by user")
            return EXIT_INTERRUPTED
        except (ConfigError, InvalidRequest) as e:
            print(f"Error: {e}", file=sys.stderr)
            return EXIT_ERROR
        except Exception as e:
            logger.error(f"CLI error: {e}", exc_info=args.log_level == 'DEBUG')
            print(f"Error: {e}", file=sys.stderr)
            return EXIT_ERROR
        finally:
            self._cleanup_resources()


def main(argv: Optional[List[str]] = None) -> None:
    """Main entry point."""
    load_dotenv()
    sys.exit(CLI().run(argv))


if __name__ == '__main__':
    main()
