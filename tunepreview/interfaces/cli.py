import argparse
import json
import select
import signal
import sys
import time
from typing import List, Optional, TextIO

from dotenv import load_dotenv

from tunepreview.application.catalog import TrackCatalog
from tunepreview.application.session import PlaybackSession
from tunepreview.crosscutting.config import (
    DEFAULTS, ENV_PREFIX, ConfigError, PlayerConfig, get_config_manager
)
from tunepreview.crosscutting.logging import get_logger, setup_logging
from tunepreview.domain.entities import SessionSnapshot, Track
from tunepreview.domain.errors import PermanentFailure, RateLimited, TemporaryFailure
from tunepreview.domain.timefmt import format_millis
from tunepreview.infrastructure.media.mpv import MpvMediaBackend
from tunepreview.infrastructure.providers.itunes import ITunesSearchProvider

SKIP_MS = 10000

HELP_TEXT = """Commands:
  p          play / pause
  n          next track
  b          previous track
  s SECONDS  seek to position
  f / r      skip forward / back 10s
  NUMBER     play track NUMBER from the list
  l          list tracks
  i          show position
  q          quit"""


class ConsoleNotifier:
    """Notifier printing user-visible errors to stderr."""

    def __init__(self, stream: Optional[TextIO] = None):
        self.stream = stream or sys.stderr

    def notify(self, title: str, message: str) -> None:
        print(f"[{title}] {message}", file=self.stream)


class StatusPrinter:
    """Session listener printing a line whenever the transport state changes."""

    def __init__(self, stream: Optional[TextIO] = None):
        self.stream = stream or sys.stdout
        self._last = None

    def __call__(self, snapshot: SessionSnapshot) -> None:
        if snapshot.track is None:
            return
        key = (snapshot.track.id, snapshot.playing, snapshot.buffering)
        if key == self._last:
            return
        self._last = key
        print(format_snapshot(snapshot), file=self.stream)


def format_snapshot(snapshot: SessionSnapshot) -> str:
    if snapshot.track is None:
        return "Nothing loaded"
    if snapshot.buffering:
        state = "Loading"
    elif snapshot.playing:
        state = "Playing"
    else:
        state = "Paused"
    return (f"{state}: {snapshot.track.display_name} "
            f"[{snapshot.elapsed_label} / {snapshot.duration_label}]")


def format_track_line(number: int, track: Track) -> str:
    duration = format_millis(track.duration_ms) if track.duration_ms else "--:--"
    return f"{number:>3}. {track.artist} - {track.title} ({duration})"


class CLI:
    """Command Line Interface for tunepreview."""

    def __init__(self):
        """Initialize CLI."""
        # Do not auto-load .env to keep tests deterministic

        self.parser = self._create_parser()
        self._setup_signal_handlers()
        self._start_time = None
        self._session: Optional[PlaybackSession] = None
        self._backend: Optional[MpvMediaBackend] = None

    def _create_parser(self) -> argparse.ArgumentParser:
        """Create argument parser."""
        parser = argparse.ArgumentParser(
            prog='tunepreview',
            description='Search the iTunes catalog and play track previews'
        )

        subparsers = parser.add_subparsers(dest='command', help='Available commands')

        # Search command
        search_parser = subparsers.add_parser('search', help='Search tracks')
        search_parser.add_argument(
            'query',
            nargs='+',
            help='Free-text search query'
        )
        search_parser.add_argument(
            '--limit',
            type=int,
            default=None,
            help='Result limit (default from config or 20)'
        )
        search_parser.add_argument(
            '--json',
            action='store_true',
            help='Print results as JSON'
        )

        # Play command
        play_parser = subparsers.add_parser('play', help='Search and play previews interactively')
        play_parser.add_argument(
            'query',
            nargs='*',
            help='Free-text search query (default from config)'
        )
        play_parser.add_argument(
            '--index',
            type=int,
            default=1,
            help='Number of the track to start with (default: 1)'
        )
        play_parser.add_argument(
            '--limit',
            type=int,
            default=None,
            help='Result limit (default from config or 20)'
        )

        # Config command
        config_parser = subparsers.add_parser('config', help='Show or change configuration')
        config_parser.add_argument(
            'action',
            nargs='?',
            choices=['show', 'set', 'clear'],
            default='show',
            help='show (default), set KEY=VALUE..., or clear the saved settings'
        )
        config_parser.add_argument(
            'assignments',
            nargs='*',
            metavar='KEY=VALUE',
            help='Settings to save, e.g. VOLUME=60 or TUNEPREVIEW_COUNTRY=GB'
        )

        # Serve command
        serve_parser = subparsers.add_parser('serve', help='Run the HTTP control server')
        serve_parser.add_argument(
            '--host',
            default='localhost',
            help='Host to bind (default: localhost)'
        )
        serve_parser.add_argument(
            '--port',
            type=int,
            default=3000,
            help='Port to bind (default: 3000)'
        )

        for sub in subparsers.choices.values():
            sub.add_argument(
                '--log-level',
                choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
                default='WARNING',
                help='Set logging level'
            )

        return parser

    def _setup_signal_handlers(self) -> None:
        """Setup signal handlers for graceful shutdown."""
        def signal_handler(signum, frame):
            logger = get_logger(__name__)
            logger.warning(f"Received signal {signum}, shutting down gracefully...")
            self._cleanup_resources()
            sys.exit(130)  # Standard exit code for signal termination

        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

    def _cleanup_resources(self) -> None:
        """Release the playback session and any media processes."""
        logger = get_logger(__name__)
        if self._session is not None:
            self._session.dispose()
            self._session = None
        if self._backend is not None:
            self._backend.close_all()
            self._backend = None
        if self._start_time:
            duration = time.time() - self._start_time
            logger.debug(f"CLI execution time: {duration:.2f}s")

    def _validate_arguments(self, args: argparse.Namespace) -> None:
        """Validate CLI arguments."""
        limit = getattr(args, 'limit', None)
        if limit is not None and not 1 <= limit <= 200:
            raise ValueError("--limit must be between 1 and 200")
        index = getattr(args, 'index', None)
        if index is not None and index < 1:
            raise ValueError("--index must be 1 or greater")

    def _setup_logging(self, level: str) -> None:
        """Setup logging configuration."""
        setup_logging(level=level, structured=False)

    def _load_config(self) -> PlayerConfig:
        return get_config_manager().get_player_config()

    def _create_search_provider(self, config: PlayerConfig) -> ITunesSearchProvider:
        return ITunesSearchProvider(country=config.country, timeout=config.http_timeout)

    def _create_media_backend(self, config: PlayerConfig) -> MpvMediaBackend:
        return MpvMediaBackend(mpv_path=config.mpv_path, volume=config.volume)

    def _create_catalog(self, config: PlayerConfig) -> TrackCatalog:
        return TrackCatalog(
            self._create_search_provider(config),
            default_query=config.default_query,
            limit=config.search_limit,
        )

    def _run_search(self, catalog: TrackCatalog, query: Optional[str], limit: Optional[int]) -> List[Track]:
        """Run a search, exiting with a readable message on provider errors."""
        logger = get_logger(__name__)
        try:
            return catalog.search(query, limit=limit)
        except RateLimited as e:
            logger.error(f"Search rate limited, retry in {e.retry_after_ms}ms")
            print(f"Search is rate limited, try again in {e.retry_after_ms // 1000 or 1}s", file=sys.stderr)
        except (TemporaryFailure, PermanentFailure) as e:
            logger.error(f"Search failed: {e}")
            print(f"Failed to fetch songs: {e}", file=sys.stderr)
        sys.exit(1)

    def _search(self, args: argparse.Namespace) -> None:
        """Search and print tracks."""
        config = self._load_config()
        catalog = self._create_catalog(config)
        tracks = self._run_search(catalog, ' '.join(args.query), args.limit)

        if args.json:
            print(json.dumps([{
                'id': t.id,
                'title': t.title,
                'artist': t.artist,
                'album': t.album,
                'genre': t.genre,
                'durationMillis': t.duration_ms,
                'previewUrl': t.preview_url,
                'artworkUrl': t.artwork_url,
            } for t in tracks], indent=2, ensure_ascii=False))
            return

        if not tracks:
            print("No playable tracks found")
            return

        for number, track in enumerate(tracks, start=1):
            print(format_track_line(number, track))

    def _play(self, args: argparse.Namespace) -> None:
        """Search, then run the interactive transport loop."""
        logger = get_logger(__name__)
        config = self._load_config()
        catalog = self._create_catalog(config)

        query = ' '.join(args.query) if args.query else None
        tracks = self._run_search(catalog, query, args.limit)
        if not tracks:
            print("No playable tracks found")
            return

        backend = self._create_media_backend(config)
        if not backend.is_available():
            print(f"mpv not found at '{config.mpv_path}'; set TUNEPREVIEW_MPV_PATH", file=sys.stderr)
            sys.exit(1)

        self._backend = backend
        self._session = PlaybackSession(backend, catalog, ConsoleNotifier())
        self._session.subscribe(StatusPrinter())

        self._print_tracks(catalog)
        print(HELP_TEXT)

        start = min(args.index, len(catalog)) - 1
        self._session.play_index(start)
        logger.info(f"Interactive session {self._session.session_id} started")

        self._run_player_loop(self._session, backend, config.poll_interval)

    def _run_player_loop(self, session: PlaybackSession, backend: MpvMediaBackend,
                         poll_interval: float, stream: Optional[TextIO] = None) -> None:
        """Read commands from stdin and poll the backend between them."""
        stream = stream or sys.stdin
        while True:
            ready, _, _ = select.select([stream], [], [], poll_interval)
            if ready:
                line = stream.readline()
                if not line:
                    break
                if not self._handle_command(session, line):
                    break
            backend.poll()

    def _handle_command(self, session: PlaybackSession, line: str) -> bool:
        """Dispatch one interactive command. Returns False to quit."""
        parts = line.strip().split()
        if not parts:
            return True

        command = parts[0].lower()
        catalog = session.catalog

        if command in ('q', 'quit', 'exit'):
            return False
        if command in ('p', 'pause', 'play'):
            session.toggle()
        elif command == 'n':
            if not session.next():
                print("Already at the last track")
        elif command == 'b':
            if not session.previous():
                print("Already at the first track")
        elif command == 's':
            if len(parts) < 2:
                print("Usage: s SECONDS")
                return True
            try:
                seconds = float(parts[1])
            except ValueError:
                print(f"Invalid position: {parts[1]}")
                return True
            session.seek(int(seconds * 1000))
        elif command == 'f':
            session.seek(session.position_ms + SKIP_MS)
        elif command == 'r':
            session.seek(session.position_ms - SKIP_MS)
        elif command == 'l':
            self._print_tracks(catalog)
        elif command == 'i':
            print(format_snapshot(session.snapshot()))
        elif command.isdigit():
            try:
                track = catalog.get(int(command) - 1)
            except IndexError:
                print(f"No track {command}; choose 1-{len(catalog)}")
                return True
            session.select(track)
        else:
            print(HELP_TEXT)
        return True

    def _print_tracks(self, catalog: TrackCatalog) -> None:
        for number, track in enumerate(catalog.tracks, start=1):
            print(format_track_line(number, track))

    def _parse_assignments(self, assignments: List[str]) -> dict:
        """Turn KEY=VALUE arguments into prefixed settings."""
        if not assignments:
            raise ValueError("config set needs at least one KEY=VALUE")

        env_vars = {}
        for item in assignments:
            key, sep, value = item.partition('=')
            key = key.strip().upper()
            if key.startswith(ENV_PREFIX):
                key = key[len(ENV_PREFIX):]
            if not sep or key not in DEFAULTS:
                raise ValueError(
                    f"Invalid setting '{item}'; expected KEY=VALUE with KEY one of {', '.join(DEFAULTS)}"
                )
            env_vars[ENV_PREFIX + key] = value.strip()
        return env_vars

    def _config(self, args: argparse.Namespace) -> None:
        """Show, save or clear settings in the config directory."""
        logger = get_logger(__name__)
        manager = get_config_manager()

        if args.action == 'set':
            env_vars = self._parse_assignments(args.assignments)
            previous = manager.load_env_vars()
            manager.save_env_vars(env_vars)
            try:
                manager.get_player_config()
            except ConfigError:
                # Keep the saved file valid
                manager.clear_env_vars()
                if previous:
                    manager.save_env_vars(previous)
                raise
            logger.info(f"Saved settings: {', '.join(env_vars)}")
            print(f"Saved {len(env_vars)} setting(s) to {manager.env_file}")
        elif args.action == 'clear':
            manager.clear_env_vars()
            print(f"Cleared {manager.env_file}")

        self._show_config(args)

    def _show_config(self, args: argparse.Namespace) -> None:
        summary = get_config_manager().get_config_summary()
        print(json.dumps(summary, indent=2))
        if not summary.get('valid'):
            sys.exit(1)

    def _serve(self, args: argparse.Namespace) -> None:
        from tunepreview.interfaces.http import HTTPServer

        config = self._load_config()
        server = HTTPServer(host=args.host, port=args.port, config=config)
        try:
            server.run()
        finally:
            server.shutdown()

    def run(self, argv: Optional[List[str]] = None) -> None:
        """Run the CLI."""
        self._start_time = time.time()

        try:
            args = self.parser.parse_args(argv)

            if not args.command:
                self.parser.print_help()
                sys.exit(1)

            # Setup logging
            self._setup_logging(args.log_level)

            # Validate arguments
            self._validate_arguments(args)

            if args.command == 'search':
                self._search(args)
            elif args.command == 'play':
                self._play(args)
            elif args.command == 'config':
                self._config(args)
            elif args.command == 'serve':
                self._serve(args)
            else:
                self.parser.print_help()
                sys.exit(1)

        except KeyboardInterrupt:
            logger = get_logger(__name__)
            logger.warning("Operation cancelled by user")
            self._cleanup_resources()
            sys.exit(130)
        except ConfigError as e:
            print(f"Configuration error: {e}", file=sys.stderr)
            self._cleanup_resources()
            sys.exit(1)
        except ValueError as e:
            print(f"Error: {e}", file=sys.stderr)
            self._cleanup_resources()
            sys.exit(1)
        except Exception as e:
            logger = get_logger(__name__)
            logger.error(f"CLI error: {e}")
            self._cleanup_resources()
            sys.exit(1)
        finally:
            self._cleanup_resources()


def main():
    """Main entry point."""
    load_dotenv()
    cli = CLI()
    cli.run()


if __name__ == '__main__':
    main()
