import logging
import math
import os
import threading
from collections import deque
from datetime import datetime
from typing import Any, Dict, List, Optional

from flask import Flask, request, jsonify

from tunepreview.application.catalog import TrackCatalog
from tunepreview.application.session import PlaybackSession
from tunepreview.crosscutting.config import PlayerConfig
from tunepreview.domain.entities import Track
from tunepreview.domain.errors import (
    NotFound, PermanentFailure, RateLimited, SessionClosed, TemporaryFailure
)
from tunepreview.infrastructure.media.mpv import MpvMediaBackend
from tunepreview.infrastructure.providers.itunes import ITunesSearchProvider

VERSION = "0.1.0"


class RecordingNotifier:
    """Notifier keeping recent notifications for the status endpoint."""

    def __init__(self, maxlen: int = 20):
        self.notifications = deque(maxlen=maxlen)

    def notify(self, title: str, message: str) -> None:
        self.notifications.append({
            'title': title,
            'message': message,
            'timestamp': datetime.now().isoformat(),
        })

    def drain(self) -> List[Dict[str, str]]:
        items = list(self.notifications)
        self.notifications.clear()
        return items


def track_to_json(track: Track) -> Dict[str, Any]:
    return {
        'id': track.id,
        'title': track.title,
        'artist': track.artist,
        'album': track.album,
        'genre': track.genre,
        'artworkUrl': track.artwork_url,
        'previewUrl': track.preview_url,
        'durationMillis': track.duration_ms,
    }


class HTTPServer:
    """HTTP control surface for one playback session.

    Requests and the background backend poller are serialized through one
    lock, so the session only ever runs on one thread at a time.
    """

    def __init__(self,
                 host: str = 'localhost',
                 port: int = 3000,
                 debug: bool = False,
                 config: Optional[PlayerConfig] = None,
                 catalog: Optional[TrackCatalog] = None,
                 backend: Optional[Any] = None):
        """Initialize HTTP server."""
        self.host = host
        self.port = port
        self.debug = debug
        self.config = config or PlayerConfig()
        self.app = Flask(__name__)
        self.logger = logging.getLogger(__name__)

        # Version info
        self.version = VERSION
        self.commit = os.getenv('GIT_COMMIT', 'unknown')

        if backend is None:
            backend = MpvMediaBackend(mpv_path=self.config.mpv_path, volume=self.config.volume)
        if catalog is None:
            catalog = TrackCatalog(
                ITunesSearchProvider(country=self.config.country, timeout=self.config.http_timeout),
                default_query=self.config.default_query,
                limit=self.config.search_limit,
            )
        self.backend = backend
        self.catalog = catalog
        self.notifier = RecordingNotifier()
        self.session = PlaybackSession(self.backend, self.catalog, self.notifier)

        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._poller: Optional[threading.Thread] = None

        self._setup_routes()

    def _status_payload(self) -> Dict[str, Any]:
        payload = self.session.snapshot().to_json()
        payload['notifications'] = self.notifier.drain()
        return payload

    def _setup_routes(self) -> None:
        """Setup Flask routes."""

        @self.app.route('/health', methods=['GET'])
        def health_check():
            """Health check endpoint."""
            return jsonify({
                'status': 'healthy',
                'version': self.version,
                'commit': self.commit,
                'timestamp': datetime.now().isoformat()
            }), 200

        @self.app.route('/', methods=['GET'])
        def root():
            """Root endpoint with basic info."""
            return jsonify({
                'service': 'tunepreview HTTP Interface',
                'version': self.version,
                'endpoints': {
                    'health': '/health',
                    'tracks': '/tracks',
                    'search': '/search',
                    'play': '/play',
                    'toggle': '/toggle',
                    'next': '/next',
                    'previous': '/previous',
                    'seek': '/seek',
                    'status': '/status'
                }
            }), 200

        @self.app.route('/tracks', methods=['GET'])
        def list_tracks():
            with self._lock:
                return jsonify({
                    'query': self.catalog.last_query,
                    'tracks': [track_to_json(t) for t in self.catalog.tracks]
                }), 200

        @self.app.route('/search', methods=['POST'])
        def search():
            body = request.get_json(silent=True) or {}
            query = body.get('query')
            limit = body.get('limit')

            if query is not None and not isinstance(query, str):
                return jsonify({'error': 'query must be a string'}), 400
            if limit is not None and (isinstance(limit, bool) or not isinstance(limit, int)
                                      or not 1 <= limit <= 200):
                return jsonify({'error': 'limit must be an integer between 1 and 200'}), 400

            try:
                with self._lock:
                    tracks = self.catalog.search(query, limit=limit)
            except RateLimited as e:
                self.logger.warning(f"Search rate limited: retry in {e.retry_after_ms}ms")
                return jsonify({
                    'error': 'Search rate limited',
                    'retryAfterMs': e.retry_after_ms
                }), 429
            except TemporaryFailure as e:
                self.logger.error(f"Search failed: {e}")
                return jsonify({
                    'error': 'Failed to fetch songs',
                    'details': str(e)
                }), 502
            except (PermanentFailure, ValueError) as e:
                self.logger.error(f"Search rejected: {e}")
                return jsonify({
                    'error': 'Search rejected',
                    'details': str(e)
                }), 400

            return jsonify({
                'query': self.catalog.last_query,
                'tracks': [track_to_json(t) for t in tracks]
            }), 200

        @self.app.route('/play', methods=['POST'])
        def play():
            body = request.get_json(silent=True) or {}
            index = body.get('index')
            track_id = body.get('track_id')

            with self._lock:
                if track_id is not None:
                    track = self.catalog.find(str(track_id))
                    if track is None:
                        raise NotFound(f"Unknown track {track_id}")
                elif isinstance(index, int) and not isinstance(index, bool):
                    try:
                        track = self.catalog.get(index)
                    except IndexError as e:
                        return jsonify({'error': str(e)}), 404
                else:
                    return jsonify({'error': 'index or track_id is required'}), 400

                loaded = self.session.select(track)
                return jsonify({'issued': loaded, 'status': self._status_payload()}), 200

        @self.app.route('/toggle', methods=['POST'])
        def toggle():
            with self._lock:
                issued = self.session.toggle()
                return jsonify({'issued': issued, 'status': self._status_payload()}), 200

        @self.app.route('/next', methods=['POST'])
        def next_track():
            with self._lock:
                issued = self.session.next()
                return jsonify({'issued': issued, 'status': self._status_payload()}), 200

        @self.app.route('/previous', methods=['POST'])
        def previous_track():
            with self._lock:
                issued = self.session.previous()
                return jsonify({'issued': issued, 'status': self._status_payload()}), 200

        @self.app.route('/seek', methods=['POST'])
        def seek():
            body = request.get_json(silent=True) or {}
            position_ms = body.get('position_ms')
            if (isinstance(position_ms, bool) or not isinstance(position_ms, (int, float))
                    or not math.isfinite(position_ms)):
                return jsonify({'error': 'position_ms must be a number'}), 400

            with self._lock:
                target = self.session.seek(int(position_ms))
                return jsonify({'target': target, 'status': self._status_payload()}), 200

        @self.app.route('/status', methods=['GET'])
        def status():
            with self._lock:
                return jsonify(self._status_payload()), 200

        @self.app.errorhandler(NotFound)
        def not_found(error):
            return jsonify({'error': str(error)}), 404

        @self.app.errorhandler(SessionClosed)
        def session_closed(error):
            return jsonify({'error': 'Session closed', 'details': str(error)}), 409

    def poll_once(self) -> None:
        """Deliver pending backend status events to the session."""
        poll = getattr(self.backend, 'poll', None)
        if poll is None:
            return
        with self._lock:
            if self.session.is_alive:
                poll()

    def _poll_loop(self) -> None:
        while not self._stop.wait(self.config.poll_interval):
            try:
                self.poll_once()
            except Exception as e:
                self.logger.error(f"Backend poll failed: {e}")

    def start_poller(self) -> None:
        if self._poller is not None:
            return
        self._stop.clear()
        self._poller = threading.Thread(target=self._poll_loop, name='tunepreview-poller', daemon=True)
        self._poller.start()

    def shutdown(self) -> None:
        """Stop polling and release the session."""
        self._stop.set()
        if self._poller is not None:
            self._poller.join(timeout=2.0)
            self._poller = None
        with self._lock:
            self.session.dispose()
            close_all = getattr(self.backend, 'close_all', None)
            if close_all is not None:
                close_all()

    def run(self) -> None:
        """Run the HTTP server."""
        self.logger.info(f"Starting tunepreview HTTP server on {self.host}:{self.port}")
        self.start_poller()
        self.app.run(
            host=self.host,
            port=self.port,
            debug=self.debug,
            use_reloader=False
        )


def create_app(catalog: Optional[TrackCatalog] = None, backend: Optional[Any] = None) -> Flask:
    """Create Flask app for testing."""
    server = HTTPServer(catalog=catalog, backend=backend)
    return server.app
