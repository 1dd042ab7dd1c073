import logging
import uuid
from typing import Callable, List, Optional

from tunepreview.application.catalog import TrackCatalog
from tunepreview.crosscutting.logging import (
    CorrelationContext, log_error, log_track_failed, log_track_loading
)
from tunepreview.domain.entities import MediaStatus, SessionSnapshot, Track
from tunepreview.domain.errors import (
    MediaOpenFailed, PlaybackError, PlaybackFault, SessionClosed, UnplayableTrack
)
from tunepreview.domain.ports import MediaBackend, MediaHandle, Notifier
from tunepreview.domain.timefmt import clamp_position


logger = logging.getLogger(__name__)

SnapshotListener = Callable[[SessionSnapshot], None]

NOTIFICATION_TITLE = "Playback error"


class PlaybackSession:
    """Single active playback controller for one screen instance.

    Owns at most one media resource at a time. Client-visible state
    (``playing``, ``buffering``, ``position_ms``, ``duration_ms``) only changes
    from confirmed status events of the current resource; events from any
    other resource are discarded. Not thread-safe: every call, including
    backend status callbacks, must come from the same event loop.
    """

    def __init__(self,
                 backend: MediaBackend,
                 catalog: TrackCatalog,
                 notifier: Notifier,
                 session_id: Optional[str] = None):
        """Initialize session.

        Args:
            backend: Media resource API
            catalog: Active track collection used for next/previous
            notifier: Receives one notification per playback failure
            session_id: Correlation id for logs
        """
        self._backend = backend
        self._catalog = catalog
        self._notifier = notifier
        self.session_id = session_id or uuid.uuid4().hex[:12]

        self.current_track: Optional[Track] = None
        self.playing = False
        self.buffering = False
        self.position_ms = 0
        self.duration_ms: Optional[int] = None

        self._handle: Optional[MediaHandle] = None
        # Requested play state not yet confirmed by a status event
        self._desired_playing: Optional[bool] = None
        self._finish_handled = False
        self._alive = True
        self._listeners: List[SnapshotListener] = []

    def __enter__(self) -> "PlaybackSession":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.dispose()

    @property
    def is_alive(self) -> bool:
        return self._alive

    @property
    def has_resource(self) -> bool:
        return self._handle is not None

    @property
    def catalog(self) -> TrackCatalog:
        return self._catalog

    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(
            track=self.current_track,
            playing=self.playing,
            buffering=self.buffering,
            position_ms=self.position_ms,
            duration_ms=self.duration_ms,
        )

    def subscribe(self, listener: SnapshotListener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def unsubscribe(self, listener: SnapshotListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    # Transport operations

    def load_and_play(self, track: Track) -> bool:
        """Release the open resource and start playing ``track``.

        Returns:
            True if a resource was acquired, False if the track failed to open.
            A failure leaves ``current_track`` set to ``track``, stopped.
        """
        self._ensure_alive()

        with CorrelationContext(session_id=self.session_id, track_id=track.id):
            self._release()
            self.current_track = track
            self.playing = False
            self.buffering = False
            self.position_ms = 0
            self.duration_ms = None
            self._desired_playing = None
            self._finish_handled = False

            if not track.is_playable:
                self._fail(UnplayableTrack(f"'{track.title}' has no preview available"))
                return False

            log_track_loading(logger, track.id, track.preview_url)
            try:
                handle = self._backend.open(track.preview_url, True, self._on_status)
            except Exception as e:
                if not isinstance(e, PlaybackError):
                    e = MediaOpenFailed(f"Could not open '{track.title}': {e}")
                self._fail(e)
                return False

            self._handle = handle
            self.buffering = True
            self._desired_playing = True
            self._publish()
            return True

    def select(self, track: Track) -> bool:
        """Handle a tap on a track: toggles the current one, loads any other."""
        self._ensure_alive()
        if (self.current_track is not None and self._handle is not None
                and self.current_track.id == track.id):
            return self.toggle()
        return self.load_and_play(track)

    def play_index(self, index: int) -> bool:
        """Load the catalog track at ``index``. Raises IndexError when out of range."""
        self._ensure_alive()
        return self.load_and_play(self._catalog.get(index))

    def toggle(self) -> bool:
        """Pause if playing, resume if paused.

        The command is based on the pending requested state when the previous
        command is still unconfirmed, else on the confirmed ``playing`` flag.
        ``playing`` itself changes only when the backend confirms.

        Returns:
            True if a command was issued.
        """
        self._ensure_alive()
        handle = self._handle
        if self.current_track is None or handle is None:
            return False

        effective = self._desired_playing if self._desired_playing is not None else self.playing
        want_playing = not effective

        with CorrelationContext(session_id=self.session_id, track_id=self.current_track.id):
            try:
                if want_playing:
                    self._backend.play(handle)
                else:
                    self._backend.pause(handle)
            except Exception as e:
                self._fail(PlaybackFault(f"Could not {'resume' if want_playing else 'pause'} playback: {e}"))
                return False

        self._desired_playing = want_playing
        logger.debug(f"Requested {'play' if want_playing else 'pause'}")
        return True

    def next(self) -> bool:
        """Play the following track; no-op on the last one."""
        return self._step(1)

    def previous(self) -> bool:
        """Play the preceding track; no-op on the first one."""
        return self._step(-1)

    def seek(self, position_ms: int) -> Optional[int]:
        """Jump to ``position_ms``, clamped to ``[0, duration]``.

        Returns:
            The clamped target, or None when no resource is open.
        """
        self._ensure_alive()
        handle = self._handle
        if handle is None:
            return None

        duration_ms = self.duration_ms
        if duration_ms is None and self.current_track is not None:
            duration_ms = self.current_track.duration_ms
        target = clamp_position(position_ms, duration_ms)

        with CorrelationContext(session_id=self.session_id, track_id=self.current_track.id):
            try:
                self._backend.seek(handle, target)
            except Exception as e:
                self._fail(PlaybackFault(f"Could not seek: {e}"))
                return None

        return target

    def dispose(self) -> None:
        """Release the open resource. Later status events are ignored."""
        if not self._alive:
            return
        self._release()
        self._alive = False
        self.playing = False
        self.buffering = False
        self._desired_playing = None
        self._listeners.clear()
        logger.debug(f"Session {self.session_id} disposed")

    # Internals

    def _step(self, step: int) -> bool:
        self._ensure_alive()
        target = self._catalog.adjacent(self.current_track, step)
        if target is None:
            return False
        self.load_and_play(target)
        return True

    def _on_status(self, handle: MediaHandle, status: MediaStatus) -> None:
        """Apply a status event from the backend if it belongs to the open resource."""
        if not self._alive or handle is None or handle is not self._handle:
            logger.debug("Discarding stale status event")
            return

        track = self.current_track
        with CorrelationContext(session_id=self.session_id, track_id=track.id if track else None):
            if status.error:
                self._fail(PlaybackFault(status.error))
                return

            if status.did_just_finish:
                self._handle_finish(status)
                return

            if not status.is_loaded:
                return

            self.position_ms = max(0, int(status.position_ms or 0))
            if status.duration_ms:
                self.duration_ms = int(status.duration_ms)
            elif self.duration_ms is None and track is not None and track.duration_ms:
                self.duration_ms = track.duration_ms

            self.playing = bool(status.is_playing)
            self.buffering = bool(status.is_buffering)

            if (self._desired_playing is not None
                    and self.playing == self._desired_playing
                    and not self.buffering):
                self._desired_playing = None

            self._publish()

    def _handle_finish(self, status: MediaStatus) -> None:
        if self._finish_handled:
            logger.debug("Ignoring duplicate finish event")
            return
        self._finish_handled = True

        if status.duration_ms:
            self.duration_ms = int(status.duration_ms)
        self.position_ms = self.duration_ms if self.duration_ms is not None else max(0, int(status.position_ms or 0))
        self.playing = False
        self.buffering = False
        self._desired_playing = None
        self._publish()

        logger.info("Track finished")
        self._step(1)

    def _fail(self, error: Exception) -> None:
        track = self.current_track
        log_track_failed(logger, track.id if track else '', str(error),
                         error_type=type(error).__name__)
        self._release()
        self.playing = False
        self.buffering = False
        self._desired_playing = None

        try:
            self._notifier.notify(NOTIFICATION_TITLE, str(error))
        except Exception as e:
            log_error(logger, "Notifier failed", e)

        self._publish()

    def _release(self) -> None:
        handle = self._handle
        if handle is None:
            return
        # Cleared first so any callback fired while closing is already stale
        self._handle = None
        try:
            self._backend.close(handle)
        except Exception as e:
            log_error(logger, "Failed to release media resource", e)

    def _publish(self) -> None:
        if not self._listeners:
            return
        snapshot = self.snapshot()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception as e:
                log_error(logger, "Session listener failed", e)

    def _ensure_alive(self) -> None:
        if not self._alive:
            raise SessionClosed(f"Session {self.session_id} has been disposed")
