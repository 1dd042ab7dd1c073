from __future__ import annotations

from typing import Any, Callable, List, Protocol

from .entities import MediaStatus, TrackRecord

MediaHandle = Any
StatusCallback = Callable[[MediaHandle, MediaStatus], None]


class SearchProvider(Protocol):
    """Port for catalog search.

    Implementations map provider-specific payloads into ``TrackRecord`` entities
    and raise the domain error taxonomy (``RateLimited``, ``TemporaryFailure``,
    ``PermanentFailure``) on failure.
    """

    def search(self, term: str, limit: int = 20) -> List[TrackRecord]:
        """Return up to ``limit`` raw records matching the free-text term."""


class MediaBackend(Protocol):
    """Port for the media resource API.

    ``open`` returns an opaque single-owner handle immediately; loading
    completes asynchronously and is reported through ``on_status``. The
    callback receives the handle it belongs to and must never be invoked from
    inside ``open`` itself. ``close`` must be safe to call more than once.
    """

    def open(self, uri: str, autoplay: bool, on_status: StatusCallback) -> MediaHandle:
        """Acquire a resource bound to ``uri``."""

    def play(self, handle: MediaHandle) -> None:
        """Resume or start playback."""

    def pause(self, handle: MediaHandle) -> None:
        """Pause playback."""

    def seek(self, handle: MediaHandle, position_ms: int) -> None:
        """Jump to an absolute offset."""

    def close(self, handle: MediaHandle) -> None:
        """Stop and free the resource."""


class Notifier(Protocol):
    """Port for user-visible notifications."""

    def notify(self, title: str, message: str) -> None:
        """Show a single notification to the user."""
