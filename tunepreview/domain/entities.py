from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from .timefmt import format_millis


@dataclass(frozen=True)
class Track:
    """Playable media descriptor built from a search record.

    ``preview_url`` may be empty; such a track is listed but cannot be played.
    ``duration_ms`` is the nominal duration from the catalog and is only a
    fallback until the media resource reports the real one.
    """

    id: str
    title: str
    artist: str
    preview_url: str = ""
    album: Optional[str] = None
    genre: Optional[str] = None
    artwork_url: Optional[str] = None
    duration_ms: Optional[int] = None

    @property
    def is_playable(self) -> bool:
        return bool(self.preview_url and self.preview_url.strip())

    @property
    def display_name(self) -> str:
        if self.artist:
            return f"{self.artist} - {self.title}"
        return self.title


@dataclass(frozen=True)
class TrackRecord:
    """Raw record returned by a search provider."""

    id: str
    title: str
    artist: str = ""
    album: Optional[str] = None
    artwork_url: Optional[str] = None
    preview_url: Optional[str] = None
    duration_ms: Optional[int] = None
    genre: Optional[str] = None
    price: Optional[float] = None
    currency: Optional[str] = None
    release_date: Optional[str] = None


@dataclass(frozen=True)
class MediaStatus:
    """Status event emitted by a media backend for one open resource."""

    is_loaded: bool = False
    is_playing: bool = False
    is_buffering: bool = False
    position_ms: int = 0
    duration_ms: Optional[int] = None
    did_just_finish: bool = False
    error: Optional[str] = None


@dataclass(frozen=True)
class SessionSnapshot:
    """Client-visible state of a playback session at one point in time."""

    track: Optional[Track] = None
    playing: bool = False
    buffering: bool = False
    position_ms: int = 0
    duration_ms: Optional[int] = None

    @property
    def progress(self) -> float:
        if not self.duration_ms or self.duration_ms <= 0:
            return 0.0
        return max(0.0, min(1.0, self.position_ms / self.duration_ms))

    @property
    def elapsed_label(self) -> str:
        return format_millis(self.position_ms)

    @property
    def duration_label(self) -> str:
        if self.duration_ms is None:
            return "--:--"
        return format_millis(self.duration_ms)

    def to_json(self) -> dict:
        """Serialize snapshot for the HTTP surface."""
        track = None
        if self.track is not None:
            track = {
                "id": self.track.id,
                "title": self.track.title,
                "artist": self.track.artist,
                "album": self.track.album,
                "artworkUrl": self.track.artwork_url,
            }
        return {
            "track": track,
            "playing": self.playing,
            "buffering": self.buffering,
            "positionMillis": self.position_ms,
            "durationMillis": self.duration_ms,
            "progress": self.progress,
            "elapsed": self.elapsed_label,
            "duration": self.duration_label,
        }
