class RateLimited(Exception):
    """Operation was rate limited by provider. Includes suggested wait time in milliseconds."""

    def __init__(self, retry_after_ms: int, message: str = "Rate limited") -> None:
        super().__init__(message)
        self.retry_after_ms = retry_after_ms


class TemporaryFailure(Exception):
    """Transient provider or network failure. Retrying may succeed."""


class PermanentFailure(Exception):
    """Non-retriable failure due to invalid input."""


class NotFound(Exception):
    """Requested resource was not found."""


class PlaybackError(Exception):
    """Base class for failures at the playback session boundary."""


class UnplayableTrack(PlaybackError):
    """Track has no preview URI to play."""


class MediaOpenFailed(PlaybackError):
    """Media backend could not open the requested resource."""


class PlaybackFault(PlaybackError):
    """Open resource reported an error mid-stream."""


class SessionClosed(PlaybackError):
    """Operation attempted on a disposed session."""
