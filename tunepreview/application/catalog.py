import logging
from typing import Iterable, List, Optional, Tuple

from tunepreview.crosscutting.logging import log_search_complete
from tunepreview.domain.entities import Track, TrackRecord
from tunepreview.domain.ports import SearchProvider


logger = logging.getLogger(__name__)

DEFAULT_QUERY = "pop music"
DEFAULT_LIMIT = 20


def to_tracks(records: Iterable[TrackRecord]) -> List[Track]:
    """Convert raw search records into playable tracks.

    Records without a preview URL are dropped, and only the first record of
    each id is kept so ids stay unique within the result set.
    """
    tracks = []
    seen_ids = set()

    for record in records:
        preview_url = (record.preview_url or "").strip()
        if not preview_url:
            logger.debug(f"Skipping record {record.id} without preview URL")
            continue
        if record.id in seen_ids:
            logger.debug(f"Skipping duplicate record {record.id}")
            continue
        seen_ids.add(record.id)

        tracks.append(Track(
            id=record.id,
            title=record.title,
            artist=record.artist,
            preview_url=preview_url,
            album=record.album,
            genre=record.genre,
            artwork_url=record.artwork_url,
            duration_ms=record.duration_ms,
        ))

    return tracks


class TrackCatalog:
    """Active track collection produced by the most recent search."""

    def __init__(self,
                 provider: SearchProvider,
                 default_query: str = DEFAULT_QUERY,
                 limit: int = DEFAULT_LIMIT):
        """Initialize catalog.

        Args:
            provider: Search provider used to fetch records
            default_query: Query used when ``search`` is called without one
            limit: Default result-count limit
        """
        self._provider = provider
        self.default_query = default_query
        self.limit = limit
        self._tracks: Tuple[Track, ...] = ()
        self.last_query: Optional[str] = None

    @property
    def tracks(self) -> Tuple[Track, ...]:
        return self._tracks

    def __len__(self) -> int:
        return len(self._tracks)

    def __iter__(self):
        return iter(self._tracks)

    def search(self, query: Optional[str] = None, limit: Optional[int] = None) -> List[Track]:
        """Run a search and replace the working set with its playable tracks.

        Args:
            query: Free-text query; ``None`` uses the default query
            limit: Result-count limit; ``None`` uses the catalog default

        Returns:
            The new collection. A blank query leaves the collection unchanged.

        Raises:
            RateLimited, TemporaryFailure, PermanentFailure: from the provider.
            The previous collection is kept when the search fails.
        """
        if query is None:
            query = self.default_query
        query = query.strip()
        if not query:
            logger.debug("Ignoring blank search query")
            return list(self._tracks)

        limit = limit or self.limit
        records = self._provider.search(query, limit=limit)
        tracks = to_tracks(records)

        self._tracks = tuple(tracks)
        self.last_query = query
        log_search_complete(logger, query, len(records), len(tracks), limit=limit)
        return tracks

    def replace(self, tracks: Iterable[Track]) -> None:
        """Replace the working set directly."""
        self._tracks = tuple(tracks)

    def get(self, index: int) -> Track:
        """Get track by position. Negative indexes are rejected."""
        if index < 0 or index >= len(self._tracks):
            raise IndexError(f"Track index {index} out of range (0-{len(self._tracks) - 1})")
        return self._tracks[index]

    def find(self, track_id: str) -> Optional[Track]:
        return next((t for t in self._tracks if t.id == track_id), None)

    def index_of(self, track: Optional[Track]) -> Optional[int]:
        """Position of the track in the collection, matched by id."""
        if track is None:
            return None
        for index, candidate in enumerate(self._tracks):
            if candidate.id == track.id:
                return index
        return None

    def adjacent(self, track: Optional[Track], step: int) -> Optional[Track]:
        """Track ``step`` positions away from ``track``, without wraparound."""
        index = self.index_of(track)
        if index is None:
            return None
        target = index + step
        if target < 0 or target >= len(self._tracks):
            return None
        return self._tracks[target]
