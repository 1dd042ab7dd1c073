import logging
from typing import Any, Dict, List, Optional

import requests

from tunepreview.domain.entities import TrackRecord
from tunepreview.domain.errors import PermanentFailure, RateLimited, TemporaryFailure
from tunepreview.domain.ports import SearchProvider

logger = logging.getLogger(__name__)

SEARCH_URL = 'https://itunes.apple.com/search'
MAX_LIMIT = 200


class ITunesSearchProvider(SearchProvider):
    """iTunes Search API adapter implementing the SearchProvider port.

    Only song entities are requested. The API needs no credentials; it is
    rate limited per client and answers 403/429 when the limit is exceeded.
    """

    def __init__(self,
                 country: str = 'US',
                 timeout: float = 10.0,
                 session: Optional[requests.Session] = None):
        """Initialize the provider.

        Args:
            country: Two-letter store country code
            timeout: Request timeout in seconds
            session: Optional preconfigured requests session
        """
        self.country = country
        self.timeout = timeout
        self._session = session or requests.Session()

    def search(self, term: str, limit: int = 20) -> List[TrackRecord]:
        """Search songs matching the free-text term.

        Args:
            term: Free-text query
            limit: Maximum number of records, clamped to 1..200

        Returns:
            TrackRecord entities in API order
        """
        if not term or not term.strip():
            raise ValueError("Search term must not be empty")

        params = {
            'term': term.strip(),
            'entity': 'song',
            'media': 'music',
            'limit': max(1, min(MAX_LIMIT, int(limit))),
            'country': self.country,
        }

        logger.debug(f"Searching iTunes: {params['term']} (country={self.country}, limit={params['limit']})")

        try:
            response = self._session.get(SEARCH_URL, params=params, timeout=self.timeout)
        except requests.Timeout as e:
            raise TemporaryFailure(f"iTunes search timed out: {e}")
        except requests.RequestException as e:
            raise TemporaryFailure(f"iTunes search failed: {e}")

        self._raise_for_status(response)

        try:
            payload = response.json()
        except ValueError as e:
            raise TemporaryFailure(f"iTunes returned invalid JSON: {e}")

        results = payload.get('results') if isinstance(payload, dict) else None
        if not isinstance(results, list):
            return []

        records = []
        for item in results:
            record = self._item_to_record(item)
            if record:
                records.append(record)
        return records

    def _raise_for_status(self, response: requests.Response) -> None:
        status = response.status_code
        if status == 200:
            return

        if status == 429:
            retry_after = response.headers.get('Retry-After', '1')
            try:
                retry_after_ms = int(float(retry_after) * 1000)
            except ValueError:
                retry_after_ms = 1000
            raise RateLimited(retry_after_ms=retry_after_ms)
        if status >= 500:
            raise TemporaryFailure(f"iTunes search failed with HTTP {status}")
        raise PermanentFailure(f"iTunes search rejected with HTTP {status}")

    def _item_to_record(self, item: Dict[str, Any]) -> Optional[TrackRecord]:
        """Convert an iTunes result item to a TrackRecord.

        Returns:
            TrackRecord or None when the item lacks an id or a title
        """
        if not isinstance(item, dict):
            return None

        track_id = item.get('trackId')
        title = item.get('trackName')
        if track_id is None or not title:
            logger.debug(f"Skipping iTunes item without id or title: {item.get('wrapperType')}")
            return None

        duration_ms = item.get('trackTimeMillis')
        try:
            duration_ms = int(duration_ms) if duration_ms is not None else None
        except (TypeError, ValueError):
            duration_ms = None

        price = item.get('trackPrice')
        try:
            price = float(price) if price is not None else None
        except (TypeError, ValueError):
            price = None

        return TrackRecord(
            id=str(track_id),
            title=title,
            artist=item.get('artistName', ''),
            album=item.get('collectionName'),
            artwork_url=item.get('artworkUrl100'),
            preview_url=item.get('previewUrl'),
            duration_ms=duration_ms,
            genre=item.get('primaryGenreName'),
            price=price,
            currency=item.get('currency'),
            release_date=item.get('releaseDate'),
        )
