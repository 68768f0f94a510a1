"""Catalog API client for searching cards and their prices."""

import logging
import os
import re
import time
from typing import Dict, List, Optional

import requests

from cardscan.config import MAX_SEARCH_LIMIT
from cardscan.errors import RetrievalError
from cardscan.models import CandidateRecord

logger = logging.getLogger(__name__)


def _norm_set(value) -> str:
    value = value.lower() if isinstance(value, str) else ''
    value = re.sub(r'[–—−-]', '-', value)
    return ' '.join(re.sub(r'[^a-z0-9]+', ' ', value).split())


def _mapping(value) -> Dict:
    return value if isinstance(value, dict) else {}


def _same_number(a, b) -> bool:
    return a is not None and b is not None and str(a).strip().lower() == str(b).strip().lower()


class CatalogClient:
    """JustTCG card search, with reference images looked up on Lorcast."""

    BASE_URL = "https://api.justtcg.com/v1/cards"
    IMAGE_SEARCH_URL = "https://api.lorcast.com/v0/cards/search"
    GAME = "disney-lorcana"
    # Only this many rows get an image lookup per search
    MAX_IMAGE_LOOKUPS = 12
    IMAGE_LOOKUP_DELAY = 0.06

    def __init__(self, api_key: Optional[str] = None, session: Optional[requests.Session] = None,
                 timeout: float = 10.0, game: Optional[str] = None):
        """Initialize with API key from parameter or JUSTTCG_API_KEY environment variable."""
        self.api_key = api_key or os.getenv('JUSTTCG_API_KEY')
        if not self.api_key:
            raise ValueError("Catalog API key must be provided or set in JUSTTCG_API_KEY environment variable")

        self.timeout = timeout
        self.game = game or self.GAME
        self.session = session or requests.Session()
        self.session.headers.update({
            'accept': 'application/json',
            'x-api-key': self.api_key,
        })

    def search(
        self,
        query: str,
        limit: int = 12,
        condition: Optional[str] = None,
        printing: Optional[str] = None,
        include_images: bool = False,
    ) -> List[CandidateRecord]:
        """
        Search the catalog by free text.

        Raises:
            RetrievalError: On network failure, non-success status or malformed payload
        """
        params = {
            'q': query,
            'game': self.game,
            'limit': str(max(1, min(int(limit), MAX_SEARCH_LIMIT))),
        }
        if condition:
            params['condition'] = condition
        if printing:
            params['printing'] = printing

        rows = self._get_rows(params)[:MAX_SEARCH_LIMIT]
        if include_images:
            self._add_images(rows)
        return self._parse_rows(rows)

    def get_card(self, card_id: str, condition: Optional[str] = None,
                 include_images: bool = True) -> Optional[CandidateRecord]:
        """Fetch a single card by id. Returns None if the catalog has no such card."""
        params = {'cardId': card_id, 'game': self.game}
        if condition:
            params['condition'] = condition
        rows = self._get_rows(params)[:1]
        if include_images:
            self._add_images(rows)
        records = self._parse_rows(rows)
        return records[0] if records else None

    def _get_rows(self, params: Dict[str, str]) -> List[Dict]:
        try:
            response = self.session.get(self.BASE_URL, params=params, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            raise RetrievalError(f"Catalog request failed: {e}") from e

        try:
            payload = response.json()
        except ValueError:
            payload = {}
        if not isinstance(payload, dict):
            payload = {}

        if not response.ok:
            message = payload.get('error') or payload.get('message') or "Catalog request failed"
            raise RetrievalError(f"{message} (HTTP {response.status_code})", status_code=response.status_code)

        rows = payload.get('data')
        if not isinstance(rows, list):
            raise RetrievalError("Catalog response had no data list", status_code=response.status_code)
        return rows

    def _parse_rows(self, rows: List) -> List[CandidateRecord]:
        records = []
        for row in rows:
            record = CandidateRecord.from_dict(row)
            if record is None:
                logger.debug(f"Skipping catalog row without a name: {row!r:.80}")
                continue
            records.append(record)
        return records

    def _add_images(self, rows: List[Dict]) -> None:
        lookups = 0
        for row in rows:
            if lookups >= self.MAX_IMAGE_LOOKUPS:
                break
            if not isinstance(row, dict) or row.get('image') or not row.get('name'):
                continue
            if lookups:
                time.sleep(self.IMAGE_LOOKUP_DELAY)
            uri = self.lookup_image(row)
            lookups += 1
            if uri:
                row['image'] = uri

    def lookup_image(self, card: Dict) -> Optional[str]:
        """
        Find a reference image for a catalog row.

        Prefers a print with the same set and number, then the same number,
        then the same set, then the first result. Any failure returns None.
        """
        try:
            response = self.session.get(
                self.IMAGE_SEARCH_URL,
                params={'q': card.get('name'), 'unique': 'prints'},
                timeout=self.timeout,
            )
            if not response.ok:
                return None
            payload = response.json()
        except (requests.exceptions.RequestException, ValueError, AttributeError) as e:
            logger.debug(f"Image lookup failed for {card.get('name')}: {e}")
            return None

        results = _mapping(payload).get('results')
        if not isinstance(results, list):
            return None
        # Loosely typed payload: anything that is not an object is skipped
        results = [r for r in results if isinstance(r, dict)]

        number = card.get('number')
        set_value = card.get('set')
        if isinstance(set_value, dict):
            set_value = set_value.get('name')
        set_name = _norm_set(set_value)

        def set_of(result):
            value = result.get('set')
            return _norm_set(value.get('name') if isinstance(value, dict) else value)

        chosen = None
        if number is not None:
            chosen = next((r for r in results
                           if _same_number(r.get('collector_number'), number) and set_of(r) == set_name), None)
            if chosen is None:
                chosen = next((r for r in results if _same_number(r.get('collector_number'), number)), None)
        if chosen is None:
            chosen = next((r for r in results if set_of(r) == set_name), None)
        if chosen is None and results:
            chosen = results[0]
        if not chosen:
            return None

        digital = _mapping(_mapping(chosen.get('image_uris')).get('digital'))
        uri = digital.get('normal') or digital.get('small')
        return uri if isinstance(uri, str) else None


class CandidateRetriever:
    """Bounded catalog search for one scanning session."""

    def __init__(self, client: CatalogClient, limit: int = 12, include_images: bool = False):
        self.client = client
        self.limit = max(1, min(int(limit), MAX_SEARCH_LIMIT))
        self.include_images = include_images

    def retrieve(self, query: str, condition: Optional[str] = None,
                 printing: Optional[str] = None) -> List[CandidateRecord]:
        """Candidates for query text, at most `limit` of them."""
        logger.debug(f"Searching catalog for {query!r}")
        records = self.client.search(
            query,
            limit=self.limit,
            condition=condition,
            printing=printing,
            include_images=self.include_images,
        )
        return records[:self.limit]

    def details(self, card_id: str, condition: Optional[str] = None) -> Optional[CandidateRecord]:
        return self.client.get_card(card_id, condition=condition, include_images=True)
