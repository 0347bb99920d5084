import logging
import re
import time
from typing import Any, Dict, List, Optional

import httpx

from ..config import settings
from ..errors import ExternalServiceError

logger = logging.getLogger(__name__)

BASE_URL = "https://openlibrary.org"


class OpenLibraryClient:
    """Looks up book metadata on Open Library by ISBN."""

    def __init__(self, base_url: str = BASE_URL, timeout: Optional[float] = None,
                 retries: int = 3, backoff: float = 0.5) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout if timeout is not None else settings.openlibrary_timeout
        self.retries = retries
        self.backoff = backoff

    def fetch_metadata(self, isbn: str) -> Dict[str, Any]:
        """Return title, author, publisher, publication year and description.

        Raises ``LookupError`` when Open Library has no record for the ISBN
        and ``ExternalServiceError`` when it cannot be reached.
        """
        book_json = self._fetch_book_json(isbn)
        if not book_json or not book_json.get("title"):
            raise LookupError(f"No book found for ISBN {isbn}.")

        author_names: List[str] = []
        for item in book_json.get("authors", []) or []:
            if not isinstance(item, dict):
                continue
            if item.get("name"):
                author_names.append(item["name"])
                continue
            key = item.get("key")
            if key:
                name = self._fetch_author_name(key)
                if name:
                    author_names.append(name)

        metadata: Dict[str, Any] = {
            "title": book_json["title"],
            "author": ", ".join(author_names) if author_names else "Unknown Author",
        }
        publishers = [p.get("name") for p in book_json.get("publishers", []) or [] if isinstance(p, dict) and p.get("name")]
        if publishers:
            metadata["publisher"] = publishers[0]
        publish_date = book_json.get("publish_date")
        if publish_date:
            match = re.search(r"\b(\d{4})\b", str(publish_date))
            if match:
                metadata["publication_year"] = int(match.group(1))
        description = book_json.get("description")
        if isinstance(description, dict):
            metadata["description"] = description.get("value")
        elif description:
            metadata["description"] = str(description)
        logger.info(f"Open Library metadata found for ISBN {isbn}: {metadata['title']}")
        return metadata

    def _fetch_book_json(self, isbn: str) -> Optional[dict]:
        url = f"{self.base_url}/api/books?bibkeys=ISBN:{isbn}&format=json&jscmd=data"
        resp = self._get_with_retry(url)
        if resp is None:
            raise ExternalServiceError("Open Library unreachable")
        if resp.status_code == 200:
            return resp.json().get(f"ISBN:{isbn}")
        return None

    def _fetch_author_name(self, author_key: str) -> Optional[str]:
        resp = self._get_with_retry(f"{self.base_url}{author_key}.json")
        if resp is not None and resp.status_code == 200:
            return resp.json().get("name")
        return None

    def _get_with_retry(self, url: str) -> Optional[httpx.Response]:
        """GET with exponential backoff on transport errors; None once retries run out."""
        for attempt in range(self.retries):
            try:
                return httpx.get(url, timeout=self.timeout)
            except httpx.RequestError as exc:
                logger.warning(f"Open Library request failed (attempt {attempt + 1}/{self.retries}): {exc}")
                if attempt < self.retries - 1:
                    time.sleep(self.backoff * (2 ** attempt))
        return None
