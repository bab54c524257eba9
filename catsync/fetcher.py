"""Feed downloads.

Everything fetched is stored gzip-compressed in the cache, and the cache is
consulted before any request: a document that is already there (including a
product quarantined as denied) is never downloaded again.
"""

import gzip
import os
import random
import tempfile
import time
from pathlib import Path
from typing import Optional, Protocol, Tuple
from urllib.parse import quote

import requests  # type: ignore[import-untyped]

from catsync.cache import CatalogCache
from catsync.config import (
    HEADERS,
    ICECAT_DOMAIN,
    MAX_RETRIES,
    MAX_RETRY_BACKOFF,
    REMOTE_PRODUCT_QUERY,
    REQUEST_TIMEOUT,
    RETRY_BACKOFF_BASE,
    RETRY_STATUS_CODES,
)
from catsync.errors import FetchError
from catsync.logging_config import get_logger
from catsync.models import IndexEntry

__all__ = ["Fetcher", "HttpFetcher", "create_session"]

logger = get_logger("fetcher")

GZIP_MAGIC = b"\x1f\x8b"


class Fetcher(Protocol):
    def fetch(self, remote_path: str, target: Optional[Path] = None, refresh: bool = False) -> Path:
        """Download a feed document into the cache and return its local path."""
        ...


def create_session(auth: Optional[Tuple[str, str]] = None) -> requests.Session:
    """Create a requests Session with the feed headers and optional basic auth."""
    session = requests.Session()
    session.headers.update(HEADERS)
    session.headers.setdefault("Accept-Encoding", "gzip, deflate")
    if auth:
        session.auth = auth
    return session


def _backoff(attempt: int) -> float:
    return min(RETRY_BACKOFF_BASE ** attempt, MAX_RETRY_BACKOFF) + random.uniform(0, 1)


class HttpFetcher:
    """Fetches feed documents over HTTPS into a CatalogCache.

    Args:
        cache: Initialized cache the documents are stored in
        domain: Feed host
        auth: Optional (username, password) forwarded as basic auth
        session: Optional requests.Session for connection reuse
    """

    def __init__(
        self,
        cache: CatalogCache,
        domain: str = ICECAT_DOMAIN,
        auth: Optional[Tuple[str, str]] = None,
        session: Optional[requests.Session] = None,
    ):
        self.cache = cache
        self.domain = domain
        self.session = session or create_session(auth)
        if session is not None and auth:
            self.session.auth = auth

    def url_for(self, remote_path: str) -> str:
        return f"https://{self.domain}/{remote_path.lstrip('/')}"

    # =========================================================================
    # Generic download
    # =========================================================================

    def fetch(self, remote_path: str, target: Optional[Path] = None, refresh: bool = False) -> Path:
        """Download remote_path into target, unless target already exists.

        Args:
            remote_path: Path relative to the feed root
            target: Local file; defaults to the tmp directory of the cache
            refresh: Download even when target exists, for documents the
                feed republishes under the same name

        Returns:
            Path of the (gzip-compressed) local copy

        Raises:
            FetchError: If the request fails after all retries
        """
        if target is None:
            name = Path(remote_path.split("?", 1)[0]).name or "download"
            if not name.endswith(".gz"):
                name += ".gz"
            target = self.cache.tmp_directory / name
        target = Path(target)
        if target.exists() and not refresh:
            logger.debug(f"Using cached {target.name}")
            return target

        body = self._get(self.url_for(remote_path))
        self._store(body, target)
        logger.info(f"Fetched {remote_path} -> {target}")
        return target

    def _get(self, url: str) -> bytes:
        """GET with exponential backoff on throttling, server errors,
        connection errors and timeouts."""
        for attempt in range(MAX_RETRIES + 1):
            try:
                resp = self.session.get(url, timeout=REQUEST_TIMEOUT)

                if resp.status_code in RETRY_STATUS_CODES and attempt < MAX_RETRIES:
                    backoff = _backoff(attempt)
                    logger.warning(
                        f"Received {resp.status_code}, backing off {backoff:.1f}s "
                        f"(attempt {attempt + 1}/{MAX_RETRIES})"
                    )
                    time.sleep(backoff)
                    continue

                resp.raise_for_status()
                return resp.content

            except requests.exceptions.HTTPError as e:
                status_code = e.response.status_code if e.response is not None else "unknown"
                logger.error(f"HTTP error fetching {url}: {e}")
                raise FetchError(f"HTTP Error {status_code} fetching {url}") from e

            except (requests.exceptions.ConnectionError, requests.exceptions.Timeout) as e:
                if attempt < MAX_RETRIES:
                    backoff = _backoff(attempt)
                    logger.warning(
                        f"{type(e).__name__}, backing off {backoff:.1f}s "
                        f"(attempt {attempt + 1}/{MAX_RETRIES})"
                    )
                    time.sleep(backoff)
                    continue
                logger.error(f"Giving up on {url}: {e}")
                raise FetchError(f"Failed to fetch {url}: {e}") from e

            except requests.exceptions.RequestException as e:
                logger.error(f"Request error fetching {url}: {e}")
                raise FetchError(f"Failed to fetch {url}: {e}") from e

        raise FetchError(f"Failed to fetch {url} after {MAX_RETRIES} retries")

    def _store(self, body: bytes, target: Path) -> None:
        """Write body gzip-compressed to target, via a temporary file."""
        target.parent.mkdir(parents=True, exist_ok=True)
        if not body.startswith(GZIP_MAGIC):
            body = gzip.compress(body)

        fd, partial_name = tempfile.mkstemp(suffix=".part", dir=self.cache.tmp_directory)
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(body)
            os.replace(partial_name, target)
        finally:
            if os.path.exists(partial_name):
                os.unlink(partial_name)

    # =========================================================================
    # Products
    # =========================================================================

    def fetch_product(self, entry: IndexEntry) -> Path:
        """Fetch the product document an index entry points at."""
        cached = self.cache.find_by_product_id(entry.product_id)
        if cached is not None:
            return cached
        if not entry.path:
            raise FetchError(f"Index entry for {entry.product_id} has no path")
        return self.fetch(entry.path, self.cache.path_for(entry.product_id))

    def fetch_related(self, product_id: str, supplier: Optional[str]) -> Path:
        """Fetch a product known only by id and supplier name."""
        cached = self.cache.find_by_product_id(product_id)
        if cached is not None:
            return cached
        if not supplier:
            raise FetchError(f"No supplier known for related product {product_id}")
        remote_path = REMOTE_PRODUCT_QUERY.format(
            product_id=quote(product_id, safe=""),
            supplier=quote(supplier, safe=""),
        )
        return self.fetch(remote_path, self.cache.path_for(product_id))
