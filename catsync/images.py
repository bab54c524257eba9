"""Image resolution.

Product images in the feed point at the feed's own servers. Before handing
products to the destination system we copy each image to a location we
control and replace the URL with the public URL of the copy.
"""

import re
from pathlib import Path
from typing import Dict, Optional, Protocol, Union
from urllib.parse import urlparse

import requests  # type: ignore[import-untyped]

from catsync.config import HEADERS, REQUEST_TIMEOUT
from catsync.logging_config import get_logger

__all__ = ["ImageResolver", "MirrorImageResolver", "image_object_key"]

logger = get_logger("images")

_KEY_STRIP_RE = re.compile(r"[/\s.\\]")


class ImageResolver(Protocol):
    def upload(self, product_id: str, remote_url: str) -> str:
        """Return a stable public URL for the image of a product."""
        ...


def image_object_key(product_id: str, remote_url: str) -> str:
    """Name of the mirrored copy: the product id without separators or dots,
    followed by the extension of the remote file."""
    extension = Path(urlparse(remote_url).path).suffix
    return _KEY_STRIP_RE.sub("", product_id) + extension


class MirrorImageResolver:
    """Mirrors images into a directory served under public_base_url.

    Uploading is idempotent per product id: an image that is already in the
    target directory is not downloaded again.

    Args:
        target_dir: Directory the copies are written to
        public_base_url: URL prefix under which target_dir is served
        session: Optional requests.Session for connection reuse
    """

    def __init__(
        self,
        target_dir: Union[str, Path],
        public_base_url: str,
        session: Optional[requests.Session] = None,
    ):
        self.target_dir = Path(target_dir)
        self.public_base_url = public_base_url.rstrip("/")
        self.session = session or requests.Session()
        self.session.headers.update(HEADERS)
        self._resolved: Dict[str, str] = {}

    def public_url(self, key: str) -> str:
        return f"{self.public_base_url}/{key}"

    def upload(self, product_id: str, remote_url: str) -> str:
        if product_id in self._resolved:
            return self._resolved[product_id]

        key = image_object_key(product_id, remote_url)
        target = self.target_dir / key
        if target.exists():
            logger.debug(f"Image for {product_id} already mirrored as {key}")
        else:
            self._download(remote_url, target)

        url = self.public_url(key)
        self._resolved[product_id] = url
        return url

    def _download(self, remote_url: str, target: Path) -> None:
        self.target_dir.mkdir(parents=True, exist_ok=True)
        resp = self.session.get(remote_url, timeout=REQUEST_TIMEOUT)
        resp.raise_for_status()

        partial = target.with_name(target.name + ".part")
        partial.write_bytes(resp.content)
        partial.replace(target)
        logger.info(f"Mirrored image {remote_url} -> {target.name}")
