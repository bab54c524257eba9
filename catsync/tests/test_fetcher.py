"""Tests for the HTTP fetcher and image mirror, with requests mocked out."""

import gzip
from unittest.mock import MagicMock, patch

import pytest
import requests

from catsync.errors import FetchError
from catsync.fetcher import HttpFetcher
from catsync.images import MirrorImageResolver, image_object_key
from catsync.models import IndexEntry

from conftest import write_gz


def _response(status_code=200, content=b"<x/>"):
    resp = MagicMock()
    resp.status_code = status_code
    resp.content = content
    if status_code >= 400:
        error = requests.exceptions.HTTPError(f"{status_code} Error")
        error.response = resp
        resp.raise_for_status.side_effect = error
    else:
        resp.raise_for_status.return_value = None
    return resp


@pytest.fixture
def session():
    return MagicMock(spec=requests.Session)


@pytest.fixture
def fetcher(cache, session):
    return HttpFetcher(cache, domain="feed.example.com", session=session)


class TestHttpFetcher:

    def test_fetch_stores_gzip(self, fetcher, session, cache):
        """Verify downloads are stored gzip-compressed at the target."""
        session.get.return_value = _response(content=b"<ICECAT-interface/>")
        target = cache.reference_path("categories.xml.gz")

        path = fetcher.fetch("export/refs/CategoriesList.xml", target)

        assert path == target
        assert gzip.decompress(path.read_bytes()) == b"<ICECAT-interface/>"
        session.get.assert_called_once()
        assert session.get.call_args[0][0] == "https://feed.example.com/export/refs/CategoriesList.xml"

    def test_already_compressed_body_kept(self, fetcher, session, cache):
        """Test that a gzip body is stored as received."""
        body = gzip.compress(b"<a/>")
        session.get.return_value = _response(content=body)
        path = fetcher.fetch("export/x.xml.gz", cache.reference_path("x.xml.gz"))
        assert path.read_bytes() == body

    def test_existing_target_skips_request(self, fetcher, session, cache):
        """Verify an existing target is returned without a request."""
        target = write_gz(cache.reference_path("categories.xml.gz"), "<a/>")
        assert fetcher.fetch("anything", target) == target
        session.get.assert_not_called()

    def test_refresh_downloads_again(self, fetcher, session, cache):
        """Verify refresh replaces an existing target with a new download."""
        target = write_gz(cache.index_path("daily.index.xml.gz"), "<old/>")
        session.get.return_value = _response(content=b"<new/>")

        assert fetcher.fetch("export/daily.index.xml", target, refresh=True) == target

        session.get.assert_called_once()
        assert gzip.decompress(target.read_bytes()) == b"<new/>"

    @patch("catsync.fetcher.time.sleep")
    def test_retries_on_server_error(self, sleep, fetcher, session, cache):
        """Test retry with backoff on a 503."""
        session.get.side_effect = [_response(503), _response(content=b"<a/>")]
        path = fetcher.fetch("x.xml", cache.reference_path("x.xml.gz"))
        assert path.exists()
        assert session.get.call_count == 2
        sleep.assert_called_once()

    @patch("catsync.fetcher.time.sleep")
    def test_gives_up_after_retries(self, sleep, fetcher, session, cache):
        """Verify FetchError after exhausting retries, with no file left."""
        session.get.side_effect = requests.exceptions.ConnectionError("refused")
        target = cache.reference_path("x.xml.gz")
        with pytest.raises(FetchError):
            fetcher.fetch("x.xml", target)
        assert not target.exists()
        assert session.get.call_count == 4

    def test_client_error_not_retried(self, fetcher, session, cache):
        """Verify client errors are not retried."""
        session.get.return_value = _response(404)
        with pytest.raises(FetchError):
            fetcher.fetch("x.xml", cache.reference_path("x.xml.gz"))
        assert session.get.call_count == 1

    def test_fetch_product_uses_cache(self, fetcher, session, add_product):
        """Verify a cached product is returned without a request."""
        cached = add_product("P1")
        entry = IndexEntry(product_id="P1", category_id="9", path="export/EN/1.xml")
        assert fetcher.fetch_product(entry) == cached
        session.get.assert_not_called()

    def test_fetch_product_skips_quarantined(self, fetcher, session, cache):
        """Test that quarantined products are not downloaded again."""
        write_gz(cache.failures_directory / "product_P1.xml.gz", "<a/>")
        fetcher.fetch_product(IndexEntry(product_id="P1", category_id="9", path="export/EN/1.xml"))
        session.get.assert_not_called()

    def test_fetch_product_writes_flat_file(self, fetcher, session, cache):
        """Verify a new product lands in the flat cache directory."""
        session.get.return_value = _response(content=b"<a/>")
        path = fetcher.fetch_product(IndexEntry(product_id="P1", category_id="9", path="export/EN/1.xml"))
        assert path == cache.path_for("P1")

    def test_fetch_related_needs_supplier(self, fetcher):
        """Verify related fetches require a supplier."""
        with pytest.raises(FetchError):
            fetcher.fetch_related("X1", None)

    def test_fetch_related_query(self, fetcher, session, cache):
        """Test the query URL used for related products."""
        session.get.return_value = _response(content=b"<a/>")
        fetcher.fetch_related("X 1", "Acme & Co")
        url = session.get.call_args[0][0]
        assert "prod_id=X%201" in url
        assert "vendor=Acme%20%26%20Co" in url


class TestMirrorImageResolver:

    def test_object_key(self):
        """Verify the image object key rule."""
        assert image_object_key("AB.12/x y", "http://img.example.com/a/b/pic.JPG") == "AB12xy.JPG"

    def test_upload_downloads_once(self, tmp_path, session):
        """Verify each product image is downloaded once."""
        session.headers = {}
        session.get.return_value = _response(content=b"jpeg-bytes")
        resolver = MirrorImageResolver(tmp_path / "images", "https://cdn.example.com/img/", session=session)

        url = resolver.upload("P1", "http://img.example.com/p1.jpg")
        again = resolver.upload("P1", "http://img.example.com/p1.jpg")

        assert url == again == "https://cdn.example.com/img/P1.jpg"
        assert (tmp_path / "images" / "P1.jpg").read_bytes() == b"jpeg-bytes"
        session.get.assert_called_once()

    def test_existing_copy_not_downloaded(self, tmp_path, session):
        """Test that an existing mirrored image is reused."""
        session.headers = {}
        (tmp_path / "P1.png").write_bytes(b"png")
        resolver = MirrorImageResolver(tmp_path, "https://cdn.example.com", session=session)
        assert resolver.upload("P1", "http://img.example.com/p1.png") == "https://cdn.example.com/P1.png"
        session.get.assert_not_called()
