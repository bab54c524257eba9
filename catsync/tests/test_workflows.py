"""End-to-end tests for the workflows, against a cache built in tmp_path."""

import csv
import gzip
import json
import shutil
import zipfile
from unittest.mock import MagicMock

import pytest

from catsync.cli import main
from catsync.config import CATEGORIES_REF
from catsync.errors import CacheError, FetchError
from catsync.loader import CatalogLoader
from catsync.workflows import (
    build_import_package,
    export_csv,
    fetch_index_products,
    fetch_related_products,
    load_reference_data,
)

from conftest import build_product_xml, write_gz


@pytest.fixture
def populated_cache(cache, categories_file, add_product):
    shutil.copy(categories_file, cache.reference_path(CATEGORIES_REF))
    add_product("P1", title="One", features=[("Color", "Red")], related=[("P2", "Acme"), ("X9", "Acme")])
    add_product("P2", title="Two", category_id="12")
    return cache


class TestReferenceData:

    def test_missing_category_list(self, cache):
        """Verify a missing category list is a CacheError."""
        with pytest.raises(CacheError):
            load_reference_data(cache)

    def test_loads_cached_lists(self, populated_cache):
        """Test loading the cached reference lists."""
        categories, suppliers = load_reference_data(populated_cache)
        assert categories["9"].name == "LED"
        assert suppliers == {}


class TestBuildImportPackage:

    def test_package(self, populated_cache, tmp_path):
        """Test the complete flow: cache -> loader -> package."""
        categories, _ = load_reference_data(populated_cache)
        loader = CatalogLoader(populated_cache, max_related_products=5)

        archive, run = build_import_package(
            populated_cache, loader, categories, archive_path=tmp_path / "import.zip"
        )

        # category directories are scanned in path order: 12 before 9
        assert run.loaded_ids == ["P2", "P1"]
        assert run.pending_related == {"X9": "Acme"}
        with zipfile.ZipFile(archive) as zf:
            manifest = json.loads(zf.read("import.json"))
            products = json.loads(gzip.decompress(zf.read("icecat-products.json.gz")))[1]["products"]
        assert manifest[0]["header"]["update_semantics"] == "truncate"
        assert [p["sku"] for p in products] == ["P2", "P1"]
        # intermediate documents are removed once packaged
        assert list(populated_cache.output_directory.iterdir()) == []


class TestExportCsv:

    def test_two_pass_export(self, populated_cache, tmp_path):
        """Verify the CSV export surveys attributes before writing."""
        categories, _ = load_reference_data(populated_cache)
        output = tmp_path / "products.csv"

        run = export_csv(CatalogLoader(populated_cache), categories, output)

        with open(output, newline="", encoding="utf-8") as f:
            rows = {row["sku"]: row for row in csv.DictReader(f)}
        assert sorted(run.loaded_ids) == ["P1", "P2"]
        assert rows["P1"]["Category"] == "TV/LED"
        assert rows["P1"]["Color"] == "Red"
        assert rows["P1"]["Related Products"] == ""
        assert rows["P2"]["Category"] == "Cables & Adapters"
        assert rows["P2"]["Color"] == ""


class TestFetchWorkflows:

    def test_fetch_index_products(self, cache, categories, index_file):
        """Verify index fetching filters by category subtree and counts failures."""
        fetcher = MagicMock()
        fetcher.fetch.return_value = index_file

        def fetch_product(entry):
            if entry.product_id == "P102":
                raise FetchError("boom")
            path = cache.path_for(entry.product_id)
            return write_gz(path, build_product_xml(entry.product_id, category_id=entry.category_id))

        fetcher.fetch_product.side_effect = fetch_product

        stats = fetch_index_products(fetcher, cache, "files.index.xml.gz", categories, root_category_ids=["5"])

        # 5 and its descendant 9, but not 12
        assert stats == {"listed": 3, "fetched": 2, "failed": 1}
        assert fetcher.fetch.call_args[1] == {"refresh": True}
        assert cache.find_valid("P100").parent.name == "9"
        assert cache.find_valid("P103").parent.name == "5"

    def test_fetch_related_products(self, cache):
        """Verify pending related products are fetched in id order."""
        fetcher = MagicMock()
        fetcher.fetch_related.side_effect = [cache.path_for("A"), FetchError("no supplier")]
        stats = fetch_related_products(fetcher, cache, {"B": None, "A": "Acme"})
        assert stats == {"pending": 2, "fetched": 1, "failed": 1}
        assert fetcher.fetch_related.call_args_list[0][0] == ("A", "Acme")


class TestCli:

    def test_stats(self, populated_cache, capsys):
        """Verify --stats prints per-category counts."""
        main(["--cache-dir", str(populated_cache.root), "--stats", "--no-log-file"])
        output = capsys.readouterr().out
        assert "9 (LED): 1" in output
        assert "12 (Cables & Adapters): 1" in output

    def test_missing_cache_dir_exits(self, monkeypatch):
        """Test that a missing cache directory exits with an error."""
        monkeypatch.setenv("CATSYNC_CACHE_DIR", "")
        with pytest.raises(SystemExit):
            main(["--stats", "--no-log-file"])
