"""High-level catsync workflows.

This module contains the orchestration for multi-step operations: fetching
the feed into the cache, converting the cache into a bulk-import package, and
exporting it as CSV.
"""

from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, Optional, Tuple

from catsync.cache import CatalogCache
from catsync.categories import descendant_category_ids
from catsync.config import (
    ATTRIBUTES_FILENAME,
    CATEGORIES_FILENAME,
    CATEGORIES_REF,
    PRODUCTS_FILENAME,
    REMOTE_CATEGORIES_PATH,
    REMOTE_INDEX_PATH,
    REMOTE_SUPPLIERS_PATH,
    SUPPLIERS_REF,
    TRUNCATE,
)
from catsync.errors import CacheError, FetchError
from catsync.fetcher import HttpFetcher
from catsync.loader import CatalogLoader
from catsync.logging_config import get_logger, log_event
from catsync.models import Category, ConversionRun
from catsync.package import assemble_package
from catsync.writers import (
    CsvProductsWriter,
    JsonProductsWriter,
    write_attributes_document,
    write_categories_document,
)
from catsync.xml_utils import parse_categories, parse_index, parse_suppliers

__all__ = [
    "load_reference_data",
    "fetch_reference_documents",
    "fetch_index_products",
    "fetch_related_products",
    "build_import_package",
    "export_csv",
]

logger = get_logger("workflows")


def load_reference_data(cache: CatalogCache) -> Tuple[Dict[str, Category], Dict[str, str]]:
    """Parse the cached category and supplier lists.

    Returns:
        (categories by id, supplier names by id). Suppliers are empty when the
        supplier list has not been fetched.

    Raises:
        CacheError: If the category list is not in the cache
    """
    categories_path = cache.reference_path(CATEGORIES_REF)
    if not categories_path.exists():
        raise CacheError(f"Category list not cached: {categories_path} (run with --fetch-refs)")
    categories = parse_categories(categories_path)

    suppliers: Dict[str, str] = {}
    suppliers_path = cache.reference_path(SUPPLIERS_REF)
    if suppliers_path.exists():
        suppliers = parse_suppliers(suppliers_path)
    return categories, suppliers


def fetch_reference_documents(fetcher: HttpFetcher, cache: CatalogCache) -> Tuple[Path, Path]:
    """Download the category and supplier lists into the cache."""
    categories_path = fetcher.fetch(REMOTE_CATEGORIES_PATH, cache.reference_path(CATEGORIES_REF))
    suppliers_path = fetcher.fetch(REMOTE_SUPPLIERS_PATH, cache.reference_path(SUPPLIERS_REF))
    return categories_path, suppliers_path


def fetch_index_products(
    fetcher: HttpFetcher,
    cache: CatalogCache,
    index_name: str,
    categories: Dict[str, Category],
    root_category_ids: Optional[Iterable[str]] = None,
    max_products: int = 0,
) -> Dict[str, int]:
    """Fetch the products listed in an index, then organize the cache.

    Args:
        fetcher: Fetcher writing into cache
        cache: Initialized cache
        index_name: Index file name on the feed (e.g. 'files.index.xml.gz')
        categories: Parsed category list
        root_category_ids: Only fetch products in these categories or below
        max_products: Stop after this many index entries (0 = no limit)

    Returns:
        Counters: 'listed', 'fetched', 'failed'
    """
    category_ids = None
    if root_category_ids is not None:
        category_ids = set()
        for root_id in root_category_ids:
            category_ids |= descendant_category_ids(categories, root_id)

    target = cache.index_path(index_name if index_name.endswith(".gz") else f"{index_name}.gz")
    # indexes are republished under the same name, so always download again
    index_path = fetcher.fetch(REMOTE_INDEX_PATH.format(name=index_name), target, refresh=True)
    index = parse_index(index_path, category_ids=category_ids, max_products=max_products)

    stats = {"listed": len(index.entries), "fetched": 0, "failed": 0}
    print(f"Fetching {stats['listed']} products listed in {index_name}...")

    for i, entry in enumerate(index.entries, 1):
        try:
            fetcher.fetch_product(entry)
            stats["fetched"] += 1
        except FetchError as e:
            logger.error(f"ERROR: could not fetch product {entry.product_id}: {e}")
            stats["failed"] += 1

        if i % 100 == 0:
            logger.info(f"  Fetched {i}/{stats['listed']} products")

    cache.organize()
    log_event("index_fetched", {"index": index_name, **stats}, logger_name="catsync.workflows")
    return stats


def fetch_related_products(
    fetcher: HttpFetcher,
    cache: CatalogCache,
    pending_related: Dict[str, Optional[str]],
) -> Dict[str, int]:
    """Fetch related products a conversion run found missing from the cache.

    Args:
        pending_related: Related product id -> supplier name, as collected
            by CatalogLoader.run()
    """
    stats = {"pending": len(pending_related), "fetched": 0, "failed": 0}
    for product_id in sorted(pending_related):
        try:
            fetcher.fetch_related(product_id, pending_related[product_id])
            stats["fetched"] += 1
        except FetchError as e:
            logger.error(f"ERROR: could not fetch related product {product_id}: {e}")
            stats["failed"] += 1

    cache.organize()
    log_event("related_fetched", dict(stats), logger_name="catsync.workflows")
    return stats


def build_import_package(
    cache: CatalogCache,
    loader: CatalogLoader,
    categories: Dict[str, Category],
    archive_path: Optional[Path] = None,
    update_semantics: str = TRUNCATE,
) -> Tuple[Path, ConversionRun]:
    """Convert the cache into a bulk-import package.

    Writes the products, attributes and categories documents into a fresh
    directory under the cache's output area and bundles them into a zip.

    Returns:
        (archive path, conversion run)
    """
    stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    work_dir = cache.output_path(f"import_{stamp}")
    if archive_path is None:
        archive_path = cache.output_path(f"import_{stamp}.zip")

    products_path = work_dir / PRODUCTS_FILENAME
    run = loader.run(JsonProductsWriter(update_semantics=update_semantics), products_path)

    attributes_path = write_attributes_document(
        work_dir / ATTRIBUTES_FILENAME, run.sorted_attribute_names, update_semantics=update_semantics
    )
    categories_path = write_categories_document(
        work_dir / CATEGORIES_FILENAME, categories, update_semantics=update_semantics
    )

    archive = assemble_package(
        archive_path,
        attributes_path,
        categories_path,
        [products_path],
        update_semantics=update_semantics,
        remove_sources=True,
    )
    work_dir.rmdir()

    print(f"\nPackage written: {archive}")
    print(f"  Products: {len(run.loaded_ids)}, failed files: {len(run.failed_files)}")
    if run.pending_related:
        print(f"  Related products not cached: {len(run.pending_related)} (run with --fetch-related)")
    return archive, run


def export_csv(
    loader: CatalogLoader,
    categories: Dict[str, Category],
    output_path: Path,
) -> ConversionRun:
    """Export the cache as one CSV.

    The CSV header needs every attribute name up front, so the cache is read
    twice: once to collect the names, once to write.
    """
    skip_output, skip_images = loader.skip_output, loader.skip_images
    loader.skip_output = loader.skip_images = True
    try:
        survey = loader.run()
    finally:
        loader.skip_output, loader.skip_images = skip_output, skip_images

    writer = CsvProductsWriter(categories, survey.sorted_attribute_names)
    run = loader.run(writer, output_path)
    print(f"\nCSV written: {output_path} ({len(run.loaded_ids)} products)")
    return run
