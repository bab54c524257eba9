"""Command-line interface for catsync."""

import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional, Set

__all__ = ["main", "parse_args", "build_loader", "show_stats"]

from catsync.cache import CatalogCache
from catsync.categories import descendant_category_ids
from catsync.config import TRUNCATE, UPDATE_SEMANTICS, Settings, load_settings
from catsync.errors import CatsyncError
from catsync.fetcher import HttpFetcher
from catsync.images import MirrorImageResolver
from catsync.loader import CatalogLoader
from catsync.logging_config import get_logger, setup_logging
from catsync.models import Category
from catsync.workflows import (
    build_import_package,
    export_csv,
    fetch_index_products,
    fetch_reference_documents,
    fetch_related_products,
    load_reference_data,
)

logger = get_logger("cli")


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Convert an ICEcat product feed into bulk-import packages",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Download the category and supplier lists
  python -m catsync.cli --fetch-refs

  # Fetch up to 500 products of category 151 (and below) from the full index
  python -m catsync.cli --fetch-index files.index.xml.gz --categories 151 --max-products 500

  # Fetch related products referenced by cached products
  python -m catsync.cli --fetch-related

  # Build an import package (replaces everything in the destination)
  python -m catsync.cli --package

  # Export cached products of category 151 as CSV
  python -m catsync.cli --csv data/products.csv --categories 151

  # Show cache statistics
  python -m catsync.cli --stats
        """,
    )

    # Settings
    parser.add_argument(
        "--env-file",
        type=Path,
        help="Load settings from this .env file (default: ./.env if present)",
    )
    parser.add_argument(
        "--cache-dir",
        help="Cache root (default: $CATSYNC_CACHE_DIR)",
    )

    # Fetching
    parser.add_argument(
        "--fetch-refs",
        action="store_true",
        help="Download the category and supplier lists",
    )
    parser.add_argument(
        "--fetch-index",
        metavar="INDEX_NAME",
        help="Download an index and every product it lists in the selected categories",
    )
    parser.add_argument(
        "--fetch-related",
        action="store_true",
        help="Download related products referenced by cached products but not cached yet",
    )

    # Cache maintenance
    parser.add_argument(
        "--organize",
        action="store_true",
        help="Sort downloaded product files into per-category directories",
    )
    parser.add_argument(
        "--stats",
        action="store_true",
        help="Show cache statistics and exit",
    )

    # Output
    parser.add_argument(
        "--package",
        nargs="?",
        const="",
        metavar="ZIP_PATH",
        help="Build a bulk-import package (default location: the cache's output directory)",
    )
    parser.add_argument(
        "--csv",
        metavar="PATH",
        help="Export products to a CSV file",
    )
    parser.add_argument(
        "--update-semantics",
        choices=list(UPDATE_SEMANTICS),
        default=TRUNCATE,
        help=f"Update semantics declared in the package (default: {TRUNCATE})",
    )

    # Selection
    parser.add_argument(
        "--categories",
        nargs="+",
        metavar="CATEGORY_ID",
        help="Restrict to these categories and their descendants",
    )
    parser.add_argument(
        "--ids-file",
        type=Path,
        help="Only load product ids listed in this file (one per line)",
    )
    parser.add_argument(
        "--exclude-ids-file",
        type=Path,
        help="Never load product ids listed in this file (one per line)",
    )
    parser.add_argument(
        "--max-products",
        type=int,
        help="Maximum products to load or fetch (0 = no limit, default: $CATSYNC_MAX_PRODUCTS or 100)",
    )
    parser.add_argument(
        "--max-related",
        type=int,
        help="Maximum accessories per product (default: $CATSYNC_MAX_RELATED_PRODUCTS or 200)",
    )
    parser.add_argument(
        "--skip-images",
        action="store_true",
        help="Keep the feed's image URLs instead of mirroring images",
    )

    # Logging
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Log debug messages to the console",
    )
    parser.add_argument(
        "--no-log-file",
        action="store_true",
        help="Don't write JSONL log files",
    )

    return parser.parse_args(argv)


def _read_ids(path: Optional[Path]) -> Optional[Set[str]]:
    if path is None:
        return None
    with open(path, encoding="utf-8") as f:
        return {line.strip() for line in f if line.strip()}


def build_loader(
    cache: CatalogCache,
    settings: Settings,
    args: argparse.Namespace,
    categories: dict,
) -> CatalogLoader:
    """Create a CatalogLoader from settings and command-line selection."""
    category_whitelist = None
    if args.categories:
        category_whitelist = set()
        for root_id in args.categories:
            category_whitelist |= descendant_category_ids(categories, root_id)

    image_resolver = None
    if settings.image_dir and not args.skip_images:
        image_resolver = MirrorImageResolver(settings.image_dir, settings.image_base_url)

    return CatalogLoader(
        cache,
        category_whitelist=category_whitelist,
        id_whitelist=_read_ids(args.ids_file),
        id_blacklist=_read_ids(args.exclude_ids_file),
        max_products=settings.max_products,
        max_related_products=settings.max_related_products,
        image_resolver=image_resolver,
        skip_images=args.skip_images,
    )


def show_stats(cache: CatalogCache, categories: Optional[dict] = None) -> None:
    """Display cache statistics."""
    counts = cache.stats()

    print(f"\n{'='*50}")
    print(f"Cache: {cache.root}")
    print(f"{'='*50}")

    print(f"\nUnorganized product files: {counts.pop('(unorganized)')}")
    print(f"Failed product files: {counts.pop('(failed)')}")
    print(f"Organized product files: {sum(counts.values())}")

    if counts:
        print("\nProducts by category:")
        for category_id, count in sorted(counts.items(), key=lambda item: (-item[1], item[0])):
            category: Optional[Category] = (categories or {}).get(category_id)
            name = category.name if category and category.name else "?"
            print(f"  {category_id} ({name}): {count}")
    print()


def run(args: argparse.Namespace) -> None:
    settings = load_settings(args.env_file)
    if args.cache_dir:
        settings.cache_dir = args.cache_dir
    if args.max_products is not None:
        settings.max_products = args.max_products
    if args.max_related is not None:
        settings.max_related_products = args.max_related
    settings.validate()

    cache = CatalogCache().initialize(settings.cache_dir)
    fetcher = HttpFetcher(cache, domain=settings.icecat_domain, auth=settings.auth)

    if args.fetch_refs:
        fetch_reference_documents(fetcher, cache)

    if args.stats:
        categories = None
        try:
            categories, _ = load_reference_data(cache)
        except CatsyncError as e:
            logger.warning(f"Category names unavailable: {e}")
        show_stats(cache, categories)
        return

    if args.organize:
        result = cache.organize()
        print(
            f"Organized: {result.moved} moved, {result.quarantined} quarantined, "
            f"{result.skipped} skipped, {result.errors} errors"
        )

    needs_references = args.fetch_index or args.fetch_related or args.package is not None or args.csv
    if not needs_references:
        return
    categories, _ = load_reference_data(cache)

    if args.fetch_index:
        fetch_index_products(
            fetcher,
            cache,
            args.fetch_index,
            categories,
            root_category_ids=args.categories,
            max_products=settings.max_products,
        )

    if args.fetch_related:
        loader = build_loader(cache, settings, args, categories)
        loader.skip_output = loader.skip_images = True
        survey = loader.run()
        fetch_related_products(fetcher, cache, survey.pending_related)

    if args.package is not None:
        archive_path = Path(args.package) if args.package else None
        build_import_package(
            cache,
            build_loader(cache, settings, args, categories),
            categories,
            archive_path=archive_path,
            update_semantics=args.update_semantics,
        )

    if args.csv:
        export_csv(build_loader(cache, settings, args, categories), categories, Path(args.csv))


def main(argv: Optional[List[str]] = None) -> None:
    """Main entry point for CLI."""
    args = parse_args(argv)
    setup_logging(
        level=logging.DEBUG if args.verbose else logging.INFO,
        log_to_file=not args.no_log_file,
    )

    try:
        run(args)
    except CatsyncError as e:
        logger.error(f"ERROR: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
