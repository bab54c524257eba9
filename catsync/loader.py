"""Conversion of cached product documents into bulk-import output.

The loader walks the cached product files in a fixed order, keeps the ones
that pass the acceptance filters, collects a bounded set of accessories per
product, and hands each accepted product to a writer. It also records which
related products are referenced but not cached yet, so that a later fetch can
pull them in.
"""

import logging
from pathlib import Path
from typing import Iterable, List, Optional, Set, Union

from catsync.cache import CatalogCache, product_file_basename
from catsync.config import PROGRESS_EVERY
from catsync.images import ImageResolver
from catsync.logging_config import get_logger, log_event
from catsync.models import ConversionRun, Product
from catsync.writers import ProductWriter
from catsync.xml_utils import parse_product

__all__ = ["CatalogLoader"]

logger = get_logger("loader")


def _as_set(values: Optional[Iterable[str]]) -> Optional[Set[str]]:
    if values is None:
        return None
    return {str(v) for v in values}


class CatalogLoader:
    """Loads products from a CatalogCache and drives a ProductWriter.

    Args:
        cache: Initialized cache to read product files from
        category_whitelist: Only products in these categories are loaded
        id_whitelist: Only these product ids are loaded (and kept as accessories)
        id_blacklist: Product ids whose files are never read
        max_products: Stop after this many accepted products (0 = no limit)
        max_related_products: Accessories kept per product (0 = none)
        image_resolver: Turns remote image URLs into stable public URLs
        skip_output: Collect aggregates only, write nothing
        skip_images: Keep the feed's image URLs as they are
        progress_every: Log progress every N files
    """

    def __init__(
        self,
        cache: CatalogCache,
        category_whitelist: Optional[Iterable[str]] = None,
        id_whitelist: Optional[Iterable[str]] = None,
        id_blacklist: Optional[Iterable[str]] = None,
        max_products: int = 0,
        max_related_products: int = 0,
        image_resolver: Optional[ImageResolver] = None,
        skip_output: bool = False,
        skip_images: bool = False,
        progress_every: int = PROGRESS_EVERY,
    ):
        self.cache = cache
        self.category_whitelist = _as_set(category_whitelist)
        self.id_whitelist = _as_set(id_whitelist)
        self.id_blacklist = _as_set(id_blacklist) or set()
        self.max_products = max_products
        self.max_related_products = max_related_products
        self.image_resolver = image_resolver
        self.skip_output = skip_output
        self.skip_images = skip_images
        self.progress_every = progress_every

    # =========================================================================
    # Candidate files
    # =========================================================================

    def candidate_files(self) -> List[Path]:
        """Files to scan, sorted so that repeated runs pick the same products.

        A stable order keeps the accessories pulled in stable as well, which
        avoids fetching new accessory documents on every run.
        """
        if self.category_whitelist is not None:
            files: List[Path] = []
            for category_id in self.category_whitelist:
                files.extend(self.cache.files_for_category(category_id))
        else:
            files = self.cache.product_files()

        excluded = {product_file_basename(product_id) for product_id in self.id_blacklist}
        return sorted((f for f in files if f.name not in excluded), key=str)

    # =========================================================================
    # Per-product steps
    # =========================================================================

    def accepts(self, product: Product, run: ConversionRun) -> bool:
        if not product.id or run.is_loaded(product.id):
            return False
        if self.id_whitelist is not None and product.id not in self.id_whitelist:
            return False
        if self.category_whitelist is not None and product.category_id not in self.category_whitelist:
            return False
        return True

    def select_accessories(self, product: Product, run: ConversionRun) -> List[str]:
        """Pick the accessory ids for a product and note them as pending.

        Related ids are sorted before truncation; when several products name
        the same related id, the supplier seen first in the run is kept.
        """
        if self.max_related_products <= 0 or not product.related:
            return []

        accessory_ids: List[str] = []
        for related_id in sorted(product.related):
            if self.id_whitelist is not None and related_id not in self.id_whitelist:
                continue
            accessory_ids.append(related_id)
            if related_id not in run.pending_related:
                run.pending_related[related_id] = product.related[related_id]
            if len(accessory_ids) >= self.max_related_products:
                break
        return accessory_ids

    def resolve_image(self, product: Product) -> Optional[str]:
        if not product.image_url:
            return None
        url = product.image_url.strip()
        if self.image_resolver is None or self.skip_images:
            return url
        try:
            return self.image_resolver.upload(product.id, url)
        except Exception as e:
            logger.error(f"ERROR: could not resolve image for {product.id} ({url}): {e}")
            return url

    def load_file(self, path: Path, run: ConversionRun) -> Optional[Product]:
        """Parse one file and classify it.

        Returns the product when the file holds a usable document, None when
        it failed (recorded on the run) or was denied.
        """
        try:
            document = parse_product(path)
        except Exception as e:
            logger.error(f"ERROR: could not load product from {path.name}: {e}")
            log_event("product_error", {
                "file": str(path),
                "error": str(e),
            }, level=logging.ERROR, logger_name="catsync.loader")
            run.record_failed(path)
            return None

        if document.denied:
            logger.debug(f"Denied product document: {path.name} ({document.error_message})")
            run.record_failed(path)
            return None
        return document.product

    # =========================================================================
    # Run
    # =========================================================================

    def run(
        self,
        writer: Optional[ProductWriter] = None,
        output_path: Optional[Union[str, Path]] = None,
    ) -> ConversionRun:
        """Convert the cached products.

        Args:
            writer: Writer receiving every accepted product
            output_path: Target file the writer is opened on

        Returns:
            The run's aggregates. pending_related only names products that
            were not loaded in this run.
        """
        run = ConversionRun()
        write = writer is not None and not self.skip_output
        if write and output_path is None:
            raise ValueError("output_path is required when a writer is given")

        files = self.candidate_files()
        if write:
            writer.open(output_path)

        try:
            logger.info(f"Converting up to {len(files)} cached product files")
            log_event("conversion_start", {
                "files": len(files),
                "max_products": self.max_products,
                "max_related_products": self.max_related_products,
                "category_whitelist": sorted(self.category_whitelist) if self.category_whitelist else None,
            }, logger_name="catsync.loader")

            for path in files:
                run.files_scanned += 1
                product = self.load_file(path, run)

                if product is not None and self.accepts(product, run):
                    product.accessory_ids = self.select_accessories(product, run)
                    product.image_url = self.resolve_image(product)
                    run.record_loaded(product, path)
                    if write:
                        writer.append(product)
                elif product is not None:
                    logger.debug(f"Skipping {path.name}: product {product.id!r} not accepted")

                if self.progress_every and run.files_scanned % self.progress_every == 0:
                    logger.info(
                        f"  Processed {run.files_scanned}/{len(files)} files: "
                        f"{len(run.loaded_ids)} converted, {len(run.failed_files)} failed"
                    )

                if self.max_products > 0 and len(run.loaded_ids) >= self.max_products:
                    logger.info(f"  Reached max products limit ({self.max_products})")
                    break

            if write:
                writer.close()
        except BaseException:
            if write:
                writer.discard()
            raise

        run.purge_loaded_from_pending()

        logger.info(
            f"Conversion complete: {len(run.loaded_ids)} products converted, "
            f"{len(run.failed_files)} failed, {len(run.pending_related)} related products not cached"
        )
        log_event("conversion_complete", {
            "files_scanned": run.files_scanned,
            "products_converted": len(run.loaded_ids),
            "files_failed": len(run.failed_files),
            "categories": len(run.loaded_category_ids),
            "attributes": len(run.attribute_names),
            "pending_related": len(run.pending_related),
        }, logger_name="catsync.loader")
        return run
