"""On-disk cache of feed documents.

Layout under the cache root:

    tmp/                          scratch space for downloads
    refs/                         category and supplier lists
    indexes/                      product indexes
    product_cache/<category_id>/  valid product documents, by category
    product_cache_failures/       denied or unparsable product documents
    output/                       generated import files

Product files are named from the product id, so a second run finds what the
first one downloaded and never fetches it again. Files in the failures area
are kept (not deleted) for the same reason.
"""

import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Union
from urllib.parse import quote_plus

from catsync.config import (
    FAILURES_DIRNAME,
    INDEXES_DIRNAME,
    OUTPUT_DIRNAME,
    PRODUCT_FILE_PREFIX,
    PRODUCT_FILE_SUFFIX,
    PRODUCTS_DIRNAME,
    REFS_DIRNAME,
    TMP_DIRNAME,
)
from catsync.errors import CacheError, ParseFailure
from catsync.logging_config import get_logger, log_event
from catsync.xml_utils import parse_product

__all__ = ["CatalogCache", "OrganizeResult", "product_file_basename"]

logger = get_logger("cache")


def product_file_basename(product_id: str) -> str:
    """Return the cache file name for a product id."""
    return f"{PRODUCT_FILE_PREFIX}{quote_plus(product_id, safe='')}{PRODUCT_FILE_SUFFIX}"


def _is_visible_file(path: Path) -> bool:
    return path.is_file() and not path.name.startswith(".")


@dataclass
class OrganizeResult:
    moved: int = 0
    quarantined: int = 0
    skipped: int = 0
    errors: int = 0


class CatalogCache:
    """Owns the cache directory tree.

    Create one per process and pass it to everything that needs it; it must
    be initialized (once) before use.
    """

    def __init__(self) -> None:
        self._root: Optional[Path] = None

    def initialize(self, root_directory: Union[str, Path]) -> "CatalogCache":
        """Create the directory tree under root_directory.

        Raises:
            CacheError: If already initialized or a directory cannot be created
        """
        if self.initialized:
            raise CacheError(f"Cannot reinitialize cache (already at {self._root})")

        root = Path(root_directory)
        self._ensure_directory(root)
        self._root = root

        try:
            for directory in (
                self.tmp_directory,
                self.refs_directory,
                self.indexes_directory,
                self.products_directory,
                self.failures_directory,
                self.output_directory,
            ):
                self._ensure_directory(directory)
        except CacheError:
            self._root = None
            raise

        logger.debug(f"Cache initialized at {root}")
        return self

    @property
    def initialized(self) -> bool:
        return self._root is not None

    @property
    def root(self) -> Path:
        if self._root is None:
            raise CacheError("Cache not yet initialized.")
        return self._root

    # =========================================================================
    # Layout
    # =========================================================================

    @property
    def tmp_directory(self) -> Path:
        return self.root / TMP_DIRNAME

    @property
    def refs_directory(self) -> Path:
        """Category list, supplier list and other reference documents."""
        return self.root / REFS_DIRNAME

    @property
    def indexes_directory(self) -> Path:
        return self.root / INDEXES_DIRNAME

    @property
    def products_directory(self) -> Path:
        return self.root / PRODUCTS_DIRNAME

    @property
    def failures_directory(self) -> Path:
        """Quarantine for product files we could not use."""
        return self.root / FAILURES_DIRNAME

    @property
    def output_directory(self) -> Path:
        """Files we generate, as opposed to files downloaded from the feed."""
        return self.root / OUTPUT_DIRNAME

    def reference_path(self, name: str) -> Path:
        return self.refs_directory / name

    def index_path(self, name: str) -> Path:
        return self.indexes_directory / name

    def output_path(self, name: str) -> Path:
        return self.output_directory / name

    def directory_for_category(self, category_id: str) -> Path:
        directory = self.products_directory / str(category_id)
        self._ensure_directory(directory)
        return directory

    def path_for(self, product_id: str) -> Path:
        """Location where a newly fetched product file should be written."""
        return self.products_directory / product_file_basename(product_id)

    # =========================================================================
    # Lookups
    # =========================================================================

    def files_for_category(self, category_id: str) -> List[Path]:
        directory = self.products_directory / str(category_id)
        if not directory.is_dir():
            return []
        return sorted((p for p in directory.iterdir() if _is_visible_file(p)), key=str)

    def product_files(self) -> List[Path]:
        """All valid product files, flat or already organized by category."""
        return sorted((p for p in self.products_directory.rglob("*") if _is_visible_file(p)), key=str)

    def find_valid(self, product_id: str) -> Optional[Path]:
        return self._find(product_id, self.products_directory)

    def find_failed(self, product_id: str) -> Optional[Path]:
        return self._find(product_id, self.failures_directory)

    def find_by_product_id(self, product_id: str) -> Optional[Path]:
        """Return the cached file for a product (valid or quarantined), or None."""
        return self.find_valid(product_id) or self.find_failed(product_id)

    def has_product(self, product_id: str) -> bool:
        """Whether a fetch for this product can be skipped."""
        return self.find_by_product_id(product_id) is not None

    def _find(self, product_id: str, directory: Path) -> Optional[Path]:
        basename = product_file_basename(product_id)
        direct = directory / basename
        if direct.is_file():
            return direct
        for candidate in sorted(directory.rglob(basename), key=str):
            if candidate.is_file():
                return candidate
        return None

    # =========================================================================
    # Maintenance
    # =========================================================================

    def quarantine(self, path: Path) -> Path:
        target = self.failures_directory / path.name
        shutil.move(str(path), str(target))
        return target

    def organize(self) -> OrganizeResult:
        """Move flat product files into per-category directories.

        Denied or unparsable files go to the failures area instead. A file
        that cannot be handled at all is logged and left where it is.
        """
        result = OrganizeResult()
        flat_files = sorted(
            (p for p in self.products_directory.iterdir() if _is_visible_file(p)), key=str
        )
        logger.info(f"Organizing {len(flat_files)} product files")

        for path in flat_files:
            try:
                try:
                    document = parse_product(path)
                except ParseFailure as e:
                    logger.warning(f"Quarantining unparsable file {path.name}: {e}")
                    self.quarantine(path)
                    result.quarantined += 1
                    continue

                if document.denied:
                    logger.debug(f"Quarantining denied product file {path.name}")
                    self.quarantine(path)
                    result.quarantined += 1
                    continue

                category_id = document.product.category_id
                if not category_id:
                    logger.warning(f"No category in {path.name}, leaving it in place")
                    result.skipped += 1
                    continue

                target = self.directory_for_category(category_id) / path.name
                shutil.move(str(path), str(target))
                result.moved += 1
            except (OSError, CacheError) as e:
                logger.error(f"ERROR: could not organize {path.name}: {e}")
                result.errors += 1

        log_event("cache_organized", {
            "message": (
                f"Organized product files: {result.moved} moved, "
                f"{result.quarantined} quarantined, {result.skipped} skipped, {result.errors} errors"
            ),
            "moved": result.moved,
            "quarantined": result.quarantined,
            "skipped": result.skipped,
            "errors": result.errors,
        }, logger_name="catsync.cache")
        return result

    def stats(self) -> Dict[str, int]:
        """Count cached files: one entry per category plus flat and failed files."""
        counts: Dict[str, int] = {}
        flat = 0
        for entry in sorted(self.products_directory.iterdir(), key=str):
            if entry.is_dir():
                counts[entry.name] = len(self.files_for_category(entry.name))
            elif _is_visible_file(entry):
                flat += 1
        counts["(unorganized)"] = flat
        counts["(failed)"] = sum(1 for p in self.failures_directory.iterdir() if _is_visible_file(p))
        return counts

    @staticmethod
    def _ensure_directory(path: Path) -> None:
        try:
            path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise CacheError(f"could not ensure directory: {path} ({e})") from e
        if not path.is_dir():
            raise CacheError(f"could not ensure directory: {path}")
