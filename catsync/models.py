"""Data models for feed documents and conversion runs."""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Set

from catsync.config import DENIED_CODE

__all__ = [
    "Product",
    "Category",
    "IndexEntry",
    "IndexDocument",
    "ProductDocument",
    "ConversionRun",
]


@dataclass
class Product:
    """A single product parsed from a product document.

    Attributes are kept in document order; the loader fills accessory_ids
    when the product is accepted.
    """

    id: str
    attributes: Dict[str, str] = field(default_factory=dict)
    category_id: Optional[str] = None
    image_url: Optional[str] = None

    # related product id -> supplier name (needed to query the feed for it)
    related: Dict[str, Optional[str]] = field(default_factory=dict)

    accessory_ids: List[str] = field(default_factory=list)


@dataclass
class Category:
    id: str
    name: Optional[str] = None
    parent_id: Optional[str] = None


@dataclass
class IndexEntry:
    """One <file> entry of a product index."""

    product_id: str
    category_id: Optional[str]
    path: Optional[str]
    supplier_id: Optional[str] = None


@dataclass
class IndexDocument:
    entries: List[IndexEntry] = field(default_factory=list)
    total: int = 0  # entries seen, accepted or not
    total_valid: int = 0  # entries in an accepted category


@dataclass
class ProductDocument:
    """Result of parsing a product document.

    Either carries a product, or is a definite rejection from the feed
    (usually because we may not access the product).
    """

    product: Optional[Product] = None
    code: Optional[str] = None
    error_message: Optional[str] = None

    @property
    def denied(self) -> bool:
        return self.code == DENIED_CODE or self.product is None


@dataclass
class ConversionRun:
    """Aggregates tracked over one loader run."""

    succeeded_files: List[Path] = field(default_factory=list)
    failed_files: List[Path] = field(default_factory=list)
    loaded_ids: List[str] = field(default_factory=list)
    loaded_category_ids: Set[str] = field(default_factory=set)
    product_categories: Dict[str, Optional[str]] = field(default_factory=dict)
    pending_related: Dict[str, Optional[str]] = field(default_factory=dict)
    attribute_names: Dict[str, None] = field(default_factory=dict)
    files_scanned: int = 0

    def is_loaded(self, product_id: str) -> bool:
        return product_id in self.product_categories

    def record_loaded(self, product: Product, path: Path) -> None:
        self.succeeded_files.append(path)
        self.loaded_ids.append(product.id)
        self.product_categories[product.id] = product.category_id
        if product.category_id:
            self.loaded_category_ids.add(product.category_id)
        for name in product.attributes:
            self.attribute_names.setdefault(name, None)

    def record_failed(self, path: Path) -> None:
        self.failed_files.append(path)

    def purge_loaded_from_pending(self) -> None:
        for product_id in self.loaded_ids:
            self.pending_related.pop(product_id, None)

    @property
    def sorted_attribute_names(self) -> List[str]:
        return sorted(self.attribute_names)
