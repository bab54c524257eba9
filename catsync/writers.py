"""Bulk-import document writers.

Every product writer follows the same life cycle: open() refuses to
overwrite an existing file and writes the format's prologue, append() writes
one product, close() writes the epilogue. A writer that was opened and closed
without any product still produces a valid document.
"""

import csv
import gzip
import io
import json
import re
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, TextIO, Union

from lxml import etree

from catsync.categories import category_path
from catsync.config import (
    ACCESSORY_CATEGORIES,
    CATEGORY_ATTRIBUTE,
    IMAGE_ATTRIBUTE,
    IMPORT_FORMAT_VERSION,
    PRODUCT_ID_ATTRIBUTE,
    PRODUCT_NAME_ATTRIBUTE,
    ROOT_CATEGORY_ID,
    UPDATE_SEMANTICS,
    UPSERT,
)
from catsync.errors import WriterError
from catsync.logging_config import get_logger
from catsync.models import Category, Product

__all__ = [
    "ProductWriter",
    "JsonProductsWriter",
    "CsvProductsWriter",
    "XmlProductsWriter",
    "import_header",
    "open_output_file",
    "write_attributes_document",
    "write_categories_document",
    "clean_for_csv",
]

logger = get_logger("writers")

PathLike = Union[str, Path]


def import_header(update_semantics: str = UPSERT) -> Dict[str, Any]:
    if update_semantics not in UPDATE_SEMANTICS:
        raise WriterError(f"Unknown update semantics: {update_semantics!r}")
    return {
        "header": {
            "version": IMPORT_FORMAT_VERSION,
            "update_semantics": update_semantics,
            "scope": ["all"],
        }
    }


def open_output_file(path: PathLike, newline: Optional[str] = None) -> TextIO:
    """Open a new UTF-8 text file, gzip-compressed when the name ends in .gz.

    Raises:
        WriterError: If the file already exists
    """
    path = Path(path)
    if path.exists():
        raise WriterError(f"Output file exists: {path}")
    path.parent.mkdir(parents=True, exist_ok=True)

    try:
        if path.name.endswith(".gz"):
            raw = gzip.open(path, "xb")
            return io.TextIOWrapper(raw, encoding="utf-8", newline=newline)
        return open(path, "x", encoding="utf-8", newline=newline)
    except FileExistsError as e:
        raise WriterError(f"Output file exists: {path}") from e


class ProductWriter(ABC):
    """Writes accepted products into one output document."""

    def __init__(self) -> None:
        self.path: Optional[Path] = None
        self.count = 0
        self._file: Optional[TextIO] = None

    @property
    def is_open(self) -> bool:
        return self._file is not None

    def open(self, target_path: PathLike) -> "ProductWriter":
        if self.is_open:
            raise WriterError(f"Writer already open on {self.path}")
        self._check_inputs()
        self.path = None
        self._file = self._open_file(Path(target_path))
        self.path = Path(target_path)
        self.count = 0
        try:
            self._write_prologue()
        except BaseException:
            self.discard()
            raise
        return self

    def append(self, product: Product) -> None:
        if not self.is_open:
            raise WriterError("Writer is not open")
        self._write_product(product)
        self.count += 1

    def close(self) -> None:
        if not self.is_open:
            return
        try:
            self._write_epilogue()
        finally:
            self._file.close()
            self._file = None
        logger.info(f"Wrote {self.count} products to {self.path}")

    def discard(self) -> None:
        """Close the writer and delete the partial output."""
        if self.is_open:
            self._file.close()
            self._file = None
        if self.path is not None and self.path.exists():
            self.path.unlink()
            logger.warning(f"Discarded partial output {self.path}")

    def __enter__(self) -> "ProductWriter":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is None:
            self.close()
        else:
            self.discard()

    def _check_inputs(self) -> None:
        pass

    def _open_file(self, path: Path) -> TextIO:
        return open_output_file(path)

    @abstractmethod
    def _write_prologue(self) -> None:
        ...

    @abstractmethod
    def _write_product(self, product: Product) -> None:
        ...

    @abstractmethod
    def _write_epilogue(self) -> None:
        ...


# =============================================================================
# JSON
# =============================================================================

class JsonProductsWriter(ProductWriter):
    """Writes the products document of a bulk-import package.

    [
    {"header": {...}},
    {"products": [
    {...},
    {...}
    ]}
    ]
    """

    def __init__(
        self,
        update_semantics: str = UPSERT,
        accessory_categories: Sequence[str] = ACCESSORY_CATEGORIES,
    ):
        super().__init__()
        self.header = import_header(update_semantics)
        self.accessory_categories = list(accessory_categories)

    def _write_prologue(self) -> None:
        self._file.write("[\n")
        self._file.write(json.dumps(self.header))
        self._file.write(',\n{"products": [\n')

    def _write_product(self, product: Product) -> None:
        if self.count:
            self._file.write(",\n")
        self._file.write(json.dumps(self.product_record(product), ensure_ascii=False))

    def _write_epilogue(self) -> None:
        self._file.write("\n]}\n]\n")

    def product_record(self, product: Product) -> Dict[str, Any]:
        record: Dict[str, Any] = {PRODUCT_ID_ATTRIBUTE: product.id}
        for name, value in product.attributes.items():
            if name != PRODUCT_ID_ATTRIBUTE:
                record[name] = value
        if product.category_id:
            record[CATEGORY_ATTRIBUTE] = product.category_id
        if product.image_url:
            record[IMAGE_ATTRIBUTE] = product.image_url
        if product.accessory_ids:
            record["accessories"] = [
                {"accessory_category": accessory_category, "target_product_id": accessory_id}
                for accessory_category in self.accessory_categories
                for accessory_id in product.accessory_ids
            ]
        return record


# =============================================================================
# CSV
# =============================================================================

def clean_for_csv(value: Optional[str]) -> str:
    """Collapse whitespace (and escaped newlines) into single spaces."""
    if value is None:
        return ""
    value = str(value).replace("\\n", " ").strip()
    if not value:
        return ""
    return re.sub(r"\s+", " ", value)


class CsvProductsWriter(ProductWriter):
    """Writes products as one flat CSV.

    Column order: product id, category path, image URL, one column per
    accessory category, then the remaining attributes in the order given.
    """

    def __init__(
        self,
        categories: Dict[str, Category],
        attribute_names: Iterable[str],
        accessory_categories: Sequence[str] = ACCESSORY_CATEGORIES,
    ):
        super().__init__()
        self.categories = categories
        self.accessory_categories = list(accessory_categories)

        fixed = [PRODUCT_ID_ATTRIBUTE, CATEGORY_ATTRIBUTE, IMAGE_ATTRIBUTE] + self.accessory_categories
        self.attribute_names = list(attribute_names or [])
        self.columns = fixed + [name for name in self.attribute_names if name not in fixed]
        self._csv = None

    def _check_inputs(self) -> None:
        if not self.categories:
            raise WriterError("Require categories to write a CSV.")
        if not self.attribute_names:
            raise WriterError("Require attribute names to write a CSV.")

    def _open_file(self, path: Path) -> TextIO:
        return open_output_file(path, newline="")

    def _write_prologue(self) -> None:
        self._csv = csv.writer(self._file, quoting=csv.QUOTE_ALL)
        self._csv.writerow([clean_for_csv(column) for column in self.columns])

    def _write_product(self, product: Product) -> None:
        self._csv.writerow([self._cell(product, column) for column in self.columns])

    def _write_epilogue(self) -> None:
        self._csv = None

    def category_path(self, category_id: Optional[str]) -> str:
        if not category_id:
            return ""
        return category_path(self.categories, category_id)

    def _cell(self, product: Product, column: str) -> str:
        if column == PRODUCT_ID_ATTRIBUTE:
            return clean_for_csv(product.id)
        if column == CATEGORY_ATTRIBUTE:
            return self.category_path(product.category_id)
        if column == IMAGE_ATTRIBUTE:
            return clean_for_csv(product.image_url)
        if column in self.accessory_categories:
            return "|".join(product.accessory_ids)
        return clean_for_csv(product.attributes.get(column))


# =============================================================================
# XML
# =============================================================================

class XmlProductsWriter(ProductWriter):
    """Writes products as <products><product id="...">...</product></products>."""

    def _write_prologue(self) -> None:
        self._file.write('<?xml version="1.0" encoding="UTF-8"?>\n<products>\n')

    def _write_product(self, product: Product) -> None:
        element = etree.Element("product", id=product.id)
        for name, value in product.attributes.items():
            if name == PRODUCT_ID_ATTRIBUTE:
                continue
            prop = etree.SubElement(element, "property", name=name)
            prop.text = value
        if product.category_id:
            etree.SubElement(element, "category", id=product.category_id)
        if product.image_url:
            etree.SubElement(element, "image", url=product.image_url)
        for accessory_id in product.accessory_ids:
            etree.SubElement(element, "related_product", product_id=accessory_id, status="active")
        self._file.write(etree.tostring(element, encoding="unicode"))
        self._file.write("\n")

    def _write_epilogue(self) -> None:
        self._file.write("</products>\n")


# =============================================================================
# Attribute and category documents
# =============================================================================

def _write_document(path: PathLike, sections: List[Dict[str, Any]], update_semantics: str) -> Path:
    path = Path(path)
    with open_output_file(path) as f:
        f.write("[\n")
        f.write(json.dumps(import_header(update_semantics)))
        for section in sections:
            f.write(",\n")
            f.write(json.dumps(section, ensure_ascii=False))
        f.write("\n]\n")
    return path


def write_attributes_document(
    path: PathLike,
    attribute_names: Iterable[str],
    accessory_categories: Sequence[str] = ACCESSORY_CATEGORIES,
    update_semantics: str = UPSERT,
) -> Path:
    """Write the attributes document declaring every attribute seen.

    The id, name and category attributes carry the roles the destination
    system needs to recognize them.
    """
    attributes: List[Dict[str, Any]] = [
        {
            "id": PRODUCT_ID_ATTRIBUTE,
            "roles": {"products": ["id"], "accessories": ["target_product_id"]},
        },
        {"id": PRODUCT_NAME_ATTRIBUTE, "roles": {"products": ["name"]}},
        {"id": CATEGORY_ATTRIBUTE, "attribute_type": "category", "hierarchical": True},
        {"id": IMAGE_ATTRIBUTE, "attribute_type": "digital_asset"},
    ]
    for accessory_category in accessory_categories:
        attributes.append({"id": accessory_category, "roles": {"global": ["accessory_label"]}})

    declared = {attribute["id"] for attribute in attributes}
    for name in attribute_names:
        if name not in declared:
            attributes.append({"id": name})
            declared.add(name)

    logger.info(f"Writing {len(attributes)} attributes to {path}")
    return _write_document(path, [{"attributes": attributes}], update_semantics)


def write_categories_document(
    path: PathLike,
    categories: Dict[str, Category],
    update_semantics: str = UPSERT,
) -> Path:
    """Write the categories as values of the category attribute.

    The root category is not written; its children become top-level values.
    """
    values: List[Dict[str, Any]] = []
    for category_id in sorted(categories):
        if category_id == ROOT_CATEGORY_ID:
            continue
        category = categories[category_id]
        value: Dict[str, Any] = {
            "id": category.id,
            "attribute_id": CATEGORY_ATTRIBUTE,
            "name": category.name or category.id,
        }
        if category.parent_id and category.parent_id != ROOT_CATEGORY_ID:
            value["parent_id"] = category.parent_id
        values.append(value)

    logger.info(f"Writing {len(values)} categories to {path}")
    return _write_document(path, [{"attribute_values": values}], update_semantics)
