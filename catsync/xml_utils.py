"""Streaming parsers for the feed's XML documents.

Four document kinds are understood: the category list, the supplier list,
product indexes (full or daily) and single product documents. All of them
are read with lxml's iterparse so that multi-hundred-megabyte indexes never
have to fit in memory. Sources may be paths or binary streams, gzip
compressed or not.
"""

import gzip
import html
import io
import zlib
from contextlib import contextmanager
from enum import Enum
from pathlib import Path
from typing import BinaryIO, Dict, Iterable, Iterator, List, Optional, Union

from lxml import etree

from catsync.config import (
    DENIED_CODE,
    FALLBACK_LANGUAGE_ID,
    IMAGE_FIELD,
    LONG_DESCRIPTION_ATTRIBUTE,
    PRIMARY_LANGUAGE_ID,
    PRODUCT_FIELDS,
    ROOT_CATEGORY_ID,
    ROOT_CATEGORY_NAME,
    SHORT_DESCRIPTION_ATTRIBUTE,
    SUPPLIER_ATTRIBUTE,
)
from catsync.errors import ParseFailure
from catsync.logging_config import get_logger
from catsync.models import Category, IndexDocument, IndexEntry, Product, ProductDocument

__all__ = [
    "Source",
    "open_document",
    "parse_categories",
    "parse_suppliers",
    "parse_index",
    "parse_product",
    "ParserState",
    "ProductDocumentParser",
]

logger = get_logger("xml_utils")

Source = Union[str, Path, BinaryIO]

GZIP_MAGIC = b"\x1f\x8b"

# Elements whose character content is captured
TEXT_TAGS = {
    "ShortSummaryDescription": SHORT_DESCRIPTION_ATTRIBUTE,
    "LongSummaryDescription": LONG_DESCRIPTION_ATTRIBUTE,
}


def _source_name(source: Source) -> str:
    if isinstance(source, (str, Path)):
        return str(source)
    return str(getattr(source, "name", "<stream>"))


def _peek_magic(stream: BinaryIO) -> bytes:
    peek = getattr(stream, "peek", None)
    if peek is not None:
        return peek(2)[:2]
    position = stream.tell()
    magic = stream.read(2)
    stream.seek(position)
    return magic


@contextmanager
def open_document(source: Source) -> Iterator[BinaryIO]:
    """Open a path or stream for reading, decompressing gzip transparently.

    Compression is detected from the gzip magic bytes rather than the file
    name, so a mis-named download is still readable.
    """
    if isinstance(source, (str, Path)):
        with open(source, "rb") as raw:
            if _peek_magic(raw) == GZIP_MAGIC:
                with gzip.GzipFile(fileobj=raw) as unzipped:
                    yield unzipped
            else:
                yield raw
        return

    if not hasattr(source, "peek") and not source.seekable():
        # buffered so the magic bytes can be inspected without consuming them
        source = io.BufferedReader(source)

    if _peek_magic(source) == GZIP_MAGIC:
        with gzip.GzipFile(fileobj=source) as unzipped:
            yield unzipped
    else:
        yield source


@contextmanager
def _parse_errors(source_name: str) -> Iterator[None]:
    """Turn low-level read and syntax errors into ParseFailure."""
    try:
        yield
    except ParseFailure:
        raise
    except (etree.LxmlError, OSError, EOFError, UnicodeDecodeError, zlib.error) as e:
        raise ParseFailure(source_name, f"{type(e).__name__}: {e}") from e


def _iterparse(stream: BinaryIO, events=("start", "end"), tag: Optional[str] = None):
    return etree.iterparse(
        stream,
        events=events,
        tag=tag,
        resolve_entities=False,
        no_network=True,
        huge_tree=True,
    )


def _release(elem) -> None:
    """Free an element that has been fully processed, and its earlier siblings."""
    elem.clear(keep_tail=True)
    parent = elem.getparent()
    if parent is not None:
        while elem.getprevious() is not None:
            del parent[0]


def _pick_name(
    current: Optional[str],
    primary_seen: bool,
    value: Optional[str],
    langid: Optional[str],
    primary_language_id: str,
    fallback_language_id: str,
) -> tuple:
    """Apply the language rule to one candidate name.

    Returns the (name, primary_seen) pair after considering the candidate.
    """
    if not value:
        return current, primary_seen
    if langid == primary_language_id:
        return value, True
    if langid == fallback_language_id and not primary_seen:
        return value, primary_seen
    return current, primary_seen


# =============================================================================
# Reference documents
# =============================================================================

def parse_categories(
    source: Source,
    primary_language_id: str = PRIMARY_LANGUAGE_ID,
    fallback_language_id: str = FALLBACK_LANGUAGE_ID,
) -> Dict[str, Category]:
    """Parse the category list into a map of id -> Category.

    Only the Name elements directly under a Category are considered (the
    ParentCategory block carries its own names). The root category is always
    present, with a fixed name and no parent.
    """
    source_name = _source_name(source)
    categories: Dict[str, Category] = {}
    stack: List[str] = []
    current: Optional[Category] = None
    primary_seen = False

    with _parse_errors(source_name), open_document(source) as stream:
        for event, elem in _iterparse(stream):
            tag = elem.tag
            if event == "start":
                parent = stack[-1] if stack else None
                stack.append(tag)

                if tag == "Category" and current is None:
                    current = Category(id=(elem.get("ID") or "").strip())
                    primary_seen = False
                elif current is not None and parent == "Category":
                    if tag == "Name":
                        current.name, primary_seen = _pick_name(
                            current.name,
                            primary_seen,
                            elem.get("Value"),
                            elem.get("langid"),
                            primary_language_id,
                            fallback_language_id,
                        )
                    elif tag == "ParentCategory":
                        current.parent_id = elem.get("ID")
                continue

            stack.pop()
            if tag == "Category" and current is not None and "Category" not in stack:
                if not current.id:
                    logger.debug(f"{source_name}: skipping category without an ID")
                elif current.id != ROOT_CATEGORY_ID:
                    if current.name is not None:
                        current.name = html.unescape(current.name)
                    categories[current.id] = current
                current = None
                _release(elem)

    categories[ROOT_CATEGORY_ID] = Category(id=ROOT_CATEGORY_ID, name=ROOT_CATEGORY_NAME, parent_id=None)
    logger.info(f"Parsed {len(categories)} categories from {source_name}")
    return categories


def parse_suppliers(source: Source) -> Dict[str, str]:
    """Parse the supplier list into a map of id -> supplier name."""
    source_name = _source_name(source)
    suppliers: Dict[str, str] = {}

    with _parse_errors(source_name), open_document(source) as stream:
        for _, elem in _iterparse(stream, events=("end",), tag="Supplier"):
            supplier_id = elem.get("ID")
            if supplier_id:
                suppliers[supplier_id] = elem.get("Name")
            _release(elem)

    logger.info(f"Parsed {len(suppliers)} suppliers from {source_name}")
    return suppliers


def parse_index(
    source: Source,
    category_ids: Optional[Iterable[str]] = None,
    max_products: int = 0,
) -> IndexDocument:
    """Scan a product index for products in the accepted categories.

    Args:
        source: Index document (full index or daily update)
        category_ids: Accepted category ids; None accepts every category
        max_products: Stop after this many accepted entries (0 = no limit)

    Returns:
        IndexDocument with the accepted entries and scan counters
    """
    source_name = _source_name(source)
    accepted = set(category_ids) if category_ids is not None else None
    document = IndexDocument()

    with _parse_errors(source_name), open_document(source) as stream:
        for _, elem in _iterparse(stream, events=("end",), tag="file"):
            document.total += 1
            product_id = elem.get("Prod_ID")
            category_id = elem.get("Catid")

            if product_id and (accepted is None or category_id in accepted):
                document.entries.append(
                    IndexEntry(
                        product_id=product_id,
                        category_id=category_id,
                        path=elem.get("path"),
                        supplier_id=elem.get("Supplier_id"),
                    )
                )
                document.total_valid += 1
            _release(elem)

            if max_products > 0 and document.total_valid >= max_products:
                break

    logger.info(
        f"Index {source_name}: {document.total_valid} accepted of {document.total} scanned"
    )
    return document


# =============================================================================
# Product documents
# =============================================================================

class ParserState(Enum):
    OUTSIDE_PRODUCT = "outside_product"
    IN_PRODUCT = "in_product"
    IN_RELATED_BLOCK = "in_related_block"
    IN_FEATURE_BLOCK = "in_feature_block"


class ProductDocumentParser:
    """State machine fed with the start/end events of one product document.

    The root <Product> element carries the whitelisted fields. Inside it,
    each <ProductRelated> block names one related product (and its supplier),
    and each <ProductFeature> block names one feature value. Other nested
    <Product> elements (bundle and family references) are skipped along
    with their content.
    """

    def __init__(
        self,
        source_name: str = "<stream>",
        primary_language_id: str = PRIMARY_LANGUAGE_ID,
        fallback_language_id: str = FALLBACK_LANGUAGE_ID,
    ):
        self.source_name = source_name
        self.primary_language_id = primary_language_id
        self.fallback_language_id = fallback_language_id

        self.state = ParserState.OUTSIDE_PRODUCT
        self.product: Optional[Product] = None
        self.code: Optional[str] = None
        self.error_message: Optional[str] = None

        self._stack: List[str] = []
        self._product_depth: Optional[int] = None
        # depth of a nested <Product> whose subtree is not modeled
        self._ignored_depth: Optional[int] = None
        self._finished = False

        self._related_id: Optional[str] = None
        self._related_supplier: Optional[str] = None

        self._feature_value: Optional[str] = None
        self._feature_name: Optional[str] = None
        self._feature_primary_seen = False

    def _fail(self, message: str) -> ParseFailure:
        return ParseFailure(self.source_name, message)

    def _is_product_child(self) -> bool:
        # called after the child has been pushed onto the stack
        return self._product_depth is not None and len(self._stack) == self._product_depth + 2

    def start(self, tag: str, attrib) -> None:
        self._stack.append(tag)
        if self._ignored_depth is not None:
            return

        if self.state is ParserState.OUTSIDE_PRODUCT:
            if tag == "Product":
                if self._finished:
                    raise self._fail("more than one product in document")
                self._start_product(attrib)
            elif tag in ("ProductRelated", "ProductFeature"):
                raise self._fail(f"<{tag}> outside of a product")

        elif self.state is ParserState.IN_PRODUCT:
            if tag == "ProductRelated":
                self.state = ParserState.IN_RELATED_BLOCK
                self._related_id = None
                self._related_supplier = None
            elif tag == "ProductFeature":
                self.state = ParserState.IN_FEATURE_BLOCK
                self._feature_value = attrib.get("Presentation_Value")
                self._feature_name = None
                self._feature_primary_seen = False
            elif tag == "Product":
                # e.g. ProductBundled and ProductFamily references
                self._ignored_depth = len(self._stack) - 1
            elif tag == "Category" and self._is_product_child():
                self._set_category(attrib.get("ID"))
            elif tag == "Supplier" and self._is_product_child():
                name = attrib.get("Name")
                if name and name.strip():
                    self.product.attributes[SUPPLIER_ATTRIBUTE] = name.strip()

        elif self.state is ParserState.IN_RELATED_BLOCK:
            if tag in ("ProductRelated", "ProductFeature"):
                raise self._fail(f"<{tag}> inside a related product block")
            if tag == "Product" and self._related_id is None:
                related_id = (attrib.get("Prod_id") or "").strip()
                self._related_id = related_id or None
            elif tag == "Supplier":
                self._related_supplier = attrib.get("Name")

        elif self.state is ParserState.IN_FEATURE_BLOCK:
            if tag in ("ProductRelated", "ProductFeature", "Product"):
                raise self._fail(f"<{tag}> inside a product feature block")
            if tag == "Name":
                self._feature_name, self._feature_primary_seen = _pick_name(
                    self._feature_name,
                    self._feature_primary_seen,
                    attrib.get("Value"),
                    attrib.get("langid"),
                    self.primary_language_id,
                    self.fallback_language_id,
                )

    def end(self, tag: str, text: Optional[str] = None) -> None:
        depth = len(self._stack) - 1

        if self._ignored_depth is not None:
            if depth == self._ignored_depth:
                self._ignored_depth = None
            self._stack.pop()
            return

        if self.state is ParserState.IN_RELATED_BLOCK and tag == "ProductRelated":
            if self._related_id:
                # a repeated id keeps the supplier of the block parsed last
                self.product.related[self._related_id] = self._related_supplier
            self.state = ParserState.IN_PRODUCT

        elif self.state is ParserState.IN_FEATURE_BLOCK and tag == "ProductFeature":
            value = (self._feature_value or "").strip()
            if self._feature_name and value:
                self.product.attributes[self._feature_name.strip()] = value
            self.state = ParserState.IN_PRODUCT

        elif self.state is ParserState.IN_PRODUCT:
            if tag in TEXT_TAGS:
                value = (text or "").strip()
                if value:
                    self.product.attributes[TEXT_TAGS[tag]] = value
            elif tag == "Product" and depth == self._product_depth:
                self.state = ParserState.OUTSIDE_PRODUCT
                self._finished = True

        self._stack.pop()

    def _start_product(self, attrib) -> None:
        self.state = ParserState.IN_PRODUCT
        self._product_depth = len(self._stack) - 1
        self.code = attrib.get("Code")
        self.error_message = attrib.get("ErrorMessage")

        product = Product(id=(attrib.get("Prod_id") or "").strip())
        for key, value in attrib.items():
            output_name = PRODUCT_FIELDS.get(key)
            if output_name and value and value.strip():
                product.attributes[output_name] = value.strip()

        image_url = (attrib.get(IMAGE_FIELD) or "").strip()
        product.image_url = image_url or None
        self.product = product

    def _set_category(self, category_id: Optional[str]) -> None:
        if not category_id:
            return
        if self.product.category_id is not None and self.product.category_id != category_id:
            logger.warning(
                f"{self.source_name}: multiple categories found for product "
                f"{self.product.id!r}, keeping {category_id}"
            )
        self.product.category_id = category_id

    def result(self) -> ProductDocument:
        if self.product is None:
            raise self._fail("no <Product> element in document")
        if self.code == DENIED_CODE:
            return ProductDocument(product=None, code=self.code, error_message=self.error_message)
        return ProductDocument(product=self.product, code=self.code, error_message=self.error_message)


def parse_product(
    source: Source,
    primary_language_id: str = PRIMARY_LANGUAGE_ID,
    fallback_language_id: str = FALLBACK_LANGUAGE_ID,
) -> ProductDocument:
    """Parse one product document.

    Returns:
        ProductDocument holding either the product or the feed's rejection

    Raises:
        ParseFailure: If the document is unreadable or structurally invalid
    """
    source_name = _source_name(source)
    parser = ProductDocumentParser(source_name, primary_language_id, fallback_language_id)
    open_text_tags = 0

    with _parse_errors(source_name), open_document(source) as stream:
        for event, elem in _iterparse(stream):
            tag = elem.tag
            if not isinstance(tag, str):
                continue

            if event == "start":
                if tag in TEXT_TAGS:
                    open_text_tags += 1
                parser.start(tag, elem.attrib)
                continue

            text = None
            if tag in TEXT_TAGS:
                text = "".join(elem.itertext())
                open_text_tags -= 1
            parser.end(tag, text)

            # descendants of a text element are needed for its character content
            if open_text_tags == 0 and elem.getparent() is not None:
                _release(elem)

    return parser.result()
