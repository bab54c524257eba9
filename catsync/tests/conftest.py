"""Shared fixtures: small ICEcat-like documents written into tmp_path."""

import gzip
import io
import logging
from pathlib import Path
from typing import Dict, Optional, Sequence, Tuple
from xml.sax.saxutils import quoteattr

import pytest

from catsync.cache import CatalogCache, product_file_basename
from catsync.models import Category
from catsync.xml_utils import parse_categories


CATEGORIES_XML = """<?xml version="1.0" encoding="UTF-8"?>
<ICECAT-interface>
  <Response ID="1" Status="1">
    <CategoriesList>
      <Category ID="1" LowPic="" Score="0">
        <Name ID="1" Value="Root" langid="1"/>
        <ParentCategory ID="1"/>
      </Category>
      <Category ID="5">
        <Name ID="11" Value="Televisies" langid="2"/>
        <Name ID="12" Value="TV" langid="9"/>
        <Name ID="13" Value="Television" langid="1"/>
        <ParentCategory ID="1">
          <Names><Name ID="14" langid="9">Root</Name></Names>
        </ParentCategory>
      </Category>
      <Category ID="9">
        <Name ID="21" Value="LED" langid="1"/>
        <ParentCategory ID="5">
          <Names><Name ID="22" langid="9">TV</Name></Names>
        </ParentCategory>
      </Category>
      <Category ID="12">
        <Name ID="31" Value="Cables &amp;amp; Adapters" langid="9"/>
        <ParentCategory ID="1"/>
      </Category>
    </CategoriesList>
  </Response>
</ICECAT-interface>
"""

SUPPLIERS_XML = """<?xml version="1.0" encoding="UTF-8"?>
<ICECAT-interface>
  <Response>
    <SuppliersList>
      <Supplier ID="1" Name="HP"/>
      <Supplier ID="7" Name="Acme"/>
    </SuppliersList>
  </Response>
</ICECAT-interface>
"""

INDEX_XML = """<?xml version="1.0" encoding="UTF-8"?>
<ICECAT-interface>
  <files.index Generated="20130101000000">
    <file path="export/freexml.int/EN/100.xml" Product_ID="100" Prod_ID="P100" Catid="9" Supplier_id="1"/>
    <file path="export/freexml.int/EN/101.xml" Product_ID="101" Prod_ID="P101" Catid="12" Supplier_id="7"/>
    <file path="export/freexml.int/EN/102.xml" Product_ID="102" Prod_ID="P102" Catid="9" Supplier_id="7">
      <M_Prod_ID>ALT-102</M_Prod_ID>
    </file>
    <file path="export/freexml.int/EN/103.xml" Product_ID="103" Prod_ID="P103" Catid="5" Supplier_id="1"/>
  </files.index>
</ICECAT-interface>
"""


def write_gz(path: Path, text: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    with gzip.open(path, "wt", encoding="utf-8") as f:
        f.write(text)
    return path


def build_product_xml(
    prod_id: str,
    category_id: Optional[str] = "9",
    title: Optional[str] = None,
    high_pic: Optional[str] = None,
    related: Sequence[Tuple[str, Optional[str]]] = (),
    features: Sequence[Tuple[str, str]] = (),
    supplier: Optional[str] = "Acme",
    code: str = "1",
    short_description: Optional[str] = None,
) -> str:
    """Build a product document the way the feed lays it out."""
    attrs = {"Code": code, "Prod_id": prod_id, "Quality": "ICECAT", "Unknown": "ignored"}
    if title is not None:
        attrs["Title"] = title
    if high_pic is not None:
        attrs["HighPic"] = high_pic
    if code == "-1":
        attrs = {"Code": code, "ErrorMessage": "You are not allowed to have Full ICEcat access"}
    attr_text = " ".join(f"{k}={quoteattr(v)}" for k, v in attrs.items())

    parts = ['<?xml version="1.0" encoding="UTF-8"?>', "<ICECAT-interface>", f"<Product {attr_text}>"]
    if code != "-1":
        if category_id is not None:
            parts.append(f'<Category ID="{category_id}"><Name ID="1" Value="ignored" langid="9"/></Category>')
        for feature_name, value in features:
            parts.append(
                f"<ProductFeature Presentation_Value={quoteattr(value)}>"
                f'<Feature ID="1"><Name ID="2" Value="Feature-NL" langid="2"/>'
                f"<Name ID=\"3\" Value={quoteattr(feature_name)} langid=\"9\"/></Feature>"
                f"</ProductFeature>"
            )
        for related_id, related_supplier in related:
            supplier_xml = f"<Supplier ID=\"9\" Name={quoteattr(related_supplier)}/>" if related_supplier else ""
            parts.append(
                f'<ProductRelated ID="1" Category_ID="9">'
                f"<Product Prod_id={quoteattr(related_id)}>{supplier_xml}</Product>"
                f"</ProductRelated>"
            )
        if short_description is not None:
            parts.append(
                f"<SummaryDescription><ShortSummaryDescription>{short_description}"
                f"</ShortSummaryDescription></SummaryDescription>"
            )
        if supplier is not None:
            parts.append(f"<Supplier ID=\"7\" Name={quoteattr(supplier)}/>")
    parts.append("</Product>")
    parts.append("</ICECAT-interface>")
    return "\n".join(parts)


@pytest.fixture(autouse=True)
def reset_logging():
    """Drop handlers a CLI test installed on the catsync logger."""
    yield
    logging.getLogger("catsync").handlers.clear()


@pytest.fixture
def cache(tmp_path) -> CatalogCache:
    """An initialized cache under tmp_path."""
    return CatalogCache().initialize(tmp_path / "cache")


@pytest.fixture
def categories_file(tmp_path) -> Path:
    return write_gz(tmp_path / "categories.xml.gz", CATEGORIES_XML)


@pytest.fixture
def suppliers_file(tmp_path) -> Path:
    return write_gz(tmp_path / "suppliers.xml.gz", SUPPLIERS_XML)


@pytest.fixture
def index_file(tmp_path) -> Path:
    return write_gz(tmp_path / "files.index.xml.gz", INDEX_XML)


@pytest.fixture
def product_xml():
    """Factory building product document text."""
    return build_product_xml


@pytest.fixture
def add_product(cache):
    """Factory writing a product document into the cache.

    With organized=True the file goes straight into its category directory,
    otherwise it is left flat as a fresh download would be.
    """

    def _add(prod_id: str, organized: bool = True, **kwargs) -> Path:
        text = build_product_xml(prod_id, **kwargs)
        category_id = kwargs.get("category_id", "9")
        if organized and category_id is not None and kwargs.get("code", "1") != "-1":
            directory = cache.directory_for_category(category_id)
        else:
            directory = cache.products_directory
        return write_gz(directory / product_file_basename(prod_id), text)

    return _add


@pytest.fixture
def categories() -> Dict[str, Category]:
    """The parsed category tree: 1 (root) > 5 TV > 9 LED, and 1 > 12 Cables."""
    return parse_categories(io.BytesIO(CATEGORIES_XML.encode("utf-8")))
