"""Configuration and constants for catsync."""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional, Tuple

from dotenv import load_dotenv

from catsync.errors import ConfigurationError

__all__ = [
    "ICECAT_DOMAIN",
    "PRIMARY_LANGUAGE_ID",
    "FALLBACK_LANGUAGE_ID",
    "ROOT_CATEGORY_ID",
    "ROOT_CATEGORY_NAME",
    "DENIED_CODE",
    "PRODUCT_FIELDS",
    "PRODUCT_ID_ATTRIBUTE",
    "PRODUCT_NAME_ATTRIBUTE",
    "CATEGORY_ATTRIBUTE",
    "IMAGE_ATTRIBUTE",
    "ACCESSORY_CATEGORIES",
    "IMPORT_FORMAT_VERSION",
    "UPSERT",
    "TRUNCATE",
    "DEFAULT_MAX_PRODUCTS",
    "DEFAULT_MAX_RELATED_PRODUCTS",
    "Settings",
    "load_settings",
]

ICECAT_DOMAIN = "data.icecat.biz"

# Language ids used by the feed. Names in the fallback language are only used
# when the primary language is missing.
PRIMARY_LANGUAGE_ID = "9"
FALLBACK_LANGUAGE_ID = "1"

# The feed lists category 1 as the root, and as its own parent.
ROOT_CATEGORY_ID = "1"
ROOT_CATEGORY_NAME = "ICEcat"

# Product documents carry Code="-1" when we lack access to the product.
DENIED_CODE = "-1"

# =============================================================================
# Output attribute names
# =============================================================================

PRODUCT_ID_ATTRIBUTE = "sku"
PRODUCT_NAME_ATTRIBUTE = "ProductName"
CATEGORY_ATTRIBUTE = "Category"
IMAGE_ATTRIBUTE = "Image"

# Attributes of the <Product> element that are mapped, and the attribute names
# they are written under. Everything else on the element is ignored.
PRODUCT_FIELDS: Dict[str, str] = {
    "Prod_id": PRODUCT_ID_ATTRIBUTE,
    "Title": PRODUCT_NAME_ATTRIBUTE,
    "Name": "Label",
    "Quality": "Editorial Quality",
    "ReleaseDate": "Release Date",
    "ThumbPic": "Thumbnail URL",
    "HighPic": "High Resolution Picture URL",
    "HighPicHeight": "High Resolution Picture Height",
    "HighPicWidth": "High Resolution Picture Width",
    "LowPic": "Low Resolution Picture URL",
    "LowPicHeight": "Low Resolution Picture Height",
    "LowPicWidth": "Low Resolution Picture Width",
}

# Product element attribute holding the primary image
IMAGE_FIELD = "HighPic"

SUPPLIER_ATTRIBUTE = "Supplier"
SHORT_DESCRIPTION_ATTRIBUTE = "Description"
LONG_DESCRIPTION_ATTRIBUTE = "Long Description"

# Accessory categories written to the destination system. Each gets its own
# CSV column and accessory label.
ACCESSORY_CATEGORIES: Tuple[str, ...] = ("Related Products",)

# =============================================================================
# Bulk import format
# =============================================================================

IMPORT_FORMAT_VERSION = "2012-12"
UPSERT = "upsert"
TRUNCATE = "truncate"
UPDATE_SEMANTICS = (UPSERT, TRUNCATE)

MANIFEST_FILENAME = "import.json"
ATTRIBUTES_FILENAME = "icecat-attributes.json.gz"
CATEGORIES_FILENAME = "icecat-categories.json.gz"
PRODUCTS_FILENAME = "icecat-products.json.gz"

# =============================================================================
# Cache layout
# =============================================================================

TMP_DIRNAME = "tmp"
REFS_DIRNAME = "refs"
INDEXES_DIRNAME = "indexes"
PRODUCTS_DIRNAME = "product_cache"
FAILURES_DIRNAME = "product_cache_failures"
OUTPUT_DIRNAME = "output"

PRODUCT_FILE_PREFIX = "product_"
PRODUCT_FILE_SUFFIX = ".xml.gz"

CATEGORIES_REF = "categories.xml.gz"
SUPPLIERS_REF = "suppliers.xml.gz"

# Remote locations of the reference documents, relative to the feed root
REMOTE_CATEGORIES_PATH = "export/freexml.int/refs/CategoriesList.xml.gz"
REMOTE_SUPPLIERS_PATH = "export/freexml.int/refs/SuppliersList.xml.gz"
REMOTE_INDEX_PATH = "export/freexml.int/EN/{name}"
# Product lookup by id and supplier, for products not listed in a fetched index
REMOTE_PRODUCT_QUERY = "xml_s3/xml_server3.cgi?prod_id={product_id};vendor={supplier};lang=en;output=productxml"

# =============================================================================
# Limits and HTTP settings
# =============================================================================

DEFAULT_MAX_PRODUCTS = 100
DEFAULT_MAX_RELATED_PRODUCTS = 200
PROGRESS_EVERY = 100

REQUEST_TIMEOUT = 30
MAX_RETRIES = 3
RETRY_BACKOFF_BASE = 2.0
MAX_RETRY_BACKOFF = 60.0
RETRY_STATUS_CODES = {429, 500, 502, 503, 504}

HEADERS = {
    "User-Agent": "catsync feed importer",
}


@dataclass
class Settings:
    """Runtime settings, usually read from the environment."""

    cache_dir: Optional[str] = None
    icecat_domain: str = ICECAT_DOMAIN
    username: Optional[str] = None
    password: Optional[str] = None
    max_products: int = DEFAULT_MAX_PRODUCTS
    max_related_products: int = DEFAULT_MAX_RELATED_PRODUCTS
    image_dir: Optional[str] = None
    image_base_url: Optional[str] = None

    @property
    def auth(self) -> Optional[Tuple[str, str]]:
        if self.username and self.password:
            return (self.username, self.password)
        return None

    def validate(self) -> "Settings":
        """Check settings before a run starts.

        Raises:
            ConfigurationError: If a required setting is missing or invalid
        """
        if not self.cache_dir:
            raise ConfigurationError("CATSYNC_CACHE_DIR must be set")
        if self.max_products < 0:
            raise ConfigurationError(f"max_products must be >= 0, got {self.max_products}")
        if self.max_related_products < 0:
            raise ConfigurationError(
                f"max_related_products must be >= 0, got {self.max_related_products}"
            )
        if self.image_dir and not self.image_base_url:
            raise ConfigurationError("CATSYNC_IMAGE_BASE_URL is required when CATSYNC_IMAGE_DIR is set")
        return self


def _int_from_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from e


def load_settings(env_file: Optional[Path] = None) -> Settings:
    """Build Settings from the environment.

    Args:
        env_file: Optional .env file loaded first (existing variables win)

    Returns:
        Unvalidated Settings; call validate() before using them for a run
    """
    if env_file is not None:
        load_dotenv(dotenv_path=env_file)
    else:
        load_dotenv()

    return Settings(
        cache_dir=os.getenv("CATSYNC_CACHE_DIR"),
        icecat_domain=os.getenv("ICECAT_DOMAIN", ICECAT_DOMAIN),
        username=os.getenv("ICECAT_USERNAME"),
        password=os.getenv("ICECAT_PASSWORD"),
        max_products=_int_from_env("CATSYNC_MAX_PRODUCTS", DEFAULT_MAX_PRODUCTS),
        max_related_products=_int_from_env(
            "CATSYNC_MAX_RELATED_PRODUCTS", DEFAULT_MAX_RELATED_PRODUCTS
        ),
        image_dir=os.getenv("CATSYNC_IMAGE_DIR"),
        image_base_url=os.getenv("CATSYNC_IMAGE_BASE_URL"),
    )
