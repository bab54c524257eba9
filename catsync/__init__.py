"""ICEcat product feed to bulk-import package converter."""

__version__ = "0.1.0"

# Re-export main components for convenient imports
from catsync.cache import CatalogCache
from catsync.categories import category_path
from catsync.config import Settings, load_settings
from catsync.errors import (
    CacheError,
    CatsyncError,
    CategoryPathError,
    ConfigurationError,
    FetchError,
    ParseFailure,
    WriterError,
)
from catsync.loader import CatalogLoader
from catsync.models import Category, ConversionRun, Product
from catsync.package import assemble_package
from catsync.writers import CsvProductsWriter, JsonProductsWriter, XmlProductsWriter

__all__ = [
    # Version
    "__version__",
    # Config
    "Settings",
    "load_settings",
    # Errors
    "CatsyncError",
    "ConfigurationError",
    "CacheError",
    "WriterError",
    "CategoryPathError",
    "ParseFailure",
    "FetchError",
    # Models
    "Product",
    "Category",
    "ConversionRun",
    # Core
    "CatalogCache",
    "CatalogLoader",
    "category_path",
    "JsonProductsWriter",
    "CsvProductsWriter",
    "XmlProductsWriter",
    "assemble_package",
]
