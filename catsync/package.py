"""Bulk-import package assembly.

The package is a zip holding a manifest (import.json) plus the attributes,
categories and products documents it names. It is the only deliverable, so
it is either written completely or not at all: inputs are checked before
anything is created, and the archive is built under a temporary name and
renamed into place only once it is complete.
"""

import json
import os
import tempfile
import zipfile
from pathlib import Path
from typing import List, Sequence, Union

from catsync.config import MANIFEST_FILENAME, TRUNCATE
from catsync.errors import WriterError
from catsync.logging_config import get_logger, log_event
from catsync.writers import import_header

__all__ = ["assemble_package", "build_manifest"]

logger = get_logger("package")

PathLike = Union[str, Path]


def build_manifest(
    attributes_file: Path,
    categories_file: Path,
    product_files: Sequence[Path],
    update_semantics: str = TRUNCATE,
) -> List[dict]:
    manifest = [import_header(update_semantics)]
    manifest.append({"attributes": attributes_file.name})
    manifest.append({"attribute_values": categories_file.name})
    for product_file in product_files:
        manifest.append({"products": product_file.name})
    return manifest


def _validate_inputs(archive_path: Path, constituents: List[Path]) -> None:
    if archive_path.suffix != ".zip":
        raise WriterError(f"Package filename must end in .zip: {archive_path}")
    if archive_path.exists():
        raise WriterError(f"Package already exists: {archive_path}")

    missing = [str(path) for path in constituents if not path.is_file()]
    if missing:
        raise WriterError(f"Package input files do not exist: {', '.join(missing)}")

    names = [path.name for path in constituents]
    if MANIFEST_FILENAME in names or len(set(names)) != len(names):
        raise WriterError(f"Package input file names must be unique and not {MANIFEST_FILENAME}: {names}")


def assemble_package(
    archive_path: PathLike,
    attributes_file: PathLike,
    categories_file: PathLike,
    product_files: Sequence[PathLike],
    update_semantics: str = TRUNCATE,
    remove_sources: bool = False,
) -> Path:
    """Bundle the import documents into one zip archive.

    Args:
        archive_path: Target archive, must end in .zip and not exist yet
        attributes_file: Attributes document
        categories_file: Categories (attribute values) document
        product_files: One or more products documents
        update_semantics: 'upsert' for incremental updates, 'truncate' to
            replace everything in the destination
        remove_sources: Delete the input documents once the archive is in place

    Returns:
        Path of the finished archive

    Raises:
        WriterError: If an input is missing or the target is unusable. In
            that case nothing has been written.
    """
    archive_path = Path(archive_path)
    attributes_file = Path(attributes_file)
    categories_file = Path(categories_file)
    product_files = [Path(p) for p in product_files]
    if not product_files:
        raise WriterError("A package needs at least one products file")

    constituents = [attributes_file, categories_file] + product_files
    _validate_inputs(archive_path, constituents)
    manifest = build_manifest(attributes_file, categories_file, product_files, update_semantics)

    archive_path.parent.mkdir(parents=True, exist_ok=True)
    fd, partial_name = tempfile.mkstemp(
        prefix=f".{archive_path.stem}-", suffix=".partial", dir=archive_path.parent
    )
    os.close(fd)
    partial_path = Path(partial_name)

    try:
        with zipfile.ZipFile(partial_path, "w", compression=zipfile.ZIP_DEFLATED) as archive:
            archive.writestr(MANIFEST_FILENAME, json.dumps(manifest, indent=1))
            for path in constituents:
                archive.write(path, arcname=path.name)

        # os.link never replaces an existing target
        try:
            os.link(partial_path, archive_path)
        except FileExistsError as e:
            raise WriterError(f"Package already exists: {archive_path}") from e
        except OSError:
            if archive_path.exists():
                raise WriterError(f"Package already exists: {archive_path}")
            os.replace(partial_path, archive_path)
    finally:
        if partial_path.exists():
            partial_path.unlink()

    logger.info(f"Wrote package {archive_path} ({len(constituents)} documents, {update_semantics})")
    log_event("package_written", {
        "archive": str(archive_path),
        "documents": [path.name for path in constituents],
        "update_semantics": update_semantics,
    }, logger_name="catsync.package")

    if remove_sources:
        for path in constituents:
            path.unlink()

    return archive_path
