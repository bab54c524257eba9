"""Category tree helpers."""

from collections import defaultdict
from typing import Dict, List, Optional, Set

from catsync.config import ROOT_CATEGORY_ID
from catsync.errors import CategoryPathError
from catsync.models import Category

__all__ = [
    "clean_category_name",
    "category_path",
    "descendant_category_ids",
]


def clean_category_name(name: str) -> str:
    """Path separators inside a name would break the rendered path."""
    return name.replace("/", " ").replace("\\", " ")


def category_path(categories: Dict[str, Category], category_id: str) -> str:
    """Render the slash-separated path of a category, excluding the root.

    path(id) is name(id) when the parent is the root or absent, otherwise
    path(parent_id) + "/" + name(id).

    Raises:
        CategoryPathError: If a category id is unknown or the parent chain
            loops back on itself
    """
    names: List[str] = []
    visited: Set[str] = set()
    current: Optional[str] = category_id

    while current and current != ROOT_CATEGORY_ID:
        if current in visited:
            raise CategoryPathError(f"Cyclic parent chain at category {current} (from {category_id})")
        visited.add(current)

        category = categories.get(current)
        if category is None:
            raise CategoryPathError(f"Category id not recognized: {current}")
        names.append(clean_category_name(category.name or category.id))
        current = category.parent_id

    return "/".join(reversed(names))


def descendant_category_ids(categories: Dict[str, Category], root_id: str) -> Set[str]:
    """Return root_id and the ids of every category below it."""
    children: Dict[str, List[str]] = defaultdict(list)
    for category in categories.values():
        if category.parent_id and category.parent_id != category.id:
            children[category.parent_id].append(category.id)

    found: Set[str] = set()
    pending = [root_id]
    while pending:
        current = pending.pop()
        if current in found:
            continue
        found.add(current)
        pending.extend(children.get(current, []))
    return found
