"""
Field path composition and schema traversal.

Extraction, initialization and validation all address the value store with
paths built here, so the same schema always yields the same paths.
"""

import re
from typing import Any, Callable, Iterator, List, Optional, Tuple
import logging

from .field_schema import FieldSchema

logger = logging.getLogger(__name__)

_ROW_SUFFIX = re.compile(r"\[(\d+)\]$")


def join_path(base_path: str, code: str) -> str:
    """'order' + 'address' -> 'order.address'; an empty base yields the bare code."""
    return f"{base_path}.{code}" if base_path else code


def row_path(table_path: str, index: int) -> str:
    """'items' + 2 -> 'items[2]'."""
    return f"{table_path}[{index}]"


def cell_path(table_path: str, index: int, code: str) -> str:
    """'items' + 2 + 'sku' -> 'items[2].sku'."""
    return join_path(row_path(table_path, index), code)


def parent_path(path: str) -> str:
    """Strip the last segment: 'items[2].sku' -> 'items[2]', 'items[2]' -> 'items'."""
    match = _ROW_SUFFIX.search(path)
    if match:
        return path[:match.start()]
    if "." in path:
        return path.rsplit(".", 1)[0]
    return ""


# Visitor signature: (field, path, row_context) -> bool
# row_context is the (table_path, index) of the closest enclosing table row or None.
# Returning False stops descent below the visited field.
FieldVisitor = Callable[[FieldSchema, str, Optional[Tuple[str, int]]], Optional[bool]]


def walk_fields(
    fields: List[FieldSchema],
    visitor: FieldVisitor,
    base_path: str = "",
    row_count: Optional[Callable[[FieldSchema, str], int]] = None,
    _row_context: Optional[Tuple[str, int]] = None,
) -> None:
    """
    Depth-first walk over a field list, visiting every field with its path.

    Object children are visited at 'path.child'. Table children are visited
    once per row at 'path[i].child' when row_count is given (it returns the
    number of rows currently present for a table path); without row_count
    table rows are not expanded.

    Args:
        fields: Field schemas at this level
        visitor: Callback receiving (field, path, row_context)
        base_path: Path prefix of this level
        row_count: Optional callback giving the row count of a table path
    """
    for field in fields:
        path = join_path(base_path, field.code)
        descend = visitor(field, path, _row_context)
        if descend is False or not field.children:
            continue

        if field.is_table:
            if row_count is None:
                continue
            for index in range(row_count(field, path)):
                walk_fields(field.children, visitor, row_path(path, index), row_count, (path, index))
        else:
            walk_fields(field.children, visitor, path, row_count, _row_context)


def iter_fields(fields: List[FieldSchema]) -> Iterator[FieldSchema]:
    """Yield every field of the tree, table item fields included, depth first."""
    for field in fields:
        yield field
        if field.children:
            yield from iter_fields(field.children)


def iter_leaf_paths(fields: List[FieldSchema], base_path: str = "") -> Iterator[Tuple[FieldSchema, str]]:
    """Yield (field, path) for every non-container field reachable without table rows."""
    for field in fields:
        path = join_path(base_path, field.code)
        if field.is_table:
            continue
        if field.is_object and field.children:
            yield from iter_leaf_paths(field.children, path)
        else:
            yield field, path


def container_default(field: FieldSchema) -> Any:
    """Empty value preserving the declared shape: [] for tables, {} for objects, else None."""
    if field.is_table:
        return []
    if field.is_object:
        return {}
    return None
