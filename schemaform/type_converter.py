"""
Type conversion helpers.

Values reach the store untyped (URL parameters are strings, data editors
hand back numpy scalars). The declared type of a field decides what the
submitted value must look like, so every conversion goes through here.
"""

import json
import logging
from typing import Dict, Any, List, Optional, Tuple
from urllib.parse import unquote

import numpy as np
import pandas as pd

from .field_schema import (
    DataType, FieldSchema, FieldValue, is_array_type, element_type, normalize_scalar_type
)

logger = logging.getLogger(__name__)

_TRUE_STRINGS = {"true", "yes", "1", "on"}
_FALSE_STRINGS = {"false", "no", "0", "off", ""}


def convert_basic_type(value: Any, field_type: Optional[str]) -> Any:
    """
    Coerce a scalar to the declared scalar type.

    Values that cannot be converted are returned unchanged so the server
    can report them; None stays None.
    """
    if value is None:
        return None

    target = normalize_scalar_type(field_type)

    if target in (DataType.INT, DataType.TIMESTAMP):
        if isinstance(value, bool):
            return int(value)
        if isinstance(value, int):
            return value
        if isinstance(value, float):
            return int(value) if value.is_integer() else value
        stripped = str(value).strip()
        try:
            return int(stripped)
        except ValueError:
            try:
                as_float = float(stripped)
                return int(as_float) if as_float.is_integer() else value
            except ValueError:
                logger.debug(f"Unable to coerce {value!r} to {target}")
                return value

    if target == DataType.FLOAT:
        if isinstance(value, bool):
            return float(value)
        if isinstance(value, (int, float)):
            return float(value)
        try:
            return float(str(value).strip())
        except ValueError:
            logger.debug(f"Unable to coerce {value!r} to float")
            return value

    if target == DataType.BOOL:
        if isinstance(value, bool):
            return value
        if isinstance(value, str):
            lowered = value.strip().lower()
            if lowered in _TRUE_STRINGS:
                return True
            if lowered in _FALSE_STRINGS:
                return False
            return value
        return bool(value)

    if target == DataType.STRING:
        return value if isinstance(value, str) else str(value)

    return value


def convert_array_type(value: Any, field_type: Optional[str]) -> List[Any]:
    """
    Coerce a value to a list of the declared element type.

    A comma separated string is split; a bare scalar becomes a one element list.
    """
    if value is None:
        return []

    item_type = element_type(field_type or DataType.STRINGS)

    if isinstance(value, str):
        parts = [part.strip() for part in value.split(",")] if "," in value else [value]
        return [convert_basic_type(part, item_type) for part in parts if part != ""]
    if isinstance(value, (list, tuple)):
        return [convert_basic_type(item, item_type) for item in value]
    return [convert_basic_type(value, item_type)]


def convert_value_by_field_type(value: Any, field: FieldSchema) -> Any:
    """Convert a raw value according to field.declared_type. Containers pass through."""
    if value is None or field.is_object or field.is_table:
        return value
    if is_array_type(field.declared_type):
        return convert_array_type(value, field.declared_type)
    return convert_basic_type(value, field.declared_type)


def convert_form_data_to_request(form_data: Dict[str, Any], fields: List[FieldSchema]) -> Dict[str, Any]:
    """
    Turn a code -> FieldValue (or raw value) map into a typed request dict.

    Used for the 'request' part of lookup calls, where the backend resolves
    options against the sibling values.
    """
    field_map = {field.code: field for field in fields or []}
    request: Dict[str, Any] = {}

    for code, value in form_data.items():
        raw = value.raw if isinstance(value, FieldValue) else value
        field = field_map.get(code)
        if raw is None or field is None:
            request[code] = raw
            continue
        request[code] = convert_value_by_field_type(raw, field)

    return request


def _option_keys(value: Any) -> List[Any]:
    """Keys an option value should be reachable under (1 and '1' match each other)."""
    keys = [value]
    if isinstance(value, bool):
        return keys
    if isinstance(value, (int, float)):
        keys.append(str(value))
    elif isinstance(value, str):
        try:
            keys.append(int(value))
        except ValueError:
            pass
    return keys


def build_option_maps(items: List[Dict[str, Any]]) -> Tuple[Dict[Any, str], Dict[Any, Any]]:
    """
    Build value -> label and value -> display_info maps from lookup items.

    Numeric and string spellings of the same value share an entry.
    """
    option_map: Dict[Any, str] = {}
    display_info_map: Dict[Any, Any] = {}

    for item in items or []:
        item_value = item.get("value")
        label = item.get("label") or str(item_value)
        display_info = item.get("display_info")
        for key in _option_keys(item_value):
            option_map.setdefault(key, label)
            if display_info is not None:
                display_info_map.setdefault(key, display_info)

    return option_map, display_info_map


def get_option_label(option_map: Dict[Any, str], value: Any) -> str:
    """Label for value, trying numeric/string spellings; falls back to str(value)."""
    for key in _option_keys(value):
        label = option_map.get(key)
        if label:
            return label
    return str(value)


def values_equal(left: Any, right: Any) -> bool:
    """Loose equality used to match lookup options: 1 == '1'."""
    if left == right:
        return True
    return str(left) == str(right)


def decode_structured_param(value: Any) -> Any:
    """
    Best-effort decoding of a query parameter.

    Percent-encoded values are decoded; values that then look like JSON
    arrays or objects are parsed. Anything else is returned as given.
    """
    if not isinstance(value, str):
        return value

    decoded = value
    try:
        decoded = unquote(value)
    except (TypeError, ValueError):
        logger.debug(f"Unable to percent-decode query value {value!r}")

    stripped = decoded.strip()
    if stripped.startswith("[") or stripped.startswith("{"):
        try:
            return json.loads(stripped)
        except json.JSONDecodeError:
            logger.debug(f"Query value looks structured but is not JSON: {stripped[:80]!r}")
    return decoded


def normalize_cell(value: Any) -> Any:
    """Convert pandas NaN and numpy scalars into plain Python values."""
    if isinstance(value, (list, dict)):
        return value
    if value is None:
        return None
    try:
        if pd.isna(value):
            return None
    except (TypeError, ValueError):
        return value
    if isinstance(value, np.bool_):
        return bool(value)
    if isinstance(value, np.integer):
        return int(value)
    if isinstance(value, np.floating):
        return float(value)
    if isinstance(value, pd.Timestamp):
        return value.isoformat()
    return value


def normalize_editor_rows(rows: Any, columns: List[str]) -> List[Dict[str, Any]]:
    """
    Normalize table rows from a data editor.

    Args:
        rows: pandas DataFrame or list of dicts
        columns: Item field codes; missing columns are filled with None

    Returns:
        List of plain dicts
    """
    if rows is None:
        return []
    if isinstance(rows, pd.DataFrame):
        records = rows.to_dict("records")
    elif isinstance(rows, list):
        records = rows
    else:
        logger.warning(f"Unsupported row container {type(rows).__name__}, treating as empty")
        return []

    cleaned: List[Dict[str, Any]] = []
    for record in records:
        if not isinstance(record, dict):
            continue
        row = {key: normalize_cell(value) for key, value in record.items()}
        for column in columns:
            row.setdefault(column, None)
        cleaned.append(row)
    return cleaned
