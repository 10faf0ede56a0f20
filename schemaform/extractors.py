"""
Submission extraction for schema-driven forms.

Walks a field schema and reads the value store to build the nested payload
sent to the backend. Every strategy returns a value shaped like the schema:
objects are dicts, tables and scalar arrays are lists, even when nothing
was ever entered.

Dispatch order for a field:
1. extractor registered for field.widget_type
2. extractor registered for the declared type family ('[]struct', 'struct', '[]')
3. BasicExtractor
"""

import logging
from abc import ABC, abstractmethod
from typing import Dict, Any, List, Optional

from .field_schema import DataType, FieldSchema, WidgetType, is_array_type
from .schema_walker import join_path, row_path
from .value_store import ValueStore

logger = logging.getLogger(__name__)

# Declared type families used as the second dispatch step
TYPE_FAMILY_TABLE = DataType.STRUCTS
TYPE_FAMILY_OBJECT = DataType.STRUCT
TYPE_FAMILY_SCALAR_ARRAY = DataType.ARRAY_PREFIX


class Extractor(ABC):
    """Strategy turning the stored values of one field into its submitted value."""

    @abstractmethod
    def extract(self, field: FieldSchema, path: str, store: ValueStore,
                registry: "ExtractorRegistry") -> Any:
        ...


class BasicExtractor(Extractor):
    """Scalars: the raw value as stored, None when unset."""

    def extract(self, field, path, store, registry):
        return store.get(path).raw


class ScalarArrayExtractor(Extractor):
    """Arrays of scalars: always a list; a bare scalar becomes a one element list."""

    def extract(self, field, path, store, registry):
        return self.to_list(store.get(path).raw)

    @staticmethod
    def to_list(raw: Any) -> List[Any]:
        if raw is None or raw == "":
            return []
        if isinstance(raw, list):
            return list(raw)
        if isinstance(raw, tuple):
            return list(raw)
        return [raw]


class MultiSelectExtractor(ScalarArrayExtractor):
    """
    Multi-select widgets.

    A field declared as plain 'string' submits a comma joined string;
    any array type submits a list, splitting comma separated strings.
    """

    def extract(self, field, path, store, registry):
        raw = store.get(path).raw

        if not is_array_type(field.declared_type):
            if isinstance(raw, (list, tuple)):
                return ",".join(str(item) for item in raw)
            if isinstance(raw, str):
                return raw
            return ""

        if isinstance(raw, str) and "," in raw:
            return [part.strip() for part in raw.split(",") if part.strip()]
        return self.to_list(raw)


def _members_from_store(children: List[FieldSchema], base_path: str, raw_object: Optional[Dict[str, Any]],
                        store: ValueStore, registry: "ExtractorRegistry") -> Dict[str, Any]:
    """
    Extract the members of one object (or one table row) at base_path.

    A member with no entry in the store falls back to raw_object, the value
    held at base_path itself, so data that arrived pre-assembled (saved links)
    is still submitted even if it was never expanded into member paths.
    """
    result: Dict[str, Any] = {}
    for child in children:
        child_path = join_path(base_path, child.code)
        if child_path not in store and raw_object is not None and child.code in raw_object:
            result[child.code] = extract_from_raw(child, raw_object[child.code])
        else:
            result[child.code] = registry.extract(child, child_path)
    return result


def extract_from_raw(field: FieldSchema, raw_value: Any) -> Any:
    """Shape a pre-assembled raw value according to the schema of field."""
    if field.is_table:
        if not isinstance(raw_value, list):
            return []
        rows = []
        for row in raw_value:
            row = row if isinstance(row, dict) else {}
            rows.append({child.code: extract_from_raw(child, row.get(child.code)) for child in field.children})
        return rows

    if field.is_object:
        if not isinstance(raw_value, dict):
            return {}
        if not field.children:
            return dict(raw_value)
        return {child.code: extract_from_raw(child, raw_value.get(child.code)) for child in field.children}

    if field.is_scalar_array or field.widget_type == WidgetType.MULTISELECT:
        return ScalarArrayExtractor.to_list(raw_value)

    return raw_value


class FormExtractor(Extractor):
    """Objects ('struct' / form widgets): a dict with one entry per child."""

    def extract(self, field, path, store, registry):
        raw = store.get(path).raw
        raw_object = raw if isinstance(raw, dict) else None

        if not field.children:
            return dict(raw_object) if raw_object else {}

        return _members_from_store(field.children, path, raw_object, store, registry)


class TableExtractor(Extractor):
    """Arrays of objects ('[]struct' / table widgets): a list with one dict per row."""

    def extract(self, field, path, store, registry):
        raw = store.get(path).raw
        raw_rows = raw if isinstance(raw, list) else []
        count = store.row_count(path)

        rows = []
        for index in range(count):
            raw_row = raw_rows[index] if index < len(raw_rows) and isinstance(raw_rows[index], dict) else None
            rows.append(_members_from_store(field.children, row_path(path, index), raw_row, store, registry))
        return rows


class ExtractorRegistry:
    """Extractor lookup table for one form session."""

    def __init__(self, store: ValueStore):
        self.store = store
        self._by_widget: Dict[str, Extractor] = {}
        self._by_type: Dict[str, Extractor] = {}
        self._default: Extractor = BasicExtractor()

        self.register(WidgetType.FORM, FormExtractor())
        self.register(WidgetType.TABLE, TableExtractor())
        self.register(WidgetType.MULTISELECT, MultiSelectExtractor())

        self.register_type(TYPE_FAMILY_TABLE, TableExtractor())
        self.register_type(TYPE_FAMILY_OBJECT, FormExtractor())
        self.register_type(TYPE_FAMILY_SCALAR_ARRAY, ScalarArrayExtractor())

    def register(self, widget_type: str, extractor: Extractor) -> None:
        self._by_widget[widget_type] = extractor

    def unregister(self, widget_type: str) -> None:
        self._by_widget.pop(widget_type, None)

    def register_type(self, type_family: str, extractor: Extractor) -> None:
        self._by_type[type_family] = extractor

    def get_extractor(self, field: FieldSchema) -> Extractor:
        if field.widget_type and field.widget_type in self._by_widget:
            return self._by_widget[field.widget_type]

        declared = (field.declared_type or "").lower()
        if declared == TYPE_FAMILY_TABLE and TYPE_FAMILY_TABLE in self._by_type:
            return self._by_type[TYPE_FAMILY_TABLE]
        if declared == TYPE_FAMILY_OBJECT and TYPE_FAMILY_OBJECT in self._by_type:
            return self._by_type[TYPE_FAMILY_OBJECT]
        if is_array_type(declared) and TYPE_FAMILY_SCALAR_ARRAY in self._by_type:
            return self._by_type[TYPE_FAMILY_SCALAR_ARRAY]

        return self._default

    def extract(self, field: FieldSchema, path: str) -> Any:
        return self.get_extractor(field).extract(field, path, self.store, self)


def collect_submission(fields: List[FieldSchema], registry: ExtractorRegistry, base_path: str = "") -> Dict[str, Any]:
    """
    Collect the submission payload for a list of fields.

    Args:
        fields: Top-level (or sibling) field schemas
        registry: Extractor registry bound to the form's value store
        base_path: Path prefix of the fields

    Returns:
        Dictionary of field code -> submitted value
    """
    payload: Dict[str, Any] = {}

    for field in fields:
        path = join_path(base_path, field.code)
        if path not in registry.store:
            logger.debug(f"[COLLECTOR] No stored value for {path}, extracting schema default shape")
        payload[field.code] = registry.extract(field, path)

    logger.info(f"[COLLECTOR] Collected {len(payload)} fields")
    return payload
