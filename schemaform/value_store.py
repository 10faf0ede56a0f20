"""
Path-addressed value store for one form instance.

Values live in a per-instance segment of a backing mapping. Inside a
Streamlit app the backing mapping is st.session_state, so values survive
reruns; tests and headless callers pass a plain dict.
"""

import re
import streamlit as st
import logging
from typing import Dict, Any, List, Optional, MutableMapping

from .field_schema import FieldSchema, FieldValue, empty_field_value
from .schema_walker import cell_path, row_path
from .type_converter import normalize_editor_rows

logger = logging.getLogger(__name__)

STORE_KEY_PREFIX = "formdata_"


class ValueStore:
    """Mapping of field path -> FieldValue for one logical form instance."""

    def __init__(self, instance_id: str, state: Optional[MutableMapping[str, Any]] = None):
        self.instance_id = instance_id
        self._state = state
        self._key = f"{STORE_KEY_PREFIX}{instance_id}"

    @property
    def _data(self) -> Dict[str, FieldValue]:
        state = self._state if self._state is not None else st.session_state
        if self._key not in state:
            state[self._key] = {}
        return state[self._key]

    def get(self, path: str) -> FieldValue:
        """Value at path; an unknown path reads as the canonical empty value."""
        value = self._data.get(path)
        if value is None:
            return empty_field_value()
        return value

    def set(self, path: str, value: FieldValue) -> None:
        """Overwrite one path. Parents and children are left untouched."""
        self._data[path] = value

    def initialize(self, path: str, value: Optional[FieldValue] = None) -> bool:
        """
        Seed a path only if it is absent.

        Returns:
            True if the value was written, False if the path already existed
        """
        data = self._data
        if path in data:
            return False
        data[path] = value if value is not None else empty_field_value()
        return True

    def clear(self) -> None:
        """Drop every path of this form instance."""
        state = self._state if self._state is not None else st.session_state
        count = len(state.get(self._key) or {})
        state[self._key] = {}
        logger.info(f"[STORE] Cleared {count} paths for form instance {self.instance_id}")

    def __contains__(self, path: str) -> bool:
        return path in self._data

    def all_paths(self) -> List[str]:
        return list(self._data.keys())

    def snapshot(self) -> Dict[str, FieldValue]:
        """Deep copy of every stored value, keyed by path."""
        return {path: value.model_copy(deep=True) for path, value in self._data.items()}

    def get_raw(self, path: str) -> Any:
        return self.get(path).raw

    def row_count(self, table_path: str) -> int:
        """
        Number of rows present under a table path.

        Counts the list held at the table path itself and any 'path[i]...'
        entries written independently, whichever reaches further.
        """
        raw = self.get(table_path).raw
        count = len(raw) if isinstance(raw, list) else 0
        pattern = re.compile(re.escape(table_path) + r"\[(\d+)\]")
        for path in self._data.keys():
            match = pattern.match(path)
            if match:
                count = max(count, int(match.group(1)) + 1)
        return count

    def append_row(self, table_path: str, children: List[FieldSchema]) -> int:
        """
        Append an empty row to a table and seed its cell placeholders.

        Returns:
            Index of the new row
        """
        current = self.get(table_path)
        rows = list(current.raw) if isinstance(current.raw, list) else []
        index = max(len(rows), self.row_count(table_path))
        rows.extend({} for _ in range(index - len(rows) + 1))
        self.set(table_path, current.model_copy(update={"raw": rows}))

        for child in children:
            self.initialize(cell_path(table_path, index, child.code))
        logger.debug(f"[STORE] Appended row {row_path(table_path, index)}")
        return index

    def load_rows(self, table_path: str, rows: Any, children: List[FieldSchema]) -> int:
        """
        Replace a table with rows coming from a data editor.

        Args:
            table_path: Path of the table field
            rows: List of dicts or a pandas DataFrame (st.data_editor output)
            children: Item fields of the table

        Returns:
            Number of rows written
        """
        records = normalize_editor_rows(rows, [child.code for child in children])

        stale_prefix = f"{table_path}["
        for path in [p for p in self._data.keys() if p.startswith(stale_prefix)]:
            del self._data[path]

        current = self.get(table_path)
        self.set(table_path, current.model_copy(update={"raw": records}))

        for index, record in enumerate(records):
            for child in children:
                cell = record.get(child.code)
                self.set(
                    cell_path(table_path, index, child.code),
                    FieldValue(raw=cell, display="" if cell is None else str(cell), meta={})
                )

        logger.info(f"[STORE] Loaded {len(records)} rows into {table_path}")
        return len(records)
