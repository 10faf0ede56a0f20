"""
Field schema and field value models.

A backend describes the request of an operation as a tree of FieldSchema
nodes. Every value the user edits is stored as a FieldValue triple
(raw, display, meta) addressed by a field path.
"""

from typing import Dict, Any, List, Optional
from pydantic import BaseModel, ConfigDict, Field
import logging

logger = logging.getLogger(__name__)


class DataType:
    """Declared data type constants."""
    STRING = "string"
    INT = "int"
    FLOAT = "float"
    BOOL = "bool"
    TIMESTAMP = "timestamp"
    STRUCT = "struct"
    STRUCTS = "[]struct"
    STRINGS = "[]string"
    INTS = "[]int"
    FLOATS = "[]float"
    FILES = "files"

    ARRAY_PREFIX = "[]"

    # Aliases accepted from hand-written schemas
    INT_ALIASES = {"int", "integer", "int64", "int32"}
    FLOAT_ALIASES = {"float", "number", "float64", "float32"}
    BOOL_ALIASES = {"bool", "boolean"}


class WidgetType:
    """Widget type tags used for extractor and initializer dispatch."""
    INPUT = "input"
    TEXT_AREA = "text_area"
    NUMBER = "number"
    SWITCH = "switch"
    SELECT = "select"
    MULTISELECT = "multiselect"
    USER = "user"
    TIMESTAMP = "timestamp"
    FORM = "form"
    TABLE = "table"


class FieldCallback:
    """Remote callbacks a field may support."""
    ON_SELECT_FUZZY = "OnSelectFuzzy"


class FieldValueMeta:
    """Well-known keys of the FieldValue.meta bag."""
    FROM_URL = "_from_url"
    FROM_SAVED_LINK = "_from_saved_link"
    FROM_DEFAULT = "_from_default"
    ORIGINAL_VALUE = "_original_value"
    CONVERTED = "_converted"
    DISPLAY_INFO = "display_info"
    STATISTICS = "statistics"


def is_array_type(declared_type: Optional[str]) -> bool:
    """True for '[]T' declared types, including '[]struct'."""
    return bool(declared_type) and declared_type.startswith(DataType.ARRAY_PREFIX)


def element_type(declared_type: Optional[str]) -> str:
    """Element type of an array type ('[]int' -> 'int'); scalars map to themselves."""
    if not declared_type:
        return DataType.STRING
    if is_array_type(declared_type):
        return declared_type[len(DataType.ARRAY_PREFIX):] or DataType.STRING
    return declared_type


def normalize_scalar_type(type_name: Optional[str]) -> str:
    """Fold type aliases ('integer', 'number', 'boolean') onto the canonical names."""
    lowered = (type_name or DataType.STRING).lower()
    if lowered in DataType.INT_ALIASES:
        return DataType.INT
    if lowered in DataType.FLOAT_ALIASES:
        return DataType.FLOAT
    if lowered in DataType.BOOL_ALIASES:
        return DataType.BOOL
    return lowered


class FieldValue(BaseModel):
    """Value held at one field path."""

    raw: Any = None
    display: str = ""
    meta: Dict[str, Any] = Field(default_factory=dict)

    def is_unset(self) -> bool:
        return self.raw is None


def empty_field_value() -> FieldValue:
    """The canonical value of a path that has never been written."""
    return FieldValue(raw=None, display="", meta={})


class FieldSchema(BaseModel):
    """
    Static description of one field.

    Attributes:
        code: Identifier, unique among siblings; used to build field paths
        name: Human readable label
        declared_type: Data shape, e.g. 'string', '[]int', 'struct', '[]struct'
        validation: Comma separated rule string, e.g. 'required,min=2'
        widget_type: Tag selecting extractor and initializer strategies
        widget_config: Widget specific options ('default', 'options', ...)
        children: Child fields for 'struct' and '[]struct' fields
        native_field_name: Name used by other fields' validation rules
        callbacks: Supported remote callbacks, e.g. ['OnSelectFuzzy']
    """

    model_config = ConfigDict(frozen=True)

    code: str
    name: str = ""
    declared_type: str = DataType.STRING
    validation: str = ""
    widget_type: str = ""
    widget_config: Dict[str, Any] = Field(default_factory=dict)
    children: List["FieldSchema"] = Field(default_factory=list)
    native_field_name: str = ""
    callbacks: List[str] = Field(default_factory=list)

    @property
    def label(self) -> str:
        return self.name or self.code

    @property
    def is_object(self) -> bool:
        return self.widget_type == WidgetType.FORM or self.declared_type == DataType.STRUCT

    @property
    def is_table(self) -> bool:
        return self.widget_type == WidgetType.TABLE or self.declared_type == DataType.STRUCTS

    @property
    def is_scalar_array(self) -> bool:
        return is_array_type(self.declared_type) and not self.is_table

    @property
    def element_type(self) -> str:
        return normalize_scalar_type(element_type(self.declared_type))

    @property
    def default(self) -> Any:
        return self.widget_config.get("default")

    def has_callback(self, callback: str) -> bool:
        return callback in (self.callbacks or [])

    def child(self, code: str) -> Optional["FieldSchema"]:
        for child in self.children:
            if child.code == code:
                return child
        return None


class OperationSchema(BaseModel):
    """The request schema of one backend operation (route + method)."""

    model_config = ConfigDict(frozen=True)

    route: str
    method: str = "GET"
    name: str = ""
    request: List[FieldSchema] = Field(default_factory=list)

    def field(self, code: str) -> Optional[FieldSchema]:
        for field in self.request:
            if field.code == code:
                return field
        return None
