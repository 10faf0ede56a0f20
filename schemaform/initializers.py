"""
Widget initializers.

After the init sources have filled the store, every top-level field gets a
chance to enrich its value: coerce URL strings to the declared type, resolve
labels of select values through the fuzzy lookup, or fan out a structured
value into its child paths.

An initializer returns either a replacement FieldValue or NO_CHANGE. The
registry contains failures: a raising initializer leaves the field at its
pre-initializer value.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field as dataclass_field
from typing import Dict, Any, List, Optional, Union

from .exceptions import SchemaFormError, RemoteLookupError, log_error_with_context
from .field_schema import (
    DataType, FieldCallback, FieldSchema, FieldValue, FieldValueMeta, OperationSchema, WidgetType,
    is_array_type, normalize_scalar_type
)
from .lookup_client import FuzzyLookupClient, LookupQueryType, LookupRequest
from .schema_walker import join_path, row_path
from .type_converter import (
    build_option_maps, convert_array_type, convert_basic_type, convert_form_data_to_request,
    convert_value_by_field_type, decode_structured_param, get_option_label
)
from .value_store import ValueStore

logger = logging.getLogger(__name__)


class _NoChange:
    """Marker returned by an initializer that leaves the value as it is."""

    def __repr__(self) -> str:
        return "NO_CHANGE"

    def __bool__(self) -> bool:
        return False


NO_CHANGE = _NoChange()

InitResult = Union[FieldValue, _NoChange]


@dataclass
class WidgetInitContext:
    """Everything an initializer may look at for one field."""

    field: FieldSchema
    path: str
    current_value: FieldValue
    operation: OperationSchema
    store: ValueStore
    registry: "WidgetInitializerRegistry"
    lookup_client: Optional[FuzzyLookupClient] = None
    form_data: Dict[str, FieldValue] = dataclass_field(default_factory=dict)
    init_source: str = ""

    def for_child(self, child: FieldSchema, path: str, value: FieldValue) -> "WidgetInitContext":
        return WidgetInitContext(
            field=child,
            path=path,
            current_value=value,
            operation=self.operation,
            store=self.store,
            registry=self.registry,
            lookup_client=self.lookup_client,
            form_data=self.form_data,
            init_source=self.init_source,
        )


class WidgetInitializer(ABC):
    """Per-widget-type enrichment step."""

    @abstractmethod
    async def initialize(self, context: WidgetInitContext) -> InitResult:
        ...


def _display_of(raw: Any) -> str:
    if raw is None:
        return ""
    if isinstance(raw, list):
        return ", ".join(str(item) for item in raw)
    return str(raw)


def coerce_field_value(field: FieldSchema, value: FieldValue) -> FieldValue:
    """Basic type coercion of a value by its field's declared type."""
    if value.raw is None or field.is_object or field.is_table:
        return value

    source = value.raw
    if isinstance(source, str) and (is_array_type(field.declared_type) or field.widget_type == WidgetType.MULTISELECT):
        source = decode_structured_param(source)

    converted = convert_value_by_field_type(source, field)
    if converted == value.raw and type(converted) is type(value.raw):
        return value

    meta = dict(value.meta)
    meta[FieldValueMeta.CONVERTED] = True
    display = value.display if value.display and value.display != str(value.raw) else _display_of(converted)
    return FieldValue(raw=converted, display=display, meta=meta)


def _lookup_request_data(context: WidgetInitContext) -> Dict[str, Any]:
    return convert_form_data_to_request(context.form_data, context.operation.request)


class SelectWidgetInitializer(WidgetInitializer):
    """
    Single select.

    URL values are converted to the declared type first. With the fuzzy
    lookup capability and no resolved label, a by_value lookup fills in
    display, display_info and statistics.
    """

    async def initialize(self, context: WidgetInitContext) -> InitResult:
        field = context.field
        current = context.current_value
        processed = current

        meta = current.meta or {}
        if meta.get(FieldValueMeta.FROM_URL) and FieldValueMeta.ORIGINAL_VALUE in meta:
            original = meta[FieldValueMeta.ORIGINAL_VALUE]
            processed = FieldValue(
                raw=convert_basic_type(original, field.declared_type),
                display=_display_of(original),
                meta={**meta, FieldValueMeta.CONVERTED: True},
            )
        elif isinstance(current.raw, str) and normalize_scalar_type(field.declared_type) != DataType.STRING:
            converted = convert_basic_type(current.raw, field.declared_type)
            if not isinstance(converted, str):
                processed = FieldValue(
                    raw=converted,
                    display=current.display,
                    meta={**meta, FieldValueMeta.CONVERTED: True},
                )

        changed = processed if processed is not current else NO_CHANGE

        if not field.has_callback(FieldCallback.ON_SELECT_FUZZY) or context.lookup_client is None:
            return changed

        if processed.raw is None or processed.raw == "":
            return changed

        if processed.display and processed.display != str(processed.raw):
            logger.debug(f"[INIT] {context.path} already carries label {processed.display!r}, skipping lookup")
            return changed

        request = LookupRequest(
            code=field.code,
            type=LookupQueryType.BY_VALUE,
            value=processed.raw,
            request=_lookup_request_data(context),
            value_type=field.declared_type,
        )
        response = await context.lookup_client.lookup(context.operation.route, context.operation.method, request)

        if response.failed:
            raise RemoteLookupError(field.code, response.error_msg)

        item = response.find(processed.raw)
        if item is None:
            logger.warning(f"[INIT] No option matches {processed.raw!r} for {context.path} "
                           f"({len(response.items)} items returned)")
            return changed

        return FieldValue(
            raw=processed.raw,
            display=item.display_label,
            meta={
                **processed.meta,
                FieldValueMeta.DISPLAY_INFO: item.display_info,
                FieldValueMeta.STATISTICS: response.statistics or {},
            },
        )


class MultiSelectWidgetInitializer(WidgetInitializer):
    """
    Multi select.

    Elements are coerced to the declared element type before anything else.
    With the fuzzy lookup capability a by_values lookup builds the display
    (labels joined in input order) and an aligned display_info list.
    """

    async def initialize(self, context: WidgetInitContext) -> InitResult:
        field = context.field
        current = context.current_value

        if current.raw is None or current.raw == "":
            return NO_CHANGE

        source = current.raw
        if isinstance(source, str):
            source = decode_structured_param(source)
        values = convert_array_type(source, field.declared_type if is_array_type(field.declared_type) else None)
        if not values:
            return NO_CHANGE

        converted = FieldValue(
            raw=values,
            display=current.display if current.display and not current.meta.get(FieldValueMeta.FROM_URL)
            else _display_of(values),
            meta=dict(current.meta),
        )
        if values != current.raw:
            converted.meta[FieldValueMeta.CONVERTED] = True
        changed = converted if values != current.raw or converted.display != current.display else NO_CHANGE

        if not field.has_callback(FieldCallback.ON_SELECT_FUZZY) or context.lookup_client is None:
            return changed

        if current.display and current.meta.get(FieldValueMeta.DISPLAY_INFO):
            logger.debug(f"[INIT] {context.path} already carries labels, skipping lookup")
            return changed

        request = LookupRequest(
            code=field.code,
            type=LookupQueryType.BY_VALUES,
            value=values,
            request=_lookup_request_data(context),
            value_type=field.declared_type,
        )
        response = await context.lookup_client.lookup(context.operation.route, context.operation.method, request)

        if response.failed:
            raise RemoteLookupError(field.code, response.error_msg)

        option_map, display_info_map = build_option_maps([item.model_dump() for item in response.items])

        labels = [get_option_label(option_map, value) for value in values]
        display_info = [display_info_map.get(value) for value in values]

        return FieldValue(
            raw=values,
            display=", ".join(labels),
            meta={
                **converted.meta,
                FieldValueMeta.DISPLAY_INFO: display_info,
                FieldValueMeta.STATISTICS: response.statistics or {},
            },
        )


async def _initialize_member(context: WidgetInitContext, child: FieldSchema, child_path: str,
                             value: FieldValue) -> FieldValue:
    """Run the child's initializer, falling back to basic coercion, and store the result."""
    result = await context.registry.run(context.for_child(child, child_path, value))
    resolved = result if isinstance(result, FieldValue) else coerce_field_value(child, value)
    context.store.set(child_path, resolved)
    return resolved


def _member_value(store: ValueStore, path: str, raw_object: Optional[Dict[str, Any]], code: str,
                  parent_meta: Dict[str, Any]) -> Optional[FieldValue]:
    """Value of one member: the stored one, else taken from the parent's raw object."""
    if path in store:
        return store.get(path)
    if raw_object is None or code not in raw_object:
        return None

    raw = raw_object[code]
    meta: Dict[str, Any] = {}
    for marker in (FieldValueMeta.FROM_URL, FieldValueMeta.FROM_SAVED_LINK):
        if parent_meta.get(marker):
            meta[marker] = True
    if meta.get(FieldValueMeta.FROM_URL):
        meta[FieldValueMeta.ORIGINAL_VALUE] = raw
    return FieldValue(raw=raw, display=_display_of(raw) if not isinstance(raw, (dict, list)) else "", meta=meta)


def _structured_raw(value: FieldValue) -> Any:
    raw = value.raw
    if isinstance(raw, str):
        return decode_structured_param(raw)
    return raw


class FormWidgetInitializer(WidgetInitializer):
    """Objects: expand the raw dict into 'path.child' entries and initialize every member."""

    async def initialize(self, context: WidgetInitContext) -> InitResult:
        field = context.field
        current = context.current_value
        raw = _structured_raw(current)
        raw_object = raw if isinstance(raw, dict) else None

        if raw_object is None and not any(join_path(context.path, c.code) in context.store for c in field.children):
            return NO_CHANGE

        assembled: Dict[str, Any] = dict(raw_object or {})
        for child in field.children:
            child_path = join_path(context.path, child.code)
            value = _member_value(context.store, child_path, raw_object, child.code, current.meta)
            if value is None:
                continue
            resolved = await _initialize_member(context, child, child_path, value)
            assembled[child.code] = resolved.raw

        logger.debug(f"[INIT] Expanded object {context.path} into {len(field.children)} members")
        return FieldValue(raw=assembled, display=current.display, meta=dict(current.meta))


class TableWidgetInitializer(WidgetInitializer):
    """Tables: expand the raw row list into 'path[i].child' entries and initialize every cell."""

    async def initialize(self, context: WidgetInitContext) -> InitResult:
        field = context.field
        current = context.current_value
        raw = _structured_raw(current)
        raw_rows = raw if isinstance(raw, list) else []

        count = max(len(raw_rows), context.store.row_count(context.path))
        if count == 0:
            if isinstance(raw, list) and raw is not current.raw:
                return FieldValue(raw=[], display=current.display, meta=dict(current.meta))
            return NO_CHANGE

        rows: List[Dict[str, Any]] = []
        for index in range(count):
            raw_row = raw_rows[index] if index < len(raw_rows) and isinstance(raw_rows[index], dict) else None
            base = row_path(context.path, index)
            row: Dict[str, Any] = dict(raw_row or {})
            for child in field.children:
                child_path = join_path(base, child.code)
                value = _member_value(context.store, child_path, raw_row, child.code, current.meta)
                if value is None:
                    context.store.initialize(child_path)
                    row.setdefault(child.code, None)
                    continue
                resolved = await _initialize_member(context, child, child_path, value)
                row[child.code] = resolved.raw
            rows.append(row)

        logger.debug(f"[INIT] Expanded table {context.path} into {len(rows)} rows")
        return FieldValue(raw=rows, display=current.display, meta=dict(current.meta))


class WidgetInitializerRegistry:
    """Initializer lookup table for one form session."""

    def __init__(self):
        self._initializers: Dict[str, WidgetInitializer] = {}
        self.register(WidgetType.SELECT, SelectWidgetInitializer())
        self.register(WidgetType.MULTISELECT, MultiSelectWidgetInitializer())
        self.register(WidgetType.FORM, FormWidgetInitializer())
        self.register(WidgetType.TABLE, TableWidgetInitializer())

    def register(self, widget_type: str, initializer: WidgetInitializer) -> None:
        self._initializers[widget_type] = initializer

    def unregister(self, widget_type: str) -> None:
        self._initializers.pop(widget_type, None)

    def has(self, widget_type: str) -> bool:
        return widget_type in self._initializers

    def get_initializer(self, field: FieldSchema) -> Optional[WidgetInitializer]:
        if field.widget_type in self._initializers:
            return self._initializers[field.widget_type]
        # Schemas without widget tags still get structural fan-out
        if field.is_table:
            return self._initializers.get(WidgetType.TABLE)
        if field.is_object:
            return self._initializers.get(WidgetType.FORM)
        return None

    async def run(self, context: WidgetInitContext) -> InitResult:
        """
        Run the initializer of context.field.

        Returns:
            The replacement value, or NO_CHANGE when there is no initializer,
            it declined, or it failed
        """
        initializer = self.get_initializer(context.field)
        if initializer is None:
            return NO_CHANGE

        try:
            result = await initializer.initialize(context)
        except SchemaFormError as e:
            log_error_with_context(e, f"initializing {context.path}")
            return NO_CHANGE
        except Exception as e:
            logger.error(f"[INIT] Initializer for {context.path} ({context.field.widget_type}) failed: {e}",
                         exc_info=True)
            return NO_CHANGE

        if result is None:
            return NO_CHANGE
        return result

    async def initialize(self, context: WidgetInitContext) -> FieldValue:
        """Like run(), but always returns a value: the current one when nothing changed."""
        result = await self.run(context)
        return result if isinstance(result, FieldValue) else context.current_value
