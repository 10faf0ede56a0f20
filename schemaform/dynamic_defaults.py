"""
Default values for fields.

Widget configs may carry a literal default or a dynamic token:
- '$me' for user pickers (current user name)
- '$now', '$today', '$tomorrow', '$after_1d', '$before_2h', ... for timestamps

Timestamps are epoch milliseconds.
"""

from datetime import datetime, timedelta
from typing import Any, Optional, Callable
import logging
import re

from .field_schema import DataType, FieldSchema, FieldValue, WidgetType, is_array_type, normalize_scalar_type
from .type_converter import convert_array_type

logger = logging.getLogger(__name__)

DYNAMIC_PREFIX = "$"
ME_TOKEN = "$me"

_RELATIVE_TOKEN = re.compile(r"^\$(after|before)_(\d+)([hd])$")


def _to_millis(moment: datetime) -> int:
    return int(moment.timestamp() * 1000)


def _start_of_day(moment: datetime) -> datetime:
    return moment.replace(hour=0, minute=0, second=0, microsecond=0)


def is_dynamic_variable(value: Any) -> bool:
    return isinstance(value, str) and value.startswith(DYNAMIC_PREFIX)


def resolve_time_token(token: str, now: Optional[datetime] = None) -> Optional[int]:
    """
    Resolve a timestamp token to epoch milliseconds.

    Returns:
        Milliseconds, or None for an unknown token
    """
    now = now or datetime.now()
    today = _start_of_day(now)

    fixed = {
        "$now": now,
        "$today": today,
        "$tomorrow": today + timedelta(days=1),
        "$yesterday": today - timedelta(days=1),
        "$tomorrow_now": now + timedelta(days=1),
        "$yesterday_now": now - timedelta(days=1),
    }
    if token in fixed:
        return _to_millis(fixed[token])

    match = _RELATIVE_TOKEN.match(token)
    if match:
        direction, amount, unit = match.groups()
        delta = timedelta(hours=int(amount)) if unit == "h" else timedelta(days=int(amount))
        return _to_millis(now + delta if direction == "after" else now - delta)

    if token == "$next_week":
        days_until_monday = (7 - now.weekday()) or 7
        return _to_millis(today + timedelta(days=days_until_monday))
    if token == "$last_week":
        return _to_millis(today - timedelta(days=now.weekday() + 7))
    if token == "$next_month":
        first = today.replace(day=1)
        if first.month == 12:
            return _to_millis(first.replace(year=first.year + 1, month=1))
        return _to_millis(first.replace(month=first.month + 1))
    if token == "$last_month":
        first = today.replace(day=1)
        if first.month == 1:
            return _to_millis(first.replace(year=first.year - 1, month=12))
        return _to_millis(first.replace(month=first.month - 1))
    if token == "$next_year":
        return _to_millis(today.replace(year=today.year + 1, month=1, day=1))
    if token == "$last_year":
        return _to_millis(today.replace(year=today.year - 1, month=1, day=1))

    return None


def resolve_dynamic_default(
    default_value: Any,
    widget_type: str,
    current_user: Optional[Callable[[], Optional[str]]] = None,
    now: Optional[datetime] = None,
) -> Any:
    """
    Resolve a dynamic default token for the given widget type.

    Unknown tokens, and tokens used on a widget that does not understand
    them, are returned unchanged.
    """
    if not is_dynamic_variable(default_value):
        return default_value

    if widget_type == WidgetType.USER and default_value == ME_TOKEN:
        if current_user is None:
            return default_value
        return current_user()

    if widget_type == WidgetType.TIMESTAMP:
        resolved = resolve_time_token(default_value, now)
        if resolved is None:
            logger.warning(f"Unknown timestamp default token: {default_value}")
            return default_value
        return resolved

    return default_value


def convert_default_by_type(default_value: Any, declared_type: str) -> Any:
    """Coerce a configured default to the declared type, leaving it as-is on failure."""
    lowered = (declared_type or DataType.STRING).lower()

    if is_array_type(lowered) and lowered != DataType.STRUCTS:
        return convert_array_type(default_value, lowered)

    scalar = normalize_scalar_type(lowered)
    if scalar in (DataType.INT, DataType.FLOAT, DataType.TIMESTAMP):
        if isinstance(default_value, bool):
            return default_value
        try:
            number = float(default_value)
        except (TypeError, ValueError):
            return default_value
        if scalar == DataType.FLOAT:
            return number
        return int(number) if number.is_integer() else number
    if scalar == DataType.BOOL:
        if isinstance(default_value, str):
            return default_value.strip().lower() in ("true", "1", "yes")
        return bool(default_value)
    return default_value


def get_default_value_by_type(declared_type: str) -> FieldValue:
    """Empty value for a declared type when no default is configured."""
    lowered = (declared_type or DataType.STRING).lower()
    scalar = normalize_scalar_type(lowered)

    if scalar == DataType.BOOL:
        return FieldValue(raw=False, display="false", meta={})
    if lowered.startswith(DataType.ARRAY_PREFIX):
        return FieldValue(raw=[], display="[]", meta={})
    if lowered == DataType.STRUCT:
        return FieldValue(raw={}, display="{}", meta={})
    if scalar in (DataType.INT, DataType.FLOAT, DataType.TIMESTAMP, DataType.FILES):
        return FieldValue(raw=None, display="", meta={})
    return FieldValue(raw="", display="", meta={})


def get_widget_default_value(
    field: FieldSchema,
    current_user: Optional[Callable[[], Optional[str]]] = None,
    now: Optional[datetime] = None,
) -> FieldValue:
    """
    Default FieldValue for a field.

    A configured default wins; select widgets resolve the label of the
    matching static option. Otherwise the empty value of the declared type.
    """
    configured = field.default
    if configured is None or configured == "":
        return get_default_value_by_type(field.declared_type)

    resolved = resolve_dynamic_default(configured, field.widget_type, current_user, now)
    converted = convert_default_by_type(resolved, field.declared_type)
    display = str(converted) if converted is not None else ""

    if field.widget_type == WidgetType.SELECT:
        for option in field.widget_config.get("options") or []:
            if isinstance(option, dict):
                if option.get("value") == converted or option.get("label") == converted:
                    display = option.get("label") or display
                    break
            elif option == converted:
                display = str(option)
                break

    return FieldValue(raw=converted, display=display, meta={})
