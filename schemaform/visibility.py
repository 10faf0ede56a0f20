"""
Conditional field visibility.

A field whose rule string carries required_if / required_unless /
required_with / required_without is only shown while one of those
conditions holds; fields without such rules are always shown. Parsing and
comparison are shared with the validation engine.
"""

import logging
from typing import Callable, Dict, List, Optional

from .field_schema import FieldSchema, FieldValue
from .schema_walker import join_path
from .validation import ValidationRule, condition_met, is_empty, parse_rules
from .value_store import ValueStore

logger = logging.getLogger(__name__)

VISIBILITY_RULES = {"required_if", "required_unless", "required_with", "required_without"}


def conditional_rules(field: FieldSchema, field_name_map: Optional[Dict[str, str]] = None) -> List[ValidationRule]:
    """The visibility-relevant rules of a field."""
    if not field.validation:
        return []
    return [rule for rule in parse_rules(field.validation, field_name_map)
            if rule.type in VISIBILITY_RULES and rule.field]


def evaluate_condition(rule: ValidationRule, get_value: Callable[[str], FieldValue]) -> bool:
    other = get_value(rule.field)

    if rule.type == "required_if":
        return rule.value is None or condition_met(other.raw, rule.value)
    if rule.type == "required_unless":
        return rule.value is None or not condition_met(other.raw, rule.value)
    if rule.type == "required_with":
        return not is_empty(other)
    if rule.type == "required_without":
        return is_empty(other)
    return True


def should_show_field(field: FieldSchema, get_value: Callable[[str], FieldValue],
                      field_name_map: Optional[Dict[str, str]] = None) -> bool:
    """
    Whether a field is visible given the current values.

    Args:
        field: Field to evaluate
        get_value: Live accessor code -> FieldValue of the referenced fields
        field_name_map: native_field_name -> code

    Returns:
        True when the field has no conditional rule or any of them holds
    """
    rules = conditional_rules(field, field_name_map)
    if not rules:
        return True
    return any(evaluate_condition(rule, get_value) for rule in rules)


def visible_fields(fields: List[FieldSchema], store: ValueStore, base_path: str = "",
                   field_name_map: Optional[Dict[str, str]] = None) -> List[FieldSchema]:
    """
    Filter sibling fields down to the visible ones.

    References resolve against siblings under base_path first, then the top level.
    """
    def get_value(code: str) -> FieldValue:
        sibling = join_path(base_path, code)
        if sibling in store:
            return store.get(sibling)
        return store.get(code)

    return [field for field in fields if should_show_field(field, get_value, field_name_map)]
