"""
Rule-based field validation.

Fields carry a comma separated rule string such as
'required,min=2,max=20' or 'required_if=Plan "pro"'. Conditional rules name
other fields by their native field name; the engine maps those names to
field codes once per session and reads the referenced values live from the
value store, so a validation run always sees the current state.

Unknown rule keys are ignored (the server validates them). A rule that is
malformed or crashes only drops that rule.
"""

import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Any, Callable, List, Optional

from .exceptions import ValidatorConfigError, log_error_with_context
from .extractors import ExtractorRegistry
from .field_schema import FieldSchema, FieldValue
from .schema_walker import iter_fields, join_path, parent_path, walk_fields
from .value_store import ValueStore

logger = logging.getLogger(__name__)

DEFAULT_EMAIL_PATTERN = r"^[^\s@]+@[^\s@]+\.[^\s@]+$"

SKIPPED_RULES = {"omitempty"}

# Rules whose value is '<FieldName>' or '<FieldName> <literal>'
CONDITIONAL_RULES = {
    "required_if",
    "required_unless",
    "required_with",
    "required_without",
    "required_with_all",
    "required_without_all",
    "excluded_if",
    "excluded_unless",
    "excluded_with",
    "excluded_without",
    "eqfield",
    "nefield",
    "gtfield",
    "gtefield",
    "ltfield",
    "ltefield",
}


@dataclass
class ValidationRule:
    """One parsed rule token."""
    type: str
    value: Any = None
    field: Optional[str] = None


@dataclass
class ValidationResult:
    valid: bool
    message: str = ""
    rule: str = ""


@dataclass
class ValidationContext:
    """What a validator may look at besides the value itself."""
    field: FieldSchema
    path: str
    get_value: Callable[[str], FieldValue]


def _parse_number(text: str) -> Any:
    try:
        return int(text)
    except ValueError:
        pass
    try:
        return float(text)
    except ValueError:
        return None


def _strip_quotes(text: str) -> str:
    if len(text) >= 2 and text[0] == text[-1] and text[0] in ("'", '"'):
        return text[1:-1]
    return text


def _parse_token(token: str, field_name_map: Dict[str, str]) -> ValidationRule:
    if "=" not in token:
        return ValidationRule(type=token)

    rule_type, value = token.split("=", 1)
    rule_type = rule_type.strip()
    value = value.strip()

    if not rule_type:
        raise ValidatorConfigError(token, "missing rule name")
    if value == "":
        raise ValidatorConfigError(token, "missing rule value")

    if rule_type in CONDITIONAL_RULES:
        if " " in value:
            name, literal = value.split(" ", 1)
            return ValidationRule(type=rule_type, field=field_name_map.get(name, name),
                                  value=_strip_quotes(literal.strip()))
        return ValidationRule(type=rule_type, field=field_name_map.get(value, value))

    if rule_type == "oneof":
        return ValidationRule(type=rule_type, value=value)

    number = _parse_number(value)
    return ValidationRule(type=rule_type, value=number if number is not None else value)


def parse_rules(validation: str, field_name_map: Optional[Dict[str, str]] = None) -> List[ValidationRule]:
    """
    Parse a rule string.

    Examples:
        'required,min=2' -> [required, min(2)]
        'required_if=MemberType vip' -> [required_if(field='member_type', value='vip')]

    Malformed tokens are logged and dropped.
    """
    field_name_map = field_name_map or {}
    rules: List[ValidationRule] = []

    for token in (validation or "").split(","):
        token = token.strip()
        if not token or token in SKIPPED_RULES:
            continue
        try:
            rules.append(_parse_token(token, field_name_map))
        except ValidatorConfigError as e:
            log_error_with_context(e, "parsing validation rules")

    return rules


def build_field_name_map(fields: List[FieldSchema]) -> Dict[str, str]:
    """native_field_name -> code over the whole tree."""
    return {field.native_field_name: field.code for field in iter_fields(fields) if field.native_field_name}


def parse_oneof_options(options: str) -> List[str]:
    """Split 'cat dog' or "'small size' 'large size' cat" into options."""
    result: List[str] = []
    text = options.strip()
    index = 0

    while index < len(text):
        if text[index] == " ":
            index += 1
            continue
        if text[index] == "'":
            end = text.find("'", index + 1)
            if end == -1:
                option = text[index + 1:].strip()
                if option:
                    result.append(option)
                break
            option = text[index + 1:end].strip()
            if option:
                result.append(option)
            index = end + 1
        else:
            end = text.find(" ", index)
            if end == -1:
                end = len(text)
            result.append(text[index:end])
            index = end

    return result


def _cell_present(cell: Any) -> bool:
    """A table cell counts as filled unless it is None or an empty list or dict ('' counts)."""
    if cell is None:
        return False
    if isinstance(cell, (list, dict)):
        return len(cell) > 0
    return True


def is_empty(value: FieldValue, field: Optional[FieldSchema] = None) -> bool:
    """
    Type-aware emptiness.

    None, '' and empty containers are empty. A table is empty when no row
    has a filled cell; extraction fills unset array and object cells with
    [] and {}, so those do not count.
    """
    raw = value.raw
    if raw is None or raw == "":
        return True
    if isinstance(raw, list):
        if field is not None and field.is_table:
            return not any(
                isinstance(row, dict) and any(_cell_present(cell) for cell in row.values())
                for row in raw
            )
        return len(raw) == 0
    if isinstance(raw, dict):
        return len(raw) == 0
    return False


def is_string_field(field: Optional[FieldSchema]) -> bool:
    """String-ness by declared type: empty, '*string*' or '*text*' types are strings."""
    if field is None:
        return False
    declared = (field.declared_type or "").lower()
    return declared == "" or "string" in declared or "text" in declared


def condition_met(actual: Any, expected: Any) -> bool:
    """Compare a live value with a rule literal: bools and numbers by value, the rest as strings."""
    expected_text = "" if expected is None else str(expected)

    if isinstance(actual, bool):
        return str(actual).lower() == expected_text.lower() or actual == (expected_text.lower() == "true")
    if isinstance(actual, (int, float)):
        number = _parse_number(expected_text)
        return number is not None and actual == number
    if actual is None:
        return expected_text == ""
    return str(actual) == expected_text


def _measure(value: FieldValue, field: FieldSchema) -> Optional[float]:
    """Element count, string length or numeric value, whichever applies."""
    raw = value.raw
    if isinstance(raw, (list, dict)):
        return len(raw)
    if is_string_field(field):
        return len(str(raw))
    if isinstance(raw, bool):
        return None
    if isinstance(raw, (int, float)):
        return raw
    try:
        return float(str(raw).strip())
    except ValueError:
        return None


class Validator(ABC):
    """One rule kind."""

    name: str = ""

    @abstractmethod
    def validate(self, value: FieldValue, rule: ValidationRule, context: ValidationContext) -> ValidationResult:
        ...


class RequiredValidator(Validator):
    name = "required"

    def validate(self, value, rule, context):
        if is_empty(value, context.field):
            return ValidationResult(False, f"{context.field.label} is required", self.name)
        return ValidationResult(True)


class _BoundValidator(Validator):
    """min / max: string length, numeric value or element count."""

    def _limit(self, rule: ValidationRule) -> float:
        if isinstance(rule.value, bool) or not isinstance(rule.value, (int, float)):
            raise ValidatorConfigError(f"{rule.type}={rule.value}", "limit is not a number")
        return rule.value

    def _describe(self, value: FieldValue, field: FieldSchema) -> str:
        if isinstance(value.raw, (list, dict)):
            return "items"
        if is_string_field(field):
            return "characters"
        return ""


class MinValidator(_BoundValidator):
    name = "min"

    def validate(self, value, rule, context):
        limit = self._limit(rule)
        if is_empty(value):
            return ValidationResult(True)
        measured = _measure(value, context.field)
        if measured is None or measured >= limit:
            return ValidationResult(True)
        unit = self._describe(value, context.field)
        suffix = f" {unit}" if unit else ""
        return ValidationResult(False, f"{context.field.label} must be at least {limit}{suffix}", self.name)


class MaxValidator(_BoundValidator):
    name = "max"

    def validate(self, value, rule, context):
        limit = self._limit(rule)
        if is_empty(value):
            return ValidationResult(True)
        measured = _measure(value, context.field)
        if measured is None or measured <= limit:
            return ValidationResult(True)
        unit = self._describe(value, context.field)
        suffix = f" {unit}" if unit else ""
        return ValidationResult(False, f"{context.field.label} must be at most {limit}{suffix}", self.name)


class OneOfValidator(Validator):
    name = "oneof"

    def validate(self, value, rule, context):
        if rule.value is None:
            raise ValidatorConfigError("oneof", "no options given")
        if is_empty(value):
            return ValidationResult(True)

        options = parse_oneof_options(str(rule.value))
        candidates = value.raw if isinstance(value.raw, list) else [value.raw]
        for candidate in candidates:
            text = str(candidate).lower() if isinstance(candidate, bool) else str(candidate)
            if text not in options:
                return ValidationResult(False, f"{context.field.label} must be one of: {', '.join(options)}",
                                        self.name)
        return ValidationResult(True)


class EmailValidator(Validator):
    name = "email"

    def __init__(self, pattern: str = DEFAULT_EMAIL_PATTERN):
        self.pattern = re.compile(pattern)

    def validate(self, value, rule, context):
        if is_empty(value):
            return ValidationResult(True)
        if self.pattern.match(str(value.raw).strip()):
            return ValidationResult(True)
        return ValidationResult(False, f"{context.field.label} must be a valid email address", self.name)


class _ConditionalValidator(Validator):

    needs_literal = False

    def _other(self, rule: ValidationRule, context: ValidationContext) -> FieldValue:
        if not rule.field:
            raise ValidatorConfigError(rule.type, "no field referenced")
        if self.needs_literal and rule.value is None:
            raise ValidatorConfigError(f"{rule.type}={rule.field}", "no comparison value")
        return context.get_value(rule.field)

    def _required(self, context: ValidationContext) -> ValidationResult:
        return ValidationResult(False, f"{context.field.label} is required", self.name)


class RequiredIfValidator(_ConditionalValidator):
    """Required when the referenced field equals the literal."""

    name = "required_if"
    needs_literal = True

    def validate(self, value, rule, context):
        other = self._other(rule, context)
        if condition_met(other.raw, rule.value) and is_empty(value, context.field):
            return self._required(context)
        return ValidationResult(True)


class RequiredUnlessValidator(_ConditionalValidator):
    """Required unless the referenced field equals the literal."""

    name = "required_unless"
    needs_literal = True

    def validate(self, value, rule, context):
        other = self._other(rule, context)
        if not condition_met(other.raw, rule.value) and is_empty(value, context.field):
            return self._required(context)
        return ValidationResult(True)


class RequiredWithValidator(_ConditionalValidator):
    """Required when the referenced field has a value."""

    name = "required_with"

    def validate(self, value, rule, context):
        other = self._other(rule, context)
        if not is_empty(other) and is_empty(value, context.field):
            return self._required(context)
        return ValidationResult(True)


class RequiredWithoutValidator(_ConditionalValidator):
    """Required when the referenced field is empty."""

    name = "required_without"

    def validate(self, value, rule, context):
        other = self._other(rule, context)
        if is_empty(other) and is_empty(value, context.field):
            return self._required(context)
        return ValidationResult(True)


class ValidatorRegistry:
    """Validators by rule name."""

    def __init__(self, email_pattern: str = DEFAULT_EMAIL_PATTERN):
        self._validators: Dict[str, Validator] = {}
        for validator in (
            RequiredValidator(),
            MinValidator(),
            MaxValidator(),
            OneOfValidator(),
            EmailValidator(email_pattern),
            RequiredIfValidator(),
            RequiredUnlessValidator(),
            RequiredWithValidator(),
            RequiredWithoutValidator(),
        ):
            self.register(validator)

    def register(self, validator: Validator) -> None:
        self._validators[validator.name] = validator

    def unregister(self, name: str) -> None:
        self._validators.pop(name, None)

    def get(self, name: str) -> Optional[Validator]:
        return self._validators.get(name)

    def has(self, name: str) -> bool:
        return name in self._validators


class ValidationEngine:
    """Validates fields of one form session against its value store."""

    def __init__(self, store: ValueStore, fields: List[FieldSchema],
                 registry: Optional[ValidatorRegistry] = None,
                 extractor_registry: Optional[ExtractorRegistry] = None):
        self.store = store
        self.fields = fields
        self.registry = registry or ValidatorRegistry()
        self.extractor_registry = extractor_registry or ExtractorRegistry(store)
        self.field_name_map = build_field_name_map(fields)

    def parse(self, validation: str) -> List[ValidationRule]:
        return parse_rules(validation, self.field_name_map)

    def resolve_reference(self, path: str, code: str) -> FieldValue:
        """
        Live value of a field referenced from the field at path.

        Siblings are looked up first ('items[0].qty' -> 'items[0].<code>'),
        then the top level.
        """
        sibling = join_path(parent_path(path), code)
        if sibling in self.store:
            return self.store.get(sibling)
        return self.store.get(code)

    def current_value(self, field: FieldSchema, path: str) -> FieldValue:
        """The value to validate; containers are assembled the way they are submitted."""
        if field.is_table or field.is_object:
            return FieldValue(raw=self.extractor_registry.extract(field, path))
        return self.store.get(path)

    def validate_field(self, field: FieldSchema, path: Optional[str] = None,
                       value: Optional[FieldValue] = None) -> List[ValidationResult]:
        """
        Validate one field.

        Returns:
            Failed results only; empty when the field is valid
        """
        if not field.validation:
            return []

        path = path or field.code
        value = value if value is not None else self.current_value(field, path)
        context = ValidationContext(field=field, path=path,
                                    get_value=lambda code: self.resolve_reference(path, code))

        failures: List[ValidationResult] = []
        for rule in self.parse(field.validation):
            validator = self.registry.get(rule.type)
            if validator is None:
                logger.debug(f"No validator for rule '{rule.type}' on {path}, skipping")
                continue
            try:
                result = validator.validate(value, rule, context)
            except ValidatorConfigError as e:
                log_error_with_context(e, f"validating {path}")
                continue
            except Exception as e:
                logger.error(f"Validator '{rule.type}' failed on {path}: {e}", exc_info=True)
                continue
            if not result.valid:
                failures.append(result)

        return failures

    def validate_all(self, fields: Optional[List[FieldSchema]] = None) -> Dict[str, List[str]]:
        """
        Validate a whole field tree, table rows included.

        Returns:
            Dictionary of path -> error messages, for invalid paths only
        """
        errors: Dict[str, List[str]] = {}

        def visit(field: FieldSchema, path: str, row_context) -> bool:
            failures = self.validate_field(field, path)
            if failures:
                errors[path] = [failure.message for failure in failures]
            return True

        walk_fields(fields if fields is not None else self.fields, visit,
                    row_count=lambda field, path: self.store.row_count(path))

        if errors:
            logger.info(f"Validation found errors on {len(errors)} paths")
        return errors

    def is_valid(self, fields: Optional[List[FieldSchema]] = None) -> bool:
        return not self.validate_all(fields)
