"""
Schema loader for schemaform.

Operation schemas come from the backend as JSON, or from YAML/JSON files
kept next to the app. Two field layouts are accepted:

    # backend layout
    - code: room_id
      name: Room
      field_name: RoomID
      data: {type: int}
      widget: {type: select, config: {default: 1}}
      callbacks: [OnSelectFuzzy]

    # flat layout
    - code: room_id
      declared_type: int
      widget_type: select
      widget_config: {default: 1}
"""

import json
import yaml
from pathlib import Path
from typing import Dict, Any, List, Optional, Union
import logging

from pydantic import ValidationError

from .exceptions import SchemaDefinitionError, log_error_with_context
from .field_schema import DataType, FieldSchema, OperationSchema
from .schema_walker import join_path

logger = logging.getLogger(__name__)

SCHEMAS_DIR = Path("schemas")

CONTAINER_TYPES = {DataType.STRUCT, DataType.STRUCTS}


def _field_kwargs(field_dict: Dict[str, Any]) -> Dict[str, Any]:
    data = field_dict.get("data") if isinstance(field_dict.get("data"), dict) else {}
    widget = field_dict.get("widget") if isinstance(field_dict.get("widget"), dict) else {}

    return {
        "code": field_dict.get("code"),
        "name": field_dict.get("name") or "",
        "declared_type": field_dict.get("declared_type") or data.get("type") or DataType.STRING,
        "validation": field_dict.get("validation") or "",
        "widget_type": field_dict.get("widget_type") or widget.get("type") or "",
        "widget_config": field_dict.get("widget_config") or widget.get("config") or {},
        "native_field_name": field_dict.get("native_field_name") or field_dict.get("field_name") or "",
        "callbacks": field_dict.get("callbacks") or [],
    }


def field_from_dict(field_dict: Dict[str, Any], base_path: str = "") -> FieldSchema:
    """
    Build a FieldSchema tree from a dictionary.

    Raises:
        SchemaDefinitionError: If the dictionary does not describe a valid field
    """
    if not isinstance(field_dict, dict):
        raise SchemaDefinitionError(base_path or "<root>", "field definition must be a mapping")

    kwargs = _field_kwargs(field_dict)
    code = kwargs["code"]
    if not code or not isinstance(code, str):
        raise SchemaDefinitionError(base_path or "<root>", "field is missing a 'code'")

    path = join_path(base_path, code)

    children_raw = field_dict.get("children") or []
    if not isinstance(children_raw, list):
        raise SchemaDefinitionError(path, "'children' must be a list")

    kwargs["children"] = fields_from_list(children_raw, path)

    try:
        return FieldSchema(**kwargs)
    except ValidationError as e:
        raise SchemaDefinitionError(path, f"invalid field attributes: {e.error_count()} errors")


def fields_from_list(field_list: List[Dict[str, Any]], base_path: str = "") -> List[FieldSchema]:
    """Build sibling fields, rejecting duplicate codes."""
    fields = []
    seen = set()
    for field_dict in field_list:
        field = field_from_dict(field_dict, base_path)
        if field.code in seen:
            raise SchemaDefinitionError(join_path(base_path, field.code), "duplicate sibling code")
        seen.add(field.code)
        fields.append(field)
    return fields


def operation_from_dict(schema: Dict[str, Any]) -> OperationSchema:
    """
    Build an OperationSchema from a schema document.

    Raises:
        SchemaDefinitionError: If the document is structurally invalid
    """
    problems = validate_schema_dict(schema)
    if problems:
        raise SchemaDefinitionError(problems[0][0], problems[0][1])

    return OperationSchema(
        route=schema.get("route") or schema.get("router"),
        method=(schema.get("method") or "GET").upper(),
        name=schema.get("name") or "",
        request=fields_from_list(schema.get("request") or []),
    )


def _field_problems(field_dict: Any, base_path: str) -> List[tuple]:
    if not isinstance(field_dict, dict):
        return [(base_path or "<root>", "field definition must be a mapping")]

    kwargs = _field_kwargs(field_dict)
    code = kwargs["code"]
    if not code or not isinstance(code, str):
        return [(base_path or "<root>", "field is missing a 'code'")]

    path = join_path(base_path, code)
    problems = []
    children = field_dict.get("children") or []

    if not isinstance(children, list):
        return [(path, "'children' must be a list")]

    declared = str(kwargs["declared_type"]).lower()
    if children and declared not in CONTAINER_TYPES and kwargs["widget_type"] not in ("form", "table"):
        problems.append((path, f"children declared on non-container type '{declared}'"))

    if not isinstance(kwargs["validation"], str):
        problems.append((path, "'validation' must be a string"))

    seen = set()
    for child in children:
        child_code = child.get("code") if isinstance(child, dict) else None
        if child_code in seen:
            problems.append((join_path(path, child_code), "duplicate sibling code"))
        seen.add(child_code)
        problems.extend(_field_problems(child, path))

    return problems


def validate_schema_dict(schema: Any) -> List[tuple]:
    """
    Structural checks of an operation schema document.

    Returns:
        List of (field path, issue) tuples; empty when the schema is valid
    """
    if not isinstance(schema, dict):
        return [("<root>", "schema must be a mapping")]

    problems = []
    if not (schema.get("route") or schema.get("router")):
        problems.append(("<root>", "schema is missing 'route'"))

    request = schema.get("request", [])
    if not isinstance(request, list):
        return problems + [("<root>", "'request' must be a list of fields")]

    seen = set()
    for field_dict in request:
        code = field_dict.get("code") if isinstance(field_dict, dict) else None
        if code in seen:
            problems.append((code, "duplicate sibling code"))
        seen.add(code)
        problems.extend(_field_problems(field_dict, ""))

    return problems


def load_schema(schema_path: Union[str, Path], schemas_dir: Optional[Path] = None) -> Optional[OperationSchema]:
    """
    Load an operation schema from a YAML or JSON file.

    Args:
        schema_path: File path; relative paths are resolved against schemas_dir
            when the file does not exist as given
        schemas_dir: Directory of schema files (defaults to ./schemas)

    Returns:
        OperationSchema or None if loading fails
    """
    full_path = Path(schema_path)
    if not full_path.exists() and not full_path.is_absolute():
        full_path = (schemas_dir or SCHEMAS_DIR) / full_path

    if not full_path.exists():
        logger.error(f"Schema file not found: {full_path}")
        return None

    try:
        with open(full_path, 'r', encoding='utf-8') as f:
            if full_path.suffix.lower() in ['.yaml', '.yml']:
                schema = yaml.safe_load(f)
            elif full_path.suffix.lower() == '.json':
                schema = json.load(f)
            else:
                logger.error(f"Unsupported schema file format: {full_path.suffix}")
                return None

        operation = operation_from_dict(schema)
        logger.info(f"Successfully loaded schema: {full_path} ({len(operation.request)} fields)")
        return operation

    except yaml.YAMLError as e:
        logger.error(f"YAML parsing error in {full_path}: {e}")
        return None
    except json.JSONDecodeError as e:
        logger.error(f"JSON parsing error in {full_path}: {e}")
        return None
    except SchemaDefinitionError as e:
        log_error_with_context(e, f"loading schema {full_path}", logging.ERROR)
        return None


def list_available_schemas(schemas_dir: Optional[Path] = None) -> List[str]:
    """Names of schema files in the schemas directory."""
    directory = schemas_dir or SCHEMAS_DIR
    if not directory.exists():
        return []
    return sorted(p.name for p in directory.iterdir() if p.suffix.lower() in ('.yaml', '.yml', '.json'))
