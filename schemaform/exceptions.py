"""
Custom exception classes for schema-driven form errors.

Every error carries a message, a context dictionary and a list of recovery
suggestions. Most of these are raised at the edge of a single field, source
or rule and contained there by the caller; only schema definition errors are
expected to reach application code.
"""

import logging
from typing import Optional, Dict, Any, List

logger = logging.getLogger(__name__)


class SchemaFormError(Exception):
    """
    Base exception for schemaform errors.

    Attributes:
        message: Error message
        context: Additional context information
        recovery_suggestions: List of suggested recovery actions
    """

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None,
                 recovery_suggestions: Optional[List[str]] = None):
        self.message = message
        self.context = context or {}
        self.recovery_suggestions = recovery_suggestions or []
        super().__init__(self.message)

    def __str__(self) -> str:
        return self.message

    def get_full_details(self) -> Dict[str, Any]:
        """Get complete error details including context and suggestions."""
        return {
            'error_type': self.__class__.__name__,
            'message': self.message,
            'context': self.context,
            'recovery_suggestions': self.recovery_suggestions
        }


class SchemaDefinitionError(SchemaFormError):
    """
    Exception raised when a field schema tree is malformed.

    This includes missing codes, duplicate sibling codes and children
    declared on scalar fields.
    """

    def __init__(self, field_path: str, issue: str, message: Optional[str] = None):
        self.field_path = field_path
        self.issue = issue

        if message is None:
            message = f"Invalid field schema at '{field_path}': {issue}"

        context = {
            'field_path': field_path,
            'issue': issue
        }

        recovery_suggestions = [
            "Check that every field declares a non-empty 'code'",
            "Ensure sibling field codes are unique",
            "Only 'struct' and '[]struct' fields may declare children"
        ]

        super().__init__(message, context, recovery_suggestions)


class SavedLinkMismatchError(SchemaFormError):
    """
    Exception raised when a saved link targets a different operation.

    The saved-link init source raises it and the pipeline contains it: the
    source simply contributes nothing.
    """

    def __init__(self, link_id: str, expected: Dict[str, str], actual: Dict[str, str],
                 message: Optional[str] = None):
        self.link_id = link_id
        self.expected = expected
        self.actual = actual

        if message is None:
            message = (f"Saved link {link_id} targets {actual.get('method')} {actual.get('route')}, "
                       f"expected {expected.get('method')} {expected.get('route')}")

        context = {
            'link_id': link_id,
            'expected_route': expected.get('route'),
            'expected_method': expected.get('method'),
            'actual_route': actual.get('route'),
            'actual_method': actual.get('method')
        }

        recovery_suggestions = [
            "Open the saved link from the operation it was created for",
            "Recreate the saved link after the operation route changed"
        ]

        super().__init__(message, context, recovery_suggestions)


class RemoteLookupError(SchemaFormError):
    """
    Exception raised when a fuzzy lookup fails.

    Covers both a response carrying a non-empty ``error_msg`` and transport
    failures. Always contained per field.
    """

    def __init__(self, field_code: str, reason: str, original_error: Optional[Exception] = None,
                 message: Optional[str] = None):
        self.field_code = field_code
        self.reason = reason
        self.original_error = original_error

        if message is None:
            message = f"Lookup for field '{field_code}' failed: {reason}"

        context = {
            'field_code': field_code,
            'reason': reason,
            'original_error_type': type(original_error).__name__ if original_error else None
        }

        recovery_suggestions = [
            "The field keeps its unresolved value and can still be edited",
            "Check the lookup service base URL in config.yaml"
        ]

        super().__init__(message, context, recovery_suggestions)


class ValidatorConfigError(SchemaFormError):
    """Exception raised for a malformed validation rule token."""

    def __init__(self, rule: str, issue: str, message: Optional[str] = None):
        self.rule = rule
        self.issue = issue

        if message is None:
            message = f"Malformed validation rule '{rule}': {issue}"

        super().__init__(
            message,
            {'rule': rule, 'issue': issue},
            ["Server-side validation still applies to this field"]
        )


class ConfigurationLoadError(SchemaFormError):
    """
    Exception raised when configuration file loading fails.

    This includes YAML parsing errors, permission issues, etc.
    """

    def __init__(self, config_path: Any, original_error: Exception,
                 message: Optional[str] = None):
        self.config_path = config_path
        self.original_error = original_error

        if message is None:
            message = f"Failed to load configuration from {config_path}: {str(original_error)}"

        context = {
            'config_path': str(config_path),
            'original_error_type': type(original_error).__name__,
            'original_error_message': str(original_error)
        }

        recovery_suggestions = [
            "Check if config.yaml exists and is readable",
            "Verify YAML syntax is correct",
            "Application will use default configuration as fallback"
        ]

        super().__init__(message, context, recovery_suggestions)


def log_error_with_context(error: SchemaFormError, operation: str, level: int = logging.WARNING) -> None:
    """
    Log error with full context information.

    Args:
        error: SchemaFormError instance
        operation: Description of the operation that failed
        level: Logging level for the message and context lines
    """
    logger.log(level, f"{type(error).__name__} during {operation}: {error.message}")

    for key, value in error.context.items():
        logger.debug(f"  {key}: {value}")

    for i, suggestion in enumerate(error.recovery_suggestions, 1):
        logger.debug(f"  suggestion {i}. {suggestion}")
