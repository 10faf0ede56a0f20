"""
Per-form session container.

A FormSession owns everything one open form needs: its value store segment,
extractor and initializer registries, the initialization pipeline and the
validation engine. Nothing is shared between sessions, so two forms open
side by side (or two tabs of the same operation) never see each other's
values.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Dict, Any, Callable, List, Optional, MutableMapping
import logging

from deepdiff import DeepDiff

from .config_loader import get_config_value
from .extractors import ExtractorRegistry, collect_submission
from .field_schema import FieldSchema, FieldValue, OperationSchema
from .initializers import WidgetInitializerRegistry
from .lookup_client import FuzzyLookupClient, HttpFuzzyLookupClient, HttpSavedLinkClient, SavedLinkClient
from .pipeline import DEFAULT_PRECEDENCE, InitializationPipeline, PipelineResult
from .type_converter import normalize_cell
from .validation import DEFAULT_EMAIL_PATTERN, ValidationEngine, ValidatorRegistry
from .value_store import ValueStore
from .visibility import visible_fields

logger = logging.getLogger(__name__)


def _sanitize_for_json(obj: Any) -> Any:
    """
    Recursively sanitize an object for JSON serialization.
    Converts date, datetime to ISO format strings, Decimal to float and
    numpy/pandas scalars to plain Python values.
    """
    if isinstance(obj, dict):
        return {k: _sanitize_for_json(v) for k, v in obj.items()}
    elif isinstance(obj, (list, tuple)):
        return [_sanitize_for_json(item) for item in obj]
    elif isinstance(obj, (datetime, date)):
        return obj.isoformat()
    elif isinstance(obj, Decimal):
        return float(obj)
    elif isinstance(obj, float):
        # 242.98000000000002 -> 242.98
        return round(obj, 10)
    else:
        return normalize_cell(obj)


def default_instance_id(operation: OperationSchema) -> str:
    return f"{operation.method.upper()}:{operation.route}"


class FormSession:
    """Dependency container and lifecycle of one form instance."""

    def __init__(
        self,
        operation: OperationSchema,
        instance_id: Optional[str] = None,
        state: Optional[MutableMapping[str, Any]] = None,
        lookup_client: Optional[FuzzyLookupClient] = None,
        saved_link_client: Optional[SavedLinkClient] = None,
        config: Optional[Dict[str, Any]] = None,
        current_user: Optional[Callable[[], Optional[str]]] = None,
    ):
        self.operation = operation
        self.config = config
        self.store = ValueStore(instance_id or default_instance_id(operation), state)

        self.extractors = ExtractorRegistry(self.store)
        self.initializers = WidgetInitializerRegistry()
        self.pipeline = InitializationPipeline(
            operation,
            self.store,
            initializer_registry=self.initializers,
            lookup_client=lookup_client,
            saved_link_client=saved_link_client,
            precedence=get_config_value('initialization', 'source_precedence', DEFAULT_PRECEDENCE, config),
        )
        self.validators = ValidatorRegistry(
            get_config_value('validation', 'email_pattern', DEFAULT_EMAIL_PATTERN, config)
        )
        self.validation = ValidationEngine(self.store, operation.request, self.validators, self.extractors)

        if current_user is None:
            configured_user = get_config_value('initialization', 'current_user', None, config)
            current_user = (lambda: configured_user) if configured_user else None
        self.current_user = current_user

        self._pristine: Optional[Dict[str, Any]] = None

    @classmethod
    def from_config(cls, operation: OperationSchema, config: Optional[Dict[str, Any]] = None,
                    **kwargs) -> "FormSession":
        """
        Build a session whose remote clients come from the 'lookup' config section.

        Without a lookup base_url the session runs without remote enrichment.
        """
        base_url = get_config_value('lookup', 'base_url', '', config)
        timeout = float(get_config_value('lookup', 'timeout', 10.0, config))

        if base_url:
            kwargs.setdefault('lookup_client', HttpFuzzyLookupClient(base_url, timeout))
            kwargs.setdefault('saved_link_client', HttpSavedLinkClient(base_url, timeout))
        else:
            logger.info("No lookup base_url configured, remote enrichment disabled")

        return cls(operation, config=config, **kwargs)

    @property
    def fields(self) -> List[FieldSchema]:
        return self.operation.request

    async def open(self, query_params: Optional[Dict[str, Any]] = None, saved_link_id: Optional[Any] = None,
                   now: Optional[datetime] = None) -> PipelineResult:
        """
        Start the form: empty the store, initialize it and remember the initial state.

        Returns:
            PipelineResult of the initialization run
        """
        if self.pipeline.is_running:
            logger.warning(f"Form {self.store.instance_id} is still initializing, open() ignored")
            return PipelineResult(skipped=True)

        self.store.clear()
        result = await self.pipeline.run(query_params, saved_link_id, self.current_user, now)
        self.mark_pristine()
        logger.info(f"Form {self.store.instance_id} opened with {len(self.store.all_paths())} paths")
        return result

    def close(self) -> None:
        """Drop every value of this form instance."""
        self.store.clear()
        self._pristine = None
        logger.info(f"Form {self.store.instance_id} closed")

    def get_value(self, path: str) -> FieldValue:
        return self.store.get(path)

    def set_value(self, path: str, raw: Any, display: Optional[str] = None,
                  meta: Optional[Dict[str, Any]] = None) -> None:
        """Record an edit made by a widget."""
        if display is None:
            display = "" if raw is None else str(raw)
        self.store.set(path, FieldValue(raw=raw, display=display, meta=meta or {}))

    def build_submission(self) -> Dict[str, Any]:
        """The JSON-ready request payload for the operation."""
        payload = collect_submission(self.fields, self.extractors)
        return _sanitize_for_json(payload)

    def validate(self) -> Dict[str, List[str]]:
        """Errors by path for the whole form."""
        return self.validation.validate_all()

    def visible_fields(self, fields: Optional[List[FieldSchema]] = None, base_path: str = "") -> List[FieldSchema]:
        return visible_fields(fields if fields is not None else self.fields, self.store, base_path,
                              self.validation.field_name_map)

    def mark_pristine(self) -> None:
        """Remember the current submission as the unchanged state."""
        self._pristine = self.build_submission()

    def get_changes(self) -> Dict[str, Any]:
        """DeepDiff of the current submission against the pristine one."""
        if self._pristine is None:
            return {}
        diff = DeepDiff(self._pristine, self.build_submission())
        return dict(diff)

    def has_unsaved_changes(self) -> bool:
        return bool(self.get_changes())
