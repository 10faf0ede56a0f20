"""
Initialization pipeline.

1. Run the init sources in order (saved link, query parameters, defaults).
2. Merge their contributions with an explicit precedence policy and write
   the winners into the value store.
3. Run the widget initializer of every top-level field concurrently, each
   field isolated from the failures of the others.

A run started while another run is still in flight is rejected as a no-op.
"""

import asyncio
import logging
from dataclasses import dataclass, field as dataclass_field
from datetime import datetime
from typing import Dict, Any, Callable, List, Optional

from .exceptions import SchemaFormError, log_error_with_context
from .field_schema import FieldSchema, FieldValue, OperationSchema
from .init_sources import (
    InitSource, InitSourceContext, SOURCE_DEFAULT, SOURCE_QUERY_PARAMS, SOURCE_SAVED_LINK, default_sources
)
from .initializers import WidgetInitContext, WidgetInitializerRegistry, coerce_field_value
from .lookup_client import FuzzyLookupClient, SavedLinkClient
from .value_store import ValueStore

logger = logging.getLogger(__name__)

DEFAULT_PRECEDENCE = [SOURCE_SAVED_LINK, SOURCE_QUERY_PARAMS, SOURCE_DEFAULT]


@dataclass
class PipelineResult:
    """Outcome of one pipeline run."""

    skipped: bool = False
    # Winning value per top-level field code, before widget initialization
    applied: Dict[str, FieldValue] = dataclass_field(default_factory=dict)
    # Name of the source each applied value came from
    origins: Dict[str, str] = dataclass_field(default_factory=dict)
    # Sources that failed and contributed nothing
    failed_sources: List[str] = dataclass_field(default_factory=list)
    field_metadata: Optional[Dict[str, Any]] = None
    response_metadata: Optional[Dict[str, Any]] = None


def merge_contributions(contributions: Dict[str, Dict[str, FieldValue]],
                        precedence: List[str]) -> Dict[str, tuple]:
    """
    Pick one value per field code.

    Sources are ranked by their position in precedence; sources missing from
    it rank below all listed ones, in the order they ran.

    Returns:
        Dictionary of code -> (source name, FieldValue)
    """
    ranking = {name: index for index, name in enumerate(precedence)}
    run_order = list(contributions.keys())

    def rank(name: str) -> tuple:
        return (ranking.get(name, len(ranking)), run_order.index(name))

    merged: Dict[str, tuple] = {}
    for name in sorted(run_order, key=rank):
        for code, value in contributions[name].items():
            if code not in merged:
                merged[code] = (name, value)
    return merged


class InitializationPipeline:
    """Populates the value store of one form instance from its init sources."""

    def __init__(
        self,
        operation: OperationSchema,
        store: ValueStore,
        sources: Optional[List[InitSource]] = None,
        initializer_registry: Optional[WidgetInitializerRegistry] = None,
        lookup_client: Optional[FuzzyLookupClient] = None,
        saved_link_client: Optional[SavedLinkClient] = None,
        precedence: Optional[List[str]] = None,
    ):
        self.operation = operation
        self.store = store
        self.sources = sources if sources is not None else default_sources(saved_link_client)
        self.initializer_registry = initializer_registry or WidgetInitializerRegistry()
        self.lookup_client = lookup_client
        self.saved_link_client = saved_link_client
        self.precedence = list(precedence) if precedence else list(DEFAULT_PRECEDENCE)
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    async def run(
        self,
        query_params: Optional[Dict[str, Any]] = None,
        saved_link_id: Optional[Any] = None,
        current_user: Optional[Callable[[], Optional[str]]] = None,
        now: Optional[datetime] = None,
    ) -> PipelineResult:
        """
        Initialize the store.

        Args:
            query_params: Flat map of top-level field code -> parameter value
            saved_link_id: Identifier of a saved link to restore, if any
            current_user: Callable returning the current user name ('$me')
            now: Reference time for dynamic timestamp defaults

        Returns:
            PipelineResult; skipped=True when another run was in flight
        """
        if self._running:
            logger.warning(f"[INIT] Initialization of {self.operation.route} already running, ignoring new run")
            return PipelineResult(skipped=True)

        self._running = True
        try:
            return await self._run(query_params or {}, saved_link_id, current_user, now)
        finally:
            self._running = False

    async def _run(self, query_params, saved_link_id, current_user, now) -> PipelineResult:
        context = InitSourceContext(
            operation=self.operation,
            store=self.store,
            query_params=query_params,
            saved_link_id=saved_link_id,
            current_user=current_user,
            now=now,
        )
        result = PipelineResult()

        for source in self.sources:
            try:
                values = await source.load(context)
            except SchemaFormError as e:
                log_error_with_context(e, f"init source '{source.name}'")
                result.failed_sources.append(source.name)
                values = {}
            except Exception as e:
                logger.error(f"[INIT] Init source '{source.name}' failed: {e}", exc_info=True)
                result.failed_sources.append(source.name)
                values = {}
            context.contributions[source.name] = values

        merged = merge_contributions(context.contributions, self.precedence)
        for code, (origin, value) in merged.items():
            self.store.set(code, value)
            result.applied[code] = value
            result.origins[code] = origin

        result.field_metadata = context.metadata.get('field_metadata')
        result.response_metadata = context.metadata.get('response_metadata')

        logger.info(f"[INIT] Applied {len(merged)} initial values for {self.operation.method} {self.operation.route}")

        await self._initialize_widgets(result.origins)
        return result

    async def _initialize_widgets(self, origins: Dict[str, str]) -> None:
        fields = self.operation.request
        form_data = {field.code: self.store.get(field.code) for field in fields}

        tasks = [self._initialize_field(field, form_data, origins.get(field.code, "")) for field in fields]
        outcomes = await asyncio.gather(*tasks, return_exceptions=True)

        for field, outcome in zip(fields, outcomes):
            if isinstance(outcome, BaseException):
                logger.error(f"[INIT] Widget initialization of {field.code} failed: {outcome}")

    async def _initialize_field(self, field: FieldSchema, form_data: Dict[str, FieldValue], origin: str) -> None:
        context = WidgetInitContext(
            field=field,
            path=field.code,
            current_value=self.store.get(field.code),
            operation=self.operation,
            store=self.store,
            registry=self.initializer_registry,
            lookup_client=self.lookup_client,
            form_data=form_data,
            init_source=origin,
        )
        if self.initializer_registry.get_initializer(field) is None:
            # Fields without an initializer still get their declared type
            result = coerce_field_value(field, context.current_value)
            if result is context.current_value:
                return
        else:
            # A declined or failed initializer leaves the value untouched
            result = await self.initializer_registry.run(context)
            if not isinstance(result, FieldValue):
                return
        self.store.set(field.code, result)
