"""
Initialization sources.

Each source turns one kind of external state into a flat map of top-level
field code -> FieldValue. Sources run one after another; which value wins
for a field is decided afterwards by the pipeline's precedence policy.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field as dataclass_field
from datetime import datetime
from typing import Dict, Any, Callable, Optional

from .dynamic_defaults import get_widget_default_value
from .exceptions import SavedLinkMismatchError
from .field_schema import FieldValue, FieldValueMeta, OperationSchema
from .lookup_client import SavedLinkClient
from .type_converter import decode_structured_param
from .value_store import ValueStore

logger = logging.getLogger(__name__)

SOURCE_SAVED_LINK = "saved_link"
SOURCE_QUERY_PARAMS = "query_params"
SOURCE_DEFAULT = "default"


@dataclass
class InitSourceContext:
    """Activation state shared by all sources of one pipeline run."""

    operation: OperationSchema
    store: ValueStore
    query_params: Dict[str, Any] = dataclass_field(default_factory=dict)
    saved_link_id: Optional[Any] = None
    current_user: Optional[Callable[[], Optional[str]]] = None
    now: Optional[datetime] = None
    # Values contributed by the sources that already ran, keyed by source name
    contributions: Dict[str, Dict[str, FieldValue]] = dataclass_field(default_factory=dict)
    # Run metadata handed back to the caller (saved link field/response metadata)
    metadata: Dict[str, Any] = dataclass_field(default_factory=dict)

    def is_provided(self, code: str) -> bool:
        return any(code in values for values in self.contributions.values())


class InitSource(ABC):
    """One provider of initial field values."""

    name: str = ""

    @abstractmethod
    async def load(self, context: InitSourceContext) -> Dict[str, FieldValue]:
        ...


class SavedLinkInitSource(InitSource):
    """
    Values of a saved link.

    The link must target the active operation (route and method); a link
    saved for another operation raises SavedLinkMismatchError.
    """

    name = SOURCE_SAVED_LINK

    def __init__(self, client: Optional[SavedLinkClient]):
        self.client = client

    async def load(self, context: InitSourceContext) -> Dict[str, FieldValue]:
        if context.saved_link_id in (None, "") or self.client is None:
            return {}

        link = await self.client.fetch(context.saved_link_id)
        if link is None:
            logger.warning(f"[INIT] Saved link {context.saved_link_id} not found")
            return {}

        operation = context.operation
        if (link.target_route != operation.route
                or (link.target_method or "").upper() != (operation.method or "").upper()):
            raise SavedLinkMismatchError(
                str(context.saved_link_id),
                expected={'route': operation.route, 'method': operation.method},
                actual={'route': link.target_route, 'method': link.target_method},
            )

        values: Dict[str, FieldValue] = {}
        for code, value in link.request_params.items():
            meta = dict(value.meta)
            meta[FieldValueMeta.FROM_SAVED_LINK] = True
            values[code] = FieldValue(raw=value.raw, display=value.display, meta=meta)

        if link.field_metadata is not None:
            context.metadata['field_metadata'] = link.field_metadata
        if link.response_metadata is not None:
            context.metadata['response_metadata'] = link.response_metadata

        logger.info(f"[INIT] Saved link {context.saved_link_id} provided {len(values)} values")
        return values


class QueryParamsInitSource(InitSource):
    """
    Values of URL query parameters.

    Values stay untyped and are tagged as coming from the URL; widget
    initializers convert them. JSON encoded arrays and objects are decoded.
    """

    name = SOURCE_QUERY_PARAMS

    async def load(self, context: InitSourceContext) -> Dict[str, FieldValue]:
        params = context.query_params or {}
        values: Dict[str, FieldValue] = {}

        for field in context.operation.request:
            if field.code not in params:
                continue
            given = params[field.code]
            decoded = decode_structured_param(given)
            values[field.code] = FieldValue(
                raw=decoded,
                display=decoded if isinstance(decoded, str) else "",
                meta={FieldValueMeta.FROM_URL: True, FieldValueMeta.ORIGINAL_VALUE: decoded},
            )

        if values:
            logger.info(f"[INIT] Query parameters provided {len(values)} values")
        return values


class DefaultInitSource(InitSource):
    """Schema defaults for every top-level field nobody else provided."""

    name = SOURCE_DEFAULT

    async def load(self, context: InitSourceContext) -> Dict[str, FieldValue]:
        values: Dict[str, FieldValue] = {}

        for field in context.operation.request:
            if context.is_provided(field.code) or field.code in context.store:
                continue
            value = get_widget_default_value(field, context.current_user, context.now)
            meta = dict(value.meta)
            meta[FieldValueMeta.FROM_DEFAULT] = True
            values[field.code] = value.model_copy(update={"meta": meta})

        logger.debug(f"[INIT] Defaults provided {len(values)} values")
        return values


def default_sources(saved_link_client: Optional[SavedLinkClient] = None):
    """The built-in sources in run order."""
    return [SavedLinkInitSource(saved_link_client), QueryParamsInitSource(), DefaultInitSource()]
