"""
Remote collaborators of the initialization pipeline.

Two contracts:
- fuzzy lookup: resolves option values of select-like fields to labels
- saved link: fetches a previously saved request snapshot by identifier

Both have an abstract client so tests and embedding apps can inject fakes,
and an httpx implementation talking to the backend.
"""

import logging
from abc import ABC, abstractmethod
from typing import Dict, Any, List, Optional

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .exceptions import RemoteLookupError
from .field_schema import FieldValue

logger = logging.getLogger(__name__)


class LookupQueryType:
    """Query kinds understood by the fuzzy lookup callback."""
    BY_KEYWORD = "by_keyword"
    BY_VALUE = "by_value"
    BY_VALUES = "by_values"


class LookupRequest(BaseModel):
    """Body of a fuzzy lookup call."""

    code: str
    type: str
    value: Any = None
    request: Dict[str, Any] = Field(default_factory=dict)
    value_type: str = "string"


class LookupItem(BaseModel):
    """One option returned by a lookup."""

    model_config = ConfigDict(extra="allow")

    value: Any = None
    label: str = ""
    icon: Optional[str] = None
    display_info: Optional[Any] = None

    @property
    def display_label(self) -> str:
        return self.label or str(self.value)


class LookupResponse(BaseModel):
    """Lookup result; a non-empty error_msg marks a failed resolution."""

    error_msg: str = ""
    items: List[LookupItem] = Field(default_factory=list)
    statistics: Optional[Dict[str, Any]] = None

    @property
    def failed(self) -> bool:
        return bool(self.error_msg)

    def find(self, value: Any) -> Optional[LookupItem]:
        """First item whose value equals value, comparing 1 and '1' as equal."""
        for item in self.items:
            if item.value == value or str(item.value) == str(value):
                return item
        return None


class SavedLink(BaseModel):
    """A saved request snapshot addressed by identifier."""

    model_config = ConfigDict(extra="ignore")

    id: Optional[Any] = None
    name: str = ""
    target_route: str
    target_method: str = "GET"
    request_params: Dict[str, FieldValue] = Field(default_factory=dict)
    field_metadata: Optional[Dict[str, Any]] = None
    response_metadata: Optional[Dict[str, Any]] = None


class FuzzyLookupClient(ABC):
    """Resolves option values for fields carrying the OnSelectFuzzy callback."""

    @abstractmethod
    async def lookup(self, route: str, method: str, request: LookupRequest) -> LookupResponse:
        ...


class SavedLinkClient(ABC):
    """Fetches saved request snapshots."""

    @abstractmethod
    async def fetch(self, link_id: Any) -> Optional[SavedLink]:
        """Return the snapshot, or None when no link exists for link_id."""


def _unwrap(payload: Any) -> Any:
    """Backend envelopes look like {'code': 0, 'data': {...}}; return the data part."""
    if isinstance(payload, dict) and "data" in payload and isinstance(payload["data"], dict):
        return payload["data"]
    return payload


class HttpFuzzyLookupClient(FuzzyLookupClient):
    """
    Fuzzy lookup over HTTP.

    The callback is always POSTed to '/api/v1/callback{route}' with the
    operation's own method passed as a query parameter.
    """

    def __init__(self, base_url: str, timeout: float = 10.0, headers: Optional[Dict[str, str]] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.headers = headers or {}
        self.transport = transport

    async def lookup(self, route: str, method: str, request: LookupRequest) -> LookupResponse:
        url = f"{self.base_url}/api/v1/callback{route}"
        params = {"_type": "OnSelectFuzzy", "_function_method": (method or "GET").upper()}

        logger.debug(f"[LOOKUP] {request.type} for {request.code} on {method} {route}")

        try:
            async with httpx.AsyncClient(timeout=self.timeout, headers=self.headers,
                                         transport=self.transport) as client:
                response = await client.post(url, params=params, json=request.model_dump())
                response.raise_for_status()
                payload = _unwrap(response.json())
        except httpx.HTTPError as e:
            raise RemoteLookupError(request.code, f"transport error: {e}", e)
        except ValueError as e:
            raise RemoteLookupError(request.code, "response body is not JSON", e)

        try:
            return LookupResponse.model_validate(payload or {})
        except ValidationError as e:
            raise RemoteLookupError(request.code, "unexpected response shape", e)


class HttpSavedLinkClient(SavedLinkClient):
    """Saved link fetch over HTTP ('GET /workspace/api/v1/quicklink/get?id=...')."""

    def __init__(self, base_url: str, timeout: float = 10.0, headers: Optional[Dict[str, str]] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.headers = headers or {}
        self.transport = transport

    async def fetch(self, link_id: Any) -> Optional[SavedLink]:
        url = f"{self.base_url}/workspace/api/v1/quicklink/get"

        async with httpx.AsyncClient(timeout=self.timeout, headers=self.headers,
                                     transport=self.transport) as client:
            response = await client.get(url, params={"id": link_id})
            if response.status_code == 404:
                return None
            response.raise_for_status()
            payload = _unwrap(response.json())

        if not payload:
            return None
        return saved_link_from_payload(payload)


def saved_link_from_payload(payload: Dict[str, Any]) -> SavedLink:
    """
    Build a SavedLink from the backend's quick link document.

    The backend names the target 'function_router' / 'function_method' and
    keeps the response metadata under 'metadata.response_params'; the
    canonical names are accepted as well.
    """
    metadata = payload.get("metadata") or {}

    request_params: Dict[str, Any] = {}
    for code, value in (payload.get("request_params") or {}).items():
        if isinstance(value, dict) and "raw" in value:
            request_params[code] = value
        else:
            # Older links stored bare values
            request_params[code] = {"raw": value, "display": "" if value is None else str(value), "meta": {}}

    return SavedLink(
        id=payload.get("id"),
        name=payload.get("name") or "",
        target_route=payload.get("target_route") or payload.get("function_router") or "",
        target_method=payload.get("target_method") or payload.get("function_method") or "GET",
        request_params=request_params,
        field_metadata=payload.get("field_metadata"),
        response_metadata=payload.get("response_metadata") or metadata.get("response_params"),
    )
