"""
Interface to the remote record store.

The store is an opaque CRUD / paged-query service. The pipelines only talk to
it through ``RecordService``; ``record_transfer.integrations.webapi`` holds
the HTTP implementation.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional, Protocol, Sequence

from record_transfer.api.schemas.shared import OperationKind, OperationPackage


@dataclass(frozen=True)
class OperationRequest:
    """An operation package bound to the request kind it should be executed as."""
    kind: OperationKind
    package: OperationPackage


@dataclass
class OperationResult:
    """Outcome of one request inside a sub-batch."""
    success: bool
    response: Any = None
    error: Optional[str] = None


class RecordService(Protocol):
    def execute(self, request: OperationRequest) -> Any:
        """Execute a single request, raising on failure."""
        ...

    def execute_multiple(self, requests: Sequence[OperationRequest]) -> List[OperationResult]:
        """Execute one sub-batch server-side, returning one result per request."""
        ...

    def retrieve_multiple(self, entity: str, params: Dict[str, str]) -> List[Dict[str, Any]]:
        """Return a single page of rows for a query."""
        ...

    def page_all(
        self, entity: str, params: Optional[Dict[str, str]] = None, page_size: int = 500
    ) -> Iterator[List[Dict[str, Any]]]:
        """Yield every row matching an OData-style query, one page at a time."""
        ...

    def page_fetch_xml(self, fetch_xml: str, page_size: int = 500) -> Iterator[List[Dict[str, Any]]]:
        """Yield every row matching a FetchXML query, one page at a time."""
        ...


# Row annotations the remote store attaches to retrieved records
ETAG_ANNOTATION = "@odata.etag"
FORMATTED_VALUE_SUFFIX = "@OData.Community.Display.V1.FormattedValue"
LOOKUP_LOGICALNAME_SUFFIX = "@Microsoft.Dynamics.CRM.lookuplogicalname"


def lookup_value_key(attribute: str) -> str:
    """Column name a retrieved record uses for the id behind a lookup attribute."""
    return f"_{attribute}_value"
