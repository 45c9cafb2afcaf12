"""
In-process stand-ins for the remote record store and the spreadsheet API.
"""
import threading
import time
from typing import Any, Dict, Iterator, List, Optional, Sequence

from lxml import etree

from record_transfer.api.schemas.shared import EntityPackage
from record_transfer.domain.records import OperationRequest, OperationResult

FAIL_MARKER = "FAIL"


def _is_marked_failure(request: OperationRequest) -> bool:
    package = request.package
    return isinstance(package, EntityPackage) and package.fields.get("name") == FAIL_MARKER


class FakeRecordService:
    """
    Records every call and serves canned rows.

    Packages whose ``name`` field is ``FAIL`` fail; everything else succeeds.
    ``execute_multiple`` tracks how many sub-batches are in flight at once.
    """

    def __init__(
        self,
        rows: Optional[Dict[str, List[Dict[str, Any]]]] = None,
        lookup_rows: Optional[Dict[str, List[Dict[str, Any]]]] = None,
        delay: float = 0.0,
    ):
        self.rows = rows or {}
        self.lookup_rows = lookup_rows or {}
        self.delay = delay
        self.queries: List[tuple] = []
        self.executed: List[OperationRequest] = []
        self.batches: List[List[OperationRequest]] = []
        self.page_requests: List[tuple] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self._lock = threading.Lock()

    def execute(self, request: OperationRequest) -> Any:
        with self._lock:
            self.executed.append(request)
        if _is_marked_failure(request):
            raise RuntimeError("Remote store rejected the record")
        return {"ok": True}

    def execute_multiple(self, requests: Sequence[OperationRequest]) -> List[OperationResult]:
        with self._lock:
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
            self.batches.append(list(requests))
        try:
            if self.delay:
                time.sleep(self.delay)
            return [
                OperationResult(success=False, error="rejected")
                if _is_marked_failure(request)
                else OperationResult(success=True)
                for request in requests
            ]
        finally:
            with self._lock:
                self.in_flight -= 1

    def retrieve_multiple(self, entity: str, params: Dict[str, str]) -> List[Dict[str, Any]]:
        with self._lock:
            self.queries.append((entity, dict(params)))
        return list(self.lookup_rows.get(entity, []))

    def page_all(
        self, entity: str, params: Optional[Dict[str, str]] = None, page_size: int = 500
    ) -> Iterator[List[Dict[str, Any]]]:
        self.page_requests.append((entity, dict(params or {}), page_size))
        rows = self.rows.get(entity, [])
        for start in range(0, len(rows), page_size):
            yield rows[start:start + page_size]

    def page_fetch_xml(self, fetch_xml: str, page_size: int = 500) -> Iterator[List[Dict[str, Any]]]:
        entity = etree.fromstring(fetch_xml.encode("utf-8")).find("entity").get("name")
        self.page_requests.append((entity, {"fetchXml": fetch_xml}, page_size))
        rows = self.rows.get(entity, [])
        for start in range(0, len(rows), page_size):
            yield rows[start:start + page_size]


class FakeSheetsClient:
    def __init__(self):
        self.created: List[str] = []
        self.appended: List[tuple] = []

    def create(self, title: str) -> Dict[str, Any]:
        self.created.append(title)
        return {
            "spreadsheetId": "sheet-1",
            "spreadsheetUrl": "https://sheets.example.com/sheet-1",
            "sheets": [{"properties": {"title": "Sheet1"}}],
        }

    def append(self, spreadsheet_id: str, range_name: str, values: List[List[Any]]) -> Dict[str, Any]:
        self.appended.append((spreadsheet_id, range_name, values))
        return {"updates": {"updatedRows": len(values)}}
