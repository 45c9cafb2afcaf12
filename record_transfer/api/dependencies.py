"""
Shared dependencies for the API.

Services are created lazily on first use and reused for the life of the
process. Tests replace them through ``app.dependency_overrides``.
"""
import threading
from typing import Optional

from fastapi import HTTPException

from record_transfer.core.config import settings
from record_transfer.domain.imports.staging import StagingStore
from record_transfer.domain.metadata import MetadataService, StaticMetadataService
from record_transfer.domain.records import RecordService
from record_transfer.integrations.webapi import (
    WebApiClient,
    WebApiError,
    WebApiMetadataService,
    WebApiRecordService,
)

_lock = threading.Lock()
_client: Optional[WebApiClient] = None
_metadata: Optional[MetadataService] = None
_records: Optional[RecordService] = None
_staging: Optional[StagingStore] = None


def _webapi_client() -> WebApiClient:
    global _client
    if _client is None:
        try:
            _client = WebApiClient()
        except WebApiError as exc:
            raise HTTPException(status_code=503, detail=str(exc))
    return _client


def get_metadata_service() -> MetadataService:
    global _metadata
    with _lock:
        if _metadata is None:
            if settings.metadata_file:
                _metadata = StaticMetadataService.from_file(settings.metadata_file)
            else:
                _metadata = WebApiMetadataService(_webapi_client())
        return _metadata


def get_record_service() -> RecordService:
    global _records
    metadata = get_metadata_service()
    with _lock:
        if _records is None:
            _records = WebApiRecordService(_webapi_client(), metadata)
        return _records


def get_staging_store() -> StagingStore:
    global _staging
    with _lock:
        if _staging is None:
            _staging = StagingStore()
            _staging.open()
        return _staging


def detect_file_type(filename: str) -> str:
    """
    Detect the import file type from a filename extension.

    Raises:
        HTTPException: If the extension is not an importable type
    """
    name = (filename or "").lower()
    if name.endswith(".csv"):
        return "csv"
    if name.endswith(".jsonl"):
        return "jsonl"
    if name.endswith(".json"):
        return "json"
    if name.endswith(".xml"):
        return "xml"
    raise HTTPException(status_code=400, detail="Unsupported file type")
