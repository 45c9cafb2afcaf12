import logging
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from record_transfer.core.config import settings

logger = logging.getLogger(__name__)


# Attribute types whose values are references to another record
LOOKUP_TYPES = ("Owner", "Customer", "Lookup")


class FieldMode(str, Enum):
    """How a source column participates in the transformation."""
    MAP = "Map"
    IGNORE = "Ignore"
    ETAG = "ETag"
    STATIC = "Static"


class OperationKind(str, Enum):
    """Remote request kinds a package can be turned into."""
    ASSOCIATE = "AssociateRequest"
    CREATE = "CreateRequest"
    UPDATE = "UpdateRequest"
    UPSERT = "UpsertRequest"


OPERATION_LABELS = {
    OperationKind.ASSOCIATE: "Associate (M:N)",
    OperationKind.CREATE: "Create Only",
    OperationKind.UPDATE: "Update Only",
    OperationKind.UPSERT: "Upsert (Create/Update based on key)",
}


class FieldMapping(BaseModel):
    """Declarative transform rule for a single source column."""
    model_config = ConfigDict(populate_by_name=True)

    mode: FieldMode = FieldMode.MAP
    from_: Optional[str] = Field(default=None, alias="from")
    to: Optional[str] = None
    type: Optional[str] = None
    resolve: bool = False
    resolve_attribute: Optional[str] = None
    target: Optional[str] = None
    targets: List[str] = Field(default_factory=list)
    value: Any = None

    @model_validator(mode="after")
    def check_mode_requirements(self) -> "FieldMapping":
        if self.resolve:
            if not self.target or not self.resolve_attribute:
                raise ValueError("resolve=True requires both 'target' and 'resolve_attribute'")
            if self.type not in LOOKUP_TYPES:
                raise ValueError(
                    f"resolve=True is only valid for lookup attributes, got type '{self.type}'"
                )
        if self.mode == FieldMode.STATIC:
            if self.value is None:
                raise ValueError("Static mappings require a 'value'")
            if not self.to:
                raise ValueError("Static mappings require a destination attribute ('to')")
        return self

    @property
    def is_lookup(self) -> bool:
        return self.type in LOOKUP_TYPES


class LookupReference(BaseModel):
    """Reference to a record of another entity, as written into a lookup field."""
    model_config = ConfigDict(frozen=True)

    logical_name: str
    id: Optional[str] = None


class RecordRef(BaseModel):
    model_config = ConfigDict(frozen=True)

    logical_name: str
    id: Optional[str] = None


class EntityPackage(BaseModel):
    """Transformed payload for a Create, Update or Upsert request."""
    model_config = ConfigDict(frozen=True)

    logical_name: str
    id: Union[str, Dict[str, Any], None] = None
    etag: Optional[str] = None
    fields: Dict[str, Any] = Field(default_factory=dict)

    @property
    def uses_alternate_key(self) -> bool:
        return isinstance(self.id, dict)


class AssociatePackage(BaseModel):
    """Transformed payload for a many-to-many Associate request."""
    model_config = ConfigDict(frozen=True)

    relation_name: str
    side_a: RecordRef
    side_b: RecordRef


OperationPackage = Union[EntityPackage, AssociatePackage]


class ImportCounts(BaseModel):
    new: int = 0
    checked: int = 0
    enqueued: int = 0
    success: int = 0
    failed: int = 0

    def reset_run(self) -> None:
        """Reset everything a prepare/import run accumulates; `new` belongs to the load."""
        self.checked = 0
        self.enqueued = 0
        self.success = 0
        self.failed = 0


class ImportProgress(BaseModel):
    current_index: int = -1
    total: int = -1

    @property
    def text(self) -> str:
        if self.total > -1:
            return f"{self.current_index} of {self.total} processed"
        return f"{self.current_index} processed (total unknown)"


class RowErrorDetail(BaseModel):
    """Structured information about a row that failed transformation or execution."""
    type: str
    message: str
    record_number: Optional[int] = None
    column: Optional[str] = None
    value: Optional[Any] = None


class BatchOptions(BaseModel):
    use: bool = False
    batch_size: int = settings.batch_size
    parallel: int = settings.batch_parallel

    @field_validator("batch_size")
    def validate_batch_size(cls, value: int) -> int:
        if value < 1 or value > settings.batch_max_size:
            raise ValueError(f"batch_size must be between 1 and {settings.batch_max_size}")
        return value

    @field_validator("parallel")
    def validate_parallel(cls, value: int) -> int:
        if value < 1 or value > settings.batch_max_parallel:
            raise ValueError(f"parallel must be between 1 and {settings.batch_max_parallel}")
        return value


class OperationQueueOptions(BaseModel):
    use: bool = False
    context: str = settings.operation_queue_context


class ImportOptions(BaseModel):
    stream_file: bool = False
    use_staging: bool = False
    batch: BatchOptions = Field(default_factory=BatchOptions)
    operation_queue: OperationQueueOptions = Field(default_factory=OperationQueueOptions)


class ImportRequest(BaseModel):
    """Everything an import job needs besides the uploaded file itself."""
    entity: str
    file_type: str
    operation: Optional[OperationKind] = None
    alternate_key: Optional[str] = None
    mappings: Optional[List[FieldMapping]] = None
    delimiter: str = ","
    options: ImportOptions = Field(default_factory=ImportOptions)

    @field_validator("file_type")
    def validate_file_type(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in ("csv", "json", "jsonl", "xml"):
            raise ValueError(f"Unsupported import file type: {value}")
        return normalized


class JobStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


class TransferJob(BaseModel):
    id: str
    kind: str
    status: JobStatus = JobStatus.QUEUED
    entity: Optional[str] = None
    counts: ImportCounts = Field(default_factory=ImportCounts)
    progress: ImportProgress = Field(default_factory=ImportProgress)
    errors: List[RowErrorDetail] = Field(default_factory=list)
    error_message: Optional[str] = None
    result_metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime
    completed_at: Optional[datetime] = None


class TransferJobResponse(BaseModel):
    success: bool
    job: TransferJob


class TransferJobListResponse(BaseModel):
    success: bool
    jobs: List[TransferJob]
    total_count: int


class ExportFormat(str, Enum):
    CSV = "csv"
    JSON = "json"
    XLSX = "xlsx"


class ExportTargetKind(str, Enum):
    FILE = "File"
    FILESYSTEM = "FileSystem"
    SPREADSHEET = "Spreadsheet"


class ExportRequest(BaseModel):
    entity: str
    fields: Optional[List[str]] = None
    fetch_xml: Optional[str] = None
    filter: Optional[str] = None
    format: ExportFormat = ExportFormat.CSV
    target: ExportTargetKind = ExportTargetKind.FILE
    export_formatted_values: bool = False
    include_etag: bool = True
    zip_result: bool = settings.export_zip_result
    filename: Optional[str] = None
    static_data: Optional[Dict[str, Any]] = None


class ImportPreviewResponse(BaseModel):
    success: bool
    entity: str
    operation: OperationKind
    columns: List[str]
    mappings: List[FieldMapping]
    alternate_keys: List[str] = Field(default_factory=list)
    staging_recommended: bool = False


class ExportResponse(BaseModel):
    """Result of an export that did not produce a download."""
    success: bool
    filename: str
    rows_exported: int
    cancelled: bool = False
    path: Optional[str] = None
    url: Optional[str] = None
    timings: Dict[str, float] = Field(default_factory=dict)
