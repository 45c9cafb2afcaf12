"""
Import session orchestration.

``DataImport`` carries one import from entity selection to execution:

1. ``select_entity``: load schema, alternate keys and (for intersect
   entities) the many-to-many relationship
2. ``peek_file`` / ``load_file``: derive default mappings and load rows into
   memory or into the staging store
3. ``prepare``: validate every row with the active mappings
4. ``run_import``: transform page by page and hand the packages to the
   operation queue, the batch executor or sequential execution

Row failures never stop a run. Setup failures (``ImportSetupError``) and
parser start-up failures do.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from record_transfer.api.schemas.shared import (
    FieldMapping,
    ImportCounts,
    ImportOptions,
    ImportProgress,
    OperationKind,
    RowErrorDetail,
)
from record_transfer.core.config import settings
from record_transfer.domain.imports.coercion import ValueCoercer
from record_transfer.domain.imports.executor import BatchExecutor, CancellationToken
from record_transfer.domain.imports.mapper import build_row_error, default_field_mappings
from record_transfer.domain.imports.processors.csv_processor import preview_csv, process_csv
from record_transfer.domain.imports.processors.json_processor import json_columns, process_json
from record_transfer.domain.imports.processors.xml_processor import process_xml
from record_transfer.domain.imports.resolver import LookupResolver, ResolveCache, resolve_cache_for_run
from record_transfer.domain.imports.sources import (
    STREAMABLE_FILE_TYPES,
    ArrayReader,
    FileSource,
    Page,
    PagedSource,
    StreamingFileReader,
    iter_file_pages,
)
from record_transfer.domain.imports.staging import StagingLoad, StagingStore
from record_transfer.domain.imports.streaming import ParseBatch, StreamingParser
from record_transfer.domain.imports.transformer import RecordTransformer, RowTransformError
from record_transfer.domain.metadata import (
    AlternateKey,
    EntitySchema,
    ManyToManyDescriptor,
    MetadataLookupError,
    MetadataService,
)
from record_transfer.domain.records import OperationRequest, RecordService

logger = logging.getLogger(__name__)

PEEK_ROWS = 10
SUPPORTED_FILE_TYPES = ("csv", "json", "jsonl", "xml")


class ImportSetupError(Exception):
    """The import cannot start: missing metadata, bad configuration or nothing loaded."""


def staging_recommended(size_bytes: int) -> bool:
    """Files above ``large_file_size_mb`` should be loaded through the staging store."""
    return size_bytes > settings.large_file_size_mb * 1024 * 1024


def _read_whole_file(source: FileSource, file_type: str, delimiter: str):
    if file_type == "csv":
        return process_csv(source, delimiter=delimiter)
    if file_type == "jsonl":
        rows: List[Dict[str, Any]] = []
        for page in iter_file_pages(source, "jsonl", settings.worker_step_size):
            rows.extend(page)
        return rows, json_columns(rows)

    content = source if isinstance(source, bytes) else _read_bytes(source)
    if file_type == "json":
        rows = process_json(content)
        return rows, json_columns(rows)
    if file_type == "xml":
        return process_xml(content)
    raise ImportSetupError(f"Unsupported import file type: {file_type}")


def _read_bytes(source: FileSource) -> bytes:
    if hasattr(source, "read"):
        return source.read()
    with open(source, "rb") as handle:
        return handle.read()


@dataclass
class ImportRunResult:
    counts: ImportCounts
    progress: ImportProgress
    errors: List[RowErrorDetail] = field(default_factory=list)
    cancelled: bool = False
    pages: int = 0
    failed_pages: int = 0
    timings: Dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "counts": self.counts.model_dump(),
            "progress": self.progress.model_dump(),
            "cancelled": self.cancelled,
            "pages": self.pages,
            "failed_pages": self.failed_pages,
            "timings": self.timings,
            "error_count": len(self.errors),
        }


ProgressCallback = Callable[[ImportCounts, ImportProgress], None]


class DataImport:
    """
    One import session against one target entity.

    Args:
        metadata: Schema service
        records: Remote record service
        staging: Staging store (needed for staged loads and the operation queue)
        resolve_cache: Lookup cache to use; defaults to ``resolve_cache_for_run()`` per run
        coercer: Value coercer; defaults to the process-wide one
        cancel_token: Token polled after every row and page
        on_progress: Called after every page with the live counts and progress
    """

    def __init__(
        self,
        metadata: MetadataService,
        records: RecordService,
        staging: Optional[StagingStore] = None,
        resolve_cache: Optional[ResolveCache] = None,
        coercer: Optional[ValueCoercer] = None,
        cancel_token: Optional[CancellationToken] = None,
        on_progress: Optional[ProgressCallback] = None,
    ):
        self.metadata = metadata
        self.records = records
        self.staging = staging
        self.resolve_cache = resolve_cache
        self.coercer = coercer
        self.cancel_token = cancel_token or CancellationToken()
        self.on_progress = on_progress

        self.entity: Optional[str] = None
        self.schema: Optional[EntitySchema] = None
        self.keys: List[AlternateKey] = []
        self.relationship: Optional[ManyToManyDescriptor] = None
        self.operation: OperationKind = OperationKind.CREATE
        self.alternate_key: Optional[AlternateKey] = None
        self.mappings: List[FieldMapping] = []

        self.counts = ImportCounts()
        self.progress = ImportProgress()
        self.errors: List[RowErrorDetail] = []
        self.validated = False

        self._rows: Optional[List[Dict[str, Any]]] = None
        self._file_source: Optional[FileSource] = None
        self._file_type: Optional[str] = None
        self._delimiter = ","
        self._staging_load: Optional[StagingLoad] = None
        self._stream_file = False

    # Setup -------------------------------------------------------------------

    def select_entity(self, logical_name: str) -> EntitySchema:
        """
        Load everything needed to import into ``logical_name``.

        Intersect entities switch the session to the Associate operation.

        Raises:
            ImportSetupError: If schema, keys or relationship metadata cannot be loaded
        """
        try:
            schema = self.metadata.get_entity_schema(logical_name)
            keys = self.metadata.get_alternate_keys(logical_name)
        except MetadataLookupError as exc:
            raise ImportSetupError(f"Failed to load entity metadata for {logical_name}: {exc}") from exc

        relationship = None
        if schema.is_intersect:
            try:
                relationship = self.metadata.get_many_to_many_descriptor(logical_name)
            except MetadataLookupError as exc:
                raise ImportSetupError(f"Failed to load relationship metadata for {logical_name}: {exc}") from exc

        self.entity = logical_name
        self.schema = schema
        self.keys = keys
        self.relationship = relationship
        self.alternate_key = None
        self.mappings = []
        if relationship is not None:
            self.operation = OperationKind.ASSOCIATE
        elif self.operation == OperationKind.ASSOCIATE:
            self.operation = OperationKind.CREATE

        logger.info(
            "Selected entity %s (%d attributes, %d alternate keys%s)",
            logical_name,
            len(schema.attributes),
            len(keys),
            f", relationship {relationship.relation_name}" if relationship else "",
        )
        return schema

    def _require_schema(self) -> EntitySchema:
        if self.schema is None:
            raise ImportSetupError("No entity selected")
        return self.schema

    def set_operation(self, operation: OperationKind) -> None:
        self._require_schema()
        if (operation == OperationKind.ASSOCIATE) != (self.relationship is not None):
            raise ImportSetupError(
                f"{operation.value} is not valid for {self.entity}: "
                "Associate is used for, and only for, intersect entities"
            )
        self.operation = operation

    def select_alternate_key(self, name: Optional[str]) -> Optional[AlternateKey]:
        self._require_schema()
        if name is None:
            self.alternate_key = None
            return None
        for key in self.keys:
            if key.name == name:
                self.alternate_key = key
                return key
        raise ImportSetupError(f"Alternate key {name} not found for {self.entity}")

    def set_mappings(self, mappings: List[FieldMapping]) -> None:
        self.mappings = list(mappings)
        self.validated = False

    def is_alternate_key_field(self, attribute: str) -> bool:
        return any(attribute in key.key_attributes for key in self.keys)

    # Loading -----------------------------------------------------------------

    def peek_file(self, source: FileSource, file_type: str, delimiter: str = ",") -> List[FieldMapping]:
        """Read the first rows of a file and derive default mappings from its columns."""
        schema = self._require_schema()
        if file_type == "csv":
            _rows, columns = preview_csv(source, rows=PEEK_ROWS, delimiter=delimiter)
        elif file_type == "jsonl":
            first_page = next(iter_file_pages(source, "jsonl", PEEK_ROWS), Page())
            columns = json_columns(list(first_page))
        else:
            _rows, columns = _read_whole_file(source, file_type, delimiter)

        self.mappings = default_field_mappings(columns, schema, self.relationship)
        return self.mappings

    def load_file(
        self,
        source: FileSource,
        file_type: str,
        *,
        use_staging: bool = False,
        stream_file: bool = False,
        delimiter: str = ",",
    ) -> int:
        """
        Load an import file.

        Args:
            source: Path, raw bytes or binary stream
            file_type: csv, json, jsonl or xml
            use_staging: Parse on the worker thread into the staging store
            stream_file: Do not load rows at all; read straight from the file at run time
            delimiter: CSV field delimiter

        Returns:
            Number of rows loaded (0 when streaming; the total is unknown)

        Raises:
            ImportSetupError: Unsupported type/mode combination or no staging store
        """
        schema = self._require_schema()
        if file_type not in SUPPORTED_FILE_TYPES:
            raise ImportSetupError(f"Unsupported import file type: {file_type}")
        if (use_staging or stream_file) and file_type not in STREAMABLE_FILE_TYPES:
            raise ImportSetupError(f"{file_type} files cannot be streamed; load them into memory instead")
        if use_staging and self.staging is None:
            raise ImportSetupError("Staging store is not configured")

        self.counts = ImportCounts()
        self.progress = ImportProgress()
        self.errors = []
        self.validated = False
        self._rows = None
        self.release_staging()
        self._file_source = source
        self._file_type = file_type
        self._delimiter = delimiter
        self._stream_file = stream_file and not use_staging
        started = time.perf_counter()

        if use_staging:
            load = self._staging_load = self.staging.new_load()
            fields_processed = bool(self.mappings)

            def _stage(batch: ParseBatch) -> None:
                nonlocal fields_processed
                if not fields_processed and batch.rows:
                    self.mappings = default_field_mappings(batch.fields, schema, self.relationship)
                    fields_processed = True
                self._collect_errors(batch.errors)
                load.add_rows(batch.rows)

            parsed = StreamingParser(source, file_type, delimiter=delimiter).run(_stage)
            self.counts.new = load.count()
            logger.info(
                "Staged %d rows in %d batches (%.2fs)", parsed.steps, parsed.batches, time.perf_counter() - started
            )
        elif self._stream_file:
            if not self.mappings:
                self.peek_file(source, file_type, delimiter)
            logger.info("Import will stream %s file at run time", file_type)
        else:
            rows, columns = _read_whole_file(source, file_type, delimiter)
            self._rows = rows
            self.counts.new = len(rows)
            if not self.mappings:
                self.mappings = default_field_mappings(columns, schema, self.relationship)
            logger.info("Loaded %d rows into memory (%.2fs)", len(rows), time.perf_counter() - started)

        return self.counts.new

    def release_staging(self) -> None:
        """Drop the rows this session staged, if any."""
        if self._staging_load is not None:
            self._staging_load.clear()
            self._staging_load = None

    def get_data_reader(self) -> PagedSource:
        if self._staging_load is not None:
            return self._staging_load
        if self._stream_file:
            return StreamingFileReader(self._file_source, self._file_type, delimiter=self._delimiter)
        if self._rows is not None:
            return ArrayReader(self._rows)
        raise ImportSetupError("No data loaded")

    # Runs --------------------------------------------------------------------

    def _build_transformer(self) -> RecordTransformer:
        schema = self._require_schema()
        if not self.mappings:
            raise ImportSetupError("No field mappings configured")
        resolver = None
        if any(mapping.resolve for mapping in self.mappings):
            cache = self.resolve_cache if self.resolve_cache is not None else resolve_cache_for_run()
            resolver = LookupResolver(self.metadata, self.records, cache)
        try:
            return RecordTransformer(
                schema,
                self.operation,
                self.mappings,
                resolver=resolver,
                alternate_key=self.alternate_key,
                relationship=self.relationship,
                coercer=self.coercer,
            )
        except ValueError as exc:
            raise ImportSetupError(str(exc)) from exc

    def _collect_errors(self, errors: List[RowErrorDetail]) -> None:
        room = settings.row_error_sample_limit - len(self.errors)
        if room > 0:
            self.errors.extend(errors[:room])

    def _record_row_failure(self, exc: RowTransformError, record_number: int) -> None:
        self.counts.failed += 1
        logger.debug("Row %d failed: %s", record_number, exc)
        self._collect_errors([
            build_row_error(
                error_type=exc.error_type,
                message=str(exc),
                column=exc.column,
                value=exc.value,
                record_number=record_number,
            )
        ])

    def _report_progress(self) -> None:
        if self.on_progress is not None:
            self.on_progress(self.counts, self.progress)

    def prepare(self, page_size: Optional[int] = None) -> ImportRunResult:
        """Validate every loaded row, counting checked and failed rows."""
        transformer = self._build_transformer()
        reader = self.get_data_reader()
        self.validated = False
        self.counts.reset_run()
        self.errors = []
        self.progress = ImportProgress(current_index=0, total=reader.count())
        result = ImportRunResult(counts=self.counts, progress=self.progress, errors=self.errors)
        started = time.perf_counter()

        for page in reader.read_all(page_size or settings.prepare_page_size):
            result.pages += 1
            self._count_page_errors(page)
            for row in page:
                self.progress.current_index += 1
                try:
                    transformer.transform(row)
                    self.counts.checked += 1
                except RowTransformError as exc:
                    self._record_row_failure(exc, self.progress.current_index)
                if self.cancel_token.cancelled:
                    break
            self._report_progress()
            if self.cancel_token.cancelled:
                result.cancelled = True
                break

        self.validated = not result.cancelled
        result.timings["total"] = round(time.perf_counter() - started, 3)
        logger.info(
            "Prepared %s: %d checked, %d failed%s",
            self.entity,
            self.counts.checked,
            self.counts.failed,
            " (cancelled)" if result.cancelled else "",
        )
        return result

    def _count_page_errors(self, page: Page) -> None:
        if page.errors:
            self.counts.failed += len(page.errors)
            self._collect_errors(page.errors)

    def run_import(self, options: Optional[ImportOptions] = None, page_size: Optional[int] = None) -> ImportRunResult:
        """
        Transform and submit every loaded row.

        Per page the successfully transformed packages go to exactly one of:
        the operation queue (counted as enqueued), the batch executor, or
        sequential ``execute`` calls. A page whose hand-off fails as a whole is
        logged and skipped; the run continues with the next page.
        """
        options = options or ImportOptions()
        if options.operation_queue.use and self.staging is None:
            raise ImportSetupError("Operation queue needs the staging store")

        transformer = self._build_transformer()
        reader = self.get_data_reader()
        self.counts.reset_run()
        self.errors = []
        self.progress = ImportProgress(current_index=0, total=reader.count())
        result = ImportRunResult(counts=self.counts, progress=self.progress, errors=self.errors)
        timings = {"transform": 0.0, "execute": 0.0}
        started = time.perf_counter()
        consumed = 0

        for page in reader.read_all(page_size or settings.import_page_size):
            result.pages += 1
            self._count_page_errors(page)

            transform_started = time.perf_counter()
            requests: List[OperationRequest] = []
            for row in page:
                consumed += 1
                try:
                    requests.append(OperationRequest(kind=self.operation, package=transformer.transform(row)))
                    self.counts.checked += 1
                except RowTransformError as exc:
                    self._record_row_failure(exc, consumed)
                if self.cancel_token.cancelled:
                    break
            timings["transform"] += time.perf_counter() - transform_started

            if self.cancel_token.cancelled:
                result.cancelled = True
                break

            execute_started = time.perf_counter()
            try:
                if options.operation_queue.use:
                    self.counts.enqueued += self.staging.push_range(
                        [request.package for request in requests],
                        options.operation_queue.context,
                        self.operation.value,
                    )
                elif options.batch.use:
                    executor = BatchExecutor(
                        self.records,
                        batch_size=options.batch.batch_size,
                        parallel=options.batch.parallel,
                        cancel_token=self.cancel_token,
                    )
                    outcome = executor.run(requests)
                    self.counts.success += outcome.success
                    self.counts.failed += outcome.failed
                    if outcome.cancelled:
                        result.cancelled = True
                else:
                    self._execute_sequentially(requests, result)
            except Exception as exc:
                result.failed_pages += 1
                logger.error("Page %d could not be submitted: %s", result.pages, exc, exc_info=True)
            finally:
                timings["execute"] += time.perf_counter() - execute_started
                self.progress.current_index = consumed
                self._report_progress()

            if result.cancelled or self.cancel_token.cancelled:
                result.cancelled = True
                break

        timings["total"] = time.perf_counter() - started
        result.timings = {stage: round(seconds, 3) for stage, seconds in timings.items()}
        logger.info(
            "Import into %s finished: %d succeeded, %d failed, %d enqueued%s; timings=%s",
            self.entity,
            self.counts.success,
            self.counts.failed,
            self.counts.enqueued,
            " (cancelled)" if result.cancelled else "",
            result.timings,
        )
        return result

    def _execute_sequentially(self, requests: List[OperationRequest], result: ImportRunResult) -> None:
        for request in requests:
            try:
                self.records.execute(request)
                self.counts.success += 1
            except Exception as exc:
                self.counts.failed += 1
                logger.debug("Request for %s failed: %s", self.entity, exc)
            if self.cancel_token.cancelled:
                result.cancelled = True
                break
