"""
Import endpoints: preview an upload and start background import jobs.
"""
import json
import logging
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, File, Form, HTTPException, UploadFile
from pydantic import ValidationError

from record_transfer.api.dependencies import (
    detect_file_type,
    get_metadata_service,
    get_record_service,
    get_staging_store,
)
from record_transfer.api.schemas.shared import (
    ImportPreviewResponse,
    ImportRequest,
    JobStatus,
    TransferJobResponse,
)
from record_transfer.domain.imports.jobs import get_job_registry
from record_transfer.domain.imports.orchestrator import DataImport, ImportSetupError, staging_recommended
from record_transfer.domain.imports.staging import StagingStore
from record_transfer.domain.imports.streaming import StreamingParserError
from record_transfer.domain.metadata import MetadataService
from record_transfer.domain.records import RecordService

router = APIRouter(prefix="/api/imports", tags=["imports"])

logger = logging.getLogger(__name__)


@router.post("/preview", response_model=ImportPreviewResponse)
async def preview_import_endpoint(
    file: UploadFile = File(...),
    entity: str = Form(...),
    file_type: Optional[str] = Form(None),
    delimiter: str = Form(","),
    metadata: MetadataService = Depends(get_metadata_service),
    records: RecordService = Depends(get_record_service),
):
    """
    Read the first rows of an upload and propose field mappings.

    Parameters:
    - file: CSV, JSON, JSONL or XML file
    - entity: Logical name of the target entity
    - file_type: Overrides detection from the file extension

    Returns:
    - Source columns and one default mapping per column
    - The operation the import will default to
    - Whether the file is large enough to stage
    """
    file_type = (file_type or detect_file_type(file.filename)).lower()
    content = await file.read()

    session = DataImport(metadata, records)
    try:
        session.select_entity(entity)
    except ImportSetupError as e:
        raise HTTPException(status_code=404, detail=str(e))
    try:
        mappings = session.peek_file(content, file_type, delimiter=delimiter)
    except (ImportSetupError, ValueError) as e:
        logger.warning("Preview of %s failed: %s", file.filename, e)
        raise HTTPException(status_code=400, detail=str(e))

    return ImportPreviewResponse(
        success=True,
        entity=entity,
        operation=session.operation,
        columns=[mapping.from_ for mapping in mappings],
        mappings=mappings,
        alternate_keys=[key.name for key in session.keys],
        staging_recommended=staging_recommended(len(content)),
    )


def run_import_job(
    job_id: str,
    content: bytes,
    request: ImportRequest,
    metadata: MetadataService,
    records: RecordService,
    staging: Optional[StagingStore],
) -> None:
    """Run one import job to completion, mirroring its progress into the job registry."""
    registry = get_job_registry()
    job = registry.get_job(job_id)
    if job is None or job.status != JobStatus.QUEUED:
        logger.info("Import job %s is no longer queued; not starting", job_id)
        return

    registry.update_job(job_id, status=JobStatus.RUNNING)
    session = DataImport(
        metadata,
        records,
        staging=staging,
        cancel_token=registry.token(job_id),
        on_progress=lambda counts, progress: registry.update_job(job_id, counts=counts, progress=progress),
    )
    options = request.options
    try:
        session.select_entity(request.entity)
        if request.operation is not None:
            session.set_operation(request.operation)
        session.select_alternate_key(request.alternate_key)
        if request.mappings:
            session.set_mappings(request.mappings)
        session.load_file(
            content,
            request.file_type,
            use_staging=options.use_staging,
            stream_file=options.stream_file,
            delimiter=request.delimiter,
        )
        result = session.run_import(options)
    except (ImportSetupError, StreamingParserError, ValueError) as e:
        logger.warning("Import job %s failed: %s", job_id, e)
        registry.update_job(job_id, status=JobStatus.FAILED, error_message=str(e), errors=session.errors)
        return
    except Exception as e:
        logger.exception("Import job %s crashed: %s", job_id, e)
        registry.update_job(job_id, status=JobStatus.FAILED, error_message=str(e), errors=session.errors)
        return
    finally:
        session.release_staging()

    registry.update_job(
        job_id,
        status=JobStatus.CANCELLED if result.cancelled else JobStatus.COMPLETED,
        counts=result.counts,
        progress=result.progress,
        errors=result.errors,
        result_metadata=result.to_dict(),
    )


@router.post("", response_model=TransferJobResponse, status_code=202)
async def start_import_endpoint(
    background_tasks: BackgroundTasks,
    file: UploadFile = File(...),
    request_json: str = Form(...),
    metadata: MetadataService = Depends(get_metadata_service),
    records: RecordService = Depends(get_record_service),
    staging: StagingStore = Depends(get_staging_store),
):
    """
    Queue an import of an uploaded file.

    Parameters:
    - file: The file to import
    - request_json: JSON ``ImportRequest`` (entity, operation, mappings, options)

    Returns:
    - The queued job; poll ``/api/jobs/{id}`` for progress
    """
    try:
        request = ImportRequest(**json.loads(request_json))
    except (ValueError, ValidationError) as e:
        raise HTTPException(status_code=422, detail=str(e))

    content = await file.read()

    job = get_job_registry().create_job("import", entity=request.entity)
    logger.info("Queued import job %s for %s (%d bytes)", job.id, request.entity, len(content))
    background_tasks.add_task(run_import_job, job.id, content, request, metadata, records, staging)
    return TransferJobResponse(success=True, job=job)
