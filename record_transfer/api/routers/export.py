"""
Export router: page remote records into a download, a local file or a spreadsheet.
"""
import logging

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import Response

from record_transfer.api.dependencies import get_metadata_service, get_record_service
from record_transfer.api.schemas.shared import (
    ExportRequest,
    ExportResponse,
    ExportTargetKind,
    JobStatus,
)
from record_transfer.domain.exports.exporter import export_data, fields_for_columns, fields_from_fetch_xml
from record_transfer.domain.exports.targets import DownloadTarget, FileSystemTarget, SpreadsheetTarget
from record_transfer.domain.imports.jobs import get_job_registry
from record_transfer.domain.metadata import MetadataLookupError, MetadataService
from record_transfer.domain.records import RecordService
from record_transfer.integrations.sheets import GoogleSheetsClient
from record_transfer.integrations.webapi import WebApiError

router = APIRouter(
    prefix="/api/export",
    tags=["export"]
)

logger = logging.getLogger(__name__)


def _build_target(request: ExportRequest):
    if request.target == ExportTargetKind.FILESYSTEM:
        return FileSystemTarget()
    if request.target == ExportTargetKind.SPREADSHEET:
        try:
            return SpreadsheetTarget(GoogleSheetsClient())
        except WebApiError as e:
            raise HTTPException(status_code=400, detail=str(e))
    return DownloadTarget(
        export_format=request.format,
        sheet_name=request.entity,
        zip_result=request.zip_result,
    )


@router.post("")
def export_endpoint(
    request: ExportRequest,
    metadata: MetadataService = Depends(get_metadata_service),
    records: RecordService = Depends(get_record_service),
):
    """
    Export every record of an entity.

    Parameters:
    - entity: Logical name of the entity to export
    - fields / fetch_xml / filter: Which columns and rows to export
    - target: File (download), FileSystem (server-side CSV) or Spreadsheet

    Returns:
    - The file itself for the File target, otherwise the export summary
    """
    try:
        schema = metadata.get_entity_schema(request.entity)
    except MetadataLookupError as e:
        raise HTTPException(status_code=404, detail=str(e))

    fields = None
    try:
        if request.fetch_xml:
            fields = fields_from_fetch_xml(request.fetch_xml, metadata)
        elif request.fields:
            fields = fields_for_columns(schema, request.fields)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    target = _build_target(request)
    registry = get_job_registry()
    job = registry.create_job("export", entity=request.entity)
    registry.update_job(job.id, status=JobStatus.RUNNING)

    try:
        result = export_data(
            records,
            metadata,
            request.entity,
            target=target,
            fields=fields,
            fetch_xml=request.fetch_xml,
            filter=request.filter,
            export_format=request.format,
            export_formatted_values=request.export_formatted_values,
            include_etag=request.include_etag,
            filename=request.filename,
            zip_result=request.zip_result,
            static_data=request.static_data,
            cancel_token=registry.token(job.id),
        )
    except (WebApiError, ValueError) as e:
        logger.error("Export of %s failed: %s", request.entity, e)
        registry.update_job(job.id, status=JobStatus.FAILED, error_message=str(e))
        raise HTTPException(status_code=502, detail=str(e))

    path = str(target.path) if isinstance(target, FileSystemTarget) else None
    registry.update_job(
        job.id,
        status=JobStatus.CANCELLED if result.cancelled else JobStatus.COMPLETED,
        result_metadata={
            "rows_exported": result.rows_exported,
            "filename": result.filename,
            "path": path,
            "url": result.url,
            "timings": result.timings,
        },
    )

    if isinstance(target, DownloadTarget) and result.payload is not None:
        return Response(
            content=result.payload,
            media_type=result.media_type,
            headers={
                "Content-Disposition": f'attachment; filename="{result.download_name}"',
                "X-Job-Id": job.id,
            },
        )

    return ExportResponse(
        success=not result.cancelled,
        filename=result.filename,
        rows_exported=result.rows_exported,
        cancelled=result.cancelled,
        path=path,
        url=result.url,
        timings=result.timings,
    )
