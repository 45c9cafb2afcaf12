"""
Configuration data backup.

A backup schema names a set of entities (each with either a list of fields or
a FetchXML query) and an optional interval in hours. Running a schema pages
every entity into one JSON document ``[{"logical_name", "records"}, ...]``
written as ``<schema>.<timestamp>.json``.
"""
from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from pydantic import BaseModel, Field

from record_transfer.core.config import settings
from record_transfer.domain.exports.exporter import build_fetch_xml
from record_transfer.domain.metadata import EntitySchema
from record_transfer.domain.records import RecordService

logger = logging.getLogger(__name__)

TIMESTAMP_FORMAT = "%Y-%m-%dT%H-%M-%S"


class BackupEntity(BaseModel):
    logical_name: str
    fields: List[str] = Field(default_factory=list)
    fetch_xml: Optional[str] = None
    mode: str = "fetch"  # "fields" or "fetch"


class BackupSchema(BaseModel):
    name: str
    entities: List[BackupEntity] = Field(default_factory=list)
    exported_on: Optional[datetime] = None
    interval: Optional[int] = None  # hours


class BackupRunResult(BaseModel):
    schema_name: str
    path: str
    record_counts: Dict[str, int]
    skipped: List[str] = Field(default_factory=list)
    exported_on: datetime


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def exportable_fields(schema: EntitySchema) -> List[str]:
    """Attributes worth backing up: valid for both create and read, sorted."""
    return sorted(
        attribute.name
        for attribute in schema.attributes.values()
        if attribute.is_valid_for_create and attribute.is_valid_for_read
    )


def fetch_xml_for(entity: BackupEntity) -> Optional[str]:
    """The query for a backup entity; explicit fields take precedence over FetchXML."""
    if entity.fields:
        return build_fetch_xml(entity.logical_name, entity.fields)
    return entity.fetch_xml or None


def next_export(schema: BackupSchema) -> Optional[datetime]:
    if not schema.interval:
        return None
    last = _aware(schema.exported_on) if schema.exported_on else datetime.fromtimestamp(0, tz=timezone.utc)
    return last + timedelta(hours=schema.interval)


def due_schemas(schemas: Sequence[BackupSchema], now: Optional[datetime] = None) -> List[BackupSchema]:
    """Schemas with an interval that were never exported or whose interval has elapsed."""
    now = _aware(now) if now else _now()
    return [schema for schema in schemas if schema.interval and next_export(schema) < now]


def load_backup_schemas(path: Union[str, Path, None] = None) -> List[BackupSchema]:
    path = Path(path or settings.backup_schemas_path)
    if not path.exists():
        return []
    data = json.loads(path.read_text(encoding="utf-8"))
    return [BackupSchema.model_validate(item) for item in data]


def save_backup_schemas(schemas: Sequence[BackupSchema], path: Union[str, Path, None] = None) -> Path:
    path = Path(path or settings.backup_schemas_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(
        json.dumps([schema.model_dump(mode="json") for schema in schemas], indent=2),
        encoding="utf-8",
    )
    return path


def run_backup(
    schema: BackupSchema,
    records: RecordService,
    output_dir: Union[str, Path, None] = None,
    *,
    now: Optional[datetime] = None,
    page_size: Optional[int] = None,
) -> BackupRunResult:
    """
    Export every entity of a backup schema into one JSON document.

    Entities with neither fields nor FetchXML are skipped with a warning.
    On success ``schema.exported_on`` is set to ``now``.
    """
    now = _aware(now) if now else _now()
    output = Path(output_dir or settings.export_output_dir)
    output.mkdir(parents=True, exist_ok=True)

    document: List[Dict[str, Any]] = []
    counts: Dict[str, int] = {}
    skipped: List[str] = []

    for entity in schema.entities:
        fetch_xml = fetch_xml_for(entity)
        if fetch_xml is None:
            logger.warning("Neither fields nor FetchXML specified for %s - skipping", entity.logical_name)
            skipped.append(entity.logical_name)
            continue

        entity_records: List[Dict[str, Any]] = []
        for page in records.page_fetch_xml(fetch_xml, page_size=page_size or settings.export_page_size):
            entity_records.extend(page)
        logger.info("Backup %s: %d %s records", schema.name, len(entity_records), entity.logical_name)
        document.append({"logical_name": entity.logical_name, "records": entity_records})
        counts[entity.logical_name] = counts.get(entity.logical_name, 0) + len(entity_records)

    path = output / f"{schema.name}.{now.strftime(TIMESTAMP_FORMAT)}.json"
    path.write_text(json.dumps(document, indent=2, ensure_ascii=False, default=str), encoding="utf-8")
    schema.exported_on = now

    return BackupRunResult(
        schema_name=schema.name,
        path=str(path),
        record_counts=counts,
        skipped=skipped,
        exported_on=now,
    )


def run_due_backups(
    schemas: Sequence[BackupSchema],
    records: RecordService,
    output_dir: Union[str, Path, None] = None,
    *,
    now: Optional[datetime] = None,
) -> List[BackupRunResult]:
    """Run every due schema. A failing schema is logged and does not stop the others."""
    due = due_schemas(schemas, now)
    if not due:
        logger.info("No data backups due")
        return []

    logger.info("%d backup schemas are due for export", len(due))
    results = []
    for schema in due:
        try:
            results.append(run_backup(schema, records, output_dir, now=now))
        except Exception as exc:
            logger.error("Backup failed for schema %s: %s", schema.name, exc, exc_info=True)
    return results


def load_backup_documents(paths: Sequence[Union[str, Path]]) -> Tuple[List[Dict[str, Any]], List[str]]:
    """
    Read previously written backup files.

    Returns:
        Tuple of (entries from every readable file, paths that could not be read)
    """
    entries: List[Dict[str, Any]] = []
    failed: List[str] = []
    for path in paths:
        try:
            data = json.loads(Path(path).read_text(encoding="utf-8"))
            if not isinstance(data, list):
                raise ValueError("backup document must be a JSON array")
            entries.extend(data)
        except (OSError, ValueError) as exc:
            logger.error("Failed to process backup file %s: %s", path, exc)
            failed.append(str(path))
    return entries, failed
