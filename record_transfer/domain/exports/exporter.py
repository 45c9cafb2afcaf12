"""
Paged export of remote records into an export target.

Rows come from the record service one page at a time (OData query or
FetchXML), are projected onto the export columns as text and handed to an
``ExportTarget``. Without an explicit target the rows are aggregated in memory
and serialized into a download payload.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from lxml import etree
from pydantic import BaseModel

from record_transfer.api.schemas.shared import LOOKUP_TYPES, ExportFormat
from record_transfer.core.config import settings
from record_transfer.domain.exports.targets import DownloadTarget, ExportTarget
from record_transfer.domain.imports.executor import CancellationToken
from record_transfer.domain.metadata import EntitySchema, MetadataLookupError, MetadataService
from record_transfer.domain.records import (
    ETAG_ANNOTATION,
    FORMATTED_VALUE_SUFFIX,
    RecordService,
    lookup_value_key,
)
from record_transfer.utils.date import format_datetime, parse_datetime_value

logger = logging.getLogger(__name__)

ETAG_COLUMN = "etag"
EXCLUDED_ATTRIBUTE_TYPES = ("Virtual",)


class ExportField(BaseModel):
    """One exported column: an attribute of the root entity or of a linked entity."""
    name: str
    type: str = "Unknown"
    alias: Optional[str] = None
    entity: Optional[str] = None
    display_name: Optional[str] = None

    @property
    def column(self) -> str:
        return self.alias or self.name


# Field selection ---------------------------------------------------------------

def default_export_columns(schema: EntitySchema) -> List[str]:
    """Every exportable attribute name, sorted."""
    return sorted(
        attribute.name
        for attribute in schema.attributes.values()
        if attribute.type not in EXCLUDED_ATTRIBUTE_TYPES
    )


def _field_for(schema: EntitySchema, name: str) -> ExportField:
    attribute = schema.attribute(name)
    return ExportField(
        name=name,
        type=attribute.type if attribute else "Unknown",
        entity=schema.logical_name,
        display_name=attribute.display_name if attribute else None,
    )


def default_export_fields(schema: EntitySchema) -> List[ExportField]:
    """The fields an export starts with: primary id and primary name."""
    names = [schema.primary_id_attribute, schema.primary_name_attribute]
    return [_field_for(schema, name) for name in names if name and schema.attribute(name)]


def fields_for_columns(schema: EntitySchema, columns: List[str]) -> List[ExportField]:
    return [_field_for(schema, name) for name in columns]


def build_select(fields: List[ExportField]) -> str:
    """OData ``$select`` for the fields; lookups are selected through their ``_x_value`` column."""
    return ",".join(
        lookup_value_key(export_field.name) if export_field.type in LOOKUP_TYPES else export_field.name
        for export_field in fields
    )


def fetch_xml_entity(fetch_xml: str) -> str:
    """Logical name of the root entity of a FetchXML query."""
    root = etree.fromstring(fetch_xml.encode("utf-8"))
    entity = root.find("entity")
    if entity is None or not entity.get("name"):
        raise ValueError("FetchXML has no <entity name=...> element")
    return entity.get("name")


def fields_from_fetch_xml(fetch_xml: str, metadata: MetadataService) -> List[ExportField]:
    """
    Derive export fields from the ``attribute`` elements of a FetchXML query.

    Attributes of the root entity come first, then those of linked entities.

    Raises:
        ValueError: If the query is not well-formed or names an unknown attribute
    """
    try:
        root = etree.fromstring(fetch_xml.encode("utf-8"))
    except etree.XMLSyntaxError as exc:
        raise ValueError(f"Invalid FetchXML: {exc}") from exc

    entity_name = fetch_xml_entity(fetch_xml)
    schemas: Dict[str, EntitySchema] = {}

    def _schema(name: str) -> EntitySchema:
        if name not in schemas:
            try:
                schemas[name] = metadata.get_entity_schema(name)
            except MetadataLookupError as exc:
                raise ValueError(str(exc)) from exc
        return schemas[name]

    nodes = [(entity_name, node) for node in root.findall("entity/attribute")]
    nodes += [(node.getparent().get("name"), node) for node in root.iterfind(".//link-entity/attribute")]

    fields = []
    for owner, node in nodes:
        name = node.get("name")
        attribute = _schema(owner).attribute(name)
        if attribute is None:
            raise ValueError(f"Unknown attribute {owner}.{name} in FetchXML")
        fields.append(
            ExportField(
                name=name,
                alias=node.get("alias"),
                entity=owner,
                type=attribute.type,
                display_name=attribute.display_name,
            )
        )
    return fields


def fields_from_layout_xml(layout_xml: str, schema: EntitySchema) -> List[ExportField]:
    """
    Derive export fields from a view's layout XML.

    Aliased cells (columns of linked entities) and unknown attributes are
    skipped; the primary id is added in front when the layout lacks it.
    """
    root = etree.fromstring(layout_xml.encode("utf-8"))
    names = [
        cell.get("name")
        for cell in root.iter("cell")
        if not cell.get("alias") and schema.attribute(cell.get("name"))
    ]
    if schema.primary_id_attribute not in names:
        names.insert(0, schema.primary_id_attribute)
    return [_field_for(schema, name) for name in names]


def build_fetch_xml(entity: str, attributes: List[str]) -> str:
    """A plain FetchXML query selecting ``attributes`` of every record of ``entity``."""
    fetch = etree.Element("fetch", {"distinct": "false", "no-lock": "true"})
    entity_node = etree.SubElement(fetch, "entity", name=entity)
    for attribute in attributes:
        etree.SubElement(entity_node, "attribute", name=attribute)
    return etree.tostring(fetch, encoding="unicode")


# Projection --------------------------------------------------------------------

def _source_key(export_field: ExportField) -> str:
    if export_field.alias:
        return export_field.alias
    if export_field.type in LOOKUP_TYPES:
        return lookup_value_key(export_field.name)
    return export_field.name


def text_value(record: Dict[str, Any], export_field: ExportField, export_formatted_values: bool = False) -> str:
    """
    Render one field of a retrieved record as export text.

    Missing values become "". Formatted values win when requested; otherwise
    date-times are ISO 8601 and lookups show the related record's id.
    """
    key = _source_key(export_field)
    value = record.get(key)
    if value is None:
        return ""

    formatted = record.get(f"{key}{FORMATTED_VALUE_SUFFIX}")
    if export_formatted_values and formatted:
        return str(formatted)

    if export_field.type == "DateTime":
        if isinstance(value, datetime):
            return format_datetime(value)
        try:
            return format_datetime(parse_datetime_value(str(value), log_context=export_field.name))
        except ValueError:
            return str(value)
    if export_field.type in LOOKUP_TYPES:
        return str(value)
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def project_record(
    record: Dict[str, Any],
    fields: List[ExportField],
    *,
    include_etag: bool = True,
    export_formatted_values: bool = False,
    static_data: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    row = {export_field.column: text_value(record, export_field, export_formatted_values) for export_field in fields}
    if include_etag:
        row[ETAG_COLUMN] = record.get(ETAG_ANNOTATION)
    if static_data:
        row.update(static_data)
    return row


# Export ------------------------------------------------------------------------

@dataclass
class ExportResult:
    filename: str
    rows_exported: int = 0
    cancelled: bool = False
    url: Optional[str] = None
    payload: Optional[bytes] = None
    download_name: Optional[str] = None
    media_type: Optional[str] = None
    data_length: int = -1
    timings: Dict[str, float] = field(default_factory=dict)


PageTick = Callable[[int, int], None]


def default_export_filename(logical_name: str, started_at: Optional[datetime] = None) -> str:
    started_at = started_at or datetime.now()
    return f"DataExport {logical_name} {started_at.strftime('%Y%m%d_%H%M')}"


def export_data(
    records: RecordService,
    metadata: MetadataService,
    logical_name: str,
    *,
    target: Optional[ExportTarget] = None,
    fields: Optional[List[ExportField]] = None,
    fetch_xml: Optional[str] = None,
    filter: Optional[str] = None,
    export_format: ExportFormat = ExportFormat.CSV,
    export_formatted_values: bool = False,
    include_etag: bool = True,
    filename: Optional[str] = None,
    zip_result: Optional[bool] = None,
    static_data: Optional[Dict[str, Any]] = None,
    json_indent: Optional[int] = None,
    page_size: Optional[int] = None,
    page_tick: Optional[PageTick] = None,
    cancel_token: Optional[CancellationToken] = None,
) -> ExportResult:
    """
    Export every record of an entity (or of a FetchXML query) into a target.

    Args:
        records: Record service providing the pages
        metadata: Schema service (for default fields and attribute types)
        logical_name: Entity to export
        target: Sink for the rows; defaults to an in-memory DownloadTarget
        fields: Columns to export; all non-virtual attributes when omitted
        fetch_xml: Query to page through instead of an OData query
        filter: OData filter; defaults to "<primary id> ne null"
        export_format: Format for the DownloadTarget
        page_tick: Called with (rows exported so far, rows in this page)
        cancel_token: Polled after every page

    Returns:
        ExportResult; for a DownloadTarget it carries the serialized payload
    """
    cancel_token = cancel_token or CancellationToken()
    timings: Dict[str, float] = {}
    started = time.perf_counter()
    filename = filename or default_export_filename(logical_name)

    schema = metadata.get_entity_schema(logical_name)
    if fields is None:
        fields = fields_for_columns(schema, default_export_columns(schema))

    if target is None:
        target = DownloadTarget(
            export_format=export_format,
            sheet_name=logical_name,
            zip_result=zip_result,
            json_indent=json_indent,
        )

    page_size = page_size or settings.export_page_size
    if fetch_xml:
        provider = records.page_fetch_xml(fetch_xml, page_size=page_size)
    else:
        params = {
            "$select": build_select(fields),
            "$filter": filter or f"{schema.primary_id_attribute} ne null",
        }
        provider = records.page_all(logical_name, params, page_size=page_size)

    columns = [export_field.column for export_field in fields]
    if include_etag:
        columns = [ETAG_COLUMN] + columns
    if static_data:
        columns += [key for key in static_data if key not in columns]

    result = ExportResult(filename=filename)
    target.init(filename)
    if target.url:
        result.url = target.url
        logger.info("Export target available at %s", target.url)
    target.header(columns)

    load_started = time.perf_counter()
    for page in provider:
        rows = [
            project_record(
                record,
                fields,
                include_etag=include_etag,
                export_formatted_values=export_formatted_values,
                static_data=static_data,
            )
            for record in page
        ]
        target.add_range(rows)
        result.rows_exported += len(rows)
        if page_tick is not None:
            page_tick(result.rows_exported, len(rows))
        if cancel_token.cancelled:
            result.cancelled = True
            break
    timings["load_data"] = time.perf_counter() - load_started

    aggregating = isinstance(target, DownloadTarget)
    if result.cancelled:
        logger.info("Export of %s cancelled after %d rows", logical_name, result.rows_exported)
    if result.cancelled and aggregating:
        # Nothing is serialized for a cancelled download
        timings["export_data"] = time.perf_counter() - started
        result.timings = {stage: round(seconds, 3) for stage, seconds in timings.items()}
        return result

    finalize_started = time.perf_counter()
    target.finalize()
    timings["finalize"] = time.perf_counter() - finalize_started

    if aggregating and not result.cancelled:
        result.payload = target.payload
        result.download_name = target.download_name
        result.media_type = target.media_type
        result.data_length = target.data_length

    timings["export_data"] = time.perf_counter() - started
    result.timings = {stage: round(seconds, 3) for stage, seconds in timings.items()}
    logger.info("Exported %d %s rows; timings=%s", result.rows_exported, logical_name, result.timings)
    return result
