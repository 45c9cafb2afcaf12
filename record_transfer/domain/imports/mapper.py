import logging
import re
from typing import Any, Dict, List, Optional

from record_transfer.api.schemas.shared import LOOKUP_TYPES, FieldMapping, FieldMode, RowErrorDetail
from record_transfer.domain.metadata import EntitySchema, ManyToManyDescriptor

logger = logging.getLogger(__name__)

ETAG_COLUMN = "etag"
ETAG_PATTERN = re.compile(r'^W/".+"$')


def is_valid_etag(value: str) -> bool:
    """True for weak ETags such as ``W/"12345"``."""
    return bool(ETAG_PATTERN.match(value))


def build_row_error(
    *,
    error_type: str,
    message: str,
    column: Optional[str] = None,
    value: Optional[Any] = None,
    record_number: Optional[int] = None,
) -> RowErrorDetail:
    """Create a structured error payload for a failed row."""
    if value is not None and not isinstance(value, (int, float, str, bool)):
        value = str(value)
    return RowErrorDetail(
        type=error_type,
        message=message,
        column=column,
        value=value,
        record_number=record_number,
    )


def assign_target_attribute(
    mapping: FieldMapping,
    attribute: Optional[str],
    schema: EntitySchema,
    relationship: Optional[ManyToManyDescriptor] = None,
) -> FieldMapping:
    """
    Point a mapping at a destination attribute and re-derive what depends on it.

    The declared type comes from the attribute metadata. Lookup attributes get
    their possible target entities (and the target itself when there is only
    one); for many-to-many imports the target side is derived from the source
    column matching one of the intersect attributes.

    Returns:
        A new FieldMapping; the input is left untouched
    """
    meta = schema.attribute(attribute)
    update: Dict[str, Any] = {
        "to": attribute,
        "type": meta.type if meta else None,
        "resolve": False,
        "resolve_attribute": None,
        "target": None,
        "targets": [],
    }
    if meta is not None and update["type"] in LOOKUP_TYPES:
        update["targets"] = list(meta.targets)
        if len(meta.targets) == 1:
            update["target"] = meta.targets[0]
    elif relationship is not None:
        update["targets"] = [relationship.entity1, relationship.entity2]
        update["target"] = relationship.target_for_attribute(mapping.from_)
    return mapping.model_copy(update=update)


def default_field_mappings(
    columns: List[str],
    schema: EntitySchema,
    relationship: Optional[ManyToManyDescriptor] = None,
) -> List[FieldMapping]:
    """
    Build one mapping per source column.

    A column called ``etag`` becomes an ETag mapping; a column named like an
    attribute of the entity is mapped onto it; everything else starts as an
    unassigned Map the caller has to complete (or switch to Ignore).
    """
    mappings: List[FieldMapping] = []
    for column in columns:
        mapping = FieldMapping(mode=FieldMode.MAP, from_=column)
        if column == ETAG_COLUMN:
            mapping = assign_target_attribute(mapping.model_copy(update={"mode": FieldMode.ETAG}), ETAG_COLUMN, schema)
        elif schema.attribute(column) is not None:
            mapping = assign_target_attribute(mapping, column, schema, relationship)
        mappings.append(mapping)

    mapped = sum(1 for mapping in mappings if mapping.to)
    logger.info("Derived default mappings for %s: %d of %d columns matched", schema.logical_name, mapped, len(columns))
    return mappings
