"""
Turns raw import rows into operation packages.

``RecordTransformer.transform`` is the one transformation algorithm used both
when validating a file (prepare) and when importing it. Anything that goes
wrong for a row is raised as ``RowTransformError`` so the caller can count the
row as failed and carry on with the next one.
"""

import logging
import uuid
from typing import Any, Callable, Dict, List, Optional, Union

from record_transfer.api.schemas.shared import (
    AssociatePackage,
    EntityPackage,
    FieldMapping,
    FieldMode,
    LookupReference,
    OperationKind,
    OperationPackage,
    RecordRef,
)
from record_transfer.domain.imports.coercion import ValueCoercer, ValueCoercionError, get_process_coercer
from record_transfer.domain.imports.mapper import is_valid_etag
from record_transfer.domain.imports.resolver import LookupResolutionError, LookupResolver
from record_transfer.domain.metadata import AlternateKey, EntitySchema, ManyToManyDescriptor

logger = logging.getLogger(__name__)


class RowTransformError(Exception):
    """A single row could not be turned into an operation package."""

    def __init__(self, message: str, *, column: Optional[str] = None, value: Any = None, error_type: str = "transform_error"):
        super().__init__(message)
        self.column = column
        self.value = value
        self.error_type = error_type


def _new_id() -> str:
    return str(uuid.uuid4())


class RecordTransformer:
    """
    Applies a mapping list to raw rows for one entity and one operation kind.

    Args:
        schema: Metadata of the target entity
        operation: Request kind the packages are built for
        mappings: Field mappings, applied in the given order
        resolver: Resolves natural-key lookup values (needed when any mapping sets ``resolve``)
        alternate_key: Selected alternate key, if records are matched by key
        relationship: Many-to-many descriptor, required for Associate
        coercer: Value coercer (defaults to the process-wide one)
        id_factory: Generates ids for new records
    """

    def __init__(
        self,
        schema: EntitySchema,
        operation: OperationKind,
        mappings: List[FieldMapping],
        resolver: Optional[LookupResolver] = None,
        alternate_key: Optional[AlternateKey] = None,
        relationship: Optional[ManyToManyDescriptor] = None,
        coercer: Optional[ValueCoercer] = None,
        id_factory: Callable[[], str] = _new_id,
    ):
        if operation == OperationKind.ASSOCIATE and relationship is None:
            raise ValueError("Associate imports need a many-to-many relationship descriptor")
        if resolver is None and any(mapping.resolve for mapping in mappings):
            raise ValueError("Mappings with resolve=True need a LookupResolver")

        self.schema = schema
        self.operation = operation
        self.mappings = list(mappings)
        self.resolver = resolver
        self.alternate_key = alternate_key
        self.relationship = relationship
        self.coercer = coercer or get_process_coercer()
        self.id_factory = id_factory
        self._key_attributes = set(alternate_key.key_attributes) if alternate_key else set()

    def transform(self, row: Dict[str, Any]) -> OperationPackage:
        try:
            if self.operation == OperationKind.ASSOCIATE:
                return self._transform_associate(row)
            return self._transform_entity(row)
        except RowTransformError:
            raise
        except Exception as exc:
            raise RowTransformError(f"{type(exc).__name__}: {exc}") from exc

    # Create / Update / Upsert ------------------------------------------------

    def _initial_id(self) -> Union[str, Dict[str, Any], None]:
        if self.operation == OperationKind.UPDATE:
            return None
        if self.alternate_key is not None:
            return {}
        return self.id_factory()

    def _transform_entity(self, row: Dict[str, Any]) -> EntityPackage:
        record_id = self._initial_id()
        etag: Optional[str] = None
        fields: Dict[str, Any] = {}

        for mapping in self.mappings:
            source = mapping.from_
            raw = row.get(source) if source is not None else None

            if mapping.mode == FieldMode.IGNORE:
                continue

            if mapping.mode == FieldMode.ETAG:
                if raw is None or raw == "":
                    continue
                if not isinstance(raw, str) or not is_valid_etag(raw):
                    raise RowTransformError(f"Invalid ETag: {raw}", column=source, value=raw, error_type="invalid_etag")
                etag = raw
                continue

            if mapping.mode == FieldMode.STATIC:
                fields[mapping.to] = mapping.value
                continue

            if mapping.mode != FieldMode.MAP:
                raise RowTransformError(f"Invalid/Unknown field mode: {mapping.mode}", column=source)

            target = mapping.to
            if not target:
                raise RowTransformError(f"No destination attribute selected for column '{source}'", column=source)

            try:
                if target == self.schema.primary_id_attribute:
                    record_id = raw or record_id
                    if self.operation == OperationKind.CREATE:
                        fields[target] = record_id
                elif target in self._key_attributes:
                    value = self._coerce(mapping, raw)
                    if not isinstance(record_id, dict):
                        record_id = {}
                    record_id[target] = value
                    fields[target] = value
                elif mapping.is_lookup:
                    fields[target] = self._lookup_value(mapping, raw)
                else:
                    fields[target] = self._coerce(mapping, raw)
            except ValueCoercionError as exc:
                raise RowTransformError(str(exc), column=source, value=raw, error_type="invalid_value") from exc
            except LookupResolutionError as exc:
                raise RowTransformError(str(exc), column=source, value=raw, error_type="lookup_failed") from exc
            except Exception as exc:
                # Remote lookup queries can fail in transport; the row fails, the run goes on
                logger.warning("Column %s of a row could not be transformed: %s", source, exc)
                raise RowTransformError(
                    f"{type(exc).__name__}: {exc}",
                    column=source,
                    value=raw,
                    error_type="lookup_failed" if mapping.is_lookup else "transform_error",
                ) from exc

        if self.operation == OperationKind.UPDATE and not record_id:
            raise RowTransformError("Update requires a record id or alternate key values", error_type="missing_id")
        if isinstance(record_id, dict) and not record_id:
            raise RowTransformError(
                f"No values mapped for alternate key '{self.alternate_key.name}'", error_type="missing_id"
            )

        return EntityPackage(logical_name=self.schema.logical_name, id=record_id, etag=etag, fields=fields)

    def _coerce(self, mapping: FieldMapping, raw: Any) -> Any:
        meta = self.schema.attribute(mapping.to)
        attribute_type = mapping.type or (meta.type if meta else None)
        return self.coercer.coerce(raw, attribute_type, meta)

    def _lookup_value(self, mapping: FieldMapping, raw: Any) -> Optional[LookupReference]:
        if not isinstance(raw, str) or raw == "":
            return None
        if mapping.resolve:
            record_id = self.resolver.resolve(mapping.target, mapping.resolve_attribute, raw)
            return LookupReference(logical_name=mapping.target, id=record_id)
        if mapping.target:
            return LookupReference(logical_name=mapping.target, id=raw)

        # No fixed target: the value has to name its entity, "<entity>:<guid>"
        reference = self.coercer.coerce(raw, mapping.type, self.schema.attribute(mapping.to))
        if reference is None:
            raise ValueCoercionError(f"Cannot parse '{raw}' as an <entity>:<id> lookup value")
        return reference

    # Associate -----------------------------------------------------------------

    def _side_for(self, mapping: FieldMapping) -> Optional[str]:
        relationship = self.relationship
        if relationship.entity1 == relationship.entity2:
            # Self-referencing relationship: the intersect attribute tells the sides apart
            attribute = mapping.to or mapping.from_
            if attribute == relationship.entity1_intersect_attribute:
                return "a"
            if attribute == relationship.entity2_intersect_attribute:
                return "b"
            return None
        if mapping.target == relationship.entity1:
            return "a"
        if mapping.target == relationship.entity2:
            return "b"
        return None

    def _transform_associate(self, row: Dict[str, Any]) -> AssociatePackage:
        relationship = self.relationship
        ids: Dict[str, Optional[str]] = {"a": None, "b": None}

        for mapping in self.mappings:
            if mapping.mode == FieldMode.IGNORE:
                continue
            if mapping.mode != FieldMode.MAP:
                raise RowTransformError(
                    f"Unsupported field mode {mapping.mode.value} for AssociateRequest",
                    column=mapping.from_,
                    error_type="unsupported_mode",
                )
            side = self._side_for(mapping)
            if side is None:
                raise RowTransformError(
                    f"Cannot map {mapping.from_} to {mapping.to} in an AssociateRequest",
                    column=mapping.from_,
                    error_type="unsupported_mode",
                )
            value = row.get(mapping.from_)
            ids[side] = str(value) if value not in (None, "") else None

        if not ids["a"] or not ids["b"]:
            raise RowTransformError("AssociateRequest requires ids for both related records", error_type="missing_id")

        return AssociatePackage(
            relation_name=relationship.relation_name,
            side_a=RecordRef(logical_name=relationship.entity1, id=ids["a"]),
            side_b=RecordRef(logical_name=relationship.entity2, id=ids["b"]),
        )
