"""
Read-only entity/attribute metadata consumed by the import and export pipelines.

The schema service itself is an external collaborator: anything implementing
``MetadataService`` can back an import. ``StaticMetadataService`` serves
metadata from memory (or a JSON document) and is what tests and offline
runs use; the HTTP implementation lives in ``record_transfer.integrations.webapi``.
"""
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Dict, List, Optional, Protocol, Union

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class MetadataLookupError(Exception):
    """Raised when entity, key or relationship metadata cannot be loaded."""


class OptionMetadata(BaseModel):
    label: str
    value: int


class AttributeMetadata(BaseModel):
    name: str
    type: str
    display_name: Optional[str] = None
    targets: List[str] = Field(default_factory=list)
    options: List[OptionMetadata] = Field(default_factory=list)
    is_valid_for_create: bool = True
    is_valid_for_read: bool = True


class EntitySchema(BaseModel):
    logical_name: str
    primary_id_attribute: str
    primary_name_attribute: Optional[str] = None
    entity_set_name: Optional[str] = None
    attributes: Dict[str, AttributeMetadata] = Field(default_factory=dict)
    is_intersect: bool = False

    def attribute(self, name: Optional[str]) -> Optional[AttributeMetadata]:
        if not name:
            return None
        return self.attributes.get(name)

    @property
    def collection_name(self) -> str:
        """Name of the remote collection records of this entity live in."""
        return self.entity_set_name or f"{self.logical_name}s"


class AlternateKey(BaseModel):
    name: str
    key_attributes: List[str]


class ManyToManyDescriptor(BaseModel):
    relation_name: str
    entity1: str
    entity2: str
    entity1_intersect_attribute: str
    entity2_intersect_attribute: str

    def target_for_attribute(self, attribute: Optional[str]) -> Optional[str]:
        """Return the related entity an intersect attribute points at."""
        return {
            self.entity1_intersect_attribute: self.entity1,
            self.entity2_intersect_attribute: self.entity2,
        }.get(attribute or "")


class MetadataService(Protocol):
    """Schema lookups the pipelines depend on."""

    def get_entity_schema(self, logical_name: str) -> EntitySchema:
        ...

    def get_alternate_keys(self, logical_name: str) -> List[AlternateKey]:
        ...

    def get_many_to_many_descriptor(self, intersect_entity: str) -> ManyToManyDescriptor:
        ...


class StaticMetadataService:
    """In-memory metadata service.

    Example:
        metadata = StaticMetadataService(
            schemas=[account_schema],
            alternate_keys={"account": [AlternateKey(name="accountnumber_key", key_attributes=["accountnumber"])]},
        )
    """

    def __init__(
        self,
        schemas: Optional[List[EntitySchema]] = None,
        alternate_keys: Optional[Dict[str, List[AlternateKey]]] = None,
        relationships: Optional[List[ManyToManyDescriptor]] = None,
        intersect_entities: Optional[Dict[str, str]] = None,
    ):
        """
        Args:
            schemas: Entity schemas keyed by their logical name
            alternate_keys: Alternate keys per entity logical name
            relationships: Many-to-many relationship descriptors
            intersect_entities: Intersect entity name -> relation name
        """
        self._schemas = {schema.logical_name: schema for schema in schemas or []}
        self._keys = dict(alternate_keys or {})
        self._relationships = {rel.relation_name: rel for rel in relationships or []}
        self._intersects = dict(intersect_entities or {})

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "StaticMetadataService":
        """Load metadata from a JSON document with ``entities``, ``keys`` and ``relationships``."""
        document = json.loads(Path(path).read_text(encoding="utf-8"))
        schemas = [EntitySchema.model_validate(item) for item in document.get("entities", [])]
        keys = {
            name: [AlternateKey.model_validate(key) for key in entity_keys]
            for name, entity_keys in (document.get("keys") or {}).items()
        }
        relationships = []
        intersects = {}
        for item in document.get("relationships", []):
            descriptor = ManyToManyDescriptor.model_validate(item)
            relationships.append(descriptor)
            if item.get("intersect_entity"):
                intersects[item["intersect_entity"]] = descriptor.relation_name
        logger.info(
            "Loaded static metadata from %s: %d entities, %d relationships",
            path,
            len(schemas),
            len(relationships),
        )
        return cls(schemas, keys, relationships, intersects)

    def get_entity_schema(self, logical_name: str) -> EntitySchema:
        schema = self._schemas.get(logical_name)
        if schema is None:
            raise MetadataLookupError(f"Entity metadata not found for {logical_name}")
        return schema

    def get_alternate_keys(self, logical_name: str) -> List[AlternateKey]:
        return list(self._keys.get(logical_name, []))

    def get_many_to_many_descriptor(self, intersect_entity: str) -> ManyToManyDescriptor:
        relation_name = self._intersects.get(intersect_entity)
        if relation_name is None:
            raise MetadataLookupError(f"ManyToManyRelationshipMetadata not found for {intersect_entity}")
        return self._relationships[relation_name]
