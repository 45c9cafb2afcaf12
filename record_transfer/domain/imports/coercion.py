"""
Value coercion from raw textual import values to typed attribute values.

Parsers are keyed by the declared attribute type. Only string input is ever
coerced; anything else (JSON numbers, nulls, nested objects) yields ``None``.
"""

import logging
import re
import threading
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, Optional, Tuple

from record_transfer.api.schemas.shared import LookupReference
from record_transfer.domain.metadata import AttributeMetadata
from record_transfer.utils.date import parse_datetime_value

logger = logging.getLogger(__name__)


class ValueCoercionError(ValueError):
    """Raised when a raw value cannot be coerced to its declared attribute type."""


BOOLEAN_PATTERN = re.compile(r"^(true|1)$", re.IGNORECASE)
INTEGER_PATTERN = re.compile(r"^-?[0-9]+$")
MULTI_OPTION_PATTERN = re.compile(r"^\d+(,\d+)*$")
DECIMAL_PATTERN = re.compile(r"^[+-]?(\d+(\.\d*)?|\.\d+)([eE][+-]?\d+)?$")

HEXDIGIT = "[0-9a-fA-F]"
ENTITY_LOGICALNAME_PATTERN = "[a-z][a-z0-9_]{0,1022}[a-z0-9]"
GUID_PATTERN = f"{{?({HEXDIGIT}{{8}}-{HEXDIGIT}{{4}}-{HEXDIGIT}{{4}}-{HEXDIGIT}{{4}}-{HEXDIGIT}{{12}})}}?"
LOOKUP_PATTERN = re.compile(f"^({ENTITY_LOGICALNAME_PATTERN}):{GUID_PATTERN}$")


class OptionLabelCache:
    """Label -> option code dictionaries, built once per attribute and kept for the cache's lifetime."""

    def __init__(self) -> None:
        # id(meta) -> (meta, labels); holding meta keeps its id from being reused
        self._by_attribute: Dict[int, Tuple[AttributeMetadata, Dict[str, int]]] = {}
        self._lock = threading.Lock()

    def code_for(self, label: str, meta: AttributeMetadata) -> Optional[int]:
        with self._lock:
            entry = self._by_attribute.get(id(meta))
            if entry is None:
                entry = (meta, {option.label: option.value for option in meta.options})
                self._by_attribute[id(meta)] = entry
        return entry[1].get(label)

    def __len__(self) -> int:
        return len(self._by_attribute)


def _identity(value: str, meta: Optional[AttributeMetadata], labels: OptionLabelCache) -> Any:
    return value


def parse_integer(value: str, meta: Optional[AttributeMetadata] = None, labels: Optional[OptionLabelCache] = None) -> Optional[int]:
    text = value.strip()
    if text == "":
        return None
    if not INTEGER_PATTERN.match(text):
        raise ValueCoercionError(f"Cannot parse '{value}' as Integer")
    return int(text)


def parse_decimal(value: str, meta: Optional[AttributeMetadata] = None, labels: Optional[OptionLabelCache] = None) -> Optional[Decimal]:
    text = value.strip()
    if text == "":
        return None
    if not DECIMAL_PATTERN.match(text):
        raise ValueCoercionError(f"Cannot parse '{value}' as Decimal")
    try:
        return Decimal(text)
    except InvalidOperation as exc:
        raise ValueCoercionError(f"Cannot parse '{value}' as Decimal") from exc


def parse_float(value: str, meta: Optional[AttributeMetadata] = None, labels: Optional[OptionLabelCache] = None) -> Optional[float]:
    text = value.strip()
    if text == "":
        return None
    if not DECIMAL_PATTERN.match(text):
        raise ValueCoercionError(f"Cannot parse '{value}' as Float")
    return float(text)


def parse_boolean(value: str, meta: Optional[AttributeMetadata] = None, labels: Optional[OptionLabelCache] = None) -> bool:
    return bool(BOOLEAN_PATTERN.match(value.strip()))


def parse_datetime(value: str, meta: Optional[AttributeMetadata] = None, labels: Optional[OptionLabelCache] = None):
    if value.strip() == "":
        return None
    try:
        return parse_datetime_value(value, log_context=meta.name if meta else None)
    except ValueError as exc:
        raise ValueCoercionError(str(exc)) from exc


def parse_option(value: str, meta: Optional[AttributeMetadata], labels: OptionLabelCache) -> Optional[int]:
    """Parse a single-select option value given either its numeric code or its label."""
    text = value.strip()
    if text == "":
        return None
    if INTEGER_PATTERN.match(text):
        return int(text)
    if meta is None:
        raise ValueCoercionError(f"Cannot resolve option label '{value}' without attribute metadata")
    code = labels.code_for(text, meta)
    if code is None:
        raise ValueCoercionError(f"Unknown option label '{value}' for {meta.name}")
    return code


def parse_multi_option(value: str, meta: Optional[AttributeMetadata] = None, labels: Optional[OptionLabelCache] = None) -> Optional[str]:
    if value == "":
        return None
    if MULTI_OPTION_PATTERN.match(value):
        return value
    raise ValueCoercionError(f"Cannot parse '{value}' as MultiSelectPicklist value")


def parse_lookup(value: str, meta: Optional[AttributeMetadata] = None, labels: Optional[OptionLabelCache] = None) -> Optional[LookupReference]:
    """Parse a ``<entityName>:<guid>`` token; anything else yields ``None``."""
    match = LOOKUP_PATTERN.match(value.strip())
    if not match:
        return None
    logical_name, record_id = match.groups()
    return LookupReference(logical_name=logical_name, id=record_id.lower())


Parser = Callable[[str, Optional[AttributeMetadata], OptionLabelCache], Any]

PARSERS: Dict[str, Parser] = {
    "String": _identity,
    "Memo": _identity,
    "Uniqueidentifier": _identity,

    "Integer": parse_integer,
    "BigInt": parse_integer,
    "Decimal": parse_decimal,
    "Money": parse_decimal,
    "Float": parse_float,
    "Double": parse_float,

    "State": parse_option,
    "Status": parse_option,
    "Picklist": parse_option,

    "MultiSelectPicklist": parse_multi_option,

    "Customer": parse_lookup,
    "Lookup": parse_lookup,
    "Owner": parse_lookup,

    "Boolean": parse_boolean,
    "DateTime": parse_datetime,
}


class ValueCoercer:
    """Type-dispatching coercion with an owned option-label cache."""

    def __init__(self, labels: Optional[OptionLabelCache] = None):
        self.labels = labels or OptionLabelCache()

    def coerce(self, value: Any, attribute_type: Optional[str], meta: Optional[AttributeMetadata] = None) -> Any:
        """
        Coerce a raw value to the declared attribute type.

        Args:
            value: Raw value from the source row
            attribute_type: Declared type of the destination attribute
            meta: Attribute metadata (needed for option labels)

        Returns:
            The typed value, or None for non-string input

        Raises:
            ValueCoercionError: If the value is malformed or the type is unsupported
        """
        if not isinstance(value, str):
            return None

        parser = PARSERS.get(attribute_type or "")
        if parser is None:
            raise ValueCoercionError(f"Unsupported attribute type: {attribute_type}")
        return parser(value, meta, self.labels)


_process_coercer = ValueCoercer()


def get_process_coercer() -> ValueCoercer:
    """Return the coercer whose option-label cache lives for the whole process."""
    return _process_coercer


def coerce_value(value: Any, attribute_type: Optional[str], meta: Optional[AttributeMetadata] = None) -> Any:
    return _process_coercer.coerce(value, attribute_type, meta)
