"""OData Web API client for the remote record store.

Low-level HTTP client plus the record and metadata services the import and
export pipelines talk to. Handles bearer auth headers, retries with
exponential backoff, server-driven paging, FetchXML paging and multipart
``$batch`` requests.
"""

import json
import logging
import threading
import time
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple
from urllib.parse import quote, unquote

import requests
from lxml import etree

from record_transfer.api.schemas.shared import (
    AssociatePackage,
    EntityPackage,
    LookupReference,
    OperationKind,
)
from record_transfer.core.config import settings
from record_transfer.domain.metadata import (
    AlternateKey,
    AttributeMetadata,
    EntitySchema,
    ManyToManyDescriptor,
    MetadataLookupError,
    MetadataService,
    OptionMetadata,
)
from record_transfer.domain.records import OperationRequest, OperationResult
from record_transfer.utils.serialization import make_json_safe

logger = logging.getLogger(__name__)

MORE_RECORDS_ANNOTATION = "@Microsoft.Dynamics.CRM.morerecords"
PAGING_COOKIE_ANNOTATION = "@Microsoft.Dynamics.CRM.fetchxmlpagingcookie"
NEXT_LINK_ANNOTATION = "@odata.nextLink"


class WebApiError(Exception):
    """Raised when a Web API request fails for good."""

    def __init__(self, message: str, status_code: int = 0, response_body: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.response_body = response_body


@dataclass
class RetryConfig:
    max_retries: int = 3
    base_delay: float = 1.0  # seconds
    max_delay: float = 60.0  # seconds
    exponential_base: float = 2.0
    retry_on_status: Tuple[int, ...] = (429, 500, 502, 503, 504)

    def get_delay(self, attempt: int) -> float:
        """Delay before retry ``attempt`` (exponential backoff, capped)."""
        delay = self.base_delay * (self.exponential_base ** attempt)
        return min(delay, self.max_delay)


def _error_message(response: requests.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict) and error.get("message"):
        return error["message"]
    return response.text


class WebApiClient:
    """
    Thin ``requests`` wrapper bound to one Web API root URL.

    Example:
        client = WebApiClient("https://org.crm.dynamics.com/api/data/v9.2", token=token)
        accounts = client.get_json("accounts", params={"$top": "5"})
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        token: Optional[str] = None,
        timeout: Optional[int] = None,
        max_retries: Optional[int] = None,
        session: Optional[requests.Session] = None,
        retry_config: Optional[RetryConfig] = None,
    ):
        self.base_url = (base_url or settings.webapi_url).rstrip("/")
        if not self.base_url:
            raise WebApiError("Web API URL is not configured (set WEBAPI_URL)")
        self.token = token if token is not None else settings.webapi_token
        self.timeout = timeout or settings.webapi_timeout_seconds
        self.retry_config = retry_config or RetryConfig(
            max_retries=settings.webapi_max_retries if max_retries is None else max_retries
        )
        self.session = session or requests.Session()

    def url(self, path: str) -> str:
        if path.startswith("http://") or path.startswith("https://"):
            return path
        return f"{self.base_url}/{path.lstrip('/')}"

    def _headers(self, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        headers = {
            "Accept": "application/json",
            "OData-MaxVersion": "4.0",
            "OData-Version": "4.0",
        }
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        if extra:
            headers.update(extra)
        return headers

    def request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, str]] = None,
        json_body: Any = None,
        data: Optional[bytes] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> requests.Response:
        """
        Send a request, retrying throttled and transient failures.

        Raises:
            WebApiError: On a non-retryable status or once retries are exhausted
        """
        url = self.url(path)
        retry = self.retry_config
        last_error: Optional[Exception] = None

        for attempt in range(retry.max_retries + 1):
            try:
                response = self.session.request(
                    method,
                    url,
                    params=params,
                    json=json_body,
                    data=data,
                    headers=self._headers(headers),
                    timeout=self.timeout,
                )
            except requests.RequestException as exc:
                last_error = exc
                if attempt < retry.max_retries:
                    delay = retry.get_delay(attempt)
                    logger.warning("%s %s failed with %s: %s, retrying in %.1fs", method, url, type(exc).__name__, exc, delay)
                    time.sleep(delay)
                    continue
                raise WebApiError(f"Request failed after {retry.max_retries} retries: {exc}") from exc

            if response.status_code < 400:
                return response

            if response.status_code in retry.retry_on_status and attempt < retry.max_retries:
                if response.status_code == 429 and response.headers.get("Retry-After"):
                    delay = min(float(response.headers["Retry-After"]), retry.max_delay)
                else:
                    delay = retry.get_delay(attempt)
                logger.warning(
                    "%s %s returned %d, retrying in %.1fs (attempt %d/%d)",
                    method,
                    url,
                    response.status_code,
                    delay,
                    attempt + 1,
                    retry.max_retries,
                )
                time.sleep(delay)
                continue

            raise WebApiError(
                f"Web API error {response.status_code}: {_error_message(response)}",
                response.status_code,
                response.text,
            )

        raise WebApiError(f"Request failed: {last_error}")

    def get_json(self, path: str, params: Optional[Dict[str, str]] = None, headers: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        response = self.request("GET", path, params=params, headers=headers)
        return response.json() if response.content else {}


# Records -------------------------------------------------------------------------

def _key_segment(key: Any) -> str:
    """Key predicate for a record URL: a bare id or ``k1='v1',k2=2``."""
    if not isinstance(key, dict):
        return str(key)
    parts = []
    for name, value in key.items():
        if isinstance(value, str):
            parts.append(f"{name}='{value.replace(chr(39), chr(39) * 2)}'")
        else:
            parts.append(f"{name}={make_json_safe(value)}")
    return ",".join(parts)


class WebApiRecordService:
    """``RecordService`` implementation over the OData Web API."""

    def __init__(self, client: WebApiClient, metadata: MetadataService):
        self.client = client
        self.metadata = metadata

    def collection(self, logical_name: str) -> str:
        return self.metadata.get_entity_schema(logical_name).collection_name

    def record_path(self, logical_name: str, key: Any) -> str:
        segment = quote(_key_segment(key), safe="=,()'")
        return f"{self.collection(logical_name)}({segment})"

    def _body(self, package: EntityPackage) -> Dict[str, Any]:
        body: Dict[str, Any] = {}
        for name, value in package.fields.items():
            if isinstance(value, LookupReference):
                body[f"{name}@odata.bind"] = (
                    f"/{self.collection(value.logical_name)}({value.id})" if value.id else None
                )
            else:
                body[name] = make_json_safe(value)
        return body

    def _prepare(self, request: OperationRequest) -> Tuple[str, str, Any, Dict[str, str]]:
        """Method, path, JSON body and headers for one request."""
        package = request.package
        if request.kind == OperationKind.ASSOCIATE:
            if not isinstance(package, AssociatePackage):
                raise WebApiError("Associate requests need an associate package")
            path = f"{self.record_path(package.side_a.logical_name, package.side_a.id)}/{package.relation_name}/$ref"
            body = {"@odata.id": self.client.url(self.record_path(package.side_b.logical_name, package.side_b.id))}
            return "POST", path, body, {}

        if not isinstance(package, EntityPackage):
            raise WebApiError(f"{request.kind.value} needs an entity package")
        body = self._body(package)
        if request.kind == OperationKind.CREATE:
            return "POST", self.collection(package.logical_name), body, {}
        if package.id is None:
            raise WebApiError(f"{request.kind.value} for {package.logical_name} has no record id")

        path = self.record_path(package.logical_name, package.id)
        if request.kind == OperationKind.UPDATE:
            # If-Match keeps an update from turning into a create
            return "PATCH", path, body, {"If-Match": package.etag or "*"}
        headers = {"If-Match": package.etag} if package.etag else {}
        return "PATCH", path, body, headers

    def execute(self, request: OperationRequest) -> Any:
        method, path, body, headers = self._prepare(request)
        response = self.client.request(method, path, json_body=body, headers=headers)
        entity_id = response.headers.get("OData-EntityId")
        if response.content:
            return response.json()
        return entity_id

    def execute_multiple(self, requests_: Sequence[OperationRequest]) -> List[OperationResult]:
        """
        Send one sub-batch as a multipart ``$batch`` request.

        Every request is a top-level part so the server continues past failures;
        the result list lines up with ``requests_``. Requests that cannot be
        built fail locally and are left out of the batch.
        """
        boundary = f"batch_{uuid.uuid4()}"
        parts: List[str] = []
        slots: List[int] = []
        results: List[Optional[OperationResult]] = [None] * len(requests_)

        for index, request in enumerate(requests_):
            try:
                method, path, body, headers = self._prepare(request)
            except (WebApiError, MetadataLookupError) as exc:
                results[index] = OperationResult(success=False, error=str(exc))
                continue
            lines = [
                f"--{boundary}",
                "Content-Type: application/http",
                "Content-Transfer-Encoding: binary",
                f"Content-ID: {index + 1}",
                "",
                f"{method} {self.client.url(path)} HTTP/1.1",
                "Content-Type: application/json",
            ]
            lines += [f"{name}: {value}" for name, value in headers.items()]
            lines += ["", json.dumps(body)]
            parts.append("\r\n".join(lines))
            slots.append(index)

        if parts:
            payload = "\r\n".join(parts) + f"\r\n--{boundary}--\r\n"
            response = self.client.request(
                "POST",
                "$batch",
                data=payload.encode("utf-8"),
                headers={
                    "Content-Type": f"multipart/mixed; boundary={boundary}",
                    "Prefer": "odata.continue-on-error",
                },
            )
            parsed = parse_batch_response(response.headers.get("Content-Type", ""), response.text)
            for position, index in enumerate(slots):
                if position < len(parsed):
                    results[index] = parsed[position]
                else:
                    results[index] = OperationResult(success=False, error="No response for request in batch")

        return [result for result in results if result is not None]

    def retrieve_multiple(self, entity: str, params: Dict[str, str]) -> List[Dict[str, Any]]:
        return self.client.get_json(
            self.collection(entity),
            params=params,
            headers={"Prefer": 'odata.include-annotations="*"'},
        ).get("value", [])

    def page_all(
        self, entity: str, params: Optional[Dict[str, str]] = None, page_size: int = 500
    ) -> Iterator[List[Dict[str, Any]]]:
        headers = {"Prefer": f'odata.include-annotations="*",odata.maxpagesize={page_size}'}
        path: Optional[str] = self.collection(entity)
        query = dict(params or {})
        while path:
            body = self.client.get_json(path, params=query, headers=headers)
            yield body.get("value", [])
            # The next link already carries the query
            path = body.get(NEXT_LINK_ANNOTATION)
            query = None

    def page_fetch_xml(self, fetch_xml: str, page_size: int = 500) -> Iterator[List[Dict[str, Any]]]:
        root = etree.fromstring(fetch_xml.encode("utf-8"))
        entity = root.find("entity")
        if entity is None or not entity.get("name"):
            raise WebApiError("FetchXML has no <entity name=...> element")
        collection = self.collection(entity.get("name"))
        headers = {"Prefer": 'odata.include-annotations="*"'}

        page = 1
        root.set("count", str(page_size))
        while True:
            root.set("page", str(page))
            body = self.client.get_json(
                collection,
                params={"fetchXml": etree.tostring(root, encoding="unicode")},
                headers=headers,
            )
            yield body.get("value", [])
            if not body.get(MORE_RECORDS_ANNOTATION):
                break
            cookie = _paging_cookie(body.get(PAGING_COOKIE_ANNOTATION))
            if cookie:
                root.set("paging-cookie", cookie)
            page += 1


def _paging_cookie(annotation: Optional[str]) -> Optional[str]:
    """The inner paging cookie of a ``fetchxmlpagingcookie`` annotation."""
    if not annotation:
        return None
    try:
        cookie = etree.fromstring(annotation.encode("utf-8")).get("pagingcookie")
    except etree.XMLSyntaxError:
        logger.warning("Ignoring unparsable paging cookie")
        return None
    # The cookie is URL-encoded twice
    return unquote(unquote(cookie)) if cookie else None


def parse_batch_response(content_type: str, text: str) -> List[OperationResult]:
    """Split a multipart ``$batch`` response into one result per part, in order."""
    marker = "boundary="
    if marker not in content_type:
        raise WebApiError("Batch response has no multipart boundary")
    boundary = content_type.split(marker, 1)[1].split(";", 1)[0].strip().strip('"')

    results = []
    for part in text.split(f"--{boundary}"):
        part = part.strip()
        if not part or part == "--":
            continue
        status_line = next((line for line in part.splitlines() if line.startswith("HTTP/")), None)
        if status_line is None:
            continue
        status = int(status_line.split()[1])
        body = part.split("\r\n\r\n")[-1].strip() if "\r\n\r\n" in part else part.split("\n\n")[-1].strip()
        if status < 400:
            results.append(OperationResult(success=True, response=status))
            continue
        message = status_line
        try:
            message = json.loads(body)["error"]["message"]
        except (ValueError, KeyError, TypeError):
            pass
        results.append(OperationResult(success=False, error=message))
    return results


# Metadata ------------------------------------------------------------------------

def _label(value: Optional[Dict[str, Any]]) -> Optional[str]:
    localized = (value or {}).get("UserLocalizedLabel") or {}
    return localized.get("Label")


class WebApiMetadataService:
    """``MetadataService`` reading entity definitions over the Web API. Results are cached."""

    def __init__(self, client: WebApiClient):
        self.client = client
        self._schemas: Dict[str, EntitySchema] = {}
        self._keys: Dict[str, List[AlternateKey]] = {}
        self._relationships: Dict[str, ManyToManyDescriptor] = {}
        self._lock = threading.Lock()

    def _definition(self, logical_name: str) -> str:
        return f"EntityDefinitions(LogicalName='{logical_name}')"

    def _get(self, path: str, params: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        try:
            return self.client.get_json(path, params=params)
        except WebApiError as exc:
            raise MetadataLookupError(f"Metadata request {path} failed: {exc}") from exc

    def get_entity_schema(self, logical_name: str) -> EntitySchema:
        with self._lock:
            if logical_name in self._schemas:
                return self._schemas[logical_name]

        definition = self._get(
            self._definition(logical_name),
            params={
                "$select": "LogicalName,PrimaryIdAttribute,PrimaryNameAttribute,EntitySetName,IsIntersect",
                "$expand": "Attributes($select=LogicalName,AttributeType,DisplayName,IsValidForCreate,IsValidForRead)",
            },
        )
        lookups = self._get(
            f"{self._definition(logical_name)}/Attributes/Microsoft.Dynamics.CRM.LookupAttributeMetadata",
            params={"$select": "LogicalName,Targets"},
        )
        targets = {item["LogicalName"]: item.get("Targets") or [] for item in lookups.get("value", [])}
        picklists = self._get(
            f"{self._definition(logical_name)}/Attributes/Microsoft.Dynamics.CRM.PicklistAttributeMetadata",
            params={"$select": "LogicalName", "$expand": "OptionSet($select=Options)"},
        )
        options = {
            item["LogicalName"]: [
                OptionMetadata(label=_label(option.get("Label")) or str(option["Value"]), value=option["Value"])
                for option in (item.get("OptionSet") or {}).get("Options", [])
            ]
            for item in picklists.get("value", [])
        }

        attributes = {}
        for item in definition.get("Attributes", []):
            name = item["LogicalName"]
            attributes[name] = AttributeMetadata(
                name=name,
                type=item.get("AttributeType") or "Unknown",
                display_name=_label(item.get("DisplayName")),
                targets=targets.get(name, []),
                options=options.get(name, []),
                is_valid_for_create=bool(item.get("IsValidForCreate", True)),
                is_valid_for_read=bool(item.get("IsValidForRead", True)),
            )
        schema = EntitySchema(
            logical_name=definition.get("LogicalName", logical_name),
            primary_id_attribute=definition["PrimaryIdAttribute"],
            primary_name_attribute=definition.get("PrimaryNameAttribute"),
            entity_set_name=definition.get("EntitySetName"),
            attributes=attributes,
            is_intersect=bool(definition.get("IsIntersect")),
        )
        logger.info("Loaded metadata for %s: %d attributes", logical_name, len(attributes))
        with self._lock:
            return self._schemas.setdefault(logical_name, schema)

    def get_alternate_keys(self, logical_name: str) -> List[AlternateKey]:
        with self._lock:
            if logical_name in self._keys:
                return list(self._keys[logical_name])
        body = self._get(f"{self._definition(logical_name)}/Keys", params={"$select": "LogicalName,KeyAttributes"})
        keys = [
            AlternateKey(name=item["LogicalName"], key_attributes=item.get("KeyAttributes") or [])
            for item in body.get("value", [])
        ]
        with self._lock:
            self._keys[logical_name] = keys
        return list(keys)

    def get_many_to_many_descriptor(self, intersect_entity: str) -> ManyToManyDescriptor:
        with self._lock:
            if intersect_entity in self._relationships:
                return self._relationships[intersect_entity]
        body = self._get(
            "RelationshipDefinitions/Microsoft.Dynamics.CRM.ManyToManyRelationshipMetadata",
            params={
                "$select": "SchemaName,Entity1LogicalName,Entity2LogicalName,"
                "Entity1IntersectAttribute,Entity2IntersectAttribute",
                "$filter": f"IntersectEntityName eq '{intersect_entity}'",
            },
        )
        items = body.get("value", [])
        if not items:
            raise MetadataLookupError(f"ManyToManyRelationshipMetadata not found for {intersect_entity}")
        item = items[0]
        descriptor = ManyToManyDescriptor(
            relation_name=item["SchemaName"],
            entity1=item["Entity1LogicalName"],
            entity2=item["Entity2LogicalName"],
            entity1_intersect_attribute=item["Entity1IntersectAttribute"],
            entity2_intersect_attribute=item["Entity2IntersectAttribute"],
        )
        with self._lock:
            self._relationships[intersect_entity] = descriptor
        return descriptor
