import json
from decimal import Decimal
from urllib.parse import quote

import pytest
import requests
from lxml import etree
from requests.structures import CaseInsensitiveDict

from record_transfer.api.schemas.shared import (
    AssociatePackage,
    EntityPackage,
    LookupReference,
    OperationKind,
    RecordRef,
)
from record_transfer.core.config import settings
from record_transfer.domain.metadata import MetadataLookupError
from record_transfer.domain.records import OperationRequest
from record_transfer.integrations import webapi
from record_transfer.integrations.sheets import GoogleSheetsClient
from record_transfer.integrations.webapi import (
    RetryConfig,
    WebApiClient,
    WebApiError,
    WebApiMetadataService,
    WebApiRecordService,
    parse_batch_response,
)

BASE_URL = "https://org.example.com/api/data/v9.2"
GUID = "0f8fad5b-d9cb-469f-a165-70867728950e"


def make_response(status=200, body=None, headers=None, text=None):
    response = requests.Response()
    response.status_code = status
    if text is not None:
        response._content = text.encode("utf-8")
    elif body is not None:
        response._content = json.dumps(body).encode("utf-8")
    else:
        response._content = b""
    response.headers = CaseInsensitiveDict(headers or {})
    response.encoding = "utf-8"
    return response


class FakeSession:
    """Replays queued responses (or raises queued exceptions) and records every call."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    def request(self, method, url, **kwargs):
        self.calls.append({"method": method, "url": url, **kwargs})
        outcome = self.responses.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def post(self, url, **kwargs):
        return self.request("POST", url, **kwargs)


@pytest.fixture
def sleeps(monkeypatch):
    delays = []
    monkeypatch.setattr(webapi.time, "sleep", delays.append)
    return delays


def make_client(session, max_retries=2):
    return WebApiClient(BASE_URL, token="secret", session=session, retry_config=RetryConfig(max_retries=max_retries))


# Client ------------------------------------------------------------------------


def test_requests_carry_auth_and_odata_headers():
    session = FakeSession(make_response(body={"value": []}))

    make_client(session).get_json("accounts", params={"$top": "1"})

    call = session.calls[0]
    assert call["url"] == f"{BASE_URL}/accounts"
    assert call["headers"]["Authorization"] == "Bearer secret"
    assert call["headers"]["OData-Version"] == "4.0"
    assert call["params"] == {"$top": "1"}


def test_missing_url_is_an_error(monkeypatch):
    monkeypatch.setattr(settings, "webapi_url", "")
    with pytest.raises(WebApiError, match="WEBAPI_URL"):
        WebApiClient()


def test_throttled_request_honours_retry_after(sleeps):
    session = FakeSession(
        make_response(429, headers={"Retry-After": "2"}),
        make_response(body={"value": [{"name": "Acme"}]}),
    )

    body = make_client(session).get_json("accounts")

    assert body == {"value": [{"name": "Acme"}]}
    assert sleeps == [2.0]


def test_transient_failures_back_off_then_give_up(sleeps):
    session = FakeSession(*[make_response(503, text="unavailable") for _ in range(3)])

    with pytest.raises(WebApiError) as excinfo:
        make_client(session, max_retries=2).get_json("accounts")

    assert excinfo.value.status_code == 503
    assert len(session.calls) == 3
    assert sleeps == [1.0, 2.0]


def test_client_errors_are_not_retried(sleeps):
    session = FakeSession(make_response(400, body={"error": {"code": "0x1", "message": "Invalid property 'x'"}}))

    with pytest.raises(WebApiError, match="Invalid property 'x'") as excinfo:
        make_client(session).request("POST", "accounts", json_body={"x": 1})

    assert excinfo.value.status_code == 400
    assert sleeps == []


def test_connection_errors_are_retried(sleeps):
    session = FakeSession(requests.ConnectionError("reset"), make_response(body={"ok": True}))

    assert make_client(session).get_json("WhoAmI") == {"ok": True}
    assert sleeps == [1.0]

    failing = FakeSession(*[requests.Timeout("slow") for _ in range(3)])
    with pytest.raises(WebApiError, match="after 2 retries"):
        make_client(failing).get_json("WhoAmI")


# Records -----------------------------------------------------------------------


@pytest.fixture
def service_for(metadata):
    def _service(*responses):
        session = FakeSession(*responses)
        return WebApiRecordService(make_client(session), metadata), session

    return _service


def test_create_binds_lookups(service_for):
    service, session = service_for(make_response(204, headers={"OData-EntityId": f"{BASE_URL}/accounts({GUID})"}))
    package = EntityPackage(
        logical_name="account",
        id=GUID,
        fields={
            "name": "Acme",
            "revenue": Decimal("10.5"),
            "primarycontactid": LookupReference(logical_name="contact", id=GUID),
            "parentaccountid": None,
        },
    )

    entity_id = service.execute(OperationRequest(kind=OperationKind.CREATE, package=package))

    assert entity_id == f"{BASE_URL}/accounts({GUID})"
    call = session.calls[0]
    assert (call["method"], call["url"]) == ("POST", f"{BASE_URL}/accounts")
    assert call["json"] == {
        "name": "Acme",
        "revenue": 10.5,
        "primarycontactid@odata.bind": f"/contacts({GUID})",
        "parentaccountid": None,
    }


def test_update_never_creates(service_for):
    service, session = service_for(make_response(204))
    package = EntityPackage(logical_name="account", id=GUID, fields={"name": "Acme"})

    service.execute(OperationRequest(kind=OperationKind.UPDATE, package=package))

    call = session.calls[0]
    assert (call["method"], call["url"]) == ("PATCH", f"{BASE_URL}/accounts({GUID})")
    assert call["headers"]["If-Match"] == "*"


def test_upsert_by_alternate_key_with_etag(service_for):
    service, session = service_for(make_response(204))
    package = EntityPackage(
        logical_name="account",
        id={"accountnumber": "O'Neil-1"},
        etag='W/"42"',
        fields={"name": "Acme"},
    )

    service.execute(OperationRequest(kind=OperationKind.UPSERT, package=package))

    call = session.calls[0]
    assert call["url"] == f"{BASE_URL}/accounts(accountnumber='O''Neil-1')"
    assert call["headers"]["If-Match"] == 'W/"42"'


def test_associate_posts_reference(service_for):
    service, session = service_for(make_response(204))
    package = AssociatePackage(
        relation_name="account_contact_association",
        side_a=RecordRef(logical_name="account", id="a-1"),
        side_b=RecordRef(logical_name="contact", id="c-1"),
    )

    service.execute(OperationRequest(kind=OperationKind.ASSOCIATE, package=package))

    call = session.calls[0]
    assert call["url"] == f"{BASE_URL}/accounts(a-1)/account_contact_association/$ref"
    assert call["json"] == {"@odata.id": f"{BASE_URL}/contacts(c-1)"}


BATCH_RESPONSE = (
    "--batchresponse_1\r\n"
    "Content-Type: application/http\r\n"
    "Content-Transfer-Encoding: binary\r\n"
    "\r\n"
    "HTTP/1.1 204 No Content\r\n"
    "OData-Version: 4.0\r\n"
    "\r\n"
    "\r\n"
    "--batchresponse_1\r\n"
    "Content-Type: application/http\r\n"
    "Content-Transfer-Encoding: binary\r\n"
    "\r\n"
    "HTTP/1.1 400 Bad Request\r\n"
    "Content-Type: application/json; odata.metadata=minimal\r\n"
    "\r\n"
    '{"error":{"code":"0x80040237","message":"A record with matching key values already exists."}}\r\n'
    "--batchresponse_1--\r\n"
)


def test_execute_multiple_sends_one_batch(service_for):
    service, session = service_for(
        make_response(200, text=BATCH_RESPONSE, headers={"Content-Type": "multipart/mixed; boundary=batchresponse_1"})
    )
    requests_ = [
        OperationRequest(kind=OperationKind.CREATE, package=EntityPackage(logical_name="account", fields={"name": "A"})),
        OperationRequest(kind=OperationKind.UPDATE, package=EntityPackage(logical_name="account", fields={"name": "B"})),
        OperationRequest(kind=OperationKind.CREATE, package=EntityPackage(logical_name="account", fields={"name": "C"})),
    ]

    results = service.execute_multiple(requests_)

    assert [result.success for result in results] == [True, False, False]
    assert "no record id" in results[1].error
    assert results[2].error == "A record with matching key values already exists."

    call = session.calls[0]
    assert call["url"] == f"{BASE_URL}/$batch"
    assert call["headers"]["Prefer"] == "odata.continue-on-error"
    payload = call["data"].decode("utf-8")
    assert payload.count(f"POST {BASE_URL}/accounts HTTP/1.1") == 2
    assert "Content-ID: 1" in payload and "Content-ID: 3" in payload


def test_batch_response_without_boundary_is_rejected():
    with pytest.raises(WebApiError):
        parse_batch_response("application/json", "{}")


def test_page_all_follows_next_links(service_for):
    next_link = f"{BASE_URL}/accounts?$skiptoken=abc"
    service, session = service_for(
        make_response(body={"value": [{"n": 1}, {"n": 2}], "@odata.nextLink": next_link}),
        make_response(body={"value": [{"n": 3}]}),
    )

    pages = list(service.page_all("account", {"$select": "name"}, page_size=2))

    assert pages == [[{"n": 1}, {"n": 2}], [{"n": 3}]]
    assert session.calls[0]["params"] == {"$select": "name"}
    assert "odata.maxpagesize=2" in session.calls[0]["headers"]["Prefer"]
    assert session.calls[1]["url"] == next_link
    assert session.calls[1]["params"] is None


def test_page_fetch_xml_passes_paging_cookie(service_for):
    inner_cookie = '<cookie page="1"><accountid last="{A}" first="{B}" /></cookie>'
    annotation = f'<cookie pagenumber="2" pagingcookie="{quote(quote(inner_cookie, safe=""), safe="")}" istracking="False" />'
    service, session = service_for(
        make_response(body={
            "value": [{"name": "Acme"}],
            "@Microsoft.Dynamics.CRM.morerecords": True,
            "@Microsoft.Dynamics.CRM.fetchxmlpagingcookie": annotation,
        }),
        make_response(body={"value": [{"name": "Globex"}], "@Microsoft.Dynamics.CRM.morerecords": False}),
    )

    pages = list(service.page_fetch_xml("<fetch><entity name='account'><attribute name='name'/></entity></fetch>", page_size=1))

    assert pages == [[{"name": "Acme"}], [{"name": "Globex"}]]
    first = etree.fromstring(session.calls[0]["params"]["fetchXml"])
    second = etree.fromstring(session.calls[1]["params"]["fetchXml"])
    assert (first.get("page"), first.get("count"), first.get("paging-cookie")) == ("1", "1", None)
    assert second.get("page") == "2"
    assert second.get("paging-cookie") == inner_cookie


# Metadata ----------------------------------------------------------------------


def test_metadata_service_builds_and_caches_schema():
    session = FakeSession(
        make_response(body={
            "LogicalName": "account",
            "PrimaryIdAttribute": "accountid",
            "PrimaryNameAttribute": "name",
            "EntitySetName": "accounts",
            "IsIntersect": False,
            "Attributes": [
                {"LogicalName": "accountid", "AttributeType": "Uniqueidentifier", "IsValidForCreate": True},
                {"LogicalName": "name", "AttributeType": "String", "DisplayName": {"UserLocalizedLabel": {"Label": "Account Name"}}},
                {"LogicalName": "primarycontactid", "AttributeType": "Lookup"},
                {"LogicalName": "industrycode", "AttributeType": "Picklist"},
                {"LogicalName": "createdon", "AttributeType": "DateTime", "IsValidForCreate": False},
            ],
        }),
        make_response(body={"value": [{"LogicalName": "primarycontactid", "Targets": ["contact"]}]}),
        make_response(body={"value": [{
            "LogicalName": "industrycode",
            "OptionSet": {"Options": [{"Value": 1, "Label": {"UserLocalizedLabel": {"Label": "Accounting"}}}]},
        }]}),
    )
    service = WebApiMetadataService(make_client(session))

    schema = service.get_entity_schema("account")
    again = service.get_entity_schema("account")

    assert again is schema
    assert len(session.calls) == 3
    assert session.calls[0]["url"] == f"{BASE_URL}/EntityDefinitions(LogicalName='account')"
    assert schema.collection_name == "accounts"
    assert schema.attributes["name"].display_name == "Account Name"
    assert schema.attributes["primarycontactid"].targets == ["contact"]
    assert [(o.label, o.value) for o in schema.attributes["industrycode"].options] == [("Accounting", 1)]
    assert not schema.attributes["createdon"].is_valid_for_create


def test_metadata_keys_and_relationships():
    session = FakeSession(
        make_response(body={"value": [{"LogicalName": "accountnumber_key", "KeyAttributes": ["accountnumber"]}]}),
        make_response(body={"value": [{
            "SchemaName": "account_contact_association",
            "Entity1LogicalName": "account",
            "Entity2LogicalName": "contact",
            "Entity1IntersectAttribute": "accountid",
            "Entity2IntersectAttribute": "contactid",
        }]}),
        make_response(body={"value": []}),
    )
    service = WebApiMetadataService(make_client(session))

    keys = service.get_alternate_keys("account")
    relationship = service.get_many_to_many_descriptor("account_contact")

    assert [(key.name, key.key_attributes) for key in keys] == [("accountnumber_key", ["accountnumber"])]
    assert relationship.relation_name == "account_contact_association"
    assert session.calls[1]["params"]["$filter"] == "IntersectEntityName eq 'account_contact'"
    with pytest.raises(MetadataLookupError):
        service.get_many_to_many_descriptor("other_intersect")


def test_metadata_http_failure_becomes_lookup_error(sleeps):
    session = FakeSession(make_response(404, body={"error": {"message": "Could not find entity"}}))

    with pytest.raises(MetadataLookupError, match="Could not find entity"):
        WebApiMetadataService(make_client(session)).get_entity_schema("nosuchentity")


# Sheets ------------------------------------------------------------------------


def test_sheets_client_creates_and_appends():
    session = FakeSession(
        make_response(body={"spreadsheetId": "s-1", "sheets": [{"properties": {"title": "Sheet1"}}]}),
        make_response(body={"updates": {"updatedRows": 1}}),
    )
    client = GoogleSheetsClient(token="sheets-token", base_url="https://sheets.example.com/v4/spreadsheets", session=session)

    client.create("accounts")
    client.append("s-1", "Sheet 1", [["name"]])

    assert session.calls[0]["json"] == {"properties": {"title": "accounts"}}
    assert session.calls[1]["url"] == "https://sheets.example.com/v4/spreadsheets/s-1/values/Sheet%201:append"
    assert session.calls[1]["params"]["valueInputOption"] == "RAW"
    assert session.calls[1]["headers"]["Authorization"] == "Bearer sheets-token"


def test_sheets_client_needs_token(monkeypatch):
    monkeypatch.setattr(settings, "sheets_api_token", "")
    with pytest.raises(WebApiError):
        GoogleSheetsClient()
