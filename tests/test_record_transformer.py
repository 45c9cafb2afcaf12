from decimal import Decimal

import pytest

from record_transfer.api.schemas.shared import (
    AssociatePackage,
    EntityPackage,
    FieldMapping,
    FieldMode,
    LookupReference,
    OperationKind,
    RecordRef,
)
from record_transfer.domain.imports.resolver import LookupResolver, ResolveCache
from record_transfer.domain.imports.transformer import RecordTransformer, RowTransformError

GUID = "0f8fad5b-d9cb-469f-a165-70867728950e"


def make_transformer(schema, operation, mappings, **kwargs):
    kwargs.setdefault("id_factory", lambda: "generated-id")
    return RecordTransformer(schema, operation, mappings, **kwargs)


def test_create_builds_package_with_generated_id(account_schema):
    mapping = FieldMapping(**{"from": "name", "to": "name", "mode": "Map", "type": "String"})
    transformer = make_transformer(account_schema, OperationKind.CREATE, [mapping])

    package = transformer.transform({"name": "Acme"})

    assert package == EntityPackage(logical_name="account", id="generated-id", fields={"name": "Acme"})


def test_etag_is_validated(account_schema):
    mappings = [
        FieldMapping(mode=FieldMode.ETAG, from_="etag"),
        FieldMapping(from_="name", to="name", type="String"),
    ]
    transformer = make_transformer(account_schema, OperationKind.UPSERT, mappings)

    package = transformer.transform({"etag": 'W/"12345"', "name": "Acme"})
    assert package.etag == 'W/"12345"'

    with pytest.raises(RowTransformError) as excinfo:
        transformer.transform({"etag": "garbage", "name": "Acme"})
    assert excinfo.value.error_type == "invalid_etag"
    assert excinfo.value.column == "etag"


def test_empty_etag_is_skipped(account_schema):
    transformer = make_transformer(account_schema, OperationKind.UPSERT, [FieldMapping(mode=FieldMode.ETAG, from_="etag")])
    assert transformer.transform({"etag": ""}).etag is None


def test_unresolved_lookup_fails_row_and_is_cached(account_schema, metadata, records):
    mapping = FieldMapping(
        from_="parent",
        to="parentaccountid",
        type="Lookup",
        resolve=True,
        target="account",
        resolve_attribute="name",
    )
    resolver = LookupResolver(metadata, records, ResolveCache())
    transformer = make_transformer(account_schema, OperationKind.CREATE, [mapping], resolver=resolver)

    for _ in range(2):
        with pytest.raises(RowTransformError) as excinfo:
            transformer.transform({"parent": "Acme"})
        assert str(excinfo.value) == "Not Found: account.name = Acme"
        assert excinfo.value.error_type == "lookup_failed"

    assert len(records.queries) == 1


def test_failing_lookup_query_fails_row_without_caching(account_schema, metadata, records, monkeypatch):
    def _unavailable(entity, params):
        records.queries.append((entity, dict(params)))
        raise ConnectionError("remote store unreachable")

    monkeypatch.setattr(records, "retrieve_multiple", _unavailable)
    mapping = FieldMapping(
        from_="parent", to="parentaccountid", type="Lookup", resolve=True, target="account", resolve_attribute="name"
    )
    cache = ResolveCache()
    transformer = make_transformer(
        account_schema, OperationKind.CREATE, [mapping], resolver=LookupResolver(metadata, records, cache)
    )

    for _ in range(2):
        with pytest.raises(RowTransformError) as excinfo:
            transformer.transform({"parent": "Acme"})
        assert excinfo.value.error_type == "lookup_failed"
        assert excinfo.value.column == "parent"
        assert str(excinfo.value) == "ConnectionError: remote store unreachable"

    assert len(records.queries) == 2
    assert len(cache) == 0


def test_resolved_lookup_becomes_reference(account_schema, metadata, records):
    records.lookup_rows["account"] = [{"accountid": GUID}]
    mapping = FieldMapping(
        from_="parent", to="parentaccountid", type="Lookup", resolve=True, target="account", resolve_attribute="name"
    )
    transformer = make_transformer(
        account_schema, OperationKind.CREATE, [mapping], resolver=LookupResolver(metadata, records, ResolveCache())
    )

    package = transformer.transform({"parent": "Acme"})

    assert package.fields["parentaccountid"] == LookupReference(logical_name="account", id=GUID)


def test_lookup_with_target_passes_bare_id(account_schema):
    mapping = FieldMapping(from_="contact", to="primarycontactid", type="Lookup", target="contact")
    transformer = make_transformer(account_schema, OperationKind.CREATE, [mapping])

    assert transformer.transform({"contact": GUID}).fields["primarycontactid"] == LookupReference(
        logical_name="contact", id=GUID
    )
    assert transformer.transform({"contact": ""}).fields["primarycontactid"] is None


def test_lookup_without_target_needs_composite_value(account_schema):
    mapping = FieldMapping(from_="owner", to="ownerid", type="Owner")
    transformer = make_transformer(account_schema, OperationKind.CREATE, [mapping])

    package = transformer.transform({"owner": f"team:{GUID}"})
    assert package.fields["ownerid"] == LookupReference(logical_name="team", id=GUID)

    with pytest.raises(RowTransformError) as excinfo:
        transformer.transform({"owner": "Some Team"})
    assert excinfo.value.error_type == "invalid_value"


def test_primary_id_is_mirrored_into_fields_only_for_create(account_schema):
    mappings = [
        FieldMapping(from_="id", to="accountid", type="Uniqueidentifier"),
        FieldMapping(from_="name", to="name", type="String"),
    ]
    create = make_transformer(account_schema, OperationKind.CREATE, mappings).transform({"id": GUID, "name": "A"})
    update = make_transformer(account_schema, OperationKind.UPDATE, mappings).transform({"id": GUID, "name": "A"})

    assert create.id == GUID
    assert create.fields == {"accountid": GUID, "name": "A"}
    assert update.id == GUID
    assert update.fields == {"name": "A"}


def test_update_without_id_fails(account_schema):
    transformer = make_transformer(
        account_schema, OperationKind.UPDATE, [FieldMapping(from_="name", to="name", type="String")]
    )
    with pytest.raises(RowTransformError) as excinfo:
        transformer.transform({"name": "A"})
    assert excinfo.value.error_type == "missing_id"


def test_alternate_key_members_fill_key_and_fields(account_schema, account_key):
    mappings = [
        FieldMapping(from_="number", to="accountnumber", type="String"),
        FieldMapping(from_="name", to="name", type="String"),
    ]
    transformer = make_transformer(account_schema, OperationKind.UPSERT, mappings, alternate_key=account_key)

    package = transformer.transform({"number": "A-1", "name": "Acme"})

    assert package.id == {"accountnumber": "A-1"}
    assert package.uses_alternate_key
    assert package.fields == {"accountnumber": "A-1", "name": "Acme"}


def test_alternate_key_without_values_fails(account_schema, account_key):
    transformer = make_transformer(
        account_schema,
        OperationKind.UPSERT,
        [FieldMapping(from_="name", to="name", type="String")],
        alternate_key=account_key,
    )
    with pytest.raises(RowTransformError, match="accountnumber_key"):
        transformer.transform({"name": "Acme"})


def test_static_ignore_and_typed_fields(account_schema):
    mappings = [
        FieldMapping(mode=FieldMode.STATIC, to="description", value="Imported"),
        FieldMapping(mode=FieldMode.IGNORE, from_="junk"),
        FieldMapping(from_="revenue", to="revenue"),
        FieldMapping(from_="staff", to="numberofemployees"),
        FieldMapping(from_="industry", to="industrycode"),
    ]
    transformer = make_transformer(account_schema, OperationKind.CREATE, mappings)

    package = transformer.transform({"junk": "x", "revenue": "1500.25", "staff": "12", "industry": "Consulting"})

    assert package.fields == {
        "description": "Imported",
        "revenue": Decimal("1500.25"),
        "numberofemployees": 12,
        "industrycode": 3,
    }


def test_malformed_value_reports_column(account_schema):
    transformer = make_transformer(account_schema, OperationKind.CREATE, [FieldMapping(from_="revenue", to="revenue")])

    with pytest.raises(RowTransformError) as excinfo:
        transformer.transform({"revenue": "lots"})

    assert excinfo.value.column == "revenue"
    assert excinfo.value.value == "lots"


def test_map_without_destination_fails(account_schema):
    transformer = make_transformer(account_schema, OperationKind.CREATE, [FieldMapping(from_="Notes")])
    with pytest.raises(RowTransformError, match="No destination attribute"):
        transformer.transform({"Notes": "x"})


def test_checked_and_failed_add_up_to_rows(account_schema):
    transformer = make_transformer(
        account_schema, OperationKind.CREATE, [FieldMapping(from_="staff", to="numberofemployees")]
    )
    rows = [{"staff": value} for value in ("1", "2", "three", "", "5.5", "6")]
    checked = failed = 0
    for row in rows:
        try:
            transformer.transform(row)
            checked += 1
        except RowTransformError:
            failed += 1

    assert (checked, failed) == (4, 2)
    assert checked + failed == len(rows)


def test_associate_builds_both_sides(intersect_schema, relationship):
    mappings = [
        FieldMapping(from_="accountid", to="accountid", target="account"),
        FieldMapping(from_="contactid", to="contactid", target="contact"),
        FieldMapping(mode=FieldMode.IGNORE, from_="comment"),
    ]
    transformer = make_transformer(intersect_schema, OperationKind.ASSOCIATE, mappings, relationship=relationship)

    package = transformer.transform({"accountid": "a-1", "contactid": "c-1", "comment": "x"})

    assert package == AssociatePackage(
        relation_name="account_contact_association",
        side_a=RecordRef(logical_name="account", id="a-1"),
        side_b=RecordRef(logical_name="contact", id="c-1"),
    )


def test_associate_rejects_other_modes_and_missing_sides(intersect_schema, relationship):
    etag = make_transformer(
        intersect_schema,
        OperationKind.ASSOCIATE,
        [FieldMapping(mode=FieldMode.ETAG, from_="etag")],
        relationship=relationship,
    )
    with pytest.raises(RowTransformError) as excinfo:
        etag.transform({"etag": 'W/"1"'})
    assert excinfo.value.error_type == "unsupported_mode"

    one_side = make_transformer(
        intersect_schema,
        OperationKind.ASSOCIATE,
        [FieldMapping(from_="accountid", to="accountid", target="account")],
        relationship=relationship,
    )
    with pytest.raises(RowTransformError) as excinfo:
        one_side.transform({"accountid": "a-1"})
    assert excinfo.value.error_type == "missing_id"

    no_side = make_transformer(
        intersect_schema,
        OperationKind.ASSOCIATE,
        [FieldMapping(from_="other", to="other", target="systemuser")],
        relationship=relationship,
    )
    with pytest.raises(RowTransformError):
        no_side.transform({"other": "x"})


def test_self_referencing_relationship_uses_intersect_attributes(account_schema):
    from record_transfer.domain.metadata import ManyToManyDescriptor

    peers = ManyToManyDescriptor(
        relation_name="account_peers",
        entity1="account",
        entity2="account",
        entity1_intersect_attribute="accountidone",
        entity2_intersect_attribute="accountidtwo",
    )
    mappings = [
        FieldMapping(from_="first", to="accountidone", target="account"),
        FieldMapping(from_="second", to="accountidtwo", target="account"),
    ]
    transformer = make_transformer(account_schema, OperationKind.ASSOCIATE, mappings, relationship=peers)

    package = transformer.transform({"first": "a-1", "second": "a-2"})

    assert (package.side_a.id, package.side_b.id) == ("a-1", "a-2")


def test_constructor_rejects_incomplete_configuration(account_schema):
    with pytest.raises(ValueError):
        RecordTransformer(account_schema, OperationKind.ASSOCIATE, [])
    resolve = FieldMapping(
        from_="parent", to="parentaccountid", type="Lookup", resolve=True, target="account", resolve_attribute="name"
    )
    with pytest.raises(ValueError):
        RecordTransformer(account_schema, OperationKind.CREATE, [resolve])
