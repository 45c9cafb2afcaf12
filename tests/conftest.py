"""
Pytest configuration and fixtures for record-transfer tests.

Provides static entity metadata (an account/contact pair plus an intersect
entity relating them), a fake remote record service and an in-memory
staging store.
"""

import os

# Never bootstrap the on-disk staging database from the app lifespan in tests.
os.environ.setdefault("SKIP_DB_INIT", "1")

import pytest

from record_transfer.db.session import create_staging_engine
from record_transfer.domain.imports.staging import StagingStore
from record_transfer.domain.metadata import (
    AlternateKey,
    AttributeMetadata,
    EntitySchema,
    ManyToManyDescriptor,
    OptionMetadata,
    StaticMetadataService,
)
from tests.utils.fakes import FakeRecordService


def _attributes(*attributes: AttributeMetadata):
    return {attribute.name: attribute for attribute in attributes}


@pytest.fixture
def account_schema() -> EntitySchema:
    return EntitySchema(
        logical_name="account",
        primary_id_attribute="accountid",
        primary_name_attribute="name",
        entity_set_name="accounts",
        attributes=_attributes(
            AttributeMetadata(name="accountid", type="Uniqueidentifier", display_name="Account"),
            AttributeMetadata(name="name", type="String", display_name="Account Name"),
            AttributeMetadata(name="accountnumber", type="String", display_name="Account Number"),
            AttributeMetadata(name="description", type="Memo"),
            AttributeMetadata(name="revenue", type="Money", display_name="Annual Revenue"),
            AttributeMetadata(name="numberofemployees", type="Integer"),
            AttributeMetadata(name="donotemail", type="Boolean"),
            AttributeMetadata(name="createdon", type="DateTime", is_valid_for_create=False),
            AttributeMetadata(
                name="industrycode",
                type="Picklist",
                options=[
                    OptionMetadata(label="Accounting", value=1),
                    OptionMetadata(label="Consulting", value=3),
                ],
            ),
            AttributeMetadata(name="primarycontactid", type="Lookup", targets=["contact"]),
            AttributeMetadata(name="parentaccountid", type="Lookup", targets=["account"]),
            AttributeMetadata(name="ownerid", type="Owner", targets=["systemuser", "team"]),
            AttributeMetadata(name="entityimage", type="Virtual"),
        ),
    )


@pytest.fixture
def contact_schema() -> EntitySchema:
    return EntitySchema(
        logical_name="contact",
        primary_id_attribute="contactid",
        primary_name_attribute="fullname",
        entity_set_name="contacts",
        attributes=_attributes(
            AttributeMetadata(name="contactid", type="Uniqueidentifier"),
            AttributeMetadata(name="fullname", type="String"),
            AttributeMetadata(name="lastname", type="String"),
            AttributeMetadata(name="parentcustomerid", type="Customer", targets=["account", "contact"]),
        ),
    )


@pytest.fixture
def intersect_schema() -> EntitySchema:
    return EntitySchema(
        logical_name="account_contact",
        primary_id_attribute="account_contactid",
        entity_set_name="account_contacts",
        is_intersect=True,
        attributes=_attributes(
            AttributeMetadata(name="account_contactid", type="Uniqueidentifier"),
            AttributeMetadata(name="accountid", type="Uniqueidentifier"),
            AttributeMetadata(name="contactid", type="Uniqueidentifier"),
        ),
    )


@pytest.fixture
def relationship() -> ManyToManyDescriptor:
    return ManyToManyDescriptor(
        relation_name="account_contact_association",
        entity1="account",
        entity2="contact",
        entity1_intersect_attribute="accountid",
        entity2_intersect_attribute="contactid",
    )


@pytest.fixture
def account_key() -> AlternateKey:
    return AlternateKey(name="accountnumber_key", key_attributes=["accountnumber"])


@pytest.fixture
def metadata(account_schema, contact_schema, intersect_schema, relationship, account_key) -> StaticMetadataService:
    return StaticMetadataService(
        schemas=[account_schema, contact_schema, intersect_schema],
        alternate_keys={"account": [account_key]},
        relationships=[relationship],
        intersect_entities={"account_contact": relationship.relation_name},
    )


@pytest.fixture
def records() -> FakeRecordService:
    return FakeRecordService()


@pytest.fixture
def staging_engine():
    engine = create_staging_engine("sqlite://")
    yield engine
    engine.dispose()


@pytest.fixture
def staging(staging_engine) -> StagingStore:
    store = StagingStore(staging_engine)
    store.open()
    return store
