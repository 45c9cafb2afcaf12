import pytest
from sqlalchemy import text

from record_transfer.db.migrations import (
    Migration,
    StagingMigrationError,
    apply_migrations,
    get_schema_version,
)
from record_transfer.domain.imports.staging import DEFAULT_LOAD_ID, STAGING_MIGRATIONS, StagingStore


def test_fresh_store_applies_every_migration_once(staging_engine):
    store = StagingStore(staging_engine)

    first = store.open()
    second = store.open()

    assert [(r["version"], r["status"]) for r in first] == [(1, "applied"), (2, "applied"), (3, "applied")]
    assert [(r["version"], r["status"]) for r in second] == [(1, "already_applied"), (2, "already_applied"), (3, "already_applied")]
    assert get_schema_version(staging_engine) == 3


def test_version_bump_applies_only_new_migrations(staging_engine):
    calls = []

    def _add_column(conn):
        calls.append("v4")
        conn.execute(text("ALTER TABLE staging_rows ADD COLUMN source TEXT"))

    StagingStore(staging_engine).open()
    bumped = STAGING_MIGRATIONS + [Migration(version=4, name="add_source", migrate=_add_column)]

    results = StagingStore(staging_engine, bumped).open()
    StagingStore(staging_engine, bumped).open()

    assert [r["status"] for r in results] == ["already_applied", "already_applied", "already_applied", "applied"]
    assert calls == ["v4"]
    assert get_schema_version(staging_engine) == 4


def test_migrations_run_in_version_order(staging_engine):
    order = []
    migrations = [
        Migration(version=2, name="second", migrate=lambda conn: order.append(2)),
        Migration(version=1, name="first", migrate=lambda conn: order.append(1)),
    ]

    apply_migrations(staging_engine, migrations)

    assert order == [1, 2]


def test_duplicate_versions_are_rejected(staging_engine):
    migrations = [
        Migration(version=1, name="a", migrate=lambda conn: None),
        Migration(version=1, name="b", migrate=lambda conn: None),
    ]
    with pytest.raises(StagingMigrationError, match="Duplicate"):
        apply_migrations(staging_engine, migrations)


def test_failed_migration_does_not_bump_version(staging_engine):
    def _broken(conn):
        conn.execute(text("CREATE TABLE broken (id INTEGER)"))
        raise RuntimeError("boom")

    with pytest.raises(StagingMigrationError, match="boom"):
        apply_migrations(staging_engine, [Migration(version=1, name="broken", migrate=_broken)])

    assert get_schema_version(staging_engine) == 0


@pytest.mark.parametrize("page_size", [1, 4, 7, 23, 100])
def test_clear_add_read_round_trip(staging, page_size):
    rows = [{"name": f"Account {i}", "index": i} for i in range(23)]
    staging.clear()
    assert staging.add_rows(rows) == 23

    pages = list(staging.read_all(page_size))

    assert [row for page in pages for row in page] == rows
    assert all(len(page) <= page_size for page in pages)
    assert staging.count() == 23


def test_store_can_be_read_repeatedly(staging):
    staging.add_rows([{"n": 1}, {"n": 2}, {"n": 3}])

    first = [row for page in staging.read_all(2) for row in page]
    second = [row for page in staging.read_all(2) for row in page]

    assert first == second == [{"n": 1}, {"n": 2}, {"n": 3}]


def test_keys_keep_growing_after_clear(staging):
    staging.add_rows([{"n": 1}, {"n": 2}, {"n": 3}])
    staging.clear()
    staging.add_rows([{"n": 4}, {"n": 5}])

    assert staging.count() == 2
    assert staging.min_key() == 4
    assert [row for page in staging.read_all(10) for row in page] == [{"n": 4}, {"n": 5}]


def test_empty_store_reads_nothing(staging):
    staging.clear()
    assert list(staging.read_all(10)) == []
    assert staging.min_key() is None
    assert staging.add_rows([]) == 0


def test_operation_queue_push_and_read(staging, metadata):
    from record_transfer.api.schemas.shared import EntityPackage

    packages = [EntityPackage(logical_name="account", id=f"id-{i}", fields={"name": f"A{i}"}) for i in range(3)]

    assert staging.push_range(packages, "imports", "CreateRequest") == 3
    staging.push_range(packages[:1], "other", "UpdateRequest")

    queued = staging.queued_operations("imports")
    assert len(queued) == 3
    assert queued[0]["operation"] == "CreateRequest"
    assert queued[0]["data"] == {"logical_name": "account", "id": "id-0", "etag": None, "fields": {"name": "A0"}}
    assert len(staging.queued_operations()) == 4


def test_loads_are_isolated_from_each_other(staging):
    first = staging.new_load()
    second = staging.new_load()

    first.add_rows([{"n": 1}, {"n": 2}])
    second.add_rows([{"n": 10}])
    first.add_rows([{"n": 3}])

    assert first.count() == 3
    assert second.count() == 1
    assert staging.count() == 4
    assert [row for page in first.read_all(2) for row in page] == [{"n": 1}, {"n": 2}, {"n": 3}]
    assert [row for page in second.read_all(2) for row in page] == [{"n": 10}]

    second.clear()
    assert second.count() == 0
    assert [row for page in first.read_all(10) for row in page] == [{"n": 1}, {"n": 2}, {"n": 3}]


def test_migration_keeps_rows_staged_before_load_ids(staging_engine):
    StagingStore(staging_engine, STAGING_MIGRATIONS[:2]).open()
    with staging_engine.begin() as conn:
        conn.execute(text("INSERT INTO staging_rows (payload) VALUES (:payload)"), {"payload": '{"n": 1}'})

    store = StagingStore(staging_engine)
    results = store.open()

    assert results[-1]["status"] == "applied"
    assert store.count(DEFAULT_LOAD_ID) == 1
    assert store.new_load().count() == 0
