"""
Versioned schema migrations for the local staging database.

A migration is a version-tagged function receiving an open connection. On
open, every migration whose version is above the stored version runs once,
in ascending version order, each in its own transaction together with the
version bump. Rerunning ``apply_migrations`` after the target version has
been reached is a no-op.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Sequence

from sqlalchemy import inspect, text
from sqlalchemy.engine import Connection, Engine

logger = logging.getLogger(__name__)

VERSION_TABLE = "schema_version"


class StagingMigrationError(Exception):
    """Raised when the migration list is inconsistent or a migration fails."""


@dataclass(frozen=True)
class Migration:
    version: int
    name: str
    migrate: Callable[[Connection], None]


def _ensure_version_table(conn: Connection) -> None:
    conn.execute(text(f"CREATE TABLE IF NOT EXISTS {VERSION_TABLE} (version INTEGER NOT NULL)"))


def get_schema_version(engine: Engine) -> int:
    """Return the stored schema version, 0 for a fresh database."""
    with engine.connect() as conn:
        if not inspect(conn).has_table(VERSION_TABLE):
            return 0
        row = conn.execute(text(f"SELECT MAX(version) FROM {VERSION_TABLE}")).fetchone()
    return int(row[0]) if row and row[0] is not None else 0


def _validate(migrations: Sequence[Migration]) -> List[Migration]:
    ordered = sorted(migrations, key=lambda migration: migration.version)
    seen = set()
    for migration in ordered:
        if migration.version < 1:
            raise StagingMigrationError(
                f"Migration '{migration.name}' has invalid version {migration.version}"
            )
        if migration.version in seen:
            raise StagingMigrationError(f"Duplicate migration version {migration.version}")
        seen.add(migration.version)
    return ordered


def apply_migrations(engine: Engine, migrations: Sequence[Migration]) -> List[Dict[str, Any]]:
    """
    Bring the database up to the highest migration version.

    Args:
        engine: Engine bound to the staging database
        migrations: Version-tagged migrations (any order; versions must be unique)

    Returns:
        One result dict per migration with status ``applied`` or ``already_applied``
    """
    ordered = _validate(migrations)

    with engine.begin() as conn:
        _ensure_version_table(conn)
    current = get_schema_version(engine)

    results: List[Dict[str, Any]] = []
    for migration in ordered:
        result: Dict[str, Any] = {
            "version": migration.version,
            "name": migration.name,
            "status": "pending",
        }
        if migration.version <= current:
            result["status"] = "already_applied"
            results.append(result)
            continue

        logger.info("Staging migration %d (%s): applying", migration.version, migration.name)
        try:
            with engine.begin() as conn:
                migration.migrate(conn)
                conn.execute(
                    text(f"INSERT INTO {VERSION_TABLE} (version) VALUES (:version)"),
                    {"version": migration.version},
                )
        except Exception as exc:
            raise StagingMigrationError(
                f"Migration {migration.version} ({migration.name}) failed: {exc}"
            ) from exc

        current = migration.version
        result["status"] = "applied"
        results.append(result)

    return results
