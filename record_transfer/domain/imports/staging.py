"""
Local staging store for very large import files.

Rows are buffered in a SQLite table (through SQLAlchemy) instead of process
memory. Keys come from an AUTOINCREMENT column, so they grow monotonically and
are never reused for the life of the database, even across ``clear()`` calls.
Each import writes its rows under its own load id, so imports sharing one
store never see or clear each other's rows. The same database hosts the
durable operation queue that imports can push packages to instead of
executing them.
"""

import json
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

from sqlalchemy import text
from sqlalchemy.engine import Connection, Engine

from record_transfer.db.migrations import Migration, apply_migrations
from record_transfer.db.session import get_engine
from record_transfer.domain.imports.sources import Page, PagedSource, RawRow, effective_page_size
from record_transfer.utils.serialization import make_json_safe

logger = logging.getLogger(__name__)


def _create_rows_table(conn: Connection) -> None:
    conn.execute(text("""
        CREATE TABLE IF NOT EXISTS staging_rows (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            payload TEXT NOT NULL
        )
    """))


def _create_operation_queue(conn: Connection) -> None:
    conn.execute(text("""
        CREATE TABLE IF NOT EXISTS operation_queue (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            context TEXT NOT NULL,
            operation TEXT NOT NULL,
            data TEXT NOT NULL,
            created_at TEXT NOT NULL
        )
    """))
    conn.execute(text(
        "CREATE INDEX IF NOT EXISTS ix_operation_queue_context ON operation_queue (context)"
    ))


def _add_load_id(conn: Connection) -> None:
    conn.execute(text("ALTER TABLE staging_rows ADD COLUMN load_id TEXT NOT NULL DEFAULT ''"))
    conn.execute(text(
        "CREATE INDEX IF NOT EXISTS ix_staging_rows_load_id ON staging_rows (load_id, id)"
    ))


STAGING_MIGRATIONS: List[Migration] = [
    Migration(version=1, name="create_staging_rows", migrate=_create_rows_table),
    Migration(version=2, name="create_operation_queue", migrate=_create_operation_queue),
    Migration(version=3, name="add_staging_load_id", migrate=_add_load_id),
]

# Load id of rows written without an explicit load
DEFAULT_LOAD_ID = ""


def _load_filter(load_id: Optional[str]) -> Tuple[str, Dict[str, Any]]:
    if load_id is None:
        return "", {}
    return " AND load_id = :load_id", {"load_id": load_id}


class StagingStore(PagedSource):
    """Versioned, key-ordered row buffer. Readable any number of times until cleared."""

    def __init__(self, engine: Optional[Engine] = None, migrations: Optional[Sequence[Migration]] = None):
        self._engine = engine
        self._migrations = list(migrations if migrations is not None else STAGING_MIGRATIONS)
        self._opened = False

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            self._engine = get_engine()
        return self._engine

    def open(self) -> List[Dict[str, Any]]:
        """Apply pending migrations. Safe to call more than once per session."""
        results = apply_migrations(self.engine, self._migrations)
        applied = [result["version"] for result in results if result["status"] == "applied"]
        if applied:
            logger.info("Staging store migrated to version %d (applied %s)", applied[-1], applied)
        self._opened = True
        return results

    def _ensure_open(self) -> None:
        if not self._opened:
            self.open()

    def clear(self, load_id: Optional[str] = None) -> None:
        """Remove staged rows (one load, or every load); keys keep increasing afterwards."""
        self._ensure_open()
        scope, params = _load_filter(load_id)
        with self.engine.begin() as conn:
            conn.execute(text("DELETE FROM staging_rows WHERE 1 = 1" + scope), params)

    def add_rows(self, rows: Iterable[RawRow], load_id: str = DEFAULT_LOAD_ID) -> int:
        """
        Append rows in a single transaction.

        Returns:
            Number of rows written
        """
        self._ensure_open()
        payloads = [{"payload": json.dumps(make_json_safe(row)), "load_id": load_id} for row in rows]
        if not payloads:
            return 0
        with self.engine.begin() as conn:
            conn.execute(
                text("INSERT INTO staging_rows (payload, load_id) VALUES (:payload, :load_id)"), payloads
            )
        return len(payloads)

    def count(self, load_id: Optional[str] = None) -> int:
        self._ensure_open()
        scope, params = _load_filter(load_id)
        with self.engine.connect() as conn:
            return int(
                conn.execute(text("SELECT COUNT(*) FROM staging_rows WHERE 1 = 1" + scope), params).scalar() or 0
            )

    def min_key(self, load_id: Optional[str] = None) -> Optional[int]:
        self._ensure_open()
        scope, params = _load_filter(load_id)
        with self.engine.connect() as conn:
            value = conn.execute(text("SELECT MIN(id) FROM staging_rows WHERE 1 = 1" + scope), params).scalar()
        return int(value) if value is not None else None

    def _max_key(self, load_id: Optional[str]) -> Optional[int]:
        scope, params = _load_filter(load_id)
        with self.engine.connect() as conn:
            value = conn.execute(text("SELECT MAX(id) FROM staging_rows WHERE 1 = 1" + scope), params).scalar()
        return int(value) if value is not None else None

    def read_all(self, page_size: Optional[int] = None, load_id: Optional[str] = None) -> Iterator[Page]:
        """
        Range-scan the staged rows in key order.

        The total is taken once at the start; the key window starts at the
        smallest key and advances by ``page_size`` until that many rows have
        been read. With ``load_id`` only that load's rows are scanned.
        """
        size = effective_page_size(page_size)
        total = self.count(load_id)
        if total == 0:
            return
        scope, params = _load_filter(load_id)
        lower = self.min_key(load_id)
        upper_bound = self._max_key(load_id)
        read = 0
        while read < total and lower is not None and lower <= upper_bound:
            with self.engine.connect() as conn:
                result = conn.execute(
                    text(
                        "SELECT payload FROM staging_rows "
                        "WHERE id >= :lower AND id < :upper" + scope + " ORDER BY id"
                    ),
                    {"lower": lower, "upper": lower + size, **params},
                )
                rows = [json.loads(payload) for (payload,) in result]
            lower += size
            if not rows:
                continue
            read += len(rows)
            yield Page(rows)

    def new_load(self) -> "StagingLoad":
        """Start a load whose rows are isolated from every other load in the store."""
        self._ensure_open()
        return StagingLoad(self, uuid.uuid4().hex)

    # Operation queue -----------------------------------------------------

    def push_range(self, packages: Sequence[Any], context: str, operation: str) -> int:
        """
        Enqueue packages to the durable operation queue in one transaction.

        Args:
            packages: Operation packages (pydantic models or plain dicts)
            context: Queue context the consumer polls
            operation: Request kind the packages are meant for

        Returns:
            Number of queued entries
        """
        self._ensure_open()
        created_at = datetime.now(timezone.utc).isoformat()
        entries = [
            {
                "context": context,
                "operation": operation,
                "data": json.dumps(make_json_safe(package)),
                "created_at": created_at,
            }
            for package in packages
        ]
        if not entries:
            return 0
        with self.engine.begin() as conn:
            conn.execute(
                text(
                    "INSERT INTO operation_queue (context, operation, data, created_at) "
                    "VALUES (:context, :operation, :data, :created_at)"
                ),
                entries,
            )
        logger.debug("Queued %d %s operations for %s", len(entries), operation, context)
        return len(entries)

    def queued_operations(self, context: Optional[str] = None) -> List[Dict[str, Any]]:
        """Return queued entries (oldest first), optionally for one context."""
        self._ensure_open()
        query = "SELECT id, context, operation, data, created_at FROM operation_queue"
        params: Dict[str, Any] = {}
        if context is not None:
            query += " WHERE context = :context"
            params["context"] = context
        query += " ORDER BY id"
        with self.engine.connect() as conn:
            rows = conn.execute(text(query), params).mappings().all()
        return [
            {
                "id": row["id"],
                "context": row["context"],
                "operation": row["operation"],
                "data": json.loads(row["data"]),
                "created_at": row["created_at"],
            }
            for row in rows
        ]


class StagingLoad(PagedSource):
    """The rows of one load. Concurrent imports sharing a store each get their own."""

    def __init__(self, store: StagingStore, load_id: str):
        self.store = store
        self.load_id = load_id

    def clear(self) -> None:
        self.store.clear(self.load_id)

    def add_rows(self, rows: Iterable[RawRow]) -> int:
        return self.store.add_rows(rows, load_id=self.load_id)

    def count(self) -> int:
        return self.store.count(self.load_id)

    def min_key(self) -> Optional[int]:
        return self.store.min_key(self.load_id)

    def read_all(self, page_size: Optional[int] = None) -> Iterator[Page]:
        return self.store.read_all(page_size, load_id=self.load_id)
