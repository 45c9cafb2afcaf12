import logging
from typing import Optional

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.engine.url import make_url
from sqlalchemy.pool import StaticPool

from record_transfer.core.config import settings

logger = logging.getLogger(__name__)

_engine: Optional[Engine] = None


def _is_in_memory(url: str) -> bool:
    parsed = make_url(url)
    return parsed.get_backend_name() == "sqlite" and parsed.database in (None, "", ":memory:")


def create_staging_engine(url: Optional[str] = None) -> Engine:
    """
    Create an engine for the local staging database.

    In-memory SQLite URLs share one connection across threads so every
    session (and the parse worker) sees the same database.
    """
    url = url or settings.staging_db_url
    kwargs = {}
    if make_url(url).get_backend_name() == "sqlite":
        kwargs["connect_args"] = {"check_same_thread": False}
        if _is_in_memory(url):
            kwargs["poolclass"] = StaticPool

    engine = create_engine(url, **kwargs)

    if engine.dialect.name == "sqlite":
        @event.listens_for(engine, "connect")
        def _set_sqlite_pragmas(dbapi_connection, connection_record):  # pragma: no cover - driver hook
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=NORMAL")
            cursor.close()

    # Test connection eagerly so failures surface immediately.
    with engine.connect() as conn:
        conn.execute(text("SELECT 1"))
    logger.info("Staging database ready at %s", make_url(url).render_as_string(hide_password=True))
    return engine


def get_engine() -> Engine:
    global _engine
    if _engine is None:
        _engine = create_staging_engine()
    return _engine
