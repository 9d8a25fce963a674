import logging
import socket
from contextlib import closing

from sqlalchemy import MetaData, create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.engine.url import make_url

from import_engine.core.config import settings

logger = logging.getLogger(__name__)

_engine = None

# Shared metadata for every table owned by the import engine.
metadata = MetaData()


def _report_connection_failure(exc: Exception) -> None:
    """Log high-signal diagnostics when the application cannot reach the database."""
    logger.warning("Could not connect to database: %s", exc)
    logger.warning("Database operations will fail until the connection succeeds.")

    try:
        url = make_url(settings.database_url)
    except Exception as parse_error:  # pragma: no cover
        logger.warning("Unable to parse DATABASE_URL (%s); skipping detailed diagnostics.", parse_error)
        return

    if url.get_backend_name() == "sqlite":
        return

    logger.warning(
        "Database connection settings: dialect=%s driver=%s host=%s port=%s database=%s user=%s",
        url.get_backend_name(),
        url.get_driver_name() or "default",
        url.host or "localhost",
        url.port or "(default)",
        url.database,
        url.username,
    )

    host = url.host or "localhost"
    port = url.port or 5432
    try:
        with closing(socket.create_connection((host, port), timeout=2)):
            logger.warning("Socket check: able to reach %s:%s", host, port)
    except OSError as socket_err:
        logger.warning("Socket check: unable to reach %s:%s (%s)", host, port, socket_err)


def _build_engine() -> Engine:
    url = make_url(settings.database_url)
    kwargs = {"pool_pre_ping": True}
    if url.get_backend_name() == "sqlite":
        # Worker threads share the pool; sqlite connections must be allowed to cross threads.
        kwargs["connect_args"] = {"check_same_thread": False, "timeout": 30}
    return create_engine(settings.database_url, **kwargs)


def get_engine() -> Engine:
    global _engine
    if _engine is None:
        try:
            _engine = _build_engine()
            # Test connection eagerly so failures surface immediately.
            with _engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except Exception as e:
            _report_connection_failure(e)
            # Create the engine anyway so callers can proceed (may still fail later).
            _engine = _build_engine()
    return _engine


def reset_engine() -> None:
    """Dispose the cached engine so the next call to get_engine() honours new settings."""
    global _engine
    if _engine is not None:
        _engine.dispose()
    _engine = None
