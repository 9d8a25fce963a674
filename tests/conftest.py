"""
Pytest configuration and fixtures for the import engine tests.

Every test gets its own SQLite database and a local storage directory under
tmp_path, so tests never need a running PostgreSQL or object store.
"""

import io
import os
import uuid

# Tables are created on demand by the stores; the app lifespan has nothing to bootstrap.
os.environ.setdefault("SKIP_DB_INIT", "1")

import pytest

from import_engine.core.config import settings
from import_engine.db import records
from import_engine.db.session import reset_engine
from import_engine.domain.imports import jobs, queue
from import_engine.integrations import storage


def _reset_tables() -> None:
    jobs._reset_table_flag()
    queue._reset_table_flag()
    records._reset_table_flag()


def _use_database(monkeypatch, path) -> None:
    monkeypatch.setattr(settings, "database_url", f"sqlite:///{path}")
    reset_engine()
    _reset_tables()


@pytest.fixture(autouse=True)
def isolated_database(tmp_path, monkeypatch):
    """Point the engine at a fresh SQLite file for the duration of one test."""
    _use_database(monkeypatch, tmp_path / "import_engine.db")
    yield
    reset_engine()
    _reset_tables()


@pytest.fixture(autouse=True)
def local_storage(tmp_path, monkeypatch):
    """Local filesystem storage and zero retry delays."""
    root = tmp_path / "storage"
    monkeypatch.setattr(settings, "storage_provider", "local")
    monkeypatch.setattr(settings, "storage_local_root", str(root))
    monkeypatch.setattr(settings, "import_retry_base_delay_seconds", 0.0)
    monkeypatch.setattr(settings, "import_retry_max_delay_seconds", 0.0)
    monkeypatch.setattr(settings, "import_error_log_limit", 100)
    return root


@pytest.fixture
def switch_database(tmp_path, monkeypatch):
    """Swap in another empty database, e.g. to compare two runs of the same file."""

    def _switch(name: str) -> None:
        _use_database(monkeypatch, tmp_path / f"{name}.db")

    return _switch


@pytest.fixture
def store_file():
    """Write bytes (or text, encoded as UTF-8) into storage and return the path."""

    def _store(file_path: str, content) -> str:
        if isinstance(content, str):
            content = content.encode("utf-8")
        storage.upload_fileobj(io.BytesIO(content), file_path)
        return file_path

    return _store


@pytest.fixture
def make_job(store_file):
    """Store a file and create an `uploaded` job for it."""

    def _make(content, *, file_name: str = "leads.csv", module: str = "leads", owner_id: str = "user-1"):
        if isinstance(content, str):
            content = content.encode("utf-8")
        file_path = store_file(f"imports/{module}/{uuid.uuid4().hex}/{file_name}", content)
        return jobs.create_import_job(
            owner_id=owner_id,
            file_name=file_name,
            file_path=file_path,
            file_size_bytes=len(content),
            module=module,
        )

    return _make


def leads_csv(rows, header: str = "Nome,Telefone") -> str:
    """Build a small leads CSV from (name, phone) pairs."""
    lines = [header] + [f"{name},{phone}" for name, phone in rows]
    return "\n".join(lines) + "\n"


def numbered_leads(count: int, *, start: int = 0):
    """`count` distinct valid (name, phone) pairs."""
    return [(f"Lead {i}", f"119{i:08d}") for i in range(start, start + count)]
