from __future__ import annotations

from pathlib import Path

import pytest
from sqlalchemy import select

from backend.app.core.database import Database, DatabaseSettings, resolve_database_url, session_scope
from backend.app.db.models import DbUser


def test_database_rejects_bare_path(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("MARGIN_DATABASE_URL", "postgresql+psycopg://u:p@localhost:5432/db")

    with pytest.raises(RuntimeError):
        Database(str(tmp_path / "app.db"))


def test_database_requires_a_url(monkeypatch) -> None:
    monkeypatch.delenv("MARGIN_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)

    with pytest.raises(RuntimeError):
        resolve_database_url()


def test_database_url_resolution_order(monkeypatch) -> None:
    monkeypatch.setenv("MARGIN_DATABASE_URL", "postgresql+psycopg://margin/db")
    monkeypatch.setenv("DATABASE_URL", "postgresql+psycopg://fallback/db")

    assert resolve_database_url("sqlite:///explicit.db") == "sqlite:///explicit.db"
    assert resolve_database_url() == "postgresql+psycopg://margin/db"

    monkeypatch.delenv("MARGIN_DATABASE_URL")
    assert resolve_database_url() == "postgresql+psycopg://fallback/db"


def test_backend_name_strips_driver() -> None:
    assert DatabaseSettings("postgresql+psycopg://localhost/db").backend == "postgresql"
    assert DatabaseSettings("sqlite:///x.db").backend == "sqlite"


def test_session_rolls_back_on_error(db) -> None:
    with pytest.raises(RuntimeError):
        with db.session() as session:
            session.add(DbUser(id="rollback-user", email="rollback@example.com", name="R", created_at=0))
            session.flush()
            raise RuntimeError("abort")

    with db.session() as session:
        assert session.scalar(select(DbUser).where(DbUser.id == "rollback-user")) is None


def test_session_scope_joins_callers_session(db) -> None:
    with db.session() as outer:
        with session_scope(db, outer) as joined:
            assert joined is outer
