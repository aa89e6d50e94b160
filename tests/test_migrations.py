import logging
import os

import pytest

os.environ.setdefault("DB_BACKEND", "sqlite")

from alembic import command
from sqlalchemy import create_engine, inspect

import core.config as config
from core.db import DB, _get_alembic_config, _get_schema_revisions, init_db
from core.models import Base


@pytest.fixture
def sqlite_url(tmp_path, monkeypatch):
    url = f"sqlite:///{tmp_path / 'migrated.sqlite'}"
    monkeypatch.setattr(config, "DB_BACKEND", "sqlite")
    monkeypatch.setattr(config, "DATABASE_URL", url)
    return url


def test_upgrade_creates_every_mapped_table(sqlite_url):
    command.upgrade(_get_alembic_config(), "head")

    engine = create_engine(sqlite_url)
    try:
        inspector = inspect(engine)
        tables = set(inspector.get_table_names())
        assert set(Base.metadata.tables) <= tables
        audit_indexes = {index["name"] for index in inspector.get_indexes("audit_events")}
        assert {"ix_audit_events_entity", "ix_audit_events_lab_id"} <= audit_indexes
        task_columns = {column["name"] for column in inspector.get_columns("tasks")}
        assert {"is_active", "deleted_at", "deleted_by_id"} <= task_columns

        current, head = _get_schema_revisions(engine)
        assert current == head
    finally:
        engine.dispose()


def test_downgrade_to_base_drops_tables(sqlite_url):
    alembic_cfg = _get_alembic_config()
    command.upgrade(alembic_cfg, "head")
    command.downgrade(alembic_cfg, "base")

    engine = create_engine(sqlite_url)
    try:
        assert set(inspect(engine).get_table_names()) <= {"alembic_version"}
    finally:
        engine.dispose()


def test_init_db_migrates_on_startup(sqlite_url, monkeypatch, caplog):
    monkeypatch.setattr(config, "AUTO_MIGRATE_ON_STARTUP", True)
    previous_engine = DB.engine
    previous_session = DB.SessionLocal
    try:
        with caplog.at_level(logging.INFO, logger="labops"):
            init_db()
        current, head = _get_schema_revisions(DB.engine)
        assert current == head
        revision_logs = [record for record in caplog.records if record.getMessage() == "schema_revision"]
        assert revision_logs[0].current_revision is None
        assert revision_logs[0].head_revision == head
    finally:
        if DB.engine is not None and DB.engine is not previous_engine:
            DB.engine.dispose()
        DB.engine = previous_engine
        DB.SessionLocal = previous_session


def test_init_db_refuses_stale_schema_without_auto_migrate(sqlite_url, monkeypatch):
    monkeypatch.setattr(config, "AUTO_MIGRATE_ON_STARTUP", False)
    previous_engine = DB.engine
    previous_session = DB.SessionLocal
    try:
        with pytest.raises(RuntimeError, match="schema out of date"):
            init_db()
    finally:
        if DB.engine is not None and DB.engine is not previous_engine:
            DB.engine.dispose()
        DB.engine = previous_engine
        DB.SessionLocal = previous_session
