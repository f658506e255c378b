"""Tests for database schema and migrations."""

import sqlite3

import pytest

from moldplan.data.db import Db
from moldplan.data.repository import Repository


@pytest.fixture
def temp_db(tmp_path):
    db_path = tmp_path / "test.db"
    return Db(db_path), db_path


def test_ensure_schema_creates_all_tables(temp_db):
    db, _ = temp_db
    db.ensure_schema()

    with db.connect() as con:
        tables = {row[0] for row in con.execute("SELECT name FROM sqlite_master WHERE type='table'").fetchall()}

    # master data
    assert "core_material" in tables
    assert "core_device" in tables
    assert "core_mold" in tables
    assert "core_material_device_relation" in tables
    assert "core_material_mold_relation" in tables
    assert "core_config" in tables
    assert "core_audit_log" in tables

    # scheduling
    assert "scheduling_plan" in tables
    assert "scheduling_task" in tables
    assert "scheduling_run" in tables
    assert "scheduling_lock" in tables


def test_ensure_schema_is_idempotent(temp_db):
    db, _ = temp_db
    db.ensure_schema()
    db.ensure_schema()
    repo = Repository(db)
    repo.upsert_material(material_code="MAT-1")
    db.ensure_schema()
    with db.connect() as con:
        assert con.execute("SELECT COUNT(*) FROM core_material").fetchone()[0] == 1


def test_sync_group_column_added_to_old_task_table(temp_db):
    db, db_path = temp_db
    con = sqlite3.connect(db_path)
    con.execute(
        """
        CREATE TABLE scheduling_task (
            task_id INTEGER PRIMARY KEY AUTOINCREMENT,
            task_number TEXT NOT NULL UNIQUE,
            plan_id INTEGER NOT NULL,
            device_id INTEGER NOT NULL,
            mold_id INTEGER NOT NULL,
            task_quantity INTEGER NOT NULL,
            due_date TEXT NOT NULL,
            planned_start_time TEXT,
            planned_end_time TEXT,
            is_overdue INTEGER NOT NULL DEFAULT 0,
            status TEXT NOT NULL DEFAULT 'pending',
            scheduling_rule TEXT,
            scheduling_reason TEXT,
            erp_task_number TEXT,
            run_id TEXT,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """
    )
    con.commit()
    con.close()

    db.ensure_schema()

    with db.connect() as con:
        cols = {r[1] for r in con.execute("PRAGMA table_info(scheduling_task)").fetchall()}
    assert "sync_group" in cols


def test_connect_rolls_back_on_error(temp_db):
    db, _ = temp_db
    db.ensure_schema()
    with pytest.raises(RuntimeError):
        with db.connect() as con:
            con.execute("INSERT INTO core_material(material_code, material_name) VALUES('X', 'X')")
            raise RuntimeError("boom")
    with db.connect() as con:
        assert con.execute("SELECT COUNT(*) FROM core_material").fetchone()[0] == 0


def test_device_status_is_checked(temp_db):
    db, _ = temp_db
    db.ensure_schema()
    repo = Repository(db)
    with pytest.raises(ValueError):
        repo.upsert_device(device_code="D1", capacity_per_hour=10, status="broken")
    with pytest.raises(sqlite3.IntegrityError):
        with db.connect() as con:
            con.execute(
                "INSERT INTO core_device(device_code, device_name, status) VALUES('D2', 'D2', 'broken')"
            )
