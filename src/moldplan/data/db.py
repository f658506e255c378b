from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from pathlib import Path

from moldplan.data.schema import ensure_core_schema, ensure_scheduling_schema


class Db:
    def __init__(self, path: Path):
        self.path = path
        self.path.parent.mkdir(parents=True, exist_ok=True)

    @contextmanager
    def connect(self, *, immediate: bool = False):
        """Yield a connection wrapped in one transaction (commit on success, rollback on error).

        immediate=True takes the SQLite write lock up front (BEGIN IMMEDIATE) so
        read-check-write sequences cannot interleave with another writer.
        """
        con = sqlite3.connect(self.path, timeout=20.0)
        con.row_factory = sqlite3.Row
        try:
            con.execute("PRAGMA foreign_keys=ON;")
            if immediate:
                con.execute("BEGIN IMMEDIATE")
            yield con
            con.commit()
        except Exception:
            con.rollback()
            raise
        finally:
            con.close()

    def ensure_schema(self) -> None:
        con = sqlite3.connect(self.path, timeout=10.0)
        try:
            con.execute("PRAGMA journal_mode=WAL;")
            con.execute("PRAGMA foreign_keys=ON;")
            ensure_core_schema(con)
            ensure_scheduling_schema(con)

            # scheduling_task v2: sync_group column (rule 9 reservations)
            if self._table_exists(con, "scheduling_task"):
                cols = [r[1] for r in con.execute("PRAGMA table_info(scheduling_task)").fetchall()]
                if "sync_group" not in cols:
                    con.execute("ALTER TABLE scheduling_task ADD COLUMN sync_group TEXT")

            con.commit()
        finally:
            con.close()

    def _table_exists(self, con: sqlite3.Connection, table_name: str) -> bool:
        """Check if a table exists in the database."""
        row = con.execute(
            "SELECT 1 FROM sqlite_master WHERE type='table' AND name=?",
            (table_name,),
        ).fetchone()
        return row is not None
