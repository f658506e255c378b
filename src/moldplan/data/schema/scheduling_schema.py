from __future__ import annotations

import sqlite3


def ensure_schema(con: sqlite3.Connection) -> None:
    con.executescript(
        """
        CREATE TABLE IF NOT EXISTS scheduling_plan (
            plan_id INTEGER PRIMARY KEY AUTOINCREMENT,
            plan_number TEXT NOT NULL UNIQUE,
            material_id INTEGER NOT NULL,
            planned_quantity INTEGER NOT NULL,
            due_date TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'unscheduled'
                CHECK(status IN ('unscheduled', 'scheduled', 'cancelled')),
            order_number TEXT,
            customer TEXT,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY(material_id) REFERENCES core_material(material_id)
        );

        CREATE INDEX IF NOT EXISTS idx_plan_status_due ON scheduling_plan(status, due_date);

        CREATE TABLE IF NOT EXISTS scheduling_task (
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
            status TEXT NOT NULL DEFAULT 'pending'
                CHECK(status IN ('pending', 'in_progress', 'completed', 'cancelled')),
            scheduling_rule TEXT,
            scheduling_reason TEXT,
            sync_group TEXT,
            erp_task_number TEXT,
            run_id TEXT,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY(plan_id) REFERENCES scheduling_plan(plan_id),
            FOREIGN KEY(device_id) REFERENCES core_device(device_id),
            FOREIGN KEY(mold_id) REFERENCES core_mold(mold_id)
        );

        CREATE INDEX IF NOT EXISTS idx_task_plan ON scheduling_task(plan_id);
        CREATE INDEX IF NOT EXISTS idx_task_device_start ON scheduling_task(device_id, planned_start_time);

        CREATE TABLE IF NOT EXISTS scheduling_run (
            run_id TEXT PRIMARY KEY,
            started_at TEXT NOT NULL,
            finished_at TEXT,
            status TEXT NOT NULL DEFAULT 'running' CHECK(status IN ('running', 'success', 'failed')),
            message TEXT,
            task_count INTEGER NOT NULL DEFAULT 0,
            skipped_count INTEGER NOT NULL DEFAULT 0
        );

        CREATE TABLE IF NOT EXISTS scheduling_lock (
            lock_name TEXT PRIMARY KEY,
            run_id TEXT NOT NULL,
            acquired_at TEXT NOT NULL
        );
        """
    )
