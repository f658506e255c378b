from __future__ import annotations

import sqlite3


def ensure_schema(con: sqlite3.Connection) -> None:
    con.executescript(
        """
        CREATE TABLE IF NOT EXISTS core_audit_log (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            timestamp TEXT NOT NULL DEFAULT(datetime('now', 'localtime')),
            category TEXT NOT NULL,
            message TEXT NOT NULL,
            details TEXT
        );

        CREATE TABLE IF NOT EXISTS core_config (
            config_key TEXT PRIMARY KEY,
            config_value TEXT NOT NULL,
            updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
        );

        CREATE TABLE IF NOT EXISTS core_material (
            material_id INTEGER PRIMARY KEY AUTOINCREMENT,
            material_code TEXT NOT NULL UNIQUE,
            material_name TEXT NOT NULL,
            material_type TEXT,
            status TEXT NOT NULL DEFAULT 'active' CHECK(status IN ('active', 'inactive')),
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
        );

        CREATE TABLE IF NOT EXISTS core_device (
            device_id INTEGER PRIMARY KEY AUTOINCREMENT,
            device_code TEXT NOT NULL UNIQUE,
            device_name TEXT NOT NULL,
            specifications TEXT,
            status TEXT NOT NULL DEFAULT 'normal'
                CHECK(status IN ('normal', 'maintenance', 'idle', 'scrapped')),
            capacity_per_hour INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
        );

        CREATE TABLE IF NOT EXISTS core_mold (
            mold_id INTEGER PRIMARY KEY AUTOINCREMENT,
            mold_code TEXT NOT NULL UNIQUE,
            mold_name TEXT NOT NULL,
            specifications TEXT,
            quantity INTEGER NOT NULL DEFAULT 1,
            status TEXT NOT NULL DEFAULT 'normal'
                CHECK(status IN ('normal', 'maintenance', 'idle', 'scrapped')),
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
        );

        CREATE TABLE IF NOT EXISTS core_material_device_relation (
            material_id INTEGER NOT NULL,
            device_id INTEGER NOT NULL,
            weight INTEGER NOT NULL DEFAULT 50,
            PRIMARY KEY (material_id, device_id),
            FOREIGN KEY(material_id) REFERENCES core_material(material_id),
            FOREIGN KEY(device_id) REFERENCES core_device(device_id)
        );

        CREATE TABLE IF NOT EXISTS core_material_mold_relation (
            material_id INTEGER NOT NULL,
            mold_id INTEGER NOT NULL,
            weight INTEGER NOT NULL DEFAULT 50,
            cycle_time INTEGER NOT NULL DEFAULT 0,
            output_per_cycle INTEGER NOT NULL DEFAULT 1,
            PRIMARY KEY (material_id, mold_id),
            FOREIGN KEY(material_id) REFERENCES core_material(material_id),
            FOREIGN KEY(mold_id) REFERENCES core_mold(mold_id)
        );

        CREATE INDEX IF NOT EXISTS idx_mold_relation_mold ON core_material_mold_relation(mold_id);
        """
    )
