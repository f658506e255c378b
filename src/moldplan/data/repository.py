from __future__ import annotations

import logging
import sqlite3
from datetime import datetime

from moldplan.core.models import PLAN_STATUSES, PLAN_UNSCHEDULED, RESOURCE_STATUSES, AuditEntry
from moldplan.data.db import Db
from moldplan.data.excel_io import (
    coerce_datetime,
    coerce_str,
    is_blank,
    normalize_columns,
    parse_int_strict,
    read_excel_bytes,
)

logger = logging.getLogger(__name__)

# Excel headers accepted for the plan import sheet (normalized -> canonical)
PLAN_IMPORT_ALIASES = {
    "plan": "plan_number",
    "plan_no": "plan_number",
    "numero_plan": "plan_number",
    "material": "material_code",
    "codigo_material": "material_code",
    "quantity": "planned_quantity",
    "qty": "planned_quantity",
    "cantidad": "planned_quantity",
    "due": "due_date",
    "fecha_entrega": "due_date",
    "order": "order_number",
    "pedido": "order_number",
    "cliente": "customer",
}


class Repository:
    """Master data, plans, config and audit log.

    Scheduling-specific reads/writes (snapshot inputs, commit, reset) live in
    `SchedulingRepositoryImpl`, reachable through `repo.scheduling`.
    """

    def __init__(self, db: Db):
        from moldplan.scheduling.scheduling_repository import SchedulingRepositoryImpl

        self.db = db
        self.scheduling = SchedulingRepositoryImpl(db=db, data_repo=self)

    # ---------- Audit ----------

    def log_audit(self, category: str, message: str, details: str | None = None) -> None:
        """Record a business event in the audit log."""
        try:
            with self.db.connect() as con:
                con.execute(
                    "INSERT INTO core_audit_log (category, message, details) VALUES (?, ?, ?)",
                    (category, message, details),
                )
        except Exception:
            # Audit failures must not abort the business operation that triggered them.
            logger.exception("Failed to write audit log entry (%s: %s)", category, message)

    def get_recent_audit_entries(self, limit: int = 100) -> list[AuditEntry]:
        with self.db.connect() as con:
            rows = con.execute("SELECT * FROM core_audit_log ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
        return [
            AuditEntry(
                id=row["id"],
                timestamp=row["timestamp"],
                category=row["category"],
                message=row["message"],
                details=row["details"],
            )
            for row in rows
        ]

    # ---------- Config ----------

    def get_config(self, *, key: str, default: str | None = None) -> str | None:
        key = str(key).strip()
        if not key:
            raise ValueError("config key vacío")
        with self.db.connect() as con:
            row = con.execute("SELECT config_value FROM core_config WHERE config_key = ?", (key,)).fetchone()
        if row is None:
            return default
        return str(row[0])

    def set_config(self, *, key: str, value: str) -> None:
        key = str(key).strip()
        if not key:
            raise ValueError("config key vacío")
        old_val = self.get_config(key=key, default="(none)")
        with self.db.connect() as con:
            con.execute(
                """
                INSERT INTO core_config(config_key, config_value, updated_at)
                VALUES(?, ?, CURRENT_TIMESTAMP)
                ON CONFLICT(config_key) DO UPDATE SET
                    config_value = excluded.config_value,
                    updated_at = CURRENT_TIMESTAMP
                """,
                (key, str(value)),
            )
        self.log_audit("CONFIG", f"Updated '{key}'", f"From '{old_val}' to '{value}'")

    # ---------- Master data ----------

    def upsert_material(self, *, material_code: str, material_name: str | None = None, material_type: str | None = None) -> int:
        code = str(material_code or "").strip()
        if not code:
            raise ValueError("material_code vacío")
        with self.db.connect() as con:
            con.execute(
                """
                INSERT INTO core_material(material_code, material_name, material_type)
                VALUES(?, ?, ?)
                ON CONFLICT(material_code) DO UPDATE SET
                    material_name = excluded.material_name,
                    material_type = excluded.material_type,
                    updated_at = CURRENT_TIMESTAMP
                """,
                (code, material_name or code, material_type),
            )
            row = con.execute("SELECT material_id FROM core_material WHERE material_code = ?", (code,)).fetchone()
        return int(row["material_id"])

    def upsert_device(
        self,
        *,
        device_code: str,
        capacity_per_hour: int,
        device_name: str | None = None,
        status: str = "normal",
    ) -> int:
        code = str(device_code or "").strip()
        if not code:
            raise ValueError("device_code vacío")
        if status not in RESOURCE_STATUSES:
            raise ValueError(f"status de equipo inválido: {status!r}")
        cap = int(capacity_per_hour)
        if cap < 0:
            raise ValueError(f"capacity_per_hour negativa: {cap}")
        with self.db.connect() as con:
            con.execute(
                """
                INSERT INTO core_device(device_code, device_name, capacity_per_hour, status)
                VALUES(?, ?, ?, ?)
                ON CONFLICT(device_code) DO UPDATE SET
                    device_name = excluded.device_name,
                    capacity_per_hour = excluded.capacity_per_hour,
                    status = excluded.status,
                    updated_at = CURRENT_TIMESTAMP
                """,
                (code, device_name or code, cap, status),
            )
            row = con.execute("SELECT device_id FROM core_device WHERE device_code = ?", (code,)).fetchone()
        return int(row["device_id"])

    def upsert_mold(
        self,
        *,
        mold_code: str,
        quantity: int = 1,
        mold_name: str | None = None,
        status: str = "normal",
    ) -> int:
        code = str(mold_code or "").strip()
        if not code:
            raise ValueError("mold_code vacío")
        if status not in RESOURCE_STATUSES:
            raise ValueError(f"status de molde inválido: {status!r}")
        qty = int(quantity)
        if qty < 0:
            raise ValueError(f"quantity de molde negativa: {qty}")
        with self.db.connect() as con:
            con.execute(
                """
                INSERT INTO core_mold(mold_code, mold_name, quantity, status)
                VALUES(?, ?, ?, ?)
                ON CONFLICT(mold_code) DO UPDATE SET
                    mold_name = excluded.mold_name,
                    quantity = excluded.quantity,
                    status = excluded.status,
                    updated_at = CURRENT_TIMESTAMP
                """,
                (code, mold_name or code, qty, status),
            )
            row = con.execute("SELECT mold_id FROM core_mold WHERE mold_code = ?", (code,)).fetchone()
        return int(row["mold_id"])

    def set_material_device_relation(self, *, material_id: int, device_id: int, weight: int = 50) -> None:
        with self.db.connect() as con:
            con.execute(
                """
                INSERT INTO core_material_device_relation(material_id, device_id, weight)
                VALUES(?, ?, ?)
                ON CONFLICT(material_id, device_id) DO UPDATE SET weight = excluded.weight
                """,
                (int(material_id), int(device_id), int(weight)),
            )

    def set_material_mold_relation(
        self,
        *,
        material_id: int,
        mold_id: int,
        weight: int = 50,
        cycle_time: int = 0,
        output_per_cycle: int = 1,
    ) -> None:
        with self.db.connect() as con:
            con.execute(
                """
                INSERT INTO core_material_mold_relation(material_id, mold_id, weight, cycle_time, output_per_cycle)
                VALUES(?, ?, ?, ?, ?)
                ON CONFLICT(material_id, mold_id) DO UPDATE SET
                    weight = excluded.weight,
                    cycle_time = excluded.cycle_time,
                    output_per_cycle = excluded.output_per_cycle
                """,
                (int(material_id), int(mold_id), int(weight), int(cycle_time), int(output_per_cycle)),
            )

    # ---------- Plans ----------

    def create_plan(
        self,
        *,
        plan_number: str,
        material_id: int,
        planned_quantity: int,
        due_date: datetime,
        order_number: str | None = None,
        customer: str | None = None,
    ) -> int:
        with self.db.connect() as con:
            return self._insert_plan(
                con,
                plan_number=plan_number,
                material_id=material_id,
                planned_quantity=planned_quantity,
                due_date=due_date,
                order_number=order_number,
                customer=customer,
            )

    @staticmethod
    def _insert_plan(
        con,
        *,
        plan_number: str,
        material_id: int,
        planned_quantity: int,
        due_date: datetime,
        order_number: str | None,
        customer: str | None,
    ) -> int:
        number = str(plan_number or "").strip()
        if not number:
            raise ValueError("plan_number vacío")
        cur = con.execute(
            """
            INSERT INTO scheduling_plan(plan_number, material_id, planned_quantity, due_date, status, order_number, customer)
            VALUES(?, ?, ?, ?, ?, ?, ?)
            """,
            (
                number,
                int(material_id),
                int(planned_quantity),
                due_date.isoformat(timespec="seconds"),
                PLAN_UNSCHEDULED,
                order_number,
                customer,
            ),
        )
        return int(cur.lastrowid)

    def set_plan_status(self, *, plan_id: int, status: str) -> None:
        if status not in PLAN_STATUSES:
            raise ValueError(f"status de plan inválido: {status!r}")
        with self.db.connect() as con:
            cur = con.execute(
                "UPDATE scheduling_plan SET status = ?, updated_at = CURRENT_TIMESTAMP WHERE plan_id = ?",
                (status, int(plan_id)),
            )
            if cur.rowcount == 0:
                raise ValueError(f"plan no existe: {plan_id}")

    def get_plans_rows(self, *, status: str | None = None, limit: int = 200) -> list[dict]:
        sql = """
            SELECT p.plan_id, p.plan_number, p.material_id, m.material_code, p.planned_quantity,
                   p.due_date, p.status, p.order_number, p.customer
            FROM scheduling_plan p
            LEFT JOIN core_material m ON m.material_id = p.material_id
        """
        params: list = []
        if status:
            sql += " WHERE p.status = ?"
            params.append(status)
        sql += " ORDER BY p.due_date ASC, p.plan_id ASC LIMIT ?"
        params.append(int(limit))
        with self.db.connect() as con:
            rows = con.execute(sql, params).fetchall()
        return [dict(r) for r in rows]

    def import_plans_excel_bytes(self, *, content: bytes) -> int:
        """Import production plans from an .xlsx sheet, all rows or none.

        Required columns: plan_number, material_code (or material_id), planned_quantity, due_date.
        """
        df = normalize_columns(read_excel_bytes(content), aliases=PLAN_IMPORT_ALIASES)
        if df.empty:
            raise ValueError("Excel de planes vacío")

        required = {"plan_number", "planned_quantity", "due_date"}
        missing = sorted(required - set(df.columns))
        if missing:
            raise ValueError(f"Columnas faltantes en Excel de planes: {', '.join(missing)}")
        if "material_code" not in df.columns and "material_id" not in df.columns:
            raise ValueError("Columnas faltantes en Excel de planes: material_code")

        count = 0
        with self.db.connect() as con:
            for idx, row in enumerate(df.to_dict(orient="records"), start=2):
                try:
                    material_id = self._resolve_material_id(con, row)
                    qty = parse_int_strict(row.get("planned_quantity"), field="planned_quantity")
                    if qty <= 0:
                        raise ValueError(f"planned_quantity debe ser > 0: {qty}")
                    self._insert_plan(
                        con,
                        plan_number=coerce_str(row.get("plan_number")) or "",
                        material_id=material_id,
                        planned_quantity=qty,
                        due_date=coerce_datetime(row.get("due_date")),
                        order_number=coerce_str(row.get("order_number")),
                        customer=coerce_str(row.get("customer")),
                    )
                except ValueError as ex:
                    raise ValueError(f"Fila {idx}: {ex}") from ex
                except sqlite3.IntegrityError as ex:
                    raise ValueError(f"Fila {idx}: plan duplicado o material inválido ({ex})") from ex
                count += 1

        logger.info("Imported %s production plans from Excel", count)
        self.log_audit("IMPORT", f"Imported {count} production plans")
        return count

    @staticmethod
    def _resolve_material_id(con, row: dict) -> int:
        code = coerce_str(row.get("material_code"))
        if code:
            found = con.execute("SELECT material_id FROM core_material WHERE material_code = ?", (code,)).fetchone()
            if found is None:
                raise ValueError(f"material no encontrado en maestro: {code!r}")
            return int(found["material_id"])
        raw_id = row.get("material_id")
        if is_blank(raw_id):
            raise ValueError("material vacío")
        material_id = parse_int_strict(raw_id, field="material_id")
        found = con.execute("SELECT 1 FROM core_material WHERE material_id = ?", (material_id,)).fetchone()
        if found is None:
            raise ValueError(f"material no encontrado en maestro: {material_id}")
        return material_id
