"""Scheduling repository implementation.

SQLite side of the scheduling run: snapshot inputs, run lock, run records and the
single-transaction commit, plus the task maintenance operations around it.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import replace
from datetime import datetime
from typing import TYPE_CHECKING, Callable

from moldplan.core.models import (
    PLAN_SCHEDULED,
    PLAN_UNSCHEDULED,
    RESOURCE_NORMAL,
    TASK_CANCELLED,
    Device,
    DeviceCandidate,
    Mold,
    MoldCandidate,
    ProductionPlan,
    ProductionTask,
)
from moldplan.data.db import Db
from moldplan.data.excel_io import coerce_str, is_blank, parse_int_strict
from moldplan.scheduling.errors import CommitError, SchedulingInProgressError

if TYPE_CHECKING:
    from moldplan.data.repository import Repository

logger = logging.getLogger(__name__)

RUN_LOCK_NAME = "scheduling_run"


def _dt(value) -> datetime | None:
    if value is None or str(value).strip() == "":
        return None
    return datetime.fromisoformat(str(value))


def _iso(value: datetime | None) -> str | None:
    return value.isoformat(timespec="seconds") if value is not None else None


def _device(row) -> Device:
    return Device(
        device_id=int(row["device_id"]),
        device_code=str(row["device_code"]),
        capacity_per_hour=int(row["capacity_per_hour"] or 0),
        status=str(row["status"]),
        device_name=row["device_name"],
    )


def _mold(row) -> Mold:
    return Mold(
        mold_id=int(row["mold_id"]),
        mold_code=str(row["mold_code"]),
        quantity=int(row["quantity"] or 0),
        status=str(row["status"]),
        mold_name=row["mold_name"],
    )


class SchedulingRepositoryImpl:
    """Scheduling-specific repository operations.

    Handles:
    - Plan loader and occupancy/candidate reads for the engine
    - Run lock and run records
    - Atomic commit of a run
    - Reset, task deletion, ERP numbers and the results view
    """

    def __init__(self, db: Db, data_repo: Repository) -> None:
        self.db = db
        self.data_repo = data_repo

    # ---------- Engine inputs ----------

    def get_unscheduled_plans(self) -> list[ProductionPlan]:
        with self.db.connect() as con:
            rows = con.execute(
                """
                SELECT plan_id, plan_number, material_id, planned_quantity, due_date, status, order_number, customer
                FROM scheduling_plan
                WHERE status = ?
                ORDER BY due_date ASC, plan_id ASC
                """,
                (PLAN_UNSCHEDULED,),
            ).fetchall()
        return [
            ProductionPlan(
                plan_id=int(r["plan_id"]),
                plan_number=str(r["plan_number"]),
                material_id=int(r["material_id"]),
                planned_quantity=int(r["planned_quantity"]),
                due_date=datetime.fromisoformat(str(r["due_date"])),
                status=str(r["status"]),
                order_number=r["order_number"],
                customer=r["customer"],
            )
            for r in rows
        ]

    def get_available_devices(self) -> list[Device]:
        with self.db.connect() as con:
            rows = con.execute(
                "SELECT * FROM core_device WHERE status = ? ORDER BY device_id",
                (RESOURCE_NORMAL,),
            ).fetchall()
        return [_device(r) for r in rows]

    def get_available_molds(self) -> list[Mold]:
        with self.db.connect() as con:
            rows = con.execute(
                "SELECT * FROM core_mold WHERE status = ? ORDER BY mold_id",
                (RESOURCE_NORMAL,),
            ).fetchall()
        return [_mold(r) for r in rows]

    def get_committed_tasks(self) -> list[ProductionTask]:
        """Non-cancelled tasks in creation order (first use of a mold decides its binding)."""
        with self.db.connect() as con:
            rows = con.execute(
                """
                SELECT t.*, p.material_id
                FROM scheduling_task t
                LEFT JOIN scheduling_plan p ON p.plan_id = t.plan_id
                WHERE t.status != ?
                ORDER BY t.task_id ASC
                """,
                (TASK_CANCELLED,),
            ).fetchall()
        return [self._task(r) for r in rows]

    @staticmethod
    def _task(r) -> ProductionTask:
        return ProductionTask(
            task_id=int(r["task_id"]),
            task_number=str(r["task_number"]),
            plan_id=int(r["plan_id"]),
            material_id=(int(r["material_id"]) if r["material_id"] is not None else None),
            device_id=int(r["device_id"]),
            mold_id=int(r["mold_id"]),
            task_quantity=int(r["task_quantity"]),
            due_date=datetime.fromisoformat(str(r["due_date"])),
            planned_start_time=_dt(r["planned_start_time"]),
            planned_end_time=_dt(r["planned_end_time"]),
            is_overdue=bool(int(r["is_overdue"] or 0)),
            status=str(r["status"]),
            scheduling_rule=r["scheduling_rule"],
            scheduling_reason=r["scheduling_reason"],
            sync_group=r["sync_group"],
            erp_task_number=r["erp_task_number"],
        )

    def get_device_candidates(self, material_id: int) -> list[DeviceCandidate]:
        with self.db.connect() as con:
            rows = con.execute(
                """
                SELECT d.*, r.weight
                FROM core_material_device_relation r
                JOIN core_device d ON d.device_id = r.device_id
                WHERE r.material_id = ?
                ORDER BY r.weight DESC, d.device_id ASC
                """,
                (int(material_id),),
            ).fetchall()
        return [DeviceCandidate(device=_device(r), weight=int(r["weight"])) for r in rows]

    def get_mold_candidates(self, material_id: int) -> list[MoldCandidate]:
        with self.db.connect() as con:
            rows = con.execute(
                """
                SELECT m.*, r.weight, r.cycle_time, r.output_per_cycle
                FROM core_material_mold_relation r
                JOIN core_mold m ON m.mold_id = r.mold_id
                WHERE r.material_id = ?
                ORDER BY r.weight DESC, m.mold_id ASC
                """,
                (int(material_id),),
            ).fetchall()
        return [
            MoldCandidate(
                mold=_mold(r),
                weight=int(r["weight"]),
                cycle_time=int(r["cycle_time"] or 0),
                output_per_cycle=int(r["output_per_cycle"] or 1),
            )
            for r in rows
        ]

    # ---------- Run lock ----------

    @staticmethod
    def _check_lock(con: sqlite3.Connection, *, stale_seconds: float, now: datetime) -> None:
        """Raise when a live run holds the lock; drop it when stale."""
        row = con.execute(
            "SELECT run_id, acquired_at FROM scheduling_lock WHERE lock_name = ?",
            (RUN_LOCK_NAME,),
        ).fetchone()
        if row is None:
            return
        age = (now - datetime.fromisoformat(str(row["acquired_at"]))).total_seconds()
        if age < float(stale_seconds):
            raise SchedulingInProgressError(holder_run_id=str(row["run_id"]), acquired_at=str(row["acquired_at"]))
        logger.warning(
            "Taking over stale scheduling lock of run %s (acquired %s, %.0f s ago)",
            row["run_id"],
            row["acquired_at"],
            age,
        )
        con.execute("DELETE FROM scheduling_lock WHERE lock_name = ?", (RUN_LOCK_NAME,))

    def acquire_run_lock(self, *, run_id: str, stale_seconds: float, now: datetime) -> None:
        with self.db.connect(immediate=True) as con:
            self._check_lock(con, stale_seconds=stale_seconds, now=now)
            con.execute(
                "INSERT INTO scheduling_lock(lock_name, run_id, acquired_at) VALUES(?, ?, ?)",
                (RUN_LOCK_NAME, run_id, _iso(now)),
            )
        logger.debug("Scheduling lock acquired by run %s", run_id)

    def release_run_lock(self, *, run_id: str) -> None:
        with self.db.connect() as con:
            con.execute(
                "DELETE FROM scheduling_lock WHERE lock_name = ? AND run_id = ?",
                (RUN_LOCK_NAME, run_id),
            )

    def get_run_lock(self) -> dict | None:
        with self.db.connect() as con:
            row = con.execute(
                "SELECT run_id, acquired_at FROM scheduling_lock WHERE lock_name = ?",
                (RUN_LOCK_NAME,),
            ).fetchone()
        return dict(row) if row is not None else None

    # ---------- Run records ----------

    def start_run(self, *, run_id: str, started_at: datetime) -> None:
        with self.db.connect() as con:
            con.execute(
                "INSERT INTO scheduling_run(run_id, started_at, status) VALUES(?, ?, 'running')",
                (run_id, _iso(started_at)),
            )

    def finish_run(
        self,
        *,
        run_id: str,
        status: str,
        message: str,
        task_count: int,
        skipped_count: int,
        finished_at: datetime,
    ) -> None:
        with self.db.connect() as con:
            con.execute(
                """
                UPDATE scheduling_run
                SET status = ?, message = ?, task_count = ?, skipped_count = ?, finished_at = ?
                WHERE run_id = ?
                """,
                (status, message, int(task_count), int(skipped_count), _iso(finished_at), run_id),
            )
        self.data_repo.log_audit(
            "SCHEDULING",
            f"Run {run_id[:8]} {status}: {task_count} tareas, {skipped_count} omitidos",
            message,
        )

    def get_runs_rows(self, *, limit: int = 20) -> list[dict]:
        with self.db.connect() as con:
            rows = con.execute(
                "SELECT * FROM scheduling_run ORDER BY started_at DESC, rowid DESC LIMIT ?",
                (int(limit),),
            ).fetchall()
        return [dict(r) for r in rows]

    # ---------- Commit ----------

    def commit_run(
        self,
        *,
        run_id: str,
        tasks: list[ProductionTask],
        before_commit: Callable[[], None] | None = None,
    ) -> list[ProductionTask]:
        """Insert all tasks and flip their plans to scheduled, in one transaction.

        `before_commit` runs inside the transaction right before COMMIT; anything it
        raises rolls the whole run back.
        """
        saved: list[ProductionTask] = []
        plan_ids = sorted({t.plan_id for t in tasks})
        try:
            with self.db.connect(immediate=True) as con:
                for t in tasks:
                    cur = con.execute(
                        """
                        INSERT INTO scheduling_task(
                            task_number, plan_id, device_id, mold_id, task_quantity, due_date,
                            planned_start_time, planned_end_time, is_overdue, status,
                            scheduling_rule, scheduling_reason, sync_group, erp_task_number, run_id
                        )
                        VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        (
                            t.task_number,
                            int(t.plan_id),
                            int(t.device_id),
                            int(t.mold_id),
                            int(t.task_quantity),
                            _iso(t.due_date),
                            _iso(t.planned_start_time),
                            _iso(t.planned_end_time),
                            1 if t.is_overdue else 0,
                            t.status,
                            t.scheduling_rule,
                            t.scheduling_reason,
                            t.sync_group,
                            t.erp_task_number,
                            run_id,
                        ),
                    )
                    saved.append(replace(t, task_id=int(cur.lastrowid)))

                flipped = 0
                for plan_id in plan_ids:
                    cur = con.execute(
                        """
                        UPDATE scheduling_plan
                        SET status = ?, updated_at = CURRENT_TIMESTAMP
                        WHERE plan_id = ? AND status = ?
                        """,
                        (PLAN_SCHEDULED, plan_id, PLAN_UNSCHEDULED),
                    )
                    flipped += cur.rowcount
                if flipped != len(plan_ids):
                    raise CommitError(
                        f"Solo {flipped} de {len(plan_ids)} planes seguían sin programar; se revierte la programación"
                    )

                if before_commit is not None:
                    before_commit()
        except sqlite3.Error as ex:
            logger.exception("Commit of scheduling run %s failed", run_id)
            raise CommitError(f"Error al guardar la programación: {ex}", cause=ex) from ex

        logger.info("Committed scheduling run %s: %s tasks, %s plans scheduled", run_id, len(saved), len(plan_ids))
        return saved

    # ---------- Maintenance ----------

    def reset_schedule(self, *, stale_seconds: float = 600.0, now: datetime | None = None) -> dict:
        """Delete every task and return scheduled plans to unscheduled (one transaction)."""
        now = now or datetime.now()
        with self.db.connect(immediate=True) as con:
            self._check_lock(con, stale_seconds=stale_seconds, now=now)
            deleted = con.execute("DELETE FROM scheduling_task").rowcount
            reverted = con.execute(
                "UPDATE scheduling_plan SET status = ?, updated_at = CURRENT_TIMESTAMP WHERE status = ?",
                (PLAN_UNSCHEDULED, PLAN_SCHEDULED),
            ).rowcount
        logger.info("Schedule reset: %s tasks deleted, %s plans reverted", deleted, reverted)
        self.data_repo.log_audit("SCHEDULING", "Programación reiniciada", f"tasks={deleted}, plans={reverted}")
        return {"deleted_tasks": int(deleted), "updated_plans": int(reverted)}

    def delete_task(self, *, task_id: int) -> dict:
        """Delete one task; its plan returns to unscheduled when no task is left."""
        with self.db.connect() as con:
            row = con.execute(
                "SELECT task_id, task_number, plan_id FROM scheduling_task WHERE task_id = ?",
                (int(task_id),),
            ).fetchone()
            if row is None:
                raise ValueError(f"Tarea no existe: {task_id}")
            plan_id = int(row["plan_id"])
            con.execute("DELETE FROM scheduling_task WHERE task_id = ?", (int(task_id),))
            remaining = con.execute("SELECT COUNT(*) FROM scheduling_task WHERE plan_id = ?", (plan_id,)).fetchone()[0]
            plan_reverted = False
            if int(remaining) == 0:
                cur = con.execute(
                    "UPDATE scheduling_plan SET status = ?, updated_at = CURRENT_TIMESTAMP WHERE plan_id = ? AND status = ?",
                    (PLAN_UNSCHEDULED, plan_id, PLAN_SCHEDULED),
                )
                plan_reverted = cur.rowcount > 0
        logger.info("Deleted task %s (plan %s, reverted=%s)", row["task_number"], plan_id, plan_reverted)
        self.data_repo.log_audit("TASK", f"Tarea {row['task_number']} eliminada", f"plan_id={plan_id}")
        return {"task_id": int(task_id), "plan_id": plan_id, "plan_reverted": plan_reverted}

    def import_erp_task_numbers(self, *, rows: list[dict]) -> dict:
        """Attach ERP task numbers to tasks by plan id (or plan number), all rows or none."""
        if not rows:
            raise ValueError("Datos de tareas ERP vacíos")
        results: list[dict] = []
        updated = 0
        with self.db.connect() as con:
            for idx, row in enumerate(rows, start=1):
                try:
                    erp = coerce_str(row.get("erp_task_number"))
                    if not erp:
                        raise ValueError("erp_task_number vacío")
                    plan_id = self._resolve_plan_id(con, row)
                except ValueError as ex:
                    raise ValueError(f"Fila {idx}: {ex}") from ex
                if plan_id is None:
                    results.append({"plan_id": row.get("plan_id"), "success": False})
                    continue
                cur = con.execute(
                    "UPDATE scheduling_task SET erp_task_number = ?, updated_at = CURRENT_TIMESTAMP WHERE plan_id = ?",
                    (erp, plan_id),
                )
                ok = cur.rowcount > 0
                updated += 1 if ok else 0
                results.append({"plan_id": plan_id, "success": ok})
        logger.info("ERP task numbers imported: %s of %s rows matched a task", updated, len(rows))
        self.data_repo.log_audit("IMPORT", f"Números de tarea ERP: {updated} actualizados", f"rows={len(rows)}")
        return {"updated_count": updated, "results": results}

    @staticmethod
    def _resolve_plan_id(con: sqlite3.Connection, row: dict) -> int | None:
        number = coerce_str(row.get("plan_number"))
        if number:
            found = con.execute("SELECT plan_id FROM scheduling_plan WHERE plan_number = ?", (number,)).fetchone()
            return int(found["plan_id"]) if found is not None else None
        raw = row.get("plan_id")
        if is_blank(raw):
            raise ValueError("plan_id vacío")
        return parse_int_strict(raw, field="plan_id")

    # ---------- Views ----------

    def get_results_by_device(self) -> list[dict]:
        """Tasks grouped by device, each group ordered by planned start."""
        with self.db.connect() as con:
            rows = con.execute(
                """
                SELECT t.task_id, t.task_number, t.plan_id, p.plan_number, m.material_code,
                       t.device_id, d.device_code, d.device_name, t.mold_id, md.mold_code,
                       t.task_quantity, t.due_date, t.planned_start_time, t.planned_end_time,
                       t.is_overdue, t.status, t.scheduling_rule, t.scheduling_reason, t.sync_group,
                       t.erp_task_number
                FROM scheduling_task t
                LEFT JOIN scheduling_plan p ON p.plan_id = t.plan_id
                LEFT JOIN core_material m ON m.material_id = p.material_id
                LEFT JOIN core_device d ON d.device_id = t.device_id
                LEFT JOIN core_mold md ON md.mold_id = t.mold_id
                ORDER BY t.device_id ASC, t.planned_start_time ASC, t.task_id ASC
                """
            ).fetchall()

        groups: dict[int, dict] = {}
        for r in rows:
            task = dict(r)
            task["is_overdue"] = bool(task["is_overdue"])
            device_id = int(task["device_id"])
            group = groups.get(device_id)
            if group is None:
                group = {
                    "device": {
                        "device_id": device_id,
                        "device_code": task["device_code"],
                        "device_name": task["device_name"],
                    },
                    "tasks": [],
                }
                groups[device_id] = group
            group["tasks"].append(task)
        return list(groups.values())
