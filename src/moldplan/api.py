from __future__ import annotations

import logging
from datetime import datetime

from moldplan.data.repository import Repository
from moldplan.scheduling.engine import SchedulingEngine
from moldplan.scheduling.errors import (
    CommitError,
    SchedulingError,
    SchedulingInProgressError,
    SchedulingStoreError,
    SchedulingTimeoutError,
)
from moldplan.settings import Settings

logger = logging.getLogger(__name__)


def _settings(repo: Repository, settings: Settings | None) -> Settings:
    base = settings or Settings(db_path=repo.db.path)
    return base.with_overrides(repo)


def execute_scheduling(repo: Repository, *, settings: Settings | None = None, now: datetime | None = None) -> dict:
    """Run one scheduling batch.

    Returns a dict with success, message, data (tasks/skipped/run_id) and the HTTP
    status the endpoint should answer with.
    """
    engine = SchedulingEngine(repo.scheduling, settings=_settings(repo, settings))
    try:
        result = engine.execute(now=now)
    except SchedulingInProgressError as ex:
        logger.warning("Scheduling rejected: %s", ex)
        return {
            "success": False,
            "message": "Ya hay una programación en curso",
            "data": {"holder_run_id": ex.holder_run_id, "acquired_at": ex.acquired_at},
            "status_code": 409,
        }
    except CommitError as ex:
        cause = ex.cause or ex
        return {"success": False, "message": f"Error al guardar la programación: {cause}", "status_code": 500}
    except SchedulingTimeoutError as ex:
        return {"success": False, "message": str(ex), "status_code": 504}
    except SchedulingStoreError as ex:
        return {"success": False, "message": f"Error al leer los datos de programación: {ex.cause or ex}", "status_code": 500}
    except SchedulingError as ex:
        logger.exception("Scheduling run failed")
        return {"success": False, "message": str(ex), "status_code": 500}

    payload = result.as_dict()
    return {
        "success": result.success,
        "message": result.message,
        "data": {"run_id": payload["run_id"], "tasks": payload["tasks"], "skipped": payload["skipped"]},
        "status_code": 200,
    }


def reset_schedule(repo: Repository, *, settings: Settings | None = None) -> dict:
    cfg = _settings(repo, settings)
    try:
        counts = repo.scheduling.reset_schedule(stale_seconds=cfg.lock_stale_seconds)
    except SchedulingInProgressError:
        return {"success": False, "message": "Ya hay una programación en curso", "status_code": 409}
    return {
        "success": True,
        "message": "Programación reiniciada: todos los planes vuelven a estado sin programar",
        "data": counts,
        "status_code": 200,
    }


def get_results(repo: Repository) -> dict:
    return {"success": True, "data": repo.scheduling.get_results_by_device(), "status_code": 200}


def delete_task(repo: Repository, task_id: int) -> dict:
    try:
        data = repo.scheduling.delete_task(task_id=task_id)
    except ValueError as ex:
        return {"success": False, "message": str(ex), "status_code": 404}
    return {"success": True, "message": "Tarea eliminada", "data": data, "status_code": 200}


def import_erp_task_numbers(repo: Repository, rows: list[dict]) -> dict:
    try:
        data = repo.scheduling.import_erp_task_numbers(rows=rows)
    except ValueError as ex:
        return {"success": False, "message": str(ex), "status_code": 400}
    return {
        "success": True,
        "message": f"Se actualizaron {data['updated_count']} números de tarea ERP",
        "data": data,
        "status_code": 200,
    }


def import_plans_excel(repo: Repository, content: bytes) -> dict:
    try:
        count = repo.import_plans_excel_bytes(content=content)
    except ValueError as ex:
        return {"success": False, "message": str(ex), "status_code": 400}
    return {"success": True, "message": f"Se importaron {count} planes", "data": {"count": count}, "status_code": 200}
