from __future__ import annotations

import asyncio
import inspect

from nicegui import ui

from moldplan import api
from moldplan.data.repository import Repository
from moldplan.ui.widgets import fmt_dt, page_container, render_header


PLAN_COLUMNS = [
    {"name": "plan_number", "label": "Plan", "field": "plan_number", "sortable": True},
    {"name": "material_code", "label": "Material", "field": "material_code", "sortable": True},
    {"name": "planned_quantity", "label": "Cantidad", "field": "planned_quantity"},
    {"name": "due_date", "label": "Entrega", "field": "due_date_fmt", "sortable": True},
    {"name": "status", "label": "Estado", "field": "status"},
    {"name": "customer", "label": "Cliente", "field": "customer"},
]

TASK_COLUMNS = [
    {"name": "task_number", "label": "Tarea", "field": "task_number"},
    {"name": "plan_number", "label": "Plan", "field": "plan_number"},
    {"name": "material_code", "label": "Material", "field": "material_code"},
    {"name": "mold_code", "label": "Molde", "field": "mold_code"},
    {"name": "task_quantity", "label": "Cantidad", "field": "task_quantity"},
    {"name": "start", "label": "Inicio", "field": "start_fmt"},
    {"name": "end", "label": "Fin", "field": "end_fmt"},
    {"name": "due", "label": "Entrega", "field": "due_fmt"},
    {"name": "overdue", "label": "Atraso", "field": "overdue_fmt"},
    {"name": "reason", "label": "Regla", "field": "scheduling_reason"},
    {"name": "erp", "label": "Tarea ERP", "field": "erp_task_number"},
]


def register_pages(repo: Repository) -> None:
    @ui.page("/")
    def scheduling_page() -> None:
        render_header("Programación de producción")
        with page_container():
            ui.label("Programación").classes("text-2xl font-semibold")
            ui.separator()

            async def _run() -> None:
                out = await asyncio.to_thread(api.execute_scheduling, repo)
                if out["success"]:
                    skipped = (out.get("data") or {}).get("skipped") or []
                    ui.notify(out["message"], type="warning" if skipped else "positive", multi_line=True)
                    for s in skipped[:5]:
                        ui.notify(f"{s['plan_number']}: {s['error']}", type="warning")
                else:
                    ui.notify(out["message"], color="negative")
                ui.navigate.to("/")

            def _reset() -> None:
                out = api.reset_schedule(repo)
                ui.notify(out["message"], type="positive" if out["success"] else "negative")
                ui.navigate.to("/")

            async def _upload_plans(e) -> None:
                content = None
                f = getattr(e, "file", None)
                if f is not None and hasattr(f, "read"):
                    content = await f.read() if inspect.iscoroutinefunction(f.read) else f.read()
                elif hasattr(e, "content"):
                    content = e.content.read()
                if content is None:
                    ui.notify("No se pudo leer el archivo", color="negative")
                    return
                out = api.import_plans_excel(repo, content)
                ui.notify(out["message"], type="positive" if out["success"] else "negative", multi_line=True)
                if out["success"]:
                    ui.navigate.to("/")

            with ui.row().classes("items-center gap-2"):
                ui.button("Ejecutar programación", icon="play_arrow", on_click=_run).props("unelevated color=primary")
                with ui.dialog() as confirm, ui.card():
                    ui.label("¿Eliminar todas las tareas y volver los planes a 'sin programar'?")
                    with ui.row():
                        ui.button("Cancelar", on_click=confirm.close).props("flat")
                        ui.button("Reiniciar", on_click=lambda: (confirm.close(), _reset())).props("color=negative")
                ui.button("Reiniciar", icon="restart_alt", on_click=confirm.open).props("outline color=negative")
                ui.upload(label="Importar planes (.xlsx)", on_upload=_upload_plans, auto_upload=True).props(
                    "accept=.xlsx max-files=1 dense"
                )

            lock = repo.scheduling.get_run_lock()
            if lock:
                ui.label(f"Programación en curso (run {str(lock['run_id'])[:8]}, desde {fmt_dt(lock['acquired_at'])})").classes(
                    "text-sm text-amber-600"
                )

            ui.label("Planes sin programar").classes("text-lg font-semibold mt-4")
            plans = repo.get_plans_rows(status="unscheduled")
            for r in plans:
                r["due_date_fmt"] = fmt_dt(r.get("due_date"))
            ui.table(columns=PLAN_COLUMNS, rows=plans, row_key="plan_id").classes("w-full mp-table").props(
                "dense flat bordered"
            )

            ui.label("Tareas por equipo").classes("text-lg font-semibold mt-4")
            groups = repo.scheduling.get_results_by_device()
            if not groups:
                ui.label("Sin tareas programadas.").classes("text-sm text-slate-500")
            for group in groups:
                device = group["device"]
                rows = group["tasks"]
                for r in rows:
                    r["start_fmt"] = fmt_dt(r.get("planned_start_time"))
                    r["end_fmt"] = fmt_dt(r.get("planned_end_time"))
                    r["due_fmt"] = fmt_dt(r.get("due_date"))
                    r["overdue_fmt"] = "Sí" if r.get("is_overdue") else ""
                with ui.card().classes("w-full p-3 mt-2"):
                    ui.label(f"{device['device_code']} · {device.get('device_name') or ''}").classes("font-semibold")
                    tbl = ui.table(columns=TASK_COLUMNS, rows=rows, row_key="task_id").classes("w-full mp-table")
                    tbl.props("dense flat bordered")

            runs = repo.scheduling.get_runs_rows(limit=10)
            if runs:
                ui.label("Últimas ejecuciones").classes("text-lg font-semibold mt-4")
                for r in runs:
                    r["started_fmt"] = fmt_dt(r.get("started_at"))
                ui.table(
                    columns=[
                        {"name": "started", "label": "Inicio", "field": "started_fmt"},
                        {"name": "status", "label": "Estado", "field": "status"},
                        {"name": "task_count", "label": "Tareas", "field": "task_count"},
                        {"name": "skipped_count", "label": "Omitidos", "field": "skipped_count"},
                        {"name": "message", "label": "Mensaje", "field": "message"},
                    ],
                    rows=runs,
                    row_key="run_id",
                ).classes("w-full mp-table").props("dense flat bordered")
