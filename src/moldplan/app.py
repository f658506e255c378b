from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from fastapi import Request
from fastapi.responses import JSONResponse
from nicegui import app, ui

from moldplan import api
from moldplan.data.db import Db
from moldplan.data.repository import Repository
from moldplan.logging_conf import configure_logging
from moldplan.settings import Settings, default_db_path
from moldplan.ui.pages import register_pages

logger = logging.getLogger(__name__)


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Programación de producción (equipos y moldes)")
    parser.add_argument("--host", type=str, default="0.0.0.0")
    parser.add_argument("--port", type=int, default=8080)
    parser.add_argument("--db", type=Path, default=None, help="Ruta de la base SQLite")
    parser.add_argument("--log-level", type=str, default="INFO")
    parser.add_argument("--log-dir", type=Path, default=None, help="Carpeta para logs rotativos")
    return parser


def _respond(out: dict) -> JSONResponse:
    status_code = int(out.pop("status_code", 200))
    return JSONResponse(content=out, status_code=status_code)


def register_routes(repo: Repository, settings: Settings) -> None:
    # The engine is synchronous and quick; run it off the event loop anyway so the UI stays live.
    @app.post("/scheduling/execute")
    async def scheduling_execute() -> JSONResponse:
        out = await asyncio.to_thread(api.execute_scheduling, repo, settings=settings)
        return _respond(out)

    @app.post("/scheduling/reset")
    async def scheduling_reset() -> JSONResponse:
        return _respond(await asyncio.to_thread(api.reset_schedule, repo, settings=settings))

    @app.get("/scheduling/results")
    async def scheduling_results() -> JSONResponse:
        return _respond(api.get_results(repo))

    @app.delete("/scheduling/tasks/{task_id}")
    async def scheduling_delete_task(task_id: int) -> JSONResponse:
        return _respond(api.delete_task(repo, task_id))

    @app.post("/scheduling/tasks/import-erp")
    async def scheduling_import_erp(request: Request) -> JSONResponse:
        body = await request.json()
        rows = body.get("tasks") if isinstance(body, dict) else body
        if not isinstance(rows, list):
            return _respond({"success": False, "message": "Se esperaba una lista de tareas", "status_code": 400})
        return _respond(api.import_erp_task_numbers(repo, rows))


def main() -> None:
    args = build_arg_parser().parse_args()
    settings = Settings(
        db_path=args.db or default_db_path(),
        host=args.host,
        port=args.port,
        log_level=args.log_level,
        log_dir=args.log_dir,
    )
    configure_logging(settings.log_level, log_dir=settings.log_dir)

    db = Db(settings.db_path)
    db.ensure_schema()
    logger.info("Database ready at %s", settings.db_path)

    repo = Repository(db)
    register_routes(repo, settings)
    register_pages(repo)

    if sys.platform == "win32":
        @app.on_startup
        async def _silence_windows_connection_reset() -> None:
            # Suppress noisy ConnectionResetError 10054 from Windows clients dropping websockets.
            loop = asyncio.get_running_loop()

            def _handler(loop: asyncio.AbstractEventLoop, context: dict) -> None:
                exc = context.get("exception")
                if isinstance(exc, ConnectionResetError) and getattr(exc, "winerror", None) == 10054:
                    return
                loop.default_exception_handler(context)

            loop.set_exception_handler(_handler)

    ui.run(host=settings.host, port=settings.port, title="Programación de producción", reload=False)


if __name__ in {"__main__", "__mp_main__"}:
    main()
