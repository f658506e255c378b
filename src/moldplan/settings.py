from __future__ import annotations

from dataclasses import dataclass, replace
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from moldplan.data.repository import Repository


@dataclass(frozen=True)
class Settings:
    db_path: Path
    host: str = "0.0.0.0"
    port: int = 8080
    log_level: str = "INFO"
    log_dir: Path | None = None

    # Scheduling run
    run_deadline_seconds: float = 60.0
    lock_stale_seconds: float = 600.0
    multi_material_sync: bool = True
    sync_window_days: int = 3
    urgent_slack_hours: float = 24.0

    def with_overrides(self, repo: Repository) -> Settings:
        """Apply runtime overrides stored in core_config."""

        def _float(key: str, default: float) -> float:
            raw = repo.get_config(key=key, default=None)
            if raw is None or str(raw).strip() == "":
                return default
            return float(str(raw).strip())

        sync_raw = repo.get_config(key="scheduling_multi_material_sync", default=None)
        sync = self.multi_material_sync
        if sync_raw is not None and str(sync_raw).strip() != "":
            sync = str(sync_raw).strip().lower() in {"1", "true", "si", "sí", "yes"}

        return replace(
            self,
            run_deadline_seconds=_float("scheduling_run_deadline_seconds", self.run_deadline_seconds),
            lock_stale_seconds=_float("scheduling_lock_stale_seconds", self.lock_stale_seconds),
            multi_material_sync=sync,
            sync_window_days=int(_float("scheduling_sync_window_days", self.sync_window_days)),
            urgent_slack_hours=_float("scheduling_urgent_slack_hours", self.urgent_slack_hours),
        )


def default_db_path() -> Path:
    # Fixed, repo-local database location (keeps paths stable across machines).
    return Path("db") / "moldplan.db"
