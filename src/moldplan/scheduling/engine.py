from __future__ import annotations

import logging
import sqlite3
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Protocol

from moldplan.core.models import Device, DeviceCandidate, Mold, MoldCandidate, ProductionPlan, ProductionTask
from moldplan.scheduling.allocator import Allocation, Allocator
from moldplan.scheduling.candidates import CandidateResolver
from moldplan.scheduling.errors import SchedulingError, SchedulingStoreError, SchedulingTimeoutError
from moldplan.scheduling.occupancy import OccupancySnapshot
from moldplan.scheduling.reasons import annotate, describe
from moldplan.scheduling.sync import allocate_sync_group, find_sync_group
from moldplan.settings import Settings

logger = logging.getLogger(__name__)


class SchedulingStore(Protocol):
    """Persistence the engine needs; `SchedulingRepositoryImpl` is the SQLite implementation."""

    def get_unscheduled_plans(self) -> list[ProductionPlan]: ...

    def get_available_devices(self) -> list[Device]: ...

    def get_available_molds(self) -> list[Mold]: ...

    def get_committed_tasks(self) -> list[ProductionTask]: ...

    def get_device_candidates(self, material_id: int) -> list[DeviceCandidate]: ...

    def get_mold_candidates(self, material_id: int) -> list[MoldCandidate]: ...

    def acquire_run_lock(self, *, run_id: str, stale_seconds: float, now: datetime) -> None: ...

    def release_run_lock(self, *, run_id: str) -> None: ...

    def start_run(self, *, run_id: str, started_at: datetime) -> None: ...

    def finish_run(
        self,
        *,
        run_id: str,
        status: str,
        message: str,
        task_count: int,
        skipped_count: int,
        finished_at: datetime,
    ) -> None: ...

    def commit_run(
        self,
        *,
        run_id: str,
        tasks: list[ProductionTask],
        before_commit: Callable[[], None] | None = None,
    ) -> list[ProductionTask]: ...


@dataclass
class SchedulingResult:
    success: bool
    message: str
    run_id: str
    tasks: list[ProductionTask] = field(default_factory=list)
    skipped: list[dict] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "success": self.success,
            "message": self.message,
            "run_id": self.run_id,
            "tasks": [t.as_row() for t in self.tasks],
            "skipped": list(self.skipped),
        }


def new_task_number(now: datetime) -> str:
    return f"TASK-{now:%Y%m%d%H%M%S}-{uuid.uuid4().hex[:6].upper()}"


class SchedulingEngine:
    """One batch run: unscheduled plans -> committed production tasks.

    The engine owns the run lock and the deadline; allocation itself is done by
    `Allocator` / `allocate_sync_group` against a per-run `OccupancySnapshot`.
    """

    def __init__(
        self,
        store: SchedulingStore,
        *,
        settings: Settings,
        clock: Callable[[], datetime] = datetime.now,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.settings = settings
        self._clock = clock
        self._monotonic = monotonic

    def execute(self, *, now: datetime | None = None) -> SchedulingResult:
        """Run the scheduler once.

        Raises:
            SchedulingInProgressError: another run holds the lock (nothing was touched).
            CommitError / SchedulingTimeoutError: the run failed and was rolled back.
            SchedulingStoreError: reading plans or resources failed; nothing was written.
        """
        now = (now or self._clock()).replace(microsecond=0)
        run_id = uuid.uuid4().hex
        deadline = self._monotonic() + float(self.settings.run_deadline_seconds)

        self.store.acquire_run_lock(run_id=run_id, stale_seconds=self.settings.lock_stale_seconds, now=now)
        try:
            self.store.start_run(run_id=run_id, started_at=now)
            try:
                result = self._run(run_id=run_id, now=now, deadline=deadline)
            except sqlite3.Error as ex:
                failure = SchedulingStoreError(f"Error de base de datos: {ex}", cause=ex)
                self._fail(run_id, failure)
                raise failure from ex
            except Exception as ex:
                self._fail(run_id, ex)
                raise
            self.store.finish_run(
                run_id=run_id,
                status="success",
                message=result.message,
                task_count=len(result.tasks),
                skipped_count=len(result.skipped),
                finished_at=self._clock(),
            )
            return result
        finally:
            self.store.release_run_lock(run_id=run_id)

    def _fail(self, run_id: str, ex: Exception) -> None:
        if isinstance(ex, SchedulingError):
            logger.error("Scheduling run %s failed: %s", run_id, ex)
        else:
            logger.exception("Scheduling run %s failed unexpectedly", run_id)
        self.store.finish_run(
            run_id=run_id,
            status="failed",
            message=str(ex),
            task_count=0,
            skipped_count=0,
            finished_at=self._clock(),
        )

    def _check_deadline(self, deadline: float) -> None:
        if self._monotonic() > deadline:
            raise SchedulingTimeoutError(
                f"La programación superó el tiempo límite de {self.settings.run_deadline_seconds:g} s"
            )

    def _run(self, *, run_id: str, now: datetime, deadline: float) -> SchedulingResult:
        plans = self.store.get_unscheduled_plans()
        if not plans:
            logger.info("Scheduling run %s: no unscheduled plans", run_id)
            return SchedulingResult(success=True, message="No hay planes sin programar", run_id=run_id)

        snapshot = OccupancySnapshot.build(
            devices=self.store.get_available_devices(),
            molds=self.store.get_available_molds(),
            tasks=self.store.get_committed_tasks(),
        )
        resolver = CandidateResolver(self.store)
        allocator = Allocator(now=now)
        urgent_slack = timedelta(hours=float(self.settings.urgent_slack_hours))
        window = timedelta(days=int(self.settings.sync_window_days))

        tasks: list[ProductionTask] = []
        skipped: list[dict] = []
        used_numbers: set[str] = set()
        sync_count = 0

        def skip(plan: ProductionPlan, error: str) -> None:
            logger.warning("Plan %s skipped: %s", plan.plan_number, error)
            skipped.append(
                {
                    "plan_id": plan.plan_id,
                    "plan_number": plan.plan_number,
                    "material_id": plan.material_id,
                    "error": error,
                }
            )

        def schedulable(plan: ProductionPlan) -> bool:
            return plan.planned_quantity > 0 and not resolver.resolve(plan.material_id).is_empty

        def to_task(alloc: Allocation, *, sync_group: str | None) -> ProductionTask:
            rule = annotate(alloc.trace, urgent_slack=urgent_slack)
            number = new_task_number(now)
            while number in used_numbers:
                number = new_task_number(now)
            used_numbers.add(number)
            return ProductionTask(
                task_number=number,
                plan_id=alloc.plan.plan_id,
                material_id=alloc.plan.material_id,
                device_id=alloc.device.device_id,
                mold_id=alloc.mold.mold_id,
                task_quantity=alloc.plan.planned_quantity,
                due_date=alloc.plan.due_date,
                planned_start_time=alloc.slot.start,
                planned_end_time=alloc.slot.end,
                is_overdue=alloc.slot.is_overdue,
                scheduling_rule=rule.value,
                scheduling_reason=describe(rule),
                sync_group=sync_group,
            )

        def allocate_single(plan: ProductionPlan) -> None:
            alloc = allocator.allocate(plan, resolver.resolve(plan.material_id), snapshot)
            if alloc is None:
                skip(plan, "Sin combinación equipo/molde compatible disponible")
                return
            task = to_task(alloc, sync_group=None)
            snapshot.reserve(
                device_id=task.device_id,
                mold_id=task.mold_id,
                start=alloc.slot.start,
                end=alloc.slot.end,
                ref=task.task_number,
                material_ids=(plan.material_id,),
            )
            tasks.append(task)

        pending: dict[int, ProductionPlan] = {p.plan_id: p for p in plans}
        for plan in plans:
            self._check_deadline(deadline)
            if pending.pop(plan.plan_id, None) is None:
                continue  # already scheduled with a sync group

            if plan.planned_quantity <= 0:
                skip(plan, f"Cantidad planificada inválida ({plan.planned_quantity})")
                continue
            if resolver.resolve(plan.material_id).is_empty:
                skip(plan, "El material no tiene equipo o molde asociado")
                continue

            if self.settings.multi_material_sync:
                group = find_sync_group(
                    plan,
                    [p for p in pending.values() if schedulable(p)],
                    resolver,
                    window=window,
                )
                if len(group) > 1:
                    allocs = allocate_sync_group(group, resolver, snapshot, now=now)
                    if allocs:
                        sync_count += 1
                        ref = f"SYNC-{run_id[:8]}-{sync_count}"
                        first = allocs[0]
                        snapshot.reserve(
                            device_id=first.device.device_id,
                            mold_id=first.mold.mold_id,
                            start=first.slot.start,
                            end=first.slot.end,
                            ref=ref,
                            material_ids=[a.plan.material_id for a in allocs],
                        )
                        for alloc in allocs:
                            pending.pop(alloc.plan.plan_id, None)
                            tasks.append(to_task(alloc, sync_group=ref))
                        logger.info(
                            "Sync group %s: plans %s on device %s / mold %s",
                            ref,
                            [a.plan.plan_number for a in allocs],
                            first.device.device_code,
                            first.mold.mold_code,
                        )
                        continue
                    # Other members stay pending and are handled at their own turn.
                    logger.info("Plan %s: synchronization not possible, allocating alone", plan.plan_number)

            allocate_single(plan)

        saved = self.store.commit_run(
            run_id=run_id,
            tasks=tasks,
            before_commit=lambda: self._check_deadline(deadline),
        )

        message = f"Programación completada: {len(saved)} tareas creadas"
        if skipped:
            message += f", {len(skipped)} planes omitidos"
        logger.info("Scheduling run %s: %s tasks, %s skipped", run_id, len(saved), len(skipped))
        return SchedulingResult(success=True, message=message, run_id=run_id, tasks=saved, skipped=skipped)
