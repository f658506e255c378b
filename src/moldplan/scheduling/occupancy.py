"""Per-run occupancy snapshot of devices and molds.

The snapshot is rebuilt from committed tasks at the start of every scheduling run,
extended in memory while the run assigns new tasks, and thrown away afterwards.
Committed tasks in the database stay the source of truth.
"""

from __future__ import annotations

import bisect
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable

from moldplan.core.models import TASK_CANCELLED, Device, Mold, ProductionTask
from moldplan.scheduling.errors import OccupancyConflictError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Reservation:
    """An occupied [start, end) window on one resource.

    `ref` is the task number, or the sync group for tasks co-scheduled on one window.
    """

    start: datetime
    end: datetime
    ref: str
    device_id: int | None = None

    def overlaps(self, other: Reservation) -> bool:
        return self.start < other.end and other.start < self.end


class ResourceTimeline:
    """Sorted, non-overlapping reservations of a single device or mold."""

    def __init__(self) -> None:
        self._windows: list[Reservation] = []

    @property
    def windows(self) -> tuple[Reservation, ...]:
        return tuple(self._windows)

    def latest_end(self) -> datetime | None:
        if not self._windows:
            return None
        # Historical windows may overlap (manual edits), so the last one by start
        # is not necessarily the one that ends last.
        return max(w.end for w in self._windows)

    def _conflicts(self, res: Reservation) -> list[Reservation]:
        return [w for w in self._windows if w.ref != res.ref and w.overlaps(res)]

    def _insert(self, res: Reservation) -> None:
        bisect.insort(self._windows, res, key=lambda w: (w.start, w.end))

    def load(self, res: Reservation) -> list[Reservation]:
        """Add a historical window. Returns overlapping windows instead of raising."""
        if any(w.ref == res.ref and w.start == res.start and w.end == res.end for w in self._windows):
            return []
        conflicts = self._conflicts(res)
        self._insert(res)
        return conflicts

    def check(self, res: Reservation) -> None:
        if res.end <= res.start:
            raise OccupancyConflictError(f"Empty or inverted window {res.start} -> {res.end} ({res.ref})")
        conflicts = self._conflicts(res)
        if conflicts:
            other = conflicts[0]
            raise OccupancyConflictError(
                f"Window {res.start:%Y-%m-%d %H:%M} -> {res.end:%Y-%m-%d %H:%M} ({res.ref}) "
                f"overlaps {other.start:%Y-%m-%d %H:%M} -> {other.end:%Y-%m-%d %H:%M} ({other.ref})"
            )

    def reserve(self, res: Reservation) -> None:
        self.check(res)
        self._insert(res)


class OccupancySnapshot:
    def __init__(self, *, devices: Iterable[Device], molds: Iterable[Mold]) -> None:
        self.devices: dict[int, ResourceTimeline] = {d.device_id: ResourceTimeline() for d in devices}
        self.molds: dict[int, ResourceTimeline] = {}
        self.single_instance_molds: set[int] = set()
        for m in molds:
            self.molds[m.mold_id] = ResourceTimeline()
            if m.is_single_instance:
                self.single_instance_molds.add(m.mold_id)

        # single-instance mold -> device it is bound to
        self.mold_bindings: dict[int, int] = {}
        # material -> last (device, mold) pairing, mold -> last device (consistency rules)
        self.material_pairs: dict[int, tuple[int, int]] = {}
        self.mold_last_device: dict[int, int] = {}

    @classmethod
    def build(
        cls,
        *,
        devices: Iterable[Device],
        molds: Iterable[Mold],
        tasks: Iterable[ProductionTask],
    ) -> OccupancySnapshot:
        """Rebuild occupancy from committed tasks (expected in creation order)."""
        snapshot = cls(devices=devices, molds=molds)
        loaded = 0
        for task in tasks:
            if task.status == TASK_CANCELLED:
                continue
            if task.planned_start_time is None or task.planned_end_time is None:
                continue
            res = Reservation(
                start=task.planned_start_time,
                end=task.planned_end_time,
                ref=task.sync_group or task.task_number,
                device_id=task.device_id,
            )
            device_tl = snapshot.devices.get(task.device_id)
            if device_tl is not None:
                for other in device_tl.load(res):
                    logger.warning(
                        "Committed tasks %s and %s overlap on device %s", res.ref, other.ref, task.device_id
                    )
            mold_tl = snapshot.molds.get(task.mold_id)
            if mold_tl is not None:
                for other in mold_tl.load(res):
                    logger.warning("Committed tasks %s and %s overlap on mold %s", res.ref, other.ref, task.mold_id)
                if task.mold_id in snapshot.single_instance_molds:
                    snapshot.mold_bindings.setdefault(task.mold_id, task.device_id)
            snapshot._remember(task.device_id, task.mold_id, task.material_id)
            loaded += 1

        logger.debug(
            "Occupancy snapshot: %s devices, %s molds, %s windows loaded, %s bindings",
            len(snapshot.devices),
            len(snapshot.molds),
            loaded,
            len(snapshot.mold_bindings),
        )
        return snapshot

    def _remember(self, device_id: int, mold_id: int, material_id: int | None) -> None:
        self.mold_last_device[mold_id] = device_id
        if material_id is not None:
            self.material_pairs[material_id] = (device_id, mold_id)

    # ---------- Queries ----------

    def has_device(self, device_id: int) -> bool:
        return device_id in self.devices

    def has_mold(self, mold_id: int) -> bool:
        return mold_id in self.molds

    def bound_device(self, mold_id: int) -> int | None:
        return self.mold_bindings.get(mold_id)

    def molds_bound_to(self, device_id: int) -> set[int]:
        return {mold_id for mold_id, dev in self.mold_bindings.items() if dev == device_id}

    def device_free_at(self, device_id: int) -> datetime | None:
        tl = self.devices.get(device_id)
        return tl.latest_end() if tl is not None else None

    def mold_free_at(self, mold_id: int) -> datetime | None:
        tl = self.molds.get(mold_id)
        return tl.latest_end() if tl is not None else None

    def mold_can_run_on(self, mold_id: int, device_id: int) -> bool:
        """False when a single-instance mold is already bound to another device."""
        bound = self.mold_bindings.get(mold_id)
        return bound is None or bound == device_id

    # ---------- Updates ----------

    def reserve(
        self,
        *,
        device_id: int,
        mold_id: int,
        start: datetime,
        end: datetime,
        ref: str,
        material_ids: Iterable[int] = (),
    ) -> None:
        """Book one window on both resources; raises OccupancyConflictError on overlap."""
        if not self.mold_can_run_on(mold_id, device_id):
            raise OccupancyConflictError(
                f"Mold {mold_id} is bound to device {self.mold_bindings[mold_id]}, not {device_id}"
            )
        res = Reservation(start=start, end=end, ref=ref, device_id=device_id)
        device_tl = self.devices.get(device_id)
        mold_tl = self.molds.get(mold_id)
        # Check both before touching either, so a conflict leaves the snapshot unchanged.
        for tl in (device_tl, mold_tl):
            if tl is not None:
                tl.check(res)
        if device_tl is not None:
            device_tl.reserve(res)
        if mold_tl is not None:
            mold_tl.reserve(res)
        if mold_id in self.single_instance_molds:
            self.mold_bindings.setdefault(mold_id, device_id)
        for material_id in material_ids:
            self._remember(device_id, mold_id, material_id)
        self.mold_last_device[mold_id] = device_id
