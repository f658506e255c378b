"""Shared-mold multi-material synchronization.

Plans of different materials that can use the same mold and are due close to each
other are produced together: one device, one mold, one time window.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from moldplan.core.models import DeviceCandidate, MoldCandidate, ProductionPlan
from moldplan.scheduling.allocator import Allocation, device_usable, mold_usable
from moldplan.scheduling.candidates import CandidateResolver
from moldplan.scheduling.occupancy import OccupancySnapshot
from moldplan.scheduling.reasons import AllocationTrace
from moldplan.scheduling.timeslot import TimeSlot, earliest_start, production_duration

logger = logging.getLogger(__name__)


def find_sync_group(
    plan: ProductionPlan,
    pending: list[ProductionPlan],
    resolver: CandidateResolver,
    *,
    window: timedelta,
) -> list[ProductionPlan]:
    """`plan` plus pending plans of other materials sharing a mold and due within `window`.

    At most one plan per material joins (the earliest due), so a group never splits
    one material over two tasks in the same window.
    """
    molds = resolver.mold_ids(plan.material_id)
    group = [plan]
    if not molds:
        return group
    seen_materials = {plan.material_id}
    for other in sorted(pending, key=lambda p: (p.due_date, p.plan_id)):
        if other.plan_id == plan.plan_id or other.material_id in seen_materials:
            continue
        if abs(other.due_date - plan.due_date) > window:
            continue
        if not (resolver.mold_ids(other.material_id) & molds):
            continue
        group.append(other)
        seen_materials.add(other.material_id)
    return group


def _rank_devices(group: list[ProductionPlan], resolver: CandidateResolver) -> list[tuple[DeviceCandidate, int]]:
    """Devices associated with every member, by summed weight (ties: device id)."""
    per_member = [resolver.resolve(p.material_id) for p in group]
    common = set(per_member[0].device_weights())
    for cands in per_member[1:]:
        common &= set(cands.device_weights())

    scores: dict[int, int] = {}
    by_id: dict[int, DeviceCandidate] = {}
    for cands in per_member:
        for dc in cands.devices:
            if dc.device.device_id not in common:
                continue
            scores[dc.device.device_id] = scores.get(dc.device.device_id, 0) + dc.weight
            by_id.setdefault(dc.device.device_id, dc)
    ranked = sorted(scores.items(), key=lambda kv: (-kv[1], kv[0]))
    return [(by_id[device_id], score) for device_id, score in ranked]


def _common_molds(group: list[ProductionPlan], resolver: CandidateResolver) -> list[MoldCandidate]:
    per_member = [resolver.resolve(p.material_id) for p in group]
    common = set(per_member[0].mold_ids)
    for cands in per_member[1:]:
        common &= cands.mold_ids
    by_id = {mc.mold.mold_id: mc for mc in per_member[0].molds}
    return [by_id[mold_id] for mold_id in sorted(common)]


def allocate_sync_group(
    group: list[ProductionPlan],
    resolver: CandidateResolver,
    snapshot: OccupancySnapshot,
    *,
    now: datetime,
) -> list[Allocation] | None:
    """Same device, mold and window for every member; None means degrade to per-plan allocation."""
    common_molds = [mc for mc in _common_molds(group, resolver) if mold_usable(mc.mold, snapshot) is None]
    if not common_molds:
        logger.info("Sync group %s: no usable common mold", [p.plan_number for p in group])
        return None
    common_mold_ids = {mc.mold.mold_id for mc in common_molds}

    chosen: tuple[DeviceCandidate, MoldCandidate] | None = None
    for dc, score in _rank_devices(group, resolver):
        if device_usable(dc.device, snapshot) is not None:
            continue
        device_id = dc.device.device_id
        if any(m not in common_mold_ids for m in snapshot.molds_bound_to(device_id)):
            continue
        for mc in common_molds:
            if snapshot.mold_can_run_on(mc.mold.mold_id, device_id):
                chosen = (dc, mc)
                break
        if chosen is not None:
            logger.debug("Sync group device %s scored %s", dc.device.device_code, score)
            break

    if chosen is None:
        logger.info("Sync group %s: no compatible common device", [p.plan_number for p in group])
        return None

    dc, mc = chosen
    start, device_free, mold_free = earliest_start(
        device_id=dc.device.device_id, mold_id=mc.mold.mold_id, snapshot=snapshot, now=now
    )
    # Members run side by side on the shared mold; the window covers the longest one.
    duration = max(production_duration(p.planned_quantity, dc.device.capacity_per_hour) for p in group)
    end = start + duration

    out: list[Allocation] = []
    for plan in group:
        slot = TimeSlot(
            start=start,
            end=end,
            is_overdue=end > plan.due_date,
            device_free_at=device_free,
            mold_free_at=mold_free,
        )
        trace = AllocationTrace(
            now=now,
            start=start,
            end=end,
            due_date=plan.due_date,
            device_free_at=device_free,
            mold_free_at=mold_free,
            synchronized=True,
        )
        out.append(Allocation(plan=plan, device=dc.device, mold=mc.mold, slot=slot, trace=trace))
    return out
