from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime

from moldplan.core.models import RESOURCE_NORMAL, Device, DeviceCandidate, Mold, MoldCandidate, ProductionPlan
from moldplan.scheduling.candidates import Candidates
from moldplan.scheduling.occupancy import OccupancySnapshot
from moldplan.scheduling.reasons import AllocationTrace
from moldplan.scheduling.timeslot import TimeSlot, calculate_time_slot

logger = logging.getLogger(__name__)

Pair = tuple[DeviceCandidate, MoldCandidate]


@dataclass(frozen=True)
class Allocation:
    plan: ProductionPlan
    device: Device
    mold: Mold
    slot: TimeSlot
    trace: AllocationTrace


@dataclass
class PairSearch:
    """Compatible (device, mold) pairs in weight order plus why candidates were dropped."""

    pairs: list[Pair] = field(default_factory=list)
    usable_devices: list[DeviceCandidate] = field(default_factory=list)
    usable_molds: list[MoldCandidate] = field(default_factory=list)
    notes: list[str] = field(default_factory=list)


def device_usable(device: Device, snapshot: OccupancySnapshot) -> str | None:
    """Return why a device cannot be used, or None when it can."""
    if not snapshot.has_device(device.device_id) or device.status != RESOURCE_NORMAL:
        return f"equipo {device.device_code} no disponible ({device.status})"
    if device.capacity_per_hour <= 0:
        return f"equipo {device.device_code} con capacidad inválida ({device.capacity_per_hour}/h)"
    return None


def mold_usable(mold: Mold, snapshot: OccupancySnapshot) -> str | None:
    if not snapshot.has_mold(mold.mold_id) or mold.status != RESOURCE_NORMAL:
        return f"molde {mold.mold_code} no disponible ({mold.status})"
    if mold.quantity <= 0:
        return f"molde {mold.mold_code} con cantidad inválida ({mold.quantity})"
    return None


def reserved_for_foreign_mold(device_id: int, material_molds: frozenset[int], snapshot: OccupancySnapshot) -> bool:
    """True when the device hosts a single-instance mold this material does not use."""
    return any(mold_id not in material_molds for mold_id in snapshot.molds_bound_to(device_id))


class Allocator:
    """Chooses one device and one mold for a plan.

    Stateless apart from run parameters; all occupancy lives in the snapshot passed in.
    """

    def __init__(self, *, now: datetime, flexible_fallback: bool = True) -> None:
        self.now = now
        self.flexible_fallback = flexible_fallback

    def search_pairs(self, candidates: Candidates, snapshot: OccupancySnapshot) -> PairSearch:
        out = PairSearch()
        for dc in candidates.devices:
            why = device_usable(dc.device, snapshot)
            if why:
                out.notes.append(why)
                continue
            out.usable_devices.append(dc)
        for mc in candidates.molds:
            why = mold_usable(mc.mold, snapshot)
            if why:
                out.notes.append(why)
                continue
            out.usable_molds.append(mc)

        material_molds = candidates.mold_ids
        for dc in out.usable_devices:
            device_id = dc.device.device_id
            if reserved_for_foreign_mold(device_id, material_molds, snapshot):
                out.notes.append(f"equipo {dc.device.device_code} reservado para su molde único vinculado")
                continue
            for mc in out.usable_molds:
                if not snapshot.mold_can_run_on(mc.mold.mold_id, device_id):
                    continue
                out.pairs.append((dc, mc))
        return out

    def _slot(self, plan: ProductionPlan, pair: Pair, snapshot: OccupancySnapshot) -> TimeSlot:
        dc, mc = pair
        return calculate_time_slot(
            quantity=plan.planned_quantity,
            due_date=plan.due_date,
            device_id=dc.device.device_id,
            capacity_per_hour=dc.device.capacity_per_hour,
            mold_id=mc.mold.mold_id,
            snapshot=snapshot,
            now=self.now,
        )

    @staticmethod
    def _find(pairs: list[Pair], device_id: int, mold_id: int) -> Pair | None:
        for pair in pairs:
            if pair[0].device.device_id == device_id and pair[1].mold.mold_id == mold_id:
                return pair
        return None

    def _preferred(self, plan: ProductionPlan, search: PairSearch, snapshot: OccupancySnapshot) -> tuple[Pair, str | None]:
        """Weight-first pair, overridden by material/mold consistency when still compatible."""
        first = search.pairs[0]

        last = snapshot.material_pairs.get(plan.material_id)
        if last is not None:
            pair = self._find(search.pairs, *last)
            if pair is not None:
                return pair, ("material" if pair is not first else None)

        for mc in search.usable_molds:
            last_device = snapshot.mold_last_device.get(mc.mold.mold_id)
            if last_device is None:
                continue
            pair = self._find(search.pairs, last_device, mc.mold.mold_id)
            if pair is not None:
                return pair, ("mold" if pair is not first else None)
        return first, None

    def allocate(self, plan: ProductionPlan, candidates: Candidates, snapshot: OccupancySnapshot) -> Allocation | None:
        """Pick a device/mold pair and its time slot; None when nothing compatible is left."""
        search = self.search_pairs(candidates, snapshot)
        if not search.pairs:
            logger.warning(
                "Plan %s: no compatible device/mold pair (%s)",
                plan.plan_number,
                "; ".join(search.notes) or "sin candidatos",
            )
            return None

        chosen, consistency = self._preferred(plan, search, snapshot)
        slot = self._slot(plan, chosen, snapshot)

        fallback_used = False
        if slot.is_overdue and self.flexible_fallback:
            for pair in search.pairs:
                if pair is chosen:
                    continue
                alt = self._slot(plan, pair, snapshot)
                if not alt.is_overdue:
                    logger.info(
                        "Plan %s: preferred pair would be overdue, using device %s / mold %s instead",
                        plan.plan_number,
                        pair[0].device.device_code,
                        pair[1].mold.mold_code,
                    )
                    chosen, slot, fallback_used, consistency = pair, alt, True, None
                    break

        dc, mc = chosen
        top_device = search.usable_devices[0]
        top_mold = search.usable_molds[0]
        weight_first = search.pairs[0]
        trace = AllocationTrace(
            now=self.now,
            start=slot.start,
            end=slot.end,
            due_date=plan.due_date,
            device_free_at=slot.device_free_at,
            mold_free_at=slot.mold_free_at,
            usable_devices=len(search.usable_devices),
            usable_molds=len(search.usable_molds),
            top_device_chosen=dc is top_device,
            top_mold_chosen=mc is top_mold,
            binding_displaced=(
                chosen is weight_first and (weight_first[0] is not top_device or weight_first[1] is not top_mold)
            ),
            consistency=consistency,
            fallback_used=fallback_used,
        )
        return Allocation(plan=plan, device=dc.device, mold=mc.mold, slot=slot, trace=trace)
