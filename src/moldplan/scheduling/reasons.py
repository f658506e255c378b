"""Audit labels for allocation decisions.

The label is derived from which branch of the allocator fired (see AllocationTrace);
it never feeds back into the decision.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum


class Rule(str, Enum):
    DUE_DATE_PRIORITY = "due_date_priority"
    DEVICE_WEIGHT = "device_weight"
    MOLD_WEIGHT = "mold_weight"
    MOLD_DEVICE_EXCLUSIVITY = "mold_device_exclusivity"
    SINGLE_MOLD_BINDING = "single_mold_binding"
    MATERIAL_CONSISTENCY = "material_consistency"
    MOLD_CONSISTENCY = "mold_consistency"
    ONE_TASK_PER_PLAN = "one_task_per_plan"
    MULTI_MATERIAL_SYNC = "multi_material_sync"
    FLEXIBLE_FALLBACK = "flexible_fallback"


RULE_LABELS: dict[Rule, tuple[int, str]] = {
    Rule.DUE_DATE_PRIORITY: (1, "Prioridad por fecha de entrega: plazo ajustado, se programa en la primera ventana libre"),
    Rule.DEVICE_WEIGHT: (2, "Prioridad por peso de equipo: se eligió el equipo de mayor peso"),
    Rule.MOLD_WEIGHT: (3, "Prioridad por peso de molde: se eligió el molde de mayor peso"),
    Rule.MOLD_DEVICE_EXCLUSIVITY: (4, "Exclusividad molde-equipo: el inicio espera a que el molde se libere"),
    Rule.SINGLE_MOLD_BINDING: (5, "Vinculación molde único-equipo: el molde de una sola unidad sigue en su equipo"),
    Rule.MATERIAL_CONSISTENCY: (6, "Consistencia de material: se reutiliza el par equipo/molde del material"),
    Rule.MOLD_CONSISTENCY: (7, "Consistencia de molde: se mantiene el molde en el equipo donde ya trabaja"),
    Rule.ONE_TASK_PER_PLAN: (8, "Plan único: el plan completo va a un equipo y un molde"),
    Rule.MULTI_MATERIAL_SYNC: (9, "Sincronización multi-material: materiales que comparten molde en la misma ventana"),
    Rule.FLEXIBLE_FALLBACK: (10, "Asignación flexible: la opción preferida no cumplía la fecha de entrega"),
}


def describe(rule: Rule) -> str:
    number, label = RULE_LABELS[rule]
    return f"R{number} {label}"


@dataclass(frozen=True)
class AllocationTrace:
    """What the allocator saw and did for one plan."""

    now: datetime
    start: datetime
    end: datetime
    due_date: datetime
    device_free_at: datetime | None = None
    mold_free_at: datetime | None = None
    usable_devices: int = 1
    usable_molds: int = 1
    top_device_chosen: bool = True
    top_mold_chosen: bool = True
    binding_displaced: bool = False
    consistency: str | None = None  # "material" | "mold", only when it changed the pick
    fallback_used: bool = False
    synchronized: bool = False

    @property
    def slack(self) -> timedelta:
        return self.due_date - self.end

    @property
    def waited_for_mold(self) -> bool:
        if self.mold_free_at is None or self.mold_free_at <= self.now:
            return False
        return self.device_free_at is None or self.mold_free_at > self.device_free_at


def annotate(trace: AllocationTrace, *, urgent_slack: timedelta) -> Rule:
    """Pick the rule that best explains the allocation, highest precedence first."""
    if trace.synchronized:
        return Rule.MULTI_MATERIAL_SYNC
    if trace.fallback_used:
        return Rule.FLEXIBLE_FALLBACK
    if trace.binding_displaced:
        return Rule.SINGLE_MOLD_BINDING
    if trace.consistency == "material":
        return Rule.MATERIAL_CONSISTENCY
    if trace.consistency == "mold":
        return Rule.MOLD_CONSISTENCY
    if trace.waited_for_mold:
        return Rule.MOLD_DEVICE_EXCLUSIVITY
    if trace.slack < urgent_slack:
        return Rule.DUE_DATE_PRIORITY
    if trace.usable_devices > 1 and trace.top_device_chosen:
        return Rule.DEVICE_WEIGHT
    if trace.usable_molds > 1 and trace.top_mold_chosen:
        return Rule.MOLD_WEIGHT
    return Rule.ONE_TASK_PER_PLAN
