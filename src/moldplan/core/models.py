from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

PLAN_UNSCHEDULED = "unscheduled"
PLAN_SCHEDULED = "scheduled"
PLAN_CANCELLED = "cancelled"
PLAN_STATUSES = (PLAN_UNSCHEDULED, PLAN_SCHEDULED, PLAN_CANCELLED)

TASK_PENDING = "pending"
TASK_IN_PROGRESS = "in_progress"
TASK_COMPLETED = "completed"
TASK_CANCELLED = "cancelled"
TASK_STATUSES = (TASK_PENDING, TASK_IN_PROGRESS, TASK_COMPLETED, TASK_CANCELLED)

RESOURCE_NORMAL = "normal"
RESOURCE_STATUSES = ("normal", "maintenance", "idle", "scrapped")


@dataclass(frozen=True)
class ProductionPlan:
    plan_id: int
    plan_number: str
    material_id: int
    planned_quantity: int
    due_date: datetime
    status: str = PLAN_UNSCHEDULED
    order_number: str | None = None
    customer: str | None = None


@dataclass(frozen=True)
class Device:
    device_id: int
    device_code: str
    capacity_per_hour: int
    status: str = RESOURCE_NORMAL
    device_name: str | None = None


@dataclass(frozen=True)
class Mold:
    mold_id: int
    mold_code: str
    quantity: int = 1
    status: str = RESOURCE_NORMAL
    mold_name: str | None = None

    @property
    def is_single_instance(self) -> bool:
        return self.quantity == 1


@dataclass(frozen=True)
class DeviceCandidate:
    """A material -> device edge, ranked by weight."""

    device: Device
    weight: int


@dataclass(frozen=True)
class MoldCandidate:
    """A material -> mold edge, ranked by weight."""

    mold: Mold
    weight: int
    cycle_time: int = 0
    output_per_cycle: int = 1


@dataclass(frozen=True)
class ProductionTask:
    task_number: str
    plan_id: int
    device_id: int
    mold_id: int
    task_quantity: int
    due_date: datetime
    planned_start_time: datetime | None
    planned_end_time: datetime | None
    is_overdue: bool = False
    status: str = TASK_PENDING
    scheduling_rule: str | None = None
    scheduling_reason: str | None = None
    sync_group: str | None = None
    erp_task_number: str | None = None
    task_id: int | None = None
    material_id: int | None = None

    def as_row(self) -> dict:
        return {
            "task_id": self.task_id,
            "task_number": self.task_number,
            "plan_id": self.plan_id,
            "material_id": self.material_id,
            "device_id": self.device_id,
            "mold_id": self.mold_id,
            "task_quantity": self.task_quantity,
            "due_date": self.due_date.isoformat(),
            "planned_start_time": self.planned_start_time.isoformat() if self.planned_start_time else None,
            "planned_end_time": self.planned_end_time.isoformat() if self.planned_end_time else None,
            "is_overdue": self.is_overdue,
            "status": self.status,
            "scheduling_rule": self.scheduling_rule,
            "scheduling_reason": self.scheduling_reason,
            "sync_group": self.sync_group,
            "erp_task_number": self.erp_task_number,
        }


@dataclass
class AuditEntry:
    id: int
    timestamp: str
    category: str
    message: str
    details: str | None = None
