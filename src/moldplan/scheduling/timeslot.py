from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta

from moldplan.scheduling.occupancy import OccupancySnapshot


@dataclass(frozen=True)
class TimeSlot:
    start: datetime
    end: datetime
    is_overdue: bool
    # When each resource became free; used to explain why the start was delayed.
    device_free_at: datetime | None = None
    mold_free_at: datetime | None = None


def production_duration(quantity: int, capacity_per_hour: float) -> timedelta:
    """ceil(quantity / capacity_per_hour * 3600) seconds."""
    if capacity_per_hour <= 0:
        raise ValueError(f"capacity_per_hour must be > 0, got {capacity_per_hour}")
    if quantity <= 0:
        raise ValueError(f"quantity must be > 0, got {quantity}")
    if isinstance(quantity, int) and isinstance(capacity_per_hour, int):
        seconds = -(-quantity * 3600 // capacity_per_hour)
    else:
        seconds = math.ceil(quantity / capacity_per_hour * 3600)
    return timedelta(seconds=seconds)


def earliest_start(
    *,
    device_id: int,
    mold_id: int,
    snapshot: OccupancySnapshot,
    now: datetime,
) -> tuple[datetime, datetime | None, datetime | None]:
    """max(now, latest end on device, latest end on mold), plus both free-at values."""
    device_free = snapshot.device_free_at(device_id)
    mold_free = snapshot.mold_free_at(mold_id)
    start = now
    for t in (device_free, mold_free):
        if t is not None and t > start:
            start = t
    return start, device_free, mold_free


def calculate_time_slot(
    *,
    quantity: int,
    due_date: datetime,
    device_id: int,
    capacity_per_hour: float,
    mold_id: int,
    snapshot: OccupancySnapshot,
    now: datetime,
) -> TimeSlot:
    start, device_free, mold_free = earliest_start(
        device_id=device_id, mold_id=mold_id, snapshot=snapshot, now=now
    )
    end = start + production_duration(quantity, capacity_per_hour)
    return TimeSlot(
        start=start,
        end=end,
        is_overdue=end > due_date,
        device_free_at=device_free,
        mold_free_at=mold_free,
    )
