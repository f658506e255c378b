"""Scheduling package.

Batch allocation of unscheduled production plans to devices and molds: the
per-run occupancy snapshot, candidate ranking, the allocator, multi-material
synchronization and the engine that commits a run atomically.
"""

from moldplan.scheduling.engine import SchedulingEngine, SchedulingResult, SchedulingStore
from moldplan.scheduling.errors import (
    CommitError,
    OccupancyConflictError,
    SchedulingError,
    SchedulingInProgressError,
    SchedulingStoreError,
    SchedulingTimeoutError,
)

__all__ = [
    "CommitError",
    "OccupancyConflictError",
    "SchedulingEngine",
    "SchedulingError",
    "SchedulingInProgressError",
    "SchedulingResult",
    "SchedulingStore",
    "SchedulingStoreError",
    "SchedulingTimeoutError",
]
