from __future__ import annotations


class SchedulingError(Exception):
    """Base class for scheduling run failures."""


class SchedulingInProgressError(SchedulingError):
    """Another scheduling run holds the run lock."""

    def __init__(self, *, holder_run_id: str, acquired_at: str) -> None:
        super().__init__(f"Scheduling already in progress (run {holder_run_id}, since {acquired_at})")
        self.holder_run_id = holder_run_id
        self.acquired_at = acquired_at


class SchedulingTimeoutError(SchedulingError):
    """The run exceeded its deadline; nothing was committed."""


class CommitError(SchedulingError):
    """Persisting the run failed and the transaction was rolled back."""

    def __init__(self, message: str, *, cause: BaseException | None = None) -> None:
        super().__init__(message)
        self.cause = cause


class OccupancyConflictError(SchedulingError):
    """A new reservation overlaps an existing one on the same resource."""


class SchedulingStoreError(SchedulingError):
    """Reading the run inputs from the database failed."""

    def __init__(self, message: str, *, cause: BaseException | None = None) -> None:
        super().__init__(message)
        self.cause = cause
