from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from moldplan.core.models import DeviceCandidate, MoldCandidate

if TYPE_CHECKING:
    from moldplan.scheduling.engine import SchedulingStore


@dataclass(frozen=True)
class Candidates:
    devices: tuple[DeviceCandidate, ...]
    molds: tuple[MoldCandidate, ...]

    @property
    def is_empty(self) -> bool:
        """No device or no mold: the plan cannot be scheduled this run."""
        return not self.devices or not self.molds

    @property
    def mold_ids(self) -> frozenset[int]:
        return frozenset(c.mold.mold_id for c in self.molds)

    def device_weights(self) -> dict[int, int]:
        return {c.device.device_id: c.weight for c in self.devices}


class CandidateResolver:
    """Ranked device/mold candidates per material, cached for one run."""

    def __init__(self, source: SchedulingStore) -> None:
        self._source = source
        self._cache: dict[int, Candidates] = {}

    def resolve(self, material_id: int) -> Candidates:
        cached = self._cache.get(material_id)
        if cached is not None:
            return cached
        devices = sorted(
            self._source.get_device_candidates(material_id),
            key=lambda c: (-c.weight, c.device.device_id),
        )
        molds = sorted(
            self._source.get_mold_candidates(material_id),
            key=lambda c: (-c.weight, c.mold.mold_id),
        )
        out = Candidates(devices=tuple(devices), molds=tuple(molds))
        self._cache[material_id] = out
        return out

    def mold_ids(self, material_id: int) -> frozenset[int]:
        return self.resolve(material_id).mold_ids
