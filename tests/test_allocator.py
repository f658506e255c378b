from __future__ import annotations

from datetime import datetime, timedelta

from moldplan.core.models import Device, DeviceCandidate, Mold, MoldCandidate, ProductionPlan, ProductionTask
from moldplan.scheduling.allocator import Allocator
from moldplan.scheduling.candidates import Candidates
from moldplan.scheduling.occupancy import OccupancySnapshot
from moldplan.scheduling.reasons import Rule, annotate

NOW = datetime(2026, 3, 2, 8, 0, 0)
URGENT = timedelta(hours=24)

DEV_A = Device(device_id=1, device_code="A", capacity_per_hour=100)
DEV_B = Device(device_id=2, device_code="B", capacity_per_hour=100)
DEV_ZERO = Device(device_id=3, device_code="ZERO", capacity_per_hour=0)
MOLD_SINGLE = Mold(mold_id=10, mold_code="SINGLE", quantity=1)
MOLD_MULTI = Mold(mold_id=20, mold_code="MULTI", quantity=5)
MOLD_OTHER = Mold(mold_id=30, mold_code="OTHER", quantity=1)
MOLD_SPARE = Mold(mold_id=40, mold_code="SPARE", quantity=3)

ALL_DEVICES = [DEV_A, DEV_B, DEV_ZERO]
ALL_MOLDS = [MOLD_SINGLE, MOLD_MULTI, MOLD_OTHER, MOLD_SPARE]


def _plan(*, material_id=1, qty=100, due_days=10, plan_id=1):
    return ProductionPlan(
        plan_id=plan_id,
        plan_number=f"PLAN-{plan_id}",
        material_id=material_id,
        planned_quantity=qty,
        due_date=NOW + timedelta(days=due_days),
    )


def _history(*, device_id, mold_id, material_id, start_h=-4, end_h=-2, number="H1"):
    return ProductionTask(
        task_number=number,
        plan_id=900,
        material_id=material_id,
        device_id=device_id,
        mold_id=mold_id,
        task_quantity=10,
        due_date=NOW,
        planned_start_time=NOW + timedelta(hours=start_h),
        planned_end_time=NOW + timedelta(hours=end_h),
    )


def _cands(devices, molds) -> Candidates:
    return Candidates(
        devices=tuple(DeviceCandidate(device=d, weight=w) for d, w in devices),
        molds=tuple(MoldCandidate(mold=m, weight=w) for m, w in molds),
    )


def _snapshot(tasks=()):
    return OccupancySnapshot.build(devices=ALL_DEVICES, molds=ALL_MOLDS, tasks=tasks)


def test_single_candidates_are_used():
    alloc = Allocator(now=NOW).allocate(
        _plan(qty=250),
        _cands([(DEV_A, 90)], [(MOLD_MULTI, 80)]),
        _snapshot(),
    )
    assert alloc is not None
    assert alloc.device.device_id == DEV_A.device_id
    assert alloc.mold.mold_id == MOLD_MULTI.mold_id
    assert alloc.slot.start == NOW
    assert alloc.slot.end == NOW + timedelta(hours=2, minutes=30)
    assert not alloc.slot.is_overdue
    assert annotate(alloc.trace, urgent_slack=URGENT) is Rule.ONE_TASK_PER_PLAN


def test_bound_single_mold_forces_its_device_over_higher_weight_device():
    snap = _snapshot([_history(device_id=DEV_A.device_id, mold_id=MOLD_SINGLE.mold_id, material_id=99)])
    alloc = Allocator(now=NOW).allocate(
        _plan(),
        _cands([(DEV_B, 90), (DEV_A, 50)], [(MOLD_SINGLE, 80)]),
        snap,
    )
    assert alloc is not None
    assert alloc.device.device_id == DEV_A.device_id
    assert alloc.mold.mold_id == MOLD_SINGLE.mold_id
    assert annotate(alloc.trace, urgent_slack=URGENT) is Rule.SINGLE_MOLD_BINDING


def test_bound_single_mold_without_its_device_skips_plan():
    snap = _snapshot([_history(device_id=DEV_A.device_id, mold_id=MOLD_SINGLE.mold_id, material_id=99)])
    alloc = Allocator(now=NOW).allocate(
        _plan(),
        _cands([(DEV_B, 90)], [(MOLD_SINGLE, 80)]),
        snap,
    )
    assert alloc is None


def test_device_hosting_foreign_single_mold_is_skipped():
    snap = _snapshot([_history(device_id=DEV_A.device_id, mold_id=MOLD_OTHER.mold_id, material_id=99)])
    alloc = Allocator(now=NOW).allocate(
        _plan(material_id=2),
        _cands([(DEV_A, 90), (DEV_B, 50)], [(MOLD_MULTI, 80)]),
        snap,
    )
    assert alloc is not None
    assert alloc.device.device_id == DEV_B.device_id


def test_zero_capacity_device_is_skipped():
    alloc = Allocator(now=NOW).allocate(
        _plan(),
        _cands([(DEV_ZERO, 99), (DEV_A, 50)], [(MOLD_MULTI, 80)]),
        _snapshot(),
    )
    assert alloc is not None
    assert alloc.device.device_id == DEV_A.device_id
    assert alloc.trace.usable_devices == 1


def test_only_zero_capacity_device_skips_plan(caplog):
    alloc = Allocator(now=NOW).allocate(
        _plan(),
        _cands([(DEV_ZERO, 99)], [(MOLD_MULTI, 80)]),
        _snapshot(),
    )
    assert alloc is None
    assert "capacidad inválida" in caplog.text


def test_device_weight_decides_between_two_free_devices():
    alloc = Allocator(now=NOW).allocate(
        _plan(),
        _cands([(DEV_B, 90), (DEV_A, 40)], [(MOLD_MULTI, 80)]),
        _snapshot(),
    )
    assert alloc.device.device_id == DEV_B.device_id
    assert annotate(alloc.trace, urgent_slack=URGENT) is Rule.DEVICE_WEIGHT


def test_material_reuses_its_last_pair():
    snap = _snapshot([_history(device_id=DEV_B.device_id, mold_id=MOLD_MULTI.mold_id, material_id=1)])
    alloc = Allocator(now=NOW).allocate(
        _plan(material_id=1),
        _cands([(DEV_A, 90), (DEV_B, 50)], [(MOLD_MULTI, 80)]),
        snap,
    )
    assert alloc.device.device_id == DEV_B.device_id
    assert alloc.trace.consistency == "material"
    assert annotate(alloc.trace, urgent_slack=URGENT) is Rule.MATERIAL_CONSISTENCY


def test_shared_mold_stays_on_its_last_device():
    snap = _snapshot([_history(device_id=DEV_B.device_id, mold_id=MOLD_MULTI.mold_id, material_id=7)])
    alloc = Allocator(now=NOW).allocate(
        _plan(material_id=1),
        _cands([(DEV_A, 90), (DEV_B, 50)], [(MOLD_MULTI, 80)]),
        snap,
    )
    assert alloc.device.device_id == DEV_B.device_id
    assert annotate(alloc.trace, urgent_slack=URGENT) is Rule.MOLD_CONSISTENCY


def test_fallback_when_preferred_pair_would_be_overdue():
    # B ran this material last but is busy for two days; the plan is due tomorrow.
    snap = _snapshot(
        [
            _history(device_id=DEV_B.device_id, mold_id=MOLD_MULTI.mold_id, material_id=1, number="H1"),
            _history(device_id=DEV_B.device_id, mold_id=MOLD_SPARE.mold_id, material_id=5, start_h=0, end_h=48, number="H2"),
        ]
    )
    alloc = Allocator(now=NOW).allocate(
        _plan(material_id=1, due_days=1),
        _cands([(DEV_B, 90), (DEV_A, 40)], [(MOLD_MULTI, 80)]),
        snap,
    )
    assert alloc.device.device_id == DEV_A.device_id
    assert not alloc.slot.is_overdue
    assert alloc.trace.fallback_used
    assert annotate(alloc.trace, urgent_slack=URGENT) is Rule.FLEXIBLE_FALLBACK


def test_no_fallback_keeps_preferred_pair_even_if_overdue():
    snap = _snapshot(
        [
            _history(device_id=DEV_B.device_id, mold_id=MOLD_MULTI.mold_id, material_id=1, number="H1"),
            _history(device_id=DEV_B.device_id, mold_id=MOLD_SPARE.mold_id, material_id=5, start_h=0, end_h=48, number="H2"),
        ]
    )
    alloc = Allocator(now=NOW, flexible_fallback=False).allocate(
        _plan(material_id=1, due_days=1),
        _cands([(DEV_B, 90), (DEV_A, 40)], [(MOLD_MULTI, 80)]),
        snap,
    )
    assert alloc.device.device_id == DEV_B.device_id
    assert alloc.slot.is_overdue


def test_busy_mold_delays_start():
    snap = _snapshot([_history(device_id=DEV_B.device_id, mold_id=MOLD_MULTI.mold_id, material_id=7, start_h=0, end_h=3)])
    alloc = Allocator(now=NOW).allocate(
        _plan(material_id=1, due_days=10),
        _cands([(DEV_A, 90)], [(MOLD_MULTI, 80)]),
        snap,
    )
    assert alloc.device.device_id == DEV_A.device_id
    assert alloc.slot.start == NOW + timedelta(hours=3)
    assert annotate(alloc.trace, urgent_slack=URGENT) is Rule.MOLD_DEVICE_EXCLUSIVITY
