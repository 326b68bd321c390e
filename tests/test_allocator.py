"""
Unit tests for the resource allocator, slot planners and geo selection.

Run: pytest tests/ -v
"""

from concurrent.futures import ThreadPoolExecutor
from threading import Barrier

import pytest

from spectrum_coordinator.allocation.geo import baselines, distance_km, pick_farthest
from spectrum_coordinator.allocation.requirements import (
    PropagationTest, Requirements, Role, SpectrumScan, plan_slots, validate_variant,
    variant_from_dict, variant_to_dict,
)
from spectrum_coordinator.control.node_registry import FrequencyRange, GeoPosition
from spectrum_coordinator.errors import InvalidJobSpec
from spectrum_coordinator.scheduling.jobs import Job
from spectrum_coordinator.timing.sync_tracker import SyncTier

from conftest import HF_BAND, make_device, make_node, make_spec


def _job(spec, job_id="job-1"):
    return Job(job_id=job_id, spec=spec, priority=spec.effective_priority(), submitted_at=0.0, seq=0)


# ─── Candidate filtering ─────────────────────────────────────────────────────
class TestAllocate:
    def test_picks_lowest_node_ids(self, harness):
        for node_id in ("n3", "n1", "n2"):
            harness.add_node(node_id)
        result = harness.allocator.allocate(_job(make_spec(min_nodes=2)))
        assert result.ok
        assert [a.node_id for a in result.allocations] == ["n1", "n2"]
        assert [a.role for a in result.allocations] == [Role.PRIMARY, Role.SECONDARY]
        assert harness.registry.reservations() == {("n1", "sdr0"): "job-1", ("n2", "sdr0"): "job-1"}

    def test_insufficient_reserves_nothing(self, harness):
        harness.add_node("n1")
        harness.add_node("n2")
        result = harness.allocator.allocate(_job(make_spec(min_nodes=3)))
        assert not result.ok
        assert result.found == 2
        assert result.allocations == []
        assert harness.registry.reservations() == {}

    def test_sync_tier_filter(self, harness):
        harness.add_node("n1")
        harness.registry.register(make_node("n2"))
        harness.heartbeat("n2", pps_locked=False)
        job = _job(make_spec(min_nodes=1, tier=SyncTier.TIME))
        assert [n.node_id for n in harness.allocator.candidates(job)] == ["n1"]

    def test_two_node_tier_requirement(self, harness):
        wideband = FrequencyRange(70e6, 6000e6)
        harness.add_node("n1", devices=[make_device(low_hz=70e6, high_hz=6000e6)])
        harness.registry.register(make_node("n2", devices=[make_device(low_hz=70e6, high_hz=6000e6)]))
        harness.heartbeat("n2", pps_locked=False)
        assert harness.tracker.tier_of("n1") == SyncTier.TIME
        assert harness.tracker.tier_of("n2") == SyncTier.FREQUENCY

        timed = harness.allocator.allocate(_job(make_spec(min_nodes=2, tier=SyncTier.TIME, band=wideband)))
        assert not timed.ok
        assert timed.found == 1
        assert harness.registry.reservations() == {}

        result = harness.allocator.allocate(
            _job(make_spec(min_nodes=2, tier=SyncTier.FREQUENCY, band=wideband), "job-2"))
        assert result.ok
        assert [a.node_id for a in result.allocations] == ["n1", "n2"]
        assert harness.registry.reservations() == {("n1", "sdr0"): "job-2", ("n2", "sdr0"): "job-2"}

    def test_frequency_and_bandwidth_filters(self, harness):
        harness.add_node("vhf", devices=[make_device(low_hz=50e6, high_hz=150e6)])
        harness.add_node("narrow", devices=[make_device(bandwidth_hz=0.5e6)])
        harness.add_node("hf", devices=[make_device()])
        job = _job(make_spec(bandwidth_hz=1e6))
        assert [n.node_id for n in harness.allocator.candidates(job)] == ["hf"]

    def test_zero_bandwidth_reserves_whole_device(self, harness):
        harness.add_node("n1", devices=[make_device(bandwidth_hz=8e6)])
        result = harness.allocator.allocate(_job(make_spec()))
        assert result.allocations[0].bandwidth_hz == 8e6

    def test_excluded_and_suspect_nodes_are_skipped(self, harness):
        harness.add_node("n1")
        harness.add_node("n2")
        harness.add_node("n3")
        harness.advance(16.0, keep_alive=["n2", "n3"])  # n1 suspect
        job = _job(make_spec())
        result = harness.allocator.allocate(job, exclude=["n2"])
        assert [a.node_id for a in result.allocations] == ["n3"]

    def test_busy_device_not_offered_twice(self, harness):
        harness.add_node("n1", devices=[make_device("a"), make_device("b")])
        first = harness.allocator.allocate(_job(make_spec(), "job-1"))
        second = harness.allocator.allocate(_job(make_spec(), "job-2"))
        third = harness.allocator.allocate(_job(make_spec(), "job-3"))
        assert (first.allocations[0].device_id, second.allocations[0].device_id) == ("a", "b")
        assert not third.ok

    def test_one_device_per_node_per_job(self, harness):
        harness.add_node("n1", devices=[make_device("a"), make_device("b")])
        assert not harness.allocator.allocate(_job(make_spec(min_nodes=2))).ok

    def test_reallocate_keeps_healthy_allocations(self, harness):
        for node_id in ("n1", "n2", "n3"):
            harness.add_node(node_id)
        job = _job(make_spec(min_nodes=2))
        job.allocations.extend(harness.allocator.allocate(job).allocations)
        job.allocations[0].released_at = harness.clock()
        harness.registry.release(job.job_id, [("n1", "sdr0")])

        result = harness.allocator.reallocate(job, 1, exclude=["n1"])
        assert [a.node_id for a in result.allocations] == ["n3"]
        # n2 still holds the secondary role, so the replacement takes primary
        assert result.allocations[0].role == Role.PRIMARY


class TestConcurrentAllocation:
    def test_no_device_is_double_booked(self, harness):
        for i in range(10):
            harness.add_node(f"n{i:02d}")
        workers = 20
        barrier = Barrier(workers)

        def attempt(i):
            barrier.wait()
            return harness.allocator.allocate(_job(make_spec(min_nodes=2), f"job-{i}"))

        with ThreadPoolExecutor(max_workers=workers) as pool:
            results = list(pool.map(attempt, range(workers)))

        granted = [a for r in results if r.ok for a in r.allocations]
        pairs = [(a.node_id, a.device_id) for a in granted]
        assert len(pairs) == len(set(pairs)) == 10
        assert sum(1 for r in results if r.ok) == 5
        assert all(len(r.allocations) in (0, 2) for r in results)


# ─── Geographic spread ───────────────────────────────────────────────────────
class TestGeoSpread:
    def test_distance(self):
        one_degree = distance_km(GeoPosition(0.0, 0.0), GeoPosition(0.0, 1.0))
        assert one_degree == pytest.approx(111.19, abs=0.05)

    def test_pick_farthest_without_anchors(self):
        candidates = {
            "a": GeoPosition(0.0, 0.0),
            "b": GeoPosition(0.0, 0.5),
            "c": GeoPosition(0.0, 3.0),
        }
        assert pick_farthest(candidates, []) == "a"

    def test_pick_farthest_respects_separation(self):
        candidates = {"b": GeoPosition(0.0, 0.5), "c": GeoPosition(0.0, 3.0)}
        anchors = [GeoPosition(0.0, 0.0)]
        assert pick_farthest(candidates, anchors, 100.0) == "c"
        assert pick_farthest({"b": GeoPosition(0.0, 0.5)}, anchors, 100.0) is None

    def test_baselines_sorted_pairs(self):
        result = baselines({"y": GeoPosition(0.0, 1.0), "x": GeoPosition(0.0, 0.0)})
        assert [(a, b) for a, b, _ in result] == [("x", "y")]

    def test_allocation_spreads_nodes(self, harness):
        harness.add_node("a", position=GeoPosition(0.0, 0.0))
        harness.add_node("b", position=GeoPosition(0.0, 0.5))
        harness.add_node("c", position=GeoPosition(0.0, 3.0))
        harness.add_node("nopos")
        result = harness.allocator.allocate(_job(make_spec(min_nodes=2, geo_spread_km=100.0)))
        assert sorted(a.node_id for a in result.allocations) == ["a", "c"]

    def test_spread_unreachable_is_insufficient(self, harness):
        harness.add_node("a", position=GeoPosition(0.0, 0.0))
        harness.add_node("b", position=GeoPosition(0.0, 0.5))
        result = harness.allocator.allocate(_job(make_spec(min_nodes=2, geo_spread_km=100.0)))
        assert not result.ok
        assert harness.registry.reservations() == {}


# ─── Variants and planners ───────────────────────────────────────────────────
class TestVariants:
    def test_propagation_test_puts_transmitter_first(self, harness):
        harness.add_node("a-rx")
        harness.add_node("z-tx", devices=[make_device("tx0", can_transmit=True)])
        result = harness.allocator.allocate(_job(make_spec(min_nodes=2, kind="prop")))
        assert [(a.node_id, a.role) for a in result.allocations] == [
            ("z-tx", Role.PRIMARY), ("a-rx", Role.SECONDARY)]

    def test_propagation_test_without_transmitter(self, harness):
        harness.add_node("a")
        harness.add_node("b")
        assert not harness.allocator.allocate(_job(make_spec(min_nodes=2, kind="prop"))).ok

    def test_plan_slots_only_adds_missing_primary(self):
        variant = SpectrumScan(Requirements(frequency=HF_BAND, min_nodes=3))
        assert [s.role for s in plan_slots(variant, [], 2)] == [Role.PRIMARY, Role.SECONDARY]
        assert [s.role for s in plan_slots(variant, [Role.PRIMARY], 2)] == [Role.SECONDARY, Role.SECONDARY]

    @pytest.mark.parametrize("spec", [
        make_spec(min_nodes=1, kind="df"),
        make_spec(min_nodes=2, kind="prop", transmitters=2),
        make_spec(min_nodes=0),
        make_spec(band=FrequencyRange(10e6, 5e6)),
        make_spec(geo_spread_km=-1.0),
    ])
    def test_invalid_variants(self, spec):
        with pytest.raises(InvalidJobSpec):
            validate_variant(spec.variant)

    def test_variant_dict_form(self):
        variant = PropagationTest(Requirements(frequency=HF_BAND, min_nodes=3, sync_tier=SyncTier.TIME),
                                  transmitters=2)
        data = variant_to_dict(variant)
        assert data['type'] == "propagation-test"
        assert data['sync_tier'] == "time"
        assert variant_from_dict(data) == variant

    @pytest.mark.parametrize("overrides", [
        {'sample_rate': 'fast'},
        {'sample_rate': 2.5e6 + 0.5},
        {'geo_spread_km': 'far'},
        {'min_nodes': 2.5},
        {'min_nodes': True},
        {'bandwidth_hz': None},
        {'frequency': [float("nan"), 2e6]},
        {'transmitters': 1.5, 'type': 'propagation-test', 'min_nodes': 3},
    ])
    def test_badly_typed_fields_are_rejected(self, overrides):
        data = {'type': 'spectrum-scan', 'frequency': [1e6, 2e6], 'min_nodes': 2}
        data.update(overrides)
        with pytest.raises(InvalidJobSpec):
            validate_variant(variant_from_dict(data))

    def test_integral_floats_are_accepted(self):
        variant = variant_from_dict({'type': 'spectrum-scan', 'frequency': [1e6, 2e6],
                                     'min_nodes': 2.0, 'sample_rate': 2e6, 'geo_spread_km': 5})
        validate_variant(variant)
        assert variant.requirements.min_nodes == 2
        assert variant.requirements.sample_rate == 2_000_000
        assert variant.requirements.geo_spread_km == 5.0

    def test_malformed_variant_dict(self):
        with pytest.raises(InvalidJobSpec):
            variant_from_dict({'type': 'spectrum-scan'})
        with pytest.raises(InvalidJobSpec):
            variant_from_dict({'type': 'jamming', 'frequency': [1, 2]})
