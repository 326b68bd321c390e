"""
Shared fixtures: a manual clock, a scriptable node channel and a harness
that wires registry, tracker, allocator and scheduler the way the
coordinator does, minus the worker threads.
"""

from threading import Lock
from typing import Iterable, Optional

import pytest

from spectrum_coordinator.allocation.allocator import ResourceAllocator
from spectrum_coordinator.allocation.requirements import (
    DirectionFinding, PropagationTest, Requirements, SpectrumScan,
)
from spectrum_coordinator.control.heartbeat import HeartbeatMonitor
from spectrum_coordinator.control.node_registry import (
    DeviceDescriptor, FrequencyRange, GeoPosition, NodeDescriptor, NodeRegistry,
)
from spectrum_coordinator.scheduling.dispatch import Dispatcher, NodeChannel
from spectrum_coordinator.scheduling.jobs import JobSpec
from spectrum_coordinator.scheduling.scheduler import JobScheduler
from spectrum_coordinator.scheduling.timer_queue import TimerQueue
from spectrum_coordinator.timing.sync_tracker import (
    ReferenceSource, SyncQualityTracker, SyncReport, SyncTier,
)

T0 = 1_700_000_000.0
HF_BAND = FrequencyRange(3e6, 30e6)


class FakeClock:
    """Manually advanced wall clock."""

    def __init__(self, start: float = T0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


class ScriptedChannel(NodeChannel):
    """Acknowledges every directive except those sent to nodes in `refuse`."""

    def __init__(self):
        self.refuse = set()
        self.sent = []
        self.released = []
        self._lock = Lock()

    def send(self, directive, timeout):
        with self._lock:
            self.sent.append(directive)
        return directive.node_id not in self.refuse

    def release(self, directive):
        with self._lock:
            self.released.append(directive)


# ─── Builders ────────────────────────────────────────────────────────────────

def make_device(device_id: str = "sdr0", low_hz: float = 1e6, high_hz: float = 60e6,
                bandwidth_hz: float = 2e6, can_transmit: bool = False,
                sample_rates=(2_000_000,)) -> DeviceDescriptor:
    return DeviceDescriptor(
        device_id=device_id,
        frequency_ranges=(FrequencyRange(low_hz, high_hz),),
        max_bandwidth_hz=bandwidth_hz,
        sample_rates=tuple(sample_rates),
        can_transmit=can_transmit,
    )


def make_node(node_id: str, devices: Optional[Iterable[DeviceDescriptor]] = None,
              position: Optional[GeoPosition] = None) -> NodeDescriptor:
    return NodeDescriptor(
        node_id=node_id,
        address=f"{node_id}.local:8073",
        devices=list(devices) if devices is not None else [make_device()],
        position=position,
    )


def make_spec(min_nodes: int = 1, tier: SyncTier = SyncTier.NONE, kind: str = "scan",
              priority: Optional[int] = None, geo_spread_km: Optional[float] = None,
              bandwidth_hz: float = 0.0, band: FrequencyRange = HF_BAND,
              transmitters: int = 1) -> JobSpec:
    req = Requirements(frequency=band, min_nodes=min_nodes, sync_tier=tier,
                       geo_spread_km=geo_spread_km, bandwidth_hz=bandwidth_hz)
    if kind == "scan":
        variant = SpectrumScan(req)
    elif kind == "df":
        variant = DirectionFinding(req)
    else:
        variant = PropagationTest(req, transmitters=transmitters)
    return JobSpec(variant=variant, priority=priority)


def gps_report(clock, pps_locked: bool = True, offset_ns: float = 20.0,
               phase_coherent: bool = False) -> SyncReport:
    return SyncReport(timestamp=clock(), reference=ReferenceSource.GPS, offset_ns=offset_ns,
                      pps_locked=pps_locked, phase_coherent=phase_coherent)


class Harness:
    """Scheduling core driven by hand through advance(), timers.run_due() and cycle()."""

    def __init__(self, clock: FakeClock, channel: ScriptedChannel, reassign_budget: int = 3,
                 backoff=None):
        self.clock = clock
        self.channel = channel
        self.tracker = SyncQualityTracker(clock=clock)
        self.registry = NodeRegistry(self.tracker, suspect_timeout_s=15.0,
                                     offline_timeout_s=45.0, clock=clock)
        self.allocator = ResourceAllocator(self.registry, self.tracker, clock=clock)
        self.timers = TimerQueue(clock=clock)
        self.dispatcher = Dispatcher(channel, ack_timeout_s=1.0, max_workers=4)
        self.scheduler = JobScheduler(
            self.registry, self.allocator, self.dispatcher, self.timers,
            reassign_budget=reassign_budget,
            backoff=backoff or (lambda attempt: 0.0),
            clock=clock,
        )
        self.monitor = HeartbeatMonitor(self.registry, self.timers, interval_s=5.0)
        self.registry.add_listener(self.scheduler.on_registry_event)

    def add_node(self, node_id: str, **kwargs) -> str:
        self.registry.register(make_node(node_id, **kwargs))
        self.heartbeat(node_id)
        return node_id

    def heartbeat(self, *node_ids: str, **report_kwargs) -> None:
        for node_id in node_ids:
            self.registry.record_heartbeat(node_id, gps_report(self.clock, **report_kwargs))

    def advance(self, seconds: float, keep_alive: Iterable[str] = ()) -> None:
        """Move time forward, heartbeat keep_alive nodes, then sweep."""
        self.clock.advance(seconds)
        self.heartbeat(*keep_alive)
        self.monitor.check()

    def cycle(self) -> int:
        return self.scheduler.run_dispatch_cycle()

    def active_nodes(self, job_id: str):
        job = self.scheduler.query(job_id)
        return sorted(a['node_id'] for a in job['allocations'] if a['released_at'] is None)

    def close(self) -> None:
        self.dispatcher.shutdown()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def channel():
    return ScriptedChannel()


@pytest.fixture
def harness(clock, channel):
    h = Harness(clock, channel)
    yield h
    h.close()
