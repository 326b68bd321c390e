"""
Coordinator - Wires registry, tracker, allocator and scheduler together.

This is the surface external collaborators (REST/WebSocket gateway, node
agents, dashboards) talk to. It can run its own worker threads with
start()/stop(), or be driven step by step with tick().
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from threading import Event, Thread
from typing import Any, Callable, Dict, List, Optional, Union

from .allocation import geo
from .allocation.allocator import ResourceAllocator
from .config import CoordinatorConfig
from .control.heartbeat import HeartbeatMonitor
from .control.node_registry import NodeDescriptor, NodeRegistry
from .data.snapshot import CoordinatorSnapshot, SnapshotStore
from .scheduling.dispatch import Dispatcher, LoopbackChannel, NodeChannel
from .scheduling.jobs import Job, JobSpec, JobStatus
from .scheduling.scheduler import JobScheduler
from .scheduling.timer_queue import TimerQueue, exponential_backoff
from .timing.sync_tracker import SyncQualityTracker, SyncReport, SyncTier

logger = logging.getLogger(__name__)


class Coordinator:
    """Facade over the scheduling core."""

    def __init__(
        self,
        config: Optional[CoordinatorConfig] = None,
        channel: Optional[NodeChannel] = None,
        clock: Callable[[], float] = time.time,
        id_factory: Optional[Callable[[], str]] = None,
    ):
        self.config = config or CoordinatorConfig()
        self.config.validate()
        self._clock = clock
        self._id_factory = id_factory

        self.tracker = SyncQualityTracker(
            staleness_s=self.config.sync_staleness_s,
            window=self.config.sync_window,
            flap_threshold=self.config.flap_threshold,
            pps_jitter_limit_ns=self.config.pps_jitter_limit_ns,
            clock=clock,
        )
        self.timers = TimerQueue(clock=clock)
        self.dispatcher = Dispatcher(
            channel or LoopbackChannel(),
            ack_timeout_s=self.config.dispatch_ack_timeout_s,
            max_workers=self.config.dispatch_workers,
        )
        self.store = SnapshotStore(self.config.snapshot_path) if self.config.snapshot_path else None

        self._stop = Event()
        self._threads: List[Thread] = []
        self._timer_executor: Optional[ThreadPoolExecutor] = None

        self._wire(NodeRegistry(
            self.tracker,
            suspect_timeout_s=self.config.suspect_timeout_s,
            offline_timeout_s=self.config.offline_timeout_s,
            clock=clock,
        ))

    def _wire(self, registry: NodeRegistry) -> None:
        self.registry = registry
        self.allocator = ResourceAllocator(registry, self.tracker, clock=self._clock)
        self.scheduler = JobScheduler(
            registry,
            self.allocator,
            self.dispatcher,
            self.timers,
            reassign_budget=self.config.reassign_budget,
            dispatch_retry_budget=self.config.dispatch_retry_budget,
            backoff=exponential_backoff(self.config.backoff_base_s, self.config.backoff_max_s),
            clock=self._clock,
            id_factory=self._id_factory,
        )
        self.monitor = HeartbeatMonitor(registry, self.timers, interval_s=self.config.sweep_interval_s)
        registry.add_listener(self.scheduler.on_registry_event)

    @property
    def running(self) -> bool:
        return bool(self._threads)

    def start(self) -> None:
        """Start the timer and dispatch workers and the heartbeat sweep."""
        if self.running:
            return
        self._stop.clear()
        self._timer_executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="timer")
        self.timers.use_executor(self._timer_executor)
        self.monitor.start()
        self._threads = [
            Thread(target=self.timers.run, args=(self._stop,), name="timer-queue", daemon=True),
            Thread(target=self.scheduler.run, args=(self._stop, self.config.dispatch_interval_s),
                   name="dispatch", daemon=True),
        ]
        for thread in self._threads:
            thread.start()
        self.scheduler.trigger()
        logger.info("Coordinator started")

    def stop(self, save: bool = True) -> None:
        """Stop workers and, if a snapshot path is configured, persist state."""
        if not self.running:
            return
        self._stop.set()
        self.monitor.stop()
        self.timers.wake()
        self.scheduler.trigger()
        for thread in self._threads:
            thread.join(timeout=5.0)
        self._threads = []
        self.timers.use_executor(None)
        if self._timer_executor is not None:
            self._timer_executor.shutdown(wait=True)
            self._timer_executor = None
        if save and self.store is not None:
            self.save_snapshot()
        logger.info("Coordinator stopped")

    def close(self) -> None:
        self.stop()
        self.dispatcher.shutdown()

    def __enter__(self) -> 'Coordinator':
        self.start()
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def tick(self) -> int:
        """
        One synchronous step: heartbeat sweep, due timers, dispatch cycle.

        Returns:
            Number of jobs started by the dispatch cycle
        """
        self.monitor.check()
        self.timers.run_due()
        return self.scheduler.run_dispatch_cycle()

    def register_node(self, descriptor: NodeDescriptor) -> str:
        return self.registry.register(descriptor)

    def record_heartbeat(self, node_id: str, report: Union[SyncReport, Dict[str, Any]]) -> bool:
        if isinstance(report, dict):
            report = SyncReport.from_dict(report)
        return self.registry.record_heartbeat(node_id, report)

    def deregister_node(self, node_id: str) -> None:
        self.registry.deregister(node_id)

    def report_device_fault(self, node_id: str, device_id: str) -> None:
        self.registry.report_device_fault(node_id, device_id)

    def clear_device_fault(self, node_id: str, device_id: str) -> None:
        self.registry.clear_device_fault(node_id, device_id)

    def submit_job(self, spec: Union[JobSpec, Dict[str, Any]]) -> str:
        if isinstance(spec, dict):
            spec = JobSpec.from_dict(spec)
        return self.scheduler.submit(spec)

    def query_job(self, job_id: str) -> Dict[str, Any]:
        return self.scheduler.query(job_id)

    def cancel_job(self, job_id: str) -> JobStatus:
        return self.scheduler.cancel(job_id)

    def report_progress(self, job_id: str, node_id: str, fraction: float) -> bool:
        return self.scheduler.report_progress(job_id, node_id, fraction)

    def report_result(self, job_id: str, node_id: str, result: Any) -> bool:
        return self.scheduler.report_result(job_id, node_id, result)

    def status(self) -> Dict[str, Any]:
        """Summary for dashboards and the CLI."""
        return {
            'nodes': self.registry.liveness_counts(),
            'jobs': self.scheduler.counts(),
            'queued': self.scheduler.queued_job_ids(),
            'reservations': len(self.registry.reservations()),
            'timers': len(self.timers),
            'running': self.running,
            'sync': self.sync_status(),
            'baselines': self.baselines(),
        }

    def sync_status(self) -> Dict[str, Dict[str, Any]]:
        """Per-node sync assessment plus how many reports back it."""
        windows = self.tracker.window_status()
        result = {}
        for node_id in sorted(self.registry.get_all()):
            assessment = self.tracker.assessment(node_id)
            if assessment is None:
                result[node_id] = {'tier': SyncTier.NONE.label, 'reports': 0}
                continue
            result[node_id] = {
                'tier': assessment.tier.label,
                'claimed_tier': assessment.claimed_tier.label,
                'stale': assessment.stale,
                'flapping': assessment.flapping,
                'jitter_ns': assessment.jitter_ns,
                'reports': windows.get(node_id, {}).get('retained', 0),
            }
        return result

    def baselines(self) -> List[Dict[str, Any]]:
        """Distances between every pair of positioned nodes."""
        positions = {node_id: node.position for node_id, node in self.registry.get_all().items()
                     if node.position is not None}
        return [{'a': a, 'b': b, 'km': round(km, 3)} for a, b, km in geo.baselines(positions)]

    def snapshot(self) -> CoordinatorSnapshot:
        return CoordinatorSnapshot.capture(self.registry, self.scheduler, self._clock)

    def save_snapshot(self) -> Optional[CoordinatorSnapshot]:
        if self.store is None:
            return None
        snapshot = self.snapshot()
        self.store.save(snapshot)
        return snapshot

    def restore_snapshot(self, snapshot: Optional[CoordinatorSnapshot] = None) -> bool:
        """
        Replace registry and job state with a snapshot (before start()).

        Returns:
            False if there was nothing to restore
        """
        if self.running:
            raise RuntimeError("restore_snapshot() must be called before start()")
        if snapshot is None:
            snapshot = self.store.load() if self.store is not None else None
        if snapshot is None:
            return False

        registry = NodeRegistry.from_dict(
            snapshot.registry,
            self.tracker,
            suspect_timeout_s=self.config.suspect_timeout_s,
            offline_timeout_s=self.config.offline_timeout_s,
            clock=self._clock,
        )
        self._wire(registry)
        self.scheduler.restore(Job.from_dict(data) for data in snapshot.jobs)
        released = self.scheduler.reconcile_reservations()
        logger.info(f"Restored snapshot: {registry.count} nodes, {len(snapshot.jobs)} jobs, "
                    f"{released} orphaned reservation(s) released")
        return True
