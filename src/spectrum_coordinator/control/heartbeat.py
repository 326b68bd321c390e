"""
Heartbeat Monitor - Timer-driven failure detector.

Periodically sweeps the registry so nodes that stopped heartbeating move
online -> suspect -> offline. The registry announces each transition to its
listeners; the scheduler reacts to offline nodes by reassigning their jobs.
"""

import logging
from typing import List, Optional

from ..scheduling.timer_queue import TimerQueue
from .node_registry import Liveness, NodeRegistry, RegistryEvent

logger = logging.getLogger(__name__)

SWEEP_TASK_KEY = "heartbeat-sweep"


class HeartbeatMonitor:
    """Runs NodeRegistry.sweep() on the timer queue."""

    def __init__(self, registry: NodeRegistry, timers: TimerQueue, interval_s: float = 5.0):
        self.registry = registry
        self.timers = timers
        self.interval_s = interval_s
        self._running = False
        self.offline_total = 0

    def check(self, now: Optional[float] = None) -> List[RegistryEvent]:
        """Run one sweep and return the transitions it produced."""
        events = self.registry.sweep(now)
        offline = [e.node_id for e in events if e.current == Liveness.OFFLINE]
        self.offline_total += len(offline)
        if offline:
            logger.warning(f"Nodes offline: {', '.join(offline)}")
        return events

    def start(self) -> None:
        if self._running:
            return
        self.timers.schedule_periodic(SWEEP_TASK_KEY, self.check, self.interval_s)
        self._running = True
        logger.info(f"Heartbeat monitor started (sweep every {self.interval_s}s, "
                    f"suspect after {self.registry.suspect_timeout_s}s, "
                    f"offline after {self.registry.offline_timeout_s}s)")

    def stop(self) -> None:
        if not self._running:
            return
        self.timers.cancel(SWEEP_TASK_KEY)
        self._running = False
        logger.info("Heartbeat monitor stopped")

    @property
    def running(self) -> bool:
        return self._running
