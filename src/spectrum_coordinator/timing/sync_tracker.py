"""
Sync Tracker - Derive each node's synchronization tier from its heartbeats.

Nodes report which reference disciplines their clock (GPSDO, NTP, PTP or
nothing), the measured offset to that reference, and whether they claim
phase coherence. The tracker turns the latest report into a tier:

  none < frequency < time < phase

Old reports and nodes whose tier keeps flapping are degraded one level
each, so the allocator never trusts stale claims.
"""

import logging
import math
import time
from dataclasses import dataclass
from enum import Enum, IntEnum
from threading import Lock
from typing import Callable, Dict, Optional

import numpy as np
from scipy import stats

from .report_window import ReportWindow

logger = logging.getLogger(__name__)

NTP_UNCERTAINTY_FLOOR_NS = 1_000_000.0
PTP_UNCERTAINTY_FLOOR_NS = 1_000.0


class SyncTier(IntEnum):
    """Synchronization quality a node offers, totally ordered."""
    NONE = 0
    FREQUENCY = 1
    TIME = 2
    PHASE = 3

    @property
    def label(self) -> str:
        return self.name.lower()

    @classmethod
    def parse(cls, value) -> 'SyncTier':
        if isinstance(value, SyncTier):
            return value
        try:
            return cls[str(value).upper()]
        except KeyError:
            raise ValueError(f"Unknown sync tier: {value!r}") from None

    def degraded(self) -> 'SyncTier':
        """One level lower, floored at NONE."""
        return SyncTier(max(0, self.value - 1))


class ReferenceSource(Enum):
    """Clock reference a node reports."""
    GPS = "gps"
    NTP = "ntp"
    PTP = "ptp"
    NONE = "none"


@dataclass(frozen=True)
class SyncReport:
    """Synchronization status carried by a heartbeat."""
    timestamp: float
    reference: ReferenceSource = ReferenceSource.NONE
    offset_ns: float = 0.0
    pps_locked: bool = False
    phase_coherent: bool = False

    def to_dict(self) -> Dict:
        return {
            'timestamp': self.timestamp,
            'reference': self.reference.value,
            'offset_ns': self.offset_ns,
            'pps_locked': self.pps_locked,
            'phase_coherent': self.phase_coherent,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'SyncReport':
        return cls(
            timestamp=float(data['timestamp']),
            reference=ReferenceSource(data.get('reference', 'none')),
            offset_ns=float(data.get('offset_ns', 0.0)),
            pps_locked=bool(data.get('pps_locked', False)),
            phase_coherent=bool(data.get('phase_coherent', False)),
        )


@dataclass(frozen=True)
class TierAssessment:
    """Full result of evaluating a node's synchronization state."""
    tier: SyncTier
    claimed_tier: SyncTier
    uncertainty_ns: float
    stale: bool
    flapping: bool
    jitter_ns: float
    drift_ns_per_s: float


class SyncQualityTracker:
    """
    Per-node synchronization tier derived from periodic sync reports.

    Keeps the latest report per node plus a short rolling window used for
    pulse jitter, drift trend and flap detection.
    """

    def __init__(
        self,
        staleness_s: float = 30.0,
        window: int = 16,
        flap_threshold: int = 4,
        pps_jitter_limit_ns: float = 100.0,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize the tracker.

        Args:
            staleness_s: Reports older than this are degraded one tier
            window: Number of reports retained per node
            flap_threshold: Tier changes inside the window that mark flapping
            pps_jitter_limit_ns: Max offset jitter for a GPS pulse to count as stable
            clock: Wall-clock source
        """
        self.staleness_s = staleness_s
        self.flap_threshold = flap_threshold
        self.pps_jitter_limit_ns = pps_jitter_limit_ns
        self._clock = clock
        self._lock = Lock()
        self._latest: Dict[str, SyncReport] = {}
        self._window = ReportWindow(capacity=window)

    def ingest(self, node_id: str, report: SyncReport) -> SyncTier:
        """
        Record a node's latest sync report.

        Returns:
            The tier the report claims before staleness/flap degradation
        """
        with self._lock:
            self._latest[node_id] = report
            self._window.write(node_id, report.timestamp, abs(report.offset_ns), int(SyncTier.NONE))
            jitter = self._jitter(node_id)
            claimed = self._claimed_tier(report, jitter)
            self._window.set_last_tier(node_id, int(claimed))

        logger.debug(f"{node_id}: {report.reference.value} report, "
                     f"offset={report.offset_ns:.0f} ns, claimed tier={claimed.label}")
        return claimed

    def forget(self, node_id: str) -> None:
        """Drop all state for a node."""
        with self._lock:
            self._latest.pop(node_id, None)
            self._window.drop(node_id)

    def latest(self, node_id: str) -> Optional[SyncReport]:
        with self._lock:
            return self._latest.get(node_id)

    def tier_of(self, node_id: str) -> SyncTier:
        """Current effective tier (NONE for nodes that never reported)."""
        assessment = self.assessment(node_id)
        return assessment.tier if assessment else SyncTier.NONE

    def meets(self, node_id: str, required_tier: SyncTier) -> bool:
        """True if the node's effective tier is at least required_tier."""
        return self.tier_of(node_id) >= SyncTier.parse(required_tier)

    def assessment(self, node_id: str) -> Optional[TierAssessment]:
        """Evaluate a node's sync state now, or None if it never reported."""
        with self._lock:
            report = self._latest.get(node_id)
            if report is None:
                return None

            jitter = self._jitter(node_id)
            claimed = self._claimed_tier(report, jitter)
            stale = (self._clock() - report.timestamp) > self.staleness_s
            flapping = self._is_flapping(node_id)
            drift = self._drift(node_id)

        tier = claimed
        if stale:
            tier = tier.degraded()
        if flapping:
            tier = tier.degraded()

        return TierAssessment(
            tier=tier,
            claimed_tier=claimed,
            uncertainty_ns=self._uncertainty(report, claimed, jitter),
            stale=stale,
            flapping=flapping,
            jitter_ns=jitter,
            drift_ns_per_s=drift,
        )

    def window_status(self) -> Dict:
        """Per-node report counts: written in total and retained in the window."""
        return self._window.get_status()

    def _claimed_tier(self, report: SyncReport, jitter_ns: float) -> SyncTier:
        """Fixed precedence: phase claim, GPS pulse, network time, GPS frequency."""
        if report.phase_coherent and report.reference != ReferenceSource.NONE:
            return SyncTier.PHASE
        if report.reference == ReferenceSource.GPS:
            if report.pps_locked and jitter_ns <= self.pps_jitter_limit_ns:
                return SyncTier.TIME
            return SyncTier.FREQUENCY
        if report.reference in (ReferenceSource.NTP, ReferenceSource.PTP):
            return SyncTier.TIME
        return SyncTier.NONE

    def _uncertainty(self, report: SyncReport, tier: SyncTier, jitter_ns: float) -> float:
        offset = abs(report.offset_ns)
        if tier == SyncTier.PHASE:
            return offset
        if tier == SyncTier.TIME:
            if report.reference == ReferenceSource.NTP:
                return max(offset, NTP_UNCERTAINTY_FLOOR_NS)
            if report.reference == ReferenceSource.PTP:
                return max(offset, PTP_UNCERTAINTY_FLOOR_NS)
            return offset + jitter_ns
        return math.inf

    def _jitter(self, node_id: str) -> float:
        window = self._window.read(node_id)
        if window is None or len(window[1]) < 2:
            return 0.0
        return float(np.std(window[1]))

    def _drift(self, node_id: str) -> float:
        """Offset trend in ns per second from a linear fit over the window."""
        window = self._window.read(node_id)
        if window is None or len(window[0]) < 3:
            return 0.0
        timestamps, offsets, _ = window
        if np.ptp(timestamps) == 0:
            return 0.0
        fit = stats.linregress(timestamps, offsets)
        return float(fit.slope)

    def _is_flapping(self, node_id: str) -> bool:
        window = self._window.read(node_id)
        if window is None:
            return False
        changes = int(np.count_nonzero(np.diff(window[2])))
        return changes >= self.flap_threshold
