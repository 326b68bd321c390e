"""
Report Window - Per-node circular buffer of recent sync reports.

Only the latest report decides a node's tier, but jitter, drift and tier
flapping need a short history. Each node gets a fixed-size ring of
(timestamp, offset, tier) samples that is overwritten oldest-first.
"""

import numpy as np
import logging
from dataclasses import dataclass
from typing import Optional, Dict, Tuple
from threading import Lock

logger = logging.getLogger(__name__)


@dataclass
class WindowState:
    """Ring storage for a single node."""
    node_id: str
    timestamps: np.ndarray  # float64 report timestamps
    offsets_ns: np.ndarray  # float64 measured offsets
    tiers: np.ndarray       # int8 tier assessed for each report
    write_pos: int = 0
    samples_written: int = 0

    @property
    def filled(self) -> int:
        return min(self.samples_written, len(self.timestamps))


class ReportWindow:
    """
    Fixed-capacity rolling window of sync reports, one ring per node.

    Samples are returned oldest-first regardless of where the ring has
    wrapped.
    """

    def __init__(self, capacity: int = 16):
        """
        Initialize the window.

        Args:
            capacity: Number of reports retained per node
        """
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self.capacity = capacity
        self._lock = Lock()
        self._nodes: Dict[str, WindowState] = {}

    def _state(self, node_id: str) -> WindowState:
        state = self._nodes.get(node_id)
        if state is None:
            state = WindowState(
                node_id=node_id,
                timestamps=np.zeros(self.capacity, dtype=np.float64),
                offsets_ns=np.zeros(self.capacity, dtype=np.float64),
                tiers=np.zeros(self.capacity, dtype=np.int8),
            )
            self._nodes[node_id] = state
        return state

    def write(self, node_id: str, timestamp: float, offset_ns: float, tier: int) -> None:
        """Append one report sample, overwriting the oldest when full."""
        with self._lock:
            state = self._state(node_id)
            pos = state.write_pos
            state.timestamps[pos] = timestamp
            state.offsets_ns[pos] = offset_ns
            state.tiers[pos] = tier
            state.write_pos = (pos + 1) % self.capacity
            state.samples_written += 1

    def read(self, node_id: str) -> Optional[Tuple[np.ndarray, np.ndarray, np.ndarray]]:
        """
        Read a node's retained samples.

        Returns:
            (timestamps, offsets_ns, tiers) oldest-first, or None if the
            node has no samples
        """
        with self._lock:
            state = self._nodes.get(node_id)
            if state is None or state.samples_written == 0:
                return None

            if state.samples_written < self.capacity:
                order = np.arange(state.filled)
            else:
                # Wrapped: oldest sample sits at the write position
                order = (np.arange(self.capacity) + state.write_pos) % self.capacity

            return (
                state.timestamps[order].copy(),
                state.offsets_ns[order].copy(),
                state.tiers[order].copy(),
            )

    def set_last_tier(self, node_id: str, tier: int) -> None:
        """Overwrite the tier of the most recent sample."""
        with self._lock:
            state = self._nodes.get(node_id)
            if state is None or state.samples_written == 0:
                return
            state.tiers[(state.write_pos - 1) % self.capacity] = tier

    def drop(self, node_id: str) -> None:
        """Forget a node's history."""
        with self._lock:
            self._nodes.pop(node_id, None)

    def get_status(self) -> Dict:
        """Get per-node fill levels."""
        with self._lock:
            return {
                node_id: {
                    'written': state.samples_written,
                    'retained': state.filled,
                }
                for node_id, state in self._nodes.items()
            }
