"""
Resource Allocator - Pick and reserve (node, device) pairs for a job.

Algorithm:
  1. Candidates are online nodes, not excluded by the caller, whose sync tier
     meets the requirement and that have a free device able to serve it.
  2. The job variant's planner turns the needed count into slots; slots are
     filled greedily, spreading nodes geographically when the job asks for
     it, otherwise taking the lowest node id.
  3. All chosen devices are reserved in one critical section under the
     registry's reservation lock, all or nothing.
  4. Fewer nodes than needed -> Insufficient, with nothing reserved.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from ..control.node_registry import DeviceDescriptor, GeoPosition, Node, NodeRegistry
from ..timing.sync_tracker import SyncQualityTracker
from .geo import pick_farthest
from .requirements import Requirements, Role, Slot, device_filter, plan_slots

logger = logging.getLogger(__name__)


@dataclass
class Allocation:
    """Binding of a job to one device for the job's duration."""
    job_id: str
    node_id: str
    device_id: str
    role: Role
    allocated_at: float
    bandwidth_hz: float = 0.0
    released_at: Optional[float] = None
    release_reason: Optional[str] = None

    @property
    def active(self) -> bool:
        return self.released_at is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'job_id': self.job_id,
            'node_id': self.node_id,
            'device_id': self.device_id,
            'role': self.role.value,
            'allocated_at': self.allocated_at,
            'bandwidth_hz': self.bandwidth_hz,
            'released_at': self.released_at,
            'release_reason': self.release_reason,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Allocation':
        return cls(
            job_id=data['job_id'],
            node_id=data['node_id'],
            device_id=data['device_id'],
            role=Role(data['role']),
            allocated_at=data['allocated_at'],
            bandwidth_hz=data.get('bandwidth_hz', 0.0),
            released_at=data.get('released_at'),
            release_reason=data.get('release_reason'),
        )


@dataclass
class AllocationResult:
    """Outcome of an allocation attempt; not ok means Insufficient."""
    requested: int
    allocations: List[Allocation] = field(default_factory=list)
    found: int = 0
    reason: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.reason is None

    @classmethod
    def insufficient(cls, requested: int, found: int, reason: str) -> 'AllocationResult':
        return cls(requested=requested, found=found, reason=reason)


class ResourceAllocator:
    """
    Chooses devices for jobs and reserves them atomically.

    Jobs are duck-typed: the allocator reads job_id, spec.variant and
    active_allocations().
    """

    def __init__(
        self,
        registry: NodeRegistry,
        tracker: Optional[SyncQualityTracker] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._registry = registry
        self._tracker = tracker or registry.tracker
        self._clock = clock

    def allocate(self, job, exclude: Iterable[str] = ()) -> AllocationResult:
        """Allocate a fresh job's full node count, skipping nodes in exclude."""
        return self._allocate(job, job.spec.variant.requirements.min_nodes, held=[], exclude=exclude)

    def reallocate(self, job, missing: int, exclude: Iterable[str] = ()) -> AllocationResult:
        """
        Allocate only the missing slots of a job that already holds devices.

        Healthy allocations are left untouched and their nodes are excluded;
        they anchor the geographic spread of the replacements.
        """
        return self._allocate(job, missing, held=job.active_allocations(), exclude=exclude)

    def candidates(self, job, exclude: Iterable[str] = ()) -> List[Node]:
        """Online nodes able to serve the job right now (step 1 only)."""
        req = job.spec.variant.requirements
        return list(self._registry.list_available(self._candidate_predicate(req, set(exclude))))

    def _candidate_predicate(self, req: Requirements, excluded: set) -> Callable[[Node], bool]:
        accepts = device_filter(req)

        def predicate(node: Node) -> bool:
            if node.node_id in excluded:
                return False
            if not self._tracker.meets(node.node_id, req.sync_tier):
                return False
            return any(accepts(device) for device in node.free_devices())

        return predicate

    def _allocate(self, job, count: int, held: Sequence[Allocation],
                  exclude: Iterable[str]) -> AllocationResult:
        variant = job.spec.variant
        req = variant.requirements
        if count <= 0:
            return AllocationResult(requested=0)

        excluded = {a.node_id for a in held} | set(exclude)
        slots = plan_slots(variant, [a.role for a in held], count)
        anchors = self._anchor_positions(held) if req.geo_spread_km is not None else []

        with self._registry.reservation_lock:
            candidates = list(self._registry.list_available(self._candidate_predicate(req, excluded)))
            picks = self._select(candidates, slots, req, anchors)

            if len(picks) < count:
                reason = (f"{len(picks)}/{count} nodes available "
                          f"({len(candidates)} candidates, tier>={req.sync_tier.label})")
                logger.info(f"Job {job.job_id}: insufficient - {reason}")
                return AllocationResult.insufficient(count, len(picks), reason)

            reservations = [
                (node.node_id, device.device_id, req.bandwidth_hz or device.max_bandwidth_hz)
                for node, device, _ in picks
            ]
            if not self._registry.reserve(job.job_id, reservations):
                logger.warning(f"Job {job.job_id}: reservation conflict, nothing reserved")
                return AllocationResult.insufficient(count, 0, "reservation conflict")

            now = self._clock()
            allocations = [
                Allocation(
                    job_id=job.job_id,
                    node_id=node.node_id,
                    device_id=device.device_id,
                    role=slot.role,
                    allocated_at=now,
                    bandwidth_hz=bandwidth,
                )
                for (node, device, slot), (_, _, bandwidth) in zip(picks, reservations)
            ]

        logger.info(f"Job {job.job_id}: allocated "
                    + ", ".join(f"{a.node_id}/{a.device_id}({a.role.value})" for a in allocations))
        return AllocationResult(requested=count, allocations=allocations, found=len(allocations))

    def _anchor_positions(self, held: Sequence[Allocation]) -> List[GeoPosition]:
        anchors = []
        for allocation in held:
            node = self._registry.get(allocation.node_id)
            if node is not None and node.position is not None:
                anchors.append(node.position)
        return anchors

    def _select(
        self,
        candidates: Sequence[Node],
        slots: Sequence[Slot],
        req: Requirements,
        anchors: Sequence[GeoPosition],
    ) -> List[Tuple[Node, DeviceDescriptor, Slot]]:
        """Fill slots in order; stops at the first slot nothing can fill."""
        chosen = []
        used = set()
        anchors = list(anchors)

        for slot in slots:
            eligible: Dict[str, Tuple[Node, DeviceDescriptor]] = {}
            for node in candidates:
                if node.node_id in used:
                    continue
                device = next((d for d in node.free_devices() if slot.accepts(d)), None)
                if device is not None:
                    eligible[node.node_id] = (node, device)

            if not eligible:
                logger.debug(f"No candidate for {slot.role.value}/{slot.label} slot")
                break

            if req.geo_spread_km is not None:
                positioned = {node_id: node.position for node_id, (node, _) in eligible.items()
                              if node.position is not None}
                pick = pick_farthest(positioned, anchors, req.geo_spread_km)
                if pick is None:
                    logger.debug(f"No candidate at >= {req.geo_spread_km} km for {slot.label} slot")
                    break
                anchors.append(positioned[pick])
            else:
                pick = min(eligible)

            node, device = eligible[pick]
            used.add(pick)
            chosen.append((node, device, slot))

        return chosen
