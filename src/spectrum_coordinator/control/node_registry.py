"""
Node Registry - Process-wide table of sensing nodes and their devices.

Every other component reaches nodes through a registry handle passed to its
constructor. The registry owns node records, their liveness state and the
reservation state of every device.

Two locks guard it:
  _lock             node records (registration, heartbeats, liveness)
  reservation_lock  device reservations, held for a whole allocation attempt

Lock order is reservation_lock before _lock, and heartbeat ingestion only
ever takes _lock, so a slow allocation attempt never stalls heartbeats.
"""

import copy
import logging
import math
import time
from dataclasses import dataclass, field
from enum import Enum
from threading import Lock, RLock
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple

from ..errors import InvalidDescriptor, UnknownNode
from ..timing.sync_tracker import SyncQualityTracker, SyncReport, SyncTier

logger = logging.getLogger(__name__)


class Liveness(Enum):
    """Coordinator's belief about whether a node is reachable."""
    ONLINE = "online"
    SUSPECT = "suspect"
    OFFLINE = "offline"


class RegistryEventKind(Enum):
    REGISTERED = "registered"
    LIVENESS = "liveness"
    DEREGISTERED = "deregistered"
    DEVICE_LOST = "device_lost"
    DEVICE_RESTORED = "device_restored"
    SYNC_TIER = "sync_tier"


@dataclass(frozen=True)
class RegistryEvent:
    """Change notification delivered to registry listeners."""
    kind: RegistryEventKind
    node_id: str
    previous: Optional[Liveness] = None
    current: Optional[Liveness] = None
    device_id: Optional[str] = None
    job_id: Optional[str] = None


@dataclass(frozen=True)
class FrequencyRange:
    """Closed frequency interval in Hz."""
    low_hz: float
    high_hz: float

    def covers(self, other: 'FrequencyRange') -> bool:
        return self.low_hz <= other.low_hz and other.high_hz <= self.high_hz

    @property
    def span_hz(self) -> float:
        return self.high_hz - self.low_hz


@dataclass(frozen=True)
class GeoPosition:
    """WGS84 position of a node."""
    lat_deg: float
    lon_deg: float
    alt_m: float = 0.0


@dataclass
class DeviceDescriptor:
    """A single allocatable radio on a node."""
    device_id: str
    frequency_ranges: Tuple[FrequencyRange, ...]
    max_bandwidth_hz: float
    sample_rates: Tuple[int, ...] = ()
    can_transmit: bool = False

    # Reservation state
    reserved_by: Optional[str] = field(default=None, repr=False)
    reserved_bandwidth_hz: float = field(default=0.0, repr=False)
    faulted: bool = field(default=False, repr=False)

    @property
    def is_free(self) -> bool:
        return self.reserved_by is None and not self.faulted

    @property
    def reservation(self) -> str:
        """Reservation state as 'free', 'reserved:<job-id>' or 'faulted'."""
        if self.faulted:
            return "faulted"
        if self.reserved_by is not None:
            return f"reserved:{self.reserved_by}"
        return "free"

    def covers(self, band: FrequencyRange) -> bool:
        return any(r.covers(band) for r in self.frequency_ranges)

    def same_capabilities(self, other: 'DeviceDescriptor') -> bool:
        return (self.frequency_ranges == other.frequency_ranges
                and self.max_bandwidth_hz == other.max_bandwidth_hz
                and self.sample_rates == other.sample_rates
                and self.can_transmit == other.can_transmit)


@dataclass
class NodeDescriptor:
    """What a node declares when it registers."""
    node_id: str
    address: str
    devices: List[DeviceDescriptor]
    position: Optional[GeoPosition] = None


@dataclass
class Node:
    """Registry record for a sensing node."""
    node_id: str
    address: str
    devices: Dict[str, DeviceDescriptor]
    position: Optional[GeoPosition] = None
    liveness: Liveness = Liveness.ONLINE
    sync_tier: SyncTier = SyncTier.NONE
    last_contact: float = 0.0
    last_report_ts: Optional[float] = None
    registered_at: float = 0.0

    def free_devices(self) -> List[DeviceDescriptor]:
        return [self.devices[d] for d in sorted(self.devices) if self.devices[d].is_free]


NodePredicate = Callable[[Node], bool]
RegistryListener = Callable[[RegistryEvent], None]


class NodeSnapshot:
    """
    Lazy, restartable view over a consistent copy of the registry.

    The copy is taken once; each iteration re-applies the predicate to it, so
    concurrent heartbeats can neither duplicate a node nor tear a record.
    """

    def __init__(self, nodes: Sequence[Node], predicate: Optional[NodePredicate] = None):
        self._nodes = tuple(nodes)
        self._predicate = predicate

    def __iter__(self) -> Iterator[Node]:
        for node in self._nodes:
            if self._predicate is None or self._predicate(node):
                yield node


def validate_descriptor(descriptor: NodeDescriptor) -> None:
    """Raise InvalidDescriptor if capability data is inconsistent."""
    if not descriptor.node_id:
        raise InvalidDescriptor("Node descriptor has no node_id")
    if not descriptor.devices:
        raise InvalidDescriptor(f"{descriptor.node_id}: device list is empty")

    seen = set()
    for device in descriptor.devices:
        if not device.device_id:
            raise InvalidDescriptor(f"{descriptor.node_id}: device without device_id")
        if device.device_id in seen:
            raise InvalidDescriptor(f"{descriptor.node_id}: duplicate device {device.device_id}")
        seen.add(device.device_id)
        if not device.frequency_ranges:
            raise InvalidDescriptor(f"{descriptor.node_id}/{device.device_id}: no frequency range")
        for band in device.frequency_ranges:
            if math.isnan(band.low_hz) or math.isnan(band.high_hz):
                raise InvalidDescriptor(f"{descriptor.node_id}/{device.device_id}: frequency range is NaN")
            if band.low_hz < 0 or band.low_hz >= band.high_hz:
                raise InvalidDescriptor(
                    f"{descriptor.node_id}/{device.device_id}: invalid range "
                    f"{band.low_hz}-{band.high_hz} Hz")
        if math.isnan(device.max_bandwidth_hz) or device.max_bandwidth_hz <= 0:
            raise InvalidDescriptor(f"{descriptor.node_id}/{device.device_id}: bandwidth must be positive")
        if any(math.isnan(rate) or rate <= 0 for rate in device.sample_rates):
            raise InvalidDescriptor(f"{descriptor.node_id}/{device.device_id}: invalid sample rate")

    pos = descriptor.position
    if pos is not None:
        if not (-90.0 <= pos.lat_deg <= 90.0) or not (-180.0 <= pos.lon_deg <= 180.0):
            raise InvalidDescriptor(f"{descriptor.node_id}: position out of range")
        if any(math.isnan(v) for v in (pos.lat_deg, pos.lon_deg, pos.alt_m)):
            raise InvalidDescriptor(f"{descriptor.node_id}: position is NaN")


class NodeRegistry:
    """
    Registry of sensing nodes.

    Tracks capabilities and liveness, forwards sync reports to the tracker
    and holds device reservations on behalf of the allocator.
    """

    def __init__(
        self,
        tracker: SyncQualityTracker,
        suspect_timeout_s: float = 15.0,
        offline_timeout_s: float = 45.0,
        clock: Callable[[], float] = time.time,
    ):
        if offline_timeout_s <= suspect_timeout_s:
            raise ValueError("offline timeout must exceed suspect timeout")
        self.tracker = tracker
        self.suspect_timeout_s = suspect_timeout_s
        self.offline_timeout_s = offline_timeout_s
        self._clock = clock
        self._lock = Lock()
        self.reservation_lock = RLock()
        self._nodes: Dict[str, Node] = {}
        self._listeners: List[RegistryListener] = []

    def add_listener(self, listener: RegistryListener) -> None:
        self._listeners.append(listener)

    def _emit(self, events: Sequence[RegistryEvent]) -> None:
        for event in events:
            for listener in list(self._listeners):
                try:
                    listener(event)
                except Exception:
                    logger.exception(f"Registry listener failed on {event.kind.value} for {event.node_id}")

    def register(self, descriptor: NodeDescriptor) -> str:
        """
        Register a node, or refresh an existing one with the same id.

        Re-registration replaces capabilities, keeps the reservation state of
        devices that are still declared and resets liveness to online.

        Returns:
            The node id
        """
        validate_descriptor(descriptor)
        now = self._clock()
        events = []

        with self.reservation_lock, self._lock:
            devices = {d.device_id: copy.copy(d) for d in descriptor.devices}
            existing = self._nodes.get(descriptor.node_id)

            if existing is None:
                for device in devices.values():
                    device.reserved_by = None
                    device.reserved_bandwidth_hz = 0.0
                self._nodes[descriptor.node_id] = Node(
                    node_id=descriptor.node_id,
                    address=descriptor.address,
                    devices=devices,
                    position=descriptor.position,
                    last_contact=now,
                    registered_at=now,
                )
                logger.info(f"Registered node: {descriptor.node_id} "
                            f"({len(devices)} devices @ {descriptor.address})")
            else:
                for device_id, device in devices.items():
                    old = existing.devices.get(device_id)
                    if old is not None:
                        device.reserved_by = old.reserved_by
                        device.reserved_bandwidth_hz = old.reserved_bandwidth_hz
                        device.faulted = old.faulted
                        if device.reserved_bandwidth_hz > device.max_bandwidth_hz:
                            # Shrunk below what the running job holds
                            events.append(RegistryEvent(RegistryEventKind.DEVICE_LOST, descriptor.node_id,
                                                        device_id=device_id, job_id=device.reserved_by))
                    else:
                        device.reserved_by = None
                        device.reserved_bandwidth_hz = 0.0
                for device_id, old in existing.devices.items():
                    if device_id not in devices and old.reserved_by is not None:
                        events.append(RegistryEvent(RegistryEventKind.DEVICE_LOST, descriptor.node_id,
                                                    device_id=device_id, job_id=old.reserved_by))

                previous = existing.liveness
                changed = set(devices) != set(existing.devices) or any(
                    not device.same_capabilities(existing.devices[device_id])
                    for device_id, device in devices.items())
                existing.address = descriptor.address
                existing.position = descriptor.position
                existing.devices = devices
                existing.liveness = Liveness.ONLINE
                existing.last_contact = now
                logger.info(f"Re-registered node: {descriptor.node_id} (was {previous.value}"
                            f"{', capabilities changed' if changed else ''})")

        events.insert(0, RegistryEvent(RegistryEventKind.REGISTERED, descriptor.node_id,
                                       current=Liveness.ONLINE))
        self._emit(events)
        return descriptor.node_id

    def deregister(self, node_id: str) -> Node:
        """Remove a node (administrative action only)."""
        with self.reservation_lock, self._lock:
            node = self._nodes.pop(node_id, None)
            if node is None:
                raise UnknownNode(node_id)
        self.tracker.forget(node_id)
        logger.info(f"Deregistered node: {node_id}")
        self._emit([RegistryEvent(RegistryEventKind.DEREGISTERED, node_id, previous=node.liveness)])
        return node

    def record_heartbeat(self, node_id: str, report: SyncReport) -> bool:
        """
        Ingest a heartbeat carrying a sync report.

        Returns:
            False if the report was older than the last processed one and
            was discarded, True otherwise
        """
        events = []
        with self._lock:
            node = self._nodes.get(node_id)
            if node is None:
                logger.warning(f"Heartbeat from unknown node: {node_id}")
                raise UnknownNode(node_id)

            if node.last_report_ts is not None and report.timestamp < node.last_report_ts:
                logger.debug(f"{node_id}: discarding stale heartbeat "
                             f"({report.timestamp} < {node.last_report_ts})")
                return False

            node.last_contact = self._clock()
            node.last_report_ts = report.timestamp
            self.tracker.ingest(node_id, report)
            previous_tier = node.sync_tier
            node.sync_tier = self.tracker.tier_of(node_id)
            if node.sync_tier != previous_tier:
                events.append(RegistryEvent(RegistryEventKind.SYNC_TIER, node_id))

            if node.liveness != Liveness.ONLINE:
                previous = node.liveness
                node.liveness = Liveness.ONLINE
                logger.info(f"{node_id}: {previous.value} -> online")
                events.append(RegistryEvent(RegistryEventKind.LIVENESS, node_id,
                                            previous=previous, current=Liveness.ONLINE))

        self._emit(events)
        return True

    def sweep(self, now: Optional[float] = None) -> List[RegistryEvent]:
        """
        Apply heartbeat timeouts.

        A node moves at most one step per sweep, so online never jumps
        straight to offline.

        Returns:
            The liveness transitions applied
        """
        now = self._clock() if now is None else now
        events = []
        with self._lock:
            for node in self._nodes.values():
                elapsed = now - node.last_contact
                if node.liveness == Liveness.ONLINE and elapsed > self.suspect_timeout_s:
                    node.liveness = Liveness.SUSPECT
                elif node.liveness == Liveness.SUSPECT and elapsed > self.offline_timeout_s:
                    node.liveness = Liveness.OFFLINE
                else:
                    continue
                previous = Liveness.ONLINE if node.liveness == Liveness.SUSPECT else Liveness.SUSPECT
                logger.warning(f"{node.node_id}: {previous.value} -> {node.liveness.value} "
                               f"(no heartbeat for {elapsed:.1f}s)")
                events.append(RegistryEvent(RegistryEventKind.LIVENESS, node.node_id,
                                            previous=previous, current=node.liveness))

        self._emit(events)
        return events

    def report_device_fault(self, node_id: str, device_id: str) -> None:
        """Mark a device faulted; a reserved device counts as a lost slot."""
        events = []
        with self.reservation_lock, self._lock:
            device = self._device(node_id, device_id)
            device.faulted = True
            logger.warning(f"{node_id}/{device_id}: device faulted")
            if device.reserved_by is not None:
                events.append(RegistryEvent(RegistryEventKind.DEVICE_LOST, node_id,
                                            device_id=device_id, job_id=device.reserved_by))
        self._emit(events)

    def clear_device_fault(self, node_id: str, device_id: str) -> None:
        with self.reservation_lock, self._lock:
            device = self._device(node_id, device_id)
            device.faulted = False
            logger.info(f"{node_id}/{device_id}: fault cleared")
        self._emit([RegistryEvent(RegistryEventKind.DEVICE_RESTORED, node_id, device_id=device_id)])

    def get(self, node_id: str) -> Optional[Node]:
        """Copy of a node record."""
        with self._lock:
            node = self._nodes.get(node_id)
            return copy.deepcopy(node) if node else None

    def get_all(self) -> Dict[str, Node]:
        with self._lock:
            return copy.deepcopy(self._nodes)

    def liveness_of(self, node_id: str) -> Optional[Liveness]:
        with self._lock:
            node = self._nodes.get(node_id)
            return node.liveness if node else None

    def list_available(self, predicate: Optional[NodePredicate] = None) -> NodeSnapshot:
        """
        Online nodes satisfying predicate, as a restartable snapshot.

        Offline and suspect nodes are never candidates for allocation.
        """
        with self._lock:
            nodes = [copy.deepcopy(self._nodes[node_id]) for node_id in sorted(self._nodes)
                     if self._nodes[node_id].liveness == Liveness.ONLINE]
        return NodeSnapshot(nodes, predicate)

    @property
    def count(self) -> int:
        with self._lock:
            return len(self._nodes)

    def liveness_counts(self) -> Dict[str, int]:
        with self._lock:
            counts = {state.value: 0 for state in Liveness}
            for node in self._nodes.values():
                counts[node.liveness.value] += 1
            return counts

    def _device(self, node_id: str, device_id: str) -> DeviceDescriptor:
        node = self._nodes.get(node_id)
        if node is None:
            raise UnknownNode(node_id)
        device = node.devices.get(device_id)
        if device is None:
            raise KeyError(f"{node_id} has no device {device_id}")
        return device

    def reserve(self, job_id: str, picks: Sequence[Tuple[str, str, float]]) -> bool:
        """
        Reserve (node_id, device_id, bandwidth_hz) picks for a job atomically.

        Either every device is reserved or none is.
        """
        with self.reservation_lock, self._lock:
            for node_id, device_id, bandwidth_hz in picks:
                node = self._nodes.get(node_id)
                if node is None or node.liveness != Liveness.ONLINE:
                    logger.debug(f"Reserve for {job_id} rejected: {node_id} not online")
                    return False
                device = node.devices.get(device_id)
                if device is None or not device.is_free or bandwidth_hz > device.max_bandwidth_hz:
                    logger.debug(f"Reserve for {job_id} rejected: {node_id}/{device_id} unavailable")
                    return False

            for node_id, device_id, bandwidth_hz in picks:
                device = self._nodes[node_id].devices[device_id]
                device.reserved_by = job_id
                device.reserved_bandwidth_hz = bandwidth_hz
        return True

    def release(self, job_id: str, pairs: Sequence[Tuple[str, str]]) -> int:
        """
        Return devices held by job_id to free.

        Devices of deregistered nodes, or reserved by another job, are skipped.

        Returns:
            Number of devices released
        """
        released = 0
        with self.reservation_lock, self._lock:
            for node_id, device_id in pairs:
                node = self._nodes.get(node_id)
                device = node.devices.get(device_id) if node else None
                if device is None or device.reserved_by != job_id:
                    continue
                device.reserved_by = None
                device.reserved_bandwidth_hz = 0.0
                released += 1
        return released

    def reservations(self) -> Dict[Tuple[str, str], str]:
        """All current reservations as {(node_id, device_id): job_id}."""
        with self.reservation_lock, self._lock:
            return {
                (node.node_id, device.device_id): device.reserved_by
                for node in self._nodes.values()
                for device in node.devices.values()
                if device.reserved_by is not None
            }

    def allocation_healthy(self, node_id: str, device_id: str, job_id: str) -> bool:
        """
        True while a job's device is still usable.

        Suspect nodes still count as healthy; only offline or removed nodes,
        faulted or removed devices, and lost reservations do not.
        """
        with self._lock:
            node = self._nodes.get(node_id)
            if node is None or node.liveness == Liveness.OFFLINE:
                return False
            device = node.devices.get(device_id)
            if device is None or device.faulted:
                return False
            return device.reserved_by == job_id and device.reserved_bandwidth_hz <= device.max_bandwidth_hz

    def to_dict(self) -> Dict[str, Any]:
        """Serialize registry to dictionary."""
        with self.reservation_lock, self._lock:
            return {
                'nodes': {
                    node_id: {
                        'address': node.address,
                        'position': ([node.position.lat_deg, node.position.lon_deg, node.position.alt_m]
                                     if node.position else None),
                        'liveness': node.liveness.value,
                        'sync_tier': node.sync_tier.label,
                        'last_contact': node.last_contact,
                        'last_report_ts': node.last_report_ts,
                        'registered_at': node.registered_at,
                        'devices': {
                            device_id: {
                                'frequency_ranges': [[r.low_hz, r.high_hz] for r in device.frequency_ranges],
                                'max_bandwidth_hz': device.max_bandwidth_hz,
                                'sample_rates': list(device.sample_rates),
                                'can_transmit': device.can_transmit,
                                'reserved_by': device.reserved_by,
                                'reserved_bandwidth_hz': device.reserved_bandwidth_hz,
                                'faulted': device.faulted,
                            }
                            for device_id, device in node.devices.items()
                        },
                    }
                    for node_id, node in self._nodes.items()
                }
            }

    @classmethod
    def from_dict(
        cls,
        data: Dict[str, Any],
        tracker: SyncQualityTracker,
        suspect_timeout_s: float = 15.0,
        offline_timeout_s: float = 45.0,
        clock: Callable[[], float] = time.time,
    ) -> 'NodeRegistry':
        """
        Deserialize registry from dictionary.

        Liveness is not trusted across a restart: every node comes back
        suspect with its contact clock reset, and must heartbeat to be
        allocatable again.
        """
        registry = cls(tracker, suspect_timeout_s, offline_timeout_s, clock)
        now = clock()

        for node_id, node_data in data.get('nodes', {}).items():
            devices = {}
            for device_id, dev in node_data.get('devices', {}).items():
                devices[device_id] = DeviceDescriptor(
                    device_id=device_id,
                    frequency_ranges=tuple(FrequencyRange(lo, hi) for lo, hi in dev['frequency_ranges']),
                    max_bandwidth_hz=dev['max_bandwidth_hz'],
                    sample_rates=tuple(dev.get('sample_rates', ())),
                    can_transmit=dev.get('can_transmit', False),
                    reserved_by=dev.get('reserved_by'),
                    reserved_bandwidth_hz=dev.get('reserved_bandwidth_hz', 0.0),
                    faulted=dev.get('faulted', False),
                )
            pos = node_data.get('position')
            registry._nodes[node_id] = Node(
                node_id=node_id,
                address=node_data['address'],
                devices=devices,
                position=GeoPosition(*pos) if pos else None,
                liveness=Liveness.SUSPECT,
                sync_tier=SyncTier.NONE,
                last_contact=now,
                last_report_ts=node_data.get('last_report_ts'),
                registered_at=node_data.get('registered_at', now),
            )

        logger.info(f"Restored {len(registry._nodes)} nodes (all suspect until heartbeat)")
        return registry
