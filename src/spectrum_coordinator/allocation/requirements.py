"""
Requirements - Closed set of job variants and their slot planners.

A job is one of three variants, each carrying the shared Requirements.
Every variant has a pure planner turning "n more nodes needed" into an
ordered list of slots (role + device predicate) for the allocator to fill.
The planner table is keyed by variant class and checked for completeness at
import time, so adding a variant without a planner fails immediately.
"""

import logging
import math
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, ClassVar, Dict, List, Optional, Sequence, Union

from ..control.node_registry import DeviceDescriptor, FrequencyRange
from ..errors import InvalidJobSpec
from ..timing.sync_tracker import SyncTier

logger = logging.getLogger(__name__)


class JobType(Enum):
    SPECTRUM_SCAN = "spectrum-scan"
    DIRECTION_FINDING = "direction-finding"
    PROPAGATION_TEST = "propagation-test"


class Role(Enum):
    """Role of an allocation within a coordinated multi-node job."""
    PRIMARY = "primary"
    SECONDARY = "secondary"


@dataclass(frozen=True)
class Requirements:
    """Resource requirements shared by every job variant."""
    frequency: FrequencyRange
    min_nodes: int = 1
    sync_tier: SyncTier = SyncTier.NONE
    geo_spread_km: Optional[float] = None  # minimum pairwise separation
    bandwidth_hz: float = 0.0
    sample_rate: Optional[int] = None


@dataclass(frozen=True)
class SpectrumScan:
    """Sweep a band with one or more receivers."""
    requirements: Requirements
    job_type: ClassVar[JobType] = JobType.SPECTRUM_SCAN


@dataclass(frozen=True)
class DirectionFinding:
    """Bearing estimation; needs at least two receivers."""
    requirements: Requirements
    job_type: ClassVar[JobType] = JobType.DIRECTION_FINDING


@dataclass(frozen=True)
class PropagationTest:
    """Some nodes transmit a test signal while the rest receive it."""
    requirements: Requirements
    transmitters: int = 1
    job_type: ClassVar[JobType] = JobType.PROPAGATION_TEST


JobVariant = Union[SpectrumScan, DirectionFinding, PropagationTest]
DevicePredicate = Callable[[DeviceDescriptor], bool]

DEFAULT_PRIORITY: Dict[JobType, int] = {
    JobType.SPECTRUM_SCAN: 0,
    JobType.PROPAGATION_TEST: 5,
    JobType.DIRECTION_FINDING: 10,
}


@dataclass(frozen=True)
class Slot:
    """One node the allocator still has to find."""
    role: Role
    accepts: DevicePredicate
    label: str = "rx"


def device_filter(req: Requirements) -> DevicePredicate:
    """Predicate for devices able to serve req, ignoring reservation state."""
    def accepts(device: DeviceDescriptor) -> bool:
        if not device.covers(req.frequency):
            return False
        if req.bandwidth_hz > device.max_bandwidth_hz:
            return False
        if req.sample_rate is not None and req.sample_rate not in device.sample_rates:
            return False
        return True
    return accepts


def _receive_slots(req: Requirements, held_roles: Sequence[Role], count: int) -> List[Slot]:
    accepts = device_filter(req)
    slots = []
    need_primary = Role.PRIMARY not in held_roles
    for _ in range(count):
        role = Role.PRIMARY if need_primary else Role.SECONDARY
        need_primary = False
        slots.append(Slot(role=role, accepts=accepts))
    return slots


def _plan_spectrum_scan(variant: SpectrumScan, held_roles: Sequence[Role], count: int) -> List[Slot]:
    return _receive_slots(variant.requirements, held_roles, count)


def _plan_direction_finding(variant: DirectionFinding, held_roles: Sequence[Role], count: int) -> List[Slot]:
    # Primary is the bearing reference station
    return _receive_slots(variant.requirements, held_roles, count)


def _plan_propagation_test(variant: PropagationTest, held_roles: Sequence[Role], count: int) -> List[Slot]:
    base = device_filter(variant.requirements)

    def transmit(device: DeviceDescriptor) -> bool:
        return device.can_transmit and base(device)

    tx_needed = max(0, variant.transmitters - list(held_roles).count(Role.PRIMARY))
    tx_needed = min(tx_needed, count)
    slots = [Slot(role=Role.PRIMARY, accepts=transmit, label="tx") for _ in range(tx_needed)]
    slots += [Slot(role=Role.SECONDARY, accepts=base) for _ in range(count - tx_needed)]
    return slots


_PLANNERS: Dict[type, Callable[[Any, Sequence[Role], int], List[Slot]]] = {
    SpectrumScan: _plan_spectrum_scan,
    DirectionFinding: _plan_direction_finding,
    PropagationTest: _plan_propagation_test,
}

_UNPLANNED = set(JobType) - {cls.job_type for cls in _PLANNERS}
if _UNPLANNED:
    raise RuntimeError("No slot planner for job type(s): "
                       + ", ".join(sorted(t.value for t in _UNPLANNED)))


def plan_slots(variant: JobVariant, held_roles: Sequence[Role], count: int) -> List[Slot]:
    """
    Slots still to fill for a job, most constrained first.

    Args:
        variant: The job's variant
        held_roles: Roles of the job's healthy allocations
        count: Number of nodes still needed
    """
    return _PLANNERS[type(variant)](variant, held_roles, count)


def _is_number(value: Any) -> bool:
    """Finite int or float (bools excluded)."""
    return (isinstance(value, (int, float)) and not isinstance(value, bool)
            and (isinstance(value, int) or math.isfinite(value)))


def _is_count(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def validate_variant(variant: JobVariant) -> None:
    """Raise InvalidJobSpec if the variant cannot describe a real job."""
    if type(variant) not in _PLANNERS:
        raise InvalidJobSpec(f"Unsupported job variant: {type(variant).__name__}")

    req = variant.requirements
    band = req.frequency
    if not (_is_number(band.low_hz) and _is_number(band.high_hz)):
        raise InvalidJobSpec(f"Frequency bounds must be numbers, got {band.low_hz!r}-{band.high_hz!r}")
    if band.low_hz < 0 or band.low_hz >= band.high_hz:
        raise InvalidJobSpec(f"Invalid frequency range {band.low_hz}-{band.high_hz} Hz")
    if not _is_count(req.min_nodes) or req.min_nodes < 1:
        raise InvalidJobSpec("min_nodes must be a positive integer")
    if not isinstance(req.sync_tier, SyncTier):
        raise InvalidJobSpec(f"Invalid sync tier: {req.sync_tier!r}")
    if req.geo_spread_km is not None and (not _is_number(req.geo_spread_km) or req.geo_spread_km < 0):
        raise InvalidJobSpec(f"geo_spread_km must be a number >= 0, got {req.geo_spread_km!r}")
    if not _is_number(req.bandwidth_hz) or req.bandwidth_hz < 0:
        raise InvalidJobSpec(f"bandwidth_hz must be a number >= 0, got {req.bandwidth_hz!r}")
    if req.sample_rate is not None and (not _is_count(req.sample_rate) or req.sample_rate <= 0):
        raise InvalidJobSpec(f"sample_rate must be a positive integer, got {req.sample_rate!r}")

    if isinstance(variant, DirectionFinding) and req.min_nodes < 2:
        raise InvalidJobSpec("direction-finding needs at least 2 nodes")
    if isinstance(variant, PropagationTest):
        if not _is_count(variant.transmitters) or variant.transmitters < 1:
            raise InvalidJobSpec("propagation-test needs at least 1 transmitter")
        if variant.transmitters >= req.min_nodes:
            raise InvalidJobSpec("propagation-test needs at least one receiver besides its transmitters")


def variant_to_dict(variant: JobVariant) -> Dict[str, Any]:
    req = variant.requirements
    data = {
        'type': variant.job_type.value,
        'frequency': [req.frequency.low_hz, req.frequency.high_hz],
        'min_nodes': req.min_nodes,
        'sync_tier': req.sync_tier.label,
        'geo_spread_km': req.geo_spread_km,
        'bandwidth_hz': req.bandwidth_hz,
        'sample_rate': req.sample_rate,
    }
    if isinstance(variant, PropagationTest):
        data['transmitters'] = variant.transmitters
    return data


def _whole(value: Any, name: str) -> int:
    """Integer value of a count field; 2.0 passes, 2.5 and True do not."""
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value != int(value):
        raise ValueError(f"{name} must be an integer, got {value!r}")
    return int(value)


def _optional_float(value: Any) -> Optional[float]:
    return None if value is None else float(value)


def variant_from_dict(data: Dict[str, Any]) -> JobVariant:
    """Build a variant from its dictionary form, raising InvalidJobSpec on bad input."""
    try:
        job_type = JobType(data['type'])
        low, high = data['frequency']
        sample_rate = data.get('sample_rate')
        req = Requirements(
            frequency=FrequencyRange(float(low), float(high)),
            min_nodes=_whole(data.get('min_nodes', 1), 'min_nodes'),
            sync_tier=SyncTier.parse(data.get('sync_tier', 'none')),
            geo_spread_km=_optional_float(data.get('geo_spread_km')),
            bandwidth_hz=float(data.get('bandwidth_hz', 0.0)),
            sample_rate=None if sample_rate is None else _whole(sample_rate, 'sample_rate'),
        )
        transmitters = _whole(data.get('transmitters', 1), 'transmitters')
    except (KeyError, TypeError, ValueError, OverflowError) as e:
        raise InvalidJobSpec(f"Malformed job specification: {e}") from e

    if job_type == JobType.SPECTRUM_SCAN:
        return SpectrumScan(req)
    if job_type == JobType.DIRECTION_FINDING:
        return DirectionFinding(req)
    return PropagationTest(req, transmitters=transmitters)
