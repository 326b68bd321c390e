"""
Jobs - Job records and the job state machine.

    queued -> allocating -> running -> completed | failed
    running -> allocating -> running | failed      (partial reassignment)
    allocating -> queued                          (initial attempt insufficient)
    any non-terminal -> cancelled

Every transition is validated, logged and appended to the job's history so
the allocation history can be reconstructed after the fact.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from threading import RLock
from typing import Any, Dict, List, Optional

from ..allocation.allocator import Allocation
from ..allocation.requirements import (
    DEFAULT_PRIORITY, JobType, JobVariant, validate_variant, variant_from_dict, variant_to_dict,
)
from ..errors import FailureReason, InvalidJobSpec, InvalidTransition

logger = logging.getLogger(__name__)


class JobStatus(Enum):
    QUEUED = "queued"
    ALLOCATING = "allocating"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})

TRANSITIONS: Dict[JobStatus, frozenset] = {
    JobStatus.QUEUED: frozenset({JobStatus.ALLOCATING, JobStatus.CANCELLED}),
    JobStatus.ALLOCATING: frozenset({JobStatus.RUNNING, JobStatus.QUEUED,
                                     JobStatus.FAILED, JobStatus.CANCELLED}),
    JobStatus.RUNNING: frozenset({JobStatus.ALLOCATING, JobStatus.COMPLETED,
                                  JobStatus.FAILED, JobStatus.CANCELLED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}


@dataclass(frozen=True)
class JobSpec:
    """What a submitter asks for."""
    variant: JobVariant
    priority: Optional[int] = None
    parameters: Dict[str, Any] = field(default_factory=dict)

    @property
    def job_type(self) -> JobType:
        return self.variant.job_type

    def validate(self) -> None:
        validate_variant(self.variant)
        if self.priority is not None and (isinstance(self.priority, bool) or not isinstance(self.priority, int)):
            raise InvalidJobSpec(f"priority must be an integer, got {self.priority!r}")
        if not isinstance(self.parameters, dict):
            raise InvalidJobSpec("parameters must be a mapping")

    def effective_priority(self) -> int:
        return self.priority if self.priority is not None else DEFAULT_PRIORITY[self.job_type]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'variant': variant_to_dict(self.variant),
            'priority': self.priority,
            'parameters': dict(self.parameters),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'JobSpec':
        if not isinstance(data, dict) or 'variant' not in data:
            raise InvalidJobSpec("job specification needs a 'variant' object")
        return cls(
            variant=variant_from_dict(data['variant']),
            priority=data.get('priority'),
            parameters=data.get('parameters') or {},
        )


@dataclass
class TransitionRecord:
    at: float
    from_status: Optional[JobStatus]
    to_status: JobStatus
    detail: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            'at': self.at,
            'from': self.from_status.value if self.from_status else None,
            'to': self.to_status.value,
            'detail': self.detail,
        }


@dataclass
class Job:
    """A unit of work and its allocation history."""
    job_id: str
    spec: JobSpec
    priority: int
    submitted_at: float
    seq: int
    status: JobStatus = JobStatus.QUEUED
    allocations: List[Allocation] = field(default_factory=list)
    results: Dict[str, Any] = field(default_factory=dict)
    progress: Dict[str, float] = field(default_factory=dict)
    failure_reason: Optional[FailureReason] = None
    failure_detail: Optional[str] = None
    history: List[TransitionRecord] = field(default_factory=list)
    lock: RLock = field(default_factory=RLock, repr=False, compare=False)

    @property
    def target_nodes(self) -> int:
        return self.spec.variant.requirements.min_nodes

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATES

    def active_allocations(self) -> List[Allocation]:
        return [a for a in self.allocations if a.active]

    def transition(self, new_status: JobStatus, at: float, detail: str = "") -> None:
        """Move to new_status or raise InvalidTransition."""
        if new_status not in TRANSITIONS[self.status]:
            raise InvalidTransition(f"Job {self.job_id}: {self.status.value} -> {new_status.value} not allowed")
        previous = self.status
        self.status = new_status
        self.history.append(TransitionRecord(at, previous, new_status, detail))
        active = ", ".join(f"{a.node_id}/{a.device_id}" for a in self.active_allocations()) or "none"
        logger.info(f"Job {self.job_id}: {previous.value} -> {new_status.value}"
                    f"{' (' + detail + ')' if detail else ''}; active allocations: {active}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            'job_id': self.job_id,
            'spec': self.spec.to_dict(),
            'job_type': self.spec.job_type.value,
            'priority': self.priority,
            'submitted_at': self.submitted_at,
            'seq': self.seq,
            'status': self.status.value,
            'allocations': [a.to_dict() for a in self.allocations],
            'results': dict(self.results),
            'progress': dict(self.progress),
            'failure_reason': self.failure_reason.value if self.failure_reason else None,
            'failure_detail': self.failure_detail,
            'history': [h.to_dict() for h in self.history],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Job':
        job = cls(
            job_id=data['job_id'],
            spec=JobSpec.from_dict(data['spec']),
            priority=data['priority'],
            submitted_at=data['submitted_at'],
            seq=data['seq'],
            status=JobStatus(data['status']),
            allocations=[Allocation.from_dict(a) for a in data.get('allocations', [])],
            results=dict(data.get('results', {})),
            progress=dict(data.get('progress', {})),
            failure_reason=FailureReason(data['failure_reason']) if data.get('failure_reason') else None,
            failure_detail=data.get('failure_detail'),
        )
        job.history = [
            TransitionRecord(
                at=h['at'],
                from_status=JobStatus(h['from']) if h.get('from') else None,
                to_status=JobStatus(h['to']),
                detail=h.get('detail', ''),
            )
            for h in data.get('history', [])
        ]
        return job
