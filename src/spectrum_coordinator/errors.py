"""
Error taxonomy for the coordinator core.

Caller errors are raised synchronously. Transient allocation shortfalls are
returned as values (see allocation.allocator.AllocationResult) and terminal job
failures are recorded on the job with a FailureReason.
"""

from enum import Enum
from typing import Optional


class CoordinatorError(Exception):
    """Base class for every error raised by the coordinator core."""


class InvalidDescriptor(CoordinatorError):
    """Node descriptor is structurally inconsistent."""


class InvalidJobSpec(CoordinatorError):
    """Job specification failed validation."""


class UnknownNode(CoordinatorError):
    """Node id was never registered (or has been deregistered)."""

    def __init__(self, node_id: str):
        super().__init__(f"Unknown node: {node_id}")
        self.node_id = node_id


class UnknownJob(CoordinatorError):
    """Job id is not known to the scheduler."""

    def __init__(self, job_id: str):
        super().__init__(f"Unknown job: {job_id}")
        self.job_id = job_id


class InvalidTransition(CoordinatorError):
    """Job state machine rejected a transition."""


class DispatchFailure(CoordinatorError):
    """A node refused or did not acknowledge an allocation directive in time."""

    def __init__(self, node_id: str, device_id: str, reason: Optional[str] = None):
        message = f"Dispatch to {node_id}/{device_id} failed"
        if reason:
            message += f": {reason}"
        super().__init__(message)
        self.node_id = node_id
        self.device_id = device_id
        self.reason = reason


class ConfigError(CoordinatorError):
    """Coordinator configuration is invalid."""


class SnapshotError(CoordinatorError):
    """Persisted coordinator state could not be read."""


class FailureReason(Enum):
    """Reason codes surfaced on jobs that reached the failed state."""
    NODE_LOSS_UNRECOVERABLE = "NodeLossUnrecoverable"
