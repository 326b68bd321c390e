"""
Dispatch - Allocation directives toward nodes and their acknowledgements.

The transport is pluggable: anything implementing NodeChannel can carry
directives (REST, WebSocket, a message bus). The dispatcher sends a batch in
parallel and waits a fixed acknowledgement timeout; a negative answer, an
exception or silence all count as dispatch failure for that directive.
"""

import logging
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any, Dict, List, Sequence, Tuple

from ..allocation.requirements import JobType, Role
from ..errors import DispatchFailure

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DispatchDirective:
    """Instruction for one node to run its part of a job on one device."""
    job_id: str
    node_id: str
    device_id: str
    role: Role
    job_type: JobType
    parameters: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'job_id': self.job_id,
            'node_id': self.node_id,
            'device_id': self.device_id,
            'role': self.role.value,
            'job_type': self.job_type.value,
            'parameters': dict(self.parameters),
        }


class NodeChannel:
    """Transport toward nodes. Implementations live outside the core."""

    def send(self, directive: DispatchDirective, timeout: float) -> bool:
        """Deliver a directive; True once the node acknowledged it."""
        raise NotImplementedError

    def release(self, directive: DispatchDirective) -> None:
        """Tell a node its part of a job is over (best effort)."""


class LoopbackChannel(NodeChannel):
    """Acknowledges everything locally. For running the daemon without a transport."""

    def send(self, directive: DispatchDirective, timeout: float) -> bool:
        logger.info(f"[loopback] {directive.job_type.value} {directive.job_id} -> "
                    f"{directive.node_id}/{directive.device_id} ({directive.role.value})")
        return True

    def release(self, directive: DispatchDirective) -> None:
        logger.info(f"[loopback] release {directive.job_id} on {directive.node_id}/{directive.device_id}")


class Dispatcher:
    """Sends directive batches concurrently and collects acknowledgements."""

    def __init__(self, channel: NodeChannel, ack_timeout_s: float = 5.0, max_workers: int = 8):
        self.channel = channel
        self.ack_timeout_s = ack_timeout_s
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="dispatch")

    def dispatch(
        self,
        directives: Sequence[DispatchDirective],
    ) -> Tuple[List[DispatchDirective], List[DispatchFailure]]:
        """
        Send directives and wait for acknowledgements.

        Returns:
            (acknowledged directives, failures)
        """
        if not directives:
            return [], []

        futures = {
            self._executor.submit(self.channel.send, directive, self.ack_timeout_s): directive
            for directive in directives
        }
        done, not_done = wait(futures, timeout=self.ack_timeout_s)

        acked = []
        failures = []
        for future in done:
            directive = futures[future]
            try:
                if future.result():
                    acked.append(directive)
                    continue
                reason = "negative acknowledgement"
            except Exception as e:
                reason = f"{type(e).__name__}: {e}"
            failures.append(DispatchFailure(directive.node_id, directive.device_id, reason))

        for future in not_done:
            future.cancel()
            directive = futures[future]
            failures.append(DispatchFailure(directive.node_id, directive.device_id,
                                            f"no acknowledgement within {self.ack_timeout_s}s"))

        for failure in failures:
            logger.warning(f"Job {directives[0].job_id}: {failure}")
        return acked, failures

    def release(self, directives: Sequence[DispatchDirective]) -> None:
        """Fire-and-forget release notices."""
        for directive in directives:
            try:
                self._executor.submit(self._release_one, directive)
            except RuntimeError:
                # Executor already shut down
                logger.debug(f"Release notice for {directive.job_id} to {directive.node_id} dropped")

    def _release_one(self, directive: DispatchDirective) -> None:
        try:
            self.channel.release(directive)
        except Exception:
            logger.exception(f"Release notice to {directive.node_id} for {directive.job_id} failed")

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False)
