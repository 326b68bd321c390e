"""
Job Scheduler - Queue, dispatch loop and failure reassignment.

Queued jobs are ordered by (priority desc, submission order). The dispatch
loop tries every queued job once per cycle in that order; a job that cannot
be fully allocated goes back to the queue at its original position. Running
jobs are never preempted.

When a node carrying a running job goes offline (or its device faults), a
bounded-attempt reassignment task is put on the timer queue. Each attempt
releases the lost slots and tries to refill only those; when the attempt
budget is spent the job fails with NodeLossUnrecoverable.

Locking: every mutation of a job happens under job.lock. The scheduler's
own lock only guards the job table and the queue and is never held while
waiting on a job lock.
"""

import heapq
import itertools
import logging
import time
import uuid
from threading import Event, Lock
from typing import Any, Callable, Dict, Iterable, List, NamedTuple, Optional, Sequence, Set, Tuple

from ..allocation.allocator import Allocation, ResourceAllocator
from ..control.node_registry import Liveness, NodeRegistry, RegistryEvent, RegistryEventKind
from ..errors import FailureReason, UnknownJob
from .dispatch import DispatchDirective, Dispatcher
from .jobs import Job, JobSpec, JobStatus, TransitionRecord
from .timer_queue import TimerQueue, exponential_backoff

logger = logging.getLogger(__name__)


class QueueEntry(NamedTuple):
    neg_priority: int
    seq: int
    job_id: str


class JobScheduler:
    """
    Owns jobs and their state machine.

    Collaborators are passed in explicitly: the registry for reservations and
    health checks, the allocator, the dispatcher toward nodes and the timer
    queue for reassignment retries.
    """

    def __init__(
        self,
        registry: NodeRegistry,
        allocator: ResourceAllocator,
        dispatcher: Dispatcher,
        timers: TimerQueue,
        reassign_budget: int = 3,
        dispatch_retry_budget: int = 3,
        backoff: Optional[Callable[[int], float]] = None,
        clock: Callable[[], float] = time.time,
        id_factory: Optional[Callable[[], str]] = None,
    ):
        self._registry = registry
        self._allocator = allocator
        self._dispatcher = dispatcher
        self._timers = timers
        self.reassign_budget = reassign_budget
        self.dispatch_retry_budget = dispatch_retry_budget
        self._backoff = backoff or exponential_backoff(1.0, 30.0)
        self._clock = clock
        self._new_id = id_factory or (lambda: uuid.uuid4().hex[:12])

        self._lock = Lock()
        self._jobs: Dict[str, Job] = {}
        self._queue: List[QueueEntry] = []
        self._seq = itertools.count()
        self._wakeup = Event()
        self._reassigning: Set[str] = set()
        self._recheck: Set[str] = set()

    def submit(self, spec: JobSpec) -> str:
        """
        Validate and enqueue a job.

        Returns:
            The new job id

        Raises:
            InvalidJobSpec: if the specification is rejected
        """
        spec.validate()
        now = self._clock()
        with self._lock:
            job_id = self._new_id()
            while job_id in self._jobs:
                job_id = self._new_id()
            job = Job(
                job_id=job_id,
                spec=spec,
                priority=spec.effective_priority(),
                submitted_at=now,
                seq=next(self._seq),
            )
            job.history.append(TransitionRecord(now, None, JobStatus.QUEUED, "submitted"))
            self._jobs[job_id] = job
            heapq.heappush(self._queue, QueueEntry(-job.priority, job.seq, job_id))

        req = spec.variant.requirements
        logger.info(f"Job {job_id}: submitted {spec.job_type.value} priority={job.priority} "
                    f"nodes={req.min_nodes} tier>={req.sync_tier.label} "
                    f"band={req.frequency.low_hz / 1e6:.3f}-{req.frequency.high_hz / 1e6:.3f} MHz")
        self.trigger()
        return job_id

    def _get(self, job_id: str) -> Job:
        with self._lock:
            job = self._jobs.get(job_id)
        if job is None:
            raise UnknownJob(job_id)
        return job

    def query(self, job_id: str) -> Dict[str, Any]:
        """Current state, allocation history, results and failure reason."""
        job = self._get(job_id)
        with job.lock:
            return job.to_dict()

    def status_of(self, job_id: str) -> JobStatus:
        return self._get(job_id).status

    def list_jobs(self, status: Optional[JobStatus] = None) -> List[Dict[str, Any]]:
        with self._lock:
            jobs = sorted(self._jobs.values(), key=lambda j: j.seq)
        result = []
        for job in jobs:
            with job.lock:
                if status is None or job.status == status:
                    result.append(job.to_dict())
        return result

    def queued_job_ids(self) -> List[str]:
        """Queued jobs in dispatch order."""
        with self._lock:
            entries = sorted(self._queue)
            return [e.job_id for e in entries if self._jobs[e.job_id].status == JobStatus.QUEUED]

    def counts(self) -> Dict[str, int]:
        with self._lock:
            counts = {state.value: 0 for state in JobStatus}
            for job in self._jobs.values():
                counts[job.status.value] += 1
            return counts

    def trigger(self) -> None:
        """Ask the dispatch worker for another cycle."""
        self._wakeup.set()

    def run_dispatch_cycle(self) -> int:
        """
        Attempt every queued job once, highest priority first.

        Returns:
            Number of jobs that reached running
        """
        with self._lock:
            batch = []
            while self._queue:
                entry = heapq.heappop(self._queue)
                if self._jobs[entry.job_id].status == JobStatus.QUEUED:
                    batch.append(entry)

        started = 0
        requeue = []
        for entry in batch:
            job = self._jobs[entry.job_id]
            if self._start_job(job):
                started += 1
            elif job.status == JobStatus.QUEUED:
                requeue.append(entry)

        with self._lock:
            for entry in requeue:
                heapq.heappush(self._queue, entry)

        if batch:
            logger.debug(f"Dispatch cycle: {started}/{len(batch)} queued jobs started")
        return started

    def run(self, stop: Event, interval_s: float = 2.0) -> None:
        """Dispatch worker: run a cycle on every trigger, or every interval_s."""
        logger.info("Dispatch worker started")
        while not stop.is_set():
            self._wakeup.wait(timeout=interval_s)
            self._wakeup.clear()
            if stop.is_set():
                break
            try:
                self.run_dispatch_cycle()
            except Exception:
                logger.exception("Dispatch cycle failed")
        logger.info("Dispatch worker stopped")

    def _start_job(self, job: Job) -> bool:
        with job.lock:
            if job.status != JobStatus.QUEUED:
                return False
            job.transition(JobStatus.ALLOCATING, self._clock(), "allocation attempt")

            filled, reason = self._fill(job)
            if filled:
                job.transition(JobStatus.RUNNING, self._clock(),
                               f"{len(job.active_allocations())} node(s) acknowledged")
                return True

            self._release(job, job.active_allocations(), "initial allocation incomplete")
            job.transition(JobStatus.QUEUED, self._clock(), f"insufficient: {reason}")
            return False

    def _fill(self, job: Job) -> Tuple[bool, str]:
        """
        Allocate and dispatch until the job holds its target node count.

        Nodes that fail to acknowledge are released and replaced, up to the
        dispatch retry budget. They are skipped for the rest of this call
        only, so a later attempt may pick them again. Caller holds job.lock.
        """
        refused = set()
        reason = "dispatch retry budget exhausted"
        for _ in range(self.dispatch_retry_budget):
            held = job.active_allocations()
            missing = job.target_nodes - len(held)
            if missing <= 0:
                return True, ""

            result = (self._allocator.reallocate(job, missing, exclude=refused) if held
                      else self._allocator.allocate(job, exclude=refused))
            if not result.ok:
                if refused:
                    return False, f"{result.reason}; refused by {', '.join(sorted(refused))}"
                return False, result.reason

            job.allocations.extend(result.allocations)
            failed = self._dispatch(job, result.allocations)
            if failed:
                refused.update(a.node_id for a in failed)
                self._release(job, failed, "dispatch failure")

        return job.target_nodes - len(job.active_allocations()) <= 0, reason

    def _directive(self, job: Job, allocation: Allocation) -> DispatchDirective:
        req = job.spec.variant.requirements
        parameters = dict(job.spec.parameters)
        parameters.update({
            'frequency_hz': [req.frequency.low_hz, req.frequency.high_hz],
            'bandwidth_hz': allocation.bandwidth_hz,
            'sample_rate': req.sample_rate,
        })
        return DispatchDirective(
            job_id=job.job_id,
            node_id=allocation.node_id,
            device_id=allocation.device_id,
            role=allocation.role,
            job_type=job.spec.job_type,
            parameters=parameters,
        )

    def _dispatch(self, job: Job, allocations: Sequence[Allocation]) -> List[Allocation]:
        """Send directives; returns the allocations whose node did not acknowledge."""
        directives = [self._directive(job, a) for a in allocations]
        _, failures = self._dispatcher.dispatch(directives)
        failed_keys = {(f.node_id, f.device_id) for f in failures}
        return [a for a in allocations if (a.node_id, a.device_id) in failed_keys]

    def _release(self, job: Job, allocations: Sequence[Allocation], reason: str) -> int:
        """Mark allocations released, free their devices and notify nodes. Caller holds job.lock."""
        allocations = [a for a in allocations if a.active]
        if not allocations:
            return 0
        now = self._clock()
        for allocation in allocations:
            allocation.released_at = now
            allocation.release_reason = reason
        freed = self._registry.release(job.job_id, [(a.node_id, a.device_id) for a in allocations])
        self._dispatcher.release([self._directive(job, a) for a in allocations])
        logger.info(f"Job {job.job_id}: released "
                    + ", ".join(f"{a.node_id}/{a.device_id}" for a in allocations)
                    + f" ({reason})")
        self.trigger()
        return freed

    def on_registry_event(self, event: RegistryEvent) -> None:
        """Registry listener: losses start reassignment, new capacity wakes dispatch."""
        if event.kind == RegistryEventKind.DEREGISTERED:
            self.handle_node_loss(event.node_id)
        elif event.kind == RegistryEventKind.DEVICE_LOST:
            self.handle_node_loss(event.node_id, job_id=event.job_id)
        elif event.kind == RegistryEventKind.LIVENESS and event.current == Liveness.OFFLINE:
            self.handle_node_loss(event.node_id)
        elif event.kind in (RegistryEventKind.REGISTERED, RegistryEventKind.DEVICE_RESTORED,
                            RegistryEventKind.SYNC_TIER):
            self.trigger()
        elif event.kind == RegistryEventKind.LIVENESS and event.current == Liveness.ONLINE:
            self.trigger()

    def handle_node_loss(self, node_id: str, job_id: Optional[str] = None) -> List[str]:
        """
        Schedule reassignment for every live job holding a device on node_id.

        Runs no allocation itself; attempts happen on the timer queue.

        Returns:
            Ids of the affected jobs
        """
        with self._lock:
            jobs = list(self._jobs.values())

        affected = []
        for job in jobs:
            if job_id is not None and job.job_id != job_id:
                continue
            if job.is_terminal:
                continue
            if any(a.active and a.node_id == node_id for a in list(job.allocations)):
                affected.append(job.job_id)
                self._schedule_reassignment(job.job_id)

        if affected:
            logger.warning(f"Node {node_id} lost; reassigning jobs: {', '.join(affected)}")
        return affected

    def _reassign_key(self, job_id: str) -> str:
        return f"reassign:{job_id}"

    def _schedule_reassignment(self, job_id: str) -> None:
        """Start one reassignment chain per job; later losses join the running chain."""
        with self._lock:
            if job_id in self._reassigning:
                self._recheck.add(job_id)
                return
            self._reassigning.add(job_id)
            self._timers.schedule_retry(
                self._reassign_key(job_id),
                lambda attempt: self._run_reassignment(job_id, attempt),
                max_attempts=self.reassign_budget,
                backoff=self._backoff,
                on_exhausted=lambda: self._fail_unrecoverable(job_id),
            )

    def _end_reassignment(self, job_id: str) -> None:
        with self._lock:
            self._reassigning.discard(job_id)
            self._recheck.discard(job_id)

    def _run_reassignment(self, job_id: str, attempt: int) -> bool:
        """Timer task body: repeat the attempt while losses arrive during it."""
        while True:
            with self._lock:
                self._recheck.discard(job_id)
            if not self._reassign_attempt(job_id, attempt):
                return False
            with self._lock:
                if job_id not in self._recheck:
                    self._reassigning.discard(job_id)
                    return True
            logger.info(f"Job {job_id}: another node lost during reassignment, re-checking")

    def _reassign_attempt(self, job_id: str, attempt: int) -> bool:
        """One reassignment attempt; True when the job needs no further attempts."""
        with self._lock:
            job = self._jobs.get(job_id)
        if job is None:
            return True

        with job.lock:
            if job.status not in (JobStatus.RUNNING, JobStatus.ALLOCATING):
                return True

            lost = [a for a in job.active_allocations()
                    if not self._registry.allocation_healthy(a.node_id, a.device_id, job_id)]
            if lost:
                self._release(job, lost, "node lost")

            missing = job.target_nodes - len(job.active_allocations())
            if missing <= 0:
                if job.status == JobStatus.ALLOCATING:
                    job.transition(JobStatus.RUNNING, self._clock(), "allocations healthy")
                return True

            if job.status == JobStatus.RUNNING:
                job.transition(JobStatus.ALLOCATING, self._clock(),
                               f"reassigning {missing} lost slot(s)")

            filled, reason = self._fill(job)
            if filled:
                job.transition(JobStatus.RUNNING, self._clock(),
                               f"reassignment attempt {attempt}/{self.reassign_budget} restored "
                               f"{job.target_nodes} node(s)")
                return True

            logger.warning(f"Job {job_id}: reassignment attempt {attempt}/{self.reassign_budget} "
                           f"failed: {reason}")
            return False

    def _fail_unrecoverable(self, job_id: str) -> None:
        self._end_reassignment(job_id)
        with self._lock:
            job = self._jobs.get(job_id)
        if job is None:
            return
        with job.lock:
            if job.status != JobStatus.ALLOCATING:
                return
            self._release(job, job.active_allocations(), "job failed")
            job.failure_reason = FailureReason.NODE_LOSS_UNRECOVERABLE
            job.failure_detail = (f"could not restore {job.target_nodes} node(s) after "
                                  f"{self.reassign_budget} reassignment attempts; "
                                  f"{len(job.results)} partial result(s) kept")
            job.transition(JobStatus.FAILED, self._clock(), job.failure_reason.value)
        logger.error(f"Job {job_id}: failed - {job.failure_detail}")

    def cancel(self, job_id: str) -> JobStatus:
        """
        Cancel a job, releasing all its devices. Idempotent.

        Waits for an in-flight attempt on the job to finish, so cancellation is
        observed before or after an attempt, never in the middle of one.

        Returns:
            The job's status afterwards (unchanged if already terminal)
        """
        job = self._get(job_id)
        self._timers.cancel(self._reassign_key(job_id))
        with job.lock:
            if job.is_terminal:
                return job.status
            self._release(job, job.active_allocations(), "cancelled")
            job.transition(JobStatus.CANCELLED, self._clock(), "cancel requested")
        self._timers.cancel(self._reassign_key(job_id))
        self._end_reassignment(job_id)
        return JobStatus.CANCELLED

    def report_progress(self, job_id: str, node_id: str, fraction: float) -> bool:
        job = self._get(job_id)
        with job.lock:
            if not any(a.node_id == node_id for a in job.active_allocations()):
                logger.debug(f"Job {job_id}: ignoring progress from unallocated node {node_id}")
                return False
            job.progress[node_id] = max(0.0, min(1.0, float(fraction)))
            return True

    def report_result(self, job_id: str, node_id: str, result: Any) -> bool:
        """
        Store a node's result; the job completes once every active node reported.

        Returns:
            False if the node holds no active allocation for the job
        """
        job = self._get(job_id)
        with job.lock:
            if job.status not in (JobStatus.RUNNING, JobStatus.ALLOCATING):
                logger.warning(f"Job {job_id}: result from {node_id} ignored in state {job.status.value}")
                return False
            active = job.active_allocations()
            if not any(a.node_id == node_id for a in active):
                logger.warning(f"Job {job_id}: result from unallocated node {node_id} ignored")
                return False

            job.results[node_id] = result
            job.progress[node_id] = 1.0
            if job.status == JobStatus.RUNNING and all(a.node_id in job.results for a in active):
                self._release(job, active, "completed")
                job.transition(JobStatus.COMPLETED, self._clock(), f"{len(job.results)} result(s)")
        return True

    def restore(self, jobs: Iterable[Job]) -> None:
        """
        Adopt jobs from a snapshot.

        Queued jobs re-enter the queue; running and allocating jobs get a
        reassignment task so their allocations are re-checked.
        """
        restored = []
        with self._lock:
            for job in jobs:
                self._jobs[job.job_id] = job
                restored.append(job)
            max_seq = max((j.seq for j in self._jobs.values()), default=-1)
            self._seq = itertools.count(max_seq + 1)
            self._queue = [QueueEntry(-j.priority, j.seq, j.job_id)
                           for j in self._jobs.values() if j.status == JobStatus.QUEUED]
            heapq.heapify(self._queue)

        for job in restored:
            if job.status in (JobStatus.RUNNING, JobStatus.ALLOCATING):
                self._schedule_reassignment(job.job_id)
        logger.info(f"Restored {len(restored)} jobs ({len(self._queue)} queued)")
        self.trigger()

    def reconcile_reservations(self) -> int:
        """
        Free device reservations that no live job accounts for.

        Returns:
            Number of devices released
        """
        released = 0
        for (node_id, device_id), job_id in self._registry.reservations().items():
            with self._lock:
                job = self._jobs.get(job_id)
            held = (job is not None
                    and job.status in (JobStatus.RUNNING, JobStatus.ALLOCATING)
                    and any(a.node_id == node_id and a.device_id == device_id
                            for a in job.active_allocations()))
            if not held:
                released += self._registry.release(job_id, [(node_id, device_id)])
                logger.warning(f"Released orphaned reservation {node_id}/{device_id} held by {job_id}")
        return released

    def jobs(self) -> List[Job]:
        """Live job records, for snapshots."""
        with self._lock:
            return sorted(self._jobs.values(), key=lambda j: j.seq)
