"""
Snapshot - Persisted scheduling state.

The metadata store proper lives outside the core; this module defines the
shape it stores (registry + jobs with their allocation history) and a JSON
file store good enough for a single coordinator. Liveness is deliberately
not trusted on restore: every node comes back suspect.
"""

import json
import logging
import os
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from ..errors import SnapshotError

logger = logging.getLogger(__name__)

SNAPSHOT_VERSION = 1


@dataclass
class CoordinatorSnapshot:
    """Everything needed to resume scheduling after a restart."""
    registry: Dict[str, Any]
    jobs: List[Dict[str, Any]] = field(default_factory=list)
    taken_at: float = 0.0
    version: int = SNAPSHOT_VERSION

    @classmethod
    def capture(cls, registry, scheduler, clock: Callable[[], float] = time.time) -> 'CoordinatorSnapshot':
        jobs = []
        for job in scheduler.jobs():
            with job.lock:
                jobs.append(job.to_dict())
        return cls(registry=registry.to_dict(), jobs=jobs, taken_at=clock())

    def to_dict(self) -> Dict[str, Any]:
        return {
            'version': self.version,
            'taken_at': self.taken_at,
            'registry': self.registry,
            'jobs': self.jobs,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CoordinatorSnapshot':
        version = data.get('version')
        if version != SNAPSHOT_VERSION:
            raise SnapshotError(f"Unsupported snapshot version: {version!r}")
        try:
            return cls(
                registry=data['registry'],
                jobs=list(data.get('jobs', [])),
                taken_at=float(data.get('taken_at', 0.0)),
                version=version,
            )
        except (KeyError, TypeError, ValueError) as e:
            raise SnapshotError(f"Malformed snapshot: {e}") from e


class SnapshotStore:
    """Single JSON file, replaced atomically on every save."""

    def __init__(self, path: str):
        self.path = Path(path)

    def save(self, snapshot: CoordinatorSnapshot) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(json.dumps(snapshot.to_dict(), indent=2, sort_keys=True))
        os.replace(tmp, self.path)
        logger.info(f"Snapshot saved: {self.path} "
                    f"({len(snapshot.registry.get('nodes', {}))} nodes, {len(snapshot.jobs)} jobs)")

    def load(self) -> Optional[CoordinatorSnapshot]:
        """The stored snapshot, or None if nothing was saved yet."""
        if not self.path.exists():
            return None
        try:
            data = json.loads(self.path.read_text())
        except json.JSONDecodeError as e:
            raise SnapshotError(f"Corrupt snapshot {self.path}: {e}") from e
        snapshot = CoordinatorSnapshot.from_dict(data)
        logger.info(f"Snapshot loaded: {self.path} (taken at {snapshot.taken_at:.0f})")
        return snapshot
