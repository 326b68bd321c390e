"""
Coordinator configuration.

Loaded from a JSON file by the CLI; every field has a default so an empty
file (or no file at all) yields a working local coordinator.
"""

import json
import logging
from dataclasses import dataclass, asdict, fields
from pathlib import Path
from typing import Any, Dict, Optional

from .errors import ConfigError

logger = logging.getLogger(__name__)


@dataclass
class CoordinatorConfig:
    """Tunables for liveness, sync tracking, dispatch and retries."""
    # Liveness
    suspect_timeout_s: float = 15.0
    offline_timeout_s: float = 45.0
    sweep_interval_s: float = 5.0

    # Synchronization quality
    sync_staleness_s: float = 30.0
    sync_window: int = 16
    flap_threshold: int = 4
    pps_jitter_limit_ns: float = 100.0

    # Dispatch
    dispatch_interval_s: float = 2.0
    dispatch_ack_timeout_s: float = 5.0
    dispatch_retry_budget: int = 3
    dispatch_workers: int = 8

    # Reassignment
    reassign_budget: int = 3
    backoff_base_s: float = 1.0
    backoff_max_s: float = 30.0

    # Persistence
    snapshot_path: Optional[str] = None

    def validate(self) -> None:
        """Raise ConfigError if values are out of range."""
        if self.suspect_timeout_s <= 0:
            raise ConfigError("suspect_timeout_s must be positive")
        if self.offline_timeout_s <= self.suspect_timeout_s:
            raise ConfigError("offline_timeout_s must exceed suspect_timeout_s")
        for name in ("sweep_interval_s", "sync_staleness_s", "dispatch_interval_s",
                     "dispatch_ack_timeout_s", "backoff_base_s"):
            if getattr(self, name) <= 0:
                raise ConfigError(f"{name} must be positive")
        if self.backoff_max_s < self.backoff_base_s:
            raise ConfigError("backoff_max_s must be >= backoff_base_s")
        for name in ("sync_window", "flap_threshold", "dispatch_retry_budget",
                     "dispatch_workers", "reassign_budget"):
            if getattr(self, name) < 1:
                raise ConfigError(f"{name} must be >= 1")

    def to_dict(self) -> Dict[str, Any]:
        """Serialize configuration to dictionary."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CoordinatorConfig':
        """Build a validated configuration, rejecting unknown keys."""
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ConfigError(f"Unknown configuration keys: {', '.join(sorted(unknown))}")
        config = cls(**data)
        try:
            config.validate()
        except TypeError as e:
            raise ConfigError(f"Invalid configuration value: {e}") from e
        return config

    @classmethod
    def load(cls, path: str) -> 'CoordinatorConfig':
        """Load configuration from a JSON file."""
        config_path = Path(path)
        try:
            data = json.loads(config_path.read_text())
        except FileNotFoundError as e:
            raise ConfigError(f"Configuration file not found: {path}") from e
        except json.JSONDecodeError as e:
            raise ConfigError(f"Invalid JSON in {path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigError(f"{path}: top level must be an object")
        logger.info(f"Loaded configuration from {config_path}")
        return cls.from_dict(data)
