"""
Closure rebuild configuration loader.

Loads debounce, retry, timeout and invalidation policy settings from
config/access_rebuild.yml.

Consumers:
  - RebuildScheduler: debounce window
  - RebuildWorker: retry policy, task timeout, stall recovery
  - InvalidationDetector: ancestor-walk vs tenant-wide policy
  - check_rebuild_health: staleness alert threshold

Usage:
    from customer_access.config.rebuild_settings import get_rebuild_settings

    settings = get_rebuild_settings()
    settings.debounce_seconds  # 300.0
"""

import logging
import os
from dataclasses import dataclass, fields
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Optional

import yaml

logger = logging.getLogger(__name__)

INVALIDATION_POLICY_ANCESTORS = "ancestors"
INVALIDATION_POLICY_TENANT = "tenant"
_VALID_POLICIES = (INVALIDATION_POLICY_ANCESTORS, INVALIDATION_POLICY_TENANT)


@dataclass(frozen=True)
class RebuildSettings:
    """
    Effective rebuild settings.

    Attributes:
        debounce_seconds: Quiet period after the last enqueue before a task runs
        max_debounce_seconds: Upper bound on how long enqueues can keep deferring a task
        max_attempts: Attempts before a task is dead-lettered
        base_delay_seconds: Initial retry delay
        max_delay_seconds: Retry delay cap
        jitter_factor: Random jitter factor (0.25 = +/- 25%)
        task_timeout_seconds: Deadline for a single recomputation attempt
        stall_factor: Running tasks older than timeout * stall_factor are reclaimed
        invalidation_policy: "ancestors" (exact walk) or "tenant" (tenant-wide)
        max_ancestor_walk: Walk size above which invalidation degrades to tenant-wide
        staleness_alert_seconds: Oldest pending task age that raises an alert
        batch_size: Tasks claimed per worker cycle
    """
    debounce_seconds: float = 300.0
    max_debounce_seconds: float = 900.0
    max_attempts: int = 4
    base_delay_seconds: float = 30.0
    max_delay_seconds: float = 1800.0
    jitter_factor: float = 0.25
    task_timeout_seconds: float = 120.0
    stall_factor: float = 3.0
    invalidation_policy: str = INVALIDATION_POLICY_ANCESTORS
    max_ancestor_walk: int = 5000
    staleness_alert_seconds: float = 3600.0
    batch_size: int = 100

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "RebuildSettings":
        """Build settings from a mapping, ignoring unknown keys."""
        known = {f.name: f.type for f in fields(cls)}
        values: Dict[str, Any] = {}
        for key, value in (raw or {}).items():
            if key not in known:
                logger.warning("Unknown rebuild setting ignored", extra={"setting": key})
                continue
            values[key] = value

        settings = cls(**values)
        if settings.invalidation_policy not in _VALID_POLICIES:
            raise ValueError(
                f"invalidation_policy must be one of {_VALID_POLICIES}, "
                f"got {settings.invalidation_policy!r}"
            )
        if settings.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if settings.max_debounce_seconds < settings.debounce_seconds:
            raise ValueError("max_debounce_seconds must be >= debounce_seconds")
        return settings


class RebuildSettingsLoader:
    """
    Thread-safe singleton loader for config/access_rebuild.yml.

    Falls back to RebuildSettings defaults when the file is missing.
    """

    _instance: Optional["RebuildSettingsLoader"] = None
    _lock = Lock()

    def __new__(cls, config_path: Optional[str] = None):
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
                    cls._instance._initialized = False
        return cls._instance

    def __init__(self, config_path: Optional[str] = None):
        if self._initialized:
            return

        self._config_path = config_path or os.getenv("ACCESS_REBUILD_CONFIG")
        self._raw: Dict[str, Any] = {}
        self._settings = RebuildSettings()
        self._load_lock = Lock()

        self._load()
        self._initialized = True

    def _resolve_path(self) -> Path:
        if self._config_path:
            return Path(self._config_path)

        candidates = [
            Path(__file__).parent.parent.parent.parent / "config" / "access_rebuild.yml",
            Path(os.getcwd()) / "config" / "access_rebuild.yml",
            Path(os.getcwd()) / ".." / "config" / "access_rebuild.yml",
        ]

        for p in candidates:
            resolved = p.resolve()
            if resolved.exists():
                return resolved

        raise FileNotFoundError(
            f"access_rebuild.yml not found in: {[str(p) for p in candidates]}"
        )

    def _load(self) -> None:
        with self._load_lock:
            try:
                path = self._resolve_path()
                logger.info("Loading rebuild settings from %s", path)

                with open(path, "r") as f:
                    self._raw = yaml.safe_load(f) or {}

                self._settings = RebuildSettings.from_dict(self._raw.get("rebuild", {}))

                logger.info(
                    "Loaded rebuild settings: debounce=%ss, max_attempts=%d, policy=%s",
                    self._settings.debounce_seconds,
                    self._settings.max_attempts,
                    self._settings.invalidation_policy,
                )
            except FileNotFoundError:
                logger.warning(
                    "access_rebuild.yml not found, using fallback defaults"
                )
                self._raw = {}
                self._settings = RebuildSettings()

    def reload(self) -> None:
        """Re-read the YAML from disk."""
        self._load()

    @property
    def settings(self) -> RebuildSettings:
        return self._settings


def get_rebuild_settings(config_path: Optional[str] = None) -> RebuildSettings:
    """Return the effective settings from the singleton loader."""
    return RebuildSettingsLoader(config_path).settings


def reset_rebuild_settings_loader() -> None:
    """Reset singleton (for tests only)."""
    RebuildSettingsLoader._instance = None
