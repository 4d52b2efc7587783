"""
Control Plane Configuration

Settings are resolved in three layers:
1. Built-in defaults (module constants below)
2. Environment variables (CONTROL_PLANE_*)
3. Optional YAML overlay file named by CONTROL_PLANE_CONFIG

The resolved ControlPlaneSettings is passed explicitly to create_app().
"""

import logging
import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Optional, Dict, Any

import yaml

logger = logging.getLogger("config")


# -----------------------------------------------------------------------------
# Defaults
# -----------------------------------------------------------------------------
DATA_DIR = Path(os.getenv("CONTROL_PLANE_DATA_DIR", "data/control_plane"))
BASE_DIR = Path(os.getenv("CONTROL_PLANE_BASE_DIR", os.getcwd()))
CONFIG_FILE = os.getenv("CONTROL_PLANE_CONFIG", "")
LOG_LEVEL = os.getenv("CONTROL_PLANE_LOG_LEVEL", "INFO")

WORKER_COUNT = int(os.getenv("CONTROL_PLANE_WORKERS", "2"))
WORKER_POLL_INTERVAL_SECONDS = float(os.getenv("CONTROL_PLANE_WORKER_POLL_INTERVAL", "0.5"))

TRIGGER_DEDUP_HOURS = int(os.getenv("CONTROL_PLANE_TRIGGER_DEDUP_HOURS", "24"))
MAX_TRIGGERS = int(os.getenv("CONTROL_PLANE_MAX_TRIGGERS", "2000"))
MAX_TERMINAL_JOBS = int(os.getenv("CONTROL_PLANE_MAX_TERMINAL_JOBS", "5000"))

BACKLOG_THRESHOLD = int(os.getenv("CONTROL_PLANE_BACKLOG_THRESHOLD", "100"))
BACKLOG_HISTORY_LIMIT = int(os.getenv("CONTROL_PLANE_BACKLOG_HISTORY", "5000"))
BACKLOG_SAMPLE_INTERVAL_SECONDS = float(os.getenv("CONTROL_PLANE_BACKLOG_INTERVAL", "15"))

EVENT_LIMIT = int(os.getenv("CONTROL_PLANE_EVENT_LIMIT", "10000"))
RUN_SEGMENT_MAX_BYTES = int(os.getenv("CONTROL_PLANE_RUN_SEGMENT_BYTES", str(64 * 1024 * 1024)))

REQUEST_TIMEOUT_SECONDS = float(os.getenv("CONTROL_PLANE_REQUEST_TIMEOUT", "30"))


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


START_WORKERS = _env_flag("CONTROL_PLANE_START_WORKERS", True)
START_BACKLOG_SAMPLER = _env_flag("CONTROL_PLANE_START_SAMPLER", True)


# -----------------------------------------------------------------------------
# Settings
# -----------------------------------------------------------------------------
@dataclass
class ControlPlaneSettings:
    """Resolved control plane settings."""
    data_dir: Path = field(default_factory=lambda: DATA_DIR)
    base_dir: Path = field(default_factory=lambda: BASE_DIR)
    log_level: str = LOG_LEVEL
    workers: int = WORKER_COUNT
    worker_poll_interval_seconds: float = WORKER_POLL_INTERVAL_SECONDS
    start_workers: bool = START_WORKERS
    trigger_dedup_hours: int = TRIGGER_DEDUP_HOURS
    max_triggers: int = MAX_TRIGGERS
    max_terminal_jobs: int = MAX_TERMINAL_JOBS
    backlog_threshold: int = BACKLOG_THRESHOLD
    backlog_history_limit: int = BACKLOG_HISTORY_LIMIT
    backlog_sample_interval_seconds: float = BACKLOG_SAMPLE_INTERVAL_SECONDS
    start_backlog_sampler: bool = START_BACKLOG_SAMPLER
    event_limit: int = EVENT_LIMIT
    run_segment_max_bytes: int = RUN_SEGMENT_MAX_BYTES
    request_timeout_seconds: float = REQUEST_TIMEOUT_SECONDS

    # Derived storage paths
    @property
    def runs_dir(self) -> Path:
        return self.data_dir / "runs"

    @property
    def triggers_file(self) -> Path:
        return self.data_dir / "triggers" / "triggers.jsonl"

    @property
    def drift_dir(self) -> Path:
        return self.data_dir / "drift"

    @property
    def queue_state_file(self) -> Path:
        return self.data_dir / "jobs" / "queue_state.json"

    @property
    def events_file(self) -> Path:
        return self.data_dir / "events" / "events.jsonl"

    @property
    def objects_dir(self) -> Path:
        """Local object directory holding backup snapshots."""
        return self.data_dir / "objects"

    def with_overrides(self, overrides: Dict[str, Any]) -> "ControlPlaneSettings":
        """
        Return a copy with known keys overridden.

        Unknown keys are ignored with a warning. Path-typed fields are
        coerced from strings.
        """
        known = {f.name: f for f in fields(self)}
        updates: Dict[str, Any] = {}
        for key, value in overrides.items():
            if key not in known:
                logger.warning(f"Ignoring unknown setting: {key}")
                continue
            if key in ("data_dir", "base_dir") and value is not None:
                value = Path(value)
            updates[key] = value
        return replace(self, **updates)


def load_yaml_overrides(config_file: Path) -> Dict[str, Any]:
    """Load a YAML overlay file. Missing or empty files yield no overrides."""
    if not config_file.exists():
        logger.warning(f"Config file not found: {config_file}")
        return {}
    with open(config_file, "r") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Config file must contain a mapping, got {type(data).__name__}")
    return data


def load_settings(config_file: Optional[str] = None) -> ControlPlaneSettings:
    """Resolve settings from defaults, environment and optional YAML overlay."""
    settings = ControlPlaneSettings()
    path = config_file if config_file is not None else CONFIG_FILE
    if path:
        settings = settings.with_overrides(load_yaml_overrides(Path(path)))
        logger.info(f"Loaded settings overlay from {path}")
    return settings
