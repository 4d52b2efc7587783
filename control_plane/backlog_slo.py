"""
Backlog SLO Observer

Observes JobQueue depth and classifies it as normal, warning or saturated.

CONSTRAINTS:
- OBSERVATION-ONLY: sampling never mutates the queue
- HYSTERESIS: warning/saturated persist until pending drops below the
  recovery threshold
- BOUNDED: history is a ring buffer, queried newest-first
"""

import logging
import threading
from collections import deque
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Optional, Dict, Any, List, Deque

from .errors import InvalidInput
from .job_queue import Job, JobQueue
from .timeutil import utc_now, format_ts

logger = logging.getLogger("backlog_slo")

# -----------------------------------------------------------------------------
# Configuration
# -----------------------------------------------------------------------------
DEFAULT_WARNING_PERCENT = 70
DEFAULT_RECOVERY_PERCENT = 50
DEFAULT_PROJECTION_SECONDS = 300
MIN_PROJECTION_SECONDS = 30
MAX_PROJECTION_SECONDS = 3600
DEFAULT_HISTORY_LIMIT = 5000
DEFAULT_HISTORY_QUERY = 100


class BacklogState(str, Enum):
    NORMAL = "normal"
    WARNING = "warning"
    SATURATED = "saturated"


# -----------------------------------------------------------------------------
# Models
# -----------------------------------------------------------------------------
@dataclass
class BacklogPolicy:
    """Backlog SLO policy. Thresholds are derived with floor division."""
    threshold: int
    warning_percent: int = DEFAULT_WARNING_PERCENT
    recovery_percent: int = DEFAULT_RECOVERY_PERCENT
    projection_seconds: int = DEFAULT_PROJECTION_SECONDS
    updated_at: Optional[datetime] = None

    @property
    def warning_threshold(self) -> int:
        return self.threshold * self.warning_percent // 100

    @property
    def recovery_threshold(self) -> int:
        return self.threshold * self.recovery_percent // 100

    def validate(self) -> None:
        if self.threshold <= 0:
            raise InvalidInput("threshold must be greater than zero")
        if not 0 < self.warning_percent < 100:
            raise InvalidInput("warning_percent must be between 1 and 99")
        if not 0 < self.recovery_percent < self.warning_percent:
            raise InvalidInput("recovery_percent must be between 1 and warning_percent - 1")
        if not MIN_PROJECTION_SECONDS <= self.projection_seconds <= MAX_PROJECTION_SECONDS:
            raise InvalidInput(
                f"projection_seconds must be between {MIN_PROJECTION_SECONDS} and {MAX_PROJECTION_SECONDS}"
            )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "threshold": self.threshold,
            "warning_percent": self.warning_percent,
            "recovery_percent": self.recovery_percent,
            "projection_seconds": self.projection_seconds,
            "warning_threshold": self.warning_threshold,
            "recovery_threshold": self.recovery_threshold,
            "updated_at": format_ts(self.updated_at),
        }


@dataclass(frozen=True)
class BacklogSample:
    at: datetime
    pending: int
    running: int
    pending_high: int
    pending_normal: int
    pending_low: int
    threshold: int
    warning_threshold: int
    recovery_threshold: int
    growth_per_sec: float
    predicted_pending: int
    predictive_saturated: bool
    state: BacklogState

    def to_dict(self) -> Dict[str, Any]:
        return {
            "at": format_ts(self.at),
            "pending": self.pending,
            "running": self.running,
            "pending_high": self.pending_high,
            "pending_normal": self.pending_normal,
            "pending_low": self.pending_low,
            "threshold": self.threshold,
            "warning_threshold": self.warning_threshold,
            "recovery_threshold": self.recovery_threshold,
            "growth_per_sec": round(self.growth_per_sec, 3),
            "predicted_pending": self.predicted_pending,
            "predictive_saturated": self.predictive_saturated,
            "state": self.state.value,
        }


def classify(pending: int, policy: BacklogPolicy, previous: Optional[BacklogState]) -> BacklogState:
    """
    Derive the backlog state.

    Saturation always wins. An elevated previous state is held while pending
    stays at or above the recovery threshold.
    """
    if pending >= policy.threshold:
        return BacklogState.SATURATED
    if previous in (BacklogState.WARNING, BacklogState.SATURATED) and pending >= policy.recovery_threshold:
        return previous
    if pending >= policy.warning_threshold:
        return BacklogState.WARNING
    return BacklogState.NORMAL


# -----------------------------------------------------------------------------
# Monitor
# -----------------------------------------------------------------------------
class BacklogSLOMonitor:
    """Policy holder and sample history for the queue backlog."""

    def __init__(
        self,
        queue: JobQueue,
        threshold: int,
        history_limit: int = DEFAULT_HISTORY_LIMIT,
    ):
        self._queue = queue
        self._lock = threading.Lock()
        self._policy = BacklogPolicy(threshold=threshold if threshold > 0 else 100, updated_at=utc_now())
        self._history: Deque[BacklogSample] = deque(
            maxlen=history_limit if history_limit > 0 else DEFAULT_HISTORY_LIMIT
        )

    def attach(self) -> None:
        """Sample on demand after every queue transition."""
        self._queue.subscribe(self._on_job_transition)

    def _on_job_transition(self, job: Job) -> None:
        self.sample()

    def policy(self) -> BacklogPolicy:
        with self._lock:
            return replace(self._policy)

    def set_policy(
        self,
        threshold: int,
        warning_percent: Optional[int] = None,
        recovery_percent: Optional[int] = None,
        projection_seconds: Optional[int] = None,
    ) -> BacklogPolicy:
        """Validate and install a new policy. Omitted percents use defaults."""
        policy = BacklogPolicy(
            threshold=threshold,
            warning_percent=warning_percent or DEFAULT_WARNING_PERCENT,
            recovery_percent=recovery_percent or DEFAULT_RECOVERY_PERCENT,
            projection_seconds=projection_seconds or DEFAULT_PROJECTION_SECONDS,
            updated_at=utc_now(),
        )
        policy.validate()
        with self._lock:
            self._policy = policy
        logger.info(
            f"Backlog SLO policy set: threshold={policy.threshold} "
            f"warn={policy.warning_percent}% recovery={policy.recovery_percent}%"
        )
        return replace(policy)

    def sample(self) -> BacklogSample:
        """Take a sample of the current queue depth and record it."""
        status = self._queue.control_status()
        now = utc_now()
        with self._lock:
            policy = self._policy
            previous = self._history[-1] if self._history else None
            growth = 0.0
            if previous is not None:
                elapsed = (now - previous.at).total_seconds()
                if elapsed > 0:
                    growth = (status.pending - previous.pending) / elapsed
            predicted = max(0, int(status.pending + growth * policy.projection_seconds))
            state = classify(status.pending, policy, previous.state if previous else None)
            sample = BacklogSample(
                at=now,
                pending=status.pending,
                running=status.running,
                pending_high=status.pending_high,
                pending_normal=status.pending_normal,
                pending_low=status.pending_low,
                threshold=policy.threshold,
                warning_threshold=policy.warning_threshold,
                recovery_threshold=policy.recovery_threshold,
                growth_per_sec=growth,
                predicted_pending=predicted,
                predictive_saturated=predicted >= policy.threshold,
                state=state,
            )
            self._history.append(sample)
        if previous is not None and previous.state != state:
            logger.info(f"Backlog state {previous.state.value} -> {state.value} (pending={status.pending})")
        return sample

    def latest(self) -> Optional[BacklogSample]:
        with self._lock:
            return self._history[-1] if self._history else None

    def history(self, limit: int = DEFAULT_HISTORY_QUERY) -> List[BacklogSample]:
        """Samples newest first."""
        if limit <= 0:
            limit = DEFAULT_HISTORY_QUERY
        with self._lock:
            items = list(self._history)
        items.reverse()
        return items[:limit]


# -----------------------------------------------------------------------------
# Periodic Sampler
# -----------------------------------------------------------------------------
class BacklogSampler:
    """Background thread sampling the monitor at a fixed interval."""

    def __init__(self, monitor: BacklogSLOMonitor, interval_seconds: float):
        self._monitor = monitor
        self._interval = interval_seconds if interval_seconds > 0 else 15.0
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            logger.warning("Backlog sampler already running")
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="backlog-sampler", daemon=True)
        self._thread.start()
        logger.info(f"Backlog sampler started (interval={self._interval}s)")

    def stop(self) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=5)
            self._thread = None
        logger.info("Backlog sampler stopped")

    def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                self._monitor.sample()
            except Exception as e:
                logger.error(f"Backlog sample failed: {e}")
            self._stop.wait(self._interval)
