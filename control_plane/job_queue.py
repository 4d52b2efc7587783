"""
Priority Job Queue

Durable queue of converge jobs consumed by the worker pool.

Scheduling:
- Strict priority bands: all HIGH before any NORMAL before any LOW
- FIFO within a band (created_at, then sequence, then job_id)
- Emergency stop and pause block claims; in-flight jobs are not interrupted

Idempotency:
- At most one Pending or Running job per non-empty idempotency key
- force=True cancels a Pending holder of the key but never creates a new
  job; the caller still receives DuplicateInFlight

State machine:
    PENDING --claim--> RUNNING --complete(ok)--> SUCCEEDED
       |                  \\--complete(err)--> FAILED
       \\--cancel--> CANCELLED

Durability: the full queue state is rewritten atomically (temp file +
os.replace) after each mutation. A failed write is retried, and the
in-memory mutation is rolled back if every attempt fails.

Retention: only the newest max_terminal_jobs finished jobs are kept;
older ones are dropped on the next state write.
"""

import json
import logging
import os
import threading
import time
from collections import deque
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Optional, Dict, Any, List, Callable, Deque, Set

from .errors import (
    ChangeFreezeActive,
    Conflict,
    DrainTimeout,
    DuplicateInFlight,
    EmergencyStopActive,
    Internal,
    InvalidConfigPath,
    InvalidPriority,
    NotFound,
)
from .timeutil import utc_now, format_ts, parse_ts, to_utc

logger = logging.getLogger("job_queue")

# -----------------------------------------------------------------------------
# Configuration
# -----------------------------------------------------------------------------
STATE_WRITE_ATTEMPTS = 3
STATE_WRITE_BACKOFF_SECONDS = 0.05
DEFAULT_STUCK_JOB_SECONDS = 300
DEFAULT_MAX_TERMINAL_JOBS = 5000
DEFAULT_DRAIN_TIMEOUT_SECONDS = 30
DRAIN_POLL_SECONDS = 0.025
STATE_VERSION = "v1"


# -----------------------------------------------------------------------------
# Enums
# -----------------------------------------------------------------------------
class JobState(str, Enum):
    """Job lifecycle states."""
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @classmethod
    def live_states(cls) -> Set["JobState"]:
        """States that hold an idempotency key."""
        return {cls.PENDING, cls.RUNNING}

    @classmethod
    def terminal_states(cls) -> Set["JobState"]:
        return {cls.SUCCEEDED, cls.FAILED, cls.CANCELLED}


ALLOWED_TRANSITIONS = {
    JobState.PENDING: {JobState.RUNNING, JobState.CANCELLED},
    JobState.RUNNING: {JobState.SUCCEEDED, JobState.FAILED},
}


class JobPriority(str, Enum):
    """
    Priority bands.

    Ordering: HIGH > NORMAL > LOW. Empty or unknown strings map to NORMAL.
    """
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"

    @classmethod
    def normalize(cls, value: Any) -> "JobPriority":
        if value is None:
            return cls.NORMAL
        if isinstance(value, JobPriority):
            return value
        if not isinstance(value, str):
            raise InvalidPriority(f"priority must be a string, got {type(value).__name__}")
        token = value.strip().lower()
        for priority in cls:
            if priority.value == token:
                return priority
        return cls.NORMAL

    @classmethod
    def dispatch_order(cls) -> List["JobPriority"]:
        return [cls.HIGH, cls.NORMAL, cls.LOW]


# -----------------------------------------------------------------------------
# Models
# -----------------------------------------------------------------------------
@dataclass
class Job:
    """A converge job. Callers always receive copies."""
    job_id: str
    config_path: str
    priority: JobPriority
    state: JobState
    created_at: datetime
    sequence: int
    idempotency_key: str = ""
    force: bool = False
    last_transition_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    error: str = ""

    def sort_key(self) -> tuple:
        return (self.created_at, self.sequence, self.job_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.job_id,
            "config_path": self.config_path,
            "priority": self.priority.value,
            "status": self.state.value,
            "idempotency_key": self.idempotency_key,
            "force": self.force,
            "sequence": self.sequence,
            "created_at": format_ts(self.created_at),
            "last_transition_at": format_ts(self.last_transition_at),
            "started_at": format_ts(self.started_at),
            "ended_at": format_ts(self.ended_at),
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Job":
        return cls(
            job_id=data["id"],
            config_path=data["config_path"],
            priority=JobPriority.normalize(data.get("priority")),
            state=JobState(data["status"]),
            created_at=parse_ts(data["created_at"]),
            sequence=int(data.get("sequence", 0)),
            idempotency_key=data.get("idempotency_key", "") or "",
            force=bool(data.get("force", False)),
            last_transition_at=parse_ts(data.get("last_transition_at")),
            started_at=parse_ts(data.get("started_at")),
            ended_at=parse_ts(data.get("ended_at")),
            error=data.get("error", "") or "",
        )


@dataclass
class EmergencyStatus:
    active: bool = False
    since: Optional[datetime] = None
    reason: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {"active": self.active, "since": format_ts(self.since), "reason": self.reason}


@dataclass
class FreezeStatus:
    active: bool = False
    until: Optional[datetime] = None
    reason: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {"active": self.active, "until": format_ts(self.until), "reason": self.reason}


@dataclass
class QueueControlStatus:
    paused: bool
    emergency_stop: bool
    running: int
    pending: int
    pending_high: int
    pending_normal: int
    pending_low: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "paused": self.paused,
            "emergency_stop": self.emergency_stop,
            "running": self.running,
            "pending": self.pending,
            "pending_high": self.pending_high,
            "pending_normal": self.pending_normal,
            "pending_low": self.pending_low,
        }


# -----------------------------------------------------------------------------
# Job Queue
# -----------------------------------------------------------------------------
class JobQueue:
    """
    Priority job queue with idempotency dedup and emergency stop.

    All mutations are serialized by a single lock. Subscribers are notified
    with a Job copy after the lock is released.
    """

    def __init__(
        self,
        state_file: Optional[Path] = None,
        max_terminal_jobs: int = DEFAULT_MAX_TERMINAL_JOBS,
    ):
        self._state_file = state_file
        self._max_terminal = max_terminal_jobs if max_terminal_jobs > 0 else DEFAULT_MAX_TERMINAL_JOBS
        self._lock = threading.Lock()
        self._jobs: Dict[str, Job] = {}
        self._pending: Dict[JobPriority, Deque[str]] = {
            p: deque() for p in JobPriority.dispatch_order()
        }
        self._by_key: Dict[str, str] = {}
        self._running = 0
        self._sequence = 0
        self._paused = False
        self._emergency = EmergencyStatus()
        self._freeze = FreezeStatus()
        self._subscribers: List[Callable[[Job], None]] = []
        if state_file is not None:
            self._load_state()

    # -------------------------------------------------------------------------
    # Subscriptions
    # -------------------------------------------------------------------------

    def subscribe(self, fn: Callable[[Job], None]) -> None:
        """Register an observer called after every job transition."""
        with self._lock:
            self._subscribers.append(fn)

    def _publish(self, job: Job) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for fn in subscribers:
            try:
                fn(job)
            except Exception as e:
                logger.error(f"Job subscriber failed for {job.job_id}: {e}")

    # -------------------------------------------------------------------------
    # Enqueue
    # -------------------------------------------------------------------------

    def enqueue(
        self,
        config_path: str,
        idempotency_key: str = "",
        force: bool = False,
        priority: Any = None,
    ) -> Job:
        """
        Create a Pending job at the tail of its priority band.

        Raises:
            InvalidConfigPath: config_path empty or not a string
            InvalidPriority: priority is not a string
            EmergencyStopActive: emergency stop engaged
            DuplicateInFlight: key held by a Pending/Running job
            ChangeFreezeActive: freeze window active and force=False
        """
        if not isinstance(config_path, str) or not config_path.strip():
            raise InvalidConfigPath("config_path is required")
        if "\x00" in config_path:
            raise InvalidConfigPath("config_path contains a NUL byte")
        band = JobPriority.normalize(priority)
        key = (idempotency_key or "").strip()
        cancelled: Optional[Job] = None
        duplicate: Optional[DuplicateInFlight] = None

        with self._lock:
            if self._emergency.active:
                raise EmergencyStopActive(self._emergency.reason)

            holder = self._live_holder_locked(key) if key else None
            if holder is not None:
                if force and holder.state == JobState.PENDING:
                    cancelled = self._cancel_locked(holder, "superseded by forced enqueue")
                    logger.info(
                        f"Forced enqueue for key {key!r} cancelled pending job {holder.job_id}"
                    )
                duplicate = DuplicateInFlight(holder.job_id, key)
            else:
                self._check_freeze_locked(force)
                job = self._create_locked(config_path.strip(), key, force, band)

        if duplicate is not None:
            if cancelled is not None:
                self._publish(cancelled)
            raise duplicate

        logger.info(
            f"Job {job.job_id} enqueued (priority: {band.value}, key: {key or '-'})"
        )
        self._publish(job)
        return job

    def _live_holder_locked(self, key: str) -> Optional[Job]:
        job_id = self._by_key.get(key)
        if job_id is None:
            return None
        job = self._jobs.get(job_id)
        if job is None or job.state not in JobState.live_states():
            self._by_key.pop(key, None)
            return None
        return job

    def _check_freeze_locked(self, force: bool) -> None:
        if force or not self._freeze.active:
            return
        now = utc_now()
        if self._freeze.until is not None and now >= self._freeze.until:
            self._freeze = FreezeStatus()
            return
        message = f"change freeze active until {format_ts(self._freeze.until)}"
        if self._freeze.reason:
            message = f"{message}: {self._freeze.reason}"
        raise ChangeFreezeActive(message)

    def _create_locked(self, config_path: str, key: str, force: bool, band: JobPriority) -> Job:
        self._sequence += 1
        now = utc_now()
        job = Job(
            job_id=f"job-{now.strftime('%Y%m%dT%H%M%S')}-{self._sequence}",
            config_path=config_path,
            priority=band,
            state=JobState.PENDING,
            created_at=now,
            sequence=self._sequence,
            idempotency_key=key,
            force=force,
            last_transition_at=now,
        )
        self._jobs[job.job_id] = job
        self._pending[band].append(job.job_id)
        if key:
            self._by_key[key] = job.job_id

        def undo() -> None:
            self._jobs.pop(job.job_id, None)
            self._pending[band].remove(job.job_id)
            if key and self._by_key.get(key) == job.job_id:
                del self._by_key[key]
            self._sequence -= 1

        self._persist_locked(undo)
        return replace(job)

    # -------------------------------------------------------------------------
    # Dispatch
    # -------------------------------------------------------------------------

    def claim_next(self, priority_bias: Any = None) -> Optional[Job]:
        """
        Claim the next Pending job, or None when idle, paused or stopped.

        priority_bias: band to serve first when it has pending work.
        """
        order = JobPriority.dispatch_order()
        if priority_bias is not None:
            preferred = JobPriority.normalize(priority_bias)
            order = [preferred] + [p for p in order if p != preferred]

        with self._lock:
            if self._paused or self._emergency.active:
                return None
            job = self._peek_locked(order)
            if job is None:
                return None
            claimed = self._start_locked(job, job.priority)

        logger.info(f"Job {claimed.job_id} claimed (priority: {claimed.priority.value})")
        self._publish(claimed)
        return claimed

    def _peek_locked(self, order: List[JobPriority]) -> Optional[Job]:
        for band in order:
            queue = self._pending[band]
            while queue:
                job = self._jobs.get(queue[0])
                if job is not None and job.state == JobState.PENDING:
                    return job
                queue.popleft()
        return None

    def claim(self, job_id: str) -> Job:
        """
        Claim a specific Pending job.

        Raises NotFound when the job does not exist or is no longer Pending
        (e.g. cancelled concurrently).
        """
        with self._lock:
            if self._paused or self._emergency.active:
                raise Conflict("queue is paused")
            job = self._jobs.get(job_id)
            if job is None or job.state != JobState.PENDING:
                raise NotFound(f"pending job {job_id} not found")
            claimed = self._start_locked(job, job.priority)
        self._publish(claimed)
        return claimed

    def _start_locked(self, job: Job, band: JobPriority) -> Job:
        previous = replace(job)
        self._pending[band].remove(job.job_id)
        now = utc_now()
        job.state = JobState.RUNNING
        job.started_at = now
        job.last_transition_at = now
        self._running += 1

        def undo() -> None:
            self._jobs[job.job_id] = previous
            self._insert_pending_locked(previous)
            self._running -= 1

        self._persist_locked(undo)
        return replace(job)

    def _insert_pending_locked(self, job: Job) -> None:
        band = self._pending[job.priority]
        band.append(job.job_id)
        ordered = sorted(band, key=lambda jid: self._jobs[jid].sort_key())
        band.clear()
        band.extend(ordered)

    # -------------------------------------------------------------------------
    # Completion / Cancellation
    # -------------------------------------------------------------------------

    def complete(self, job_id: str, success: bool, error: str = "") -> Job:
        """Finish a Running job as SUCCEEDED or FAILED."""
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise NotFound(f"job {job_id} not found")
            target = JobState.SUCCEEDED if success else JobState.FAILED
            self._check_transition(job, target)
            previous = replace(job)
            now = utc_now()
            job.state = target
            job.ended_at = now
            job.last_transition_at = now
            job.error = "" if success else (error or "converge failed")
            self._running -= 1
            self._release_key_locked(job)

            def undo() -> None:
                self._jobs[job_id] = previous
                self._running += 1
                if previous.idempotency_key:
                    self._by_key[previous.idempotency_key] = job_id

            self._persist_locked(undo)
            done = replace(job)

        logger.info(f"Job {job_id} finished: {done.state.value}")
        self._publish(done)
        return done

    def cancel(self, job_id: str, reason: str = "cancelled by operator") -> Job:
        """Cancel a Pending job. Running and finished jobs raise Conflict."""
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise NotFound(f"job {job_id} not found")
            self._check_transition(job, JobState.CANCELLED)
            done = self._cancel_locked(job, reason)
        logger.info(f"Job {job_id} cancelled: {reason}")
        self._publish(done)
        return done

    def _cancel_locked(self, job: Job, reason: str) -> Job:
        previous = replace(job)
        try:
            self._pending[job.priority].remove(job.job_id)
        except ValueError:
            pass
        now = utc_now()
        job.state = JobState.CANCELLED
        job.ended_at = now
        job.last_transition_at = now
        job.error = reason
        self._release_key_locked(job)

        def undo() -> None:
            self._jobs[job.job_id] = previous
            self._insert_pending_locked(previous)
            if previous.idempotency_key:
                self._by_key[previous.idempotency_key] = previous.job_id

        self._persist_locked(undo)
        return replace(job)

    def _release_key_locked(self, job: Job) -> None:
        if job.idempotency_key and self._by_key.get(job.idempotency_key) == job.job_id:
            del self._by_key[job.idempotency_key]

    @staticmethod
    def _check_transition(job: Job, target: JobState) -> None:
        if target not in ALLOWED_TRANSITIONS.get(job.state, set()):
            raise Conflict(
                f"job {job.job_id} cannot transition from {job.state.value} to {target.value}",
                {"job_id": job.job_id, "status": job.state.value},
            )

    def recover_stuck_jobs(self, max_age_seconds: float = DEFAULT_STUCK_JOB_SECONDS) -> List[Job]:
        """Fail Running jobs whose run lease is older than max_age_seconds."""
        if max_age_seconds <= 0:
            max_age_seconds = DEFAULT_STUCK_JOB_SECONDS
        cutoff = utc_now() - timedelta(seconds=max_age_seconds)
        recovered: List[Job] = []
        with self._lock:
            for job in self._jobs.values():
                if job.state != JobState.RUNNING or job.started_at is None:
                    continue
                if job.started_at > cutoff:
                    continue
                now = utc_now()
                job.state = JobState.FAILED
                job.error = "stale run lease recovered by control plane"
                job.ended_at = now
                job.last_transition_at = now
                self._running -= 1
                self._release_key_locked(job)
                recovered.append(replace(job))
            if recovered:
                self._persist_locked(None)
        for job in recovered:
            logger.warning(f"Recovered stuck job {job.job_id}")
            self._publish(job)
        return recovered

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get(self, job_id: str) -> Job:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise NotFound(f"job {job_id} not found")
            return replace(job)

    def list_jobs(self, state: Optional[JobState] = None, limit: int = 100) -> List[Job]:
        """Jobs sorted newest first."""
        with self._lock:
            jobs = [replace(j) for j in self._jobs.values() if state is None or j.state == state]
        jobs.sort(key=lambda j: (j.created_at, j.sequence), reverse=True)
        if limit > 0:
            jobs = jobs[:limit]
        return jobs

    def control_status(self) -> QueueControlStatus:
        with self._lock:
            high = len(self._pending[JobPriority.HIGH])
            normal = len(self._pending[JobPriority.NORMAL])
            low = len(self._pending[JobPriority.LOW])
            return QueueControlStatus(
                paused=self._paused or self._emergency.active,
                emergency_stop=self._emergency.active,
                running=self._running,
                pending=high + normal + low,
                pending_high=high,
                pending_normal=normal,
                pending_low=low,
            )

    # -------------------------------------------------------------------------
    # Operator controls
    # -------------------------------------------------------------------------

    def pause(self) -> QueueControlStatus:
        with self._lock:
            self._paused = True
            self._persist_locked(None)
        logger.info("Queue paused")
        return self.control_status()

    def resume(self) -> QueueControlStatus:
        with self._lock:
            self._paused = False
            self._persist_locked(None)
        logger.info("Queue resumed")
        return self.control_status()

    def safe_drain(self, timeout_seconds: float = DEFAULT_DRAIN_TIMEOUT_SECONDS) -> QueueControlStatus:
        """
        Pause dispatch and wait for Running jobs to finish.

        The queue stays paused afterwards. A non-positive timeout waits
        indefinitely.

        Raises:
            DrainTimeout: jobs still Running when the timeout elapses
        """
        self.pause()
        deadline = time.monotonic() + timeout_seconds
        while True:
            status = self.control_status()
            if status.running == 0:
                logger.info("Queue drained")
                return status
            if timeout_seconds > 0 and time.monotonic() >= deadline:
                logger.warning(f"Safe drain timed out with {status.running} jobs running")
                raise DrainTimeout(
                    "safe-drain timeout waiting for running jobs to complete",
                    {"status": status.to_dict()},
                )
            time.sleep(DRAIN_POLL_SECONDS)

    def is_paused(self) -> bool:
        with self._lock:
            return self._paused or self._emergency.active

    def emergency_stop(self, active: bool, reason: str = "") -> EmergencyStatus:
        """Engage or release the emergency stop."""
        with self._lock:
            if active:
                since = self._emergency.since if self._emergency.active else utc_now()
                self._emergency = EmergencyStatus(active=True, since=since, reason=reason.strip())
            else:
                self._emergency = EmergencyStatus()
            self._persist_locked(None)
            status = replace(self._emergency)
        if active:
            logger.warning(f"Emergency stop engaged: {reason or 'no reason given'}")
        else:
            logger.info("Emergency stop released")
        return status

    def emergency_status(self) -> EmergencyStatus:
        with self._lock:
            return replace(self._emergency)

    def set_freeze_until(self, until: Optional[datetime], reason: str = "") -> FreezeStatus:
        """Freeze non-forced enqueues until the given time. Past or None clears."""
        with self._lock:
            if until is None or to_utc(until) <= utc_now():
                self._freeze = FreezeStatus()
            else:
                self._freeze = FreezeStatus(active=True, until=to_utc(until), reason=reason.strip())
            self._persist_locked(None)
            status = replace(self._freeze)
        logger.info(f"Change freeze updated: active={status.active} until={format_ts(status.until)}")
        return status

    def freeze_status(self) -> FreezeStatus:
        with self._lock:
            if self._freeze.active and self._freeze.until is not None and utc_now() >= self._freeze.until:
                self._freeze = FreezeStatus()
            return replace(self._freeze)

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------

    def _persist_locked(self, undo: Optional[Callable[[], None]]) -> None:
        """Write state with retries; roll back via undo when all attempts fail."""
        pruned = self._prune_terminal_locked()
        if self._state_file is None:
            return
        state = {
            "version": STATE_VERSION,
            "sequence": self._sequence,
            "paused": self._paused,
            "emergency": self._emergency.to_dict(),
            "freeze": self._freeze.to_dict(),
            "jobs": {job_id: job.to_dict() for job_id, job in self._jobs.items()},
            "updated_at": format_ts(utc_now()),
        }
        last_error: Optional[Exception] = None
        for attempt in range(1, STATE_WRITE_ATTEMPTS + 1):
            try:
                self._write_state(state)
                return
            except OSError as e:
                last_error = e
                logger.warning(f"Queue state write attempt {attempt} failed: {e}")
                time.sleep(STATE_WRITE_BACKOFF_SECONDS * attempt)
        self._jobs.update(pruned)
        if undo is not None:
            undo()
        logger.error(f"Queue state write failed after {STATE_WRITE_ATTEMPTS} attempts: {last_error}")
        raise Internal(f"failed to persist queue state: {last_error}")

    def _prune_terminal_locked(self) -> Dict[str, Job]:
        """Drop the oldest finished jobs beyond the retention bound."""
        finished = [j for j in self._jobs.values() if j.state in JobState.terminal_states()]
        excess = len(finished) - self._max_terminal
        if excess <= 0:
            return {}
        finished.sort(key=lambda j: (j.ended_at or j.last_transition_at or j.created_at, j.sequence))
        pruned = {job.job_id: self._jobs.pop(job.job_id) for job in finished[:excess]}
        logger.info(f"Pruned {len(pruned)} finished jobs beyond retention of {self._max_terminal}")
        return pruned

    def _write_state(self, state: Dict[str, Any]) -> None:
        self._state_file.parent.mkdir(parents=True, exist_ok=True)
        temp_file = self._state_file.with_suffix(".tmp")
        with open(temp_file, "w") as f:
            json.dump(state, f, indent=2)
            f.flush()
            os.fsync(f.fileno())
        os.replace(temp_file, self._state_file)

    def _load_state(self) -> None:
        """Rebuild queue from disk. Jobs found Running were interrupted."""
        if not self._state_file.exists():
            return
        try:
            state = json.loads(self._state_file.read_text())
        except (json.JSONDecodeError, OSError) as e:
            logger.error(f"Failed to load queue state file: {e}")
            raise Internal(f"queue state unreadable: {e}")

        self._sequence = int(state.get("sequence", 0))
        self._paused = bool(state.get("paused", False))
        emergency = state.get("emergency") or {}
        self._emergency = EmergencyStatus(
            active=bool(emergency.get("active", False)),
            since=parse_ts(emergency.get("since")),
            reason=emergency.get("reason", "") or "",
        )
        freeze = state.get("freeze") or {}
        self._freeze = FreezeStatus(
            active=bool(freeze.get("active", False)),
            until=parse_ts(freeze.get("until")),
            reason=freeze.get("reason", "") or "",
        )

        interrupted = 0
        for data in (state.get("jobs") or {}).values():
            try:
                job = Job.from_dict(data)
            except (KeyError, ValueError, TypeError) as e:
                logger.warning(f"Skipping malformed job record: {e}")
                continue
            if job.state == JobState.RUNNING:
                now = utc_now()
                job.state = JobState.FAILED
                job.error = "interrupted by control-plane restart"
                job.ended_at = now
                job.last_transition_at = now
                interrupted += 1
            self._jobs[job.job_id] = job
            self._sequence = max(self._sequence, job.sequence)

        pending = sorted(
            (j for j in self._jobs.values() if j.state == JobState.PENDING),
            key=lambda j: j.sort_key(),
        )
        for job in pending:
            self._pending[job.priority].append(job.job_id)
            if job.idempotency_key:
                self._by_key[job.idempotency_key] = job.job_id

        if interrupted:
            logger.warning(f"Marked {interrupted} interrupted jobs as failed")
        if interrupted or self._prune_terminal_locked():
            self._persist_locked(None)
        logger.info(f"Loaded {len(self._jobs)} jobs ({len(pending)} pending)")
