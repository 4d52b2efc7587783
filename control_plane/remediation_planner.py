"""
Drift Remediation Planner

Reads recent runs and drift policies, counts candidate changes, gates by
risk and optionally enqueues a remediation converge.

Algorithm:
1. since = now - window (window clamped to [1h, 30d])
2. For each run in the window: count failures; for every changed result,
   suppression first, then allowlist, else add to a dedup set keyed by
   lower(host)|lower(type)|lower(id)
3. risk = high when candidates > max_changes or any failed run
4. no candidates -> noop; safe_mode with block reasons -> blocked;
   otherwise enqueue with key drift-remediate:<ns-epoch>
"""

import logging
import os
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Optional, Dict, Any, List

from .context import RequestContext, ensure_context
from .drift_policy import DriftPolicyStore
from .errors import ControlPlaneError, DeadlineExceeded, MissingConfigPath
from .events import EventSink
from .job_queue import JobPriority, JobQueue
from .run_store import RunStatus, RunStore
from .timeutil import utc_now, format_ts

logger = logging.getLogger("remediation_planner")

# -----------------------------------------------------------------------------
# Configuration
# -----------------------------------------------------------------------------
DEFAULT_WINDOW_HOURS = 24
MIN_WINDOW_HOURS = 1
MAX_WINDOW_HOURS = 30 * 24
DEFAULT_MAX_CHANGES = 20
SCAN_MAX_RUNS = 5000
REMEDIATION_KEY_PREFIX = "drift-remediate:"

REASON_TOO_MANY_CHANGES = "candidate change count exceeds safe threshold"
REASON_FAILED_RUNS = "recent failed runs increase remediation risk"


class RiskLevel(str, Enum):
    LOW = "low"
    HIGH = "high"


class RemediationStatus(str, Enum):
    NOOP = "noop"
    PLANNED = "planned"
    BLOCKED = "blocked"
    ENQUEUED = "enqueued"


def clamp_window_hours(hours: int) -> int:
    return max(MIN_WINDOW_HOURS, min(MAX_WINDOW_HOURS, int(hours)))


@dataclass
class RemediationReport:
    window_hours: int
    since: datetime
    config_path: str
    safe_mode: bool
    max_changes: int
    candidate_changes: int = 0
    suppressed_changes: int = 0
    allowlisted_changes: int = 0
    failed_runs: int = 0
    risk_level: RiskLevel = RiskLevel.LOW
    block_reasons: List[str] = field(default_factory=list)
    status: RemediationStatus = RemediationStatus.NOOP
    job_id: str = ""
    enqueue_error: str = ""
    error_kind: str = ""
    truncated: bool = False

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "window_hours": self.window_hours,
            "since": format_ts(self.since),
            "candidate_changes": self.candidate_changes,
            "suppressed_changes": self.suppressed_changes,
            "allowlisted_changes": self.allowlisted_changes,
            "failed_runs": self.failed_runs,
            "safe_mode": self.safe_mode,
            "max_changes": self.max_changes,
            "risk_level": self.risk_level.value,
            "block_reasons": list(self.block_reasons),
            "status": self.status.value,
            "config_path": self.config_path,
            "truncated": self.truncated,
        }
        if self.job_id:
            data["job_id"] = self.job_id
        if self.enqueue_error:
            data["enqueue_error"] = self.enqueue_error
            data["error_kind"] = self.error_kind
        return data


class RemediationPlanner:
    """Risk-gated drift remediation over the run store."""

    def __init__(
        self,
        runs: RunStore,
        policies: DriftPolicyStore,
        queue: JobQueue,
        base_dir: Path,
        events: Optional[EventSink] = None,
    ):
        self._runs = runs
        self._policies = policies
        self._queue = queue
        self._base_dir = Path(base_dir)
        self._events = events or EventSink()

    def _resolve(self, config_path: str) -> str:
        path = (config_path or "").strip()
        if not path:
            raise MissingConfigPath()
        if os.path.isabs(path):
            return path
        return os.path.join(str(self._base_dir), path)

    def propose(
        self,
        config_path: str,
        hours: int = DEFAULT_WINDOW_HOURS,
        priority: Any = None,
        max_changes: int = DEFAULT_MAX_CHANGES,
        safe_mode: bool = False,
        force: bool = False,
        auto_enqueue: bool = True,
        ctx: Optional[RequestContext] = None,
    ) -> RemediationReport:
        """
        Evaluate drift in the window and optionally enqueue a remediation.

        Raises DeadlineExceeded when the deadline passes before any run was
        examined; a partial scan yields a report with truncated=True.
        """
        ctx = ensure_context(ctx)
        ctx.check()
        resolved = self._resolve(config_path)
        band = JobPriority.normalize(priority)
        hours = clamp_window_hours(hours)
        if max_changes <= 0:
            max_changes = DEFAULT_MAX_CHANGES
        since = utc_now() - timedelta(hours=hours)

        report = RemediationReport(
            window_hours=hours,
            since=since,
            config_path=resolved,
            safe_mode=safe_mode,
            max_changes=max_changes,
        )

        window = self._runs.scan_window(since, ctx, max_runs=SCAN_MAX_RUNS)
        if window.truncated and window.examined == 0:
            raise DeadlineExceeded("deadline reached before any run was examined")
        report.truncated = window.truncated

        candidates = set()
        for run in window.runs:
            at = run.reference_time
            if run.status == RunStatus.FAILED:
                report.failed_runs += 1
            for result in run.results:
                if not result.changed:
                    continue
                if self._policies.is_suppressed(result.host, result.type, result.resource_id, at):
                    report.suppressed_changes += 1
                    continue
                if self._policies.is_allowlisted(result.host, result.type, result.resource_id, at):
                    report.allowlisted_changes += 1
                    continue
                candidates.add("|".join(
                    v.strip().lower() for v in (result.host, result.type, result.resource_id)
                ))
        report.candidate_changes = len(candidates)

        if report.candidate_changes > max_changes:
            report.risk_level = RiskLevel.HIGH
            report.block_reasons.append(REASON_TOO_MANY_CHANGES)
        if report.failed_runs > 0:
            report.risk_level = RiskLevel.HIGH
            report.block_reasons.append(REASON_FAILED_RUNS)

        if report.candidate_changes == 0:
            report.status = RemediationStatus.NOOP
        elif safe_mode and report.block_reasons:
            report.status = RemediationStatus.BLOCKED
        elif not auto_enqueue:
            report.status = RemediationStatus.PLANNED
        else:
            self._enqueue(report, band, force)

        logger.info(
            f"Drift remediation {report.status.value}: candidates={report.candidate_changes} "
            f"suppressed={report.suppressed_changes} failed_runs={report.failed_runs}"
        )
        self._events.emit("drift.remediation", f"drift remediation {report.status.value}", {
            "status": report.status.value,
            "candidate_changes": report.candidate_changes,
            "risk_level": report.risk_level.value,
            "job_id": report.job_id,
            "enqueue_error": report.enqueue_error,
        })
        return report

    def _enqueue(self, report: RemediationReport, band: JobPriority, force: bool) -> None:
        key = f"{REMEDIATION_KEY_PREFIX}{time.time_ns()}"
        try:
            job = self._queue.enqueue(report.config_path, idempotency_key=key, force=force, priority=band)
        except ControlPlaneError as e:
            report.status = RemediationStatus.BLOCKED
            report.enqueue_error = e.message
            report.error_kind = e.kind.value
            return
        report.status = RemediationStatus.ENQUEUED
        report.job_id = job.job_id
