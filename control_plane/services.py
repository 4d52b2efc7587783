"""
Control plane component wiring.

Builds every store from ControlPlaneSettings and hands them out as one
ControlPlane bundle. Handlers receive the bundle explicitly through the
application state.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Dict, Any

from .backlog_slo import BacklogSampler, BacklogSLOMonitor
from .backup import BackupManager
from .config import ControlPlaneSettings
from .context import RequestContext
from .drift_policy import DriftPolicyStore
from .events import EventLog
from .job_queue import Job, JobQueue
from .remediation_planner import RemediationPlanner
from .run_store import RunStore
from .trigger_router import TriggerRouter
from .worker_pool import ConvergeExecutor, WorkerPool

logger = logging.getLogger("control_plane")


@dataclass
class ControlPlane:
    settings: ControlPlaneSettings
    events: EventLog
    queue: JobQueue
    backlog: BacklogSLOMonitor
    sampler: BacklogSampler
    router: TriggerRouter
    policies: DriftPolicyStore
    runs: RunStore
    planner: RemediationPlanner
    backups: BackupManager
    workers: WorkerPool

    def request_context(self) -> RequestContext:
        return RequestContext(self.settings.request_timeout_seconds)

    def start(self) -> None:
        if self.settings.start_backlog_sampler:
            self.sampler.start()
        if self.settings.start_workers:
            self.workers.start()
        logger.info("Control plane started")

    def stop(self) -> None:
        self.workers.stop()
        self.sampler.stop()
        logger.info("Control plane stopped")

    def status(self) -> Dict[str, Any]:
        latest = self.backlog.latest()
        return {
            "queue": self.queue.control_status().to_dict(),
            "emergency_stop": self.queue.emergency_status().to_dict(),
            "freeze": self.queue.freeze_status().to_dict(),
            "backlog_state": latest.state.value if latest else None,
            "workers_running": self.workers.running,
            "sampler_running": self.sampler.running,
            "runs": self.runs.count(),
        }


def _emit_job_event(events: EventLog, job: Job) -> None:
    events.emit("job.transition", f"job {job.job_id} {job.state.value}", {
        "job_id": job.job_id,
        "status": job.state.value,
        "priority": job.priority.value,
        "config_path": job.config_path,
    })


def build_control_plane(
    settings: ControlPlaneSettings,
    executor: Optional[ConvergeExecutor] = None,
) -> ControlPlane:
    """Construct all components. Nothing is started here."""
    events = EventLog(limit=settings.event_limit, mirror_file=settings.events_file)
    queue = JobQueue(
        state_file=settings.queue_state_file,
        max_terminal_jobs=settings.max_terminal_jobs,
    )
    queue.subscribe(lambda job: _emit_job_event(events, job))

    backlog = BacklogSLOMonitor(queue, settings.backlog_threshold, settings.backlog_history_limit)
    backlog.attach()
    sampler = BacklogSampler(backlog, settings.backlog_sample_interval_seconds)

    router = TriggerRouter(
        queue,
        events,
        base_dir=settings.base_dir,
        triggers_file=settings.triggers_file,
        dedup_hours=settings.trigger_dedup_hours,
        max_triggers=settings.max_triggers,
    )
    policies = DriftPolicyStore(settings.drift_dir)
    runs = RunStore(settings.runs_dir, settings.run_segment_max_bytes)
    planner = RemediationPlanner(runs, policies, queue, settings.base_dir, events)
    backups = BackupManager(settings.objects_dir, runs, events)
    workers = WorkerPool(
        queue,
        runs,
        events,
        executor=executor,
        workers=settings.workers,
        poll_interval_seconds=settings.worker_poll_interval_seconds,
    )
    return ControlPlane(
        settings=settings,
        events=events,
        queue=queue,
        backlog=backlog,
        sampler=sampler,
        router=router,
        policies=policies,
        runs=runs,
        planner=planner,
        backups=backups,
        workers=workers,
    )
