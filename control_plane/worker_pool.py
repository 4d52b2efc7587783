"""
Converge Worker Pool

Worker threads claim jobs from the JobQueue, execute them through a
ConvergeExecutor, append a finalized RunRecord and complete the job.

Features:
- Fixed number of daemon worker threads
- Idle while the queue is paused or under emergency stop
- Executor failures become FAILED runs, never crash a worker
- job.completed / job.failed events for every finished job
"""

import logging
import threading
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, List

import yaml

from .errors import ControlPlaneError
from .events import EventSink
from .job_queue import Job, JobQueue
from .run_store import ResourceResult, RunRecord, RunStatus, RunStore
from .timeutil import utc_now

logger = logging.getLogger("worker_pool")

DEFAULT_WORKERS = 2
DEFAULT_POLL_INTERVAL_SECONDS = 0.5


@dataclass
class ExecutionOutcome:
    success: bool
    results: List[ResourceResult] = field(default_factory=list)
    error: str = ""


class ConvergeExecutor:
    """Executes one converge job. Execution semantics live behind this interface."""

    def execute(self, job: Job) -> ExecutionOutcome:
        raise NotImplementedError


class ConfigPlanExecutor(ConvergeExecutor):
    """
    Loads the job's YAML configuration and reports every declared resource
    as an unchanged, skipped result.

    Expected layout:
        resources:
          - host: web-1
            type: package
            id: nginx
    """

    def execute(self, job: Job) -> ExecutionOutcome:
        path = Path(job.config_path)
        if not path.is_file():
            return ExecutionOutcome(success=False, error=f"config not found: {job.config_path}")
        try:
            with open(path, "r") as f:
                config = yaml.safe_load(f) or {}
        except (yaml.YAMLError, OSError) as e:
            return ExecutionOutcome(success=False, error=f"config unreadable: {e}")
        if not isinstance(config, dict):
            return ExecutionOutcome(success=False, error="config must be a mapping")

        results = []
        for item in config.get("resources") or []:
            if not isinstance(item, dict):
                continue
            results.append(ResourceResult(
                host=str(item.get("host", "localhost")),
                type=str(item.get("type", "")),
                resource_id=str(item.get("id", item.get("name", ""))),
                changed=False,
                skipped=True,
                message="planned only",
            ))
        return ExecutionOutcome(success=True, results=results)


class WorkerPool:
    """Thread pool consuming the job queue."""

    def __init__(
        self,
        queue: JobQueue,
        runs: RunStore,
        events: EventSink,
        executor: Optional[ConvergeExecutor] = None,
        workers: int = DEFAULT_WORKERS,
        poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
    ):
        self._queue = queue
        self._runs = runs
        self._events = events
        self._executor = executor or ConfigPlanExecutor()
        self._worker_count = workers if workers > 0 else DEFAULT_WORKERS
        self._poll_interval = poll_interval_seconds if poll_interval_seconds > 0 else DEFAULT_POLL_INTERVAL_SECONDS
        self._stop = threading.Event()
        self._threads: List[threading.Thread] = []

    @property
    def running(self) -> bool:
        return any(t.is_alive() for t in self._threads)

    def start(self) -> None:
        if self.running:
            logger.warning("Worker pool already running")
            return
        self._stop.clear()
        self._threads = [
            threading.Thread(target=self._loop, args=(i,), name=f"converge-worker-{i}", daemon=True)
            for i in range(self._worker_count)
        ]
        for thread in self._threads:
            thread.start()
        logger.info(f"Worker pool started with {self._worker_count} workers")

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        for thread in self._threads:
            thread.join(timeout=timeout)
        self._threads = []
        logger.info("Worker pool stopped")

    def _loop(self, worker_id: int) -> None:
        while not self._stop.is_set():
            try:
                job = self.run_once(worker_id)
            except Exception as e:
                logger.error(f"Worker {worker_id} loop error: {e}")
                job = None
            if job is None:
                self._stop.wait(self._poll_interval)

    def run_once(self, worker_id: int = 0) -> Optional[Job]:
        """Claim and process at most one job. Returns the finished job."""
        job = self._queue.claim_next()
        if job is None:
            return None
        logger.info(f"Worker {worker_id}: executing job {job.job_id}")
        return self._process(job)

    def _process(self, job: Job) -> Job:
        started = utc_now()
        try:
            outcome = self._executor.execute(job)
        except Exception as e:
            logger.error(f"Executor failed for job {job.job_id}: {e}")
            outcome = ExecutionOutcome(success=False, error=str(e) or type(e).__name__)

        run = RunRecord(
            run_id=f"run-{uuid.uuid4().hex[:12]}",
            status=RunStatus.SUCCEEDED if outcome.success else RunStatus.FAILED,
            started_at=started,
            ended_at=utc_now(),
            config_path=job.config_path,
            job_id=job.job_id,
            results=tuple(outcome.results),
        )
        error = outcome.error
        try:
            self._runs.append(run)
        except ControlPlaneError as e:
            logger.error(f"Failed to record run for job {job.job_id}: {e.message}")
            outcome.success = False
            error = f"run not recorded: {e.message}"

        finished = self._queue.complete(job.job_id, outcome.success, error)
        event_type = "job.completed" if outcome.success else "job.failed"
        self._events.emit(event_type, f"job {finished.state.value}", {
            "job_id": job.job_id,
            "run_id": run.run_id,
            "config_path": job.config_path,
            "status": finished.state.value,
            "error": finished.error,
        })
        return finished
