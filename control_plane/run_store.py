"""
Run Aggregation Store

Append-only record of executed converge runs, read by the remediation
planner, drift history and backup views.

CONSTRAINTS:
- APPEND-ONLY: each NDJSON line is one complete, finalized RunRecord
- DURABLE: append returns only after flush + fsync
- ATOMIC RESTORE: replace_runs swaps the whole log or leaves it intact
- Reads never truncate; callers bound results with max_count

Layout (runs_dir):
    runs.jsonl                  active segment
    runs-<stamp>.jsonl          rotated segments (size based)

After a whole-log replacement the segments live in a generation directory
named by the CURRENT pointer file; only that generation is ever read:
    CURRENT                     "gen-<stamp>"
    gen-<stamp>/runs.jsonl       active segment
    gen-<stamp>/runs-<stamp>.jsonl
"""

import fnmatch
import json
import logging
import os
import shutil
import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Optional, Dict, Any, List, Iterable

from .context import RequestContext, ensure_context
from .errors import Conflict, Internal, InvalidInput, NotFound
from .timeutil import utc_now, format_ts, parse_ts, to_utc

logger = logging.getLogger("run_store")

ACTIVE_SEGMENT = "runs.jsonl"
SEGMENT_GLOB = "runs-*.jsonl"
CURRENT_FILE = "CURRENT"
GENERATION_PREFIX = "gen-"
DEFAULT_MAX_SEGMENT_BYTES = 64 * 1024 * 1024
DEFAULT_SCAN_MAX_RUNS = 5000


class RunStatus(str, Enum):
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(frozen=True)
class ResourceResult:
    """Outcome of converging one resource on one host."""
    host: str
    type: str
    resource_id: str
    changed: bool = False
    skipped: bool = False
    message: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "host": self.host,
            "type": self.type,
            "resource_id": self.resource_id,
            "changed": self.changed,
            "skipped": self.skipped,
            "message": self.message,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ResourceResult":
        return cls(
            host=str(data.get("host", "")),
            type=str(data.get("type", "")),
            resource_id=str(data.get("resource_id", "")),
            changed=bool(data.get("changed", False)),
            skipped=bool(data.get("skipped", False)),
            message=str(data.get("message", "")),
        )


@dataclass(frozen=True)
class RunRecord:
    run_id: str
    status: RunStatus
    started_at: datetime
    ended_at: Optional[datetime] = None
    config_path: str = ""
    job_id: str = ""
    results: tuple = field(default_factory=tuple)

    def __post_init__(self):
        if not self.run_id.strip():
            raise InvalidInput("run id is required")
        if self.ended_at is not None and self.ended_at < self.started_at:
            raise InvalidInput(f"run {self.run_id}: ended_at precedes started_at")

    @property
    def reference_time(self) -> datetime:
        return self.started_at or self.ended_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.run_id,
            "status": self.status.value,
            "started_at": format_ts(self.started_at),
            "ended_at": format_ts(self.ended_at),
            "config_path": self.config_path,
            "job_id": self.job_id,
            "results": [r.to_dict() for r in self.results],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RunRecord":
        started = parse_ts(data.get("started_at")) or parse_ts(data.get("ended_at"))
        if started is None:
            raise InvalidInput("run started_at is required")
        return cls(
            run_id=str(data.get("id", "")),
            status=RunStatus(data.get("status", RunStatus.SUCCEEDED.value)),
            started_at=started,
            ended_at=parse_ts(data.get("ended_at")),
            config_path=data.get("config_path", "") or "",
            job_id=data.get("job_id", "") or "",
            results=tuple(ResourceResult.from_dict(r) for r in data.get("results") or []),
        )


@dataclass
class RunWindow:
    """Runs whose reference time falls inside a window, newest first."""
    runs: List[RunRecord]
    truncated: bool = False
    examined: int = 0


class RunStore:
    """NDJSON-backed run log with an in-memory index."""

    def __init__(self, runs_dir: Optional[Path] = None, max_segment_bytes: int = DEFAULT_MAX_SEGMENT_BYTES):
        self._dir = runs_dir
        self._max_segment_bytes = max_segment_bytes if max_segment_bytes > 0 else DEFAULT_MAX_SEGMENT_BYTES
        self._lock = threading.Lock()
        self._runs: Dict[str, RunRecord] = {}
        self._generation: Optional[str] = None
        if runs_dir is not None:
            self._load()

    # -------------------------------------------------------------------------
    # Write
    # -------------------------------------------------------------------------

    def append(self, run: RunRecord, ctx: Optional[RequestContext] = None) -> RunRecord:
        """Durably append a run. Duplicate ids raise Conflict."""
        ensure_context(ctx).check()
        line = json.dumps(run.to_dict()) + "\n"
        with self._lock:
            if run.run_id in self._runs:
                raise Conflict(f"run {run.run_id} already exists", {"run_id": run.run_id})
            self._write_line_locked(line)
            self._runs[run.run_id] = run
        logger.info(f"Run {run.run_id} recorded ({run.status.value}, {len(run.results)} results)")
        return run

    def replace_runs(self, runs: Iterable[RunRecord]) -> int:
        """Atomically replace the entire run log."""
        items = list(runs)
        by_id: Dict[str, RunRecord] = {}
        for run in items:
            if run.run_id in by_id:
                raise InvalidInput(f"duplicate run id in replacement set: {run.run_id}")
            by_id[run.run_id] = run

        with self._lock:
            if self._dir is not None:
                self._rewrite_locked(items)
            self._runs = by_id
        logger.info(f"Run log replaced with {len(items)} runs")
        return len(items)

    # -------------------------------------------------------------------------
    # Read
    # -------------------------------------------------------------------------

    def get_run(self, run_id: str) -> RunRecord:
        with self._lock:
            run = self._runs.get(run_id)
        if run is None:
            raise NotFound(f"run {run_id} not found")
        return run

    def list_runs(self, max_count: int = 100) -> List[RunRecord]:
        """Up to max_count newest runs: started_at descending, ties by id."""
        with self._lock:
            runs = list(self._runs.values())
        runs.sort(key=lambda r: r.run_id)
        runs.sort(key=lambda r: r.started_at, reverse=True)
        if max_count > 0:
            runs = runs[:max_count]
        return runs

    def count(self) -> int:
        with self._lock:
            return len(self._runs)

    def scan_window(
        self,
        since: datetime,
        ctx: Optional[RequestContext] = None,
        max_runs: int = DEFAULT_SCAN_MAX_RUNS,
    ) -> RunWindow:
        """
        Runs whose reference time is at or after since.

        Stops early with truncated=True when the context deadline passes.
        Cancellation raises.
        """
        ctx = ensure_context(ctx)
        ctx.check()
        since = to_utc(since)
        window = RunWindow(runs=[])
        for run in self.list_runs(max_runs):
            if ctx.cancelled:
                ctx.check()
            if ctx.expired():
                window.truncated = True
                logger.warning(f"Run window scan truncated after {window.examined} runs")
                break
            window.examined += 1
            if run.reference_time >= since:
                window.runs.append(run)
        return window

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------

    def _segment_dir(self) -> Path:
        if self._generation is None:
            return self._dir
        return self._dir / self._generation

    def _active_path(self) -> Path:
        return self._segment_dir() / ACTIVE_SEGMENT

    def _write_line_locked(self, line: str) -> None:
        if self._dir is None:
            return
        try:
            self._segment_dir().mkdir(parents=True, exist_ok=True)
            active = self._active_path()
            if active.exists() and active.stat().st_size + len(line) > self._max_segment_bytes:
                self._rotate_locked(active)
            with open(active, "a") as f:
                f.write(line)
                f.flush()
                os.fsync(f.fileno())
        except OSError as e:
            logger.error(f"Failed to append run: {e}")
            raise Internal(f"failed to append run: {e}")

    def _rotate_locked(self, active: Path) -> None:
        stamp = utc_now().strftime("%Y%m%dT%H%M%S%f")
        rotated = active.parent / f"runs-{stamp}.jsonl"
        os.replace(active, rotated)
        logger.info(f"Rotated run segment to {rotated.name}")

    def _rewrite_locked(self, runs: List[RunRecord]) -> None:
        """
        Write the replacement log into a fresh generation, then commit it
        by swapping the CURRENT pointer. Until the swap the old log stays
        authoritative; after it, leftovers of the old log are never read.
        """
        generation = f"{GENERATION_PREFIX}{utc_now().strftime('%Y%m%dT%H%M%S%f')}"
        gen_dir = self._dir / generation
        pointer = self._dir / CURRENT_FILE
        pointer_temp = self._dir / f"{CURRENT_FILE}.tmp"
        try:
            gen_dir.mkdir(parents=True)
        except OSError as e:
            logger.error(f"Failed to create run log generation {generation}: {e}")
            raise Internal(f"failed to replace run log: {e}")
        try:
            with open(gen_dir / ACTIVE_SEGMENT, "w") as f:
                for run in runs:
                    f.write(json.dumps(run.to_dict()) + "\n")
                f.flush()
                os.fsync(f.fileno())
            with open(pointer_temp, "w") as f:
                f.write(generation + "\n")
                f.flush()
                os.fsync(f.fileno())
            os.replace(pointer_temp, pointer)
        except OSError as e:
            logger.error(f"Failed to replace run log: {e}")
            shutil.rmtree(gen_dir, ignore_errors=True)
            try:
                pointer_temp.unlink()
            except OSError:
                pass
            raise Internal(f"failed to replace run log: {e}")

        self._generation = generation
        logger.info(f"Run log generation {generation} committed")
        self._collect_garbage_locked()

    def _collect_garbage_locked(self) -> None:
        """Best-effort removal of segments outside the current generation."""
        if self._generation is None or not self._dir.exists():
            return
        for path in self._dir.iterdir():
            if path.name == self._generation:
                continue
            try:
                if path.is_dir() and path.name.startswith(GENERATION_PREFIX):
                    shutil.rmtree(path)
                elif path.name == ACTIVE_SEGMENT or fnmatch.fnmatch(path.name, SEGMENT_GLOB):
                    path.unlink()
            except OSError as e:
                logger.warning(f"Could not remove stale run data {path.name}: {e}")

    def _read_generation(self) -> Optional[str]:
        pointer = self._dir / CURRENT_FILE
        if not pointer.exists():
            return None
        try:
            generation = pointer.read_text().strip()
        except OSError as e:
            logger.error(f"Failed to read run log pointer: {e}")
            raise Internal(f"run log pointer unreadable: {e}")
        if not generation.startswith(GENERATION_PREFIX) or "/" in generation:
            raise Internal(f"run log pointer names an invalid generation: {generation!r}")
        if not (self._dir / generation).is_dir():
            raise Internal(f"run log generation {generation} is missing")
        return generation

    def _segments(self) -> List[Path]:
        segment_dir = self._segment_dir()
        if not segment_dir.exists():
            return []
        segments = sorted(segment_dir.glob(SEGMENT_GLOB))
        active = self._active_path()
        if active.exists():
            segments.append(active)
        return segments

    def _load(self) -> None:
        if self._dir.exists():
            self._generation = self._read_generation()
            self._collect_garbage_locked()
        loaded = 0
        for segment in self._segments():
            with open(segment, "r") as f:
                for line in f:
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        run = RunRecord.from_dict(json.loads(line))
                    except (json.JSONDecodeError, ValueError, TypeError, InvalidInput) as e:
                        logger.warning(f"Skipping malformed run line in {segment.name}: {e}")
                        continue
                    self._runs[run.run_id] = run
                    loaded += 1
        if loaded:
            logger.info(f"Loaded {len(self._runs)} runs from {self._segment_dir()}")
