"""
Converge Trigger Router

Single ingress for converge intents: manual requests, GitOps deployments,
drift remediation proposals and external event hooks.

Flow (submit):
    input -> normalize -> dedup by idempotency key -> persist (ACCEPTED)
          -> optional auto-enqueue -> QUEUED | BLOCKED -> converge.triggered

CONSTRAINTS:
- A trigger is persisted BEFORE auto-enqueue is attempted
- The outcome is recorded at most once; QUEUED and BLOCKED are final
- Duplicates never mutate the stored original; callers get a copy
- Payloads are stored as canonical JSON and decoded only when read
"""

import json
import logging
import os
import threading
from collections import OrderedDict
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Optional, Dict, Any, List, Tuple

from .context import RequestContext, ensure_context
from .errors import (
    Conflict,
    ControlPlaneError,
    Internal,
    InvalidInput,
    MissingConfigPath,
    NotFound,
)
from .events import EventSink
from .job_queue import JobPriority, JobQueue
from .timeutil import utc_now, format_ts, parse_ts

logger = logging.getLogger("trigger_router")

DEFAULT_SOURCE = "manual"
DEFAULT_DEDUP_HOURS = 24
DEFAULT_MAX_TRIGGERS = 2000
DEFAULT_LIST_LIMIT = 100
# Rewrite the NDJSON log once it holds this many lines per retained trigger
COMPACT_FACTOR = 2
TRIGGER_EVENT = "converge.triggered"


class TriggerStatus(str, Enum):
    ACCEPTED = "accepted"
    QUEUED = "queued"
    BLOCKED = "blocked"
    DUPLICATE = "duplicate"


FINAL_STATUSES = {TriggerStatus.QUEUED, TriggerStatus.BLOCKED}


# -----------------------------------------------------------------------------
# Payload
# -----------------------------------------------------------------------------
def encode_payload(value: Any) -> str:
    """
    Validate a JSON value tree and return its canonical encoding.

    Accepts null, bool, number, string, list and string-keyed objects.
    """
    if value is None:
        return ""
    try:
        return json.dumps(value, sort_keys=True, separators=(",", ":"), allow_nan=False)
    except (TypeError, ValueError) as e:
        raise InvalidInput(f"payload is not a valid JSON value: {e}")


def decode_payload(blob: str) -> Any:
    if not blob:
        return None
    return json.loads(blob)


# -----------------------------------------------------------------------------
# Models
# -----------------------------------------------------------------------------
@dataclass
class TriggerInput:
    """Raw converge intent as received from a caller."""
    config_path: str = ""
    source: str = ""
    event_type: str = ""
    event_id: str = ""
    priority: Optional[str] = None
    idempotency_key: str = ""
    force: bool = False
    auto_enqueue: Optional[bool] = None
    payload: Any = None


@dataclass(frozen=True)
class ConvergeTrigger:
    trigger_id: str
    source: str
    config_path: str
    priority: JobPriority
    status: TriggerStatus
    created_at: datetime
    event_type: str = ""
    event_id: str = ""
    idempotency_key: str = ""
    force: bool = False
    auto_enqueue: bool = True
    job_id: str = ""
    enqueue_error: str = ""
    payload_blob: str = ""
    duplicate_of: str = ""
    updated_at: Optional[datetime] = None

    @property
    def payload(self) -> Any:
        return decode_payload(self.payload_blob)

    @property
    def is_final(self) -> bool:
        return self.status in FINAL_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "id": self.trigger_id,
            "source": self.source,
            "event_type": self.event_type,
            "event_id": self.event_id,
            "config_path": self.config_path,
            "priority": self.priority.value,
            "idempotency_key": self.idempotency_key,
            "force": self.force,
            "auto_enqueue": self.auto_enqueue,
            "status": self.status.value,
            "created_at": format_ts(self.created_at),
        }
        if self.job_id:
            data["job_id"] = self.job_id
        if self.enqueue_error:
            data["enqueue_error"] = self.enqueue_error
        if self.payload_blob:
            data["payload"] = self.payload
        if self.duplicate_of:
            data["duplicate_of"] = self.duplicate_of
        if self.updated_at:
            data["updated_at"] = format_ts(self.updated_at)
        return data

    def to_record(self) -> Dict[str, Any]:
        """Storage form: payload kept as the canonical blob."""
        data = self.to_dict()
        data.pop("payload", None)
        data["payload_blob"] = self.payload_blob
        return data

    @classmethod
    def from_record(cls, data: Dict[str, Any]) -> "ConvergeTrigger":
        return cls(
            trigger_id=data["id"],
            source=data.get("source", DEFAULT_SOURCE),
            config_path=data["config_path"],
            priority=JobPriority.normalize(data.get("priority")),
            status=TriggerStatus(data.get("status", TriggerStatus.ACCEPTED.value)),
            created_at=parse_ts(data["created_at"]),
            event_type=data.get("event_type", ""),
            event_id=data.get("event_id", ""),
            idempotency_key=data.get("idempotency_key", ""),
            force=bool(data.get("force", False)),
            auto_enqueue=bool(data.get("auto_enqueue", True)),
            job_id=data.get("job_id", ""),
            enqueue_error=data.get("enqueue_error", ""),
            payload_blob=data.get("payload_blob", ""),
            updated_at=parse_ts(data.get("updated_at")),
        )


# -----------------------------------------------------------------------------
# Router
# -----------------------------------------------------------------------------
class TriggerRouter:
    """
    Normalizes, deduplicates, records and optionally enqueues converge
    triggers. Owns the trigger index; the queue and event sink are handles.
    """

    def __init__(
        self,
        queue: JobQueue,
        events: EventSink,
        base_dir: Path,
        triggers_file: Optional[Path] = None,
        dedup_hours: int = DEFAULT_DEDUP_HOURS,
        max_triggers: int = DEFAULT_MAX_TRIGGERS,
    ):
        self._queue = queue
        self._events = events
        self._base_dir = Path(base_dir)
        self._triggers_file = triggers_file
        self._dedup_window = timedelta(hours=dedup_hours if dedup_hours > 0 else DEFAULT_DEDUP_HOURS)
        self._max = max_triggers if max_triggers > 0 else DEFAULT_MAX_TRIGGERS
        self._lock = threading.Lock()
        self._items: "OrderedDict[str, ConvergeTrigger]" = OrderedDict()
        self._by_key: Dict[str, str] = {}
        self._next_id = 0
        self._file_lines = 0
        if triggers_file is not None:
            self._load()

    # -------------------------------------------------------------------------
    # Normalization
    # -------------------------------------------------------------------------

    def resolve_config_path(self, config_path: Optional[str]) -> str:
        """Trim and make absolute against the base directory."""
        path = (config_path or "").strip()
        if not path:
            raise MissingConfigPath()
        if os.path.isabs(path):
            return path
        return os.path.join(str(self._base_dir), path)

    def _normalize(self, data: TriggerInput) -> Dict[str, Any]:
        priority = data.priority
        if not isinstance(priority, str):
            priority = None
        return {
            "source": (data.source or "").strip().lower() or DEFAULT_SOURCE,
            "event_type": (data.event_type or "").strip(),
            "event_id": (data.event_id or "").strip(),
            "config_path": self.resolve_config_path(data.config_path),
            "priority": JobPriority.normalize(priority),
            "idempotency_key": (data.idempotency_key or "").strip(),
            "force": bool(data.force),
            "auto_enqueue": True if data.auto_enqueue is None else bool(data.auto_enqueue),
            "payload_blob": encode_payload(data.payload),
        }

    # -------------------------------------------------------------------------
    # Store operations
    # -------------------------------------------------------------------------

    def new_trigger(self, data: TriggerInput) -> Tuple[ConvergeTrigger, bool]:
        """
        Record a new trigger in ACCEPTED state.

        Returns (trigger, created). When the idempotency key matches a trigger
        inside the dedup window, returns a DUPLICATE copy of that original
        and created=False.
        """
        fields = self._normalize(data)
        key = fields["idempotency_key"]
        now = utc_now()

        with self._lock:
            if key:
                original = self._find_by_key_locked(key, now)
                if original is not None:
                    logger.info(f"Trigger with key {key!r} deduplicated onto {original.trigger_id}")
                    return replace(
                        original, status=TriggerStatus.DUPLICATE, duplicate_of=original.trigger_id
                    ), False

            self._next_id += 1
            trigger = ConvergeTrigger(
                trigger_id=f"trg-{self._next_id}",
                status=TriggerStatus.ACCEPTED,
                created_at=now,
                **fields,
            )
            try:
                self._append_locked(trigger)
            except Internal:
                self._next_id -= 1
                raise
            self._items[trigger.trigger_id] = trigger
            if key:
                self._by_key[key] = trigger.trigger_id
            self._trim_locked()

        logger.info(
            f"Trigger {trigger.trigger_id} accepted "
            f"(source: {trigger.source}, priority: {trigger.priority.value})"
        )
        return trigger, True

    def _find_by_key_locked(self, key: str, now: datetime) -> Optional[ConvergeTrigger]:
        trigger_id = self._by_key.get(key)
        if trigger_id is None:
            return None
        original = self._items.get(trigger_id)
        if original is None or original.created_at < now - self._dedup_window:
            self._by_key.pop(key, None)
            return None
        return original

    def update_outcome(
        self,
        trigger_id: str,
        status: TriggerStatus,
        job_id: str = "",
        enqueue_error: str = "",
    ) -> ConvergeTrigger:
        """
        Record the final outcome of a trigger.

        Resubmitting the same final outcome is a no-op; any other change
        after a final outcome raises Conflict.
        """
        status = TriggerStatus(status)
        if status not in FINAL_STATUSES:
            raise InvalidInput(f"outcome status must be queued or blocked, got {status.value}")
        job_id = (job_id or "").strip()
        enqueue_error = (enqueue_error or "").strip()

        with self._lock:
            current = self._items.get(trigger_id.strip())
            if current is None:
                raise NotFound(f"converge trigger {trigger_id} not found")
            if current.is_final:
                if (current.status, current.job_id, current.enqueue_error) == (status, job_id, enqueue_error):
                    return current
                raise Conflict(
                    f"trigger {current.trigger_id} already {current.status.value}",
                    {"trigger_id": current.trigger_id, "status": current.status.value},
                )
            updated = replace(
                current,
                status=status,
                job_id=job_id,
                enqueue_error=enqueue_error,
                updated_at=utc_now(),
            )
            self._append_locked(updated)
            self._items[updated.trigger_id] = updated

        logger.info(f"Trigger {updated.trigger_id} {status.value} (job: {job_id or '-'})")
        return updated

    def get(self, trigger_id: str) -> ConvergeTrigger:
        with self._lock:
            item = self._items.get((trigger_id or "").strip())
        if item is None:
            raise NotFound("converge trigger not found")
        return item

    def list(self, limit: int = DEFAULT_LIST_LIMIT) -> List[ConvergeTrigger]:
        """Triggers newest first. Non-positive limits use the default."""
        if limit <= 0:
            limit = DEFAULT_LIST_LIMIT
        with self._lock:
            items = list(self._items.values())
        items.reverse()
        items.sort(key=lambda t: t.created_at, reverse=True)
        return items[:limit]

    # -------------------------------------------------------------------------
    # Ingress flow
    # -------------------------------------------------------------------------

    def submit(
        self, data: TriggerInput, ctx: Optional[RequestContext] = None
    ) -> Tuple[ConvergeTrigger, bool]:
        """
        Full ingress flow: record, auto-enqueue, record outcome, emit event.

        Returns (trigger, created). Once recorded, caller cancellation no
        longer affects the trigger or its job.
        """
        ensure_context(ctx).check()
        trigger, created = self.new_trigger(data)
        if created and trigger.auto_enqueue:
            trigger = self._enqueue(trigger)
        self._events.emit(TRIGGER_EVENT, "converge trigger recorded", {
            "trigger_id": trigger.trigger_id,
            "source": trigger.source,
            "event_type": trigger.event_type,
            "status": trigger.status.value,
            "job_id": trigger.job_id,
            "enqueue_error": trigger.enqueue_error,
        })
        return trigger, created

    def _enqueue(self, trigger: ConvergeTrigger) -> ConvergeTrigger:
        try:
            job = self._queue.enqueue(
                trigger.config_path,
                idempotency_key=trigger.idempotency_key,
                force=trigger.force,
                priority=trigger.priority,
            )
        except ControlPlaneError as e:
            logger.warning(f"Trigger {trigger.trigger_id} blocked by queue: {e.message}")
            return self.update_outcome(trigger.trigger_id, TriggerStatus.BLOCKED, enqueue_error=e.message)
        return self.update_outcome(trigger.trigger_id, TriggerStatus.QUEUED, job_id=job.job_id)

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------

    def _trim_locked(self) -> None:
        while len(self._items) > self._max:
            trigger_id, dropped = self._items.popitem(last=False)
            if dropped.idempotency_key and self._by_key.get(dropped.idempotency_key) == trigger_id:
                del self._by_key[dropped.idempotency_key]
        if self._file_lines > COMPACT_FACTOR * self._max:
            self._compact_locked()

    def _append_locked(self, trigger: ConvergeTrigger) -> None:
        if self._triggers_file is None:
            return
        try:
            self._triggers_file.parent.mkdir(parents=True, exist_ok=True)
            with open(self._triggers_file, "a") as f:
                f.write(json.dumps(trigger.to_record()) + "\n")
                f.flush()
                os.fsync(f.fileno())
        except OSError as e:
            logger.error(f"Failed to persist trigger {trigger.trigger_id}: {e}")
            raise Internal(f"failed to persist trigger: {e}")
        self._file_lines += 1

    def _compact_locked(self) -> None:
        """Rewrite the log with one line per retained trigger."""
        if self._triggers_file is None:
            return
        temp_file = self._triggers_file.with_suffix(".tmp")
        try:
            with open(temp_file, "w") as f:
                for trigger in self._items.values():
                    f.write(json.dumps(trigger.to_record()) + "\n")
                f.flush()
                os.fsync(f.fileno())
            os.replace(temp_file, self._triggers_file)
        except OSError as e:
            logger.warning(f"Trigger log compaction failed, keeping {self._file_lines} lines: {e}")
            return
        logger.info(f"Compacted trigger log from {self._file_lines} to {len(self._items)} lines")
        self._file_lines = len(self._items)

    def _load(self) -> None:
        """Replay trigger snapshots; the last line per id wins."""
        if not self._triggers_file.exists():
            return
        latest: Dict[str, ConvergeTrigger] = {}
        with open(self._triggers_file, "r") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                self._file_lines += 1
                try:
                    trigger = ConvergeTrigger.from_record(json.loads(line))
                except (json.JSONDecodeError, KeyError, ValueError, TypeError) as e:
                    logger.warning(f"Skipping malformed trigger line: {e}")
                    continue
                latest[trigger.trigger_id] = trigger

        for trigger in sorted(latest.values(), key=lambda t: t.created_at):
            self._items[trigger.trigger_id] = trigger
            if trigger.idempotency_key:
                self._by_key[trigger.idempotency_key] = trigger.trigger_id
            suffix = trigger.trigger_id.rsplit("-", 1)[-1]
            if suffix.isdigit():
                self._next_id = max(self._next_id, int(suffix))
        self._trim_locked()
        if self._file_lines > len(self._items):
            self._compact_locked()
        logger.info(f"Loaded {len(self._items)} triggers from {self._triggers_file}")
