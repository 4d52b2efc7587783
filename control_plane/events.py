"""
Event Log - Append-Only Structured Event Feed

Every state transition in the pipeline is recorded as an Event. Events are
sealed into a SHA-256 hash chain so tampering or loss is detectable.

CONSTRAINTS:
- APPEND-ONLY: events are never edited; restore replaces the whole feed
- BOUNDED: oldest events are evicted once the in-memory limit is reached
- Optional NDJSON mirror for durability across restarts, compacted to the
  retained events once evicted lines pile up

Handlers depend on the EventSink interface (emit), not on EventLog.
"""

import hashlib
import json
import logging
import os
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime
from pathlib import Path
from typing import Optional, Dict, Any, List, Iterable

from .timeutil import utc_now, format_ts, parse_ts, to_utc

logger = logging.getLogger("event_log")

DEFAULT_EVENT_LIMIT = 10_000
DEFAULT_QUERY_LIMIT = 200
# Rewrite the mirror once it holds this many lines per retained event
MIRROR_COMPACT_FACTOR = 2


@dataclass(frozen=True)
class Event:
    """Immutable event record."""
    time: datetime
    type: str
    message: str
    fields: Dict[str, Any] = field(default_factory=dict)
    index: int = 0
    prev_hash: str = ""
    hash: str = ""

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "index": self.index,
            "time": format_ts(self.time),
            "type": self.type,
            "message": self.message,
            "fields": dict(self.fields),
        }
        if self.prev_hash:
            data["prev_hash"] = self.prev_hash
        if self.hash:
            data["hash"] = self.hash
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Event":
        return cls(
            time=parse_ts(data.get("time")) or utc_now(),
            type=str(data.get("type", "")),
            message=str(data.get("message", "")),
            fields=dict(data.get("fields") or {}),
            index=int(data.get("index", 0) or 0),
            prev_hash=data.get("prev_hash", "") or "",
            hash=data.get("hash", "") or "",
        )

    def digest(self) -> str:
        """Hash over the canonical content plus the chain link."""
        body = {
            "index": self.index,
            "time": format_ts(self.time),
            "type": self.type,
            "message": self.message,
            "fields": self.fields,
            "prev_hash": self.prev_hash,
        }
        payload = json.dumps(body, sort_keys=True, separators=(",", ":"), default=str)
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()


@dataclass
class IntegrityViolation:
    index: int
    reason: str
    expected_hash: str = ""
    actual_hash: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "index": self.index,
            "reason": self.reason,
            "expected_hash": self.expected_hash,
            "actual_hash": self.actual_hash,
        }


class EventSink:
    """
    Event emission interface.

    The base implementation discards events; EventLog records them.
    """

    def emit(self, event_type: str, message: str, fields: Optional[Dict[str, Any]] = None) -> None:
        return None


class EventLog(EventSink):
    """Bounded, hash-chained, queryable event feed."""

    def __init__(self, limit: int = DEFAULT_EVENT_LIMIT, mirror_file: Optional[Path] = None):
        self._limit = limit if limit > 0 else DEFAULT_EVENT_LIMIT
        self._events: List[Event] = []
        self._next_index = 0
        self._last_hash = ""
        self._mirror_file = mirror_file
        self._mirror_lines = 0
        self._lock = threading.Lock()
        if mirror_file is not None:
            self._load_mirror()

    # -------------------------------------------------------------------------
    # Write
    # -------------------------------------------------------------------------

    def emit(self, event_type: str, message: str, fields: Optional[Dict[str, Any]] = None) -> None:
        self.append(Event(time=utc_now(), type=event_type, message=message, fields=dict(fields or {})))

    def append(self, event: Event) -> Event:
        """Seal and append an event. Returns the sealed copy."""
        with self._lock:
            sealed = self._seal_locked(event)
            self._events.append(sealed)
            if len(self._events) > self._limit:
                del self._events[: len(self._events) - self._limit]
            self._mirror_locked([sealed])
            if self._mirror_lines > MIRROR_COMPACT_FACTOR * self._limit:
                self._rewrite_mirror_locked()
        logger.debug(f"Event {sealed.index} recorded: {sealed.type}")
        return sealed

    def replace(self, events: Optional[Iterable[Event]]) -> int:
        """Replace the whole feed (restore path). The chain is re-sealed."""
        items = list(events or [])
        if len(items) > self._limit:
            items = items[-self._limit:]
        with self._lock:
            self._events = []
            self._next_index = 0
            self._last_hash = ""
            for item in items:
                self._events.append(self._seal_locked(item))
            self._rewrite_mirror_locked()
        logger.info(f"Event log replaced with {len(items)} events")
        return len(items)

    # -------------------------------------------------------------------------
    # Read
    # -------------------------------------------------------------------------

    def list(self) -> List[Event]:
        with self._lock:
            return list(self._events)

    def query(
        self,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        type_prefix: str = "",
        contains: str = "",
        limit: int = DEFAULT_QUERY_LIMIT,
        desc: bool = False,
    ) -> List[Event]:
        """Filter events by time window, type prefix and substring."""
        since = to_utc(since) if since else None
        until = to_utc(until) if until else None
        type_prefix = type_prefix.strip().lower()
        contains = contains.strip().lower()
        if limit <= 0:
            limit = DEFAULT_QUERY_LIMIT

        with self._lock:
            snapshot = list(self._events)
        if desc:
            snapshot.reverse()

        out: List[Event] = []
        for event in snapshot:
            if since and event.time < since:
                continue
            if until and event.time > until:
                continue
            if type_prefix and not event.type.lower().startswith(type_prefix):
                continue
            if contains and contains not in event.message.lower() and contains not in event.type.lower():
                continue
            out.append(event)
            if len(out) >= limit:
                break
        return out

    def verify_integrity(self) -> Dict[str, Any]:
        """Walk the hash chain and report any broken links."""
        with self._lock:
            snapshot = list(self._events)
        violations: List[IntegrityViolation] = []
        prev = snapshot[0].prev_hash if snapshot else ""
        for event in snapshot:
            if event.prev_hash != prev:
                violations.append(IntegrityViolation(
                    index=event.index,
                    reason="prev_hash does not match preceding event",
                    expected_hash=prev,
                    actual_hash=event.prev_hash,
                ))
            expected = event.digest()
            if event.hash != expected:
                violations.append(IntegrityViolation(
                    index=event.index,
                    reason="hash mismatch",
                    expected_hash=expected,
                    actual_hash=event.hash,
                ))
            prev = event.hash
        return {
            "valid": not violations,
            "checked": len(snapshot),
            "last_hash": snapshot[-1].hash if snapshot else "",
            "violations": [v.to_dict() for v in violations],
        }

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _seal_locked(self, event: Event) -> Event:
        self._next_index += 1
        unsealed = replace(
            event,
            time=to_utc(event.time),
            index=self._next_index,
            prev_hash=self._last_hash,
            hash="",
        )
        sealed = replace(unsealed, hash=unsealed.digest())
        self._last_hash = sealed.hash
        return sealed

    def _mirror_locked(self, events: List[Event]) -> None:
        if self._mirror_file is None:
            return
        try:
            self._mirror_file.parent.mkdir(parents=True, exist_ok=True)
            with open(self._mirror_file, "a") as f:
                for event in events:
                    f.write(json.dumps(event.to_dict(), default=str) + "\n")
                f.flush()
                os.fsync(f.fileno())
        except OSError as e:
            # The in-memory feed stays authoritative for this process
            logger.error(f"Event mirror write failed: {e}")
            return
        self._mirror_lines += len(events)

    def _rewrite_mirror_locked(self) -> None:
        """Atomically rewrite the mirror with exactly the retained events."""
        if self._mirror_file is None:
            return
        temp_file = self._mirror_file.with_suffix(".tmp")
        try:
            self._mirror_file.parent.mkdir(parents=True, exist_ok=True)
            with open(temp_file, "w") as f:
                for event in self._events:
                    f.write(json.dumps(event.to_dict(), default=str) + "\n")
                f.flush()
                os.fsync(f.fileno())
            os.replace(temp_file, self._mirror_file)
        except OSError as e:
            logger.error(f"Event mirror rewrite failed: {e}")
            return
        self._mirror_lines = len(self._events)

    def _load_mirror(self) -> None:
        if not self._mirror_file.exists():
            return
        loaded: List[Event] = []
        with open(self._mirror_file) as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                self._mirror_lines += 1
                try:
                    loaded.append(Event.from_dict(json.loads(line)))
                except (json.JSONDecodeError, ValueError, TypeError) as e:
                    logger.warning(f"Skipping malformed event line: {e}")
        loaded = loaded[-self._limit:]
        self._events = loaded
        if loaded:
            self._next_index = loaded[-1].index
            self._last_hash = loaded[-1].hash
        if self._mirror_lines > len(loaded):
            self._rewrite_mirror_locked()
        logger.info(f"Loaded {len(loaded)} events from {self._mirror_file}")
