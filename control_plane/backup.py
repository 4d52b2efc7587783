"""
Backup and Restore

Snapshots of the run log and event feed written as single JSON documents
into a local object directory:

    {"version": "v1", "created_at": ..., "runs": [...], "events": [...]}

Keys look like "<prefix>/snapshot-<ns-epoch>.json". Restore resolves a key
directly or picks the newest snapshot at or before a timestamp, then swaps
the run log (atomic) and the event feed.
"""

import json
import logging
import os
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath
from typing import Optional, Dict, Any, List

from .errors import Internal, InvalidInput, NotFound
from .events import Event, EventLog
from .run_store import RunRecord, RunStore
from .timeutil import utc_now, format_ts, parse_ts

logger = logging.getLogger("backup")

SNAPSHOT_VERSION = "v1"
DEFAULT_PREFIX = "backups"
DEFAULT_LIST_LIMIT = 200
MAX_LIST_LIMIT = 10000


@dataclass(frozen=True)
class ObjectInfo:
    key: str
    size: int
    created_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {"key": self.key, "size": self.size, "created_at": format_ts(self.created_at)}


def sanitize_key(key: str) -> str:
    """Normalize an object key; reject absolute paths and traversal."""
    raw = (key or "").strip().replace("\\", "/").strip("/")
    if not raw:
        return ""
    parts = PurePosixPath(raw).parts
    if any(part in ("..", ".") for part in parts):
        raise InvalidInput(f"invalid object key: {key!r}")
    return "/".join(parts)


class BackupManager:
    """Creates, lists and restores snapshots under an object directory."""

    def __init__(self, object_dir: Path, runs: RunStore, events: EventLog):
        self._root = Path(object_dir)
        self._runs = runs
        self._events = events
        self._lock = threading.Lock()

    # -------------------------------------------------------------------------
    # Object directory
    # -------------------------------------------------------------------------

    def _path(self, key: str) -> Path:
        return self._root / key

    def _info(self, key: str) -> ObjectInfo:
        path = self._path(key)
        stat = path.stat()
        created_at = None
        stem = path.stem.rsplit("-", 1)[-1]
        if stem.isdigit():
            created_at = datetime.fromtimestamp(int(stem) / 1e9, tz=timezone.utc)
        if created_at is None:
            created_at = datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc)
        return ObjectInfo(key=key, size=stat.st_size, created_at=created_at)

    def list(self, prefix: str = DEFAULT_PREFIX, limit: int = DEFAULT_LIST_LIMIT) -> List[ObjectInfo]:
        """Snapshot objects under prefix, newest first."""
        prefix = sanitize_key(prefix) or DEFAULT_PREFIX
        if limit <= 0:
            limit = DEFAULT_LIST_LIMIT
        limit = min(limit, MAX_LIST_LIMIT)
        base = self._path(prefix)
        if not base.exists():
            return []
        items = [
            self._info(path.relative_to(self._root).as_posix())
            for path in base.rglob("*.json")
            if path.is_file()
        ]
        items.sort(key=lambda i: (i.created_at, i.key), reverse=True)
        return items[:limit]

    # -------------------------------------------------------------------------
    # Backup
    # -------------------------------------------------------------------------

    def create(
        self,
        include_runs: bool = True,
        include_events: bool = True,
        prefix: str = DEFAULT_PREFIX,
    ) -> Dict[str, Any]:
        """Write a snapshot. Selecting neither part selects both."""
        if not include_runs and not include_events:
            include_runs = include_events = True
        prefix = sanitize_key(prefix) or DEFAULT_PREFIX

        snapshot: Dict[str, Any] = {"version": SNAPSHOT_VERSION, "created_at": format_ts(utc_now())}
        if include_runs:
            snapshot["runs"] = [r.to_dict() for r in self._runs.list_runs(0)]
        if include_events:
            snapshot["events"] = [e.to_dict() for e in self._events.list()]

        with self._lock:
            key = f"{prefix}/snapshot-{time.time_ns()}.json"
            path = self._path(key)
            try:
                path.parent.mkdir(parents=True, exist_ok=True)
                temp_file = path.with_suffix(".tmp")
                with open(temp_file, "w") as f:
                    json.dump(snapshot, f, indent=2)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(temp_file, path)
            except OSError as e:
                logger.error(f"Failed to write backup snapshot: {e}")
                raise Internal(f"failed to write backup snapshot: {e}")
            info = self._info(key)

        runs = len(snapshot.get("runs", []))
        events = len(snapshot.get("events", []))
        logger.info(f"Backup snapshot {key} written (runs={runs}, events={events})")
        return {"object": info.to_dict(), "snapshot_runs": runs, "snapshot_events": events}

    # -------------------------------------------------------------------------
    # Restore
    # -------------------------------------------------------------------------

    def resolve_key(
        self,
        key: str = "",
        at_or_before: Optional[str] = None,
        prefix: str = DEFAULT_PREFIX,
    ) -> str:
        """Explicit key wins; otherwise the newest snapshot at or before the timestamp."""
        key = sanitize_key(key)
        if key:
            return key
        if not (at_or_before or "").strip():
            raise InvalidInput("key is required (or specify at_or_before for point-in-time restore)")
        try:
            target = parse_ts(at_or_before)
        except ValueError:
            raise InvalidInput("at_or_before must be an RFC3339 timestamp")
        candidates = [i for i in self.list(prefix, MAX_LIST_LIMIT) if i.created_at <= target]
        if not candidates:
            raise NotFound("no backup snapshot found at_or_before requested timestamp")
        return candidates[0].key

    def load(self, key: str) -> Dict[str, Any]:
        """Read and validate a snapshot. Unknown key -> NotFound, corrupt -> InvalidInput."""
        path = self._path(sanitize_key(key))
        if not key or not path.is_file():
            raise NotFound(f"backup snapshot {key} not found")
        try:
            snapshot = json.loads(path.read_text())
        except json.JSONDecodeError:
            raise InvalidInput("invalid backup snapshot payload")
        except OSError as e:
            raise Internal(f"failed to read backup snapshot: {e}")
        if not isinstance(snapshot, dict) or snapshot.get("version") != SNAPSHOT_VERSION:
            raise InvalidInput("invalid backup snapshot payload")
        try:
            runs = [RunRecord.from_dict(r) for r in snapshot.get("runs") or []]
            events = [Event.from_dict(e) for e in snapshot.get("events") or []]
        except (KeyError, ValueError, TypeError, AttributeError, InvalidInput) as e:
            raise InvalidInput(f"invalid backup snapshot payload: {e}")
        return {"version": snapshot["version"], "runs": runs, "events": events}

    def restore(
        self,
        key: str = "",
        at_or_before: Optional[str] = None,
        prefix: str = DEFAULT_PREFIX,
        verify_only: bool = False,
    ) -> Dict[str, Any]:
        resolved = self.resolve_key(key, at_or_before, prefix)
        snapshot = self.load(resolved)
        info = self._info(resolved)
        if verify_only:
            return {
                "status": "verified",
                "object": info.to_dict(),
                "key": resolved,
                "runs": len(snapshot["runs"]),
                "events": len(snapshot["events"]),
                "version": snapshot["version"],
            }

        restored_runs = self._runs.replace_runs(snapshot["runs"])
        restored_events = self._events.replace(snapshot["events"])
        logger.info(f"Restored snapshot {resolved} (runs={restored_runs}, events={restored_events})")
        self._events.emit("backup.restored", "backup snapshot restored", {
            "key": resolved,
            "restored_runs": restored_runs,
            "restored_events": restored_events,
        })
        return {
            "status": "restored",
            "object": info.to_dict(),
            "key": resolved,
            "restored_runs": restored_runs,
            "restored_events": restored_events,
        }
