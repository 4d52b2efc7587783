"""
Drift Policy Store

Two relations over drift scopes:
- Suppressions: drift on a matching scope is ignored for a time window
- Allowlist: drift on a matching scope is declared intentional

Both are consulted by the remediation planner and the drift history view.

Scope types:
- all: every resource (the default when no scope type is given)
- host, resource_type, resource_id: exact, case-insensitive
- glob: shell wildcard (*, ?) against "host|type|resource_id"; brackets are literal

A rule applies at time `at` iff begin <= at < end. A missing begin is
unbounded below and a missing end (allowlist only) is open. Tables are
small and rewritten in full on every mutation.
"""

import fnmatch
import json
import logging
import os
import threading
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Optional, Dict, Any, List

from .errors import Internal, InvalidScope, NotFound
from .timeutil import utc_now, format_ts, parse_ts, to_utc

logger = logging.getLogger("drift_policy")

SUPPRESSIONS_FILE = "suppressions.json"
ALLOWLIST_FILE = "allowlist.json"


class ScopeType(str, Enum):
    ALL = "all"
    HOST = "host"
    RESOURCE_TYPE = "resource_type"
    RESOURCE_ID = "resource_id"
    GLOB = "glob"

    @classmethod
    def parse(cls, value: Optional[str]) -> "ScopeType":
        token = (value or "").strip()
        if not token:
            return cls.ALL
        token = _SCOPE_ALIASES.get(token, token).lower()
        for scope in cls:
            if scope.value == token:
                return scope
        raise InvalidScope(
            f"scope_type must be one of all, host, resource_type, resource_id, glob; got {value!r}"
        )


_SCOPE_ALIASES = {
    "resourceType": "resource_type",
    "resourceId": "resource_id",
    "resourceID": "resource_id",
}


def glob_pattern(scope_value: str) -> str:
    """Escape character classes so only * and ? act as wildcards."""
    return scope_value.replace("[", "[[]")


class PolicyKind(str, Enum):
    SUPPRESSION = "suppression"
    ALLOWLIST = "allowlist"


# -----------------------------------------------------------------------------
# Model
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class DriftPolicy:
    """A suppression or allowlist rule. Never mutated; deleted by id."""
    policy_id: str
    kind: PolicyKind
    scope_type: ScopeType
    scope_value: str
    begin: Optional[datetime]
    end: Optional[datetime]
    created_at: datetime
    reason: str = ""
    created_by: str = ""

    def matches(self, host: str, resource_type: str, resource_id: str) -> bool:
        host = (host or "").strip().lower()
        resource_type = (resource_type or "").strip().lower()
        resource_id = (resource_id or "").strip().lower()
        if self.scope_type == ScopeType.ALL:
            return True
        if self.scope_type == ScopeType.HOST:
            return host == self.scope_value
        if self.scope_type == ScopeType.RESOURCE_TYPE:
            return resource_type == self.scope_value
        if self.scope_type == ScopeType.RESOURCE_ID:
            return resource_id == self.scope_value
        return fnmatch.fnmatchcase(
            f"{host}|{resource_type}|{resource_id}", glob_pattern(self.scope_value)
        )

    def active_at(self, at: datetime) -> bool:
        at = to_utc(at)
        if self.begin is not None and at < self.begin:
            return False
        return self.end is None or at < self.end

    def expired(self, now: Optional[datetime] = None) -> bool:
        if self.end is None:
            return False
        return self.end <= (now or utc_now())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.policy_id,
            "kind": self.kind.value,
            "scope_type": self.scope_type.value,
            "scope_value": self.scope_value,
            "begin": format_ts(self.begin),
            "end": format_ts(self.end),
            "reason": self.reason,
            "created_by": self.created_by,
            "created_at": format_ts(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DriftPolicy":
        return cls(
            policy_id=data["id"],
            kind=PolicyKind(data["kind"]),
            scope_type=ScopeType.parse(data["scope_type"]),
            scope_value=data["scope_value"],
            begin=parse_ts(data.get("begin")),
            end=parse_ts(data.get("end")),
            created_at=parse_ts(data["created_at"]),
            reason=data.get("reason", ""),
            created_by=data.get("created_by", ""),
        )


@dataclass
class DriftPolicyInput:
    scope_type: str
    scope_value: str
    begin: Optional[datetime] = None
    end: Optional[datetime] = None
    reason: str = ""
    created_by: str = ""


# -----------------------------------------------------------------------------
# Store
# -----------------------------------------------------------------------------
class DriftPolicyStore:
    """Suppression and allowlist tables behind one lock."""

    _PREFIX = {PolicyKind.SUPPRESSION: "drift-sup-", PolicyKind.ALLOWLIST: "drift-allow-"}
    _FILES = {PolicyKind.SUPPRESSION: SUPPRESSIONS_FILE, PolicyKind.ALLOWLIST: ALLOWLIST_FILE}

    def __init__(self, drift_dir: Optional[Path] = None):
        self._dir = drift_dir
        self._lock = threading.Lock()
        self._tables: Dict[PolicyKind, Dict[str, DriftPolicy]] = {
            PolicyKind.SUPPRESSION: {},
            PolicyKind.ALLOWLIST: {},
        }
        self._counters: Dict[PolicyKind, int] = {
            PolicyKind.SUPPRESSION: 0,
            PolicyKind.ALLOWLIST: 0,
        }
        if drift_dir is not None:
            for kind in PolicyKind:
                self._load(kind)

    # Suppressions

    def add_suppression(self, data: DriftPolicyInput) -> DriftPolicy:
        if data.end is None:
            raise InvalidScope("suppression end is required")
        return self._add(PolicyKind.SUPPRESSION, data)

    def delete_suppression(self, policy_id: str) -> bool:
        return self._delete(PolicyKind.SUPPRESSION, policy_id)

    def list_suppressions(self, include_expired: bool = False) -> List[DriftPolicy]:
        return self._list(PolicyKind.SUPPRESSION, include_expired)

    def is_suppressed(self, host: str, resource_type: str, resource_id: str, at: datetime) -> bool:
        return self._find_match(PolicyKind.SUPPRESSION, host, resource_type, resource_id, at) is not None

    # Allowlist

    def add_allowlist(self, data: DriftPolicyInput) -> DriftPolicy:
        return self._add(PolicyKind.ALLOWLIST, data)

    def delete_allowlist(self, policy_id: str) -> bool:
        return self._delete(PolicyKind.ALLOWLIST, policy_id)

    def list_allowlist(self, include_expired: bool = False) -> List[DriftPolicy]:
        return self._list(PolicyKind.ALLOWLIST, include_expired)

    def is_allowlisted(self, host: str, resource_type: str, resource_id: str, at: datetime) -> bool:
        return self._find_match(PolicyKind.ALLOWLIST, host, resource_type, resource_id, at) is not None

    def get(self, kind: PolicyKind, policy_id: str) -> DriftPolicy:
        with self._lock:
            item = self._tables[kind].get((policy_id or "").strip())
        if item is None:
            raise NotFound(f"{kind.value} {policy_id} not found")
        return item

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _add(self, kind: PolicyKind, data: DriftPolicyInput) -> DriftPolicy:
        scope_type = ScopeType.parse(data.scope_type)
        scope_value = (data.scope_value or "").strip().lower()
        if scope_type == ScopeType.ALL:
            scope_value = ""
        elif not scope_value:
            raise InvalidScope("scope_value is required for scoped entries")
        now = utc_now()
        begin = to_utc(data.begin) if data.begin else None
        end = to_utc(data.end) if data.end else None
        if begin is not None and end is not None and begin >= end:
            raise InvalidScope("begin must be before end")

        with self._lock:
            self._counters[kind] += 1
            item = DriftPolicy(
                policy_id=f"{self._PREFIX[kind]}{self._counters[kind]}",
                kind=kind,
                scope_type=scope_type,
                scope_value=scope_value,
                begin=begin,
                end=end,
                created_at=now,
                reason=(data.reason or "").strip(),
                created_by=(data.created_by or "").strip(),
            )
            self._tables[kind][item.policy_id] = item
            try:
                self._save_locked(kind)
            except Internal:
                del self._tables[kind][item.policy_id]
                self._counters[kind] -= 1
                raise

        logger.info(f"Drift {kind.value} {item.policy_id} added ({scope_type.value}={scope_value})")
        return item

    def _delete(self, kind: PolicyKind, policy_id: str) -> bool:
        policy_id = (policy_id or "").strip()
        if not policy_id:
            return False
        with self._lock:
            item = self._tables[kind].pop(policy_id, None)
            if item is None:
                return False
            try:
                self._save_locked(kind)
            except Internal:
                self._tables[kind][policy_id] = item
                raise
        logger.info(f"Drift {kind.value} {policy_id} deleted")
        return True

    def _list(self, kind: PolicyKind, include_expired: bool) -> List[DriftPolicy]:
        now = utc_now()
        with self._lock:
            items = [i for i in self._tables[kind].values() if include_expired or not i.expired(now)]
        items.sort(key=lambda i: (i.created_at, i.policy_id), reverse=True)
        return items

    def _find_match(
        self, kind: PolicyKind, host: str, resource_type: str, resource_id: str, at: datetime
    ) -> Optional[DriftPolicy]:
        with self._lock:
            for item in self._tables[kind].values():
                if item.active_at(at) and item.matches(host, resource_type, resource_id):
                    return item
        return None

    def _save_locked(self, kind: PolicyKind) -> None:
        if self._dir is None:
            return
        path = self._dir / self._FILES[kind]
        payload = {
            "next_id": self._counters[kind],
            "items": [item.to_dict() for item in self._tables[kind].values()],
        }
        try:
            self._dir.mkdir(parents=True, exist_ok=True)
            temp_file = path.with_suffix(".tmp")
            with open(temp_file, "w") as f:
                json.dump(payload, f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(temp_file, path)
        except OSError as e:
            logger.error(f"Failed to persist drift {kind.value} table: {e}")
            raise Internal(f"failed to persist drift {kind.value} table: {e}")

    def _load(self, kind: PolicyKind) -> None:
        path = self._dir / self._FILES[kind]
        if not path.exists():
            return
        try:
            payload = json.loads(path.read_text())
        except (json.JSONDecodeError, OSError) as e:
            logger.error(f"Failed to load drift {kind.value} table: {e}")
            raise Internal(f"drift {kind.value} table unreadable: {e}")
        counter = int(payload.get("next_id", 0))
        for data in payload.get("items", []):
            try:
                item = DriftPolicy.from_dict(data)
            except (KeyError, ValueError, TypeError, InvalidScope) as e:
                logger.warning(f"Skipping malformed drift {kind.value} entry: {e}")
                continue
            self._tables[kind][item.policy_id] = item
            suffix = item.policy_id.rsplit("-", 1)[-1]
            if suffix.isdigit():
                counter = max(counter, int(suffix))
        self._counters[kind] = counter
        logger.info(f"Loaded {len(self._tables[kind])} drift {kind.value} entries")
