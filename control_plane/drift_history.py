"""
Drift History View

Per-result drift entries over a recent run window, annotated with the
suppression and allowlist state at the run's reference time.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional, Dict, Any, List

from .context import RequestContext
from .drift_policy import DriftPolicyStore
from .run_store import RunStore
from .timeutil import utc_now, format_ts


DEFAULT_HOURS = 24
MAX_HOURS = 90 * 24
DEFAULT_LIMIT = 500
MAX_LIMIT = 10000


@dataclass
class DriftHistoryQuery:
    hours: int = DEFAULT_HOURS
    limit: int = DEFAULT_LIMIT
    host: str = ""
    type: str = ""
    resource_id: str = ""
    include_unchanged: bool = False
    include_suppressed: bool = False
    include_allowlisted: bool = False

    def normalized(self) -> "DriftHistoryQuery":
        hours = self.hours if self.hours and self.hours > 0 else DEFAULT_HOURS
        limit = self.limit if self.limit and self.limit > 0 else DEFAULT_LIMIT
        return DriftHistoryQuery(
            hours=min(hours, MAX_HOURS),
            limit=min(limit, MAX_LIMIT),
            host=(self.host or "").strip().lower(),
            type=(self.type or "").strip().lower(),
            resource_id=(self.resource_id or "").strip().lower(),
            include_unchanged=self.include_unchanged,
            include_suppressed=self.include_suppressed,
            include_allowlisted=self.include_allowlisted,
        )


@dataclass
class DriftHistory:
    query: DriftHistoryQuery
    since: datetime
    items: List[Dict[str, Any]] = field(default_factory=list)
    truncated: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "window_hours": self.query.hours,
            "since": format_ts(self.since),
            "count": len(self.items),
            "include_unchanged": self.query.include_unchanged,
            "include_suppressed": self.query.include_suppressed,
            "include_allowlisted": self.query.include_allowlisted,
            "truncated": self.truncated,
            "items": self.items,
        }


def drift_history(
    runs: RunStore,
    policies: DriftPolicyStore,
    query: DriftHistoryQuery,
    ctx: Optional[RequestContext] = None,
) -> DriftHistory:
    """Collect drift entries newest run first, up to query.limit."""
    query = query.normalized()
    since = utc_now() - timedelta(hours=query.hours)
    window = runs.scan_window(since, ctx)
    history = DriftHistory(query=query, since=since, truncated=window.truncated)

    for run in window.runs:
        at = run.reference_time
        for result in run.results:
            if not query.include_unchanged and not result.changed:
                continue
            if query.host and query.host != result.host.strip().lower():
                continue
            if query.type and query.type != result.type.strip().lower():
                continue
            if query.resource_id and query.resource_id != result.resource_id.strip().lower():
                continue
            suppressed = policies.is_suppressed(result.host, result.type, result.resource_id, at)
            allowlisted = policies.is_allowlisted(result.host, result.type, result.resource_id, at)
            if suppressed and not query.include_suppressed:
                continue
            if allowlisted and not query.include_allowlisted:
                continue
            history.items.append({
                "run_id": run.run_id,
                "run_status": run.status.value,
                "run_started_at": format_ts(run.started_at),
                "run_ended_at": format_ts(run.ended_at),
                "host": result.host,
                "resource_type": result.type,
                "resource_id": result.resource_id,
                "changed": result.changed,
                "skipped": result.skipped,
                "message": result.message,
                "suppressed": suppressed,
                "allowlisted": allowlisted,
            })
            if len(history.items) >= query.limit:
                return history
    return history
