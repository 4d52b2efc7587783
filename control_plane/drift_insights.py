"""
Drift Insights View

Aggregates drift over a recent run window into per-host and per-resource-type
trends, with totals for suppressed and allowlisted changes and failed runs.
A few rule-based root-cause hints are derived from the dominant trends.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional, Dict, Any, List, Tuple

from .context import RequestContext
from .drift_policy import DriftPolicyStore
from .run_store import RunStatus, RunStore
from .timeutil import utc_now, format_ts


DEFAULT_HOURS = 24
MAX_HOURS = 30 * 24
TREND_LIMIT = 10
HOST_CONCENTRATION_THRESHOLD = 3
UNKNOWN_HOST = "unknown-host"
UNKNOWN_TYPE = "unknown-type"


@dataclass
class DriftTrend:
    key: str
    count: int = 0
    last_seen: Optional[datetime] = None

    def observe(self, at: datetime) -> None:
        self.count += 1
        if self.last_seen is None or at > self.last_seen:
            self.last_seen = at

    def to_dict(self) -> Dict[str, Any]:
        return {"key": self.key, "count": self.count, "last_seen": format_ts(self.last_seen)}


@dataclass
class DriftInsights:
    hours: int
    since: datetime
    total_changed: int = 0
    suppressed_changes: int = 0
    allowlisted_changes: int = 0
    failed_runs: int = 0
    host_trends: List[DriftTrend] = field(default_factory=list)
    type_trends: List[DriftTrend] = field(default_factory=list)
    hints: List[str] = field(default_factory=list)
    remediations: List[str] = field(default_factory=list)
    active_suppressions: List[Dict[str, Any]] = field(default_factory=list)
    active_allowlists: List[Dict[str, Any]] = field(default_factory=list)
    truncated: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "window_hours": self.hours,
            "since": format_ts(self.since),
            "total_changed_resources": self.total_changed,
            "suppressed_changes": self.suppressed_changes,
            "allowlisted_changes": self.allowlisted_changes,
            "failed_runs": self.failed_runs,
            "host_trends": [t.to_dict() for t in self.host_trends],
            "resource_type_trends": [t.to_dict() for t in self.type_trends],
            "root_cause_hints": self.hints,
            "remediations": self.remediations,
            "active_suppressions": self.active_suppressions,
            "active_allowlists": self.active_allowlists,
            "truncated": self.truncated,
        }


def normalize_hours(hours: Optional[int]) -> int:
    if not hours or hours <= 0:
        return DEFAULT_HOURS
    return min(hours, MAX_HOURS)


def top_trends(trends: Dict[str, DriftTrend], limit: int = TREND_LIMIT) -> List[DriftTrend]:
    """Highest count first, ties by key."""
    ordered = sorted(trends.values(), key=lambda t: (-t.count, t.key))
    return ordered[:limit]


def root_cause_hints(
    hosts: List[DriftTrend], types: List[DriftTrend], failed_runs: int
) -> Tuple[List[str], List[str]]:
    hints: List[str] = []
    remediations: List[str] = []
    if hosts and hosts[0].count >= HOST_CONCENTRATION_THRESHOLD:
        hints.append(f"drift is concentrated on host {hosts[0].key}")
        remediations.append("inspect host-specific config overlays and local manual changes")
    if types and types[0].key == "command":
        hints.append("imperative command resources are the primary drift driver")
        remediations.append(
            "replace imperative commands with declarative file/package resources where possible"
        )
    if failed_runs > 0:
        hints.append("failed runs correlate with drift spikes in the selected window")
        remediations.append("compare failed and successful runs for the affected hosts and retry selectively")
    if not hints:
        hints.append("no dominant drift root-cause signal detected")
        remediations.append("continue monitoring drift trends and enforce periodic check/noop scans")
    return hints, remediations


def drift_insights(
    runs: RunStore,
    policies: DriftPolicyStore,
    hours: Optional[int] = None,
    ctx: Optional[RequestContext] = None,
) -> DriftInsights:
    hours = normalize_hours(hours)
    since = utc_now() - timedelta(hours=hours)
    window = runs.scan_window(since, ctx)
    insights = DriftInsights(hours=hours, since=since, truncated=window.truncated)

    host_trends: Dict[str, DriftTrend] = {}
    type_trends: Dict[str, DriftTrend] = {}
    for run in window.runs:
        at = run.reference_time
        if run.status == RunStatus.FAILED:
            insights.failed_runs += 1
        for result in run.results:
            if not result.changed:
                continue
            if policies.is_suppressed(result.host, result.type, result.resource_id, at):
                insights.suppressed_changes += 1
                continue
            if policies.is_allowlisted(result.host, result.type, result.resource_id, at):
                insights.allowlisted_changes += 1
                continue
            insights.total_changed += 1
            host = result.host.strip() or UNKNOWN_HOST
            host_trends.setdefault(host, DriftTrend(host)).observe(at)
            resource_type = result.type.strip().lower() or UNKNOWN_TYPE
            type_trends.setdefault(resource_type, DriftTrend(resource_type)).observe(at)

    insights.host_trends = top_trends(host_trends)
    insights.type_trends = top_trends(type_trends)
    insights.hints, insights.remediations = root_cause_hints(
        insights.host_trends, insights.type_trends, insights.failed_runs
    )
    insights.active_suppressions = [p.to_dict() for p in policies.list_suppressions()]
    insights.active_allowlists = [p.to_dict() for p in policies.list_allowlist()]
    return insights
