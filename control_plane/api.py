"""
Control Plane API Router

FastAPI routes for the converge request pipeline:
- Converge triggers (ingress)
- Jobs and queue controls (pause, emergency stop, change freeze)
- Backlog SLO policy and status
- Runs, events, drift policies, drift history and insights, remediation
- Backup and restore

Handlers are thin: they parse the request, call one component and shape the
response. Typed ControlPlaneErrors propagate to the exception handler
registered in main.py.
"""

import logging
from datetime import datetime
from typing import Optional, List, Any

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .drift_history import DriftHistoryQuery, drift_history
from .drift_insights import drift_insights
from .drift_policy import DriftPolicyInput
from .errors import InvalidInput, NotFound
from .job_queue import DEFAULT_DRAIN_TIMEOUT_SECONDS, JobState
from .remediation_planner import DEFAULT_MAX_CHANGES, DEFAULT_WINDOW_HOURS, RemediationStatus
from .run_store import ResourceResult, RunRecord, RunStatus
from .services import ControlPlane
from .trigger_router import TriggerInput, TriggerStatus
from .timeutil import parse_ts

logger = logging.getLogger("control_plane_api")

# -----------------------------------------------------------------------------
# Router Setup
# -----------------------------------------------------------------------------
router = APIRouter(prefix="/v1", tags=["Converge Pipeline"])


def get_plane(request: Request) -> ControlPlane:
    """Component bundle installed on the application at startup."""
    return request.app.state.control_plane


# -----------------------------------------------------------------------------
# Request Models
# -----------------------------------------------------------------------------
class WireModel(BaseModel):
    """Accepts snake_case and camelCase field names."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class TriggerRequest(WireModel):
    config_path: str = ""
    source: str = ""
    event_type: str = ""
    event_id: str = ""
    priority: Optional[str] = None
    idempotency_key: str = ""
    force: bool = False
    auto_enqueue: Optional[bool] = None
    payload: Any = None


class JobRequest(WireModel):
    config_path: str = ""
    idempotency_key: str = ""
    force: bool = False
    priority: Optional[str] = None


class QueueActionRequest(WireModel):
    action: str
    max_age_seconds: Optional[float] = None
    timeout_seconds: Optional[float] = None


class EmergencyStopRequest(WireModel):
    active: bool
    reason: str = ""


class FreezeRequest(WireModel):
    until: Optional[datetime] = None
    reason: str = ""


class BacklogPolicyRequest(WireModel):
    threshold: int
    warning_percent: Optional[int] = None
    recovery_percent: Optional[int] = None
    projection_seconds: Optional[int] = None


class ResultModel(WireModel):
    host: str
    type: str
    resource_id: str
    changed: bool = False
    skipped: bool = False
    message: str = ""


class RunRequest(WireModel):
    id: str
    status: RunStatus = RunStatus.SUCCEEDED
    started_at: datetime
    ended_at: Optional[datetime] = None
    config_path: str = ""
    job_id: str = ""
    results: List[ResultModel] = Field(default_factory=list)


class DriftPolicyRequest(WireModel):
    scope_type: str = ""
    scope_value: str = ""
    begin: Optional[datetime] = None
    end: Optional[datetime] = None
    until: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    reason: str = ""
    created_by: str = ""

    def to_input(self) -> DriftPolicyInput:
        return DriftPolicyInput(
            scope_type=self.scope_type,
            scope_value=self.scope_value,
            begin=self.begin,
            end=self.end or self.until or self.expires_at,
            reason=self.reason,
            created_by=self.created_by,
        )


class RemediationRequest(WireModel):
    config_path: str = ""
    hours: Optional[int] = None
    priority: Optional[str] = None
    force: bool = False
    safe_mode: bool = False
    max_changes: Optional[int] = None
    auto_enqueue: Optional[bool] = None


class BackupRequest(WireModel):
    include_runs: bool = False
    include_events: bool = False
    prefix: str = ""


class RestoreRequest(WireModel):
    key: str = ""
    at_or_before: Optional[str] = None
    prefix: str = ""
    verify_only: bool = False


# -----------------------------------------------------------------------------
# Converge Triggers
# -----------------------------------------------------------------------------
@router.post("/converge/triggers")
def create_trigger(body: TriggerRequest, plane: ControlPlane = Depends(get_plane)):
    """
    Record a converge trigger and optionally enqueue it.

    202 when accepted or queued; 409 when duplicate or blocked by the queue.
    """
    trigger, _ = plane.router.submit(TriggerInput(**body.model_dump()), plane.request_context())
    status_code = 202
    if trigger.status in (TriggerStatus.DUPLICATE, TriggerStatus.BLOCKED):
        status_code = 409
    return JSONResponse(status_code=status_code, content=trigger.to_dict())


@router.get("/converge/triggers")
def list_triggers(limit: int = Query(100), plane: ControlPlane = Depends(get_plane)):
    return [t.to_dict() for t in plane.router.list(limit)]


@router.get("/converge/triggers/{trigger_id}")
def get_trigger(trigger_id: str, plane: ControlPlane = Depends(get_plane)):
    return plane.router.get(trigger_id).to_dict()


# -----------------------------------------------------------------------------
# Jobs
# -----------------------------------------------------------------------------
@router.post("/jobs", status_code=201)
def create_job(body: JobRequest, plane: ControlPlane = Depends(get_plane)):
    job = plane.queue.enqueue(
        plane.router.resolve_config_path(body.config_path),
        idempotency_key=body.idempotency_key,
        force=body.force,
        priority=body.priority,
    )
    return job.to_dict()


@router.get("/jobs")
def list_jobs(
    status: Optional[str] = Query(None),
    limit: int = Query(100),
    plane: ControlPlane = Depends(get_plane),
):
    state = None
    if status:
        try:
            state = JobState(status.strip().lower())
        except ValueError:
            raise InvalidInput(f"unknown job status: {status}")
    return [j.to_dict() for j in plane.queue.list_jobs(state, limit)]


@router.get("/jobs/{job_id}")
def get_job(job_id: str, plane: ControlPlane = Depends(get_plane)):
    return plane.queue.get(job_id).to_dict()


@router.post("/jobs/{job_id}/cancel")
def cancel_job(job_id: str, plane: ControlPlane = Depends(get_plane)):
    return plane.queue.cancel(job_id).to_dict()


# -----------------------------------------------------------------------------
# Queue Controls
# -----------------------------------------------------------------------------
@router.get("/control/queue")
def queue_status(plane: ControlPlane = Depends(get_plane)):
    return plane.queue.control_status().to_dict()


@router.post("/control/queue")
def queue_action(body: QueueActionRequest, plane: ControlPlane = Depends(get_plane)):
    """Actions: pause, resume, drain, recover_stuck."""
    action = body.action.strip().lower()
    if action == "pause":
        return plane.queue.pause().to_dict()
    if action == "resume":
        return plane.queue.resume().to_dict()
    if action in ("drain", "safe_drain"):
        timeout = body.timeout_seconds or 0
        if timeout <= 0:
            timeout = DEFAULT_DRAIN_TIMEOUT_SECONDS
        return plane.queue.safe_drain(timeout).to_dict()
    if action == "recover_stuck":
        recovered = plane.queue.recover_stuck_jobs(body.max_age_seconds or 0)
        return {
            "recovered": [j.job_id for j in recovered],
            "status": plane.queue.control_status().to_dict(),
        }
    raise InvalidInput("action must be one of pause, resume, drain, recover_stuck")


@router.get("/control/emergency-stop")
def emergency_status(plane: ControlPlane = Depends(get_plane)):
    return plane.queue.emergency_status().to_dict()


@router.post("/control/emergency-stop")
def set_emergency_stop(body: EmergencyStopRequest, plane: ControlPlane = Depends(get_plane)):
    status = plane.queue.emergency_stop(body.active, body.reason)
    plane.events.emit("control.emergency_stop", "emergency stop updated", status.to_dict())
    return status.to_dict()


@router.get("/control/freeze")
def freeze_status(plane: ControlPlane = Depends(get_plane)):
    return plane.queue.freeze_status().to_dict()


@router.post("/control/freeze")
def set_freeze(body: FreezeRequest, plane: ControlPlane = Depends(get_plane)):
    status = plane.queue.set_freeze_until(body.until, body.reason)
    plane.events.emit("control.freeze", "change freeze updated", status.to_dict())
    return status.to_dict()


@router.get("/control/queue/backlog-slo/policy")
def backlog_policy(plane: ControlPlane = Depends(get_plane)):
    return plane.backlog.policy().to_dict()


@router.post("/control/queue/backlog-slo/policy")
def set_backlog_policy(body: BacklogPolicyRequest, plane: ControlPlane = Depends(get_plane)):
    policy = plane.backlog.set_policy(
        body.threshold,
        warning_percent=body.warning_percent,
        recovery_percent=body.recovery_percent,
        projection_seconds=body.projection_seconds,
    )
    return policy.to_dict()


@router.get("/control/queue/backlog-slo/status")
def backlog_status(limit: int = Query(100), plane: ControlPlane = Depends(get_plane)):
    """Take an on-demand sample, then return it with recent history."""
    latest = plane.backlog.sample()
    return {
        "policy": plane.backlog.policy().to_dict(),
        "latest": latest.to_dict(),
        "history": [s.to_dict() for s in plane.backlog.history(limit)],
    }


# -----------------------------------------------------------------------------
# Runs and Events
# -----------------------------------------------------------------------------
@router.get("/runs")
def list_runs(limit: int = Query(100), plane: ControlPlane = Depends(get_plane)):
    return [r.to_dict() for r in plane.runs.list_runs(limit)]


@router.post("/runs", status_code=201)
def record_run(body: RunRequest, plane: ControlPlane = Depends(get_plane)):
    run = RunRecord(
        run_id=body.id,
        status=body.status,
        started_at=body.started_at,
        ended_at=body.ended_at,
        config_path=body.config_path,
        job_id=body.job_id,
        results=tuple(ResourceResult(**r.model_dump()) for r in body.results),
    )
    return plane.runs.append(run, plane.request_context()).to_dict()


@router.get("/runs/{run_id}")
def get_run(run_id: str, plane: ControlPlane = Depends(get_plane)):
    return plane.runs.get_run(run_id).to_dict()


@router.get("/events")
def list_events(
    since: Optional[str] = Query(None),
    until: Optional[str] = Query(None),
    type_prefix: str = Query(""),
    contains: str = Query(""),
    limit: int = Query(200),
    desc: bool = Query(False),
    plane: ControlPlane = Depends(get_plane),
):
    try:
        since_ts = parse_ts(since)
        until_ts = parse_ts(until)
    except ValueError:
        raise InvalidInput("since and until must be RFC3339 timestamps")
    events = plane.events.query(since_ts, until_ts, type_prefix, contains, limit, desc)
    return [e.to_dict() for e in events]


@router.get("/events/verify")
def verify_events(plane: ControlPlane = Depends(get_plane)):
    return plane.events.verify_integrity()


# -----------------------------------------------------------------------------
# Drift Policies
# -----------------------------------------------------------------------------
@router.post("/drift/suppressions", status_code=201)
def add_suppression(body: DriftPolicyRequest, plane: ControlPlane = Depends(get_plane)):
    item = plane.policies.add_suppression(body.to_input())
    plane.events.emit("drift.suppression.created", "drift suppression created", item.to_dict())
    return item.to_dict()


@router.get("/drift/suppressions")
def list_suppressions(include_expired: bool = Query(False), plane: ControlPlane = Depends(get_plane)):
    return [i.to_dict() for i in plane.policies.list_suppressions(include_expired)]


@router.delete("/drift/suppressions/{policy_id}")
def delete_suppression(policy_id: str, plane: ControlPlane = Depends(get_plane)):
    if not plane.policies.delete_suppression(policy_id):
        raise NotFound("drift suppression not found")
    plane.events.emit("drift.suppression.deleted", "drift suppression deleted", {"id": policy_id})
    return {"status": "deleted", "id": policy_id}


@router.post("/drift/allowlists", status_code=201)
def add_allowlist(body: DriftPolicyRequest, plane: ControlPlane = Depends(get_plane)):
    item = plane.policies.add_allowlist(body.to_input())
    plane.events.emit("drift.allowlist.created", "drift allowlist entry created", item.to_dict())
    return item.to_dict()


@router.get("/drift/allowlists")
def list_allowlists(include_expired: bool = Query(False), plane: ControlPlane = Depends(get_plane)):
    return [i.to_dict() for i in plane.policies.list_allowlist(include_expired)]


@router.delete("/drift/allowlists/{policy_id}")
def delete_allowlist(policy_id: str, plane: ControlPlane = Depends(get_plane)):
    if not plane.policies.delete_allowlist(policy_id):
        raise NotFound("drift allowlist entry not found")
    plane.events.emit("drift.allowlist.deleted", "drift allowlist entry deleted", {"id": policy_id})
    return {"status": "deleted", "id": policy_id}


@router.get("/drift/history")
def get_drift_history(
    hours: int = Query(0),
    limit: int = Query(0),
    host: str = Query(""),
    type: str = Query(""),
    resource_id: str = Query(""),
    include_unchanged: bool = Query(False),
    include_suppressed: bool = Query(False),
    include_allowlisted: bool = Query(False),
    plane: ControlPlane = Depends(get_plane),
):
    query = DriftHistoryQuery(
        hours=hours,
        limit=limit,
        host=host,
        type=type,
        resource_id=resource_id,
        include_unchanged=include_unchanged,
        include_suppressed=include_suppressed,
        include_allowlisted=include_allowlisted,
    )
    return drift_history(plane.runs, plane.policies, query, plane.request_context()).to_dict()


@router.get("/drift/insights")
def get_drift_insights(hours: int = Query(0), plane: ControlPlane = Depends(get_plane)):
    """Drift trends by host and resource type; hours defaults to 24, capped at 720."""
    return drift_insights(plane.runs, plane.policies, hours, plane.request_context()).to_dict()


@router.post("/drift/remediate")
def remediate_drift(body: RemediationRequest, plane: ControlPlane = Depends(get_plane)):
    """
    Propose (and by default enqueue) a drift remediation.

    200 noop/planned, 202 enqueued, 409 blocked.
    """
    report = plane.planner.propose(
        body.config_path,
        hours=DEFAULT_WINDOW_HOURS if body.hours is None else body.hours,
        priority=body.priority,
        max_changes=body.max_changes or DEFAULT_MAX_CHANGES,
        safe_mode=body.safe_mode,
        force=body.force,
        auto_enqueue=True if body.auto_enqueue is None else body.auto_enqueue,
        ctx=plane.request_context(),
    )
    status_code = {
        RemediationStatus.ENQUEUED: 202,
        RemediationStatus.BLOCKED: 409,
    }.get(report.status, 200)
    return JSONResponse(status_code=status_code, content=report.to_dict())


# -----------------------------------------------------------------------------
# Backup / Restore
# -----------------------------------------------------------------------------
@router.post("/backup")
def create_backup(body: Optional[BackupRequest] = None, plane: ControlPlane = Depends(get_plane)):
    body = body or BackupRequest()
    result = plane.backups.create(body.include_runs, body.include_events, body.prefix)
    plane.events.emit("backup.created", "backup snapshot written", {"key": result["object"]["key"]})
    return result


@router.get("/backups")
def list_backups(prefix: str = Query(""), limit: int = Query(200), plane: ControlPlane = Depends(get_plane)):
    return [i.to_dict() for i in plane.backups.list(prefix, limit)]


@router.post("/restore")
def restore_backup(body: RestoreRequest, plane: ControlPlane = Depends(get_plane)):
    result = plane.backups.restore(
        key=body.key,
        at_or_before=body.at_or_before,
        prefix=body.prefix,
        verify_only=body.verify_only,
    )
    return result
