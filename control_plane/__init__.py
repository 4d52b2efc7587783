"""
Masterchef Control Plane

HTTP control plane for converge orchestration. Turns externally-originated
intents into durable, priority-scheduled jobs and feeds executed runs back
into drift history, insights, remediation and backup views.

Converge Request Pipeline:
- Trigger Router: single ingress for converge intents (manual, GitOps,
  remediation, external events), normalization, idempotency dedup,
  optional auto-enqueue
- Job Queue: FIFO-within-priority queue with duplicate suppression,
  emergency stop, change freeze, safe drain and durable state
- Backlog SLO: observer over queue depth (normal / warning / saturated)
  with hysteretic recovery
- Drift Policy Store: suppressions and allowlists with scope matching
- Run Store: append-only NDJSON record of executed runs
- Remediation Planner: risk-gated drift remediation proposals
- Event Log: append-only, hash-chained feed of structured events

CONSTRAINTS:
- Single-writer control-plane process with a persistent store
- Every store owns its lock; handles are passed explicitly, no singletons
- Worker execution semantics are opaque to the control plane
"""

__version__ = "1.0.0"
SERVICE_NAME = "masterchef-control-plane"

COMPONENTS = [
    "trigger_router",
    "job_queue",
    "backlog_slo",
    "drift_policy",
    "run_store",
    "remediation_planner",
    "event_log",
    "drift_history",
    "drift_insights",
    "backup",
    "worker_pool",
]
