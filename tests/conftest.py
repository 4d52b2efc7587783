"""
Pytest configuration for control plane tests.

Provides:
1. Settings rooted in a per-test temporary directory
2. Store fixtures wired the same way the application wires them
3. A TestClient with background threads disabled for determinism
"""

import pytest
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import List, Optional

from fastapi.testclient import TestClient

from control_plane.config import ControlPlaneSettings
from control_plane.drift_policy import DriftPolicyStore
from control_plane.events import EventLog
from control_plane.job_queue import JobQueue
from control_plane.main import create_app
from control_plane.run_store import ResourceResult, RunRecord, RunStatus, RunStore


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------
def utc(**delta) -> datetime:
    """Now plus/minus a timedelta, UTC."""
    return datetime.now(timezone.utc) + timedelta(**delta)


def make_run(
    run_id: str,
    started_at: Optional[datetime] = None,
    status: RunStatus = RunStatus.SUCCEEDED,
    host: str = "web-1",
    changed: int = 0,
    unchanged: int = 0,
    id_prefix: str = "res",
) -> RunRecord:
    """Build a finalized run with `changed` drifted and `unchanged` clean results."""
    started = started_at or utc(hours=-1)
    results: List[ResourceResult] = []
    for i in range(changed):
        results.append(ResourceResult(host=host, type="file", resource_id=f"{id_prefix}-{i}", changed=True))
    for i in range(unchanged):
        results.append(ResourceResult(host=host, type="package", resource_id=f"pkg-{i}"))
    return RunRecord(
        run_id=run_id,
        status=status,
        started_at=started,
        ended_at=started + timedelta(seconds=30),
        config_path="/etc/masterchef/site.yaml",
        results=tuple(results),
    )


# -----------------------------------------------------------------------------
# Fixtures
# -----------------------------------------------------------------------------
@pytest.fixture
def settings(tmp_path: Path) -> ControlPlaneSettings:
    """Settings with background threads disabled."""
    return ControlPlaneSettings(
        data_dir=tmp_path / "data",
        base_dir=tmp_path / "configs",
        start_workers=False,
        start_backlog_sampler=False,
        request_timeout_seconds=30,
    )


@pytest.fixture
def queue(tmp_path: Path) -> JobQueue:
    return JobQueue(state_file=tmp_path / "jobs" / "queue_state.json")


@pytest.fixture
def events() -> EventLog:
    return EventLog(limit=1000)


@pytest.fixture
def run_store(tmp_path: Path) -> RunStore:
    return RunStore(tmp_path / "runs")


@pytest.fixture
def policies(tmp_path: Path) -> DriftPolicyStore:
    return DriftPolicyStore(tmp_path / "drift")


@pytest.fixture
def app(settings):
    return create_app(settings)


@pytest.fixture
def client(app):
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def plane(app):
    return app.state.control_plane
