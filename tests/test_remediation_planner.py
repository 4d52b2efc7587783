"""
Drift Remediation Planner and Drift History Tests

Coverage:
- Window clamping
- Candidate counting with suppression / allowlist precedence
- Risk gating in safe mode
- Enqueue outcomes and queue-side blocking
- Drift history filters and caps
"""

import pytest

from control_plane.drift_history import DriftHistoryQuery, drift_history
from control_plane.drift_policy import DriftPolicyInput
from control_plane.errors import DeadlineExceeded, MissingConfigPath
from control_plane.job_queue import JobPriority, JobState
from control_plane.remediation_planner import (
    REASON_FAILED_RUNS,
    REASON_TOO_MANY_CHANGES,
    RemediationPlanner,
    RemediationStatus,
    RiskLevel,
)
from control_plane.run_store import RunStatus

from .conftest import make_run, utc
from .test_run_store import ExpiringContext


@pytest.fixture
def planner(tmp_path, run_store, policies, queue, events):
    return RemediationPlanner(run_store, policies, queue, base_dir=tmp_path / "configs", events=events)


class TestWindow:

    @pytest.mark.parametrize("hours,expected", [(0, 1), (-5, 1), (24, 24), (10000, 720)])
    def test_window_is_clamped(self, planner, hours, expected):
        report = planner.propose("site.yaml", hours=hours)
        assert report.window_hours == expected

    def test_runs_outside_window_ignored(self, planner, run_store):
        run_store.append(make_run("old", started_at=utc(hours=-48), changed=3))
        report = planner.propose("/site.yaml", hours=24)
        assert report.status == RemediationStatus.NOOP
        assert report.candidate_changes == 0

    def test_missing_config_path(self, planner):
        with pytest.raises(MissingConfigPath):
            planner.propose(" ")


class TestCounting:

    def test_candidates_are_deduplicated(self, planner, run_store):
        run_store.append(make_run("r1", started_at=utc(hours=-2), changed=3))
        run_store.append(make_run("r2", started_at=utc(hours=-1), changed=3, unchanged=4))
        report = planner.propose("/site.yaml", auto_enqueue=False)
        assert report.candidate_changes == 3
        assert report.status == RemediationStatus.PLANNED
        assert report.risk_level == RiskLevel.LOW

    def test_suppression_wins_over_allowlist(self, planner, run_store, policies):
        run_store.append(make_run("r1", changed=2))
        policies.add_suppression(DriftPolicyInput(
            scope_type="host", scope_value="web-1", begin=utc(hours=-3), end=utc(hours=3),
        ))
        policies.add_allowlist(DriftPolicyInput(scope_type="host", scope_value="web-1", begin=utc(hours=-3)))
        report = planner.propose("/site.yaml")
        assert report.suppressed_changes == 2
        assert report.allowlisted_changes == 0
        assert report.status == RemediationStatus.NOOP

    def test_allowlisted_changes_are_not_candidates(self, planner, run_store, policies):
        run_store.append(make_run("r1", changed=2))
        policies.add_allowlist(DriftPolicyInput(
            scope_type="resource_id", scope_value="res-0", begin=utc(hours=-3),
        ))
        report = planner.propose("/site.yaml", auto_enqueue=False)
        assert report.allowlisted_changes == 1
        assert report.candidate_changes == 1


class TestRiskGating:

    def test_safe_mode_blocks_with_both_reasons(self, planner, run_store, queue):
        run_store.append(make_run("r1", changed=3))
        run_store.append(make_run("r2", status=RunStatus.FAILED, started_at=utc(minutes=-30)))
        report = planner.propose("/site.yaml", max_changes=2, safe_mode=True)
        assert report.status == RemediationStatus.BLOCKED
        assert report.risk_level == RiskLevel.HIGH
        assert report.block_reasons == [REASON_TOO_MANY_CHANGES, REASON_FAILED_RUNS]
        assert report.failed_runs == 1
        assert queue.list_jobs() == []

    def test_high_risk_without_safe_mode_still_enqueues(self, planner, run_store):
        run_store.append(make_run("r1", changed=3))
        report = planner.propose("/site.yaml", max_changes=2)
        assert report.risk_level == RiskLevel.HIGH
        assert report.status == RemediationStatus.ENQUEUED

    def test_non_positive_max_changes_uses_default(self, planner):
        assert planner.propose("/site.yaml", max_changes=0).max_changes == 20


class TestEnqueue:

    def test_enqueued_job(self, planner, run_store, queue, events):
        run_store.append(make_run("r1", changed=2))
        report = planner.propose("/site.yaml", priority="high")
        assert report.status == RemediationStatus.ENQUEUED
        job = queue.get(report.job_id)
        assert job.state == JobState.PENDING
        assert job.priority == JobPriority.HIGH
        assert job.idempotency_key.startswith("drift-remediate:")
        emitted = events.query(type_prefix="drift.remediation")
        assert emitted[-1].fields["job_id"] == report.job_id

    def test_repeated_proposals_get_distinct_jobs(self, planner, run_store):
        run_store.append(make_run("r1", changed=2))
        first = planner.propose("/site.yaml")
        second = planner.propose("/site.yaml")
        assert first.job_id != second.job_id

    def test_queue_rejection_reported_as_blocked(self, planner, run_store, queue):
        run_store.append(make_run("r1", changed=2))
        queue.emergency_stop(True, "incident")
        report = planner.propose("/site.yaml")
        assert report.status == RemediationStatus.BLOCKED
        assert report.error_kind == "emergency_stop_active"
        assert "incident" in report.to_dict()["enqueue_error"]

    def test_deadline_before_any_run_raises(self, planner, run_store):
        run_store.append(make_run("r1", changed=2))
        with pytest.raises(DeadlineExceeded):
            planner.propose("/site.yaml", ctx=ExpiringContext(0))

    def test_partial_scan_is_flagged(self, planner, run_store):
        for i in range(3):
            run_store.append(make_run(f"r{i}", started_at=utc(minutes=-i - 1), changed=1, id_prefix=f"x{i}"))
        report = planner.propose("/site.yaml", auto_enqueue=False, ctx=ExpiringContext(1))
        assert report.truncated
        assert report.candidate_changes == 1


class TestDriftHistory:

    def test_changed_results_only_by_default(self, run_store, policies):
        run_store.append(make_run("r1", changed=2, unchanged=3))
        history = drift_history(run_store, policies, DriftHistoryQuery())
        assert history.to_dict()["count"] == 2
        assert {item["resource_type"] for item in history.items} == {"file"}

    def test_include_unchanged(self, run_store, policies):
        run_store.append(make_run("r1", changed=2, unchanged=3))
        history = drift_history(run_store, policies, DriftHistoryQuery(include_unchanged=True))
        assert len(history.items) == 5

    def test_suppressed_hidden_unless_requested(self, run_store, policies):
        run_store.append(make_run("r1", changed=2))
        policies.add_suppression(DriftPolicyInput(
            scope_type="resource_id", scope_value="res-0", begin=utc(hours=-3), end=utc(hours=3),
        ))
        assert len(drift_history(run_store, policies, DriftHistoryQuery()).items) == 1
        history = drift_history(run_store, policies, DriftHistoryQuery(include_suppressed=True))
        flagged = [item for item in history.items if item["suppressed"]]
        assert [item["resource_id"] for item in flagged] == ["res-0"]

    def test_host_filter_is_case_insensitive(self, run_store, policies):
        run_store.append(make_run("r1", host="web-1", changed=1))
        run_store.append(make_run("r2", host="db-1", changed=1))
        history = drift_history(run_store, policies, DriftHistoryQuery(host=" WEB-1 "))
        assert [item["run_id"] for item in history.items] == ["r1"]

    def test_limit_and_caps(self, run_store, policies):
        run_store.append(make_run("r1", changed=5))
        history = drift_history(run_store, policies, DriftHistoryQuery(limit=2))
        assert len(history.items) == 2
        capped = DriftHistoryQuery(hours=100000, limit=10 ** 6).normalized()
        assert (capped.hours, capped.limit) == (2160, 10000)
        defaults = DriftHistoryQuery(hours=0, limit=0).normalized()
        assert (defaults.hours, defaults.limit) == (24, 500)
