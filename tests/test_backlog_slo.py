"""
Backlog SLO Tests

Coverage:
- Policy validation and derived thresholds
- State classification with hysteresis
- Queue-driven on-demand sampling and newest-first history
"""

import time

import pytest

from control_plane.backlog_slo import (
    BacklogPolicy,
    BacklogSampler,
    BacklogSLOMonitor,
    BacklogState,
    classify,
)
from control_plane.errors import InvalidInput


class TestBacklogPolicy:
    """Policy validation."""

    def test_thresholds_use_floor(self):
        policy = BacklogPolicy(threshold=15, warning_percent=70, recovery_percent=50)
        assert policy.warning_threshold == 10
        assert policy.recovery_threshold == 7

    @pytest.mark.parametrize("kwargs", [
        {"threshold": 0},
        {"threshold": 10, "warning_percent": 100},
        {"threshold": 10, "warning_percent": 60, "recovery_percent": 60},
        {"threshold": 10, "projection_seconds": 10},
    ])
    def test_invalid_policies(self, kwargs):
        with pytest.raises(InvalidInput):
            BacklogPolicy(**kwargs).validate()

    def test_set_policy_defaults(self, queue):
        monitor = BacklogSLOMonitor(queue, threshold=100)
        policy = monitor.set_policy(40)
        assert (policy.warning_percent, policy.recovery_percent) == (70, 50)
        assert monitor.policy().threshold == 40


class TestClassification:
    """normal / warning / saturated with hysteretic recovery."""

    policy = BacklogPolicy(threshold=10, warning_percent=80, recovery_percent=50)

    def test_plain_states(self):
        assert classify(3, self.policy, None) == BacklogState.NORMAL
        assert classify(8, self.policy, None) == BacklogState.WARNING
        assert classify(10, self.policy, None) == BacklogState.SATURATED

    def test_saturated_held_above_recovery(self):
        assert classify(6, self.policy, BacklogState.SATURATED) == BacklogState.SATURATED

    def test_recovery_below_threshold(self):
        assert classify(4, self.policy, BacklogState.SATURATED) == BacklogState.NORMAL

    def test_warning_held_above_recovery(self):
        assert classify(5, self.policy, BacklogState.WARNING) == BacklogState.WARNING


class TestMonitor:
    """Sampling against a live queue."""

    def test_backlog_transitions_with_hysteresis(self, queue):
        monitor = BacklogSLOMonitor(queue, threshold=100)
        monitor.set_policy(10, warning_percent=80, recovery_percent=50)
        monitor.attach()

        for i in range(8):
            queue.enqueue(f"/c/{i}.yaml")
        assert monitor.latest().state == BacklogState.WARNING

        for i in range(8, 10):
            queue.enqueue(f"/c/{i}.yaml")
        assert monitor.latest().state == BacklogState.SATURATED

        for _ in range(5):
            queue.claim_next()
        assert monitor.latest().pending == 5
        assert monitor.latest().state == BacklogState.SATURATED

        queue.claim_next()
        latest = monitor.latest()
        assert latest.pending == 4
        assert latest.state == BacklogState.NORMAL

    def test_history_newest_first(self, queue):
        monitor = BacklogSLOMonitor(queue, threshold=10)
        monitor.sample()
        queue.enqueue("/c/a.yaml")
        monitor.sample()
        history = monitor.history(10)
        assert [s.pending for s in history] == [1, 0]
        assert len(monitor.history(1)) == 1

    def test_history_is_bounded(self, queue):
        monitor = BacklogSLOMonitor(queue, threshold=10, history_limit=3)
        for _ in range(5):
            monitor.sample()
        assert len(monitor.history(100)) == 3

    def test_sample_reports_priority_breakdown(self, queue):
        monitor = BacklogSLOMonitor(queue, threshold=10)
        queue.enqueue("/c/a.yaml", priority="high")
        queue.enqueue("/c/b.yaml", priority="low")
        sample = monitor.sample().to_dict()
        assert sample["pending_high"] == 1
        assert sample["pending_low"] == 1
        assert sample["state"] == "normal"

    def test_sampler_start_stop(self, queue):
        monitor = BacklogSLOMonitor(queue, threshold=10)
        sampler = BacklogSampler(monitor, interval_seconds=0.01)
        sampler.start()
        assert sampler.running
        deadline = time.monotonic() + 5
        while monitor.latest() is None and time.monotonic() < deadline:
            time.sleep(0.01)
        sampler.stop()
        assert not sampler.running
        assert monitor.latest() is not None
