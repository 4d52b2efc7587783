"""
Run Store Tests

Coverage:
- Durable append and duplicate rejection
- Ordering and bounded listing
- Atomic whole-log replacement
- Segment rotation and reload
- Window scans with deadlines and cancellation
"""

import json
import os
from pathlib import Path

import pytest

from control_plane.context import RequestContext
from control_plane.errors import Conflict, Internal, InvalidInput, NotFound, RequestCancelled
from control_plane.run_store import CURRENT_FILE, RunRecord, RunStatus, RunStore

from .conftest import make_run, utc


class ExpiringContext(RequestContext):
    """Context whose deadline passes after a fixed number of polls."""

    def __init__(self, polls_before_expiry: int):
        super().__init__()
        self._polls = polls_before_expiry

    def check(self) -> None:
        if self.cancelled:
            raise RequestCancelled("request cancelled")

    def expired(self) -> bool:
        self._polls -= 1
        return self._polls < 0


class TestRunRecord:

    def test_empty_id_rejected(self):
        with pytest.raises(InvalidInput):
            RunRecord(run_id=" ", status=RunStatus.SUCCEEDED, started_at=utc())

    def test_end_before_start_rejected(self):
        with pytest.raises(InvalidInput):
            RunRecord(run_id="r", status=RunStatus.SUCCEEDED, started_at=utc(), ended_at=utc(hours=-1))

    def test_from_dict_falls_back_to_ended_at(self):
        run = RunRecord.from_dict({"id": "r1", "status": "failed", "ended_at": "2026-01-02T03:04:05Z"})
        assert run.started_at == run.ended_at
        assert run.status == RunStatus.FAILED


class TestAppend:

    def test_append_and_get(self, run_store):
        run = make_run("run-1", changed=2)
        run_store.append(run)
        assert run_store.get_run("run-1") == run
        assert run_store.count() == 1

    def test_duplicate_id_conflicts(self, run_store):
        run_store.append(make_run("run-1"))
        with pytest.raises(Conflict):
            run_store.append(make_run("run-1"))
        assert run_store.count() == 1

    def test_missing_run(self, run_store):
        with pytest.raises(NotFound):
            run_store.get_run("nope")

    def test_cancelled_append_writes_nothing(self, run_store):
        ctx = RequestContext()
        ctx.cancel()
        with pytest.raises(RequestCancelled):
            run_store.append(make_run("run-1"), ctx)
        assert run_store.count() == 0

    def test_one_line_per_run(self, tmp_path, run_store):
        run_store.append(make_run("run-1"))
        run_store.append(make_run("run-2"))
        lines = (tmp_path / "runs" / "runs.jsonl").read_text().splitlines()
        assert [json.loads(line)["id"] for line in lines] == ["run-1", "run-2"]


class TestListing:

    def test_newest_first_with_id_tiebreak(self, run_store):
        same = utc(hours=-1)
        run_store.append(make_run("b", started_at=same))
        run_store.append(make_run("a", started_at=same))
        run_store.append(make_run("old", started_at=utc(hours=-5)))
        run_store.append(make_run("new", started_at=utc(minutes=-1)))
        assert [r.run_id for r in run_store.list_runs()] == ["new", "a", "b", "old"]
        assert [r.run_id for r in run_store.list_runs(2)] == ["new", "a"]


class TestReplace:

    def test_replace_swaps_contents(self, tmp_path, run_store):
        run_store.append(make_run("run-1"))
        assert run_store.replace_runs([make_run("run-9"), make_run("run-8")]) == 2
        assert {r.run_id for r in run_store.list_runs()} == {"run-8", "run-9"}
        reloaded = RunStore(tmp_path / "runs")
        assert {r.run_id for r in reloaded.list_runs()} == {"run-8", "run-9"}

    def test_duplicate_ids_leave_log_intact(self, run_store):
        run_store.append(make_run("run-1"))
        with pytest.raises(InvalidInput):
            run_store.replace_runs([make_run("x"), make_run("x")])
        assert [r.run_id for r in run_store.list_runs()] == ["run-1"]

    def test_replace_with_empty_set(self, run_store):
        run_store.append(make_run("run-1"))
        run_store.replace_runs([])
        assert run_store.count() == 0


class TestRotation:

    def test_segments_rotate_and_reload(self, tmp_path):
        store = RunStore(tmp_path / "runs", max_segment_bytes=200)
        for i in range(4):
            store.append(make_run(f"run-{i}", changed=1))
        assert list((tmp_path / "runs").glob("runs-*.jsonl"))

        reloaded = RunStore(tmp_path / "runs", max_segment_bytes=200)
        assert reloaded.count() == 4

    def test_replace_drops_rotated_segments(self, tmp_path):
        store = RunStore(tmp_path / "runs", max_segment_bytes=200)
        for i in range(4):
            store.append(make_run(f"run-{i}", changed=1))
        store.replace_runs([make_run("only")])
        assert not list((tmp_path / "runs").glob("runs-*.jsonl"))
        assert RunStore(tmp_path / "runs").count() == 1

    def test_replace_survives_undeletable_segments(self, tmp_path, monkeypatch):
        runs_dir = tmp_path / "runs"
        store = RunStore(runs_dir, max_segment_bytes=200)
        for i in range(4):
            store.append(make_run(f"run-{i}", changed=1))
        assert list(runs_dir.glob("runs-*.jsonl"))

        real_unlink = Path.unlink

        def failing_unlink(self, *args, **kwargs):
            if self.name.startswith("runs-"):
                raise PermissionError(f"cannot remove {self.name}")
            return real_unlink(self, *args, **kwargs)

        monkeypatch.setattr(Path, "unlink", failing_unlink)
        store.replace_runs([make_run("new-1")])

        assert list(runs_dir.glob("runs-*.jsonl"))
        reloaded = RunStore(runs_dir, max_segment_bytes=200)
        assert [r.run_id for r in reloaded.list_runs(0)] == ["new-1"]

    def test_failed_commit_keeps_previous_log(self, tmp_path, monkeypatch):
        runs_dir = tmp_path / "runs"
        store = RunStore(runs_dir)
        store.append(make_run("run-1"))

        real_replace = os.replace

        def failing_replace(src, dst):
            if Path(dst).name == CURRENT_FILE:
                raise OSError("disk full")
            return real_replace(src, dst)

        monkeypatch.setattr(os, "replace", failing_replace)
        with pytest.raises(Internal):
            store.replace_runs([make_run("new-1")])

        assert [r.run_id for r in store.list_runs()] == ["run-1"]
        assert not list(runs_dir.glob("gen-*"))
        assert [r.run_id for r in RunStore(runs_dir).list_runs()] == ["run-1"]

    def test_appends_after_replace_land_in_current_generation(self, tmp_path):
        runs_dir = tmp_path / "runs"
        store = RunStore(runs_dir)
        store.append(make_run("run-1"))
        store.replace_runs([make_run("run-2")])
        store.append(make_run("run-3"))

        assert not (runs_dir / "runs.jsonl").exists()
        generation = (runs_dir / CURRENT_FILE).read_text().strip()
        lines = (runs_dir / generation / "runs.jsonl").read_text().splitlines()
        assert [json.loads(line)["id"] for line in lines] == ["run-2", "run-3"]
        assert {r.run_id for r in RunStore(runs_dir).list_runs()} == {"run-2", "run-3"}

    def test_malformed_lines_are_skipped(self, tmp_path):
        runs_dir = tmp_path / "runs"
        runs_dir.mkdir()
        good = json.dumps(make_run("run-1").to_dict())
        (runs_dir / "runs.jsonl").write_text(f"{good}\nnot json\n")
        assert RunStore(runs_dir).count() == 1


class TestScanWindow:

    def test_filters_by_reference_time(self, run_store):
        run_store.append(make_run("recent", started_at=utc(hours=-1)))
        run_store.append(make_run("stale", started_at=utc(hours=-30)))
        window = run_store.scan_window(utc(hours=-24))
        assert [r.run_id for r in window.runs] == ["recent"]
        assert window.examined == 2
        assert not window.truncated

    def test_deadline_truncates(self, run_store):
        for i in range(5):
            run_store.append(make_run(f"run-{i}", started_at=utc(minutes=-i)))
        window = run_store.scan_window(utc(hours=-24), ExpiringContext(2))
        assert window.truncated
        assert window.examined == 2
        assert len(window.runs) == 2

    def test_cancellation_raises(self, run_store):
        run_store.append(make_run("run-1"))
        ctx = RequestContext()
        ctx.cancel()
        with pytest.raises(RequestCancelled):
            run_store.scan_window(utc(hours=-24), ctx)
