"""
Backup and Restore Tests

Coverage:
- Snapshot creation and listing
- Key resolution (explicit and point-in-time)
- Verify-only restore and full restore
- Rejection of corrupt snapshots and unsafe keys
"""

import json
import time

import pytest

from control_plane.backup import BackupManager, sanitize_key
from control_plane.errors import InvalidInput, NotFound
from control_plane.run_store import RunStore
from control_plane.timeutil import format_ts

from .conftest import make_run, utc


@pytest.fixture
def backups(tmp_path, run_store, events):
    return BackupManager(tmp_path / "objects", run_store, events)


class TestKeys:

    def test_sanitize(self):
        assert sanitize_key(" /backups/snapshot-1.json ") == "backups/snapshot-1.json"
        assert sanitize_key("") == ""

    @pytest.mark.parametrize("key", ["../etc/passwd", "backups/../../x.json"])
    def test_traversal_rejected(self, key):
        with pytest.raises(InvalidInput):
            sanitize_key(key)


class TestCreate:

    def test_snapshot_contents(self, tmp_path, backups, run_store, events):
        run_store.append(make_run("run-1", changed=1))
        run_store.append(make_run("run-2"))
        events.emit("test.event", "hello")

        result = backups.create()
        key = result["object"]["key"]
        assert key.startswith("backups/snapshot-")
        assert (result["snapshot_runs"], result["snapshot_events"]) == (2, 1)

        document = json.loads((tmp_path / "objects" / key).read_text())
        assert document["version"] == "v1"
        assert {r["id"] for r in document["runs"]} == {"run-1", "run-2"}

    def test_selecting_nothing_selects_everything(self, backups, run_store, events):
        run_store.append(make_run("run-1"))
        events.emit("test.event", "hello")
        result = backups.create(include_runs=False, include_events=False)
        assert (result["snapshot_runs"], result["snapshot_events"]) == (1, 1)

    def test_runs_only(self, backups, run_store, events):
        run_store.append(make_run("run-1"))
        events.emit("test.event", "hello")
        result = backups.create(include_runs=True, include_events=False)
        assert (result["snapshot_runs"], result["snapshot_events"]) == (1, 0)

    def test_snapshot_holds_every_run(self, tmp_path, events):
        runs = RunStore()
        for i in range(250):
            runs.append(make_run(f"run-{i:03d}", started_at=utc(minutes=-i)))
        manager = BackupManager(tmp_path / "objects", runs, events)

        result = manager.create(include_runs=True, include_events=False)

        assert result["snapshot_runs"] == 250
        document = json.loads((tmp_path / "objects" / result["object"]["key"]).read_text())
        assert len(document["runs"]) == 250

    def test_list_newest_first(self, backups):
        first = backups.create()["object"]["key"]
        time.sleep(0.01)
        second = backups.create()["object"]["key"]
        assert [i.key for i in backups.list()] == [second, first]
        assert backups.list(prefix="elsewhere") == []


class TestRestore:

    def test_restore_replaces_runs_and_events(self, backups, run_store, events):
        run_store.append(make_run("run-1", changed=1))
        run_store.append(make_run("run-2"))
        events.emit("test.event", "before backup")
        key = backups.create()["object"]["key"]

        run_store.append(make_run("run-3"))
        events.emit("test.event", "after backup")

        result = backups.restore(key=key)
        assert result["status"] == "restored"
        assert (result["restored_runs"], result["restored_events"]) == (2, 1)
        assert {r.run_id for r in run_store.list_runs()} == {"run-1", "run-2"}
        assert [e.message for e in events.list()] == ["before backup", "backup snapshot restored"]
        assert events.verify_integrity()["valid"]

    def test_verify_only_changes_nothing(self, backups, run_store):
        run_store.append(make_run("run-1"))
        key = backups.create()["object"]["key"]
        run_store.append(make_run("run-2"))

        result = backups.restore(key=key, verify_only=True)
        assert result["status"] == "verified"
        assert result["runs"] == 1
        assert run_store.count() == 2

    def test_point_in_time(self, backups, run_store):
        run_store.append(make_run("run-1"))
        first = backups.create()["object"]["key"]
        time.sleep(0.01)
        cutoff = format_ts(utc())
        time.sleep(0.01)
        run_store.append(make_run("run-2"))
        backups.create()

        assert backups.resolve_key(at_or_before=cutoff) == first
        backups.restore(at_or_before=cutoff)
        assert [r.run_id for r in run_store.list_runs()] == ["run-1"]

    def test_nothing_before_timestamp(self, backups):
        backups.create()
        with pytest.raises(NotFound):
            backups.resolve_key(at_or_before="2000-01-01T00:00:00Z")

    def test_key_or_timestamp_required(self, backups):
        with pytest.raises(InvalidInput):
            backups.restore()

    def test_bad_timestamp(self, backups):
        with pytest.raises(InvalidInput):
            backups.restore(at_or_before="yesterday")

    def test_unknown_key(self, backups):
        with pytest.raises(NotFound):
            backups.restore(key="backups/snapshot-1.json")

    @pytest.mark.parametrize("content", ["{not json", json.dumps({"version": "v0"}), json.dumps([1, 2])])
    def test_corrupt_snapshot_rejected(self, tmp_path, backups, run_store, content):
        run_store.append(make_run("run-1"))
        path = tmp_path / "objects" / "backups" / "snapshot-5.json"
        path.parent.mkdir(parents=True)
        path.write_text(content)
        with pytest.raises(InvalidInput):
            backups.restore(key="backups/snapshot-5.json")
        assert run_store.count() == 1
