"""Tests for the flat-file session record store."""

import threading
from pathlib import Path

import pytest

from agent_orchestrator.errors import StaleRecord
from agent_orchestrator.session_store import (
    SessionStore,
    parse_record,
    serialize_record,
    validate_session_id,
)


class TestRecordFormat:
    """Tests for parse_record / serialize_record."""

    def test_parse_skips_comments_blanks_and_keyless_lines(self):
        content = "# header\n\nproject=app\n=orphan\nnoequals\nstatus = working \n"
        assert parse_record(content) == {"project": "app", "status": "working"}

    def test_only_first_equals_splits(self):
        record = parse_record("summary=a=b=c\n")
        assert record["summary"] == "a=b=c"

    def test_serialize_drops_empty_values_and_flattens_newlines(self):
        text = serialize_record({"project": "app", "pr": "", "summary": "line1\nline2"})
        assert text == "project=app\nsummary=line1 line2\n"

    def test_round_trip_preserves_unknown_keys(self):
        record = {"project": "app", "customKey": "kept"}
        assert parse_record(serialize_record(record)) == record


class TestValidateSessionId:
    """Tests for session ID validation."""

    @pytest.mark.parametrize("session_id", ["app-1", "my_app-orchestrator", "A9"])
    def test_accepts_safe_ids(self, session_id):
        validate_session_id(session_id)

    @pytest.mark.parametrize("session_id", ["", "../etc", "a b", "a/b", "a.b"])
    def test_rejects_unsafe_ids(self, session_id):
        with pytest.raises(ValueError):
            validate_session_id(session_id)


class TestReserve:
    """Tests for atomic reservation."""

    def test_first_reserve_wins(self, tmp_path: Path):
        store = SessionStore(tmp_path / "sessions")
        assert store.reserve("app-1") is True
        assert store.reserve("app-1") is False
        assert store.read("app-1") == {}

    def test_reserve_sees_project_subdirectory_layout(self, tmp_path: Path):
        sessions = tmp_path / "sessions"
        (sessions / "app-sessions").mkdir(parents=True)
        (sessions / "app-sessions" / "app-1").write_text("project=app\n")
        store = SessionStore(sessions)

        assert store.reserve("app-1") is False

    def test_concurrent_reservations_have_one_winner(self, tmp_path: Path):
        store = SessionStore(tmp_path / "sessions")
        results = []
        barrier = threading.Barrier(8)

        def attempt():
            barrier.wait()
            results.append(store.reserve("app-7"))

        threads = [threading.Thread(target=attempt) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results.count(True) == 1

    def test_release_removes_reservation_without_archiving(self, tmp_path: Path):
        store = SessionStore(tmp_path / "sessions")
        store.reserve("app-1")
        store.release("app-1")

        assert store.read("app-1") is None
        assert store.list_archived() == []


class TestReadWrite:
    """Tests for read, write and update."""

    def test_write_then_read(self, tmp_path: Path):
        store = SessionStore(tmp_path / "sessions")
        store.write("app-1", {"project": "app", "status": "working"})
        assert store.read("app-1") == {"project": "app", "status": "working"}

    def test_read_missing_returns_none(self, tmp_path: Path):
        store = SessionStore(tmp_path / "sessions")
        assert store.read("app-404") is None

    def test_read_from_project_subdirectory(self, tmp_path: Path):
        sessions = tmp_path / "sessions"
        (sessions / "app-sessions").mkdir(parents=True)
        (sessions / "app-sessions" / "app-3").write_text("project=app\nstatus=working\n")
        store = SessionStore(sessions)

        assert store.read("app-3")["status"] == "working"
        assert store.list() == ["app-3"]

    def test_write_rewrites_subdirectory_record_in_place(self, tmp_path: Path):
        sessions = tmp_path / "sessions"
        legacy = sessions / "app-sessions" / "app-3"
        legacy.parent.mkdir(parents=True)
        legacy.write_text("project=app\n")
        store = SessionStore(sessions)

        store.update("app-3", {"status": "ci_failed"})

        assert "status=ci_failed" in legacy.read_text()
        assert not (sessions / "app-3").exists()

    def test_update_merges_and_empty_value_removes_key(self, tmp_path: Path):
        store = SessionStore(tmp_path / "sessions")
        store.write("app-1", {"project": "app", "status": "working", "pr": "url"})

        merged = store.update("app-1", {"status": "ci_failed", "pr": "", "summary": None})

        assert merged == {"project": "app", "status": "ci_failed"}
        assert store.read("app-1") == merged

    def test_concurrent_updates_to_different_keys_all_land(self, tmp_path: Path):
        store = SessionStore(tmp_path / "sessions")
        store.write("app-1", {"project": "app"})

        threads = [
            threading.Thread(target=store.update, args=("app-1", {f"k{i}": str(i)}))
            for i in range(10)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        record = store.read("app-1")
        assert all(record[f"k{i}"] == str(i) for i in range(10))

    def test_corrupt_record_is_stale(self, tmp_path: Path):
        sessions = tmp_path / "sessions"
        sessions.mkdir()
        (sessions / "app-1").write_bytes(b"project=app\x00\x00")
        store = SessionStore(sessions)

        assert store.read("app-1") is None
        with pytest.raises(StaleRecord):
            store.read_strict("app-1")


class TestDeleteAndList:
    """Tests for delete/archive and listing."""

    def test_delete_archives_then_removes(self, tmp_path: Path):
        store = SessionStore(tmp_path / "sessions")
        store.write("app-1", {"project": "app", "status": "killed"})

        store.delete("app-1")

        assert store.read("app-1") is None
        assert store.list_archived("app") == ["app-1"]
        assert store.read_archived("app-1")["status"] == "killed"

    def test_delete_drops_lock_and_lock_file(self, tmp_path: Path):
        store = SessionStore(tmp_path / "sessions")
        store.write("app-1", {"project": "app"})
        with store.lock("app-1"):
            pass
        lock_file = tmp_path / "sessions" / ".locks" / "app-1.lock"
        assert lock_file.exists()

        store.delete("app-1")

        assert not lock_file.exists()
        assert "app-1" not in store._locks

    def test_lock_outlives_delete_inside_the_same_lock(self, tmp_path: Path):
        store = SessionStore(tmp_path / "sessions")
        store.write("app-1", {"project": "app"})
        lock_file = tmp_path / "sessions" / ".locks" / "app-1.lock"

        with store.lock("app-1"):
            store.delete("app-1")
            assert lock_file.exists()
            assert "app-1" in store._locks

        assert not lock_file.exists()
        assert "app-1" not in store._locks

    def test_delete_missing_is_noop(self, tmp_path: Path):
        store = SessionStore(tmp_path / "sessions")
        store.delete("app-9")
        assert store.list() == []

    def test_list_skips_archive_and_lock_files(self, tmp_path: Path):
        store = SessionStore(tmp_path / "sessions")
        store.write("app-1", {"project": "app"})
        store.write("app-2", {"project": "app"})
        store.delete("app-2")
        with store.lock("app-1"):
            pass

        assert store.list() == ["app-1"]

    def test_list_on_missing_directory(self, tmp_path: Path):
        assert SessionStore(tmp_path / "nope").list() == []
