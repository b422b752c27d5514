"""Tests for SessionManager: spawn, send, restore, kill and cleanup."""

import threading

import pytest

from agent_orchestrator.config import ConfigError
from agent_orchestrator.errors import (
    DeliveryAmbiguous,
    NotFoundError,
    PluginError,
    ReservationConflict,
    SessionConflictError,
)
from agent_orchestrator.models import ActivityState, PRState, SessionRole, SessionStatus


class TestNaming:
    def test_first_id_is_one(self, manager):
        assert manager.next_session_id("app") == "app-1"

    def test_ids_are_never_reused_after_archive(self, manager):
        first = manager.spawn("app", "1")
        manager.kill(first.id)

        assert manager.next_session_id("app") == "app-2"

    def test_runtime_name_is_namespaced_per_install(self, manager):
        name = manager.runtime_name_for("app-1")
        prefix, _, rest = name.partition("-")
        assert len(prefix) == 12
        assert rest == "app-1"
        assert manager.runtime_name_for("app-1") == name

    def test_orchestrator_id(self, manager):
        assert manager.orchestrator_id("app") == "app-orchestrator"


class TestSpawn:
    """Tests for SessionManager.spawn."""

    def test_spawn_for_issue(self, manager, plugins, store):
        session = manager.spawn("app", "#42")

        assert session.id == "app-1"
        assert session.status == SessionStatus.SPAWNING
        assert session.branch == "feat/issue-42"
        assert session.issue_ref == "#42"
        assert session.agent == "claude-code"

        record = store.read("app-1")
        assert record["project"] == "app"
        assert record["status"] == "spawning"
        assert record["branch"] == "feat/issue-42"
        assert record["worktree"] == session.workspace_path

    def test_spawn_wires_workspace_runtime_and_agent(self, manager, plugins):
        session = manager.spawn("app", "42")

        (created,) = plugins.runtime.created
        assert created.session_id == manager.runtime_name_for(session.id)
        assert created.workspace_path == session.workspace_path
        assert created.environment["AO_SESSION_ID"] == session.id
        assert created.environment["AO_PROJECT_ID"] == "app"
        assert created.environment["AO_ISSUE_ID"] == "42"
        assert created.environment["FAKE_AGENT"] == "1"

        assert plugins.workspace.post_created == [session.workspace_path]
        (launch,) = plugins.agent.launches
        assert "Work on issue #42" in launch.prompt
        assert plugins.agent.post_launched == [session.id]

    def test_spawn_without_issue_uses_session_branch(self, manager):
        session = manager.spawn("app")
        assert session.branch == "session/app-1"
        assert session.issue_ref is None

    def test_sequential_spawns_get_distinct_ids(self, manager):
        ids = [manager.spawn("app", str(n)).id for n in range(1, 4)]
        assert ids == ["app-1", "app-2", "app-3"]

    def test_duplicate_issue_is_rejected(self, manager, plugins):
        first = manager.spawn("app", "42")

        with pytest.raises(SessionConflictError) as exc_info:
            manager.spawn("app", "#42")

        assert exc_info.value.session_id == first.id
        assert len(plugins.runtime.created) == 1

    def test_concurrent_spawns_for_one_issue_conflict(self, manager, plugins, monkeypatch):
        entered = threading.Event()
        release = threading.Event()
        create = plugins.workspace.create

        def slow_create(config):
            entered.set()
            release.wait(timeout=5)
            return create(config)

        monkeypatch.setattr(plugins.workspace, "create", slow_create)
        spawned = {}
        worker = threading.Thread(target=lambda: spawned.update(first=manager.spawn("app", "42")))
        worker.start()
        try:
            assert entered.wait(timeout=5)
            with pytest.raises(SessionConflictError) as exc_info:
                manager.spawn("app", "42")
        finally:
            release.set()
            worker.join(timeout=5)

        assert exc_info.value.session_id == spawned["first"].id
        assert len(plugins.runtime.created) == 1

    def test_issue_can_be_respawned_after_kill(self, manager):
        first = manager.spawn("app", "42")
        manager.kill(first.id)

        assert manager.spawn("app", "42").id == "app-2"

    def test_taken_explicit_id_raises_reservation_conflict(self, manager, store):
        store.reserve("app-5")

        with pytest.raises(ReservationConflict):
            manager.spawn("app", "42", session_id="app-5")

    def test_agent_override(self, manager, plugins):
        session = manager.spawn("app", "42", agent_override="codex")

        assert session.agent == "codex"
        assert len(plugins.codex.launches) == 1
        assert plugins.agent.launches == []

    def test_unknown_agent_is_config_error(self, manager):
        with pytest.raises(ConfigError):
            manager.spawn("app", "42", agent_override="aider")

    def test_unknown_project_is_config_error(self, manager):
        with pytest.raises(ConfigError):
            manager.spawn("nope", "42")

    def test_runtime_failure_rolls_back(self, manager, plugins, store):
        plugins.runtime.fail_create = RuntimeError("tmux: no server")

        with pytest.raises(PluginError) as exc_info:
            manager.spawn("app", "42")

        assert "app-1" in str(exc_info.value)
        assert "no server" in str(exc_info.value)
        assert len(plugins.workspace.destroyed) == 1
        assert store.read("app-1") is None
        assert store.list() == []

    def test_workspace_failure_releases_reservation(self, manager, plugins, store):
        plugins.workspace.fail_create = RuntimeError("fatal: not a git repository")

        with pytest.raises(PluginError):
            manager.spawn("app", "42")

        assert plugins.workspace.destroyed == []
        assert plugins.runtime.created == []
        assert store.list() == []

    def test_post_create_failure_destroys_workspace(self, manager, plugins, store):
        plugins.workspace.fail_post_create = RuntimeError("pnpm install failed")

        with pytest.raises(PluginError):
            manager.spawn("app", "42")

        assert len(plugins.workspace.destroyed) == 1
        assert store.list() == []

    def test_post_launch_failure_is_not_fatal(self, manager, plugins, store):
        plugins.agent.fail_post_launch = True

        session = manager.spawn("app", "42")

        assert store.read(session.id)["status"] == "spawning"


class TestSpawnOrchestrator:
    def test_runs_in_project_checkout(self, manager, plugins, config):
        session = manager.spawn_orchestrator("app", "You coordinate.")

        assert session.id == "app-orchestrator"
        assert session.role == SessionRole.ORCHESTRATOR
        assert session.workspace_path == config.projects["app"].path
        assert plugins.workspace.created == []
        (launch,) = plugins.agent.launches
        assert launch.system_prompt == "You coordinate."

    def test_live_orchestrator_is_reused(self, manager, plugins):
        first = manager.spawn_orchestrator("app", "You coordinate.")
        second = manager.spawn_orchestrator("app", "You coordinate.")

        assert second.id == first.id
        assert len(plugins.runtime.created) == 1

    def test_new_prompt_for_live_orchestrator_conflicts(self, manager):
        manager.spawn_orchestrator("app", "You coordinate.")

        with pytest.raises(SessionConflictError):
            manager.spawn_orchestrator("app", "You build.", initial_prompt="Build a CLI")

    def test_dead_orchestrator_is_replaced(self, manager, plugins, store):
        manager.spawn_orchestrator("app", "You coordinate.")
        plugins.runtime.kill_all()

        session = manager.spawn_orchestrator("app", "You coordinate.")

        assert len(plugins.runtime.created) == 2
        assert store.list_archived("app") == ["app-orchestrator"]
        assert manager.load(session.id).status == SessionStatus.SPAWNING


class TestRead:
    def test_get_enriches_activity(self, manager, plugins):
        session = manager.spawn("app", "42")
        plugins.agent.activity = ActivityState.WAITING_INPUT

        assert manager.get(session.id).activity == ActivityState.WAITING_INPUT

    def test_get_reports_exited_for_dead_runtime(self, manager, plugins):
        session = manager.spawn("app", "42")
        plugins.runtime.kill_all()

        assert manager.get(session.id).activity == ActivityState.EXITED

    def test_get_survives_enrichment_failure(self, manager, plugins):
        session = manager.spawn("app", "42")
        plugins.agent.activity_error = RuntimeError("transcript unreadable")

        assert manager.get(session.id).id == session.id

    def test_get_unknown_is_none(self, manager):
        assert manager.get("app-404") is None

    def test_list_filters_by_project(self, manager):
        manager.spawn("app", "1")
        manager.spawn("app", "2")

        assert [s.id for s in manager.list("app")] == ["app-1", "app-2"]
        assert manager.list("other") == []


class TestSend:
    """Tests for SessionManager.send."""

    def test_send_delivers_and_touches(self, manager, plugins, store):
        session = manager.spawn("app", "42")
        store.update(session.id, {"lastActivityAt": "2020-01-01T00:00:00Z"})

        assert manager.send(session.id, "please rebase") is True

        assert plugins.runtime.messages == [(session.runtime_handle.id, "please rebase")]
        assert store.read(session.id)["lastActivityAt"] != "2020-01-01T00:00:00Z"

    def test_busy_probe_treats_only_active_as_busy(self, manager, plugins):
        session = manager.spawn("app", "42")
        manager.send(session.id, "hello")

        probe = plugins.runtime.last_probe
        assert probe("working on it") is True
        assert probe("approve? [y/n]") is False
        assert probe("> ") is False

    def test_unknown_session(self, manager):
        with pytest.raises(NotFoundError):
            manager.send("app-404", "hello")

    def test_session_without_runtime(self, manager, store):
        store.write("app-9", {"project": "app", "status": "working"})
        with pytest.raises(NotFoundError):
            manager.send("app-9", "hello")

    def test_ambiguous_delivery_names_the_session(self, manager, plugins):
        session = manager.spawn("app", "42")
        plugins.runtime.send_error = DeliveryAmbiguous("tmux-name", 60)

        with pytest.raises(DeliveryAmbiguous) as exc_info:
            manager.send(session.id, "hello")

        assert exc_info.value.session_id == session.id

    def test_runtime_failure_is_wrapped(self, manager, plugins):
        session = manager.spawn("app", "42")
        plugins.runtime.send_error = OSError("broken pipe")

        with pytest.raises(PluginError) as exc_info:
            manager.send(session.id, "hello")

        assert exc_info.value.session_id == session.id
        assert exc_info.value.operation == "send_message"


class TestRestore:
    def test_restore_live_session(self, manager, store):
        session = manager.spawn("app", "42")

        restored = manager.restore(session.id)

        assert restored.id == session.id
        assert "restoredAt" in store.read(session.id)

    def test_restore_dead_runtime(self, manager, plugins):
        session = manager.spawn("app", "42")
        plugins.runtime.kill_all()

        with pytest.raises(NotFoundError):
            manager.restore(session.id)

    def test_restore_unknown(self, manager):
        with pytest.raises(NotFoundError):
            manager.restore("app-404")


class TestKill:
    def test_kill_tears_down_and_archives(self, manager, plugins, store):
        session = manager.spawn("app", "42")

        manager.kill(session.id)

        assert plugins.runtime.destroyed == [session.runtime_handle.id]
        assert plugins.workspace.destroyed == [session.workspace_path]
        assert store.read(session.id) is None
        assert store.read_archived(session.id)["status"] == "killed"

    def test_kill_unknown(self, manager):
        with pytest.raises(NotFoundError):
            manager.kill("app-404")

    def test_kill_orchestrator_keeps_project_checkout(self, manager, plugins):
        session = manager.spawn_orchestrator("app", "You coordinate.")

        manager.kill(session.id)

        assert plugins.runtime.destroyed == [session.runtime_handle.id]
        assert plugins.workspace.destroyed == []

    def test_runtime_teardown_failure_does_not_stop_kill(self, manager, plugins, store,
                                                        monkeypatch):
        session = manager.spawn("app", "42")

        def broken_destroy(handle):
            raise RuntimeError("tmux gone")

        monkeypatch.setattr(plugins.runtime, "destroy", broken_destroy)

        manager.kill(session.id)

        assert plugins.workspace.destroyed == [session.workspace_path]
        assert store.read(session.id) is None

    def test_kill_keeps_terminal_status(self, manager, store):
        session = manager.spawn("app", "42")
        store.update(session.id, {"status": "merged"})

        manager.kill(session.id)

        assert store.read_archived(session.id)["status"] == "merged"


class TestCleanup:
    """Tests for SessionManager.cleanup."""

    def test_merged_pr_is_cleaned(self, manager, plugins, store):
        session = manager.spawn("app", "42")
        pr = plugins.scm.open_pr(session.branch)
        plugins.scm.states[pr.url] = PRState.MERGED

        result = manager.cleanup()

        assert result.killed == [session.id]
        assert store.read_archived(session.id)["status"] == "cleanup"

    def test_closed_pr_is_cleaned(self, manager, plugins):
        session = manager.spawn("app", "42")
        pr = plugins.scm.open_pr(session.branch)
        plugins.scm.states[pr.url] = PRState.CLOSED

        assert manager.cleanup().killed == [session.id]

    def test_open_pr_is_left_alone(self, manager, plugins):
        session = manager.spawn("app", "42")
        plugins.scm.open_pr(session.branch)

        result = manager.cleanup()

        assert result.killed == []
        assert result.skipped == [session.id]

    def test_done_issue_is_cleaned(self, manager, plugins):
        session = manager.spawn("app", "42")
        plugins.tracker.done.add("42")

        assert manager.cleanup().killed == [session.id]

    def test_dead_runtime_without_pr_is_cleaned(self, manager, plugins):
        session = manager.spawn("app", "42")
        plugins.runtime.kill_all()

        assert manager.cleanup().killed == [session.id]

    def test_live_runtime_without_pr_is_left_alone(self, manager):
        session = manager.spawn("app", "42")
        assert manager.cleanup().skipped == [session.id]

    def test_lookup_error_skips_and_reports(self, manager, plugins, store):
        session = manager.spawn("app", "42")
        plugins.runtime.kill_all()
        plugins.tracker.error = RuntimeError("gh: 502")

        result = manager.cleanup()

        assert result.killed == []
        assert result.skipped == [session.id]
        assert result.errors and result.errors[0].startswith(f"{session.id}: ")
        assert store.read(session.id) is not None

    def test_orchestrator_is_never_cleaned(self, manager, plugins):
        orchestrator = manager.spawn_orchestrator("app", "You coordinate.")
        plugins.runtime.kill_all()

        result = manager.cleanup()

        assert orchestrator.id in result.skipped
        assert result.killed == []

    def test_bare_reservation_is_ignored(self, manager, store):
        store.reserve("app-99")

        result = manager.cleanup()

        assert result.errors == []
        assert result.killed == []
        assert store.read("app-99") == {}

    def test_terminal_record_is_archived(self, manager, store):
        session = manager.spawn("app", "42")
        store.update(session.id, {"status": "done", "runtimeHandle": ""})

        assert manager.cleanup().killed == [session.id]
        assert store.read(session.id) is None

    def test_dry_run_kills_nothing(self, manager, plugins, store):
        session = manager.spawn("app", "42")
        plugins.runtime.kill_all()

        result = manager.cleanup(dry_run=True)

        assert result.killed == [session.id]
        assert store.read(session.id) is not None
        assert plugins.workspace.destroyed == []

    def test_project_filter(self, manager, plugins):
        manager.spawn("app", "42")
        plugins.runtime.kill_all()

        assert manager.cleanup("other").killed == []
