"""
Session Manager for the agent orchestrator.

This module handles:
- Spawning worker sessions (reserve ID, workspace, runtime, record)
- Spawning the per-project orchestrator session (at most one live)
- Reading sessions enriched with live runtime and agent state
- Delivering messages to running agents
- Restoring, killing and cleaning up sessions

Spawn Order:
1. Duplicate check - one live worker per (project, issue)
2. reserve() - claim the session ID atomically
3. Workspace - branch + isolated checkout
4. Launch - agent command and environment
5. Runtime - start the process
6. Persist - write the record with status=spawning
7. Post-launch - agent hook (failure is logged, not fatal)

A failure in steps 3-6 undoes everything done so far, including the
reservation, before the error propagates.
"""

from __future__ import annotations

import hashlib
import re
import threading
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Optional

from agent_orchestrator.config import ConfigError
from agent_orchestrator.errors import (
    DeliveryAmbiguous,
    DeliveryCancelled,
    NotFoundError,
    OrchestratorError,
    PluginError,
    ReservationConflict,
    SessionConflictError,
)
from agent_orchestrator.events.types import EventType, OrchestratorEvent
from agent_orchestrator.models import (
    ActivityState,
    PRState,
    RuntimeHandle,
    Session,
    SessionRole,
    SessionStatus,
    utc_now_iso,
)
from agent_orchestrator.plugins.base import (
    AgentLaunchConfig,
    RuntimeCreateConfig,
    WorkspaceCreateConfig,
)
from agent_orchestrator.prompts import build_worker_prompt
from agent_orchestrator.session_store import SessionStore, validate_session_id

if TYPE_CHECKING:
    from agent_orchestrator.config import OrchestratorConfig, ProjectConfig
    from agent_orchestrator.events.bus import EventBus
    from agent_orchestrator.logger import OrchestratorLogger
    from agent_orchestrator.plugins.base import Agent
    from agent_orchestrator.plugins.registry import PluginRegistry, ProjectPlugins

ORCHESTRATOR_SUFFIX = "orchestrator"


@dataclass
class CleanupResult:
    """Outcome of a cleanup pass."""
    killed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"killed": self.killed, "skipped": self.skipped, "errors": self.errors}


class SessionManager:
    """
    Creates and controls agent sessions.

    Every plugin failure surfaces as PluginError carrying the session ID and
    the plugin's own message. Expected conditions come back as values: get()
    returns None for an unknown session.
    """

    def __init__(
        self,
        config: OrchestratorConfig,
        registry: PluginRegistry,
        store: Optional[SessionStore] = None,
        logger: Optional[OrchestratorLogger] = None,
        event_bus: Optional[EventBus] = None,
    ) -> None:
        """
        Initialize the SessionManager.

        Args:
            config: Loaded orchestrator configuration.
            registry: Plugins to use; nothing is looked up globally.
            store: Session record store (defaults to <data_dir>/sessions).
            logger: Optional logger for recording operations.
            event_bus: Optional bus for lifecycle events.
        """
        self.config = config
        self.registry = registry
        self.store = store or SessionStore(config.sessions_path, logger)
        self._logger = logger
        self._bus = event_bus
        self._id_lock = threading.Lock()
        # (project_id, issue) -> session ID of worker spawns still in progress
        self._spawning_issues: dict[tuple[str, str], str] = {}

    def _log(
        self,
        event_type: str,
        data: Optional[dict] = None,
        level: str = "info",
    ) -> None:
        """Log an event if logger is configured."""
        if self._logger:
            self._logger.log(event_type, data, level=level)

    def _emit(self, event_type: EventType, session: Session, message: str = "", **data: Any) -> None:
        if self._bus:
            self._bus.emit(OrchestratorEvent(
                event_type=event_type,
                session_id=session.id,
                project_id=session.project_id,
                message=message,
                data=data,
            ))

    @staticmethod
    def _plugin_call(
        plugin: str,
        operation: str,
        session_id: Optional[str],
        fn: Callable[..., Any],
        *args: Any,
    ) -> Any:
        """Call a plugin, wrapping foreign exceptions in PluginError."""
        try:
            return fn(*args)
        except OrchestratorError:
            raise
        except Exception as e:
            raise PluginError(plugin, operation, session_id, e) from e

    # =========================================================================
    # Naming
    # =========================================================================

    @property
    def instance_hash(self) -> str:
        """Stable per-install prefix for runtime names."""
        return hashlib.sha256(str(self.config.data_path).encode()).hexdigest()[:12]

    def runtime_name_for(self, session_id: str) -> str:
        """Runtime-level name: unique across installs sharing one tmux server."""
        return f"{self.instance_hash}-{session_id}"

    def orchestrator_id(self, project_id: str) -> str:
        return f"{self.config.get_project(project_id).session_prefix}-{ORCHESTRATOR_SUFFIX}"

    def next_session_id(self, project_id: str) -> str:
        """
        Next free {prefix}-{n}.

        n is one past the highest number among live and archived IDs, so
        numbers are never reused, even after a restart.
        """
        prefix = self.config.get_project(project_id).session_prefix
        pattern = re.compile(rf"^{re.escape(prefix)}-(\d+)$")
        highest = 0
        for session_id in [*self.store.list(), *self.store.list_archived(prefix)]:
            match = pattern.match(session_id)
            if match:
                highest = max(highest, int(match.group(1)))
        return f"{prefix}-{highest + 1}"

    # =========================================================================
    # Reading
    # =========================================================================

    def load(self, session_id: str) -> Optional[Session]:
        """The persisted session without live enrichment (None if absent)."""
        record = self.store.read(session_id)
        if record is None:
            return None
        try:
            return Session.from_record(session_id, record)
        except ValueError as e:
            self._log("session_record_invalid", {"session_id": session_id, "error": str(e)},
                      level="warn")
            return None

    def plugins_for(self, session: Session) -> tuple[ProjectPlugins, Agent]:
        """
        The project's plugins plus the agent that actually runs the session.

        Raises:
            ConfigError: If the project or a plugin is not configured.
        """
        project = self.config.get_project(session.project_id)
        plugins = self.registry.for_project(project)
        agent = self.registry.agent_named(session.agent) if session.agent else plugins.agent
        return plugins, agent

    def get(self, session_id: str) -> Optional[Session]:
        """
        A session with live activity filled in.

        Enrichment is best effort: if the runtime or agent cannot be queried
        the persisted activity is kept and the failure is logged.
        """
        session = self.load(session_id)
        if session is None:
            return None
        if session.runtime_handle is None or session.is_terminal:
            return session

        try:
            plugins, agent = self.plugins_for(session)
            alive = plugins.runtime.is_alive(session.runtime_handle)
            session.activity = agent.get_activity_state(session) if alive else ActivityState.EXITED
        except Exception as e:
            self._log("session_enrich_failed", {"session_id": session_id, "error": str(e)},
                      level="warn")
        return session

    def list(self, project_id: Optional[str] = None) -> list[Session]:
        """All live records (optionally for one project), enriched."""
        sessions = []
        for session_id in self.store.list():
            session = self.get(session_id)
            if session is None:
                continue
            if project_id and session.project_id != project_id:
                continue
            sessions.append(session)
        return sessions

    # =========================================================================
    # Spawning
    # =========================================================================

    def spawn(
        self,
        project_id: str,
        issue_ref: Optional[str] = None,
        agent_override: Optional[str] = None,
        session_id: Optional[str] = None,
        prompt: Optional[str] = None,
    ) -> Session:
        """
        Spawn a worker session.

        Raises:
            ConfigError: Unknown project or plugin.
            SessionConflictError: The issue already has a live worker.
            ReservationConflict: The session ID is taken (retry with a new one).
            PluginError: A workspace, agent or runtime step failed.
        """
        project = self.config.get_project(project_id)
        plugins = self.registry.for_project(project, agent_override)

        claim = (project_id, issue_ref.lstrip("#")) if issue_ref else None
        with self._id_lock:
            if claim is not None:
                existing = self._live_worker_for_issue(project_id, issue_ref)
                existing_id = existing.id if existing else self._spawning_issues.get(claim)
                if existing_id is not None:
                    raise SessionConflictError(
                        existing_id,
                        f"Issue {issue_ref} already has a live session: {existing_id}",
                    )
            sid = session_id or self.next_session_id(project_id)
            validate_session_id(sid)
            if not self.store.reserve(sid):
                raise ReservationConflict(sid)
            if claim is not None:
                self._spawning_issues[claim] = sid

        workspace_path: Optional[str] = None
        handle: Optional[RuntimeHandle] = None
        try:
            if issue_ref:
                branch = self._plugin_call(
                    plugins.tracker.name, "branch_name", sid,
                    plugins.tracker.branch_name, issue_ref, project,
                )
            else:
                branch = f"session/{sid}"

            info = self._plugin_call(
                plugins.workspace.name, "create", sid,
                plugins.workspace.create,
                WorkspaceCreateConfig(project_id=project_id, project=project,
                                      session_id=sid, branch=branch),
            )
            workspace_path = info.path
            self._plugin_call(
                plugins.workspace.name, "post_create", sid,
                plugins.workspace.post_create, info, project,
            )

            launch = AgentLaunchConfig(
                session_id=sid,
                project_id=project_id,
                project=project,
                issue_id=issue_ref,
                prompt=build_worker_prompt(
                    project, self._issue_prompt(plugins, project, sid, issue_ref), prompt
                ),
                permissions=project.agent_config.permissions,
                model=project.agent_config.model,
                data_dir=str(self.config.data_path),
            )
            handle = self._start_runtime(plugins, plugins.agent, launch, info.path)

            now = utc_now_iso()
            session = Session(
                id=sid,
                project_id=project_id,
                status=SessionStatus.SPAWNING,
                role=SessionRole.WORKER,
                branch=info.branch,
                workspace_path=info.path,
                issue_ref=issue_ref,
                runtime_handle=handle,
                agent=plugins.agent_kind.value,
                created_at=now,
                last_activity_at=now,
            )
            self.store.write(sid, session.to_record())
        except BaseException:
            self._rollback(sid, plugins, workspace_path, handle)
            raise
        finally:
            if claim is not None:
                with self._id_lock:
                    self._spawning_issues.pop(claim, None)

        self._post_launch(plugins.agent, session)
        self._log("session_spawned", {
            "session_id": sid,
            "project_id": project_id,
            "issue": issue_ref,
            "branch": session.branch,
            "runtime": handle.id,
        })
        self._emit(EventType.SESSION_SPAWNED, session, f"Spawned {sid}", issue=issue_ref)
        return session

    def spawn_orchestrator(
        self,
        project_id: str,
        system_prompt: str,
        initial_prompt: Optional[str] = None,
    ) -> Session:
        """
        Ensure the project's orchestrator session is running.

        A live orchestrator is returned unchanged when no new prompt is given,
        so repeated calls create one runtime.

        Raises:
            SessionConflictError: A live orchestrator exists and a new prompt
                was given.
            PluginError: The runtime could not be started.
        """
        project = self.config.get_project(project_id)
        plugins = self.registry.for_project(project)
        sid = self.orchestrator_id(project_id)

        with self.store.lock(sid):
            existing = self.load(sid)
            if existing is not None and not existing.is_terminal:
                if self._runtime_alive(plugins, existing):
                    if initial_prompt:
                        raise SessionConflictError(
                            sid,
                            f"Orchestrator {sid} is already running; kill it before "
                            "starting it with a new prompt",
                        )
                    return existing
                self._log("orchestrator_replaced", {"session_id": sid, "reason": "runtime dead"})
            if existing is not None:
                self.store.delete(sid)

            if not self.store.reserve(sid):
                raise ReservationConflict(sid)

            handle: Optional[RuntimeHandle] = None
            try:
                launch = AgentLaunchConfig(
                    session_id=sid,
                    project_id=project_id,
                    project=project,
                    prompt=initial_prompt,
                    system_prompt=system_prompt,
                    permissions=project.agent_config.permissions,
                    model=project.agent_config.model,
                    data_dir=str(self.config.data_path),
                )
                handle = self._start_runtime(plugins, plugins.agent, launch, project.path)
                now = utc_now_iso()
                session = Session(
                    id=sid,
                    project_id=project_id,
                    status=SessionStatus.SPAWNING,
                    role=SessionRole.ORCHESTRATOR,
                    branch=project.default_branch,
                    workspace_path=project.path,
                    runtime_handle=handle,
                    agent=plugins.agent_kind.value,
                    created_at=now,
                    last_activity_at=now,
                )
                self.store.write(sid, session.to_record())
            except BaseException:
                self._rollback(sid, plugins, None, handle)
                raise

        self._post_launch(plugins.agent, session)
        self._log("orchestrator_spawned", {"session_id": sid, "project_id": project_id})
        self._emit(EventType.SESSION_SPAWNED, session, f"Started orchestrator {sid}")
        return session

    def _issue_prompt(
        self,
        plugins: ProjectPlugins,
        project: ProjectConfig,
        session_id: str,
        issue_ref: Optional[str],
    ) -> Optional[str]:
        """Tracker prompt for the issue, falling back to the bare reference."""
        if not issue_ref:
            return None
        try:
            return plugins.tracker.generate_prompt(issue_ref, project)
        except Exception as e:
            self._log("issue_prompt_failed", {
                "session_id": session_id,
                "issue": issue_ref,
                "error": str(e),
            }, level="warn")
            return f"Work on issue {issue_ref}."

    def _start_runtime(
        self,
        plugins: ProjectPlugins,
        agent: Agent,
        launch: AgentLaunchConfig,
        workspace_path: str,
    ) -> RuntimeHandle:
        sid = launch.session_id
        command = self._plugin_call(agent.name, "get_launch_command", sid,
                                    agent.get_launch_command, launch)
        environment = dict(self._plugin_call(agent.name, "get_environment", sid,
                                             agent.get_environment, launch))
        environment.update({
            "AO_SESSION_ID": sid,
            "AO_PROJECT_ID": launch.project_id,
            "AO_DATA_DIR": str(self.config.data_path),
        })
        if launch.issue_id:
            environment["AO_ISSUE_ID"] = launch.issue_id

        return self._plugin_call(
            plugins.runtime.name, "create", sid,
            plugins.runtime.create,
            RuntimeCreateConfig(
                session_id=self.runtime_name_for(sid),
                workspace_path=workspace_path,
                launch_command=command,
                environment=environment,
            ),
        )

    def _post_launch(self, agent: Agent, session: Session) -> None:
        try:
            agent.post_launch_setup(session)
        except Exception as e:
            self._log("post_launch_setup_failed", {
                "session_id": session.id,
                "error": str(e),
            }, level="warn")

    def _rollback(
        self,
        session_id: str,
        plugins: ProjectPlugins,
        workspace_path: Optional[str],
        handle: Optional[RuntimeHandle],
    ) -> None:
        """Undo a partial spawn. Teardown failures are logged."""
        if handle is not None:
            try:
                plugins.runtime.destroy(handle)
            except Exception as e:
                self._log("rollback_runtime_failed", {"session_id": session_id, "error": str(e)},
                          level="warn")
        if workspace_path is not None:
            try:
                plugins.workspace.destroy(workspace_path)
            except Exception as e:
                self._log("rollback_workspace_failed", {"session_id": session_id, "error": str(e)},
                          level="warn")
        self.store.release(session_id)
        self._log("spawn_rolled_back", {"session_id": session_id}, level="warn")

    def _live_worker_for_issue(self, project_id: str, issue_ref: str) -> Optional[Session]:
        wanted = issue_ref.lstrip("#")
        for session_id in self.store.list():
            session = self.load(session_id)
            if session is None or session.is_terminal or session.is_orchestrator:
                continue
            if session.project_id == project_id and (session.issue_ref or "").lstrip("#") == wanted:
                return session
        return None

    def _runtime_alive(self, plugins: ProjectPlugins, session: Session) -> bool:
        if session.runtime_handle is None:
            return False
        try:
            return plugins.runtime.is_alive(session.runtime_handle)
        except Exception as e:
            self._log("runtime_probe_failed", {"session_id": session.id, "error": str(e)},
                      level="warn")
            return False

    # =========================================================================
    # Control
    # =========================================================================

    def send(
        self,
        session_id: str,
        message: str,
        cancel: Optional[threading.Event] = None,
    ) -> bool:
        """
        Deliver a message to the session's agent.

        Returns:
            True if the agent visibly started processing it.

        Raises:
            NotFoundError: Unknown session, or it has no runtime.
            DeliveryAmbiguous: Sent after the busy-wait ran out.
            DeliveryCancelled: cancel was set before anything was sent.
            PluginError: The runtime failed.
        """
        session = self.load(session_id)
        if session is None:
            raise NotFoundError(session_id)
        if session.runtime_handle is None:
            raise NotFoundError(session_id, "session has no runtime")

        plugins, agent = self.plugins_for(session)

        def is_busy(output: str) -> bool:
            return agent.detect_activity(output) == ActivityState.ACTIVE

        try:
            confirmed = plugins.runtime.send_message(
                session.runtime_handle, message, is_busy=is_busy, cancel=cancel
            )
        except DeliveryAmbiguous as e:
            self._touch(session_id)
            raise DeliveryAmbiguous(session_id, e.waited_seconds) from e
        except DeliveryCancelled as e:
            raise DeliveryCancelled(session_id) from e
        except OrchestratorError:
            raise
        except Exception as e:
            raise PluginError(plugins.runtime.name, "send_message", session_id, e) from e

        self._touch(session_id)
        self._log("message_sent", {
            "session_id": session_id,
            "length": len(message),
            "confirmed": confirmed,
        })
        return confirmed

    def _touch(self, session_id: str) -> None:
        with self.store.lock(session_id):
            if self.store.read(session_id) is not None:
                self.store.update(session_id, {"lastActivityAt": utc_now_iso()})

    def restore(self, session_id: str) -> Session:
        """
        Reattach to a session whose runtime is still alive.

        Raises:
            NotFoundError: Unknown session, no runtime handle, or the runtime
                is gone.
        """
        session = self.load(session_id)
        if session is None:
            raise NotFoundError(session_id)
        if session.runtime_handle is None:
            raise NotFoundError(session_id, "session has no runtime")

        plugins, _ = self.plugins_for(session)
        alive = self._plugin_call(plugins.runtime.name, "is_alive", session_id,
                                  plugins.runtime.is_alive, session.runtime_handle)
        if not alive:
            raise NotFoundError(session_id, "runtime is no longer alive")

        self.store.update(session_id, {"restoredAt": utc_now_iso()})
        self._log("session_restored", {"session_id": session_id})
        self._emit(EventType.SESSION_RESTORED, session, f"Restored {session_id}")
        return self.get(session_id) or session

    def kill(self, session_id: str, status: SessionStatus = SessionStatus.KILLED) -> None:
        """
        Tear a session down and archive its record.

        Runtime and workspace failures are logged and teardown continues.
        Orchestrator sessions keep their workspace (the project checkout).

        Raises:
            NotFoundError: Unknown session.
        """
        with self.store.lock(session_id):
            session = self.load(session_id)
            if session is None:
                raise NotFoundError(session_id)

            try:
                plugins, _ = self.plugins_for(session)
            except ConfigError as e:
                self._log("kill_plugins_unavailable", {"session_id": session_id, "error": str(e)},
                          level="warn")
                plugins = None

            if plugins is not None and session.runtime_handle is not None:
                try:
                    plugins.runtime.destroy(session.runtime_handle)
                except Exception as e:
                    self._log("kill_runtime_failed", {"session_id": session_id, "error": str(e)},
                              level="warn")
            if plugins is not None and not session.is_orchestrator and session.workspace_path:
                try:
                    plugins.workspace.destroy(session.workspace_path)
                except Exception as e:
                    self._log("kill_workspace_failed", {"session_id": session_id, "error": str(e)},
                              level="warn")

            if not session.is_terminal:
                self.store.update(session_id, {"status": status.value, "runtimeHandle": ""})
            self.store.delete(session_id)

        self._log("session_killed", {"session_id": session_id, "status": status.value})
        self._emit(EventType.SESSION_KILLED, session, f"Killed {session_id}", status=status.value)

    def cleanup(self, project_id: Optional[str] = None, dry_run: bool = False) -> CleanupResult:
        """
        Kill sessions whose work is unambiguously finished.

        A session is killed when its PR is merged or closed, its issue is
        done, or it has no PR and its runtime is dead. Any error or unknown
        answer from SCM, tracker or runtime leaves it alone. Orchestrators are
        never cleaned; records already terminal are archived directly.
        """
        result = CleanupResult()
        for session_id in self.store.list():
            session = self.load(session_id)
            # Bare reservations (no project yet) belong to an in-progress spawn.
            if session is None or not session.project_id:
                continue
            if project_id and session.project_id != project_id:
                continue
            if session.is_orchestrator:
                result.skipped.append(session_id)
                continue

            if session.is_terminal:
                if not dry_run:
                    self.store.delete(session_id)
                result.killed.append(session_id)
                continue

            try:
                reason = self._completion_reason(session)
            except Exception as e:
                result.skipped.append(session_id)
                result.errors.append(f"{session_id}: {e}")
                self._log("cleanup_check_failed", {"session_id": session_id, "error": str(e)},
                          level="warn")
                continue

            if reason is None:
                result.skipped.append(session_id)
                continue

            if dry_run:
                result.killed.append(session_id)
                continue
            try:
                self.kill(session_id, status=SessionStatus.CLEANUP)
            except OrchestratorError as e:
                result.errors.append(f"{session_id}: {e}")
                continue
            result.killed.append(session_id)
            self._log("session_cleaned", {"session_id": session_id, "reason": reason})

        return result

    def _completion_reason(self, session: Session) -> Optional[str]:
        """
        Why a session is finished, or None if it is not (or it is unclear).

        Raises:
            Exception: Any collaborator failure; the caller skips the session.
        """
        project = self.config.get_project(session.project_id)
        plugins, _ = self.plugins_for(session)
        sid = session.id

        pr = session.pr
        if pr is None:
            pr = self._plugin_call(plugins.scm.name, "detect_pr", sid,
                                   plugins.scm.detect_pr, session, project)
        pr_state = None
        if pr is not None:
            pr_state = self._plugin_call(plugins.scm.name, "get_pr_state", sid,
                                         plugins.scm.get_pr_state, pr)

        issue_done = False
        if session.issue_ref:
            issue_done = self._plugin_call(plugins.tracker.name, "is_issue_done", sid,
                                           plugins.tracker.is_issue_done, session.issue_ref, project)

        runtime_alive = False
        if session.runtime_handle is not None:
            runtime_alive = self._plugin_call(plugins.runtime.name, "is_alive", sid,
                                              plugins.runtime.is_alive, session.runtime_handle)

        if pr_state == PRState.MERGED:
            return "pr merged"
        if pr_state == PRState.CLOSED:
            return "pr closed"
        if issue_done is True:
            return "issue done"
        if pr is None and runtime_alive is False:
            return "runtime dead without a PR"
        return None
