"""
Plugin registry: the single place where config strings become plugins.

Each capability has a closed enum of known variants. PluginRegistry is an
ordinary value built once (from_config, or directly in tests) and passed into
the Session Manager and Lifecycle Manager; there is no global lookup.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Optional, Type, TypeVar

from agent_orchestrator.config import ConfigError
from agent_orchestrator.plugins.base import SCM, Agent, Notifier, Runtime, Tracker, Workspace

if TYPE_CHECKING:
    from agent_orchestrator.config import OrchestratorConfig, ProjectConfig


class RuntimeKind(str, Enum):
    TMUX = "tmux"


class AgentKind(str, Enum):
    CLAUDE_CODE = "claude-code"
    CODEX = "codex"


class WorkspaceKind(str, Enum):
    WORKTREE = "worktree"


class TrackerKind(str, Enum):
    GITHUB = "github"


class ScmKind(str, Enum):
    GITHUB = "github"


class NotifierKind(str, Enum):
    DESKTOP = "desktop"
    WEBHOOK = "webhook"


K = TypeVar("K", bound=Enum)


def resolve_kind(kind_type: Type[K], name: str, capability: str) -> K:
    """
    Map a configured name onto a capability variant.

    Raises:
        ConfigError: If the name is not a known variant.
    """
    try:
        return kind_type(name)
    except ValueError:
        known = ", ".join(k.value for k in kind_type)
        raise ConfigError(f"Unknown {capability} plugin '{name}'. Known: {known}")


@dataclass
class ProjectPlugins:
    """The concrete plugins serving one project."""
    runtime: Runtime
    agent: Agent
    workspace: Workspace
    tracker: Tracker
    scm: SCM
    agent_kind: AgentKind


@dataclass
class PluginRegistry:
    """
    Instantiated plugins keyed by variant.

    Notifiers are keyed by their configured channel name, since several
    channels may share a kind (two webhooks, say).
    """
    runtimes: dict[RuntimeKind, Runtime] = field(default_factory=dict)
    agents: dict[AgentKind, Agent] = field(default_factory=dict)
    workspaces: dict[WorkspaceKind, Workspace] = field(default_factory=dict)
    trackers: dict[TrackerKind, Tracker] = field(default_factory=dict)
    scms: dict[ScmKind, SCM] = field(default_factory=dict)
    notifiers: dict[str, Notifier] = field(default_factory=dict)
    defaults: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_config(cls, config: OrchestratorConfig) -> PluginRegistry:
        """
        Build every plugin referenced by the defaults and the projects.

        Raises:
            ConfigError: If any referenced plugin name is unknown.
        """
        from agent_orchestrator.plugins.agent_claude_code import ClaudeCodeAgent
        from agent_orchestrator.plugins.agent_codex import CodexAgent
        from agent_orchestrator.plugins.notifier_desktop import DesktopNotifier
        from agent_orchestrator.plugins.notifier_webhook import WebhookNotifier
        from agent_orchestrator.plugins.runtime_tmux import TmuxRuntime
        from agent_orchestrator.plugins.scm_github import GitHubSCM
        from agent_orchestrator.plugins.tracker_github import GitHubTracker
        from agent_orchestrator.plugins.workspace_worktree import WorktreeWorkspace

        timeout = config.lifecycle.plugin_timeout_seconds
        registry = cls(defaults={
            "runtime": config.defaults.runtime,
            "agent": config.defaults.agent,
            "workspace": config.defaults.workspace,
            "tracker": config.defaults.tracker,
            "scm": config.defaults.scm,
        })

        wanted: dict[str, set[str]] = {key: {value} for key, value in registry.defaults.items()}
        for project in config.projects.values():
            for capability in wanted:
                name = getattr(project, capability)
                if name:
                    wanted[capability].add(name)
        # Either agent can be requested per spawn, so both are always built.
        wanted["agent"].update(k.value for k in AgentKind)

        for name in wanted["runtime"]:
            kind = resolve_kind(RuntimeKind, name, "runtime")
            if kind is RuntimeKind.TMUX:
                registry.runtimes[kind] = TmuxRuntime(config.delivery, command_timeout=timeout)
        for name in wanted["agent"]:
            kind = resolve_kind(AgentKind, name, "agent")
            if kind is AgentKind.CLAUDE_CODE:
                registry.agents[kind] = ClaudeCodeAgent(command_timeout=timeout)
            elif kind is AgentKind.CODEX:
                registry.agents[kind] = CodexAgent(command_timeout=timeout)
        for name in wanted["workspace"]:
            kind = resolve_kind(WorkspaceKind, name, "workspace")
            if kind is WorkspaceKind.WORKTREE:
                registry.workspaces[kind] = WorktreeWorkspace(config.worktrees_path)
        for name in wanted["tracker"]:
            kind = resolve_kind(TrackerKind, name, "tracker")
            if kind is TrackerKind.GITHUB:
                registry.trackers[kind] = GitHubTracker(command_timeout=timeout)
        for name in wanted["scm"]:
            kind = resolve_kind(ScmKind, name, "scm")
            if kind is ScmKind.GITHUB:
                registry.scms[kind] = GitHubSCM(command_timeout=timeout)

        for channel, notifier_config in config.notifiers.items():
            kind = resolve_kind(NotifierKind, notifier_config.kind, "notifier")
            if kind is NotifierKind.DESKTOP:
                registry.notifiers[channel] = DesktopNotifier()
            elif kind is NotifierKind.WEBHOOK:
                registry.notifiers[channel] = WebhookNotifier(
                    url=notifier_config.url or "",
                    headers=notifier_config.headers,
                    timeout_seconds=notifier_config.timeout_seconds,
                )

        return registry

    def _pick(self, plugins: dict, kind_type: Type[K], name: Optional[str], capability: str):
        kind = resolve_kind(kind_type, name or self.defaults.get(capability, ""), capability)
        plugin = plugins.get(kind)
        if plugin is None:
            raise ConfigError(f"{capability} plugin '{kind.value}' is not loaded")
        return kind, plugin

    def for_project(
        self,
        project: ProjectConfig,
        agent_override: Optional[str] = None,
    ) -> ProjectPlugins:
        """
        Resolve the plugins serving a project.

        Raises:
            ConfigError: If a selected plugin is unknown or not loaded.
        """
        agent_kind, agent = self._pick(
            self.agents, AgentKind, agent_override or project.agent, "agent"
        )
        return ProjectPlugins(
            runtime=self._pick(self.runtimes, RuntimeKind, project.runtime, "runtime")[1],
            agent=agent,
            workspace=self._pick(self.workspaces, WorkspaceKind, project.workspace, "workspace")[1],
            tracker=self._pick(self.trackers, TrackerKind, project.tracker, "tracker")[1],
            scm=self._pick(self.scms, ScmKind, project.scm, "scm")[1],
            agent_kind=agent_kind,
        )

    def agent_named(self, name: str) -> Agent:
        """The agent plugin for a persisted agent name."""
        return self._pick(self.agents, AgentKind, name, "agent")[1]

    def notifiers_named(self, names: list[str]) -> list[Notifier]:
        """Notifier channels by name; unknown names are skipped."""
        return [self.notifiers[name] for name in names if name in self.notifiers]
