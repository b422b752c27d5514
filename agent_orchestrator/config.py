"""
Configuration loading and validation for the agent orchestrator.

This module handles:
- Locating and loading agent-orchestrator.yaml
- Environment variable resolution (${VAR} syntax)
- Validation of projects, plugin names and reaction policies
- Default values, including the built-in reaction policy
- Caching of the loaded configuration
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Optional, Union

import yaml

CONFIG_FILENAMES = ("agent-orchestrator.yaml", "agent-orchestrator.yml")
CONFIG_ENV_VAR = "AO_CONFIG"

REACTION_ACTIONS = ("send-to-agent", "notify", "auto-merge")
PRIORITIES = ("urgent", "action", "warning", "info")

_SESSION_PREFIX_RE = re.compile(r"^[a-zA-Z0-9_-]+$")
_DURATION_RE = re.compile(r"^(\d+)\s*([smhd])$")


class ConfigError(Exception):
    """Raised when configuration is invalid or cannot be loaded."""
    pass


def parse_duration(value: str) -> float:
    """
    Parse a duration like "30s", "30m", "2h" or "1d" into seconds.

    Raises:
        ConfigError: If the value is not a valid duration.
    """
    match = _DURATION_RE.match(value.strip())
    if not match:
        raise ConfigError(f"Invalid duration: {value!r} (expected e.g. '30m')")
    amount, unit = int(match.group(1)), match.group(2)
    return float(amount * {"s": 1, "m": 60, "h": 3600, "d": 86400}[unit])


@dataclass
class ReactionConfig:
    """
    One entry of the reaction policy.

    escalate_after is either an attempt count or a duration string measured
    from the first automatic attempt.
    """
    action: str = "notify"                         # send-to-agent | notify | auto-merge
    auto: bool = True                              # False disables the reaction
    message: str = ""                              # Template for send-to-agent
    priority: str = "info"                         # Priority for notify / escalation
    retries: Optional[int] = None                  # Max automatic sends
    escalate_after: Optional[Union[int, str]] = None

    @property
    def escalate_after_seconds(self) -> Optional[float]:
        if isinstance(self.escalate_after, str):
            return parse_duration(self.escalate_after)
        return None

    @property
    def escalate_after_attempts(self) -> Optional[int]:
        if isinstance(self.escalate_after, int):
            return self.escalate_after
        return None


def default_reactions() -> dict[str, ReactionConfig]:
    """The built-in reaction policy applied when the config is silent."""
    return {
        "ci-failed": ReactionConfig(
            action="send-to-agent",
            message=(
                "CI is failing on your PR {pr_url}. Run the failing checks "
                "locally, fix the issues, and push the changes."
            ),
            retries=2,
            escalate_after=2,
        ),
        "changes-requested": ReactionConfig(
            action="send-to-agent",
            message=(
                "There are review comments on your PR {pr_url}. Check them with "
                "`gh pr view --comments`, address each one, push fixes, and reply."
            ),
            escalate_after="30m",
        ),
        "approved-and-green": ReactionConfig(action="notify", priority="action"),
        "agent-stuck": ReactionConfig(action="notify", priority="urgent"),
        "agent-needs-input": ReactionConfig(action="notify", priority="urgent"),
        "agent-exited": ReactionConfig(action="notify", priority="urgent"),
        "all-complete": ReactionConfig(action="notify", priority="info"),
    }


@dataclass
class AgentSettings:
    """Per-project agent launch settings."""
    permissions: str = "default"                   # "skip" bypasses permission prompts
    model: Optional[str] = None


@dataclass
class ProjectConfig:
    """One managed repository."""
    name: str
    repo: str                                      # "owner/repo"
    path: str                                      # Local checkout
    default_branch: str = "main"
    session_prefix: str = ""
    agent: Optional[str] = None                    # Plugin overrides (None = defaults)
    runtime: Optional[str] = None
    workspace: Optional[str] = None
    tracker: Optional[str] = None
    scm: Optional[str] = None
    agent_config: AgentSettings = field(default_factory=AgentSettings)
    reactions: dict[str, ReactionConfig] = field(default_factory=dict)
    agent_rules: str = ""
    orchestrator_rules: str = ""
    post_create: list[str] = field(default_factory=list)
    symlinks: list[str] = field(default_factory=list)


@dataclass
class DefaultsConfig:
    """Plugin selections used when a project does not override them."""
    runtime: str = "tmux"
    agent: str = "claude-code"
    workspace: str = "worktree"
    tracker: str = "github"
    scm: str = "github"
    notifiers: list[str] = field(default_factory=lambda: ["desktop"])


@dataclass
class NotifierConfig:
    """A configured notification channel."""
    kind: str                                      # desktop | webhook
    url: Optional[str] = None
    headers: dict[str, str] = field(default_factory=dict)
    timeout_seconds: int = 10


@dataclass
class LifecycleConfig:
    """Reconciliation loop settings."""
    interval_seconds: float = 30.0                 # Time between ticks
    max_concurrency: int = 8                       # Sessions checked in parallel
    plugin_timeout_seconds: float = 30.0           # Per plugin call
    tick_deadline_seconds: float = 120.0           # Soft deadline for one tick


@dataclass
class DeliveryConfig:
    """Message delivery (send) settings."""
    busy_timeout_seconds: float = 60.0             # Busy-wait before sending anyway
    poll_interval_seconds: float = 2.0             # Activity poll interval
    confirm_retries: int = 3                       # Post-send confirmation attempts


@dataclass
class OrchestratorConfig:
    """
    Top-level configuration, loaded from agent-orchestrator.yaml.

    Relative paths are resolved against root (the config file's directory).
    """
    root: str = "."
    data_dir: str = ".ao"
    worktree_dir: str = "~/.worktrees"
    defaults: DefaultsConfig = field(default_factory=DefaultsConfig)
    projects: dict[str, ProjectConfig] = field(default_factory=dict)
    reactions: dict[str, ReactionConfig] = field(default_factory=default_reactions)
    notifiers: dict[str, NotifierConfig] = field(
        default_factory=lambda: {"desktop": NotifierConfig(kind="desktop")}
    )
    notification_routing: dict[str, list[str]] = field(default_factory=dict)
    lifecycle: LifecycleConfig = field(default_factory=LifecycleConfig)
    delivery: DeliveryConfig = field(default_factory=DeliveryConfig)

    def __post_init__(self) -> None:
        """Make root absolute and fill in project session prefixes."""
        self.root = str(Path(self.root).expanduser().absolute())
        for project_id, project in self.projects.items():
            if not project.session_prefix:
                project.session_prefix = project_id

    @property
    def data_path(self) -> Path:
        """Absolute path to the data directory."""
        path = Path(self.data_dir).expanduser()
        return path if path.is_absolute() else Path(self.root) / path

    @property
    def sessions_path(self) -> Path:
        """Absolute path to the session records directory."""
        return self.data_path / "sessions"

    @property
    def logs_path(self) -> Path:
        """Absolute path to the JSONL logs directory."""
        return self.data_path / "logs"

    @property
    def events_path(self) -> Path:
        """Absolute path to the data directory that holds events/."""
        return self.data_path

    @property
    def worktrees_path(self) -> Path:
        """Absolute path under which worker worktrees are created."""
        path = Path(self.worktree_dir).expanduser()
        return path if path.is_absolute() else Path(self.root) / path

    def get_project(self, project_id: str) -> ProjectConfig:
        """
        Look up a project.

        Raises:
            ConfigError: If the project is not configured.
        """
        project = self.projects.get(project_id)
        if project is None:
            available = ", ".join(sorted(self.projects)) or "(none)"
            raise ConfigError(f"Unknown project '{project_id}'. Available: {available}")
        return project

    def reaction_for(self, project_id: str, key: str) -> Optional[ReactionConfig]:
        """Project reaction for key, falling back to the global policy."""
        project = self.projects.get(project_id)
        if project is not None and key in project.reactions:
            return project.reactions[key]
        return self.reactions.get(key)

    def notifiers_for(self, priority: str) -> list[str]:
        """Notifier names routed for a priority (all defaults when unrouted)."""
        if priority in self.notification_routing:
            return list(self.notification_routing[priority])
        return list(self.defaults.notifiers)


# Module-level cache for the loaded configuration
_config_cache: Optional[OrchestratorConfig] = None


def _resolve_env_vars(value: Any) -> Any:
    """
    Resolve environment variables in a value.

    Supports ${VAR} syntax for environment variable substitution.
    Returns the original value if it's not a string.
    """
    if isinstance(value, str):
        pattern = re.compile(r'\$\{([A-Za-z_][A-Za-z0-9_]*)\}')

        def replace_var(match: re.Match) -> str:
            var_name = match.group(1)
            env_value = os.environ.get(var_name)
            if env_value is None:
                raise ConfigError(f"Environment variable ${{{var_name}}} is not set")
            return env_value

        return pattern.sub(replace_var, value)

    if isinstance(value, dict):
        return {k: _resolve_env_vars(v) for k, v in value.items()}

    if isinstance(value, list):
        return [_resolve_env_vars(item) for item in value]

    return value


def _parse_reaction(key: str, data: dict[str, Any], base: Optional[ReactionConfig]) -> ReactionConfig:
    """Parse one reaction entry, layering it over base when given."""
    if not isinstance(data, dict):
        raise ConfigError(f"reactions.{key} must be a mapping")
    reaction = replace(base) if base is not None else ReactionConfig()

    action = data.get("action", reaction.action)
    if action not in REACTION_ACTIONS:
        raise ConfigError(
            f"reactions.{key}.action must be one of {', '.join(REACTION_ACTIONS)}"
        )
    priority = data.get("priority", reaction.priority)
    if priority not in PRIORITIES:
        raise ConfigError(f"reactions.{key}.priority must be one of {', '.join(PRIORITIES)}")

    escalate_after = data.get("escalate_after", data.get("escalateAfter", reaction.escalate_after))
    if isinstance(escalate_after, str):
        if escalate_after.isdigit():
            escalate_after = int(escalate_after)
        else:
            parse_duration(escalate_after)
    elif escalate_after is not None and not isinstance(escalate_after, int):
        raise ConfigError(f"reactions.{key}.escalate_after must be a count or a duration")

    return ReactionConfig(
        action=action,
        auto=bool(data.get("auto", reaction.auto)),
        message=data.get("message", reaction.message),
        priority=priority,
        retries=data.get("retries", reaction.retries),
        escalate_after=escalate_after,
    )


def _parse_reactions(
    data: dict[str, Any],
    base: dict[str, ReactionConfig],
) -> dict[str, ReactionConfig]:
    """Merge configured reactions over base."""
    result = dict(base)
    for key, entry in (data or {}).items():
        result[key] = _parse_reaction(key, entry, base.get(key))
    return result


def _parse_project(project_id: str, data: dict[str, Any], root: Path) -> ProjectConfig:
    """Parse one project entry."""
    if not isinstance(data, dict):
        raise ConfigError(f"projects.{project_id} must be a mapping")
    if not data.get("repo"):
        raise ConfigError(f"projects.{project_id}.repo is required")
    if not data.get("path"):
        raise ConfigError(f"projects.{project_id}.path is required")

    prefix = data.get("session_prefix", data.get("sessionPrefix", project_id))
    if not _SESSION_PREFIX_RE.match(prefix):
        raise ConfigError(
            f"projects.{project_id}.session_prefix may only contain letters, digits, '_' and '-'"
        )

    path = Path(data["path"]).expanduser()
    if not path.is_absolute():
        path = root / path

    agent_data = data.get("agent_config", data.get("agentConfig", {})) or {}
    project_reactions = {
        key: _parse_reaction(key, entry, None)
        for key, entry in (data.get("reactions") or {}).items()
    }

    return ProjectConfig(
        name=data.get("name", project_id),
        repo=data["repo"],
        path=str(path),
        default_branch=data.get("default_branch", data.get("defaultBranch", "main")),
        session_prefix=prefix,
        agent=data.get("agent"),
        runtime=data.get("runtime"),
        workspace=data.get("workspace"),
        tracker=data.get("tracker"),
        scm=data.get("scm"),
        agent_config=AgentSettings(
            permissions=agent_data.get("permissions", "default"),
            model=agent_data.get("model"),
        ),
        reactions=project_reactions,
        agent_rules=data.get("agent_rules", data.get("agentRules", "")) or "",
        orchestrator_rules=data.get("orchestrator_rules", data.get("orchestratorRules", "")) or "",
        post_create=list(data.get("post_create", data.get("postCreate", [])) or []),
        symlinks=list(data.get("symlinks", []) or []),
    )


def _parse_defaults(data: dict[str, Any]) -> DefaultsConfig:
    """Parse plugin defaults from dict."""
    defaults = DefaultsConfig()
    return DefaultsConfig(
        runtime=data.get("runtime", defaults.runtime),
        agent=data.get("agent", defaults.agent),
        workspace=data.get("workspace", defaults.workspace),
        tracker=data.get("tracker", defaults.tracker),
        scm=data.get("scm", defaults.scm),
        notifiers=list(data.get("notifiers", defaults.notifiers)),
    )


def _parse_notifiers(data: dict[str, Any]) -> dict[str, NotifierConfig]:
    """Parse notifier channels from dict."""
    if not data:
        return {"desktop": NotifierConfig(kind="desktop")}
    notifiers = {}
    for name, entry in data.items():
        entry = entry or {}
        kind = entry.get("kind", entry.get("plugin", name))
        if kind == "webhook" and not entry.get("url"):
            raise ConfigError(f"notifiers.{name}.url is required for webhook notifiers")
        notifiers[name] = NotifierConfig(
            kind=kind,
            url=entry.get("url"),
            headers=dict(entry.get("headers", {}) or {}),
            timeout_seconds=entry.get("timeout_seconds", 10),
        )
    return notifiers


def _parse_routing(data: dict[str, Any]) -> dict[str, list[str]]:
    """Parse priority → notifier routing."""
    routing = {}
    for priority, names in (data or {}).items():
        if priority not in PRIORITIES:
            raise ConfigError(f"notification_routing.{priority} is not a known priority")
        routing[priority] = list(names or [])
    return routing


def _parse_lifecycle_config(data: dict[str, Any]) -> LifecycleConfig:
    """Parse lifecycle loop configuration from dict."""
    config = LifecycleConfig(
        interval_seconds=float(data.get("interval_seconds", 30.0)),
        max_concurrency=int(data.get("max_concurrency", 8)),
        plugin_timeout_seconds=float(data.get("plugin_timeout_seconds", 30.0)),
        tick_deadline_seconds=float(data.get("tick_deadline_seconds", 120.0)),
    )
    if config.max_concurrency < 1:
        raise ConfigError("lifecycle.max_concurrency must be at least 1")
    return config


def _parse_delivery_config(data: dict[str, Any]) -> DeliveryConfig:
    """Parse delivery configuration from dict."""
    return DeliveryConfig(
        busy_timeout_seconds=float(data.get("busy_timeout_seconds", 60.0)),
        poll_interval_seconds=float(data.get("poll_interval_seconds", 2.0)),
        confirm_retries=int(data.get("confirm_retries", 3)),
    )


def find_config(start: Optional[Path] = None) -> Optional[Path]:
    """
    Locate the config file.

    $AO_CONFIG wins; otherwise search from start (default: cwd) upward.
    """
    env_path = os.environ.get(CONFIG_ENV_VAR)
    if env_path:
        return Path(env_path)

    current = (start or Path.cwd()).absolute()
    for directory in [current, *current.parents]:
        for name in CONFIG_FILENAMES:
            candidate = directory / name
            if candidate.is_file():
                return candidate
    return None


def load_config(config_path: Optional[str] = None) -> OrchestratorConfig:
    """
    Load configuration from agent-orchestrator.yaml.

    Args:
        config_path: Optional path to config file. If not provided, uses
                     find_config().

    Raises:
        ConfigError: If config is invalid or cannot be loaded.
    """
    path = Path(config_path) if config_path else find_config()
    if path is None or not path.exists():
        raise ConfigError(f"Configuration file not found: {config_path or CONFIG_FILENAMES[0]}")

    try:
        with open(path, "r") as f:
            raw_data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in config file: {e}")

    if not raw_data:
        raise ConfigError("Configuration file is empty")

    data = _resolve_env_vars(raw_data)
    root = path.absolute().parent

    projects_data = data.get("projects") or {}
    if not projects_data:
        raise ConfigError("Missing required section: projects")

    projects = {
        project_id: _parse_project(project_id, entry, root)
        for project_id, entry in projects_data.items()
    }
    prefixes = [p.session_prefix for p in projects.values()]
    if len(prefixes) != len(set(prefixes)):
        raise ConfigError("Session prefixes must be unique across projects")

    notifiers = _parse_notifiers(data.get("notifiers", {}))
    defaults = _parse_defaults(data.get("defaults", {}))
    for name in defaults.notifiers:
        if name not in notifiers:
            raise ConfigError(f"defaults.notifiers references unknown notifier '{name}'")

    return OrchestratorConfig(
        root=str(root),
        data_dir=data.get("data_dir", data.get("dataDir", ".ao")),
        worktree_dir=data.get("worktree_dir", data.get("worktreeDir", "~/.worktrees")),
        defaults=defaults,
        projects=projects,
        reactions=_parse_reactions(data.get("reactions", {}), default_reactions()),
        notifiers=notifiers,
        notification_routing=_parse_routing(
            data.get("notification_routing", data.get("notificationRouting", {}))
        ),
        lifecycle=_parse_lifecycle_config(data.get("lifecycle", {})),
        delivery=_parse_delivery_config(data.get("delivery", {})),
    )


def get_config(config_path: Optional[str] = None, force_reload: bool = False) -> OrchestratorConfig:
    """
    Get the cached configuration, loading it if necessary.

    Raises:
        ConfigError: If config is invalid or cannot be loaded.
    """
    global _config_cache

    if _config_cache is None or force_reload:
        _config_cache = load_config(config_path)

    return _config_cache


def clear_config_cache() -> None:
    """Clear the configuration cache. Useful for testing."""
    global _config_cache
    _config_cache = None
