"""
Capability plugins.

The contracts live in base.py; registry.py turns config strings into
concrete instances. Concrete plugins are imported lazily by the registry.
"""

from agent_orchestrator.plugins.base import (
    SCM,
    Agent,
    AgentLaunchConfig,
    AttachInfo,
    Issue,
    Notifier,
    Runtime,
    RuntimeCreateConfig,
    RuntimeMetrics,
    Tracker,
    Workspace,
    WorkspaceCreateConfig,
    WorkspaceInfo,
)
from agent_orchestrator.plugins.registry import (
    AgentKind,
    NotifierKind,
    PluginRegistry,
    ProjectPlugins,
    RuntimeKind,
    ScmKind,
    TrackerKind,
    WorkspaceKind,
)

__all__ = [
    "SCM",
    "Agent",
    "AgentKind",
    "AgentLaunchConfig",
    "AttachInfo",
    "Issue",
    "Notifier",
    "NotifierKind",
    "PluginRegistry",
    "ProjectPlugins",
    "Runtime",
    "RuntimeCreateConfig",
    "RuntimeKind",
    "RuntimeMetrics",
    "ScmKind",
    "Tracker",
    "TrackerKind",
    "Workspace",
    "WorkspaceCreateConfig",
    "WorkspaceInfo",
    "WorkspaceKind",
]
