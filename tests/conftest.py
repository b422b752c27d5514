"""Shared fixtures: a one-project config wired to in-memory plugins."""

import pytest
from pathlib import Path
from typer.testing import CliRunner

from agent_orchestrator.config import (
    LifecycleConfig,
    OrchestratorConfig,
    ProjectConfig,
    clear_config_cache,
)
from agent_orchestrator.lifecycle_manager import LifecycleManager
from agent_orchestrator.session_manager import SessionManager
from agent_orchestrator.session_store import SessionStore
from tests.fakes import FakePlugins


@pytest.fixture(autouse=True)
def _reset_config_cache():
    clear_config_cache()
    yield
    clear_config_cache()


@pytest.fixture
def config(tmp_path: Path) -> OrchestratorConfig:
    """Config with one project `app` rooted in tmp_path."""
    repo = tmp_path / "app"
    repo.mkdir()
    return OrchestratorConfig(
        root=str(tmp_path),
        data_dir=".ao",
        worktree_dir="worktrees",
        projects={
            "app": ProjectConfig(
                name="App",
                repo="acme/app",
                path=str(repo),
                session_prefix="app",
            ),
        },
        lifecycle=LifecycleConfig(
            interval_seconds=0.05,
            max_concurrency=4,
            plugin_timeout_seconds=2.0,
            tick_deadline_seconds=5.0,
        ),
    )


@pytest.fixture
def plugins(tmp_path: Path) -> FakePlugins:
    return FakePlugins(str(tmp_path / "worktrees"))


@pytest.fixture
def store(config) -> SessionStore:
    return SessionStore(config.sessions_path)


@pytest.fixture
def manager(config, plugins, store) -> SessionManager:
    return SessionManager(config, plugins.registry, store=store)


@pytest.fixture
def lifecycle(config, plugins, manager):
    lm = LifecycleManager(config, plugins.registry, manager)
    yield lm
    lm.stop(timeout=1)


@pytest.fixture
def cli_runner():
    """Typer CLI test runner."""
    return CliRunner()
