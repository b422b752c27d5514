"""Tests for configuration loading and validation."""

from __future__ import annotations

from pathlib import Path

import pytest

from agent_orchestrator.config import (
    ConfigError,
    OrchestratorConfig,
    ProjectConfig,
    ReactionConfig,
    default_reactions,
    find_config,
    get_config,
    load_config,
    parse_duration,
)

MINIMAL = """
projects:
  app:
    repo: acme/app
    path: ./app
"""


def _write(tmp_path: Path, text: str, name: str = "agent-orchestrator.yaml") -> Path:
    path = tmp_path / name
    path.write_text(text)
    return path


# =============================================================================
# Durations
# =============================================================================


class TestParseDuration:
    @pytest.mark.parametrize("value,seconds", [
        ("30s", 30.0),
        ("30m", 1800.0),
        ("2h", 7200.0),
        ("1d", 86400.0),
        (" 5 m ", 300.0),
    ])
    def test_valid(self, value, seconds):
        assert parse_duration(value) == seconds

    @pytest.mark.parametrize("value", ["", "30", "m", "1.5h", "10w"])
    def test_invalid(self, value):
        with pytest.raises(ConfigError):
            parse_duration(value)

    def test_reaction_escalate_after_accessors(self):
        by_count = ReactionConfig(escalate_after=3)
        by_time = ReactionConfig(escalate_after="10m")
        assert by_count.escalate_after_attempts == 3
        assert by_count.escalate_after_seconds is None
        assert by_time.escalate_after_seconds == 600.0
        assert by_time.escalate_after_attempts is None


# =============================================================================
# Loading
# =============================================================================


class TestLoadConfig:
    """Tests for load_config()."""

    def test_minimal_config_gets_defaults(self, tmp_path):
        config = load_config(str(_write(tmp_path, MINIMAL)))

        project = config.get_project("app")
        assert project.repo == "acme/app"
        assert project.path == str(tmp_path / "app")
        assert project.session_prefix == "app"
        assert project.default_branch == "main"
        assert config.root == str(tmp_path)
        assert config.data_path == tmp_path / ".ao"
        assert config.defaults.runtime == "tmux"
        assert config.defaults.agent == "claude-code"
        assert set(config.reactions) == set(default_reactions())
        assert config.lifecycle.interval_seconds == 30.0

    def test_full_config(self, tmp_path, monkeypatch):
        monkeypatch.setenv("HOOK_TOKEN", "s3cret")
        path = _write(tmp_path, """
data_dir: /var/lib/ao
worktree_dir: trees
defaults:
  agent: codex
  notifiers: [desktop, team]
projects:
  web:
    name: Web Frontend
    repo: acme/web
    path: /src/web
    defaultBranch: develop
    sessionPrefix: fe
    agentConfig:
      permissions: skip
      model: opus
    postCreate: ["npm ci"]
    symlinks: [.env]
    reactions:
      ci-failed:
        action: notify
        priority: urgent
notifiers:
  desktop: {}
  team:
    kind: webhook
    url: https://hooks.example.com/ao
    headers:
      Authorization: "Bearer ${HOOK_TOKEN}"
notification_routing:
  urgent: [team]
lifecycle:
  interval_seconds: 5
  max_concurrency: 2
delivery:
  busy_timeout_seconds: 10
""")
        config = load_config(str(path))

        web = config.get_project("web")
        assert web.name == "Web Frontend"
        assert web.default_branch == "develop"
        assert web.session_prefix == "fe"
        assert web.agent_config.permissions == "skip"
        assert web.agent_config.model == "opus"
        assert web.post_create == ["npm ci"]
        assert web.symlinks == [".env"]
        assert web.reactions["ci-failed"].priority == "urgent"
        assert config.data_path == Path("/var/lib/ao")
        assert config.worktrees_path == tmp_path / "trees"
        assert config.defaults.agent == "codex"
        assert config.notifiers["team"].headers == {"Authorization": "Bearer s3cret"}
        assert config.notifiers_for("urgent") == ["team"]
        assert config.notifiers_for("info") == ["desktop", "team"]
        assert config.lifecycle.interval_seconds == 5.0
        assert config.lifecycle.max_concurrency == 2
        assert config.delivery.busy_timeout_seconds == 10.0

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError, match="not found"):
            load_config(str(tmp_path / "nope.yaml"))

    def test_empty_file(self, tmp_path):
        with pytest.raises(ConfigError, match="empty"):
            load_config(str(_write(tmp_path, "")))

    def test_invalid_yaml(self, tmp_path):
        with pytest.raises(ConfigError, match="Invalid YAML"):
            load_config(str(_write(tmp_path, "projects: [unclosed")))

    def test_missing_projects(self, tmp_path):
        with pytest.raises(ConfigError, match="projects"):
            load_config(str(_write(tmp_path, "data_dir: .ao\n")))

    @pytest.mark.parametrize("field_name", ["repo", "path"])
    def test_project_requires_field(self, tmp_path, field_name):
        entry = {"repo": "repo: acme/app", "path": "path: ./app"}
        del entry[field_name]
        text = "projects:\n  app:\n" + "".join(f"    {line}\n" for line in entry.values())
        with pytest.raises(ConfigError, match=f"projects.app.{field_name} is required"):
            load_config(str(_write(tmp_path, text)))

    def test_invalid_session_prefix(self, tmp_path):
        text = MINIMAL + "    session_prefix: 'bad prefix'\n"
        with pytest.raises(ConfigError, match="session_prefix"):
            load_config(str(_write(tmp_path, text)))

    def test_duplicate_prefixes_rejected(self, tmp_path):
        text = """
projects:
  one:
    repo: acme/one
    path: ./one
    session_prefix: app
  two:
    repo: acme/two
    path: ./two
    session_prefix: app
"""
        with pytest.raises(ConfigError, match="unique"):
            load_config(str(_write(tmp_path, text)))

    def test_unset_env_var(self, tmp_path, monkeypatch):
        monkeypatch.delenv("AO_TEST_MISSING", raising=False)
        text = "projects:\n  app:\n    repo: ${AO_TEST_MISSING}\n    path: ./app\n"
        with pytest.raises(ConfigError, match="AO_TEST_MISSING"):
            load_config(str(_write(tmp_path, text)))

    def test_unknown_default_notifier(self, tmp_path):
        text = MINIMAL + "defaults:\n  notifiers: [pager]\n"
        with pytest.raises(ConfigError, match="pager"):
            load_config(str(_write(tmp_path, text)))

    def test_webhook_requires_url(self, tmp_path):
        text = MINIMAL + "notifiers:\n  team:\n    kind: webhook\n"
        with pytest.raises(ConfigError, match="url"):
            load_config(str(_write(tmp_path, text)))

    def test_unknown_routing_priority(self, tmp_path):
        text = MINIMAL + "notification_routing:\n  critical: [desktop]\n"
        with pytest.raises(ConfigError, match="critical"):
            load_config(str(_write(tmp_path, text)))

    def test_max_concurrency_must_be_positive(self, tmp_path):
        text = MINIMAL + "lifecycle:\n  max_concurrency: 0\n"
        with pytest.raises(ConfigError, match="max_concurrency"):
            load_config(str(_write(tmp_path, text)))


class TestReactionParsing:
    def test_override_merges_over_default(self, tmp_path):
        text = MINIMAL + "reactions:\n  ci-failed:\n    retries: 5\n"
        config = load_config(str(_write(tmp_path, text)))

        reaction = config.reactions["ci-failed"]
        assert reaction.retries == 5
        assert reaction.action == "send-to-agent"
        assert "{pr_url}" in reaction.message

    def test_new_reaction_key(self, tmp_path):
        text = MINIMAL + "reactions:\n  pr-merged:\n    action: notify\n    priority: action\n"
        config = load_config(str(_write(tmp_path, text)))
        assert config.reactions["pr-merged"].priority == "action"

    def test_numeric_string_escalate_after_is_a_count(self, tmp_path):
        text = MINIMAL + "reactions:\n  ci-failed:\n    escalateAfter: '4'\n"
        config = load_config(str(_write(tmp_path, text)))
        assert config.reactions["ci-failed"].escalate_after == 4

    def test_disabled_reaction(self, tmp_path):
        text = MINIMAL + "reactions:\n  agent-stuck:\n    auto: false\n"
        config = load_config(str(_write(tmp_path, text)))
        assert config.reactions["agent-stuck"].auto is False

    @pytest.mark.parametrize("entry,match", [
        ("action: explode", "action"),
        ("priority: critical", "priority"),
        ("escalate_after: soon", "duration"),
        ("escalate_after: [1]", "escalate_after"),
    ])
    def test_invalid_reaction(self, tmp_path, entry, match):
        text = MINIMAL + f"reactions:\n  ci-failed:\n    {entry}\n"
        with pytest.raises(ConfigError, match=match):
            load_config(str(_write(tmp_path, text)))

    def test_project_reaction_wins(self):
        config = OrchestratorConfig(projects={
            "app": ProjectConfig(
                name="app", repo="acme/app", path="/src/app",
                reactions={"ci-failed": ReactionConfig(action="notify")},
            ),
        })
        assert config.reaction_for("app", "ci-failed").action == "notify"
        assert config.reaction_for("other", "ci-failed").action == "send-to-agent"
        assert config.reaction_for("app", "unknown") is None


class TestProjectLookup:
    def test_unknown_project_lists_available(self):
        config = OrchestratorConfig(projects={
            "app": ProjectConfig(name="app", repo="acme/app", path="/src/app"),
        })
        with pytest.raises(ConfigError, match="Available: app"):
            config.get_project("web")

    def test_prefix_defaults_to_project_id(self):
        config = OrchestratorConfig(projects={
            "app": ProjectConfig(name="app", repo="acme/app", path="/src/app"),
        })
        assert config.projects["app"].session_prefix == "app"


# =============================================================================
# Discovery and caching
# =============================================================================


class TestFindConfig:
    def test_env_var_wins(self, tmp_path, monkeypatch):
        monkeypatch.setenv("AO_CONFIG", str(tmp_path / "custom.yaml"))
        assert find_config(tmp_path) == tmp_path / "custom.yaml"

    def test_searches_upward(self, tmp_path, monkeypatch):
        monkeypatch.delenv("AO_CONFIG", raising=False)
        path = _write(tmp_path, MINIMAL, name="agent-orchestrator.yml")
        nested = tmp_path / "a" / "b"
        nested.mkdir(parents=True)
        assert find_config(nested) == path

    def test_load_uses_discovery(self, tmp_path, monkeypatch):
        monkeypatch.delenv("AO_CONFIG", raising=False)
        _write(tmp_path, MINIMAL)
        monkeypatch.chdir(tmp_path)
        assert load_config().get_project("app").repo == "acme/app"


class TestGetConfig:
    def test_cached_until_forced(self, tmp_path):
        path = _write(tmp_path, MINIMAL)
        first = get_config(str(path))
        assert get_config(str(path)) is first
        assert get_config(str(path), force_reload=True) is not first
