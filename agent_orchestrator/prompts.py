"""
Prompt text handed to agents at launch.

Workers get base instructions, the issue context and the project's agent
rules. The orchestrator gets one of two prompts: coordinator mode (manage
workers, write no code) or discover-first mode (explore and build, used when
`ao start` is given a prompt).
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from agent_orchestrator.config import OrchestratorConfig, ProjectConfig

WORKER_BASE_INSTRUCTIONS = """\
You are a worker agent in an isolated git worktree on your own branch.

- Implement the task below, with tests.
- Commit in small steps and push your branch.
- Open a pull request when the work is ready for review.
- CI failures and review comments will be forwarded to you; address them and push again.
- If you are blocked on a decision only a human can make, say so plainly and stop."""


def build_worker_prompt(
    project: ProjectConfig,
    issue_prompt: Optional[str] = None,
    extra: Optional[str] = None,
) -> str:
    """Compose a worker's launch prompt."""
    sections = [WORKER_BASE_INSTRUCTIONS]
    if issue_prompt:
        sections.append(f"## Task\n\n{issue_prompt.strip()}")
    if extra:
        sections.append(f"## Additional Instructions\n\n{extra.strip()}")
    if project.agent_rules:
        sections.append(f"## Project Rules\n\n{project.agent_rules.strip()}")
    return "\n\n".join(sections)


def _project_info(project: ProjectConfig) -> str:
    return "\n".join([
        "## Project Info",
        "",
        f"- **Name**: {project.name}",
        f"- **Repository**: {project.repo}",
        f"- **Default Branch**: {project.default_branch}",
        f"- **Session Prefix**: {project.session_prefix}",
        f"- **Local Path**: {project.path}",
    ])


def _commands_table() -> str:
    rows = [
        ("ao status", "Show all sessions with their status"),
        ("ao spawn <project> [issue]", "Spawn a worker session"),
        ("ao session ls [-p project]", "List sessions"),
        ("ao session attach <session>", "Print the command to attach to a session"),
        ("ao session kill <session>", "Kill a session"),
        ("ao session cleanup [-p project]", "Kill sessions whose work is finished"),
        ("ao send <session> <message>", "Send a message to a running session"),
    ]
    lines = ["| Command | Description |", "|---------|-------------|"]
    lines.extend(f"| `{command}` | {description} |" for command, description in rows)
    return "\n".join(lines)


def _reactions_summary(config: OrchestratorConfig, project_id: str) -> Optional[str]:
    keys = sorted(set(config.reactions) | set(config.projects[project_id].reactions))
    lines = []
    for key in keys:
        reaction = config.reaction_for(project_id, key)
        if reaction is None or not reaction.auto:
            continue
        if reaction.action == "send-to-agent":
            lines.append(
                f"- **{key}**: forwarded to the agent (retries: {reaction.retries or 'none'}, "
                f"escalates after: {reaction.escalate_after or 'never'})"
            )
        elif reaction.action == "notify":
            lines.append(f"- **{key}**: notifies a human (priority: {reaction.priority})")
        elif reaction.action == "auto-merge":
            lines.append(f"- **{key}**: merged automatically")
    if not lines:
        return None
    return "## Automated Reactions\n\nThese events are handled for you:\n\n" + "\n".join(lines)


def generate_orchestrator_prompt(
    config: OrchestratorConfig,
    project_id: str,
    project: ProjectConfig,
    prompt: Optional[str] = None,
) -> str:
    """Orchestrator system prompt: discover-first when prompt is given, else coordinator."""
    if prompt:
        return _discover_first_prompt(project, prompt)
    return _coordinator_prompt(config, project_id, project)


def _discover_first_prompt(project: ProjectConfig, prompt: str) -> str:
    sections = [
        f"# {project.name} Build Agent\n\nYou are building {project.name}.",
        f"## What the user wants\n\n{prompt.strip()}",
        "## Your approach\n\n"
        "Before anything else, explore the repository: README, existing code, tooling and CI.\n"
        "Then build: write code, commit, push, iterate. Spawn workers later if the work "
        "splits cleanly.",
        "## Critical rules\n\n"
        "- Build the simplest thing that works.\n"
        "- Success is shipped code (commits, PRs), not infrastructure.\n"
        "- If stuck after a real attempt, report what is wrong instead of retrying blindly.",
        f"## Available tools\n\n{_commands_table()}",
        _project_info(project),
    ]
    if project.orchestrator_rules:
        sections.append(f"## Project-Specific Rules\n\n{project.orchestrator_rules.strip()}")
    return "\n\n".join(sections)


def _coordinator_prompt(config: OrchestratorConfig, project_id: str, project: ProjectConfig) -> str:
    prefix = project.session_prefix
    sections = [
        f"# {project.name} Orchestrator\n\n"
        f"You are the orchestrator agent for {project.name}. You coordinate worker "
        "sessions; you do not write code yourself. Spawn workers for issues, watch their "
        "progress, and step in when they need help.",
        _project_info(project),
        "## Quick Start\n\n```bash\n"
        "ao status\n"
        f"ao spawn {project_id} 123\n"
        f"ao session ls -p {project_id}\n"
        f'ao send {prefix}-1 "Your message here"\n'
        f"ao session kill {prefix}-1\n"
        "```",
        f"## Available Commands\n\n{_commands_table()}",
        "## Session Lifecycle\n\n"
        f"Each worker gets a git worktree branched from `{project.default_branch}`, its own "
        "terminal session and a launch prompt built from the issue. Status moves through "
        "spawning, working, review_pending, ci_failed, changes_requested, mergeable and "
        "finally merged or done. Sessions that are stuck or need input are surfaced to you.",
    ]
    reactions = _reactions_summary(config, project_id)
    if reactions:
        sections.append(reactions)
    sections.append(
        "## Tips\n\n"
        "1. Check `ao status` before spawning to avoid duplicate sessions for one issue.\n"
        "2. Let reactions handle routine CI failures and review comments.\n"
        "3. Run `ao session cleanup` regularly to reclaim finished sessions."
    )
    if project.orchestrator_rules:
        sections.append(f"## Project-Specific Rules\n\n{project.orchestrator_rules.strip()}")
    return "\n\n".join(sections)
