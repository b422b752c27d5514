"""GitHub Issues tracker (via the gh CLI)."""

from __future__ import annotations

import re
from typing import TYPE_CHECKING

from agent_orchestrator.plugins.base import Issue, Tracker
from agent_orchestrator.plugins.gh import GhClient

if TYPE_CHECKING:
    from agent_orchestrator.config import ProjectConfig

_ISSUE_URL_RE = re.compile(r"/issues/(\d+)/?$")


def parse_issue_number(issue_ref: str) -> str:
    """
    Normalize "#42", "42" or an issue URL to "42".

    Raises:
        ValueError: If no issue number can be found.
    """
    ref = issue_ref.strip()
    match = _ISSUE_URL_RE.search(ref)
    if match:
        return match.group(1)
    ref = ref.lstrip("#")
    if ref.isdigit():
        return ref
    raise ValueError(f"Not a GitHub issue reference: {issue_ref!r}")


class GitHubTracker(Tracker):
    """Reads issues from the project's GitHub repository."""

    name = "github"

    def __init__(self, command_timeout: float = 30) -> None:
        self.gh = GhClient(command_timeout)

    def get_issue(self, issue_ref: str, project: ProjectConfig) -> Issue:
        number = parse_issue_number(issue_ref)
        data = self.gh.json([
            "issue", "view", number,
            "--repo", project.repo,
            "--json", "number,title,body,url,state,labels",
        ]) or {}
        return Issue(
            id=str(data.get("number", number)),
            title=data.get("title", ""),
            description=data.get("body") or "",
            url=data.get("url", ""),
            state=str(data.get("state", "OPEN")).lower(),
            labels=[label.get("name", "") for label in data.get("labels") or []],
        )

    def is_issue_done(self, issue_ref: str, project: ProjectConfig) -> bool:
        return self.get_issue(issue_ref, project).state == "closed"

    def generate_prompt(self, issue_ref: str, project: ProjectConfig) -> str:
        issue = self.get_issue(issue_ref, project)
        lines = [f"Work on GitHub issue #{issue.id}: {issue.title}", f"URL: {issue.url}"]
        if issue.labels:
            lines.append(f"Labels: {', '.join(issue.labels)}")
        if issue.description:
            lines.extend(["", issue.description.strip()])
        return "\n".join(lines)

    def branch_name(self, issue_ref: str, project: ProjectConfig) -> str:
        return f"feat/issue-{parse_issue_number(issue_ref)}"
