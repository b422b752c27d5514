"""
GitHub pull requests, checks and reviews (via the gh CLI).

PRs are addressed by URL, which gh accepts in place of a number, so a
persisted PR reference is enough to query it again.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Optional

from agent_orchestrator.models import (
    CIStatus,
    MergeReadiness,
    PRInfo,
    PRState,
    ReviewComment,
    ReviewDecision,
    Session,
)
from agent_orchestrator.plugins.base import SCM
from agent_orchestrator.plugins.gh import GhClient

if TYPE_CHECKING:
    from agent_orchestrator.config import ProjectConfig

FAILED_CONCLUSIONS = {"FAILURE", "TIMED_OUT", "CANCELLED", "ACTION_REQUIRED", "STARTUP_FAILURE"}
FAILED_STATES = {"FAILURE", "ERROR"}
PENDING_STATES = {"PENDING", "EXPECTED", "QUEUED", "IN_PROGRESS", "WAITING", "REQUESTED"}

REVIEW_DECISIONS = {
    "APPROVED": ReviewDecision.APPROVED,
    "CHANGES_REQUESTED": ReviewDecision.CHANGES_REQUESTED,
    "REVIEW_REQUIRED": ReviewDecision.PENDING,
}

MERGE_FLAGS = {"squash": "--squash", "merge": "--merge", "rebase": "--rebase"}

REVIEW_THREADS_QUERY = """
query($owner: String!, $repo: String!, $number: Int!) {
  repository(owner: $owner, name: $repo) {
    pullRequest(number: $number) {
      reviewThreads(first: 100) {
        nodes {
          isResolved
          comments(first: 1) {
            nodes { author { login } body path url }
          }
        }
      }
    }
  }
}
"""


def summarize_checks(rollup: list[dict[str, Any]]) -> CIStatus:
    """Roll statusCheckRollup entries up into one CI status."""
    if not rollup:
        return CIStatus.NONE
    pending = False
    for check in rollup:
        conclusion = (check.get("conclusion") or "").upper()
        state = (check.get("state") or "").upper()
        status = (check.get("status") or "").upper()
        if conclusion in FAILED_CONCLUSIONS or state in FAILED_STATES:
            return CIStatus.FAILING
        if state in PENDING_STATES or (status and status != "COMPLETED"):
            pending = True
    return CIStatus.PENDING if pending else CIStatus.PASSING


class GitHubSCM(SCM):
    """Pull request source for GitHub repositories."""

    name = "github"

    def __init__(self, command_timeout: float = 30) -> None:
        self.gh = GhClient(command_timeout)

    def _view(self, pr: PRInfo, fields: str) -> dict[str, Any]:
        return self.gh.json(["pr", "view", pr.url, "--json", fields]) or {}

    def detect_pr(self, session: Session, project: ProjectConfig) -> Optional[PRInfo]:
        if not session.branch:
            return None
        prs = self.gh.json([
            "pr", "list",
            "--repo", project.repo,
            "--head", session.branch,
            "--state", "all",
            "--json", "number,url,title,headRefName,baseRefName,isDraft",
            "--limit", "1",
        ]) or []
        if not prs:
            return None
        data = prs[0]
        owner, _, repo = project.repo.partition("/")
        return PRInfo(
            number=int(data["number"]),
            url=data["url"],
            title=data.get("title", ""),
            owner=owner,
            repo=repo,
            branch=data.get("headRefName", session.branch),
            base_branch=data.get("baseRefName", ""),
            is_draft=bool(data.get("isDraft", False)),
        )

    def get_pr_state(self, pr: PRInfo) -> PRState:
        state = str(self._view(pr, "state").get("state", "OPEN")).lower()
        return PRState(state) if state in PRState._value2member_map_ else PRState.OPEN

    def get_ci_summary(self, pr: PRInfo) -> CIStatus:
        return summarize_checks(self._view(pr, "statusCheckRollup").get("statusCheckRollup") or [])

    def get_review_decision(self, pr: PRInfo) -> ReviewDecision:
        decision = self._view(pr, "reviewDecision").get("reviewDecision") or ""
        return REVIEW_DECISIONS.get(decision, ReviewDecision.NONE)

    def get_mergeability(self, pr: PRInfo) -> MergeReadiness:
        data = self._view(pr, "mergeable,reviewDecision,statusCheckRollup,isDraft")
        ci = summarize_checks(data.get("statusCheckRollup") or [])
        review = REVIEW_DECISIONS.get(data.get("reviewDecision") or "", ReviewDecision.NONE)
        no_conflicts = data.get("mergeable") != "CONFLICTING"

        blockers = []
        if ci == CIStatus.FAILING:
            blockers.append("CI is failing")
        elif ci == CIStatus.PENDING:
            blockers.append("CI is pending")
        if review == ReviewDecision.CHANGES_REQUESTED:
            blockers.append("Changes requested")
        elif review == ReviewDecision.PENDING:
            blockers.append("Review required")
        if not no_conflicts:
            blockers.append("Merge conflicts")
        if data.get("isDraft"):
            blockers.append("PR is a draft")

        ci_passing = ci in (CIStatus.PASSING, CIStatus.NONE)
        approved = review in (ReviewDecision.APPROVED, ReviewDecision.NONE)
        return MergeReadiness(
            mergeable=not blockers,
            ci_passing=ci_passing,
            approved=approved,
            no_conflicts=no_conflicts,
            blockers=blockers,
        )

    def get_pending_comments(self, pr: PRInfo) -> list[ReviewComment]:
        if not pr.owner or not pr.repo or not pr.number:
            pr = PRInfo.from_url(pr.url)
        data = self.gh.graphql(
            REVIEW_THREADS_QUERY, owner=pr.owner, repo=pr.repo, number=pr.number
        ) or {}
        threads = (
            data.get("data", {})
            .get("repository", {})
            .get("pullRequest", {})
            .get("reviewThreads", {})
            .get("nodes", [])
        ) or []

        comments = []
        for thread in threads:
            if thread.get("isResolved"):
                continue
            first = (thread.get("comments", {}).get("nodes") or [{}])[0]
            comments.append(ReviewComment(
                author=(first.get("author") or {}).get("login", ""),
                body=first.get("body", ""),
                path=first.get("path"),
                url=first.get("url"),
            ))
        return comments

    def merge(self, pr: PRInfo, method: str = "squash") -> None:
        flag = MERGE_FLAGS.get(method)
        if flag is None:
            raise ValueError(f"Unknown merge method: {method}")
        self.gh.run(["pr", "merge", pr.url, flag, "--delete-branch"])
