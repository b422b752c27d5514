"""
Git worktree workspace: one worktree per worker session.

Worktrees live at <worktree_dir>/<project_id>/<session_id> and branch from
origin/<default_branch>.
"""

from __future__ import annotations

import logging
import os
import shutil
from pathlib import Path
from typing import TYPE_CHECKING, Optional

from agent_orchestrator.plugins.base import Workspace, WorkspaceCreateConfig, WorkspaceInfo
from agent_orchestrator.utils.fs import ensure_dir
from agent_orchestrator.utils.shell import CommandError, run_command

if TYPE_CHECKING:
    from agent_orchestrator.config import ProjectConfig

logger = logging.getLogger(__name__)

POST_CREATE_TIMEOUT = 600


class WorktreeWorkspace(Workspace):
    """Workspace backed by `git worktree`."""

    name = "worktree"

    def __init__(self, worktrees_root: Path | str, command_timeout: float = 60) -> None:
        self.worktrees_root = Path(worktrees_root)
        self.command_timeout = command_timeout

    def _git(self, repo: str, *args: str, check: bool = True):
        return run_command(["git", "-C", repo, *args], timeout=self.command_timeout, check=check)

    def path_for(self, project_id: str, session_id: str) -> Path:
        return self.worktrees_root / project_id / session_id

    def create(self, config: WorkspaceCreateConfig) -> WorkspaceInfo:
        project = config.project
        path = self.path_for(config.project_id, config.session_id)
        if path.exists():
            raise CommandError(f"Worktree path already exists: {path}")
        ensure_dir(path.parent)

        fetch = self._git(project.path, "fetch", "origin", project.default_branch, check=False)
        base = f"origin/{project.default_branch}" if fetch.ok else project.default_branch
        if not fetch.ok:
            logger.warning("git fetch failed for %s, branching from local %s",
                           project.name, project.default_branch)

        try:
            self._git(project.path, "worktree", "add", "-b", config.branch, str(path), base)
        except CommandError as e:
            if "already exists" not in e.stderr:
                raise
            # Branch left over from an earlier session: check it out as-is.
            self._git(project.path, "worktree", "add", str(path), config.branch)

        logger.info("Created worktree %s on %s", path, config.branch)
        return WorkspaceInfo(
            path=str(path),
            branch=config.branch,
            session_id=config.session_id,
            project_id=config.project_id,
        )

    def post_create(self, info: WorkspaceInfo, project: ProjectConfig) -> None:
        """Link shared files from the main checkout, then run setup commands."""
        for relative in project.symlinks:
            source = Path(project.path) / relative
            target = Path(info.path) / relative
            if not source.exists() or target.exists() or target.is_symlink():
                continue
            ensure_dir(target.parent)
            os.symlink(source, target)

        for command in project.post_create:
            logger.info("Running post-create command in %s: %s", info.path, command)
            run_command(["sh", "-c", command], cwd=info.path, timeout=POST_CREATE_TIMEOUT)

    def destroy(self, workspace_path: str) -> None:
        path = Path(workspace_path)
        if not path.exists():
            return

        repo = self._main_repo(workspace_path)
        if repo is not None:
            result = self._git(repo, "worktree", "remove", "--force", workspace_path, check=False)
            if result.ok:
                return
            logger.warning("git worktree remove failed for %s: %s",
                           workspace_path, result.stderr.strip())

        shutil.rmtree(path, ignore_errors=True)
        if repo is not None:
            self._git(repo, "worktree", "prune", check=False)

    def _main_repo(self, workspace_path: str) -> Optional[str]:
        """The main checkout owning a worktree, or None if it is not one."""
        result = self._git(
            workspace_path, "rev-parse", "--path-format=absolute", "--git-common-dir",
            check=False,
        )
        if not result.ok or not result.stdout.strip():
            return None
        return str(Path(result.stdout.strip()).parent)
