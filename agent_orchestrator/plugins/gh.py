"""
Thin wrapper around the `gh` CLI shared by the GitHub tracker and SCM.

Unlike a best-effort label sync, every failure here propagates: the
lifecycle engine must be able to tell "no PR" apart from "GitHub did not
answer".
"""

from __future__ import annotations

import json
from typing import Any

from agent_orchestrator.utils.shell import CommandError, run_command


class GhClient:
    """Runs gh subcommands with a timeout and decodes JSON output."""

    def __init__(self, command_timeout: float = 30) -> None:
        self.command_timeout = command_timeout

    def run(self, args: list[str]) -> str:
        """
        Run `gh <args>` and return stdout.

        Raises:
            CommandError: On a missing binary, timeout or non-zero exit.
        """
        return run_command(["gh", *args], timeout=self.command_timeout).stdout

    def json(self, args: list[str]) -> Any:
        """
        Run a gh command that prints JSON and decode it.

        Raises:
            CommandError: If the command fails or prints invalid JSON.
        """
        output = self.run(args)
        try:
            return json.loads(output) if output.strip() else None
        except json.JSONDecodeError as e:
            raise CommandError(f"gh returned invalid JSON: {e}", ["gh", *args])

    def graphql(self, query: str, **variables: Any) -> Any:
        """Run a GraphQL query; variables are passed with -F (typed) or -f."""
        args = ["api", "graphql", "-f", f"query={query}"]
        for key, value in variables.items():
            flag = "-F" if isinstance(value, int) else "-f"
            args.extend([flag, f"{key}={value}"])
        return self.json(args)
