"""
Entry point for running agent_orchestrator as a module.

Allows running as: python -m agent_orchestrator
"""

from agent_orchestrator.cli import cli_main

if __name__ == "__main__":
    cli_main()
