"""dhcp-template command line.

Usage:
    dhcp-template agent            # Push this node's interfaces to the operator
    dhcp-template agent-service    # Serve this node's interfaces on demand
    dhcp-template operator         # Accept pushes and reconcile DHCPTemplates

All settings come from DHCP_TEMPLATE__* environment variables.
"""

from __future__ import annotations

import asyncio
import sys
from collections.abc import Callable, Coroutine
from typing import Any

import click

from .main import run_agent, run_agent_service, run_operator, setup_logging

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")

log_level_option = click.option(
    "--log-level",
    envvar="LOG_LEVEL",
    default="INFO",
    show_default=True,
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    help="Minimum log level",
)


def _run(entry: Callable[[], Coroutine[Any, Any, int]], log_level: str) -> None:
    setup_logging(log_level)
    sys.exit(asyncio.run(entry()))


@click.group()
@click.version_option(version="0.1.0", prog_name="dhcp-template")
def cli() -> None:
    """Sync node DHCP leases to Kubernetes through templates.

    \b
    Quick Start:
        DHCP_TEMPLATE__ENDPOINT=http://operator:50051 dhcp-template agent
        dhcp-template operator
    """
    pass


@cli.command()
@log_level_option
def agent(log_level: str) -> None:
    """Push this node's interfaces to the operator."""
    _run(run_agent, log_level)


@cli.command("agent-service")
@log_level_option
def agent_service(log_level: str) -> None:
    """Serve this node's interfaces on demand."""
    _run(run_agent_service, log_level)


@cli.command()
@log_level_option
def operator(log_level: str) -> None:
    """Accept node pushes and reconcile DHCPTemplates."""
    _run(run_operator, log_level)


if __name__ == "__main__":
    cli()
