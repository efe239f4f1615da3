"""clusternet command line.

Usage:
    clusternet reconcile --spec cluster.yaml
    clusternet delete --spec cluster.yaml
    clusternet machines reconcile --spec cluster.yaml
    clusternet machines delete --spec cluster.yaml
    clusternet names -s <subscription> -g <resource group> -c <cluster> -l <location>
"""

from __future__ import annotations

import asyncio
from pathlib import Path

import click

from . import naming
from .main import Action
from .main import main as run_main


# =============================================================================
# Main CLI Group
# =============================================================================


@click.group()
@click.version_option(version="0.1.0", prog_name="clusternet")
def cli() -> None:
    """Reconcile the Azure network footprint of a cluster.

    \b
    Azure settings come from the environment:
        AZURE_SUBSCRIPTION_ID, AZURE_LOCATION, AZURE_CLIENT_ID,
        OPERATION_TIMEOUT, DELETE_TIMEOUT
    """
    pass


# =============================================================================
# Engine Commands
# =============================================================================


def _run(action: Action, spec: str | None) -> None:
    exit_code = asyncio.run(run_main(action, Path(spec) if spec else None))
    if exit_code != 0:
        raise SystemExit(exit_code)


@cli.command()
@click.option(
    "--spec",
    type=click.Path(dir_okay=False),
    envvar="CLUSTER_SPEC_PATH",
    help="Cluster YAML document",
)
def reconcile(spec: str | None) -> None:
    """Create or update the cluster network."""
    _run(Action.RECONCILE, spec)


@cli.command()
@click.option(
    "--spec",
    type=click.Path(dir_okay=False),
    envvar="CLUSTER_SPEC_PATH",
    help="Cluster YAML document",
)
def delete(spec: str | None) -> None:
    """Delete the cluster network."""
    _run(Action.DELETE, spec)


# =============================================================================
# Machine Commands
# =============================================================================


@cli.group()
def machines() -> None:
    """Manage the network interfaces of the machines in a cluster document."""
    pass


@machines.command("reconcile")
@click.option(
    "--spec",
    type=click.Path(dir_okay=False),
    envvar="CLUSTER_SPEC_PATH",
    help="Cluster YAML document",
)
def machines_reconcile(spec: str | None) -> None:
    """Create or update machine network interfaces and SSH NAT rules."""
    _run(Action.RECONCILE_MACHINES, spec)


@machines.command("delete")
@click.option(
    "--spec",
    type=click.Path(dir_okay=False),
    envvar="CLUSTER_SPEC_PATH",
    help="Cluster YAML document",
)
def machines_delete(spec: str | None) -> None:
    """Delete machine network interfaces and their SSH NAT rules."""
    _run(Action.DELETE_MACHINES, spec)


# =============================================================================
# Naming Commands
# =============================================================================


@cli.command()
@click.option("--subscription", "-s", envvar="AZURE_SUBSCRIPTION_ID", required=True)
@click.option("--resource-group", "-g", required=True)
@click.option("--cluster", "-c", "cluster_name", required=True)
@click.option("--location", "-l", envvar="AZURE_LOCATION", required=True)
def names(subscription: str, resource_group: str, cluster_name: str, location: str) -> None:
    """Print the names derived from a cluster's identity."""
    api_ip = naming.generate_api_server_ip_name(subscription, resource_group, cluster_name)

    click.echo(f"API server public IP:  {api_ip}")
    click.echo(f"API server FQDN:       {naming.generate_fqdn(api_ip, location)}")
    click.echo(
        "Egress public IP:      "
        f"{naming.generate_egress_ip_name(subscription, resource_group, cluster_name)}"
    )
    click.echo(
        "API server public LB:  "
        f"{naming.generate_public_lb_name(naming.API_SERVER_PURPOSE)}"
    )
    click.echo(
        "Internal LB:           "
        f"{naming.generate_internal_lb_name(naming.API_SERVER_PURPOSE)}"
    )
    click.echo(
        f"Egress public LB:      {naming.generate_public_lb_name(naming.EGRESS_PURPOSE)}"
    )


# =============================================================================
# Entry Point
# =============================================================================


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
