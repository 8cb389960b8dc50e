"""TLS certificate commands for DevHost CLI."""

import click

from devhost.cli import get_controller
from devhost.errors import DevHostError
from devhost.output import OutputFormatter


@click.group()
@click.pass_context
def tls(ctx: click.Context) -> None:
    """Project TLS certificates.

    Certificates are issued with a DNS challenge when a project is created
    on a host with a base domain; these commands act on existing projects.
    """
    pass


@tls.command("refresh")
@click.argument("name")
@click.pass_context
def tls_refresh(ctx: click.Context, name: str) -> None:
    """Check and renew a project's certificate.

    Marks a lapsed certificate as expired and renews it, or retries issuance
    for a project whose earlier challenge failed.
    """
    formatter: OutputFormatter = ctx.obj["formatter"]

    try:
        with formatter.spinner(f"Refreshing certificate for {name}"):
            project = get_controller(ctx).refresh_tls(name)
    except DevHostError as e:
        formatter.fail(e)
        return

    formatter.success(project.routing.to_dict(), f"TLS state for '{name}': {project.routing.tls_state.value}")
