"""Host preparation command for DevHost CLI."""

import click

from devhost.cli import get_controller
from devhost.errors import DevHostError
from devhost.output import OutputFormatter


@click.command("setup")
@click.pass_context
def setup(ctx: click.Context) -> None:
    """Prepare this host for DevHost projects.

    Creates the projects root and state directories, the shared group,
    adds the owner and web/database service accounts to it, and installs
    the nginx include that picks up per-project virtual hosts. Re-running
    it changes nothing that is already in place.
    """
    formatter: OutputFormatter = ctx.obj["formatter"]

    try:
        with formatter.spinner("Preparing host"):
            result = get_controller(ctx).setup_host()
    except DevHostError as e:
        formatter.fail(e)
        return

    formatter.success(result, "Host ready")
