"""Main CLI entry point for DevHost."""

from pathlib import Path

import click

from devhost import __version__
from devhost.config import DevHostConfig
from devhost.lifecycle import LifecycleController
from devhost.output import OutputFormatter, configure_logging


@click.group()
@click.option("--json", "output_json", is_flag=True, help="Output as JSON")
@click.option("--verbose", "-v", is_flag=True, help="Show debug logging on stderr")
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    help="Configuration file (default: $DEVHOST_CONFIG or /etc/devhost/config.yaml)",
)
@click.version_option(version=__version__, prog_name="devhost")
@click.pass_context
def cli(ctx: click.Context, output_json: bool, verbose: bool, config_path: Path | None) -> None:
    """DevHost - per-project development environments on a shared host.

    Creates and removes project directories, scaffolding, databases,
    nginx virtual hosts and optional domain/TLS/tunnel routing.
    Use --json flag for machine-readable output.
    """
    ctx.ensure_object(dict)
    if "config" not in ctx.obj:
        ctx.obj["config"] = DevHostConfig.load(config_path)
    configure_logging(ctx.obj["config"].log_dir, verbose)
    ctx.obj["formatter"] = OutputFormatter(json_mode=output_json)
    ctx.obj["json_mode"] = output_json


def get_controller(ctx: click.Context) -> LifecycleController:
    """The invocation's controller, built on first use."""
    if "controller" not in ctx.obj:
        ctx.obj["controller"] = LifecycleController(ctx.obj["config"])
    return ctx.obj["controller"]


# Import and register commands
from devhost.commands import project  # noqa: E402
from devhost.commands import setup  # noqa: E402
from devhost.commands import tls  # noqa: E402

cli.add_command(project.create)
cli.add_command(project.delete)
cli.add_command(project.list_projects)
cli.add_command(project.show)
cli.add_command(project.repair)
cli.add_command(setup.setup)
cli.add_command(tls.tls)
