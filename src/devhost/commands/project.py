"""Project lifecycle commands for DevHost CLI."""

import signal
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import click

from devhost.cli import get_controller
from devhost.errors import DevHostError
from devhost.lifecycle import LifecycleController
from devhost.models import DatabaseEngine, Project, ProjectKind
from devhost.output import OutputFormatter


@contextmanager
def cancel_on_signal(controller: LifecycleController) -> Iterator[None]:
    """Turn SIGINT/SIGTERM into a cancellation at the next step boundary."""

    def handler(signum: int, frame: Any) -> None:
        controller.cancel()

    previous = {sig: signal.signal(sig, handler) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        yield
    finally:
        for sig, old in previous.items():
            signal.signal(sig, old)


def project_summary(project: Project) -> dict[str, Any]:
    routing = project.routing
    return {
        "name": project.name,
        "kind": project.kind.value,
        "state": project.state.value,
        "path": str(project.filesystem_root),
        "server_name": routing.server_name,
        "domain": routing.domain,
        "tls_state": routing.tls_state.value,
        "databases": ", ".join(db.engine.value for db in project.databases),
    }


@click.command("create")
@click.argument("name")
@click.option(
    "--kind", "-k",
    type=click.Choice(ProjectKind.choices()),
    default=ProjectKind.PLAIN.value,
    show_default=True,
    help="Project kind (selects scaffolding and default databases)",
)
@click.option("--source", "-s", metavar="GIT_URL", help="Clone this repository instead of scaffolding")
@click.option(
    "--db",
    "db_engines",
    multiple=True,
    type=click.Choice(DatabaseEngine.choices()),
    help="Database engine to provision (repeatable; overrides the kind's default)",
)
@click.option("--no-db", is_flag=True, help="Do not provision any database")
@click.pass_context
def create(
    ctx: click.Context,
    name: str,
    kind: str,
    source: str | None,
    db_engines: tuple[str, ...],
    no_db: bool,
) -> None:
    """Create a new project.

    Creates the project directory under the projects root, scaffolds it,
    provisions its databases, installs an nginx virtual host and, when a base
    domain is configured, a certificate and tunnel route. Any failure rolls
    every completed step back.

    NAME uses lowercase letters, numbers and hyphens, must start and end
    with a letter or number and is at most 32 characters long.

    Examples:
        devhost create blog-site
        devhost create shop --kind laravel
        devhost create api --kind symfony --db postgresql
        devhost create site --kind wordpress
        devhost create tool --kind custom --no-db
        devhost create app --source https://github.com/acme/app.git --db mysql
    """
    formatter: OutputFormatter = ctx.obj["formatter"]

    if no_db and db_engines:
        formatter.error(
            "INVALID_OPTIONS",
            "--db and --no-db cannot be combined",
            suggestion="Pass either --no-db or one or more --db options",
        )

    engines: tuple[DatabaseEngine, ...] | None = None
    if no_db:
        engines = ()
    elif db_engines:
        engines = tuple(DatabaseEngine(engine) for engine in db_engines)

    try:
        controller = get_controller(ctx)
        with cancel_on_signal(controller), formatter.spinner(f"Creating {name}"):
            project = controller.create(name, ProjectKind(kind), source=source, engines=engines)
    except DevHostError as e:
        formatter.fail(e)
        return

    data = project_summary(project)
    data["url"] = f"http://{project.routing.server_name}"
    if project.routing.domain:
        scheme = "https" if project.routing.tls_state.value == "issued" else "http"
        data["public_url"] = f"{scheme}://{project.routing.domain}"
    data["credentials"] = f"{project.filesystem_root}/.devhost/config"
    formatter.success(data, f"Project '{name}' created")


@click.command("delete")
@click.argument("name")
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation")
@click.pass_context
def delete(ctx: click.Context, name: str, yes: bool) -> None:
    """Delete a project and everything it owns.

    Removes, in order: the tunnel route and certificate, the nginx virtual
    host, the project databases and users, and finally the project directory.

    Example:
        devhost delete blog-site --yes
    """
    formatter: OutputFormatter = ctx.obj["formatter"]

    if not yes:
        if ctx.obj["json_mode"]:
            formatter.error(
                "CONFIRMATION_REQUIRED",
                f"Deleting '{name}' requires --yes in JSON mode",
                suggestion=f"Run 'devhost --json delete {name} --yes'",
            )
        click.confirm(f"Delete project '{name}' including its databases and files?", abort=True)

    try:
        controller = get_controller(ctx)
        with cancel_on_signal(controller), formatter.spinner(f"Deleting {name}"):
            result = controller.delete(name)
    except DevHostError as e:
        formatter.fail(e)
        return

    formatter.success(result, f"Project '{name}' deleted")


@click.command("list")
@click.pass_context
def list_projects(ctx: click.Context) -> None:
    """List all projects."""
    formatter: OutputFormatter = ctx.obj["formatter"]

    try:
        projects = get_controller(ctx).list_projects()
    except DevHostError as e:
        formatter.fail(e)
        return

    formatter.table(
        [project_summary(p) for p in projects],
        columns=[
            ("name", "Name"),
            ("kind", "Kind"),
            ("state", "State"),
            ("server_name", "Server name"),
            ("domain", "Domain"),
            ("tls_state", "TLS"),
            ("databases", "Databases"),
        ],
        title="Projects",
        message=f"{len(projects)} projects",
    )


@click.command("show")
@click.argument("name")
@click.option("--show-secrets", is_flag=True, help="Include database passwords")
@click.pass_context
def show(ctx: click.Context, name: str, show_secrets: bool) -> None:
    """Show a project's state, routing and databases."""
    formatter: OutputFormatter = ctx.obj["formatter"]
    controller = get_controller(ctx)

    try:
        project = controller.get_project(name, with_credentials=True)
    except DevHostError as e:
        formatter.fail(e)
        return

    sections: dict[str, Any] = {
        "project": {
            "name": project.name,
            "kind": project.kind.value,
            "state": project.state.value,
            "path": str(project.filesystem_root),
            "source": project.source,
            "created_at": project.created_at.isoformat() if project.created_at else None,
        },
        "routing": project.routing.to_dict(),
        "databases": [db.to_dict(show_password=show_secrets) for db in project.databases],
    }
    leftovers = controller.leftover_artifacts(name)
    if leftovers:
        sections["leftover_artifacts"] = leftovers

    formatter.status_panel(f"Project: {name}", sections, message=f"Project '{name}'")


@click.command("repair")
@click.argument("name")
@click.pass_context
def repair(ctx: click.Context, name: str) -> None:
    """Re-apply the shared group ownership and modes to a project.

    Safe to run any number of times; files created since the project was
    provisioned (for example by composer or git) get the group-writable
    policy back.
    """
    formatter: OutputFormatter = ctx.obj["formatter"]

    try:
        result = get_controller(ctx).repair(name)
    except DevHostError as e:
        formatter.fail(e)
        return

    formatter.success(result, f"Permissions repaired for '{name}'")
