"""Scaffolder interface and the helpers every kind shares."""

import logging
import shutil
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path

from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from devhost.config import DevHostConfig
from devhost.errors import ScaffoldSourceUnavailable, ScaffoldToolFailed
from devhost.models import DatabaseBinding, DatabaseEngine, ProjectKind
from devhost.runner import Command, CommandResult, CommandRunner

logger = logging.getLogger(__name__)

# Installs hint per bootstrap tool, used when the executable is missing
TOOL_HINTS = {
    "composer": "Install Composer (https://getcomposer.org) and retry",
    "php": "Install the PHP CLI and retry",
    "git": "Install git with 'apt install git' and retry",
}

source_retry = retry(
    retry=retry_if_exception_type(ScaffoldSourceUnavailable),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=8),
    before_sleep=before_sleep_log(logger, logging.DEBUG),
    reraise=True,
)


@dataclass
class ScaffoldContext:
    """Everything a scaffolder needs to know about the project it builds."""

    name: str
    kind: ProjectKind
    root: Path
    server_name: str
    config: DevHostConfig
    runner: CommandRunner
    databases: list[DatabaseBinding] = field(default_factory=list)
    source: str | None = None

    @property
    def public_dir(self) -> Path:
        return self.root / "public"

    @property
    def url(self) -> str:
        return f"http://{self.server_name}"

    @property
    def primary_database(self) -> DatabaseBinding | None:
        """The binding the application's own environment file points at."""
        for engine in (DatabaseEngine.MYSQL, DatabaseEngine.POSTGRESQL):
            for binding in self.databases:
                if binding.engine is engine:
                    return binding
        return None

    def engine_address(self, engine: DatabaseEngine) -> tuple[str, int]:
        if engine is DatabaseEngine.MYSQL:
            return self.config.mysql_host, self.config.mysql_port
        return self.config.postgres_host, self.config.postgres_port


class Scaffolder(ABC):
    """Builds the initial tree of one project kind.

    ``bootstrap`` runs into an empty root, ``configure`` runs once database
    credentials exist but before the databases are created, and
    ``post_provision`` runs after the databases are ready.
    """

    kind: ProjectKind
    default_engines: tuple[DatabaseEngine, ...] = ()
    gitignore_entries: tuple[str, ...] = (".devhost/",)

    def bootstrap(self, ctx: ScaffoldContext) -> None:
        """Populate the project root from a git source or the kind's template."""
        if ctx.source:
            clone_source(ctx)
        else:
            self.create(ctx)

    @abstractmethod
    def create(self, ctx: ScaffoldContext) -> None:
        """Generate the kind's own starting tree."""

    def configure(self, ctx: ScaffoldContext) -> None:
        """Write project-specific settings into the generated tree."""
        write_gitignore(ctx.root, self.gitignore_entries)

    def post_provision(self, ctx: ScaffoldContext) -> None:
        """Hook run once every database is provisioned."""


def run_tool(
    ctx: ScaffoldContext,
    *argv: str | Path,
    cwd: Path | None = None,
    env: dict[str, str] | None = None,
) -> CommandResult:
    """Run a bootstrap tool, raising ScaffoldToolFailed on any failure."""
    command = Command.build(
        *argv,
        cwd=cwd or ctx.root,
        env=env,
        timeout=ctx.config.scaffold_timeout,
    )
    result = ctx.runner.run(command)
    if result.ok:
        return result

    if result.returncode == 127:
        raise ScaffoldToolFailed(
            f"'{command.program}' is not installed",
            suggestion=TOOL_HINTS.get(command.program),
            project=ctx.name,
        )
    if result.timed_out:
        raise ScaffoldToolFailed(
            f"'{command}' timed out after {ctx.config.scaffold_timeout}s",
            project=ctx.name,
        )
    raise ScaffoldToolFailed(
        f"'{command}' exited with {result.returncode}: {result.output[-2000:]}",
        project=ctx.name,
    )


def clear_directory(path: Path) -> None:
    """Remove everything inside ``path`` but keep the directory itself."""
    for child in path.iterdir():
        if child.is_dir() and not child.is_symlink():
            shutil.rmtree(child)
        else:
            child.unlink()


@source_retry
def _clone(ctx: ScaffoldContext) -> None:
    command = Command.build(
        "git", "clone", "--", ctx.source, ".",
        cwd=ctx.root,
        env={"GIT_TERMINAL_PROMPT": "0"},
        timeout=ctx.config.scaffold_timeout,
    )
    result = ctx.runner.run(command)
    if result.ok:
        return

    if result.returncode == 127:
        raise ScaffoldToolFailed(
            "'git' is not installed", suggestion=TOOL_HINTS["git"], project=ctx.name
        )
    # git leaves partial checkouts behind; the next attempt needs an empty root
    clear_directory(ctx.root)
    raise ScaffoldSourceUnavailable(
        f"Failed to clone '{ctx.source}': {result.output}",
        project=ctx.name,
    )


def clone_source(ctx: ScaffoldContext) -> None:
    """Clone the project's git source into its root and install its dependencies."""
    _clone(ctx)
    logger.info(f"Cloned {ctx.source} into {ctx.root}")

    if (ctx.root / "composer.json").exists() and not (ctx.root / "vendor").exists():
        run_tool(
            ctx, "composer", "install", "--no-interaction", "--prefer-dist",
            env={"COMPOSER_ALLOW_SUPERUSER": "1"},
        )


def write_gitignore(root: Path, entries: tuple[str, ...]) -> None:
    """Ensure ``entries`` are listed in the project's .gitignore."""
    path = root / ".gitignore"
    existing = path.read_text().splitlines() if path.exists() else []
    missing = [entry for entry in entries if entry not in existing]
    if not missing:
        return
    lines = existing + missing
    path.write_text("\n".join(lines) + "\n")
