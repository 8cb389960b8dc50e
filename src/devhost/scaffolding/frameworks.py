"""Composer-based framework scaffolders."""

import logging
import shutil
from urllib.parse import quote

from devhost.models import DatabaseBinding, DatabaseEngine, ProjectKind
from devhost.scaffolding.base import Scaffolder, ScaffoldContext, run_tool
from devhost.services.project_config import merge_env

logger = logging.getLogger(__name__)

COMPOSER_ENV = {"COMPOSER_ALLOW_SUPERUSER": "1"}

LARAVEL_CONNECTIONS = {
    DatabaseEngine.MYSQL: "mysql",
    DatabaseEngine.POSTGRESQL: "pgsql",
}


def composer_create_project(ctx: ScaffoldContext, package: str) -> None:
    run_tool(
        ctx,
        "composer", "create-project", "--no-interaction", "--prefer-dist", package, ".",
        env=COMPOSER_ENV,
    )


class LaravelScaffolder(Scaffolder):
    kind = ProjectKind.LARAVEL
    default_engines = (DatabaseEngine.MYSQL,)
    gitignore_entries = (".devhost/", "/vendor", "/node_modules", ".env")

    def create(self, ctx: ScaffoldContext) -> None:
        composer_create_project(ctx, "laravel/laravel")

    def env_values(self, ctx: ScaffoldContext) -> dict[str, str]:
        values = {
            "APP_NAME": ctx.name,
            "APP_ENV": "local",
            "APP_DEBUG": "true",
            "APP_URL": ctx.url,
        }
        binding = ctx.primary_database
        if binding:
            host, port = ctx.engine_address(binding.engine)
            values.update(
                {
                    "DB_CONNECTION": LARAVEL_CONNECTIONS[binding.engine],
                    "DB_HOST": host,
                    "DB_PORT": str(port),
                    "DB_DATABASE": binding.schema_name,
                    "DB_USERNAME": binding.username,
                    "DB_PASSWORD": binding.password,
                }
            )
        return values

    def configure(self, ctx: ScaffoldContext) -> None:
        super().configure(ctx)
        env_path = ctx.root / ".env"
        example_path = ctx.root / ".env.example"
        if not env_path.exists() and example_path.exists():
            shutil.copyfile(example_path, env_path)

        content = env_path.read_text() if env_path.exists() else ""
        env_path.write_text(merge_env(content, self.env_values(ctx)))

        if (ctx.root / "artisan").exists():
            run_tool(ctx, "php", "artisan", "key:generate", "--force", "--no-interaction")

    def post_provision(self, ctx: ScaffoldContext) -> None:
        if not ctx.primary_database or not (ctx.root / "artisan").exists():
            return
        run_tool(ctx, "php", "artisan", "migrate", "--force", "--no-interaction")
        logger.info(f"Ran migrations for {ctx.name}")


def symfony_database_url(ctx: ScaffoldContext, binding: DatabaseBinding) -> str:
    host, port = ctx.engine_address(binding.engine)
    credentials = f"{quote(binding.username, safe='')}:{quote(binding.password, safe='')}"
    if binding.engine is DatabaseEngine.MYSQL:
        return (
            f"mysql://{credentials}@{host}:{port}/{binding.schema_name}"
            "?serverVersion=8.0&charset=utf8mb4"
        )
    return (
        f"postgresql://{credentials}@{host}:{port}/{binding.schema_name}"
        "?serverVersion=16&charset=utf8"
    )


class SymfonyScaffolder(Scaffolder):
    kind = ProjectKind.SYMFONY
    default_engines = (DatabaseEngine.MYSQL,)
    gitignore_entries = (".devhost/", "/vendor/", "/var/", "/.env.local")

    def create(self, ctx: ScaffoldContext) -> None:
        composer_create_project(ctx, "symfony/skeleton")

    def configure(self, ctx: ScaffoldContext) -> None:
        super().configure(ctx)
        values = {"APP_ENV": "dev"}
        binding = ctx.primary_database
        if binding:
            values["DATABASE_URL"] = symfony_database_url(ctx, binding)

        # .env is committed in Symfony projects; machine values go to .env.local
        env_path = ctx.root / ".env.local"
        content = env_path.read_text() if env_path.exists() else ""
        env_path.write_text(merge_env(content, values))
