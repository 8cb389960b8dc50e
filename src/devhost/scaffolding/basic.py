"""Scaffolders that generate their tree locally: plain and custom."""

from pathlib import Path

from jinja2 import Template

from devhost.models import ProjectKind
from devhost.scaffolding.base import Scaffolder, ScaffoldContext

# Front controller for requests that do not match a file
REWRITE_RULES = """RewriteEngine On
RewriteCond %{REQUEST_FILENAME} !-f
RewriteCond %{REQUEST_FILENAME} !-d
RewriteRule ^(.*)$ index.php [QSA,L]
"""

PLAIN_INDEX_TEMPLATE = """<?php
// {{ project_name }}: managed by DevHost
echo "<h1>Welcome to " . htmlspecialchars($_SERVER['HTTP_HOST']) . "</h1>";
echo "<p>PHP Version: " . phpversion() . "</p>";
echo "<p>Document Root: " . htmlspecialchars($_SERVER['DOCUMENT_ROOT']) . "</p>";

if (isset($_GET['info'])) {
    phpinfo();
}
"""

CUSTOM_INDEX_TEMPLATE = """<?php
declare(strict_types=1);

// {{ project_name }}: managed by DevHost
require_once __DIR__ . '/../config/app.php';

echo "<h1>Welcome to {{ project_name }}</h1>";
"""

CUSTOM_CONFIG = """<?php
declare(strict_types=1);

return [
    'name' => getenv('APP_NAME') ?: basename(dirname(__DIR__)),
    'debug' => true,
];
"""

SMOKE_TEST_TEMPLATE = """<?php
declare(strict_types=1);

// Run with: php tests/smoke_test.php
$output = shell_exec('php ' . escapeshellarg(__DIR__ . '/../public/index.php'));

if (strpos((string) $output, '{{ project_name }}') === false) {
    fwrite(STDERR, "smoke test failed\\n");
    exit(1);
}

echo "ok\\n";
"""


def _write(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content)


class PlainScaffolder(Scaffolder):
    """A single front controller plus a rewrite rule."""

    kind = ProjectKind.PLAIN

    def create(self, ctx: ScaffoldContext) -> None:
        _write(
            ctx.public_dir / "index.php",
            Template(PLAIN_INDEX_TEMPLATE).render(project_name=ctx.name),
        )
        _write(ctx.public_dir / ".htaccess", REWRITE_RULES)


class CustomScaffolder(Scaffolder):
    """An empty structured skeleton with a smoke test."""

    kind = ProjectKind.CUSTOM
    gitignore_entries = (".devhost/", "vendor/", ".env")

    def create(self, ctx: ScaffoldContext) -> None:
        for directory in ("public", "src", "config", "tests"):
            (ctx.root / directory).mkdir(parents=True, exist_ok=True)

        _write(
            ctx.public_dir / "index.php",
            Template(CUSTOM_INDEX_TEMPLATE).render(project_name=ctx.name),
        )
        _write(ctx.public_dir / ".htaccess", REWRITE_RULES)
        _write(ctx.root / "config" / "app.php", CUSTOM_CONFIG)
        _write(
            ctx.root / "tests" / "smoke_test.php",
            Template(SMOKE_TEST_TEMPLATE).render(project_name=ctx.name),
        )
        (ctx.root / "src" / ".gitkeep").touch()
