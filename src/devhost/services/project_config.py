"""Per-project configuration file (``<root>/.devhost/config``)."""

import os
import tempfile
from datetime import datetime
from pathlib import Path

from devhost.models import DatabaseBinding, DatabaseEngine, ProjectKind

CONFIG_DIR_NAME = ".devhost"
CONFIG_FILE_NAME = "config"
CONFIG_FILE_MODE = 0o660


def config_path(project_root: Path) -> Path:
    """Location of a project's configuration file."""
    return project_root / CONFIG_DIR_NAME / CONFIG_FILE_NAME


def parse_env(content: str) -> dict[str, str]:
    """Parse key=value content into a dictionary.

    Handles:
    - KEY=VALUE
    - KEY="VALUE WITH SPACES" (with \\" escapes)
    - KEY='VALUE WITH SPACES'
    - Comments (# ...)
    - Empty lines
    """
    env_vars: dict[str, str] = {}

    for line in content.splitlines():
        line = line.strip()

        if not line or line.startswith("#"):
            continue

        if "=" not in line:
            continue

        key, _, value = line.partition("=")
        key = key.strip()

        if not key:
            continue

        value = value.strip()
        if value.startswith('"') and value.endswith('"') and len(value) >= 2:
            value = value[1:-1].replace('\\"', '"')
        elif value.startswith("'") and value.endswith("'") and len(value) >= 2:
            value = value[1:-1]

        env_vars[key] = value

    return env_vars


def format_value(value: str) -> str:
    """Quote a value containing spaces, quotes or a comment marker."""
    if any(ch in value for ch in (" ", "'", '"', "#", "\t")):
        escaped_value = value.replace('"', '\\"')
        return f'"{escaped_value}"'
    return value


def format_env(env_vars: dict[str, str]) -> str:
    """Format variables as key=value content.

    Preserves ordering and quotes values with spaces or quote characters.
    """
    lines = [f"{key}={format_value(value)}" for key, value in env_vars.items()]
    return "\n".join(lines) + "\n"


def merge_env(content: str, values: dict[str, str]) -> str:
    """Set ``values`` in existing key=value content.

    Existing assignments, including commented-out ones such as ``# DB_HOST=``,
    are replaced in place; keys not present are appended.
    """
    remaining = dict(values)
    lines = []
    for line in content.splitlines():
        stripped = line.lstrip("# \t")
        key, sep, _ = stripped.partition("=")
        key = key.strip()
        if sep and key in remaining:
            lines.append(f"{key}={format_value(remaining.pop(key))}")
        else:
            lines.append(line)
    lines.extend(f"{key}={format_value(value)}" for key, value in remaining.items())
    return "\n".join(lines) + "\n"


def write_atomic(path: Path, content: str, mode: int = CONFIG_FILE_MODE) -> None:
    """Write ``content`` to a temp file beside ``path`` and rename it into place."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.")
    try:
        with os.fdopen(fd, "w") as f:
            f.write(content)
        os.chmod(tmp_name, mode)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def build_project_config(
    name: str,
    kind: ProjectKind,
    domain: str,
    path: Path,
    databases: list[DatabaseBinding],
    created: datetime | None = None,
) -> dict[str, str]:
    """Assemble the key=value entries describing a project."""
    created = created or datetime.now()
    values = {
        "PROJECT_NAME": name,
        "PROJECT_KIND": kind.value,
        "PROJECT_DOMAIN": domain,
        "PROJECT_PATH": str(path),
        "CREATED_DATE": created.isoformat(timespec="seconds"),
    }
    for binding in databases:
        suffix = binding.engine.config_key
        values[f"DB_NAME_{suffix}"] = binding.schema_name
        values[f"DB_USER_{suffix}"] = binding.username
        values[f"DB_PASSWORD_{suffix}"] = binding.password
    return values


def write_project_config(project_root: Path, values: dict[str, str]) -> Path:
    """Persist a project's configuration file."""
    path = config_path(project_root)
    write_atomic(path, format_env(values))
    return path


def read_project_config(project_root: Path) -> dict[str, str]:
    """Read a project's configuration file ({} if it is missing)."""
    path = config_path(project_root)
    if not path.exists():
        return {}
    return parse_env(path.read_text())


def load_credentials(project_root: Path) -> dict[DatabaseEngine, str]:
    """Passwords stored in the project configuration file, keyed by engine."""
    values = read_project_config(project_root)
    credentials: dict[DatabaseEngine, str] = {}
    for engine in DatabaseEngine:
        password = values.get(f"DB_PASSWORD_{engine.config_key}")
        if password:
            credentials[engine] = password
    return credentials
