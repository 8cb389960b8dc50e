"""WordPress scaffolder: pinned release archive plus a generated wp-config.php."""

import logging
import re
import secrets
import string
import tarfile
import tempfile
from pathlib import Path, PurePosixPath

import requests

from devhost.errors import ScaffoldSourceUnavailable, ScaffoldToolFailed
from devhost.models import DatabaseEngine, ProjectKind
from devhost.scaffolding.base import Scaffolder, ScaffoldContext, source_retry

logger = logging.getLogger(__name__)

ARCHIVE_PREFIX = "wordpress"
SALT_PLACEHOLDER = "put your unique phrase here"
SALT_LENGTH = 64
# Printable characters that need no escaping inside a single-quoted PHP string
SALT_ALPHABET = string.ascii_letters + string.digits + "!#$%&()*+,-./:;<=>?@[]^_`{|}~"


def generate_salt(length: int = SALT_LENGTH) -> str:
    return "".join(secrets.choice(SALT_ALPHABET) for _ in range(length))


@source_retry
def download_archive(url: str, destination: Path, timeout: int) -> None:
    """Stream ``url`` to ``destination``."""
    try:
        with requests.get(url, stream=True, timeout=(10, timeout)) as resp:
            resp.raise_for_status()
            with open(destination, "wb") as f:
                for chunk in resp.iter_content(chunk_size=1024 * 64):
                    f.write(chunk)
    except requests.RequestException as e:
        raise ScaffoldSourceUnavailable(f"Failed to download {url}: {e}")


def extract_stripped(archive: Path, target: Path, prefix: str = ARCHIVE_PREFIX) -> int:
    """Unpack regular files and directories under ``prefix/`` into ``target``.

    Returns the number of files written. Members escaping ``target`` and
    special files are skipped.
    """
    written = 0
    target = target.resolve()
    with tarfile.open(archive, "r:*") as tar:
        for member in tar.getmembers():
            parts = PurePosixPath(member.name).parts
            if len(parts) < 2 or parts[0] != prefix or ".." in parts:
                continue
            destination = target.joinpath(*parts[1:])
            if target not in destination.resolve().parents:
                continue

            if member.isdir():
                destination.mkdir(parents=True, exist_ok=True)
            elif member.isfile():
                destination.parent.mkdir(parents=True, exist_ok=True)
                source = tar.extractfile(member)
                if source is None:
                    continue
                with source, open(destination, "wb") as f:
                    f.write(source.read())
                if member.mode & 0o100:
                    destination.chmod(0o775)
                written += 1
    return written


def render_wp_config(sample: str, values: dict[str, str]) -> str:
    """Fill database settings and salts into wp-config-sample.php content."""
    content = sample
    for constant, value in values.items():
        content = re.sub(
            rf"define\(\s*'{constant}',\s*'[^']*'\s*\);",
            lambda _match, c=constant, v=value: f"define( '{c}', '{v}' );",
            content,
        )
    while SALT_PLACEHOLDER in content:
        content = content.replace(SALT_PLACEHOLDER, generate_salt(), 1)
    return content


class WordPressScaffolder(Scaffolder):
    kind = ProjectKind.WORDPRESS
    default_engines = (DatabaseEngine.MYSQL,)
    gitignore_entries = (".devhost/", "public/wp-config.php", "public/wp-content/uploads/")

    def create(self, ctx: ScaffoldContext) -> None:
        url = ctx.config.cms_archive_url
        ctx.public_dir.mkdir(parents=True, exist_ok=True)

        with tempfile.TemporaryDirectory(prefix="devhost-wp-") as tmp:
            archive = Path(tmp) / "wordpress.tar.gz"
            download_archive(url, archive, ctx.config.scaffold_timeout)
            try:
                written = extract_stripped(archive, ctx.public_dir)
            except tarfile.TarError as e:
                raise ScaffoldToolFailed(
                    f"Archive {url} could not be unpacked: {e}", project=ctx.name
                )

        if not written:
            raise ScaffoldToolFailed(
                f"Archive {url} contains no '{ARCHIVE_PREFIX}/' tree", project=ctx.name
            )
        logger.info(f"Unpacked {written} files from {url}")

    def configure(self, ctx: ScaffoldContext) -> None:
        super().configure(ctx)
        sample = ctx.public_dir / "wp-config-sample.php"
        if not sample.exists():
            return

        binding = next((b for b in ctx.databases if b.engine is DatabaseEngine.MYSQL), None)
        if binding is None:
            logger.warning(f"{ctx.name}: WordPress needs MySQL; wp-config.php left unconfigured")
            return

        host, port = ctx.engine_address(DatabaseEngine.MYSQL)
        values = {
            "DB_NAME": binding.schema_name,
            "DB_USER": binding.username,
            "DB_PASSWORD": binding.password,
            "DB_HOST": host if port == 3306 else f"{host}:{port}",
        }
        config_path = ctx.public_dir / "wp-config.php"
        config_path.write_text(render_wp_config(sample.read_text(), values))
