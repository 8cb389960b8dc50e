"""DevHost - per-project development environment provisioning CLI."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("devhost")
except PackageNotFoundError:
    __version__ = "0.0.0-dev"
