"""Scaffolder lookup by project kind."""

from devhost.models import DatabaseEngine, ProjectKind
from devhost.scaffolding.base import Scaffolder
from devhost.scaffolding.basic import CustomScaffolder, PlainScaffolder
from devhost.scaffolding.frameworks import LaravelScaffolder, SymfonyScaffolder
from devhost.scaffolding.wordpress import WordPressScaffolder

SCAFFOLDERS: dict[ProjectKind, type[Scaffolder]] = {
    ProjectKind.PLAIN: PlainScaffolder,
    ProjectKind.LARAVEL: LaravelScaffolder,
    ProjectKind.SYMFONY: SymfonyScaffolder,
    ProjectKind.WORDPRESS: WordPressScaffolder,
    ProjectKind.CUSTOM: CustomScaffolder,
}


def get_scaffolder(kind: ProjectKind) -> Scaffolder:
    """Return the scaffolding strategy of ``kind``."""
    return SCAFFOLDERS[kind]()


def default_engines(kind: ProjectKind) -> tuple[DatabaseEngine, ...]:
    """Database engines a kind gets when the operator does not choose."""
    return SCAFFOLDERS[kind].default_engines
