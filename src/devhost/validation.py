"""Project name validation."""

import re
from collections.abc import Callable

from devhost.errors import InvalidName, NameConflict
from devhost.models import OCCUPYING_STATES, ProjectState

# Lowercase letters, numbers and hyphens; first and last character alphanumeric
PROJECT_NAME_PATTERN = re.compile(r"^[a-z0-9][a-z0-9-]*[a-z0-9]$")

# The name doubles as the MySQL user name, which the server caps at 32
MAX_NAME_LENGTH = 32


def is_valid_name(name: str) -> bool:
    """Check the syntax of a project name."""
    return len(name) <= MAX_NAME_LENGTH and bool(PROJECT_NAME_PATTERN.match(name))


def validate_name(
    name: str,
    lookup_state: Callable[[str], ProjectState | None],
) -> None:
    """Validate project name format and availability.

    ``lookup_state`` returns the registered state of a name, or None if the
    name is unknown. Raises InvalidName or NameConflict; never mutates.
    """
    if not is_valid_name(name):
        raise InvalidName(name)

    state = lookup_state(name)
    if state in OCCUPYING_STATES:
        raise NameConflict(name, state.value)
