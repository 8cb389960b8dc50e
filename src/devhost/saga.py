"""Compensating actions for multi-step workflows."""

import logging
from collections.abc import Callable
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass
class CompensatingAction:
    """Undo of one completed step. ``artifact`` names what it removes."""

    artifact: str
    undo: Callable[[], object]


class Saga:
    """Completed-step ledger of a workflow, unwound in reverse on failure."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._actions: list[CompensatingAction] = []

    def add(self, artifact: str, undo: Callable[[], object]) -> None:
        """Record a completed step and how to undo it."""
        self._actions.append(CompensatingAction(artifact, undo))

    @property
    def artifacts(self) -> list[str]:
        return [action.artifact for action in self._actions]

    def __len__(self) -> int:
        return len(self._actions)

    def compensate(self) -> list[str]:
        """Run every undo, newest first. Returns artifacts whose undo failed.

        A failing undo does not stop the remaining ones.
        """
        failed: list[str] = []
        while self._actions:
            action = self._actions.pop()
            try:
                action.undo()
                logger.info(f"{self.name}: rolled back {action.artifact}")
            except Exception as e:
                logger.error(f"{self.name}: could not roll back {action.artifact}: {e}")
                failed.append(action.artifact)
        failed.reverse()
        return failed

    def commit(self) -> None:
        """Forget the recorded steps once the workflow has succeeded."""
        self._actions.clear()
