"""Typed invocation of external tools."""

import logging
import os
import subprocess
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Command:
    """A structured external command."""

    argv: tuple[str, ...]
    cwd: Path | None = None
    env: dict[str, str] | None = field(default=None, hash=False)
    timeout: float | None = None

    @classmethod
    def build(
        cls,
        *argv: str | Path,
        cwd: Path | None = None,
        env: dict[str, str] | None = None,
        timeout: float | None = None,
    ) -> "Command":
        return cls(tuple(str(a) for a in argv), cwd=cwd, env=env, timeout=timeout)

    @property
    def program(self) -> str:
        return self.argv[0]

    def __str__(self) -> str:
        return " ".join(self.argv)


@dataclass
class CommandResult:
    """Outcome of running a Command."""

    command: Command
    returncode: int
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.timed_out

    @property
    def output(self) -> str:
        """Best available diagnostic text."""
        return (self.stderr or self.stdout).strip()


class CommandRunner:
    """Runs commands with subprocess and never raises on tool failure.

    A missing executable is reported as returncode 127 and a timeout as
    ``timed_out=True``; callers map results onto their own errors.
    """

    def run(self, command: Command) -> CommandResult:
        env = None
        if command.env is not None:
            env = {**os.environ, **command.env}

        logger.debug(f"Running: {command}")
        try:
            proc = subprocess.run(
                list(command.argv),
                cwd=str(command.cwd) if command.cwd else None,
                env=env,
                capture_output=True,
                text=True,
                timeout=command.timeout,
            )
        except FileNotFoundError:
            return CommandResult(
                command=command,
                returncode=127,
                stderr=f"{command.program}: command not found",
            )
        except subprocess.TimeoutExpired as e:
            return CommandResult(
                command=command,
                returncode=-1,
                stdout=_decode(e.stdout),
                stderr=_decode(e.stderr) or f"timed out after {command.timeout}s",
                timed_out=True,
            )

        if proc.returncode != 0:
            logger.debug(f"{command.program} exited with {proc.returncode}: {proc.stderr.strip()}")
        return CommandResult(
            command=command,
            returncode=proc.returncode,
            stdout=proc.stdout,
            stderr=proc.stderr,
        )


def _decode(value: bytes | str | None) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode(errors="replace")
    return value
