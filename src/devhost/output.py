"""Output formatting and logging setup for the DevHost CLI."""

import json
import logging
import sys
from contextlib import nullcontext
from datetime import datetime
from pathlib import Path
from typing import Any

from rich.box import ROUNDED
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table
from rich.text import Text

from devhost.errors import DevHostError, RollbackFailed

LOG_FILE_NAME = "devhost.log"
LOG_FILE_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

# Colour per stored project state and certificate state
STATE_STYLES = {
    "active": "green",
    "provisioning": "yellow",
    "deleting": "yellow",
    "rolling_back": "red",
    "issued": "green",
    "pending": "yellow",
    "expired": "red",
    "none": "dim",
}
STATE_FIELDS = ("state", "tls_state")


def styled_state(value: Any) -> str:
    if value is None:
        return ""
    style = STATE_STYLES.get(str(value))
    return f"[{style}]{value}[/{style}]" if style else str(value)


def configure_logging(log_dir: Path | None = None, verbose: bool = False) -> None:
    """Send warnings (or everything, with ``verbose``) to stderr via rich.

    When ``log_dir`` is writable a full INFO log is also kept there.
    """
    root = logging.getLogger("devhost")
    root.setLevel(logging.DEBUG)
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    console_handler = RichHandler(
        console=Console(stderr=True),
        show_time=False,
        show_path=verbose,
        markup=False,
    )
    console_handler.setLevel(logging.DEBUG if verbose else logging.WARNING)
    root.addHandler(console_handler)

    if log_dir is not None:
        try:
            log_dir.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(log_dir / LOG_FILE_NAME)
        except OSError:
            root.debug(f"Log directory {log_dir} is not writable, file logging disabled")
        else:
            file_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
            file_handler.setFormatter(logging.Formatter(LOG_FILE_FORMAT))
            root.addHandler(file_handler)


class OutputFormatter:
    """Handles output formatting for both JSON and pretty (human) modes."""

    def __init__(self, json_mode: bool = False) -> None:
        self.json_mode = json_mode
        self.console = Console()

    def success(self, data: Any, message: str = "Operation completed") -> None:
        """Output a success response."""
        if self.json_mode:
            self._json_output(True, data=data, message=message)
        else:
            self._pretty_success(data, message)

    def error(
        self,
        code: str,
        message: str,
        suggestion: str | None = None,
        exit_code: int = 1,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Output an error response and exit with ``exit_code``."""
        if self.json_mode:
            error: dict[str, Any] = {"code": code, "message": message, "suggestion": suggestion}
            if details:
                error.update(details)
            self._json_output(False, error=error)
        else:
            self._pretty_error(code, message, suggestion, details)
        sys.exit(exit_code)

    def fail(self, error: DevHostError) -> None:
        """Report a DevHostError with its project, step and exit code."""
        details: dict[str, Any] = {"project": error.project, "step": error.step}
        if isinstance(error, RollbackFailed):
            details["artifacts"] = error.artifacts
        self.error(
            error.code,
            error.message,
            error.suggestion,
            exit_code=error.exit_code,
            details=details,
        )

    def table(
        self,
        data: list[dict[str, Any]],
        columns: list[tuple[str, str]],
        title: str | None = None,
        message: str = "Data retrieved",
    ) -> None:
        """Output data as a table (pretty mode) or list (JSON mode)."""
        if self.json_mode:
            self._json_output(True, data=data, message=message)
        else:
            self._pretty_table(data, columns, title)

    def status_panel(
        self,
        title: str,
        sections: dict[str, Any],
        message: str = "Status retrieved",
    ) -> None:
        """Output a panel with one block per section."""
        if self.json_mode:
            self._json_output(True, data=sections, message=message)
        else:
            self._pretty_status_panel(title, sections)

    def _json_output(
        self,
        success: bool,
        data: Any = None,
        message: str | None = None,
        error: dict[str, Any] | None = None,
    ) -> None:
        output: dict[str, Any] = {
            "success": success,
            "timestamp": datetime.utcnow().isoformat() + "Z",
        }

        if success:
            output["data"] = data
            output["message"] = message
        else:
            output["error"] = error

        print(json.dumps(output, indent=2, default=str))

    def _pretty_success(self, data: Any, message: str) -> None:
        self.console.print(f"[green]{message}[/green]")

        if isinstance(data, dict):
            for key, value in data.items():
                if isinstance(value, list):
                    self.console.print(f"  [cyan]{key}:[/cyan]")
                    for item in value:
                        self.console.print(f"    - {item}")
                else:
                    self.console.print(f"  [cyan]{key}:[/cyan] {value}")
        elif isinstance(data, list):
            for item in data:
                self.console.print(f"  - {item}")
        elif data is not None:
            self.console.print(f"  {data}")

    def _pretty_error(
        self,
        code: str,
        message: str,
        suggestion: str | None,
        details: dict[str, Any] | None = None,
    ) -> None:
        error_text = Text()
        error_text.append("Error: ", style="bold red")
        error_text.append(f"[{code}] ", style="red")
        error_text.append(message)

        self.console.print(error_text)

        for key, value in (details or {}).items():
            if isinstance(value, list):
                self.console.print(f"  [cyan]{key}:[/cyan]")
                for item in value:
                    self.console.print(f"    - {item}")
            elif value is not None:
                self.console.print(f"  [cyan]{key}:[/cyan] {value}")

        if suggestion:
            self.console.print(f"[yellow]Suggestion:[/yellow] {suggestion}")

    def _pretty_table(
        self,
        data: list[dict[str, Any]],
        columns: list[tuple[str, str]],
        title: str | None,
    ) -> None:
        if not data:
            self.console.print("[dim]No projects[/dim]")
            return

        table = Table(title=title, show_header=True, header_style="bold cyan")

        for _, col_header in columns:
            table.add_column(col_header)

        for row in data:
            cells = []
            for col_key, _ in columns:
                value = row.get(col_key)
                if col_key in STATE_FIELDS:
                    cells.append(styled_state(value))
                else:
                    cells.append("" if value is None else str(value))
            table.add_row(*cells)

        self.console.print(table)

    def _pretty_status_panel(self, title: str, sections: dict[str, Any]) -> None:
        self.console.print(f"\n[bold cyan]{title}[/bold cyan]\n")

        for section_name, section_data in sections.items():
            heading = f"[bold]{section_name.replace('_', ' ').title()}[/bold]"

            if isinstance(section_data, dict):
                table = Table(show_header=False, box=ROUNDED, title=heading, border_style="dim")
                table.add_column("Key", style="cyan", width=20)
                table.add_column("Value")
                for key, value in section_data.items():
                    shown = styled_state(value) if key in STATE_FIELDS else value
                    table.add_row(key, "" if shown is None else str(shown))
                self.console.print(table)
            elif section_data and isinstance(section_data[0], dict):
                # Database bindings: one row each
                table = Table(title=heading, box=ROUNDED, header_style="bold cyan", border_style="dim")
                for key in section_data[0]:
                    table.add_column(key)
                for item in section_data:
                    table.add_row(*["" if v is None else str(v) for v in item.values()])
                self.console.print(table)
            else:
                self.console.print(heading)
                for item in section_data or ["[dim]none[/dim]"]:
                    self.console.print(f"  {item}")

            self.console.print()

    def spinner(self, message: str = "Working"):
        """Create a spinner context for operations with unknown duration.

        Usage:
            with formatter.spinner("Creating project"):
                # do work
        """
        if self.json_mode:
            return nullcontext()
        return self.console.status(f"[bold cyan]{message}...[/bold cyan]")

