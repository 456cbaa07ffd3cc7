"""Console output for Strata.

Usage:
    from strata.console import console

    with console.spinner("Opening dataset..."):
        db.open(path, Mode.READ_ONLY)

    console.success("Done", detail="Registered 35 layer types")
    console.warn("Something odd")
    console.error("Failed", detail=str(err))
    console.info("Creating layer conv1")
"""

from __future__ import annotations

import os
from contextlib import contextmanager
from typing import Optional

from rich.console import Console as RichConsole
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table
from rich.text import Text


def _quiet_from_env() -> bool:
    return os.environ.get("STRATA_QUIET", "").strip().lower() in ("1", "true", "yes")


class Console:
    """Minimal logging interface with rich output."""

    __slots__ = ("_console", "quiet")

    def __init__(self, *, quiet: bool | None = None) -> None:
        # soft_wrap keeps each diagnostic on one line so it stays greppable.
        self._console = RichConsole(soft_wrap=True, highlight=False)
        self.quiet = _quiet_from_env() if quiet is None else bool(quiet)

    @contextmanager
    def spinner(self, message: str):
        """Show a spinner while work is in progress."""
        with self._console.status(f"[bold cyan]{escape(message)}", spinner="dots"):
            yield

    def success(self, message: str, *, detail: Optional[str] = None, title: Optional[str] = None) -> None:
        """Green success message."""
        text = Text(message, style="bold green")
        if detail:
            text.append(f"\n{detail}", style="dim")
        if title:
            self._console.print(Panel(text, title=f"[cyan]{escape(title)}[/cyan]", border_style="green"))
        else:
            self._console.print(f"[bold green]✓[/bold green] {escape(message)}" + self._detail(detail))

    def warn(self, message: str, *, detail: Optional[str] = None) -> None:
        """Yellow warning message."""
        self._console.print(f"[yellow]⚠[/yellow] {escape(message)}" + self._detail(detail))

    def error(self, message: str, *, detail: Optional[str] = None) -> None:
        """Red error message."""
        self._console.print(f"[bold red]✗[/bold red] {escape(message)}" + self._detail(detail))

    def info(self, message: str, *, detail: Optional[str] = None) -> None:
        """Blue info message. Suppressed when quiet."""
        if self.quiet:
            return
        self._console.print(f"[blue]•[/blue] {escape(message)}" + self._detail(detail))

    def header(self, title: str, **fields: str) -> None:
        """Show a panel with key-value fields."""
        lines = [f"[bold]{escape(k)}:[/bold] {escape(str(v))}" for k, v in fields.items()]
        self._console.print(Panel("\n".join(lines), title=f"[cyan]{escape(title)}[/cyan]", border_style="blue"))

    def table(self, title: str, columns: list[str], rows: list[list[str]]) -> None:
        """Render rows as a table."""
        table = Table(title=title)
        for column in columns:
            table.add_column(column)
        for row in rows:
            table.add_row(*(escape(str(cell)) for cell in row))
        self._console.print(table)

    @staticmethod
    def _detail(detail: Optional[str]) -> str:
        return f" [dim]{escape(detail)}[/dim]" if detail else ""


console = Console()
