"""
Operator-facing output.

Every status line has a severity (info, success, warning, error) and is
recorded, so tests can assert on what the operator was told.
"""

from enum import Enum
from typing import List, Optional, Tuple

from rich.console import Console
from rich.markup import escape


class Severity(Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


_TAGS = {
    Severity.INFO: "[blue]\\[INFO][/blue]",
    Severity.SUCCESS: "[green]\\[SUCCESS][/green]",
    Severity.WARNING: "[yellow]\\[WARNING][/yellow]",
    Severity.ERROR: "[red]\\[ERROR][/red]",
}


class StatusReporter:
    """Prints tagged status lines through rich and keeps a record of them."""

    def __init__(self, console: Optional[Console] = None):
        self.console = console or Console(highlight=False)
        self.messages: List[Tuple[Severity, str]] = []

    def _emit(self, severity: Severity, message: str):
        self.messages.append((severity, message))
        self.console.print(f"{_TAGS[severity]} {escape(message)}")

    def info(self, message: str):
        self._emit(Severity.INFO, message)

    def success(self, message: str):
        self._emit(Severity.SUCCESS, message)

    def warning(self, message: str):
        self._emit(Severity.WARNING, message)

    def error(self, message: str):
        self._emit(Severity.ERROR, message)

    def detail(self, message: str):
        """Indented untagged line (lists, mappings)."""
        self.console.print(f"  {escape(message)}")

    def banner(self, title: str):
        self.console.rule(f"[bold]{escape(title)}[/bold]")

    def blank(self):
        self.console.print()

    def by_severity(self, severity: Severity) -> List[str]:
        return [message for sev, message in self.messages if sev == severity]
