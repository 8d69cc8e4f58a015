"""Progress reporting shared by providers and commands."""
from __future__ import annotations

from dataclasses import dataclass, field

from rich.console import Console
from rich.markup import escape

from .errors import Condition
from .logging import OperationScope

_STATUS_STYLE = {
    "success": "[green]✓[/green]",
    "info": "[blue]•[/blue]",
    "skipped": "[dim]-[/dim]",
    "warning": "[yellow]⚠[/yellow]",
    "error": "[red]✗[/red]",
}


@dataclass(slots=True)
class Notice:
    """A non-fatal problem surfaced to the user."""

    message: str
    condition: Condition | None = None

    def __str__(self) -> str:
        if self.condition is None:
            return self.message
        return f"[{self.condition.value}] {self.message}"


@dataclass
class Reporter:
    """Print workflow progress and mirror it into the operation record."""

    console: Console
    op: OperationScope | None = None
    steps: list[tuple[str, str]] = field(default_factory=list)
    warnings: list[Notice] = field(default_factory=list)

    def heading(self, text: str) -> None:
        """Print a section heading."""
        self.console.print(f"\n[bold blue]{escape(text)}[/bold blue]")

    def info(self, text: str) -> None:
        """Print an informational line without recording a step."""
        self.console.print(f"  {escape(text)}")

    def step(self, name: str, message: str, *, status: str = "success") -> None:
        """Print *message* and record step *name* with *status*."""
        marker = _STATUS_STYLE.get(status, _STATUS_STYLE["info"])
        self.console.print(f"{marker} {escape(message)}")
        self.steps.append((name, status))
        if self.op is not None:
            self.op.add_step(name, status=status, detail=message)

    def warn(self, name: str, message: str, *, condition: Condition | None = None) -> None:
        """Record a non-fatal warning."""
        self.warnings.append(Notice(message, condition))
        self.step(name, message, status="warning")

    def security_notice(self, message: str) -> None:
        """Print a prominent notice about reduced security."""
        self.console.print(f"[bold red]SECURITY:[/bold red] [yellow]{escape(message)}[/yellow]")
        self.steps.append(("security.notice", "warning"))
        if self.op is not None:
            self.op.add_step("security.notice", status="warning", detail=message)

    def warning_messages(self) -> list[str]:
        """Return warnings rendered as strings."""
        return [str(warning) for warning in self.warnings]


__all__ = ["Reporter", "Notice"]
