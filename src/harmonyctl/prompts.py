"""User interaction capabilities passed into workflows.

Deprovisioning asks before every destructive step unless ``--delete-storage``
is given. Rather than threading that flag through every call site, commands
construct one :class:`Confirmer` up front and providers only ever call
:meth:`Confirmer.confirm`.
"""
from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Protocol

import typer
from rich.console import Console


class Confirmer(Protocol):
    """Decides whether a destructive step may proceed."""

    def confirm(
        self,
        prompt: str,
        *,
        default: bool = False,
        require_word: str | None = None,
    ) -> bool:
        """Return ``True`` to proceed with the step described by *prompt*."""


class Chooser(Protocol):
    """Selects one entry out of several discovered options."""

    def choose(self, label: str, options: Sequence[str]) -> str:
        """Return the selected entry of *options*."""


@dataclass(slots=True)
class InteractiveConfirm:
    """Ask on the terminal.

    ``require_word`` forces the user to type that word (e.g. ``yes``) instead
    of answering a y/N question.
    """

    def confirm(
        self,
        prompt: str,
        *,
        default: bool = False,
        require_word: str | None = None,
    ) -> bool:
        """Prompt the user and return their decision."""
        if require_word:
            answer = typer.prompt(f"{prompt} Type '{require_word}' to confirm", default="")
            return answer.strip() == require_word
        return typer.confirm(prompt, default=default)


@dataclass(slots=True)
class AutoConfirm:
    """Accept every prompt without asking; remembers what was auto-approved."""

    answered: list[str] = field(default_factory=list)

    def confirm(
        self,
        prompt: str,
        *,
        default: bool = False,
        require_word: str | None = None,
    ) -> bool:
        """Approve *prompt* immediately."""
        self.answered.append(prompt)
        return True


@dataclass(slots=True)
class InteractiveChooser:
    """Print a numbered list and read the selection."""

    console: Console

    def choose(self, label: str, options: Sequence[str]) -> str:
        """Return the option the user picked (the only one, if there is just one)."""
        if not options:
            raise ValueError(f"No {label} options to choose from.")
        if len(options) == 1:
            self.console.print(f"Using {label}: [bold]{options[0]}[/bold]")
            return options[0]
        self.console.print(f"Available {label}s:")
        for index, option in enumerate(options, start=1):
            self.console.print(f"  {index}) {option}")
        selection = typer.prompt(
            f"Select {label} number",
            type=typer.IntRange(1, len(options)),
        )
        return options[int(selection) - 1]


def build_confirmer(delete_storage: bool) -> Confirmer:
    """Return the confirm strategy matching the ``--delete-storage`` flag."""
    if delete_storage:
        return AutoConfirm()
    return InteractiveConfirm()


__all__ = [
    "AutoConfirm",
    "Chooser",
    "Confirmer",
    "InteractiveChooser",
    "InteractiveConfirm",
    "build_confirmer",
]
