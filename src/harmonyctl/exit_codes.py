"""Enumerations for CLI exit codes."""
from __future__ import annotations

from enum import IntEnum


class ExitCode(IntEnum):
    """Well-known exit codes enforced across the CLI.

    Warnings never change the exit code; only failures do.
    """

    OK = 0
    FAILURE = 1
    USAGE = 2
