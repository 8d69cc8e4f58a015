"""Subprocess wrapper used for every vendor CLI call."""
from __future__ import annotations

import json
import shutil
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass

from .errors import MissingToolError, ProviderAPIError


@dataclass(slots=True)
class CommandRunner:
    """Run external commands with captured text output.

    ``run`` raises :class:`ProviderAPIError` for non-zero exits unless
    ``check=False``; a missing executable always raises
    :class:`MissingToolError`. Tests substitute :meth:`_execute`.
    """

    def run(
        self,
        args: Sequence[str],
        *,
        check: bool = True,
        input_text: str | None = None,
        error_prefix: str | None = None,
    ) -> subprocess.CompletedProcess[str]:
        """Execute *args* and return the completed process."""
        command = [str(arg) for arg in args]
        try:
            result = self._execute(command, input_text)
        except FileNotFoundError as exc:
            raise MissingToolError(command[0]) from exc
        if check and result.returncode != 0:
            stdout = result.stdout or ""
            stderr = result.stderr or ""
            message = stderr.strip() or stdout.strip() or "no output"
            prefix = error_prefix or " ".join(command[:3])
            raise ProviderAPIError(
                f"{prefix} failed (exit {result.returncode}): {message}",
                command=command,
                returncode=result.returncode,
                stderr=stderr,
            )
        return result

    def output(self, args: Sequence[str], *, check: bool = True) -> str:
        """Return stripped stdout of *args* (empty when it fails and ``check`` is off)."""
        result = self.run(args, check=check)
        if result.returncode != 0:
            return ""
        return (result.stdout or "").strip()

    def json(self, args: Sequence[str], *, check: bool = True) -> object | None:
        """Return parsed JSON stdout of *args*, or ``None`` on failure or empty output."""
        result = self.run(args, check=check)
        if result.returncode != 0:
            return None
        text = (result.stdout or "").strip()
        if not text:
            return None
        try:
            return json.loads(text)
        except ValueError as exc:
            raise ProviderAPIError(
                f"{' '.join(list(args)[:3])} returned invalid JSON: {exc}",
                command=list(args),
                returncode=result.returncode,
                stderr=result.stderr or "",
            ) from exc

    def succeeds(self, args: Sequence[str]) -> bool:
        """Return ``True`` when *args* exits with status 0."""
        return self.run(args, check=False).returncode == 0

    def which(self, tool: str) -> str | None:
        """Return the resolved path for *tool* or ``None`` when it is missing."""
        return shutil.which(tool)

    def _execute(
        self,
        command: list[str],
        input_text: str | None,
    ) -> subprocess.CompletedProcess[str]:
        return subprocess.run(  # noqa: S603
            command,
            input=input_text,
            capture_output=True,
            text=True,
            check=False,
        )


__all__ = ["CommandRunner"]
