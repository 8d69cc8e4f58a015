"""Error taxonomy shared by the resolver, installers and provisioners.

Fatal conditions are exceptions derived from :class:`HarmonyError`; each one
carries a remediation ``hint`` that the CLI prints under the error line.
Non-fatal conditions (a driver that never became ready, a cleanup step that
could not run) are not raised; they travel on result objects tagged with a
:class:`Condition`.
"""
from __future__ import annotations

from collections.abc import Sequence
from enum import Enum


class Condition(str, Enum):
    """Identifiers for every failure mode the workflow can report."""

    MISSING_TOOL = "missing-tool"
    NOT_AUTHENTICATED = "not-authenticated"
    MISSING_CONFIGURATION = "missing-configuration"
    RESOURCE_NOT_FOUND = "resource-not-found"
    PROVIDER_API_ERROR = "provider-api-error"
    DEGRADED_INSTALL = "degraded-install"
    PARTIAL_CLEANUP = "partial-cleanup"


class HarmonyError(RuntimeError):
    """Base class for fatal workflow errors."""

    condition: Condition = Condition.PROVIDER_API_ERROR

    def __init__(self, message: str, *, hint: str | None = None) -> None:
        super().__init__(message)
        self.hint = hint


class MissingToolError(HarmonyError):
    """Raised when a required vendor CLI is not on ``PATH``."""

    condition = Condition.MISSING_TOOL

    def __init__(self, tool: str, *, hint: str | None = None) -> None:
        super().__init__(f"Required tool '{tool}' is not installed.", hint=hint)
        self.tool = tool


class NotAuthenticatedError(HarmonyError):
    """Raised when a vendor CLI has no active session."""

    condition = Condition.NOT_AUTHENTICATED


class MissingConfigurationError(HarmonyError):
    """Raised when required environment variables or inputs are absent."""

    condition = Condition.MISSING_CONFIGURATION

    def __init__(self, missing: Sequence[str], *, context: str = "") -> None:
        names = ", ".join(missing)
        suffix = f" for {context}" if context else ""
        hint = "\n".join(f"export {name}=..." for name in missing)
        super().__init__(f"Missing required environment variables{suffix}: {names}", hint=hint)
        self.missing = tuple(missing)


class ResourceNotFoundError(HarmonyError):
    """Raised when a named cluster or dependency does not exist."""

    condition = Condition.RESOURCE_NOT_FOUND


class ProviderAPIError(HarmonyError):
    """Raised when a cloud CLI call fails; ``stderr`` carries its raw output."""

    condition = Condition.PROVIDER_API_ERROR

    def __init__(
        self,
        message: str,
        *,
        command: Sequence[str] = (),
        returncode: int | None = None,
        stderr: str = "",
        hint: str | None = None,
    ) -> None:
        super().__init__(message, hint=hint)
        self.command = tuple(command)
        self.returncode = returncode
        self.stderr = stderr


__all__ = [
    "Condition",
    "HarmonyError",
    "MissingConfigurationError",
    "MissingToolError",
    "NotAuthenticatedError",
    "ProviderAPIError",
    "ResourceNotFoundError",
]
