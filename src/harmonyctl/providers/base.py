"""Provider interface shared by the AWS, Azure and GCP storage workflows.

A provider implements the four workflow stages for one cloud:

``resolve_environment``
    discover the cluster and produce the environment variables later stages
    consume.
``install_driver``
    make sure the CSI driver for the shared filesystem runs in the cluster.
``provision``
    create (or find) the filesystem and open it to the cluster network.
``deprovision``
    remove what ``provision`` created, in dependency order.
"""
from __future__ import annotations

import time
from abc import ABC, abstractmethod
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import ClassVar

from ..config import AppConfig
from ..errors import Condition, NotAuthenticatedError
from ..info_file import StorageInfo, helm_values, info_path
from ..polling import PollResult, poll_until
from ..prompts import Chooser, Confirmer
from ..reporting import Reporter
from ..runner import CommandRunner
from ..target import ClusterTarget, Platform
from .kubernetes import KubectlClient


@dataclass(slots=True, frozen=True)
class EnvironmentResult:
    """Variables discovered by ``resolve_environment`` in export order."""

    platform: Platform
    variables: Mapping[str, str]


@dataclass(slots=True, frozen=True)
class DriverResult:
    """Outcome of ``install_driver``; ``ready`` is ``False`` for a degraded install."""

    ready: bool
    detail: str


@dataclass(slots=True, frozen=True)
class ProvisionResult:
    """Outcome of ``provision``."""

    created: bool
    resource_id: str
    fields: Mapping[str, str]
    helm_values: Mapping[str, object]
    info_file: Path


@dataclass(slots=True)
class CleanupResult:
    """Outcome of ``deprovision``."""

    found: bool
    storage_deleted: bool = False
    removed: list[str] = field(default_factory=list)
    preserved: list[str] = field(default_factory=list)


@dataclass(slots=True)
class ProviderContext:
    """Collaborators handed to every provider."""

    config: AppConfig
    runner: CommandRunner
    reporter: Reporter
    sleep: Callable[[float], None] = time.sleep


class StorageProvider(ABC):
    """Base class for the per-cloud storage workflows."""

    platform: ClassVar[Platform]
    cli_tool: ClassVar[str]
    csi_driver_name: ClassVar[str]
    auth_hint: ClassVar[str]

    def __init__(self, context: ProviderContext) -> None:
        self.context = context
        self.config = context.config
        self.runner = context.runner
        self.reporter = context.reporter
        self.kubectl = KubectlClient(context.runner, context.config.tools.kubectl)

    # ------------------------------------------------------------------
    @property
    def required_tools(self) -> tuple[str, ...]:
        """CLI tools (logical names) this provider shells out to."""
        return (self.cli_tool, "kubectl")

    @property
    def cli(self) -> str:
        """Configured binary of the platform CLI."""
        return self.config.tools.binary(self.cli_tool)

    @abstractmethod
    def auth_probe(self) -> list[str]:
        """Return the command that succeeds only with an active CLI session."""

    def ensure_authenticated(self) -> None:
        """Raise :class:`NotAuthenticatedError` when the platform CLI has no session."""
        if not self.runner.succeeds(self.auth_probe()):
            raise NotAuthenticatedError(
                f"{self.cli_tool} CLI is not authenticated.",
                hint=self.auth_hint,
            )
        self.reporter.step("auth.check", f"{self.cli_tool} CLI is authenticated")

    @abstractmethod
    def resolve_environment(
        self,
        chooser: Chooser,
        *,
        cluster: str | None = None,
    ) -> EnvironmentResult:
        """Discover the cluster and return the variables for later stages."""

    @abstractmethod
    def configure_kubectl(self, variables: Mapping[str, str]) -> None:
        """Point the local kubectl context at the resolved cluster."""

    @abstractmethod
    def install_driver(
        self,
        target: ClusterTarget,
        *,
        timeout: float | None = None,
    ) -> DriverResult:
        """Install the CSI driver and wait (bounded) for it to run."""

    @abstractmethod
    def provision(self, target: ClusterTarget) -> ProvisionResult:
        """Create or reuse the shared filesystem."""

    @abstractmethod
    def deprovision(self, target: ClusterTarget, confirmer: Confirmer) -> CleanupResult:
        """Tear down the shared filesystem and its network plumbing."""

    # ------------------------------------------------------------------
    def poll(
        self,
        budget_name: str,
        check: Callable[[], bool],
        *,
        timeout: float | None = None,
        label: str | None = None,
    ) -> PollResult:
        """Run :func:`poll_until` with the named budget from the config."""
        budget = self.config.polling.budget(budget_name).with_timeout(timeout)
        description = label or budget_name.replace("_", " ")

        def _progress(attempt: int, attempts: int) -> None:
            self.reporter.info(f"Waiting for {description} ({attempt}/{attempts})...")

        return poll_until(check, budget, sleep=self.context.sleep, on_retry=_progress)

    def pause(self, seconds: float, reason: str) -> None:
        """Sleep for a fixed propagation delay."""
        if seconds <= 0:
            return
        self.reporter.info(f"Waiting {seconds:g}s for {reason}...")
        self.context.sleep(seconds)

    def write_info(
        self,
        fields: Mapping[str, str],
        storage: Mapping[str, str],
    ) -> tuple[Path, dict[str, object]]:
        """Write the info file and return its path with the Helm values fragment."""
        values = helm_values(self.platform, storage)
        path = StorageInfo(self.platform, dict(fields), values).write(self.config.work_dir)
        self.reporter.step("info.write", f"Storage details saved to {path}")
        return path, values

    @property
    def info_file(self) -> Path:
        """Return the info file path for this platform."""
        return info_path(self.config.work_dir, self.platform)

    def remove_info(self, confirmer: Confirmer | None, result: CleanupResult) -> None:
        """Remove the local info file, asking first when *confirmer* is given."""
        path = self.info_file
        if not path.exists():
            return
        if confirmer is not None and not confirmer.confirm(f"Remove local info file {path}?"):
            result.preserved.append(str(path))
            self.reporter.step("info.keep", f"Kept {path}", status="skipped")
            return
        path.unlink(missing_ok=True)
        result.removed.append(str(path))
        self.reporter.step("info.remove", f"Removed {path}")

    def degraded(self, message: str) -> DriverResult:
        """Record a degraded driver install and return the matching result."""
        self.reporter.warn("driver.degraded", message, condition=Condition.DEGRADED_INSTALL)
        return DriverResult(ready=False, detail=message)

    def partial(self, name: str, message: str) -> None:
        """Record a cleanup step that could not complete."""
        self.reporter.warn(name, message, condition=Condition.PARTIAL_CLEANUP)


__all__ = [
    "CleanupResult",
    "DriverResult",
    "EnvironmentResult",
    "ProviderContext",
    "ProvisionResult",
    "StorageProvider",
]
