"""Prerequisite checks run by ``harmonyctl validate``."""
from __future__ import annotations

import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from packaging.version import InvalidVersion, Version

from .config import AppConfig
from .exit_codes import ExitCode
from .providers import PROVIDERS
from .providers.kubernetes import KubectlClient
from .runner import CommandRunner
from .target import Platform

MINIMUM_VERSIONS = {"kubectl": "1.21", "helm": "3.0"}
CHART_NAMES = ("harmony-init", "harmony-run", "harmony-storage")

_VERSION_PATTERN = re.compile(r"v?(\d+\.\d+(?:\.\d+)?)")


class CheckStatus(str, Enum):
    """Outcome of a single prerequisite check."""

    PASS = "pass"
    WARN = "warn"
    FAIL = "fail"

    @property
    def is_failure(self) -> bool:
        """Return ``True`` when the status represents a failure."""
        return self is CheckStatus.FAIL


@dataclass(slots=True, frozen=True)
class CheckResult:
    """A single validation line."""

    section: str
    name: str
    status: CheckStatus
    message: str

    def to_dict(self) -> dict[str, str]:
        """Return the result as plain strings for the operation log."""
        return {
            "section": self.section,
            "name": self.name,
            "status": self.status.value,
            "message": self.message,
        }


@dataclass(slots=True, frozen=True)
class ValidationSummary:
    """Counts per status and the resulting exit code."""

    passed: int
    warnings: int
    failed: int

    @property
    def exit_code(self) -> int:
        """1 when any check failed, otherwise 0."""
        return int(ExitCode.FAILURE if self.failed else ExitCode.OK)


def parse_version(text: str | None) -> Version | None:
    """Extract the first ``vX.Y[.Z]`` version from *text*."""
    if not text:
        return None
    match = _VERSION_PATTERN.search(text)
    if match is None:
        return None
    try:
        return Version(match.group(1))
    except InvalidVersion:
        return None


def summarize(results: Iterable[CheckResult]) -> ValidationSummary:
    """Count results by status."""
    statuses = [result.status for result in results]
    return ValidationSummary(
        passed=statuses.count(CheckStatus.PASS),
        warnings=statuses.count(CheckStatus.WARN),
        failed=statuses.count(CheckStatus.FAIL),
    )


def run_checks(
    config: AppConfig,
    runner: CommandRunner,
    *,
    platform: Platform | None = None,
    namespace: str | None = None,
    check_storage: bool = False,
    charts_dir: Path | None = None,
) -> list[CheckResult]:
    """Run every applicable check and return the results in display order."""
    kubectl = KubectlClient(runner, config.tools.kubectl)
    namespace = namespace or config.namespace
    results = _tool_checks(config, runner, kubectl, platform)

    reachable = kubectl.cluster_reachable()
    results.extend(_cluster_checks(kubectl, namespace, reachable))
    if reachable:
        results.extend(_secret_checks(config, kubectl, namespace))
    else:
        results.append(
            CheckResult("secrets", "secrets", CheckStatus.WARN, "Skipped: cluster unreachable")
        )

    if check_storage:
        if reachable:
            results.extend(_storage_checks(config, kubectl, namespace, platform))
        else:
            results.append(
                CheckResult("storage", "storage", CheckStatus.WARN, "Skipped: cluster unreachable")
            )
    if charts_dir is not None:
        results.extend(_chart_checks(charts_dir))
    return results


def _tool_checks(
    config: AppConfig,
    runner: CommandRunner,
    kubectl: KubectlClient,
    platform: Platform | None,
) -> list[CheckResult]:
    results: list[CheckResult] = []
    for tool in ("kubectl", "helm"):
        if runner.which(config.tools.binary(tool)) is None:
            results.append(
                CheckResult("tools", tool, CheckStatus.FAIL, f"{tool} not found on PATH")
            )
            continue
        if tool == "kubectl":
            raw = kubectl.client_version()
        else:
            raw = runner.output([config.tools.helm, "version", "--short"], check=False)
        results.append(_version_result(tool, parse_version(raw)))

    if platform is not None:
        cli = PROVIDERS[platform].cli_tool
        if runner.which(config.tools.binary(cli)) is None:
            results.append(CheckResult("tools", cli, CheckStatus.FAIL, f"{cli} not found on PATH"))
        else:
            results.append(CheckResult("tools", cli, CheckStatus.PASS, f"{cli} installed"))
    return results


def _version_result(tool: str, version: Version | None) -> CheckResult:
    minimum = Version(MINIMUM_VERSIONS[tool])
    if version is None:
        return CheckResult("tools", tool, CheckStatus.WARN, f"{tool} installed (version unknown)")
    if version < minimum:
        return CheckResult(
            "tools",
            tool,
            CheckStatus.WARN,
            f"{tool} {version} is older than the recommended {minimum}",
        )
    return CheckResult("tools", tool, CheckStatus.PASS, f"{tool} {version}")


def _cluster_checks(kubectl: KubectlClient, namespace: str, reachable: bool) -> list[CheckResult]:
    if not reachable:
        return [
            CheckResult(
                "cluster",
                "connectivity",
                CheckStatus.FAIL,
                "Cannot reach the Kubernetes API server (check 'kubectl cluster-info')",
            )
        ]
    results = [CheckResult("cluster", "connectivity", CheckStatus.PASS, "Cluster reachable")]
    context = kubectl.current_context()
    results.append(
        CheckResult(
            "cluster",
            "context",
            CheckStatus.PASS if context else CheckStatus.WARN,
            f"Current context: {context}" if context else "No current kubectl context",
        )
    )
    server = kubectl.server_version()
    results.append(
        CheckResult(
            "cluster",
            "server-version",
            CheckStatus.PASS if server else CheckStatus.WARN,
            f"Kubernetes {server}" if server else "Server version unknown",
        )
    )
    if kubectl.namespace_exists(namespace):
        results.append(
            CheckResult("cluster", "namespace", CheckStatus.PASS, f"Namespace '{namespace}' exists")
        )
    else:
        results.append(
            CheckResult(
                "cluster",
                "namespace",
                CheckStatus.WARN,
                f"Namespace '{namespace}' does not exist (create it with "
                f"'kubectl create namespace {namespace}')",
            )
        )
    if kubectl.metrics_available():
        results.append(
            CheckResult("cluster", "metrics", CheckStatus.PASS, "Metrics server available")
        )
    else:
        results.append(
            CheckResult("cluster", "metrics", CheckStatus.WARN, "Metrics server not available")
        )
    return results


def _secret_checks(config: AppConfig, kubectl: KubectlClient, namespace: str) -> list[CheckResult]:
    results: list[CheckResult] = []
    for name, optional in _secret_names(
        config.validate.required_secrets, config.validate.optional_secrets
    ):
        if kubectl.secret_exists(namespace, name):
            results.append(
                CheckResult("secrets", name, CheckStatus.PASS, f"Secret '{name}' exists")
            )
        elif optional:
            results.append(
                CheckResult("secrets", name, CheckStatus.WARN, f"Optional secret '{name}' missing")
            )
        else:
            results.append(
                CheckResult(
                    "secrets",
                    name,
                    CheckStatus.FAIL,
                    f"Required secret '{name}' missing in namespace '{namespace}'",
                )
            )
    return results


def _secret_names(
    required: Sequence[str],
    optional: Sequence[str],
) -> list[tuple[str, bool]]:
    return [(name, False) for name in required] + [(name, True) for name in optional]


def _storage_checks(
    config: AppConfig,
    kubectl: KubectlClient,
    namespace: str,
    platform: Platform | None,
) -> list[CheckResult]:
    claim = config.storage.pvc_name
    phase = kubectl.claim_phase(namespace, claim)
    if phase == "Bound":
        results = [CheckResult("storage", "pvc", CheckStatus.PASS, f"PVC '{claim}' is Bound")]
    else:
        results = [
            CheckResult(
                "storage",
                "pvc",
                CheckStatus.WARN,
                f"PVC '{claim}' is {phase}" if phase else f"PVC '{claim}' not found",
            )
        ]

    platforms = [platform] if platform is not None else list(Platform)
    drivers = [PROVIDERS[item].csi_driver_name for item in platforms]
    present = [driver for driver in drivers if kubectl.csi_driver_exists(driver)]
    if present:
        results.append(
            CheckResult(
                "storage", "csi-driver", CheckStatus.PASS, f"CSI driver {present[0]} installed"
            )
        )
    else:
        results.append(
            CheckResult(
                "storage",
                "csi-driver",
                CheckStatus.FAIL,
                f"No CSI driver found ({', '.join(drivers)})",
            )
        )
    return results


def _chart_checks(charts_dir: Path) -> list[CheckResult]:
    results: list[CheckResult] = []
    for chart in CHART_NAMES:
        manifest = charts_dir / chart / "Chart.yaml"
        if manifest.is_file():
            results.append(CheckResult("charts", chart, CheckStatus.PASS, f"{chart} found"))
        else:
            results.append(
                CheckResult("charts", chart, CheckStatus.FAIL, f"{manifest} not found")
            )
    return results


__all__ = [
    "CHART_NAMES",
    "CheckResult",
    "CheckStatus",
    "MINIMUM_VERSIONS",
    "ValidationSummary",
    "parse_version",
    "run_checks",
    "summarize",
]
