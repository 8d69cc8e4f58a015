"""Tests for the ``validate`` prerequisite checks."""
from __future__ import annotations

from pathlib import Path

import pytest
from conftest import FakeRunner, Reply, fail, ok

from harmonyctl.config import AppConfig
from harmonyctl.prereqs import (
    CHART_NAMES,
    CheckResult,
    CheckStatus,
    parse_version,
    run_checks,
    summarize,
)
from harmonyctl.target import Platform


def _healthy_cluster(runner: FakeRunner, *, secrets: set[str]) -> None:
    runner.on("kubectl version --client", ok({"clientVersion": {"gitVersion": "v1.29.2"}}))
    runner.on("helm version --short", ok("v3.14.0+gc309b6f"))
    runner.on("kubectl cluster-info", ok("Kubernetes control plane is running"))
    runner.on("kubectl config current-context", ok("prod-cluster"))
    runner.on("kubectl version -o json", ok({"serverVersion": {"gitVersion": "v1.28.5"}}))
    runner.on("kubectl get namespace harmony", ok())
    runner.on("kubectl top nodes", ok())

    def secret(command: list[str]) -> Reply:
        return ok() if command[3] in secrets else fail("NotFound")

    runner.on("kubectl get secret", secret)


def _by_name(results: list[CheckResult]) -> dict[tuple[str, str], CheckStatus]:
    return {(result.section, result.name): result.status for result in results}


@pytest.mark.parametrize(
    ("text", "expected"),
    [
        ("v3.14.0+gc309b6f", "3.14.0"),
        ("Client Version: v1.29.2", "1.29.2"),
        ("1.21", "1.21"),
        ("unknown", None),
        (None, None),
    ],
)
def test_parse_version(text: str | None, expected: str | None) -> None:
    version = parse_version(text)
    assert (str(version) if version else None) == expected


def test_healthy_cluster_passes(app_config: AppConfig) -> None:
    runner = FakeRunner()
    secrets = set(app_config.validate.required_secrets) | {"cleo-log-system"}
    _healthy_cluster(runner, secrets=secrets)

    results = run_checks(app_config, runner, platform=Platform.AWS)

    statuses = _by_name(results)
    assert statuses[("tools", "kubectl")] is CheckStatus.PASS
    assert statuses[("tools", "helm")] is CheckStatus.PASS
    assert statuses[("tools", "aws")] is CheckStatus.PASS
    assert statuses[("cluster", "connectivity")] is CheckStatus.PASS
    summary = summarize(results)
    assert summary.failed == 0
    assert summary.warnings == 0
    assert summary.exit_code == 0


def test_missing_required_secret_fails_and_optional_warns(app_config: AppConfig) -> None:
    runner = FakeRunner()
    present = set(app_config.validate.required_secrets) - {"cleo-license"}
    _healthy_cluster(runner, secrets=present)

    results = run_checks(app_config, runner)

    statuses = _by_name(results)
    assert statuses[("secrets", "cleo-license")] is CheckStatus.FAIL
    assert statuses[("secrets", "cleo-log-system")] is CheckStatus.WARN
    summary = summarize(results)
    assert summary.failed == 1
    assert summary.exit_code == 1


def test_old_tools_and_missing_namespace_only_warn(app_config: AppConfig) -> None:
    runner = FakeRunner()
    _healthy_cluster(runner, secrets=set(app_config.validate.required_secrets))
    runner.on("kubectl version --client", ok({"clientVersion": {"gitVersion": "v1.19.0"}}))
    runner.on("kubectl get namespace harmony", fail("NotFound"))
    runner.on("kubectl top nodes", fail("metrics not available"))

    results = run_checks(app_config, runner)

    statuses = _by_name(results)
    assert statuses[("tools", "kubectl")] is CheckStatus.WARN
    assert statuses[("cluster", "namespace")] is CheckStatus.WARN
    assert statuses[("cluster", "metrics")] is CheckStatus.WARN
    assert summarize(results).exit_code == 0


def test_unreachable_cluster_fails_and_skips_cluster_sections(app_config: AppConfig) -> None:
    runner = FakeRunner(missing=("helm",))
    runner.on("kubectl version --client", ok({"clientVersion": {"gitVersion": "v1.29.2"}}))
    runner.on("kubectl cluster-info", fail("connection refused"))

    results = run_checks(app_config, runner, check_storage=True)

    statuses = _by_name(results)
    assert statuses[("tools", "helm")] is CheckStatus.FAIL
    assert statuses[("cluster", "connectivity")] is CheckStatus.FAIL
    assert statuses[("secrets", "secrets")] is CheckStatus.WARN
    assert statuses[("storage", "storage")] is CheckStatus.WARN
    assert runner.commands("get secret") == []


def test_storage_checks_look_for_platform_driver(app_config: AppConfig) -> None:
    runner = FakeRunner()
    _healthy_cluster(runner, secrets=set(app_config.validate.required_secrets))
    runner.on("get pvc harmony-pvc -n harmony", ok({"status": {"phase": "Pending"}}))
    runner.on("get csidriver efs.csi.aws.com", fail("NotFound"))
    runner.on("get csidriver nfs.csi.k8s.io", ok())

    aws_results = _by_name(
        run_checks(app_config, runner, platform=Platform.AWS, check_storage=True)
    )
    any_results = _by_name(run_checks(app_config, runner, check_storage=True))

    assert aws_results[("storage", "pvc")] is CheckStatus.WARN
    assert aws_results[("storage", "csi-driver")] is CheckStatus.FAIL
    assert any_results[("storage", "csi-driver")] is CheckStatus.PASS


def test_chart_checks(app_config: AppConfig, tmp_path: Path) -> None:
    runner = FakeRunner()
    _healthy_cluster(runner, secrets=set(app_config.validate.required_secrets))
    charts = tmp_path / "charts"
    for name in CHART_NAMES[:-1]:
        (charts / name).mkdir(parents=True)
        (charts / name / "Chart.yaml").write_text("name: x\n", encoding="utf-8")

    statuses = _by_name(run_checks(app_config, runner, charts_dir=charts))

    assert statuses[("charts", "harmony-init")] is CheckStatus.PASS
    assert statuses[("charts", CHART_NAMES[-1])] is CheckStatus.FAIL
    assert CheckResult("charts", "x", CheckStatus.PASS, "ok").to_dict()["status"] == "pass"
