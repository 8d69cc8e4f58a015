"""Tests for the harmonyctl command line."""
from __future__ import annotations

import json
from pathlib import Path

import pytest
from conftest import FakeRunner, fail, ok
from test_aws_provider import AwsCloud
from typer.testing import CliRunner, Result

from harmonyctl import __version__
from harmonyctl.cli import RuntimeContext, app
from harmonyctl.config import AppConfig
from harmonyctl.environment import EXPORT_FILENAMES
from harmonyctl.locking import LockManager
from harmonyctl.logging import StructuredLogger
from harmonyctl.target import Platform

runner = CliRunner()

CLUSTER_VARIABLES = (
    "CLUSTER_NAME",
    "CLUSTER_REGION",
    "CLUSTER_LOCATION",
    "CLUSTER_ZONE",
    "PROJECT_ID",
    "RESOURCE_GROUP",
    "LOCATION",
    "NODE_RESOURCE_GROUP",
)
AWS_ENV = {"CLUSTER_NAME": "alpha", "CLUSTER_REGION": "us-east-1"}


def _env(values: dict[str, str] | None = None) -> dict[str, str | None]:
    """Return an environment with every cluster variable unset except *values*."""
    env: dict[str, str | None] = {name: None for name in CLUSTER_VARIABLES}
    env.update(values or {})
    return env


@pytest.fixture
def runtime(app_config: AppConfig, fake_runner: FakeRunner) -> RuntimeContext:
    return RuntimeContext(
        config=app_config,
        runner=fake_runner,
        locks=LockManager(app_config.runtime_dir, app_config.lock_timeout),
        logger=StructuredLogger(app_config.logs_dir),
        sleep=lambda _seconds: None,
    )


def _invoke(
    runtime: RuntimeContext,
    args: list[str],
    *,
    env: dict[str, str] | None = None,
    input: str | None = None,
) -> Result:
    return runner.invoke(app, args, obj=runtime, env=_env(env), input=input)


def _records(runtime: RuntimeContext) -> list[dict[str, object]]:
    path = runtime.logger.operations_log_path
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]


def test_version_flag(runtime: RuntimeContext) -> None:
    result = _invoke(runtime, ["--version"])

    assert result.exit_code == 0
    assert f"harmonyctl {__version__}" in result.stdout


def test_help_lists_workflow_commands(runtime: RuntimeContext) -> None:
    result = _invoke(runtime, ["--help"])

    assert result.exit_code == 0
    for command in ("setup-env", "install-driver", "create-storage", "cleanup-storage", "validate"):
        assert command in result.stdout


def test_unknown_platform_is_a_usage_error(runtime: RuntimeContext) -> None:
    result = _invoke(runtime, ["create-storage", "--platform", "oracle"])

    assert result.exit_code == 2
    assert runtime.runner.calls == []  # type: ignore[attr-defined]


def test_missing_environment_fails_before_any_cloud_call(runtime: RuntimeContext) -> None:
    """Missing coordinates are reported together and nothing is executed."""
    result = _invoke(runtime, ["create-storage", "--platform", "aws"])

    assert result.exit_code == 1
    assert "export CLUSTER_NAME=..." in result.stdout
    assert "export CLUSTER_REGION=..." in result.stdout
    assert runtime.runner.calls == []  # type: ignore[attr-defined]

    [record] = _records(runtime)
    outcome = record["result"]
    assert isinstance(outcome, dict)
    assert outcome["rc"] == 1
    assert outcome["errors"][0].startswith("[missing-configuration]")


def test_platform_is_case_insensitive(runtime: RuntimeContext) -> None:
    result = _invoke(runtime, ["cleanup-storage", "--platform", "AWS"], env={})

    assert result.exit_code == 1
    assert "CLUSTER_REGION" in result.stdout


def test_create_storage_twice_reuses_file_system(
    runtime: RuntimeContext, fake_runner: FakeRunner
) -> None:
    AwsCloud(fake_runner)

    first = _invoke(runtime, ["create-storage", "--platform", "aws"], env=AWS_ENV)
    second = _invoke(runtime, ["create-storage", "--platform", "aws"], env=AWS_ENV)

    assert first.exit_code == 0, first.stdout
    assert "Created shared storage fs-123." in first.stdout
    assert "fileSystemId: fs-123" in first.stdout
    assert second.exit_code == 0, second.stdout
    assert "Shared storage fs-123 already exists." in second.stdout
    assert len(fake_runner.commands("efs create-file-system")) == 1

    records = _records(runtime)
    assert [record["command"] for record in records] == ["create-storage", "create-storage"]
    assert all(record["lock_wait_ms"] is not None for record in records)


def test_unauthenticated_cli_exits_with_hint(
    runtime: RuntimeContext, fake_runner: FakeRunner
) -> None:
    AwsCloud(fake_runner)
    fake_runner.on("sts get-caller-identity", fail("Unable to locate credentials"))

    result = _invoke(runtime, ["create-storage", "--platform", "aws"], env=AWS_ENV)

    assert result.exit_code == 1
    assert "aws configure" in result.stdout
    assert fake_runner.commands("efs") == []


def test_missing_tool_exits_before_authentication(runtime: RuntimeContext) -> None:
    runtime.runner = FakeRunner(missing=("aws",))

    result = _invoke(runtime, ["install-driver", "--platform", "aws"], env=AWS_ENV)

    assert result.exit_code == 1
    assert "Required tool 'aws'" in result.stdout
    assert runtime.runner.calls == []  # type: ignore[attr-defined]


def test_cleanup_with_nothing_present_succeeds(
    runtime: RuntimeContext, fake_runner: FakeRunner
) -> None:
    AwsCloud(fake_runner)

    result = _invoke(runtime, ["cleanup-storage", "--platform", "aws"], env=AWS_ENV)

    assert result.exit_code == 0, result.stdout
    assert "Nothing to clean up." in result.stdout


def test_cleanup_with_delete_storage_never_prompts(
    runtime: RuntimeContext, fake_runner: FakeRunner
) -> None:
    cloud = AwsCloud(fake_runner)
    assert _invoke(runtime, ["create-storage", "--platform", "aws"], env=AWS_ENV).exit_code == 0

    result = _invoke(
        runtime,
        ["cleanup-storage", "--platform", "aws", "--delete-storage"],
        env=AWS_ENV,
        input="",
    )

    assert result.exit_code == 0, result.stdout
    assert "Cleanup complete." in result.stdout
    assert "[y/N]" not in result.stdout
    assert cloud.file_system is not None
    assert cloud.file_system["LifeCycleState"] == "deleting"
    assert cloud.mount_targets == []


def test_cleanup_twice_is_idempotent(runtime: RuntimeContext, fake_runner: FakeRunner) -> None:
    AwsCloud(fake_runner)
    assert _invoke(runtime, ["create-storage", "--platform", "aws"], env=AWS_ENV).exit_code == 0
    args = ["cleanup-storage", "--platform", "aws", "--delete-storage"]

    first = _invoke(runtime, args, env=AWS_ENV)
    second = _invoke(runtime, args, env=AWS_ENV)

    assert first.exit_code == 0, first.stdout
    assert second.exit_code == 0, second.stdout
    assert "Nothing to clean up." in second.stdout
    assert len(fake_runner.commands("efs delete-file-system")) == 1


def test_cleanup_declined_keeps_file_system(
    runtime: RuntimeContext, fake_runner: FakeRunner
) -> None:
    cloud = AwsCloud(fake_runner)
    assert _invoke(runtime, ["create-storage", "--platform", "aws"], env=AWS_ENV).exit_code == 0

    result = _invoke(
        runtime,
        ["cleanup-storage", "--platform", "aws"],
        env=AWS_ENV,
        input="n\n" * 5,
    )

    assert result.exit_code == 0, result.stdout
    assert cloud.file_system is not None
    assert "Kept:" in result.stdout


def test_lock_held_by_another_run_fails(
    runtime: RuntimeContext, fake_runner: FakeRunner
) -> None:
    AwsCloud(fake_runner)

    with runtime.locks.resource_lock("aws-alpha"):
        result = _invoke(runtime, ["create-storage", "--platform", "aws"], env=AWS_ENV)

    assert result.exit_code == 1
    assert "Timed out" in result.stdout
    assert fake_runner.commands("efs") == []


def test_setup_env_writes_export_file(
    runtime: RuntimeContext, fake_runner: FakeRunner, app_config: AppConfig
) -> None:
    fake_runner.on("auth list", ok("me@example.com"))
    fake_runner.on("config get-value project", ok("proj-a"))
    fake_runner.on("container clusters list", ok([{"name": "gke-1", "location": "us-central1"}]))
    fake_runner.on("compute zones list", ok([{"name": "us-central1-b"}]))

    result = _invoke(
        runtime, ["setup-env", "--platform", "gcp", "--no-persist", "--skip-kubectl"]
    )

    assert result.exit_code == 0, result.stdout
    export_file = app_config.work_dir / EXPORT_FILENAMES[Platform.GCP]
    text = export_file.read_text(encoding="utf-8")
    assert 'export CLUSTER_ZONE="us-central1-b"' in text
    assert 'export PROJECT_ID="proj-a"' in text
    assert "source" in result.stdout
    assert fake_runner.commands("get-credentials") == []


def test_validate_exit_codes(runtime: RuntimeContext, fake_runner: FakeRunner) -> None:
    fake_runner.on("", ok())

    healthy = _invoke(runtime, ["validate"])
    fake_runner.on("kubectl cluster-info", fail("connection refused"))
    broken = _invoke(runtime, ["validate"])

    assert healthy.exit_code == 0, healthy.stdout
    assert "Summary:" in healthy.stdout
    assert broken.exit_code == 1
    assert "FAIL" in broken.stdout


def test_config_show_json(runtime: RuntimeContext) -> None:
    result = _invoke(runtime, ["config", "show", "--json"])

    assert result.exit_code == 0
    assert '"namespace": "harmony"' in result.stdout
    assert '"efs_name": "harmony-config-efs"' in result.stdout


def test_config_show_table(runtime: RuntimeContext) -> None:
    result = _invoke(runtime, ["config", "show"])

    assert result.exit_code == 0
    assert "lock_timeout" in result.stdout


def test_invalid_config_file_is_a_usage_error(tmp_path: Path) -> None:
    config = tmp_path / "bad.yml"
    config.write_text("unknown: value\n", encoding="utf-8")

    result = runner.invoke(app, ["--config-file", str(config), "config", "show"], env=_env())

    assert result.exit_code == 2
    assert "Configuration error" in result.stdout
