"""Configuration loader tests."""
from __future__ import annotations

from pathlib import Path

import pytest

from harmonyctl.config import AppConfig, ConfigError, WaitBudget, load_config


def test_load_config_defaults_when_file_missing(tmp_path: Path) -> None:
    """Defaults apply when no config file is present."""
    config = load_config(config_file=tmp_path / "missing.yml", env={})

    assert isinstance(config, AppConfig)
    assert config.config_file == tmp_path / "missing.yml"
    assert config.logs_dir == config.state_dir / "logs"
    assert config.runtime_dir == config.state_dir / "run"
    assert config.lock_timeout == 30.0
    assert config.namespace == "harmony"
    assert config.storage.efs_name == "harmony-config-efs"
    assert config.storage.file_share_quota_gib == 100
    assert config.polling.budget("mount_targets_available") == WaitBudget(30, 60.0)
    assert config.delays.network_propagation == 60.0
    assert config.tools.binary("kubectl") == "kubectl"
    assert "us-east-2" in config.aws_discovery_regions
    assert "cleo-license" in config.validate.required_secrets


def test_load_config_reads_yaml_file(tmp_path: Path) -> None:
    """Values are loaded from the YAML config file."""
    cfg = tmp_path / "harmonyctl.yml"
    cfg.write_text(
        "work_dir: {work}\n"
        "namespace: harmony-dev\n"
        "storage:\n"
        "  efs_name: dev-config-efs\n"
        "  storage_account_prefix: devnfs\n"
        "polling:\n"
        "  efs_available:\n"
        "    attempts: 3\n"
        "    interval: 2\n"
        "    backoff: 1.5\n"
        "tools:\n"
        "  aws: /opt/aws/bin/aws\n".format(work=tmp_path / "work")
    )

    config = load_config(config_file=cfg, env={})

    assert config.config_file == cfg
    assert config.work_dir == tmp_path / "work"
    assert config.namespace == "harmony-dev"
    assert config.storage.efs_name == "dev-config-efs"
    assert config.storage.storage_account_prefix == "devnfs"
    assert config.storage.file_share_name == "harmony-config-share"
    assert config.polling.budget("efs_available") == WaitBudget(3, 2.0, 1.5)
    assert config.tools.aws == "/opt/aws/bin/aws"
    assert config.tools.az == "az"


def test_env_overrides_take_precedence(tmp_path: Path) -> None:
    """Environment variables override defaults and file settings."""
    cfg = tmp_path / "config.yml"
    cfg.write_text("lock_timeout: 10\n")
    state_dir = tmp_path / "state"
    env = {
        "HARMONYCTL_STATE_DIR": str(state_dir),
        "HARMONYCTL_LOCK_TIMEOUT": "45",
        "HARMONYCTL_STORAGE__FILESTORE_TIER": "ENTERPRISE",
        "HARMONYCTL_POLLING__MOUNT_TARGETS_AVAILABLE__ATTEMPTS": "10",
        "HARMONYCTL_DELAYS__NETWORK_PROPAGATION": "0",
        "HARMONYCTL_AWS__DISCOVERY_REGIONS": "eu-west-1, ap-south-1",
    }

    config = load_config(config_file=cfg, env=env)

    assert config.state_dir == state_dir
    assert config.logs_dir == state_dir / "logs"
    assert config.lock_timeout == 45.0
    assert config.storage.filestore_tier == "ENTERPRISE"
    assert config.polling.budget("mount_targets_available").attempts == 10
    assert config.polling.budget("mount_targets_available").interval == 60.0
    assert config.delays.network_propagation == 0.0
    assert config.aws_discovery_regions == ("eu-west-1", "ap-south-1")


def test_env_can_select_config_file(tmp_path: Path) -> None:
    """Environment variable selects an alternate config file."""
    cfg = tmp_path / "override.yml"
    cfg.write_text("namespace: staging\n")

    config = load_config(env={"HARMONYCTL_CONFIG_FILE": str(cfg)})

    assert config.config_file == cfg
    assert config.namespace == "staging"


def test_programmatic_overrides_win(tmp_path: Path) -> None:
    config = load_config(
        config_file=tmp_path / "missing.yml",
        env={"HARMONYCTL_NAMESPACE": "from-env"},
        overrides={"namespace": "from-flag"},
    )

    assert config.namespace == "from-flag"


def test_to_dict_is_serialisable(tmp_path: Path) -> None:
    config = load_config(config_file=tmp_path / "missing.yml", env={})

    data = config.to_dict()

    assert data["storage"]["pvc_name"] == "harmony-pvc"  # type: ignore[index]
    assert data["polling"]["nfs_node_pods"] == {  # type: ignore[index]
        "attempts": 24,
        "interval": 5.0,
        "backoff": 1.0,
    }
    assert data["tools"]["gcloud"] == "gcloud"  # type: ignore[index]


def test_wait_budget_with_timeout_rounds_up() -> None:
    budget = WaitBudget(attempts=30, interval=60.0)

    assert budget.with_timeout(None) is budget
    assert budget.with_timeout(90).attempts == 2
    assert budget.with_timeout(1).attempts == 1
    assert budget.with_timeout(600).interval == 60.0


def test_invalid_config_file_raises(tmp_path: Path) -> None:
    """Invalid YAML raises a ConfigError."""
    cfg = tmp_path / "bad.yml"
    cfg.write_text("- not-a-mapping\n")

    with pytest.raises(ConfigError):
        load_config(config_file=cfg, env={})


def test_unknown_top_level_key_raises(tmp_path: Path) -> None:
    """Unexpected top-level keys trigger ConfigError."""
    cfg = tmp_path / "config.yml"
    cfg.write_text("unknown: value\n")

    with pytest.raises(ConfigError, match="Unknown configuration keys"):
        load_config(config_file=cfg, env={})


def test_unknown_storage_keys_raise(tmp_path: Path) -> None:
    cfg = tmp_path / "config.yml"
    cfg.write_text("storage:\n  efs_size: 10\n")

    with pytest.raises(ConfigError, match="Unknown storage configuration keys"):
        load_config(config_file=cfg, env={})


def test_unknown_polling_budget_raises(tmp_path: Path) -> None:
    cfg = tmp_path / "config.yml"
    cfg.write_text("polling:\n  forever:\n    attempts: 1\n")

    with pytest.raises(ConfigError, match="Unknown polling budgets"):
        load_config(config_file=cfg, env={})


@pytest.mark.parametrize("prefix", ["Harmony", "has-dash", "x" * 19, ""])
def test_invalid_storage_account_prefix_raises(tmp_path: Path, prefix: str) -> None:
    """Account prefixes must leave room for the random suffix."""
    with pytest.raises(ConfigError, match="storage_account_prefix"):
        load_config(
            config_file=tmp_path / "missing.yml",
            env={},
            overrides={"storage": {"storage_account_prefix": prefix}},
        )


def test_non_positive_attempts_raise(tmp_path: Path) -> None:
    with pytest.raises(ConfigError, match="attempts must be greater than zero"):
        load_config(
            config_file=tmp_path / "missing.yml",
            env={"HARMONYCTL_POLLING__EFS_AVAILABLE__ATTEMPTS": "0"},
        )


def test_empty_namespace_raises(tmp_path: Path) -> None:
    with pytest.raises(ConfigError, match="namespace"):
        load_config(config_file=tmp_path / "missing.yml", env={}, overrides={"namespace": " "})
