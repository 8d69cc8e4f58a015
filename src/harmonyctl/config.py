"""Configuration loader for harmonyctl.

This module centralises the logic for reading configuration values from
multiple sources:

1. Built-in defaults.
2. ``~/.config/harmonyctl/config.yml`` (or an override path).
3. Environment variables prefixed with ``HARMONYCTL_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export HARMONYCTL_STORAGE__EFS_NAME=shared-config
    export HARMONYCTL_POLLING__MOUNT_TARGETS_AVAILABLE__ATTEMPTS=10

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses`` for convenient access and type safety.

Cluster coordinates (``CLUSTER_NAME`` and friends) are deliberately *not*
part of this file; they are resolved per invocation by
:mod:`harmonyctl.target`.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import cast

import yaml

ENV_PREFIX = "HARMONYCTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}

AWS_DISCOVERY_REGIONS = (
    "us-east-1",
    "us-east-2",
    "us-west-1",
    "us-west-2",
    "eu-west-1",
    "eu-west-2",
    "eu-central-1",
    "ca-central-1",
)

REQUIRED_SECRETS = (
    "cleo-license",
    "cleo-license-verification-code",
    "cleo-default-admin-password",
    "cleo-system-settings",
    "cleo-config-repo",
    "cleo-runtime-repo",
)
OPTIONAL_SECRETS = ("cleo-log-system",)

# attempts x interval seconds
POLL_DEFAULTS: dict[str, tuple[int, float]] = {
    "efs_available": (60, 10.0),
    "mount_targets_available": (30, 60.0),
    "mount_targets_deleted": (60, 30.0),
    "efs_addon_active": (24, 15.0),
    "azure_file_pods": (12, 30.0),
    "storage_account_ready": (20, 15.0),
    "nfs_node_pods": (24, 5.0),
}

TOOL_NAMES = ("aws", "az", "gcloud", "kubectl", "helm", "curl", "bash")


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class StorageNames:
    """Fixed names and sizes for the provisioned storage resources."""

    efs_name: str = "harmony-config-efs"
    storage_account_prefix: str = "harmonyconfignfs"
    file_share_name: str = "harmony-config-share"
    file_share_quota_gib: int = 100
    filestore_name: str = "harmony-config-filestore"
    filestore_share: str = "harmony_data"
    filestore_tier: str = "BASIC_HDD"
    filestore_capacity: str = "1TB"
    pvc_name: str = "harmony-pvc"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "efs_name": self.efs_name,
            "storage_account_prefix": self.storage_account_prefix,
            "file_share_name": self.file_share_name,
            "file_share_quota_gib": self.file_share_quota_gib,
            "filestore_name": self.filestore_name,
            "filestore_share": self.filestore_share,
            "filestore_tier": self.filestore_tier,
            "filestore_capacity": self.filestore_capacity,
            "pvc_name": self.pvc_name,
        }


@dataclass(frozen=True)
class WaitBudget:
    """Bounded polling budget for one kind of wait."""

    attempts: int
    interval: float
    backoff: float = 1.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"attempts": self.attempts, "interval": self.interval, "backoff": self.backoff}

    def with_timeout(self, seconds: float | None) -> WaitBudget:
        """Return a copy whose attempts cover roughly *seconds* of waiting."""
        if seconds is None:
            return self
        attempts = max(1, int(-(-seconds // self.interval)))
        return WaitBudget(attempts=attempts, interval=self.interval, backoff=self.backoff)


@dataclass(frozen=True)
class PollingConfig:
    """Named wait budgets used by the provisioning workflows."""

    budgets: Mapping[str, WaitBudget] = field(
        default_factory=lambda: {
            name: WaitBudget(attempts, interval)
            for name, (attempts, interval) in POLL_DEFAULTS.items()
        }
    )

    def budget(self, name: str) -> WaitBudget:
        """Return the budget registered under *name*."""
        try:
            return self.budgets[name]
        except KeyError as exc:
            raise ConfigError(f"Unknown polling budget '{name}'.") from exc

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {name: budget.to_dict() for name, budget in sorted(self.budgets.items())}


@dataclass(frozen=True)
class DelaysConfig:
    """Fixed propagation delays, in seconds."""

    iam_propagation: float = 10.0
    network_propagation: float = 60.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "iam_propagation": self.iam_propagation,
            "network_propagation": self.network_propagation,
        }


@dataclass(frozen=True)
class ToolsConfig:
    """Binary names or paths for the orchestrated CLIs."""

    aws: str = "aws"
    az: str = "az"
    gcloud: str = "gcloud"
    kubectl: str = "kubectl"
    helm: str = "helm"
    curl: str = "curl"
    bash: str = "bash"

    def binary(self, tool: str) -> str:
        """Return the configured binary for *tool* (falls back to the name)."""
        return cast(str, getattr(self, tool, tool))

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {name: self.binary(name) for name in TOOL_NAMES}


@dataclass(frozen=True)
class ValidateConfig:
    """Expectations checked by ``harmonyctl validate``."""

    required_secrets: tuple[str, ...] = REQUIRED_SECRETS
    optional_secrets: tuple[str, ...] = OPTIONAL_SECRETS

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "required_secrets": list(self.required_secrets),
            "optional_secrets": list(self.optional_secrets),
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for harmonyctl."""

    config_file: Path
    work_dir: Path
    state_dir: Path
    logs_dir: Path
    runtime_dir: Path
    lock_timeout: float
    namespace: str
    storage: StorageNames
    polling: PollingConfig
    delays: DelaysConfig
    tools: ToolsConfig
    aws_discovery_regions: tuple[str, ...]
    validate: ValidateConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "work_dir": str(self.work_dir),
            "state_dir": str(self.state_dir),
            "logs_dir": str(self.logs_dir),
            "runtime_dir": str(self.runtime_dir),
            "lock_timeout": self.lock_timeout,
            "namespace": self.namespace,
            "storage": self.storage.to_dict(),
            "polling": self.polling.to_dict(),
            "delays": self.delays.to_dict(),
            "tools": self.tools.to_dict(),
            "aws": {"discovery_regions": list(self.aws_discovery_regions)},
            "validate": self.validate.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "~/.config/harmonyctl/config.yml",
    "work_dir": ".",
    "state_dir": "~/.local/state/harmonyctl",
    "logs_dir": None,  # derived from state_dir when absent
    "runtime_dir": None,  # derived from state_dir when absent
    "lock_timeout": 30.0,
    "namespace": "harmony",
    "storage": StorageNames().to_dict(),
    "polling": {
        name: {"attempts": attempts, "interval": interval}
        for name, (attempts, interval) in POLL_DEFAULTS.items()
    },
    "delays": DelaysConfig().to_dict(),
    "tools": {name: name for name in TOOL_NAMES},
    "aws": {"discovery_regions": list(AWS_DISCOVERY_REGIONS)},
    "validate": ValidateConfig().to_dict(),
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
_NESTED_KEYS: dict[str, set[str]] = {
    "storage": set(StorageNames().to_dict().keys()),
    "delays": {"iam_propagation", "network_propagation"},
    "tools": set(TOOL_NAMES),
    "aws": {"discovery_regions"},
    "validate": {"required_secrets", "optional_secrets"},
}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override).expanduser()
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR]).expanduser()
    return Path(default_path).expanduser()


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    lock_timeout = raw.get("lock_timeout")
    if lock_timeout is not None:
        _expect_positive_float(lock_timeout, "lock_timeout", default=30.0)

    for section, allowed in _NESTED_KEYS.items():
        mapping = _as_dict(raw.get(section), section)
        unknown = set(mapping.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    polling = _as_dict(raw.get("polling"), "polling")
    unknown_waits = set(polling.keys()) - set(POLL_DEFAULTS)
    if unknown_waits:
        joined = ", ".join(sorted(unknown_waits))
        raise ConfigError(f"Unknown polling budgets: {joined}.")
    for name, value in polling.items():
        budget = _as_dict(value, f"polling.{name}")
        unknown = set(budget.keys()) - {"attempts", "interval", "backoff"}
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown polling.{name} keys: {joined}.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    config_file = _to_path(raw.get("config_file"))
    state_dir = _to_path(raw.get("state_dir"))
    logs_value = raw.get("logs_dir")
    logs_dir = _to_path(logs_value) if logs_value else state_dir / "logs"
    runtime_value = raw.get("runtime_dir")
    runtime_dir = _to_path(runtime_value) if runtime_value else state_dir / "run"
    lock_timeout = _expect_positive_float(raw.get("lock_timeout"), "lock_timeout", default=30.0)

    namespace = str(raw.get("namespace") or "").strip()
    if not namespace:
        raise ConfigError("namespace must be a non-empty string.")

    storage_mapping = _as_dict(raw.get("storage"), "storage")
    defaults = StorageNames()
    storage = StorageNames(
        efs_name=_expect_name(storage_mapping, "efs_name", defaults.efs_name),
        storage_account_prefix=_expect_account_prefix(
            storage_mapping.get("storage_account_prefix", defaults.storage_account_prefix)
        ),
        file_share_name=_expect_name(storage_mapping, "file_share_name", defaults.file_share_name),
        file_share_quota_gib=_expect_int(
            storage_mapping.get("file_share_quota_gib"),
            "storage.file_share_quota_gib",
            default=defaults.file_share_quota_gib,
        ),
        filestore_name=_expect_name(storage_mapping, "filestore_name", defaults.filestore_name),
        filestore_share=_expect_name(storage_mapping, "filestore_share", defaults.filestore_share),
        filestore_tier=_expect_name(storage_mapping, "filestore_tier", defaults.filestore_tier),
        filestore_capacity=_expect_name(
            storage_mapping, "filestore_capacity", defaults.filestore_capacity
        ),
        pvc_name=_expect_name(storage_mapping, "pvc_name", defaults.pvc_name),
    )
    if storage.file_share_quota_gib <= 0:
        raise ConfigError("storage.file_share_quota_gib must be greater than zero.")

    polling_mapping = _as_dict(raw.get("polling"), "polling")
    budgets: dict[str, WaitBudget] = {}
    for name, (default_attempts, default_interval) in POLL_DEFAULTS.items():
        entry = _as_dict(polling_mapping.get(name), f"polling.{name}")
        attempts = _expect_int(
            entry.get("attempts"), f"polling.{name}.attempts", default=default_attempts
        )
        if attempts <= 0:
            raise ConfigError(f"polling.{name}.attempts must be greater than zero.")
        budgets[name] = WaitBudget(
            attempts=attempts,
            interval=_expect_positive_float(
                entry.get("interval"), f"polling.{name}.interval", default=default_interval
            ),
            backoff=_expect_positive_float(
                entry.get("backoff"), f"polling.{name}.backoff", default=1.0
            ),
        )

    delays_mapping = _as_dict(raw.get("delays"), "delays")
    delays = DelaysConfig(
        iam_propagation=_expect_non_negative_float(
            delays_mapping.get("iam_propagation"), "delays.iam_propagation", default=10.0
        ),
        network_propagation=_expect_non_negative_float(
            delays_mapping.get("network_propagation"), "delays.network_propagation", default=60.0
        ),
    )

    tools_mapping = _as_dict(raw.get("tools"), "tools")
    tools = ToolsConfig(**{name: str(tools_mapping.get(name) or name) for name in TOOL_NAMES})

    aws_mapping = _as_dict(raw.get("aws"), "aws")
    regions = _expect_str_tuple(
        aws_mapping.get("discovery_regions"), "aws.discovery_regions", AWS_DISCOVERY_REGIONS
    )
    if not regions:
        raise ConfigError("aws.discovery_regions must list at least one region.")

    validate_mapping = _as_dict(raw.get("validate"), "validate")
    validate = ValidateConfig(
        required_secrets=_expect_str_tuple(
            validate_mapping.get("required_secrets"),
            "validate.required_secrets",
            REQUIRED_SECRETS,
        ),
        optional_secrets=_expect_str_tuple(
            validate_mapping.get("optional_secrets"),
            "validate.optional_secrets",
            OPTIONAL_SECRETS,
        ),
    )

    return AppConfig(
        config_file=config_file,
        work_dir=_to_path(raw.get("work_dir")),
        state_dir=state_dir,
        logs_dir=logs_dir,
        runtime_dir=runtime_dir,
        lock_timeout=lock_timeout,
        namespace=namespace,
        storage=storage,
        polling=PollingConfig(budgets=budgets),
        delays=delays,
        tools=tools,
        aws_discovery_regions=regions,
        validate=validate,
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        elif isinstance(value, list):
            result[key] = list(value)
        else:
            result[key] = value
    return result


def _as_sequence(value: object, label: str) -> Sequence[object]:
    if isinstance(value, (str, bytes)):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    if not isinstance(value, Sequence):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    return value


def _expect_str_tuple(
    value: object | None,
    label: str,
    default: tuple[str, ...],
) -> tuple[str, ...]:
    if value is None:
        return default
    if isinstance(value, str):
        # Environment overrides arrive as comma separated strings.
        return tuple(item.strip() for item in value.split(",") if item.strip())
    items: list[str] = []
    for index, entry in enumerate(_as_sequence(value, label)):
        if not isinstance(entry, str) or not entry.strip():
            raise ConfigError(f"{label}[{index}] must be a non-empty string.")
        items.append(entry.strip())
    return tuple(items)


def _expect_name(mapping: Mapping[str, object], key: str, default: str) -> str:
    value = mapping.get(key, default)
    if value is None:
        return default
    text = str(value).strip()
    if not text:
        raise ConfigError(f"storage.{key} must be a non-empty string.")
    return text


def _expect_account_prefix(value: object) -> str:
    text = str(value or "").strip()
    # Azure account names: 3-24 lowercase alphanumerics; six are reserved for the suffix.
    if not text or not text.isalnum() or text.lower() != text or len(text) > 18:
        raise ConfigError(
            "storage.storage_account_prefix must be 1-18 lowercase letters or digits."
        )
    return text


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_float(value: object, label: str) -> float:
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be numeric. Got {type(value).__name__}.")


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    numeric = _expect_float(value, label)
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _expect_non_negative_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    numeric = _expect_float(value, label)
    if numeric < 0:
        raise ConfigError(f"{label} must not be negative. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AppConfig",
    "ConfigError",
    "DelaysConfig",
    "PollingConfig",
    "StorageNames",
    "ToolsConfig",
    "ValidateConfig",
    "WaitBudget",
    "load_config",
]
