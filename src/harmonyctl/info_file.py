"""Local storage info files written after provisioning."""
from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

import yaml

from .target import Platform

INFO_FILENAMES: Mapping[Platform, str] = {
    Platform.AWS: "efs-storage-info.txt",
    Platform.AZURE: "nfs-storage-info.txt",
    Platform.GCP: "filestore-storage-info.txt",
}

_TITLES: Mapping[Platform, str] = {
    Platform.AWS: "Harmony Shared Storage: AWS EFS",
    Platform.AZURE: "Harmony Shared Storage: Azure Files NFS",
    Platform.GCP: "Harmony Shared Storage: Google Filestore",
}


def info_path(work_dir: Path, platform: Platform) -> Path:
    """Return the info file location for *platform* inside *work_dir*."""
    return work_dir / INFO_FILENAMES[platform]


@dataclass(slots=True)
class StorageInfo:
    """Human readable summary of a provisioned storage resource."""

    platform: Platform
    fields: Mapping[str, str]
    helm_values: Mapping[str, object]
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def render(self) -> str:
        """Return the file body."""
        title = _TITLES[self.platform]
        lines = [title, "=" * len(title), f"Created: {self.created_at.isoformat()}"]
        width = max((len(key) for key in self.fields), default=0)
        for key, value in self.fields.items():
            lines.append(f"{key + ':':<{width + 1}} {value}")
        lines.append("")
        lines.append("Helm values (add to your values.yaml):")
        snippet = yaml.safe_dump(dict(self.helm_values), default_flow_style=False, sort_keys=False)
        lines.extend(f"  {line}" for line in snippet.rstrip().splitlines())
        lines.append("")
        lines.append(f"Cleanup: harmonyctl cleanup-storage --platform {self.platform.value}")
        return "\n".join(lines) + "\n"

    def write(self, work_dir: Path) -> Path:
        """Write the info file into *work_dir* and return its path."""
        path = info_path(work_dir, self.platform)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(self.render(), encoding="utf-8")
        return path


def helm_values(platform: Platform, storage: Mapping[str, str]) -> dict[str, object]:
    """Return the Helm values fragment pointing the charts at *storage*."""
    key = {Platform.AWS: "efs", Platform.AZURE: "nfs", Platform.GCP: "filestore"}[platform]
    return {
        "global": {"platform": platform.value},
        "storageClass": {key: dict(storage)},
    }


__all__ = ["INFO_FILENAMES", "StorageInfo", "helm_values", "info_path"]
