"""Tests for the storage info file and Helm values fragment."""
from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path

import yaml

from harmonyctl.info_file import StorageInfo, helm_values, info_path
from harmonyctl.target import Platform


def test_helm_values_use_platform_specific_key() -> None:
    assert helm_values(Platform.AWS, {"fileSystemId": "fs-123"}) == {
        "global": {"platform": "aws"},
        "storageClass": {"efs": {"fileSystemId": "fs-123"}},
    }
    assert "filestore" in helm_values(Platform.GCP, {})["storageClass"]  # type: ignore[operator]


def test_info_file_renders_fields_and_values(tmp_path: Path) -> None:
    values = helm_values(Platform.AZURE, {"storageAccountName": "acct", "shareName": "share"})
    info = StorageInfo(
        Platform.AZURE,
        {"Cluster": "aks-1", "Storage Account": "acct"},
        values,
        created_at=datetime(2026, 1, 2, 3, 4, 5, tzinfo=UTC),
    )

    path = info.write(tmp_path / "work")

    assert path == info_path(tmp_path / "work", Platform.AZURE)
    assert path.name == "nfs-storage-info.txt"
    text = path.read_text(encoding="utf-8")
    lines = text.splitlines()
    assert lines[0] == "Harmony Shared Storage: Azure Files NFS"
    assert lines[2] == "Created: 2026-01-02T03:04:05+00:00"
    assert "Cluster:         aks-1" in lines
    assert "Storage Account: acct" in lines
    assert lines[-1] == "Cleanup: harmonyctl cleanup-storage --platform azure"

    start = lines.index("Helm values (add to your values.yaml):") + 1
    snippet = "\n".join(line[2:] for line in lines[start : len(lines) - 2])
    assert yaml.safe_load(snippet) == values
