"""Tests for the locking primitives."""
from __future__ import annotations

import json
import os
from pathlib import Path

import pytest

from harmonyctl import locking
from harmonyctl.locking import LockManager, LockTimeoutError


def test_resource_lock_creates_metadata(tmp_path: Path) -> None:
    """Acquiring a lock writes metadata and releases cleanly."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    lock_path = tmp_path / "run" / "aws-alpha.lock"
    with manager.resource_lock("aws-alpha") as handle:
        assert handle.wait_ms >= 0
        assert handle.path == lock_path
        data = json.loads(lock_path.read_text(encoding="utf-8"))
        assert data["pid"] == os.getpid()
        assert data["path"] == str(lock_path)
        assert "acquired_at" in data

    # Lockfile persists for diagnostics but no longer holds the lock.
    with manager.resource_lock("aws-alpha", timeout=0.2):
        pass


def test_resource_lock_timeout_names_holder(tmp_path: Path) -> None:
    """Second acquisition times out while the first lock is held."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    with manager.resource_lock("gcp-beta"):
        with pytest.raises(LockTimeoutError) as excinfo:
            with manager.resource_lock("gcp-beta", timeout=0.1):
                pass

    assert excinfo.value.holder == f"pid {os.getpid()}"
    assert "gcp-beta.lock" in str(excinfo.value)


def test_lock_names_are_flattened(tmp_path: Path) -> None:
    manager = LockManager(tmp_path / "run")

    assert manager.lock_path("azure-team/alpha") == tmp_path / "run" / "azure-team-alpha.lock"


def test_distinct_clusters_do_not_contend(tmp_path: Path) -> None:
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    with manager.mutate_resources(["aws-alpha"]):
        with manager.mutate_resources(["aws-beta"], timeout=0.1) as bundle:
            assert len(bundle.handles) == 1


def test_mutate_resources_sorts_and_deduplicates(tmp_path: Path) -> None:
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    with manager.mutate_resources(["gcp-b", "azure-a", "gcp-b"]) as bundle:
        names = [handle.path.name for handle in bundle.handles]
        assert bundle.wait_ms >= 0

    assert names == ["azure-a.lock", "gcp-b.lock"]


def test_platform_lock_backend_reports_contention(tmp_path: Path) -> None:
    """The host lock primitive signals a held lock with ``BlockingIOError``."""
    path = tmp_path / "raw.lock"
    with path.open("a+", encoding="utf-8") as first, path.open("a+", encoding="utf-8") as second:
        locking._try_lock(first)
        with pytest.raises(BlockingIOError):
            locking._try_lock(second)
        locking._unlock(first)
        locking._try_lock(second)
        locking._unlock(second)
