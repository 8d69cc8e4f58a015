"""Thin ``kubectl`` client for the cluster-side checks."""
from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass

import yaml

from ..runner import CommandRunner
from .utils import dig, mappings


@dataclass(slots=True, frozen=True)
class PodCounts:
    """Pods matching a selector and how many of them are running."""

    total: int
    running: int


@dataclass(slots=True, frozen=True)
class ClaimRef:
    """A persistent volume claim located in the cluster."""

    namespace: str
    name: str
    phase: str


@dataclass(slots=True)
class KubectlClient:
    """Query and mutate the current ``kubectl`` context."""

    runner: CommandRunner
    binary: str = "kubectl"

    def pod_counts(self, namespace: str, selector: str) -> PodCounts:
        """Return pod counts for *selector* in *namespace* (zero when unreachable)."""
        data = self._json(["get", "pods", "-n", namespace, "-l", selector, "-o", "json"])
        items = mappings(data, "items")
        running = sum(1 for item in items if dig(item, "status", "phase") == "Running")
        return PodCounts(total=len(items), running=running)

    def node_count(self) -> int | None:
        """Return the number of nodes, or ``None`` when the cluster is unreachable."""
        data = self._json(["get", "nodes", "-o", "json"])
        if data is None:
            return None
        return len(mappings(data, "items"))

    def storage_classes(self) -> list[Mapping[str, object]]:
        """Return all StorageClass objects."""
        return mappings(self._json(["get", "storageclass", "-o", "json"]), "items")

    def csi_driver_exists(self, name: str) -> bool:
        """Return ``True`` when CSIDriver *name* is registered."""
        return self.runner.succeeds([self.binary, "get", "csidriver", name])

    def apply_manifest(self, manifest: Mapping[str, object]) -> None:
        """Apply *manifest* via stdin."""
        self.runner.run(
            [self.binary, "apply", "-f", "-"],
            input_text=yaml.safe_dump(dict(manifest), sort_keys=False),
            error_prefix="kubectl apply",
        )

    def find_claims(self, name: str) -> list[ClaimRef] | None:
        """Return claims called *name* in any namespace, or ``None`` if unreachable."""
        data = self._json(["get", "pvc", "--all-namespaces", "-o", "json"])
        if data is None:
            return None
        claims: list[ClaimRef] = []
        for item in mappings(data, "items"):
            if dig(item, "metadata", "name") != name:
                continue
            claims.append(
                ClaimRef(
                    namespace=str(dig(item, "metadata", "namespace") or "default"),
                    name=name,
                    phase=str(dig(item, "status", "phase") or "Unknown"),
                )
            )
        return claims

    def delete_claim(self, claim: ClaimRef) -> bool:
        """Delete *claim*; return ``True`` on success."""
        return self.runner.succeeds(
            [self.binary, "delete", "pvc", claim.name, "-n", claim.namespace]
        )

    def claim_phase(self, namespace: str, name: str) -> str | None:
        """Return the phase of claim *name*, or ``None`` when it does not exist."""
        data = self._json(["get", "pvc", name, "-n", namespace, "-o", "json"])
        if data is None:
            return None
        phase = dig(data, "status", "phase")
        return str(phase) if phase else None

    def cluster_reachable(self) -> bool:
        """Return ``True`` when the API server answers."""
        return self.runner.succeeds([self.binary, "cluster-info"])

    def current_context(self) -> str | None:
        """Return the active context name."""
        return self.runner.output([self.binary, "config", "current-context"], check=False) or None

    def server_version(self) -> str | None:
        """Return the API server git version, when reachable."""
        data = self._json(["version", "-o", "json"])
        version = dig(data, "serverVersion", "gitVersion")
        return str(version) if version else None

    def client_version(self) -> str | None:
        """Return the kubectl client version."""
        data = self._json(["version", "--client", "-o", "json"])
        version = dig(data, "clientVersion", "gitVersion")
        return str(version) if version else None

    def namespace_exists(self, namespace: str) -> bool:
        """Return ``True`` when *namespace* exists."""
        return self.runner.succeeds([self.binary, "get", "namespace", namespace])

    def secret_exists(self, namespace: str, name: str) -> bool:
        """Return ``True`` when secret *name* exists in *namespace*."""
        return self.runner.succeeds([self.binary, "get", "secret", name, "-n", namespace])

    def metrics_available(self) -> bool:
        """Return ``True`` when ``kubectl top nodes`` works."""
        return self.runner.succeeds([self.binary, "top", "nodes"])

    def _json(self, args: list[str]) -> object | None:
        return self.runner.json([self.binary, *args], check=False)


__all__ = ["ClaimRef", "KubectlClient", "PodCounts"]
