"""Google Filestore storage workflow for GKE clusters."""
from __future__ import annotations

import re
from collections.abc import Mapping

from ..errors import (
    Condition,
    NotAuthenticatedError,
    ProviderAPIError,
    ResourceNotFoundError,
)
from ..prompts import Chooser, Confirmer
from ..target import ClusterTarget, Platform
from .base import (
    CleanupResult,
    DriverResult,
    EnvironmentResult,
    ProvisionResult,
    StorageProvider,
)
from .utils import dig, dig_str, mappings

NFS_DRIVER_INSTALL_URL = (
    "https://raw.githubusercontent.com/kubernetes-csi/csi-driver-nfs"
    "/master/deploy/install-driver.sh"
)
NFS_DRIVER_NAME = "nfs.csi.k8s.io"
NFS_NODE_SELECTOR = "app=csi-nfs-node"
PURPOSE_LABEL = "harmony-config"
_GONE_STATES = frozenset({"DELETING"})

_ZONE_PATTERN = re.compile(r"-[a-z]$")


def derive_zone(location: str, zones: list[str]) -> str:
    """Return a zone for *location*: itself when already zonal, else the first known zone."""
    if _ZONE_PATTERN.search(location):
        return location
    if zones:
        return sorted(zones)[0]
    return f"{location}-c"


class GcpFilestoreProvider(StorageProvider):
    """Provision a Filestore instance on the GKE cluster's VPC network."""

    platform = Platform.GCP
    cli_tool = "gcloud"
    csi_driver_name = NFS_DRIVER_NAME
    auth_hint = "Run 'gcloud auth login' and try again."

    @property
    def required_tools(self) -> tuple[str, ...]:
        """The driver install also needs curl and bash."""
        return (self.cli_tool, "kubectl", "curl", "bash")

    def auth_probe(self) -> list[str]:
        """Return the command listing active gcloud accounts."""
        return [
            self.cli, "auth", "list",
            "--filter=status:ACTIVE", "--format=value(account)",
        ]

    def ensure_authenticated(self) -> None:
        # ``gcloud auth list`` exits 0 even without an active account.
        account = self.runner.output(self.auth_probe(), check=False)
        if not account:
            raise NotAuthenticatedError("gcloud CLI is not authenticated.", hint=self.auth_hint)
        active = account.splitlines()[0]
        self.reporter.step("auth.check", f"gcloud CLI is authenticated as {active}")

    # ------------------------------------------------------------------
    # Environment
    def resolve_environment(
        self,
        chooser: Chooser,
        *,
        cluster: str | None = None,
    ) -> EnvironmentResult:
        """Pick the project and GKE cluster, and derive a Filestore zone."""
        self.ensure_authenticated()
        project = self.runner.output([self.cli, "config", "get-value", "project"], check=False)
        if not project or project == "(unset)":
            projects = mappings(
                self.runner.json([self.cli, "projects", "list", "--format=json"], check=False)
            )
            ids = [str(dig(entry, "projectId")) for entry in projects if dig(entry, "projectId")]
            if not ids:
                raise ResourceNotFoundError(
                    "No GCP projects are visible to the active account.",
                    hint="Run 'gcloud config set project PROJECT_ID'.",
                )
            project = chooser.choose("project", ids)
            self.runner.run([self.cli, "config", "set", "project", project])
        self.reporter.step("project.select", f"Using project: {project}")

        clusters = mappings(
            self.runner.json(
                [
                    self.cli, "container", "clusters", "list",
                    f"--project={project}",
                    "--format=json",
                ],
                check=False,
            )
        )
        locations = {
            str(dig(entry, "name")): str(dig(entry, "location") or dig(entry, "zone") or "")
            for entry in clusters
            if dig(entry, "name")
        }
        if not locations:
            raise ResourceNotFoundError(f"No GKE clusters found in project {project}.")
        if cluster is None:
            cluster = chooser.choose("cluster", sorted(locations))
        if cluster not in locations:
            raise ResourceNotFoundError(f"GKE cluster '{cluster}' not found in project {project}.")
        location = locations[cluster]
        self.reporter.step("cluster.select", f"Selected cluster: {cluster} ({location})")

        zone = derive_zone(location, self._region_zones(project, location))
        variables = {
            "CLUSTER_NAME": cluster,
            "CLUSTER_LOCATION": location,
            "CLUSTER_ZONE": zone,
            "PROJECT_ID": project,
        }
        return EnvironmentResult(platform=self.platform, variables=variables)

    def _region_zones(self, project: str, location: str) -> list[str]:
        if _ZONE_PATTERN.search(location):
            return []
        data = self.runner.json(
            [
                self.cli, "compute", "zones", "list",
                f"--project={project}",
                f"--filter=region:{location}",
                "--format=json",
            ],
            check=False,
        )
        return [str(dig(zone, "name")) for zone in mappings(data) if dig(zone, "name")]

    def configure_kubectl(self, variables: Mapping[str, str]) -> None:
        """Run gcloud container clusters get-credentials for the cluster."""
        result = self.runner.run(
            [
                self.cli, "container", "clusters", "get-credentials", variables["CLUSTER_NAME"],
                f"--location={variables['CLUSTER_LOCATION']}",
                f"--project={variables['PROJECT_ID']}",
            ],
            check=False,
        )
        if result.returncode == 0:
            self.reporter.step("kubectl.configure", "kubectl context updated")
        else:
            self.reporter.warn("kubectl.configure", "Could not update kubectl context")

    # ------------------------------------------------------------------
    # Driver
    def install_driver(
        self,
        target: ClusterTarget,
        *,
        timeout: float | None = None,
    ) -> DriverResult:
        """Install csi-driver-nfs and wait for its node pods."""
        try:
            script = self.runner.output([self.config.tools.curl, "-fsSL", NFS_DRIVER_INSTALL_URL])
            self.runner.run(
                [self.config.tools.bash, "-s", "master", "--"],
                input_text=script,
                error_prefix="NFS CSI driver install",
            )
        except ProviderAPIError as exc:
            self.reporter.warn(
                "driver.install", str(exc), condition=Condition.DEGRADED_INSTALL
            )
        else:
            self.reporter.step("driver.install", "Applied NFS CSI driver manifests")

        nodes = self.kubectl.node_count()
        if not nodes:
            return self.degraded(
                "Cluster has no schedulable nodes; the NFS node pods will start once nodes join."
            )

        outcome = self.poll(
            "nfs_node_pods",
            lambda: self.kubectl.pod_counts("kube-system", NFS_NODE_SELECTOR).running >= nodes,
            timeout=timeout,
            label="NFS CSI node pods",
        )
        if not outcome.ready:
            return self.degraded(
                f"NFS CSI node pods not running on all {nodes} node(s) "
                f"after {outcome.waited_seconds:g}s."
            )
        self.reporter.step("driver.pods", f"NFS CSI node pods running on {nodes} node(s)")

        if not self.kubectl.csi_driver_exists(NFS_DRIVER_NAME):
            return self.degraded(f"CSIDriver {NFS_DRIVER_NAME} is not registered.")
        self.reporter.step("driver.registered", f"CSIDriver {NFS_DRIVER_NAME} registered")
        return DriverResult(ready=True, detail="nfs csi running")

    # ------------------------------------------------------------------
    # Provision
    def provision(self, target: ClusterTarget) -> ProvisionResult:
        """Create or reuse the Filestore instance on the cluster network."""
        storage = self.config.storage
        instance = self._find_instance(target)
        created = instance is None
        if instance is None:
            network = self._cluster_network(target)
            self.reporter.info(
                f"Creating Filestore instance {storage.filestore_name} "
                "(this usually takes several minutes)..."
            )
            self.runner.run(
                [
                    *self._filestore(target, "create", storage.filestore_name),
                    f"--tier={storage.filestore_tier}",
                    f"--file-share=name={storage.filestore_share},"
                    f"capacity={storage.filestore_capacity}",
                    f"--network=name={network}",
                    "--description=Harmony shared configuration storage",
                    f"--labels=cluster={target.cluster_name},purpose={PURPOSE_LABEL}",
                ]
            )
            self.reporter.step(
                "filestore.create", f"Created Filestore instance {storage.filestore_name}"
            )
        else:
            self.reporter.step(
                "filestore.lookup",
                f"Filestore instance {storage.filestore_name} already exists",
                status="info",
            )

        details = self.runner.json(
            [*self._filestore(target, "describe", storage.filestore_name), "--format=json"]
        )
        ip_address = dig_str(details, "networks", 0, "ipAddresses", 0)
        if ip_address is None:
            raise ProviderAPIError(
                f"Filestore instance {storage.filestore_name} has no IP address.",
                hint="Check the instance state with 'gcloud filestore instances describe'.",
            )
        share = dig_str(details, "fileShares", 0, "name") or storage.filestore_share
        fields = {
            "Cluster": target.cluster_name,
            "Project": str(target.project_id),
            "Location": str(target.location),
            "Zone": str(target.zone),
            "Instance": storage.filestore_name,
            "IP Address": ip_address,
            "Share": share,
            "Tier": dig_str(details, "tier") or storage.filestore_tier,
            "Capacity": storage.filestore_capacity,
        }
        path, values = self.write_info(fields, {"ip": ip_address, "share": share})
        return ProvisionResult(
            created=created,
            resource_id=storage.filestore_name,
            fields=fields,
            helm_values=values,
            info_file=path,
        )

    def _cluster_network(self, target: ClusterTarget) -> str:
        cluster = self.runner.json(
            [
                self.cli, "container", "clusters", "describe", target.cluster_name,
                f"--location={target.location}",
                f"--project={target.project_id}",
                "--format=json",
            ],
            check=False,
        )
        if cluster is None:
            raise ResourceNotFoundError(
                f"GKE cluster '{target.cluster_name}' not found in {target.location}.",
                hint="Run 'harmonyctl setup-env --platform gcp' to select a cluster.",
            )
        network = dig_str(cluster, "network") or "default"
        return network.rsplit("/", 1)[-1]

    # ------------------------------------------------------------------
    # Deprovision
    def deprovision(self, target: ClusterTarget, confirmer: Confirmer) -> CleanupResult:
        """Offer to delete claims on the instance, then delete the instance itself."""
        storage = self.config.storage
        instance = self._find_instance(target)
        if instance is None:
            self.reporter.step(
                "filestore.lookup",
                f"Filestore instance {storage.filestore_name} not found. Nothing to clean up.",
                status="info",
            )
            return CleanupResult(found=False)

        result = CleanupResult(found=True)
        self.reporter.step(
            "filestore.lookup",
            f"Found Filestore instance {storage.filestore_name} "
            f"(tier {dig_str(instance, 'tier') or 'unknown'}, "
            f"state {dig_str(instance, 'state') or 'unknown'})",
            status="info",
        )

        claims = self.kubectl.find_claims(storage.pvc_name)
        if claims is None:
            self.partial("pvc.lookup", "Cluster unreachable; skipped PersistentVolumeClaim cleanup")
        for claim in claims or []:
            label = f"{claim.namespace}/{claim.name}"
            if not confirmer.confirm(f"Delete PersistentVolumeClaim {label} ({claim.phase})?"):
                result.preserved.append(label)
                continue
            if self.kubectl.delete_claim(claim):
                result.removed.append(label)
                self.reporter.step("pvc.delete", f"Deleted PersistentVolumeClaim {label}")
            else:
                self.partial("pvc.delete", f"Could not delete PersistentVolumeClaim {label}")

        if not confirmer.confirm(
            f"Delete Filestore instance {storage.filestore_name}? "
            "All data on it will be permanently lost.",
            require_word="yes",
        ):
            result.preserved.append(storage.filestore_name)
            self.reporter.step(
                "filestore.keep",
                f"Kept Filestore instance {storage.filestore_name}",
                status="skipped",
            )
            return result

        self.runner.run(
            [*self._filestore(target, "delete", storage.filestore_name), "--quiet"]
        )
        result.storage_deleted = True
        result.removed.append(storage.filestore_name)
        self.reporter.step(
            "filestore.delete", f"Deleted Filestore instance {storage.filestore_name}"
        )
        self.remove_info(None, result)
        return result

    # ------------------------------------------------------------------
    def _filestore(self, target: ClusterTarget, action: str, name: str) -> list[str]:
        return [
            self.cli, "filestore", "instances", action, name,
            f"--location={target.zone}",
            f"--project={target.project_id}",
        ]

    def _find_instance(self, target: ClusterTarget) -> Mapping[str, object] | None:
        data = self.runner.json(
            [
                self.cli, "filestore", "instances", "list",
                f"--location={target.zone}",
                f"--project={target.project_id}",
                "--format=json",
            ]
        )
        wanted = self.config.storage.filestore_name
        for entry in mappings(data):
            name = dig_str(entry, "name") or ""
            if name.rsplit("/", 1)[-1] != wanted:
                continue
            if dig(entry, "state") in _GONE_STATES:
                continue
            return entry
        return None


__all__ = ["GcpFilestoreProvider", "derive_zone"]
