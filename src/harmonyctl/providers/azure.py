"""Azure Files NFS storage workflow for AKS clusters.

The storage account lives in the cluster's node resource group so the Azure
File CSI driver can reach it with the cluster identity. Network access is
default-deny with a VNet rule for the cluster subnet. Creating the NFS share
needs the account briefly opened to all networks; that window is announced
and always closed again in a ``finally`` block.
"""
from __future__ import annotations

import secrets
from collections.abc import Mapping
from dataclasses import dataclass

from ..errors import ProviderAPIError, ResourceNotFoundError
from ..prompts import Chooser, Confirmer
from ..target import ClusterTarget, Platform
from .base import (
    CleanupResult,
    DriverResult,
    EnvironmentResult,
    ProvisionResult,
    StorageProvider,
)
from .utils import as_list, dig, dig_str, mappings

CSI_NODE_SELECTOR = "app=csi-azurefile-node"
CSI_PROVISIONER = "file.csi.azure.com"
STORAGE_ENDPOINT_SERVICE = "Microsoft.Storage"
PURPOSE_TAG = "harmony-config"

NFS_STORAGE_CLASS: dict[str, object] = {
    "apiVersion": "storage.k8s.io/v1",
    "kind": "StorageClass",
    "metadata": {"name": "azurefile-nfs"},
    "provisioner": CSI_PROVISIONER,
    "parameters": {"protocol": "nfs", "skuName": "Premium_LRS"},
    "reclaimPolicy": "Delete",
    "volumeBindingMode": "Immediate",
    "allowVolumeExpansion": True,
    "mountOptions": ["nfsvers=4.1"],
}


@dataclass(slots=True, frozen=True)
class SubnetRef:
    """A VNet subnet addressed by resource group, VNet and subnet name."""

    id: str
    resource_group: str
    vnet: str
    name: str


@dataclass(slots=True, frozen=True)
class StorageAccountRef:
    """A storage account located by the prefix lookup."""

    name: str
    resource_group: str


def parse_subnet_id(subnet_id: str | None) -> SubnetRef | None:
    """Split ``/subscriptions/…/resourceGroups/RG/…/virtualNetworks/VNET/subnets/SUBNET``."""
    if not subnet_id:
        return None
    parts = subnet_id.strip().split("/")
    if len(parts) < 11 or parts[3].lower() != "resourcegroups" or parts[9].lower() != "subnets":
        return None
    return SubnetRef(id=subnet_id.strip(), resource_group=parts[4], vnet=parts[8], name=parts[10])


class AzureFilesProvider(StorageProvider):
    """Provision an Azure Files NFS share reachable from the AKS node subnet."""

    platform = Platform.AZURE
    cli_tool = "az"
    csi_driver_name = CSI_PROVISIONER
    auth_hint = "Run 'az login' and try again."

    def auth_probe(self) -> list[str]:
        """Return the az account show probe."""
        return [self.cli, "account", "show", "--output", "json"]

    # ------------------------------------------------------------------
    # Environment
    def resolve_environment(
        self,
        chooser: Chooser,
        *,
        cluster: str | None = None,
    ) -> EnvironmentResult:
        """Pick an AKS cluster and read its resource groups and location."""
        self.ensure_authenticated()
        self._configure_extensions()
        clusters = mappings(self.runner.json([self.cli, "aks", "list", "--output", "json"]))
        by_name = {str(dig(entry, "name")): entry for entry in clusters if dig(entry, "name")}
        if not by_name:
            raise ResourceNotFoundError(
                "No AKS clusters found in the current subscription.",
                hint="Select another subscription with 'az account set --subscription ID'.",
            )
        if cluster is None:
            cluster = chooser.choose("cluster", sorted(by_name))
        entry = by_name.get(cluster)
        if entry is None:
            raise ResourceNotFoundError(f"AKS cluster '{cluster}' not found.")
        self.reporter.step("cluster.select", f"Selected cluster: {cluster}")

        variables = {
            "CLUSTER_NAME": cluster,
            "RESOURCE_GROUP": dig_str(entry, "resourceGroup") or "",
            "LOCATION": dig_str(entry, "location") or "",
            "NODE_RESOURCE_GROUP": dig_str(entry, "nodeResourceGroup") or "",
        }
        return EnvironmentResult(platform=self.platform, variables=variables)

    def configure_kubectl(self, variables: Mapping[str, str]) -> None:
        """Run az aks get-credentials for the resolved cluster."""
        result = self.runner.run(
            [
                self.cli, "aks", "get-credentials",
                "--resource-group", variables["RESOURCE_GROUP"],
                "--name", variables["CLUSTER_NAME"],
                "--overwrite-existing",
            ],
            check=False,
        )
        if result.returncode == 0:
            self.reporter.step("kubectl.configure", "kubectl context updated")
        else:
            self.reporter.warn("kubectl.configure", "Could not update kubectl context")

    def _configure_extensions(self) -> None:
        for setting in (
            "extension.use_dynamic_install=yes_without_prompt",
            "extension.dynamic_install_allow_preview=true",
        ):
            if not self.runner.succeeds([self.cli, "config", "set", setting]):
                self.reporter.info(f"Could not set az config {setting}")

    # ------------------------------------------------------------------
    # Driver
    def install_driver(
        self,
        target: ClusterTarget,
        *,
        timeout: float | None = None,
    ) -> DriverResult:
        """Wait for the Azure File CSI pods and ensure an NFS StorageClass exists."""
        self._configure_extensions()
        counts = self.kubectl.pod_counts("kube-system", CSI_NODE_SELECTOR)
        if counts.total == 0:
            self.reporter.info("Azure File CSI node pods are not visible yet")

        outcome = self.poll(
            "azure_file_pods",
            lambda: self.kubectl.pod_counts("kube-system", CSI_NODE_SELECTOR).running > 0,
            timeout=timeout,
            label="Azure File CSI pods",
        )
        degraded: DriverResult | None = None
        if outcome.ready:
            self.reporter.step("driver.pods", "Azure File CSI driver pods are running")
        else:
            degraded = self.degraded(
                f"Azure File CSI driver pods not running after {outcome.waited_seconds:g}s."
            )

        classes = [
            str(dig(sc, "metadata", "name"))
            for sc in self.kubectl.storage_classes()
            if dig(sc, "provisioner") == CSI_PROVISIONER
        ]
        if classes:
            self.reporter.step("storageclass.check", f"Storage classes: {', '.join(classes)}")
        else:
            try:
                self.kubectl.apply_manifest(NFS_STORAGE_CLASS)
            except ProviderAPIError as exc:
                return self.degraded(f"Could not create StorageClass azurefile-nfs: {exc}")
            self.reporter.step("storageclass.create", "Created StorageClass azurefile-nfs")

        if degraded is not None:
            return degraded
        return DriverResult(ready=True, detail="azure file csi running")

    # ------------------------------------------------------------------
    # Provision
    def provision(self, target: ClusterTarget) -> ProvisionResult:
        """Create or reuse the prefixed storage account and its NFS share."""
        self._configure_extensions()
        cluster = self._show_cluster(target, required=True)
        node_rg = target.node_resource_group or dig_str(cluster, "nodeResourceGroup")
        if node_rg is None:
            raise ResourceNotFoundError(
                f"Could not determine the node resource group of '{target.cluster_name}'.",
                hint="export NODE_RESOURCE_GROUP=MC_<rg>_<cluster>_<location>",
            )

        existing = self._find_accounts(target, node_rg)
        if existing:
            account = existing[0]
            self.reporter.step(
                "account.lookup",
                f"Storage account '{account.name}' already exists in {account.resource_group}",
                status="info",
            )
            if self.config.storage.file_share_name in self._share_names(account):
                self.reporter.step(
                    "share.lookup",
                    f"File share '{self.config.storage.file_share_name}' already exists",
                    status="info",
                )
            else:
                self._create_share(account)
            return self._finish(target, account, None, created=False)

        subnet = self._cluster_subnet(cluster, node_rg)
        account = StorageAccountRef(
            name=f"{self.config.storage.storage_account_prefix}{secrets.token_hex(3)}",
            resource_group=node_rg,
        )
        self.runner.run(
            [
                self.cli, "storage", "account", "create",
                "--name", account.name,
                "--resource-group", account.resource_group,
                "--location", str(target.location),
                "--sku", "Premium_LRS",
                "--kind", "FileStorage",
                "--enable-large-file-share",
                "--default-action", "Deny",
                "--https-only", "false",
                "--tags",
                f"cluster={target.cluster_name}",
                f"purpose={PURPOSE_TAG}",
                f"origin-rg={target.resource_group}",
                "--output", "json",
            ]
        )
        self.reporter.step("account.create", f"Created storage account {account.name}")

        def provisioned() -> bool:
            state = dig_str(self._show_account(account), "provisioningState")
            if state == "Failed":
                raise ProviderAPIError(f"Storage account {account.name} failed to provision.")
            return state == "Succeeded"

        if self.poll("storage_account_ready", provisioned, label="storage account").ready:
            self.reporter.step("account.ready", f"{account.name} is ready")
        else:
            self.reporter.warn("account.ready", f"{account.name} is still provisioning; continuing")

        if subnet is not None:
            self._allow_subnet(account, subnet)
        else:
            self.reporter.security_notice(
                f"No cluster subnet found; {account.name} will accept traffic from all networks."
            )
            self._set_default_action(account, "Allow")

        self._create_share(account)
        return self._finish(target, account, subnet, created=True)

    def _finish(
        self,
        target: ClusterTarget,
        account: StorageAccountRef,
        subnet: SubnetRef | None,
        *,
        created: bool,
    ) -> ProvisionResult:
        share = self.config.storage.file_share_name
        endpoint = dig_str(self._show_account(account), "primaryEndpoints", "file") or "unknown"
        fields = {
            "Cluster": target.cluster_name,
            "Resource Group": str(target.resource_group),
            "Location": str(target.location),
            "Storage Account": account.name,
            "Account Resource Group": account.resource_group,
            "File Share": share,
            "Endpoint": endpoint,
        }
        if subnet is not None:
            fields["Subnet"] = subnet.id
        path, values = self.write_info(
            fields, {"storageAccountName": account.name, "shareName": share}
        )
        return ProvisionResult(
            created=created,
            resource_id=account.name,
            fields=fields,
            helm_values=values,
            info_file=path,
        )

    def _allow_subnet(self, account: StorageAccountRef, subnet: SubnetRef) -> None:
        endpoints = self._service_endpoints(subnet)
        if STORAGE_ENDPOINT_SERVICE in endpoints:
            self.reporter.step(
                "subnet.endpoint", "Storage service endpoint already enabled", status="info"
            )
        elif self.runner.succeeds(
            [
                *self._subnet_args("update", subnet),
                "--service-endpoints", *endpoints, STORAGE_ENDPOINT_SERVICE,
                "--output", "json",
            ]
        ):
            self.reporter.step(
                "subnet.endpoint", f"Enabled {STORAGE_ENDPOINT_SERVICE} on {subnet.name}"
            )
        else:
            self.reporter.warn(
                "subnet.endpoint", f"Could not enable {STORAGE_ENDPOINT_SERVICE} endpoint"
            )

        if not self._add_network_rule(account, subnet.id):
            shown = self.runner.json(
                [*self._subnet_args("show", subnet), "--output", "json"], check=False
            )
            verified = dig_str(shown, "id")
            if verified is None or not self._add_network_rule(account, verified):
                self.reporter.warn("account.network_rule", "Could not add the subnet network rule")

        rules = as_list(self._show_account(account), "networkRuleSet", "virtualNetworkRules")
        if rules:
            self.reporter.step("account.network_rule", f"{len(rules)} network rule(s) configured")
        else:
            self.reporter.warn(
                "account.network_rule",
                "No network rules found; pods may not be able to mount the share. Add one with: "
                f"az storage account network-rule add --resource-group {account.resource_group} "
                f"--account-name {account.name} --subnet {subnet.id}",
            )

    def _add_network_rule(self, account: StorageAccountRef, subnet_id: str) -> bool:
        return self.runner.succeeds(
            [
                self.cli, "storage", "account", "network-rule", "add",
                "--resource-group", account.resource_group,
                "--account-name", account.name,
                "--subnet", subnet_id,
                "--output", "json",
            ]
        )

    def _create_share(self, account: StorageAccountRef) -> None:
        share = self.config.storage.file_share_name
        command = [
            self.cli, "storage", "share-rm", "create",
            "--resource-group", account.resource_group,
            "--storage-account", account.name,
            "--name", share,
            "--quota", str(self.config.storage.file_share_quota_gib),
            "--enabled-protocols", "NFS",
            "--output", "json",
        ]
        default_action = dig_str(self._show_account(account), "networkRuleSet", "defaultAction")
        if default_action != "Deny":
            self.runner.run(command)
            self.reporter.step("share.create", f"Created NFS share {share}")
            return

        self.reporter.security_notice(
            f"Storage account {account.name} will accept traffic from ALL networks while the "
            f"share is created (about {self.config.delays.network_propagation:g}s). "
            "Access is restored to Deny afterwards."
        )
        self._set_default_action(account, "Allow")
        try:
            self.pause(self.config.delays.network_propagation, "network access propagation")
            self.runner.run(command)
            self.reporter.step("share.create", f"Created NFS share {share}")
        finally:
            self._set_default_action(account, "Deny")
            self.reporter.step(
                "account.restrict", f"Restored default action Deny on {account.name}"
            )

    # ------------------------------------------------------------------
    # Deprovision
    def deprovision(self, target: ClusterTarget, confirmer: Confirmer) -> CleanupResult:
        """Delete or lock down the storage accounts, then the subnet service endpoint."""
        self._configure_extensions()
        cluster = self._show_cluster(target, required=False)
        if cluster is None:
            self.partial(
                "cluster.lookup",
                f"Cluster '{target.cluster_name}' not found; cleaning up what can be resolved",
            )
        node_rg = target.node_resource_group or dig_str(cluster, "nodeResourceGroup")
        accounts = self._find_accounts(target, node_rg)
        if not accounts:
            self.reporter.step(
                "account.lookup",
                "No Harmony storage accounts found. Nothing to clean up.",
                status="info",
            )
            return CleanupResult(found=False)

        result = CleanupResult(found=True)
        for account in accounts:
            self.reporter.step(
                "account.lookup",
                f"Found storage account {account.name} in {account.resource_group}",
                status="info",
            )
        delete = confirmer.confirm(
            f"Delete {len(accounts)} storage account(s) and every file share in them? "
            "All data will be permanently lost."
        )
        for account in accounts:
            if delete:
                for share in self._share_names(account):
                    removed = self.runner.succeeds(
                        [
                            self.cli, "storage", "share-rm", "delete",
                            "--resource-group", account.resource_group,
                            "--storage-account", account.name,
                            "--name", share,
                            "--delete-snapshots", "include",
                            "--yes",
                        ]
                    )
                    if removed:
                        result.removed.append(f"{account.name}/{share}")
                        self.reporter.step("share.delete", f"Deleted file share {share}")
                    else:
                        self.partial("share.delete", f"Could not delete file share {share}")
                self._remove_network_rules(account)
                self.runner.run(
                    [
                        self.cli, "storage", "account", "delete",
                        "--name", account.name,
                        "--resource-group", account.resource_group,
                        "--yes",
                    ]
                )
                result.storage_deleted = True
                result.removed.append(account.name)
                self.reporter.step("account.delete", f"Deleted storage account {account.name}")
            else:
                self._remove_network_rules(account)
                shown = self._show_account(account)
                if dig_str(shown, "networkRuleSet", "defaultAction") != "Deny":
                    self._set_default_action(account, "Deny")
                result.preserved.append(account.name)
                self.reporter.step(
                    "account.keep",
                    f"Kept storage account {account.name} (network access denied)",
                    status="skipped",
                )

        self._remove_service_endpoint(cluster, node_rg, confirmer, result)
        self.remove_info(confirmer, result)
        return result

    def _remove_network_rules(self, account: StorageAccountRef) -> None:
        rules = mappings(self._show_account(account), "networkRuleSet", "virtualNetworkRules")
        for rule in rules:
            subnet_id = dig_str(rule, "virtualNetworkResourceId") or dig_str(rule, "id")
            if subnet_id is None:
                continue
            removed = self.runner.succeeds(
                [
                    self.cli, "storage", "account", "network-rule", "remove",
                    "--resource-group", account.resource_group,
                    "--account-name", account.name,
                    "--subnet", subnet_id,
                ]
            )
            if removed:
                self.reporter.step("account.network_rule", f"Removed network rule for {subnet_id}")
            else:
                self.partial(
                    "account.network_rule", f"Could not remove network rule for {subnet_id}"
                )

    def _remove_service_endpoint(
        self,
        cluster: object | None,
        node_rg: str | None,
        confirmer: Confirmer,
        result: CleanupResult,
    ) -> None:
        if cluster is None or node_rg is None:
            return
        subnet = self._cluster_subnet(cluster, node_rg)
        if subnet is None:
            return
        endpoints = self._service_endpoints(subnet)
        if STORAGE_ENDPOINT_SERVICE not in endpoints:
            return
        if not confirmer.confirm(
            f"Remove the {STORAGE_ENDPOINT_SERVICE} service endpoint from subnet {subnet.name}? "
            "Other resources on the subnet may rely on it."
        ):
            result.preserved.append(f"{subnet.name}:{STORAGE_ENDPOINT_SERVICE}")
            return
        remaining = [endpoint for endpoint in endpoints if endpoint != STORAGE_ENDPOINT_SERVICE]
        update = [*self._subnet_args("update", subnet), "--output", "json"]
        if remaining:
            update.extend(["--service-endpoints", *remaining])
        else:
            update.extend(["--remove", "serviceEndpoints"])
        if self.runner.succeeds(update):
            result.removed.append(f"{subnet.name}:{STORAGE_ENDPOINT_SERVICE}")
            self.reporter.step("subnet.endpoint", f"Removed {STORAGE_ENDPOINT_SERVICE} endpoint")
        else:
            self.partial("subnet.endpoint", f"Could not remove {STORAGE_ENDPOINT_SERVICE} endpoint")

    # ------------------------------------------------------------------
    # Lookups
    def _show_cluster(self, target: ClusterTarget, *, required: bool) -> object | None:
        cluster = self.runner.json(
            [
                self.cli, "aks", "show",
                "--resource-group", str(target.resource_group),
                "--name", target.cluster_name,
                "--output", "json",
            ],
            check=False,
        )
        if cluster is None and required:
            raise ResourceNotFoundError(
                f"AKS cluster '{target.cluster_name}' not found in {target.resource_group}.",
                hint="Run 'harmonyctl setup-env --platform azure' to select a cluster.",
            )
        return cluster

    def _cluster_subnet(self, cluster: object | None, node_rg: str) -> SubnetRef | None:
        subnet = parse_subnet_id(dig_str(cluster, "agentPoolProfiles", 0, "vnetSubnetId"))
        if subnet is not None:
            return subnet
        vnets = mappings(
            self.runner.json(
                [
                    self.cli, "network", "vnet", "list",
                    "--resource-group", node_rg,
                    "--output", "json",
                ],
                check=False,
            )
        )
        if not vnets:
            return None
        vnet = vnets[0]
        for candidate in mappings(vnet, "subnets"):
            name = dig_str(candidate, "name") or ""
            subnet_id = dig_str(candidate, "id")
            if "subnet" in name and subnet_id:
                return SubnetRef(
                    id=subnet_id,
                    resource_group=node_rg,
                    vnet=dig_str(vnet, "name") or "",
                    name=name,
                )
        return None

    def _subnet_args(self, action: str, subnet: SubnetRef) -> list[str]:
        return [
            self.cli, "network", "vnet", "subnet", action,
            "--resource-group", subnet.resource_group,
            "--vnet-name", subnet.vnet,
            "--name", subnet.name,
        ]

    def _service_endpoints(self, subnet: SubnetRef) -> list[str]:
        data = self.runner.json(
            [*self._subnet_args("show", subnet), "--output", "json"], check=False
        )
        return [
            str(dig(endpoint, "service"))
            for endpoint in mappings(data, "serviceEndpoints")
            if dig(endpoint, "service")
        ]

    def _find_accounts(self, target: ClusterTarget, node_rg: str | None) -> list[StorageAccountRef]:
        prefix = self.config.storage.storage_account_prefix
        groups = [str(target.resource_group)]
        if node_rg and node_rg not in groups:
            groups.append(node_rg)
        found: list[StorageAccountRef] = []
        for group in groups:
            try:
                data = self.runner.json(
                    [
                        self.cli, "storage", "account", "list",
                        "--resource-group", group,
                        "--output", "json",
                    ]
                )
            except ProviderAPIError as exc:
                if "ResourceGroupNotFound" not in exc.stderr:
                    raise
                self.reporter.info(f"Resource group {group} not found; skipped")
                continue
            for entry in mappings(data):
                name = dig_str(entry, "name")
                if name and name.startswith(prefix):
                    group_name = dig_str(entry, "resourceGroup") or group
                    found.append(StorageAccountRef(name=name, resource_group=group_name))
        return found

    def _show_account(self, account: StorageAccountRef) -> object | None:
        return self.runner.json(
            [
                self.cli, "storage", "account", "show",
                "--name", account.name,
                "--resource-group", account.resource_group,
                "--output", "json",
            ],
            check=False,
        )

    def _share_names(self, account: StorageAccountRef) -> list[str]:
        data = self.runner.json(
            [
                self.cli, "storage", "share-rm", "list",
                "--resource-group", account.resource_group,
                "--storage-account", account.name,
                "--output", "json",
            ],
            check=False,
        )
        return [str(dig(share, "name")) for share in mappings(data) if dig(share, "name")]

    def _set_default_action(self, account: StorageAccountRef, action: str) -> None:
        self.runner.run(
            [
                self.cli, "storage", "account", "update",
                "--name", account.name,
                "--resource-group", account.resource_group,
                "--default-action", action,
                "--output", "json",
            ]
        )


__all__ = ["AzureFilesProvider", "NFS_STORAGE_CLASS", "SubnetRef", "parse_subnet_id"]
