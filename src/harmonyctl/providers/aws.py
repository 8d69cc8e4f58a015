"""AWS EFS storage workflow for EKS clusters."""
from __future__ import annotations

import json
from collections.abc import Mapping

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

ADDON_NAME = "aws-efs-csi-driver"
ROLE_NAME = "AmazonEKS_EFS_CSI_DriverRole"
POLICY_ARN = "arn:aws:iam::aws:policy/service-role/AmazonEFSCSIDriverPolicy"
CONTROLLER_SERVICE_ACCOUNT = "system:serviceaccount:kube-system:efs-csi-controller-sa"
NFS_PORT = "2049"
PURPOSE_TAG = "harmony-config"

_ADDON_FAILED_STATES = frozenset({"DEGRADED", "CREATE_FAILED"})
_GONE_STATES = frozenset({"deleting", "deleted"})


def build_trust_policy(account_id: str, issuer_url: str) -> dict[str, object]:
    """Return the IRSA trust policy letting the EFS controller assume the driver role."""
    prefix = issuer_url.removeprefix("https://")
    return {
        "Version": "2012-10-17",
        "Statement": [
            {
                "Effect": "Allow",
                "Principal": {"Federated": f"arn:aws:iam::{account_id}:oidc-provider/{prefix}"},
                "Action": "sts:AssumeRoleWithWebIdentity",
                "Condition": {
                    "StringEquals": {
                        f"{prefix}:aud": "sts.amazonaws.com",
                        f"{prefix}:sub": CONTROLLER_SERVICE_ACCOUNT,
                    }
                },
            }
        ],
    }


class AwsEfsProvider(StorageProvider):
    """Provision an EFS file system reachable from every EKS node."""

    platform = Platform.AWS
    cli_tool = "aws"
    csi_driver_name = "efs.csi.aws.com"
    auth_hint = "Run 'aws configure' or 'aws sso login' and try again."

    def auth_probe(self) -> list[str]:
        """Return the STS identity probe."""
        return [self.cli, "sts", "get-caller-identity", "--output", "json"]

    # ------------------------------------------------------------------
    # Environment
    def resolve_environment(
        self,
        chooser: Chooser,
        *,
        cluster: str | None = None,
    ) -> EnvironmentResult:
        """Locate the EKS cluster and the region it lives in."""
        self.ensure_authenticated()
        listed = self.runner.json(
            [self.cli, "eks", "list-clusters", "--output", "json"], check=False
        )
        names = [str(name) for name in as_list(listed, "clusters")]
        if cluster is None:
            if not names:
                raise ResourceNotFoundError(
                    "No EKS clusters found in the default region.",
                    hint="Pass --cluster NAME or set AWS_REGION to the cluster's region.",
                )
            cluster = chooser.choose("cluster", names)
        self.reporter.step("cluster.select", f"Selected cluster: {cluster}")

        region = self._locate_region(cluster)
        self.reporter.step("cluster.region", f"Cluster {cluster} is in {region}")
        return EnvironmentResult(
            platform=self.platform,
            variables={"CLUSTER_NAME": cluster, "CLUSTER_REGION": region},
        )

    def _locate_region(self, cluster: str) -> str:
        for region in self.config.aws_discovery_regions:
            described = self.runner.json(
                [
                    self.cli, "eks", "describe-cluster",
                    "--name", cluster,
                    "--region", region,
                    "--output", "json",
                ],
                check=False,
            )
            if dig(described, "cluster") is not None:
                return region
        searched = ", ".join(self.config.aws_discovery_regions)
        raise ResourceNotFoundError(
            f"Cluster '{cluster}' was not found in any of: {searched}.",
            hint="Add the cluster's region to aws.discovery_regions in the config file.",
        )

    def configure_kubectl(self, variables: Mapping[str, str]) -> None:
        """Run aws eks update-kubeconfig for the resolved cluster."""
        result = self.runner.run(
            [
                self.cli, "eks", "update-kubeconfig",
                "--name", variables["CLUSTER_NAME"],
                "--region", variables["CLUSTER_REGION"],
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
        """Set up the IRSA role and the EFS CSI add-on, then wait for it to be active."""
        identity = self.runner.json(self.auth_probe())
        account_id = dig_str(identity, "Account")
        if account_id is None:
            raise ProviderAPIError("Could not determine the AWS account ID.")

        cluster = self._describe_cluster(target, required=True)
        issuer = dig_str(cluster, "identity", "oidc", "issuer")
        if issuer is None:
            raise ResourceNotFoundError(
                f"Cluster '{target.cluster_name}' has no OIDC issuer.",
                hint=(
                    "eksctl utils associate-iam-oidc-provider "
                    f"--cluster {target.cluster_name} --approve"
                ),
            )
        self.reporter.step("oidc.issuer", f"OIDC issuer: {issuer}")

        role_arn = self._ensure_driver_role(json.dumps(build_trust_policy(account_id, issuer)))
        self.pause(self.config.delays.iam_propagation, "IAM role propagation")
        self._ensure_addon(target, cluster, role_arn)

        def addon_active() -> bool:
            status = dig_str(self._describe_addon(target), "addon", "status")
            if status in _ADDON_FAILED_STATES:
                raise ProviderAPIError(
                    f"EFS CSI driver add-on is {status}.",
                    hint=(
                        f"aws eks describe-addon --cluster-name {target.cluster_name} "
                        f"--addon-name {ADDON_NAME} --region {target.region}"
                    ),
                )
            return status == "ACTIVE"

        outcome = self.poll("efs_addon_active", addon_active, timeout=timeout, label="add-on")
        if not outcome.ready:
            return self.degraded(
                f"Add-on {ADDON_NAME} did not become ACTIVE after {outcome.waited_seconds:g}s."
            )
        self.reporter.step("addon.active", f"Add-on {ADDON_NAME} is ACTIVE")
        return DriverResult(ready=True, detail=f"{ADDON_NAME} active")

    def _ensure_driver_role(self, policy_document: str) -> str:
        created = self.runner.run(
            [
                self.cli, "iam", "create-role",
                "--role-name", ROLE_NAME,
                "--assume-role-policy-document", policy_document,
                "--output", "json",
            ],
            check=False,
        )
        if created.returncode == 0:
            self.reporter.step("iam.role", f"Created IAM role {ROLE_NAME}")
        elif "EntityAlreadyExists" in (created.stderr or ""):
            self.runner.run(
                [
                    self.cli, "iam", "update-assume-role-policy",
                    "--role-name", ROLE_NAME,
                    "--policy-document", policy_document,
                ]
            )
            self.reporter.step("iam.role", f"IAM role {ROLE_NAME} exists; trust policy updated")
        else:
            raise ProviderAPIError(
                f"Failed to create IAM role {ROLE_NAME}: {(created.stderr or '').strip()}",
                command=created.args,
                returncode=created.returncode,
                stderr=created.stderr or "",
            )

        self.runner.run(
            [
                self.cli, "iam", "attach-role-policy",
                "--role-name", ROLE_NAME,
                "--policy-arn", POLICY_ARN,
            ]
        )
        self.reporter.step("iam.policy", "Attached AmazonEFSCSIDriverPolicy")
        role = self.runner.json(
            [self.cli, "iam", "get-role", "--role-name", ROLE_NAME, "--output", "json"]
        )
        role_arn = dig_str(role, "Role", "Arn")
        if role_arn is None:
            raise ProviderAPIError(f"Could not read the ARN of IAM role {ROLE_NAME}.")
        return role_arn

    def _ensure_addon(self, target: ClusterTarget, cluster: object, role_arn: str) -> None:
        current = dig_str(self._describe_addon(target), "addon", "addonVersion")
        common = [
            "--cluster-name", target.cluster_name,
            "--addon-name", ADDON_NAME,
            "--service-account-role-arn", role_arn,
            "--resolve-conflicts", "OVERWRITE",
            "--region", str(target.region),
            "--output", "json",
        ]
        if current is not None:
            self.runner.run(
                [self.cli, "eks", "update-addon", *common, "--addon-version", current]
            )
            self.reporter.step("addon.update", f"Updated add-on {ADDON_NAME} ({current})")
            return

        kubernetes_version = dig_str(cluster, "version")
        if kubernetes_version is None:
            raise ProviderAPIError("Could not determine the cluster Kubernetes version.")
        versions = self.runner.json(
            [
                self.cli, "eks", "describe-addon-versions",
                "--addon-name", ADDON_NAME,
                "--kubernetes-version", kubernetes_version,
                "--region", str(target.region),
                "--output", "json",
            ]
        )
        compatible = dig_str(versions, "addons", 0, "addonVersions", 0, "addonVersion")
        if compatible is None:
            raise ProviderAPIError(
                f"No {ADDON_NAME} version is compatible with Kubernetes {kubernetes_version}."
            )
        self.runner.run([self.cli, "eks", "create-addon", *common, "--addon-version", compatible])
        self.reporter.step("addon.create", f"Created add-on {ADDON_NAME} ({compatible})")

    def _describe_addon(self, target: ClusterTarget) -> object | None:
        return self.runner.json(
            [
                self.cli, "eks", "describe-addon",
                "--cluster-name", target.cluster_name,
                "--addon-name", ADDON_NAME,
                "--region", str(target.region),
                "--output", "json",
            ],
            check=False,
        )

    # ------------------------------------------------------------------
    # Provision
    def provision(self, target: ClusterTarget) -> ProvisionResult:
        """Create or reuse the EFS file system with NFS access and mount targets."""
        name = self.config.storage.efs_name
        cluster = self._describe_cluster(target, required=True)
        vpc_id = dig_str(cluster, "resourcesVpcConfig", "vpcId")
        existing = self._find_file_system(target)
        if existing is not None:
            self.reporter.step(
                "efs.lookup",
                f"EFS file system '{name}' already exists: {existing}",
                status="info",
            )
            return self._finish(target, existing, vpc_id, created=False)

        if vpc_id is None:
            raise ProviderAPIError(f"Cluster '{target.cluster_name}' reports no VPC.")
        subnet_ids = [str(subnet) for subnet in as_list(cluster, "resourcesVpcConfig", "subnetIds")]

        created = self.runner.json(
            [
                *self._aws(target, "efs", "create-file-system"),
                "--performance-mode", "generalPurpose",
                "--throughput-mode", "bursting",
                "--encrypted",
                "--tags",
                f"Key=Name,Value={name}",
                f"Key=Cluster,Value={target.cluster_name}",
                f"Key=Purpose,Value={PURPOSE_TAG}",
            ]
        )
        fs_id = dig_str(created, "FileSystemId")
        if fs_id is None:
            raise ProviderAPIError("create-file-system returned no FileSystemId.")
        self.reporter.step("efs.create", f"Created EFS file system {fs_id}")

        def available() -> bool:
            state = self._lifecycle_state(target, fs_id)
            if state == "error":
                raise ProviderAPIError(f"EFS file system {fs_id} entered the 'error' state.")
            return state == "available"

        if self.poll("efs_available", available, label="file system").ready:
            self.reporter.step("efs.available", f"{fs_id} is available")
        else:
            self.reporter.warn("efs.available", f"{fs_id} is not available yet; continuing")

        default_sg = self._default_security_group(target, vpc_id)
        if default_sg is None:
            raise ResourceNotFoundError(f"VPC {vpc_id} has no default security group.")
        sources = _unique(
            [self._cluster_security_group(cluster), *self._node_security_groups(target), default_sg]
        )
        for source in sources:
            self._authorize_nfs(target, default_sg, source)

        for subnet in subnet_ids:
            self._create_mount_target(target, fs_id, subnet, default_sg)

        def mount_targets_ready() -> bool:
            targets = self._mount_targets(target, fs_id)
            return bool(targets) and all(
                dig(mt, "LifeCycleState") == "available" for mt in targets
            )

        if self.poll(
            "mount_targets_available", mount_targets_ready, label="mount targets"
        ).ready:
            self.reporter.step("mount_targets.available", "All mount targets are available")
        else:
            self.reporter.warn(
                "mount_targets.available",
                "Mount targets are not all available yet; they usually finish within minutes",
            )
        return self._finish(target, fs_id, vpc_id, created=True)

    def _finish(
        self,
        target: ClusterTarget,
        fs_id: str,
        vpc_id: str | None,
        *,
        created: bool,
    ) -> ProvisionResult:
        fields = {
            "Cluster": target.cluster_name,
            "Region": str(target.region),
            "File System ID": fs_id,
            "EFS Name": self.config.storage.efs_name,
            "VPC ID": vpc_id or "unknown",
        }
        path, values = self.write_info(fields, {"fileSystemId": fs_id})
        return ProvisionResult(
            created=created,
            resource_id=fs_id,
            fields=fields,
            helm_values=values,
            info_file=path,
        )

    def _authorize_nfs(self, target: ClusterTarget, group_id: str, source: str) -> None:
        result = self.runner.run(
            [
                *self._aws(target, "ec2", "authorize-security-group-ingress"),
                "--group-id", group_id,
                "--protocol", "tcp",
                "--port", NFS_PORT,
                "--source-group", source,
            ],
            check=False,
        )
        if result.returncode == 0:
            self.reporter.step("sg.authorize", f"Allowed NFS from {source}")
        elif "InvalidPermission.Duplicate" in (result.stderr or ""):
            self.reporter.step("sg.authorize", f"NFS from {source} already allowed", status="info")
        else:
            raise ProviderAPIError(
                f"Failed to allow NFS from {source}: {(result.stderr or '').strip()}",
                command=result.args,
                returncode=result.returncode,
                stderr=result.stderr or "",
            )

    def _create_mount_target(
        self,
        target: ClusterTarget,
        fs_id: str,
        subnet: str,
        security_group: str,
    ) -> None:
        result = self.runner.run(
            [
                *self._aws(target, "efs", "create-mount-target"),
                "--file-system-id", fs_id,
                "--subnet-id", subnet,
                "--security-groups", security_group,
            ],
            check=False,
        )
        if result.returncode == 0:
            self.reporter.step("mount_target.create", f"Mount target created in {subnet}")
        elif "MountTargetConflict" in (result.stderr or ""):
            self.reporter.step(
                "mount_target.create", f"Mount target already exists in {subnet}", status="info"
            )
        else:
            self.reporter.warn(
                "mount_target.create",
                f"Could not create mount target in {subnet}: {(result.stderr or '').strip()}",
            )

    # ------------------------------------------------------------------
    # Deprovision
    def deprovision(self, target: ClusterTarget, confirmer: Confirmer) -> CleanupResult:
        """Remove mount targets, NFS rules, the file system and the info file in order."""
        name = self.config.storage.efs_name
        fs_id = self._find_file_system(target)
        if fs_id is None:
            self.reporter.step(
                "efs.lookup",
                f"No EFS file system named '{name}'. Nothing to clean up.",
                status="info",
            )
            return CleanupResult(found=False)
        result = CleanupResult(found=True)
        self.reporter.step("efs.lookup", f"Found EFS file system {fs_id}", status="info")

        cluster = self._describe_cluster(target, required=False)
        if cluster is None:
            self.partial(
                "cluster.lookup",
                f"Cluster '{target.cluster_name}' not found; cleaning up what can be resolved",
            )
        mount_targets = self._mount_targets(target, fs_id)
        vpc_id = dig_str(cluster, "resourcesVpcConfig", "vpcId") or dig_str(
            mount_targets[0] if mount_targets else None, "VpcId"
        )

        for mount_target in mount_targets:
            mt_id = dig_str(mount_target, "MountTargetId")
            if mt_id is None:
                continue
            deleted = self.runner.run(
                [*self._aws(target, "efs", "delete-mount-target"), "--mount-target-id", mt_id],
                check=False,
            )
            if deleted.returncode == 0:
                result.removed.append(mt_id)
                self.reporter.step("mount_target.delete", f"Deleting mount target {mt_id}")
            else:
                self.partial("mount_target.delete", f"Could not delete mount target {mt_id}")

        if mount_targets:
            gone = self.poll(
                "mount_targets_deleted",
                lambda: not self._mount_targets(target, fs_id),
                label="mount target deletion",
            )
            if not gone.ready:
                self.partial(
                    "mount_targets.wait",
                    "Mount targets still exist; skipping security group and file system "
                    "deletion. Re-run cleanup once they are gone.",
                )
                result.preserved.append(fs_id)
                return result
            self.reporter.step("mount_targets.deleted", "All mount targets deleted")

        self._revoke_rules(target, cluster, vpc_id, result)

        if confirmer.confirm(
            f"Delete EFS file system {fs_id}? All data on it will be permanently lost."
        ):
            self.runner.run(
                [*self._aws(target, "efs", "delete-file-system"), "--file-system-id", fs_id]
            )
            result.storage_deleted = True
            result.removed.append(fs_id)
            self.reporter.step("efs.delete", f"Deleted EFS file system {fs_id}")
        else:
            result.preserved.append(fs_id)
            self.reporter.step("efs.keep", f"Kept EFS file system {fs_id}", status="skipped")

        self.remove_info(confirmer, result)
        return result

    def _revoke_rules(
        self,
        target: ClusterTarget,
        cluster: object | None,
        vpc_id: str | None,
        result: CleanupResult,
    ) -> None:
        if vpc_id is None:
            self.partial("sg.revoke", "Could not determine the VPC; security group rules kept")
            return
        default_sg = self._default_security_group(target, vpc_id)
        if default_sg is None:
            self.partial("sg.revoke", f"No default security group in {vpc_id}; rules kept")
            return
        sources = [default_sg]
        if cluster is not None:
            sources = _unique(
                [
                    self._cluster_security_group(cluster),
                    default_sg,
                    *self._node_security_groups(target),
                ]
            )
        for source in sources:
            revoked = self.runner.run(
                [
                    *self._aws(target, "ec2", "revoke-security-group-ingress"),
                    "--group-id", default_sg,
                    "--protocol", "tcp",
                    "--port", NFS_PORT,
                    "--source-group", source,
                ],
                check=False,
            )
            if revoked.returncode == 0:
                result.removed.append(f"{default_sg}:{NFS_PORT}<-{source}")
                self.reporter.step("sg.revoke", f"Removed NFS rule for {source}")
            elif "InvalidPermission.NotFound" in (revoked.stderr or ""):
                self.reporter.step("sg.revoke", f"No NFS rule for {source}", status="info")
            else:
                self.partial("sg.revoke", f"Could not remove NFS rule for {source}")

    # ------------------------------------------------------------------
    # Lookups
    def _aws(self, target: ClusterTarget, service: str, operation: str) -> list[str]:
        return [
            self.cli, service, operation,
            "--region", str(target.region),
            "--output", "json",
        ]

    def _describe_cluster(self, target: ClusterTarget, *, required: bool) -> object | None:
        described = self.runner.json(
            [*self._aws(target, "eks", "describe-cluster"), "--name", target.cluster_name],
            check=False,
        )
        cluster = dig(described, "cluster")
        if cluster is None and required:
            raise ResourceNotFoundError(
                f"EKS cluster '{target.cluster_name}' not found in {target.region}.",
                hint="Run 'harmonyctl setup-env --platform aws' to select a cluster.",
            )
        return cluster

    def _find_file_system(self, target: ClusterTarget) -> str | None:
        data = self.runner.json(self._aws(target, "efs", "describe-file-systems"))
        for entry in mappings(data, "FileSystems"):
            if dig(entry, "Name") != self.config.storage.efs_name:
                continue
            if dig(entry, "LifeCycleState") in _GONE_STATES:
                continue
            return dig_str(entry, "FileSystemId")
        return None

    def _lifecycle_state(self, target: ClusterTarget, fs_id: str) -> str | None:
        data = self.runner.json(
            [*self._aws(target, "efs", "describe-file-systems"), "--file-system-id", fs_id]
        )
        return dig_str(data, "FileSystems", 0, "LifeCycleState")

    def _mount_targets(self, target: ClusterTarget, fs_id: str) -> list[Mapping[str, object]]:
        data = self.runner.json(
            [*self._aws(target, "efs", "describe-mount-targets"), "--file-system-id", fs_id],
            check=False,
        )
        return mappings(data, "MountTargets")

    def _default_security_group(self, target: ClusterTarget, vpc_id: str) -> str | None:
        data = self.runner.json(
            [
                *self._aws(target, "ec2", "describe-security-groups"),
                "--filters",
                f"Name=vpc-id,Values={vpc_id}",
                "Name=group-name,Values=default",
            ]
        )
        return dig_str(data, "SecurityGroups", 0, "GroupId")

    @staticmethod
    def _cluster_security_group(cluster: object) -> str | None:
        return dig_str(cluster, "resourcesVpcConfig", "securityGroupIds", 0) or dig_str(
            cluster, "resourcesVpcConfig", "clusterSecurityGroupId"
        )

    def _node_security_groups(self, target: ClusterTarget) -> list[str]:
        data = self.runner.json(
            [
                *self._aws(target, "ec2", "describe-instances"),
                "--filters",
                f"Name=tag:kubernetes.io/cluster/{target.cluster_name},Values=owned",
            ],
            check=False,
        )
        groups: list[str] = []
        for reservation in mappings(data, "Reservations"):
            for instance in mappings(reservation, "Instances"):
                for group in mappings(instance, "SecurityGroups"):
                    group_id = dig_str(group, "GroupId")
                    if group_id:
                        groups.append(group_id)
        return sorted(set(groups))


def _unique(values: list[str | None]) -> list[str]:
    seen: list[str] = []
    for value in values:
        if value and value not in seen:
            seen.append(value)
    return seen


__all__ = ["AwsEfsProvider", "build_trust_policy", "ADDON_NAME", "ROLE_NAME", "POLICY_ARN"]
