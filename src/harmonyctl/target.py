"""Cluster coordinates resolved once per invocation.

Every provisioning command needs a handful of environment variables
(``CLUSTER_NAME`` plus platform specific location fields). They are read here,
validated in one place, and handed to providers as an immutable
:class:`ClusterTarget` so no provider ever reads the environment itself.
"""
from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum

from .errors import MissingConfigurationError


class Platform(str, Enum):
    """Supported cloud platforms."""

    AWS = "aws"
    AZURE = "azure"
    GCP = "gcp"

    @property
    def display_name(self) -> str:
        """Return the human readable managed Kubernetes service name."""
        return _DISPLAY_NAMES[self]


_DISPLAY_NAMES = {
    Platform.AWS: "AWS EKS",
    Platform.AZURE: "Azure AKS",
    Platform.GCP: "Google GKE",
}


class Stage(str, Enum):
    """Workflow stages that consume cluster coordinates."""

    INSTALL = "install"
    PROVISION = "provision"
    DEPROVISION = "deprovision"


_REQUIRED: dict[Platform, dict[Stage, tuple[str, ...]]] = {
    Platform.AWS: {
        Stage.INSTALL: ("CLUSTER_NAME", "CLUSTER_REGION"),
        Stage.PROVISION: ("CLUSTER_NAME", "CLUSTER_REGION"),
        Stage.DEPROVISION: ("CLUSTER_NAME", "CLUSTER_REGION"),
    },
    Platform.AZURE: {
        Stage.INSTALL: ("CLUSTER_NAME", "RESOURCE_GROUP", "LOCATION"),
        Stage.PROVISION: ("CLUSTER_NAME", "RESOURCE_GROUP", "LOCATION"),
        Stage.DEPROVISION: ("CLUSTER_NAME", "RESOURCE_GROUP", "LOCATION"),
    },
    Platform.GCP: {
        Stage.INSTALL: ("CLUSTER_NAME", "CLUSTER_LOCATION", "PROJECT_ID"),
        Stage.PROVISION: ("CLUSTER_NAME", "CLUSTER_LOCATION", "CLUSTER_ZONE", "PROJECT_ID"),
        Stage.DEPROVISION: ("CLUSTER_NAME", "CLUSTER_LOCATION", "CLUSTER_ZONE", "PROJECT_ID"),
    },
}

# Azure scripts historically exported LOCATION; CLUSTER_LOCATION is accepted as an alias.
_ALIASES: dict[str, str] = {"LOCATION": "CLUSTER_LOCATION"}


@dataclass(slots=True, frozen=True)
class ClusterTarget:
    """Validated coordinates of the cluster a command operates on."""

    platform: Platform
    cluster_name: str
    region: str | None = None
    location: str | None = None
    zone: str | None = None
    project_id: str | None = None
    resource_group: str | None = None
    node_resource_group: str | None = None

    def lock_name(self) -> str:
        """Return the lock identifier serialising mutations of this cluster."""
        return f"{self.platform.value}-{self.cluster_name}"

    def describe(self) -> dict[str, str]:
        """Return the non-empty coordinates for display and logging."""
        fields = {
            "platform": self.platform.value,
            "cluster": self.cluster_name,
            "region": self.region,
            "location": self.location,
            "zone": self.zone,
            "project": self.project_id,
            "resource_group": self.resource_group,
            "node_resource_group": self.node_resource_group,
        }
        return {key: value for key, value in fields.items() if value}


def required_variables(platform: Platform, stage: Stage) -> tuple[str, ...]:
    """Return the environment variables *stage* needs on *platform*."""
    return _REQUIRED[platform][stage]


def resolve_target(
    platform: Platform,
    stage: Stage,
    env: Mapping[str, str] | None = None,
) -> ClusterTarget:
    """Build a :class:`ClusterTarget` or raise listing every missing variable."""
    source = os.environ if env is None else env

    def lookup(name: str) -> str | None:
        value = (source.get(name) or "").strip()
        if not value and name in _ALIASES:
            value = (source.get(_ALIASES[name]) or "").strip()
        return value or None

    missing = [name for name in required_variables(platform, stage) if lookup(name) is None]
    if missing:
        raise MissingConfigurationError(missing, context=f"{platform.value} {stage.value}")

    cluster_name = lookup("CLUSTER_NAME") or ""
    if platform is Platform.AWS:
        return ClusterTarget(platform, cluster_name, region=lookup("CLUSTER_REGION"))
    if platform is Platform.AZURE:
        return ClusterTarget(
            platform,
            cluster_name,
            location=lookup("LOCATION"),
            resource_group=lookup("RESOURCE_GROUP"),
            node_resource_group=lookup("NODE_RESOURCE_GROUP"),
        )
    return ClusterTarget(
        platform,
        cluster_name,
        location=lookup("CLUSTER_LOCATION"),
        zone=lookup("CLUSTER_ZONE"),
        project_id=lookup("PROJECT_ID"),
    )


__all__ = [
    "ClusterTarget",
    "Platform",
    "Stage",
    "required_variables",
    "resolve_target",
]
