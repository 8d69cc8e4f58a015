"""Tests for cluster coordinate resolution."""
from __future__ import annotations

import pytest

from harmonyctl.errors import Condition, MissingConfigurationError
from harmonyctl.target import ClusterTarget, Platform, Stage, resolve_target


def test_aws_target_reads_cluster_and_region() -> None:
    target = resolve_target(
        Platform.AWS,
        Stage.PROVISION,
        {"CLUSTER_NAME": " alpha ", "CLUSTER_REGION": "us-east-2"},
    )

    assert target == ClusterTarget(Platform.AWS, "alpha", region="us-east-2")
    assert target.lock_name() == "aws-alpha"
    assert target.describe() == {"platform": "aws", "cluster": "alpha", "region": "us-east-2"}


def test_missing_variables_are_all_listed() -> None:
    """Every absent variable is named at once, with export hints."""
    with pytest.raises(MissingConfigurationError) as excinfo:
        resolve_target(Platform.GCP, Stage.PROVISION, {"CLUSTER_NAME": "gke-1", "PROJECT_ID": ""})

    error = excinfo.value
    assert error.missing == ("CLUSTER_LOCATION", "CLUSTER_ZONE", "PROJECT_ID")
    assert error.condition is Condition.MISSING_CONFIGURATION
    assert "gcp provision" in str(error)
    assert error.hint is not None
    assert "export CLUSTER_ZONE=..." in error.hint


def test_gcp_install_does_not_need_zone() -> None:
    target = resolve_target(
        Platform.GCP,
        Stage.INSTALL,
        {"CLUSTER_NAME": "gke-1", "CLUSTER_LOCATION": "us-central1", "PROJECT_ID": "proj-a"},
    )

    assert target.zone is None
    assert target.project_id == "proj-a"


def test_azure_location_accepts_cluster_location_alias() -> None:
    target = resolve_target(
        Platform.AZURE,
        Stage.DEPROVISION,
        {
            "CLUSTER_NAME": "aks-1",
            "RESOURCE_GROUP": "rg",
            "CLUSTER_LOCATION": "eastus",
            "NODE_RESOURCE_GROUP": "MC_rg_aks-1_eastus",
        },
    )

    assert target.location == "eastus"
    assert target.resource_group == "rg"
    assert target.node_resource_group == "MC_rg_aks-1_eastus"


def test_platform_display_names() -> None:
    assert Platform("azure").display_name == "Azure AKS"
    assert [platform.value for platform in Platform] == ["aws", "azure", "gcp"]
