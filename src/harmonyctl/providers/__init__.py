"""Per-cloud storage providers for harmonyctl."""
from __future__ import annotations

from collections.abc import Mapping

from ..target import Platform
from .aws import AwsEfsProvider
from .azure import AzureFilesProvider
from .base import (
    CleanupResult,
    DriverResult,
    EnvironmentResult,
    ProviderContext,
    ProvisionResult,
    StorageProvider,
)
from .gcp import GcpFilestoreProvider
from .kubernetes import ClaimRef, KubectlClient, PodCounts

PROVIDERS: Mapping[Platform, type[StorageProvider]] = {
    Platform.AWS: AwsEfsProvider,
    Platform.AZURE: AzureFilesProvider,
    Platform.GCP: GcpFilestoreProvider,
}


def get_provider(platform: Platform, context: ProviderContext) -> StorageProvider:
    """Instantiate the provider registered for *platform*."""
    return PROVIDERS[platform](context)


__all__ = [
    "AwsEfsProvider",
    "AzureFilesProvider",
    "ClaimRef",
    "CleanupResult",
    "DriverResult",
    "EnvironmentResult",
    "GcpFilestoreProvider",
    "KubectlClient",
    "PROVIDERS",
    "PodCounts",
    "ProviderContext",
    "ProvisionResult",
    "StorageProvider",
    "get_provider",
]
