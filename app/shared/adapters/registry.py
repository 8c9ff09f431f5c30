"""
Adapter Registry

Resolves a provider tag to its adapter. The mapping is built once at import
and cannot be mutated afterwards.
"""

from types import MappingProxyType
from typing import List, Mapping

from app.shared.adapters.aws import AWSAdapter
from app.shared.adapters.azure import AzureAdapter
from app.shared.adapters.base import CloudAdapter
from app.shared.adapters.gcp import GCPAdapter
from app.shared.adapters.kubernetes import KubernetesAdapter
from app.shared.core.constants import CloudProvider
from app.shared.core.exceptions import UnsupportedProviderError

ADAPTERS: Mapping[CloudProvider, CloudAdapter] = MappingProxyType({
    CloudProvider.AWS: AWSAdapter(),
    CloudProvider.AZURE: AzureAdapter(),
    CloudProvider.GCP: GCPAdapter(),
    CloudProvider.KUBERNETES: KubernetesAdapter(),
})


def resolve_provider(provider: str) -> CloudProvider:
    """Case-insensitive provider tag lookup."""
    try:
        return CloudProvider((provider or "").strip().upper())
    except ValueError:
        raise UnsupportedProviderError(provider) from None


def get_cloud_adapter(provider: str) -> CloudAdapter:
    """
    Returns the adapter for a provider tag.
    Raises UnsupportedProviderError for anything unregistered, never returns a default.
    """
    return ADAPTERS[resolve_provider(provider)]


def registered_providers() -> List[str]:
    return [p.value for p in ADAPTERS]
