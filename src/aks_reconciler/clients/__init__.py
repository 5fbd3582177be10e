"""Remote API clients for the AKS management plane."""

from __future__ import annotations

from aks_reconciler.clients.azure_aks import AzureAksClient
from aks_reconciler.config import EngineConfig


def load_aks_client(config: EngineConfig) -> AzureAksClient:
    """Create an AKS client bound to the configured subscription.

    Each call returns its own client so separate reconcilers never share poller
    bookkeeping or credentials.
    """
    return AzureAksClient(config.subscription_id)
