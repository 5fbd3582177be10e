"""Client-specific test fixtures: SDK pollers, HTTP errors and a mocked container service client."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any
from unittest.mock import MagicMock

import pytest
from azure.core.exceptions import HttpResponseError

from aks_reconciler.clients.azure_aks import AzureAksClient

SUBSCRIPTION_ID = "00000000-0000-0000-0000-000000000000"


@pytest.fixture
def client() -> AzureAksClient:
    return AzureAksClient(SUBSCRIPTION_ID)


@pytest.fixture
def container() -> MagicMock:
    """Stand-in for ContainerServiceClient with managed_clusters and agent_pools operation groups."""
    return MagicMock()


@pytest.fixture
def make_poller() -> Callable[..., MagicMock]:
    """Factory for an LROPoller-shaped mock."""

    def _make(result: Any = None, *, done: bool = True, status: str = "Succeeded") -> MagicMock:
        poller = MagicMock()
        poller.done.return_value = done
        poller.status.return_value = status
        if isinstance(result, BaseException):
            poller.result.side_effect = result
        else:
            poller.result.return_value = result
        return poller

    return _make


@pytest.fixture
def http_error() -> Callable[..., HttpResponseError]:
    """Factory for an HttpResponseError with a status code and optional ARM error code."""

    def _make(status: int, message: str = "request failed", code: str | None = None) -> HttpResponseError:
        error = HttpResponseError(message=message)
        error.status_code = status
        error.error = MagicMock(code=code) if code else None
        return error

    return _make
