"""Shared fixtures for reconciliation engine tests."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import pytest

from k8s_aws_secrets_sync.services.sync.config import (
    DiscoveryConfig,
    ReconcilerConfig,
    parse_discovery_config,
)
from k8s_aws_secrets_sync.services.sync.factory import SyncRuntime, assemble
from k8s_aws_secrets_sync.services.sync.fakes import InMemoryClusterSecrets, InMemorySecretStore


@pytest.fixture
def store() -> InMemorySecretStore:
    """Empty in-memory secret store."""
    return InMemorySecretStore()


@pytest.fixture
def cluster() -> InMemoryClusterSecrets:
    """In-memory cluster with a few labelled namespaces."""
    return InMemoryClusterSecrets(
        namespaces={
            "payments": {"team": "payments"},
            "payments-staging": {"team": "payments", "env": "staging"},
            "billing": {"team": "billing"},
        }
    )


@pytest.fixture
def reconciler_config() -> ReconcilerConfig:
    """Fast loop settings for tests."""
    return ReconcilerConfig(interval=0.01, interval_jitter=0.0, concurrency=4, tick_timeout=5)


@pytest.fixture
def make_runtime(
    store: InMemorySecretStore,
    cluster: InMemoryClusterSecrets,
    reconciler_config: ReconcilerConfig,
) -> Callable[..., SyncRuntime]:
    """Build a runtime over the in-memory backends from a discovery document."""

    def factory(discovery: dict[str, Any] | DiscoveryConfig, **overrides: Any) -> SyncRuntime:
        config = (
            discovery
            if isinstance(discovery, DiscoveryConfig)
            else parse_discovery_config(discovery)
        )
        settings = reconciler_config.model_copy(update=overrides)
        return assemble(config, store, cluster, settings)

    return factory
