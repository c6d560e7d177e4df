"""Wiring of the reconciler to its backends."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

import structlog

from k8s_aws_secrets_sync.integrations.kubernetes import KubernetesClient, KubernetesConfig
from k8s_aws_secrets_sync.integrations.secretsmanager import (
    SecretsManagerClient,
    SecretsManagerConfig,
    TokenBucketRateLimiter,
)
from k8s_aws_secrets_sync.services.kubernetes import ClusterSecretsManager
from k8s_aws_secrets_sync.services.sync.reconciler import SecretsReconciler
from k8s_aws_secrets_sync.services.sync.reporter import OutcomeReporter
from k8s_aws_secrets_sync.services.sync.resolver import MappingResolver

if TYPE_CHECKING:
    from k8s_aws_secrets_sync.services.sync.config import DiscoveryConfig, ReconcilerConfig
    from k8s_aws_secrets_sync.services.sync.protocols import ClusterSecretStore, SecretStore

logger = structlog.get_logger()


def build_limiter(config: SecretsManagerConfig) -> TokenBucketRateLimiter:
    """Create the tick-shared rate limiter from the client's rate settings."""
    return TokenBucketRateLimiter(
        rate=config.rate.requests_per_second,
        burst=config.rate.burst,
        min_rate=config.rate.min_requests_per_second,
        throttle_factor=config.rate.throttle_factor,
    )


@dataclass
class SyncRuntime:
    """A fully wired reconciler plus the clients it owns."""

    reconciler: SecretsReconciler
    resolver: MappingResolver
    reporter: OutcomeReporter
    store: SecretStore
    cluster: ClusterSecretStore
    kubernetes_client: KubernetesClient | None = None
    secrets_client: SecretsManagerClient | None = None

    def close(self) -> None:
        """Release API clients."""
        if self.secrets_client is not None:
            self.secrets_client.close()
        if self.kubernetes_client is not None:
            self.kubernetes_client.close()


def assemble(
    discovery: DiscoveryConfig,
    store: SecretStore,
    cluster: ClusterSecretStore,
    reconciler_config: ReconcilerConfig,
    *,
    limiter: TokenBucketRateLimiter | None = None,
    reporter: OutcomeReporter | None = None,
) -> SyncRuntime:
    """Wire a reconciler over already constructed backends (real or in-memory)."""
    resolver = MappingResolver(discovery, store, cluster)
    reporter = reporter or OutcomeReporter()
    reconciler = SecretsReconciler(
        resolver,
        store,
        cluster,
        reporter,
        reconciler_config,
        limiter=limiter,
    )
    return SyncRuntime(
        reconciler=reconciler,
        resolver=resolver,
        reporter=reporter,
        store=store,
        cluster=cluster,
    )


def build_runtime(
    discovery: DiscoveryConfig,
    reconciler_config: ReconcilerConfig,
    *,
    aws_config: SecretsManagerConfig | None = None,
    k8s_config: KubernetesConfig | None = None,
) -> SyncRuntime:
    """Build the production runtime against AWS and the Kubernetes API.

    Raises:
        KubernetesConnectionError: No usable kubeconfig or in-cluster config.
        botocore.exceptions.BotoCoreError: The AWS session cannot be created.
    """
    aws_config = aws_config or SecretsManagerConfig.from_env()
    k8s_config = k8s_config or KubernetesConfig.from_env()

    kubernetes_client = KubernetesClient(k8s_config)
    if not kubernetes_client.check_connection():
        logger.warning(
            "kubernetes_api_unreachable", context=kubernetes_client.get_current_context()
        )
    secrets_client = SecretsManagerClient(aws_config)
    runtime = assemble(
        discovery,
        secrets_client,
        ClusterSecretsManager(kubernetes_client),
        reconciler_config,
        limiter=build_limiter(aws_config),
    )
    runtime.kubernetes_client = kubernetes_client
    runtime.secrets_client = secrets_client
    logger.info(
        "sync_runtime_built",
        region=aws_config.region,
        context=kubernetes_client.get_current_context(),
        manifest_entries=len(discovery.entries),
        tag_discovery=discovery.tags is not None,
        naming_discovery=discovery.naming is not None,
    )
    return runtime
