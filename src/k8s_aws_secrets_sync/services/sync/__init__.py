"""Reconciliation engine: mapping resolution, diffing, applying and reporting."""

from k8s_aws_secrets_sync.services.sync.config import (
    DiscoveryConfig,
    ManifestEntry,
    NamingDiscoveryConfig,
    ReconcilerConfig,
    TagDiscoveryConfig,
    load_discovery_config,
    parse_discovery_config,
)
from k8s_aws_secrets_sync.services.sync.diff import decide, render_file_payload, shape_payload
from k8s_aws_secrets_sync.services.sync.exceptions import (
    DiscoveryError,
    MappingConflictError,
    SyncError,
)
from k8s_aws_secrets_sync.services.sync.protocols import ClusterSecretStore, SecretStore
from k8s_aws_secrets_sync.services.sync.reconciler import SecretsReconciler, TickPhase
from k8s_aws_secrets_sync.services.sync.reporter import OutcomeReporter, log_summary
from k8s_aws_secrets_sync.services.sync.resolver import MappingResolver, MappingSnapshot

__all__ = [
    "ClusterSecretStore",
    "DiscoveryConfig",
    "DiscoveryError",
    "ManifestEntry",
    "MappingConflictError",
    "MappingResolver",
    "MappingSnapshot",
    "NamingDiscoveryConfig",
    "OutcomeReporter",
    "ReconcilerConfig",
    "SecretStore",
    "SecretsReconciler",
    "SyncError",
    "TagDiscoveryConfig",
    "TickPhase",
    "decide",
    "load_discovery_config",
    "log_summary",
    "parse_discovery_config",
    "render_file_payload",
    "shape_payload",
]
