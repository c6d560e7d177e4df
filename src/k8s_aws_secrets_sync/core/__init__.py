"""Domain models shared across integrations and services."""

from k8s_aws_secrets_sync.core.models import (
    DEFAULT_SECRET_TYPE,
    Action,
    ClusterSecretCoordinates,
    CurrentState,
    Decision,
    ExternalSecretRef,
    MappingEntry,
    OutcomeStatus,
    ReconciliationOutcome,
    SecretPayload,
    TickSummary,
    compute_fingerprint,
)

__all__ = [
    "DEFAULT_SECRET_TYPE",
    "Action",
    "ClusterSecretCoordinates",
    "CurrentState",
    "Decision",
    "ExternalSecretRef",
    "MappingEntry",
    "OutcomeStatus",
    "ReconciliationOutcome",
    "SecretPayload",
    "TickSummary",
    "compute_fingerprint",
]
