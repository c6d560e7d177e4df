"""Kubernetes service layer."""

from k8s_aws_secrets_sync.services.kubernetes.secrets_manager import (
    FINGERPRINT_ANNOTATION,
    MANAGED_BY_LABEL,
    MANAGED_BY_VALUE,
    SOURCE_ANNOTATION,
    ClusterSecretsManager,
)

__all__ = [
    "FINGERPRINT_ANNOTATION",
    "MANAGED_BY_LABEL",
    "MANAGED_BY_VALUE",
    "SOURCE_ANNOTATION",
    "ClusterSecretsManager",
]
