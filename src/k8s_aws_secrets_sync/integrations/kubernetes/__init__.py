"""Kubernetes integration - API client and configuration models."""

from k8s_aws_secrets_sync.integrations.kubernetes.client import KubernetesClient
from k8s_aws_secrets_sync.integrations.kubernetes.config import (
    KubernetesConfig,
    KubernetesDefaultsConfig,
)
from k8s_aws_secrets_sync.integrations.kubernetes.exceptions import (
    KubernetesAlreadyExistsError,
    KubernetesAuthError,
    KubernetesConflictError,
    KubernetesConnectionError,
    KubernetesError,
    KubernetesNotFoundError,
    KubernetesTimeoutError,
    KubernetesValidationError,
)

__all__ = [
    "KubernetesAlreadyExistsError",
    "KubernetesAuthError",
    "KubernetesClient",
    "KubernetesConfig",
    "KubernetesConflictError",
    "KubernetesConnectionError",
    "KubernetesDefaultsConfig",
    "KubernetesError",
    "KubernetesNotFoundError",
    "KubernetesTimeoutError",
    "KubernetesValidationError",
]
