"""Backend capabilities the reconciler depends on.

Each protocol has a real implementation (``SecretsManagerClient``,
``ClusterSecretsManager``) and an in-memory one (``services.sync.fakes``);
the variant is chosen when the reconciler is constructed.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from k8s_aws_secrets_sync.core.models import (
        ClusterSecretCoordinates,
        CurrentState,
        ExternalSecretRef,
        SecretPayload,
    )
    from k8s_aws_secrets_sync.integrations.secretsmanager.ratelimit import (
        TokenBucketRateLimiter,
    )


@runtime_checkable
class SecretStore(Protocol):
    """Read-only view of the external secret store."""

    def list_secrets(
        self,
        *,
        tag_keys: list[str] | None = None,
        name_prefix: str | None = None,
        limiter: TokenBucketRateLimiter | None = None,
    ) -> list[ExternalSecretRef]:
        """List secret references matching the filters."""
        ...

    def fetch(
        self,
        ref: ExternalSecretRef,
        *,
        limiter: TokenBucketRateLimiter | None = None,
    ) -> SecretPayload:
        """Fetch a secret's current payload."""
        ...


@runtime_checkable
class ClusterSecretStore(Protocol):
    """Cluster-side secret operations with optimistic concurrency."""

    def get(self, coordinates: ClusterSecretCoordinates) -> CurrentState | None:
        """Read a Secret, or None when absent."""
        ...

    def create(
        self,
        coordinates: ClusterSecretCoordinates,
        payload: SecretPayload,
        *,
        source_id: str,
    ) -> CurrentState:
        """Create a Secret; raises KubernetesAlreadyExistsError on a race."""
        ...

    def update(
        self,
        coordinates: ClusterSecretCoordinates,
        payload: SecretPayload,
        expected_version: str | None,
        *,
        source_id: str,
        labels: dict[str, str] | None = None,
        annotations: dict[str, str] | None = None,
    ) -> CurrentState:
        """Replace a Secret; raises KubernetesConflictError on a stale version."""
        ...

    def list_namespaces(self, label_selector: str | None = None) -> list[str]:
        """List namespace names matching the selector."""
        ...
