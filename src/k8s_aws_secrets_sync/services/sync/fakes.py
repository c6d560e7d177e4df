"""In-memory secret store and cluster backends.

Stand-ins for the AWS and Kubernetes backends in tests. Both follow the real
clients' contracts: the same return types, the same exceptions, and resource
versions that change on every write.
"""

from __future__ import annotations

import json
import threading
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from k8s_aws_secrets_sync.core.models import (
    DEFAULT_SECRET_TYPE,
    ClusterSecretCoordinates,
    CurrentState,
    ExternalSecretRef,
    SecretPayload,
)
from k8s_aws_secrets_sync.integrations.kubernetes.exceptions import (
    KubernetesAlreadyExistsError,
    KubernetesConflictError,
    KubernetesNotFoundError,
    KubernetesValidationError,
)
from k8s_aws_secrets_sync.integrations.secretsmanager.client import decode_secret_value
from k8s_aws_secrets_sync.integrations.secretsmanager.exceptions import (
    SecretsManagerNotFoundError,
)
from k8s_aws_secrets_sync.services.kubernetes.secrets_manager import (
    FINGERPRINT_ANNOTATION,
    SOURCE_ANNOTATION,
    managed_metadata,
)

if TYPE_CHECKING:
    from k8s_aws_secrets_sync.integrations.secretsmanager.ratelimit import (
        TokenBucketRateLimiter,
    )


@dataclass
class _StoredSecret:
    value: str | bytes
    tags: dict[str, str] = field(default_factory=dict)
    revision: int = 1


class InMemorySecretStore:
    """Secret store backed by a dict.

    Values given as dicts are stored as JSON strings, like the AWS console
    does for key/value secrets.

    Example:
        >>> store = InMemorySecretStore()
        >>> store.put_secret("prod/db", {"user": "app", "pass": "s3cret"})
        >>> store.fetch(ExternalSecretRef(secret_id="prod/db")).keys
        ['user', 'pass']
    """

    def __init__(self) -> None:
        self._secrets: dict[str, _StoredSecret] = {}
        self._errors: dict[str, Exception] = {}
        self._lock = threading.Lock()
        self.fetch_calls: list[str] = []

    def put_secret(
        self,
        secret_id: str,
        value: dict[str, Any] | str | bytes,
        tags: dict[str, str] | None = None,
    ) -> None:
        """Create or rotate a secret."""
        stored_value = json.dumps(value) if isinstance(value, dict) else value
        with self._lock:
            existing = self._secrets.get(secret_id)
            self._secrets[secret_id] = _StoredSecret(
                value=stored_value,
                tags=dict(tags) if tags is not None else (existing.tags if existing else {}),
                revision=existing.revision + 1 if existing else 1,
            )

    def delete_secret(self, secret_id: str) -> None:
        """Remove a secret."""
        with self._lock:
            self._secrets.pop(secret_id, None)

    def fail_with(self, secret_id: str, error: Exception | None) -> None:
        """Make every fetch of ``secret_id`` raise ``error`` (None clears it)."""
        with self._lock:
            if error is None:
                self._errors.pop(secret_id, None)
            else:
                self._errors[secret_id] = error

    def list_secrets(
        self,
        *,
        tag_keys: list[str] | None = None,
        name_prefix: str | None = None,
        limiter: TokenBucketRateLimiter | None = None,
    ) -> list[ExternalSecretRef]:
        if limiter is not None:
            limiter.acquire()
        with self._lock:
            items = sorted(self._secrets.items())
        refs = []
        for secret_id, stored in items:
            if name_prefix and not secret_id.startswith(name_prefix):
                continue
            if tag_keys and not all(key in stored.tags for key in tag_keys):
                continue
            refs.append(
                ExternalSecretRef(
                    secret_id=secret_id,
                    last_known_revision=str(stored.revision),
                    tags=dict(stored.tags),
                )
            )
        return refs

    def fetch(
        self,
        ref: ExternalSecretRef,
        *,
        limiter: TokenBucketRateLimiter | None = None,
    ) -> SecretPayload:
        if limiter is not None:
            limiter.acquire()
        with self._lock:
            self.fetch_calls.append(ref.secret_id)
            if ref.secret_id in self._errors:
                raise self._errors[ref.secret_id]
            stored = self._secrets.get(ref.secret_id)
        if stored is None:
            raise SecretsManagerNotFoundError(
                f"Secret {ref.secret_id} not found",
                error_code="ResourceNotFoundException",
                secret_id=ref.secret_id,
            )
        key = "SecretBinary" if isinstance(stored.value, bytes) else "SecretString"
        return SecretPayload.from_data(decode_secret_value({key: stored.value}))


@dataclass
class _StoredObject:
    type: str
    data: dict[str, bytes]
    labels: dict[str, str]
    annotations: dict[str, str]
    resource_version: int


class InMemoryClusterSecrets:
    """Cluster backend with optimistic concurrency on a dict.

    ``inject_conflicts`` simulates another writer: the next N updates of a
    Secret find its resource version bumped and fail with a conflict.
    """

    def __init__(self, namespaces: dict[str, dict[str, str]] | None = None) -> None:
        self.namespaces: dict[str, dict[str, str]] = dict(namespaces or {})
        self._objects: dict[tuple[str, str], _StoredObject] = {}
        self._pending_conflicts: dict[tuple[str, str], int] = {}
        self._version = 0
        self._lock = threading.Lock()
        self.create_calls = 0
        self.update_calls = 0

    def _next_version(self) -> int:
        self._version += 1
        return self._version

    def _state(self, coordinates: ClusterSecretCoordinates, obj: _StoredObject) -> CurrentState:
        return CurrentState(
            coordinates=ClusterSecretCoordinates(
                namespace=coordinates.namespace, name=coordinates.name, type=obj.type
            ),
            data=dict(obj.data),
            fingerprint=obj.annotations.get(FINGERPRINT_ANNOTATION),
            resource_version=str(obj.resource_version),
            source_id=obj.annotations.get(SOURCE_ANNOTATION),
            labels=dict(obj.labels),
            annotations=dict(obj.annotations),
        )

    # =========================================================================
    # Scenario Helpers
    # =========================================================================

    def put_unmanaged(
        self,
        coordinates: ClusterSecretCoordinates,
        data: dict[str, bytes],
        *,
        annotations: dict[str, str] | None = None,
    ) -> None:
        """Store a Secret as if written by someone else."""
        with self._lock:
            self._objects[coordinates.key] = _StoredObject(
                type=coordinates.type,
                data=dict(data),
                labels={},
                annotations=dict(annotations or {}),
                resource_version=self._next_version(),
            )

    def inject_conflicts(self, coordinates: ClusterSecretCoordinates, count: int = 1) -> None:
        """Make the next ``count`` updates of a Secret hit a concurrent write."""
        with self._lock:
            self._pending_conflicts[coordinates.key] = count

    def stored(self, coordinates: ClusterSecretCoordinates) -> CurrentState | None:
        """Current object without counting as a read."""
        with self._lock:
            obj = self._objects.get(coordinates.key)
            return self._state(coordinates, obj) if obj else None

    # =========================================================================
    # ClusterSecretStore
    # =========================================================================

    def get(self, coordinates: ClusterSecretCoordinates) -> CurrentState | None:
        return self.stored(coordinates)

    def create(
        self,
        coordinates: ClusterSecretCoordinates,
        payload: SecretPayload,
        *,
        source_id: str,
    ) -> CurrentState:
        labels, annotations = managed_metadata(payload, source_id)
        with self._lock:
            self.create_calls += 1
            if coordinates.key in self._objects:
                raise KubernetesAlreadyExistsError(
                    resource_type="Secret",
                    resource_name=coordinates.name,
                    namespace=coordinates.namespace,
                )
            obj = _StoredObject(
                type=coordinates.type or DEFAULT_SECRET_TYPE,
                data=dict(payload.data),
                labels=labels,
                annotations=annotations,
                resource_version=self._next_version(),
            )
            self._objects[coordinates.key] = obj
            return self._state(coordinates, obj)

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
        with self._lock:
            self.update_calls += 1
            obj = self._objects.get(coordinates.key)
            if obj is None:
                raise KubernetesNotFoundError(
                    resource_type="Secret",
                    resource_name=coordinates.name,
                    namespace=coordinates.namespace,
                )

            if self._pending_conflicts.get(coordinates.key, 0) > 0:
                self._pending_conflicts[coordinates.key] -= 1
                obj.resource_version = self._next_version()

            if expected_version is not None and expected_version != str(obj.resource_version):
                raise KubernetesConflictError(
                    resource_type="Secret",
                    resource_name=coordinates.name,
                    namespace=coordinates.namespace,
                    expected_version=expected_version,
                )
            if coordinates.type != obj.type:
                raise KubernetesValidationError(
                    f"Secret {coordinates} type is immutable ({obj.type} -> {coordinates.type})"
                )

            new_labels, new_annotations = managed_metadata(payload, source_id, labels, annotations)
            obj.data = dict(payload.data)
            obj.labels = new_labels
            obj.annotations = new_annotations
            obj.resource_version = self._next_version()
            return self._state(coordinates, obj)

    def list_namespaces(self, label_selector: str | None = None) -> list[str]:
        return sorted(
            name
            for name, labels in self.namespaces.items()
            if label_selector is None or _matches_selector(labels, label_selector)
        )


def _matches_selector(labels: dict[str, str], selector: str) -> bool:
    """Evaluate equality-based label selectors (``a=b,c!=d,e,!f``)."""
    for requirement in (part.strip() for part in selector.split(",")):
        if not requirement:
            continue
        if "!=" in requirement:
            key, value = (s.strip() for s in requirement.split("!=", 1))
            if labels.get(key) == value:
                return False
        elif "=" in requirement:
            key, value = (s.strip() for s in requirement.replace("==", "=").split("=", 1))
            if labels.get(key) != value:
                return False
        elif requirement.startswith("!"):
            if requirement[1:].strip() in labels:
                return False
        elif requirement not in labels:
            return False
    return True
