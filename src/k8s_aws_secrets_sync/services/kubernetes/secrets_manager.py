"""Kubernetes Secret manager used as the cluster side of the sync.

Reads, creates and replaces namespaced Secrets through ``CoreV1Api``. Updates
carry the ``resourceVersion`` observed on read so that a concurrent writer
surfaces as a ``KubernetesConflictError`` instead of being overwritten.
"""

from __future__ import annotations

import base64
from collections.abc import Callable
from typing import TYPE_CHECKING, Any, NoReturn

import structlog

from k8s_aws_secrets_sync.core.models import (
    ClusterSecretCoordinates,
    CurrentState,
    SecretPayload,
)
from k8s_aws_secrets_sync.integrations.kubernetes.exceptions import (
    KubernetesAlreadyExistsError,
    KubernetesConflictError,
    KubernetesNotFoundError,
)

if TYPE_CHECKING:
    from k8s_aws_secrets_sync.integrations.kubernetes.client import KubernetesClient

logger = structlog.get_logger()

MANAGED_BY_LABEL = "app.kubernetes.io/managed-by"
MANAGED_BY_VALUE = "k8s-aws-secrets-sync"
ANNOTATION_PREFIX = "secrets-sync.k8s-aws.io"
FINGERPRINT_ANNOTATION = f"{ANNOTATION_PREFIX}/fingerprint"
SOURCE_ANNOTATION = f"{ANNOTATION_PREFIX}/source"


def encode_data(data: dict[str, bytes]) -> dict[str, str]:
    """Base64-encode payload values for the Secret ``data`` field."""
    return {key: base64.b64encode(value).decode("ascii") for key, value in data.items()}


def decode_data(data: dict[str, str] | None) -> dict[str, bytes]:
    """Decode a Secret ``data`` field back to raw bytes."""
    return {key: base64.b64decode(value) for key, value in (data or {}).items()}


def managed_metadata(
    payload: SecretPayload,
    source_id: str,
    labels: dict[str, str] | None = None,
    annotations: dict[str, str] | None = None,
) -> tuple[dict[str, str], dict[str, str]]:
    """Merge the sync controller's label and annotations over existing metadata."""
    merged_labels = {**(labels or {}), MANAGED_BY_LABEL: MANAGED_BY_VALUE}
    merged_annotations = {
        **(annotations or {}),
        FINGERPRINT_ANNOTATION: payload.fingerprint,
        SOURCE_ANNOTATION: source_id,
    }
    return merged_labels, merged_annotations


class ClusterSecretsManager:
    """Cluster-side secret operations for the reconciler.

    Provides:
    - ``get`` returning the current state or ``None`` when absent
    - ``create`` raising ``KubernetesAlreadyExistsError`` on a create race
    - ``update`` with optimistic concurrency on ``resourceVersion``
    - ``list_namespaces`` for label-selector fan-out

    Transient API failures are retried with the client's tenacity decorator.
    """

    _entity_name = "cluster_secret"

    def __init__(self, client: KubernetesClient) -> None:
        """Initialize the manager.

        Args:
            client: Kubernetes API client instance.
        """
        self._client = client
        self._log = logger.bind(entity=self._entity_name)

    def _handle_api_error(
        self,
        e: Exception,
        resource_type: str | None = None,
        resource_name: str | None = None,
        namespace: str | None = None,
    ) -> NoReturn:
        """Translate a Kubernetes API exception and re-raise."""
        raise self._client.translate_api_exception(
            e,
            resource_type=resource_type,
            resource_name=resource_name,
            namespace=namespace,
        ) from e

    def _call(
        self,
        fn: Callable[..., Any],
        resource_type: str,
        resource_name: str | None,
        namespace: str | None,
        /,
        **kwargs: Any,
    ) -> Any:
        """Call the API with error translation and transient-error retries."""

        def attempt() -> Any:
            try:
                return fn(_request_timeout=self._client.timeout, **kwargs)
            except Exception as e:
                self._handle_api_error(e, resource_type, resource_name, namespace)

        return self._client.make_retry_decorator()(attempt)()

    @staticmethod
    def _to_state(coordinates: ClusterSecretCoordinates, obj: Any) -> CurrentState:
        metadata = obj.metadata
        annotations: dict[str, str] = dict(getattr(metadata, "annotations", None) or {})
        labels: dict[str, str] = dict(getattr(metadata, "labels", None) or {})
        return CurrentState(
            coordinates=ClusterSecretCoordinates(
                namespace=coordinates.namespace,
                name=coordinates.name,
                type=getattr(obj, "type", None) or coordinates.type,
            ),
            data=decode_data(getattr(obj, "data", None)),
            fingerprint=annotations.get(FINGERPRINT_ANNOTATION),
            resource_version=getattr(metadata, "resource_version", None),
            source_id=annotations.get(SOURCE_ANNOTATION),
            labels=labels,
            annotations=annotations,
        )

    # =========================================================================
    # Secret Operations
    # =========================================================================

    def get(self, coordinates: ClusterSecretCoordinates) -> CurrentState | None:
        """Read a Secret.

        Args:
            coordinates: Target secret.

        Returns:
            Current state, or None when the Secret does not exist.
        """
        self._log.debug("getting_secret", name=coordinates.name, namespace=coordinates.namespace)
        try:
            result = self._call(
                self._client.core_v1.read_namespaced_secret,
                "Secret",
                coordinates.name,
                coordinates.namespace,
                name=coordinates.name,
                namespace=coordinates.namespace,
            )
        except KubernetesNotFoundError:
            return None
        return self._to_state(coordinates, result)

    def create(
        self,
        coordinates: ClusterSecretCoordinates,
        payload: SecretPayload,
        *,
        source_id: str,
    ) -> CurrentState:
        """Create a Secret holding ``payload``.

        Raises:
            KubernetesAlreadyExistsError: Someone created the Secret first.
        """
        from kubernetes.client import V1ObjectMeta, V1Secret

        labels, annotations = managed_metadata(payload, source_id)
        body = V1Secret(
            metadata=V1ObjectMeta(
                name=coordinates.name,
                namespace=coordinates.namespace,
                labels=labels,
                annotations=annotations,
            ),
            type=coordinates.type,
            data=encode_data(payload.data),
        )

        self._log.debug(
            "creating_secret",
            name=coordinates.name,
            namespace=coordinates.namespace,
            type=coordinates.type,
        )
        try:
            result = self._call(
                self._client.core_v1.create_namespaced_secret,
                "Secret",
                coordinates.name,
                coordinates.namespace,
                namespace=coordinates.namespace,
                body=body,
            )
        except KubernetesConflictError as e:
            if isinstance(e, KubernetesAlreadyExistsError):
                raise
            raise KubernetesAlreadyExistsError(
                resource_type="Secret",
                resource_name=coordinates.name,
                namespace=coordinates.namespace,
            ) from e
        self._log.info(
            "created_secret",
            name=coordinates.name,
            namespace=coordinates.namespace,
            fingerprint=payload.fingerprint,
        )
        return self._to_state(coordinates, result)

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
        """Replace a Secret's data with ``payload`` (whole-value replacement).

        Existing labels and annotations passed in are preserved; the sync
        controller's own label and annotations are overwritten.

        Raises:
            KubernetesConflictError: ``expected_version`` is stale.
        """
        from kubernetes.client import V1ObjectMeta, V1Secret

        merged_labels, merged_annotations = managed_metadata(
            payload, source_id, labels, annotations
        )
        body = V1Secret(
            metadata=V1ObjectMeta(
                name=coordinates.name,
                namespace=coordinates.namespace,
                resource_version=expected_version,
                labels=merged_labels,
                annotations=merged_annotations,
            ),
            type=coordinates.type,
            data=encode_data(payload.data),
        )

        self._log.debug(
            "updating_secret",
            name=coordinates.name,
            namespace=coordinates.namespace,
            expected_version=expected_version,
        )
        try:
            result = self._call(
                self._client.core_v1.replace_namespaced_secret,
                "Secret",
                coordinates.name,
                coordinates.namespace,
                name=coordinates.name,
                namespace=coordinates.namespace,
                body=body,
            )
        except KubernetesConflictError as e:
            raise KubernetesConflictError(
                resource_type="Secret",
                resource_name=coordinates.name,
                namespace=coordinates.namespace,
                expected_version=expected_version,
            ) from e
        self._log.info(
            "updated_secret",
            name=coordinates.name,
            namespace=coordinates.namespace,
            fingerprint=payload.fingerprint,
        )
        return self._to_state(coordinates, result)

    # =========================================================================
    # Namespace Operations
    # =========================================================================

    def list_namespaces(self, label_selector: str | None = None) -> list[str]:
        """List namespace names, optionally filtered by a label selector.

        Returns:
            Sorted namespace names.
        """
        self._log.debug("listing_namespaces", label_selector=label_selector)
        kwargs: dict[str, Any] = {}
        if label_selector:
            kwargs["label_selector"] = label_selector
        result = self._call(
            self._client.core_v1.list_namespace,
            "Namespace",
            None,
            None,
            **kwargs,
        )
        names = sorted(item.metadata.name for item in result.items)
        self._log.debug("listed_namespaces", count=len(names))
        return names
