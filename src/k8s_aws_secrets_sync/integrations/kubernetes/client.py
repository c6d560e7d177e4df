"""Kubernetes API client wrapper.

Wraps the official kubernetes Python client with configuration loading,
lazy API group initialization, retry logic, and consistent error translation.
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

import structlog
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
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

if TYPE_CHECKING:
    from kubernetes.client import CoreV1Api, VersionApi

    from k8s_aws_secrets_sync.integrations.kubernetes.config import KubernetesConfig

logger = structlog.get_logger()

# Statuses the API server uses for overload and transient unavailability
TRANSIENT_STATUSES = frozenset({429, 500, 502, 503, 504})


class KubernetesClient:
    """Kubernetes API client for the sync controller.

    Wraps the official kubernetes Python client with:
    - kubeconfig or in-cluster credential loading
    - Lazy API group initialization
    - Automatic retry with tenacity for transient errors
    - Consistent error translation to custom exceptions
    - Context manager support

    Example:
        ```python
        config = KubernetesConfig.from_env()
        with KubernetesClient(config) as client:
            secret = client.core_v1.read_namespaced_secret("db-creds", "payments")
        ```
    """

    def __init__(self, config: KubernetesConfig) -> None:
        """Initialize the client and load credentials.

        Args:
            config: Cluster connection settings.

        Raises:
            KubernetesConnectionError: If no usable configuration is found.
        """
        self._config = config
        self._retries = config.defaults.retry_attempts
        self._current_context: str | None = None

        self._core_v1: CoreV1Api | None = None
        self._version_api: VersionApi | None = None

        self._load_config()

        logger.info(
            "Kubernetes client initialized",
            context=self._current_context,
            load_mode=config.load_mode,
        )

    def _load_config(self) -> None:
        """Load Kubernetes configuration from kubeconfig or in-cluster."""
        from kubernetes import config
        from kubernetes.config import ConfigException

        mode = self._config.load_mode

        if mode in ("auto", "kubeconfig"):
            try:
                config.load_kube_config(
                    config_file=self._config.kubeconfig,
                    context=self._config.context,
                )
                self._current_context = self._config.context or "current-context"
                logger.debug(
                    "loaded_kubeconfig",
                    context=self._config.context,
                    kubeconfig=self._config.kubeconfig,
                )
                self._invalidate_api_cache()
                return
            except ConfigException as e:
                if mode == "kubeconfig":
                    raise KubernetesConnectionError(
                        message="Cannot load kubeconfig",
                        original_error=e,
                    ) from e

        try:
            config.load_incluster_config()
            self._current_context = "in-cluster"
            logger.debug("loaded_incluster_config")
        except ConfigException as e:
            raise KubernetesConnectionError(
                message="Cannot load Kubernetes configuration. "
                "Ensure kubeconfig exists or running inside a cluster.",
                original_error=e,
            ) from e

        self._invalidate_api_cache()

    def _invalidate_api_cache(self) -> None:
        """Clear cached API group instances."""
        self._core_v1 = None
        self._version_api = None

    # =========================================================================
    # Lazy API Group Accessors
    # =========================================================================

    @property
    def core_v1(self) -> CoreV1Api:
        """Get CoreV1Api instance (secrets, namespaces)."""
        if self._core_v1 is None:
            from kubernetes.client import CoreV1Api

            self._core_v1 = CoreV1Api()
        return self._core_v1

    @property
    def version_api(self) -> VersionApi:
        """Get VersionApi instance for cluster version info."""
        if self._version_api is None:
            from kubernetes.client import VersionApi

            self._version_api = VersionApi()
        return self._version_api

    def get_current_context(self) -> str:
        """Get the loaded context name, or 'in-cluster' inside a pod."""
        return self._current_context or "unknown"

    # =========================================================================
    # Error Translation
    # =========================================================================

    @staticmethod
    def _status_reason(e: Any) -> str | None:
        """Extract the machine-readable ``reason`` from an ApiException body."""
        body = getattr(e, "body", None)
        if not body:
            return None
        try:
            payload = json.loads(body)
        except (TypeError, ValueError):
            return None
        if isinstance(payload, dict):
            reason = payload.get("reason")
            return reason if isinstance(reason, str) else None
        return None

    @staticmethod
    def translate_api_exception(
        e: Exception,
        resource_type: str | None = None,
        resource_name: str | None = None,
        namespace: str | None = None,
    ) -> KubernetesError:
        """Translate a kubernetes ApiException to a custom exception.

        Args:
            e: The original exception.
            resource_type: Type of resource being operated on.
            resource_name: Name of the resource.
            namespace: Namespace of the resource.

        Returns:
            An appropriate KubernetesError subclass.
        """
        from kubernetes.client import ApiException
        from urllib3.exceptions import HTTPError
        from urllib3.exceptions import TimeoutError as Urllib3TimeoutError

        if isinstance(e, KubernetesError):
            return e

        if isinstance(e, Urllib3TimeoutError):
            return KubernetesTimeoutError(message=f"Kubernetes request timed out: {e}")

        if isinstance(e, HTTPError | ConnectionError):
            return KubernetesConnectionError(
                message=f"Kubernetes API unreachable: {e}",
                original_error=e,
            )

        if not isinstance(e, ApiException):
            return KubernetesError(
                message=str(e),
                resource_type=resource_type,
                resource_name=resource_name,
                namespace=namespace,
            )

        status = e.status

        if status in (401, 403):
            return KubernetesAuthError(
                message=e.reason or "Authentication/authorization failed",
                status_code=status,
                reason=e.reason,
            )

        if status == 404:
            return KubernetesNotFoundError(
                resource_type=resource_type,
                resource_name=resource_name,
                namespace=namespace,
            )

        if status == 409:
            if KubernetesClient._status_reason(e) == "AlreadyExists":
                return KubernetesAlreadyExistsError(
                    resource_type=resource_type,
                    resource_name=resource_name,
                    namespace=namespace,
                )
            return KubernetesConflictError(
                resource_type=resource_type,
                resource_name=resource_name,
                namespace=namespace,
            )

        if status in (400, 422):
            return KubernetesValidationError(
                message=e.reason or "Validation failed",
                status_code=status,
            )

        if status in TRANSIENT_STATUSES:
            return KubernetesConnectionError(
                message=e.reason or f"Kubernetes API unavailable: {status}",
                original_error=e,
                status_code=status,
            )

        return KubernetesError(
            message=e.reason or f"Kubernetes API error: {status}",
            status_code=status,
            resource_type=resource_type,
            resource_name=resource_name,
            namespace=namespace,
        )

    # =========================================================================
    # Retry Decorator
    # =========================================================================

    def make_retry_decorator(self) -> Any:
        """Create a retry decorator for transient connection errors.

        Returns:
            A tenacity retry decorator configured with exponential backoff.
        """
        return retry(
            retry=retry_if_exception_type((KubernetesConnectionError, KubernetesTimeoutError)),
            stop=stop_after_attempt(self._retries),
            wait=wait_exponential(multiplier=1, min=1, max=10),
            reraise=True,
        )

    # =========================================================================
    # Connection Check
    # =========================================================================

    def check_connection(self) -> bool:
        """Check if connection to the Kubernetes API server is working."""
        try:
            self.version_api.get_code()
            return True
        except Exception:
            return False

    # =========================================================================
    # Properties
    # =========================================================================

    @property
    def timeout(self) -> int:
        """Get the configured per-request timeout."""
        return self._config.defaults.timeout

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def close(self) -> None:
        """Close the client and release resources."""
        self._invalidate_api_cache()
        logger.debug("Kubernetes client closed")

    def __enter__(self) -> KubernetesClient:
        """Context manager entry."""
        return self

    def __exit__(self, *args: Any) -> None:
        """Context manager exit."""
        self.close()
