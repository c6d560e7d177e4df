"""Kubernetes integration custom exceptions."""

from __future__ import annotations

from typing import Any


class KubernetesError(Exception):
    """Base exception for Kubernetes operations.

    Attributes:
        message: Human-readable error message.
        status_code: HTTP status code from Kubernetes API (if applicable).
        resource_type: Type of resource involved (e.g., "Secret", "Namespace").
        resource_name: Name of the resource involved.
        namespace: Namespace of the resource (if applicable).
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        resource_type: str | None = None,
        resource_name: str | None = None,
        namespace: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.resource_type = resource_type
        self.resource_name = resource_name
        self.namespace = namespace

    def __str__(self) -> str:
        """Return string representation of the error."""
        parts = [self.message]
        if self.status_code:
            parts.append(f"(status: {self.status_code})")
        if self.resource_type and self.resource_name:
            loc = f"[{self.resource_type}/{self.resource_name}"
            if self.namespace:
                loc += f" in {self.namespace}"
            loc += "]"
            parts.append(loc)
        return " ".join(parts)


class KubernetesConnectionError(KubernetesError):
    """Raised when the API server cannot be reached or is temporarily unavailable.

    Covers kubeconfig loading failures, network errors, and 429/5xx responses.
    This is the only Kubernetes error the client retries.
    """

    def __init__(
        self,
        message: str = "Failed to connect to Kubernetes cluster",
        original_error: Exception | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message=message, status_code=status_code)
        self.original_error = original_error


class KubernetesAuthError(KubernetesError):
    """Raised on 401/403, e.g. a service account missing RBAC on secrets."""

    def __init__(
        self,
        message: str = "Kubernetes authentication/authorization failed",
        status_code: int | None = 401,
        reason: str | None = None,
    ) -> None:
        super().__init__(message=message, status_code=status_code)
        self.reason = reason


class KubernetesNotFoundError(KubernetesError):
    """Raised when a requested Kubernetes resource does not exist (404)."""

    def __init__(
        self,
        message: str = "Kubernetes resource not found",
        resource_type: str | None = None,
        resource_name: str | None = None,
        namespace: str | None = None,
    ) -> None:
        if resource_type and resource_name:
            message = f"{resource_type} '{resource_name}' not found"
            if namespace:
                message += f" in namespace '{namespace}'"
        super().__init__(
            message=message,
            status_code=404,
            resource_type=resource_type,
            resource_name=resource_name,
            namespace=namespace,
        )


class KubernetesValidationError(KubernetesError):
    """Raised when the API server rejects a resource body (400/422).

    A common cause is an attempt to change the ``type`` of an existing Secret,
    which Kubernetes treats as immutable.
    """

    def __init__(
        self,
        message: str = "Invalid resource specification",
        validation_errors: dict[str, Any] | None = None,
        status_code: int | None = 422,
    ) -> None:
        super().__init__(message=message, status_code=status_code)
        self.validation_errors = validation_errors or {}


class KubernetesConflictError(KubernetesError):
    """Raised when a write loses an optimistic-concurrency race (409).

    The object's ``resourceVersion`` changed between our read and our write.
    """

    def __init__(
        self,
        message: str = "Resource was modified concurrently",
        resource_type: str | None = None,
        resource_name: str | None = None,
        namespace: str | None = None,
        expected_version: str | None = None,
    ) -> None:
        if resource_type and resource_name:
            message = f"{resource_type} '{resource_name}' was modified concurrently"
            if namespace:
                message += f" in namespace '{namespace}'"
            if expected_version:
                message += f" (expected resourceVersion {expected_version})"
        super().__init__(
            message=message,
            status_code=409,
            resource_type=resource_type,
            resource_name=resource_name,
            namespace=namespace,
        )
        self.expected_version = expected_version


class KubernetesAlreadyExistsError(KubernetesConflictError):
    """Raised when a create races with another actor that created the object first."""

    def __init__(
        self,
        message: str = "Resource already exists",
        resource_type: str | None = None,
        resource_name: str | None = None,
        namespace: str | None = None,
    ) -> None:
        if resource_type and resource_name:
            message = f"{resource_type} '{resource_name}' already exists"
            if namespace:
                message += f" in namespace '{namespace}'"
        KubernetesError.__init__(
            self,
            message=message,
            status_code=409,
            resource_type=resource_type,
            resource_name=resource_name,
            namespace=namespace,
        )
        self.expected_version = None


class KubernetesTimeoutError(KubernetesError):
    """Raised when a Kubernetes API request exceeds its timeout."""

    def __init__(
        self,
        message: str = "Kubernetes operation timed out",
        timeout_seconds: int | None = None,
    ) -> None:
        if timeout_seconds:
            message = f"{message} (after {timeout_seconds}s)"
        super().__init__(message=message)
        self.timeout_seconds = timeout_seconds
