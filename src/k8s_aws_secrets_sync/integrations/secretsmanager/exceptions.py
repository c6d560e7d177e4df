"""AWS Secrets Manager integration custom exceptions.

The hierarchy separates errors worth retrying (``SecretsManagerTransientError``
and its subclasses) from errors that surface immediately.
"""

from __future__ import annotations


class SecretsManagerError(Exception):
    """Base exception for Secrets Manager operations.

    Attributes:
        message: Human-readable error message.
        error_code: AWS error code (e.g. ``ResourceNotFoundException``).
        secret_id: Secret name or ARN involved, when known.
    """

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        secret_id: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.secret_id = secret_id

    def __str__(self) -> str:
        """Return string representation of the error."""
        parts = [self.message]
        if self.error_code:
            parts.append(f"({self.error_code})")
        if self.secret_id:
            parts.append(f"[secret {self.secret_id}]")
        return " ".join(parts)


class SecretsManagerNotFoundError(SecretsManagerError):
    """The secret (or the requested version/stage) does not exist."""

    def __init__(
        self,
        message: str = "Secret not found",
        error_code: str | None = "ResourceNotFoundException",
        secret_id: str | None = None,
    ) -> None:
        super().__init__(message=message, error_code=error_code, secret_id=secret_id)


class SecretsManagerAccessDeniedError(SecretsManagerError):
    """IAM or KMS refused the call; retrying will not help."""

    def __init__(
        self,
        message: str = "Access to secret denied",
        error_code: str | None = "AccessDeniedException",
        secret_id: str | None = None,
    ) -> None:
        super().__init__(message=message, error_code=error_code, secret_id=secret_id)


class SecretsManagerTransientError(SecretsManagerError):
    """A failure that may succeed on a later attempt (service-side 5xx)."""


class SecretsManagerThrottledError(SecretsManagerTransientError):
    """The API signalled throttling; callers should slow down."""

    def __init__(
        self,
        message: str = "Secrets Manager request throttled",
        error_code: str | None = "ThrottlingException",
        secret_id: str | None = None,
    ) -> None:
        super().__init__(message=message, error_code=error_code, secret_id=secret_id)


class SecretsManagerTimeoutError(SecretsManagerTransientError):
    """Connecting to or reading from the endpoint timed out or the connection dropped."""

    def __init__(
        self,
        message: str = "Secrets Manager request timed out",
        error_code: str | None = None,
        secret_id: str | None = None,
    ) -> None:
        super().__init__(message=message, error_code=error_code, secret_id=secret_id)
