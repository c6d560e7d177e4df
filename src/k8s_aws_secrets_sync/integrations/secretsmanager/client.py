"""AWS Secrets Manager API client wrapper.

Read-only wrapper over the boto3 ``secretsmanager`` client: list, describe and
get-secret-value, with tenacity retries for transient errors, a shared token
bucket for client-side rate limiting, and consistent error translation.
"""

from __future__ import annotations

import json
import re
from collections.abc import Callable
from datetime import datetime
from typing import TYPE_CHECKING, Any

import boto3
import structlog
from botocore.config import Config as BotoConfig
from botocore.exceptions import (
    ClientError,
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)
from tenacity import (
    RetryCallState,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from k8s_aws_secrets_sync.core.models import ExternalSecretRef, SecretPayload
from k8s_aws_secrets_sync.integrations.secretsmanager.exceptions import (
    SecretsManagerAccessDeniedError,
    SecretsManagerError,
    SecretsManagerNotFoundError,
    SecretsManagerThrottledError,
    SecretsManagerTimeoutError,
    SecretsManagerTransientError,
)

if TYPE_CHECKING:
    from k8s_aws_secrets_sync.integrations.secretsmanager.config import SecretsManagerConfig
    from k8s_aws_secrets_sync.integrations.secretsmanager.ratelimit import (
        TokenBucketRateLimiter,
    )

logger = structlog.get_logger()

# Data key used when the secret is not a JSON object
RAW_VALUE_KEY = "value"

NOT_FOUND_CODES = frozenset({"ResourceNotFoundException"})
ACCESS_DENIED_CODES = frozenset(
    {
        "AccessDeniedException",
        "AccessDenied",
        "DecryptionFailure",
        "ExpiredTokenException",
        "InvalidSignatureException",
        "UnrecognizedClientException",
    }
)
THROTTLING_CODES = frozenset(
    {
        "ThrottlingException",
        "Throttling",
        "TooManyRequestsException",
        "RequestLimitExceeded",
    }
)
TRANSIENT_CODES = frozenset({"InternalServiceError", "InternalFailure", "ServiceUnavailable"})


_DECODER = json.JSONDecoder()
_WHITESPACE = re.compile(r"[ \t\n\r]*")


def _skip_ws(text: str, idx: int) -> int:
    return _WHITESPACE.match(text, idx).end()  # type: ignore[union-attr]


def _object_members(text: str) -> dict[str, str | bytes] | None:
    """Split a JSON object into its members, keeping each value's source text.

    String values are unescaped; any other value is returned as the exact slice
    of ``text`` it was written as. Returns None when ``text`` is not a single
    JSON object.
    """
    idx = _skip_ws(text, 0)
    if not text.startswith("{", idx):
        return None
    idx = _skip_ws(text, idx + 1)
    members: dict[str, str | bytes] = {}
    if text.startswith("}", idx):
        idx += 1
    else:
        while True:
            if not text.startswith('"', idx):
                return None
            key, idx = _DECODER.raw_decode(text, idx)
            idx = _skip_ws(text, idx)
            if not text.startswith(":", idx):
                return None
            start = _skip_ws(text, idx + 1)
            value, idx = _DECODER.raw_decode(text, start)
            members[key] = value if isinstance(value, str) else text[start:idx].encode("utf-8")
            idx = _skip_ws(text, idx)
            if text.startswith(",", idx):
                idx = _skip_ws(text, idx + 1)
                continue
            if text.startswith("}", idx):
                idx += 1
                break
            return None
    if _skip_ws(text, idx) != len(text):
        return None
    return members


def decode_secret_value(response: dict[str, Any]) -> dict[str, bytes]:
    """Turn a GetSecretValue response into data keys and raw bytes.

    A JSON object secret string yields one key per JSON key; string values are
    UTF-8 encoded as-is and other JSON values keep the exact text they were
    stored with. Any other secret string, or a binary secret, lands under
    ``RAW_VALUE_KEY``.
    """
    if (secret_string := response.get("SecretString")) is not None:
        try:
            members = _object_members(secret_string)
        except ValueError:
            members = None
        if members is not None:
            return {
                key: value.encode("utf-8") if isinstance(value, str) else value
                for key, value in members.items()
            }
        return {RAW_VALUE_KEY: secret_string.encode("utf-8")}

    if (secret_binary := response.get("SecretBinary")) is not None:
        return {RAW_VALUE_KEY: bytes(secret_binary)}

    return {}


def _revision(entry: dict[str, Any]) -> str | None:
    changed = entry.get("LastChangedDate")
    if isinstance(changed, datetime):
        return changed.isoformat()
    return str(changed) if changed else None


def _ref_from_entry(entry: dict[str, Any]) -> ExternalSecretRef:
    tags = {tag["Key"]: tag.get("Value", "") for tag in entry.get("Tags") or [] if "Key" in tag}
    return ExternalSecretRef(
        secret_id=entry.get("Name") or entry["ARN"],
        last_known_revision=_revision(entry),
        tags=tags,
    )


class SecretsManagerClient:
    """Read-only AWS Secrets Manager client.

    Example:
        ```python
        config = SecretsManagerConfig.from_env()
        with SecretsManagerClient(config) as store:
            payload = store.fetch(ExternalSecretRef(secret_id="db-creds"))
        ```
    """

    def __init__(self, config: SecretsManagerConfig, *, client: Any | None = None) -> None:
        """Initialize the client.

        Args:
            config: Secrets Manager settings.
            client: Pre-built boto3 client (tests, custom sessions).
        """
        self._config = config
        self._client = client if client is not None else self._create_boto_client()
        logger.info(
            "Secrets Manager client initialized",
            region=config.region,
            endpoint_url=config.endpoint_url,
        )

    def _create_boto_client(self) -> Any:
        session = boto3.Session(
            profile_name=self._config.profile,
            region_name=self._config.region,
        )
        # Retries are driven by tenacity so the rate limiter sees every attempt
        boto_config = BotoConfig(
            retries={"max_attempts": 1, "mode": "standard"},
            connect_timeout=self._config.connect_timeout,
            read_timeout=self._config.read_timeout,
        )
        return session.client(
            "secretsmanager",
            endpoint_url=self._config.endpoint_url,
            config=boto_config,
        )

    # =========================================================================
    # Error Translation
    # =========================================================================

    @staticmethod
    def translate_client_error(e: Exception, secret_id: str | None = None) -> SecretsManagerError:
        """Translate a botocore exception to a custom exception.

        Args:
            e: The original exception.
            secret_id: Secret being operated on.

        Returns:
            An appropriate SecretsManagerError subclass.
        """
        if isinstance(e, SecretsManagerError):
            return e

        if isinstance(e, ConnectTimeoutError | ReadTimeoutError):
            return SecretsManagerTimeoutError(message=str(e), secret_id=secret_id)

        if isinstance(e, EndpointConnectionError | ConnectionClosedError):
            return SecretsManagerTimeoutError(
                message=f"Secrets Manager endpoint unreachable: {e}",
                secret_id=secret_id,
            )

        if not isinstance(e, ClientError):
            return SecretsManagerError(message=str(e), secret_id=secret_id)

        error = e.response.get("Error", {})
        code = error.get("Code", "Unknown")
        message = error.get("Message") or code

        if code in NOT_FOUND_CODES:
            return SecretsManagerNotFoundError(message=message, error_code=code, secret_id=secret_id)
        if code in ACCESS_DENIED_CODES:
            return SecretsManagerAccessDeniedError(
                message=message, error_code=code, secret_id=secret_id
            )
        if code in THROTTLING_CODES:
            return SecretsManagerThrottledError(message=message, error_code=code, secret_id=secret_id)
        if code in TRANSIENT_CODES:
            return SecretsManagerTransientError(message=message, error_code=code, secret_id=secret_id)

        return SecretsManagerError(message=message, error_code=code, secret_id=secret_id)

    # =========================================================================
    # Retry Decorator
    # =========================================================================

    @staticmethod
    def _log_retry(retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "secret_store_retrying",
            attempt=retry_state.attempt_number,
            sleep_seconds=retry_state.next_action.sleep if retry_state.next_action else None,
            error=str(error),
        )

    def make_retry_decorator(self) -> Any:
        """Create a retry decorator for transient Secrets Manager errors.

        Returns:
            A tenacity retry decorator with exponential backoff and jitter.
        """
        policy = self._config.retry
        return retry(
            retry=retry_if_exception_type(SecretsManagerTransientError),
            stop=stop_after_attempt(policy.max_attempts),
            wait=wait_exponential_jitter(
                initial=policy.backoff_initial,
                max=policy.backoff_max,
                jitter=policy.backoff_jitter,
            ),
            before_sleep=self._log_retry,
            reraise=True,
        )

    def _call(
        self,
        operation: Callable[..., Any],
        secret_id: str | None,
        limiter: TokenBucketRateLimiter | None,
        **params: Any,
    ) -> Any:
        """Invoke ``operation`` with rate limiting, translation and retries."""

        def attempt() -> Any:
            if limiter is not None:
                limiter.acquire()
            try:
                return operation(**params)
            except Exception as e:
                error = self.translate_client_error(e, secret_id)
                if isinstance(error, SecretsManagerThrottledError) and limiter is not None:
                    limiter.throttle()
                if error is e:
                    raise
                raise error from e

        return self.make_retry_decorator()(attempt)()

    # =========================================================================
    # Read Operations
    # =========================================================================

    def list_secrets(
        self,
        *,
        tag_keys: list[str] | None = None,
        name_prefix: str | None = None,
        limiter: TokenBucketRateLimiter | None = None,
    ) -> list[ExternalSecretRef]:
        """List secrets, optionally filtered by tag key and name prefix.

        Args:
            tag_keys: Only secrets carrying at least one of these tag keys.
            name_prefix: Only secrets whose name starts with this prefix.
            limiter: Shared rate limiter for this tick.

        Returns:
            References for every matching secret not scheduled for deletion.
        """
        filters: list[dict[str, Any]] = []
        if tag_keys:
            filters.append({"Key": "tag-key", "Values": list(tag_keys)})
        if name_prefix:
            filters.append({"Key": "name", "Values": [name_prefix]})

        def list_all() -> list[dict[str, Any]]:
            paginator = self._client.get_paginator("list_secrets")
            entries: list[dict[str, Any]] = []
            for page in paginator.paginate(Filters=filters):
                entries.extend(page.get("SecretList", []))
            return entries

        logger.debug("listing_secrets", filters=filters)
        entries = self._call(list_all, None, limiter)
        refs = [_ref_from_entry(entry) for entry in entries if not entry.get("DeletedDate")]
        logger.debug("listed_secrets", count=len(refs))
        return refs

    def describe(
        self,
        secret_id: str,
        *,
        limiter: TokenBucketRateLimiter | None = None,
    ) -> ExternalSecretRef:
        """Describe one secret (metadata only, no value)."""
        logger.debug("describing_secret", secret_id=secret_id)
        response = self._call(
            self._client.describe_secret,
            secret_id,
            limiter,
            SecretId=secret_id,
        )
        return _ref_from_entry(response)

    def fetch(
        self,
        ref: ExternalSecretRef,
        *,
        limiter: TokenBucketRateLimiter | None = None,
    ) -> SecretPayload:
        """Fetch a secret value and build its payload.

        Args:
            ref: Secret to fetch; ``version_id`` wins over ``version_stage``.
            limiter: Shared rate limiter for this tick.

        Returns:
            Payload whose fingerprint covers the exact returned bytes.

        Raises:
            SecretsManagerNotFoundError: Secret or version does not exist.
            SecretsManagerAccessDeniedError: IAM/KMS denied the read.
            SecretsManagerTransientError: Retries exhausted.
        """
        params: dict[str, Any] = {"SecretId": ref.secret_id}
        if ref.version_id:
            params["VersionId"] = ref.version_id
        else:
            params["VersionStage"] = ref.version_stage or self._config.version_stage

        logger.debug("fetching_secret", secret_id=ref.secret_id)
        response = self._call(self._client.get_secret_value, ref.secret_id, limiter, **params)
        payload = SecretPayload.from_data(decode_secret_value(response))
        logger.debug(
            "fetched_secret",
            secret_id=ref.secret_id,
            version_id=response.get("VersionId"),
            keys=len(payload.data),
            fingerprint=payload.fingerprint,
        )
        return payload

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def close(self) -> None:
        """Close the underlying HTTP connection pool."""
        close = getattr(self._client, "close", None)
        if callable(close):
            close()
        logger.debug("Secrets Manager client closed")

    def __enter__(self) -> SecretsManagerClient:
        """Context manager entry."""
        return self

    def __exit__(self, *args: Any) -> None:
        """Context manager exit."""
        self.close()
