"""AWS Secrets Manager integration - read-only client, rate limiter and configuration."""

from k8s_aws_secrets_sync.integrations.secretsmanager.client import (
    SecretsManagerClient,
    decode_secret_value,
)
from k8s_aws_secrets_sync.integrations.secretsmanager.config import (
    SecretsManagerConfig,
    SecretsManagerRateConfig,
    SecretsManagerRetryConfig,
)
from k8s_aws_secrets_sync.integrations.secretsmanager.exceptions import (
    SecretsManagerAccessDeniedError,
    SecretsManagerError,
    SecretsManagerNotFoundError,
    SecretsManagerThrottledError,
    SecretsManagerTimeoutError,
    SecretsManagerTransientError,
)
from k8s_aws_secrets_sync.integrations.secretsmanager.ratelimit import TokenBucketRateLimiter

__all__ = [
    "SecretsManagerAccessDeniedError",
    "SecretsManagerClient",
    "SecretsManagerConfig",
    "SecretsManagerError",
    "SecretsManagerNotFoundError",
    "SecretsManagerRateConfig",
    "SecretsManagerRetryConfig",
    "SecretsManagerThrottledError",
    "SecretsManagerTimeoutError",
    "SecretsManagerTransientError",
    "TokenBucketRateLimiter",
    "decode_secret_value",
]
