"""AWS Secrets Manager integration configuration models."""

from __future__ import annotations

import os
from typing import Any

from pydantic import BaseModel, ConfigDict, field_validator, model_validator


class SecretsManagerRetryConfig(BaseModel):
    """Retry policy for transient Secrets Manager errors."""

    model_config = ConfigDict(extra="forbid")

    max_attempts: int = 5
    backoff_initial: float = 0.5
    backoff_max: float = 20.0
    backoff_jitter: float = 1.0

    @field_validator("max_attempts")
    @classmethod
    def validate_max_attempts(cls, v: int) -> int:
        """Validate max_attempts is at least one."""
        if v < 1:
            raise ValueError("max_attempts must be at least 1")
        return v

    @field_validator("backoff_initial", "backoff_max", "backoff_jitter")
    @classmethod
    def validate_non_negative(cls, v: float) -> float:
        """Validate backoff values are non-negative."""
        if v < 0:
            raise ValueError("backoff values must be non-negative")
        return v


class SecretsManagerRateConfig(BaseModel):
    """Client-side token bucket limits shared by all fetch workers."""

    model_config = ConfigDict(extra="forbid")

    requests_per_second: float = 20.0
    burst: int = 20
    min_requests_per_second: float = 1.0
    throttle_factor: float = 0.5

    @field_validator("requests_per_second", "min_requests_per_second")
    @classmethod
    def validate_rate(cls, v: float) -> float:
        """Validate rates are positive."""
        if v <= 0:
            raise ValueError("rates must be positive")
        return v

    @field_validator("burst")
    @classmethod
    def validate_burst(cls, v: int) -> int:
        """Validate burst allows at least one request."""
        if v < 1:
            raise ValueError("burst must be at least 1")
        return v

    @field_validator("throttle_factor")
    @classmethod
    def validate_throttle_factor(cls, v: float) -> float:
        """Validate the throttle factor actually reduces the rate."""
        if not 0 < v < 1:
            raise ValueError("throttle_factor must be between 0 and 1 (exclusive)")
        return v

    @model_validator(mode="after")
    def validate_min_rate(self) -> SecretsManagerRateConfig:
        """The floor cannot exceed the nominal rate."""
        if self.min_requests_per_second > self.requests_per_second:
            raise ValueError("min_requests_per_second must not exceed requests_per_second")
        return self


class SecretsManagerConfig(BaseModel):
    """Complete Secrets Manager client configuration."""

    model_config = ConfigDict(extra="forbid")

    region: str | None = None
    endpoint_url: str | None = None
    profile: str | None = None
    connect_timeout: float = 5.0
    read_timeout: float = 10.0
    version_stage: str = "AWSCURRENT"
    retry: SecretsManagerRetryConfig = SecretsManagerRetryConfig()
    rate: SecretsManagerRateConfig = SecretsManagerRateConfig()

    @field_validator("connect_timeout", "read_timeout")
    @classmethod
    def validate_timeout(cls, v: float) -> float:
        """Validate timeouts are positive."""
        if v <= 0:
            raise ValueError("timeouts must be positive")
        return v

    @classmethod
    def from_env(cls, base_config: dict[str, Any] | None = None) -> SecretsManagerConfig:
        """Create configuration with environment variable overrides.

        Supported environment variables:
            AWS_REGION / AWS_DEFAULT_REGION: Region of the secret store
            SYNC_AWS_ENDPOINT_URL: Alternate endpoint (e.g. LocalStack)
            SYNC_AWS_PROFILE: Named AWS profile
            SYNC_AWS_MAX_ATTEMPTS: Attempts for transient errors
            SYNC_AWS_REQUESTS_PER_SECOND: Client-side request rate
        """
        config_dict = base_config.copy() if base_config else {}
        retry = dict(config_dict.get("retry") or {})
        rate = dict(config_dict.get("rate") or {})

        if region := os.environ.get("AWS_REGION") or os.environ.get("AWS_DEFAULT_REGION"):
            config_dict.setdefault("region", region)

        if endpoint_url := os.environ.get("SYNC_AWS_ENDPOINT_URL"):
            config_dict["endpoint_url"] = endpoint_url

        if profile := os.environ.get("SYNC_AWS_PROFILE"):
            config_dict["profile"] = profile

        if max_attempts := os.environ.get("SYNC_AWS_MAX_ATTEMPTS"):
            retry["max_attempts"] = int(max_attempts)

        if rps := os.environ.get("SYNC_AWS_REQUESTS_PER_SECOND"):
            rate["requests_per_second"] = float(rps)
            rate.setdefault("min_requests_per_second", min(1.0, float(rps)))

        config_dict["retry"] = retry
        config_dict["rate"] = rate
        return cls.model_validate(config_dict)
