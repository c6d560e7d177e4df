"""Kubernetes integration configuration models."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, field_validator


class KubernetesDefaultsConfig(BaseModel):
    """Default settings for Kubernetes API calls."""

    model_config = ConfigDict(extra="forbid")

    timeout: int = 30
    retry_attempts: int = 3

    @field_validator("timeout")
    @classmethod
    def validate_timeout(cls, v: int) -> int:
        """Validate timeout is positive."""
        if v <= 0:
            raise ValueError("timeout must be positive")
        return v

    @field_validator("retry_attempts")
    @classmethod
    def validate_retry_attempts(cls, v: int) -> int:
        """Validate retry_attempts is at least one."""
        if v < 1:
            raise ValueError("retry_attempts must be at least 1")
        return v


class KubernetesConfig(BaseModel):
    """Connection settings for the target cluster.

    ``load_mode`` picks how credentials are found: ``auto`` tries the
    kubeconfig first and falls back to the in-cluster service account.
    """

    model_config = ConfigDict(extra="forbid")

    kubeconfig: str | None = None
    context: str | None = None
    load_mode: Literal["auto", "kubeconfig", "in_cluster"] = "auto"
    defaults: KubernetesDefaultsConfig = KubernetesDefaultsConfig()

    @field_validator("kubeconfig")
    @classmethod
    def validate_kubeconfig(cls, v: str | None) -> str | None:
        """Expand ~ in kubeconfig path."""
        if v is None:
            return v
        return str(Path(v).expanduser())

    @classmethod
    def from_env(cls, base_config: dict[str, Any] | None = None) -> KubernetesConfig:
        """Create configuration with environment variable overrides.

        Environment variables take precedence over base_config values.

        Supported environment variables:
            SYNC_K8S_KUBECONFIG: Path to a kubeconfig file
            SYNC_K8S_CONTEXT: Kubeconfig context to use
            SYNC_K8S_LOAD_MODE: auto, kubeconfig or in_cluster
            SYNC_K8S_TIMEOUT: Per-request timeout in seconds
            SYNC_K8S_RETRY_ATTEMPTS: Attempts for transient API errors
        """
        config_dict = base_config.copy() if base_config else {}
        defaults = dict(config_dict.get("defaults") or {})

        if kubeconfig := os.environ.get("SYNC_K8S_KUBECONFIG"):
            config_dict["kubeconfig"] = kubeconfig

        if context := os.environ.get("SYNC_K8S_CONTEXT"):
            config_dict["context"] = context

        if load_mode := os.environ.get("SYNC_K8S_LOAD_MODE"):
            config_dict["load_mode"] = load_mode

        if timeout := os.environ.get("SYNC_K8S_TIMEOUT"):
            defaults["timeout"] = int(timeout)

        if retry_attempts := os.environ.get("SYNC_K8S_RETRY_ATTEMPTS"):
            defaults["retry_attempts"] = int(retry_attempts)

        config_dict["defaults"] = defaults
        return cls.model_validate(config_dict)
