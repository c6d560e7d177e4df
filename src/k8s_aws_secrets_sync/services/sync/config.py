"""Discovery and reconciler configuration models.

The discovery file is YAML with camelCase keys, for example::

    selectorGracePeriod: 120
    emptySelectorPolicy: fail
    entries:
      - source: prod/payments/db-creds
        targetNamespace: payments
        targetName: db-creds
      - source: shared/registry-token
        namespaceSelector: team=payments
        filename: registry.env
    tags:
      namespaceTag: k8s/namespace
      secretNameTag: k8s/secret-name
      filenameTag: k8s/filename
    naming:
      prefix: k8s/
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import (
    BaseModel,
    ConfigDict,
    ValidationError,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

from k8s_aws_secrets_sync.core.models import DEFAULT_SECRET_TYPE
from k8s_aws_secrets_sync.services.sync.exceptions import DiscoveryError

_DISCOVERY_MODEL_CONFIG = ConfigDict(
    extra="forbid",
    alias_generator=to_camel,
    populate_by_name=True,
    str_strip_whitespace=True,
)


class ManifestEntry(BaseModel):
    """One explicitly declared mapping."""

    model_config = _DISCOVERY_MODEL_CONFIG

    source: str
    target_namespace: str | None = None
    namespace_selector: str | None = None
    target_name: str | None = None
    type: str = DEFAULT_SECRET_TYPE
    filename: str | None = None
    version_stage: str | None = None

    @field_validator("source")
    @classmethod
    def validate_source(cls, v: str) -> str:
        """Require a non-empty source id."""
        if not v:
            raise ValueError("source must not be empty")
        return v

    @model_validator(mode="after")
    def validate_target(self) -> ManifestEntry:
        """Exactly one of targetNamespace and namespaceSelector must be set."""
        if bool(self.target_namespace) == bool(self.namespace_selector):
            raise ValueError("set exactly one of targetNamespace or namespaceSelector")
        return self


class TagDiscoveryConfig(BaseModel):
    """Discover secrets by their AWS tags.

    Secrets carrying ``namespaceTag`` are synced into every namespace listed
    (space separated) in that tag's value.
    """

    model_config = _DISCOVERY_MODEL_CONFIG

    namespace_tag: str
    secret_name_tag: str | None = None
    filename_tag: str | None = None
    type_tag: str | None = None


class NamingDiscoveryConfig(BaseModel):
    """Discover secrets by name: ``<prefix><namespace>/<name>``."""

    model_config = _DISCOVERY_MODEL_CONFIG

    prefix: str
    type: str = DEFAULT_SECRET_TYPE

    @field_validator("prefix")
    @classmethod
    def validate_prefix(cls, v: str) -> str:
        """Require a non-empty prefix ending in a slash."""
        if not v:
            raise ValueError("prefix must not be empty")
        return v if v.endswith("/") else f"{v}/"


class DiscoveryConfig(BaseModel):
    """Complete discovery configuration."""

    model_config = _DISCOVERY_MODEL_CONFIG

    entries: list[ManifestEntry] = []
    tags: TagDiscoveryConfig | None = None
    naming: NamingDiscoveryConfig | None = None
    selector_grace_period: float = 0.0
    empty_selector_policy: Literal["fail", "ignore"] = "fail"

    @field_validator("selector_grace_period")
    @classmethod
    def validate_grace_period(cls, v: float) -> float:
        """Validate grace period is non-negative."""
        if v < 0:
            raise ValueError("selectorGracePeriod must be non-negative")
        return v

    @model_validator(mode="after")
    def validate_has_source(self) -> DiscoveryConfig:
        """At least one discovery source must be configured."""
        if not self.entries and self.tags is None and self.naming is None:
            raise ValueError("configure at least one of entries, tags or naming")
        return self


def parse_discovery_config(data: Any, source: str = "<discovery>") -> DiscoveryConfig:
    """Validate a decoded discovery document.

    Raises:
        DiscoveryError: If the document does not match the schema.
    """
    if not isinstance(data, dict):
        raise DiscoveryError(f"{source}: discovery configuration must be a mapping")
    try:
        return DiscoveryConfig.model_validate(data)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or '<root>'}: {err['msg']}"
            for err in e.errors()
        )
        raise DiscoveryError(f"{source}: invalid discovery configuration: {problems}") from e


def load_discovery_config(path: Path | str) -> DiscoveryConfig:
    """Load and validate a YAML discovery file.

    Raises:
        DiscoveryError: If the file is unreadable, not YAML, or invalid.
    """
    path = Path(path)
    try:
        text = path.read_text()
    except OSError as e:
        raise DiscoveryError(f"Cannot read discovery configuration {path}: {e}") from e
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise DiscoveryError(f"{path}: malformed YAML: {e}") from e
    return parse_discovery_config(data, source=str(path))


class ReconcilerConfig(BaseModel):
    """Scheduling and concurrency settings for the reconciliation loop."""

    model_config = ConfigDict(extra="forbid")

    interval: float = 60.0
    interval_jitter: float = 0.1
    concurrency: int = 8
    tick_timeout: float | None = 300.0

    @field_validator("interval")
    @classmethod
    def validate_interval(cls, v: float) -> float:
        """Validate interval is positive."""
        if v <= 0:
            raise ValueError("interval must be positive")
        return v

    @field_validator("interval_jitter")
    @classmethod
    def validate_jitter(cls, v: float) -> float:
        """Jitter is a fraction of the interval."""
        if not 0 <= v < 1:
            raise ValueError("interval_jitter must be in [0, 1)")
        return v

    @field_validator("concurrency")
    @classmethod
    def validate_concurrency(cls, v: int) -> int:
        """Validate concurrency is at least one worker."""
        if v < 1:
            raise ValueError("concurrency must be at least 1")
        return v

    @field_validator("tick_timeout")
    @classmethod
    def validate_tick_timeout(cls, v: float | None) -> float | None:
        """Validate the hard tick timeout is positive when set."""
        if v is not None and v <= 0:
            raise ValueError("tick_timeout must be positive")
        return v

    @classmethod
    def from_env(cls, base_config: dict[str, Any] | None = None) -> ReconcilerConfig:
        """Create configuration with environment variable overrides.

        Supported environment variables:
            SYNC_INTERVAL: Seconds between ticks
            SYNC_CONCURRENCY: Worker count per tick
            SYNC_TICK_TIMEOUT: Hard limit for one tick in seconds
        """
        config_dict = base_config.copy() if base_config else {}

        if interval := os.environ.get("SYNC_INTERVAL"):
            config_dict["interval"] = float(interval)

        if concurrency := os.environ.get("SYNC_CONCURRENCY"):
            config_dict["concurrency"] = int(concurrency)

        if tick_timeout := os.environ.get("SYNC_TICK_TIMEOUT"):
            config_dict["tick_timeout"] = float(tick_timeout)

        return cls.model_validate(config_dict)
