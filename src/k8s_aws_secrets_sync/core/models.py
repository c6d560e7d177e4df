"""Domain models shared by the secret store, cluster and reconciliation layers.

All models are frozen: a value fetched or computed during a tick is never
mutated afterwards, and each tick builds fresh instances.
"""

from __future__ import annotations

import hashlib
import re
from collections.abc import Mapping
from datetime import UTC, datetime
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field, field_validator

DEFAULT_SECRET_TYPE = "Opaque"

# Random suffix AWS appends to secret names in full ARNs
ARN_SUFFIX = re.compile(r"-[A-Za-z0-9]{6}$")


def compute_fingerprint(data: Mapping[str, bytes]) -> str:
    """Hash a key/value payload into a stable content fingerprint.

    Keys are hashed in sorted order so insertion order does not matter. Values
    are hashed exactly as given; every field is length-prefixed so that
    ``{"ab": b"c"}`` and ``{"a": b"bc"}`` never collide.
    """
    digest = hashlib.sha256()
    for key in sorted(data):
        key_bytes = key.encode("utf-8")
        value = data[key]
        digest.update(len(key_bytes).to_bytes(8, "big"))
        digest.update(key_bytes)
        digest.update(len(value).to_bytes(8, "big"))
        digest.update(value)
    return f"sha256:{digest.hexdigest()}"


class ExternalSecretRef(BaseModel):
    """Reference to a secret in the external store."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    secret_id: str = Field(description="Secret name or ARN")
    version_stage: str | None = Field(default=None, description="Staging label, e.g. AWSCURRENT")
    version_id: str | None = Field(default=None, description="Pinned version id")
    last_known_revision: str | None = Field(
        default=None,
        description="Last-changed marker reported by list/describe",
    )
    tags: dict[str, str] = Field(default_factory=dict, description="Secret tags")

    @field_validator("secret_id")
    @classmethod
    def validate_secret_id(cls, v: str) -> str:
        """Reject empty identifiers."""
        if not v.strip():
            raise ValueError("secret_id must not be empty")
        return v

    @property
    def short_name(self) -> str:
        """Last path segment of the secret name (``a/b/db-creds`` -> ``db-creds``)."""
        name = self.secret_id
        if name.startswith("arn:"):
            # arn:aws:secretsmanager:region:account:secret:name-AbCdEf
            name = ARN_SUFFIX.sub("", name.split(":secret:", 1)[-1])
        return name.rstrip("/").rsplit("/", 1)[-1]


class SecretPayload(BaseModel):
    """Key/value secret content plus its fingerprint."""

    model_config = ConfigDict(frozen=True)

    data: dict[str, bytes]
    fingerprint: str

    @classmethod
    def from_data(cls, data: Mapping[str, bytes]) -> SecretPayload:
        """Build a payload and compute its fingerprint over the exact bytes."""
        return cls(data=dict(data), fingerprint=compute_fingerprint(data))

    @property
    def keys(self) -> list[str]:
        """Data keys in their original order."""
        return list(self.data)


class ClusterSecretCoordinates(BaseModel):
    """Namespace, name and type identifying one Kubernetes Secret."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    namespace: str
    name: str
    type: str = DEFAULT_SECRET_TYPE

    @field_validator("namespace", "name")
    @classmethod
    def validate_not_empty(cls, v: str) -> str:
        """Reject empty namespace or name."""
        if not v.strip():
            raise ValueError("namespace and name must not be empty")
        return v.strip()

    @property
    def key(self) -> tuple[str, str]:
        """Identity used for duplicate-target detection."""
        return (self.namespace, self.name)

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


class MappingEntry(BaseModel):
    """Binds one external secret to one or more cluster secrets."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    source: ExternalSecretRef
    targets: tuple[ClusterSecretCoordinates, ...]
    filename: str | None = Field(
        default=None,
        description="Render the payload as KEY=VALUE lines under this single data key",
    )
    origin: str = Field(default="", description="Discovery rule that produced this entry")

    @field_validator("targets")
    @classmethod
    def validate_targets(
        cls, v: tuple[ClusterSecretCoordinates, ...]
    ) -> tuple[ClusterSecretCoordinates, ...]:
        """Require at least one target and drop repeats of the same target."""
        if not v:
            raise ValueError("a mapping entry needs at least one target")
        unique: dict[tuple[str, str], ClusterSecretCoordinates] = {}
        for target in v:
            unique.setdefault(target.key, target)
        return tuple(unique.values())


class CurrentState(BaseModel):
    """A Kubernetes Secret as last read from the API server."""

    model_config = ConfigDict(frozen=True)

    coordinates: ClusterSecretCoordinates
    data: dict[str, bytes] = Field(default_factory=dict)
    fingerprint: str | None = None
    resource_version: str | None = None
    source_id: str | None = None
    labels: dict[str, str] = Field(default_factory=dict)
    annotations: dict[str, str] = Field(default_factory=dict)


class Action(StrEnum):
    """What the diff engine decided to do with a target."""

    NOOP = "noop"
    CREATE = "create"
    UPDATE = "update"


class Decision(BaseModel):
    """Diff result: the action and, for writes, the full payload to apply."""

    model_config = ConfigDict(frozen=True)

    action: Action
    payload: SecretPayload | None = None
    unmanaged: bool = Field(
        default=False,
        description="The existing object had no fingerprint annotation",
    )


class OutcomeStatus(StrEnum):
    """Per-target result of one tick."""

    UNCHANGED = "unchanged"
    UPDATED = "updated"
    CREATED = "created"
    FAILED = "failed"


class ReconciliationOutcome(BaseModel):
    """Recorded result for one (mapping entry, target) pair."""

    model_config = ConfigDict(frozen=True)

    source_id: str
    coordinates: ClusterSecretCoordinates
    status: OutcomeStatus
    fingerprint: str | None = None
    reason: str | None = None
    error_type: str | None = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @classmethod
    def failed(
        cls,
        source_id: str,
        coordinates: ClusterSecretCoordinates,
        reason: str,
        error_type: str | None = None,
    ) -> ReconciliationOutcome:
        """Build a failed outcome."""
        return cls(
            source_id=source_id,
            coordinates=coordinates,
            status=OutcomeStatus.FAILED,
            reason=reason,
            error_type=error_type,
        )


class TickSummary(BaseModel):
    """Aggregate of all outcomes of one reconciliation pass."""

    model_config = ConfigDict(frozen=True)

    tick_id: int
    started_at: datetime
    finished_at: datetime
    outcomes: tuple[ReconciliationOutcome, ...] = ()

    @property
    def counts(self) -> dict[str, int]:
        """Number of outcomes per status; every status is present."""
        counts = {status.value: 0 for status in OutcomeStatus}
        for outcome in self.outcomes:
            counts[outcome.status.value] += 1
        return counts

    @property
    def failures(self) -> list[ReconciliationOutcome]:
        """Failed outcomes only."""
        return [o for o in self.outcomes if o.status is OutcomeStatus.FAILED]

    @property
    def succeeded(self) -> bool:
        """True when no outcome failed."""
        return not self.failures

    @property
    def duration_seconds(self) -> float:
        """Wall-clock duration of the tick."""
        return (self.finished_at - self.started_at).total_seconds()
