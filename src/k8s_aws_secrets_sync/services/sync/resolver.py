"""Mapping resolution: which external secret goes to which cluster Secrets.

Three discovery sources are combined, in this order:

1. explicit manifest ``entries`` (fixed namespace or namespace label selector)
2. AWS tags (``tags``), one secret into the namespaces listed in a tag
3. naming convention (``naming``), ``<prefix><namespace>/<name>``

Every target may be claimed by exactly one source; a second claim fails the
whole resolution with ``MappingConflictError``.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING

import structlog
from pydantic import ValidationError

from k8s_aws_secrets_sync.core.models import (
    DEFAULT_SECRET_TYPE,
    ClusterSecretCoordinates,
    ExternalSecretRef,
    MappingEntry,
)
from k8s_aws_secrets_sync.integrations.kubernetes.exceptions import KubernetesError
from k8s_aws_secrets_sync.integrations.secretsmanager.exceptions import SecretsManagerError
from k8s_aws_secrets_sync.services.sync.exceptions import DiscoveryError, MappingConflictError

if TYPE_CHECKING:
    from k8s_aws_secrets_sync.integrations.secretsmanager.ratelimit import (
        TokenBucketRateLimiter,
    )
    from k8s_aws_secrets_sync.services.sync.config import (
        DiscoveryConfig,
        ManifestEntry,
        NamingDiscoveryConfig,
        TagDiscoveryConfig,
    )
    from k8s_aws_secrets_sync.services.sync.protocols import ClusterSecretStore, SecretStore

logger = structlog.get_logger()


@dataclass(frozen=True)
class MappingSnapshot:
    """Result of the last successful resolution."""

    entries: tuple[MappingEntry, ...]
    resolved_at: datetime
    empty_selectors: dict[str, float] = field(default_factory=dict)

    @property
    def target_count(self) -> int:
        """Number of cluster Secrets covered by the mapping."""
        return sum(len(entry.targets) for entry in self.entries)


def check_conflicts(entries: list[MappingEntry]) -> None:
    """Fail if any two entries target the same Secret.

    Raises:
        MappingConflictError: Naming the target and both claiming sources.
    """
    claimed: dict[tuple[str, str], str] = {}
    for entry in entries:
        for target in entry.targets:
            if target.key in claimed:
                raise MappingConflictError(str(target), claimed[target.key], entry.origin)
            claimed[target.key] = entry.origin


class MappingResolver:
    """Derives mapping entries from the discovery configuration.

    Reads cluster namespaces and secret store metadata; never writes.

    Example:
        >>> resolver = MappingResolver(config, store, cluster)
        >>> entries = resolver.resolve()
    """

    def __init__(
        self,
        config: DiscoveryConfig,
        store: SecretStore,
        cluster: ClusterSecretStore,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config
        self._store = store
        self._cluster = cluster
        self._clock = clock
        self._snapshot: MappingSnapshot | None = None
        # selector -> monotonic time it was first seen matching nothing
        self._empty_since: dict[str, float] = {}

    @property
    def snapshot(self) -> MappingSnapshot | None:
        """Last successful resolution, if any."""
        return self._snapshot

    def resolve(self, *, limiter: TokenBucketRateLimiter | None = None) -> tuple[MappingEntry, ...]:
        """Resolve the current mapping.

        Args:
            limiter: Shared rate limiter for secret store listing calls.

        Returns:
            Entries sorted by source id, then origin.

        Raises:
            DiscoveryError: Listing failed, or a selector stayed empty past the
                grace period.
            MappingConflictError: Two sources target the same Secret.
        """
        namespace_cache: dict[str, list[str]] = {}
        entries: list[MappingEntry] = []

        try:
            for index, manifest_entry in enumerate(self._config.entries):
                entry = self._from_manifest(index, manifest_entry, namespace_cache)
                if entry is not None:
                    entries.append(entry)

            if self._config.tags is not None:
                entries.extend(self._from_tags(self._config.tags, limiter))

            if self._config.naming is not None:
                entries.extend(self._from_naming(self._config.naming, limiter))
        except SecretsManagerError as e:
            raise DiscoveryError(f"Listing secrets for discovery failed: {e}") from e
        except KubernetesError as e:
            raise DiscoveryError(f"Listing namespaces for discovery failed: {e}") from e

        check_conflicts(entries)

        ordered = tuple(sorted(entries, key=lambda e: (e.source.secret_id, e.origin)))
        self._snapshot = MappingSnapshot(
            entries=ordered,
            resolved_at=datetime.now(UTC),
            empty_selectors=dict(self._empty_since),
        )
        logger.info(
            "mapping_resolved",
            entries=len(ordered),
            targets=self._snapshot.target_count,
        )
        return ordered

    # =========================================================================
    # Manifest Entries
    # =========================================================================

    def _from_manifest(
        self,
        index: int,
        manifest_entry: ManifestEntry,
        namespace_cache: dict[str, list[str]],
    ) -> MappingEntry | None:
        origin = f"entries[{index}] ({manifest_entry.source})"
        source = ExternalSecretRef(
            secret_id=manifest_entry.source,
            version_stage=manifest_entry.version_stage,
        )

        if manifest_entry.target_namespace:
            namespaces = [manifest_entry.target_namespace]
        elif manifest_entry.namespace_selector:
            namespaces = self._select_namespaces(
                manifest_entry.namespace_selector, namespace_cache, origin
            )
            if not namespaces:
                return None
        else:
            raise DiscoveryError(f"{origin}: no targetNamespace or namespaceSelector")

        name = manifest_entry.target_name or source.short_name
        return MappingEntry(
            source=source,
            targets=tuple(
                ClusterSecretCoordinates(namespace=ns, name=name, type=manifest_entry.type)
                for ns in namespaces
            ),
            filename=manifest_entry.filename,
            origin=origin,
        )

    def _select_namespaces(
        self,
        selector: str,
        namespace_cache: dict[str, list[str]],
        origin: str,
    ) -> list[str]:
        """Namespaces matching ``selector``, applying the empty-selector policy."""
        if selector not in namespace_cache:
            namespace_cache[selector] = self._cluster.list_namespaces(label_selector=selector)
        namespaces = namespace_cache[selector]

        if namespaces:
            self._empty_since.pop(selector, None)
            return namespaces

        now = self._clock()
        first_empty = self._empty_since.setdefault(selector, now)
        elapsed = now - first_empty

        if self._config.empty_selector_policy == "ignore":
            logger.warning("namespace_selector_empty", selector=selector, origin=origin)
            return []

        if elapsed >= self._config.selector_grace_period:
            raise DiscoveryError(
                f"namespaceSelector '{selector}' of {origin} matched no namespaces "
                f"for {elapsed:.0f}s (grace period {self._config.selector_grace_period:.0f}s)"
            )

        logger.warning(
            "namespace_selector_empty_within_grace",
            selector=selector,
            origin=origin,
            elapsed_seconds=round(elapsed, 1),
            grace_period_seconds=self._config.selector_grace_period,
        )
        return []

    # =========================================================================
    # Tag Discovery
    # =========================================================================

    def _from_tags(
        self,
        tags_config: TagDiscoveryConfig,
        limiter: TokenBucketRateLimiter | None,
    ) -> list[MappingEntry]:
        refs = self._store.list_secrets(tag_keys=[tags_config.namespace_tag], limiter=limiter)
        entries: list[MappingEntry] = []
        for ref in sorted(refs, key=lambda r: r.secret_id):
            origin = f"tag '{tags_config.namespace_tag}' on {ref.secret_id}"
            namespaces = ref.tags.get(tags_config.namespace_tag, "").split()
            if not namespaces:
                logger.warning("skipping_secret_without_namespaces", secret_id=ref.secret_id)
                continue

            name = ref.short_name
            if tags_config.secret_name_tag:
                name = ref.tags.get(tags_config.secret_name_tag) or name
            secret_type = DEFAULT_SECRET_TYPE
            if tags_config.type_tag:
                secret_type = ref.tags.get(tags_config.type_tag) or secret_type
            filename = ref.tags.get(tags_config.filename_tag) if tags_config.filename_tag else None

            entry = self._build_entry(ref, namespaces, name, secret_type, filename, origin)
            if entry is not None:
                entries.append(entry)
        return entries

    # =========================================================================
    # Naming Convention
    # =========================================================================

    def _from_naming(
        self,
        naming: NamingDiscoveryConfig,
        limiter: TokenBucketRateLimiter | None,
    ) -> list[MappingEntry]:
        refs = self._store.list_secrets(name_prefix=naming.prefix, limiter=limiter)
        entries: list[MappingEntry] = []
        for ref in sorted(refs, key=lambda r: r.secret_id):
            if not ref.secret_id.startswith(naming.prefix):
                continue
            parts = ref.secret_id[len(naming.prefix) :].split("/")
            if len(parts) != 2 or not all(parts):
                logger.warning(
                    "skipping_unmappable_secret",
                    secret_id=ref.secret_id,
                    expected=f"{naming.prefix}<namespace>/<name>",
                )
                continue
            namespace, name = parts
            origin = f"naming prefix '{naming.prefix}' on {ref.secret_id}"
            entry = self._build_entry(ref, [namespace], name, naming.type, None, origin)
            if entry is not None:
                entries.append(entry)
        return entries

    @staticmethod
    def _build_entry(
        ref: ExternalSecretRef,
        namespaces: list[str],
        name: str,
        secret_type: str,
        filename: str | None,
        origin: str,
    ) -> MappingEntry | None:
        """Build an entry from store metadata, skipping unusable tag values."""
        try:
            return MappingEntry(
                source=ref,
                targets=tuple(
                    ClusterSecretCoordinates(namespace=ns, name=name, type=secret_type)
                    for ns in namespaces
                ),
                filename=filename,
                origin=origin,
            )
        except ValidationError as e:
            logger.warning("skipping_invalid_mapping", origin=origin, error=str(e))
            return None
