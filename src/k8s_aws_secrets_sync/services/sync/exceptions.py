"""Reconciliation engine exceptions.

Per-entry errors come from the integrations (Secrets Manager, Kubernetes) and
are converted to failed outcomes. The errors here abort a whole tick.
"""

from __future__ import annotations


class SyncError(Exception):
    """Base exception for reconciliation engine errors."""


class DiscoveryError(SyncError):
    """The discovery configuration is invalid or cannot be resolved.

    Raised at startup for malformed configuration files (fatal) and during a
    tick when discovery cannot produce a trustworthy mapping (tick-aborting).
    """


class MappingConflictError(DiscoveryError):
    """Two discovery sources target the same cluster secret.

    Attributes:
        target: ``namespace/name`` of the contested Secret.
        first_origin: Discovery rule that claimed the target first.
        second_origin: Discovery rule that claimed it again.
    """

    def __init__(self, target: str, first_origin: str, second_origin: str) -> None:
        self.target = target
        self.first_origin = first_origin
        self.second_origin = second_origin
        super().__init__(
            f"Secret '{target}' is targeted by both {first_origin} and {second_origin}"
        )
