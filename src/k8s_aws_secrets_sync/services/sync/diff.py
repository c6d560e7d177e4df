"""Drift detection between a desired payload and the cluster's current Secret."""

from __future__ import annotations

import structlog

from k8s_aws_secrets_sync.core.models import (
    Action,
    CurrentState,
    Decision,
    SecretPayload,
)

logger = structlog.get_logger()


def decide(desired: SecretPayload, current: CurrentState | None) -> Decision:
    """Decide what to do with one target.

    Comparison is by fingerprint annotation only: the Secret is left alone when
    the annotation matches, created when absent, and otherwise replaced with
    the full desired payload. Key-level merging is never attempted.

    A Secret without a fingerprint annotation was not written by this
    controller; it is still replaced, but flagged so operators can review the
    overwrite.
    """
    if current is None:
        return Decision(action=Action.CREATE, payload=desired)

    if current.fingerprint is None:
        logger.warning(
            "overwriting_unmanaged_secret",
            namespace=current.coordinates.namespace,
            name=current.coordinates.name,
            existing_keys=sorted(current.data),
        )
        return Decision(action=Action.UPDATE, payload=desired, unmanaged=True)

    if current.fingerprint == desired.fingerprint:
        return Decision(action=Action.NOOP)

    logger.debug(
        "drift_detected",
        namespace=current.coordinates.namespace,
        name=current.coordinates.name,
        current_fingerprint=current.fingerprint,
        desired_fingerprint=desired.fingerprint,
    )
    return Decision(action=Action.UPDATE, payload=desired)


def render_file_payload(payload: SecretPayload, filename: str) -> SecretPayload:
    """Collapse a payload into a single ``KEY=VALUE`` file under ``filename``.

    Lines keep the payload's key order, one per key, newline terminated.
    """
    content = b"".join(
        key.encode("utf-8") + b"=" + value + b"\n" for key, value in payload.data.items()
    )
    return SecretPayload.from_data({filename: content})


def shape_payload(payload: SecretPayload, filename: str | None) -> SecretPayload:
    """Apply the entry's payload layout (file-style or one key per value)."""
    if filename:
        return render_file_payload(payload, filename)
    return payload
