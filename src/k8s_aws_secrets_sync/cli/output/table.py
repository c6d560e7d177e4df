"""Rich rendering of mappings and tick summaries."""

from __future__ import annotations

from typing import TYPE_CHECKING

from rich.table import Table

from k8s_aws_secrets_sync.core.models import OutcomeStatus

if TYPE_CHECKING:
    from k8s_aws_secrets_sync.core.models import MappingEntry, TickSummary
    from k8s_aws_secrets_sync.services.sync.config import DiscoveryConfig

STATUS_STYLES = {
    OutcomeStatus.UNCHANGED: "dim",
    OutcomeStatus.UPDATED: "yellow",
    OutcomeStatus.CREATED: "green",
    OutcomeStatus.FAILED: "bold red",
}


def discovery_table(config: DiscoveryConfig) -> Table:
    """Overview of the configured discovery sources."""
    table = Table(title="Discovery Configuration")
    table.add_column("Source", style="cyan", no_wrap=True)
    table.add_column("Details", overflow="fold")

    for index, entry in enumerate(config.entries):
        target = entry.target_namespace or f"selector {entry.namespace_selector}"
        details = f"{entry.source} -> {target}/{entry.target_name or '<short name>'}"
        if entry.filename:
            details += f" (file {entry.filename})"
        table.add_row(f"entries[{index}]", details)
    if config.tags is not None:
        table.add_row("tags", f"namespaces from tag '{config.tags.namespace_tag}'")
    if config.naming is not None:
        table.add_row("naming", f"{config.naming.prefix}<namespace>/<name>")
    table.add_row(
        "empty selectors",
        f"{config.empty_selector_policy} after {config.selector_grace_period:g}s",
    )
    return table


def mapping_table(entries: tuple[MappingEntry, ...]) -> Table:
    """One row per (external secret, cluster Secret) pair."""
    table = Table(title="Resolved Mapping")
    table.add_column("External Secret", style="cyan", overflow="fold")
    table.add_column("Namespace", style="green", no_wrap=True)
    table.add_column("Name", no_wrap=True)
    table.add_column("Type", style="dim")
    table.add_column("Origin", style="dim", overflow="fold")

    for entry in entries:
        for target in entry.targets:
            table.add_row(
                entry.source.secret_id,
                target.namespace,
                target.name,
                target.type,
                entry.origin,
            )
    return table


def summary_table(summary: TickSummary) -> Table:
    """Per-target outcomes of one tick."""
    counts = ", ".join(f"{status} {count}" for status, count in summary.counts.items())
    table = Table(title=f"Tick {summary.tick_id}: {counts}")
    table.add_column("Target", style="cyan", no_wrap=True)
    table.add_column("Source", overflow="fold")
    table.add_column("Status", no_wrap=True)
    table.add_column("Reason", style="dim", overflow="fold")

    for outcome in summary.outcomes:
        style = STATUS_STYLES[outcome.status]
        table.add_row(
            str(outcome.coordinates),
            outcome.source_id,
            f"[{style}]{outcome.status.value}[/{style}]",
            outcome.reason or "",
        )
    return table
