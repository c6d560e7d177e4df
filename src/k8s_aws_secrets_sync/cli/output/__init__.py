"""CLI output utilities.

Rich tables for discovery files, resolved mappings and tick summaries.

Usage:
    from k8s_aws_secrets_sync.cli.output import summary_table

    console.print(summary_table(summary))
"""

from k8s_aws_secrets_sync.cli.output.table import discovery_table, mapping_table, summary_table

__all__ = ["discovery_table", "mapping_table", "summary_table"]
