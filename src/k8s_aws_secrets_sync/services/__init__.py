"""Service layer: cluster secret management and the reconciliation engine."""
