"""Reconcile AWS Secrets Manager secrets into Kubernetes Secrets."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("k8s-aws-secrets-sync")
except PackageNotFoundError:
    __version__ = "0.0.0.dev0"

__all__ = ["__version__"]
