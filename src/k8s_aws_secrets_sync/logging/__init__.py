"""Logging configuration for k8s_aws_secrets_sync."""

from k8s_aws_secrets_sync.logging.config import configure_logging, get_logger

__all__ = ["configure_logging", "get_logger"]
