"""Shared pytest fixtures for k8s_aws_secrets_sync tests."""

from __future__ import annotations

import os
from pathlib import Path

import pytest
import typer
from typer.testing import CliRunner

from k8s_aws_secrets_sync.cli.main import app


@pytest.fixture
def cli_runner() -> CliRunner:
    """Create a Typer CLI test runner."""
    return CliRunner()


@pytest.fixture
def discovery_file(tmp_path: Path) -> Path:
    """Write a small valid discovery file."""
    path = tmp_path / "discovery.yaml"
    path.write_text(
        """
selectorGracePeriod: 60
entries:
  - source: prod/payments/db-creds
    targetNamespace: payments
    targetName: db-creds
  - source: shared/registry-token
    namespaceSelector: team=payments
    filename: registry.env
tags:
  namespaceTag: k8s/namespace
"""
    )
    return path


@pytest.fixture(autouse=True)
def reset_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    """Reset environment variables for each test."""
    # Clear any SYNC_ prefixed and AWS region variables
    for key in list(os.environ.keys()):
        if key.startswith("SYNC_") or key in ("AWS_REGION", "AWS_DEFAULT_REGION"):
            monkeypatch.delenv(key, raising=False)


@pytest.fixture
def cli_app() -> typer.Typer:
    """Return the CLI app for testing."""
    return app
