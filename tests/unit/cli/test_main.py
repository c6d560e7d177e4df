"""Tests for main CLI module."""

from __future__ import annotations

from collections.abc import Generator
from pathlib import Path
from typing import Any
from unittest.mock import MagicMock, patch

import pytest
from typer.testing import CliRunner

from k8s_aws_secrets_sync import __version__
from k8s_aws_secrets_sync.cli.main import app
from k8s_aws_secrets_sync.integrations.kubernetes.exceptions import KubernetesConnectionError
from k8s_aws_secrets_sync.integrations.secretsmanager.exceptions import (
    SecretsManagerAccessDeniedError,
)
from k8s_aws_secrets_sync.services.sync.factory import SyncRuntime, assemble
from k8s_aws_secrets_sync.services.sync.fakes import InMemoryClusterSecrets, InMemorySecretStore


@pytest.fixture
def store() -> InMemorySecretStore:
    """Secret store holding both secrets of the sample discovery file."""
    store = InMemorySecretStore()
    store.put_secret("prod/payments/db-creds", {"username": "app", "password": "s3cret"})
    store.put_secret("shared/registry-token", {"TOKEN": "abc"})
    return store


@pytest.fixture
def cluster() -> InMemoryClusterSecrets:
    """Cluster with one namespace per team."""
    return InMemoryClusterSecrets({"payments": {"team": "payments"}, "billing": {"team": "billing"}})


@pytest.fixture
def mock_build_runtime(
    store: InMemorySecretStore, cluster: InMemoryClusterSecrets
) -> Generator[MagicMock]:
    """Replace the AWS/Kubernetes runtime with the in-memory one."""

    def build(discovery: Any, reconciler_config: Any, **_kwargs: Any) -> SyncRuntime:
        return assemble(discovery, store, cluster, reconciler_config)

    with (
        patch("k8s_aws_secrets_sync.cli.main.build_runtime", side_effect=build) as mock_build,
        patch("k8s_aws_secrets_sync.cli.main._install_signal_handlers"),
    ):
        yield mock_build


class TestCLIMain:
    """Test main CLI entry point."""

    @pytest.mark.unit
    def test_help_option(self, cli_runner: CliRunner) -> None:
        """Test --help option displays help text."""
        result = cli_runner.invoke(app, ["--help"])
        assert result.exit_code == 0
        assert "Kubernetes Secrets" in result.stdout

    @pytest.mark.unit
    def test_version_option(self, cli_runner: CliRunner) -> None:
        """Test --version option displays version."""
        result = cli_runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert f"k8s-aws-secrets-sync version {__version__}" in result.stdout

    @pytest.mark.unit
    def test_no_args_shows_help(self, cli_runner: CliRunner) -> None:
        """Test invoking without a command prints usage."""
        result = cli_runner.invoke(app, [])
        assert "Usage" in result.output


class TestValidateCommand:
    """Test validate command."""

    @pytest.mark.unit
    def test_valid_file(self, cli_runner: CliRunner, discovery_file: Path) -> None:
        """Test a valid discovery file is summarised."""
        result = cli_runner.invoke(app, ["validate", "--discovery", str(discovery_file)])
        assert result.exit_code == 0
        assert "Discovery configuration is valid" in result.stdout
        assert "prod/payments/db-creds" in result.stdout

    @pytest.mark.unit
    def test_discovery_from_env(
        self, cli_runner: CliRunner, discovery_file: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Test the discovery path can come from SYNC_DISCOVERY_FILE."""
        monkeypatch.setenv("SYNC_DISCOVERY_FILE", str(discovery_file))
        result = cli_runner.invoke(app, ["validate"])
        assert result.exit_code == 0

    @pytest.mark.unit
    def test_invalid_file(self, cli_runner: CliRunner, tmp_path: Path) -> None:
        """Test an invalid discovery file exits with code 1."""
        path = tmp_path / "bad.yaml"
        path.write_text("entries:\n  - source: prod/db\n")
        result = cli_runner.invoke(app, ["validate", "-d", str(path)])
        assert result.exit_code == 1


class TestResolveCommand:
    """Test resolve command."""

    @pytest.mark.unit
    def test_prints_mapping(
        self,
        cli_runner: CliRunner,
        discovery_file: Path,
        mock_build_runtime: MagicMock,
    ) -> None:
        """Test the resolved mapping is printed."""
        result = cli_runner.invoke(app, ["resolve", "-d", str(discovery_file)])
        assert result.exit_code == 0
        assert "Resolved Mapping" in result.stdout
        assert "registry-token" in result.stdout
        mock_build_runtime.assert_called_once()

    @pytest.mark.unit
    def test_resolution_failure(
        self,
        cli_runner: CliRunner,
        discovery_file: Path,
        cluster: InMemoryClusterSecrets,
        mock_build_runtime: MagicMock,
    ) -> None:
        """Test a selector matching nothing past its grace period exits 1."""
        del cluster.namespaces["payments"]
        path = discovery_file.with_name("strict.yaml")
        path.write_text(
            "entries:\n  - source: shared/registry-token\n    namespaceSelector: team=payments\n"
        )
        result = cli_runner.invoke(app, ["resolve", "-d", str(path)])
        assert result.exit_code == 1


class TestRunCommand:
    """Test run command."""

    @pytest.mark.unit
    def test_once_success(
        self,
        cli_runner: CliRunner,
        discovery_file: Path,
        cluster: InMemoryClusterSecrets,
        mock_build_runtime: MagicMock,
    ) -> None:
        """Test a single clean tick exits 0 and writes the Secrets."""
        result = cli_runner.invoke(app, ["run", "-d", str(discovery_file), "--once"])
        assert result.exit_code == 0
        assert "created 2" in result.stdout
        assert cluster.create_calls == 2

    @pytest.mark.unit
    def test_once_with_failures(
        self,
        cli_runner: CliRunner,
        discovery_file: Path,
        store: InMemorySecretStore,
        mock_build_runtime: MagicMock,
    ) -> None:
        """Test a tick with a failed target exits 1."""
        store.fail_with("prod/payments/db-creds", SecretsManagerAccessDeniedError())
        result = cli_runner.invoke(app, ["run", "-d", str(discovery_file), "--once"])
        assert result.exit_code == 1
        assert "failed 1" in result.stdout

    @pytest.mark.unit
    def test_cli_overrides_reconciler_settings(
        self,
        cli_runner: CliRunner,
        discovery_file: Path,
        mock_build_runtime: MagicMock,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        """Test command line options win over environment variables."""
        monkeypatch.setenv("SYNC_CONCURRENCY", "2")
        monkeypatch.setenv("SYNC_INTERVAL", "30")
        result = cli_runner.invoke(
            app, ["run", "-d", str(discovery_file), "--once", "-c", "5", "--tick-timeout", "10"]
        )
        assert result.exit_code == 0
        reconciler_config = mock_build_runtime.call_args.args[1]
        assert reconciler_config.concurrency == 5
        assert reconciler_config.interval == 30.0
        assert reconciler_config.tick_timeout == 10.0

    @pytest.mark.unit
    def test_invalid_settings(
        self, cli_runner: CliRunner, discovery_file: Path, mock_build_runtime: MagicMock
    ) -> None:
        """Test out of range options exit 1 before anything is built."""
        result = cli_runner.invoke(app, ["run", "-d", str(discovery_file), "-c", "0"])
        assert result.exit_code == 1
        mock_build_runtime.assert_not_called()

    @pytest.mark.unit
    def test_aborted_tick(self, cli_runner: CliRunner, discovery_file: Path) -> None:
        """Test an aborted tick exits 1 and reports the error."""
        runtime = MagicMock()
        runtime.reconciler.run_tick.return_value = None
        runtime.reporter.last_error = "listing failed"
        with (
            patch("k8s_aws_secrets_sync.cli.main.build_runtime", return_value=runtime),
            patch("k8s_aws_secrets_sync.cli.main._install_signal_handlers"),
        ):
            result = cli_runner.invoke(app, ["run", "-d", str(discovery_file), "--once"])
        assert result.exit_code == 1
        runtime.close.assert_called_once()

    @pytest.mark.unit
    def test_loop_mode(self, cli_runner: CliRunner, discovery_file: Path) -> None:
        """Test without --once the reconciliation loop runs."""
        runtime = MagicMock()
        with (
            patch("k8s_aws_secrets_sync.cli.main.build_runtime", return_value=runtime),
            patch("k8s_aws_secrets_sync.cli.main._install_signal_handlers") as mock_signals,
        ):
            result = cli_runner.invoke(app, ["run", "-d", str(discovery_file)])
        assert result.exit_code == 0
        runtime.reconciler.run.assert_called_once_with()
        mock_signals.assert_called_once_with(runtime.reconciler)
        runtime.close.assert_called_once()

    @pytest.mark.unit
    def test_startup_failure(self, cli_runner: CliRunner, discovery_file: Path) -> None:
        """Test an unreachable cluster at startup exits 1."""
        with patch(
            "k8s_aws_secrets_sync.cli.main.build_runtime",
            side_effect=KubernetesConnectionError("no kubeconfig"),
        ):
            result = cli_runner.invoke(app, ["run", "-d", str(discovery_file), "--once"])
        assert result.exit_code == 1

    @pytest.mark.unit
    @pytest.mark.parametrize(
        ("variable", "value"),
        [("SYNC_AWS_MAX_ATTEMPTS", "many"), ("SYNC_K8S_TIMEOUT", "30s")],
    )
    def test_malformed_client_environment(
        self,
        cli_runner: CliRunner,
        discovery_file: Path,
        monkeypatch: pytest.MonkeyPatch,
        variable: str,
        value: str,
    ) -> None:
        """Test a non-numeric client setting exits 1 without a traceback."""
        monkeypatch.setenv(variable, value)
        result = cli_runner.invoke(app, ["run", "-d", str(discovery_file), "--once"])
        assert result.exit_code == 1
        assert isinstance(result.exception, SystemExit)

    @pytest.mark.unit
    def test_malformed_reconciler_environment(
        self,
        cli_runner: CliRunner,
        discovery_file: Path,
        mock_build_runtime: MagicMock,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        """Test a non-numeric SYNC_INTERVAL exits 1 before anything is built."""
        monkeypatch.setenv("SYNC_INTERVAL", "soon")
        result = cli_runner.invoke(app, ["resolve", "-d", str(discovery_file)])
        assert result.exit_code == 1
        assert isinstance(result.exception, SystemExit)
        mock_build_runtime.assert_not_called()
