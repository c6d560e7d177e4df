"""Unit tests for SecretsReconciler over the in-memory backends."""

from __future__ import annotations

import threading
from collections.abc import Callable
from unittest.mock import MagicMock, patch

import pytest

from k8s_aws_secrets_sync.core.models import (
    ClusterSecretCoordinates,
    ExternalSecretRef,
    OutcomeStatus,
    SecretPayload,
)
from k8s_aws_secrets_sync.integrations.secretsmanager.exceptions import (
    SecretsManagerAccessDeniedError,
)
from k8s_aws_secrets_sync.services.kubernetes.secrets_manager import (
    MANAGED_BY_LABEL,
    MANAGED_BY_VALUE,
    SOURCE_ANNOTATION,
)
from k8s_aws_secrets_sync.services.sync.config import ReconcilerConfig, parse_discovery_config
from k8s_aws_secrets_sync.services.sync.factory import SyncRuntime, assemble
from k8s_aws_secrets_sync.services.sync.fakes import InMemoryClusterSecrets, InMemorySecretStore
from k8s_aws_secrets_sync.services.sync.reconciler import (
    SHUTDOWN_REASON,
    TIMEOUT_REASON,
    SecretsReconciler,
    TickPhase,
)
from k8s_aws_secrets_sync.services.sync.reporter import OutcomeReporter

DB_CREDS = ClusterSecretCoordinates(namespace="payments", name="db-creds")

DB_DISCOVERY = {"entries": [{"source": "prod/payments/db-creds", "targetNamespace": "payments"}]}


def statuses(summary) -> list[str]:
    return [o.status.value for o in summary.outcomes]


class BlockingSecretStore(InMemorySecretStore):
    """Store whose fetches of one secret hang until released."""

    def __init__(self, blocked_id: str) -> None:
        super().__init__()
        self.blocked_id = blocked_id
        self.release = threading.Event()

    def fetch(self, ref: ExternalSecretRef, *, limiter=None) -> SecretPayload:
        if ref.secret_id == self.blocked_id:
            self.release.wait(5)
        return super().fetch(ref, limiter=limiter)


class RacingClusterSecrets(InMemoryClusterSecrets):
    """Cluster where another writer creates the Secret just before we do."""

    def __init__(self, namespaces: dict[str, dict[str, str]] | None = None) -> None:
        super().__init__(namespaces)
        self.raced = False

    def create(self, coordinates, payload, *, source_id):
        if not self.raced:
            self.raced = True
            super().create(coordinates, payload, source_id=source_id)
        return super().create(coordinates, payload, source_id=source_id)


class SlowCreateClusterSecrets(InMemoryClusterSecrets):
    """Cluster whose creates run a hook first, then wait until released."""

    def __init__(self, namespaces: dict[str, dict[str, str]] | None = None) -> None:
        super().__init__(namespaces)
        self.on_create: Callable[[], None] = lambda: None
        self.release = threading.Event()
        self.release.set()

    def create(self, coordinates, payload, *, source_id):
        self.on_create()
        self.release.wait(5)
        return super().create(coordinates, payload, source_id=source_id)


def join_tick_workers() -> None:
    for thread in threading.enumerate():
        if thread.name.startswith("sync-tick-"):
            thread.join(5)


@pytest.mark.unit
@pytest.mark.sync
class TestSingleSecretLifecycle:
    """Create, idempotence, rotation for one secret."""

    def test_first_tick_creates(
        self,
        make_runtime: Callable[..., SyncRuntime],
        store: InMemorySecretStore,
        cluster: InMemoryClusterSecrets,
    ) -> None:
        """A missing Secret is created with the store's data and managed metadata."""
        store.put_secret("prod/payments/db-creds", {"username": "app", "password": "s3cret"})
        runtime = make_runtime(DB_DISCOVERY)

        summary = runtime.reconciler.run_tick()

        assert summary is not None
        assert statuses(summary) == ["created"]
        state = cluster.stored(DB_CREDS)
        assert state is not None
        assert state.data == {"username": b"app", "password": b"s3cret"}
        assert state.fingerprint == summary.outcomes[0].fingerprint
        assert state.labels == {MANAGED_BY_LABEL: MANAGED_BY_VALUE}
        assert state.annotations[SOURCE_ANNOTATION] == "prod/payments/db-creds"
        assert runtime.reconciler.phase is TickPhase.IDLE

    def test_second_tick_is_unchanged_without_writes(
        self,
        make_runtime: Callable[..., SyncRuntime],
        store: InMemorySecretStore,
        cluster: InMemoryClusterSecrets,
    ) -> None:
        """An unchanged secret causes no API writes on the next tick."""
        store.put_secret("prod/payments/db-creds", {"username": "app"})
        runtime = make_runtime(DB_DISCOVERY)
        runtime.reconciler.run_tick()
        version = cluster.stored(DB_CREDS).resource_version  # type: ignore[union-attr]

        summary = runtime.reconciler.run_tick()

        assert statuses(summary) == ["unchanged"]  # type: ignore[arg-type]
        assert cluster.create_calls == 1
        assert cluster.update_calls == 0
        assert cluster.stored(DB_CREDS).resource_version == version  # type: ignore[union-attr]

    def test_rotation_updates(
        self,
        make_runtime: Callable[..., SyncRuntime],
        store: InMemorySecretStore,
        cluster: InMemoryClusterSecrets,
    ) -> None:
        """A rotated value replaces the whole payload."""
        store.put_secret("prod/payments/db-creds", {"username": "app", "password": "old"})
        runtime = make_runtime(DB_DISCOVERY)
        runtime.reconciler.run_tick()

        store.put_secret("prod/payments/db-creds", {"password": "new"})
        summary = runtime.reconciler.run_tick()

        assert statuses(summary) == ["updated"]  # type: ignore[arg-type]
        assert cluster.stored(DB_CREDS).data == {"password": b"new"}  # type: ignore[union-attr]

    def test_mapping_and_reporter_status(
        self,
        make_runtime: Callable[..., SyncRuntime],
        store: InMemorySecretStore,
    ) -> None:
        """The reconciler exposes the mapping and the reporter the summaries."""
        store.put_secret("prod/payments/db-creds", {"a": "b"})
        runtime = make_runtime(DB_DISCOVERY)

        first = runtime.reconciler.run_tick()
        second = runtime.reconciler.run_tick()

        assert [e.source.secret_id for e in runtime.reconciler.mapping] == [
            "prod/payments/db-creds"
        ]
        assert runtime.reporter.current_status() == second
        assert runtime.reporter.previous_status() == first


@pytest.mark.unit
@pytest.mark.sync
class TestConflicts:
    """Optimistic concurrency handling."""

    def test_single_conflict_is_retried(
        self,
        make_runtime: Callable[..., SyncRuntime],
        store: InMemorySecretStore,
        cluster: InMemoryClusterSecrets,
    ) -> None:
        """One lost race re-reads and succeeds."""
        store.put_secret("prod/payments/db-creds", {"v": "1"})
        runtime = make_runtime(DB_DISCOVERY)
        runtime.reconciler.run_tick()

        store.put_secret("prod/payments/db-creds", {"v": "2"})
        cluster.inject_conflicts(DB_CREDS, 1)
        summary = runtime.reconciler.run_tick()

        assert statuses(summary) == ["updated"]  # type: ignore[arg-type]
        assert cluster.update_calls == 2
        assert cluster.stored(DB_CREDS).data == {"v": b"2"}  # type: ignore[union-attr]

    def test_repeated_conflicts_fail_target(
        self,
        make_runtime: Callable[..., SyncRuntime],
        store: InMemorySecretStore,
        cluster: InMemoryClusterSecrets,
    ) -> None:
        """Two lost races in one tick give up for this tick only."""
        store.put_secret("prod/payments/db-creds", {"v": "1"})
        runtime = make_runtime(DB_DISCOVERY)
        runtime.reconciler.run_tick()

        store.put_secret("prod/payments/db-creds", {"v": "2"})
        cluster.inject_conflicts(DB_CREDS, 2)
        failed = runtime.reconciler.run_tick()
        recovered = runtime.reconciler.run_tick()

        assert failed.outcomes[0].status is OutcomeStatus.FAILED  # type: ignore[union-attr]
        assert failed.outcomes[0].error_type == "KubernetesConflictError"  # type: ignore[union-attr]
        assert statuses(recovered) == ["updated"]  # type: ignore[arg-type]

    def test_create_race_is_resolved(
        self, store: InMemorySecretStore, reconciler_config: ReconcilerConfig
    ) -> None:
        """A create losing to another writer re-reads and converges."""
        cluster = RacingClusterSecrets({"payments": {}})
        store.put_secret("prod/payments/db-creds", {"v": "1"})
        runtime = assemble(parse_discovery_config(DB_DISCOVERY), store, cluster, reconciler_config)

        summary = runtime.reconciler.run_tick()

        assert statuses(summary) == ["unchanged"]  # type: ignore[arg-type]
        assert cluster.create_calls == 2


@pytest.mark.unit
@pytest.mark.sync
class TestFailureIsolation:
    """One failing secret never blocks the others."""

    def test_partial_failure(
        self,
        make_runtime: Callable[..., SyncRuntime],
        store: InMemorySecretStore,
        cluster: InMemoryClusterSecrets,
    ) -> None:
        """An access-denied secret fails while its neighbour is created."""
        store.put_secret("prod/a", {"k": "a"})
        store.put_secret("prod/b", {"k": "b"})
        store.fail_with("prod/a", SecretsManagerAccessDeniedError(secret_id="prod/a"))
        runtime = make_runtime(
            {
                "entries": [
                    {"source": "prod/a", "targetNamespace": "payments"},
                    {"source": "prod/b", "targetNamespace": "payments"},
                ]
            }
        )

        summary = runtime.reconciler.run_tick()

        assert statuses(summary) == ["failed", "created"]  # type: ignore[arg-type]
        failure = summary.failures[0]  # type: ignore[union-attr]
        assert failure.source_id == "prod/a"
        assert failure.error_type == "SecretsManagerAccessDeniedError"
        assert cluster.stored(ClusterSecretCoordinates(namespace="payments", name="b"))

    def test_fetch_failure_fails_every_target(
        self,
        make_runtime: Callable[..., SyncRuntime],
        store: InMemorySecretStore,
    ) -> None:
        """A missing source fails all targets of its entry."""
        runtime = make_runtime(
            {"entries": [{"source": "gone/token", "namespaceSelector": "team=payments"}]}
        )

        summary = runtime.reconciler.run_tick()

        assert statuses(summary) == ["failed", "failed"]  # type: ignore[arg-type]
        assert {o.error_type for o in summary.outcomes} == {  # type: ignore[union-attr]
            "SecretsManagerNotFoundError"
        }
        assert store.fetch_calls == ["gone/token"]

    def test_type_change_fails(
        self,
        make_runtime: Callable[..., SyncRuntime],
        store: InMemorySecretStore,
        cluster: InMemoryClusterSecrets,
    ) -> None:
        """Changing the type of an existing Secret is a failed outcome."""
        store.put_secret("prod/payments/db-creds", {"v": "1"})
        make_runtime(DB_DISCOVERY).reconciler.run_tick()

        store.put_secret("prod/payments/db-creds", {"v": "2"})
        retyped = {
            "entries": [
                {
                    "source": "prod/payments/db-creds",
                    "targetNamespace": "payments",
                    "type": "kubernetes.io/basic-auth",
                }
            ]
        }
        summary = make_runtime(retyped).reconciler.run_tick()

        assert summary.outcomes[0].status is OutcomeStatus.FAILED  # type: ignore[union-attr]
        assert summary.outcomes[0].error_type == "KubernetesValidationError"  # type: ignore[union-attr]

    def test_unmanaged_secret_is_overwritten(
        self,
        make_runtime: Callable[..., SyncRuntime],
        store: InMemorySecretStore,
        cluster: InMemoryClusterSecrets,
    ) -> None:
        """A hand-made Secret is replaced and keeps its foreign annotations."""
        cluster.put_unmanaged(DB_CREDS, {"old": b"x"}, annotations={"owner": "someone"})
        store.put_secret("prod/payments/db-creds", {"v": "1"})

        summary = make_runtime(DB_DISCOVERY).reconciler.run_tick()

        assert statuses(summary) == ["updated"]  # type: ignore[arg-type]
        state = cluster.stored(DB_CREDS)
        assert state is not None
        assert state.data == {"v": b"1"}
        assert state.annotations["owner"] == "someone"
        assert state.fingerprint is not None


@pytest.mark.unit
@pytest.mark.sync
class TestTickAbort:
    """Resolution failures, shutdown and timeouts."""

    def test_resolution_failure_keeps_previous_summary(
        self,
        make_runtime: Callable[..., SyncRuntime],
        store: InMemorySecretStore,
        cluster: InMemoryClusterSecrets,
    ) -> None:
        """A selector matching nothing aborts the tick without outcomes."""
        store.put_secret("shared/token", {"t": "1"})
        runtime = make_runtime(
            {"entries": [{"source": "shared/token", "namespaceSelector": "team=billing"}]}
        )
        first = runtime.reconciler.run_tick()

        del cluster.namespaces["billing"]
        aborted = runtime.reconciler.run_tick()

        assert aborted is None
        assert runtime.reporter.current_status() == first
        assert runtime.reporter.failed_ticks == 1
        assert "matched no namespaces" in (runtime.reporter.last_error or "")
        assert cluster.update_calls == 0

    def test_stop_before_tick_writes_nothing(
        self,
        make_runtime: Callable[..., SyncRuntime],
        store: InMemorySecretStore,
        cluster: InMemoryClusterSecrets,
    ) -> None:
        """After stop, no fetch or write starts and targets report shutdown."""
        store.put_secret("prod/payments/db-creds", {"v": "1"})
        runtime = make_runtime(DB_DISCOVERY)
        runtime.reconciler.stop()

        summary = runtime.reconciler.run_tick()

        assert runtime.reconciler.stopping
        assert summary.outcomes[0].reason == SHUTDOWN_REASON  # type: ignore[union-attr]
        assert store.fetch_calls == []
        assert cluster.create_calls == 0

    def test_tick_timeout(
        self, cluster: InMemoryClusterSecrets, reconciler_config: ReconcilerConfig
    ) -> None:
        """Work still running at the deadline is reported as timed out."""
        store = BlockingSecretStore("prod/slow")
        store.put_secret("prod/slow", {"v": "1"})
        store.put_secret("prod/fast", {"v": "1"})
        discovery = parse_discovery_config(
            {
                "entries": [
                    {"source": "prod/slow", "targetNamespace": "payments"},
                    {"source": "prod/fast", "targetNamespace": "payments"},
                ]
            }
        )
        runtime = assemble(
            discovery, store, cluster, reconciler_config.model_copy(update={"tick_timeout": 0.2})
        )

        try:
            summary = runtime.reconciler.run_tick()
        finally:
            store.release.set()

        assert statuses(summary) == ["failed", "failed"]  # type: ignore[arg-type]
        assert {o.reason for o in summary.outcomes} == {TIMEOUT_REASON}  # type: ignore[union-attr]
        assert cluster.create_calls == 0

    def test_stop_during_apply_finishes_in_flight_write(
        self, store: InMemorySecretStore, reconciler_config: ReconcilerConfig
    ) -> None:
        """A write already running completes; queued writes report shutdown."""
        store.put_secret("prod/first", {"v": "1"})
        store.put_secret("prod/second", {"v": "1"})
        cluster = SlowCreateClusterSecrets({"payments": {}})
        discovery = parse_discovery_config(
            {
                "entries": [
                    {"source": "prod/first", "targetNamespace": "payments"},
                    {"source": "prod/second", "targetNamespace": "payments"},
                ]
            }
        )
        runtime = assemble(
            discovery, store, cluster, reconciler_config.model_copy(update={"concurrency": 1})
        )
        cluster.on_create = runtime.reconciler.stop

        summary = runtime.reconciler.run_tick()

        assert [(o.status, o.reason) for o in summary.outcomes] == [  # type: ignore[union-attr]
            (OutcomeStatus.CREATED, None),
            (OutcomeStatus.FAILED, SHUTDOWN_REASON),
        ]
        assert cluster.create_calls == 1
        assert cluster.get(ClusterSecretCoordinates(namespace="payments", name="first"))
        assert cluster.get(ClusterSecretCoordinates(namespace="payments", name="second")) is None

    def test_write_finishing_after_timeout_is_logged(
        self, store: InMemorySecretStore, reconciler_config: ReconcilerConfig
    ) -> None:
        """A write that lands after the tick gave up on it is reported."""
        store.put_secret("prod/payments/db-creds", {"v": "1"})
        cluster = SlowCreateClusterSecrets({"payments": {}})
        cluster.release.clear()
        runtime = assemble(
            parse_discovery_config(DB_DISCOVERY),
            store,
            cluster,
            reconciler_config.model_copy(update={"tick_timeout": 0.2}),
        )

        with patch("k8s_aws_secrets_sync.services.sync.reconciler.logger") as mock_logger:
            try:
                summary = runtime.reconciler.run_tick()
            finally:
                cluster.release.set()
            join_tick_workers()

        assert summary.outcomes[0].reason == TIMEOUT_REASON  # type: ignore[union-attr]
        assert cluster.get(DB_CREDS) is not None
        mock_logger.bind.return_value.warning.assert_any_call(
            "late_apply_completed", status="created"
        )


@pytest.mark.unit
@pytest.mark.sync
class TestFanOutAndLayout:
    """Selector fan-out and file-style payloads."""

    def test_selector_fan_out(
        self,
        make_runtime: Callable[..., SyncRuntime],
        store: InMemorySecretStore,
        cluster: InMemoryClusterSecrets,
    ) -> None:
        """One source is written to every matching namespace."""
        store.put_secret("shared/token", {"t": "1"})
        runtime = make_runtime(
            {"entries": [{"source": "shared/token", "namespaceSelector": "team=payments"}]}
        )

        summary = runtime.reconciler.run_tick()

        assert [str(o.coordinates) for o in summary.outcomes] == [  # type: ignore[union-attr]
            "payments/token",
            "payments-staging/token",
        ]
        assert store.fetch_calls == ["shared/token"]

    def test_file_style_entry(
        self,
        make_runtime: Callable[..., SyncRuntime],
        store: InMemorySecretStore,
        cluster: InMemoryClusterSecrets,
    ) -> None:
        """A filename renders all keys into one KEY=VALUE data key."""
        store.put_secret("shared/registry", {"TOKEN": "abc", "USER": "ci"})
        runtime = make_runtime(
            {
                "entries": [
                    {
                        "source": "shared/registry",
                        "targetNamespace": "billing",
                        "filename": "registry.env",
                    }
                ]
            }
        )

        runtime.reconciler.run_tick()

        state = cluster.stored(ClusterSecretCoordinates(namespace="billing", name="registry"))
        assert state is not None
        assert state.data == {"registry.env": b"TOKEN=abc\nUSER=ci\n"}


@pytest.mark.unit
@pytest.mark.sync
class TestLoop:
    """The periodic loop and its scheduling."""

    def test_run_max_ticks(
        self, make_runtime: Callable[..., SyncRuntime], store: InMemorySecretStore
    ) -> None:
        """run stops after max_ticks."""
        store.put_secret("prod/payments/db-creds", {"v": "1"})
        runtime = make_runtime(DB_DISCOVERY)

        runtime.reconciler.run(max_ticks=3)

        assert runtime.reporter.current_status().tick_id == 3  # type: ignore[union-attr]

    def test_stop_ends_loop(
        self,
        store: InMemorySecretStore,
        cluster: InMemoryClusterSecrets,
        reconciler_config: ReconcilerConfig,
    ) -> None:
        """A stop requested during a tick ends the loop after that tick."""
        store.put_secret("prod/payments/db-creds", {"v": "1"})
        holder: dict[str, SecretsReconciler] = {}

        reporter = OutcomeReporter(sinks=[lambda _summary: holder["reconciler"].stop()])
        runtime = assemble(
            parse_discovery_config(DB_DISCOVERY),
            store,
            cluster,
            reconciler_config.model_copy(update={"interval": 60.0}),
            reporter=reporter,
        )
        holder["reconciler"] = runtime.reconciler

        runtime.reconciler.run()

        assert reporter.current_status().tick_id == 1  # type: ignore[union-attr]

    def test_crashed_tick_is_recorded(
        self, make_runtime: Callable[..., SyncRuntime], store: InMemorySecretStore
    ) -> None:
        """An unexpected error inside a tick does not end the loop."""
        store.put_secret("prod/payments/db-creds", {"v": "1"})
        runtime = make_runtime(DB_DISCOVERY)
        runtime.reporter.record = MagicMock(side_effect=RuntimeError("boom"))  # type: ignore[method-assign]

        runtime.reconciler.run(max_ticks=2)

        assert runtime.reporter.failed_ticks == 2
        assert runtime.reporter.last_error == "boom"
        assert runtime.reconciler.phase is TickPhase.IDLE

    def test_limiter_reset_each_tick(
        self,
        store: InMemorySecretStore,
        cluster: InMemoryClusterSecrets,
        reconciler_config: ReconcilerConfig,
    ) -> None:
        """The shared rate limiter is reset at every tick boundary."""
        store.put_secret("prod/payments/db-creds", {"v": "1"})
        limiter = MagicMock()
        runtime = assemble(
            parse_discovery_config(DB_DISCOVERY),
            store,
            cluster,
            reconciler_config,
            limiter=limiter,
        )

        runtime.reconciler.run_tick()
        runtime.reconciler.run_tick()

        assert limiter.reset.call_count == 2
        assert limiter.acquire.call_count == 2

    @pytest.mark.parametrize(("offset", "expected"), [(-1.0, 9.0), (0.0, 10.0), (1.0, 11.0)])
    def test_next_delay_jitter(self, offset: float, expected: float) -> None:
        """The delay is the interval plus a bounded jitter."""
        calls: list[tuple[float, float]] = []

        def jitter(low: float, high: float) -> float:
            calls.append((low, high))
            return offset

        reconciler = SecretsReconciler(
            MagicMock(),
            MagicMock(),
            MagicMock(),
            MagicMock(),
            ReconcilerConfig(interval=10.0, interval_jitter=0.1),
            jitter=jitter,
        )

        assert reconciler.next_delay() == pytest.approx(expected)
        assert calls == [(pytest.approx(-1.0), pytest.approx(1.0))]
