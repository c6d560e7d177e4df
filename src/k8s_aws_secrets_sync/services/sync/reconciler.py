"""Periodic reconciliation of cluster Secrets against the external store.

One tick walks the phases in order::

    RESOLVING -> FETCHING -> DIFFING -> APPLYING -> REPORTING -> IDLE

Fetching, diffing and applying are each fanned out over a bounded worker pool;
within one entry a fetch always precedes its diffs and a diff precedes its
apply. A failure in one entry becomes a failed outcome for that entry's
targets and never stops the others. Only a resolution failure aborts a tick.
"""

from __future__ import annotations

import random
import threading
import time
from collections.abc import Callable, Sequence
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import TYPE_CHECKING, Any, NamedTuple

import structlog

from k8s_aws_secrets_sync.core.models import (
    Action,
    ClusterSecretCoordinates,
    CurrentState,
    Decision,
    MappingEntry,
    OutcomeStatus,
    ReconciliationOutcome,
    SecretPayload,
    TickSummary,
)
from k8s_aws_secrets_sync.integrations.kubernetes.exceptions import (
    KubernetesAlreadyExistsError,
    KubernetesConflictError,
)
from k8s_aws_secrets_sync.services.sync.diff import decide, shape_payload

if TYPE_CHECKING:
    from k8s_aws_secrets_sync.integrations.secretsmanager.ratelimit import (
        TokenBucketRateLimiter,
    )
    from k8s_aws_secrets_sync.services.sync.config import ReconcilerConfig
    from k8s_aws_secrets_sync.services.sync.protocols import ClusterSecretStore, SecretStore
    from k8s_aws_secrets_sync.services.sync.reporter import OutcomeReporter
    from k8s_aws_secrets_sync.services.sync.resolver import MappingResolver

logger = structlog.get_logger()

# Attempts per target of read -> diff -> write before giving up on conflicts
APPLY_ATTEMPTS = 2

TIMEOUT_REASON = "timeout"
SHUTDOWN_REASON = "shutdown"


class TickPhase(StrEnum):
    """Where the reconciler currently is within a tick."""

    IDLE = "idle"
    RESOLVING = "resolving"
    FETCHING = "fetching"
    DIFFING = "diffing"
    APPLYING = "applying"
    REPORTING = "reporting"


class _Failure(NamedTuple):
    reason: str
    error_type: str | None = None


@dataclass
class _TickContext:
    """State shared by the workers of one tick."""

    tick_id: int
    limiter: TokenBucketRateLimiter | None
    deadline: float | None
    aborted: threading.Event = field(default_factory=threading.Event)


@dataclass
class _TargetWork:
    entry_index: int
    entry: MappingEntry
    coordinates: ClusterSecretCoordinates
    payload: SecretPayload
    current: CurrentState | None = None
    decision: Decision | None = None


class SecretsReconciler:
    """Drives reconciliation ticks on a fixed interval.

    The reconciler owns the tick-scoped shared state: the rate limiter (reset
    at each tick boundary) and the last resolved mapping.

    Example:
        >>> reconciler = SecretsReconciler(resolver, store, cluster, reporter, config)
        >>> summary = reconciler.run_tick()
        >>> summary.counts
        {'unchanged': 3, 'updated': 1, 'created': 0, 'failed': 0}
    """

    def __init__(
        self,
        resolver: MappingResolver,
        store: SecretStore,
        cluster: ClusterSecretStore,
        reporter: OutcomeReporter,
        config: ReconcilerConfig,
        *,
        limiter: TokenBucketRateLimiter | None = None,
        clock: Callable[[], float] = time.monotonic,
        jitter: Callable[[float, float], float] = random.uniform,
    ) -> None:
        self._resolver = resolver
        self._store = store
        self._cluster = cluster
        self._reporter = reporter
        self._config = config
        self._limiter = limiter
        self._clock = clock
        self._jitter = jitter

        self._stop_event = threading.Event()
        self._phase = TickPhase.IDLE
        self._tick_count = 0
        self._mapping: tuple[MappingEntry, ...] = ()

    @property
    def phase(self) -> TickPhase:
        """Current tick phase."""
        return self._phase

    @property
    def mapping(self) -> tuple[MappingEntry, ...]:
        """Entries used by the most recent successfully resolved tick."""
        return self._mapping

    @property
    def stopping(self) -> bool:
        """True once a stop was requested."""
        return self._stop_event.is_set()

    def stop(self) -> None:
        """Request a graceful stop.

        In-flight writes finish; no new fetch or write starts. Safe to call
        from a signal handler.
        """
        self._stop_event.set()

    # =========================================================================
    # Loop
    # =========================================================================

    def run(self, *, max_ticks: int | None = None) -> None:
        """Run ticks until stopped (or until ``max_ticks`` ticks ran)."""
        logger.info(
            "reconciler_started",
            interval=self._config.interval,
            concurrency=self._config.concurrency,
            tick_timeout=self._config.tick_timeout,
        )
        ticks = 0
        while not self._stop_event.is_set():
            try:
                self.run_tick()
            except Exception as e:
                logger.exception("tick_crashed", error=str(e))
                self._reporter.record_tick_failure(e, tick_id=self._tick_count)
                self._phase = TickPhase.IDLE

            ticks += 1
            if max_ticks is not None and ticks >= max_ticks:
                break
            if self._stop_event.wait(self.next_delay()):
                break
        logger.info("reconciler_stopped", ticks=ticks)

    def next_delay(self) -> float:
        """Seconds to wait before the next tick, with jitter applied."""
        spread = self._config.interval * self._config.interval_jitter
        return max(0.0, self._config.interval + self._jitter(-spread, spread))

    # =========================================================================
    # Tick
    # =========================================================================

    def run_tick(self) -> TickSummary | None:
        """Run one full reconciliation pass.

        Returns:
            The tick summary, or None when resolution failed and the tick was
            aborted (the previous summary stays current in the reporter).
        """
        self._tick_count += 1
        tick_id = self._tick_count
        started_at = datetime.now(UTC)
        log = logger.bind(tick=tick_id)

        if self._limiter is not None:
            self._limiter.reset()

        timeout = self._config.tick_timeout
        ctx = _TickContext(
            tick_id=tick_id,
            limiter=self._limiter,
            deadline=self._clock() + timeout if timeout is not None else None,
        )

        self._phase = TickPhase.RESOLVING
        try:
            entries = self._resolver.resolve(limiter=self._limiter)
        except Exception as e:
            log.error("tick_resolution_failed", error=str(e), error_type=type(e).__name__)
            self._phase = TickPhase.REPORTING
            self._reporter.record_tick_failure(e, tick_id=tick_id)
            self._phase = TickPhase.IDLE
            return None
        self._mapping = entries
        log.debug("tick_started", entries=len(entries))

        outcomes: dict[tuple[int, tuple[str, str]], ReconciliationOutcome] = {}
        executor = ThreadPoolExecutor(
            max_workers=self._config.concurrency,
            thread_name_prefix=f"sync-tick-{tick_id}",
        )
        try:
            work = self._fetch_phase(executor, ctx, entries, outcomes)
            work = self._diff_phase(executor, ctx, work, outcomes)
            self._apply_phase(executor, ctx, work, outcomes)
        finally:
            executor.shutdown(wait=not ctx.aborted.is_set(), cancel_futures=True)

        self._phase = TickPhase.REPORTING
        ordered = tuple(
            outcomes[(index, target.key)]
            for index, entry in enumerate(entries)
            for target in entry.targets
        )
        summary = TickSummary(
            tick_id=tick_id,
            started_at=started_at,
            finished_at=datetime.now(UTC),
            outcomes=ordered,
        )
        self._reporter.record(summary)
        self._phase = TickPhase.IDLE
        return summary

    def _run_parallel(
        self,
        executor: ThreadPoolExecutor,
        ctx: _TickContext,
        fn: Callable[..., Any],
        items: Sequence[Any],
    ) -> tuple[dict[int, Any], list[int]]:
        """Run ``fn(ctx, item)`` for every item, bounded by the tick deadline.

        Returns:
            Results by item index, and the indexes that did not finish in time.
        """
        futures: dict[Future[Any], int] = {
            executor.submit(fn, ctx, item): index for index, item in enumerate(items)
        }
        if not futures:
            return {}, []

        remaining = None if ctx.deadline is None else max(0.0, ctx.deadline - self._clock())
        done, not_done = wait(futures, timeout=remaining)
        if not_done:
            ctx.aborted.set()
            for future in not_done:
                future.cancel()
            logger.error(
                "tick_timed_out",
                tick=ctx.tick_id,
                phase=self._phase.value,
                unfinished=len(not_done),
            )
        return {futures[f]: f.result() for f in done}, sorted(futures[f] for f in not_done)

    def _declined(self, ctx: _TickContext) -> _Failure | None:
        """Reason to not start new work, if any."""
        if ctx.aborted.is_set():
            return _Failure(TIMEOUT_REASON, "TickTimeout")
        if self._stop_event.is_set():
            return _Failure(SHUTDOWN_REASON, "Shutdown")
        return None

    # =========================================================================
    # Phases
    # =========================================================================

    def _fetch_phase(
        self,
        executor: ThreadPoolExecutor,
        ctx: _TickContext,
        entries: tuple[MappingEntry, ...],
        outcomes: dict[tuple[int, tuple[str, str]], ReconciliationOutcome],
    ) -> list[_TargetWork]:
        self._phase = TickPhase.FETCHING
        results, unfinished = self._run_parallel(executor, ctx, self._fetch_entry, entries)

        work: list[_TargetWork] = []
        for index, entry in enumerate(entries):
            if index in unfinished:
                result: SecretPayload | _Failure = _Failure(TIMEOUT_REASON, "TickTimeout")
            else:
                result = results[index]
            for target in entry.targets:
                if isinstance(result, _Failure):
                    outcomes[(index, target.key)] = ReconciliationOutcome.failed(
                        entry.source.secret_id, target, result.reason, result.error_type
                    )
                else:
                    work.append(_TargetWork(index, entry, target, result))
        return work

    def _diff_phase(
        self,
        executor: ThreadPoolExecutor,
        ctx: _TickContext,
        work: list[_TargetWork],
        outcomes: dict[tuple[int, tuple[str, str]], ReconciliationOutcome],
    ) -> list[_TargetWork]:
        self._phase = TickPhase.DIFFING
        results, unfinished = self._run_parallel(executor, ctx, self._diff_target, work)

        pending: list[_TargetWork] = []
        for index, item in enumerate(work):
            result = (
                _Failure(TIMEOUT_REASON, "TickTimeout") if index in unfinished else results[index]
            )
            key = (item.entry_index, item.coordinates.key)
            if isinstance(result, _Failure):
                outcomes[key] = self._failed(item, result)
            elif item.decision is not None and item.decision.action is Action.NOOP:
                outcomes[key] = ReconciliationOutcome(
                    source_id=item.entry.source.secret_id,
                    coordinates=item.coordinates,
                    status=OutcomeStatus.UNCHANGED,
                    fingerprint=item.payload.fingerprint,
                )
            else:
                pending.append(item)
        return pending

    def _apply_phase(
        self,
        executor: ThreadPoolExecutor,
        ctx: _TickContext,
        work: list[_TargetWork],
        outcomes: dict[tuple[int, tuple[str, str]], ReconciliationOutcome],
    ) -> None:
        self._phase = TickPhase.APPLYING
        results, unfinished = self._run_parallel(executor, ctx, self._apply_target, work)
        for index, item in enumerate(work):
            key = (item.entry_index, item.coordinates.key)
            if index in unfinished:
                outcomes[key] = self._failed(item, _Failure(TIMEOUT_REASON, "TickTimeout"))
            else:
                outcomes[key] = results[index]

    # =========================================================================
    # Workers
    # =========================================================================

    def _fetch_entry(self, ctx: _TickContext, entry: MappingEntry) -> SecretPayload | _Failure:
        if declined := self._declined(ctx):
            return declined
        try:
            payload = self._store.fetch(entry.source, limiter=ctx.limiter)
            return shape_payload(payload, entry.filename)
        except Exception as e:
            logger.warning(
                "secret_fetch_failed",
                tick=ctx.tick_id,
                source_id=entry.source.secret_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            return _Failure(str(e), type(e).__name__)

    def _diff_target(self, ctx: _TickContext, item: _TargetWork) -> Decision | _Failure:
        if declined := self._declined(ctx):
            return declined
        try:
            item.current = self._cluster.get(item.coordinates)
            item.decision = decide(item.payload, item.current)
            return item.decision
        except Exception as e:
            logger.warning(
                "secret_read_failed",
                tick=ctx.tick_id,
                namespace=item.coordinates.namespace,
                name=item.coordinates.name,
                error=str(e),
                error_type=type(e).__name__,
            )
            return _Failure(str(e), type(e).__name__)

    def _apply_target(self, ctx: _TickContext, item: _TargetWork) -> ReconciliationOutcome:
        """Write one target, re-reading and re-diffing once on a conflict."""
        if declined := self._declined(ctx):
            return self._failed(item, declined)

        log = logger.bind(
            tick=ctx.tick_id,
            source_id=item.entry.source.secret_id,
            namespace=item.coordinates.namespace,
            name=item.coordinates.name,
        )
        current = item.current
        decision = item.decision if item.decision is not None else decide(item.payload, current)
        last_error: Exception | None = None

        try:
            for attempt in range(1, APPLY_ATTEMPTS + 1):
                if attempt > 1:
                    current = self._cluster.get(item.coordinates)
                    decision = decide(item.payload, current)

                if decision.action is Action.NOOP:
                    return self._outcome(item, OutcomeStatus.UNCHANGED)

                try:
                    if decision.action is Action.CREATE or current is None:
                        self._cluster.create(
                            item.coordinates,
                            item.payload,
                            source_id=item.entry.source.secret_id,
                        )
                        log.info("secret_created", fingerprint=item.payload.fingerprint)
                        return self._written(ctx, item, OutcomeStatus.CREATED, log)

                    self._cluster.update(
                        item.coordinates,
                        item.payload,
                        current.resource_version,
                        source_id=item.entry.source.secret_id,
                        labels=current.labels,
                        annotations=current.annotations,
                    )
                    log.info(
                        "secret_updated",
                        fingerprint=item.payload.fingerprint,
                        previous_fingerprint=current.fingerprint,
                        unmanaged=decision.unmanaged,
                    )
                    return self._written(ctx, item, OutcomeStatus.UPDATED, log)
                except KubernetesAlreadyExistsError as e:
                    last_error = e
                    log.info("secret_create_raced", attempt=attempt)
                except KubernetesConflictError as e:
                    last_error = e
                    log.info("secret_update_conflict", attempt=attempt)
        except Exception as e:
            log.warning("secret_apply_failed", error=str(e), error_type=type(e).__name__)
            return self._failed(item, _Failure(str(e), type(e).__name__))

        log.warning("secret_apply_conflict_exhausted", attempts=APPLY_ATTEMPTS)
        return self._failed(item, _Failure(str(last_error), type(last_error).__name__))

    def _written(
        self, ctx: _TickContext, item: _TargetWork, status: OutcomeStatus, log: Any
    ) -> ReconciliationOutcome:
        # The tick may have given up on this write while it was in flight
        if ctx.aborted.is_set():
            log.warning("late_apply_completed", status=status.value)
        return self._outcome(item, status)

    @staticmethod
    def _outcome(item: _TargetWork, status: OutcomeStatus) -> ReconciliationOutcome:
        return ReconciliationOutcome(
            source_id=item.entry.source.secret_id,
            coordinates=item.coordinates,
            status=status,
            fingerprint=item.payload.fingerprint,
        )

    @staticmethod
    def _failed(item: _TargetWork, failure: _Failure) -> ReconciliationOutcome:
        return ReconciliationOutcome.failed(
            item.entry.source.secret_id,
            item.coordinates,
            failure.reason,
            failure.error_type,
        )
