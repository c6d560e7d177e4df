"""Tick outcome reporting.

The reporter keeps the current and previous tick summaries for status queries
and forwards each summary to its sinks. The default sink writes structured
log events. A failing sink never affects reconciliation; the failure is
counted and logged instead.
"""

from __future__ import annotations

import threading
from collections import deque
from collections.abc import Callable, Iterable

import structlog

from k8s_aws_secrets_sync.core.models import TickSummary

logger = structlog.get_logger()

SummarySink = Callable[[TickSummary], None]

HISTORY_SIZE = 2


def log_summary(summary: TickSummary) -> None:
    """Default sink: one summary event plus one event per failure."""
    log = logger.bind(tick=summary.tick_id)
    counts = summary.counts
    log_method = log.info if summary.succeeded else log.warning
    log_method(
        "tick_summary",
        duration_seconds=round(summary.duration_seconds, 3),
        **counts,
    )
    for outcome in summary.failures:
        log.warning(
            "tick_failure_detail",
            source_id=outcome.source_id,
            namespace=outcome.coordinates.namespace,
            name=outcome.coordinates.name,
            reason=outcome.reason,
            error_type=outcome.error_type,
        )


class OutcomeReporter:
    """Records tick summaries and publishes them to sinks.

    Attributes:
        failed_ticks: Ticks aborted before producing any outcomes.
        reporting_failures: Sink invocations that raised.
        last_error: Message of the most recent tick-aborting error.
    """

    def __init__(self, sinks: Iterable[SummarySink] | None = None) -> None:
        self._sinks: list[SummarySink] = list(sinks) if sinks is not None else [log_summary]
        self._history: deque[TickSummary] = deque(maxlen=HISTORY_SIZE)
        self._lock = threading.Lock()
        self.failed_ticks = 0
        self.reporting_failures = 0
        self.last_error: str | None = None

    def record(self, summary: TickSummary) -> None:
        """Make ``summary`` the current status and publish it."""
        with self._lock:
            self._history.append(summary)
        for sink in self._sinks:
            self._publish(sink, summary)

    def record_tick_failure(self, error: BaseException, *, tick_id: int | None = None) -> None:
        """Record a tick that aborted before producing outcomes.

        The previous summary stays the current status.
        """
        with self._lock:
            self.failed_ticks += 1
            self.last_error = str(error)
        try:
            logger.error(
                "tick_aborted",
                tick=tick_id,
                error=str(error),
                error_type=type(error).__name__,
            )
        except Exception:  # noqa: BLE001
            with self._lock:
                self.reporting_failures += 1

    def current_status(self) -> TickSummary | None:
        """Summary of the most recent completed tick."""
        with self._lock:
            return self._history[-1] if self._history else None

    def previous_status(self) -> TickSummary | None:
        """Summary of the tick before the most recent one."""
        with self._lock:
            return self._history[-2] if len(self._history) == HISTORY_SIZE else None

    def _publish(self, sink: SummarySink, summary: TickSummary) -> None:
        try:
            sink(summary)
        except Exception as e:  # noqa: BLE001
            with self._lock:
                self.reporting_failures += 1
            try:
                logger.warning(
                    "tick_report_failed",
                    tick=summary.tick_id,
                    sink=getattr(sink, "__name__", repr(sink)),
                    error=str(e),
                )
            except Exception:  # noqa: BLE001, S110
                pass
