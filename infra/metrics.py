"""Prometheus metrics for the risk monitor loop and per-account evaluations."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Dict, Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Summary, start_http_server

logger = logging.getLogger(__name__)


@dataclass
class CycleStats:
    account_id: str
    status: str
    closes: int
    alerts: int
    duration_seconds: float


class MetricsRecorder:
    """
    Expose risk loop stats via Prometheus.

    Singleton pattern to prevent duplicate metric registration errors. Last
    observed values are also kept in memory for the health endpoint and tests.
    """
    _instance: Optional['MetricsRecorder'] = None
    _initialized: bool = False

    def __new__(cls, enabled: bool = True, port: int = 9100):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self, enabled: bool = True, port: int = 9100) -> None:
        if self.__class__._initialized:
            return

        self._enabled = bool(enabled)
        self._port = port
        self._started = False
        self._lock = threading.Lock()
        self.__class__._initialized = True

        self._last_cycles: Dict[str, CycleStats] = {}
        self._close_counts: Dict[str, int] = {}
        self._close_failures = 0
        self._alert_counts: Dict[str, int] = {}
        self._last_tick_seconds: Optional[float] = None

        self._registry = CollectorRegistry()
        self._cycle_summary = Summary(
            "riskwatch_cycle_duration_seconds",
            "Duration of one account evaluation cycle",
            registry=self._registry,
        )
        self._cycle_counter = Counter(
            "riskwatch_cycle_total",
            "Account evaluation cycles by outcome",
            labelnames=("status",),
            registry=self._registry,
        )
        self._tick_summary = Summary(
            "riskwatch_tick_duration_seconds",
            "Wall time of one tick across all active accounts",
            registry=self._registry,
        )
        self._balance_gauge = Gauge(
            "riskwatch_account_balance",
            "Quote-currency balance at the last completed evaluation",
            labelnames=("account",),
            registry=self._registry,
        )
        self._drawdown_gauge = Gauge(
            "riskwatch_account_drawdown_pct",
            "Total P&L percent vs. initial balance (negative = drawdown)",
            labelnames=("account",),
            registry=self._registry,
        )
        self._positions_gauge = Gauge(
            "riskwatch_account_open_positions",
            "Open positions at the last completed evaluation",
            labelnames=("account",),
            registry=self._registry,
        )
        self._blocked_gauge = Gauge(
            "riskwatch_account_blocked",
            "Account block state (0=trading allowed, 1=blocked until midnight)",
            labelnames=("account",),
            registry=self._registry,
        )
        self._closes_counter = Counter(
            "riskwatch_forced_closes_total",
            "Positions closed by the risk engine",
            labelnames=("reason",),
            registry=self._registry,
        )
        self._close_failures_counter = Counter(
            "riskwatch_close_failures_total",
            "Close orders rejected or not sent",
            registry=self._registry,
        )
        self._alerts_counter = Counter(
            "riskwatch_alerts_total",
            "Alerts emitted by severity",
            labelnames=("severity",),
            registry=self._registry,
        )

    @classmethod
    def _reset_for_testing(cls) -> None:
        """
        Reset singleton state for testing.
        WARNING: Only call from test fixtures/teardown.
        """
        cls._instance = None
        cls._initialized = False

    @property
    def registry(self) -> CollectorRegistry:
        return self._registry

    def is_enabled(self) -> bool:
        return self._enabled

    def start(self) -> None:
        if not self._enabled or self._started:
            return

        ports_to_try = [self._port, self._port + 1, self._port + 2, self._port + 3]
        last_error = None
        for port in ports_to_try:
            try:
                start_http_server(port, registry=self._registry)
                self._started = True
                if port != self._port:
                    logger.warning("Port %s in use, bound metrics exporter to %s instead", self._port, port)
                    self._port = port
                logger.info("Prometheus metrics exporter listening on 0.0.0.0:%s", self._port)
                return
            except OSError as exc:
                last_error = exc
                logger.debug("Port %s in use, trying next port...", port)

        self._enabled = False
        logger.error("Failed to start metrics exporter after trying ports %s: %s", ports_to_try, last_error)

    def observe_cycle(self, stats: CycleStats) -> None:
        with self._lock:
            self._last_cycles[stats.account_id] = stats
        if self._enabled:
            self._cycle_summary.observe(stats.duration_seconds)
            self._cycle_counter.labels(status=stats.status).inc()

    def observe_tick(self, duration: float) -> None:
        self._last_tick_seconds = duration
        if self._enabled:
            self._tick_summary.observe(duration)

    def record_account_snapshot(self, account_id: str, balance: float, drawdown_pct: float, open_positions: int) -> None:
        if self._enabled:
            self._balance_gauge.labels(account=account_id).set(balance)
            self._drawdown_gauge.labels(account=account_id).set(drawdown_pct)
            self._positions_gauge.labels(account=account_id).set(max(open_positions, 0))

    def record_account_blocked(self, account_id: str, blocked: bool) -> None:
        if self._enabled:
            self._blocked_gauge.labels(account=account_id).set(1 if blocked else 0)

    def record_close(self, reason: str) -> None:
        with self._lock:
            self._close_counts[reason] = self._close_counts.get(reason, 0) + 1
        if self._enabled:
            self._closes_counter.labels(reason=reason).inc()

    def record_close_failure(self) -> None:
        with self._lock:
            self._close_failures += 1
        if self._enabled:
            self._close_failures_counter.inc()

    def record_alert(self, severity: str) -> None:
        with self._lock:
            self._alert_counts[severity] = self._alert_counts.get(severity, 0) + 1
        if self._enabled:
            self._alerts_counter.labels(severity=severity).inc()

    def last_cycle(self, account_id: str) -> Optional[CycleStats]:
        return self._last_cycles.get(account_id)

    def last_tick_seconds(self) -> Optional[float]:
        return self._last_tick_seconds

    def close_counts(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._close_counts)

    def close_failures(self) -> int:
        return self._close_failures

    def alert_counts(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._alert_counts)


__all__ = ["MetricsRecorder", "CycleStats"]
