"""
riskwatch Runner: Main Loop

Orchestrates the per-account risk cycles.

Flow (every tick, default 5s):
1. Submit one AccountCyclePipeline run per initialized account to a worker pool
2. Skip accounts whose previous cycle is still in flight
3. Wait up to cycle_timeout_seconds; abandon cycles that have not committed
4. Track consecutive failures per account (alert on first failure and recovery)

Shutdown (SIGINT/SIGTERM): stop ticking, cancel uncommitted cycles, drain
committed ones, stop the health server.
"""

import os
import signal
import threading
import time
import yaml
from concurrent.futures import Future, ThreadPoolExecutor, wait
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple
import logging

from core.blocking import resolve_timezone
from core.exceptions import AccountConfigurationError
from core.exchange_ccxt import build_exchange
from core.risk import RiskEngine
from core.risk_cycle import AccountCyclePipeline, AccountRuntime, CycleResult, CycleStatus, CycleToken
from infra.alerting import AlertService, AlertSeverity
from infra.credentials import load_secret
from infra.healthcheck import HealthServer
from infra.metrics import MetricsRecorder
from infra.reporting import ReportingSink
from infra.state_store import AccountRecord, AccountStore
from tools.config_validator import validate_all_configs

logger = logging.getLogger(__name__)


class MonitorLoop:
    """
    Main risk monitor orchestrator.

    Responsibilities:
    - Load and validate config
    - Initialize accounts (credentials, exchange client, baseline balance)
    - Run periodic ticks with per-account isolation and timeouts
    - Handle shutdown gracefully
    """

    def __init__(self,
                 config_dir: str = "config",
                 store: Optional[AccountStore] = None,
                 sink: Optional[ReportingSink] = None,
                 exchange_factory: Optional[Callable[[AccountRecord], Any]] = None,
                 clock: Optional[Callable[[], datetime]] = None,
                 install_signal_handlers: bool = True):
        self.config_dir = Path(config_dir)
        validation_errors = validate_all_configs(config_dir)
        if validation_errors:
            logger.error("=" * 80)
            logger.error("CONFIGURATION VALIDATION FAILED")
            logger.error("=" * 80)
            for idx, error in enumerate(validation_errors, start=1):
                lines = str(error).splitlines()
                if not lines:
                    continue
                logger.error(f"{idx:>2}. {lines[0]}")
            logger.error("=" * 80)
            raise ValueError(f"Invalid configuration: {len(validation_errors)} error(s) found")

        self.app_config = self._load_yaml("app.yaml")

        # Logging setup
        log_cfg = self.app_config.get("logging", {}) or {}
        log_file = log_cfg.get("file", "logs/riskwatch.log")
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        logging.basicConfig(
            level=getattr(logging, str(log_cfg.get("level", "INFO")).upper()),
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
            handlers=[logging.FileHandler(log_file), logging.StreamHandler()],
        )

        app_cfg = self.app_config.get("app", {}) or {}
        self.app_name = app_cfg.get("name", "riskwatch")
        self.timezone = resolve_timezone(app_cfg.get("timezone", "UTC"))

        loop_cfg = self.app_config.get("loop", {}) or {}
        self.loop_interval_seconds = float(loop_cfg.get("interval_seconds", 5))
        self.cycle_timeout_seconds = float(loop_cfg.get("cycle_timeout_seconds", 30))
        self.max_workers = int(loop_cfg.get("max_workers", 8))

        exchange_cfg = self.app_config.get("exchange", {}) or {}
        self.quote_currency = exchange_cfg.get("quote_currency", "USDT")
        self.request_timeout_ms = int(exchange_cfg.get("request_timeout_ms", 10000))

        credentials_cfg = self.app_config.get("credentials", {}) or {}
        self.secret_env = credentials_cfg.get("encryption_secret_env", "ENCRYPTION_SECRET")

        logger.info(f"Starting {self.app_name} (interval={self.loop_interval_seconds}s, tz={self.timezone})")

        # Monitoring
        monitoring_cfg = self.app_config.get("monitoring", {}) or {}
        self.monitoring_config = monitoring_cfg
        self.metrics = MetricsRecorder(
            enabled=monitoring_cfg.get("metrics_enabled", False),
            port=int(monitoring_cfg.get("metrics_port", 9100)),
        )
        self.metrics.start()
        self.alerts = AlertService.from_config(
            monitoring_cfg.get("alerts_enabled", False),
            monitoring_cfg.get("alerts"),
        )
        if self.alerts.is_enabled():
            logger.info("Alerting enabled (min_severity=%s)",
                        (monitoring_cfg.get("alerts") or {}).get("min_severity", "warning"))

        # Persistence + reporting
        state_cfg = self.app_config.get("state", {}) or {}
        reporting_cfg = self.app_config.get("reporting", {}) or {}
        self.store = store or AccountStore(state_cfg.get("accounts_file", "data/accounts.json"))
        self.sink = sink or ReportingSink(
            reporting_cfg.get("directory", "data/reports"),
            alert_service=self.alerts,
            metrics=self.metrics,
        )

        # Core
        self.risk_engine = RiskEngine(self.timezone)
        self.pipeline = AccountCyclePipeline(self.store, self.risk_engine, self.sink, self.metrics, clock=clock)
        self.exchange_factory = exchange_factory or self._build_exchange

        self.runtimes: Dict[str, AccountRuntime] = {}
        self._in_flight: Dict[str, Tuple[Future, CycleToken]] = {}
        self._executor = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="risk-cycle")
        self._stop_event = threading.Event()
        self._shutdown_done = False
        self._last_tick_at: Optional[datetime] = None
        self.health_server: Optional[HealthServer] = None
        self._start_health_server()

        if install_signal_handlers:
            signal.signal(signal.SIGINT, self._handle_stop)
            signal.signal(signal.SIGTERM, self._handle_stop)

        logger.info("Initialized MonitorLoop")

    @property
    def running(self) -> bool:
        return not self._stop_event.is_set()

    def _handle_stop(self, *_):
        logger.warning("=" * 80)
        logger.warning("SHUTDOWN SIGNAL RECEIVED - Initiating graceful shutdown")
        logger.warning("=" * 80)
        self._stop_event.set()

    def _load_yaml(self, filename: str) -> dict:
        """Load YAML config file"""
        path = self.config_dir / filename
        with open(path) as f:
            return yaml.safe_load(f) or {}

    def _build_exchange(self, record: AccountRecord) -> Any:
        secret = load_secret(self.secret_env, record.account_id)
        return build_exchange(record, secret, self.quote_currency, self.request_timeout_ms)

    # ------------------------------------------------------------------
    # Account initialization
    # ------------------------------------------------------------------

    def initialize_accounts(self) -> int:
        """Activate every monitored account. Returns the number initialized."""
        records = [
            r for r in self.store.list_accounts()
            if r.is_active or r.blocking.account_blocked_until is not None
        ]
        if not records:
            logger.warning("No active accounts found")
            return 0
        logger.info("Found %d active account(s)", len(records))

        for record in records:
            try:
                runtime = self._initialize_account(record)
            except Exception as exc:
                logger.error("[%s] Initialization failed: %s", record.label, exc)
                self.sink.record_alert(
                    record.account_id,
                    AlertSeverity.CRITICAL,
                    "Account initialization failed",
                    {"error": str(exc)},
                    account_name=record.label,
                )
                continue
            self.runtimes[record.account_id] = runtime

        logger.info("Initialized %d account(s)", len(self.runtimes))
        return len(self.runtimes)

    def _initialize_account(self, record: AccountRecord) -> AccountRuntime:
        exchange = self.exchange_factory(record)
        balance = exchange.fetch_balance()

        initial_balance = record.initial_balance
        if not initial_balance:
            if balance <= 0:
                raise AccountConfigurationError(
                    record.account_id, f"cannot use non-positive balance {balance} as initial balance"
                )
            self.store.set_initial_balance(record.account_id, balance)
            initial_balance = balance
        elif initial_balance < 0:
            raise AccountConfigurationError(record.account_id, f"invalid initial balance {initial_balance}")

        logger.info("[%s] Initial Balance: $%.2f (current $%.2f)", record.label, initial_balance, balance)
        return AccountRuntime(
            account_id=record.account_id,
            name=record.label,
            exchange=exchange,
            initial_balance=float(initial_balance),
        )

    # ------------------------------------------------------------------
    # Ticks
    # ------------------------------------------------------------------

    def run_tick(self) -> List[CycleResult]:
        """Run one cycle per account concurrently, bounded by the cycle timeout."""
        tick_started = time.monotonic()
        submitted: Dict[str, Tuple[Future, CycleToken]] = {}

        for account_id, runtime in self.runtimes.items():
            if self._stop_event.is_set():
                break
            in_flight = self._in_flight.get(account_id)
            if in_flight is not None and not in_flight[0].done():
                logger.warning("[%s] Previous cycle still running; skipping this tick", runtime.name)
                continue
            token = CycleToken()
            future = self._executor.submit(self.pipeline.run, runtime, token)
            self._in_flight[account_id] = (future, token)
            submitted[account_id] = (future, token)

        if not submitted:
            return []

        _, not_done = wait([future for future, _ in submitted.values()], timeout=self.cycle_timeout_seconds)

        results: List[CycleResult] = []
        for account_id, (future, token) in submitted.items():
            runtime = self.runtimes[account_id]
            if future in not_done:
                self._abandon(runtime, token)
                continue
            if future.cancelled():
                # dropped from the queue at shutdown
                results.append(CycleResult(account_id, CycleStatus.ABANDONED))
                continue
            try:
                result = future.result()
            except Exception as exc:
                logger.error("[%s] Cycle crashed: %s", runtime.name, exc, exc_info=True)
                result = CycleResult(account_id, CycleStatus.ERROR, error=f"{type(exc).__name__}: {exc}")
            self._track_failures(runtime, result)
            results.append(result)

        elapsed = time.monotonic() - tick_started
        self._last_tick_at = datetime.now(timezone.utc)
        self.metrics.observe_tick(elapsed)
        logger.debug("Tick finished in %.2fs (%d account(s))", elapsed, len(submitted))
        return results

    def _abandon(self, runtime: AccountRuntime, token: CycleToken) -> None:
        if token.cancel():
            logger.warning("[%s] Cycle exceeded %.1fs; abandoned before commit",
                           runtime.name, self.cycle_timeout_seconds)
            self.sink.record_alert(
                runtime.account_id,
                AlertSeverity.WARNING,
                f"Risk check timed out after {self.cycle_timeout_seconds:g}s and was abandoned",
                {"timeout_seconds": self.cycle_timeout_seconds},
                account_name=runtime.name,
            )
        else:
            logger.warning("[%s] Cycle exceeded %.1fs while applying actions; letting it finish",
                           runtime.name, self.cycle_timeout_seconds)

    def _track_failures(self, runtime: AccountRuntime, result: CycleResult) -> None:
        if result.failed:
            runtime.consecutive_failures += 1
            if runtime.consecutive_failures == 1:
                self.sink.record_alert(
                    runtime.account_id,
                    AlertSeverity.CRITICAL,
                    f"Risk check failed: {result.error}",
                    {"error": result.error},
                    account_name=runtime.name,
                )
            else:
                logger.warning("[%s] Risk check failed again (%d consecutive): %s",
                               runtime.name, runtime.consecutive_failures, result.error)
            return

        if runtime.consecutive_failures and result.status is not CycleStatus.ABANDONED:
            self.sink.record_alert(
                runtime.account_id,
                AlertSeverity.INFO,
                f"Risk checks recovered after {runtime.consecutive_failures} failed cycle(s)",
                {"failed_cycles": runtime.consecutive_failures},
                account_name=runtime.name,
            )
            runtime.consecutive_failures = 0

    def run_forever(self, interval_seconds: Optional[float] = None):
        """
        Run ticks continuously until a stop signal.

        Args:
            interval_seconds: Seconds between tick starts (default: loop.interval_seconds)
        """
        interval = float(interval_seconds) if interval_seconds else self.loop_interval_seconds
        interval = max(interval, 0.1)
        logger.info(f"Starting 24/7 monitoring (interval={interval}s, accounts={len(self.runtimes)})")

        try:
            while not self._stop_event.is_set():
                start = time.monotonic()
                try:
                    self.run_tick()
                except Exception as exc:
                    logger.error("Error in monitoring loop: %s", exc, exc_info=True)
                elapsed = time.monotonic() - start
                if elapsed > interval:
                    logger.warning(f"Tick took {elapsed:.2f}s, longer than the {interval}s interval")
                self._stop_event.wait(max(interval - elapsed, 0.0))
        finally:
            self.shutdown()

    def shutdown(self) -> None:
        if self._shutdown_done:
            return
        self._shutdown_done = True
        self._stop_event.set()

        cancelled = 0
        for account_id, (future, token) in list(self._in_flight.items()):
            if not future.done() and token.cancel():
                cancelled += 1
        if cancelled:
            logger.info("Cancelled %d uncommitted cycle(s)", cancelled)

        # committed cycles finish applying their actions; queued ones never start
        self._executor.shutdown(wait=True, cancel_futures=True)
        self._stop_health_server()
        logger.info("Risk monitor stopped cleanly.")

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    def _start_health_server(self) -> None:
        cfg = self.monitoring_config or {}
        if not cfg.get("healthcheck_enabled", False):
            return
        port_value = os.getenv("PORT") or cfg.get("healthcheck_port", 3000)
        try:
            port = int(port_value)
        except (TypeError, ValueError):
            logger.warning("Invalid healthcheck port=%s; disabling health server", port_value)
            return

        server = HealthServer(port, self._health_status_snapshot)
        try:
            server.start()
        except OSError as exc:
            logger.error("Failed to start health server on port %s: %s", port, exc)
            return
        self.health_server = server

    def _stop_health_server(self) -> None:
        server = self.health_server
        if not server:
            return
        server.stop()
        self.health_server = None

    def _health_status_snapshot(self) -> Dict[str, Any]:
        accounts = {}
        for account_id, runtime in list(self.runtimes.items()):
            cycle = self.metrics.last_cycle(account_id)
            accounts[account_id] = {
                "name": runtime.name,
                "last_status": cycle.status if cycle else None,
                "consecutive_failures": runtime.consecutive_failures,
            }

        issues = []
        if self._stop_event.is_set():
            issues.append("stopping")

        return {
            "status": "OK" if not issues else "DEGRADED",
            "message": "Trading Bot is Running",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "last_tick_at": self._last_tick_at.isoformat() if self._last_tick_at else None,
            "accounts": accounts,
            "metrics_enabled": self.metrics.is_enabled(),
            "alerts_enabled": self.alerts.is_enabled(),
            "issues": issues,
            "ok": not issues,
        }


def main():
    """Entry point"""
    import argparse

    parser = argparse.ArgumentParser(description="riskwatch - per-account trading risk monitor")
    parser.add_argument("--once", action="store_true", help="Run one tick and exit")
    parser.add_argument("--interval", type=float, default=None, help="Seconds between ticks (default: loop.interval_seconds)")
    parser.add_argument("--config-dir", default="config", help="Config directory")

    args = parser.parse_args()

    # Create loop (logging configured in __init__)
    loop = MonitorLoop(config_dir=args.config_dir)

    if not loop.initialize_accounts():
        logger.error("No accounts initialized")
        loop.shutdown()
        return 1

    if args.once:
        loop.run_tick()
        loop.shutdown()
    else:
        loop.run_forever(interval_seconds=args.interval)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
