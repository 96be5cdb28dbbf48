"""
riskwatch Core: Action Executor

Applies a RiskDecision's actions, strictly in order, against the account's
exchange client and the reporting sink.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple
import logging

from core.exceptions import CloseFailed
from core.models import (
    Action,
    Alert,
    BlockAccountUntil,
    BlockSymbolUntil,
    CloseAll,
    CloseOne,
    RecordTrade,
    to_iso,
)
from infra.alerting import AlertSeverity

logger = logging.getLogger(__name__)


@dataclass
class ExecutionReport:
    closed: int = 0
    failed: int = 0
    skipped: int = 0
    failures: List[CloseFailed] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.failed == 0


class ActionExecutor:
    """
    Rules:
    - CloseOne failure: critical alert, no retry this cycle, the paired
      RecordTrade is suppressed, later actions still apply
    - CloseOne for a (symbol, side) already closed this cycle is skipped
    - Block actions only log; the blocking state is persisted by the pipeline
    """

    def __init__(self, exchange: Any, sink: Any, metrics: Optional[Any] = None, account_name: str = ""):
        self.exchange = exchange
        self.sink = sink
        self.metrics = metrics
        self.account_name = account_name

    def apply(self, account_id: str, actions: Sequence[Action]) -> ExecutionReport:
        report = ExecutionReport()
        handled: Set[Tuple[str, str]] = set()
        # outcome of the latest CloseOne per (symbol, side); its RecordTrade follows it
        executed: Dict[Tuple[str, str], bool] = {}
        label = self.account_name or account_id

        for action in actions:
            if isinstance(action, Alert):
                self._alert(account_id, action.level, action.message, action.context)

            elif isinstance(action, CloseOne):
                key = (action.symbol, action.side.value)
                if key in handled:
                    logger.info("[%s] %s (%s) already handled this cycle; skipping %s",
                                label, action.symbol, action.side.value, action.reason.value)
                    report.skipped += 1
                    executed[key] = False
                    continue
                handled.add(key)
                logger.warning("[%s] Closing %s (%s) - %s", label, action.symbol, action.side.value, action.reason.value)
                try:
                    self.exchange.close_position(action.symbol, action.side, action.contracts)
                except CloseFailed as exc:
                    self._close_failed(account_id, report, exc, action.reason.value)
                    executed[key] = False
                    continue
                executed[key] = True
                report.closed += 1
                if self.metrics is not None:
                    self.metrics.record_close(action.reason.value)

            elif isinstance(action, RecordTrade):
                key = (action.symbol, action.side.value)
                if not executed.get(key, True):
                    logger.debug("[%s] Trade record for %s suppressed (close not executed)", label, action.symbol)
                    continue
                self.sink.record_trade(account_id, action)

            elif isinstance(action, CloseAll):
                logger.warning("[%s] Closing ALL positions - %s", label, action.reason.value)
                failures = self.exchange.close_all_positions()
                for exc in failures:
                    self._close_failed(account_id, report, exc, action.reason.value)
                if self.metrics is not None:
                    self.metrics.record_close(action.reason.value)

            elif isinstance(action, BlockSymbolUntil):
                logger.warning("[%s] Symbol %s blocked until %s", label, action.symbol, to_iso(action.until))

            elif isinstance(action, BlockAccountUntil):
                logger.warning("[%s] Account blocked until %s", label, to_iso(action.until))

            else:
                logger.error("[%s] Unknown action %r", label, action)

        return report

    def _alert(self, account_id: str, level: AlertSeverity, message: str, context: Optional[dict] = None) -> None:
        self.sink.record_alert(account_id, level, message, context or {}, account_name=self.account_name or None)

    def _close_failed(self, account_id: str, report: ExecutionReport, exc: CloseFailed, reason: str) -> None:
        report.failed += 1
        report.failures.append(exc)
        if self.metrics is not None:
            self.metrics.record_close_failure()
        self._alert(
            account_id,
            AlertSeverity.CRITICAL,
            f"Failed to close {exc.symbol} ({exc.side}): {exc.original}",
            {"symbol": exc.symbol, "side": exc.side, "reason": reason, "error": str(exc.original)},
        )
