"""
riskwatch Infrastructure: Reporting Sink

Durable record of everything the risk engine did: alerts, per-cycle account
metrics and trade history for engine-closed positions. Output format: JSONL
(one JSON object per line) under the reporting directory:

    alerts.jsonl   - every alert, also forwarded to the webhook AlertService
    metrics.jsonl  - AccountMetrics snapshot per completed evaluation
    trades.jsonl   - RecordTrade entries

Fire-and-forget: a reporting failure is logged and never reaches the caller.
"""

import json
import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from infra.alerting import AlertService, AlertSeverity
from infra.metrics import MetricsRecorder

logger = logging.getLogger(__name__)

_LOG_LEVELS = {
    AlertSeverity.INFO: logging.INFO,
    AlertSeverity.WARNING: logging.WARNING,
    AlertSeverity.CRITICAL: logging.ERROR,
}


def _payload(value: Any) -> Dict[str, Any]:
    if hasattr(value, "to_dict"):
        return value.to_dict()
    return dict(value)


class ReportingSink:
    """JSONL reporting with webhook and Prometheus fan-out."""

    def __init__(
        self,
        directory: Optional[str] = None,
        alert_service: Optional[AlertService] = None,
        metrics: Optional[MetricsRecorder] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.directory = Path(directory or "data/reports")
        self.directory.mkdir(parents=True, exist_ok=True)
        self.alerts_file = self.directory / "alerts.jsonl"
        self.metrics_file = self.directory / "metrics.jsonl"
        self.trades_file = self.directory / "trades.jsonl"

        self._alert_service = alert_service
        self._metrics = metrics
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._lock = threading.Lock()
        logger.info(f"Initialized ReportingSink at {self.directory}")

    def _append(self, path: Path, entry: Dict[str, Any]) -> None:
        line = json.dumps(entry, default=str) + "\n"
        with self._lock:
            with open(path, "a", encoding="utf-8") as f:
                f.write(line)

    def record_alert(
        self,
        account_id: str,
        level: AlertSeverity,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        account_name: Optional[str] = None,
    ) -> None:
        label = account_name or account_id
        logger.log(_LOG_LEVELS.get(level, logging.WARNING), "[%s] [%s] %s", label, level.name, message)
        try:
            self._append(self.alerts_file, {
                "timestamp": self._clock().isoformat(),
                "account_id": account_id,
                "level": level.label,
                "message": message,
                "data": context or {},
            })
        except Exception as e:
            logger.error(f"Failed to save alert: {e}")

        try:
            if self._metrics is not None:
                self._metrics.record_alert(level.label)
            if self._alert_service is not None:
                self._alert_service.notify(level, f"[{label}]", message, context)
        except Exception as e:
            logger.error(f"Failed to dispatch alert: {e}")

    def record_metrics(self, account_id: str, metrics: Any) -> None:
        try:
            payload = _payload(metrics)
            self._append(self.metrics_file, {
                "timestamp": self._clock().isoformat(),
                "account_id": account_id,
                **payload,
            })
            if self._metrics is not None:
                self._metrics.record_account_snapshot(
                    account_id,
                    balance=float(payload.get("current_balance", 0.0)),
                    drawdown_pct=float(payload.get("total_drawdown_percent", 0.0)),
                    open_positions=int(payload.get("open_positions", 0)),
                )
        except Exception as e:
            logger.error(f"Failed to save metrics: {e}")

    def record_trade(self, account_id: str, trade: Any) -> None:
        try:
            payload = _payload(trade)
            self._append(self.trades_file, {
                "timestamp": self._clock().isoformat(),
                "account_id": account_id,
                **payload,
            })
            logger.debug("Recorded trade %s %s (%s)", payload.get("symbol"), payload.get("side"), payload.get("reason"))
        except Exception as e:
            logger.error(f"Failed to save trade history: {e}")


__all__ = ["ReportingSink"]
