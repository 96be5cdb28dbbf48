"""
Risk Cycle Pipeline - one account, one evaluation

Implements the per-account flow run by the monitor loop on every tick:
1. Load the account record and its blocking state
2. Account-block gate (no exchange I/O while blocked)
3. Snapshot: balance + open positions
4. Evaluate (pure RiskEngine)
5. Commit point (abandoned cycles stop here)
6. Apply actions (ActionExecutor)
7. Persist blocking state / activation / last_check in one write
8. Record metrics
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, List, Optional
import logging
import threading
import time

from core.exceptions import ExchangeDataUnavailable
from core.executor import ActionExecutor, ExecutionReport
from core.models import Action, Alert, to_iso
from core.risk import RiskEngine
from infra.metrics import CycleStats, MetricsRecorder

logger = logging.getLogger(__name__)


class CycleStatus(str, Enum):
    OK = "ok"
    SKIPPED_BLOCKED = "skipped_blocked"
    INACTIVE = "inactive"
    ABANDONED = "abandoned"
    ERROR = "error"


class CycleToken:
    """
    Commit/cancel handshake between a running cycle and the scheduler.

    Exactly one of try_commit() and cancel() wins. A cycle applies actions only
    after a successful try_commit(); once committed it runs to completion.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._committed = False
        self._cancelled = False

    def try_commit(self) -> bool:
        with self._lock:
            if self._cancelled:
                return False
            self._committed = True
            return True

    def cancel(self) -> bool:
        """Returns True if the cycle had not committed yet (and now never will)."""
        with self._lock:
            if self._committed:
                return False
            self._cancelled = True
            return True

    @property
    def committed(self) -> bool:
        return self._committed

    @property
    def cancelled(self) -> bool:
        return self._cancelled


@dataclass
class AccountRuntime:
    """Process-local handle for one initialized account."""
    account_id: str
    name: str
    exchange: Any
    initial_balance: float
    consecutive_failures: int = 0


@dataclass
class CycleResult:
    """Result of one account cycle"""
    account_id: str
    status: CycleStatus
    actions: List[Action] = field(default_factory=list)
    execution: Optional[ExecutionReport] = None
    error: Optional[str] = None
    duration_seconds: float = 0.0

    @property
    def failed(self) -> bool:
        return self.status is CycleStatus.ERROR


class AccountCyclePipeline:
    """
    Runs one evaluation cycle for one account.

    Never raises: every failure is folded into a CycleResult with status
    ``error`` so one account cannot take down the scheduler.
    """

    def __init__(self,
                 store: Any,
                 risk_engine: RiskEngine,
                 sink: Any,
                 metrics: Optional[MetricsRecorder] = None,
                 clock: Optional[Callable[[], datetime]] = None):
        self.store = store
        self.risk_engine = risk_engine
        self.sink = sink
        self.metrics = metrics
        self.clock = clock or (lambda: datetime.now(timezone.utc))

        logger.info("Initialized AccountCyclePipeline")

    def run(self, runtime: AccountRuntime, token: CycleToken) -> CycleResult:
        started = time.monotonic()
        try:
            result = self._run(runtime, token)
        except ExchangeDataUnavailable as exc:
            logger.warning("[%s] Cycle aborted, exchange data unavailable: %s", runtime.name, exc)
            result = CycleResult(runtime.account_id, CycleStatus.ERROR, error=str(exc))
        except Exception as exc:
            logger.error("[%s] Error during monitoring: %s", runtime.name, exc, exc_info=True)
            result = CycleResult(runtime.account_id, CycleStatus.ERROR, error=f"{type(exc).__name__}: {exc}")

        result.duration_seconds = time.monotonic() - started
        if self.metrics is not None:
            execution = result.execution
            self.metrics.observe_cycle(CycleStats(
                account_id=runtime.account_id,
                status=result.status.value,
                closes=execution.closed if execution else 0,
                alerts=sum(1 for a in result.actions if isinstance(a, Alert)),
                duration_seconds=result.duration_seconds,
            ))
        return result

    def _run(self, runtime: AccountRuntime, token: CycleToken) -> CycleResult:
        account_id = runtime.account_id
        record = self.store.get_account(account_id)
        if record is None:
            return CycleResult(account_id, CycleStatus.ERROR, error="account no longer in store")

        now = self.clock()
        state = record.blocking.copy()

        # Step 2: gate
        if state.is_account_blocked(now):
            logger.debug("[%s] Account blocked until %s; skipping", runtime.name, to_iso(state.account_blocked_until))
            if self.metrics is not None:
                self.metrics.record_account_blocked(account_id, True)
            return CycleResult(account_id, CycleStatus.SKIPPED_BLOCKED)

        reactivate = False
        if record.blocking.account_blocked_until is not None:
            logger.info("[%s] Account unblocked (block expired at %s)", runtime.name,
                        to_iso(record.blocking.account_blocked_until))
            reactivate = not record.is_active
        elif not record.is_active:
            return CycleResult(account_id, CycleStatus.INACTIVE)

        # Step 3: snapshot
        balance = runtime.exchange.fetch_balance()
        positions = runtime.exchange.fetch_open_positions()

        # Step 4: evaluate
        decision = self.risk_engine.evaluate(
            record.risk_params,
            state,
            balance,
            runtime.initial_balance,
            positions,
            now,
            account_name=runtime.name,
        )

        # Step 5: commit point
        if not token.try_commit():
            logger.warning("[%s] Cycle abandoned before commit; %d action(s) discarded",
                           runtime.name, len(decision.actions))
            return CycleResult(account_id, CycleStatus.ABANDONED, actions=list(decision.actions))

        # Step 6: apply
        executor = ActionExecutor(runtime.exchange, self.sink, self.metrics, account_name=runtime.name)
        report = executor.apply(account_id, decision.actions)

        # Step 7: persist
        if decision.deactivate:
            is_active: Optional[bool] = False
        elif reactivate:
            is_active = True
        else:
            is_active = None
        self.store.commit_cycle(account_id, decision.state, is_active=is_active, last_check=now)

        # Step 8: metrics
        if decision.metrics is not None:
            self.sink.record_metrics(account_id, decision.metrics)
        if self.metrics is not None:
            self.metrics.record_account_blocked(account_id, decision.deactivate)

        return CycleResult(account_id, CycleStatus.OK, actions=list(decision.actions), execution=report)
