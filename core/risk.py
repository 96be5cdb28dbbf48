"""
riskwatch Core: Risk Engine

Per-cycle policy evaluation for one account. Pure: the decision depends only
on the inputs (including ``now``); nothing here touches the network, the store
or the wall clock.

Rules, in order:
1. Account block gate (skip the account until its block expires)
2. Max drawdown -> close all, block account until midnight, stop
3. Max open trades -> close the newest excess positions
4. Per position: leverage, daily per-trade limit, blocked symbol
"""

from dataclasses import dataclass
from datetime import datetime, timezone, tzinfo
from typing import List, Optional, Sequence
import logging

from core.blocking import BlockingState, next_midnight
from core.models import (
    AccountMetrics,
    Action,
    Alert,
    BlockAccountUntil,
    BlockSymbolUntil,
    CloseAll,
    CloseOne,
    CloseReason,
    Position,
    PositionSide,
    RecordTrade,
    RiskParams,
    to_iso,
)
from infra.alerting import AlertSeverity

logger = logging.getLogger(__name__)


@dataclass
class RiskDecision:
    """Outcome of one evaluation: ordered actions plus the updated blocking state."""

    actions: List[Action]
    state: BlockingState
    skipped: bool = False
    deactivate: bool = False
    metrics: Optional[AccountMetrics] = None


def trade_pnl_percent(position: Position) -> float:
    """
    Leveraged P&L % of one position.

    The exchange-reported percentage wins when present and non-zero; otherwise
    it is derived from entry/mark (fees and funding are ignored).
    """
    if position.reported_pnl_percent:
        return position.reported_pnl_percent
    entry, mark = position.entry_price, position.mark_price
    if not entry or not mark:
        return 0.0
    if position.side is PositionSide.LONG:
        return ((mark - entry) / entry) * 100 * position.leverage
    return ((entry - mark) / entry) * 100 * position.leverage


def total_drawdown_percent(balance: float, initial_balance: float) -> float:
    if initial_balance <= 0:
        raise ValueError(f"initial_balance must be positive, got {initial_balance}")
    return (balance - initial_balance) / initial_balance * 100


def select_excess_positions(positions: Sequence[Position], max_open_trades: int) -> List[Position]:
    """
    Newest positions beyond the open-trade cap.

    Sorted by open time, newest first; ties keep input order (sorted() is
    stable under reverse=True).
    """
    excess = len(positions) - max_open_trades
    if excess <= 0:
        return []
    newest_first = sorted(positions, key=lambda p: p.opened_at, reverse=True)
    return newest_first[:excess]


class RiskEngine:
    """
    Enforces per-account risk limits.

    Returns a RiskDecision; the caller applies the actions and persists the
    decision's state.
    """

    def __init__(self, tz: tzinfo = timezone.utc):
        self.tz = tz
        logger.info("Initialized RiskEngine (daily reset tz=%s)", tz)

    def evaluate(
        self,
        params: RiskParams,
        state: BlockingState,
        balance: float,
        initial_balance: float,
        positions: Sequence[Position],
        now: datetime,
        account_name: str = "",
    ) -> RiskDecision:
        state = state.copy()
        actions: List[Action] = []
        decision = RiskDecision(actions=actions, state=state)

        if state.is_account_blocked(now):
            decision.skipped = True
            return decision
        # symbols with no open position are never read below
        state.purge_expired(now)

        total_pnl = balance - initial_balance
        drawdown_pct = total_drawdown_percent(balance, initial_balance)
        midnight = next_midnight(now, self.tz)

        logger.info(
            "[%s] Balance: %.2f | Total P&L: %.2f%% | Positions: %d/%d",
            account_name, balance, drawdown_pct, len(positions), params.max_open_trades,
        )

        if drawdown_pct <= -abs(params.max_drawdown_limit):
            self._trip_max_drawdown(decision, params, drawdown_pct, midnight)
            return decision

        self._close_excess_trades(decision, params, positions, now)

        for position in positions:
            self._check_position(decision, params, position, now, midnight)

        decision.metrics = AccountMetrics(
            current_balance=balance,
            total_pnl=total_pnl,
            total_drawdown_percent=drawdown_pct,
            open_positions=len(positions),
        )
        return decision

    def _trip_max_drawdown(
        self,
        decision: RiskDecision,
        params: RiskParams,
        drawdown_pct: float,
        midnight: datetime,
    ) -> None:
        decision.actions.append(Alert(
            AlertSeverity.CRITICAL,
            f"MAX DRAWDOWN REACHED: {drawdown_pct:.2f}% | closing all trades and blocking account until midnight",
            {"limit": params.max_drawdown_limit, "actual": drawdown_pct},
        ))
        decision.actions.append(CloseAll(CloseReason.MAX_DRAWDOWN))
        decision.actions.append(BlockAccountUntil(midnight))
        decision.actions.append(Alert(
            AlertSeverity.CRITICAL,
            f"Account blocked until {to_iso(midnight)}",
            {"blocked_until": to_iso(midnight)},
        ))
        decision.state.block_account(midnight)
        decision.deactivate = True

    def _close_excess_trades(
        self,
        decision: RiskDecision,
        params: RiskParams,
        positions: Sequence[Position],
        now: datetime,
    ) -> None:
        excess = select_excess_positions(positions, params.max_open_trades)
        if not excess:
            return
        decision.actions.append(Alert(
            AlertSeverity.WARNING,
            f"Too many trades: {len(positions)}/{params.max_open_trades} | auto-closing {len(excess)} newest",
            {"open": len(positions), "limit": params.max_open_trades},
        ))
        for position in excess:
            self._close(decision, position, CloseReason.MAX_TRADES_EXCEEDED, trade_pnl_percent(position), now)

    def _check_position(
        self,
        decision: RiskDecision,
        params: RiskParams,
        position: Position,
        now: datetime,
        midnight: datetime,
    ) -> None:
        symbol = position.symbol
        pnl_pct = trade_pnl_percent(position)
        logger.debug(
            "  %s (%s) | entry %.4f | mark %.4f | P&L %.2f%% | leverage %sx",
            symbol, position.side.value, position.entry_price, position.mark_price, pnl_pct, position.leverage,
        )

        if position.leverage > params.max_leverage:
            decision.actions.append(Alert(
                AlertSeverity.WARNING,
                f"{symbol} leverage {position.leverage:g}x exceeds limit {params.max_leverage:g}x | auto-closing",
                {"symbol": symbol, "leverage": position.leverage, "limit": params.max_leverage},
            ))
            self._close(decision, position, CloseReason.LEVERAGE_EXCEEDED, pnl_pct, now)
            return

        if pnl_pct <= -abs(params.daily_drawdown_limit):
            decision.actions.append(Alert(
                AlertSeverity.CRITICAL,
                f"{symbol} hit daily limit: {pnl_pct:.2f}% | closing and blocking symbol until midnight",
                {
                    "symbol": symbol,
                    "limit": params.daily_drawdown_limit,
                    "actual": pnl_pct,
                    "blocked_until": to_iso(midnight),
                },
            ))
            self._close(decision, position, CloseReason.DAILY_LIMIT_REACHED, pnl_pct, now)
            decision.actions.append(BlockSymbolUntil(symbol, midnight))
            decision.actions.append(Alert(
                AlertSeverity.WARNING,
                f"{symbol} blocked until {to_iso(midnight)}",
                {"symbol": symbol, "blocked_until": to_iso(midnight)},
            ))
            decision.state.block_symbol(symbol, midnight)
            return

        if decision.state.is_symbol_blocked(symbol, now):
            until = decision.state.symbol_blocked_until(symbol)
            decision.actions.append(Alert(
                AlertSeverity.WARNING,
                f"{symbol} is blocked until {to_iso(until)} | closing trade",
                {"symbol": symbol, "blocked_until": to_iso(until)},
            ))
            self._close(decision, position, CloseReason.SYMBOL_BLOCKED, pnl_pct, now)

    @staticmethod
    def _close(
        decision: RiskDecision,
        position: Position,
        reason: CloseReason,
        pnl_pct: float,
        now: datetime,
    ) -> None:
        decision.actions.append(CloseOne(position.symbol, position.side, reason, position.contracts))
        decision.actions.append(RecordTrade(
            symbol=position.symbol,
            side=position.side,
            entry_price=position.entry_price,
            exit_price=position.mark_price,
            pnl_percent=pnl_pct,
            reason=reason,
            leverage=position.leverage,
            size=position.contracts,
            entry_time=position.opened_at,
            exit_time=now,
        ))
