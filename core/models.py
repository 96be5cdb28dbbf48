"""
riskwatch Core: Domain Types

Risk parameters, normalized positions, engine actions and per-cycle metrics.
Positions and actions are transient per-cycle values; risk parameters are
owned by the account record.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Union
import logging

from infra.alerting import AlertSeverity

logger = logging.getLogger(__name__)

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 string (or datetime) into an aware UTC datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        ts = value
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            ts = datetime.fromisoformat(text)
        except ValueError:
            return None
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def _to_float(value: Any, default: float = 0.0) -> float:
    if value is None or value == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


class CloseReason(str, Enum):
    """Why the engine closed a position. Used as audit trail in trade history."""

    MAX_DRAWDOWN = "MAX_DRAWDOWN"
    MAX_TRADES_EXCEEDED = "MAX_TRADES_EXCEEDED"
    LEVERAGE_EXCEEDED = "LEVERAGE_EXCEEDED"
    DAILY_LIMIT_REACHED = "DAILY_LIMIT_REACHED"
    SYMBOL_BLOCKED = "SYMBOL_BLOCKED"

    def __str__(self) -> str:  # pragma: no cover - trivial
        return self.value


class PositionSide(str, Enum):
    LONG = "long"
    SHORT = "short"

    @classmethod
    def from_value(cls, value: Any) -> "PositionSide":
        normalized = str(value or "").strip().lower()
        if normalized in ("long", "buy"):
            return cls.LONG
        if normalized in ("short", "sell"):
            return cls.SHORT
        raise ValueError(f"Unknown position side: {value!r}")

    @property
    def closing_order_side(self) -> str:
        """Order side that reduces this position."""
        return "sell" if self is PositionSide.LONG else "buy"

    def __str__(self) -> str:  # pragma: no cover - trivial
        return self.value


@dataclass(frozen=True)
class RiskParams:
    """
    Per-account risk limits.

    daily_drawdown_limit: max % loss for any single trade before it is closed
        and its symbol blocked until midnight
    max_drawdown_limit: max % loss of the whole account vs. its initial balance
    max_leverage: highest leverage a position may carry
    max_open_trades: max number of simultaneously open positions

    A limit of 0 always trips.
    """

    daily_drawdown_limit: float
    max_drawdown_limit: float
    max_leverage: float
    max_open_trades: int

    def __post_init__(self):
        for name in ("daily_drawdown_limit", "max_drawdown_limit", "max_leverage", "max_open_trades"):
            value = getattr(self, name)
            if value is None or value < 0:
                raise ValueError(f"RiskParams.{name} must be non-negative, got {value!r}")

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "RiskParams":
        return cls(
            daily_drawdown_limit=float(raw["daily_drawdown_limit"]),
            max_drawdown_limit=float(raw["max_drawdown_limit"]),
            max_leverage=float(raw["max_leverage"]),
            max_open_trades=int(raw["max_open_trades"]),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "daily_drawdown_limit": self.daily_drawdown_limit,
            "max_drawdown_limit": self.max_drawdown_limit,
            "max_leverage": self.max_leverage,
            "max_open_trades": self.max_open_trades,
        }


@dataclass(frozen=True)
class Position:
    """One open derivatives position as reported by the exchange this cycle."""

    symbol: str
    side: PositionSide
    contracts: float
    entry_price: float = 0.0
    mark_price: float = 0.0
    leverage: float = 0.0
    opened_at: datetime = EPOCH
    reported_pnl_percent: Optional[float] = None

    @staticmethod
    def resolve_opened_at(raw: Dict[str, Any]) -> datetime:
        """
        Open time fallback chain: epoch-ms ``timestamp``, then ISO ``datetime``,
        then epoch zero. Missing or unparseable values fall through to the next
        source.
        """
        millis = raw.get("timestamp")
        if millis:
            try:
                return datetime.fromtimestamp(float(millis) / 1000.0, tz=timezone.utc)
            except (TypeError, ValueError, OverflowError, OSError):
                logger.debug("Unparseable position timestamp %r", millis)
        iso = parse_timestamp(raw.get("datetime"))
        if iso is not None:
            return iso
        return EPOCH

    @classmethod
    def from_exchange(cls, raw: Dict[str, Any]) -> "Position":
        """Build from a ccxt unified position structure."""
        info = raw.get("info") or {}
        mark = _to_float(raw.get("markPrice")) or _to_float(info.get("markPrice"))
        percentage = raw.get("percentage")
        return cls(
            symbol=raw["symbol"],
            side=PositionSide.from_value(raw.get("side")),
            contracts=_to_float(raw.get("contracts")),
            entry_price=_to_float(raw.get("entryPrice")),
            mark_price=mark,
            leverage=_to_float(raw.get("leverage")),
            opened_at=cls.resolve_opened_at(raw),
            reported_pnl_percent=None if percentage is None else _to_float(percentage),
        )


@dataclass(frozen=True)
class CloseOne:
    symbol: str
    side: PositionSide
    reason: CloseReason
    contracts: Optional[float] = None


@dataclass(frozen=True)
class CloseAll:
    reason: CloseReason


@dataclass(frozen=True)
class BlockSymbolUntil:
    symbol: str
    until: datetime


@dataclass(frozen=True)
class BlockAccountUntil:
    until: datetime


@dataclass(frozen=True)
class Alert:
    level: AlertSeverity
    message: str
    context: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class RecordTrade:
    """Trade-history entry for a position the engine closed."""

    symbol: str
    side: PositionSide
    entry_price: float
    exit_price: float
    pnl_percent: float
    reason: CloseReason
    leverage: float
    size: float
    entry_time: datetime
    exit_time: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "symbol": self.symbol,
            "side": self.side.value,
            "entry_price": self.entry_price,
            "entry_time": to_iso(self.entry_time),
            "exit_price": self.exit_price,
            "exit_time": to_iso(self.exit_time),
            "pnl_percent": self.pnl_percent,
            "reason": self.reason.value,
            "leverage": self.leverage,
            "size": self.size,
        }


Action = Union[CloseOne, CloseAll, BlockSymbolUntil, BlockAccountUntil, Alert, RecordTrade]


@dataclass(frozen=True)
class AccountMetrics:
    """Account snapshot recorded after every completed evaluation."""

    current_balance: float
    total_pnl: float
    total_drawdown_percent: float
    open_positions: int
    daily_pnl: float = 0.0
    daily_drawdown_percent: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "current_balance": self.current_balance,
            "total_pnl": self.total_pnl,
            "daily_pnl": self.daily_pnl,
            "total_drawdown_percent": self.total_drawdown_percent,
            "daily_drawdown_percent": self.daily_drawdown_percent,
            "open_positions": self.open_positions,
        }
