"""
riskwatch Core: Blocking State

Per-account record of the account-level block (max drawdown) and symbol-level
blocks (daily per-trade limit). Blocks expire at the next local midnight.

Expiry is lazy: an entry is active only while its timestamp is strictly in the
future, and every read that observes an expired entry removes it. There is no
scheduled reset job.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Any, Dict, List, Optional
from zoneinfo import ZoneInfo
import logging

from core.models import parse_timestamp, to_iso

logger = logging.getLogger(__name__)


def resolve_timezone(name: Optional[str]) -> tzinfo:
    """IANA zone for the daily reset boundary (default UTC)."""
    if not name or name.upper() == "UTC":
        return timezone.utc
    return ZoneInfo(name)


def next_midnight(now: datetime, tz: tzinfo = timezone.utc) -> datetime:
    """
    Start of the next calendar day in ``tz``, returned in UTC.

    A block issued at 23:59 local time expires one minute later.
    """
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    local = now.astimezone(tz)
    tomorrow = local.date() + timedelta(days=1)
    midnight = datetime(tomorrow.year, tomorrow.month, tomorrow.day, tzinfo=tz)
    return midnight.astimezone(timezone.utc)


@dataclass
class BlockingState:
    """
    Durable blocking record for one account.

    account_blocked_until: account skipped entirely until this instant
    symbol_blocks: symbol -> instant the symbol unblocks
    """

    account_blocked_until: Optional[datetime] = None
    symbol_blocks: Dict[str, datetime] = field(default_factory=dict)

    def copy(self) -> "BlockingState":
        return BlockingState(
            account_blocked_until=self.account_blocked_until,
            symbol_blocks=dict(self.symbol_blocks),
        )

    def is_account_blocked(self, now: datetime) -> bool:
        until = self.account_blocked_until
        if until is None:
            return False
        if now < until:
            return True
        logger.info("Account block expired at %s; unblocking", to_iso(until))
        self.account_blocked_until = None
        return False

    def is_symbol_blocked(self, symbol: str, now: datetime) -> bool:
        until = self.symbol_blocks.get(symbol)
        if until is None:
            return False
        if now < until:
            return True
        logger.info("Symbol block for %s expired at %s; unblocking", symbol, to_iso(until))
        del self.symbol_blocks[symbol]
        return False

    def symbol_blocked_until(self, symbol: str) -> Optional[datetime]:
        return self.symbol_blocks.get(symbol)

    def block_account(self, until: datetime) -> None:
        self.account_blocked_until = until

    def block_symbol(self, symbol: str, until: datetime) -> None:
        self.symbol_blocks[symbol] = until

    def purge_expired(self, now: datetime) -> List[str]:
        """Drop every expired entry. Returns the symbols that were unblocked."""
        self.is_account_blocked(now)
        expired = [symbol for symbol, until in self.symbol_blocks.items() if until <= now]
        for symbol in expired:
            del self.symbol_blocks[symbol]
        if expired:
            logger.debug("Cleared expired symbol blocks: %s", expired)
        return expired

    def to_dict(self) -> Dict[str, Any]:
        return {
            "account_blocked_until": to_iso(self.account_blocked_until),
            "symbol_blocks": {symbol: to_iso(until) for symbol, until in self.symbol_blocks.items()},
        }

    @classmethod
    def from_dict(cls, raw: Optional[Dict[str, Any]]) -> "BlockingState":
        raw = raw or {}
        blocks: Dict[str, datetime] = {}
        for symbol, value in (raw.get("symbol_blocks") or {}).items():
            until = parse_timestamp(value)
            if until is None:
                logger.warning("Dropping unparseable block timestamp for %s: %r", symbol, value)
                continue
            blocks[symbol] = until
        return cls(
            account_blocked_until=parse_timestamp(raw.get("account_blocked_until")),
            symbol_blocks=blocks,
        )
