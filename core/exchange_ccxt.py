"""
riskwatch Core: Exchange Connector (ccxt)

Account snapshot (balance, open derivatives positions) and reduce-only market
closes for any exchange ccxt supports. One client per monitored account.
"""

from typing import Any, Dict, List, Optional, Union
import logging

import ccxt

from core.exceptions import AccountConfigurationError, BalanceUnavailable, CloseFailed
from core.models import Position, PositionSide, _to_float
from infra.credentials import decrypt_secret

logger = logging.getLogger(__name__)


def supported_exchanges() -> List[str]:
    return list(ccxt.exchanges)


class CcxtExchange:
    """
    Thin ccxt wrapper with the failure semantics the risk loop relies on.

    - fetch_balance raises BalanceUnavailable (the cycle cannot be evaluated)
    - fetch_open_positions soft-fails to an empty list
    - close_position raises CloseFailed
    - close_all_positions closes what it can and returns the failures
    """

    def __init__(
        self,
        exchange_id: str,
        api_key: Optional[str] = None,
        api_secret: Optional[str] = None,
        password: Optional[str] = None,
        options: Optional[Dict[str, Any]] = None,
        quote_currency: str = "USDT",
        timeout_ms: int = 10000,
        account_label: str = "",
        client: Optional[Any] = None,
    ):
        self.exchange_id = (exchange_id or "").lower()
        self.quote_currency = quote_currency
        self.account_label = account_label or self.exchange_id

        if client is not None:
            self.client = client
        else:
            exchange_cls = getattr(ccxt, self.exchange_id, None)
            if self.exchange_id not in ccxt.exchanges or exchange_cls is None:
                raise AccountConfigurationError(self.account_label, f"Exchange {exchange_id} not supported")
            config: Dict[str, Any] = {
                "apiKey": api_key,
                "secret": api_secret,
                "enableRateLimit": True,
                "timeout": int(timeout_ms),
                "options": dict(options or {}),
            }
            if password:
                config["password"] = password
            self.client = exchange_cls(config)

        logger.info("Connected to %s (%s)", self.exchange_id, self.account_label)

    def fetch_balance(self) -> float:
        """Total balance in the quote currency."""
        try:
            balance = self.client.fetch_balance()
        except ccxt.BaseError as exc:
            logger.error("[%s] Error fetching balance: %s", self.account_label, exc)
            raise BalanceUnavailable("fetch_balance", exc) from exc

        per_currency = balance.get(self.quote_currency) or {}
        totals = balance.get("total") or {}
        raw = per_currency.get("total") or totals.get(self.quote_currency) or 0
        try:
            return float(raw)
        except (TypeError, ValueError) as exc:
            raise BalanceUnavailable("fetch_balance", exc) from exc

    def fetch_open_positions(self) -> List[Position]:
        """Open positions (contracts > 0). Transport errors yield an empty list."""
        try:
            raw_positions = self.client.fetch_positions() or []
        except ccxt.BaseError as exc:
            logger.error("[%s] Error fetching positions: %s", self.account_label, exc)
            return []

        positions: List[Position] = []
        for raw in raw_positions:
            if _to_float(raw.get("contracts")) <= 0:
                continue
            try:
                positions.append(Position.from_exchange(raw))
            except (KeyError, ValueError) as exc:
                logger.warning("[%s] Skipping malformed position %r: %s", self.account_label, raw.get("symbol"), exc)
        return positions

    def close_position(
        self,
        symbol: str,
        side: Union[PositionSide, str],
        contracts: Optional[float] = None,
    ) -> Dict[str, Any]:
        """Market order in the opposite direction, reduce-only."""
        position_side = side if isinstance(side, PositionSide) else PositionSide.from_value(side)
        try:
            order = self.client.create_order(
                symbol,
                "market",
                position_side.closing_order_side,
                contracts,
                None,
                {"reduceOnly": True},
            )
        except ccxt.BaseError as exc:
            logger.error("[%s] Error closing %s: %s", self.account_label, symbol, exc)
            raise CloseFailed(symbol, position_side.value, exc) from exc

        logger.info("[%s] Closed position: %s (%s)", self.account_label, symbol, position_side.value)
        return order

    def close_all_positions(self) -> List[CloseFailed]:
        positions = self.fetch_open_positions()
        if not positions:
            logger.info("[%s] No positions to close", self.account_label)
            return []

        logger.warning("[%s] Closing ALL %d position(s)...", self.account_label, len(positions))
        failures: List[CloseFailed] = []
        for position in positions:
            try:
                self.close_position(position.symbol, position.side, position.contracts)
            except CloseFailed as exc:
                failures.append(exc)

        if failures:
            logger.error("[%s] %d of %d closes failed", self.account_label, len(failures), len(positions))
        else:
            logger.info("[%s] All positions closed", self.account_label)
        return failures


def build_exchange(
    record: Any,
    secret: str,
    quote_currency: str = "USDT",
    timeout_ms: int = 10000,
) -> CcxtExchange:
    """Decrypt an account record's credentials and build its exchange client."""
    return CcxtExchange(
        record.exchange,
        api_key=decrypt_secret(record.api_key, secret, record.account_id),
        api_secret=decrypt_secret(record.api_secret, secret, record.account_id),
        password=decrypt_secret(record.password, secret, record.account_id),
        options=record.options,
        quote_currency=quote_currency,
        timeout_ms=timeout_ms,
        account_label=record.label,
    )
