"""
Tests for the ccxt exchange connector using a mocked ccxt client.
"""
from datetime import datetime, timezone
from unittest.mock import MagicMock

import ccxt
import pytest

from core.exceptions import AccountConfigurationError, BalanceUnavailable, CloseFailed
from core.exchange_ccxt import CcxtExchange, build_exchange, supported_exchanges
from core.models import EPOCH, PositionSide, RiskParams
from infra.credentials import encrypt_secret
from infra.state_store import AccountRecord
from tests.helpers import raw_ccxt_position


def _exchange(client, quote="USDT"):
    return CcxtExchange("binanceusdm", quote_currency=quote, account_label="test", client=client)


class TestBalance:

    def test_reads_quote_currency_total(self):
        client = MagicMock()
        client.fetch_balance.return_value = {"USDT": {"free": 800, "used": 200, "total": 1000}}
        assert _exchange(client).fetch_balance() == 1000.0

    def test_falls_back_to_total_map(self):
        client = MagicMock()
        client.fetch_balance.return_value = {"total": {"USDT": 512.5}}
        assert _exchange(client).fetch_balance() == 512.5

    def test_missing_currency_is_zero(self):
        client = MagicMock()
        client.fetch_balance.return_value = {"BTC": {"total": 1}}
        assert _exchange(client).fetch_balance() == 0.0

    def test_transport_error_raises_balance_unavailable(self):
        client = MagicMock()
        client.fetch_balance.side_effect = ccxt.NetworkError("timeout")
        with pytest.raises(BalanceUnavailable):
            _exchange(client).fetch_balance()

    def test_auth_error_raises_balance_unavailable(self):
        client = MagicMock()
        client.fetch_balance.side_effect = ccxt.AuthenticationError("bad key")
        with pytest.raises(BalanceUnavailable):
            _exchange(client).fetch_balance()


class TestPositions:

    def test_filters_closed_positions(self):
        client = MagicMock()
        client.fetch_positions.return_value = [
            raw_ccxt_position(symbol="BTC/USDT:USDT", contracts=2),
            raw_ccxt_position(symbol="ETH/USDT:USDT", contracts=0),
            raw_ccxt_position(symbol="SOL/USDT:USDT", contracts=None),
        ]

        positions = _exchange(client).fetch_open_positions()

        assert [p.symbol for p in positions] == ["BTC/USDT:USDT"]
        assert positions[0].contracts == 2.0

    def test_normalises_fields(self):
        client = MagicMock()
        client.fetch_positions.return_value = [raw_ccxt_position(
            side="short", entry_price="100", mark_price=None, leverage="10",
            timestamp=1710084600000, percentage=-3.5, info={"markPrice": "97.5"},
        )]

        position = _exchange(client).fetch_open_positions()[0]

        assert position.side is PositionSide.SHORT
        assert position.entry_price == 100.0
        assert position.mark_price == 97.5
        assert position.leverage == 10.0
        assert position.reported_pnl_percent == -3.5
        assert position.opened_at == datetime(2024, 3, 10, 15, 30, tzinfo=timezone.utc)

    def test_open_time_falls_back_to_iso_then_epoch(self):
        client = MagicMock()
        client.fetch_positions.return_value = [
            raw_ccxt_position(symbol="A", datetime_str="2024-03-10T12:00:00Z"),
            raw_ccxt_position(symbol="B"),
        ]

        a, b = _exchange(client).fetch_open_positions()

        assert a.opened_at == datetime(2024, 3, 10, 12, 0, tzinfo=timezone.utc)
        assert b.opened_at == EPOCH

    def test_transport_error_yields_empty_list(self):
        client = MagicMock()
        client.fetch_positions.side_effect = ccxt.NetworkError("down")
        assert _exchange(client).fetch_open_positions() == []

    def test_malformed_entry_skipped(self):
        client = MagicMock()
        client.fetch_positions.return_value = [
            raw_ccxt_position(symbol="BAD", side="sideways"),
            raw_ccxt_position(symbol="GOOD"),
        ]
        assert [p.symbol for p in _exchange(client).fetch_open_positions()] == ["GOOD"]


class TestClose:

    def test_long_closed_with_reduce_only_sell(self):
        client = MagicMock()
        _exchange(client).close_position("BTC/USDT:USDT", PositionSide.LONG, 2.0)
        client.create_order.assert_called_once_with(
            "BTC/USDT:USDT", "market", "sell", 2.0, None, {"reduceOnly": True},
        )

    def test_short_closed_with_buy(self):
        client = MagicMock()
        _exchange(client).close_position("BTC/USDT:USDT", "short", 1.0)
        assert client.create_order.call_args.args[2] == "buy"

    def test_rejected_order_raises_close_failed(self):
        client = MagicMock()
        client.create_order.side_effect = ccxt.InvalidOrder("reduce only rejected")

        with pytest.raises(CloseFailed) as exc_info:
            _exchange(client).close_position("BTC/USDT:USDT", PositionSide.LONG, 1.0)

        assert exc_info.value.symbol == "BTC/USDT:USDT"
        assert exc_info.value.side == "long"

    def test_close_all_continues_after_failure(self):
        client = MagicMock()
        client.fetch_positions.return_value = [
            raw_ccxt_position(symbol="A"),
            raw_ccxt_position(symbol="B"),
        ]
        client.create_order.side_effect = [ccxt.ExchangeError("nope"), {"id": "2"}]

        failures = _exchange(client).close_all_positions()

        assert [f.symbol for f in failures] == ["A"]
        assert client.create_order.call_count == 2

    def test_close_all_with_no_positions(self):
        client = MagicMock()
        client.fetch_positions.return_value = []
        assert _exchange(client).close_all_positions() == []
        client.create_order.assert_not_called()


class TestConstruction:

    def test_unsupported_exchange_rejected(self):
        with pytest.raises(AccountConfigurationError):
            CcxtExchange("not-a-real-exchange", "k", "s")

    def test_supported_exchanges_lists_ccxt_ids(self):
        assert "binanceusdm" in supported_exchanges()

    def test_build_exchange_decrypts_credentials(self):
        secret = "unit-test-secret"
        record = AccountRecord(
            account_id="acct-1",
            name="Main",
            exchange="binanceusdm",
            api_key=encrypt_secret("my-key", secret),
            api_secret=encrypt_secret("my-secret", secret),
            risk_params=RiskParams(5, 20, 20, 3),
        )

        exchange = build_exchange(record, secret, timeout_ms=2500)

        assert exchange.client.apiKey == "my-key"
        assert exchange.client.secret == "my-secret"
        assert exchange.client.timeout == 2500
        assert exchange.account_label == "Main"
