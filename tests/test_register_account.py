"""
Tests for the account registration tool.
"""
from datetime import timedelta

import pytest

from core.blocking import BlockingState
from core.exceptions import AccountConfigurationError
from infra.credentials import decrypt_secret
from infra.state_store import AccountStore
from tests.helpers import NOW
from tools.register_account import build_parser, main, register

SECRET = "register-test-secret"


@pytest.fixture(autouse=True)
def encryption_secret(monkeypatch):
    monkeypatch.setenv("RISKWATCH_TEST_SECRET", SECRET)


def _args(accounts_file, *extra):
    return build_parser().parse_args([
        "--accounts-file", str(accounts_file),
        "--secret-env", "RISKWATCH_TEST_SECRET",
        "--id", "acct-1",
        "--name", "Main",
        "--exchange", "binanceusdm",
        "--api-key", "plain-key",
        "--api-secret", "plain-secret",
        "--daily-drawdown-limit", "5",
        "--max-drawdown-limit", "20",
        "--max-leverage", "10",
        "--max-open-trades", "3",
        *extra,
    ])


def test_credentials_are_encrypted_at_rest(tmp_path):
    accounts_file = tmp_path / "accounts.json"

    register(_args(accounts_file))

    record = AccountStore(str(accounts_file)).get_account("acct-1")
    assert record.api_key != "plain-key"
    assert decrypt_secret(record.api_key, SECRET) == "plain-key"
    assert decrypt_secret(record.api_secret, SECRET) == "plain-secret"
    assert record.password is None
    assert record.risk_params.max_leverage == 10.0
    assert "plain-secret" not in accounts_file.read_text()


def test_re_registering_keeps_baseline_and_blocks(tmp_path):
    accounts_file = tmp_path / "accounts.json"
    register(_args(accounts_file))
    store = AccountStore(str(accounts_file))
    store.set_initial_balance("acct-1", 1500.0)
    blocks = BlockingState(symbol_blocks={"SOL/USDT:USDT": NOW + timedelta(hours=4)})
    store.save_blocking_state("acct-1", blocks)

    register(_args(accounts_file, "--max-open-trades", "5"))

    record = store.get_account("acct-1")
    assert record.initial_balance == 1500.0
    assert record.blocking == blocks
    assert record.risk_params.max_open_trades == 5


def test_unsupported_exchange(tmp_path):
    args = _args(tmp_path / "accounts.json")
    args.exchange = "not-a-real-exchange"
    with pytest.raises(AccountConfigurationError):
        register(args)


def test_options_must_be_json_object(tmp_path):
    with pytest.raises(AccountConfigurationError):
        register(_args(tmp_path / "accounts.json", "--options", "[1, 2]"))


def test_main_reports_missing_secret(tmp_path, monkeypatch, capsys):
    monkeypatch.delenv("RISKWATCH_TEST_SECRET")
    argv = [
        "--accounts-file", str(tmp_path / "accounts.json"),
        "--secret-env", "RISKWATCH_TEST_SECRET",
        "--id", "acct-1", "--exchange", "binanceusdm",
        "--api-key", "k", "--api-secret", "s",
        "--daily-drawdown-limit", "5", "--max-drawdown-limit", "20",
        "--max-leverage", "10", "--max-open-trades", "3",
    ]

    assert main(argv) == 1
    assert "RISKWATCH_TEST_SECRET" in capsys.readouterr().err
