"""
Tests for the JSON account store.

Covers atomic persistence, byte-stable load/save of blocking state, per-cycle
commits and upsert field preservation.
"""
import json
from datetime import timedelta

import pytest

from core.blocking import BlockingState
from core.models import RiskParams
from infra.state_store import AccountRecord, AccountStore
from tests.helpers import NOW


def _record(account_id="acct-1", **overrides):
    fields = dict(
        account_id=account_id,
        name="Main",
        exchange="binanceusdm",
        api_key="enc-key",
        api_secret="enc-secret",
        risk_params=RiskParams(5, 20, 20, 3),
    )
    fields.update(overrides)
    return AccountRecord(**fields)


@pytest.fixture
def store(tmp_path):
    return AccountStore(str(tmp_path / "data" / "accounts.json"))


class TestAccountRecords:

    def test_missing_file_lists_nothing(self, store):
        assert store.list_accounts() == []
        assert store.get_account("nope") is None

    def test_upsert_and_get(self, store):
        store.upsert_account(_record(initial_balance=1000.0))

        loaded = store.get_account("acct-1")
        assert loaded.name == "Main"
        assert loaded.risk_params == RiskParams(5, 20, 20, 3)
        assert loaded.initial_balance == 1000.0
        assert loaded.is_active is True

    def test_upsert_preserves_unknown_fields(self, store):
        store.upsert_account(_record())
        data = json.loads(store.accounts_file.read_text())
        data["accounts"]["acct-1"]["notes"] = "keep me"
        store.accounts_file.write_text(json.dumps(data))

        store.upsert_account(_record(name="Renamed"))

        raw = json.loads(store.accounts_file.read_text())["accounts"]["acct-1"]
        assert raw["notes"] == "keep me"
        assert raw["name"] == "Renamed"

    def test_label_falls_back_to_id(self):
        assert _record(name="").label == "acct-1"

    def test_corrupt_file_raises(self, store):
        store.accounts_file.write_text("{not json")
        with pytest.raises(json.JSONDecodeError):
            store.list_accounts()

    def test_no_temp_files_left_behind(self, store):
        store.upsert_account(_record())
        leftovers = [p for p in store.accounts_file.parent.iterdir() if p.name.startswith(".accounts_")]
        assert leftovers == []

    def test_env_var_sets_default_path(self, tmp_path, monkeypatch):
        target = tmp_path / "env" / "accounts.json"
        monkeypatch.setenv("ACCOUNTS_FILE", str(target))
        assert AccountStore().accounts_file == target


class TestBlockingPersistence:

    def test_save_then_load_is_identity(self, store):
        store.upsert_account(_record())
        state = BlockingState(
            account_blocked_until=NOW + timedelta(hours=3),
            symbol_blocks={"ETH/USDT:USDT": NOW + timedelta(hours=8)},
        )

        store.save_blocking_state("acct-1", state)

        assert store.load_blocking_state("acct-1") == state

    def test_load_save_does_not_rewrite_bytes(self, store):
        store.upsert_account(_record())
        # expired entries must survive a plain load/save
        store.save_blocking_state("acct-1", BlockingState(symbol_blocks={"OLD": NOW - timedelta(days=3)}))
        before = store.accounts_file.read_bytes()

        store.save_blocking_state("acct-1", store.load_blocking_state("acct-1"))

        assert store.accounts_file.read_bytes() == before

    def test_unknown_account_raises(self, store):
        with pytest.raises(KeyError):
            store.load_blocking_state("ghost")
        with pytest.raises(KeyError):
            store.commit_cycle("ghost", BlockingState())

    def test_commit_cycle_writes_state_and_flags(self, store):
        store.upsert_account(_record())
        state = BlockingState(account_blocked_until=NOW + timedelta(hours=1))

        store.commit_cycle("acct-1", state, is_active=False, last_check=NOW)

        loaded = store.get_account("acct-1")
        assert loaded.is_active is False
        assert loaded.last_check == NOW
        assert loaded.blocking == state

    def test_commit_cycle_leaves_active_flag_alone_by_default(self, store):
        store.upsert_account(_record(is_active=False))
        store.commit_cycle("acct-1", BlockingState())
        assert store.get_account("acct-1").is_active is False

    def test_set_initial_balance(self, store):
        store.upsert_account(_record())
        store.set_initial_balance("acct-1", 2500)
        assert store.get_account("acct-1").initial_balance == 2500.0
