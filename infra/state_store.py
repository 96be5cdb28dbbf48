"""
riskwatch Infrastructure: Account Store

Persistent account records (credentials, risk limits, baseline, blocking state)
in one JSON file with atomic writes.

Layout:
    {"accounts": {"<account_id>": {name, exchange, api_key, api_secret, ...}}}

Load/save are pure serialisation: expired blocks are purged by the readers in
core.blocking, never by the store.
"""

import json
import os
import tempfile
import threading
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional
import logging

from core.blocking import BlockingState
from core.models import RiskParams, parse_timestamp, to_iso

logger = logging.getLogger(__name__)


@dataclass
class AccountRecord:
    """
    One monitored exchange account.

    api_key / api_secret / password are stored encrypted (see
    infra.credentials); they are only decrypted when the exchange client is
    built.
    """

    account_id: str
    name: str
    exchange: str
    api_key: str
    api_secret: str
    risk_params: RiskParams
    password: Optional[str] = None
    options: Dict[str, Any] = field(default_factory=dict)
    is_active: bool = True
    initial_balance: Optional[float] = None
    last_check: Optional[datetime] = None
    blocking: BlockingState = field(default_factory=BlockingState)

    @property
    def label(self) -> str:
        return self.name or self.account_id

    def to_dict(self) -> Dict[str, Any]:
        blocking = self.blocking.to_dict()
        return {
            "name": self.name,
            "exchange": self.exchange,
            "api_key": self.api_key,
            "api_secret": self.api_secret,
            "password": self.password,
            "options": dict(self.options),
            "risk_params": self.risk_params.to_dict(),
            "is_active": self.is_active,
            "initial_balance": self.initial_balance,
            "last_check": to_iso(self.last_check),
            "account_blocked_until": blocking["account_blocked_until"],
            "symbol_blocks": blocking["symbol_blocks"],
        }

    @classmethod
    def from_dict(cls, account_id: str, raw: Dict[str, Any]) -> "AccountRecord":
        initial = raw.get("initial_balance")
        return cls(
            account_id=account_id,
            name=raw.get("name") or account_id,
            exchange=str(raw.get("exchange", "")).lower(),
            api_key=raw.get("api_key", ""),
            api_secret=raw.get("api_secret", ""),
            password=raw.get("password"),
            options=dict(raw.get("options") or {}),
            risk_params=RiskParams.from_dict(raw.get("risk_params") or {}),
            is_active=bool(raw.get("is_active", True)),
            initial_balance=None if initial is None else float(initial),
            last_check=parse_timestamp(raw.get("last_check")),
            blocking=BlockingState.from_dict(raw),
        )


class AccountStore:
    """
    JSON-file account store.

    Features:
    - Atomic writes (temp file + rename)
    - Keyed per account; one lock serialises every read-modify-write
    - Unknown fields on a record are preserved across writes
    """

    def __init__(self, accounts_file: Optional[str] = None):
        if accounts_file:
            self.accounts_file = Path(accounts_file)
        else:
            self.accounts_file = Path(os.getenv("ACCOUNTS_FILE", "data/accounts.json"))

        self.accounts_file.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        logger.info(f"Initialized AccountStore at {self.accounts_file}")

    def _read(self) -> Dict[str, Any]:
        if not self.accounts_file.exists():
            logger.debug("No accounts file found, starting empty")
            return {"accounts": {}}
        try:
            with open(self.accounts_file, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Failed to load accounts from {self.accounts_file}: {e}")
            raise
        if not isinstance(data, dict):
            raise ValueError(f"Invalid accounts file format in {self.accounts_file}")
        data.setdefault("accounts", {})
        return data

    def _write(self, data: Dict[str, Any]) -> None:
        temp_fd, temp_path = tempfile.mkstemp(
            dir=self.accounts_file.parent,
            prefix=".accounts_",
            suffix=".json.tmp",
        )
        try:
            with os.fdopen(temp_fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
            os.replace(temp_path, self.accounts_file)
        except OSError as e:
            logger.error(f"Failed to save accounts: {e}")
            if os.path.exists(temp_path):
                os.unlink(temp_path)
            raise
        logger.debug("Saved accounts file")

    def _raw_account(self, data: Dict[str, Any], account_id: str) -> Dict[str, Any]:
        try:
            return data["accounts"][account_id]
        except KeyError:
            raise KeyError(f"Unknown account: {account_id}") from None

    def list_accounts(self) -> List[AccountRecord]:
        with self._lock:
            data = self._read()
        return [AccountRecord.from_dict(account_id, raw) for account_id, raw in data["accounts"].items()]

    def get_account(self, account_id: str) -> Optional[AccountRecord]:
        with self._lock:
            raw = self._read()["accounts"].get(account_id)
        if raw is None:
            return None
        return AccountRecord.from_dict(account_id, raw)

    def upsert_account(self, record: AccountRecord) -> None:
        with self._lock:
            data = self._read()
            existing = data["accounts"].get(record.account_id, {})
            data["accounts"][record.account_id] = {**existing, **record.to_dict()}
            self._write(data)
        logger.info("Saved account %s (%s)", record.account_id, record.exchange)

    def load_blocking_state(self, account_id: str) -> BlockingState:
        with self._lock:
            raw = self._raw_account(self._read(), account_id)
        return BlockingState.from_dict(raw)

    def save_blocking_state(self, account_id: str, state: BlockingState) -> None:
        self.commit_cycle(account_id, state)

    def set_initial_balance(self, account_id: str, balance: float) -> None:
        with self._lock:
            data = self._read()
            self._raw_account(data, account_id)["initial_balance"] = float(balance)
            self._write(data)

    def commit_cycle(
        self,
        account_id: str,
        state: BlockingState,
        *,
        is_active: Optional[bool] = None,
        last_check: Optional[datetime] = None,
    ) -> None:
        """Persist the outcome of one cycle in a single atomic write."""
        with self._lock:
            data = self._read()
            raw = self._raw_account(data, account_id)
            raw.update(state.to_dict())
            if is_active is not None:
                raw["is_active"] = bool(is_active)
            if last_check is not None:
                raw["last_check"] = to_iso(last_check)
            self._write(data)
