"""Register (or update) a monitored exchange account.

Credentials are encrypted with the secret in ENCRYPTION_SECRET before they
touch disk.

Usage:
    python -m tools.register_account --id acct-1 --name "Main" --exchange binanceusdm \\
        --api-key KEY --api-secret SECRET \\
        --daily-drawdown-limit 5 --max-drawdown-limit 20 --max-leverage 10 --max-open-trades 3
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Optional, Sequence

import yaml

from core.exceptions import AccountConfigurationError
from core.exchange_ccxt import supported_exchanges
from core.models import RiskParams
from infra.credentials import encrypt_secret, load_secret
from infra.state_store import AccountRecord, AccountStore

logger = logging.getLogger(__name__)


def _accounts_file(config_dir: Path) -> str:
    app_path = config_dir / "app.yaml"
    if app_path.exists():
        with open(app_path) as f:
            config = yaml.safe_load(f) or {}
        return (config.get("state") or {}).get("accounts_file", "data/accounts.json")
    return "data/accounts.json"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Register a riskwatch account")
    parser.add_argument("--config-dir", default="config", help="Config directory")
    parser.add_argument("--accounts-file", help="Override state.accounts_file")
    parser.add_argument("--secret-env", default="ENCRYPTION_SECRET", help="Env var holding the encryption secret")
    parser.add_argument("--id", required=True, dest="account_id", help="Stable account id")
    parser.add_argument("--name", default="", help="Display name")
    parser.add_argument("--exchange", required=True, help="ccxt exchange id, e.g. binanceusdm")
    parser.add_argument("--api-key", required=True)
    parser.add_argument("--api-secret", required=True)
    parser.add_argument("--password", default=None, help="API passphrase (exchanges that need one)")
    parser.add_argument("--options", default="{}", help="JSON object passed to the ccxt client options")
    parser.add_argument("--daily-drawdown-limit", type=float, required=True, help="Max %% loss per trade")
    parser.add_argument("--max-drawdown-limit", type=float, required=True, help="Max %% account drawdown")
    parser.add_argument("--max-leverage", type=float, required=True)
    parser.add_argument("--max-open-trades", type=int, required=True)
    parser.add_argument("--inactive", action="store_true", help="Register without activating monitoring")
    return parser


def register(args: argparse.Namespace) -> AccountRecord:
    exchange = args.exchange.lower()
    if exchange not in supported_exchanges():
        raise AccountConfigurationError(args.account_id, f"Exchange {args.exchange} not supported")

    try:
        options = json.loads(args.options or "{}")
    except json.JSONDecodeError as exc:
        raise AccountConfigurationError(args.account_id, f"--options is not valid JSON: {exc}") from exc
    if not isinstance(options, dict):
        raise AccountConfigurationError(args.account_id, "--options must be a JSON object")

    secret = load_secret(args.secret_env, args.account_id)
    store = AccountStore(args.accounts_file or _accounts_file(Path(args.config_dir)))
    existing = store.get_account(args.account_id)

    record = AccountRecord(
        account_id=args.account_id,
        name=args.name or (existing.name if existing else args.account_id),
        exchange=exchange,
        api_key=encrypt_secret(args.api_key, secret),
        api_secret=encrypt_secret(args.api_secret, secret),
        password=encrypt_secret(args.password, secret) if args.password else None,
        options=options,
        risk_params=RiskParams(
            daily_drawdown_limit=args.daily_drawdown_limit,
            max_drawdown_limit=args.max_drawdown_limit,
            max_leverage=args.max_leverage,
            max_open_trades=args.max_open_trades,
        ),
        is_active=not args.inactive,
    )
    if existing is not None:
        # keep the baseline and any active blocks
        record.initial_balance = existing.initial_balance
        record.last_check = existing.last_check
        record.blocking = existing.blocking
    store.upsert_account(record)
    return record


def main(argv: Optional[Sequence[str]] = None) -> int:
    logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")
    args = build_parser().parse_args(argv)
    try:
        record = register(args)
    except (AccountConfigurationError, ValueError) as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return 1
    print(f"Registered account {record.account_id} ({record.exchange}), active={record.is_active}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
