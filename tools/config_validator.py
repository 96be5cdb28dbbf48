"""
Configuration Validation Module

Validates app.yaml (and the accounts file it points to, when present) against
Pydantic schemas. Ensures config files are correct before system startup.

Usage:
    from tools.config_validator import validate_all_configs

    errors = validate_all_configs("config")
    if errors:
        for error in errors:
            print(f"ERROR: {error}")
        sys.exit(1)
"""
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

logger = logging.getLogger(__name__)


# ===== app.yaml Schema =====
class AppSection(BaseModel):
    name: str = Field(default="riskwatch", min_length=1)
    timezone: str = Field(default="UTC", description="IANA zone for the daily midnight reset")

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        if v.upper() == "UTC":
            return v
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"unknown time zone {v!r}") from exc
        return v


class LoopConfig(BaseModel):
    interval_seconds: float = Field(default=5, gt=0, description="Seconds between ticks")
    cycle_timeout_seconds: float = Field(default=30, gt=0, description="Per-tick wait before abandoning cycles")
    max_workers: int = Field(default=8, gt=0, le=256, description="Concurrent account cycles")


class ExchangeConfig(BaseModel):
    quote_currency: str = Field(default="USDT", min_length=1)
    request_timeout_ms: int = Field(default=10000, gt=0)


class StateConfig(BaseModel):
    accounts_file: str = Field(default="data/accounts.json", min_length=1)


class ReportingConfig(BaseModel):
    directory: str = Field(default="data/reports", min_length=1)


class CredentialsConfig(BaseModel):
    encryption_secret_env: str = Field(default="ENCRYPTION_SECRET", min_length=1)


class LoggingConfig(BaseModel):
    level: str = "INFO"
    file: str = "logs/riskwatch.log"

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        if v.upper() not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"invalid log level {v!r}")
        return v


class AlertsConfig(BaseModel):
    webhook_url: Optional[str] = None
    webhook_env: str = "ALERT_WEBHOOK_URL"
    min_severity: str = "warning"
    dry_run: bool = False
    timeout_seconds: float = Field(default=5.0, gt=0)
    dedupe_seconds: float = Field(default=60.0, ge=0)

    @field_validator("min_severity")
    @classmethod
    def validate_severity(cls, v: str) -> str:
        if v.lower() not in {"info", "warning", "critical"}:
            raise ValueError(f"min_severity must be info, warning or critical, got {v!r}")
        return v


class MonitoringConfig(BaseModel):
    alerts_enabled: bool = False
    alerts: AlertsConfig = Field(default_factory=AlertsConfig)
    metrics_enabled: bool = False
    metrics_port: int = Field(default=9100, gt=0, lt=65536)
    healthcheck_enabled: bool = False
    healthcheck_port: int = Field(default=3000, gt=0, lt=65536)


class AppSchema(BaseModel):
    """Complete app.yaml schema"""
    app: AppSection = Field(default_factory=AppSection)
    loop: LoopConfig = Field(default_factory=LoopConfig)
    exchange: ExchangeConfig = Field(default_factory=ExchangeConfig)
    state: StateConfig = Field(default_factory=StateConfig)
    reporting: ReportingConfig = Field(default_factory=ReportingConfig)
    credentials: CredentialsConfig = Field(default_factory=CredentialsConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)


# ===== accounts file Schema =====
class RiskParamsSchema(BaseModel):
    daily_drawdown_limit: float = Field(ge=0, description="Max % loss per trade")
    max_drawdown_limit: float = Field(ge=0, description="Max % account drawdown vs. initial balance")
    max_leverage: float = Field(ge=0)
    max_open_trades: int = Field(ge=0)


class AccountSchema(BaseModel):
    name: str = ""
    exchange: str = Field(min_length=1)
    api_key: str = Field(min_length=1)
    api_secret: str = Field(min_length=1)
    password: Optional[str] = None
    options: Dict[str, Any] = Field(default_factory=dict)
    risk_params: RiskParamsSchema
    is_active: bool = True
    initial_balance: Optional[float] = Field(default=None, ge=0)


# ===== Validation Functions =====
def _format_yaml_error(file_path: Path, error: yaml.YAMLError) -> str:
    """Return enriched message with line/column context for YAML errors."""
    message = f"Malformed YAML in {file_path}: {error}"
    mark = getattr(error, "problem_mark", None)
    if mark is None:
        return message
    problem = getattr(error, "problem", str(error))
    return f"Malformed YAML in {file_path}: line {mark.line + 1}, column {mark.column + 1}: {problem}"


def load_yaml_file(file_path: Path) -> Dict[str, Any]:
    """
    Load YAML file and return as dict.

    Raises:
        FileNotFoundError: If file doesn't exist
        yaml.YAMLError: If YAML is malformed
    """
    if not file_path.exists():
        raise FileNotFoundError(f"Config file not found: {file_path}")

    with open(file_path, 'r') as f:
        try:
            return yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise yaml.YAMLError(_format_yaml_error(file_path, e))


def _collect(prefix: str, exc: ValidationError) -> List[str]:
    errors = []
    for error in exc.errors():
        field = " -> ".join(str(loc) for loc in error['loc'])
        errors.append(f"{prefix}: {field}: {error['msg']}")
    return errors


def validate_app(config_dir: Path) -> List[str]:
    """
    Validate app.yaml against schema.

    Returns:
        List of error messages (empty if valid)
    """
    errors = []
    app_path = config_dir / "app.yaml"

    try:
        config = load_yaml_file(app_path)
        AppSchema(**config)
        logger.info("app.yaml validation passed")
    except FileNotFoundError as e:
        errors.append(f"app.yaml: {e}")
    except yaml.YAMLError as e:
        errors.append(f"app.yaml: Invalid YAML - {e}")
    except ValidationError as e:
        errors.extend(_collect("app.yaml", e))
    except TypeError as e:
        errors.append(f"app.yaml: top level must be a mapping - {e}")

    return errors


def validate_accounts_file(accounts_file: Path) -> List[str]:
    """Validate the accounts JSON file. A missing file is valid (no accounts yet)."""
    if not accounts_file.exists():
        return []

    try:
        data = json.loads(accounts_file.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        return [f"{accounts_file.name}: unreadable - {e}"]

    accounts = data.get("accounts") if isinstance(data, dict) else None
    if not isinstance(accounts, dict):
        return [f"{accounts_file.name}: expected an 'accounts' mapping"]

    errors = []
    for account_id, raw in accounts.items():
        try:
            AccountSchema(**(raw or {}))
        except ValidationError as e:
            errors.extend(_collect(f"{accounts_file.name} [{account_id}]", e))
        except TypeError as e:
            errors.append(f"{accounts_file.name} [{account_id}]: record must be a mapping - {e}")
    return errors


def validate_sanity_checks(config_dir: Path) -> List[str]:
    """Logical consistency checks across sections."""
    errors = []
    config = AppSchema(**load_yaml_file(config_dir / "app.yaml"))

    if config.loop.cycle_timeout_seconds < config.loop.interval_seconds:
        logger.warning(
            "loop.cycle_timeout_seconds (%s) is shorter than loop.interval_seconds (%s)",
            config.loop.cycle_timeout_seconds, config.loop.interval_seconds,
        )
    monitoring = config.monitoring
    if (monitoring.metrics_enabled and monitoring.healthcheck_enabled
            and monitoring.metrics_port == monitoring.healthcheck_port):
        errors.append("app.yaml: monitoring: metrics_port and healthcheck_port must differ")

    errors.extend(validate_accounts_file(Path(config.state.accounts_file)))
    return errors


def validate_all_configs(config_dir: str = "config") -> List[str]:
    """
    Validate all configuration files.

    Performs:
    1. Schema validation (Pydantic type checks)
    2. Sanity checks (logical consistency, accounts file)

    Returns:
        List of all error messages (empty if all valid)
    """
    config_path = Path(config_dir)

    all_errors = validate_app(config_path)
    if not all_errors:
        all_errors.extend(validate_sanity_checks(config_path))

    if not all_errors:
        logger.info("All config files validated successfully")
    else:
        logger.error(f"{len(all_errors)} validation error(s) found")

    return all_errors


if __name__ == "__main__":
    """Run validation from command line"""
    import sys

    logging.basicConfig(level=logging.INFO, format='%(levelname)s: %(message)s')

    config_dir = sys.argv[1] if len(sys.argv) > 1 else "config"

    errors = validate_all_configs(config_dir)

    if errors:
        print("\nConfiguration Validation Failed:\n")
        for error in errors:
            print(f"  - {error}")
        print()
        sys.exit(1)
    else:
        print("\nAll configuration files are valid!\n")
        sys.exit(0)
