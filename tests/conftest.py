"""
Pytest configuration and fixtures for riskwatch tests.

This conftest.py provides shared fixtures and hooks for all tests.
"""
from pathlib import Path

import pytest
import yaml

from core.models import RiskParams
from infra.metrics import MetricsRecorder
from tests.helpers import NOW


@pytest.fixture(autouse=True)
def reset_singletons():
    """
    Reset singleton instances between tests to ensure test isolation.

    This is applied automatically to all tests (autouse=True).
    """
    MetricsRecorder._reset_for_testing()
    yield
    MetricsRecorder._reset_for_testing()


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def params():
    return RiskParams(
        daily_drawdown_limit=5.0,
        max_drawdown_limit=20.0,
        max_leverage=20.0,
        max_open_trades=3,
    )


@pytest.fixture
def config_dir(tmp_path) -> Path:
    """Minimal valid config directory with all state under tmp_path."""
    cfg_dir = tmp_path / "config"
    cfg_dir.mkdir()
    config = {
        "app": {"name": "riskwatch-test", "timezone": "UTC"},
        "loop": {"interval_seconds": 0.1, "cycle_timeout_seconds": 2, "max_workers": 4},
        "exchange": {"quote_currency": "USDT", "request_timeout_ms": 1000},
        "state": {"accounts_file": str(tmp_path / "data" / "accounts.json")},
        "reporting": {"directory": str(tmp_path / "reports")},
        "credentials": {"encryption_secret_env": "RISKWATCH_TEST_SECRET"},
        "logging": {"level": "DEBUG", "file": str(tmp_path / "logs" / "riskwatch.log")},
        "monitoring": {
            "alerts_enabled": False,
            "metrics_enabled": False,
            "healthcheck_enabled": False,
        },
    }
    (cfg_dir / "app.yaml").write_text(yaml.safe_dump(config))
    return cfg_dir
