"""
Tests for webhook alert delivery: severity filter, dedupe, dry run and
delivery failures.
"""
import json
import urllib.error
from unittest.mock import MagicMock, patch

from infra.alerting import AlertConfig, AlertService, AlertSeverity


def _service(**overrides):
    fields = dict(
        enabled=True,
        webhook_url="https://hooks.example.test/riskwatch",
        min_severity=AlertSeverity.WARNING,
        dry_run=False,
        dedupe_seconds=60.0,
    )
    fields.update(overrides)
    return AlertService(AlertConfig(**fields))


def _ok_response():
    response = MagicMock()
    response.status = 200
    response.__enter__.return_value = response
    return response


@patch("infra.alerting.urllib.request.urlopen")
def test_posts_json_text_payload(mock_urlopen):
    mock_urlopen.return_value = _ok_response()

    assert _service().notify(AlertSeverity.CRITICAL, "[Main]", "MAX DRAWDOWN REACHED", {"actual": -21.0})

    request = mock_urlopen.call_args.args[0]
    payload = json.loads(request.data.decode())
    assert payload["text"].startswith("[CRITICAL] [Main] | MAX DRAWDOWN REACHED")
    assert 'context={"actual": -21.0}' in payload["text"]


@patch("infra.alerting.urllib.request.urlopen")
def test_below_min_severity_is_dropped(mock_urlopen):
    assert _service().notify(AlertSeverity.INFO, "[Main]", "recovered") is False
    mock_urlopen.assert_not_called()


@patch("infra.alerting.urllib.request.urlopen")
def test_identical_alerts_are_deduped(mock_urlopen):
    mock_urlopen.return_value = _ok_response()
    service = _service()

    assert service.notify(AlertSeverity.WARNING, "[Main]", "BTC blocked") is True
    assert service.notify(AlertSeverity.WARNING, "[Main]", "BTC blocked") is False
    assert service.notify(AlertSeverity.WARNING, "[Main]", "ETH blocked") is True
    assert mock_urlopen.call_count == 2


@patch("infra.alerting.urllib.request.urlopen")
def test_zero_dedupe_window_sends_every_time(mock_urlopen):
    mock_urlopen.return_value = _ok_response()
    service = _service(dedupe_seconds=0.0)

    service.notify(AlertSeverity.WARNING, "[Main]", "same")
    service.notify(AlertSeverity.WARNING, "[Main]", "same")

    assert mock_urlopen.call_count == 2


@patch("infra.alerting.urllib.request.urlopen")
def test_delivery_failure_is_swallowed(mock_urlopen):
    mock_urlopen.side_effect = urllib.error.URLError("connection refused")
    assert _service().notify(AlertSeverity.CRITICAL, "[Main]", "boom") is False


@patch("infra.alerting.urllib.request.urlopen")
def test_dry_run_never_posts(mock_urlopen):
    service = _service(webhook_url=None, dry_run=True)
    assert service.is_enabled()
    assert service.notify(AlertSeverity.CRITICAL, "[Main]", "boom") is True
    mock_urlopen.assert_not_called()


def test_enabled_without_webhook_is_disabled(monkeypatch):
    monkeypatch.delenv("ALERT_WEBHOOK_URL", raising=False)
    service = AlertService.from_config(True, {"min_severity": "critical"})
    assert service.is_enabled() is False
    assert service.notify(AlertSeverity.CRITICAL, "[Main]", "boom") is False


def test_from_config_reads_webhook_env(monkeypatch):
    monkeypatch.setenv("RISKWATCH_HOOK", "https://hooks.example.test/x")
    service = AlertService.from_config(True, {"webhook_env": "RISKWATCH_HOOK", "min_severity": "info"})
    assert service.is_enabled() is True


def test_severity_from_string():
    assert AlertSeverity.from_string("CRITICAL") is AlertSeverity.CRITICAL
    assert AlertSeverity.from_string("bogus") is AlertSeverity.WARNING
    assert AlertSeverity.INFO.label == "info"
