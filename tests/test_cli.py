"""Tests for the hookrelay command line."""

import pytest
from typer.testing import CliRunner

from cli import main as cli_main
from hookrelay.app.services import signer

runner = CliRunner()


@pytest.fixture
def served(monkeypatch, tmp_path):
    """Capture what ``start`` hands to uvicorn instead of serving it."""
    calls = []
    monkeypatch.setattr(cli_main.uvicorn, "run", lambda app, **kw: calls.append((app, kw)))
    # start exports these; registering them here lets monkeypatch restore them
    for name in ("ENABLE_HEARTBEAT", "REQUIRE_MANUAL_KEY_MANAGEMENT", "PORT"):
        monkeypatch.setenv(f"HOOKRELAY_{name}", "")
        monkeypatch.delenv(f"HOOKRELAY_{name}")
    monkeypatch.setenv("HOOKRELAY_DATA_DIR", str(tmp_path))
    return calls


def test_start_flags_reach_the_app(served):
    result = runner.invoke(cli_main.app, ["start", "--manual", "--heartbeat", "--port", "4000"])
    assert result.exit_code == 0, result.output

    [(app, kwargs)] = served
    services = app.state.services
    assert services.registry.policy.require_manual_key_management is True
    assert services.heartbeat.enabled is True
    assert services.settings.port == 4000
    assert kwargs["port"] == 4000
    assert "Key management:       manual" in result.output


def test_start_defaults_to_auto_onboarding(served):
    result = runner.invoke(cli_main.app, ["start", "--auto", "--no-heartbeat"])
    assert result.exit_code == 0, result.output

    [(app, _)] = served
    assert app.state.services.registry.policy.require_manual_key_management is False
    assert app.state.services.heartbeat.enabled is False


def test_start_with_reload_imports_app_by_path(served):
    result = runner.invoke(cli_main.app, ["start", "--reload", "--manual"])
    assert result.exit_code == 0, result.output

    [(app, kwargs)] = served
    assert app == "hookrelay.app.main:app"
    assert kwargs["reload"] is True


def test_sign_then_verify():
    result = runner.invoke(cli_main.app, ["sign", "tenant-a", "1700000000", "abcd1234"])
    assert result.exit_code == 0
    signature = result.output.strip()
    assert signature == signer.sign("tenant-a", "1700000000", "abcd1234").signature

    result = runner.invoke(
        cli_main.app, ["verify", "tenant-a", "1700000000", "abcd1234", signature]
    )
    assert result.exit_code == 0
    assert "valid" in result.output

    result = runner.invoke(cli_main.app, ["verify", "tenant-a", "1700000000", "other", signature])
    assert result.exit_code == 1
    assert "invalid" in result.output
