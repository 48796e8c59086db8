"""Tests for the CLI."""

from __future__ import annotations

import runpy
import sys
from importlib import metadata

import pytest

from agent_bridge import get_version, main
from agent_bridge.agent.cli_probe import AgentStatus, ModelInfo


@pytest.fixture(autouse=True)
def isolate_token_sources(monkeypatch: pytest.MonkeyPatch, mocker):
    """Prevent tests from loading real settings from environment or .env files."""
    for name in (
        "TELEGRAM_BOT_TOKEN",
        "AGENT_BINARY",
        "AGENT_MODEL",
        "AGENT_PERMISSION_MODE",
        "AGENT_SYSTEM_PROMPT",
        "AGENT_TOOL_EVENT_OUTPUT",
        "LOG_LEVEL",
    ):
        monkeypatch.delenv(name, raising=False)
    return mocker.patch("agent_bridge.load_dotenv")


def test_main_loads_dotenv(isolate_token_sources, mocker) -> None:
    """CLI loads .env before parsing arguments."""
    mocker.patch("agent_bridge.run_polling", return_value=0)
    assert main(["--telegram-token", "TOKEN", "--agent-binary", "agent"]) == 0
    isolate_token_sources.assert_called_once_with(override=False)


def test_main_requires_token() -> None:
    """Running the bot without token should fail fast."""
    with pytest.raises(SystemExit):
        main(["--agent-binary", "agent"])


def test_main_requires_agent_binary(mocker) -> None:
    """Running the bot without any discoverable agent CLI should fail fast."""
    mocker.patch("agent_bridge.find_agent_binary", return_value=None)
    with pytest.raises(SystemExit):
        main(["--telegram-token", "TOKEN"])


def test_main_discovers_agent_binary(mocker) -> None:
    mocker.patch("agent_bridge.run_polling", return_value=0)
    mocker.patch("agent_bridge.find_agent_binary", return_value="/home/me/.local/bin/cursor-agent")
    service_ctor = mocker.patch("agent_bridge.AgentStreamService")

    assert main(["--telegram-token", "TOKEN"]) == 0
    assert service_ctor.call_args.kwargs["binary"] == "/home/me/.local/bin/cursor-agent"


def test_main_runs_bot(mocker) -> None:
    """Run path delegates to run_polling."""
    mock_run_polling = mocker.patch("agent_bridge.run_polling", return_value=0)
    assert main(["--telegram-token", "TOKEN", "--agent-binary", "agent", "--allowed-user-id", "7"]) == 0
    mock_run_polling.assert_called_once()
    config, bridge = mock_run_polling.call_args.args
    assert config.allowed_user_ids == {7}
    assert bridge.pending is not None


def test_main_passes_strategy_and_tool_output_to_service(mocker) -> None:
    mocker.patch("agent_bridge.run_polling", return_value=0)
    strategy = mocker.Mock()
    strategy.name = "direct"
    mocker.patch("agent_bridge.select_strategy", return_value=strategy)
    service_ctor = mocker.patch("agent_bridge.AgentStreamService")

    assert main(["--telegram-token", "TOKEN", "--agent-binary", "agent", "--tool-event-output", "off"]) == 0
    service_ctor.assert_called_once_with(binary="agent", strategy=strategy, tool_event_output="off")


def test_main_uses_env_settings(mocker, monkeypatch) -> None:
    """Run path uses settings loaded from the environment."""
    mock_run_polling = mocker.patch("agent_bridge.run_polling", return_value=0)
    monkeypatch.setenv("TELEGRAM_BOT_TOKEN", "TOKEN")
    monkeypatch.setenv("AGENT_BINARY", "agent")
    monkeypatch.setenv("AGENT_MODEL", "gpt-5")
    monkeypatch.setenv("AGENT_PERMISSION_MODE", "plan")
    assert main([]) == 0
    config = mock_run_polling.call_args.args[0]
    assert config.token == "TOKEN"
    assert config.default_model == "gpt-5"
    assert config.default_permission_mode == "plan"


def test_main_rejects_unknown_tool_event_output() -> None:
    with pytest.raises(SystemExit):
        main(["--telegram-token", "TOKEN", "--agent-binary", "agent", "--tool-event-output", "file"])


def test_check_agent_prints_models(mocker, capsys: pytest.CaptureFixture) -> None:
    mocker.patch(
        "agent_bridge.check_agent",
        return_value=AgentStatus(connected=True, version="2026.01.02", binary="/bin/agent"),
    )
    mocker.patch(
        "agent_bridge.list_models",
        return_value=[ModelInfo(id="auto", label="Auto"), ModelInfo(id="gpt-5", label="GPT-5", is_default=True)],
    )

    assert main(["--check-agent"]) == 0
    captured = capsys.readouterr()
    assert "Agent CLI: /bin/agent (2026.01.02)" in captured.out
    assert "  auto - Auto\n" in captured.out
    assert "  gpt-5 - GPT-5 [default]" in captured.out


def test_check_agent_reports_missing_cli(mocker, capsys: pytest.CaptureFixture) -> None:
    mocker.patch("agent_bridge.check_agent", return_value=AgentStatus(connected=False))

    assert main(["--check-agent"]) == 1
    assert "not connected (not found)" in capsys.readouterr().out


def test_check_agent_tolerates_model_listing_failure(mocker, capsys: pytest.CaptureFixture) -> None:
    mocker.patch("agent_bridge.check_agent", return_value=AgentStatus(connected=True, version="1", binary="agent"))
    mocker.patch("agent_bridge.list_models", side_effect=TimeoutError)

    assert main(["--check-agent"]) == 0
    assert "Models: unavailable" in capsys.readouterr().out


def test_show_help(capsys: pytest.CaptureFixture) -> None:
    """Show help.

    Parameters:
        capsys: Pytest fixture to capture output.
    """
    with pytest.raises(SystemExit):
        main(["-h"])
    captured = capsys.readouterr()
    assert "agent-bridge" in captured.out


def test_show_version(mocker, capsys: pytest.CaptureFixture) -> None:
    """Show version.

    Parameters:
        mocker: pytest-mock fixture to patch get_version.
        capsys: Pytest fixture to capture output.
    """
    mocker.patch("agent_bridge.get_version", return_value="0.1.0")
    with pytest.raises(SystemExit):
        main(["-V"])
    captured = capsys.readouterr()
    assert "0.1.0" in captured.out


def test_main_module(mocker):
    """Test running the CLI via __main__ (python -m ...)."""
    module_name = "agent_bridge.__main__"
    mocker.patch.object(sys, "argv", ["agent-bridge", "-V"])
    with pytest.raises(SystemExit):
        runpy.run_module(module_name, run_name="__main__", alter_sys=False)


def test_get_version_package_not_found(mocker):
    """Test get_version returns 'unknown' if package is not found."""
    mocker.patch(
        "importlib.metadata.version",
        side_effect=metadata.PackageNotFoundError("not found"),
    )
    assert get_version() == "unknown"
