from __future__ import annotations

import asyncio

from agent_bridge.agent import cli_probe
from agent_bridge.agent.cli_probe import AgentStatus, ModelInfo, check_agent, list_models, parse_models_output

MODELS_OUTPUT = """Loading models...
Available models

auto - Auto
sonnet-4.5 - Claude 4.5 Sonnet  (default)
gpt-5 - GPT-5 (current)
not a model line
grok - Grok (default) (current)
"""


def test_parse_models_output() -> None:
    assert parse_models_output(MODELS_OUTPUT) == [
        ModelInfo(id="auto", label="Auto"),
        ModelInfo(id="sonnet-4.5", label="Claude 4.5 Sonnet", is_default=True),
        ModelInfo(id="gpt-5", label="GPT-5", is_current=True),
        ModelInfo(id="grok", label="Grok", is_default=True, is_current=True),
    ]


def test_parse_models_output_empty() -> None:
    assert parse_models_output("") == []


def test_check_agent_reports_version(monkeypatch) -> None:
    calls: list[tuple[str, ...]] = []

    async def fake_run_agent(binary: str, *args: str, timeout: float) -> str:
        calls.append((binary, *args))
        return "\n2026.01.02-abc\n"

    monkeypatch.setattr(cli_probe, "_run_agent", fake_run_agent)

    status = asyncio.run(check_agent("/opt/agent"))

    assert status == AgentStatus(connected=True, version="2026.01.02-abc", binary="/opt/agent")
    assert calls == [("/opt/agent", "--version")]


def test_check_agent_handles_missing_binary(monkeypatch) -> None:
    async def fake_run_agent(binary: str, *args: str, timeout: float) -> str:
        raise FileNotFoundError(binary)

    monkeypatch.setattr(cli_probe, "_run_agent", fake_run_agent)

    assert asyncio.run(check_agent("/missing")) == AgentStatus(connected=False, version=None, binary="/missing")


def test_check_agent_without_any_binary(monkeypatch) -> None:
    monkeypatch.setattr(cli_probe, "find_agent_binary", lambda: None)

    assert asyncio.run(check_agent()) == AgentStatus(connected=False)


def test_check_agent_times_out(monkeypatch) -> None:
    async def fake_run_agent(binary: str, *args: str, timeout: float) -> str:
        raise TimeoutError

    monkeypatch.setattr(cli_probe, "_run_agent", fake_run_agent)

    assert not asyncio.run(check_agent("/slow")).connected


def test_list_models_uses_models_subcommand(monkeypatch) -> None:
    seen: list[tuple[str, ...]] = []

    async def fake_run_agent(binary: str, *args: str, timeout: float) -> str:
        seen.append(args)
        return "auto - Auto (current)\n"

    monkeypatch.setattr(cli_probe, "_run_agent", fake_run_agent)

    assert asyncio.run(list_models("agent")) == [ModelInfo(id="auto", label="Auto", is_current=True)]
    assert seen == [("models",)]
