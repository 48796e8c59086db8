"""
Agent process bridge

Runs a line-oriented JSON-emitting agent CLI and streams its output as
normalized protocol events, with a Telegram front end on top.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
from importlib import metadata

from dotenv import load_dotenv

from agent_bridge.agent.cli_probe import check_agent, list_models
from agent_bridge.agent.launcher import find_agent_binary, select_strategy
from agent_bridge.agent.models import AgentBinaryNotFoundError
from agent_bridge.agent.service import AgentStreamService
from agent_bridge.core.pending_requests import PendingRequestTable
from agent_bridge.core.session_registry import SessionRegistry
from agent_bridge.telegram.bot import TelegramBridge, make_config, run_polling

logger = logging.getLogger(__name__)


def get_version() -> str:
    try:
        return metadata.version("agent-process-bridge")
    except metadata.PackageNotFoundError:
        return "unknown"


def get_parser() -> argparse.ArgumentParser:
    """Return the CLI argument parser."""
    parser = argparse.ArgumentParser(prog="agent-bridge")
    parser.add_argument("-V", "--version", action="version", version=f"%(prog)s {get_version()}")
    parser.add_argument("--telegram-token", default=os.getenv("TELEGRAM_BOT_TOKEN", ""), help="Telegram bot token")
    parser.add_argument(
        "--agent-binary",
        default=os.getenv("AGENT_BINARY", ""),
        help="Path to the agent CLI. Discovered on PATH and common install locations when omitted.",
    )
    parser.add_argument(
        "--allowed-user-id",
        action="append",
        default=[],
        type=int,
        help="Allowed Telegram user ID. Can be repeated.",
    )
    parser.add_argument(
        "--workspace",
        default=os.getcwd(),
        help="Default workspace path for /new when path is not provided.",
    )
    parser.add_argument("--model", default=os.getenv("AGENT_MODEL", ""), help="Default agent model id.")
    parser.add_argument(
        "--permission-mode",
        default=os.getenv("AGENT_PERMISSION_MODE", "default"),
        help="Default permission mode: 'default' (ask), 'plan', or another mode passed through.",
    )
    parser.add_argument(
        "--system-prompt",
        default=os.getenv("AGENT_SYSTEM_PROMPT", ""),
        help="Context prepended to every prompt.",
    )
    parser.add_argument(
        "--tool-event-output",
        default=os.getenv("AGENT_TOOL_EVENT_OUTPUT", "stdout"),
        choices=["stdout", "off"],
        help="Where agent tool events are logged.",
    )
    parser.add_argument(
        "--log-level",
        default=os.getenv("LOG_LEVEL", "INFO"),
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        type=str.upper,
        help="Logging level.",
    )
    parser.add_argument(
        "--check-agent",
        action="store_true",
        help="Print agent CLI status and available models, then exit.",
    )
    return parser


def resolve_agent_binary(configured: str) -> str:
    binary = configured.strip() or find_agent_binary()
    if not binary:
        raise AgentBinaryNotFoundError("agent CLI not found; install it or pass --agent-binary")
    return binary


async def report_agent(binary: str | None) -> int:
    status = await check_agent(binary)
    if not status.connected:
        print(f"Agent CLI: not connected ({status.binary or 'not found'})")
        return 1
    print(f"Agent CLI: {status.binary} ({status.version})")
    try:
        models = await list_models(status.binary or "")
    except (OSError, TimeoutError) as exc:
        print(f"Models: unavailable ({exc})")
        return 0
    for model in models:
        markers = [name for name, flag in (("default", model.is_default), ("current", model.is_current)) if flag]
        suffix = f" [{', '.join(markers)}]" if markers else ""
        print(f"  {model.id} - {model.label}{suffix}")
    return 0


def main(args: list[str] | None = None) -> int:
    """Run the main program."""
    load_dotenv(override=False)
    parser = get_parser()
    opts = parser.parse_args(args=args)
    logging.basicConfig(level=opts.log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    if opts.check_agent:
        return asyncio.run(report_agent(opts.agent_binary.strip() or None))

    if not opts.telegram_token:
        parser.error("--telegram-token (or TELEGRAM_BOT_TOKEN) is required")
    try:
        binary = resolve_agent_binary(opts.agent_binary)
    except AgentBinaryNotFoundError as exc:
        parser.error(str(exc))

    config = make_config(
        token=opts.telegram_token,
        allowed_user_ids=opts.allowed_user_id,
        workspace=opts.workspace,
        model=opts.model,
        permission_mode=opts.permission_mode,
        system_prompt=opts.system_prompt,
    )
    strategy = select_strategy()
    logger.info("Using agent binary %s with %s spawn strategy", binary, strategy.name)
    service = AgentStreamService(binary=binary, strategy=strategy, tool_event_output=opts.tool_event_output)
    bridge = TelegramBridge(config, service, registry=SessionRegistry(), pending=PendingRequestTable())
    return run_polling(config, bridge)


__all__: list[str] = ["get_parser", "main"]
