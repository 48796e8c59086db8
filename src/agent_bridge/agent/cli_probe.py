"""One-shot queries against the agent CLI: version and available models."""

from __future__ import annotations

import asyncio
import asyncio.subprocess as aio_subprocess
import logging
import re
from dataclasses import dataclass

from agent_bridge.agent.launcher import build_environment, find_agent_binary
from agent_bridge.agent.sanitizer import sanitize

logger = logging.getLogger(__name__)

VERSION_TIMEOUT_SECONDS = 15.0
MODELS_TIMEOUT_SECONDS = 120.0
_MODEL_LINE_RE = re.compile(r"^([a-zA-Z0-9._-]+)\s+-\s+(.+)$")
_MARKER_RE = re.compile(r"\s*\((?:default|current)\)\s*")


@dataclass(slots=True, frozen=True)
class AgentStatus:
    connected: bool
    version: str | None = None
    binary: str | None = None


@dataclass(slots=True, frozen=True)
class ModelInfo:
    id: str
    label: str
    is_default: bool = False
    is_current: bool = False


async def _run_agent(binary: str, *args: str, timeout: float) -> str:
    process = await asyncio.create_subprocess_exec(
        binary,
        *args,
        stdin=aio_subprocess.DEVNULL,
        stdout=aio_subprocess.PIPE,
        stderr=aio_subprocess.PIPE,
        env=build_environment(),
    )
    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except TimeoutError:
        process.kill()
        await process.wait()
        raise
    return sanitize(stdout or stderr)


async def get_agent_version(binary: str, *, timeout: float = VERSION_TIMEOUT_SECONDS) -> str | None:
    try:
        output = await _run_agent(binary, "--version", timeout=timeout)
    except (OSError, TimeoutError) as exc:
        logger.warning("Agent version probe failed: binary=%s error=%s", binary, exc)
        return None
    for line in output.splitlines():
        if line.strip():
            return line.strip()
    return None


async def check_agent(binary: str | None = None) -> AgentStatus:
    binary = binary or find_agent_binary()
    if not binary:
        return AgentStatus(connected=False)
    version = await get_agent_version(binary)
    return AgentStatus(connected=version is not None, version=version, binary=binary)


def parse_models_output(output: str) -> list[ModelInfo]:
    """Parse ``<id> - <label>  (default)`` lines from ``agent models``."""
    models: list[ModelInfo] = []
    for line in output.split("\n"):
        match = _MODEL_LINE_RE.match(line)
        if match is None:
            continue
        label = match.group(2).strip()
        models.append(
            ModelInfo(
                id=match.group(1).strip(),
                label=_MARKER_RE.sub("", label).strip(),
                is_default="(default)" in label,
                is_current="(current)" in label,
            )
        )
    return models


async def list_models(binary: str, *, timeout: float = MODELS_TIMEOUT_SECONDS) -> list[ModelInfo]:
    # The first run can take a minute while the CLI fetches models from its server.
    output = await _run_agent(binary, "models", timeout=timeout)
    return parse_models_output(output)
