"""Platform-specific spawning of the agent CLI.

Node-based CLIs fully buffer stdout when it is a pipe, so on Unix-like systems
the agent runs under `script`, which gives it a pseudo-terminal and makes its
output line-buffered. Elsewhere the binary is spawned directly.
"""

from __future__ import annotations

import asyncio
import asyncio.subprocess as aio_subprocess
import logging
import os
import shutil
import subprocess
import sys
from collections.abc import Callable, Mapping, Sequence
from pathlib import Path
from typing import Protocol

logger = logging.getLogger(__name__)

AGENT_BINARY_NAMES = ("cursor-agent", "agent")
WINDOWS_BINARY_NAMES = ("cursor-agent.cmd", "agent.cmd", "cursor-agent.exe", "agent.exe")
NULL_DEVICE = "/dev/null"


class SpawnFn(Protocol):
    """Spawner protocol matching `asyncio.create_subprocess_exec`."""

    async def __call__(self, program: str, *args: str, **kwargs: object) -> asyncio.subprocess.Process: ...


def shell_escape(value: str) -> str:
    """Quote `value` as a single POSIX shell word."""
    return "'" + value.replace("'", "'\"'\"'") + "'"


def build_shell_command(binary: str, args: Sequence[str]) -> str:
    return " ".join(shell_escape(part) for part in (binary, *args))


class SpawnStrategy:
    """How the agent binary is turned into an executable command line."""

    name = "direct"
    uses_process_group = False

    def command(self, binary: str, args: Sequence[str]) -> list[str]:
        raise NotImplementedError

    def spawn_kwargs(self) -> dict[str, object]:
        return {}

    async def spawn(
        self,
        binary: str,
        args: Sequence[str],
        *,
        env: Mapping[str, str],
        cwd: str,
        spawner: SpawnFn | None = None,
    ) -> asyncio.subprocess.Process:
        program, *argv = self.command(binary, args)
        spawn = spawner or asyncio.create_subprocess_exec
        logger.info("Spawning agent: strategy=%s program=%s cwd=%s", self.name, program, cwd)
        return await spawn(
            program,
            *argv,
            stdin=aio_subprocess.DEVNULL,
            stdout=aio_subprocess.PIPE,
            stderr=aio_subprocess.PIPE,
            env=dict(env),
            cwd=cwd,
            **self.spawn_kwargs(),
        )


class ScriptStrategy(SpawnStrategy):
    """util-linux `script`: ``script -qec <command> /dev/null``."""

    name = "script"
    uses_process_group = True

    def command(self, binary: str, args: Sequence[str]) -> list[str]:
        return ["script", "-qec", build_shell_command(binary, args), NULL_DEVICE]

    def spawn_kwargs(self) -> dict[str, object]:
        return {"start_new_session": True}


class BsdScriptStrategy(ScriptStrategy):
    """BSD/macOS `script`: ``script -q /dev/null bash -c <command>``."""

    name = "bsd-script"

    def command(self, binary: str, args: Sequence[str]) -> list[str]:
        return ["script", "-q", NULL_DEVICE, "bash", "-c", build_shell_command(binary, args)]


class DirectStrategy(SpawnStrategy):
    """Plain spawn without a pseudo-terminal; output may arrive in bursts."""

    name = "direct"

    def __init__(self, *, platform: str | None = None) -> None:
        self._platform = platform or sys.platform
        self.uses_process_group = self._platform != "win32"

    def command(self, binary: str, args: Sequence[str]) -> list[str]:
        return [binary, *args]

    def spawn_kwargs(self) -> dict[str, object]:
        if self._platform == "win32":
            return {"creationflags": getattr(subprocess, "CREATE_NO_WINDOW", 0)}
        return {"start_new_session": True}


def select_strategy(
    *,
    platform: str | None = None,
    which: Callable[[str], str | None] = shutil.which,
) -> SpawnStrategy:
    """Pick the spawn strategy for this host; meant to be called once at startup."""
    platform = platform or sys.platform
    has_script = platform != "win32" and which("script") is not None
    if has_script and platform.startswith("linux"):
        return ScriptStrategy()
    if has_script and (platform == "darwin" or "bsd" in platform):
        return BsdScriptStrategy()
    return DirectStrategy(platform=platform)


def home_directory() -> str:
    return str(Path.home())


def expanded_path(current: str | None = None, *, platform: str | None = None) -> str:
    """Return `PATH` extended with user-local install locations missing from minimal environments."""
    platform = platform or sys.platform
    current = os.environ.get("PATH", "") if current is None else current
    home = home_directory()
    if platform == "win32":
        extras = [
            os.path.join(os.environ.get("APPDATA", os.path.join(home, "AppData", "Roaming")), "npm"),
            os.path.join(os.environ.get("LOCALAPPDATA", os.path.join(home, "AppData", "Local")), "Programs"),
            os.path.join(home, ".local", "bin"),
        ]
        separator = ";"
    else:
        extras = [
            os.path.join(home, ".local", "bin"),
            os.path.join(home, ".cursor", "bin"),
            "/usr/local/bin",
            "/opt/homebrew/bin",
            os.path.join(home, ".npm-global", "bin"),
            os.path.join(home, "bin"),
        ]
        separator = ":"

    parts = [part for part in current.split(separator) if part]
    for extra in extras:
        if extra not in parts:
            parts.append(extra)
    return separator.join(parts)


def build_environment(base: Mapping[str, str] | None = None, *, platform: str | None = None) -> dict[str, str]:
    """Environment for the agent process: expanded PATH, a home directory and a dumb terminal."""
    env = dict(os.environ if base is None else base)
    env["PATH"] = expanded_path(env.get("PATH", ""), platform=platform)
    home = home_directory()
    env.setdefault("HOME", home)
    env.setdefault("USERPROFILE", home)
    env["TERM"] = "dumb"
    return env


def find_agent_binary(*, platform: str | None = None) -> str | None:
    """Locate the agent CLI: `AGENT_BINARY`, then PATH lookups, then known install locations."""
    configured = os.environ.get("AGENT_BINARY", "").strip()
    if configured:
        return configured

    platform = platform or sys.platform
    search_path = expanded_path(platform=platform)
    names = WINDOWS_BINARY_NAMES + AGENT_BINARY_NAMES if platform == "win32" else AGENT_BINARY_NAMES
    for name in names:
        found = shutil.which(name, path=search_path)
        if found:
            return found

    home = Path.home()
    for candidate in (home / ".local" / "bin" / "cursor-agent", home / ".cursor" / "bin" / "agent"):
        if candidate.is_file():
            return str(candidate)
    return None
