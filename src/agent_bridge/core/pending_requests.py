from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, replace
from typing import Any

from agent_bridge.agent.models import PermissionResult

logger = logging.getLogger(__name__)

PENDING_REQUEST_TIMEOUT_SECONDS = 300.0


@dataclass(slots=True)
class PendingRequest:
    request_id: str
    created_at: float
    future: asyncio.Future[PermissionResult]
    tool_input: dict[str, Any]
    cancel_event: asyncio.Event | None = None
    timer: asyncio.TimerHandle | None = None
    cancel_watcher: asyncio.Task[None] | None = None


class PendingRequestTable:
    """Correlate approval requests with their responses.

    Each entry resolves exactly once: by `resolve`, by its cancellation event,
    or by timeout. Whatever comes first wins; later triggers are no-ops.
    """

    def __init__(
        self,
        *,
        timeout: float = PENDING_REQUEST_TIMEOUT_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._timeout = timeout
        self._clock = clock
        self._entries: dict[str, PendingRequest] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, request_id: object) -> bool:
        return request_id in self._entries

    def pending_ids(self) -> list[str]:
        return list(self._entries)

    def register(
        self,
        request_id: str,
        tool_input: dict[str, Any],
        cancel_event: asyncio.Event | None = None,
    ) -> asyncio.Future[PermissionResult]:
        """Add a pending request; must be called from the running event loop."""
        self.sweep_expired()
        if request_id in self._entries:
            self._finish(request_id, PermissionResult.deny("Request superseded"))

        loop = asyncio.get_running_loop()
        entry = PendingRequest(
            request_id=request_id,
            created_at=self._clock(),
            future=loop.create_future(),
            tool_input=tool_input,
            cancel_event=cancel_event,
        )
        entry.timer = loop.call_later(self._timeout, self._expire, request_id, entry.future)
        if cancel_event is not None:
            entry.cancel_watcher = loop.create_task(self._watch_cancel(request_id, entry.future, cancel_event))
        self._entries[request_id] = entry
        logger.info("Pending request registered: request_id=%s pending=%s", request_id, len(self._entries))
        return entry.future

    def resolve(self, request_id: str, result: PermissionResult) -> bool:
        entry = self._entries.get(request_id)
        if entry is None:
            logger.warning("Pending request resolve ignored: request_id=%s", request_id)
            return False
        if result.behavior == "allow" and result.updated_input is None:
            result = replace(result, updated_input=entry.tool_input)
        self._finish(request_id, result)
        logger.info("Pending request resolved: request_id=%s behavior=%s", request_id, result.behavior)
        return True

    def sweep_expired(self) -> list[str]:
        """Deny every entry older than the timeout; returns their ids."""
        now = self._clock()
        expired = [
            request_id for request_id, entry in self._entries.items() if now - entry.created_at > self._timeout
        ]
        for request_id in expired:
            logger.warning("Pending request timed out: request_id=%s", request_id)
            self._finish(request_id, PermissionResult.deny("Permission request timed out"))
        return expired

    def close(self) -> None:
        for request_id in list(self._entries):
            self._finish(request_id, PermissionResult.deny("Server shutting down"))

    def _finish(self, request_id: str, result: PermissionResult) -> None:
        entry = self._entries.pop(request_id, None)
        if entry is None:
            return
        if entry.timer is not None:
            entry.timer.cancel()
        if entry.cancel_watcher is not None and entry.cancel_watcher is not _current_task():
            entry.cancel_watcher.cancel()
        if not entry.future.done():
            entry.future.set_result(result)

    def _expire(self, request_id: str, future: asyncio.Future[PermissionResult]) -> None:
        entry = self._entries.get(request_id)
        if entry is None or entry.future is not future:
            return
        logger.warning("Pending request timed out: request_id=%s", request_id)
        self._finish(request_id, PermissionResult.deny("Permission request timed out"))

    async def _watch_cancel(
        self,
        request_id: str,
        future: asyncio.Future[PermissionResult],
        cancel_event: asyncio.Event,
    ) -> None:
        await cancel_event.wait()
        entry = self._entries.get(request_id)
        if entry is None or entry.future is not future:
            return
        logger.info("Pending request aborted: request_id=%s", request_id)
        self._finish(request_id, PermissionResult.deny("Request aborted"))


def _current_task() -> asyncio.Task[Any] | None:
    with contextlib.suppress(RuntimeError):
        return asyncio.current_task()
    return None
