import asyncio
import inspect
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from fastapi import WebSocket
from loguru import logger

log = logger.bind(module="telemetry")

EVENT_TYPES = (
    "tool.invoked",
    "tool.completed",
    "tool.failed",
    "navigation.started",
    "navigation.completed",
    "navigation.failed",
    "retry.attempt",
    "retry.succeeded",
    "retry.failed",
    "step.completed",
    "step.failed",
    "screenshot.captured",
    "dom.extracted",
    "browser.launched",
    "browser.closed",
)

Hook = Callable[[Dict[str, Any]], Any]


class _HookEntry:
    def __init__(self, name: str, hook: Hook, event_types: Optional[Set[str]]) -> None:
        self.name = name
        self.hook = hook
        self.event_types = event_types
        self.enabled = True

    def accepts(self, event_type: str) -> bool:
        return self.enabled and (self.event_types is None or event_type in self.event_types)


class TelemetryHub:
    """
    Fire-and-forget event sink: hooks plus WebSocket broadcast.

    ``emit`` never raises and never blocks the caller; async work is scheduled
    on the running loop and failures are logged.
    """

    def __init__(self) -> None:
        self._connections: Set[WebSocket] = set()
        self._lock = asyncio.Lock()
        self._hooks: List[_HookEntry] = []
        self._pending: Set[asyncio.Task] = set()

    async def connect(self, ws: WebSocket) -> None:
        await ws.accept()
        async with self._lock:
            self._connections.add(ws)

    async def disconnect(self, ws: WebSocket) -> None:
        async with self._lock:
            self._connections.discard(ws)

    async def broadcast_json(self, message: Dict[str, Any]) -> None:
        async with self._lock:
            connections = list(self._connections)
        if not connections:
            return
        await asyncio.gather(
            *[self._safe_send(ws, message) for ws in connections],
            return_exceptions=True,
        )

    async def _safe_send(self, ws: WebSocket, message: Dict[str, Any]) -> None:
        try:
            await ws.send_json(message)
        except Exception as exc:
            log.debug("telemetry:send_failed {}", exc)
            await self.disconnect(ws)

    def add_hook(self, hook: Hook, event_types: Optional[Iterable[str]] = None, name: Optional[str] = None) -> str:
        entry = _HookEntry(name or f"hook-{len(self._hooks) + 1}", hook, set(event_types) if event_types else None)
        self._hooks.append(entry)
        return entry.name

    def remove_hook(self, name: str) -> bool:
        before = len(self._hooks)
        self._hooks = [entry for entry in self._hooks if entry.name != name]
        return len(self._hooks) != before

    def set_hook_enabled(self, name: str, enabled: bool) -> None:
        for entry in self._hooks:
            if entry.name == name:
                entry.enabled = enabled

    def emit(self, event_type: str, data: Optional[Dict[str, Any]] = None) -> None:
        event = {
            "type": event_type,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            **(data or {}),
        }
        for entry in self._hooks:
            if not entry.accepts(event_type):
                continue
            try:
                result = entry.hook(event)
            except Exception as exc:
                log.warning("telemetry:hook_failed hook={} event={} error={}", entry.name, event_type, exc)
                continue
            if inspect.isawaitable(result):
                if not self._schedule(self._await_hook(entry.name, event_type, result)) and inspect.iscoroutine(result):
                    result.close()
        if self._connections:
            self._schedule(self.broadcast_json(event))

    async def _await_hook(self, name: str, event_type: str, awaitable: Any) -> None:
        try:
            await awaitable
        except Exception as exc:
            log.warning("telemetry:hook_failed hook={} event={} error={}", name, event_type, exc)

    def _schedule(self, coro: Any) -> bool:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # no loop to run on; emission is best-effort
            coro.close()
            return False
        task = loop.create_task(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return True

    async def flush(self) -> None:
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
