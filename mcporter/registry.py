"""Tool registry - discovers and caches tool descriptors per server."""

from __future__ import annotations

import asyncio
from typing import Dict, List, Optional

from mcporter.schema import ToolDescriptor
from mcporter.transport import TransportBinding


class ToolRegistry:
    """
    Caches the tools each server advertises.

    The first lookup for a server queries its binding; later lookups are
    served from memory until ``refresh()`` or ``forget()``. Concurrent first
    lookups share one query.
    """

    def __init__(self):
        self._tools: Dict[str, List[ToolDescriptor]] = {}
        self._inflight: Dict[str, asyncio.Task] = {}

    # ── Discovery ─────────────────────────────────────────────────────────

    async def tools(self, server: str, binding: TransportBinding) -> List[ToolDescriptor]:
        """Cached tool list for ``server``, fetched on first use."""
        if server in self._tools:
            return list(self._tools[server])
        return await self.refresh(server, binding)

    async def refresh(self, server: str, binding: TransportBinding) -> List[ToolDescriptor]:
        """Query the binding again and replace the cached list."""
        task = self._inflight.get(server)
        if task is None:
            task = asyncio.ensure_future(self._fetch(server, binding))
            self._inflight[server] = task
            task.add_done_callback(lambda t: self._release(server, t))
        tools = await asyncio.shield(task)
        return list(tools)

    def _release(self, server: str, task: asyncio.Task) -> None:
        if self._inflight.get(server) is task:
            del self._inflight[server]
        if not task.cancelled():
            task.exception()  # mark retrieved when every waiter was cancelled

    async def _fetch(self, server: str, binding: TransportBinding) -> List[ToolDescriptor]:
        raw_tools = await binding.list_tools()
        tools = [ToolDescriptor.from_mcp(server, raw) for raw in raw_tools if raw.get("name")]
        self._tools[server] = tools
        return tools

    # ── Lookup ────────────────────────────────────────────────────────────

    async def get_tool(self, server: str, binding: TransportBinding, name: str) -> Optional[ToolDescriptor]:
        """Lookup a tool by its declared name."""
        for tool in await self.tools(server, binding):
            if tool.name == name:
                return tool
        return None

    def cached(self, server: str) -> Optional[List[ToolDescriptor]]:
        """Tools already known for ``server`` without querying, or ``None``."""
        tools = self._tools.get(server)
        return list(tools) if tools is not None else None

    def forget(self, server: str) -> None:
        self._tools.pop(server, None)

    def clear(self) -> None:
        self._tools.clear()
        self._inflight.clear()
