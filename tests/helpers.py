"""In-memory transport bindings and server entries shared by the tests."""

import asyncio
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from mcporter.config import ServerSpec
from mcporter.transport import TransportBinding

TOOLS: Dict[str, List[Dict[str, Any]]] = {
    "context7": [
        {
            "name": "resolve-library-id",
            "description": "Resolve a package name to a Context7 library id",
            "inputSchema": {
                "type": "object",
                "properties": {"query": {"type": "string", "description": "Library name"}},
                "required": ["query"],
            },
        },
        {
            "name": "get-library-docs",
            "description": "Fetch documentation\nfor a library",
            "inputSchema": {
                "type": "object",
                "properties": {
                    "tokens": {"type": "integer"},
                    "libraryId": {"type": "string"},
                },
                "required": ["libraryId"],
            },
        },
        {"name": "show all docs", "description": "Name with spaces"},
    ],
    "figma": [
        {
            "name": "join_channel",
            "inputSchema": {"properties": {"channel": {"type": "string"}}, "required": ["channel"]},
        },
        {"name": "get_document_info", "description": "Document name and pages"},
        {"name": "create_frame"},
    ],
}


def text_payload(text: str, **extra: Any) -> Dict[str, Any]:
    return {"content": [{"type": "text", "text": text}], **extra}


class FakeBinding(TransportBinding):
    """Records every call; answers from ``responses`` or with a text echo."""

    def __init__(self, spec: ServerSpec, tools: Optional[List[Dict[str, Any]]] = None):
        super().__init__(spec.name, concurrent=spec.concurrent)
        self.spec = spec
        self.tools = tools or []
        self.responses: Dict[str, Any] = {}
        self.calls: List[tuple] = []
        self.list_calls = 0
        self.started = False
        self.terminations = 0
        self.fail_terminate = False

    @property
    def is_running(self) -> bool:
        return self.started and not self.terminations

    async def start(self) -> None:
        self.started = True

    async def list_tools(self):
        await self.start()
        self.list_calls += 1
        await asyncio.sleep(0)
        return list(self.tools)

    async def call_tool(self, name, arguments=None):
        await self.start()
        self.calls.append((name, dict(arguments or {})))
        response = self.responses.get(name)
        if isinstance(response, Exception):
            raise response
        if callable(response):
            response = await response(arguments or {})
        return response if response is not None else text_payload(f"{name} ok")

    async def terminate(self) -> None:
        self.terminations += 1
        if self.fail_terminate:
            raise RuntimeError("process already gone")


SERVERS = [
    {"name": "context7", "command": "npx", "args": ["-y", "@upstash/context7-mcp"]},
    {"name": "figma", "command": "bunx", "args": ["cursor-talk-to-figma-mcp@latest"], "session": True},
]

ECHO_SERVER = str(Path(__file__).parent / "mcp_echo_server.py")


def echo_servers(**extra: Any) -> List[Dict[str, Any]]:
    """One inline entry running the echo MCP server on this interpreter."""
    return [{"name": "echo", "command": sys.executable, "args": [ECHO_SERVER], **extra}]
