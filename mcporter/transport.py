"""MCP server communication over stdio subprocesses and pre-established connections."""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import os
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from mcporter import __version__
from mcporter.config import LaunchKind, ServerSpec
from mcporter.errors import TransportError

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = "2024-11-05"
STREAM_LIMIT = 16 * 1024 * 1024
METHOD_NOT_FOUND = -32601


class TransportBinding(ABC):
    """
    One configured backend as the runtime sees it.

    Implementations are started lazily, report whether they accept more than
    one call in flight, and must be safe to terminate more than once.
    ``generation`` counts launches of the backend: it changes whenever the
    server behind the binding is a new one.
    """

    def __init__(self, name: str, concurrent: bool = False):
        self.name = name
        self._concurrent = concurrent
        self.generation = 0

    @property
    def supports_concurrent_calls(self) -> bool:
        return self._concurrent

    @property
    @abstractmethod
    def is_running(self) -> bool:
        ...

    @abstractmethod
    async def start(self) -> None:
        ...

    @abstractmethod
    async def list_tools(self) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    async def call_tool(self, name: str, arguments: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        ...

    @abstractmethod
    async def terminate(self) -> None:
        ...


class JSONRPCTransport(TransportBinding):
    """
    JSON-RPC 2.0 framing shared by the concrete transports.

    A reader task routes every response to the pending request with the same
    id; responses nobody waits for any more are dropped. Bindings that do not
    support concurrent calls hold a lock for the whole request/response cycle.
    """

    def __init__(self, name: str, concurrent: bool = False):
        super().__init__(name, concurrent)
        self.server_info: Dict[str, Any] = {}
        self._request_id = 0
        self._pending: Dict[int, asyncio.Future] = {}
        self._reader: Optional[asyncio.Task] = None
        self._start_lock = asyncio.Lock()
        self._call_lock = asyncio.Lock()
        self._started = False
        self._closed = False

    # ── Subclass hooks ────────────────────────────────────────────────────

    @abstractmethod
    async def _open(self) -> None:
        """Make the underlying channel ready for ``_send``/``_receive``."""

    @abstractmethod
    async def _send(self, message: Dict[str, Any]) -> None:
        ...

    @abstractmethod
    async def _receive(self) -> Optional[str]:
        """Next frame, or ``None`` once the peer has closed."""

    @abstractmethod
    async def _close(self) -> None:
        ...

    # ── Lifecycle ─────────────────────────────────────────────────────────

    async def start(self) -> None:
        """Open the channel and run the MCP initialize handshake."""
        async with self._start_lock:
            if self._closed:
                raise TransportError(f"Transport for '{self.name}' is closed")
            if self._started and self.is_running and self._reader is not None and not self._reader.done():
                return
            if self._started:
                logger.warning("Server '%s' is no longer running, restarting", self.name)
                await self._shutdown()

            await self._open()
            self.generation += 1
            self._reader = asyncio.create_task(self._read_loop())
            self._started = True
            try:
                await self._initialize()
            except BaseException:
                await self._shutdown()
                raise

    async def terminate(self) -> None:
        """Stop the backend. In-flight calls fail with ``TransportError``."""
        self._closed = True
        await self._shutdown()

    async def _shutdown(self) -> None:
        self._fail_pending(TransportError(f"Transport for '{self.name}' was closed"))
        reader, self._reader = self._reader, None
        if reader is not None:
            reader.cancel()
            await asyncio.gather(reader, return_exceptions=True)
        try:
            await self._close()
        except Exception as exc:
            logger.warning("Error while closing server '%s': %s", self.name, exc)
        self._started = False

    async def _initialize(self) -> None:
        result = await self._request("initialize", {
            "protocolVersion": PROTOCOL_VERSION,
            "capabilities": {},
            "clientInfo": {"name": "mcporter", "version": __version__},
        })
        self.server_info = result.get("serverInfo") or {}
        await self._notify("notifications/initialized")
        logger.debug("Initialized server '%s' (%s)", self.name, self.server_info.get("name", "unknown"))

    # ── MCP Protocol ──────────────────────────────────────────────────────

    async def list_tools(self) -> List[Dict[str, Any]]:
        """Fetch the full tool list, following pagination cursors."""
        await self.start()
        tools: List[Dict[str, Any]] = []
        cursor = None
        while True:
            result = await self._request("tools/list", {"cursor": cursor} if cursor else None)
            tools.extend(result.get("tools") or [])
            cursor = result.get("nextCursor")
            if not cursor:
                return tools

    async def call_tool(self, name: str, arguments: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Call a tool on the server and return the raw result payload."""
        await self.start()
        return await self._request("tools/call", {"name": name, "arguments": arguments or {}})

    # ── JSON-RPC ──────────────────────────────────────────────────────────

    async def _request(self, method: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        if self._concurrent:
            return await self._roundtrip(method, params)
        async with self._call_lock:
            return await self._roundtrip(method, params)

    async def _roundtrip(self, method: str, params: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        if self._closed:
            raise TransportError(f"Transport for '{self.name}' is closed")

        self._request_id += 1
        request_id = self._request_id
        request: Dict[str, Any] = {"jsonrpc": "2.0", "id": request_id, "method": method}
        if params is not None:
            request["params"] = params

        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            if self._reader is None or self._reader.done():
                raise TransportError(f"Server '{self.name}' is not connected")
            logger.debug("-> %s %s", self.name, request)
            await self._send(request)
            return await future
        except asyncio.CancelledError:
            await self._cancel_remote(request_id, method)
            raise
        finally:
            self._pending.pop(request_id, None)

    async def _notify(self, method: str, params: Optional[Dict[str, Any]] = None) -> None:
        message: Dict[str, Any] = {"jsonrpc": "2.0", "method": method}
        if params is not None:
            message["params"] = params
        await self._send(message)

    async def _cancel_remote(self, request_id: int, method: str) -> None:
        if method == "initialize" or self._closed:
            return
        try:
            await self._notify("notifications/cancelled", {"requestId": request_id, "reason": "cancelled by client"})
        except Exception as exc:
            logger.debug("Could not forward cancellation to '%s': %s", self.name, exc)

    def _fail_pending(self, error: TransportError) -> None:
        pending, self._pending = self._pending, {}
        for future in pending.values():
            if not future.done():
                future.set_exception(error)

    # ── Reader ────────────────────────────────────────────────────────────

    async def _read_loop(self) -> None:
        try:
            while True:
                frame = await self._receive()
                if frame is None:
                    break
                if not frame.strip():
                    continue
                try:
                    message = json.loads(frame)
                except ValueError:
                    logger.warning("Malformed frame from '%s': %.200s", self.name, frame)
                    self._fail_pending(TransportError(f"Server '{self.name}' sent a malformed response"))
                    continue
                logger.debug("<- %s %s", self.name, message)
                for item in message if isinstance(message, list) else [message]:
                    if isinstance(item, dict):
                        await self._dispatch(item)
        except TransportError as exc:
            self._fail_pending(exc)
            return
        except (OSError, ValueError) as exc:
            self._fail_pending(TransportError(f"Connection to '{self.name}' failed: {exc}"))
            return
        self._fail_pending(TransportError(f"Server '{self.name}' closed the connection"))

    async def _dispatch(self, message: Dict[str, Any]) -> None:
        if "method" in message:
            await self._handle_server_message(message)
            return

        future = self._pending.pop(message.get("id"), None)
        if future is None:
            logger.warning("Dropping response to unknown request %r from '%s'", message.get("id"), self.name)
            return
        if future.done():
            return
        if "error" in message:
            err = message["error"] or {}
            future.set_exception(TransportError(f"MCP error {err.get('code')}: {err.get('message')}"))
        else:
            future.set_result(message.get("result") or {})

    async def _handle_server_message(self, message: Dict[str, Any]) -> None:
        if "id" not in message:
            logger.debug("Notification from '%s': %s", self.name, message.get("method"))
            return
        if message["method"] == "ping":
            response = {"jsonrpc": "2.0", "id": message["id"], "result": {}}
        else:
            response = {
                "jsonrpc": "2.0",
                "id": message["id"],
                "error": {"code": METHOD_NOT_FOUND, "message": f"Method not supported: {message['method']}"},
            }
        await self._send(response)


class StdioTransport(JSONRPCTransport):
    """
    Communicate with an MCP server subprocess over stdin/stdout.

    Messages are newline-delimited JSON. Only one call is in flight at a time.
    """

    def __init__(
        self,
        name: str,
        command: str,
        args: Optional[List[str]] = None,
        cwd: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
        grace_period: float = 5.0,
    ):
        super().__init__(name, concurrent=False)
        self.command = command
        self.args = list(args or [])
        self.cwd = cwd
        self.env = dict(env or {})
        self.grace_period = grace_period
        self._process: Optional[asyncio.subprocess.Process] = None
        self._stderr_task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._process is not None and self._process.returncode is None

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process else None

    async def _open(self) -> None:
        merged_env = {**os.environ, **self.env}
        logger.debug("Starting server '%s': %s", self.name, " ".join([self.command] + self.args))
        try:
            self._process = await asyncio.create_subprocess_exec(
                self.command,
                *self.args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self.cwd,
                env=merged_env,
                limit=STREAM_LIMIT,
            )
        except FileNotFoundError:
            raise TransportError(
                f"MCP server command not found: {self.command}. "
                "Make sure the package is installed and on PATH."
            )
        except OSError as exc:
            raise TransportError(f"Failed to start server '{self.name}': {exc}")
        self._stderr_task = asyncio.create_task(self._drain_stderr(self._process))

    async def _drain_stderr(self, process: asyncio.subprocess.Process) -> None:
        while True:
            line = await process.stderr.readline()
            if not line:
                return
            logger.debug("[%s stderr] %s", self.name, line.decode("utf-8", errors="replace").rstrip())

    async def _send(self, message: Dict[str, Any]) -> None:
        if not self.is_running:
            raise TransportError(f"Server '{self.name}' is not running")
        line = json.dumps(message) + "\n"
        try:
            self._process.stdin.write(line.encode())
            await self._process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError, OSError) as exc:
            raise TransportError(f"MCP transport error: {exc}")

    async def _receive(self) -> Optional[str]:
        try:
            raw = await self._process.stdout.readline()
        except ValueError as exc:
            raise TransportError(f"Response from '{self.name}' exceeds the frame limit: {exc}")
        if not raw:
            return None
        return raw.decode("utf-8", errors="replace")

    async def _close(self) -> None:
        process, self._process = self._process, None
        if process is None:
            return
        if process.stdin is not None and not process.stdin.is_closing():
            process.stdin.close()
        if process.returncode is None:
            try:
                process.terminate()
                await asyncio.wait_for(process.wait(), timeout=self.grace_period)
            except ProcessLookupError:
                pass
            except asyncio.TimeoutError:
                logger.warning("Server '%s' ignored SIGTERM, killing", self.name)
                process.kill()
                await process.wait()
        if self._stderr_task is not None:
            self._stderr_task.cancel()
            await asyncio.gather(self._stderr_task, return_exceptions=True)
            self._stderr_task = None


class ConnectionTransport(JSONRPCTransport):
    """
    Speak MCP over a connection the caller already opened.

    The handle needs awaitable ``send(str)`` and ``recv()`` and optionally
    ``close()``; a ``websockets`` client connection fits. One JSON message
    per frame.
    """

    def __init__(self, name: str, connection: Any, concurrent: bool = True):
        super().__init__(name, concurrent=concurrent)
        self.connection = connection
        self._connection_closed = False

    @property
    def is_running(self) -> bool:
        return not self._connection_closed

    async def _open(self) -> None:
        if self._connection_closed:
            raise TransportError(f"Connection for '{self.name}' is closed")

    async def _send(self, message: Dict[str, Any]) -> None:
        if self._connection_closed:
            raise TransportError(f"Connection for '{self.name}' is closed")
        try:
            await self.connection.send(json.dumps(message))
        except Exception as exc:
            raise TransportError(f"Send to '{self.name}' failed: {exc}")

    async def _receive(self) -> Optional[str]:
        try:
            frame = await self.connection.recv()
        except Exception as exc:
            self._connection_closed = True
            raise TransportError(f"Connection to '{self.name}' dropped: {exc}")
        if frame is None:
            self._connection_closed = True
            return None
        if isinstance(frame, bytes):
            return frame.decode("utf-8", errors="replace")
        return frame

    async def _close(self) -> None:
        # The handle belongs to the caller until the binding is terminated.
        if not self._closed:
            return
        self._connection_closed = True
        close = getattr(self.connection, "close", None)
        if close is None:
            return
        result = close()
        if inspect.isawaitable(result):
            await result


def create_binding(spec: ServerSpec) -> TransportBinding:
    """Build the transport binding for a server spec."""
    if spec.kind is LaunchKind.PRECONNECTED:
        return ConnectionTransport(spec.name, spec.connection, concurrent=spec.concurrent)
    return StdioTransport(
        spec.name,
        command=spec.command,
        args=spec.args,
        cwd=spec.cwd,
        env=spec.env,
    )
