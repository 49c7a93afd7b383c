"""Runtime - owns the configured server bindings and routes tool calls to them."""

from __future__ import annotations

import asyncio
import difflib
import logging
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

from mcporter.config import RuntimeConfig, ServerEntries, ServerSpec, find_config_file, load_config
from mcporter.errors import (
    ConfigError,
    InvocationTimeoutError,
    TransportError,
    UnknownServerError,
    UnknownToolError,
)
from mcporter.proxy import ServerProxy
from mcporter.registry import ToolRegistry
from mcporter.result import Result
from mcporter.schema import InvocationRequest, SessionState, ToolDescriptor
from mcporter.session import SessionPolicy
from mcporter.transport import TransportBinding, create_binding

logger = logging.getLogger(__name__)

BindingFactory = Callable[[ServerSpec], TransportBinding]


class Runtime:
    """
    Owns one binding per configured server for the lifetime of the process.

    Bindings start lazily on their first call. Calls to different servers run
    concurrently; a binding that only supports one call at a time serializes
    its own calls. Always release the runtime, preferably with ``async with``:

        >>> async with create_runtime(config_path="config/mcporter.json") as runtime:
        ...     result = await runtime.invoke("context7", "resolve-library-id", {"query": "react"})
        ...     print(result.text())
    """

    def __init__(self, config: RuntimeConfig, binding_factory: BindingFactory = create_binding):
        if not config.servers:
            raise ConfigError("No servers configured")
        self._config = config
        self._bindings: Dict[str, TransportBinding] = {
            name: binding_factory(spec) for name, spec in config.servers.items()
        }
        self._sessions: Dict[str, SessionPolicy] = {
            name: SessionPolicy(name, spec.session)
            for name, spec in config.servers.items()
            if spec.session_scoped
        }
        self._registry = ToolRegistry()
        self._closed = False

    @classmethod
    def create(
        cls,
        config: Optional[RuntimeConfig] = None,
        *,
        config_path: Optional[Union[str, Path]] = None,
        servers: Optional[ServerEntries] = None,
        binding_factory: BindingFactory = create_binding,
    ) -> "Runtime":
        """
        Build a runtime from a resolved config, or from a config file plus inline servers.

        With neither ``config_path`` nor ``servers`` given, the config file is
        located with ``find_config_file()``.

        Raises:
            ConfigError: If the configuration is malformed or empty.
        """
        if config is None:
            if config_path is None and not servers:
                config_path = find_config_file()
                if config_path is None:
                    raise ConfigError("No config file found and no servers given")
            config = load_config(config_path, servers)
        return cls(config, binding_factory=binding_factory)

    # ── Discovery ─────────────────────────────────────────────────────────

    @property
    def config(self) -> RuntimeConfig:
        return self._config

    @property
    def closed(self) -> bool:
        return self._closed

    def list_servers(self) -> List[str]:
        """Names of the bound servers, in configuration order. Empty once closed."""
        if self._closed:
            return []
        return list(self._bindings)

    def server_spec(self, server: str) -> ServerSpec:
        self._binding_for(server)
        return self._config.servers[server]

    def binding(self, server: str) -> TransportBinding:
        return self._binding_for(server)

    def supports_concurrent_calls(self, server: str) -> bool:
        return self._binding_for(server).supports_concurrent_calls

    async def list_tools(self, server: str, refresh: bool = False) -> List[ToolDescriptor]:
        """Tools advertised by ``server``; cached until ``refresh=True``."""
        binding = self._binding_for(server)
        if refresh:
            return await self._registry.refresh(server, binding)
        return await self._registry.tools(server, binding)

    def proxy(self, server: str) -> ServerProxy:
        """Shortcut for ``create_server_proxy(self, server)``."""
        return ServerProxy(self, server)

    # ── Invocation ────────────────────────────────────────────────────────

    async def invoke(
        self,
        server: str,
        tool: str,
        arguments: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> Result:
        """
        Call ``tool`` on ``server`` and wrap the response.

        Raises:
            UnknownServerError: ``server`` is not bound.
            SessionNotEstablishedError: session-scoped server called before its handshake,
                or relaunched since it.
            UnknownToolError: ``server`` does not advertise ``tool``.
            TransportError: the process or connection failed.
        """
        binding = self._binding_for(server)
        spec = self._config.servers[server]

        policy = self._sessions.get(server)
        if policy is not None:
            if policy.active:
                # A relaunched backend never saw the handshake.
                await binding.start()
                policy.expire(binding.generation)
            policy.check(tool)

        if spec.discover:
            await self._ensure_tool(server, binding, tool)

        request = InvocationRequest(server=server, tool=tool, arguments=dict(arguments or {}))
        effective_timeout = timeout if timeout is not None else spec.timeout

        if policy is not None and policy.is_handshake(tool):
            async def perform(args: Dict[str, Any]) -> Result:
                joined = request.model_copy(update={"arguments": args})
                return await self._dispatch(binding, joined, effective_timeout)

            return await policy.handshake(request.arguments, perform, lambda: binding.generation)

        result = await self._dispatch(binding, request, effective_timeout)
        if policy is not None:
            policy.expire(binding.generation)
        return result

    async def _dispatch(
        self,
        binding: TransportBinding,
        request: InvocationRequest,
        timeout: Optional[float],
    ) -> Result:
        logger.debug("Calling %s.%s with %s", request.server, request.tool, request.arguments)
        t0 = time.perf_counter()
        try:
            call = binding.call_tool(request.tool, request.arguments)
            payload = await (asyncio.wait_for(call, timeout) if timeout else call)
        except asyncio.TimeoutError:
            raise InvocationTimeoutError(
                f"Call to {request.server}.{request.tool} timed out after {timeout}s"
            )
        elapsed_ms = int((time.perf_counter() - t0) * 1000)
        logger.debug("%s.%s finished in %d ms", request.server, request.tool, elapsed_ms)
        return Result(payload)

    async def _ensure_tool(self, server: str, binding: TransportBinding, tool: str) -> None:
        tools = await self._registry.tools(server, binding)
        names = [t.name for t in tools]
        if tool in names:
            return
        close = difflib.get_close_matches(tool, names, n=3)
        hint = f"Did you mean: {', '.join(close)}?" if close else ""
        raise UnknownToolError(server, tool, hint)

    def _binding_for(self, server: str) -> TransportBinding:
        if self._closed:
            raise TransportError("Runtime is closed")
        binding = self._bindings.get(server)
        if binding is None:
            raise UnknownServerError(server, known=self.list_servers())
        return binding

    # ── Sessions ──────────────────────────────────────────────────────────

    async def establish_session(self, server: str, channel_id: Optional[str] = None) -> SessionState:
        """Run the handshake for a session-scoped server (no-op when already joined)."""
        policy = self._policy_for(server)
        arguments = {policy.config.channel_argument: channel_id} if channel_id else {}
        await self.invoke(server, policy.handshake_tool, arguments)
        return policy.state

    def session(self, server: str) -> Optional[SessionState]:
        """Current session of ``server``; ``None`` when not joined or not session-scoped."""
        self._binding_for(server)
        policy = self._sessions.get(server)
        return policy.state if policy else None

    def handshake_tool(self, server: str) -> Optional[str]:
        """Handshake tool of a session-scoped server, ``None`` for other servers."""
        self._binding_for(server)
        policy = self._sessions.get(server)
        return policy.handshake_tool if policy else None

    def reset_session(self, server: str) -> None:
        self._policy_for(server).reset()

    def _policy_for(self, server: str) -> SessionPolicy:
        self._binding_for(server)
        policy = self._sessions.get(server)
        if policy is None:
            raise ConfigError(f"Server '{server}' is not configured as session-scoped")
        return policy

    # ── Cleanup ───────────────────────────────────────────────────────────

    async def close(self) -> None:
        """Stop every binding and drop all sessions. Safe to call repeatedly."""
        if self._closed:
            return
        self._closed = True
        await asyncio.gather(*(self._terminate(name, b) for name, b in self._bindings.items()))
        for policy in self._sessions.values():
            policy.reset()
        self._registry.clear()

    async def _terminate(self, name: str, binding: TransportBinding) -> None:
        try:
            await binding.terminate()
        except Exception as exc:
            logger.warning("Failed to stop server '%s': %s", name, exc)

    async def __aenter__(self) -> "Runtime":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()


def create_runtime(
    config: Optional[RuntimeConfig] = None,
    *,
    config_path: Optional[Union[str, Path]] = None,
    servers: Optional[ServerEntries] = None,
    binding_factory: BindingFactory = create_binding,
) -> Runtime:
    """Create a :class:`Runtime`; see :meth:`Runtime.create`."""
    return Runtime.create(config, config_path=config_path, servers=servers, binding_factory=binding_factory)
