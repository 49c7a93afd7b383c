"""
Server proxies - call tools as methods.

    >>> context7 = create_server_proxy(runtime, "context7")
    >>> result = await context7.resolve_library_id(query="react")

is the same call as ``runtime.invoke("context7", "resolve-library-id", {"query": "react"})``.
Tool names are matched through :func:`attribute_name`; tools whose names do
not map to an identifier are reachable only with ``proxy.call(name, args)``.
"""

from __future__ import annotations

import keyword
import re
from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Optional

from mcporter.errors import SessionNotEstablishedError, UnknownToolError
from mcporter.result import Result
from mcporter.schema import ToolDescriptor

if TYPE_CHECKING:
    from mcporter.runtime import Runtime

_WORD_BOUNDARY = re.compile(r"[-_.]+")
_CAMEL_SPLIT = re.compile(r"(?<=[a-z0-9])(?=[A-Z])|(?<=[A-Z])(?=[A-Z][a-z])")


def split_words(name: str) -> List[str]:
    """Split a tool or attribute name into lowercase words."""
    words: List[str] = []
    for chunk in _WORD_BOUNDARY.split(name):
        words.extend(w.lower() for w in _CAMEL_SPLIT.split(chunk) if w)
    return words


def normalize(name: str) -> str:
    """
    Canonical key shared by every spelling of a name.

    ``resolveLibraryId``, ``resolve_library_id`` and ``resolve-library-id``
    all normalize to ``resolve_library_id``.
    """
    return "_".join(split_words(name))


def attribute_name(tool_name: str) -> Optional[str]:
    """Python attribute for a declared tool name, or ``None`` if there is none."""
    key = normalize(tool_name)
    if not key.isidentifier() or keyword.iskeyword(key):
        return None
    return key


def camel_case(tool_name: str) -> Optional[str]:
    """camelCase spelling of ``attribute_name(tool_name)``."""
    key = attribute_name(tool_name)
    if key is None:
        return None
    first, *rest = key.split("_")
    return first + "".join(w.capitalize() for w in rest)


class ToolMethod:
    """Awaitable callable bound to one attribute of a :class:`ServerProxy`."""

    def __init__(self, proxy: "ServerProxy", attribute: str):
        self._proxy = proxy
        self._attribute = attribute
        self.__name__ = attribute

    async def __call__(self, *args: Any, **kwargs: Any) -> Result:
        self._proxy.check_session(self._attribute)
        tool = await self._proxy.resolve(self._attribute)
        arguments = _bind_arguments(tool, args, kwargs)
        return await self._proxy.runtime.invoke(self._proxy.server_name, tool.name, arguments)

    def __repr__(self) -> str:
        return f"<ToolMethod {self._proxy.server_name}.{self._attribute}>"


class ServerProxy:
    """
    Method-style facade over one server of a runtime.

    Holds only the server name and a reference to the runtime; it owns no
    resources and never swallows errors.
    """

    def __init__(self, runtime: "Runtime", server: str):
        runtime.server_spec(server)  # fail fast on unknown names
        self._runtime = runtime
        self._server = server
        self._methods: Dict[str, ToolMethod] = {}

    @property
    def runtime(self) -> "Runtime":
        return self._runtime

    @property
    def server_name(self) -> str:
        return self._server

    # ── Escape hatch ──────────────────────────────────────────────────────

    async def call(self, tool_name: str, args: Optional[Mapping[str, Any]] = None, **kwargs: Any) -> Result:
        """Invoke ``tool_name`` literally, without name mapping."""
        arguments = dict(args or {})
        arguments.update(kwargs)
        return await self._runtime.invoke(self._server, tool_name, arguments)

    def check_session(self, attribute: str) -> None:
        """Reject non-handshake methods before tool discovery touches the server."""
        handshake = self._runtime.handshake_tool(self._server)
        if handshake is None or self._runtime.session(self._server) is not None:
            return
        if attribute == handshake or normalize(attribute) == normalize(handshake):
            return
        raise SessionNotEstablishedError(
            self._server,
            f"Server '{self._server}' requires '{handshake}' before calling '{attribute}'",
        )

    # ── Discovery ─────────────────────────────────────────────────────────

    async def tools(self, refresh: bool = False) -> List[ToolDescriptor]:
        return await self._runtime.list_tools(self._server, refresh=refresh)

    async def methods(self) -> Dict[str, str]:
        """Table of ``{attribute: tool name}`` for every mappable tool."""
        table: Dict[str, str] = {}
        ambiguous = set()
        for tool in await self.tools():
            key = attribute_name(tool.name)
            if key is None:
                continue
            if key in table:
                ambiguous.add(key)
            table[key] = tool.name
        for key in ambiguous:
            del table[key]
        return table

    async def resolve(self, attribute: str) -> ToolDescriptor:
        """Find the declared tool an attribute refers to."""
        tools = await self.tools()
        for tool in tools:
            if tool.name == attribute:
                return tool

        table = await self.methods()
        tool_name = table.get(normalize(attribute))
        if tool_name is None:
            raise UnknownToolError(
                self._server,
                attribute,
                "Use proxy.call(name, args) for tools whose names are not identifiers.",
            )
        return next(t for t in tools if t.name == tool_name)

    # ── Dispatch ──────────────────────────────────────────────────────────

    def __getattr__(self, attribute: str) -> ToolMethod:
        if attribute.startswith("_"):
            raise AttributeError(attribute)
        method = self._methods.get(attribute)
        if method is None:
            method = ToolMethod(self, attribute)
            self._methods[attribute] = method
        return method

    def __repr__(self) -> str:
        return f"<ServerProxy {self._server}>"


def create_server_proxy(runtime: "Runtime", server: str) -> ServerProxy:
    """Proxy for ``server``; raises ``UnknownServerError`` if it is not bound."""
    return ServerProxy(runtime, server)


def _bind_arguments(tool: ToolDescriptor, args: tuple, kwargs: Dict[str, Any]) -> Dict[str, Any]:
    arguments: Dict[str, Any] = {}
    positional = list(args)
    if positional and isinstance(positional[0], Mapping):
        arguments.update(positional.pop(0))

    if positional:
        order = [name for name in tool.positional_order() if name not in arguments and name not in kwargs]
        if len(positional) > len(order):
            raise TypeError(
                f"{tool.qualified_name} takes at most {len(order)} positional argument(s), "
                f"{len(positional)} given"
            )
        arguments.update(zip(order, positional))

    arguments.update(kwargs)
    return arguments
