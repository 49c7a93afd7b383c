"""
MCPorter - call MCP tool servers from Python.

One runtime owns any number of named servers (local subprocesses speaking
MCP over stdio, or connections opened by the caller) and exposes a single
call primitive. Proxies turn method calls into tool calls, and every
response comes back as a Result that can be read as raw payload, text,
parsed JSON or markdown.

    runtime = create_runtime(config_path="config/mcporter.json")
    async with runtime:
        context7 = create_server_proxy(runtime, "context7")
        result = await context7.resolve_library_id(query="react")
        print(result.json())
"""

__version__ = "0.1.0"
__license__ = "Apache-2.0"

from mcporter.config import LaunchKind, RuntimeConfig, ServerSpec, SessionConfig, load_config
from mcporter.errors import (
    ConfigError,
    InvocationTimeoutError,
    MCPorterError,
    SessionNotEstablishedError,
    TransportError,
    UnknownServerError,
    UnknownToolError,
)
from mcporter.proxy import ServerProxy, create_server_proxy
from mcporter.result import Result
from mcporter.runtime import Runtime, create_runtime
from mcporter.schema import InvocationRequest, SessionState, ToolDescriptor, ToolParam

__all__ = [
    "ConfigError",
    "InvocationRequest",
    "InvocationTimeoutError",
    "LaunchKind",
    "MCPorterError",
    "Result",
    "Runtime",
    "RuntimeConfig",
    "ServerProxy",
    "ServerSpec",
    "SessionConfig",
    "SessionNotEstablishedError",
    "SessionState",
    "ToolDescriptor",
    "ToolParam",
    "TransportError",
    "UnknownServerError",
    "UnknownToolError",
    "__version__",
    "create_runtime",
    "create_server_proxy",
    "load_config",
]
