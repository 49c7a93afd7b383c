"""Data models for tool descriptors, invocation requests and session state."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class ToolParam(BaseModel):
    """A single parameter for a tool."""

    model_config = ConfigDict(frozen=True)

    name: str
    type: str = "string"
    description: str = ""
    required: bool = False


class ToolDescriptor(BaseModel):
    """A tool advertised by a server. Read-only, cached per server."""

    model_config = ConfigDict(frozen=True)

    name: str  # e.g. "resolve-library-id"
    server: str  # e.g. "context7"
    description: str = ""
    input_schema: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_mcp(cls, server: str, raw: Dict[str, Any]) -> "ToolDescriptor":
        """Build a descriptor from one entry of an MCP ``tools/list`` response."""
        return cls(
            name=raw["name"],
            server=server,
            description=raw.get("description") or "",
            input_schema=raw.get("inputSchema") or {},
        )

    @property
    def qualified_name(self) -> str:
        """Full name as ``server.tool`` (e.g. ``context7.resolve-library-id``)."""
        return f"{self.server}.{self.name}"

    @property
    def params(self) -> List[ToolParam]:
        """Parameters in schema order."""
        properties = self.input_schema.get("properties") or {}
        required = set(self.input_schema.get("required") or [])
        params = []
        for pname, pinfo in properties.items():
            pinfo = pinfo if isinstance(pinfo, dict) else {}
            ptype = pinfo.get("type", "string")
            if isinstance(ptype, list):
                ptype = "|".join(str(t) for t in ptype)
            params.append(ToolParam(
                name=pname,
                type=str(ptype),
                description=pinfo.get("description", ""),
                required=pname in required,
            ))
        return params

    @property
    def required_params(self) -> List[ToolParam]:
        return [p for p in self.params if p.required]

    def positional_order(self) -> List[str]:
        """Parameter names used to bind positional arguments: required first."""
        params = self.params
        return [p.name for p in params if p.required] + [p.name for p in params if not p.required]

    def summary_line(self) -> str:
        """One-line representation for listings."""
        desc = self.description.split("\n")[0][:100] if self.description else ""
        return f"- {self.qualified_name}: {desc}" if desc else f"- {self.qualified_name}"

    def full_schema_text(self) -> str:
        """Full parameter schema as text."""
        lines = [f"Tool: {self.qualified_name}"]
        if self.description:
            lines.append(f"  {self.description}")
        lines.append("  Parameters:")
        if not self.params:
            lines.append("    (none)")
        for p in self.params:
            req = " (required)" if p.required else ""
            line = f"    - {p.name}: {p.type}{req}"
            if p.description:
                line += f" - {p.description}"
            lines.append(line)
        return "\n".join(lines)


class InvocationRequest(BaseModel):
    """One call of a tool on a server. Arguments are opaque to the runtime."""

    model_config = ConfigDict(frozen=True)

    server: str
    tool: str
    arguments: Dict[str, Any] = Field(default_factory=dict)


class SessionState(BaseModel):
    """Handshake state of a session-scoped server."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    server: str
    channel_id: str
    established: bool = False
    generation: int = 0
    handshake_result: Optional[Any] = Field(default=None, exclude=True, repr=False)
