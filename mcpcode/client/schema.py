"""Data models for MCP tool descriptors and discovery results."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class MCPTool(BaseModel):
    """A tool as advertised by an MCP server's ``tools/list``."""

    model_config = ConfigDict(populate_by_name=True)

    name: str
    description: Optional[str] = None
    input_schema: Dict[str, Any] = Field(default_factory=dict, alias="inputSchema")

    @classmethod
    def from_raw(cls, raw: Dict[str, Any]) -> "MCPTool":
        """Build from a raw ``tools/list`` entry; empty descriptions are dropped."""
        return cls(
            name=raw["name"],
            description=raw.get("description") or None,
            input_schema=raw.get("inputSchema") or {},
        )


class DiscoveredTool(MCPTool):
    """A tool together with the server it came from."""

    server_name: str

    @property
    def qualified_name(self) -> str:
        """Full name as ``server.tool`` (e.g. ``github.create_issue``)."""
        return f"{self.server_name}.{self.name}"


class DiscoveryResult(BaseModel):
    """Outcome of discovering one server: its tools, or why that failed."""

    server_name: str
    tools: List[MCPTool] = Field(default_factory=list)
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None
