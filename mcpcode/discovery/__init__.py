"""
mcpcode discovery module.

This module connects to configured servers and collects their tools.
"""

from mcpcode.discovery.tool_discovery import ToolDiscovery

__all__ = ["ToolDiscovery"]
