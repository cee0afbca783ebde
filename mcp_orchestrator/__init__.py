"""MCP Orchestrator - one MCP endpoint in front of many locally-installed MCP backends."""

__version__ = "0.1.0"
