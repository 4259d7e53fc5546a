"""mcplink: supervised connections to external MCP tool servers."""

__version__ = "0.4.0"
