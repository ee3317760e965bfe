"""mcplink - JSON-RPC client for MCP servers over stdio."""

__version__ = "0.1.0"
