"""Command-line interface for the Gmail MCP bridge."""
