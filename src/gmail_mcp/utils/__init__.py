"""Utility modules for the Gmail MCP bridge."""

from gmail_mcp.utils.logging import get_logger, setup_logging
from gmail_mcp.utils.config import Config, get_config, load_config

__all__ = [
    "get_logger",
    "setup_logging",
    "Config",
    "get_config",
    "load_config",
]
