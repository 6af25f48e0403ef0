"""
MCP bridge server exposing Gmail tools over HTTP JSON-RPC.
"""

from .server import GmailMCPServer, build_cache

__all__ = ['GmailMCPServer', 'build_cache']
