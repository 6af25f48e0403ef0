"""
Test core models, exceptions and JSON-RPC message types.
"""

import pytest

from gmail_mcp.core.exceptions import (
    ConfigError, DisposalError, GmailMCPError, InvalidUserError, ToolsUnavailableError,
    UpstreamError,
)
from gmail_mcp.core.models import AuthStatus, OAuthInitiation, ToolDefinition, freeze_tools
from gmail_mcp.server.models import INVALID_PARAMS, RPCError, RPCRequest, rpc_error, rpc_result


class TestExceptions:
    """Test the error hierarchy."""

    def test_str_includes_code(self):
        assert str(GmailMCPError("boom", "E1")) == "[E1] boom"
        assert str(GmailMCPError("boom")) == "boom"

    def test_to_dict(self):
        error = ToolsUnavailableError("retry later", "TOOLS_UNAVAILABLE", {"user_id": "alice"})

        assert error.to_dict() == {
            "error": "ToolsUnavailableError",
            "message": "retry later",
            "error_code": "TOOLS_UNAVAILABLE",
            "details": {"user_id": "alice"},
        }

    def test_hierarchy(self):
        for cls in (ConfigError, UpstreamError, ToolsUnavailableError, DisposalError, InvalidUserError):
            assert issubclass(cls, GmailMCPError)

    def test_upstream_error_rpc_code(self):
        assert UpstreamError("x", "RPC_ERROR", rpc_code=-32601).rpc_code == -32601

    def test_disposal_error(self):
        cause = RuntimeError("socket closed")
        error = DisposalError("close failed", "gmail:alice:ca_1", cause)

        assert error.error_code == "DISPOSAL_FAILED"
        assert error.details == {"key": "gmail:alice:ca_1"}
        assert error.cause is cause


class TestModels:
    """Test domain models."""

    def test_auth_status_equality_and_label(self):
        assert AuthStatus(connected=True, connection_id="ca_1") == AuthStatus(connected=True, connection_id="ca_1")
        assert AuthStatus(connected=True, connection_id="ca_1").label == "AUTHENTICATED"
        assert AuthStatus(connected=False).label == "NOT AUTHENTICATED"

    def test_auth_status_frozen(self):
        status = AuthStatus(connected=False)

        with pytest.raises(Exception):
            status.connected = True

    def test_tool_definition_alias(self):
        tool = ToolDefinition.model_validate({"name": "GMAIL_SEND_EMAIL", "inputSchema": {"type": "object"}})

        assert tool.input_schema == {"type": "object"}
        assert tool.to_mcp() == {"name": "GMAIL_SEND_EMAIL", "description": "", "inputSchema": {"type": "object"}}

    def test_freeze_tools_read_only(self):
        tools = freeze_tools([ToolDefinition(name="a"), ToolDefinition(name="b", description="second")])

        assert list(tools) == ["a", "b"]
        with pytest.raises(TypeError):
            tools["c"] = ToolDefinition(name="c")

    def test_oauth_message(self):
        initiation = OAuthInitiation(redirect_url="https://example.test/auth")

        assert initiation.message.endswith("https://example.test/auth")


class TestRPCModels:
    """Test JSON-RPC request and reply helpers."""

    def test_notification_detection(self):
        assert RPCRequest.model_validate({"method": "notifications/initialized"}).is_notification
        assert not RPCRequest.model_validate({"method": "ping", "id": None}).is_notification
        assert not RPCRequest.model_validate({"method": "ping", "id": 3}).is_notification

    def test_param_lookup(self):
        request = RPCRequest(method="tools/call", params={"name": "x"}, id=1)

        assert request.param("name") == "x"
        assert request.param("arguments", {}) == {}
        assert RPCRequest(method="ping", id=1).param("name") is None

    def test_context_fields_not_serialized(self):
        request = RPCRequest(method="ping", id=1, user_id="alice")

        assert "user_id" not in request.model_dump()

    def test_replies(self):
        assert rpc_result(1, {"ok": True}) == {"jsonrpc": "2.0", "id": 1, "result": {"ok": True}}
        assert rpc_error(2, RPCError(INVALID_PARAMS, "bad")) == {
            "jsonrpc": "2.0", "id": 2, "error": {"code": INVALID_PARAMS, "message": "bad"},
        }
