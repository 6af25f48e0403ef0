"""
Pytest configuration and fixtures for Gmail MCP bridge testing.

Provides a controllable clock, stand-in client handles and isolated
configuration so no test reaches Composio or the network.
"""

from types import SimpleNamespace
from typing import Any, Dict, List, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest

from gmail_mcp.core.cache import ExpiringResourceCache
from gmail_mcp.core.gmail_service import GmailToolService
from gmail_mcp.core.models import ToolDefinition, freeze_tools
from gmail_mcp.utils.config import ComposioConfig, Config


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeHandle:
    """Client handle stand-in that records how often it was closed."""

    def __init__(self, name: str = "handle", tools: Optional[List[str]] = None, fail_close: bool = False):
        self.name = name
        self.tool_names = tools if tools is not None else ["GMAIL_SEND_EMAIL", "GMAIL_FETCH_EMAILS"]
        self.fail_close = fail_close
        self.close_count = 0
        self.list_calls = 0
        self.calls: List[Dict[str, Any]] = []

    async def close(self) -> None:
        self.close_count += 1
        if self.fail_close:
            raise RuntimeError(f"{self.name} refused to close")

    async def list_tools(self):
        self.list_calls += 1
        return freeze_tools(
            ToolDefinition(name=name, description=f"{name} tool") for name in self.tool_names
        )

    async def call_tool(self, name: str, arguments: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        self.calls.append({"name": name, "arguments": arguments})
        return {"content": [{"type": "text", "text": f"{name} ok"}], "isError": False}

    def __repr__(self) -> str:
        return f"FakeHandle({self.name!r})"


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch):
    """Keep real Composio and bridge settings out of every test."""
    for name in ("COMPOSIO_API_KEY", "COMPOSIO_AUTH_CONFIG_ID", "COMPOSIO_MCP_URL", "MCP_PORT"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def cache(clock) -> ExpiringResourceCache:
    return ExpiringResourceCache(ttl_seconds=300.0, clock=clock)


@pytest.fixture
def config(tmp_path) -> Config:
    """Fully populated configuration pointing at a fake upstream."""
    return Config(
        config_dir=str(tmp_path),
        composio=ComposioConfig(
            api_key="test-api-key",
            auth_config_id="ac_test",
            mcp_server_url="https://mcp.example.test/composio/server/abc/mcp?user_id=default",
        ),
    )


def gmail_account(account_id: str) -> SimpleNamespace:
    """Composio connected account record for an ACTIVE Gmail connection."""
    return SimpleNamespace(id=account_id, status="ACTIVE", toolkit=SimpleNamespace(slug="gmail"))


class ServiceHarness:
    """Service wired to a fake clock, a mocked Composio client and fake handles."""

    def __init__(self, config: Config):
        self.clock = FakeClock()
        self.cache = ExpiringResourceCache(ttl_seconds=300.0, clock=self.clock)
        self.composio = MagicMock()
        self.accounts: List[SimpleNamespace] = []
        self.composio.connected_accounts.list.side_effect = (
            lambda **kwargs: SimpleNamespace(items=list(self.accounts))
        )
        self.composio.connected_accounts.initiate.return_value = SimpleNamespace(
            redirect_url="https://accounts.google.com/auth?state=abc", id="ca_pending",
        )
        self.handles: List[FakeHandle] = []
        self.factory = AsyncMock(side_effect=self._new_handle)
        self.service = GmailToolService(
            self.cache, config, composio=self.composio, client_factory=self.factory,
        )

    def _new_handle(self, url: str, user_id: str) -> FakeHandle:
        handle = FakeHandle(f"handle-{len(self.handles)}")
        self.handles.append(handle)
        return handle

    @property
    def auth_checks(self) -> int:
        return self.composio.connected_accounts.list.call_count


@pytest.fixture
def harness(config) -> ServiceHarness:
    return ServiceHarness(config)
