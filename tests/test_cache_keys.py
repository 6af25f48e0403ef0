"""
Tests for cache key construction.
"""

import pytest

from gmail_mcp.core.cache import CacheKeys


class TestCacheKeys:
    """Test CacheKeys builder."""

    def setup_method(self):
        self.keys = CacheKeys()

    def test_auth_key(self):
        assert self.keys.auth("alice") == "auth:alice"

    def test_client_key_with_connection(self):
        assert self.keys.client("alice", "ca_123") == "gmail:alice:ca_123"

    @pytest.mark.parametrize("missing", [None, ""])
    def test_client_key_without_connection(self, missing):
        assert self.keys.client("alice", missing) == "gmail:alice:unauth"

    def test_auth_states_get_distinct_keys(self):
        assert self.keys.client("alice", None) != self.keys.client("alice", "ca_1")
        assert self.keys.client("alice", "ca_1") != self.keys.client("bob", "ca_1")

    def test_custom_prefix(self):
        assert CacheKeys(prefix="mail").client("alice", "ca_1") == "mail:alice:ca_1"

    @pytest.mark.parametrize("user_id", ["", "   "])
    def test_rejects_empty_user(self, user_id):
        with pytest.raises(ValueError):
            self.keys.auth(user_id)
        with pytest.raises(ValueError):
            self.keys.client(user_id, "ca_1")

    def test_rejects_separator_in_user(self):
        with pytest.raises(ValueError, match="user_id"):
            self.keys.auth("team:alice")
        with pytest.raises(ValueError, match="user_id"):
            self.keys.client("team:alice", "ca_1")

    def test_rejects_separator_in_connection(self):
        # "alice" + "x:y" would otherwise collide with "alice:x" + "y"
        with pytest.raises(ValueError, match="connection_id"):
            self.keys.client("alice", "x:y")
