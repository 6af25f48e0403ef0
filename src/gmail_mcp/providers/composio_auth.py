"""
Gmail connection management through Composio.

The Composio SDK is synchronous, so every call is pushed to a worker
thread. Provider failures raise ``ProviderError`` instead of being folded
into a "not connected" answer; callers decide whether to retry.
"""

import asyncio
from typing import Any, Optional

from composio import Composio

from gmail_mcp.core.exceptions import ProviderError
from gmail_mcp.core.models import AuthStatus, OAuthInitiation
from gmail_mcp.utils.config import ComposioConfig
from gmail_mcp.utils.logging import get_logger

logger = get_logger(__name__)

ACTIVE_STATUS = "ACTIVE"


def create_composio_client(config: ComposioConfig) -> Composio:
    """Build the SDK client shared by every ``GmailAuth``."""
    config.require()
    return Composio(api_key=config.api_key)


def _toolkit_slug(account: Any) -> Optional[str]:
    toolkit = getattr(account, "toolkit", None)
    return getattr(toolkit, "slug", None)


class GmailAuth:
    """Checks and initiates a user's Gmail connection."""

    def __init__(self, user_id: str, composio: Any, config: ComposioConfig):
        """
        Initialize Gmail auth helper.

        Args:
            user_id: Composio user identifier
            composio: Composio SDK client (or a stand-in exposing ``connected_accounts``)
            config: Composio configuration holding the auth config id and toolkit slug
        """
        if not user_id or not user_id.strip():
            raise ValueError("user_id cannot be empty")
        self.user_id = user_id
        self._composio = composio
        self._config = config

    async def check_connection(self) -> AuthStatus:
        """
        Look up an ACTIVE Gmail connected account for the user.

        Returns:
            AuthStatus with the connected account id when one exists

        Raises:
            ProviderError: If the Composio call fails
        """
        logger.info(
            "Checking Gmail connection",
            extra={"user_id": self.user_id, "auth_config_id": self._config.auth_config_id},
        )
        try:
            connections = await asyncio.to_thread(
                self._composio.connected_accounts.list,
                user_ids=[self.user_id],
                auth_config_ids=[self._config.auth_config_id],
            )
        except Exception as e:
            raise ProviderError(
                f"Failed to check Gmail connection: {e}",
                error_code="CONNECTION_CHECK_FAILED",
                details={"user_id": self.user_id},
            ) from e

        items = list(getattr(connections, "items", None) or [])
        logger.debug(
            f"Found {len(items)} connected accounts",
            extra={
                "user_id": self.user_id,
                "accounts": [
                    {"id": item.id, "toolkit": _toolkit_slug(item), "status": item.status}
                    for item in items
                ],
            },
        )

        match = next(
            (
                item for item in items
                if _toolkit_slug(item) == self._config.toolkit and item.status == ACTIVE_STATUS
            ),
            None,
        )
        status = AuthStatus(connected=match is not None, connection_id=match.id if match else None)
        logger.info(
            f"Gmail auth status: {status.label}",
            extra={"user_id": self.user_id, "connection_id": status.connection_id},
        )
        return status

    async def initiate_connection(self) -> OAuthInitiation:
        """
        Start the Gmail OAuth flow.

        Returns:
            OAuthInitiation carrying the URL the user has to visit

        Raises:
            ProviderError: If Composio refuses the request or returns no redirect URL
        """
        try:
            request = await asyncio.to_thread(
                self._composio.connected_accounts.initiate,
                user_id=self.user_id,
                auth_config_id=self._config.auth_config_id,
            )
        except Exception as e:
            raise ProviderError(
                f"Failed to initiate Gmail connection: {e}",
                error_code="OAUTH_INITIATE_FAILED",
                details={"user_id": self.user_id},
            ) from e

        redirect_url = getattr(request, "redirect_url", None)
        if not redirect_url:
            raise ProviderError(
                "Composio returned no redirect URL; check the auth config",
                error_code="OAUTH_INITIATE_FAILED",
                details={"user_id": self.user_id},
            )

        logger.info(
            "Gmail OAuth initiated",
            extra={"user_id": self.user_id, "redirect_url_preview": redirect_url[:50]},
        )
        return OAuthInitiation(redirect_url=redirect_url, connection_id=getattr(request, "id", None))

    async def get_connected_account_id(self) -> Optional[str]:
        """Connected account id, or None when Gmail is not connected."""
        status = await self.check_connection()
        return status.connection_id if status.connected else None
