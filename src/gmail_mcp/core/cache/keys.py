"""Cache key construction.

Every cache key in the bridge is built here so that lookups and
invalidations for the same resource always agree on the string.

Patterns:
    auth:{user_id}                    -> AuthStatus
    gmail:{user_id}:{connection_id}   -> client handle and its tool set
    gmail:{user_id}:unauth            -> same, before the user connects Gmail
"""

from dataclasses import dataclass
from typing import Optional

UNAUTHENTICATED = "unauth"
SEPARATOR = ":"


@dataclass(frozen=True)
class CacheKeys:
    """Deterministic key builder.

    Attributes:
        prefix: Namespace for the client/tool keys (default ``gmail``).
    """

    prefix: str = "gmail"

    @staticmethod
    def _check_user(user_id: str) -> str:
        if not user_id or not user_id.strip():
            raise ValueError("user_id cannot be empty")
        if SEPARATOR in user_id:
            raise ValueError(f"user_id cannot contain '{SEPARATOR}'")
        return user_id

    def auth(self, user_id: str) -> str:
        """Auth status key for a user."""
        return f"auth:{self._check_user(user_id)}"

    def client(self, user_id: str, connection_id: Optional[str]) -> str:
        """Client handle / tool set key for a user in a given auth state.

        A missing connection id always maps to the single unauthenticated
        key, whatever falsy value the caller holds.
        """
        state = connection_id or UNAUTHENTICATED
        if SEPARATOR in state:
            raise ValueError(f"connection_id cannot contain '{SEPARATOR}'")
        return f"{self.prefix}:{self._check_user(user_id)}:{state}"
