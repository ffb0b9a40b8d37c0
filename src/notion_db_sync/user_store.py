"""In-memory cache of Notion workspace users."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from .notion_utils import iterate_paginated

if TYPE_CHECKING:
    from .throttled_client import RateLimitedClient

logger: logging.Logger = logging.getLogger(__name__)


class UserStore:
    """Workspace users, fetched once per run and looked up by name or e-mail.

    Call ``init()`` before any lookup.
    """

    _client: RateLimitedClient
    _users: list[dict[str, Any]] | None

    def __init__(self, client: RateLimitedClient) -> None:
        self._client = client
        self._users = None

    def init(self) -> UserStore:
        if self._users is not None:
            return self
        self._users = list(iterate_paginated(self._client.users.list))
        logger.debug(f"Cached {len(self._users)} workspace users")
        return self

    @property
    def users(self) -> list[dict[str, Any]]:
        if self._users is None:
            msg = "UserStore not initialized, call init() before lookups"
            raise RuntimeError(msg)
        return self._users

    def get_user_id_by_name(self, name: str) -> str | None:
        """Case-insensitive exact match on the user's display name."""
        if not name:
            return None
        wanted = name.casefold()
        for user in self.users:
            if (user.get("name") or "").casefold() == wanted:
                return user["id"]
        logger.debug(f"No user named '{name}'")
        return None

    def get_user_id_by_email(self, email: str) -> str | None:
        """Case-insensitive match on a person's e-mail; bots never match."""
        if not email:
            return None
        wanted = email.casefold()
        for user in self.users:
            user_email = (user.get("person") or {}).get("email") or ""
            if user_email.casefold() == wanted:
                return user["id"]
        logger.debug(f"No user with e-mail '{email}'")
        return None
