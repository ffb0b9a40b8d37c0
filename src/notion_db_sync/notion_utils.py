from __future__ import annotations

import logging
import os
from typing import TYPE_CHECKING, Any, Final

from notion_client import APIErrorCode, APIResponseError, Client
from notion_client.errors import HTTPResponseError
from notion_client.helpers import iterate_paginated_api

from . import utils

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator

    from .throttled_client import RateLimitedClient

# Module-wide logger
logger: logging.Logger = logging.getLogger(__name__)

_TOKEN_ENV_VAR: Final[str] = "NOTION_API_KEY"  # noqa: S105
_DEFAULT_TOKEN_PASS_PATH: Final[str] = "notion/cli/token"  # noqa: S105
DEFAULT_TIMEOUT_MS: Final[int] = 60_000
PAGE_SIZE: Final[int] = 100


def get_token(pass_path: str | None = None) -> str | None:
    """Get Notion token from pass path, env var NOTION_API_KEY, or default pass location."""
    if pass_path:
        return utils.get_pass_value(pass_path)

    token: str | None = os.environ.get(_TOKEN_ENV_VAR)
    if token:
        return token

    try:
        return utils.get_pass_value(_DEFAULT_TOKEN_PASS_PATH)
    except utils.PassError:
        logger.warning("No Notion token specified nor found")
        return None


def get_client(token: str | None, timeout_ms: int = DEFAULT_TIMEOUT_MS) -> Client:
    """Get a Notion client using the token, with an explicit per-request timeout."""
    return Client(auth=token, timeout_ms=timeout_ms)


def is_not_found(exc: BaseException) -> bool:
    """Check if an exception is Notion's 'object not found' (or a bare 404)."""
    if isinstance(exc, APIResponseError) and exc.code == APIErrorCode.ObjectNotFound:
        return True
    return isinstance(exc, HTTPResponseError) and exc.status == 404


def is_conflict(exc: BaseException) -> bool:
    """Check if an exception is Notion's transient write conflict (409)."""
    if isinstance(exc, APIResponseError) and exc.code == APIErrorCode.ConflictError:
        return True
    return isinstance(exc, HTTPResponseError) and exc.status == 409


def iterate_paginated(function: Callable[..., Any], **kwargs: Any) -> Iterator[dict[str, Any]]:
    """Yield every result of a cursor-paginated Notion list/query endpoint."""
    kwargs.setdefault("page_size", PAGE_SIZE)
    yield from iterate_paginated_api(function, **kwargs)


def plain_text(rich_text: list[dict[str, Any]] | None) -> str:
    """Concatenate the plain text of a rich text array."""
    return "".join(part.get("plain_text") or part.get("text", {}).get("content", "") for part in rich_text or [])


def resolve_data_source_id(client: RateLimitedClient, database_id: str) -> str:
    """Return the id of the data source behind a database.

    Pages are queried from and created in data sources, not databases. A
    database with several sources uses its first one.
    """
    database = client.databases.retrieve(database_id=database_id)
    sources: list[dict[str, Any]] = database.get("data_sources") or []
    if not sources:
        msg = f"Database {database_id} has no data source"
        raise ValueError(msg)
    if len(sources) > 1:
        names = ", ".join(source.get("name") or source["id"] for source in sources)
        logger.warning(f"Database {database_id} has {len(sources)} data sources ({names}), using the first")
    return sources[0]["id"]
