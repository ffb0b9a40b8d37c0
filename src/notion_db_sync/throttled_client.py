"""Rate-limited facade over ``notion_client.Client``.

Every outbound Notion call goes through ``RateLimiter.schedule``: a token bucket
(default 3 requests/second) that makes callers wait for budget instead of
failing. ``RateLimitedClient`` mirrors the subset of the SDK surface this tool
uses (``pages``, ``databases``, ``data_sources``, ``blocks.children``,
``users``, ``file_uploads``) with explicit methods, so it can be passed wherever a
``Client`` is expected by the rest of the package.
"""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING, Any, TypeVar

from pyrate_limiter import Duration, Limiter, Rate

from .exceptions import RateLimitTimeoutError

if TYPE_CHECKING:
    from collections.abc import Callable

    from notion_client import Client

logger: logging.Logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_REQUESTS_PER_SECOND = 3
_BUCKET_NAME = "notion"
_MAX_DELAY_MS = int(Duration.SECOND) * 5


class RateLimiter:
    """Token-bucket scheduler for Notion API calls.

    Calls are admitted in the order they ask for budget; none are dropped.
    """

    _limiter: Limiter
    _lock: threading.Lock

    def __init__(self, requests_per_second: int = DEFAULT_REQUESTS_PER_SECOND) -> None:
        if requests_per_second < 1:
            msg = f"requests_per_second must be positive, got {requests_per_second}"
            raise ValueError(msg)
        self.requests_per_second = requests_per_second
        self._limiter = Limiter(
            Rate(requests_per_second, Duration.SECOND),
            raise_when_fail=False,
            max_delay=_MAX_DELAY_MS,
            retry_until_max_delay=True,
        )
        self._lock = threading.Lock()

    def acquire(self) -> None:
        """Block until one request's worth of budget is available.

        Raises:
            RateLimitTimeoutError: pyrate-limiter gave up after its maximum delay
        """
        with self._lock:
            acquired = self._limiter.try_acquire(_BUCKET_NAME)
        if not acquired:
            msg = f"No Notion request budget within {_MAX_DELAY_MS} ms"
            raise RateLimitTimeoutError(msg)

    def schedule(self, call: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Run ``call`` once the token bucket admits it."""
        self.acquire()
        return call(*args, **kwargs)


class _Endpoint:
    _client: Client
    _limiter: RateLimiter

    def __init__(self, client: Client, limiter: RateLimiter) -> None:
        self._client = client
        self._limiter = limiter


class _Pages(_Endpoint):
    def create(self, **kwargs: Any) -> Any:
        return self._limiter.schedule(self._client.pages.create, **kwargs)

    def retrieve(self, **kwargs: Any) -> Any:
        return self._limiter.schedule(self._client.pages.retrieve, **kwargs)

    def update(self, **kwargs: Any) -> Any:
        return self._limiter.schedule(self._client.pages.update, **kwargs)


class _Databases(_Endpoint):
    def retrieve(self, **kwargs: Any) -> Any:
        return self._limiter.schedule(self._client.databases.retrieve, **kwargs)


class _DataSources(_Endpoint):
    def retrieve(self, **kwargs: Any) -> Any:
        return self._limiter.schedule(self._client.data_sources.retrieve, **kwargs)

    def query(self, **kwargs: Any) -> Any:
        return self._limiter.schedule(self._client.data_sources.query, **kwargs)


class _BlockChildren(_Endpoint):
    def list(self, **kwargs: Any) -> Any:
        return self._limiter.schedule(self._client.blocks.children.list, **kwargs)

    def append(self, **kwargs: Any) -> Any:
        return self._limiter.schedule(self._client.blocks.children.append, **kwargs)


class _Blocks(_Endpoint):
    children: _BlockChildren

    def __init__(self, client: Client, limiter: RateLimiter) -> None:
        super().__init__(client, limiter)
        self.children = _BlockChildren(client, limiter)

    def retrieve(self, **kwargs: Any) -> Any:
        return self._limiter.schedule(self._client.blocks.retrieve, **kwargs)


class _Users(_Endpoint):
    def list(self, **kwargs: Any) -> Any:
        return self._limiter.schedule(self._client.users.list, **kwargs)


class _FileUploads(_Endpoint):
    def create(self, **kwargs: Any) -> Any:
        return self._limiter.schedule(self._client.file_uploads.create, **kwargs)

    def send(self, **kwargs: Any) -> Any:
        return self._limiter.schedule(self._client.file_uploads.send, **kwargs)

    def complete(self, **kwargs: Any) -> Any:
        return self._limiter.schedule(self._client.file_uploads.complete, **kwargs)

    def retrieve(self, **kwargs: Any) -> Any:
        return self._limiter.schedule(self._client.file_uploads.retrieve, **kwargs)


class RateLimitedClient:
    """Notion client wrapper whose every call is admitted by a RateLimiter."""

    limiter: RateLimiter

    def __init__(self, client: Client, limiter: RateLimiter | None = None) -> None:
        self.limiter = limiter or RateLimiter()
        self.pages = _Pages(client, self.limiter)
        self.databases = _Databases(client, self.limiter)
        self.data_sources = _DataSources(client, self.limiter)
        self.blocks = _Blocks(client, self.limiter)
        self.users = _Users(client, self.limiter)
        self.file_uploads = _FileUploads(client, self.limiter)
        logger.debug(f"Notion calls limited to {self.limiter.requests_per_second}/s")
