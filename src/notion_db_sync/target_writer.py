"""Write transformed pages into the target database."""

from __future__ import annotations

import logging
import time
from collections import deque
from itertools import batched
from typing import TYPE_CHECKING, Any

from notion_client.errors import HTTPResponseError
from tenacity import Retrying, before_sleep_log, retry_if_exception, stop_after_attempt, wait_incrementing

from .notion_utils import is_conflict, is_not_found, resolve_data_source_id

if TYPE_CHECKING:
    from collections.abc import Callable

    from .models import TransformedPage
    from .throttled_client import RateLimitedClient

logger: logging.Logger = logging.getLogger(__name__)

MAX_BLOCKS_PER_REQUEST = 100

# Blocks the API only accepts together with their children in one request
_INLINE_CHILDREN_TYPES = frozenset({"table", "column_list"})


def _inline_children(block: dict[str, Any]) -> dict[str, Any]:
    """Move a subtree's ``children`` into the type containers, as create requests expect."""
    stack = [block]
    while stack:
        node = stack.pop()
        children = node.pop("children", None)
        container = node.get(node.get("type", ""))
        if children and isinstance(container, dict):
            container["children"] = children
            stack.extend(children)
    return block


class NotionTargetWriter:
    """Create, fill and archive pages in one target database."""

    _client: RateLimitedClient

    def __init__(
        self,
        client: RateLimitedClient,
        database_id: str,
        *,
        conflict_retries: int = 3,
        backoff_seconds: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._client = client
        self.database_id = database_id
        self.conflict_retries = conflict_retries
        self.backoff_seconds = backoff_seconds
        self._sleep = sleep
        self._data_source_id: str | None = None

    @property
    def data_source_id(self) -> str:
        """Data source new pages are created in, resolved on first use."""
        if self._data_source_id is None:
            self._data_source_id = resolve_data_source_id(self._client, self.database_id)
        return self._data_source_id

    def create_record(self, payload: TransformedPage) -> str:
        """Create the page with its properties and icon, without content blocks."""
        kwargs: dict[str, Any] = {
            "parent": {"type": "data_source_id", "data_source_id": self.data_source_id},
            "properties": payload.properties,
        }
        if payload.icon:
            kwargs["icon"] = payload.icon
        page = self._client.pages.create(**kwargs)
        logger.debug(f"Created target page {page['id']} in {self.database_id}")
        return page["id"]

    def append_blocks(self, parent_id: str, blocks: list[dict[str, Any]]) -> list[str]:
        """Append a block tree under ``parent_id`` and return the created block ids.

        Blocks go out in batches of at most 100. Nested children are appended
        under their freshly created parent afterwards, level by level, using a
        queue of ``(parent_id, children)`` pairs. Write conflicts are retried
        with a linearly growing delay.
        """
        created_ids: list[str] = []
        queue: deque[tuple[str, list[dict[str, Any]]]] = deque([(parent_id, blocks)])

        while queue:
            target_id, children = queue.popleft()
            for batch in batched(children, MAX_BLOCKS_PER_REQUEST):
                bodies: list[dict[str, Any]] = []
                nested: list[list[dict[str, Any]]] = []
                for block in batch:
                    if block.get("type") in _INLINE_CHILDREN_TYPES:
                        bodies.append(_inline_children(dict(block)))
                        nested.append([])
                    else:
                        bodies.append({key: value for key, value in block.items() if key != "children"})
                        nested.append(block.get("children") or [])

                results = self._append_with_retry(target_id, bodies).get("results") or []
                if len(results) != len(bodies):
                    logger.warning(f"Appended {len(bodies)} blocks under {target_id} but got {len(results)} back")

                for created, grandchildren in zip(results, nested, strict=False):
                    created_ids.append(created["id"])
                    if grandchildren:
                        queue.append((created["id"], grandchildren))

        return created_ids

    def _append_with_retry(self, parent_id: str, children: list[dict[str, Any]]) -> dict[str, Any]:
        retrying = Retrying(
            stop=stop_after_attempt(self.conflict_retries),
            wait=wait_incrementing(start=self.backoff_seconds, increment=self.backoff_seconds),
            retry=retry_if_exception(is_conflict),
            sleep=self._sleep,
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        return retrying(self._client.blocks.children.append, block_id=parent_id, children=children)

    def archive_record(self, page_id: str) -> bool:
        """Move a page to the trash. Returns False when it was already gone."""
        try:
            self._client.pages.update(page_id=page_id, in_trash=True)
        except HTTPResponseError as e:
            if not is_not_found(e):
                raise
            logger.info(f"Target page {page_id} already gone, nothing to archive")
            return False
        logger.debug(f"Archived target page {page_id}")
        return True
