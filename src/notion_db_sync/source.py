"""Read pages and their block trees from a source Notion database."""

from __future__ import annotations

import logging
from collections import deque
from typing import TYPE_CHECKING, Any

from .models import SourceRecord
from .notion_utils import iterate_paginated, resolve_data_source_id

if TYPE_CHECKING:
    from collections.abc import Iterator

    from .throttled_client import RateLimitedClient

logger: logging.Logger = logging.getLogger(__name__)

# Sub-pages and inline databases are separate objects, not page content
_OPAQUE_BLOCK_TYPES = frozenset({"child_page", "child_database"})


def fetch_block_tree(client: RateLimitedClient, block_id: str) -> list[dict[str, Any]]:
    """Fetch all descendants of a page or block.

    Each block that has children gets a ``children`` list attached. The tree
    is walked breadth-first with a queue of ``(parent_id, bucket)`` pairs, and
    a block id is never expanded twice.
    """
    root: list[dict[str, Any]] = []
    queue: deque[tuple[str, list[dict[str, Any]]]] = deque([(block_id, root)])
    expanded: set[str] = {block_id}

    while queue:
        parent_id, bucket = queue.popleft()
        for block in iterate_paginated(client.blocks.children.list, block_id=parent_id):
            bucket.append(block)
            child_id = block.get("id")
            if not block.get("has_children") or block.get("type") in _OPAQUE_BLOCK_TYPES:
                continue
            if not child_id or child_id in expanded:
                continue
            expanded.add(child_id)
            block["children"] = []
            queue.append((child_id, block["children"]))

    logger.debug(f"Fetched {len(expanded) - 1} nested block lists under {block_id}")
    return root


class NotionRecordSource:
    """Paginated, restartable enumeration of the pages of a database."""

    _client: RateLimitedClient

    def __init__(self, client: RateLimitedClient) -> None:
        self._client = client

    def stream_records(self, database_id: str) -> Iterator[SourceRecord]:
        """Yield every page of ``database_id`` as a SourceRecord (without children)."""
        logger.info(f"Streaming pages from database {database_id}")
        count = 0
        data_source_id = resolve_data_source_id(self._client, database_id)
        for page in iterate_paginated(self._client.data_sources.query, data_source_id=data_source_id):
            count += 1
            yield SourceRecord.from_page(page)
        logger.info(f"Finished streaming {count} pages from database {database_id}")

    def get_record(self, page_id: str) -> SourceRecord:
        return SourceRecord.from_page(self._client.pages.retrieve(page_id=page_id))

    def load_children(self, record: SourceRecord) -> SourceRecord:
        """Attach the record's block tree, fetching it at most once."""
        if record.children is None:
            record.children = fetch_block_tree(self._client, record.id)
        return record
