"""Clean up block trees read from Notion so they can be appended elsewhere."""

from __future__ import annotations

import copy
import logging
from typing import Any

logger: logging.Logger = logging.getLogger(__name__)

DROPPED_BLOCK_TYPES = frozenset({"unsupported", "child_page", "child_database"})
SUPPORTED_MENTION_TYPES = frozenset({"user", "date", "page", "database", "template_mention", "custom_emoji"})

# Keys the API returns on read but rejects on append
READ_ONLY_KEYS = (
    "object",
    "id",
    "parent",
    "created_time",
    "last_edited_time",
    "created_by",
    "last_edited_by",
    "has_children",
    "archived",
    "in_trash",
    "request_id",
)


def sanitize_blocks(blocks: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Return a cleaned deep copy of a block tree.

    Nested ``children`` are cleaned before their parent. Blocks the target
    cannot accept are removed together with their subtree.
    """
    root: dict[str, Any] = {"children": copy.deepcopy(blocks)}
    stack: list[tuple[dict[str, Any], bool]] = [(root, False)]

    while stack:
        node, expanded = stack.pop()
        children = node.get("children")
        if not children:
            continue
        if not expanded:
            stack.append((node, True))
            stack.extend((child, False) for child in children)
            continue

        cleaned = (_sanitize_block(child) for child in children)
        node["children"] = [child for child in cleaned if child is not None]

    return root["children"]


def _sanitize_block(block: dict[str, Any]) -> dict[str, Any] | None:
    kind = block.get("type")
    if kind in DROPPED_BLOCK_TYPES:
        logger.debug(f"Dropping {kind} block {block.get('id', '')}")
        return None

    for key in READ_ONLY_KEYS:
        block.pop(key, None)

    container = block.get(kind)
    if not isinstance(container, dict):
        return block

    if kind == "callout" and "icon" in container and container["icon"] is None:
        del container["icon"]

    if kind == "image" and container.get("type") == "external":
        url = (container.get("external") or {}).get("url") or ""
        if url.startswith("data:"):
            logger.debug("Dropping image block with inline data URI")
            return None

    if container.get("rich_text"):
        container["rich_text"] = [_sanitize_rich_text(item) for item in container["rich_text"]]

    if kind in ("image", "file") and not _has_file_source(container):
        logger.debug(f"Dropping {kind} block without a file source")
        return None

    return block


def _sanitize_rich_text(item: dict[str, Any]) -> dict[str, Any]:
    """Turn a mention the API cannot write back into a plain (linked) text run."""
    if item.get("type") != "mention" or (item.get("mention") or {}).get("type") in SUPPORTED_MENTION_TYPES:
        return item

    href = item.get("href")
    plain = item.get("plain_text") or ""
    return {
        "type": "text",
        "text": {"content": plain or "[unsupported mention]", "link": {"url": href} if href else None},
        "annotations": item.get("annotations") or {},
        "plain_text": plain,
        "href": href,
    }


def _has_file_source(container: dict[str, Any]) -> bool:
    return bool(
        (container.get("external") or {}).get("url")
        or (container.get("file") or {}).get("url")
        or (container.get("file_upload") or {}).get("id")
    )
