"""Built-in field hooks that mapping files can refer to by name.

Each hook turns one source property value into one target property value.
Option values are re-expressed by name only, because option ids differ
between databases.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from .models import LinkStatus
from .notion_utils import plain_text

if TYPE_CHECKING:
    from .link_store import LinkStore
    from .user_store import UserStore

logger: logging.Logger = logging.getLogger(__name__)

Hook = Callable[[dict[str, Any] | None], dict[str, Any] | None]


def _option_name(value: dict[str, Any] | None, kind: str) -> str | None:
    return ((value or {}).get(kind) or {}).get("name") or None


def select_by_name(value: dict[str, Any] | None) -> dict[str, Any]:
    name = _option_name(value, "select")
    return {"select": {"name": name} if name else None}


def status_by_name(value: dict[str, Any] | None) -> dict[str, Any]:
    name = _option_name(value, "status")
    return {"status": {"name": name} if name else None}


def multi_select_by_name(value: dict[str, Any] | None) -> dict[str, Any]:
    options = (value or {}).get("multi_select") or []
    return {"multi_select": [{"name": option["name"]} for option in options if option.get("name")]}


def status_to_select(value: dict[str, Any] | None) -> dict[str, Any]:
    name = _option_name(value, "status")
    return {"select": {"name": name} if name else None}


def select_to_status(value: dict[str, Any] | None) -> dict[str, Any]:
    name = _option_name(value, "select")
    return {"status": {"name": name} if name else None}


def rich_text_to_title(value: dict[str, Any] | None) -> dict[str, Any]:
    return {"title": (value or {}).get("rich_text") or []}


def title_to_rich_text(value: dict[str, Any] | None) -> dict[str, Any]:
    return {"rich_text": (value or {}).get("title") or []}


def empty_people(_value: dict[str, Any] | None) -> dict[str, Any]:
    """Clear a people property so nobody is notified by the copy."""
    return {"people": []}


def _relation_ids(value: dict[str, Any] | None) -> list[str]:
    return [item["id"] for item in (value or {}).get("relation") or [] if item.get("id")]


def make_people_by_email(user_store: UserStore) -> Hook:
    """Map people to the target workspace's users with the same e-mail."""

    def people_by_email(value: dict[str, Any] | None) -> dict[str, Any]:
        people: list[dict[str, Any]] = []
        for person in (value or {}).get("people") or []:
            email = (person.get("person") or {}).get("email")
            user_id = user_store.get_user_id_by_email(email) if email else None
            if user_id:
                people.append({"object": "user", "id": user_id})
            else:
                logger.debug(f"Dropping person {person.get('id')} without a matching user")
        return {"people": people}

    return people_by_email


def make_linked_relation(link_store: LinkStore, link_type: str) -> Hook:
    """Point relations at the pages that related source pages were synced to."""

    def linked_relation(value: dict[str, Any] | None) -> dict[str, Any]:
        targets: list[dict[str, str]] = []
        for source_id in _relation_ids(value):
            link = link_store.try_load(source_id, link_type)
            if link is not None and link.status == LinkStatus.SUCCESS and link.target_id:
                targets.append({"id": link.target_id})
            else:
                logger.debug(f"No synced '{link_type}' page for related {source_id}")
        return {"relation": targets}

    return linked_relation


def make_relation_by_name(link_store: LinkStore, link_type: str) -> Hook:
    """Turn select, multi-select or text values into relations to synced pages of that name."""

    def relation_by_name(value: dict[str, Any] | None) -> dict[str, Any]:
        value = value or {}
        kind = value.get("type")
        if kind == "select":
            names = [name] if (name := _option_name(value, "select")) else []
        elif kind == "multi_select":
            names = [option.get("name") for option in value.get("multi_select") or []]
        elif kind in ("rich_text", "title"):
            names = [plain_text(value.get(kind))]
        else:
            names = []

        targets: list[dict[str, str]] = []
        for name in filter(None, names):
            link = link_store.find_by_source_page_name(name, link_type)
            if link is not None and link.target_id:
                targets.append({"id": link.target_id})
        return {"relation": targets}

    return relation_by_name


def builtin_hooks(
    *,
    user_store: UserStore | None = None,
    link_store: LinkStore | None = None,
    relation_link_type: str = "tags",
) -> dict[str, Hook]:
    """Return the built-in hooks, keyed by the name a mapping file uses.

    Hooks that need a UserStore or a LinkStore are only included when one is given.
    """
    hooks: dict[str, Hook] = {
        "select_by_name": select_by_name,
        "status_by_name": status_by_name,
        "multi_select_by_name": multi_select_by_name,
        "status_to_select": status_to_select,
        "select_to_status": select_to_status,
        "rich_text_to_title": rich_text_to_title,
        "title_to_rich_text": title_to_rich_text,
        "empty_people": empty_people,
    }
    if user_store is not None:
        hooks["people_by_email"] = make_people_by_email(user_store)
    if link_store is not None:
        hooks["linked_relation"] = make_linked_relation(link_store, relation_link_type)
        hooks["relation_by_name"] = make_relation_by_name(link_store, relation_link_type)
    return hooks
