"""Data models shared by the link store, media migrator and reconciler.

LinkRecord is persisted as JSON using the camelCase keys of the existing
ledger files (``sourceId``, ``targetId``, ``syncedAt``, ...), so ledgers written
by earlier runs load unchanged.
"""

from __future__ import annotations

import datetime as dt
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any


class LinkStatus(StrEnum):
    SUCCESS = "success"
    FAIL = "fail"
    ARCHIVED = "archived"


class SyncOutcome(StrEnum):
    SKIPPED = "skipped"
    UPDATED = "updated"
    FAILED = "failed"


def utcnow() -> dt.datetime:
    return dt.datetime.now(dt.UTC)


def parse_timestamp(value: str | None) -> dt.datetime | None:
    """Parse an ISO 8601 timestamp (``Z`` suffix allowed) into an aware datetime.

    Naive values are assumed to be UTC. Empty values return None.
    """
    if not value:
        return None
    parsed = dt.datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=dt.UTC)
    return parsed


def format_timestamp(value: dt.datetime | None) -> str | None:
    """Format an aware datetime the way Notion does (``2024-01-15T10:30:00.000Z``)."""
    if value is None:
        return None
    utc = value.astimezone(dt.UTC)
    return utc.isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass
class HistoryEntry:
    """A target page that used to be live for a source page."""

    target_id: str
    synced_at: dt.datetime | None
    deleted_at: dt.datetime | None = None
    notes: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "targetId": self.target_id,
            "syncedAt": format_timestamp(self.synced_at),
            "deletedAt": format_timestamp(self.deleted_at),
            "notes": self.notes,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> HistoryEntry:
        return cls(
            target_id=data["targetId"],
            synced_at=parse_timestamp(data.get("syncedAt")),
            deleted_at=parse_timestamp(data.get("deletedAt")),
            notes=data.get("notes") or "",
        )


@dataclass
class LinkRecord:
    """Mapping from a source page to its currently live target page.

    ``history`` set to None means "not provided": LinkStore.save keeps whatever
    history is already on disk for the key instead of truncating it.
    """

    source_id: str
    target_id: str | None
    type: str
    status: LinkStatus = LinkStatus.SUCCESS
    synced_at: dt.datetime | None = None
    source_db_id: str = ""
    source_db_name: str = ""
    target_db_id: str = ""
    target_db_name: str = ""
    source_page_name: str = ""
    source_page_icon: Any = None
    target_page_name: str = ""
    target_page_icon: Any = None
    notes: str = ""
    archived_at: dt.datetime | None = None
    history: list[HistoryEntry] | None = None

    def __post_init__(self) -> None:
        if self.status == LinkStatus.SUCCESS and not self.target_id:
            msg = f"Link for {self.source_id} has status 'success' but no target id"
            raise ValueError(msg)

    @property
    def has_live_target(self) -> bool:
        """True when target_id refers to a page that has not been archived by us."""
        return bool(self.target_id) and self.status != LinkStatus.ARCHIVED

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "sourceId": self.source_id,
            "targetId": self.target_id,
            "status": str(self.status),
            "syncedAt": format_timestamp(self.synced_at),
            "sourceDbId": self.source_db_id,
            "sourceDbName": self.source_db_name,
            "targetDbId": self.target_db_id,
            "targetDbName": self.target_db_name,
            "type": self.type,
            "sourcePageName": self.source_page_name,
            "sourcePageIcon": self.source_page_icon,
            "targetPageName": self.target_page_name,
            "targetPageIcon": self.target_page_icon,
            "notes": self.notes,
        }
        if self.archived_at is not None:
            data["archivedAt"] = format_timestamp(self.archived_at)
        if self.history is not None:
            data["history"] = [entry.to_dict() for entry in self.history]
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any], link_type: str) -> LinkRecord:
        return cls(
            source_id=data["sourceId"],
            target_id=data.get("targetId"),
            type=data.get("type") or link_type,
            status=LinkStatus(data.get("status") or LinkStatus.SUCCESS),
            synced_at=parse_timestamp(data.get("syncedAt")),
            source_db_id=data.get("sourceDbId") or "",
            source_db_name=data.get("sourceDbName") or "",
            target_db_id=data.get("targetDbId") or "",
            target_db_name=data.get("targetDbName") or "",
            source_page_name=data.get("sourcePageName") or "",
            source_page_icon=data.get("sourcePageIcon") or None,
            target_page_name=data.get("targetPageName") or "",
            target_page_icon=data.get("targetPageIcon") or None,
            notes=data.get("notes") or "",
            archived_at=parse_timestamp(data.get("archivedAt")),
            history=[HistoryEntry.from_dict(entry) for entry in data.get("history") or []],
        )


@dataclass(frozen=True)
class DownloadedAsset:
    """A media file fetched into the local staging directory."""

    path: str
    size: int
    sha256: str

    def to_dict(self) -> dict[str, Any]:
        return {"path": self.path, "size": self.size, "sha256": self.sha256}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DownloadedAsset:
        return cls(path=data["path"], size=int(data["size"]), sha256=data["sha256"])


@dataclass(frozen=True)
class UploadedAsset:
    """A Notion file upload that reached the 'uploaded' state."""

    id: str
    size: int
    uploaded_at: dt.datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "size": self.size, "uploadedAt": format_timestamp(self.uploaded_at)}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> UploadedAsset:
        return cls(id=data["id"], size=int(data["size"]), uploaded_at=parse_timestamp(data.get("uploadedAt")))


@dataclass
class SourceRecord:
    """A page read from the source database.

    ``children`` is None until the page's block tree has been fetched.
    """

    id: str
    last_modified_at: dt.datetime
    properties: dict[str, Any] = field(default_factory=dict)
    icon: dict[str, Any] | None = None
    children: list[dict[str, Any]] | None = None
    raw: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_page(cls, page: dict[str, Any]) -> SourceRecord:
        last_edited = parse_timestamp(page.get("last_edited_time"))
        if last_edited is None:
            msg = f"Page {page.get('id')} has no last_edited_time"
            raise ValueError(msg)
        return cls(
            id=page["id"],
            last_modified_at=last_edited,
            properties=page.get("properties") or {},
            icon=page.get("icon"),
            raw=page,
        )

    @property
    def title(self) -> str:
        """Plain text of the page's title property (empty if it has none)."""
        for value in self.properties.values():
            if isinstance(value, dict) and value.get("type") == "title":
                return "".join(part.get("plain_text", "") for part in value.get("title") or [])
        return ""

    @property
    def icon_emoji(self) -> str:
        if self.icon and self.icon.get("type") == "emoji":
            return self.icon.get("emoji") or ""
        return ""

    @property
    def media_refs(self) -> dict[str, list[dict[str, Any]]]:
        """File objects of each ``files`` property, keyed by property name."""
        return {
            name: value.get("files") or []
            for name, value in self.properties.items()
            if isinstance(value, dict) and value.get("type") == "files"
        }


@dataclass
class TransformedPage:
    """Target-shaped payload produced by the transformer."""

    properties: dict[str, Any] = field(default_factory=dict)
    children: list[dict[str, Any]] = field(default_factory=list)
    icon: dict[str, Any] | None = None
    missing_hooks: list[str] = field(default_factory=list)

    @property
    def title(self) -> str:
        for value in self.properties.values():
            if isinstance(value, dict) and "title" in value:
                parts = value.get("title") or []
                return "".join(part.get("plain_text") or part.get("text", {}).get("content", "") for part in parts)
        return ""


@dataclass
class SyncReport:
    """Tally of one reconciler run."""

    updated: int = 0
    skipped: int = 0
    failed: int = 0
    orphans_archived: int = 0
    aborted: bool = False
    errors: list[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return self.updated + self.skipped + self.failed

    def record(self, outcome: SyncOutcome) -> None:
        if outcome == SyncOutcome.UPDATED:
            self.updated += 1
        elif outcome == SyncOutcome.SKIPPED:
            self.skipped += 1
        else:
            self.failed += 1

    def as_dict(self) -> dict[str, Any]:
        return {
            "updated": self.updated,
            "skipped": self.skipped,
            "failed": self.failed,
            "total": self.total,
            "orphans_archived": self.orphans_archived,
            "aborted": self.aborted,
        }
