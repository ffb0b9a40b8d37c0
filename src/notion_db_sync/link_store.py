"""Persistent source -> target link ledger.

Each link lives in its own JSON file, ``<root>/<link type>/<source id>.json``.
The link type partitions the ledger (e.g. one partition per migration stream).

The store assumes a single writer process. There is no file locking, so two
processes writing the same key race undetectably.
"""

from __future__ import annotations

import json
import logging
import os
import re
import tempfile
from collections.abc import Iterator
from pathlib import Path
from typing import Any

from .exceptions import LinkNotFoundError, LinkParseError
from .models import HistoryEntry, LinkRecord, LinkStatus

logger: logging.Logger = logging.getLogger(__name__)

DEFAULT_LINK_TYPE = "tasks"

_SAFE_NAME = re.compile(r"[A-Za-z0-9][A-Za-z0-9_.-]*")


def _validate_name(value: str, what: str) -> None:
    if not _SAFE_NAME.fullmatch(value) or ".." in value:
        msg = f"Invalid {what}: {value!r}"
        raise ValueError(msg)


class LinkStore:
    """File-backed ledger of LinkRecords keyed by (source id, link type)."""

    root: Path

    def __init__(self, root: Path | str) -> None:
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _dir_for_type(self, link_type: str) -> Path:
        _validate_name(link_type, "link type")
        directory = self.root / link_type
        directory.mkdir(parents=True, exist_ok=True)
        return directory

    def _path(self, source_id: str, link_type: str) -> Path:
        _validate_name(source_id, "source id")
        return self._dir_for_type(link_type) / f"{source_id}.json"

    def has_source_id(self, source_id: str, link_type: str = DEFAULT_LINK_TYPE) -> bool:
        """Check whether a link exists without parsing it."""
        return self._path(source_id, link_type).is_file()

    def load_raw(self, source_id: str, link_type: str = DEFAULT_LINK_TYPE) -> dict[str, Any]:
        """Load the persisted JSON for a link without building a LinkRecord."""
        path = self._path(source_id, link_type)
        try:
            content = path.read_text(encoding="utf-8")
        except FileNotFoundError as e:
            msg = f"No link for {source_id} in '{link_type}'"
            raise LinkNotFoundError(msg) from e
        try:
            data = json.loads(content)
        except json.JSONDecodeError as e:
            msg = f"Malformed link file {path}: {e}"
            raise LinkParseError(msg) from e
        if not isinstance(data, dict):
            msg = f"Malformed link file {path}: expected an object"
            raise LinkParseError(msg)
        return data

    def load(self, source_id: str, link_type: str = DEFAULT_LINK_TYPE) -> LinkRecord:
        """Load a link.

        Raises:
            LinkNotFoundError: No link exists for the key (first-time sync)
            LinkParseError: The persisted link is corrupt
        """
        data = self.load_raw(source_id, link_type)
        return self._build(data, link_type, source=str(self._path(source_id, link_type)))

    def try_load(self, source_id: str, link_type: str = DEFAULT_LINK_TYPE) -> LinkRecord | None:
        """Load a link, treating a missing or corrupt one as "no link".

        Corrupt links are logged as warnings rather than silently ignored.
        """
        try:
            return self.load(source_id, link_type)
        except LinkNotFoundError:
            return None
        except LinkParseError as e:
            logger.warning(f"Ignoring unreadable link for {source_id} in '{link_type}': {e}")
            return None

    def save(self, record: LinkRecord, link_type: str | None = None) -> None:
        """Persist a link, fully replacing the prior content for its key.

        If ``record.history`` is None, the history already on disk for the key
        is carried over instead of being dropped.
        """
        link_type = link_type or record.type
        path = self._path(record.source_id, link_type)

        if record.history is None:
            record.history = self._existing_history(record.source_id, link_type)

        payload = json.dumps(record.to_dict(), indent=2, ensure_ascii=False)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{record.source_id}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
            os.replace(tmp_name, path)
        except OSError:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        logger.debug(f"Saved link {record.source_id} -> {record.target_id} ({record.status}) in '{link_type}'")

    def _existing_history(self, source_id: str, link_type: str) -> list[HistoryEntry]:
        existing = self.try_load(source_id, link_type)
        if existing is None or existing.history is None:
            return []
        return existing.history

    def find_by_source_page_name(
        self, source_page_name: str, link_type: str = DEFAULT_LINK_TYPE
    ) -> LinkRecord | None:
        """Return the first successful link whose source page name matches exactly.

        Files are scanned in sorted order. When several links share a name the
        match is the first file name, not the most recent sync.
        """
        for link in self._iter_links(link_type):
            if link.source_page_name == source_page_name and link.status == LinkStatus.SUCCESS:
                return link
        logger.debug(f"No link named '{source_page_name}' in '{link_type}'")
        return None

    def load_all(self, link_type: str = DEFAULT_LINK_TYPE) -> list[LinkRecord]:
        """Load every readable link in a partition."""
        return list(self._iter_links(link_type))

    def _iter_links(self, link_type: str) -> Iterator[LinkRecord]:
        directory = self._dir_for_type(link_type)
        for path in sorted(directory.glob("*.json")):
            try:
                data = json.loads(path.read_text(encoding="utf-8"))
                if not isinstance(data, dict):
                    msg = "expected an object"
                    raise LinkParseError(msg)
                link = self._build(data, link_type, source=str(path))
            except (OSError, json.JSONDecodeError, LinkParseError) as e:
                logger.warning(f"Skipping unreadable link file {path}: {e}")
                continue
            yield link

    @staticmethod
    def _build(data: dict[str, Any], link_type: str, source: str) -> LinkRecord:
        try:
            return LinkRecord.from_dict(data, link_type)
        except (KeyError, ValueError, TypeError) as e:
            msg = f"Malformed link file {source}: {e}"
            raise LinkParseError(msg) from e
