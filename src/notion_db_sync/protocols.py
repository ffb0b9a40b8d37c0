"""Protocols defining the contracts the reconciler depends on.

The sync architecture separates concerns into three collaborators plus the
ledger:

1. RecordSource: Enumerates pages of the source database
2. RecordTransformer: Turns a source page into a target payload (properties,
   icon, content blocks with media already migrated)
3. TargetWriter: Creates, fills and archives pages in the target database
4. LinkStore: Remembers which target page each source page was synced to

This separation allows:
- Testing the reconciler's state machine with in-memory fakes
- Swapping the transform step without touching sync bookkeeping
- Clear boundaries for Notion API specifics (pagination, conflicts, 404s)
"""

from __future__ import annotations

from collections.abc import Iterator
from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from .models import SourceRecord, TransformedPage
    from .transformer import MappingSpec


class RecordSource(Protocol):
    """Protocol for reading pages from the source database.

    Enumeration is lazy, finite and restartable: calling stream_records()
    again with the same database id starts over from the first page.
    """

    def stream_records(self, database_id: str) -> Iterator[SourceRecord]:
        """Yield every page of the database, without content blocks."""
        ...

    def get_record(self, page_id: str) -> SourceRecord:
        """Fetch a single page by id."""
        ...

    def load_children(self, record: SourceRecord) -> SourceRecord:
        """Attach the page's block tree to ``record.children``."""
        ...


class RecordTransformer(Protocol):
    """Protocol for turning a source page into a target payload.

    May raise SkipPageError to skip a page deliberately. Any other exception
    is a record-level failure.
    """

    def transform(self, record: SourceRecord, spec: MappingSpec) -> TransformedPage: ...


class TargetWriter(Protocol):
    """Protocol for writing pages into the target database.

    The reconciler calls create_record() then append_blocks() for each page it
    syncs, and archive_record() for replaced, rolled-back or orphaned pages.
    """

    def create_record(self, payload: TransformedPage) -> str:
        """Create a page from the payload's properties and icon.

        Returns:
            The id of the new target page
        """
        ...

    def append_blocks(self, parent_id: str, blocks: list[dict[str, Any]]) -> list[str]:
        """Append content blocks (and their nested children) under a page.

        Transient write conflicts must be retried before giving up.

        Returns:
            Ids of all created blocks
        """
        ...

    def archive_record(self, page_id: str) -> bool:
        """Archive a page.

        A page that no longer exists counts as archived.

        Returns:
            True if the page was archived now, False if it was already gone
        """
        ...
