"""Delta sync of a source database into a target database.

The DeltaSyncReconciler is the central coordinator. Per run it:
1. Enumerates the source database (or the single page given by ``only_id``)
2. Loads each page's link from the LinkStore and logs a preflight summary
3. Syncs pages one at a time, in source order
4. Archives target pages whose source page has disappeared (orphan sweep)

Per-record state machine
------------------------
    NEEDS_SYNC_CHECK ──► SKIP                (no drift)
                     ──► DRY_RUN_SKIP        (drift, but dry run)
                     ──► SYNCING ──► SYNCED
                                 ──► ROLLED_BACK_FAILED

A page needs syncing when ``force`` is set, when it has no link, when its
last sync failed, or when it was edited after the link's ``syncedAt``. In
one-way (migrate) mode a page with a successful link is never replaced.

Syncing always creates a fresh target page. When a previous target page was
live, it is pushed onto the link's history, archived, and its history entry
gets ``deletedAt`` once the archive call returns. Target pages are never
updated in place.

Failure handling
----------------
Failures are contained per record: a page partially created during the
attempt is archived again (best effort), and a ``fail`` link is written with
the error message. The prior history is kept untouched. A ``fail`` link is
not always target-less: when a drift replacement fails, the previous target
page is still live, so its id stays in ``targetId`` (null only when there was
no live target). That keeps the page reachable by the orphan sweep and by the
next successful sync, which archives it. In strict mode the
error is re-raised after it has been recorded, which ends the run. Otherwise
a CircuitBreaker watches consecutive failures, total failures and the failure
rate, and aborts the run when any of them crosses its threshold.

SkipPageError from the transform step is a deliberate skip, not a failure.

Timestamps
----------
``syncedAt`` is the run start floored to the minute, minus one minute. Notion
reports ``last_edited_time`` at minute precision, so a page edited while the
run is in flight is still seen as drifted on the next run.
"""

from __future__ import annotations

import datetime as dt
import logging
from typing import TYPE_CHECKING, Any

from .exceptions import CircuitBreakerTrippedError, SkipPageError
from .models import HistoryEntry, LinkRecord, LinkStatus, SyncOutcome, SyncReport, utcnow
from .transformer import MappingSpec

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable

    from .config import BreakerConfig, SyncConfig
    from .link_store import LinkStore
    from .models import SourceRecord, TransformedPage
    from .protocols import RecordSource, RecordTransformer, TargetWriter

logger: logging.Logger = logging.getLogger(__name__)

REPLACED_NOTE = "Replaced due to drift"
ORPHAN_NOTE = "Archived due to missing source"


def runtime_start_for(now: dt.datetime) -> dt.datetime:
    """Return the ``syncedAt`` timestamp for a run starting at ``now``."""
    return now.replace(second=0, microsecond=0) - dt.timedelta(minutes=1)


class CircuitBreaker:
    """Stops a run that keeps failing, e.g. during an API outage.

    Only attempted syncs count: no-drift skips and deliberate skips are
    neither successes nor failures.
    """

    _config: BreakerConfig

    def __init__(self, config: BreakerConfig) -> None:
        self._config = config
        self.attempts = 0
        self.failures = 0
        self.consecutive_failures = 0

    @property
    def failure_rate(self) -> float:
        return self.failures / self.attempts if self.attempts else 0.0

    def record_success(self) -> None:
        self.attempts += 1
        self.consecutive_failures = 0

    def record_failure(self) -> None:
        self.attempts += 1
        self.failures += 1
        self.consecutive_failures += 1

    def trip_reason(self) -> str | None:
        if self.consecutive_failures >= self._config.max_consecutive_failures:
            return f"{self.consecutive_failures} consecutive failures"
        if self.failures >= self._config.max_total_failures:
            return f"{self.failures} failures in total"
        if self.attempts >= self._config.grace_records and self.failure_rate > self._config.max_failure_rate:
            return f"failure rate {self.failure_rate:.0%} over {self.attempts} records"
        return None

    def check(self) -> None:
        """Raise CircuitBreakerTrippedError if any threshold has been crossed."""
        reason = self.trip_reason()
        if reason:
            msg = f"Circuit breaker tripped: {reason}"
            raise CircuitBreakerTrippedError(msg)


class DeltaSyncReconciler:
    """Brings a target database in line with a source database.

    Usage:
        reconciler = DeltaSyncReconciler(
            config,
            source=NotionRecordSource(client),
            transformer=Transformer(registry, media),
            writer=NotionTargetWriter(client, config.target_database_id),
            link_store=LinkStore(config.links_dir),
        )
        report = reconciler.run()
    """

    _source: RecordSource
    _transformer: RecordTransformer
    _writer: TargetWriter
    _link_store: LinkStore
    _errors: list[str]

    def __init__(
        self,
        config: SyncConfig,
        *,
        source: RecordSource,
        transformer: RecordTransformer,
        writer: TargetWriter,
        link_store: LinkStore,
        mapping: MappingSpec | None = None,
        clock: Callable[[], dt.datetime] = utcnow,
    ) -> None:
        self.config = config
        self.mapping = mapping or MappingSpec()
        self._source = source
        self._transformer = transformer
        self._writer = writer
        self._link_store = link_store
        self._clock = clock
        self._errors = []

    def needs_sync(self, record: SourceRecord, existing: LinkRecord | None) -> bool:
        if self.config.force or existing is None:
            return True
        if existing.status == LinkStatus.FAIL:
            return True
        if self.config.one_way:
            return existing.status != LinkStatus.SUCCESS
        if existing.synced_at is None:
            return True
        return record.last_modified_at > existing.synced_at

    def preflight(
        self, records: Iterable[SourceRecord]
    ) -> tuple[list[tuple[SourceRecord, LinkRecord | None]], dict[str, Any]]:
        """Pair each record with its link and summarise what the run will do."""
        pairs: list[tuple[SourceRecord, LinkRecord | None]] = []
        existing_count = eligible_count = update_count = 0

        for record in records:
            existing = self._link_store.try_load(record.id, self.config.link_type)
            pairs.append((record, existing))
            if existing is not None:
                existing_count += 1
            if self.needs_sync(record, existing):
                eligible_count += 1
                if existing is not None:
                    update_count += 1

        summary = {
            "event": "sync_started",
            "total_records": len(pairs),
            "eligible": eligible_count,
            "existing": existing_count,
            "first_time": eligible_count - update_count,
            "updates": update_count,
        }
        return pairs, summary

    def run(self) -> SyncReport:
        """Sync every source record, then sweep orphans.

        Returns:
            The run's tally. ``aborted`` is set when the circuit breaker tripped.

        Raises:
            Exception: In strict mode, the first record failure (after it was recorded)
        """
        self._errors = []
        report = SyncReport(errors=self._errors)
        runtime_start = runtime_start_for(self._clock())

        records = self._collect_records()
        pairs, summary = self.preflight(records)
        logger.info(f"Preflight summary: {summary}")
        logger.info(
            f"Starting delta sync of '{self.config.link_type}' "
            f"(dry_run={self.config.dry_run}, force={self.config.force}, one_way={self.config.one_way})"
        )

        breaker = CircuitBreaker(self.config.breaker)
        try:
            for record, existing in pairs:
                try:
                    outcome = self.sync_record(record, existing, runtime_start)
                except Exception:
                    report.record(SyncOutcome.FAILED)
                    raise
                report.record(outcome)

                if outcome == SyncOutcome.FAILED:
                    breaker.record_failure()
                elif outcome == SyncOutcome.UPDATED:
                    breaker.record_success()
                breaker.check()

            if self._orphan_sweep_enabled():
                report.orphans_archived = self.cleanup_orphans({record.id for record in records})
        except CircuitBreakerTrippedError as e:
            report.aborted = True
            self._errors.append(str(e))
            logger.error(f"Aborting sync of '{self.config.link_type}': {e}")
        finally:
            logger.info(
                f"Delta sync summary: {report.updated} updated, {report.skipped} skipped, "
                f"{report.failed} failed, {report.orphans_archived} orphans archived"
            )

        return report

    def _collect_records(self) -> list[SourceRecord]:
        if self.config.only_id:
            logger.info(f"Restricting run to source page {self.config.only_id}")
            return [self._source.get_record(self.config.only_id)]
        return list(self._source.stream_records(self.config.source_database_id))

    def _orphan_sweep_enabled(self) -> bool:
        # A partial source enumeration would make every other page look orphaned
        return not (self.config.dry_run or self.config.one_way or self.config.only_id)

    def sync_record(
        self, record: SourceRecord, existing: LinkRecord | None, runtime_start: dt.datetime
    ) -> SyncOutcome:
        """Run one record through the state machine and persist the result."""
        if not self.needs_sync(record, existing):
            logger.debug(f"No drift for {record.id}, skipping")
            return SyncOutcome.SKIPPED

        if self.config.dry_run:
            logger.info(f"(dry run) Would sync {record.id} '{record.title}'")
            return SyncOutcome.SKIPPED

        created_id: str | None = None
        try:
            if not self.mapping.options.skip_blocks:
                self._source.load_children(record)
            payload = self._transformer.transform(record, self.mapping)
            created_id = self._writer.create_record(payload)
            if payload.children:
                self._writer.append_blocks(created_id, payload.children)
            link = self._success_link(record, existing, created_id, payload, runtime_start)
            self._link_store.save(link, self.config.link_type)
        except SkipPageError as e:
            self._rollback(created_id)
            logger.info(f"Skipping {record.id}: {e}")
            return SyncOutcome.SKIPPED
        except Exception as e:  # noqa: BLE001
            self._record_failure(record, existing, created_id, e)
            if self.config.strict:
                raise
            return SyncOutcome.FAILED

        if link.history:
            self._archive_replaced(link)
        logger.info(f"Synced {record.id} -> {created_id}")
        return SyncOutcome.UPDATED

    def _success_link(
        self,
        record: SourceRecord,
        existing: LinkRecord | None,
        target_id: str,
        payload: TransformedPage,
        runtime_start: dt.datetime,
    ) -> LinkRecord:
        history = list(existing.history or []) if existing is not None else []
        if existing is not None and existing.has_live_target:
            history.append(
                HistoryEntry(
                    target_id=existing.target_id,
                    synced_at=existing.synced_at,
                    deleted_at=None,
                    notes=REPLACED_NOTE,
                )
            )

        icon = payload.icon or {}
        return LinkRecord(
            source_id=record.id,
            target_id=target_id,
            type=self.config.link_type,
            status=LinkStatus.SUCCESS,
            synced_at=runtime_start,
            source_db_id=self.config.source_database_id,
            source_db_name=self.config.source_database_name,
            target_db_id=self.config.target_database_id,
            target_db_name=self.config.target_database_name,
            source_page_name=record.title,
            source_page_icon=record.icon_emoji or None,
            target_page_name=payload.title,
            target_page_icon=icon.get("emoji"),
            history=history,
        )

    def _archive_replaced(self, link: LinkRecord) -> None:
        """Archive the target page that was just replaced and stamp its history entry."""
        entry = link.history[-1]
        if entry.deleted_at is not None or entry.notes != REPLACED_NOTE:
            return
        try:
            self._writer.archive_record(entry.target_id)
        except Exception as e:  # noqa: BLE001
            logger.warning(f"Could not archive replaced target {entry.target_id} of {link.source_id}: {e}")
            return
        entry.deleted_at = self._clock()
        self._link_store.save(link, self.config.link_type)

    def _rollback(self, created_id: str | None) -> None:
        if not created_id:
            return
        try:
            self._writer.archive_record(created_id)
            logger.info(f"Rolled back partially created target {created_id}")
        except Exception as e:  # noqa: BLE001
            logger.warning(f"Rollback of target {created_id} failed: {e}")

    def _record_failure(
        self, record: SourceRecord, existing: LinkRecord | None, created_id: str | None, error: Exception
    ) -> None:
        logger.exception(f"Sync failed for {record.id} '{record.title}'")
        self._rollback(created_id)

        notes = str(error) or type(error).__name__
        self._errors.append(f"{record.id}: {notes}")
        prior_target = existing.target_id if existing is not None and existing.has_live_target else None
        self._link_store.save(
            LinkRecord(
                source_id=record.id,
                target_id=prior_target,
                type=self.config.link_type,
                status=LinkStatus.FAIL,
                synced_at=existing.synced_at if existing is not None else None,
                source_db_id=self.config.source_database_id,
                source_db_name=self.config.source_database_name,
                target_db_id=self.config.target_database_id,
                target_db_name=self.config.target_database_name,
                source_page_name=record.title,
                source_page_icon=record.icon_emoji or None,
                target_page_name=existing.target_page_name if existing is not None else "",
                target_page_icon=existing.target_page_icon if existing is not None else None,
                notes=notes,
                history=existing.history if existing is not None else None,
            ),
            self.config.link_type,
        )

    def cleanup_orphans(self, source_ids: set[str]) -> int:
        """Archive live target pages whose source page is gone.

        Returns:
            Number of links moved to ``archived``
        """
        orphans = [
            link
            for link in self._link_store.load_all(self.config.link_type)
            if link.has_live_target and link.source_id not in source_ids
        ]
        logger.info(f"Found {len(orphans)} orphaned links in '{self.config.link_type}'")

        archived = 0
        for link in orphans:
            try:
                self._writer.archive_record(link.target_id)
                now = self._clock()
                link.history = [
                    *(link.history or []),
                    HistoryEntry(target_id=link.target_id, synced_at=link.synced_at, deleted_at=now, notes=ORPHAN_NOTE),
                ]
                link.status = LinkStatus.ARCHIVED
                link.archived_at = now
                link.notes = ORPHAN_NOTE
                self._link_store.save(link, self.config.link_type)
            except Exception as e:  # noqa: BLE001
                logger.warning(f"Failed to archive orphan {link.target_id} of {link.source_id}: {e}")
                continue
            archived += 1
            logger.info(f"Archived orphan {link.target_id} of {link.source_id}")
        return archived
