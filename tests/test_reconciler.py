import datetime as dt
from collections.abc import Iterator
from pathlib import Path
from typing import Any

import pytest

from notion_db_sync.config import BreakerConfig, SyncConfig
from notion_db_sync.exceptions import CircuitBreakerTrippedError, SkipPageError
from notion_db_sync.link_store import LinkStore
from notion_db_sync.models import HistoryEntry, LinkRecord, LinkStatus, SourceRecord, SyncOutcome, TransformedPage
from notion_db_sync.reconciler import (
    ORPHAN_NOTE,
    REPLACED_NOTE,
    CircuitBreaker,
    DeltaSyncReconciler,
    runtime_start_for,
)
from notion_db_sync.transformer import MappingSpec, TransformOptions

NOW = dt.datetime(2024, 1, 15, 12, 30, 45, tzinfo=dt.UTC)
RUNTIME_START = dt.datetime(2024, 1, 15, 12, 29, tzinfo=dt.UTC)
SYNCED = dt.datetime(2024, 1, 10, 9, 0, tzinfo=dt.UTC)


def _record(record_id: str, modified: dt.datetime = SYNCED - dt.timedelta(days=1), title: str = "Task") -> SourceRecord:
    return SourceRecord(
        id=record_id,
        last_modified_at=modified,
        properties={"Name": {"type": "title", "title": [{"plain_text": title}]}},
        icon={"type": "emoji", "emoji": "✅"},
    )


class FakeSource:
    """In-memory source database."""

    def __init__(self, records: list[SourceRecord]) -> None:
        self.records = records
        self.loaded_children: list[str] = []

    def stream_records(self, database_id: str) -> Iterator[SourceRecord]:
        yield from self.records

    def get_record(self, page_id: str) -> SourceRecord:
        return next(record for record in self.records if record.id == page_id)

    def load_children(self, record: SourceRecord) -> SourceRecord:
        self.loaded_children.append(record.id)
        if record.children is None:
            record.children = [{"type": "paragraph", "paragraph": {"rich_text": []}}]
        return record


class FakeTransformer:
    """Copies the title; fails or skips for configured record ids."""

    def __init__(self, fail_ids: set[str] | None = None, skip_ids: set[str] | None = None) -> None:
        self.fail_ids = fail_ids or set()
        self.skip_ids = skip_ids or set()

    def transform(self, record: SourceRecord, spec: MappingSpec) -> TransformedPage:
        if record.id in self.fail_ids:
            msg = f"cannot transform {record.id}"
            raise RuntimeError(msg)
        if record.id in self.skip_ids:
            msg = "not wanted"
            raise SkipPageError(msg)
        return TransformedPage(
            properties={"Name": {"title": [{"plain_text": record.title}]}},
            children=list(record.children or []),
            icon=record.icon,
        )


class FakeWriter:
    """Target database that hands out sequential page ids."""

    def __init__(self, fail_append: bool = False, missing: set[str] | None = None) -> None:
        self.created: list[str] = []
        self.appended: list[tuple[str, int]] = []
        self.archived: list[str] = []
        self.fail_append = fail_append
        self.missing = missing or set()
        self.fail_archive: set[str] = set()

    def create_record(self, payload: TransformedPage) -> str:
        page_id = f"tgt-{len(self.created) + 1}"
        self.created.append(page_id)
        return page_id

    def append_blocks(self, parent_id: str, blocks: list[dict[str, Any]]) -> list[str]:
        if self.fail_append:
            msg = "append failed"
            raise RuntimeError(msg)
        self.appended.append((parent_id, len(blocks)))
        return [f"{parent_id}-b{i}" for i in range(len(blocks))]

    def archive_record(self, page_id: str) -> bool:
        if page_id in self.fail_archive:
            msg = f"cannot archive {page_id}"
            raise RuntimeError(msg)
        self.archived.append(page_id)
        return page_id not in self.missing


def _config(tmp_path: Path, **kwargs: Any) -> SyncConfig:
    return SyncConfig(
        link_type="tasks",
        source_database_id="src-db",
        target_database_id="tgt-db",
        links_dir=tmp_path / "links",
        **kwargs,
    )


def _reconciler(
    tmp_path: Path,
    records: list[SourceRecord],
    *,
    transformer: FakeTransformer | None = None,
    writer: FakeWriter | None = None,
    mapping: MappingSpec | None = None,
    now: dt.datetime = NOW,
    **config: Any,
) -> tuple[DeltaSyncReconciler, FakeWriter, LinkStore]:
    writer = writer or FakeWriter()
    store = LinkStore(tmp_path / "links")
    reconciler = DeltaSyncReconciler(
        _config(tmp_path, **config),
        source=FakeSource(records),
        transformer=transformer or FakeTransformer(),
        writer=writer,
        link_store=store,
        mapping=mapping,
        clock=lambda: now,
    )
    return reconciler, writer, store


def _existing(store: LinkStore, source_id: str, target_id: str = "old-tgt", **kwargs: Any) -> LinkRecord:
    kwargs.setdefault("synced_at", SYNCED)
    link = LinkRecord(source_id=source_id, target_id=target_id, type="tasks", **kwargs)
    store.save(link)
    return link


@pytest.mark.unit
class TestRuntimeStart:
    def test_floors_to_minute_and_subtracts_one(self) -> None:
        assert runtime_start_for(NOW) == RUNTIME_START


@pytest.mark.unit
class TestNeedsSync:
    """Test the drift decision."""

    def test_no_link_needs_sync(self, tmp_path: Path) -> None:
        reconciler, _, _ = _reconciler(tmp_path, [])
        assert reconciler.needs_sync(_record("a"), None)

    def test_unchanged_record_is_skipped(self, tmp_path: Path) -> None:
        reconciler, _, store = _reconciler(tmp_path, [])
        link = _existing(store, "a")
        assert not reconciler.needs_sync(_record("a", modified=SYNCED), link)

    def test_edited_after_sync_needs_sync(self, tmp_path: Path) -> None:
        reconciler, _, store = _reconciler(tmp_path, [])
        link = _existing(store, "a")
        assert reconciler.needs_sync(_record("a", modified=SYNCED + dt.timedelta(minutes=1)), link)

    def test_failed_link_needs_sync(self, tmp_path: Path) -> None:
        reconciler, _, store = _reconciler(tmp_path, [])
        link = _existing(store, "a", target_id=None, status=LinkStatus.FAIL)
        assert reconciler.needs_sync(_record("a", modified=SYNCED), link)

    def test_force_overrides_drift_check(self, tmp_path: Path) -> None:
        reconciler, _, store = _reconciler(tmp_path, [], force=True)
        link = _existing(store, "a")
        assert reconciler.needs_sync(_record("a", modified=SYNCED), link)

    def test_missing_synced_at_needs_sync(self, tmp_path: Path) -> None:
        reconciler, _, store = _reconciler(tmp_path, [])
        link = _existing(store, "a", synced_at=None)
        assert reconciler.needs_sync(_record("a"), link)

    def test_one_way_never_replaces_success(self, tmp_path: Path) -> None:
        reconciler, _, store = _reconciler(tmp_path, [], one_way=True)
        link = _existing(store, "a")
        assert not reconciler.needs_sync(_record("a", modified=SYNCED + dt.timedelta(days=3)), link)


@pytest.mark.unit
class TestFirstSync:
    """A record without a link is created, filled and linked."""

    def test_creates_target_and_link(self, tmp_path: Path) -> None:
        reconciler, writer, store = _reconciler(tmp_path, [_record("a", title="Write docs")])

        report = reconciler.run()

        assert report.updated == 1
        assert report.total == 1
        assert writer.created == ["tgt-1"]
        assert writer.appended == [("tgt-1", 1)]
        link = store.load("a", "tasks")
        assert link.status == LinkStatus.SUCCESS
        assert link.target_id == "tgt-1"
        assert link.synced_at == RUNTIME_START
        assert link.history == []
        assert link.source_page_name == "Write docs"
        assert link.source_page_icon == "✅"
        assert link.target_page_name == "Write docs"
        assert link.source_db_id == "src-db"
        assert link.target_db_id == "tgt-db"

    def test_skip_blocks_does_not_load_children(self, tmp_path: Path) -> None:
        mapping = MappingSpec(options=TransformOptions(skip_blocks=True))
        reconciler, writer, _ = _reconciler(tmp_path, [_record("a")], mapping=mapping)

        reconciler.run()

        assert reconciler._source.loaded_children == []
        assert writer.appended == []


@pytest.mark.unit
class TestNoDrift:
    def test_unchanged_record_is_not_touched(self, tmp_path: Path) -> None:
        reconciler, writer, store = _reconciler(tmp_path, [_record("a", modified=SYNCED - dt.timedelta(hours=1))])
        _existing(store, "a")

        report = reconciler.run()

        assert report.skipped == 1
        assert report.updated == 0
        assert writer.created == []
        assert writer.archived == []
        assert store.load("a", "tasks").target_id == "old-tgt"


@pytest.mark.unit
class TestRerun:
    def test_second_run_changes_nothing(self, tmp_path: Path) -> None:
        records = [_record("a"), _record("b")]
        first, first_writer, store = _reconciler(tmp_path, records)

        first_report = first.run()

        assert first_report.updated == 2
        assert first_writer.created == ["tgt-1", "tgt-2"]

        second, second_writer, _ = _reconciler(tmp_path, records, now=NOW + dt.timedelta(hours=1))
        second_report = second.run()

        assert second_report.updated == 0
        assert second_report.failed == 0
        assert second_report.skipped == 2
        assert second_report.orphans_archived == 0
        assert second_writer.created == []
        assert second_writer.archived == []
        assert store.load("a", "tasks").target_id == "tgt-1"
        assert store.load("b", "tasks").target_id == "tgt-2"
        assert store.load("a", "tasks").synced_at == RUNTIME_START


@pytest.mark.unit
class TestDriftReplacement:
    """An edited record gets a fresh target; the old one is archived."""

    def test_replaces_and_archives_old_target(self, tmp_path: Path) -> None:
        reconciler, writer, store = _reconciler(tmp_path, [_record("a", modified=SYNCED + dt.timedelta(hours=2))])
        _existing(store, "a", target_id="old-tgt")

        report = reconciler.run()

        assert report.updated == 1
        assert writer.created == ["tgt-1"]
        assert writer.archived == ["old-tgt"]
        link = store.load("a", "tasks")
        assert link.target_id == "tgt-1"
        assert link.synced_at == RUNTIME_START
        assert len(link.history) == 1
        entry = link.history[0]
        assert entry.target_id == "old-tgt"
        assert entry.synced_at == SYNCED
        assert entry.notes == REPLACED_NOTE
        assert entry.deleted_at == NOW

    def test_history_accumulates_over_replacements(self, tmp_path: Path) -> None:
        older = HistoryEntry(target_id="first-tgt", synced_at=SYNCED - dt.timedelta(days=5), deleted_at=SYNCED)
        reconciler, _, store = _reconciler(tmp_path, [_record("a", modified=SYNCED + dt.timedelta(hours=2))])
        _existing(store, "a", target_id="old-tgt", history=[older])

        reconciler.run()

        assert [h.target_id for h in store.load("a", "tasks").history] == ["first-tgt", "old-tgt"]

    def test_archive_failure_leaves_deleted_at_empty(self, tmp_path: Path) -> None:
        writer = FakeWriter()
        writer.fail_archive = {"old-tgt"}
        reconciler, _, store = _reconciler(
            tmp_path, [_record("a", modified=SYNCED + dt.timedelta(hours=2))], writer=writer
        )
        _existing(store, "a", target_id="old-tgt")

        report = reconciler.run()

        assert report.updated == 1
        link = store.load("a", "tasks")
        assert link.target_id == "tgt-1"
        assert link.history[0].target_id == "old-tgt"
        assert link.history[0].deleted_at is None

    def test_force_replaces_unchanged_record(self, tmp_path: Path) -> None:
        reconciler, writer, store = _reconciler(tmp_path, [_record("a", modified=SYNCED)], force=True)
        _existing(store, "a")

        report = reconciler.run()

        assert report.updated == 1
        assert writer.archived == ["old-tgt"]


@pytest.mark.unit
class TestFailureContainment:
    """A failing record is rolled back and recorded, the run continues."""

    def test_failed_transform_writes_fail_link(self, tmp_path: Path) -> None:
        reconciler, writer, store = _reconciler(
            tmp_path, [_record("bad"), _record("good")], transformer=FakeTransformer(fail_ids={"bad"})
        )

        report = reconciler.run()

        assert report.failed == 1
        assert report.updated == 1
        assert writer.created == ["tgt-1"]
        link = store.load("bad", "tasks")
        assert link.status == LinkStatus.FAIL
        assert link.target_id is None
        assert link.synced_at is None
        assert "cannot transform bad" in link.notes
        assert any("cannot transform bad" in error for error in report.errors)

    def test_failed_append_rolls_back_created_page(self, tmp_path: Path) -> None:
        writer = FakeWriter(fail_append=True)
        reconciler, _, store = _reconciler(tmp_path, [_record("a")], writer=writer)

        report = reconciler.run()

        assert report.failed == 1
        assert writer.created == ["tgt-1"]
        assert writer.archived == ["tgt-1"]
        assert store.load("a", "tasks").status == LinkStatus.FAIL

    def test_failure_keeps_prior_target_and_history(self, tmp_path: Path) -> None:
        older = HistoryEntry(target_id="first-tgt", synced_at=SYNCED, deleted_at=SYNCED)
        reconciler, writer, store = _reconciler(
            tmp_path,
            [_record("a", modified=SYNCED + dt.timedelta(hours=1))],
            transformer=FakeTransformer(fail_ids={"a"}),
        )
        _existing(store, "a", target_id="old-tgt", history=[older])

        reconciler.run()

        link = store.load("a", "tasks")
        assert link.status == LinkStatus.FAIL
        assert link.target_id == "old-tgt"
        assert link.synced_at == SYNCED
        assert [h.target_id for h in link.history] == ["first-tgt"]
        assert writer.archived == []

    def test_failed_record_is_retried_next_run(self, tmp_path: Path) -> None:
        transformer = FakeTransformer(fail_ids={"a"})
        reconciler, writer, store = _reconciler(tmp_path, [_record("a")], transformer=transformer)
        reconciler.run()

        transformer.fail_ids.clear()
        report = reconciler.run()

        assert report.updated == 1
        assert store.load("a", "tasks").status == LinkStatus.SUCCESS

    def test_strict_mode_reraises_after_recording(self, tmp_path: Path) -> None:
        reconciler, _, store = _reconciler(
            tmp_path, [_record("a"), _record("b")], transformer=FakeTransformer(fail_ids={"a"}), strict=True
        )

        with pytest.raises(RuntimeError, match="cannot transform a"):
            reconciler.run()

        assert store.load("a", "tasks").status == LinkStatus.FAIL
        assert not store.has_source_id("b", "tasks")


@pytest.mark.unit
class TestSkipAndDryRun:
    def test_skip_page_error_is_not_a_failure(self, tmp_path: Path) -> None:
        reconciler, writer, store = _reconciler(
            tmp_path, [_record("a")], transformer=FakeTransformer(skip_ids={"a"})
        )

        report = reconciler.run()

        assert report.skipped == 1
        assert report.failed == 0
        assert writer.created == []
        assert not store.has_source_id("a", "tasks")

    def test_dry_run_writes_nothing(self, tmp_path: Path) -> None:
        reconciler, writer, store = _reconciler(tmp_path, [_record("a"), _record("b")], dry_run=True)
        _existing(store, "gone", target_id="orphan-tgt")

        report = reconciler.run()

        assert report.skipped == 2
        assert report.orphans_archived == 0
        assert writer.created == []
        assert writer.archived == []
        assert not store.has_source_id("a", "tasks")


@pytest.mark.unit
class TestOrphanSweep:
    """Links whose source page disappeared are archived."""

    def test_orphan_is_archived_once(self, tmp_path: Path) -> None:
        reconciler, writer, store = _reconciler(tmp_path, [_record("a", modified=SYNCED)])
        _existing(store, "a", target_id="a-tgt")
        _existing(store, "gone", target_id="orphan-tgt")

        report = reconciler.run()

        assert report.orphans_archived == 1
        assert writer.archived == ["orphan-tgt"]
        link = store.load("gone", "tasks")
        assert link.status == LinkStatus.ARCHIVED
        assert link.archived_at == NOW
        assert link.history[-1].target_id == "orphan-tgt"
        assert link.history[-1].notes == ORPHAN_NOTE
        assert link.history[-1].deleted_at == NOW

    def test_archived_links_are_not_swept_again(self, tmp_path: Path) -> None:
        reconciler, writer, store = _reconciler(tmp_path, [])
        _existing(store, "gone", target_id="orphan-tgt")

        reconciler.run()
        second = reconciler.run()

        assert second.orphans_archived == 0
        assert writer.archived == ["orphan-tgt"]

    def test_already_missing_target_counts_as_archived(self, tmp_path: Path) -> None:
        writer = FakeWriter(missing={"orphan-tgt"})
        reconciler, _, store = _reconciler(tmp_path, [], writer=writer)
        _existing(store, "gone", target_id="orphan-tgt")

        report = reconciler.run()

        assert report.orphans_archived == 1
        assert store.load("gone", "tasks").status == LinkStatus.ARCHIVED

    def test_archive_error_leaves_link_live(self, tmp_path: Path) -> None:
        writer = FakeWriter()
        writer.fail_archive = {"orphan-tgt"}
        reconciler, _, store = _reconciler(tmp_path, [], writer=writer)
        _existing(store, "gone", target_id="orphan-tgt")

        report = reconciler.run()

        assert report.orphans_archived == 0
        assert store.load("gone", "tasks").status == LinkStatus.SUCCESS

    def test_no_sweep_in_one_way_mode(self, tmp_path: Path) -> None:
        reconciler, writer, store = _reconciler(tmp_path, [], one_way=True)
        _existing(store, "gone", target_id="orphan-tgt")

        report = reconciler.run()

        assert report.orphans_archived == 0
        assert writer.archived == []

    def test_no_sweep_when_restricted_to_one_page(self, tmp_path: Path) -> None:
        reconciler, writer, store = _reconciler(tmp_path, [_record("a"), _record("b")], only_id="a")
        _existing(store, "gone", target_id="orphan-tgt")

        report = reconciler.run()

        assert report.updated == 1
        assert writer.created == ["tgt-1"]
        assert writer.archived == []
        assert not store.has_source_id("b", "tasks")


@pytest.mark.unit
class TestCircuitBreaker:
    """Test the breaker thresholds and the aborted run."""

    def test_consecutive_failures_trip(self) -> None:
        breaker = CircuitBreaker(BreakerConfig(max_consecutive_failures=2))
        breaker.record_failure()
        breaker.check()
        breaker.record_failure()

        with pytest.raises(CircuitBreakerTrippedError, match="2 consecutive failures"):
            breaker.check()

    def test_success_resets_consecutive_count(self) -> None:
        breaker = CircuitBreaker(BreakerConfig(max_consecutive_failures=2))
        breaker.record_failure()
        breaker.record_success()
        breaker.record_failure()

        assert breaker.trip_reason() is None

    def test_total_failures_trip(self) -> None:
        breaker = CircuitBreaker(BreakerConfig(max_consecutive_failures=100, max_total_failures=3, max_failure_rate=1.0))
        for _ in range(3):
            breaker.record_failure()
            breaker.record_success()

        assert breaker.trip_reason() == "3 failures in total"

    def test_failure_rate_waits_for_grace_records(self) -> None:
        breaker = CircuitBreaker(
            BreakerConfig(max_consecutive_failures=100, max_total_failures=100, max_failure_rate=0.2, grace_records=10)
        )
        breaker.record_failure()
        breaker.record_success()
        assert breaker.trip_reason() is None

        for _ in range(8):
            breaker.record_success()
        assert breaker.attempts == 10
        assert breaker.trip_reason() is None

        breaker.record_failure()
        breaker.record_failure()
        assert breaker.failure_rate == pytest.approx(3 / 12)
        assert "failure rate" in breaker.trip_reason()

    def test_run_aborts_after_consecutive_failures(self, tmp_path: Path) -> None:
        records = [_record(f"r{i}") for i in range(6)]
        reconciler, writer, store = _reconciler(
            tmp_path,
            records,
            transformer=FakeTransformer(fail_ids={"r0", "r1", "r2", "r3", "r4", "r5"}),
            breaker=BreakerConfig(max_consecutive_failures=3),
        )
        _existing(store, "gone", target_id="orphan-tgt")

        report = reconciler.run()

        assert report.aborted
        assert report.failed == 3
        assert not store.has_source_id("r3", "tasks")
        assert writer.archived == []
        assert any("Circuit breaker tripped" in error for error in report.errors)


@pytest.mark.unit
class TestPreflight:
    def test_summary_counts(self, tmp_path: Path) -> None:
        reconciler, _, store = _reconciler(tmp_path, [])
        _existing(store, "same")
        _existing(store, "edited")
        records = [
            _record("new"),
            _record("same", modified=SYNCED),
            _record("edited", modified=SYNCED + dt.timedelta(hours=1)),
        ]

        pairs, summary = reconciler.preflight(records)

        assert [record.id for record, _ in pairs] == ["new", "same", "edited"]
        assert pairs[0][1] is None
        assert summary == {
            "event": "sync_started",
            "total_records": 3,
            "eligible": 2,
            "existing": 2,
            "first_time": 1,
            "updates": 1,
        }


@pytest.mark.unit
class TestSyncRecordOutcome:
    def test_sync_record_returns_outcome(self, tmp_path: Path) -> None:
        reconciler, _, _ = _reconciler(tmp_path, [])
        assert reconciler.sync_record(_record("a"), None, RUNTIME_START) == SyncOutcome.UPDATED
