"""Run configuration for the sync tool."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path


@dataclass
class BreakerConfig:
    """Thresholds after which a run stops burning through its remaining records.

    The defaults were chosen empirically; tune them per workload.
    """

    max_consecutive_failures: int = 3
    max_total_failures: int = 50
    max_failure_rate: float = 0.2
    grace_records: int = 10


@dataclass
class MediaConfig:
    tmp_dir: Path = field(default_factory=lambda: Path("tmp") / "page_media")
    chunk_size_mb: int = 19
    max_parallel: int = 10
    poll_attempts: int = 15
    poll_interval_seconds: float = 3.0
    download_timeout_seconds: float = 60.0


@dataclass
class SyncConfig:
    """Settings for one reconciler run against a source/target database pair."""

    link_type: str
    source_database_id: str
    target_database_id: str
    source_database_name: str = ""
    target_database_name: str = ""
    dry_run: bool = False
    force: bool = False
    only_id: str | None = None
    strict: bool = False
    one_way: bool = False
    links_dir: Path = field(default_factory=lambda: Path("links"))
    breaker: BreakerConfig = field(default_factory=BreakerConfig)
    media: MediaConfig = field(default_factory=MediaConfig)
