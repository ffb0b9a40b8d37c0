"""
Command-line interface for the Notion database sync tool.
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from .config import BreakerConfig, MediaConfig, SyncConfig
from .exceptions import MigrationError, MissingHookError
from .hooks import builtin_hooks
from .link_store import DEFAULT_LINK_TYPE, LinkStore
from .media import MediaMigrator
from .models import SyncReport
from .notion_utils import DEFAULT_TIMEOUT_MS, get_client, get_token
from .reconciler import DeltaSyncReconciler
from .source import NotionRecordSource
from .target_writer import NotionTargetWriter
from .throttled_client import DEFAULT_REQUESTS_PER_SECOND, RateLimitedClient, RateLimiter
from .transformer import HookRegistry, MappingSpec, Transformer
from .user_store import UserStore
from .utils import setup_logging

logger: logging.Logger = logging.getLogger(__name__)


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    # Positional arguments
    _ = parser.add_argument("source_db", help="Source database id")
    _ = parser.add_argument("target_db", help="Target database id")

    _ = parser.add_argument(
        "--link-type", default=DEFAULT_LINK_TYPE, help=f"Ledger partition for this stream (default: {DEFAULT_LINK_TYPE})"
    )
    _ = parser.add_argument("--source-name", default="", help="Source database name recorded in links")
    _ = parser.add_argument("--target-name", default="", help="Target database name recorded in links")
    _ = parser.add_argument("--mapping", help="JSON mapping file (default: copy every property by name)")
    _ = parser.add_argument(
        "--relation-link-type", default="tags", help="Ledger partition used by relation hooks (default: tags)"
    )
    _ = parser.add_argument("--links-dir", default="links", help="Directory of the link ledger (default: links)")
    _ = parser.add_argument(
        "--tmp-dir", default=str(Path("tmp") / "page_media"), help="Media staging directory (default: tmp/page_media)"
    )

    _ = parser.add_argument("--dry-run", action="store_true", help="Log what would be synced without writing")
    _ = parser.add_argument("--force", action="store_true", help="Sync every page, drifted or not")
    _ = parser.add_argument("--only-id", help="Only sync the source page with this id")
    _ = parser.add_argument("--strict", action="store_true", help="Stop at the first failed page")

    _ = parser.add_argument(
        "--notion-pass-token", help="Path for Notion token in pass utility (default: notion/cli/token)"
    )
    _ = parser.add_argument(
        "--requests-per-second",
        type=int,
        default=DEFAULT_REQUESTS_PER_SECOND,
        help=f"Notion API rate limit (default: {DEFAULT_REQUESTS_PER_SECOND})",
    )
    _ = parser.add_argument(
        "--timeout-ms", type=int, default=DEFAULT_TIMEOUT_MS, help=f"Per-request timeout (default: {DEFAULT_TIMEOUT_MS})"
    )

    defaults = MediaConfig()
    _ = parser.add_argument(
        "--max-parallel", type=int, default=defaults.max_parallel, help="Parallel parts per multi-part upload"
    )
    _ = parser.add_argument(
        "--chunk-size-mb", type=int, default=defaults.chunk_size_mb, help="Size above which uploads are multi-part"
    )

    breaker = BreakerConfig()
    _ = parser.add_argument("--max-consecutive-failures", type=int, default=breaker.max_consecutive_failures)
    _ = parser.add_argument("--max-total-failures", type=int, default=breaker.max_total_failures)
    _ = parser.add_argument("--max-failure-rate", type=float, default=breaker.max_failure_rate)
    _ = parser.add_argument("--grace-records", type=int, default=breaker.grace_records)

    _ = parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")


def parse_arguments(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(description="Copy pages between Notion databases with a delta-sync ledger")
    subparsers = parser.add_subparsers(dest="command", required=True)

    sync_parser = subparsers.add_parser(
        "sync", help="Create, replace and archive target pages so they follow the source"
    )
    _add_common_arguments(sync_parser)

    migrate_parser = subparsers.add_parser(
        "migrate", help="Copy pages that were never copied; never replace or archive"
    )
    _add_common_arguments(migrate_parser)

    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> SyncConfig:
    return SyncConfig(
        link_type=args.link_type,
        source_database_id=args.source_db,
        target_database_id=args.target_db,
        source_database_name=args.source_name,
        target_database_name=args.target_name,
        dry_run=args.dry_run,
        force=args.force,
        only_id=args.only_id,
        strict=args.strict,
        one_way=args.command == "migrate",
        links_dir=Path(args.links_dir),
        breaker=BreakerConfig(
            max_consecutive_failures=args.max_consecutive_failures,
            max_total_failures=args.max_total_failures,
            max_failure_rate=args.max_failure_rate,
            grace_records=args.grace_records,
        ),
        media=MediaConfig(
            tmp_dir=Path(args.tmp_dir),
            chunk_size_mb=args.chunk_size_mb,
            max_parallel=args.max_parallel,
        ),
    )


def run(args: argparse.Namespace) -> SyncReport:
    """Wire up the collaborators and run one sync."""
    config = build_config(args)
    mapping = MappingSpec.from_file(args.mapping) if args.mapping else MappingSpec()

    token = get_token(args.notion_pass_token)
    if not token:
        msg = "No Notion token: pass --notion-pass-token or set NOTION_API_KEY"
        raise MigrationError(msg)
    client = RateLimitedClient(get_client(token, args.timeout_ms), RateLimiter(args.requests_per_second))

    link_store = LinkStore(config.links_dir)
    user_store = UserStore(client)
    registry = HookRegistry(
        builtin_hooks(user_store=user_store, link_store=link_store, relation_link_type=args.relation_link_type)
    )
    media = MediaMigrator.from_config(client, config.media)
    transformer = Transformer(registry, media)

    missing = transformer.missing_hooks(mapping)
    if missing:
        raise MissingHookError(", ".join(missing))
    if "people_by_email" in mapping.hook_names():
        user_store.init()

    reconciler = DeltaSyncReconciler(
        config,
        source=NotionRecordSource(client),
        transformer=transformer,
        writer=NotionTargetWriter(client, config.target_database_id),
        link_store=link_store,
        mapping=mapping,
    )

    media.init()
    try:
        return reconciler.run()
    finally:
        media.flush()
        logger.info(f"Media stats: {media.stats()}")


def main(argv: list[str] | None = None) -> None:
    """Main entry point."""
    args = parse_arguments(argv)

    # Setup logging
    verbose: bool = getattr(args, "verbose", False)
    setup_logging(verbose=verbose)

    try:
        report = run(args)
    except Exception:
        logger.exception("Sync failed")
        sys.exit(1)

    # Print report
    print(f"Sync of '{args.link_type}' finished:")  # noqa: T201
    for key, value in report.as_dict().items():
        print(f"  {key}: {value}")  # noqa: T201
    for error in report.errors:
        print(f"  error: {error}")  # noqa: T201

    if report.aborted:
        sys.exit(1)
    sys.exit(0)
