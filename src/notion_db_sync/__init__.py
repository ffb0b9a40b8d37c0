"""
Notion Database Sync Tool

Copies pages, content blocks and media between Notion databases and keeps a
per-page link ledger, so reruns replace drifted pages instead of duplicating
them and archive pages whose source has disappeared.
"""

from __future__ import annotations

from .cli import main
from .config import BreakerConfig, MediaConfig, SyncConfig
from .exceptions import MigrationError, SkipPageError
from .link_store import LinkStore
from .media import MediaMigrator
from .models import LinkRecord, LinkStatus, SyncOutcome, SyncReport
from .reconciler import DeltaSyncReconciler
from .transformer import HookRegistry, MappingSpec, Transformer
from .utils import setup_logging

# Package version
__version__ = "0.1.0"

__all__ = [
    "BreakerConfig",
    "DeltaSyncReconciler",
    "HookRegistry",
    "LinkRecord",
    "LinkStatus",
    "LinkStore",
    "MappingSpec",
    "MediaConfig",
    "MediaMigrator",
    "MigrationError",
    "SkipPageError",
    "SyncConfig",
    "SyncOutcome",
    "SyncReport",
    "Transformer",
    "main",
    "setup_logging",
]
