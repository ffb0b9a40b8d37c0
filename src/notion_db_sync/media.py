"""Media migration from source pages to Notion file uploads.

Downloads are cached by source URL and uploads by SHA-256 of the content, so
identical bytes reached through different URLs (or different pages) upload
once. Both caches are mirrored into ``media_manifest.json`` in the staging
directory. It is rewritten after every new download or upload and on
``flush()``; ``init()`` loads it, which lets a rerun after a crash skip
assets that were already downloaded or uploaded.

The manifest is owned by one running MediaMigrator; do not edit it while a
sync is in progress.
"""

from __future__ import annotations

import copy
import hashlib
import json
import logging
import math
import mimetypes
import os
import tempfile
import time
from concurrent.futures import ThreadPoolExecutor
from itertools import batched
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING, Any
from urllib.parse import unquote, urlparse

import httpx
import requests
from notion_client.errors import HTTPResponseError, RequestTimeoutError
from tenacity import RetryError, Retrying, before_sleep_log, retry_if_result, stop_after_attempt, wait_fixed

from .exceptions import DownloadError, MediaError, UploadFailedError, UploadTimeoutError
from .models import DownloadedAsset, UploadedAsset, utcnow

if TYPE_CHECKING:
    from collections.abc import Callable

    from .config import MediaConfig
    from .throttled_client import RateLimitedClient

logger: logging.Logger = logging.getLogger(__name__)

MANIFEST_NAME = "media_manifest.json"
MEDIA_BLOCK_TYPES = frozenset({"image", "file", "pdf", "video"})
MAX_FILE_NAME_LENGTH = 100
_DOWNLOAD_CHUNK_BYTES = 1024 * 1024
_MB = 1024 * 1024
_TERMINAL_UPLOAD_STATUSES = frozenset({"uploaded", "failed", "expired"})

# Failures that drop a single file from a batch instead of failing the record
_TRANSFER_ERRORS: tuple[type[BaseException], ...] = (
    MediaError,
    HTTPResponseError,
    RequestTimeoutError,
    httpx.HTTPError,
    requests.RequestException,
    OSError,
)


def resolve_source_url(file_ref: dict[str, Any]) -> str | None:
    """Return the URL of an external or Notion-hosted file object, if any."""
    ref_type = file_ref.get("type")
    if ref_type in ("external", "file"):
        url = (file_ref.get(ref_type) or {}).get("url")
        return url or None
    return None


def _filename_from_url(url: str) -> str:
    name = unquote(PurePosixPath(urlparse(url).path).name)
    # Keep the staging name filesystem-safe
    name = "".join(c if c.isalnum() or c in "._-" else "_" for c in name).strip("._")
    return name or "file"


def _display_name(file_ref: dict[str, Any], url: str) -> str:
    return (file_ref.get("name") or _filename_from_url(url))[:MAX_FILE_NAME_LENGTH]


class MediaMigrator:
    """Download source media once, upload each distinct content once.

    Pass a RateLimitedClient so uploads share the rate budget of all other
    Notion calls.
    """

    _client: RateLimitedClient
    _session: requests.Session
    _downloads: dict[str, DownloadedAsset]
    _uploads: dict[str, UploadedAsset]

    def __init__(
        self,
        client: RateLimitedClient,
        tmp_dir: Path | str,
        *,
        max_parallel: int = 10,
        chunk_size_mb: int = 19,
        chunk_size_bytes: int | None = None,
        poll_attempts: int = 15,
        poll_interval: float = 3.0,
        download_timeout: float = 60.0,
        session: requests.Session | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._client = client
        self.tmp_dir = Path(tmp_dir)
        self.manifest_path = self.tmp_dir / MANIFEST_NAME
        self.max_parallel = max(1, max_parallel)
        self.chunk_size_bytes = chunk_size_bytes or chunk_size_mb * _MB
        self.poll_attempts = poll_attempts
        self.poll_interval = poll_interval
        self.download_timeout = download_timeout
        self._session = session or requests.Session()
        self._sleep = sleep
        self._downloads = {}
        self._uploads = {}

    @classmethod
    def from_config(cls, client: RateLimitedClient, config: MediaConfig) -> MediaMigrator:
        return cls(
            client,
            config.tmp_dir,
            max_parallel=config.max_parallel,
            chunk_size_mb=config.chunk_size_mb,
            poll_attempts=config.poll_attempts,
            poll_interval=config.poll_interval_seconds,
            download_timeout=config.download_timeout_seconds,
        )

    def init(self) -> None:
        """Create the staging directory and load any manifest left by a previous run."""
        self.tmp_dir.mkdir(parents=True, exist_ok=True)
        if not self.manifest_path.is_file():
            return

        try:
            manifest = json.loads(self.manifest_path.read_text(encoding="utf-8"))
            downloads = {url: DownloadedAsset.from_dict(info) for url, info in manifest.get("downloads", {}).items()}
            uploads = {sha: UploadedAsset.from_dict(info) for sha, info in manifest.get("uploads", {}).items()}
        except (OSError, ValueError, KeyError, TypeError, AttributeError) as e:
            logger.warning(f"Ignoring unreadable media manifest {self.manifest_path}: {e}")
            return

        self._downloads.update(downloads)
        self._uploads.update(uploads)
        logger.info(f"Loaded media manifest with {len(downloads)} downloads, {len(uploads)} uploads")

    def flush(self) -> None:
        """Write both caches to the manifest file."""
        self._write_manifest()
        logger.info(f"Persisted media manifest to {self.manifest_path}")

    def _write_manifest(self) -> None:
        self.tmp_dir.mkdir(parents=True, exist_ok=True)
        manifest = {
            "downloads": {url: asset.to_dict() for url, asset in self._downloads.items()},
            "uploads": {sha: asset.to_dict() for sha, asset in self._uploads.items()},
        }
        fd, tmp_name = tempfile.mkstemp(dir=self.tmp_dir, prefix=".manifest.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(manifest, f, indent=2)
            os.replace(tmp_name, self.manifest_path)
        except OSError:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def stats(self) -> dict[str, int]:
        return {"downloaded": len(self._downloads), "uploaded": len(self._uploads)}

    def process_files(self, context_id: str | None, file_refs: list[dict[str, Any]]) -> list[dict[str, Any]]:
        """Migrate file objects and return Notion ``file_upload`` references.

        Files that cannot be resolved, downloaded or uploaded are logged and
        left out of the result; the rest of the batch is still processed.

        Args:
            context_id: Page id (or other context) for log messages
            file_refs: Notion file objects (``external`` or ``file`` typed)

        Returns:
            One ``{"type": "file_upload", ...}`` reference per migrated file
        """
        context = f" on {context_id}" if context_id else ""
        results: list[dict[str, Any]] = []

        for file_ref in file_refs:
            url = resolve_source_url(file_ref)
            if not url:
                logger.warning(f"Skipping file without a resolvable URL{context}: {file_ref.get('name', '<unnamed>')}")
                continue

            try:
                asset = self._download(url)
                uploaded = self._upload(asset, _filename_from_url(url))
            except _TRANSFER_ERRORS as e:
                logger.warning(f"Failed to migrate media {url}{context}: {type(e).__name__}: {e}")
                continue

            results.append(
                {
                    "type": "file_upload",
                    "file_upload": {"id": uploaded.id},
                    "name": _display_name(file_ref, url),
                }
            )

        return results

    def transform_media_blocks(
        self, context_id: str | None, blocks: list[dict[str, Any]]
    ) -> list[dict[str, Any]]:
        """Rewrite media blocks in a block tree to point at uploaded files.

        The tree is walked depth-first with an explicit stack; a block's
        children are finalised before the block itself. Media blocks with an
        empty URL or an inline ``data:`` URI are dropped. The input is not
        modified.
        """
        root: dict[str, Any] = {"children": copy.deepcopy(blocks)}
        seen: set[int] = {id(root)}
        stack: list[tuple[dict[str, Any], bool]] = [(root, False)]

        while stack:
            node, expanded = stack.pop()
            children = node.get("children")
            if not children:
                continue
            if not expanded:
                stack.append((node, True))
                for child in children:
                    if id(child) not in seen:
                        seen.add(id(child))
                        stack.append((child, False))
                continue

            rewritten = (self._rewrite_media_block(context_id, child) for child in children)
            node["children"] = [child for child in rewritten if child is not None]

        return root["children"]

    def _rewrite_media_block(self, context_id: str | None, block: dict[str, Any]) -> dict[str, Any] | None:
        kind = block.get("type")
        if kind not in MEDIA_BLOCK_TYPES:
            return block

        container: dict[str, Any] = block.get(kind) or {}
        if container.get("type") == "file_upload":
            return block

        url = resolve_source_url(container)
        if not url or url.startswith("data:"):
            logger.debug(f"Dropping {kind} block without an uploadable URL")
            return None

        uploaded = self.process_files(context_id, [container])
        if uploaded:
            replacement: dict[str, Any] = {"type": "file_upload", "file_upload": uploaded[0]["file_upload"]}
            if container.get("caption"):
                replacement["caption"] = container["caption"]
            if kind == "file" and container.get("name"):
                replacement["name"] = container["name"]
            block[kind] = replacement
            return block

        if container.get("type") == "external":
            logger.warning(f"Keeping external link for {kind} block after failed upload: {url}")
            return block

        # Notion-hosted URLs are signed and expire, so they cannot be kept as links
        logger.warning(f"Dropping Notion-hosted {kind} block that could not be migrated")
        return None

    def _download(self, url: str) -> DownloadedAsset:
        """Fetch a URL into the staging directory, hashing it on the way."""
        cached = self._downloads.get(url)
        if cached is not None and (cached.sha256 in self._uploads or Path(cached.path).is_file()):
            logger.debug(f"Download cache hit for {url}")
            return cached

        local_path = self.tmp_dir / f"{time.time_ns()}_{_filename_from_url(url)}"
        self.tmp_dir.mkdir(parents=True, exist_ok=True)
        digest = hashlib.sha256()
        size = 0

        logger.debug(f"Downloading {url} -> {local_path}")
        try:
            response = self._session.get(url, stream=True, timeout=self.download_timeout)
        except requests.RequestException as e:
            msg = f"Failed to download {url}: {e}"
            raise DownloadError(msg) from e

        try:
            if not response.ok:
                msg = f"Failed to download {url}: HTTP {response.status_code}"
                raise DownloadError(msg)
            with local_path.open("wb") as f:
                for chunk in response.iter_content(chunk_size=_DOWNLOAD_CHUNK_BYTES):
                    if chunk:
                        f.write(chunk)
                        digest.update(chunk)
                        size += len(chunk)
        except requests.RequestException as e:
            local_path.unlink(missing_ok=True)
            msg = f"Failed to download {url}: {e}"
            raise DownloadError(msg) from e
        except OSError:
            local_path.unlink(missing_ok=True)
            raise
        finally:
            response.close()

        if size == 0:
            local_path.unlink(missing_ok=True)
            msg = f"Downloaded file is empty: {url}"
            raise DownloadError(msg)

        asset = DownloadedAsset(path=str(local_path), size=size, sha256=digest.hexdigest())
        self._downloads[url] = asset
        self._write_manifest()
        logger.debug(f"Downloaded and hashed {url} (sha256={asset.sha256}, {size} bytes)")
        return asset

    def _upload(self, asset: DownloadedAsset, filename: str) -> UploadedAsset:
        """Upload a staged file unless identical content was uploaded before."""
        cached = self._uploads.get(asset.sha256)
        if cached is not None:
            logger.debug(f"Upload cache hit for {filename} (sha256={asset.sha256})")
            return cached

        path = Path(asset.path)
        content_type = mimetypes.guess_type(filename)[0] or "application/octet-stream"
        if asset.size <= self.chunk_size_bytes:
            upload_id = self._direct_upload(path, filename, content_type)
        else:
            upload_id = self._multi_part_upload(path, asset.size, filename, content_type)
        self._wait_until_uploaded(upload_id)

        uploaded = UploadedAsset(id=upload_id, size=asset.size, uploaded_at=utcnow())
        self._uploads[asset.sha256] = uploaded
        self._write_manifest()
        logger.info(f"Uploaded {filename} ({asset.size} bytes) as file_upload {upload_id}")
        return uploaded

    def _direct_upload(self, path: Path, filename: str, content_type: str) -> str:
        upload = self._client.file_uploads.create(mode="single_part", filename=filename, content_type=content_type)
        upload_id: str = upload["id"]
        with path.open("rb") as f:
            self._client.file_uploads.send(file_upload_id=upload_id, file=(filename, f, content_type))
        return upload_id

    def _multi_part_upload(self, path: Path, size: int, filename: str, content_type: str) -> str:
        """Upload a large file as byte-range parts, then complete the upload.

        Any failed part aborts the whole upload; nothing is resumed at part level.
        """
        part_count = math.ceil(size / self.chunk_size_bytes)
        upload = self._client.file_uploads.create(
            mode="multi_part",
            filename=filename,
            content_type=content_type,
            number_of_parts=part_count,
        )
        upload_id: str = upload["id"]
        logger.debug(f"Multi-part upload {upload_id}: {size} bytes in {part_count} parts")

        try:
            with ThreadPoolExecutor(max_workers=self.max_parallel, thread_name_prefix="upload-part") as executor:
                for batch in batched(range(1, part_count + 1), self.max_parallel):
                    futures = [
                        executor.submit(self._send_part, upload_id, path, part_number, filename, content_type)
                        for part_number in batch
                    ]
                    for future in futures:
                        future.result()
        except (HTTPResponseError, RequestTimeoutError, httpx.HTTPError, OSError) as e:
            msg = f"Multi-part upload {upload_id} of {filename} failed: {e}"
            raise UploadFailedError(msg) from e

        self._client.file_uploads.complete(file_upload_id=upload_id)
        return upload_id

    def _send_part(self, upload_id: str, path: Path, part_number: int, filename: str, content_type: str) -> None:
        offset = (part_number - 1) * self.chunk_size_bytes
        with path.open("rb") as f:
            f.seek(offset)
            data = f.read(self.chunk_size_bytes)
        self._client.file_uploads.send(
            file_upload_id=upload_id,
            file=(filename, data, content_type),
            part_number=str(part_number),
        )
        logger.debug(f"Sent part {part_number} of {upload_id} ({len(data)} bytes)")

    def _wait_until_uploaded(self, upload_id: str) -> None:
        """Poll an upload until Notion reports it as uploaded.

        Raises:
            UploadFailedError: The upload was reported as failed or expired
            UploadTimeoutError: The upload was still pending after the last attempt
        """
        retrying = Retrying(
            stop=stop_after_attempt(self.poll_attempts),
            wait=wait_fixed(self.poll_interval),
            retry=retry_if_result(lambda status: status not in _TERMINAL_UPLOAD_STATUSES),
            sleep=self._sleep,
            before_sleep=before_sleep_log(logger, logging.DEBUG),
        )
        try:
            status = retrying(self._upload_status, upload_id)
        except RetryError as e:
            msg = f"File upload {upload_id} not ready after {self.poll_attempts} attempts"
            raise UploadTimeoutError(msg) from e

        if status != "uploaded":
            msg = f"File upload {upload_id} is {status}"
            raise UploadFailedError(msg)

    def _upload_status(self, upload_id: str) -> str | None:
        return self._client.file_uploads.retrieve(file_upload_id=upload_id).get("status")
