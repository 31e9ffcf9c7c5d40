"""Diff a working tree against known content hashes and upload changes.

Steps for ``initial_sync``:
    1. List the store's per-file hash metadata (paginated).
    2. Enumerate tracked + untracked-not-ignored files via git, keeping
       regular files that git does not ignore.
    3. For each file, under a concurrency cap: read, SHA-256 hash, and
       upload when the store has no hash or a different one. Empty files
       and unchanged files are skipped. Per-file failures are logged and
       counted as processed; they never abort the run.
    4. Return the aggregate counts.

Counters are owned by the single event loop and only touched between
awaits, so concurrent completions never lose an increment.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

import numpy as np

from reposync import config
from reposync.chunker import Chunk, TreeSitterChunker
from reposync.embedder import SupportsEmbed
from reposync.git import GitProber, RepositoryProber
from reposync.metastore import MetadataStore
from reposync.store import list_store_file_hashes

logger = logging.getLogger(__name__)


@dataclass
class SyncProgress:
    """Running counts delivered to the progress callback."""

    processed: int
    uploaded: int
    total: int
    path: str | None = None


@dataclass
class SyncResult:
    processed: int
    uploaded: int
    total: int


ProgressCallback = Callable[[SyncProgress], None]


def compute_hash(data: bytes) -> str:
    """SHA-256 hex digest of raw file bytes."""
    return hashlib.sha256(data).hexdigest()


async def get_repo_files(prober: RepositoryProber, repo_root: str) -> list[str]:
    """Collect the deduplicated git file inventory of *repo_root*."""
    files: list[str] = []
    seen: set[str] = set()
    async for path in prober.stream_files(repo_root):
        if path not in seen:
            seen.add(path)
            files.append(path)
    return files


def filter_repo_files(
    files: list[str], repo_root: str, prober: RepositoryProber
) -> list[str]:
    """Keep regular files that git does not report as ignored."""
    regular = [f for f in files if os.path.isfile(f)]
    ignored = prober.check_ignored(regular, repo_root)
    return [f for f in regular if f not in ignored]


async def upload_file(
    client: Any, store_id: str, file_path: str, data: bytes | None = None
) -> bool:
    """Upload one file with ``{path, hash}`` metadata.

    Tries a streamed upload first and falls back to an in-memory buffer.
    Returns False without uploading when the file is empty.
    """
    if data is None:
        data = await asyncio.to_thread(Path(file_path).read_bytes)
    if not data:
        return False

    file_hash = compute_hash(data)
    options = {
        "external_id": file_path,
        "overwrite": True,
        "metadata": {"path": file_path, "hash": file_hash},
    }

    try:
        with open(file_path, "rb") as f:
            await client.stores.files.upload(store_id, f, **options)
    except Exception as e:
        logger.debug("Streamed upload of %s failed (%s), retrying buffered", file_path, e)
        await client.stores.files.upload(
            store_id,
            (os.path.basename(file_path), data, "text/plain"),
            **options,
        )
    return True


async def _sync_paths(
    client: Any,
    store_id: str,
    paths: list[str],
    previous_hash: Callable[[str], str | None],
    on_progress: ProgressCallback | None,
    metastore: MetadataStore | None,
    concurrency: int,
) -> SyncResult:
    total = len(paths)
    processed = 0
    uploaded = 0
    semaphore = asyncio.Semaphore(concurrency)

    def report(path: str) -> None:
        if on_progress is None:
            return
        try:
            on_progress(SyncProgress(processed, uploaded, total, path))
        except Exception as e:
            logger.warning("Progress callback failed: %s", e)

    async def process(path: str) -> None:
        nonlocal processed, uploaded
        async with semaphore:
            try:
                data = await asyncio.to_thread(Path(path).read_bytes)
                file_hash = compute_hash(data)
                if not data:
                    logger.debug("Skipping empty file %s", path)
                elif previous_hash(path) == file_hash:
                    logger.debug("Unchanged: %s", path)
                    if metastore is not None:
                        metastore.set(path, file_hash)
                else:
                    if await upload_file(client, store_id, path, data):
                        uploaded += 1
                    if metastore is not None:
                        metastore.set(path, file_hash)
            except Exception as e:
                logger.warning("Failed to sync %s: %s", path, e)
            processed += 1
            report(path)

    await asyncio.gather(*(process(p) for p in paths))

    if metastore is not None:
        try:
            await asyncio.to_thread(metastore.save)
        except OSError as e:
            logger.warning("Failed to save metadata to %s: %s", metastore.path, e)

    logger.info("Synced %d files (%d uploaded)", processed, uploaded)
    return SyncResult(processed=processed, uploaded=uploaded, total=total)


async def initial_sync(
    client: Any,
    store_id: str,
    repo_root: str,
    on_progress: ProgressCallback | None = None,
    *,
    prober: RepositoryProber | None = None,
    metastore: MetadataStore | None = None,
    concurrency: int = config.UPLOAD_CONCURRENCY,
) -> SyncResult:
    """Bring the store in line with every candidate file under *repo_root*."""
    prober = prober or GitProber()
    # External ids must not depend on the caller's working directory
    repo_root = os.path.abspath(repo_root)
    try:
        store_hashes = await list_store_file_hashes(client, store_id)
    except Exception as e:
        logger.warning("Failed to list files of store %s: %s", store_id, e)
        store_hashes = {}

    repo_files = await get_repo_files(prober, repo_root)
    candidates = await asyncio.to_thread(
        filter_repo_files, repo_files, repo_root, prober
    )
    return await _sync_paths(
        client,
        store_id,
        candidates,
        store_hashes.get,
        on_progress,
        metastore,
        concurrency,
    )


async def sync_files(
    client: Any,
    store_id: str,
    paths: list[str],
    metastore: MetadataStore,
    on_progress: ProgressCallback | None = None,
    *,
    concurrency: int = config.UPLOAD_CONCURRENCY,
) -> SyncResult:
    """Upload whichever of *paths* changed since the hashes in *metastore*.

    No remote listing is made; the local metadata is the source of
    previous hashes and is saved once all files are handled.
    """
    unique = list(dict.fromkeys(paths))
    return await _sync_paths(
        client,
        store_id,
        unique,
        metastore.get,
        on_progress,
        metastore,
        concurrency,
    )


async def embed_file(
    path: str, chunker: TreeSitterChunker, embedder: SupportsEmbed
) -> list[tuple[Chunk, np.ndarray]]:
    """Chunk and embed one file. Unreadable files yield no chunks."""
    try:
        content = await asyncio.to_thread(Path(path).read_text, encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        logger.warning("Cannot read %s: %s", path, e)
        return []

    chunks = await asyncio.to_thread(chunker.chunk, path, content)
    if not chunks:
        return []
    vectors = await asyncio.to_thread(embedder.embed, [c.content for c in chunks])
    return list(zip(chunks, vectors))
