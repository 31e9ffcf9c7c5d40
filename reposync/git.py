"""Git repository probing.

``GitProber`` shells out to the ``git`` CLI and caches its answers per
normalized directory for the lifetime of the instance. Any failure to run
git is reported as "not a repository" / ``None`` / no files; nothing here
raises on a missing or broken git installation.

The file listing is streamed with ``git ls-files -z`` so that very large
repositories are never buffered in memory. Records are NUL-terminated and a
read from the pipe may end in the middle of one, so the trailing partial
record is carried over to the next read.
"""

from __future__ import annotations

import asyncio
import logging
import os
import subprocess  # nosec B404 -- git is invoked with fixed argument lists
from dataclasses import dataclass
from typing import AsyncIterable, AsyncIterator, Iterable, Protocol

from reposync.gitignore import GitIgnoreFilter

logger = logging.getLogger(__name__)

# Bytes read from the git pipe per iteration
READ_SIZE = 65536

_LS_FILES_ARGS = ["ls-files", "-z", "--others", "--exclude-standard", "--cached"]


class RepositoryProber(Protocol):
    """Capability interface over a version-control checkout."""

    def is_repository(self, directory: str) -> bool: ...

    def get_ignore_content(self, repo_root: str) -> str | None: ...

    def stream_files(self, dir_root: str) -> AsyncIterator[str]: ...

    def get_ignore_filter(self, repo_root: str) -> GitIgnoreFilter: ...

    def get_repository_root(self, directory: str) -> str | None: ...

    def get_remote_url(self, directory: str) -> str | None: ...

    def check_ignored(self, paths: Iterable[str], repo_root: str) -> set[str]: ...


# ── NUL-delimited record reassembly ──────────────────────────────────────


def split_null_records(buffer: bytes, data: bytes) -> tuple[list[bytes], bytes]:
    """Append *data* to *buffer* and split off every complete record.

    Returns ``(records, remainder)`` where *remainder* is the incomplete
    tail to be passed back in with the next read. Empty records are dropped.
    """
    parts = (buffer + data).split(b"\0")
    remainder = parts.pop()
    return [p for p in parts if p], remainder


async def iter_null_records(chunks: AsyncIterable[bytes]) -> AsyncIterator[str]:
    """Yield decoded records from a stream of arbitrarily split byte chunks."""
    buffer = b""
    async for data in chunks:
        records, buffer = split_null_records(buffer, data)
        for record in records:
            yield os.fsdecode(record)
    if buffer:
        yield os.fsdecode(buffer)


async def _read_pipe(stream: asyncio.StreamReader) -> AsyncIterator[bytes]:
    while True:
        data = await stream.read(READ_SIZE)
        if not data:
            return
        yield data


async def _log_stderr(stream: asyncio.StreamReader) -> None:
    """Drain git's stderr so the pipe never fills; git can just be noisy."""
    async for line in stream:
        msg = line.decode("utf-8", errors="replace").strip()
        if msg:
            logger.debug("[git] stderr: %s", msg)


# ── Git CLI prober ───────────────────────────────────────────────────────


@dataclass
class _IgnoreCacheEntry:
    filter: GitIgnoreFilter
    mtime: float


class GitProber:
    """RepositoryProber backed by the ``git`` executable."""

    def __init__(self, git: str = "git") -> None:
        self.git = git
        self._repo_cache: dict[str, bool] = {}
        self._root_cache: dict[str, str | None] = {}
        self._remote_cache: dict[str, str | None] = {}
        self._ignore_cache: dict[str, _IgnoreCacheEntry] = {}

    def _run(self, args: list[str], cwd: str) -> subprocess.CompletedProcess | None:
        try:
            return subprocess.run(  # nosec B603
                [self.git, *args],
                cwd=cwd,
                capture_output=True,
                text=True,
            )
        except (OSError, subprocess.SubprocessError) as e:
            logger.warning("Failed to run git %s in %s: %s", args[0], cwd, e)
            return None

    def _stdout_or_none(self, args: list[str], cwd: str) -> str | None:
        result = self._run(args, cwd)
        if result is None or result.returncode != 0:
            return None
        value = result.stdout.strip()
        return value or None

    def is_repository(self, directory: str) -> bool:
        normalized = os.path.abspath(directory)
        cached = self._repo_cache.get(normalized)
        if cached is not None:
            return cached

        result = self._run(["rev-parse", "--git-dir"], normalized)
        is_git = result is not None and result.returncode == 0
        self._repo_cache[normalized] = is_git
        return is_git

    def get_repository_root(self, directory: str) -> str | None:
        normalized = os.path.abspath(directory)
        if normalized in self._root_cache:
            return self._root_cache[normalized]

        root = self._stdout_or_none(["rev-parse", "--show-toplevel"], normalized)
        if root is not None:
            root = os.path.abspath(root)
        self._root_cache[normalized] = root
        return root

    def get_remote_url(self, directory: str) -> str | None:
        normalized = os.path.abspath(directory)
        if normalized in self._remote_cache:
            return self._remote_cache[normalized]

        remote = self._stdout_or_none(
            ["config", "--get", "remote.origin.url"], normalized
        )
        self._remote_cache[normalized] = remote
        return remote

    def get_ignore_content(self, repo_root: str) -> str | None:
        """Return the root ``.gitignore`` text, or None if absent/unreadable."""
        gitignore_path = os.path.join(repo_root, ".gitignore")
        if not os.path.isfile(gitignore_path):
            return None
        try:
            with open(gitignore_path, encoding="utf-8") as f:
                return f.read()
        except (OSError, UnicodeDecodeError) as e:
            # .gitignore is optional
            logger.warning("Failed to read .gitignore in %s: %s", repo_root, e)
            return None

    def get_ignore_filter(self, repo_root: str) -> GitIgnoreFilter:
        """Return a cached filter, rebuilt when ``.gitignore`` mtime changes."""
        normalized = os.path.abspath(repo_root)
        try:
            mtime = os.stat(os.path.join(normalized, ".gitignore")).st_mtime
        except OSError:
            mtime = 0.0

        cached = self._ignore_cache.get(normalized)
        if cached is not None and cached.mtime == mtime:
            return cached.filter

        ignore_filter = GitIgnoreFilter(self.get_ignore_content(normalized))
        self._ignore_cache[normalized] = _IgnoreCacheEntry(ignore_filter, mtime)
        return ignore_filter

    async def stream_files(self, dir_root: str) -> AsyncIterator[str]:
        """Yield tracked and untracked-but-not-ignored files under *dir_root*.

        Paths are absolute and deduplicated. The generator only finishes
        after git has exited.
        """
        dir_root = os.path.abspath(dir_root)
        try:
            proc = await asyncio.create_subprocess_exec(
                self.git,
                *_LS_FILES_ARGS,
                cwd=dir_root,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            logger.warning("Failed to list files with git in %s: %s", dir_root, e)
            return

        if proc.stdout is None or proc.stderr is None:
            await proc.wait()
            return
        stderr_task = asyncio.create_task(_log_stderr(proc.stderr))
        seen: set[str] = set()
        try:
            async for relative in iter_null_records(_read_pipe(proc.stdout)):
                if relative in seen:
                    continue
                seen.add(relative)
                yield os.path.join(dir_root, relative)
        finally:
            if proc.returncode is None and not proc.stdout.at_eof():
                # Consumer stopped early
                try:
                    proc.kill()
                except ProcessLookupError:
                    pass
            await proc.wait()
            await stderr_task

        if proc.returncode != 0:
            logger.warning(
                "git ls-files exited with %s in %s", proc.returncode, dir_root
            )

    def check_ignored(self, paths: Iterable[str], repo_root: str) -> set[str]:
        """Return the subset of *paths* that git considers ignored.

        Uses a single ``git check-ignore --stdin`` call. Tracked files are
        never reported. Git failures yield an empty set.
        """
        path_list = list(paths)
        if not path_list:
            return set()
        payload = "".join(p + "\0" for p in path_list)
        try:
            result = subprocess.run(  # nosec B603
                [self.git, "check-ignore", "-z", "--stdin"],
                cwd=repo_root,
                input=os.fsencode(payload),
                capture_output=True,
            )
        except (OSError, subprocess.SubprocessError) as e:
            logger.warning("Failed to run git check-ignore in %s: %s", repo_root, e)
            return set()

        # 0 = some ignored, 1 = none ignored, anything else is an error
        if result.returncode not in (0, 1):
            logger.warning(
                "git check-ignore exited with %s in %s",
                result.returncode,
                repo_root,
            )
            return set()

        records, tail = split_null_records(b"", result.stdout)
        if tail:
            records.append(tail)
        reported = {os.fsdecode(r) for r in records}
        return {
            p
            for p in path_list
            if p in reported or os.path.relpath(p, repo_root) in reported
        }

    def is_ignored_by_git(self, path: str, repo_root: str) -> bool:
        return path in self.check_ignored([path], repo_root)
