"""Candidate file discovery for a root directory.

Walks the tree and composes three ignore sources:

- the tool-specific ignore file (``.reposyncignore``) at the root,
- literal patterns passed in by the caller (or from config),
- the repository's ``.gitignore`` when the root is inside a git checkout.

Hidden entries (names starting with ``.``) and symlinks are never yielded
or descended into.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Iterator

from reposync import config
from reposync.git import RepositoryProber
from reposync.gitignore import GitIgnoreFilter, escapes_root, normalize_relative

logger = logging.getLogger(__name__)


@dataclass
class _IgnoreFileEntry:
    filter: GitIgnoreFilter
    mtime: float


def _load_ignore_file(path: str) -> str | None:
    if not os.path.isfile(path):
        return None
    try:
        with open(path, encoding="utf-8") as f:
            return f.read()
    except (OSError, UnicodeDecodeError) as e:
        logger.warning("Failed to read %s: %s", path, e)
        return None


class FileDiscovery:
    """Produce the candidate file set for a root directory."""

    def __init__(
        self,
        prober: RepositoryProber,
        ignore_patterns: list[str] | None = None,
        ignore_filename: str = config.IGNORE_FILENAME,
    ) -> None:
        self.prober = prober
        self.ignore_filename = ignore_filename
        patterns = config.IGNORE_PATTERNS if ignore_patterns is None else ignore_patterns
        self._custom_filter = GitIgnoreFilter()
        if patterns:
            self._custom_filter.add(list(patterns))
        self._ignore_file_cache: dict[str, _IgnoreFileEntry] = {}

    def _root_ignore_filter(self, root: str) -> GitIgnoreFilter:
        """Cached filter for the root's ignore file, rebuilt on mtime change."""
        ignore_path = os.path.join(root, self.ignore_filename)
        try:
            mtime = os.stat(ignore_path).st_mtime
        except OSError:
            mtime = 0.0

        cached = self._ignore_file_cache.get(root)
        if cached is not None and cached.mtime == mtime:
            return cached.filter

        ignore_filter = GitIgnoreFilter(_load_ignore_file(ignore_path))
        self._ignore_file_cache[root] = _IgnoreFileEntry(ignore_filter, mtime)
        return ignore_filter

    def is_ignored(self, path: str, root: str) -> bool:
        """Return True if *path* must be excluded from discovery under *root*.

        Safe for directories, ``.``/``..`` segments and mixed separators.
        """
        root = os.path.abspath(root)
        relative = normalize_relative(path.replace("\\", "/"), root)
        if not relative:
            return False
        if escapes_root(relative):
            return True
        full_path = os.path.join(root, relative)

        if self._root_ignore_filter(root).is_ignored(full_path, root):
            return True
        if self._custom_filter.is_ignored(full_path, root):
            return True

        if self.prober.is_repository(root):
            repo_root = self.prober.get_repository_root(root) or root
            # git reports the resolved toplevel; compare like with like
            if self.prober.get_ignore_filter(repo_root).is_ignored(
                os.path.realpath(full_path), os.path.realpath(repo_root)
            ):
                return True
        return False

    def get_files(self, root: str) -> Iterator[str]:
        """Lazily yield absolute paths of candidate files under *root*."""
        root = os.path.abspath(root)
        self._root_ignore_filter(root)
        yield from self._walk(root, root)

    def _walk(self, directory: str, root: str) -> Iterator[str]:
        try:
            with os.scandir(directory) as it:
                entries = sorted(it, key=lambda e: e.name)
        except OSError as e:
            logger.warning("Cannot list %s: %s", directory, e)
            return

        for entry in entries:
            if entry.name.startswith("."):
                continue
            if entry.is_symlink():
                continue
            if self.is_ignored(entry.path, root):
                continue
            try:
                if entry.is_dir():
                    yield from self._walk(entry.path, root)
                elif entry.is_file():
                    yield entry.path
            except OSError:
                continue
