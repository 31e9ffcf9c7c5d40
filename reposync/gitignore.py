"""Gitignore-style path matching on top of pathspec."""

from __future__ import annotations

import os

import pathspec


def normalize_relative(path: str, root: str) -> str:
    """Return *path* relative to *root* using forward slashes.

    Returns ``""`` for the root itself. A path that resolves outside the
    root keeps its leading ``..`` segment.
    """
    abs_root = os.path.abspath(root)
    abs_path = os.path.abspath(os.path.join(abs_root, path))
    try:
        relative = os.path.relpath(abs_path, abs_root)
    except ValueError:
        # Different drives on Windows
        return ".."
    relative = relative.replace("\\", "/")
    if relative == ".":
        return ""
    return relative


def escapes_root(relative: str) -> bool:
    """Return True if a normalized relative path points above its root."""
    return relative == ".." or relative.startswith("../")


class GitIgnoreFilter:
    """An ordered, appendable set of gitignore rules.

    Rules are compiled with :class:`pathspec.GitIgnoreSpec`, which follows
    git's own negation and directory-only semantics.
    """

    def __init__(self, content: str | None = None) -> None:
        self._lines: list[str] = []
        self._spec = pathspec.GitIgnoreSpec.from_lines([])
        if content:
            self.add(content)

    def add(self, patterns: str | list[str]) -> None:
        """Append rules; comments and blank lines are handled by pathspec."""
        if isinstance(patterns, str):
            patterns = patterns.splitlines()
        self._lines.extend(patterns)
        self._spec = pathspec.GitIgnoreSpec.from_lines(self._lines)

    def clear(self) -> None:
        self._lines = []
        self._spec = pathspec.GitIgnoreSpec.from_lines([])

    @property
    def patterns(self) -> list[str]:
        return list(self._lines)

    def is_ignored(self, path: str, root: str) -> bool:
        """Check whether *path* (absolute, or relative to *root*) is ignored.

        The root itself is never ignored and anything outside the root is
        always ignored. Directories are matched with a trailing slash so
        that directory-only rules such as ``dist/`` apply.
        """
        relative = normalize_relative(path, root)
        if not relative:
            return False
        if escapes_root(relative):
            return True

        full_path = os.path.join(os.path.abspath(root), relative)
        if os.path.isdir(full_path):
            relative += "/"
        return self._spec.match_file(relative)
