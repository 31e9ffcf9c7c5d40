"""Persisted path -> content-hash mapping used to skip unchanged files.

The whole mapping is stored as one JSON document. ``save()`` writes the
document to a staging sibling (``meta.json.tmp``) and renames it over the
primary file, so a crash leaves either the previous primary or the new one,
never a torn file.

A crash can still leave a corrupt primary next to a complete staging file
(for example when the rename was interrupted on a filesystem without atomic
replace). ``load()`` therefore falls back to the staging file when the
primary cannot be parsed, restores it as the primary, and only starts empty
when neither is readable.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path

from reposync import config

logger = logging.getLogger(__name__)

STAGING_SUFFIX = ".tmp"


class MetadataCorruptError(ValueError):
    """Raised internally when a metadata document cannot be parsed."""


def _read_document(path: Path) -> dict[str, str]:
    """Parse a ``{key: hash}`` document, raising on any kind of damage."""
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
        raise MetadataCorruptError(f"{path}: {e}") from e
    if not isinstance(data, dict):
        raise MetadataCorruptError(f"{path}: expected a JSON object")
    return {str(k): v for k, v in data.items() if isinstance(v, str)}


class MetadataStore:
    """In-memory key -> hash mapping with crash-safe persistence."""

    def __init__(self, path: str | Path | None = None) -> None:
        self.path = Path(path) if path is not None else config.get_metadata_path()
        self.tmp_path = self.path.with_name(self.path.name + STAGING_SUFFIX)
        self._data: dict[str, str] = {}

    def get(self, key: str) -> str | None:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def __len__(self) -> int:
        return len(self._data)

    def __contains__(self, key: object) -> bool:
        return key in self._data

    def load(self) -> None:
        """Load the primary document, recovering from the staging file."""
        if not self.path.exists() and not self.tmp_path.exists():
            self._data = {}
            return

        try:
            self._data = _read_document(self.path)
            return
        except MetadataCorruptError as e:
            primary_error = e

        try:
            self._data = _read_document(self.tmp_path)
        except MetadataCorruptError as e:
            logger.warning(
                "Metadata unreadable (%s; staging: %s), starting empty",
                primary_error,
                e,
            )
            self._data = {}
            return

        logger.info("Recovered metadata from %s", self.tmp_path)
        try:
            self.save()
        except OSError as e:
            # Recovered mapping stays in memory; the next save retries
            logger.warning("Failed to restore metadata to %s: %s", self.path, e)

    def save(self) -> None:
        """Write the mapping to the staging file and rename it into place."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = json.dumps(self._data, indent=2, sort_keys=True)
        with open(self.tmp_path, "w", encoding="utf-8") as f:
            f.write(payload)
            f.flush()
            os.fsync(f.fileno())
        os.replace(self.tmp_path, self.path)
